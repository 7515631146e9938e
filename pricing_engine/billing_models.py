"""
Pricing Engine — Billing Data Model
===================================
SQLAlchemy ORM models for contracts, pricing rules, tracked usage and
invoices.

Tables:
  contracts, pricing_rules, usage_tracking, invoices, invoice_line_items,
  invoice_sequences

Designed for PostgreSQL; JSON columns fall back to plain JSON so the schema
also builds on SQLite for local runs and tests.
"""

from __future__ import annotations

import enum
from datetime import date, datetime
from decimal import Decimal
from typing import List

from sqlalchemy import (
    BigInteger, Boolean, CheckConstraint, Date, DateTime, Enum, ForeignKey,
    Index, Integer, JSON, Numeric, String, UniqueConstraint, func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql import expression

# SQLite only autoincrements INTEGER PRIMARY KEY
PK = BigInteger().with_variant(Integer, "sqlite")
JSONType = JSON().with_variant(JSONB, "postgresql")


# ─────────────────────────────────────────────
# Base
# ─────────────────────────────────────────────

class Base(DeclarativeBase):
    pass


# ─────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────

class ContractStatus(str, enum.Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    TERMINATED = "terminated"


class RuleType(str, enum.Enum):
    VOLUME_DISCOUNT = "volume_discount"
    TIME_BASED = "time_based"
    SERVICE_BUNDLE = "service_bundle"
    LOYALTY = "loyalty"
    SEASONAL = "seasonal"
    PROMOTIONAL = "promotional"


class RuleAction(str, enum.Enum):
    DISCOUNT_PERCENTAGE = "discount_percentage"
    DISCOUNT_FIXED = "discount_fixed"
    PRICE_OVERRIDE = "price_override"
    WAIVE_FEE = "waive_fee"


class InvoiceStatus(str, enum.Enum):
    DRAFT = "draft"
    ISSUED = "issued"
    PAID = "paid"
    VOID = "void"


class LineItemType(str, enum.Enum):
    USAGE = "usage"
    MINIMUM_CHARGE = "minimum_charge"


# ─────────────────────────────────────────────
# Models
# ─────────────────────────────────────────────

class Contract(Base):
    """
    Billing agreement between a tenant and a customer.
    Owned by contract management; the engine only reads it.
    """
    __tablename__ = "contracts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    contract_ref: Mapped[str | None] = mapped_column(
        String(64), nullable=True, comment="Human-readable reference e.g. CTR-2026-001",
    )
    status: Mapped[ContractStatus] = mapped_column(
        Enum(ContractStatus), server_default=ContractStatus.DRAFT.name,
    )
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    monthly_minimum: Mapped[Decimal | None] = mapped_column(
        Numeric(12, 2), nullable=True,
        comment="Contractual floor for the billed amount per period",
    )
    tax_rate_pct: Mapped[Decimal | None] = mapped_column(
        Numeric(5, 2), nullable=True,
        comment="Tax rate in percent (e.g. 18 = 18%); null = engine default",
    )
    payment_terms_days: Mapped[int] = mapped_column(Integer, server_default="30")
    pricing_tiers: Mapped[list | None] = mapped_column(
        JSONType, nullable=True,
        comment="Ordered tier list: serviceName, unitPrice, unit, minQuantity, maxQuantity, ...",
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    usage: Mapped[List[UsageTracking]] = relationship(back_populates="contract")
    invoices: Mapped[List[Invoice]] = relationship(back_populates="contract")

    __table_args__ = (
        Index("ix_contracts_tenant_status", "tenant_id", "status"),
        Index("ix_contracts_customer", "customer_id"),
    )

    def __repr__(self) -> str:
        return f"<Contract id={self.id!r} status={self.status.value}>"


class PricingRuleRow(Base):
    """
    Tenant-wide discount / override rule. Conditions are a JSON map whose
    shape depends on rule_type; it is validated when loaded into a
    PricingRule.
    """
    __tablename__ = "pricing_rules"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    rule_type: Mapped[RuleType] = mapped_column(Enum(RuleType), nullable=False)
    conditions: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    action: Mapped[RuleAction] = mapped_column(Enum(RuleAction), nullable=False)
    value: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, server_default="100")
    active: Mapped[bool] = mapped_column(Boolean, server_default=expression.true())
    valid_from: Mapped[date | None] = mapped_column(Date, nullable=True)
    valid_until: Mapped[date | None] = mapped_column(Date, nullable=True)

    __table_args__ = (
        Index("ix_pricing_rules_tenant_active", "tenant_id", "active"),
    )


class UsageTracking(Base):
    """
    One metered consumption event with its ingestion-time price snapshot.
    Rows are append-only; corrections are new offsetting rows.
    """
    __tablename__ = "usage_tracking"

    id: Mapped[int] = mapped_column(PK, primary_key=True, autoincrement=True)
    contract_id: Mapped[str] = mapped_column(ForeignKey("contracts.id"), nullable=False)
    service_type: Mapped[str] = mapped_column(String(128), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    unit: Mapped[str] = mapped_column(String(32), nullable=False)
    usage_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 6), server_default="0")
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), server_default="0")
    location: Mapped[str | None] = mapped_column(String(256), nullable=True)
    reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    metadata_json: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    contract: Mapped[Contract] = relationship(back_populates="usage")

    __table_args__ = (
        Index("ix_usage_contract_date", "contract_id", "usage_date"),
        CheckConstraint("quantity >= 0", name="ck_usage_quantity"),
    )


class Invoice(Base):
    """Persisted invoice calculation for a billing period."""
    __tablename__ = "invoices"

    id: Mapped[int] = mapped_column(PK, primary_key=True, autoincrement=True)
    invoice_number: Mapped[str] = mapped_column(
        String(32), unique=True, nullable=False,
        comment="Format: INV-{YYYYMM}-{SEQ:05d}",
    )
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    contract_id: Mapped[str] = mapped_column(ForeignKey("contracts.id"), nullable=False)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    invoice_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[InvoiceStatus] = mapped_column(
        Enum(InvoiceStatus), server_default=InvoiceStatus.DRAFT.name,
    )
    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    total_discount: Mapped[Decimal] = mapped_column(Numeric(12, 2), server_default="0")
    taxable_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    tax_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), server_default="0")
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    minimum_charge: Mapped[Decimal] = mapped_column(Numeric(12, 2), server_default="0")
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    applied_discounts: Mapped[list | None] = mapped_column(
        JSONType, nullable=True, comment="Audit trail: name, type, amount, percentage, reason",
    )
    summary_by_service: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    generated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    contract: Mapped[Contract] = relationship(back_populates="invoices")
    line_items: Mapped[List[InvoiceLineItem]] = relationship(
        back_populates="invoice", lazy="selectin",
        order_by="InvoiceLineItem.sort_order",
    )

    __table_args__ = (
        Index("ix_invoices_contract_period", "contract_id", "period_start", "period_end"),
        Index("ix_invoices_tenant_date", "tenant_id", "invoice_date"),
        CheckConstraint("period_end >= period_start", name="ck_invoices_period"),
    )


class InvoiceLineItem(Base):
    """Service-grouped row (or minimum top-up) on an invoice."""
    __tablename__ = "invoice_line_items"

    id: Mapped[int] = mapped_column(PK, primary_key=True, autoincrement=True)
    invoice_id: Mapped[int] = mapped_column(ForeignKey("invoices.id"), nullable=False)
    line_type: Mapped[LineItemType] = mapped_column(Enum(LineItemType), nullable=False)
    description: Mapped[str] = mapped_column(String(512), nullable=False)
    service_type: Mapped[str] = mapped_column(String(128), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    unit: Mapped[str] = mapped_column(String(32), nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 6), nullable=False)
    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), server_default="0")
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), server_default="0")
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, server_default="0")
    metadata_json: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    # Relationships
    invoice: Mapped[Invoice] = relationship(back_populates="line_items")

    __table_args__ = (
        Index("ix_line_items_invoice", "invoice_id"),
    )


class InvoiceSequence(Base):
    """
    Claimed invoice numbers. The unique constraint is the linearization
    point for numbering: a concurrent writer that read the same count loses
    the insert and retries with a fresh count.
    """
    __tablename__ = "invoice_sequences"

    id: Mapped[int] = mapped_column(PK, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    invoice_number: Mapped[str] = mapped_column(String(32), nullable=False)
    claimed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("tenant_id", "year", "month", "sequence", name="uq_invoice_sequence"),
        CheckConstraint("month BETWEEN 1 AND 12", name="ck_invoice_sequence_month"),
    )


# ─────────────────────────────────────────────
# Schema helper
# ─────────────────────────────────────────────

async def create_schema(engine: AsyncEngine) -> None:
    """Create all billing tables (local runs and tests; production uses migrations)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
