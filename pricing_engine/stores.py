"""
Pricing Engine — Billing Stores
===============================
Every read and write the engine performs goes through a store:

  get_contract, get_active_pricing_rules, get_usage, insert_usage,
  count_invoices, save_invoice (claims the sequence), get_invoice,
  invoice_exists, get_monthly_spend

SqlBillingStore     SQLAlchemy AsyncSession factory (asyncpg in production,
                    aiosqlite for local runs). Transient failures are
                    retried with exponential backoff, then raised as
                    PersistenceError.
InMemoryBillingStore  Dict-backed store for fixtures, previews and tests.

Usage periods are whole days: [start 00:00 UTC, end + 1 day 00:00 UTC).
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from sqlalchemy import exists, func, select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import selectinload

from . import billing_models as orm
from .billing_models import InvoiceStatus, LineItemType
from .config import settings
from .exceptions import (
    InvalidStateError, NotFoundError, NumberingConflictError, PersistenceError,
)
from .money import ZERO, to_decimal
from .pricing_rules import PricingRule, rules_in_scope
from .pricing_types import (
    ContractSnapshot, InvoiceCalculation, InvoiceLineItem, PricingDiscount,
    PricingTier, ServiceSummary, TrackedUsage, UsageRecord, as_utc,
)

logger = logging.getLogger("pricing.store")


async def load_contract(store, contract_id: str, require_active: bool = False) -> ContractSnapshot:
    contract = await store.get_contract(contract_id)
    if contract is None:
        raise NotFoundError(f"Contract {contract_id} not found")
    if require_active and not contract.is_active:
        raise InvalidStateError(
            f"Contract {contract_id} is not active (status: {contract.status.value})"
        )
    return contract


def day_bounds(start: date, end: date) -> Tuple[datetime, datetime]:
    """[start, end] in whole days → half-open UTC datetime range."""
    lo = datetime.combine(start, time.min, tzinfo=timezone.utc)
    hi = datetime.combine(end + timedelta(days=1), time.min, tzinfo=timezone.utc)
    return lo, hi


def month_start(on: date) -> date:
    return on.replace(day=1)


# ─────────────────────────────────────────────
# Row ↔ dataclass conversion
# ─────────────────────────────────────────────

def contract_from_row(row: orm.Contract) -> ContractSnapshot:
    return ContractSnapshot(
        id=row.id,
        tenant_id=row.tenant_id,
        customer_id=row.customer_id,
        status=row.status,
        start_date=row.start_date,
        end_date=row.end_date,
        currency=row.currency,
        monthly_minimum=row.monthly_minimum,
        tax_rate=row.tax_rate_pct,
        payment_terms_days=row.payment_terms_days,
        pricing_tiers=tuple(PricingTier.from_dict(t) for t in (row.pricing_tiers or [])),
        contract_ref=row.contract_ref or "",
    )


def usage_from_row(row: orm.UsageTracking) -> TrackedUsage:
    return TrackedUsage(
        id=row.id,
        contract_id=row.contract_id,
        usage=UsageRecord(
            service_type=row.service_type,
            quantity=row.quantity,
            unit=row.unit,
            usage_date=as_utc(row.usage_date),
            location=row.location,
            reference=row.reference,
            metadata=row.metadata_json or {},
        ),
        unit_price=row.unit_price,
        total_amount=row.total_amount,
    )


def invoice_from_row(row: orm.Invoice) -> InvoiceCalculation:
    return InvoiceCalculation(
        invoice_number=row.invoice_number,
        contract_id=row.contract_id,
        customer_id=row.customer_id,
        tenant_id=row.tenant_id,
        period_start=row.period_start,
        period_end=row.period_end,
        invoice_date=row.invoice_date,
        due_date=row.due_date,
        line_items=tuple(
            InvoiceLineItem(
                description=li.description,
                service_type=li.service_type,
                quantity=li.quantity,
                unit=li.unit,
                unit_price=li.unit_price,
                subtotal=li.subtotal,
                discount_amount=li.discount_amount,
                tax_amount=li.tax_amount,
                total_amount=li.total_amount,
                period_start=row.period_start if li.line_type == LineItemType.USAGE else None,
                period_end=row.period_end if li.line_type == LineItemType.USAGE else None,
                metadata=li.metadata_json or {},
            )
            for li in row.line_items
        ),
        subtotal=row.subtotal,
        total_discount=row.total_discount,
        taxable_amount=row.taxable_amount,
        tax_rate=row.tax_rate,
        tax_amount=row.tax_amount,
        total_amount=row.total_amount,
        currency=row.currency,
        applied_discounts=tuple(
            PricingDiscount(
                name=d["name"],
                type=d["type"],
                amount=to_decimal(d["amount"]),
                reason=d["reason"],
                percentage=to_decimal(d["percentage"]) if d.get("percentage") is not None else None,
            )
            for d in (row.applied_discounts or [])
        ),
        summary_by_service={
            service: ServiceSummary(
                quantity=to_decimal(s["quantity"]), amount=to_decimal(s["amount"]),
            )
            for service, s in (row.summary_by_service or {}).items()
        },
        minimum_charge=row.minimum_charge,
    )


def line_type_for(item: InvoiceLineItem) -> LineItemType:
    if item.service_type == LineItemType.MINIMUM_CHARGE.value:
        return LineItemType.MINIMUM_CHARGE
    return LineItemType.USAGE


def _json_safe(value: Dict[str, Any]) -> Dict[str, Any]:
    """Round-trip through json so Decimals/datetimes in metadata become plain values."""
    return json.loads(json.dumps(value, default=str))


# ─────────────────────────────────────────────
# SQL store
# ─────────────────────────────────────────────

class SqlBillingStore:
    """Async SQLAlchemy store; one short-lived session per call."""

    def __init__(
        self,
        session_factory,
        max_attempts: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ) -> None:
        self._session_factory = session_factory
        self.max_attempts = max_attempts or settings.PERSISTENCE_MAX_ATTEMPTS
        self.retry_delay = settings.PERSISTENCE_RETRY_DELAY if retry_delay is None else retry_delay

    async def _run(self, op: str, fn):
        """
        Run `fn(session)` in a fresh session. OperationalError and timeouts
        are retried; everything else propagates unchanged.
        """
        last_error: Optional[BaseException] = None
        for attempt in range(self.max_attempts):
            try:
                async with self._session_factory() as session:
                    return await fn(session)
            except (OperationalError, asyncio.TimeoutError) as e:
                last_error = e
                logger.warning(
                    "Store %s failed: %s (attempt %d/%d)", op, e, attempt + 1, self.max_attempts,
                )
                if attempt + 1 < self.max_attempts:
                    await asyncio.sleep(self.retry_delay * (2 ** attempt))
        raise PersistenceError(
            f"Store {op} failed after {self.max_attempts} attempts: {last_error}"
        ) from last_error

    # ── Contracts & rules ────────────────────────────────────────────────

    async def get_contract(self, contract_id: str) -> Optional[ContractSnapshot]:
        async def _q(session):
            row = await session.get(orm.Contract, contract_id)
            return contract_from_row(row) if row else None
        return await self._run("get_contract", _q)

    async def add_contract(self, contract: ContractSnapshot) -> None:
        async def _q(session):
            session.add(orm.Contract(
                id=contract.id,
                tenant_id=contract.tenant_id,
                customer_id=contract.customer_id,
                contract_ref=contract.contract_ref or None,
                status=contract.status,
                currency=contract.currency,
                start_date=contract.start_date,
                end_date=contract.end_date,
                monthly_minimum=contract.monthly_minimum,
                tax_rate_pct=contract.tax_rate,
                payment_terms_days=contract.payment_terms_days or settings.DEFAULT_PAYMENT_TERMS_DAYS,
                pricing_tiers=[t.to_dict() for t in contract.pricing_tiers],
            ))
            await session.commit()
        await self._run("add_contract", _q)

    async def add_pricing_rule(self, tenant_id: str, rule: PricingRule) -> None:
        async def _q(session):
            session.add(orm.PricingRuleRow(
                id=rule.id,
                tenant_id=tenant_id,
                name=rule.name,
                rule_type=rule.type,
                conditions=rule.condition.to_dict(),
                action=rule.action,
                value=rule.value,
                priority=rule.priority,
                active=rule.active,
                valid_from=rule.valid_from,
                valid_until=rule.valid_until,
            ))
            await session.commit()
        await self._run("add_pricing_rule", _q)

    async def get_active_pricing_rules(self, tenant_id: str, effective_date: date) -> List[PricingRule]:
        async def _q(session):
            q = (
                select(orm.PricingRuleRow)
                .where(
                    orm.PricingRuleRow.tenant_id == tenant_id,
                    orm.PricingRuleRow.active.is_(True),
                    (orm.PricingRuleRow.valid_from.is_(None))
                    | (orm.PricingRuleRow.valid_from <= effective_date),
                    (orm.PricingRuleRow.valid_until.is_(None))
                    | (orm.PricingRuleRow.valid_until >= effective_date),
                )
                .order_by(orm.PricingRuleRow.priority, orm.PricingRuleRow.id)
            )
            rows = (await session.execute(q)).scalars().all()
            return [PricingRule.from_row(r) for r in rows]
        return await self._run("get_active_pricing_rules", _q)

    # ── Usage ────────────────────────────────────────────────────────────

    async def get_usage(self, contract_id: str, start: date, end: date) -> List[TrackedUsage]:
        lo, hi = day_bounds(start, end)

        async def _q(session):
            q = (
                select(orm.UsageTracking)
                .where(
                    orm.UsageTracking.contract_id == contract_id,
                    orm.UsageTracking.usage_date >= lo,
                    orm.UsageTracking.usage_date < hi,
                )
                .order_by(orm.UsageTracking.usage_date, orm.UsageTracking.id)
            )
            rows = (await session.execute(q)).scalars().all()
            return [usage_from_row(r) for r in rows]
        return await self._run("get_usage", _q)

    async def insert_usage(self, contract_id: str, records: Sequence[TrackedUsage]) -> List[TrackedUsage]:
        async def _q(session):
            rows = [
                orm.UsageTracking(
                    contract_id=contract_id,
                    service_type=t.usage.service_type,
                    quantity=t.usage.quantity,
                    unit=t.usage.unit,
                    usage_date=t.usage.usage_date.astimezone(timezone.utc),
                    unit_price=t.unit_price,
                    total_amount=t.total_amount,
                    location=t.usage.location,
                    reference=t.usage.reference,
                    metadata_json=_json_safe(t.usage.metadata),
                )
                for t in records
            ]
            session.add_all(rows)
            await session.flush()
            ids = [row.id for row in rows]
            await session.commit()
            return [
                TrackedUsage(
                    id=row_id,
                    contract_id=contract_id,
                    usage=t.usage,
                    unit_price=t.unit_price,
                    total_amount=t.total_amount,
                )
                for row_id, t in zip(ids, records)
            ]
        return await self._run("insert_usage", _q)

    async def get_monthly_spend(self, customer_id: str, as_of: date) -> Decimal:
        """Tracked usage total for the customer from the 1st of as_of's month through as_of."""
        lo, hi = day_bounds(month_start(as_of), as_of)

        async def _q(session):
            q = (
                select(func.coalesce(func.sum(orm.UsageTracking.total_amount), 0))
                .join(orm.Contract, orm.Contract.id == orm.UsageTracking.contract_id)
                .where(
                    orm.Contract.customer_id == customer_id,
                    orm.UsageTracking.usage_date >= lo,
                    orm.UsageTracking.usage_date < hi,
                )
            )
            return to_decimal((await session.execute(q)).scalar())
        return await self._run("get_monthly_spend", _q)

    # ── Invoices ─────────────────────────────────────────────────────────

    async def count_invoices(self, tenant_id: str, year: int, month: int) -> int:
        async def _q(session):
            q = select(func.count(orm.InvoiceSequence.id)).where(
                orm.InvoiceSequence.tenant_id == tenant_id,
                orm.InvoiceSequence.year == year,
                orm.InvoiceSequence.month == month,
            )
            return (await session.execute(q)).scalar() or 0
        return await self._run("count_invoices", _q)

    async def save_invoice(self, invoice: InvoiceCalculation, sequence: int) -> None:
        """
        Claim `sequence` for the invoice's tenant and month and insert the
        invoice in one transaction. A taken sequence raises
        NumberingConflictError and nothing is written.
        """
        async def _q(session):
            session.add(orm.InvoiceSequence(
                tenant_id=invoice.tenant_id,
                year=invoice.invoice_date.year,
                month=invoice.invoice_date.month,
                sequence=sequence,
                invoice_number=invoice.invoice_number,
            ))
            row = orm.Invoice(
                invoice_number=invoice.invoice_number,
                tenant_id=invoice.tenant_id,
                contract_id=invoice.contract_id,
                customer_id=invoice.customer_id,
                period_start=invoice.period_start,
                period_end=invoice.period_end,
                invoice_date=invoice.invoice_date,
                due_date=invoice.due_date,
                status=InvoiceStatus.DRAFT,
                subtotal=invoice.subtotal,
                total_discount=invoice.total_discount,
                taxable_amount=invoice.taxable_amount,
                tax_rate=invoice.tax_rate,
                tax_amount=invoice.tax_amount,
                total_amount=invoice.total_amount,
                minimum_charge=invoice.minimum_charge,
                currency=invoice.currency,
                applied_discounts=[d.to_dict() for d in invoice.applied_discounts],
                summary_by_service={
                    service: {"quantity": str(s.quantity), "amount": str(s.amount)}
                    for service, s in invoice.summary_by_service.items()
                },
            )
            row.line_items = [
                orm.InvoiceLineItem(
                    line_type=line_type_for(item),
                    description=item.description,
                    service_type=item.service_type,
                    quantity=item.quantity,
                    unit=item.unit,
                    unit_price=item.unit_price,
                    subtotal=item.subtotal,
                    discount_amount=item.discount_amount,
                    tax_amount=item.tax_amount,
                    total_amount=item.total_amount,
                    sort_order=i,
                    metadata_json=_json_safe(item.metadata),
                )
                for i, item in enumerate(invoice.line_items)
            ]
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise NumberingConflictError(
                    f"Invoice number {invoice.invoice_number} already issued"
                ) from e
        await self._run("save_invoice", _q)
        logger.debug("Saved invoice %s", invoice.invoice_number)

    async def get_invoice(self, invoice_number: str) -> Optional[InvoiceCalculation]:
        async def _q(session):
            q = (
                select(orm.Invoice)
                .options(selectinload(orm.Invoice.line_items))
                .where(orm.Invoice.invoice_number == invoice_number)
            )
            row = (await session.execute(q)).scalar_one_or_none()
            return invoice_from_row(row) if row else None
        return await self._run("get_invoice", _q)

    async def invoice_exists(self, contract_id: str, start: date, end: date) -> bool:
        """True if a non-void invoice for the contract overlaps [start, end]."""
        async def _q(session):
            q = select(exists().where(
                orm.Invoice.contract_id == contract_id,
                orm.Invoice.status != InvoiceStatus.VOID,
                orm.Invoice.period_start <= end,
                orm.Invoice.period_end >= start,
            ))
            return bool((await session.execute(q)).scalar())
        return await self._run("invoice_exists", _q)


# ─────────────────────────────────────────────
# In-memory store
# ─────────────────────────────────────────────

class InMemoryBillingStore:
    """Same interface as SqlBillingStore, backed by dicts."""

    def __init__(self) -> None:
        self.contracts: Dict[str, ContractSnapshot] = {}
        self.rules: Dict[str, List[PricingRule]] = {}
        self.usage: List[TrackedUsage] = []
        self.invoices: Dict[str, InvoiceCalculation] = {}
        self.issued: Set[Tuple[str, int, int, int]] = set()
        self._next_usage_id = 1

    @classmethod
    def from_fixture(cls, data: Dict[str, Any]) -> InMemoryBillingStore:
        """
        Build a store from a JSON-style fixture:
          {"contracts": [...], "rules": [{"tenantId": ..., ...}], "usage": [{"contractId": ..., ...}]}
        Fixture usage carries optional unitPrice/totalAmount snapshots.
        """
        store = cls()
        for c in data.get("contracts", []):
            store.add_contract(ContractSnapshot.from_dict(c))
        for r in data.get("rules", []):
            tenant_id = r.get("tenantId", r.get("tenant_id"))
            store.add_pricing_rule(tenant_id, PricingRule.from_dict(r))
        for u in data.get("usage", []):
            contract_id = u.get("contractId", u.get("contract_id"))
            store._append(TrackedUsage(
                contract_id=contract_id,
                usage=UsageRecord.from_dict(u),
                unit_price=to_decimal(u.get("unitPrice", 0)),
                total_amount=to_decimal(u.get("totalAmount", 0)),
            ))
        return store

    def add_contract(self, contract: ContractSnapshot) -> None:
        self.contracts[contract.id] = contract

    def add_pricing_rule(self, tenant_id: str, rule: PricingRule) -> None:
        self.rules.setdefault(tenant_id, []).append(rule)

    def _append(self, tracked: TrackedUsage) -> TrackedUsage:
        stored = TrackedUsage(
            id=self._next_usage_id,
            contract_id=tracked.contract_id,
            usage=tracked.usage,
            unit_price=tracked.unit_price,
            total_amount=tracked.total_amount,
        )
        self._next_usage_id += 1
        self.usage.append(stored)
        return stored

    # ── Store interface ──────────────────────────────────────────────────

    async def get_contract(self, contract_id: str) -> Optional[ContractSnapshot]:
        return self.contracts.get(contract_id)

    async def get_active_pricing_rules(self, tenant_id: str, effective_date: date) -> List[PricingRule]:
        return rules_in_scope(self.rules.get(tenant_id, []), effective_date)

    async def get_usage(self, contract_id: str, start: date, end: date) -> List[TrackedUsage]:
        lo, hi = day_bounds(start, end)
        rows = [
            t for t in self.usage
            if t.contract_id == contract_id and lo <= t.usage.usage_date < hi
        ]
        return sorted(rows, key=lambda t: (t.usage.usage_date, t.id))

    async def insert_usage(self, contract_id: str, records: Sequence[TrackedUsage]) -> List[TrackedUsage]:
        return [
            self._append(TrackedUsage(
                contract_id=contract_id,
                usage=t.usage,
                unit_price=t.unit_price,
                total_amount=t.total_amount,
            ))
            for t in records
        ]

    async def get_monthly_spend(self, customer_id: str, as_of: date) -> Decimal:
        lo, hi = day_bounds(month_start(as_of), as_of)
        contract_ids = {c.id for c in self.contracts.values() if c.customer_id == customer_id}
        return sum(
            (t.total_amount for t in self.usage
             if t.contract_id in contract_ids and lo <= t.usage.usage_date < hi),
            ZERO,
        )

    async def count_invoices(self, tenant_id: str, year: int, month: int) -> int:
        return sum(1 for key in self.issued if key[:3] == (tenant_id, year, month))

    async def save_invoice(self, invoice: InvoiceCalculation, sequence: int) -> None:
        key = (invoice.tenant_id, invoice.invoice_date.year, invoice.invoice_date.month, sequence)
        if key in self.issued or invoice.invoice_number in self.invoices:
            raise NumberingConflictError(f"Invoice number {invoice.invoice_number} already issued")
        self.issued.add(key)
        self.invoices[invoice.invoice_number] = invoice

    async def get_invoice(self, invoice_number: str) -> Optional[InvoiceCalculation]:
        return self.invoices.get(invoice_number)

    async def invoice_exists(self, contract_id: str, start: date, end: date) -> bool:
        return any(
            inv.contract_id == contract_id and inv.period_start <= end and inv.period_end >= start
            for inv in self.invoices.values()
        )
