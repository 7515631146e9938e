"""
Pricing Engine — Facade
=======================
Single entry point over the calculator, invoice generator, usage tracker
and analytics, all sharing one store.

Usage:
    engine = PricingEngine(InMemoryBillingStore.from_fixture(data))
    engine = PricingEngine.from_settings()          # PostgreSQL via asyncpg

    calcs   = await engine.calculate_price("ctr-1", records)
    invoice = await engine.generate_invoice("ctr-1", date(2026, 7, 1), date(2026, 7, 31))
    batch   = await engine.generate_invoices(["ctr-1", "ctr-2"], start, end)
    await engine.track_usage("ctr-1", records)
    report  = await engine.analyze_pricing("ctr-1", start, end)
"""

from __future__ import annotations

import logging
from datetime import date
from typing import List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from .config import settings
from .exceptions import NotFoundError
from .invoice_generator import BatchInvoiceResult, InvoiceGenerator
from .invoice_numbering import InvoiceNumberer
from .pricing_analytics import PricingAnalysis, PricingAnalytics
from .pricing_types import (
    InvoiceCalculation, InvoiceOptions, PricingCalculation, PricingOptions,
    PricingTier, TrackedUsage, TrackingOptions, UsageRecord,
)
from .stores import SqlBillingStore, load_contract
from .usage_calculator import UsagePriceCalculator
from .usage_tracker import UsageTracker

logger = logging.getLogger("pricing.engine")


class PricingEngine:

    def __init__(self, store):
        self.store = store
        self.calculator = UsagePriceCalculator(store)
        self.numberer = InvoiceNumberer(store)
        self.invoices = InvoiceGenerator(store, self.calculator, self.numberer)
        self.tracker = UsageTracker(store, self.calculator)
        self.analytics = PricingAnalytics(store)

    @classmethod
    def from_settings(cls, database_url: Optional[str] = None) -> PricingEngine:
        engine = create_async_engine(
            database_url or settings.database_url,
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_pre_ping=True,
        )
        session_factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        return cls(SqlBillingStore(session_factory))

    # ── Pricing ──────────────────────────────────────────────────────────

    async def calculate_price(
        self,
        contract_id: str,
        usage_records: Sequence[UsageRecord],
        options: Optional[PricingOptions] = None,
    ) -> List[PricingCalculation]:
        contract = await load_contract(self.store, contract_id, require_active=True)
        logger.info("Calculating prices for contract %s with %d usage records", contract_id, len(usage_records))
        return await self.calculator.calculate(contract, usage_records, options)

    # ── Invoicing ────────────────────────────────────────────────────────

    async def generate_invoice(
        self,
        contract_id: str,
        period_start: date,
        period_end: date,
        options: Optional[InvoiceOptions] = None,
        invoice_date: Optional[date] = None,
    ) -> InvoiceCalculation:
        return await self.invoices.generate(contract_id, period_start, period_end, options, invoice_date)

    async def generate_invoices(
        self,
        contract_ids: Sequence[str],
        period_start: date,
        period_end: date,
        options: Optional[InvoiceOptions] = None,
        invoice_date: Optional[date] = None,
    ) -> BatchInvoiceResult:
        return await self.invoices.generate_batch(
            contract_ids, period_start, period_end, options, invoice_date,
        )

    async def get_invoice(self, invoice_number: str) -> InvoiceCalculation:
        invoice = await self.store.get_invoice(invoice_number)
        if invoice is None:
            raise NotFoundError(f"Invoice {invoice_number} not found")
        return invoice

    async def render_invoice_pdf(self, invoice: InvoiceCalculation) -> bytes:
        contract = await self.store.get_contract(invoice.contract_id)
        return self.invoices.render_pdf(invoice, contract)

    # ── Usage & reporting ────────────────────────────────────────────────

    async def track_usage(
        self,
        contract_id: str,
        usage_records: Sequence[UsageRecord],
        options: Optional[TrackingOptions] = None,
    ) -> List[TrackedUsage]:
        return await self.tracker.track(contract_id, usage_records, options)

    async def analyze_pricing(self, contract_id: str, period_start: date, period_end: date) -> PricingAnalysis:
        return await self.analytics.analyze(contract_id, period_start, period_end)

    # ── Utilities ────────────────────────────────────────────────────────

    async def validate_contract(self, contract_id: str, as_of: Optional[date] = None) -> bool:
        """True if the contract exists, is active and covers as_of (default today)."""
        contract = await self.store.get_contract(contract_id)
        if contract is None:
            return False
        return contract.is_billable(as_of or date.today())

    async def get_contract_pricing_tiers(self, contract_id: str) -> List[PricingTier]:
        contract = await load_contract(self.store, contract_id)
        return list(contract.pricing_tiers)
