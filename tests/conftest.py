"""Shared test fixtures."""
from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable

import pytest

from pricing_engine.billing_models import ContractStatus
from pricing_engine.engine import PricingEngine
from pricing_engine.money import ZERO
from pricing_engine.pricing_types import ContractSnapshot, InvoiceCalculation, PricingTier, UsageRecord
from pricing_engine.stores import InMemoryBillingStore

TIERS = (
    PricingTier(
        service_name="storage", unit_price=Decimal("10"), unit="pallet_day",
        min_quantity=Decimal("0"), max_quantity=Decimal("1000"),
    ),
    PricingTier(
        service_name="storage", unit_price=Decimal("8"), unit="pallet_day",
        min_quantity=Decimal("1001"),
    ),
    PricingTier(
        service_name="handling", unit_price=Decimal("2.5"), unit="pallet",
        setup_fee=Decimal("150"),
    ),
    PricingTier(
        service_name="transport", unit_price=Decimal("1.2"), unit="km",
        discount_percentage=Decimal("5"),
    ),
)


@pytest.fixture
def make_contract():
    def _make(**overrides) -> ContractSnapshot:
        fields = dict(
            id="ctr-1",
            tenant_id="t1",
            customer_id="cust-1",
            status=ContractStatus.ACTIVE,
            start_date=date(2025, 1, 1),
            currency="TRY",
            tax_rate=Decimal("18"),
            payment_terms_days=30,
            pricing_tiers=TIERS,
            contract_ref="CTR-2025-001",
        )
        fields.update(overrides)
        return ContractSnapshot(**fields)
    return _make


@pytest.fixture
def make_usage():
    def _make(service_type: str, quantity, when: datetime = None, unit: str = "unit") -> UsageRecord:
        return UsageRecord(
            service_type=service_type,
            quantity=Decimal(str(quantity)),
            unit=unit,
            usage_date=when or datetime(2026, 7, 1, 10, 0, tzinfo=timezone.utc),
        )
    return _make


@pytest.fixture
def contract(make_contract) -> ContractSnapshot:
    return make_contract()


@pytest.fixture
def store(contract) -> InMemoryBillingStore:
    s = InMemoryBillingStore()
    s.add_contract(contract)
    return s


@pytest.fixture
def engine(store) -> PricingEngine:
    return PricingEngine(store)


@pytest.fixture
def make_draft():
    """Builder turning an invoice number into an empty invoice, as InvoiceNumberer.issue expects."""
    def _make(invoice_date: date = date(2026, 7, 31), tenant_id: str = "t1") -> Callable[[str], InvoiceCalculation]:
        def build(number: str) -> InvoiceCalculation:
            return InvoiceCalculation(
                invoice_number=number,
                contract_id="ctr-1",
                customer_id="cust-1",
                tenant_id=tenant_id,
                period_start=invoice_date.replace(day=1),
                period_end=invoice_date,
                invoice_date=invoice_date,
                due_date=invoice_date + timedelta(days=30),
                line_items=(),
                subtotal=ZERO,
                total_discount=ZERO,
                taxable_amount=ZERO,
                tax_rate=Decimal("18"),
                tax_amount=ZERO,
                total_amount=ZERO,
                currency="TRY",
            )
        return build
    return _make
