"""Tests for stores.SqlBillingStore — the full flow on an aiosqlite database."""
from __future__ import annotations

import asyncio
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from pricing_engine.billing_models import create_schema
from pricing_engine.engine import PricingEngine
from pricing_engine.exceptions import NumberingConflictError, PersistenceError
from pricing_engine.invoice_numbering import InvoiceNumberer
from pricing_engine.pricing_rules import PricingRule
from pricing_engine.pricing_types import InvoiceOptions
from pricing_engine.stores import SqlBillingStore


@pytest.fixture
async def sql_store(tmp_path, contract):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}")
    await create_schema(engine)
    session_factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    store = SqlBillingStore(session_factory, retry_delay=0)
    await store.add_contract(contract)
    yield store
    await engine.dispose()


def _july(day: int) -> datetime:
    return datetime(2026, 7, day, 10, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Contracts and rules
# ---------------------------------------------------------------------------


async def test_contract_round_trip(sql_store, contract) -> None:
    loaded = await sql_store.get_contract("ctr-1")
    assert loaded.status == contract.status
    assert loaded.tax_rate == Decimal("18")
    assert loaded.pricing_tiers == contract.pricing_tiers
    assert await sql_store.get_contract("missing") is None


async def test_rules_filtered_by_scope_and_ordered(sql_store) -> None:
    for rule in (
        {"id": "b", "name": "B", "priority": 20},
        {"id": "a", "name": "A", "priority": 10},
        {"id": "old", "name": "Old", "validUntil": "2026-06-30"},
        {"id": "off", "name": "Off", "active": False},
    ):
        await sql_store.add_pricing_rule("t1", PricingRule.from_dict({
            "type": "seasonal", "conditions": {"months": [7]},
            "action": "discount_percentage", "value": 5, **rule,
        }))
    rules = await sql_store.get_active_pricing_rules("t1", date(2026, 7, 31))
    assert [r.id for r in rules] == ["a", "b"]
    assert rules[0].condition.months == (7,)
    assert await sql_store.get_active_pricing_rules("t2", date(2026, 7, 31)) == []


# ---------------------------------------------------------------------------
# Usage
# ---------------------------------------------------------------------------


async def test_usage_period_and_monthly_spend(sql_store, make_usage) -> None:
    engine = PricingEngine(sql_store)
    tracked = await engine.track_usage("ctr-1", [
        make_usage("storage", 100, _july(1)),
        make_usage("storage", 50, _july(31)),
        make_usage("handling", 20, datetime(2026, 8, 1, tzinfo=timezone.utc)),
    ])
    assert all(t.id is not None for t in tracked)

    july = await sql_store.get_usage("ctr-1", date(2026, 7, 1), date(2026, 7, 31))
    assert [t.usage.quantity for t in july] == [Decimal("100"), Decimal("50")]
    assert july[0].usage.usage_date == _july(1)
    assert july[0].total_amount == Decimal("1000.00")

    assert await sql_store.get_monthly_spend("cust-1", date(2026, 7, 31)) == Decimal("1500")
    assert await sql_store.get_monthly_spend("cust-1", date(2026, 7, 15)) == Decimal("1000")
    assert await sql_store.get_monthly_spend("cust-2", date(2026, 7, 31)) == Decimal("0")


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------


async def test_invoice_persisted_and_read_back(sql_store, make_usage) -> None:
    engine = PricingEngine(sql_store)
    await engine.track_usage("ctr-1", [
        make_usage("storage", 600, _july(2)),
        make_usage("storage", 1500, _july(3)),
        make_usage("transport", 100, _july(4)),
    ])
    invoice = await engine.generate_invoice(
        "ctr-1", date(2026, 7, 1), date(2026, 7, 31), invoice_date=date(2026, 8, 1),
    )
    loaded = await engine.get_invoice(invoice.invoice_number)

    assert loaded.invoice_number == "INV-202608-00001"
    assert loaded.total_amount == invoice.total_amount
    assert loaded.tax_amount == invoice.tax_amount
    assert [li.service_type for li in loaded.line_items] == ["storage", "transport"]
    assert loaded.line_items[0].unit_price == Decimal("8.571429")
    assert loaded.line_items[0].period_start == date(2026, 7, 1)
    assert [d.name for d in loaded.applied_discounts] == ["Tier Discount"]
    assert loaded.summary_by_service["transport"].amount == invoice.summary_by_service["transport"].amount

    assert await sql_store.invoice_exists("ctr-1", date(2026, 7, 31), date(2026, 8, 31))
    assert not await sql_store.invoice_exists("ctr-1", date(2026, 8, 1), date(2026, 8, 31))


async def test_duplicate_sequence_is_a_conflict(sql_store, make_draft) -> None:
    build = make_draft(date(2026, 7, 31))
    await sql_store.save_invoice(build("INV-202607-00001"), 1)
    with pytest.raises(NumberingConflictError):
        await sql_store.save_invoice(build("INV-202607-00099"), 1)
    assert await sql_store.count_invoices("t1", 2026, 7) == 1
    assert await sql_store.get_invoice("INV-202607-00099") is None


async def test_competing_numberers_stay_unique(sql_store, make_draft) -> None:
    numberers = [InvoiceNumberer(sql_store, max_attempts=10, retry_delay=0) for _ in range(2)]
    invoices = await asyncio.gather(*(
        n.issue("t1", date(2026, 7, 1), make_draft(date(2026, 7, 1)))
        for n in numberers for _ in range(3)
    ))
    numbers = {inv.invoice_number for inv in invoices}
    assert numbers == {f"INV-202607-0000{i}" for i in range(1, 7)}
    assert await sql_store.count_invoices("t1", 2026, 7) == 6


async def test_preview_then_issue_in_database(sql_store, make_usage) -> None:
    engine = PricingEngine(sql_store)
    await engine.track_usage("ctr-1", [make_usage("storage", 10, _july(2))])
    preview = await engine.generate_invoice(
        "ctr-1", date(2026, 7, 1), date(2026, 7, 31),
        InvoiceOptions(persist=False), invoice_date=date(2026, 8, 1),
    )
    issued = await engine.generate_invoice(
        "ctr-1", date(2026, 7, 1), date(2026, 7, 31), invoice_date=date(2026, 8, 1),
    )
    assert preview.invoice_number == issued.invoice_number == "INV-202608-00001"


# ---------------------------------------------------------------------------
# Transient failures
# ---------------------------------------------------------------------------


class _LockedSession:
    async def __aenter__(self):
        raise OperationalError("SELECT 1", {}, Exception("database is locked"))

    async def __aexit__(self, *exc) -> bool:
        return False


async def test_operational_errors_are_retried_then_raised() -> None:
    calls = []

    def factory():
        calls.append(1)
        return _LockedSession()

    store = SqlBillingStore(factory, max_attempts=3, retry_delay=0)
    with pytest.raises(PersistenceError, match="after 3 attempts"):
        await store.get_contract("ctr-1")
    assert len(calls) == 3
