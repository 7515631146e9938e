"""Tests for usage_tracker.py — validation, price snapshots and atomicity."""
from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from pricing_engine.billing_models import ContractStatus
from pricing_engine.exceptions import (
    InvalidStateError, NotFoundError, PricingGapError, ValidationError,
)
from pricing_engine.money import ZERO
from pricing_engine.pricing_types import TrackingOptions, UsageRecord
from pricing_engine.stores import InMemoryBillingStore
from pricing_engine.usage_tracker import UsageTracker


@pytest.fixture
def tracker(store) -> UsageTracker:
    return UsageTracker(store)


async def test_tracks_with_price_snapshot(tracker, store, make_usage) -> None:
    tracked = await tracker.track("ctr-1", [make_usage("storage", 100), make_usage("transport", 100)])
    assert [t.id for t in tracked] == [1, 2]
    assert tracked[0].unit_price == Decimal("10.000000")
    assert tracked[0].total_amount == Decimal("1000.00")
    assert tracked[1].total_amount == Decimal("114.00")
    assert len(store.usage) == 2


async def test_without_pricing_snapshot_is_zero(tracker, make_usage) -> None:
    [t] = await tracker.track(
        "ctr-1", [make_usage("storage", 100)], TrackingOptions(auto_calculate_price=False),
    )
    assert t.unit_price == ZERO
    assert t.total_amount == ZERO


async def test_unknown_contract(tracker, make_usage) -> None:
    with pytest.raises(NotFoundError):
        await tracker.track("nope", [make_usage("storage", 1)])


async def test_inactive_contract_is_rejected(make_contract, make_usage) -> None:
    store = InMemoryBillingStore()
    store.add_contract(make_contract(status=ContractStatus.TERMINATED))
    with pytest.raises(InvalidStateError):
        await UsageTracker(store).track("ctr-1", [make_usage("storage", 1)])
    assert store.usage == []


async def test_usage_outside_contract_term(make_contract, make_usage) -> None:
    store = InMemoryBillingStore()
    store.add_contract(make_contract(end_date=date(2026, 6, 30)))
    with pytest.raises(InvalidStateError, match="outside contract"):
        await UsageTracker(store).track("ctr-1", [make_usage("storage", 1)])


async def test_validation_can_be_skipped(make_contract, make_usage) -> None:
    store = InMemoryBillingStore()
    store.add_contract(make_contract(status=ContractStatus.SUSPENDED))
    tracked = await UsageTracker(store).track(
        "ctr-1", [make_usage("storage", 1)],
        TrackingOptions(validate_contract=False, auto_calculate_price=False),
    )
    assert len(tracked) == 1


async def test_pricing_gap_stores_nothing(tracker, store, make_usage) -> None:
    with pytest.raises(PricingGapError):
        await tracker.track("ctr-1", [make_usage("storage", 1), make_usage("customs", 1)])
    assert store.usage == []


def test_negative_quantity_is_rejected() -> None:
    with pytest.raises(ValidationError):
        UsageRecord(
            service_type="storage",
            quantity=Decimal("-1"),
            unit="pallet_day",
            usage_date=datetime(2026, 7, 1, tzinfo=timezone.utc),
        )


async def test_tracked_usage_feeds_monthly_spend(tracker, store, make_usage) -> None:
    await tracker.track("ctr-1", [make_usage("storage", 100)])
    assert await store.get_monthly_spend("cust-1", date(2026, 7, 31)) == Decimal("1000.00")


# ---------------------------------------------------------------------------
# Usage record payloads
# ---------------------------------------------------------------------------

VALID_PAYLOAD = {
    "serviceType": "storage",
    "quantity": 5,
    "unit": "pallet_day",
    "usageDate": "2026-07-01T10:00:00Z",
}


def _payload(**overrides):
    data = dict(VALID_PAYLOAD, **overrides)
    return {k: v for k, v in data.items() if v is not None}


def test_payload_is_coerced() -> None:
    record = UsageRecord.from_dict(_payload(quantity="2.5"))
    assert record.quantity == Decimal("2.5")
    assert record.usage_date == datetime(2026, 7, 1, 10, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize("service_type", [None, "", "   ", 42])
def test_service_type_is_required(service_type) -> None:
    data = _payload()
    data["serviceType"] = service_type
    with pytest.raises(ValidationError, match="service_type"):
        UsageRecord.from_dict(data)


def test_missing_service_type_is_rejected() -> None:
    with pytest.raises(ValidationError, match="service_type"):
        UsageRecord.from_dict({"quantity": 5, "usageDate": "2026-07-01T10:00:00Z"})


def test_missing_usage_date_is_rejected() -> None:
    with pytest.raises(ValidationError, match="date is required"):
        UsageRecord.from_dict(_payload(usageDate=None))


@pytest.mark.parametrize("usage_date", ["yesterday", "2026-13-01", "01/07/2026"])
def test_unparseable_usage_date_is_rejected(usage_date) -> None:
    with pytest.raises(ValidationError, match="ISO-8601"):
        UsageRecord.from_dict(_payload(usageDate=usage_date))


@pytest.mark.parametrize("quantity", ["five", "", [5], "NaN", "Infinity"])
def test_non_numeric_quantity_is_rejected(quantity) -> None:
    with pytest.raises(ValidationError, match="quantity"):
        UsageRecord.from_dict(_payload(quantity=quantity))


def test_missing_quantity_is_rejected() -> None:
    with pytest.raises(ValidationError, match="quantity is required"):
        UsageRecord.from_dict(_payload(quantity=None))


def test_direct_construction_is_validated() -> None:
    with pytest.raises(ValidationError, match="numeric"):
        UsageRecord(
            service_type="storage", quantity="lots", unit="pallet_day",
            usage_date=datetime(2026, 7, 1, tzinfo=timezone.utc),
        )
