"""Tests for invoice_numbering.py — format, sequencing, lock cleanup and conflict retry."""
from __future__ import annotations

import asyncio
from datetime import date

import pytest

from pricing_engine.exceptions import NumberingConflictError, ValidationError
from pricing_engine.invoice_numbering import (
    InvoiceNumberer, format_invoice_number, parse_invoice_number,
)
from pricing_engine.stores import InMemoryBillingStore


class StaleCountStore(InMemoryBillingStore):
    """Reports a stale count for the first `stale_reads` calls."""

    def __init__(self, stale_reads: int) -> None:
        super().__init__()
        self.stale_reads = stale_reads
        self.count_calls = 0

    async def count_invoices(self, tenant_id: str, year: int, month: int) -> int:
        self.count_calls += 1
        if self.count_calls <= self.stale_reads:
            return 0
        return await super().count_invoices(tenant_id, year, month)


# ---------------------------------------------------------------------------
# Format
# ---------------------------------------------------------------------------


def test_format_pads_month_and_sequence() -> None:
    assert format_invoice_number(2026, 7, 1) == "INV-202607-00001"
    assert format_invoice_number(2026, 12, 123456) == "INV-202612-123456"


def test_parse_invoice_number() -> None:
    assert parse_invoice_number("INV-202607-00042") == (2026, 7, 42)


@pytest.mark.parametrize("bad", ["INV-2026-00001", "inv-202607-00001", "INV-202607-1", ""])
def test_parse_rejects_malformed(bad) -> None:
    with pytest.raises(ValidationError):
        parse_invoice_number(bad)


# ---------------------------------------------------------------------------
# Sequencing
# ---------------------------------------------------------------------------


async def _issue(numberer, make_draft, day: date, tenant_id: str = "t1") -> str:
    invoice = await numberer.issue(tenant_id, day, make_draft(day, tenant_id))
    return invoice.invoice_number


async def test_sequential_within_month(make_draft) -> None:
    numberer = InvoiceNumberer(InMemoryBillingStore())
    first = await _issue(numberer, make_draft, date(2026, 7, 3))
    second = await _issue(numberer, make_draft, date(2026, 7, 31))
    assert (first, second) == ("INV-202607-00001", "INV-202607-00002")


async def test_issued_invoice_is_saved(make_draft) -> None:
    store = InMemoryBillingStore()
    invoice = await InvoiceNumberer(store).issue("t1", date(2026, 7, 3), make_draft(date(2026, 7, 3)))
    assert store.invoices == {"INV-202607-00001": invoice}
    assert store.issued == {("t1", 2026, 7, 1)}


async def test_sequence_resets_each_month(make_draft) -> None:
    numberer = InvoiceNumberer(InMemoryBillingStore())
    await _issue(numberer, make_draft, date(2026, 7, 3))
    assert await _issue(numberer, make_draft, date(2026, 8, 1)) == "INV-202608-00001"


async def test_tenants_number_independently(make_draft) -> None:
    numberer = InvoiceNumberer(InMemoryBillingStore())
    await _issue(numberer, make_draft, date(2026, 7, 3))
    assert await _issue(numberer, make_draft, date(2026, 7, 3), tenant_id="t2") == "INV-202607-00001"


async def test_concurrent_calls_never_collide(make_draft) -> None:
    numberer = InvoiceNumberer(InMemoryBillingStore())
    numbers = await asyncio.gather(
        *(_issue(numberer, make_draft, date(2026, 7, 1)) for _ in range(20))
    )
    assert len(set(numbers)) == 20
    assert sorted(numbers)[-1] == "INV-202607-00020"


async def test_next_number_claims_nothing(make_draft) -> None:
    store = InMemoryBillingStore()
    numberer = InvoiceNumberer(store)
    assert await numberer.next_number("t1", date(2026, 7, 3)) == "INV-202607-00001"
    assert await numberer.next_number("t1", date(2026, 7, 3)) == "INV-202607-00001"
    assert store.issued == set()

    await _issue(numberer, make_draft, date(2026, 7, 3))
    assert await numberer.next_number("t1", date(2026, 7, 3)) == "INV-202607-00002"


# ---------------------------------------------------------------------------
# Locks
# ---------------------------------------------------------------------------


async def test_locks_released_after_sequential_issue(make_draft) -> None:
    numberer = InvoiceNumberer(InMemoryBillingStore())
    for month in range(1, 13):
        await _issue(numberer, make_draft, date(2026, month, 1))
    assert numberer._locks == {}


async def test_locks_released_after_concurrent_issue(make_draft) -> None:
    numberer = InvoiceNumberer(InMemoryBillingStore())
    await asyncio.gather(*(
        _issue(numberer, make_draft, date(2026, 7, 1), tenant_id=f"t{i % 3}") for i in range(12)
    ))
    assert numberer._locks == {}


async def test_lock_released_when_issue_fails(make_draft) -> None:
    store = StaleCountStore(stale_reads=100)
    store.issued.add(("t1", 2026, 7, 1))
    numberer = InvoiceNumberer(store, max_attempts=2, retry_delay=0)
    with pytest.raises(NumberingConflictError):
        await _issue(numberer, make_draft, date(2026, 7, 9))
    assert numberer._locks == {}


# ---------------------------------------------------------------------------
# Conflicts
# ---------------------------------------------------------------------------


async def test_conflict_is_retried_with_fresh_count(make_draft) -> None:
    store = StaleCountStore(stale_reads=1)
    store.issued.add(("t1", 2026, 7, 1))
    numberer = InvoiceNumberer(store, max_attempts=3, retry_delay=0)
    assert await _issue(numberer, make_draft, date(2026, 7, 9)) == "INV-202607-00002"
    assert store.count_calls == 2


async def test_conflict_retries_are_bounded(make_draft) -> None:
    store = StaleCountStore(stale_reads=100)
    store.issued.add(("t1", 2026, 7, 1))
    numberer = InvoiceNumberer(store, max_attempts=3, retry_delay=0)
    with pytest.raises(NumberingConflictError, match="after 3 attempts"):
        await _issue(numberer, make_draft, date(2026, 7, 9))
    assert store.count_calls == 3
    assert store.invoices == {}
