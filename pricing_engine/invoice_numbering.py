"""
Pricing Engine — Invoice Numbering
==================================
Issues INV-{YYYY}{MM}-{SEQ:05d} numbers, scoped to tenant and calendar month.

The count-then-format step is serialised per (tenant, year, month) inside
the process with an asyncio.Lock. Across processes the store's unique
(tenant, year, month, sequence) constraint is the linearisation point. The
sequence is claimed in the same transaction that inserts the invoice, so a
save that fails leaves no gap. A writer that loses the claim re-reads the
count and tries again, with exponential backoff, up to
NUMBERING_MAX_ATTEMPTS.

Usage:
    numberer = InvoiceNumberer(store)

    # Issue and persist
    invoice = await numberer.issue("tenant-1", date(2026, 7, 31),
                                   lambda number: replace(draft, invoice_number=number))

    # Provisional number for a preview, nothing claimed
    number = await numberer.next_number("tenant-1", date(2026, 7, 31))
"""

from __future__ import annotations

import asyncio
import logging
import re
from contextlib import asynccontextmanager
from datetime import date
from typing import Callable, Dict, Optional, Tuple

from .config import settings
from .exceptions import NumberingConflictError, ValidationError
from .pricing_types import InvoiceCalculation

logger = logging.getLogger("pricing.numbering")

INVOICE_NUMBER_RE = re.compile(r"^INV-(\d{4})(\d{2})-(\d{5,})$")

LockKey = Tuple[str, int, int]


def format_invoice_number(year: int, month: int, sequence: int) -> str:
    return f"INV-{year}{month:02d}-{sequence:05d}"


def parse_invoice_number(number: str) -> Tuple[int, int, int]:
    """INV-202607-00042 → (2026, 7, 42)"""
    m = INVOICE_NUMBER_RE.match(number)
    if not m:
        raise ValidationError(f"Not an invoice number: {number!r}")
    return int(m.group(1)), int(m.group(2)), int(m.group(3))


class InvoiceNumberer:

    def __init__(
        self,
        store,
        max_attempts: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ):
        self.store = store
        self.max_attempts = max_attempts or settings.NUMBERING_MAX_ATTEMPTS
        self.retry_delay = settings.NUMBERING_RETRY_DELAY if retry_delay is None else retry_delay
        # key → (lock, callers holding or waiting)
        self._locks: Dict[LockKey, Tuple[asyncio.Lock, int]] = {}

    @asynccontextmanager
    async def _serialized(self, key: LockKey):
        lock, users = self._locks.get(key, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[key] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[key]
            if users <= 1:
                del self._locks[key]
            else:
                self._locks[key] = (lock, users - 1)

    async def next_number(self, tenant_id: str, invoice_date: date) -> str:
        """Provisional number (issued count + 1). Claims nothing."""
        year, month = invoice_date.year, invoice_date.month
        count = await self.store.count_invoices(tenant_id, year, month)
        return format_invoice_number(year, month, count + 1)

    async def issue(
        self,
        tenant_id: str,
        invoice_date: date,
        build: Callable[[str], InvoiceCalculation],
    ) -> InvoiceCalculation:
        """
        Number and persist an invoice. `build` turns a number into the
        invoice to save; it is called again on every retry.
        Raises NumberingConflictError once the retry budget is spent.
        """
        year, month = invoice_date.year, invoice_date.month

        async with self._serialized((tenant_id, year, month)):
            for attempt in range(self.max_attempts):
                count = await self.store.count_invoices(tenant_id, year, month)
                sequence = count + 1
                invoice = build(format_invoice_number(year, month, sequence))
                try:
                    await self.store.save_invoice(invoice, sequence)
                except NumberingConflictError:
                    logger.warning(
                        "Invoice number %s already issued for tenant %s (attempt %d/%d)",
                        invoice.invoice_number, tenant_id, attempt + 1, self.max_attempts,
                    )
                    if attempt + 1 < self.max_attempts:
                        await asyncio.sleep(self.retry_delay * (2 ** attempt))
                    continue

                logger.debug("Issued %s for tenant %s", invoice.invoice_number, tenant_id)
                return invoice

        raise NumberingConflictError(
            f"Could not claim an invoice number for tenant {tenant_id} "
            f"in {year}-{month:02d} after {self.max_attempts} attempts"
        )
