"""
Pricing Engine — Invoice Generator
==================================
Assembles a billing-period invoice for one contract from its tracked usage.

Steps:
  1. Contract must exist and be active (fails before any computation)
  2. Period must not already be invoiced (unless include_unbilled)
  3. Usage in [period_start, period_end] is re-fetched and re-priced with
     the rules in scope at period_end; stored ingestion-time prices are
     not reused
  4. Calculations are grouped by service type into line items
  5. Monthly minimum top-up, appended after all usage lines
  6. Tax, totals, due date
  7. Number and persist in one write (a preview gets a provisional number
     and claims nothing); render to PDF on demand

Usage:
    generator = InvoiceGenerator(store)

    # Single contract
    invoice = await generator.generate("ctr-1", date(2026, 7, 1), date(2026, 7, 31))

    # Batch with bounded concurrency; failures reported per contract
    result = await generator.generate_batch(["ctr-1", "ctr-2"], start, end)

    # PDF
    pdf_bytes = generator.render_pdf(invoice, contract)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import date, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple

from .billing_models import LineItemType
from .config import settings
from .exceptions import InvalidStateError, PricingEngineError, ValidationError
from .invoice_numbering import InvoiceNumberer
from .invoice_pdf import InvoicePdfRenderer
from .money import ZERO, money, percent_of, unit_price
from .pricing_types import (
    ContractSnapshot, InvoiceCalculation, InvoiceLineItem, InvoiceOptions,
    PricingCalculation, PricingOptions, ServiceSummary,
)
from .stores import load_contract
from .usage_calculator import UsagePriceCalculator, contract_currency

logger = logging.getLogger("pricing.invoice")

MINIMUM_CHARGE_SERVICE = LineItemType.MINIMUM_CHARGE.value


# ─────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────

def calculate_proration(
    amount: Decimal,
    period_start: date,
    period_end: date,
    actual_start: date,
    actual_end: date,
) -> Decimal:
    """
    Scale `amount` by the share of [period_start, period_end] covered by
    [actual_start, actual_end]. Both ranges count whole days inclusively.
    """
    total_days = (period_end - period_start).days + 1
    if total_days <= 0:
        raise ValidationError(f"Empty proration period {period_start} → {period_end}")
    actual_days = max(0, (actual_end - actual_start).days + 1)
    return amount * actual_days / total_days


def build_line_items(
    calculations: Sequence[PricingCalculation],
    tax_rate: Decimal,
    currency: str,
    period_start: Optional[date] = None,
    period_end: Optional[date] = None,
) -> Tuple[List[InvoiceLineItem], Dict[str, ServiceSummary]]:
    """
    One line per service type, in first-seen order.

    A line's discount is the discount actually absorbed by its records
    (subtotal − net), so taxable = subtotal − discount holds even when
    stacked discounts exceed a record's price. A capped line records the
    full discount it was offered under metadata["uncapped_discount"].
    """
    groups: Dict[str, List[PricingCalculation]] = {}
    for calc in calculations:
        groups.setdefault(calc.service_type, []).append(calc)

    line_items: List[InvoiceLineItem] = []
    summary: Dict[str, ServiceSummary] = {}

    for service_type, calcs in groups.items():
        quantity = sum((c.quantity for c in calcs), ZERO)
        subtotal = sum((c.subtotal for c in calcs), ZERO)
        net = sum((c.net_amount for c in calcs), ZERO)
        discount = subtotal - net
        offered = sum((c.total_discount for c in calcs), ZERO)
        tax = percent_of(net, tax_rate, currency)
        avg_price = unit_price(subtotal / quantity) if quantity else calcs[0].unit_price
        metadata: Dict[str, object] = {"records": len(calcs)}
        if offered > discount:
            metadata["uncapped_discount"] = str(offered)

        line_items.append(InvoiceLineItem(
            description=service_type,
            service_type=service_type,
            quantity=quantity,
            unit=calcs[0].unit,
            unit_price=avg_price,
            subtotal=subtotal,
            discount_amount=discount,
            tax_amount=tax,
            total_amount=net + tax,
            period_start=period_start,
            period_end=period_end,
            metadata=metadata,
        ))
        summary[service_type] = ServiceSummary(quantity=quantity, amount=net + tax)

    return line_items, summary


def minimum_charge_line(shortfall: Decimal, tax_rate: Decimal, currency: str) -> InvoiceLineItem:
    tax = percent_of(shortfall, tax_rate, currency)
    return InvoiceLineItem(
        description="Monthly Minimum Charge",
        service_type=MINIMUM_CHARGE_SERVICE,
        quantity=Decimal("1"),
        unit="charge",
        unit_price=unit_price(shortfall),
        subtotal=shortfall,
        discount_amount=ZERO,
        tax_amount=tax,
        total_amount=shortfall + tax,
    )


@dataclass
class BatchInvoiceResult:
    invoices: List[InvoiceCalculation] = field(default_factory=list)
    failures: Dict[str, PricingEngineError] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures


# ─────────────────────────────────────────────
# Core generator
# ─────────────────────────────────────────────

class InvoiceGenerator:
    """
    Prices a contract's period usage and produces invoices.
    """

    def __init__(
        self,
        store,
        calculator: Optional[UsagePriceCalculator] = None,
        numberer: Optional[InvoiceNumberer] = None,
    ):
        self.store = store
        self.calculator = calculator or UsagePriceCalculator(store)
        self.numberer = numberer or InvoiceNumberer(store)
        self.renderer = InvoicePdfRenderer()

    async def generate(
        self,
        contract_id: str,
        period_start: date,
        period_end: date,
        options: Optional[InvoiceOptions] = None,
        invoice_date: Optional[date] = None,
    ) -> InvoiceCalculation:
        """
        Generate the invoice for one contract and period.

        Raises:
            NotFoundError: unknown contract
            InvalidStateError: inactive contract, already invoiced, no usage
            PricingGapError: a usage record has no pricing tier
            NumberingConflictError: numbering retries exhausted
        """
        options = options or InvoiceOptions()
        if period_end < period_start:
            raise ValidationError(f"Period end {period_end} is before start {period_start}")

        # ── 1. Contract ──
        contract = await load_contract(self.store, contract_id, require_active=True)

        # ── 2. Already invoiced ──
        if not options.include_unbilled and await self.store.invoice_exists(
            contract.id, period_start, period_end,
        ):
            raise InvalidStateError(
                f"Contract {contract.id} already invoiced for {period_start} → {period_end}"
            )

        currency = contract_currency(contract)
        tax_rate = contract.tax_rate if contract.tax_rate is not None else settings.DEFAULT_TAX_RATE
        minimum = self._minimum_for(contract, period_start, period_end, options, currency)

        # ── 3. Usage ──
        tracked = await self.store.get_usage(contract.id, period_start, period_end)
        if not tracked and not minimum and not options.include_unbilled:
            raise InvalidStateError(
                f"No usage in period {period_start} → {period_end} for contract {contract.id}"
            )

        calculations = await self.calculator.calculate(
            contract,
            [t.usage for t in tracked],
            PricingOptions(
                apply_discounts=True,
                apply_minimum=options.apply_minimum,
                prorated=options.prorated,
                effective_date=period_end,
            ),
        )

        # ── 4. Line items ──
        line_items, summary = build_line_items(
            calculations, tax_rate, currency, period_start, period_end,
        )

        subtotal = sum((li.subtotal for li in line_items), ZERO)
        total_discount = sum((li.discount_amount for li in line_items), ZERO)
        taxable_amount = subtotal - total_discount

        # ── 5. Monthly minimum (after all usage lines) ──
        minimum_charge = ZERO
        if minimum and taxable_amount < minimum:
            minimum_charge = minimum - taxable_amount
            line_items.append(minimum_charge_line(minimum_charge, tax_rate, currency))
            taxable_amount = minimum
            logger.info(
                "Contract %s below monthly minimum, adding %s %s top-up",
                contract.id, minimum_charge, currency,
            )

        # ── 6. Totals ──
        tax_amount = percent_of(taxable_amount, tax_rate, currency)
        total_amount = taxable_amount + tax_amount

        # ── 7. Number & dates ──
        invoice_date = invoice_date or date.today()
        due_in = options.due_in_days
        if due_in is None:
            due_in = contract.payment_terms_days or settings.DEFAULT_PAYMENT_TERMS_DAYS

        draft = InvoiceCalculation(
            invoice_number="",
            contract_id=contract.id,
            customer_id=contract.customer_id,
            tenant_id=contract.tenant_id,
            period_start=period_start,
            period_end=period_end,
            invoice_date=invoice_date,
            due_date=invoice_date + timedelta(days=due_in),
            line_items=tuple(line_items),
            subtotal=subtotal,
            total_discount=total_discount,
            taxable_amount=taxable_amount,
            tax_rate=tax_rate,
            tax_amount=tax_amount,
            total_amount=total_amount,
            currency=currency,
            applied_discounts=tuple(d for c in calculations for d in c.discounts),
            summary_by_service=summary,
            minimum_charge=minimum_charge,
        )

        # ── 8. Persist ──
        # The number is claimed in the same write as the invoice; a preview
        # only carries the provisional next number.
        if options.persist:
            invoice = await self.numberer.issue(
                contract.tenant_id, invoice_date,
                lambda number: replace(draft, invoice_number=number),
            )
        else:
            number = await self.numberer.next_number(contract.tenant_id, invoice_date)
            invoice = replace(draft, invoice_number=number)

        logger.info(
            "Invoice %s generated for contract %s: %d line items, total %s %s",
            invoice.invoice_number, contract.id, len(line_items), total_amount, currency,
        )
        return invoice

    def _minimum_for(
        self,
        contract: ContractSnapshot,
        period_start: date,
        period_end: date,
        options: InvoiceOptions,
        currency: str,
    ) -> Optional[Decimal]:
        if not options.apply_minimum or not contract.monthly_minimum:
            return None
        minimum = contract.monthly_minimum
        if options.prorated:
            covered_end = min(period_end, contract.end_date) if contract.end_date else period_end
            minimum = calculate_proration(
                minimum, period_start, period_end,
                max(period_start, contract.start_date), covered_end,
            )
        return money(minimum, currency)

    async def generate_batch(
        self,
        contract_ids: Sequence[str],
        period_start: date,
        period_end: date,
        options: Optional[InvoiceOptions] = None,
        invoice_date: Optional[date] = None,
        max_concurrency: Optional[int] = None,
    ) -> BatchInvoiceResult:
        """
        Invoice many contracts in parallel. One contract's failure is logged
        and reported; it never stops the others.
        """
        semaphore = asyncio.Semaphore(max_concurrency or settings.BATCH_MAX_CONCURRENCY)
        result = BatchInvoiceResult()

        async def _one(contract_id: str):
            async with semaphore:
                try:
                    invoice = await self.generate(
                        contract_id, period_start, period_end, options, invoice_date,
                    )
                except PricingEngineError as e:
                    logger.warning("Invoice failed for contract %s: %s", contract_id, e)
                    result.failures[contract_id] = e
                    return None
                return invoice

        invoices = await asyncio.gather(*(_one(cid) for cid in contract_ids))
        result.invoices = [inv for inv in invoices if inv is not None]

        logger.info(
            "Batch invoicing %s → %s: %d generated, %d failed",
            period_start, period_end, len(result.invoices), len(result.failures),
        )
        return result

    # ─────────────────────────────────────────
    # PDF rendering
    # ─────────────────────────────────────────

    def render_pdf(self, invoice: InvoiceCalculation, contract: Optional[ContractSnapshot] = None) -> bytes:
        """Render the invoice to PDF and return the bytes."""
        return self.renderer.render(invoice, contract)
