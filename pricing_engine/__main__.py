"""
Pricing Engine — Command Line
=============================
    python -m pricing_engine price   --fixture billing.json --contract ctr-1 --usage usage.json
    python -m pricing_engine invoice --fixture billing.json --contract ctr-1 \\
        --start 2026-07-01 --end 2026-07-31 --pdf invoice.pdf

Invoices are previews: they are numbered but never persisted. --database
reads from the billing database (settings.database_url) instead of a fixture.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from datetime import date
from pathlib import Path
from typing import List, Optional

from .config import settings
from .engine import PricingEngine
from .exceptions import PricingEngineError
from .pricing_types import InvoiceOptions, PricingOptions, UsageRecord
from .stores import InMemoryBillingStore

logger = logging.getLogger("pricing.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pricing_engine", description="Usage pricing & invoicing")
    source = argparse.ArgumentParser(add_help=False)
    source.add_argument("--fixture", type=Path, help="JSON fixture with contracts, rules and usage")
    source.add_argument("--database", action="store_true", help="Use the billing database")
    source.add_argument("--contract", required=True)

    sub = parser.add_subparsers(dest="command", required=True)

    price = sub.add_parser("price", parents=[source], help="Price usage records")
    price.add_argument("--usage", type=Path, required=True, help="JSON list of usage records")
    price.add_argument("--effective-date", type=date.fromisoformat)
    price.add_argument("--no-discounts", action="store_true")
    price.add_argument("--setup-fees", action="store_true")

    invoice = sub.add_parser("invoice", parents=[source], help="Preview an invoice")
    invoice.add_argument("--start", type=date.fromisoformat, required=True)
    invoice.add_argument("--end", type=date.fromisoformat, required=True)
    invoice.add_argument("--invoice-date", type=date.fromisoformat)
    invoice.add_argument("--pdf", type=Path, help="Write the rendered invoice here")
    invoice.add_argument("--include-unbilled", action="store_true")
    invoice.add_argument("--no-minimum", action="store_true")
    invoice.add_argument("--prorated", action="store_true")
    return parser


def load_engine(args) -> PricingEngine:
    if args.database:
        return PricingEngine.from_settings()
    if args.fixture is None:
        raise SystemExit("either --fixture or --database is required")
    data = json.loads(args.fixture.read_text(encoding="utf-8"))
    return PricingEngine(InMemoryBillingStore.from_fixture(data))


async def run_price(engine: PricingEngine, args) -> None:
    records = [UsageRecord.from_dict(r) for r in json.loads(args.usage.read_text(encoding="utf-8"))]
    calcs = await engine.calculate_price(
        args.contract,
        records,
        PricingOptions(
            apply_discounts=not args.no_discounts,
            include_setup_fees=args.setup_fees,
            effective_date=args.effective_date,
        ),
    )
    for c in calcs:
        print(f"{c.service_type:<24} {c.quantity:>12,.2f} {c.unit:<8} × {c.unit_price:,.4f}")
        print(f"    subtotal {c.subtotal:,.2f}  discount {c.total_discount:,.2f}  net {c.net_amount:,.2f}")
        for d in c.discounts:
            print(f"      - {d.name}: {d.amount:,.2f} ({d.reason})")
    total = sum(c.net_amount for c in calcs)
    print(f"{'TOTAL':>50} {total:,.2f}")


async def run_invoice(engine: PricingEngine, args) -> None:
    invoice = await engine.generate_invoice(
        args.contract,
        args.start,
        args.end,
        InvoiceOptions(
            include_unbilled=args.include_unbilled,
            apply_minimum=not args.no_minimum,
            prorated=args.prorated,
            persist=False,
        ),
        invoice_date=args.invoice_date,
    )

    print(f"Invoice {invoice.invoice_number}  ({invoice.period_start} → {invoice.period_end})")
    print(f"Contract {invoice.contract_id}  customer {invoice.customer_id}  due {invoice.due_date}")
    for item in invoice.line_items:
        print(f"  {item.description:<28} {item.quantity:>10,.2f} {item.unit:<8} {item.total_amount:>12,.2f}")
    print(f"  {'Subtotal':>50} {invoice.subtotal:>12,.2f}")
    print(f"  {'Discounts':>50} {-invoice.total_discount:>12,.2f}")
    print(f"  {'Taxable':>50} {invoice.taxable_amount:>12,.2f}")
    print(f"  {'Tax (' + str(invoice.tax_rate) + '%)':>50} {invoice.tax_amount:>12,.2f}")
    print(f"  {'TOTAL ' + invoice.currency:>50} {invoice.total_amount:>12,.2f}")

    if args.pdf:
        pdf_bytes = await engine.render_invoice_pdf(invoice)
        args.pdf.write_bytes(pdf_bytes)
        print(f"PDF written: {args.pdf} ({len(pdf_bytes):,} bytes)")


COMMANDS = {"price": run_price, "invoice": run_invoice}


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=settings.LOG_LEVEL, format="%(levelname)s %(name)s: %(message)s")

    engine = load_engine(args)
    try:
        asyncio.run(COMMANDS[args.command](engine, args))
    except PricingEngineError as e:
        logger.error("%s failed: %s", args.command, e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
