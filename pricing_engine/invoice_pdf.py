"""
Pricing Engine — Invoice PDF
============================
Renders an InvoiceCalculation to a single-document PDF with reportlab:
header, bill-to/invoice meta, line items, totals, discount audit trail,
payment terms and footer.
"""

from __future__ import annotations

import io
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER, TA_RIGHT
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import (
    HRFlowable, Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle,
)

from .config import settings
from .pricing_types import ContractSnapshot, InvoiceCalculation


# ─────────────────────────────────────────────
# Brand constants
# ─────────────────────────────────────────────

BRAND = {
    "company": settings.BRAND_COMPANY,
    "tagline": settings.BRAND_TAGLINE,
    "email": settings.BRAND_EMAIL,
    "website": settings.BRAND_WEBSITE,
    "primary": colors.HexColor("#0b5cad"),
    "ink": colors.HexColor("#111827"),
    "text": colors.HexColor("#1f2937"),
    "muted": colors.HexColor("#6b7280"),
    "rule": colors.HexColor("#d1d5db"),
    "zebra": colors.HexColor("#f3f4f6"),
    "credit": colors.HexColor("#15803d"),
}

# name → (font, size, colour, alignment, extra kwargs)
STYLE_TABLE: Dict[str, Tuple[str, float, str, Optional[int], dict]] = {
    "brand_name": ("Helvetica-Bold", 17, "primary", None, {"spaceAfter": 2, "leading": 20}),
    "brand_tag": ("Helvetica", 8, "muted", None, {}),
    "invoice_title": ("Helvetica-Bold", 20, "text", TA_RIGHT, {"leading": 24}),
    "meta_label": ("Helvetica-Bold", 7, "muted", None, {"spaceAfter": 1}),
    "meta_value": ("Helvetica", 9.5, "text", None, {"spaceAfter": 6, "leading": 12}),
    "section_head": ("Helvetica-Bold", 9.5, "primary", None, {"spaceAfter": 6, "spaceBefore": 4}),
    "body": ("Helvetica", 8.5, "text", None, {"leading": 11}),
    "body_right": ("Helvetica", 8.5, "text", TA_RIGHT, {"leading": 11}),
    "th": ("Helvetica-Bold", 8, None, None, {}),
    "th_right": ("Helvetica-Bold", 8, None, TA_RIGHT, {}),
    "total_label": ("Helvetica-Bold", 10, "text", TA_RIGHT, {}),
    "total_value": ("Helvetica-Bold", 12.5, "primary", TA_RIGHT, {"leading": 15}),
    "footer": ("Helvetica", 7, "muted", TA_CENTER, {}),
}

LINE_ITEM_COLUMNS = (
    ("Description", 2.1, False),
    ("Qty", 0.8, True),
    ("Unit", 0.6, False),
    ("Rate", 0.9, True),
    ("Discount", 0.85, True),
    ("Tax", 0.8, True),
    ("Amount", 0.95, True),
)

NO_PADDING = [
    ("VALIGN", (0, 0), (-1, -1), "TOP"),
    ("LEFTPADDING", (0, 0), (-1, -1), 0),
    ("RIGHTPADDING", (0, 0), (-1, -1), 0),
]


def fmt_amount(value: Decimal, currency: str) -> str:
    return f"{value:,.2f} {currency}"


def fmt_date(value) -> str:
    return value.strftime("%d %b %Y")


class InvoicePdfRenderer:

    def render(self, invoice: InvoiceCalculation, contract: Optional[ContractSnapshot] = None) -> bytes:
        buf = io.BytesIO()
        doc = SimpleDocTemplate(
            buf,
            pagesize=A4,
            topMargin=0.5 * inch,
            bottomMargin=0.75 * inch,
            leftMargin=0.6 * inch,
            rightMargin=0.6 * inch,
            title=invoice.invoice_number,
            author=BRAND["company"],
        )

        s = self._build_styles()
        sections = [
            (self._render_header(invoice, s), 14),
            (self._render_meta(invoice, contract, s), 18),
            (self._render_line_items(invoice, s), 10),
            (self._render_totals(invoice, s), 18),
        ]
        if invoice.applied_discounts:
            sections.append((self._render_discounts(invoice, s), 18))
        sections.append((self._render_payment_terms(invoice, s), 22))
        sections.append((self._render_footer(s), 0))

        story: list = []
        for flowables, gap in sections:
            story.extend(flowables)
            if gap:
                story.append(Spacer(1, gap))

        doc.build(story)
        return buf.getvalue()

    def _build_styles(self) -> Dict[str, ParagraphStyle]:
        normal = getSampleStyleSheet()["Normal"]
        styles = {}
        for name, (font, size, colour, align, extra) in STYLE_TABLE.items():
            kwargs = dict(extra)
            if align is not None:
                kwargs["alignment"] = align
            styles[name] = ParagraphStyle(
                name, parent=normal, fontName=font, fontSize=size,
                textColor=BRAND[colour] if colour else colors.white,
                **kwargs,
            )
        return styles

    def _render_header(self, inv: InvoiceCalculation, s: dict) -> list:
        brand = [
            Paragraph(BRAND["company"], s["brand_name"]),
            Paragraph(BRAND["tagline"], s["brand_tag"]),
        ]
        table = Table([[brand, Paragraph("INVOICE", s["invoice_title"])]], colWidths=[3.6 * inch, 3.4 * inch])
        table.setStyle(TableStyle(NO_PADDING))
        return [table, Spacer(1, 6), HRFlowable(width="100%", thickness=2, color=BRAND["primary"])]

    @staticmethod
    def _labelled(pairs: List[Tuple[str, str]], s: dict) -> list:
        out = []
        for label, value in pairs:
            out.append(Paragraph(label.upper(), s["meta_label"]))
            out.append(Paragraph(value, s["meta_value"]))
        return out

    def _render_meta(self, inv: InvoiceCalculation, contract: Optional[ContractSnapshot], s: dict) -> list:
        contract_label = (contract.contract_ref if contract else "") or inv.contract_id
        customer = self._labelled([
            ("Bill to", f"Customer {inv.customer_id}"),
            ("Contract", contract_label),
        ], s)
        invoice = self._labelled([
            ("Invoice no.", inv.invoice_number),
            ("Service period", f"{fmt_date(inv.period_start)} to {fmt_date(inv.period_end)}"),
            ("Issued", fmt_date(inv.invoice_date)),
            ("Payment due", fmt_date(inv.due_date)),
        ], s)
        table = Table([[customer, invoice]], colWidths=[3.6 * inch, 3.4 * inch])
        table.setStyle(TableStyle(NO_PADDING))
        return [table]

    def _render_line_items(self, inv: InvoiceCalculation, s: dict) -> list:
        header = [
            Paragraph(title, s["th_right"] if right else s["th"])
            for title, _, right in LINE_ITEM_COLUMNS
        ]
        rows = [header]
        for item in inv.line_items:
            cells = (
                item.description,
                f"{item.quantity:,.2f}",
                item.unit,
                f"{item.unit_price:,.4f}",
                f"{item.discount_amount:,.2f}",
                f"{item.tax_amount:,.2f}",
                f"{item.total_amount:,.2f}",
            )
            rows.append([
                Paragraph(text, s["body_right"] if right else s["body"])
                for text, (_, _, right) in zip(cells, LINE_ITEM_COLUMNS)
            ])

        table = Table(rows, colWidths=[w * inch for _, w, _ in LINE_ITEM_COLUMNS], repeatRows=1)
        commands = [
            ("BACKGROUND", (0, 0), (-1, 0), BRAND["ink"]),
            ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
            ("TOPPADDING", (0, 0), (-1, -1), 4),
            ("BOTTOMPADDING", (0, 0), (-1, -1), 4),
            ("LINEBELOW", (0, 1), (-1, -1), 0.5, BRAND["rule"]),
        ]
        commands += [
            ("BACKGROUND", (0, row), (-1, row), BRAND["zebra"])
            for row in range(2, len(rows), 2)
        ]
        table.setStyle(TableStyle(commands))

        return [Paragraph(f"Charges ({inv.currency})", s["section_head"]), table]

    def _render_totals(self, inv: InvoiceCalculation, s: dict) -> list:
        lines = [("Subtotal", inv.subtotal)]
        if inv.total_discount:
            lines.append(("Discounts", -inv.total_discount))
        if inv.minimum_charge:
            lines.append(("Monthly minimum top-up", inv.minimum_charge))
        lines += [
            ("Taxable amount", inv.taxable_amount),
            (f"Tax ({inv.tax_rate:.2f}%)", inv.tax_amount),
        ]

        data = [
            [Paragraph(label, s["body_right"]), Paragraph(fmt_amount(value, inv.currency), s["body_right"])]
            for label, value in lines
        ]
        data.append([
            Paragraph("Total Due", s["total_label"]),
            Paragraph(fmt_amount(inv.total_amount, inv.currency), s["total_value"]),
        ])

        table = Table(data, colWidths=[5.0 * inch, 2.0 * inch])
        table.setStyle(TableStyle(NO_PADDING + [
            ("TOPPADDING", (0, 0), (-1, -1), 2),
            ("BOTTOMPADDING", (0, 0), (-1, -1), 2),
            ("LINEABOVE", (1, -1), (1, -1), 1.25, BRAND["primary"]),
        ]))
        return [table]

    def _render_discounts(self, inv: InvoiceCalculation, s: dict) -> list:
        """Every applied discount, one row each, for audit."""
        rows = [[
            Paragraph("Discount", s["th"]),
            Paragraph("Reason", s["th"]),
            Paragraph("Amount", s["th_right"]),
        ]]
        for d in inv.applied_discounts:
            label = f"{d.name} ({d.percentage}%)" if d.percentage is not None else d.name
            rows.append([
                Paragraph(label, s["body"]),
                Paragraph(d.reason, s["body"]),
                Paragraph(f"-{d.amount:,.2f}", s["body_right"]),
            ])

        table = Table(rows, colWidths=[2.4 * inch, 3.3 * inch, 1.3 * inch], repeatRows=1)
        table.setStyle(TableStyle([
            ("BACKGROUND", (0, 0), (-1, 0), BRAND["ink"]),
            ("TEXTCOLOR", (2, 1), (2, -1), BRAND["credit"]),
            ("LINEBELOW", (0, 1), (-1, -1), 0.5, BRAND["rule"]),
            ("TOPPADDING", (0, 0), (-1, -1), 4),
            ("BOTTOMPADDING", (0, 0), (-1, -1), 4),
        ]))
        out = [Paragraph("Applied Discounts", s["section_head"]), table]
        if inv.uncapped_discount > inv.total_discount:
            out.append(Spacer(1, 4))
            out.append(Paragraph(
                f"Discounts offered {fmt_amount(inv.uncapped_discount, inv.currency)}; "
                f"applied {fmt_amount(inv.total_discount, inv.currency)} "
                f"(capped at the charged amount per line).",
                s["body"],
            ))
        return out

    def _render_payment_terms(self, inv: InvoiceCalculation, s: dict) -> list:
        terms_days = (inv.due_date - inv.invoice_date).days
        sep = " &nbsp;&nbsp;|&nbsp;&nbsp; "
        text = sep.join([
            f"<b>Terms:</b> net {terms_days} days",
            f"<b>Pay by:</b> {fmt_date(inv.due_date)}",
            f"<b>Reference:</b> {inv.invoice_number}",
        ])
        return [
            HRFlowable(width="100%", thickness=0.5, color=BRAND["rule"]),
            Spacer(1, 8),
            Paragraph(text, s["body"]),
        ]

    def _render_footer(self, s: dict) -> list:
        contact = " &nbsp;|&nbsp; ".join([BRAND["company"], BRAND["email"], BRAND["website"]])
        return [
            HRFlowable(width="100%", thickness=0.5, color=BRAND["rule"]),
            Spacer(1, 6),
            Paragraph(contact, s["footer"]),
        ]
