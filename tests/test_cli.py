"""Tests for the command line — fixture-backed price and invoice previews."""
from __future__ import annotations

import json

import pytest

from pricing_engine.__main__ import main

FIXTURE = {
    "contracts": [
        {
            "id": "ctr-1",
            "tenantId": "t1",
            "customerId": "cust-1",
            "status": "active",
            "startDate": "2025-01-01",
            "currency": "TRY",
            "taxRate": 18,
            "paymentTermsDays": 30,
            "contractRef": "CTR-2025-001",
            "pricingTiers": [
                {"serviceName": "storage", "unitPrice": 10, "unit": "pallet_day", "maxQuantity": 1000},
                {"serviceName": "handling", "unitPrice": 2.5, "unit": "pallet", "setupFee": 150},
            ],
        },
    ],
    "rules": [
        {
            "tenantId": "t1",
            "id": "summer",
            "name": "Summer Promotion",
            "type": "seasonal",
            "conditions": {"months": [6, 7, 8]},
            "action": "discount_percentage",
            "value": 10,
        },
    ],
    "usage": [
        {"contractId": "ctr-1", "serviceType": "storage", "quantity": 100,
         "unit": "pallet_day", "usageDate": "2026-07-02T10:00:00Z"},
        {"contractId": "ctr-1", "serviceType": "handling", "quantity": 20,
         "unit": "pallet", "usageDate": "2026-07-05T10:00:00Z"},
    ],
}


@pytest.fixture
def fixture_file(tmp_path):
    path = tmp_path / "billing.json"
    path.write_text(json.dumps(FIXTURE), encoding="utf-8")
    return path


def test_price_command(fixture_file, tmp_path, capsys) -> None:
    usage = tmp_path / "usage.json"
    usage.write_text(json.dumps([
        {"serviceType": "storage", "quantity": 100, "unit": "pallet_day",
         "usageDate": "2026-07-15T08:00:00Z"},
    ]), encoding="utf-8")

    code = main([
        "price", "--fixture", str(fixture_file), "--contract", "ctr-1",
        "--usage", str(usage), "--effective-date", "2026-07-31",
    ])

    out = capsys.readouterr().out
    assert code == 0
    assert "Summer Promotion: 100.00" in out
    assert "900.00" in out


def test_invoice_command_writes_pdf(fixture_file, tmp_path, capsys) -> None:
    pdf = tmp_path / "invoice.pdf"
    code = main([
        "invoice", "--fixture", str(fixture_file), "--contract", "ctr-1",
        "--start", "2026-07-01", "--end", "2026-07-31",
        "--invoice-date", "2026-08-01", "--pdf", str(pdf),
    ])

    out = capsys.readouterr().out
    assert code == 0
    assert "Invoice INV-202608-00001" in out
    assert "due 2026-08-31" in out
    assert pdf.read_bytes().startswith(b"%PDF-")


def test_unknown_contract_exits_with_error(fixture_file) -> None:
    code = main([
        "invoice", "--fixture", str(fixture_file), "--contract", "nope",
        "--start", "2026-07-01", "--end", "2026-07-31",
    ])
    assert code == 1


def test_malformed_usage_exits_with_error(fixture_file, tmp_path) -> None:
    usage = tmp_path / "usage.json"
    usage.write_text(json.dumps([{"quantity": 5, "usageDate": "2026-07-01T10:00:00Z"}]), encoding="utf-8")
    code = main([
        "price", "--fixture", str(fixture_file), "--contract", "ctr-1", "--usage", str(usage),
    ])
    assert code == 1


def test_source_is_required() -> None:
    with pytest.raises(SystemExit):
        main(["invoice", "--contract", "ctr-1", "--start", "2026-07-01", "--end", "2026-07-31"])
