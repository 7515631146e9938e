"""
Pricing Engine — Pricing Analytics
==================================
Read-only revenue report for a contract over a period, built from the
ingestion-time price snapshots on tracked usage (not re-priced, so it is
indicative rather than authoritative).

Usage:
    analysis = await PricingAnalytics(store).analyze("ctr-1", date(2026, 7, 1), date(2026, 7, 31))
    analysis.top_services[0].service, analysis.trends.monthly_projection
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional

from .exceptions import ValidationError
from .money import HUNDRED, ZERO, money
from .stores import load_contract
from .usage_calculator import contract_currency

TOP_SERVICES = 5


@dataclass(frozen=True)
class ServiceUsage:
    quantity: Decimal
    revenue: Decimal


@dataclass(frozen=True)
class TopService:
    service: str
    revenue: Decimal
    percentage: Decimal


@dataclass(frozen=True)
class Trends:
    daily_average: Decimal
    weekly_average: Decimal
    monthly_projection: Decimal   # daily average × 30


@dataclass(frozen=True)
class PricingAnalysis:
    contract_id: str
    period_start: date
    period_end: date
    currency: str
    total_revenue: Decimal
    usage_by_service: Dict[str, ServiceUsage] = field(default_factory=dict)
    top_services: List[TopService] = field(default_factory=list)
    trends: Optional[Trends] = None


class PricingAnalytics:

    def __init__(self, store):
        self.store = store

    async def analyze(self, contract_id: str, period_start: date, period_end: date) -> PricingAnalysis:
        if period_end < period_start:
            raise ValidationError(f"Period end {period_end} is before start {period_start}")

        contract = await load_contract(self.store, contract_id)
        currency = contract_currency(contract)
        tracked = await self.store.get_usage(contract_id, period_start, period_end)

        quantities: Dict[str, Decimal] = {}
        revenues: Dict[str, Decimal] = {}
        for t in tracked:
            service = t.usage.service_type
            quantities[service] = quantities.get(service, ZERO) + t.usage.quantity
            revenues[service] = revenues.get(service, ZERO) + t.total_amount

        total_revenue = sum(revenues.values(), ZERO)
        usage_by_service = {
            service: ServiceUsage(quantity=quantities[service], revenue=revenues[service])
            for service in quantities
        }

        ranked = sorted(revenues.items(), key=lambda kv: kv[1], reverse=True)[:TOP_SERVICES]
        top_services = [
            TopService(
                service=service,
                revenue=revenue,
                percentage=(revenue / total_revenue * HUNDRED).quantize(Decimal("0.01"))
                if total_revenue else ZERO,
            )
            for service, revenue in ranked
        ]

        days = (period_end - period_start).days + 1
        daily = money(total_revenue / days, currency)
        trends = Trends(
            daily_average=daily,
            weekly_average=money(daily * 7, currency),
            monthly_projection=money(daily * 30, currency),
        )

        return PricingAnalysis(
            contract_id=contract_id,
            period_start=period_start,
            period_end=period_end,
            currency=currency,
            total_revenue=total_revenue,
            usage_by_service=usage_by_service,
            top_services=top_services,
            trends=trends,
        )
