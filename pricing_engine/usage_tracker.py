"""
Pricing Engine — Usage Tracker
==============================
Ingests usage for a contract and stores it with an ingestion-time price
snapshot (unit_price, total_amount = net_amount). The snapshot feeds
monthly spend and analytics; invoicing always re-prices.

Usage:
    tracker = UsageTracker(store)
    tracked = await tracker.track("ctr-1", records)
    tracked = await tracker.track("ctr-1", records, TrackingOptions(auto_calculate_price=False))
"""

from __future__ import annotations

import logging
from datetime import date
from typing import List, Optional, Sequence

from .exceptions import InvalidStateError
from .money import ZERO
from .pricing_types import PricingOptions, TrackedUsage, TrackingOptions, UsageRecord
from .stores import load_contract
from .usage_calculator import UsagePriceCalculator

logger = logging.getLogger("pricing.usage")


class UsageTracker:

    def __init__(self, store, calculator: Optional[UsagePriceCalculator] = None):
        self.store = store
        self.calculator = calculator or UsagePriceCalculator(store)

    async def track(
        self,
        contract_id: str,
        usage_records: Sequence[UsageRecord],
        options: Optional[TrackingOptions] = None,
    ) -> List[TrackedUsage]:
        """
        Validate (optional), price (optional) and persist usage records.
        Nothing is stored if validation or pricing fails for any record.
        """
        options = options or TrackingOptions()
        logger.info("Tracking %d usage records for contract %s", len(usage_records), contract_id)

        contract = None
        if options.validate_contract:
            contract = await load_contract(self.store, contract_id, require_active=True)
            for usage in usage_records:
                if not contract.covers(usage.usage_date.date()):
                    raise InvalidStateError(
                        f"Usage on {usage.usage_date.date()} is outside contract {contract_id} "
                        f"term ({contract.start_date} → {contract.end_date or 'open'})"
                    )

        pending: List[TrackedUsage]
        if options.auto_calculate_price:
            if contract is None:
                contract = await load_contract(self.store, contract_id)
            calculations = await self.calculator.calculate(
                contract, usage_records, PricingOptions(effective_date=date.today()),
            )
            pending = [
                TrackedUsage(
                    contract_id=contract_id,
                    usage=usage,
                    unit_price=calc.unit_price,
                    total_amount=calc.net_amount,
                )
                for usage, calc in zip(usage_records, calculations)
            ]
        else:
            pending = [
                TrackedUsage(contract_id=contract_id, usage=usage, unit_price=ZERO, total_amount=ZERO)
                for usage in usage_records
            ]

        tracked = await self.store.insert_usage(contract_id, pending)
        logger.info("Tracked %d usage records for contract %s", len(tracked), contract_id)
        return tracked
