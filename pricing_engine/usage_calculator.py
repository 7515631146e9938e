"""
Pricing Engine — Usage Price Calculator
=======================================
Prices usage records against a contract's tiers and the tenant's rules.

Per record:
  1. Resolve the tier (substring match, range, last-candidate fallback)
  2. base_price = tier unit price × quantity
  3. Tier discount_percentage → "Tier Discount"
  4. Eligible rule discounts (when apply_discounts), all stacked
  5. net_amount = max(0, subtotal − total_discount)

Rules are loaded and scoped once per batch. The customer's monthly spend is
only fetched when a volume rule is in scope.

Usage:
    calc = UsagePriceCalculator(store)
    results = await calc.calculate(contract, usage_records, PricingOptions())
"""

from __future__ import annotations

import logging
from datetime import date
from typing import List, Optional, Sequence, Set

from .config import settings
from .money import ZERO, money, percent_of, unit_price
from .pricing_rules import RuleContext, RuleEvaluator, rules_in_scope
from .pricing_types import (
    ContractSnapshot, PricingCalculation, PricingDiscount, PricingOptions,
    PricingTier, UsageRecord,
)
from .tier_resolver import resolve_tier_position, tier_info

logger = logging.getLogger("pricing.calculator")


def contract_currency(contract: ContractSnapshot) -> str:
    return contract.currency or settings.DEFAULT_CURRENCY


class UsagePriceCalculator:
    """Batch pricing for one contract."""

    def __init__(self, store):
        self.store = store

    async def calculate(
        self,
        contract: ContractSnapshot,
        usage_records: Sequence[UsageRecord],
        options: Optional[PricingOptions] = None,
    ) -> List[PricingCalculation]:
        """
        Price every record. A PricingGapError on any record aborts the whole
        batch; no partial result is returned.
        """
        options = options or PricingOptions()
        as_of = options.effective_date or date.today()
        currency = contract_currency(contract)

        evaluator = RuleEvaluator()
        monthly_spend = None
        if options.apply_discounts:
            rules = await self.store.get_active_pricing_rules(contract.tenant_id, as_of)
            evaluator = RuleEvaluator(rules_in_scope(rules, as_of))
            if evaluator.needs_monthly_spend:
                monthly_spend = await self.store.get_monthly_spend(contract.customer_id, as_of)

        ctx = RuleContext(
            contract=contract,
            as_of=as_of,
            monthly_spend=monthly_spend,
            currency=currency,
        )
        setup_charged: Optional[Set[int]] = set() if options.include_setup_fees else None

        calculations = [
            self.price_usage(usage, contract.pricing_tiers, evaluator, ctx, setup_charged)
            for usage in usage_records
        ]

        total = sum((c.net_amount for c in calculations), ZERO)
        logger.info(
            "Priced %d usage records for contract %s: total %s %s (%d rules in scope)",
            len(calculations), contract.id, total, currency, len(evaluator.rules),
        )
        return calculations

    def price_usage(
        self,
        usage: UsageRecord,
        tiers: Sequence[PricingTier],
        evaluator: RuleEvaluator,
        ctx: RuleContext,
        setup_charged: Optional[Set[int]] = None,
    ) -> PricingCalculation:
        """
        Price a single record. `setup_charged` holds positions in `tiers`
        whose setup fee was already added in this batch; None disables
        setup fees.
        """
        position, tier = resolve_tier_position(tiers, usage)
        currency = ctx.currency

        base_price = money(tier.unit_price * usage.quantity, currency)

        discounts: List[PricingDiscount] = []
        if tier.discount_percentage and tier.discount_percentage > 0:
            discounts.append(PricingDiscount(
                name="Tier Discount",
                type="tier",
                amount=percent_of(base_price, tier.discount_percentage, currency),
                percentage=tier.discount_percentage,
                reason=f"Volume discount for {tier.service_name}",
            ))

        discounts.extend(evaluator.evaluate(usage, base_price, ctx))

        setup_fee = ZERO
        if setup_charged is not None and tier.setup_fee and position not in setup_charged:
            setup_fee = money(tier.setup_fee, currency)
            setup_charged.add(position)

        subtotal = base_price + setup_fee
        total_discount = sum((d.amount for d in discounts), ZERO)
        net_amount = max(ZERO, subtotal - total_discount)

        logger.debug(
            "%s qty=%s tier=%s base=%s discount=%s net=%s",
            usage.service_type, usage.quantity, tier.service_name,
            base_price, total_discount, net_amount,
        )

        return PricingCalculation(
            service_type=usage.service_type,
            quantity=usage.quantity,
            unit=usage.unit,
            base_price=base_price,
            unit_price=unit_price(tier.unit_price),
            subtotal=subtotal,
            discounts=discounts,
            total_discount=total_discount,
            net_amount=net_amount,
            applied_rules=[d.name for d in discounts],
            tier_info=tier_info(tier),
            setup_fee=setup_fee,
        )
