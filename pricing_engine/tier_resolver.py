"""
Pricing Engine — Tier Resolver
==============================
Selects the single pricing tier that applies to a usage record.

Matching is deliberately permissive: a tier is a candidate when its service
name contains the usage service type, or vice versa (case-insensitive),
because upstream service labels are not normalised. Among candidates the
first whose quantity range contains the quantity wins; if none does, the
last candidate is used as an open-ended tier.

Usage:
    tier = find_matching_tier(contract.pricing_tiers, "storage", Decimal("120"))
    tier = resolve_tier(contract.pricing_tiers, usage)   # raises PricingGapError
    index, tier = resolve_tier_position(contract.pricing_tiers, usage)
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

from .exceptions import PricingGapError
from .pricing_types import PricingTier, TierInfo, UsageRecord

logger = logging.getLogger("pricing.tiers")


def service_matches(tier_name: str, service_type: str) -> bool:
    tier_name = tier_name.lower()
    service_type = service_type.lower()
    return service_type in tier_name or tier_name in service_type


def candidate_positions(tiers: Sequence[PricingTier], service_type: str) -> List[int]:
    """Indexes of tiers whose service name fuzzily matches, in contract order."""
    return [i for i, t in enumerate(tiers) if service_matches(t.service_name, service_type)]


def candidate_tiers(tiers: Sequence[PricingTier], service_type: str) -> List[PricingTier]:
    """Tiers whose service name fuzzily matches, in contract order."""
    return [tiers[i] for i in candidate_positions(tiers, service_type)]


def find_matching_position(
    tiers: Sequence[PricingTier],
    service_type: str,
    quantity: Decimal,
) -> Optional[int]:
    """
    Index into `tiers` of the applicable tier. Returns None only when no
    tier matches the service at all. Quantities beyond every range fall
    back to the last candidate.
    """
    positions = candidate_positions(tiers, service_type)
    if not positions:
        return None

    for i in positions:
        if tiers[i].contains(quantity):
            return i

    fallback = positions[-1]
    logger.debug(
        "Quantity %s for %s outside every tier range, using last tier %s (#%d)",
        quantity, service_type, tiers[fallback].service_name, fallback,
    )
    return fallback


def find_matching_tier(
    tiers: Sequence[PricingTier],
    service_type: str,
    quantity: Decimal,
) -> Optional[PricingTier]:
    position = find_matching_position(tiers, service_type, quantity)
    return None if position is None else tiers[position]


def resolve_tier_position(tiers: Sequence[PricingTier], usage: UsageRecord) -> Tuple[int, PricingTier]:
    """(index, tier) for the record. Identical tiers stay distinct by index."""
    position = find_matching_position(tiers, usage.service_type, usage.quantity)
    if position is None:
        raise PricingGapError(usage.service_type, usage.quantity)
    return position, tiers[position]


def resolve_tier(tiers: Sequence[PricingTier], usage: UsageRecord) -> PricingTier:
    return resolve_tier_position(tiers, usage)[1]


def tier_info(tier: PricingTier) -> TierInfo:
    return TierInfo(
        tier_name=tier.service_name,
        min_quantity=tier.min_quantity,
        max_quantity=tier.max_quantity,
    )
