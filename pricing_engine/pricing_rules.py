"""
Pricing Engine — Rule Evaluator
===============================
Discount / override rules applied on top of tier pricing.

Each rule type carries a typed condition object, parsed and validated when
the rule is built. Unknown rule types, unknown actions and malformed
condition payloads raise InvalidRuleError at load time instead of silently
never matching.

Scope (active flag + validity window) is checked once per run by
rules_in_scope(); eligibility is re-derived per usage record. Priority only
orders evaluation: every eligible rule contributes its discount.

Usage:
    rules = rules_in_scope(store_rules, effective_date)
    evaluator = RuleEvaluator(rules)
    discounts = evaluator.evaluate(usage, base_price, RuleContext(contract, as_of, spend))
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .billing_models import PricingRuleRow, RuleAction, RuleType
from .exceptions import InvalidRuleError
from .money import ZERO, money, percent_of, to_decimal
from .pricing_types import ContractSnapshot, PricingDiscount, UsageRecord, parse_date

logger = logging.getLogger("pricing.rules")


@dataclass(frozen=True)
class RuleContext:
    """Per-run facts the conditions are checked against."""
    contract: ContractSnapshot
    as_of: date
    monthly_spend: Optional[Decimal] = None   # only loaded when a volume rule is in scope
    currency: str = ""


# ─────────────────────────────────────────────
# Typed conditions
# ─────────────────────────────────────────────

def _int_list(raw, lo: int, hi: int, key: str) -> Tuple[int, ...]:
    if not isinstance(raw, (list, tuple)) or not raw:
        raise InvalidRuleError(f"'{key}' must be a non-empty list")
    values = []
    for item in raw:
        if isinstance(item, bool) or not isinstance(item, int) or not lo <= item <= hi:
            raise InvalidRuleError(f"'{key}' entries must be integers in {lo}..{hi} (got {item!r})")
        values.append(item)
    return tuple(values)


def _non_negative(raw, key: str) -> Decimal:
    try:
        value = to_decimal(raw)
    except (ArithmeticError, TypeError, ValueError) as e:
        raise InvalidRuleError(f"'{key}' must be numeric (got {raw!r})") from e
    if value < 0:
        raise InvalidRuleError(f"'{key}' must be >= 0 (got {value})")
    return value


def _take(payload: Dict[str, Any], allowed: Dict[str, str], required: Sequence[str] = ()) -> Dict[str, Any]:
    """
    Normalise camelCase/snake_case keys to canonical names and reject
    anything not listed in `allowed` (alias -> canonical).
    """
    out: Dict[str, Any] = {}
    for key, value in payload.items():
        canonical = allowed.get(key)
        if canonical is None:
            raise InvalidRuleError(f"Unknown condition key '{key}'")
        out[canonical] = value
    missing = [k for k in required if out.get(k) is None]
    if missing:
        raise InvalidRuleError(f"Missing condition key(s): {', '.join(missing)}")
    return out


@dataclass(frozen=True)
class VolumeCondition:
    min_monthly_spend: Decimal

    @classmethod
    def parse(cls, payload: Dict[str, Any]) -> VolumeCondition:
        data = _take(
            payload,
            {"minMonthlySpend": "min_monthly_spend", "min_monthly_spend": "min_monthly_spend"},
            required=("min_monthly_spend",),
        )
        return cls(_non_negative(data["min_monthly_spend"], "minMonthlySpend"))

    def matches(self, usage: UsageRecord, ctx: RuleContext) -> bool:
        if ctx.monthly_spend is None:
            return False
        return ctx.monthly_spend >= self.min_monthly_spend

    def to_dict(self) -> Dict[str, Any]:
        return {"minMonthlySpend": str(self.min_monthly_spend)}


@dataclass(frozen=True)
class LoyaltyCondition:
    min_contract_months: int

    @classmethod
    def parse(cls, payload: Dict[str, Any]) -> LoyaltyCondition:
        data = _take(
            payload,
            {"minContractMonths": "min_contract_months", "min_contract_months": "min_contract_months"},
            required=("min_contract_months",),
        )
        months = data["min_contract_months"]
        if isinstance(months, bool) or not isinstance(months, int) or months < 0:
            raise InvalidRuleError(f"'minContractMonths' must be a non-negative integer (got {months!r})")
        return cls(months)

    def matches(self, usage: UsageRecord, ctx: RuleContext) -> bool:
        return ctx.contract.age_in_months(ctx.as_of) >= self.min_contract_months

    def to_dict(self) -> Dict[str, Any]:
        return {"minContractMonths": self.min_contract_months}


@dataclass(frozen=True)
class SeasonalCondition:
    months: Tuple[int, ...]

    @classmethod
    def parse(cls, payload: Dict[str, Any]) -> SeasonalCondition:
        data = _take(payload, {"months": "months"}, required=("months",))
        return cls(_int_list(data["months"], 1, 12, "months"))

    def matches(self, usage: UsageRecord, ctx: RuleContext) -> bool:
        return usage.usage_date.month in self.months

    def to_dict(self) -> Dict[str, Any]:
        return {"months": list(self.months)}


@dataclass(frozen=True)
class TimeOfDayCondition:
    hours: Tuple[int, ...]   # UTC hour of usage_date

    @classmethod
    def parse(cls, payload: Dict[str, Any]) -> TimeOfDayCondition:
        data = _take(payload, {"hours": "hours"}, required=("hours",))
        return cls(_int_list(data["hours"], 0, 23, "hours"))

    def matches(self, usage: UsageRecord, ctx: RuleContext) -> bool:
        return usage.usage_date.hour in self.hours

    def to_dict(self) -> Dict[str, Any]:
        return {"hours": list(self.hours)}


@dataclass(frozen=True)
class BundleCondition:
    """Bundled services are informational; bundle matching is not evaluated yet."""
    services: Tuple[str, ...] = ()

    @classmethod
    def parse(cls, payload: Dict[str, Any]) -> BundleCondition:
        data = _take(payload, {"services": "services"})
        services = data.get("services") or ()
        if not isinstance(services, (list, tuple)) or not all(isinstance(s, str) for s in services):
            raise InvalidRuleError("'services' must be a list of service names")
        return cls(tuple(services))

    def matches(self, usage: UsageRecord, ctx: RuleContext) -> bool:
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {"services": list(self.services)} if self.services else {}


@dataclass(frozen=True)
class PromotionalCondition:
    code: Optional[str] = None

    @classmethod
    def parse(cls, payload: Dict[str, Any]) -> PromotionalCondition:
        data = _take(payload, {"code": "code", "promoCode": "code", "promo_code": "code"})
        code = data.get("code")
        if code is not None and not isinstance(code, str):
            raise InvalidRuleError(f"'code' must be a string (got {code!r})")
        return cls(code)

    def matches(self, usage: UsageRecord, ctx: RuleContext) -> bool:
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code} if self.code else {}


CONDITION_TYPES: Dict[RuleType, Any] = {
    RuleType.VOLUME_DISCOUNT: VolumeCondition,
    RuleType.LOYALTY: LoyaltyCondition,
    RuleType.SEASONAL: SeasonalCondition,
    RuleType.TIME_BASED: TimeOfDayCondition,
    RuleType.SERVICE_BUNDLE: BundleCondition,
    RuleType.PROMOTIONAL: PromotionalCondition,
}

if set(CONDITION_TYPES) != set(RuleType):
    raise RuntimeError(f"Rule types without a condition parser: {set(RuleType) - set(CONDITION_TYPES)}")


# ─────────────────────────────────────────────
# Actions
# ─────────────────────────────────────────────

def _percentage(base: Decimal, value: Decimal, currency: str) -> Decimal:
    return percent_of(base, value, currency)


def _fixed(base: Decimal, value: Decimal, currency: str) -> Decimal:
    return money(value, currency)


def _override(base: Decimal, value: Decimal, currency: str) -> Decimal:
    return money(max(ZERO, base - value), currency)


def _waive(base: Decimal, value: Decimal, currency: str) -> Decimal:
    return money(base, currency)


ACTIONS: Dict[RuleAction, Callable[[Decimal, Decimal, str], Decimal]] = {
    RuleAction.DISCOUNT_PERCENTAGE: _percentage,
    RuleAction.DISCOUNT_FIXED: _fixed,
    RuleAction.PRICE_OVERRIDE: _override,
    RuleAction.WAIVE_FEE: _waive,
}


# ─────────────────────────────────────────────
# Rule
# ─────────────────────────────────────────────

@dataclass(frozen=True)
class PricingRule:
    id: str
    name: str
    type: RuleType
    condition: Any
    action: RuleAction
    value: Decimal
    priority: int = 100
    active: bool = True
    valid_from: Optional[date] = None
    valid_until: Optional[date] = None

    @classmethod
    def build(
        cls,
        id: str,
        name: str,
        rule_type,
        conditions: Optional[Dict[str, Any]],
        action,
        value,
        priority: int = 100,
        active: bool = True,
        valid_from=None,
        valid_until=None,
    ) -> PricingRule:
        try:
            rule_type = RuleType(rule_type)
        except ValueError as e:
            raise InvalidRuleError(f"Rule {id}: unknown rule type {rule_type!r}") from e
        try:
            action = RuleAction(action)
        except ValueError as e:
            raise InvalidRuleError(f"Rule {id}: unknown action {action!r}") from e
        if conditions is not None and not isinstance(conditions, dict):
            raise InvalidRuleError(f"Rule {id}: conditions must be an object")
        try:
            condition = CONDITION_TYPES[rule_type].parse(conditions or {})
        except InvalidRuleError as e:
            raise InvalidRuleError(f"Rule {id} ({rule_type.value}): {e}") from e

        valid_from = parse_date(valid_from)
        valid_until = parse_date(valid_until)
        if valid_from and valid_until and valid_until < valid_from:
            raise InvalidRuleError(f"Rule {id}: validUntil {valid_until} before validFrom {valid_from}")

        return cls(
            id=str(id),
            name=name,
            type=rule_type,
            condition=condition,
            action=action,
            value=_non_negative(value, "value"),
            priority=int(priority),
            active=bool(active),
            valid_from=valid_from,
            valid_until=valid_until,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> PricingRule:
        try:
            return cls.build(
                id=data["id"],
                name=data["name"],
                rule_type=data["type"],
                conditions=data.get("conditions"),
                action=data["action"],
                value=data["value"],
                priority=data.get("priority", 100),
                active=data.get("active", True),
                valid_from=data.get("validFrom", data.get("valid_from")),
                valid_until=data.get("validUntil", data.get("valid_until")),
            )
        except KeyError as e:
            raise InvalidRuleError(f"Pricing rule missing field {e}") from e

    @classmethod
    def from_row(cls, row: PricingRuleRow) -> PricingRule:
        return cls.build(
            id=row.id,
            name=row.name,
            rule_type=row.rule_type,
            conditions=row.conditions,
            action=row.action,
            value=row.value,
            priority=row.priority,
            active=row.active,
            valid_from=row.valid_from,
            valid_until=row.valid_until,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "conditions": self.condition.to_dict(),
            "action": self.action.value,
            "value": str(self.value),
            "priority": self.priority,
            "active": self.active,
            "validFrom": self.valid_from.isoformat() if self.valid_from else None,
            "validUntil": self.valid_until.isoformat() if self.valid_until else None,
        }

    def in_scope(self, on: date) -> bool:
        if not self.active:
            return False
        if self.valid_from and on < self.valid_from:
            return False
        if self.valid_until and on > self.valid_until:
            return False
        return True

    def discount_for(self, base_price: Decimal, currency: str = "") -> Decimal:
        return ACTIONS[self.action](base_price, self.value, currency)


def rules_in_scope(rules: Sequence[PricingRule], on: date) -> List[PricingRule]:
    """Active rules valid on `on`, ordered by priority (stable for equal priority)."""
    return sorted((r for r in rules if r.in_scope(on)), key=lambda r: r.priority)


# ─────────────────────────────────────────────
# Evaluator
# ─────────────────────────────────────────────

@dataclass
class RuleEvaluator:
    """Evaluates an already-scoped rule set against individual usage records."""
    rules: List[PricingRule] = field(default_factory=list)

    @property
    def needs_monthly_spend(self) -> bool:
        return any(r.type == RuleType.VOLUME_DISCOUNT for r in self.rules)

    def evaluate(
        self,
        usage: UsageRecord,
        base_price: Decimal,
        ctx: RuleContext,
    ) -> List[PricingDiscount]:
        discounts: List[PricingDiscount] = []
        for rule in self.rules:
            if not rule.condition.matches(usage, ctx):
                continue
            amount = rule.discount_for(base_price, ctx.currency)
            if amount <= 0:
                continue
            discounts.append(PricingDiscount(
                name=rule.name,
                type=rule.type.value,
                amount=amount,
                percentage=rule.value if rule.action == RuleAction.DISCOUNT_PERCENTAGE else None,
                reason=f"Applied rule: {rule.name}",
            ))
            logger.debug("Rule %s applied to %s: -%s", rule.id, usage.service_type, amount)
        return discounts
