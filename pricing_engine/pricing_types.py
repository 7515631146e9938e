"""
Pricing Engine — Calculation Types
==================================
Plain dataclasses passed between the tier resolver, rule evaluator, usage
calculator and invoice generator. ORM rows are converted into these at the
store boundary so the calculation code never touches a session.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

from .billing_models import ContractStatus
from .exceptions import ValidationError
from .money import ZERO, optional_decimal, to_decimal


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes (e.g. read back from SQLite) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_datetime(value) -> datetime:
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    return as_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))


def parse_date(value) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _pick(data: Dict[str, Any], *keys: str, default=None):
    """First present key. Tier and usage payloads arrive in camelCase or snake_case."""
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


# ─────────────────────────────────────────────
# Contract inputs
# ─────────────────────────────────────────────

@dataclass(frozen=True)
class PricingTier:
    """Quantity-bounded unit price for a named service."""
    service_name: str
    unit_price: Decimal
    unit: str
    min_quantity: Decimal = ZERO
    max_quantity: Optional[Decimal] = None   # None (or 0) = open-ended
    setup_fee: Optional[Decimal] = None
    discount_percentage: Optional[Decimal] = None
    notes: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> PricingTier:
        name = _pick(data, "serviceName", "service_name")
        if not isinstance(name, str):
            raise ValidationError(f"Pricing tier without a service name: {data!r}")
        return cls(
            service_name=name,
            unit_price=to_decimal(_pick(data, "unitPrice", "unit_price", default=0)),
            unit=_pick(data, "unit", default="unit"),
            min_quantity=to_decimal(_pick(data, "minQuantity", "min_quantity", default=0)),
            max_quantity=optional_decimal(_pick(data, "maxQuantity", "max_quantity")),
            setup_fee=optional_decimal(_pick(data, "setupFee", "setup_fee")),
            discount_percentage=optional_decimal(
                _pick(data, "discountPercentage", "discount_percentage")
            ),
            notes=_pick(data, "notes", default=""),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "serviceName": self.service_name,
            "unitPrice": str(self.unit_price),
            "unit": self.unit,
            "minQuantity": str(self.min_quantity),
        }
        if self.max_quantity is not None:
            data["maxQuantity"] = str(self.max_quantity)
        if self.setup_fee is not None:
            data["setupFee"] = str(self.setup_fee)
        if self.discount_percentage is not None:
            data["discountPercentage"] = str(self.discount_percentage)
        if self.notes:
            data["notes"] = self.notes
        return data

    def contains(self, quantity: Decimal) -> bool:
        if quantity < self.min_quantity:
            return False
        return not self.max_quantity or quantity <= self.max_quantity


@dataclass(frozen=True)
class ContractSnapshot:
    """Read-only view of a billing contract."""
    id: str
    tenant_id: str
    customer_id: str
    status: ContractStatus
    start_date: date
    end_date: Optional[date] = None
    currency: Optional[str] = None
    monthly_minimum: Optional[Decimal] = None
    tax_rate: Optional[Decimal] = None       # percent
    payment_terms_days: Optional[int] = None
    pricing_tiers: Tuple[PricingTier, ...] = ()
    contract_ref: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> ContractSnapshot:
        return cls(
            id=str(data["id"]),
            tenant_id=str(_pick(data, "tenantId", "tenant_id")),
            customer_id=str(_pick(data, "customerId", "customer_id")),
            status=ContractStatus(_pick(data, "status", default="draft")),
            start_date=parse_date(_pick(data, "startDate", "start_date")),
            end_date=parse_date(_pick(data, "endDate", "end_date")),
            currency=_pick(data, "currency"),
            monthly_minimum=optional_decimal(_pick(data, "monthlyMinimum", "monthly_minimum")),
            tax_rate=optional_decimal(_pick(data, "taxRate", "tax_rate")),
            payment_terms_days=_pick(data, "paymentTermsDays", "payment_terms_days"),
            pricing_tiers=tuple(
                PricingTier.from_dict(t)
                for t in _pick(data, "pricingTiers", "pricing_tiers", default=[])
            ),
            contract_ref=_pick(data, "contractRef", "contract_ref", default=""),
        )

    @property
    def is_active(self) -> bool:
        return self.status == ContractStatus.ACTIVE

    def covers(self, on: date) -> bool:
        """True if `on` falls inside the contract's start/end window."""
        if on < self.start_date:
            return False
        return self.end_date is None or on <= self.end_date

    def is_billable(self, on: date) -> bool:
        return self.is_active and self.covers(on)

    def age_in_months(self, as_of: date) -> int:
        """Whole calendar months since start (day of month ignored)."""
        return (as_of.year - self.start_date.year) * 12 + (as_of.month - self.start_date.month)


# ─────────────────────────────────────────────
# Usage
# ─────────────────────────────────────────────

@dataclass(frozen=True)
class UsageRecord:
    """One metered consumption event."""
    service_type: str
    quantity: Decimal
    unit: str
    usage_date: datetime
    location: Optional[str] = None
    reference: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not isinstance(self.service_type, str) or not self.service_type.strip():
            raise ValidationError(f"Usage service_type is required (got {self.service_type!r})")

        if self.quantity is None:
            raise ValidationError(f"Usage quantity is required for {self.service_type}")
        try:
            quantity = to_decimal(self.quantity)
        except (InvalidOperation, TypeError, ValueError) as e:
            raise ValidationError(
                f"Usage quantity must be numeric (got {self.quantity!r} for {self.service_type})"
            ) from e
        if not quantity.is_finite():
            raise ValidationError(f"Usage quantity must be finite (got {quantity} for {self.service_type})")
        if quantity < 0:
            raise ValidationError(
                f"Usage quantity must be >= 0 (got {quantity} for {self.service_type})"
            )

        if self.usage_date is None or self.usage_date == "":
            raise ValidationError(f"Usage date is required for {self.service_type}")
        try:
            usage_date = parse_datetime(self.usage_date)
        except (TypeError, ValueError) as e:
            raise ValidationError(
                f"Usage date {self.usage_date!r} is not an ISO-8601 timestamp"
            ) from e

        object.__setattr__(self, "quantity", quantity)
        object.__setattr__(self, "usage_date", usage_date)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> UsageRecord:
        """Raw payload values; coercion and validation happen in __post_init__."""
        return cls(
            service_type=_pick(data, "serviceType", "service_type"),
            quantity=_pick(data, "quantity"),
            unit=_pick(data, "unit", default="unit"),
            usage_date=_pick(data, "usageDate", "usage_date"),
            location=_pick(data, "location"),
            reference=_pick(data, "reference"),
            metadata=dict(_pick(data, "metadata", default={})),
        )


@dataclass(frozen=True)
class TrackedUsage:
    """Persisted usage with the price snapshot taken at ingestion."""
    contract_id: str
    usage: UsageRecord
    unit_price: Decimal = ZERO
    total_amount: Decimal = ZERO
    id: Optional[int] = None


# ─────────────────────────────────────────────
# Calculation results
# ─────────────────────────────────────────────

@dataclass(frozen=True)
class PricingDiscount:
    """One named discount, kept individually for audit."""
    name: str
    type: str
    amount: Decimal
    reason: str
    percentage: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type,
            "amount": str(self.amount),
            "percentage": str(self.percentage) if self.percentage is not None else None,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class TierInfo:
    tier_name: str
    min_quantity: Decimal
    max_quantity: Optional[Decimal] = None


@dataclass
class PricingCalculation:
    """Price breakdown for a single usage record."""
    service_type: str
    quantity: Decimal
    unit: str
    base_price: Decimal
    unit_price: Decimal
    subtotal: Decimal
    discounts: List[PricingDiscount] = field(default_factory=list)
    total_discount: Decimal = ZERO
    net_amount: Decimal = ZERO
    applied_rules: List[str] = field(default_factory=list)
    tier_info: Optional[TierInfo] = None
    setup_fee: Decimal = ZERO


@dataclass(frozen=True)
class InvoiceLineItem:
    description: str
    service_type: str
    quantity: Decimal
    unit: str
    unit_price: Decimal
    subtotal: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def net_amount(self) -> Decimal:
        return self.subtotal - self.discount_amount


@dataclass(frozen=True)
class ServiceSummary:
    quantity: Decimal
    amount: Decimal


@dataclass(frozen=True)
class InvoiceCalculation:
    """Invoice for one contract and billing period. Never mutated after construction."""
    invoice_number: str
    contract_id: str
    customer_id: str
    tenant_id: str
    period_start: date
    period_end: date
    invoice_date: date
    due_date: date
    line_items: Tuple[InvoiceLineItem, ...]
    subtotal: Decimal
    total_discount: Decimal
    taxable_amount: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    currency: str
    applied_discounts: Tuple[PricingDiscount, ...] = ()
    summary_by_service: Dict[str, ServiceSummary] = field(default_factory=dict)
    minimum_charge: Decimal = ZERO

    @property
    def uncapped_discount(self) -> Decimal:
        """Sum of every applied discount. Exceeds total_discount when a line was capped at its subtotal."""
        return sum((d.amount for d in self.applied_discounts), ZERO)


# ─────────────────────────────────────────────
# Options
# ─────────────────────────────────────────────

@dataclass
class PricingOptions:
    """
    apply_minimum and prorated only matter when the calculation feeds an
    invoice; per-record pricing ignores them.
    """
    apply_discounts: bool = True
    apply_minimum: bool = True
    include_setup_fees: bool = False
    prorated: bool = False
    effective_date: Optional[date] = None


@dataclass
class InvoiceOptions:
    include_unbilled: bool = False
    apply_minimum: bool = True
    prorated: bool = False
    due_in_days: Optional[int] = None
    persist: bool = True


@dataclass
class TrackingOptions:
    auto_calculate_price: bool = True
    validate_contract: bool = True
