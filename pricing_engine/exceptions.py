"""
Pricing engine error taxonomy.

Business-rule failures (NotFoundError, InvalidStateError, PricingGapError,
ValidationError) are never retried. NumberingConflictError and
PersistenceError are transient and retried a bounded number of times before
they reach the caller.
"""


class PricingEngineError(Exception):
    """Base class for all pricing engine errors."""


class NotFoundError(PricingEngineError):
    """Contract, usage period or invoice does not resolve."""


class InvalidStateError(PricingEngineError):
    """Request conflicts with the current state (inactive contract, already invoiced, no usage)."""


class PricingGapError(PricingEngineError):
    """No pricing tier matches a usage record's service type."""

    def __init__(self, service_type: str, quantity):
        self.service_type = service_type
        self.quantity = quantity
        super().__init__(
            f"No pricing tier found for service: {service_type} with quantity: {quantity}"
        )


class ValidationError(PricingEngineError, ValueError):
    """Malformed input (negative quantity, inverted period, bad option)."""


class InvalidRuleError(ValidationError):
    """Pricing rule with an unknown type/action or a malformed condition payload."""


class NumberingConflictError(PricingEngineError):
    """Invoice number already claimed by a concurrent writer."""


class PersistenceError(PricingEngineError):
    """Store call failed after the bounded retry budget."""
