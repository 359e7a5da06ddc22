"""Exception taxonomy for the point-of-sale engine."""

from __future__ import annotations


class ConfigurationError(ValueError):
    """Raised for programmer or configuration mistakes that must not be defaulted."""

    def __init__(self, message: str, *, value: object = None):
        super().__init__(message)
        self.value = value


class InvalidUnitError(ConfigurationError):
    """Raised when a sale unit is incompatible with a product's base unit."""


class InvalidTaxModeError(ConfigurationError):
    """Raised when a tax mode outside none/inclusive/exclusive is supplied."""


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced product, batch, sale, or supplier is unknown."""


class ExpiredBatchError(BusinessRuleViolation):
    """Raised when expired stock enters a cart without a justification."""


class OutOfStockError(BusinessRuleViolation):
    """Raised when a batch has no available quantity for the request."""


class InvalidQuantityError(BusinessRuleViolation):
    """Raised when a quantity is finer than the sale unit's step."""
