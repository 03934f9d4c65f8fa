"""
Typed errors raised by the stock and credit ledgers.

Hierarchy:
    LedgerError
    ├── NotFoundError
    │   ├── ProductNotFound
    │   ├── CustomerNotFound
    │   └── SaleNotFound
    ├── InsufficientStock
    ├── LedgerValidationError
    │   ├── InvalidQuantity
    │   ├── EmptyReason
    │   └── MissingField
    ├── ConnectivityError
    └── ConsistencyError

Every error carries a stable ``code``, the HTTP status the API layer
answers with, a human readable ``message`` and a ``details`` mapping.
"""

from __future__ import annotations

from typing import Any


class LedgerError(Exception):
    code: str = "ledger_error"
    status_code: int = 400
    default_message: str = "Ledger operation failed."

    def __init__(self, message: str | None = None, details: dict[str, Any] | None = None):
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class NotFoundError(LedgerError):
    code = "not_found"
    status_code = 404
    default_message = "Record was not found."


class ProductNotFound(NotFoundError):
    default_message = "Product was not found."


class CustomerNotFound(NotFoundError):
    default_message = "Customer was not found."


class SaleNotFound(NotFoundError):
    default_message = "Credit sale was not found."


class InsufficientStock(LedgerError):
    code = "insufficient_stock"
    status_code = 409
    default_message = "Insufficient stock."


class LedgerValidationError(LedgerError):
    code = "validation_error"
    status_code = 422
    default_message = "Validation failed."


class InvalidQuantity(LedgerValidationError):
    default_message = "Quantity must be a positive integer."


class EmptyReason(LedgerValidationError):
    default_message = "Movement reason is required."


class MissingField(LedgerValidationError):
    default_message = "A required field is missing."


class ConnectivityError(LedgerError):
    code = "connectivity_error"
    status_code = 503
    default_message = "The data store is not reachable."


class ConsistencyError(LedgerError):
    code = "consistency_error"
    status_code = 500
    default_message = "Ledger invariant violated."
