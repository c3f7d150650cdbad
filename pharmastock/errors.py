"""
Error taxonomy for the stock ledger engine.

- ValidationError: malformed input (non-positive quantity, missing reason, over-return)
- InsufficientStockError: FEFO allocation cannot satisfy a requested line
- StateError: operation invalid for current state (double session, negative stock)
- NotFoundError: unknown medication / lot / sale / session id
- InfrastructureError: store unreachable or atomic batch could not commit

Validation and not-found errors are raised before any mutation.
Everything raised inside a transaction leaves the ledger untouched (rollback).
"""
from typing import Optional


class LedgerError(Exception):
    """Base exception for ledger engine operations"""
    pass


class ValidationError(LedgerError):
    """Raised when input is malformed"""
    pass


class StateError(LedgerError):
    """Raised when an operation is invalid for the current state"""
    pass


class NotFoundError(LedgerError):
    """Raised when an entity id is unknown"""
    pass


class InfrastructureError(LedgerError):
    """Raised when the underlying store fails or a transaction cannot commit"""
    pass


class InsufficientStockError(LedgerError):
    """Raised when vendable lots cannot cover a requested sale line."""

    def __init__(self, medication_id: int, requested: int, available: int, message: Optional[str] = None):
        self.medication_id = medication_id
        self.requested = requested
        self.available = available
        super().__init__(
            message
            or f"Insufficient stock for medication {medication_id}: "
               f"requested {requested}, available {available}"
        )
