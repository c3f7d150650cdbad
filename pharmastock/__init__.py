"""PharmaStock: pharmacy stock ledger and FEFO allocation engine."""
from .errors import (
    LedgerError,
    ValidationError,
    InsufficientStockError,
    StateError,
    NotFoundError,
    InfrastructureError,
)
from .service import PharmacyLedger

__version__ = "1.0.0"

__all__ = [
    'PharmacyLedger',
    'LedgerError', 'ValidationError', 'InsufficientStockError', 'StateError',
    'NotFoundError', 'InfrastructureError',
]
