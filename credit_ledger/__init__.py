"""
Credit Ledger for Portfolio Publishing

This module provides:
- Per-account credit balances with atomic check-and-debit
- Immutable ledger entries for every balance change
- Payment request review: pending → approved / rejected
- Publication gating: one credit debited per publish, refunded on unpublish
- Idempotent approvals and refunds, with a reconciliation queue for credits
  the account store could not take
"""

from .models import (
    EntryType,
    EntryReason,
    PaymentMethod,
    PaymentStatus,
    Account,
    LedgerEntry,
    PaymentRequest,
    Portfolio,
)
from .service import (
    LedgerService,
    InMemoryStorage,
    LedgerServiceError,
    ValidationError,
    ConflictError,
    AlreadyProcessedError,
    InsufficientCreditsError,
    UpstreamUnavailableError,
)
from .payments import PaymentRequestService
from .publishing import PublicationGate
from .reconciliation import CreditQueue

__all__ = [
    "EntryType",
    "EntryReason",
    "PaymentMethod",
    "PaymentStatus",
    "Account",
    "LedgerEntry",
    "PaymentRequest",
    "Portfolio",
    "LedgerService",
    "InMemoryStorage",
    "LedgerServiceError",
    "ValidationError",
    "ConflictError",
    "AlreadyProcessedError",
    "InsufficientCreditsError",
    "UpstreamUnavailableError",
    "PaymentRequestService",
    "PublicationGate",
    "CreditQueue",
]
