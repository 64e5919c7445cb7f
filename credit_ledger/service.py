import logging
import threading
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

from .models import (
    Account,
    BalanceChange,
    EntryReason,
    EntryType,
    LedgerEntry,
    LedgerHistoryResponse,
    PaymentStatus,
)

logger = logging.getLogger(__name__)


class LedgerServiceError(Exception):
    code = "LEDGER_ERROR"


class ValidationError(LedgerServiceError):
    code = "VALIDATION_ERROR"


class ConflictError(LedgerServiceError):
    code = "CONFLICT"


class AlreadyProcessedError(ConflictError):
    code = "ALREADY_PROCESSED"


class InsufficientCreditsError(LedgerServiceError):
    code = "INSUFFICIENT_CREDITS"

    def __init__(self, account_id: str, available: int, required: int):
        self.account_id = account_id
        self.available = available
        self.required = required
        super().__init__(
            f"Insufficient credits: {available} available, {required} required. "
            "Acquire more credit before publishing."
        )


class UpstreamUnavailableError(LedgerServiceError):
    code = "SERVICE_UNAVAILABLE"


class NotFoundError(LedgerServiceError):
    code = "NOT_FOUND"


class AccountNotFoundError(NotFoundError):
    pass


class PaymentRequestNotFoundError(NotFoundError):
    pass


class PortfolioNotFoundError(NotFoundError):
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryStorage:
    """Single-instance store for accounts, the ledger log, payment requests and portfolios.

    Every balance change goes through :meth:`apply_delta`, which re-validates the
    new balance under the account's lock. Callers never write ``credits`` directly.
    """

    def __init__(self):
        self.accounts: dict[str, dict] = {}
        self.ledger_entries: dict[UUID, dict] = {}
        self.payment_requests: dict[UUID, dict] = {}
        self.portfolios: dict[UUID, dict] = {}
        self.idempotency_index: dict[str, UUID] = {}
        self._registry_lock = threading.Lock()
        self._request_lock = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def lock_for(self, key: str) -> threading.Lock:
        """Per-entity lock. Only long-lived keys (accounts, portfolios) belong here."""
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def create_account(self, account_id: str, initial_credits: int = 0) -> tuple[dict, bool]:
        with self.lock_for(f"account:{account_id}"):
            existing = self.accounts.get(account_id)
            if existing:
                return dict(existing), False
            now = utcnow()
            account = {
                "id": account_id,
                "credits": initial_credits,
                "created_at": now,
                "updated_at": now,
            }
            self.accounts[account_id] = account
            return dict(account), True

    def get_account(self, account_id: str) -> Optional[dict]:
        account = self.accounts.get(account_id)
        return dict(account) if account else None

    def apply_delta(
        self,
        account_id: str,
        delta: int,
        *,
        reason: EntryReason,
        description: str,
        reference_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> tuple[dict, dict, bool]:
        """Conditionally apply ``delta`` to an account balance.

        Returns ``(account, entry, replayed)``. A previously applied
        ``idempotency_key`` returns the original entry without mutating.
        Raises :class:`InsufficientCreditsError` if the balance would go negative.
        """
        with self.lock_for(f"account:{account_id}"):
            account = self.accounts.get(account_id)
            if account is None:
                raise AccountNotFoundError(f"Account {account_id} not found")

            if idempotency_key:
                entry_id = self.idempotency_index.get(idempotency_key)
                if entry_id:
                    return dict(account), dict(self.ledger_entries[entry_id]), True

            new_balance = account["credits"] + delta
            if new_balance < 0:
                raise InsufficientCreditsError(account_id, account["credits"], -delta)

            now = utcnow()
            account["credits"] = new_balance
            account["updated_at"] = now

            entry_id = uuid4()
            entry = {
                "id": entry_id,
                "account_id": account_id,
                "entry_type": EntryType.CREDIT if delta > 0 else EntryType.DEBIT,
                "reason": reason,
                "amount": delta,
                "balance_after": new_balance,
                "reference_id": reference_id,
                "idempotency_key": idempotency_key,
                "description": description,
                "created_at": now,
            }
            self.ledger_entries[entry_id] = entry
            if idempotency_key:
                self.idempotency_index[idempotency_key] = entry_id
            return dict(account), dict(entry), False

    def add_payment_request(self, data: dict) -> dict:
        with self._request_lock:
            self.payment_requests[data["id"]] = data
        return dict(data)

    def get_payment_request(self, request_id: UUID) -> Optional[dict]:
        data = self.payment_requests.get(request_id)
        return dict(data) if data else None

    def swap_request_status(
        self, request_id: UUID, expected: PaymentStatus, changes: dict
    ) -> Optional[dict]:
        """Compare-and-swap on a payment request's status.

        Applies ``changes`` only if the current status equals ``expected``;
        returns the updated record, or ``None`` when the status did not match.
        """
        with self._request_lock:
            data = self.payment_requests.get(request_id)
            if data is None:
                raise PaymentRequestNotFoundError(f"Payment request {request_id} not found")
            if data["status"] != expected:
                return None
            data.update(changes)
            return dict(data)


class LedgerService:
    """Sole writer of account balances."""

    def __init__(self, storage: Optional[InMemoryStorage] = None):
        self.storage = storage or InMemoryStorage()

    def open_account(self, account_id: str, initial_credits: int = 0) -> Account:
        if not account_id or not account_id.strip():
            raise ValidationError("Account id is required")
        if initial_credits < 0:
            raise ValidationError("Initial credits cannot be negative")
        account, created = self.storage.create_account(account_id, initial_credits)
        if created:
            logger.info("Opened account %s with %d credits", account_id, initial_credits)
        return Account(**account)

    def credit(
        self,
        account_id: str,
        amount: int,
        *,
        reason: EntryReason,
        reference_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        description: Optional[str] = None,
    ) -> BalanceChange:
        self._validate_amount(amount)
        account, entry, replayed = self.storage.apply_delta(
            account_id,
            amount,
            reason=reason,
            reference_id=reference_id,
            idempotency_key=idempotency_key,
            description=description or f"Credit of {amount} ({reason.value})",
        )
        if replayed:
            logger.info("Credit %s already applied to %s, skipping", idempotency_key, account_id)
        else:
            logger.info("Credited %d to %s, balance %d", amount, account_id, account["credits"])
        return BalanceChange(
            account_id=account_id,
            balance=account["credits"],
            entry=LedgerEntry(**entry),
            replayed=replayed,
        )

    def try_debit(
        self,
        account_id: str,
        amount: int,
        *,
        reason: EntryReason,
        reference_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        description: Optional[str] = None,
    ) -> BalanceChange:
        self._validate_amount(amount)
        try:
            account, entry, replayed = self.storage.apply_delta(
                account_id,
                -amount,
                reason=reason,
                reference_id=reference_id,
                idempotency_key=idempotency_key,
                description=description or f"Debit of {amount} ({reason.value})",
            )
        except InsufficientCreditsError as e:
            logger.warning(
                "Debit of %d refused for %s: %d available", amount, account_id, e.available
            )
            raise
        if not replayed:
            logger.info("Debited %d from %s, balance %d", amount, account_id, account["credits"])
        return BalanceChange(
            account_id=account_id,
            balance=account["credits"],
            entry=LedgerEntry(**entry),
            replayed=replayed,
        )

    def balance(self, account_id: str) -> int:
        return self.get_account(account_id).credits

    def get_account(self, account_id: str) -> Account:
        account = self.storage.get_account(account_id)
        if not account:
            raise AccountNotFoundError(f"Account {account_id} not found")
        return Account(**account)

    def list_accounts(self) -> list[Account]:
        accounts = [Account(**a) for a in reversed(list(self.storage.accounts.values()))]
        accounts.sort(key=lambda a: a.created_at, reverse=True)
        return accounts

    def get_ledger_history(self, account_id: str, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        account = self.get_account(account_id)
        all_entries = [
            LedgerEntry(**e) for e in reversed(list(self.storage.ledger_entries.values()))
            if e["account_id"] == account_id
        ]
        all_entries.sort(key=lambda e: e.created_at, reverse=True)
        paginated = all_entries[offset:offset + limit]

        return LedgerHistoryResponse(
            account_id=account_id,
            entries=paginated,
            total_count=len(all_entries),
            current_balance=account.credits,
        )

    @staticmethod
    def _validate_amount(amount: int) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError(f"Amount must be a positive integer, got {amount!r}")
