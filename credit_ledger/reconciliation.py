import logging
import threading
from typing import Optional

from .models import CreditDrainResponse, EntryReason, PendingCredit
from .service import LedgerService, UpstreamUnavailableError, utcnow

logger = logging.getLogger(__name__)


class CreditQueue:
    """Keyed credits that could not be applied after retries, held for reconciliation.

    Approvals and unpublish refunds land here when the account store stays
    unreachable. Every item carries its idempotency key, so applying one
    that already reached the ledger is a no-op.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._drain_lock = threading.Lock()
        self._items: dict[str, PendingCredit] = {}

    def enqueue(
        self,
        account_id: str,
        amount: int,
        *,
        reason: EntryReason,
        idempotency_key: str,
        reference_id: Optional[str] = None,
        description: str = "",
        attempts: int = 0,
        last_error: Optional[str] = None,
    ) -> PendingCredit:
        item = PendingCredit(
            account_id=account_id,
            amount=amount,
            reason=reason,
            reference_id=reference_id,
            idempotency_key=idempotency_key,
            description=description,
            attempts=attempts,
            last_error=last_error,
            enqueued_at=utcnow(),
        )
        with self._lock:
            self._items.setdefault(idempotency_key, item)
            item = self._items[idempotency_key]
        logger.error(
            "Credit %s of %d for %s queued for reconciliation: %s",
            idempotency_key, amount, account_id, last_error,
        )
        return item.model_copy()

    def record_failure(self, idempotency_key: str, error: str) -> None:
        with self._lock:
            item = self._items.get(idempotency_key)
            if item is not None:
                item.attempts += 1
                item.last_error = error

    def remove(self, idempotency_key: str) -> None:
        with self._lock:
            self._items.pop(idempotency_key, None)

    def is_pending(self, idempotency_key: str) -> bool:
        with self._lock:
            return idempotency_key in self._items

    def pending(self) -> list[PendingCredit]:
        with self._lock:
            items = [item.model_copy() for item in self._items.values()]
        return sorted(items, key=lambda c: c.enqueued_at)

    def drain(self, ledger: LedgerService) -> CreditDrainResponse:
        """Try every queued credit once; successes leave the queue."""
        applied = 0
        with self._drain_lock:
            for item in self.pending():
                try:
                    ledger.credit(
                        item.account_id,
                        item.amount,
                        reason=item.reason,
                        reference_id=item.reference_id,
                        idempotency_key=item.idempotency_key,
                        description=item.description or None,
                    )
                except UpstreamUnavailableError as e:
                    self.record_failure(item.idempotency_key, str(e))
                    logger.warning("Queued credit %s still failing: %s", item.idempotency_key, e)
                    continue
                self.remove(item.idempotency_key)
                applied += 1

        if applied:
            logger.info("Applied %d queued credits", applied)
        return CreditDrainResponse(applied=applied, still_pending=self.pending())

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
