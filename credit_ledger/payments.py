import logging
from decimal import Decimal, InvalidOperation
from typing import Optional
from uuid import UUID, uuid4

from .models import (
    ApprovalResponse,
    EntryReason,
    PaymentMethod,
    PaymentRequest,
    PaymentStatus,
)
from .reconciliation import CreditQueue
from .retry import RetryConfig, retry_call
from .service import (
    AlreadyProcessedError,
    LedgerService,
    PaymentRequestNotFoundError,
    UpstreamUnavailableError,
    ValidationError,
    utcnow,
)

logger = logging.getLogger(__name__)


def approval_key(request_id: UUID) -> str:
    return f"approval:{request_id}"


class PaymentRequestService:
    """Manual review workflow for credit purchases.

    A request starts ``pending`` and moves once to ``approved`` or ``rejected``.
    Approval swaps the status first and only the winner of that swap credits
    the account, so repeated or concurrent approvals never credit twice. Once
    approved a request stays approved: a credit the account store cannot take
    is queued under the same idempotency key for reconciliation.
    """

    def __init__(
        self,
        ledger: LedgerService,
        max_credit_grant: int,
        retry_config: Optional[RetryConfig] = None,
        pending_credits: Optional[CreditQueue] = None,
    ):
        self.ledger = ledger
        self.storage = ledger.storage
        self.max_credit_grant = max_credit_grant
        self.retry_config = retry_config or RetryConfig()
        self.pending_credits = pending_credits if pending_credits is not None else CreditQueue()

    def submit(
        self,
        account_id: str,
        amount_paid,
        credits_requested: int,
        payment_method: str,
        transaction_reference: str,
        proof_image_ref: str,
    ) -> PaymentRequest:
        self.ledger.get_account(account_id)
        amount = self._parse_amount(amount_paid)
        if isinstance(credits_requested, bool) or not isinstance(credits_requested, int) or credits_requested <= 0:
            raise ValidationError("credits_requested must be a positive integer")
        method = self._parse_method(payment_method)
        reference = self._required_text(transaction_reference, "transaction_reference")
        proof = self._required_text(proof_image_ref, "proof_image_ref")

        data = {
            "id": uuid4(),
            "account_id": account_id,
            "amount_paid": amount,
            "credits_requested": credits_requested,
            "payment_method": method,
            "transaction_reference": reference,
            "proof_image_ref": proof,
            "status": PaymentStatus.PENDING,
            "credits_granted": None,
            "admin_note": None,
            "created_at": utcnow(),
            "processed_at": None,
            "processed_by": None,
        }
        self.storage.add_payment_request(data)
        logger.info(
            "Payment request %s submitted by %s for %d credits via %s",
            data["id"], account_id, credits_requested, method.value,
        )
        return PaymentRequest(**data)

    def approve(
        self,
        request_id: UUID,
        admin_id: str,
        credits_override: Optional[int] = None,
        note: Optional[str] = None,
    ) -> ApprovalResponse:
        current = self.get_request(request_id)
        if not current.is_pending():
            raise AlreadyProcessedError(f"Payment request {request_id} already {current.status.value}")

        if credits_override is not None:
            self._validate_override(credits_override)
        credits_to_grant = credits_override if credits_override is not None else current.credits_requested

        swapped = self.storage.swap_request_status(
            request_id,
            PaymentStatus.PENDING,
            {
                "status": PaymentStatus.APPROVED,
                "credits_granted": credits_to_grant,
                "admin_note": note,
                "processed_at": utcnow(),
                "processed_by": admin_id,
            },
        )
        if swapped is None:
            logger.warning("Approval of %s by %s lost the race, request already processed", request_id, admin_id)
            raise AlreadyProcessedError(f"Payment request {request_id} already processed")

        credit = dict(
            reason=EntryReason.PAYMENT_APPROVAL,
            reference_id=str(request_id),
            idempotency_key=approval_key(request_id),
            description=f"Approved payment request {request_id}",
        )
        try:
            change = retry_call(
                self.ledger.credit,
                self.retry_config,
                current.account_id,
                credits_to_grant,
                **credit,
            )
        except UpstreamUnavailableError as e:
            # The credit may have committed before the error surfaced; the key makes a later drain safe
            self.pending_credits.enqueue(
                current.account_id,
                credits_to_grant,
                attempts=self.retry_config.max_attempts,
                last_error=str(e),
                **credit,
            )
            return ApprovalResponse(
                request=PaymentRequest(**swapped),
                balance=None,
                credit_pending=True,
                message="Payment approved, credits will be added once the account store recovers",
            )

        logger.info(
            "Payment request %s approved by %s: granted %d credits to %s",
            request_id, admin_id, credits_to_grant, current.account_id,
        )
        return ApprovalResponse(
            request=PaymentRequest(**swapped),
            balance=change.balance,
            message="Payment approved, credits added",
        )

    def reject(self, request_id: UUID, admin_id: str, reason: str) -> PaymentRequest:
        reason = self._required_text(reason, "reason")
        current = self.get_request(request_id)
        if not current.is_pending():
            raise AlreadyProcessedError(f"Payment request {request_id} already {current.status.value}")

        swapped = self.storage.swap_request_status(
            request_id,
            PaymentStatus.PENDING,
            {
                "status": PaymentStatus.REJECTED,
                "admin_note": reason,
                "processed_at": utcnow(),
                "processed_by": admin_id,
            },
        )
        if swapped is None:
            raise AlreadyProcessedError(f"Payment request {request_id} already processed")

        logger.info("Payment request %s rejected by %s", request_id, admin_id)
        return PaymentRequest(**swapped)

    def get_request(self, request_id: UUID) -> PaymentRequest:
        data = self.storage.get_payment_request(request_id)
        if not data:
            raise PaymentRequestNotFoundError(f"Payment request {request_id} not found")
        return PaymentRequest(**data)

    def list_requests(
        self,
        status: Optional[PaymentStatus] = None,
        account_id: Optional[str] = None,
    ) -> list[PaymentRequest]:
        requests = [
            PaymentRequest(**r) for r in reversed(list(self.storage.payment_requests.values()))
            if (status is None or r["status"] == status)
            and (account_id is None or r["account_id"] == account_id)
        ]
        requests.sort(key=lambda r: r.created_at, reverse=True)
        return requests

    def _validate_override(self, credits_override: int) -> None:
        if isinstance(credits_override, bool) or not isinstance(credits_override, int):
            raise ValidationError("credits_override must be an integer")
        if not 1 <= credits_override <= self.max_credit_grant:
            raise ValidationError(
                f"credits_override must be between 1 and {self.max_credit_grant}"
            )

    @staticmethod
    def _parse_amount(amount_paid) -> Decimal:
        try:
            amount = Decimal(str(amount_paid))
        except (InvalidOperation, ValueError):
            raise ValidationError(f"amount_paid is not a number: {amount_paid!r}")
        if not amount.is_finite() or amount <= 0:
            raise ValidationError("amount_paid must be positive")
        return amount

    @staticmethod
    def _parse_method(payment_method) -> PaymentMethod:
        try:
            return PaymentMethod(payment_method)
        except ValueError:
            allowed = ", ".join(m.value for m in PaymentMethod)
            raise ValidationError(f"Unknown payment method {payment_method!r}. Allowed: {allowed}")

    @staticmethod
    def _required_text(value: Optional[str], field: str) -> str:
        if value is None or not str(value).strip():
            raise ValidationError(f"{field} is required")
        return str(value).strip()
