"""
Unit Tests for the Payment Request Workflow

Tests cover:
1. Submission and validation
2. Approval with and without override
3. Double approval (sequential and concurrent)
4. Rejection
5. Store outages during approval: retries, queued credits, timeouts after commit
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from uuid import UUID

import pytest

from credit_ledger.models import PaymentMethod, PaymentStatus
from credit_ledger.payments import PaymentRequestService, approval_key
from credit_ledger.retry import RetryConfig
from credit_ledger.service import (
    AlreadyProcessedError,
    ConflictError,
    InMemoryStorage,
    LedgerService,
    PaymentRequestNotFoundError,
    UpstreamUnavailableError,
    ValidationError,
)


ACCOUNT_ID = "user-001"
ADMIN_ID = "admin-001"
NO_WAIT = RetryConfig(max_attempts=3, base_delay=0, jitter=False)


class FlakyStorage(InMemoryStorage):
    """Fails the first ``failures`` balance updates as if the store were down."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures
        self.calls = 0

    def apply_delta(self, *args, **kwargs):
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise UpstreamUnavailableError("account store unreachable")
        return super().apply_delta(*args, **kwargs)


class CommitThenTimeoutStorage(InMemoryStorage):
    """Applies the update, then reports a timeout for the next ``timeouts`` calls."""

    def __init__(self, timeouts: int):
        super().__init__()
        self.timeouts = timeouts

    def apply_delta(self, *args, **kwargs):
        result = super().apply_delta(*args, **kwargs)
        if self.timeouts > 0:
            self.timeouts -= 1
            raise UpstreamUnavailableError("account store timed out")
        return result


def make_service(storage=None, max_credit_grant: int = 100) -> PaymentRequestService:
    ledger = LedgerService(storage)
    ledger.open_account(ACCOUNT_ID)
    return PaymentRequestService(ledger, max_credit_grant, NO_WAIT)


def submit(service: PaymentRequestService, credits: int = 5, **overrides):
    fields = dict(
        account_id=ACCOUNT_ID,
        amount_paid=Decimal("2000"),
        credits_requested=credits,
        payment_method="bkash",
        transaction_reference="TX123",
        proof_image_ref="https://assets.example.com/proof.png",
    )
    fields.update(overrides)
    return service.submit(**fields)


class TestSubmit:
    """Tests for submitting payment requests."""

    def test_submit_creates_pending_request(self):
        """Test that a valid submission is stored as pending."""
        service = make_service()

        request = submit(service)

        assert request.status == PaymentStatus.PENDING
        assert request.payment_method == PaymentMethod.BKASH
        assert request.credits_granted is None
        assert request.processed_at is None
        assert service.get_request(request.id) == request

    @pytest.mark.parametrize("overrides", [
        {"credits_requested": 0},
        {"credits_requested": -3},
        {"amount_paid": Decimal("0")},
        {"amount_paid": "abc"},
        {"payment_method": "paypal"},
        {"transaction_reference": "   "},
        {"proof_image_ref": None},
    ])
    def test_invalid_submission_is_not_persisted(self, overrides):
        """Test that malformed input is refused and nothing is stored."""
        service = make_service()

        with pytest.raises(ValidationError):
            submit(service, **overrides)

        assert service.list_requests() == []

    def test_list_requests_filters(self):
        """Test listing by status and account, newest first."""
        service = make_service()
        service.ledger.open_account("user-002")
        first = submit(service)
        second = submit(service, account_id="user-002")
        service.reject(first.id, ADMIN_ID, "Blurry screenshot")

        assert [r.id for r in service.list_requests()] == [second.id, first.id]
        assert [r.id for r in service.list_requests(status=PaymentStatus.PENDING)] == [second.id]
        assert [r.id for r in service.list_requests(account_id=ACCOUNT_ID)] == [first.id]


class TestApprove:
    """Tests for approving payment requests."""

    def test_approve_credits_requested_amount(self):
        """Test that approval grants the requested credits."""
        service = make_service()
        request = submit(service, credits=5)

        response = service.approve(request.id, ADMIN_ID)

        assert response.balance == 5
        assert response.request.status == PaymentStatus.APPROVED
        assert response.request.credits_granted == 5
        assert response.request.processed_by == ADMIN_ID
        assert response.request.processed_at is not None
        assert service.ledger.balance(ACCOUNT_ID) == 5

    def test_approve_with_override(self):
        """Test the override scenario: 5 requested, 3 granted."""
        service = make_service()
        request = submit(service, credits=5)

        response = service.approve(request.id, ADMIN_ID, credits_override=3, note="Only 1500 received")

        assert service.ledger.balance(ACCOUNT_ID) == 3
        assert response.request.credits_granted == 3
        assert response.request.credits_requested == 5
        assert response.request.admin_note == "Only 1500 received"

    @pytest.mark.parametrize("override", [0, -1, 11])
    def test_override_outside_bound_is_refused(self, override):
        """Test that the override must lie within the configured bound."""
        service = make_service(max_credit_grant=10)
        request = submit(service)

        with pytest.raises(ValidationError):
            service.approve(request.id, ADMIN_ID, credits_override=override)

        assert service.get_request(request.id).status == PaymentStatus.PENDING
        assert service.ledger.balance(ACCOUNT_ID) == 0

    def test_second_approval_conflicts(self):
        """Test that approving twice credits once and reports already processed."""
        service = make_service()
        request = submit(service, credits=5)
        service.approve(request.id, ADMIN_ID)

        with pytest.raises(AlreadyProcessedError):
            service.approve(request.id, "admin-002")

        assert service.ledger.balance(ACCOUNT_ID) == 5
        assert service.get_request(request.id).processed_by == ADMIN_ID

    def test_concurrent_approvals_credit_once(self):
        """Test that racing approvals of one request credit exactly once."""
        service = make_service()
        request = submit(service, credits=5)
        barrier = threading.Barrier(8)

        def approve(admin_id):
            barrier.wait()
            try:
                service.approve(request.id, admin_id)
                return "approved"
            except ConflictError:
                return "conflict"

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(approve, [f"admin-{i}" for i in range(8)]))

        assert results.count("approved") == 1
        assert results.count("conflict") == 7
        assert service.ledger.balance(ACCOUNT_ID) == 5
        assert service.ledger.get_ledger_history(ACCOUNT_ID).total_count == 1

    def test_processed_requests_leave_no_locks_behind(self):
        """Test that the lock registry does not grow with the number of requests."""
        storage = InMemoryStorage()
        service = make_service(storage)

        for i in range(20):
            request = submit(service, credits=1)
            if i % 2:
                service.approve(request.id, ADMIN_ID)
            else:
                service.reject(request.id, ADMIN_ID, "Duplicate")

        assert list(storage._locks) == [f"account:{ACCOUNT_ID}"]
        assert service.ledger.balance(ACCOUNT_ID) == 10

    def test_approve_unknown_request(self):
        """Test that approving a missing request fails."""
        service = make_service()

        with pytest.raises(PaymentRequestNotFoundError):
            service.approve(UUID("00000000-0000-0000-0000-000000000000"), ADMIN_ID)


class TestReject:
    """Tests for rejecting payment requests."""

    def test_reject_leaves_balance_untouched(self):
        """Test that rejection records the note and moves no credit."""
        service = make_service()
        request = submit(service)

        rejected = service.reject(request.id, ADMIN_ID, "Transaction id not found")

        assert rejected.status == PaymentStatus.REJECTED
        assert rejected.admin_note == "Transaction id not found"
        assert rejected.credits_granted is None
        assert service.ledger.balance(ACCOUNT_ID) == 0

    def test_rejected_request_cannot_be_approved(self):
        """Test that a rejected request accepts no further approval."""
        service = make_service()
        request = submit(service)
        service.reject(request.id, ADMIN_ID, "Duplicate")

        with pytest.raises(AlreadyProcessedError):
            service.approve(request.id, ADMIN_ID)

        assert service.get_request(request.id).status == PaymentStatus.REJECTED
        assert service.ledger.balance(ACCOUNT_ID) == 0

    def test_approved_request_cannot_be_rejected(self):
        """Test that an approved request is terminal."""
        service = make_service()
        request = submit(service)
        service.approve(request.id, ADMIN_ID)

        with pytest.raises(AlreadyProcessedError):
            service.reject(request.id, ADMIN_ID, "Changed my mind")

        assert service.get_request(request.id).status == PaymentStatus.APPROVED

    def test_reject_requires_reason(self):
        """Test that a blank reason is refused."""
        service = make_service()
        request = submit(service)

        with pytest.raises(ValidationError):
            service.reject(request.id, ADMIN_ID, "  ")

        assert service.get_request(request.id).status == PaymentStatus.PENDING


class TestStoreOutage:
    """Tests for approval when the account store is flaky."""

    def test_transient_failure_is_retried(self):
        """Test that approval retries the credit and succeeds."""
        storage = FlakyStorage(failures=2)
        service = make_service(storage)
        request = submit(service, credits=4)

        response = service.approve(request.id, ADMIN_ID)

        assert response.balance == 4
        assert storage.calls == 3

    def test_exhausted_retries_keep_request_approved(self):
        """Test that an unreachable store queues the credit instead of reopening the request."""
        storage = FlakyStorage(failures=10)
        service = make_service(storage)
        request = submit(service, credits=4)

        response = service.approve(request.id, ADMIN_ID)

        assert response.credit_pending is True
        assert response.balance is None
        assert service.get_request(request.id).status == PaymentStatus.APPROVED
        assert service.get_request(request.id).credits_granted == 4
        assert service.ledger.balance(ACCOUNT_ID) == 0
        queued = service.pending_credits.pending()
        assert [c.idempotency_key for c in queued] == [approval_key(request.id)]
        assert queued[0].attempts == NO_WAIT.max_attempts

        with pytest.raises(AlreadyProcessedError):
            service.approve(request.id, ADMIN_ID)
        with pytest.raises(AlreadyProcessedError):
            service.reject(request.id, ADMIN_ID, "Too late")

        storage.failures = 0
        drained = service.pending_credits.drain(service.ledger)
        assert drained.applied == 1
        assert drained.still_pending == []
        assert service.ledger.balance(ACCOUNT_ID) == 4

    def test_credit_committed_before_timeout_is_applied_once(self):
        """Test a store that commits the credit and then times out on every call."""
        storage = CommitThenTimeoutStorage(timeouts=10)
        service = make_service(storage)
        request = submit(service, credits=4)

        response = service.approve(request.id, ADMIN_ID)

        assert response.credit_pending is True
        assert service.get_request(request.id).status == PaymentStatus.APPROVED
        assert service.ledger.balance(ACCOUNT_ID) == 4

        with pytest.raises(AlreadyProcessedError):
            service.reject(request.id, ADMIN_ID, "Screenshot does not match")
        with pytest.raises(AlreadyProcessedError):
            service.approve(request.id, ADMIN_ID)

        storage.timeouts = 0
        service.pending_credits.drain(service.ledger)
        assert service.ledger.balance(ACCOUNT_ID) == 4
        assert service.ledger.get_ledger_history(ACCOUNT_ID).total_count == 1
        assert len(service.pending_credits) == 0

    def test_timeout_after_commit_is_retried_safely(self):
        """Test that retrying a credit whose first attempt committed does not credit twice."""
        storage = CommitThenTimeoutStorage(timeouts=1)
        service = make_service(storage)
        request = submit(service, credits=4)

        response = service.approve(request.id, ADMIN_ID)

        assert response.credit_pending is False
        assert response.balance == 4
        assert service.ledger.get_ledger_history(ACCOUNT_ID).total_count == 1


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
