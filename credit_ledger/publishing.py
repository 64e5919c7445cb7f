import logging
import re
from typing import Optional
from uuid import UUID, uuid4

from .models import EntryReason, Portfolio, PublicationResponse
from .reconciliation import CreditQueue
from .retry import RetryConfig, retry_call
from .service import (
    ConflictError,
    LedgerService,
    PortfolioNotFoundError,
    UpstreamUnavailableError,
    ValidationError,
    utcnow,
)

logger = logging.getLogger(__name__)

PUBLISH_COST = 1
USERNAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_-]{1,30}[a-z0-9]$")


def publish_key(portfolio_id: UUID, publication: int) -> str:
    return f"publish:{portfolio_id}:{publication}"


def refund_key(portfolio_id: UUID, publication: int) -> str:
    return f"refund:{portfolio_id}:{publication}"


class PublicationGate:
    """Couples a portfolio's published flag to a one-credit ledger debit.

    Publishing debits before flipping the flag; unpublishing flips the flag
    before refunding. Repeating either transition is a no-op that leaves the
    ledger alone.
    """

    def __init__(
        self,
        ledger: LedgerService,
        retry_config: Optional[RetryConfig] = None,
        pending_credits: Optional[CreditQueue] = None,
    ):
        self.ledger = ledger
        self.storage = ledger.storage
        self.retry_config = retry_config or RetryConfig()
        self.pending_credits = pending_credits if pending_credits is not None else CreditQueue()

    def register_portfolio(self, account_id: str, username: str) -> Portfolio:
        self.ledger.get_account(account_id)
        username = self._normalize_username(username)

        with self.storage.lock_for("portfolio-registry"):
            for existing in self.storage.portfolios.values():
                if existing["username"] == username:
                    raise ConflictError(f"Username '{username}' is already taken")
                if existing["account_id"] == account_id:
                    raise ConflictError(f"Account {account_id} already has a portfolio")

            data = {
                "id": uuid4(),
                "account_id": account_id,
                "username": username,
                "is_published": False,
                "publication_count": 0,
                "created_at": utcnow(),
                "published_at": None,
                "unpublished_at": None,
            }
            self.storage.portfolios[data["id"]] = data

        logger.info("Portfolio %s registered for %s as '%s'", data["id"], account_id, username)
        return Portfolio(**data)

    def get_portfolio(self, portfolio_id: UUID) -> Portfolio:
        return Portfolio(**self._load(portfolio_id))

    def get_published_by_username(self, username: str) -> Portfolio:
        username = (username or "").strip().lower()
        for data in list(self.storage.portfolios.values()):
            if data["username"] == username and data["is_published"]:
                return Portfolio(**data)
        raise PortfolioNotFoundError(f"No published portfolio at '{username}'")

    def publish(self, portfolio_id: UUID) -> PublicationResponse:
        with self.storage.lock_for(f"portfolio:{portfolio_id}"):
            data = self._load(portfolio_id)
            account_id = data["account_id"]

            if data["is_published"]:
                logger.info("Portfolio %s already published, nothing to debit", portfolio_id)
                return PublicationResponse(
                    portfolio=Portfolio(**data),
                    changed=False,
                    balance=self.ledger.balance(account_id),
                    message="Portfolio is already published",
                )

            publication = data["publication_count"] + 1
            # No retry here: insufficient credit and outages go straight back to the user
            change = self.ledger.try_debit(
                account_id,
                PUBLISH_COST,
                reason=EntryReason.PUBLISH,
                reference_id=str(portfolio_id),
                idempotency_key=publish_key(portfolio_id, publication),
                description=f"Published portfolio '{data['username']}'",
            )
            data.update(
                is_published=True,
                publication_count=publication,
                published_at=utcnow(),
            )
            portfolio = Portfolio(**data)

        logger.info("Portfolio %s published, %s has %d credits left", portfolio_id, account_id, change.balance)
        return PublicationResponse(
            portfolio=portfolio,
            changed=True,
            balance=change.balance,
            message="Portfolio published",
        )

    def unpublish(self, portfolio_id: UUID) -> PublicationResponse:
        with self.storage.lock_for(f"portfolio:{portfolio_id}"):
            data = self._load(portfolio_id)
            account_id = data["account_id"]

            if not data["is_published"]:
                logger.info("Portfolio %s already unpublished, nothing to refund", portfolio_id)
                return PublicationResponse(
                    portfolio=Portfolio(**data),
                    changed=False,
                    balance=self.ledger.balance(account_id),
                    message="Portfolio is not published",
                )

            data.update(is_published=False, unpublished_at=utcnow())
            portfolio = Portfolio(**data)
            key = refund_key(portfolio_id, data["publication_count"])

        refund = dict(
            reason=EntryReason.UNPUBLISH_REFUND,
            reference_id=str(portfolio_id),
            idempotency_key=key,
            description="Refund for unpublished portfolio",
        )
        try:
            change = retry_call(self.ledger.credit, self.retry_config, account_id, PUBLISH_COST, **refund)
        except UpstreamUnavailableError as e:
            self.pending_credits.enqueue(
                account_id,
                PUBLISH_COST,
                attempts=self.retry_config.max_attempts,
                last_error=str(e),
                **refund,
            )
            return PublicationResponse(
                portfolio=portfolio,
                changed=True,
                balance=None,
                refund_pending=True,
                message="Portfolio unpublished, credit refund is pending",
            )

        return PublicationResponse(
            portfolio=portfolio,
            changed=True,
            balance=change.balance,
            message="Portfolio unpublished, credit refunded",
        )

    def _load(self, portfolio_id: UUID) -> dict:
        data = self.storage.portfolios.get(portfolio_id)
        if data is None:
            raise PortfolioNotFoundError(f"Portfolio {portfolio_id} not found")
        return data

    @staticmethod
    def _normalize_username(username: Optional[str]) -> str:
        username = (username or "").strip().lower()
        if not USERNAME_PATTERN.match(username):
            raise ValidationError(
                "Username must be 3-32 characters of letters, digits, '-' or '_' "
                "and start and end with a letter or digit"
            )
        return username
