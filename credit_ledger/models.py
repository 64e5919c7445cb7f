from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


class EntryType(str, Enum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


class EntryReason(str, Enum):
    PAYMENT_APPROVAL = "PAYMENT_APPROVAL"
    PUBLISH = "PUBLISH"
    UNPUBLISH_REFUND = "UNPUBLISH_REFUND"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class PaymentMethod(str, Enum):
    BKASH = "bkash"
    NAGAD = "nagad"
    ROCKET = "rocket"
    BANK_TRANSFER = "bank_transfer"


class CreditPackage(BaseModel):
    credits: int
    price: Decimal
    popular: bool = False


CREDIT_PACKAGES = [
    CreditPackage(credits=1, price=Decimal("500")),
    CreditPackage(credits=5, price=Decimal("2000"), popular=True),
    CreditPackage(credits=10, price=Decimal("3500")),
]


class Account(BaseModel):
    id: str
    credits: int = Field(..., ge=0)
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class LedgerEntry(BaseModel):
    id: UUID
    account_id: str
    entry_type: EntryType
    reason: EntryReason
    amount: int
    balance_after: int
    reference_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    description: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class BalanceChange(BaseModel):
    account_id: str
    balance: int
    entry: LedgerEntry
    replayed: bool = False


class AccountBalance(BaseModel):
    account_id: str
    credits: int


class LedgerHistoryResponse(BaseModel):
    account_id: str
    entries: list[LedgerEntry]
    total_count: int
    current_balance: int


class PaymentRequest(BaseModel):
    id: UUID
    account_id: str
    amount_paid: Decimal
    credits_requested: int
    payment_method: PaymentMethod
    transaction_reference: str
    proof_image_ref: str
    status: PaymentStatus
    credits_granted: Optional[int] = None
    admin_note: Optional[str] = None
    created_at: datetime
    processed_at: Optional[datetime] = None
    processed_by: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    def is_pending(self) -> bool:
        return self.status == PaymentStatus.PENDING


class SubmitPaymentRequest(BaseModel):
    amount_paid: Decimal = Field(..., description="Amount sent, informational only")
    credits_requested: int
    payment_method: str
    transaction_reference: str = Field(..., description="Wallet or bank transaction id")
    proof_image_ref: str = Field(..., description="URL of the uploaded payment screenshot")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "amount_paid": 2000,
            "credits_requested": 5,
            "payment_method": "bkash",
            "transaction_reference": "8N7A6D5C4B",
            "proof_image_ref": "https://res.cloudinary.com/demo/image/upload/proof.png"
        }
    })


class ApprovePaymentRequest(BaseModel):
    credits_override: Optional[int] = None
    note: Optional[str] = None


class RejectPaymentRequest(BaseModel):
    reason: str = Field(..., description="Reason shown to the user")


class ApprovalResponse(BaseModel):
    request: PaymentRequest
    balance: Optional[int] = None
    credit_pending: bool = False
    message: str


class Portfolio(BaseModel):
    id: UUID
    account_id: str
    username: str
    is_published: bool = False
    publication_count: int = 0
    created_at: datetime
    published_at: Optional[datetime] = None
    unpublished_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class CreatePortfolioRequest(BaseModel):
    username: str = Field(..., description="Vanity path of the public page")


class PublicationResponse(BaseModel):
    portfolio: Portfolio
    changed: bool
    balance: Optional[int] = None
    refund_pending: bool = False
    message: str


class PendingCredit(BaseModel):
    account_id: str
    amount: int
    reason: EntryReason
    reference_id: Optional[str] = None
    idempotency_key: str
    description: str = ""
    attempts: int = 0
    last_error: Optional[str] = None
    enqueued_at: datetime


class CreditDrainResponse(BaseModel):
    applied: int
    still_pending: list[PendingCredit]
