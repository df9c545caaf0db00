from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict


SYSTEM_ACCOUNT = "system"


class TransactionType(str, Enum):
    LISTING_FEE = "LISTING_FEE"
    ITEM_PURCHASE = "ITEM_PURCHASE"
    SIGNUP_BONUS = "SIGNUP_BONUS"
    FIRST_POST_BONUS = "FIRST_POST_BONUS"
    FIRST_SALE_BONUS = "FIRST_SALE_BONUS"
    REFERRAL_BONUS = "REFERRAL_BONUS"
    ADMIN_CREDIT = "ADMIN_CREDIT"
    ADMIN_DEBIT = "ADMIN_DEBIT"
    REFUND = "REFUND"


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class TransactionMetadata(BaseModel):
    item_id: Optional[str] = None
    campus_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    original_amount: Optional[int] = None
    platform_fee: Optional[int] = None
    net_amount: Optional[int] = None
    settlement_id: Optional[str] = None
    description: Optional[str] = None
    extra: dict[str, str] = Field(default_factory=dict)


class Account(BaseModel):
    account_id: str
    balance: int = 0
    last_updated: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_system(self) -> bool:
        return self.account_id == SYSTEM_ACCOUNT


class Transaction(BaseModel):
    id: str
    type: TransactionType
    amount: int = Field(..., gt=0)
    from_account: str
    to_account: str
    status: TransactionStatus = TransactionStatus.COMPLETED
    metadata: TransactionMetadata = Field(default_factory=TransactionMetadata)
    created_at: datetime

    model_config = ConfigDict(from_attributes=True, frozen=True)

    def delta_for(self, account_id: str) -> int:
        if self.status != TransactionStatus.COMPLETED:
            return 0
        delta = 0
        if self.from_account == account_id:
            delta -= self.amount
        if self.to_account == account_id:
            delta += self.amount
        return delta


class IdempotencyRecord(BaseModel):
    key: str
    transaction_id: str
    transaction_type: TransactionType
    created_at: datetime


class TransferRequest(BaseModel):
    account_id: str
    amount: int = Field(..., gt=0)
    type: TransactionType = TransactionType.ADMIN_CREDIT
    idempotency_key: Optional[str] = None
    description: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "account_id": "student-42",
            "amount": 500,
            "type": "ADMIN_CREDIT",
            "idempotency_key": "admin-credit-student-42-2024-09",
        }
    })


class TransferResult(BaseModel):
    transaction_id: str
    transactions: list[Transaction]
    replayed: bool = False


class AccountBalance(BaseModel):
    account_id: str
    balance: int
    total_entries: int
    last_transaction_at: Optional[datetime] = None
    frozen: bool = False


class LedgerHistoryResponse(BaseModel):
    account_id: str
    entries: list[Transaction]
    total_count: int
    current_balance: int


class AuditFinding(BaseModel):
    kind: str
    accounts: list[str]
    detail: str


class AuditReport(BaseModel):
    checked_accounts: int
    checked_settlements: int
    findings: list[AuditFinding] = Field(default_factory=list)
    frozen_accounts: list[str] = Field(default_factory=list)

    @property
    def consistent(self) -> bool:
        return not self.findings
