from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict
from pydantic.alias_generators import to_camel


class TransactionType(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Transaction(CamelModel):
    id: int
    type: TransactionType
    description: str
    amount: int = Field(..., gt=0)
    timestamp: datetime

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class UserProfile(CamelModel):
    username: str = Field(..., frozen=True)
    account_number: str = Field(..., frozen=True)
    balance: int = Field(..., ge=0)
    referral_code: str
    referrals: int = 0
    safebox: int = 0
    loan_owed: int = 0
    has_cheat: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    transactions: list[Transaction] = Field(default_factory=list)


class Account(UserProfile):
    password_hash: str
    password_salt: str

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, validate_assignment=True,
    )

    def to_profile(self) -> UserProfile:
        return UserProfile.model_validate(self.model_dump(exclude={"password_hash", "password_salt"}))


class SignupRequest(CamelModel):
    username: str
    password: str
    referral_code: Optional[str] = None

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True,
        json_schema_extra={
            "example": {"username": "ada", "password": "s3cret", "referralCode": "OPAY-7Q2ZK1LM"}
        },
    )


class LoginRequest(CamelModel):
    username: str
    password: str


class TransferRequest(CamelModel):
    from_username: str
    to_account_number: str
    amount: int
    idempotency_key: Optional[str] = Field(default=None, description="Replays with the same key return the first result")

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True,
        json_schema_extra={
            "example": {"fromUsername": "ada", "toAccountNumber": "4829103746", "amount": 2500}
        },
    )


class AuthResponse(CamelModel):
    message: str
    user: UserProfile


class TransferResult(CamelModel):
    message: str = "Transfer successful!"
    new_balance: int
    transaction_id: int
    recipient_username: str


class TransactionHistoryResponse(CamelModel):
    username: str
    transactions: list[Transaction]
    total_count: int
    current_balance: int


class ErrorResponse(BaseModel):
    message: str
