from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, ConfigDict

from common.models import Transaction, TransactionType


class PurchaseCreditsRequest(BaseModel):
    amount: int = Field(..., description="Credits to buy")
    payment_method_id: str = Field(..., min_length=1)

    model_config = ConfigDict(json_schema_extra={
        "example": {"amount": 50, "payment_method_id": "pm_card_visa"}
    })


class AccountSummary(BaseModel):
    user_id: str
    current_balance: int
    total_entries: int
    last_transaction_at: Optional[datetime] = None


class TransactionHistoryResponse(BaseModel):
    user_id: str
    transactions: list[Transaction]
    total_count: int
    current_balance: int


class PurchaseResponse(BaseModel):
    transaction: Transaction
    current_balance: int
    message: str


__all__ = [
    "Transaction",
    "TransactionType",
    "PurchaseCreditsRequest",
    "AccountSummary",
    "TransactionHistoryResponse",
    "PurchaseResponse",
]
