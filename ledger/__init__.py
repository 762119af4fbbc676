"""
Credit Ledger

This module provides:
- Immutable, append-only credit transactions
- Balances derived from the transaction log
- Atomic add/deduct with insufficient-balance rejection
- Idempotent settlement of completed sessions
- Credit purchases through a payment gateway
"""

from .models import (
    Transaction,
    TransactionType,
    AccountSummary,
    TransactionHistoryResponse,
)
from .service import CreditLedger

__all__ = [
    "Transaction",
    "TransactionType",
    "AccountSummary",
    "TransactionHistoryResponse",
    "CreditLedger",
]
