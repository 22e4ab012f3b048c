"""
Mobile Money Wallet

This package provides:
- An account store with per-account locking and crash-safe JSON snapshots
- A ledger engine for credits, debits and atomic transfers
- Signup with welcome and referral bonuses, salted password login
- A FastAPI application exposing the above
"""

from .models import (
    TransactionType,
    Transaction,
    Account,
    UserProfile,
    TransferResult,
)
from .store import AccountStore, AccountSnapshot
from .service import LedgerService
from .auth import AuthService

__all__ = [
    "TransactionType",
    "Transaction",
    "Account",
    "UserProfile",
    "TransferResult",
    "AccountStore",
    "AccountSnapshot",
    "LedgerService",
    "AuthService",
]
