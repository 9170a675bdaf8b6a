"""
Earnings Ledger for the RTR investment/rewards platform

This module provides:
- Deposit, withdrawal and coin purchase requests with exactly-once admin approval
- Plan purchases with linear daily profit accrual
- One-time referral commission on a referred user's first approved deposit
- Daily reward (rolling 24h) and spin wheel (once per calendar day)
- Append-only transaction audit trail and JSON backup/restore
"""

from .models import (
    RequestKind,
    RequestStatus,
    TransactionType,
    User,
    Plan,
    UserPlan,
    Transaction,
    SystemSettings,
)
from .service import EarningsService, EarningsServiceError
from .storage import InMemoryStorage

__all__ = [
    "RequestKind",
    "RequestStatus",
    "TransactionType",
    "User",
    "Plan",
    "UserPlan",
    "Transaction",
    "SystemSettings",
    "EarningsService",
    "EarningsServiceError",
    "InMemoryStorage",
]
