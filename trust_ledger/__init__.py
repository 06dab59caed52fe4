"""
Trust-point Ledger for Peer Vouching and Micro-credit

This module provides:
- Trust-point balances with compare-and-set writes and compensated transfers
- Vouch lifecycle: recorded → auto-checked → reviewed
- Credit eligibility notifications, emitted once per crossing
- One-time referral codes redeemed into ledger credits
- Balance-delta monitoring that triggers auto-deposits at most once per increase
"""

from .models import (
    Account,
    AutoCheckOutcome,
    BalanceWatermark,
    DepositTrigger,
    ReferralCode,
    Vouch,
    VouchState,
)
from .monitor import BalanceDeltaMonitor
from .referrals import ReferralIssuer
from .service import TrustLedger
from .storage import InMemoryStorage
from .vouches import VouchWorkflow

__all__ = [
    "Account",
    "AutoCheckOutcome",
    "BalanceWatermark",
    "DepositTrigger",
    "ReferralCode",
    "Vouch",
    "VouchState",
    "BalanceDeltaMonitor",
    "ReferralIssuer",
    "TrustLedger",
    "InMemoryStorage",
    "VouchWorkflow",
]
