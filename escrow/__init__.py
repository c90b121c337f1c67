"""Escrow module for inventory locking and sale settlement.

This module provides functionality for:
- Locking card instances against concurrent sales (EscrowLedger)
- Choosing between the instant and escrow verification lanes (LaneDecisionEngine)
- Completing sales atomically (SaleCompletionOrchestrator)
- Detecting and repairing inventory drift (IntegrityAuditor)

A sale first asks for a lane decision. Instant sales go straight to
completion; verification sales lock the card until the physical check
finishes, then complete or unlock.
"""

from inventory import (
    InventoryError,
    NotFoundError,
    AlreadyLockedError,
    InvalidStateError,
    TransactionFailureError,
    CardInstanceNotFoundError,
    EscrowNotFoundError
)
from .trust import TrustScoreProvider, DatabaseTrustScoreProvider
from .lanes import (
    LaneThresholds,
    LaneDecision,
    LaneDecisionEngine,
    decide_lane,
    INSTANT,
    ESCROW_VERIFICATION
)
from .ledger import EscrowLedger, LOCKED, RELEASED, UNLOCKED, COMPLETED
from .settlement import SaleCompletionOrchestrator
from .integrity import IntegrityAuditor, IntegrityIssue, IntegrityReport

__all__ = [
    'InventoryError',
    'NotFoundError',
    'AlreadyLockedError',
    'InvalidStateError',
    'TransactionFailureError',
    'CardInstanceNotFoundError',
    'EscrowNotFoundError',
    'TrustScoreProvider',
    'DatabaseTrustScoreProvider',
    'LaneThresholds',
    'LaneDecision',
    'LaneDecisionEngine',
    'decide_lane',
    'INSTANT',
    'ESCROW_VERIFICATION',
    'EscrowLedger',
    'LOCKED',
    'RELEASED',
    'UNLOCKED',
    'COMPLETED',
    'SaleCompletionOrchestrator',
    'IntegrityAuditor',
    'IntegrityIssue',
    'IntegrityReport'
]
