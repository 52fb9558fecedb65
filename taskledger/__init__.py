"""
Task Ledger: balance ledger and task lifecycle engine

This package provides:
- Daily task assignment per user level (three sets per day)
- Start / Submit lifecycle: pending → in_progress → completed
- Refund-then-commission credits with one-level referral payouts
- Admin-armed one-shot negative-balance trigger and 10x restoration
- Append-only balance events for every wallet movement
"""

from .assignment import AssignmentEngine, task_limits
from .lifecycle import TaskLifecycle
from .service import LedgerService
from .storage import Storage
from .trigger import NegativeBalanceTrigger

__all__ = [
    "AssignmentEngine",
    "LedgerService",
    "NegativeBalanceTrigger",
    "Storage",
    "TaskLifecycle",
    "task_limits",
]
