"""Pull (change polling), push, and identity reconciliation."""

from timeblock_sync.sync.engine import ChangePoller
from timeblock_sync.sync.push import PushAdapter
from timeblock_sync.sync.reconcile import EventMappingReconciler

__all__ = ["ChangePoller", "EventMappingReconciler", "PushAdapter"]
