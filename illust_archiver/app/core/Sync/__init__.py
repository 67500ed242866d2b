# Sync/__init__.py
from .driver import SyncDriver, SyncReport, SyncFailure, TerminationPolicy
from .exceptions import SyncError, ReconcileError
from .models import (Snapshot, IllustSnapshot, PostSnapshot, Authorization, Change, IllustType, XRestrict,
                     AIType, snapshot_type_for)
from .reconciler import merge, combine, EntityReconciler, ReconcileOutcome

__all__ = [
    "SyncDriver",
    "SyncReport",
    "SyncFailure",
    "TerminationPolicy",
    "SyncError",
    "ReconcileError",
    "Snapshot",
    "IllustSnapshot",
    "PostSnapshot",
    "Authorization",
    "Change",
    "IllustType",
    "XRestrict",
    "AIType",
    "snapshot_type_for",
    "merge",
    "combine",
    "EntityReconciler",
    "ReconcileOutcome",
]
