from .canonicalize import CanonicalizeMode, CanonicalizeReport, PathCanonicalizer
from .download import DownloadReconciler, SlotLocks
from .exceptions import ArtifactError, DownloadError, PathCollisionError
from .fsck import ConsistencyChecker, FsckFinding, FsckMode
from .models import (ArtifactKey, ArtifactVersion, AttachmentDescriptor, Classification, ExistingPolicy,
                     ReconcileAction, ReconcileResult)
from .paths import PathLayout
from .store import ArtifactStore

__all__ = [
    "ArtifactError", "ArtifactKey", "ArtifactStore", "ArtifactVersion", "AttachmentDescriptor",
    "CanonicalizeMode", "CanonicalizeReport", "Classification", "ConsistencyChecker", "DownloadError",
    "DownloadReconciler", "ExistingPolicy", "FsckFinding", "FsckMode", "PathCanonicalizer",
    "PathCollisionError", "PathLayout", "ReconcileAction", "ReconcileResult", "SlotLocks",
]
