# Artifacts/models.py
# Keys, remote descriptors and stored versions of downloaded attachments.
import sqlite3
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Dict, Any, Union

from illust_archiver.app.core.DB_Management.Archive_DB import ArtifactSource
from illust_archiver.app.core.Utils.Utils import extension_from_url, normalize_extension


@dataclass(frozen=True, order=True)
class ArtifactKey:
    source: ArtifactSource
    entity_id: int
    slot: int

    def __post_init__(self):
        object.__setattr__(self, "source", ArtifactSource(self.source))
        object.__setattr__(self, "entity_id", int(self.entity_id))
        object.__setattr__(self, "slot", int(self.slot))

    def __str__(self):
        return f"{self.source.value}:{self.entity_id}#{self.slot}"


@dataclass(frozen=True)
class AttachmentDescriptor:
    """What the remote currently says about one attachment slot."""
    key: ArtifactKey
    url: str
    size: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None
    ext: Optional[str] = None
    name: Optional[str] = None
    ugoira_frames: Optional[str] = None  # JSON list of {file, delay}

    @property
    def extension(self) -> str:
        return normalize_extension(self.ext) or extension_from_url(self.url) or "bin"


@dataclass
class ArtifactVersion:
    rowid: int
    key: ArtifactKey
    url: str
    size: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None
    ext: Optional[str] = None
    name: Optional[str] = None
    ugoira_frames: Optional[str] = None
    content_hash: Optional[str] = None
    download_date: Optional[str] = None
    verified_date: Optional[str] = None
    path: Optional[str] = None

    @property
    def extension(self) -> str:
        return normalize_extension(self.ext) or extension_from_url(self.url) or "bin"

    @classmethod
    def from_row(cls, row: Union[sqlite3.Row, Dict[str, Any]]) -> "ArtifactVersion":
        return cls(
            rowid=row["rowid"],
            key=ArtifactKey(row["source"], row["entity_id"], row["slot"]),
            url=row["url"],
            size=row["size"],
            width=row["width"],
            height=row["height"],
            ext=row["ext"],
            name=row["name"],
            ugoira_frames=row["ugoira_frames"],
            content_hash=row["content_hash"],
            download_date=row["download_date"],
            verified_date=row["verified_date"],
            path=row["path"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rowid": self.rowid,
            "source": self.key.source.value,
            "entity_id": self.key.entity_id,
            "slot": self.key.slot,
            "url": self.url,
            "size": self.size,
            "width": self.width,
            "height": self.height,
            "ext": self.ext,
            "name": self.name,
            "content_hash": self.content_hash,
            "download_date": self.download_date,
            "verified_date": self.verified_date,
            "path": self.path,
        }


class Classification(str, Enum):
    MISSING = "missing"
    FRESH = "fresh"
    NEEDS_REVERIFY = "needs_reverify"
    OUTDATED = "outdated"


class ExistingPolicy(str, Enum):
    REVERIFY = "reverify"
    OVERWRITE = "overwrite"
    SKIP = "skip"


class ReconcileAction(str, Enum):
    DOWNLOADED = "downloaded"    # slot was missing, first version written
    VERIFIED = "verified"        # re-downloaded bytes matched, verified_date bumped
    SUPERSEDED = "superseded"    # new version published, prior content kept under its hash
    ADOPTED = "adopted"          # an untracked file already at the canonical path matched
    KEPT = "kept"                # nothing to do under the policy
    FAILED = "failed"


@dataclass
class ReconcileResult:
    key: ArtifactKey
    classification: Classification
    action: ReconcileAction
    path: Optional[str] = None
    content_hash: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.action is not ReconcileAction.FAILED
