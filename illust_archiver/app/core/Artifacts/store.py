# Artifacts/store.py
# Versioned record of downloaded attachments, one row per version.
#
# The current version of a slot is the row with the greatest (verified_date, rowid); every other row
# of the slot is history and keeps its own path.
from typing import Optional, List, Iterator

from loguru import logger

from illust_archiver.app.core.DB_Management.Archive_DB import ArchiveDB
from .models import ArtifactKey, ArtifactVersion, AttachmentDescriptor

_SELECT = ("SELECT rowid, source, entity_id, slot, url, size, width, height, ext, name, ugoira_frames, "
           "content_hash, download_date, verified_date, path FROM artifacts")


class ArtifactStore:
    def __init__(self, db: ArchiveDB):
        self.db = db

    # --- reads ---
    def current(self, key: ArtifactKey) -> Optional[ArtifactVersion]:
        row = self.db.execute_query(
            f"{_SELECT} WHERE source = ? AND entity_id = ? AND slot = ? "
            "ORDER BY verified_date DESC, rowid DESC LIMIT 1",
            (key.source.value, key.entity_id, key.slot),
        ).fetchone()
        return ArtifactVersion.from_row(row) if row else None

    def versions(self, key: ArtifactKey) -> List[ArtifactVersion]:
        """All versions of a slot, oldest first."""
        rows = self.db.execute_query(
            f"{_SELECT} WHERE source = ? AND entity_id = ? AND slot = ? ORDER BY verified_date ASC, rowid ASC",
            (key.source.value, key.entity_id, key.slot),
        ).fetchall()
        return [ArtifactVersion.from_row(r) for r in rows]

    def path_owner(self, stored_path: str) -> Optional[ArtifactVersion]:
        row = self.db.execute_query(f"{_SELECT} WHERE path = ?", (stored_path,)).fetchone()
        return ArtifactVersion.from_row(row) if row else None

    def is_current(self, version: ArtifactVersion) -> bool:
        current = self.current(version.key)
        return current is not None and current.rowid == version.rowid

    def iter_with_path(self, batch_size: int = 500) -> Iterator[ArtifactVersion]:
        """Every row with a non-null path, fetched in rowid-ordered batches so memory stays bounded."""
        last_rowid = 0
        while True:
            rows = self.db.execute_query(
                f"{_SELECT} WHERE path IS NOT NULL AND rowid > ? ORDER BY rowid LIMIT ?",
                (last_rowid, batch_size),
            ).fetchall()
            if not rows:
                return
            for row in rows:
                yield ArtifactVersion.from_row(row)
            last_rowid = rows[-1]["rowid"]

    def count(self, with_path_only: bool = False) -> int:
        where = " WHERE path IS NOT NULL" if with_path_only else ""
        return self.db.execute_query(f"SELECT COUNT(*) AS n FROM artifacts{where}").fetchone()["n"]

    # --- writes (callers hold a transaction) ---
    def insert_version(self, descriptor: AttachmentDescriptor, content_hash: str, stored_path: str,
                       now: str) -> int:
        key = descriptor.key
        cursor = self.db.execute_query(
            """
            INSERT INTO artifacts(source, entity_id, slot, url, size, width, height, ext, name, ugoira_frames,
                                  content_hash, download_date, verified_date, path)
            VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (key.source.value, key.entity_id, key.slot, descriptor.url, descriptor.size, descriptor.width,
             descriptor.height, descriptor.extension, descriptor.name, descriptor.ugoira_frames,
             content_hash, now, now, stored_path),
        )
        logger.debug(f"Inserted artifact version {cursor.lastrowid} for {key} at {stored_path}")
        return cursor.lastrowid

    def refill(self, rowid: int, descriptor: AttachmentDescriptor, content_hash: str, stored_path: str,
               now: str) -> None:
        """Re-populate a current row whose file was cleared by fsck."""
        self.db.execute_query(
            """
            UPDATE artifacts SET url = ?, size = ?, width = ?, height = ?, ext = ?, name = ?, ugoira_frames = ?,
                                 content_hash = ?, download_date = ?, verified_date = ?, path = ?
            WHERE rowid = ?
            """,
            (descriptor.url, descriptor.size, descriptor.width, descriptor.height, descriptor.extension,
             descriptor.name, descriptor.ugoira_frames, content_hash, now, now, stored_path, rowid),
        )

    def mark_verified(self, rowid: int, now: str, content_hash: Optional[str] = None,
                      descriptor: Optional[AttachmentDescriptor] = None) -> None:
        """Bump verified_date in place; optionally record a missing hash and refreshed remote metadata."""
        if descriptor is not None:
            self.db.execute_query(
                "UPDATE artifacts SET verified_date = ?, content_hash = COALESCE(?, content_hash), url = ?, "
                "size = COALESCE(?, size), width = COALESCE(?, width), height = COALESCE(?, height), "
                "ugoira_frames = COALESCE(?, ugoira_frames) WHERE rowid = ?",
                (now, content_hash, descriptor.url, descriptor.size, descriptor.width, descriptor.height,
                 descriptor.ugoira_frames, rowid),
            )
        else:
            self.db.execute_query(
                "UPDATE artifacts SET verified_date = ?, content_hash = COALESCE(?, content_hash) WHERE rowid = ?",
                (now, content_hash, rowid),
            )

    def move_path(self, rowid: int, stored_path: Optional[str], content_hash: Optional[str] = None) -> None:
        self.db.execute_query(
            "UPDATE artifacts SET path = ?, content_hash = COALESCE(?, content_hash) WHERE rowid = ?",
            (stored_path, content_hash, rowid),
        )

    def clear_path(self, rowid: int) -> None:
        self.db.execute_query("UPDATE artifacts SET path = NULL, download_date = NULL WHERE rowid = ?", (rowid,))
