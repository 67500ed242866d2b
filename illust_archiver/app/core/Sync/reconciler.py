# Sync/reconciler.py
# Folding freshly fetched snapshots into stored ones.
#
# `merge` is pure; `EntityReconciler` is the thin storage wrapper that loads, merges and writes
# one entity (row, author and tag associations) inside a single transaction.
import dataclasses
from typing import Optional, Tuple, Callable, NamedTuple

from loguru import logger

from illust_archiver.app.core.DB_Management.Archive_DB import ArchiveDB, ArchiveDBError, EntityKind
from illust_archiver.app.core.Utils.Utils import get_current_utc_timestamp_iso
from .exceptions import ReconcileError
from .models import Snapshot, IllustSnapshot, Authorization, Change, snapshot_type_for


def _merge_scalars(merged: Snapshot, fetched: Snapshot, names) -> None:
    for name in names:
        value = getattr(fetched, name)
        if value is not None:
            setattr(merged, name, value)


def _merge_pairs(merged: Snapshot, fetched: Snapshot, groups) -> None:
    for group in groups:
        values = [getattr(fetched, name) for name in group]
        # an incomplete pair is treated as unobserved
        if all(v is not None for v in values):
            for name, value in zip(group, values):
                setattr(merged, name, value)


def _normalize_pairs(snapshot: Snapshot) -> None:
    for group in snapshot.PAIRED_FIELDS:
        if any(getattr(snapshot, name) is None for name in group):
            for name in group:
                setattr(snapshot, name, None)


def _merge_bookmark_tags(merged: Snapshot, stored: Optional[Snapshot], fetched: Snapshot) -> None:
    if not hasattr(fetched, "bookmark_tags") or fetched.bookmark_tags is None:
        return
    if stored is None or fetched.bookmark_tags_authoritative or stored.bookmark_tags is None:
        merged.bookmark_tags = fetched.bookmark_tags
    else:
        merged.bookmark_tags = stored.bookmark_tags | fetched.bookmark_tags


def merge(stored: Optional[Snapshot], fetched: Snapshot, authorization: Authorization,
          now: Optional[str] = None) -> Tuple[Snapshot, Change]:
    """
    Fold `fetched` into `stored` without ever replacing a known value with an unobserved one.

    Args:
        stored: The snapshot currently in the store, or None when the entity is unknown.
        fetched: The freshly fetched snapshot; ``None`` fields mean "not observed".
        authorization: How much the fetch could observe. ``NONE`` records the state change only.
        now: Timestamp to record as the fetch time (defaults to the current UTC time).

    Returns:
        The merged snapshot and its change classification.
    """
    if stored is not None and (type(stored) is not type(fetched) or stored.id != fetched.id):
        raise ReconcileError("Stored and fetched snapshots describe different entities",
                             entity_id=fetched.id, kind=fetched.KIND.value)
    authorization = Authorization(authorization)
    now = now or get_current_utc_timestamp_iso()

    if stored is None:
        merged = dataclasses.replace(fetched)
        _normalize_pairs(merged)
        merged.last_fetch = now
        merged.last_successful_fetch = now if authorization >= Authorization.PARTIAL else None
        merged.last_full_fetch = now if authorization is Authorization.FULL else None
        return merged, Change.NEW

    merged = dataclasses.replace(stored)
    merged.state = fetched.state
    merged.last_fetch = now

    # user-owned bookmark data is observable even when the entity's content is not
    owner_pairs = [g for g in fetched.PAIRED_FIELDS if all(n in fetched.OWNER_FIELDS for n in g)]
    _merge_pairs(merged, fetched, owner_pairs)
    _merge_bookmark_tags(merged, stored, fetched)

    if authorization is Authorization.NONE:
        return merged, Change.DEGRADED_SKIP

    content_pairs = [g for g in fetched.PAIRED_FIELDS if g not in owner_pairs]
    _merge_scalars(merged, fetched, fetched.content_field_names())
    _merge_pairs(merged, fetched, content_pairs)

    if fetched.tags is not None:
        if authorization is Authorization.FULL or not stored.tags:
            merged.tags = fetched.tags

    merged.last_successful_fetch = now
    if authorization is Authorization.FULL:
        merged.last_full_fetch = now

    change = Change.UNCHANGED if merged.comparable() == stored.comparable() else Change.UPDATED
    return merged, change


def combine(summary: Optional[Snapshot], detail: Snapshot) -> Snapshot:
    """Overlay a detail record on a list summary: the detail wins, the summary fills what it lacks."""
    if summary is None:
        return detail
    if type(summary) is not type(detail) or summary.id != detail.id:
        raise ReconcileError("Summary and detail describe different entities",
                             entity_id=detail.id, kind=detail.KIND.value)
    combined = dataclasses.replace(detail)
    for f in dataclasses.fields(detail):
        if f.name in ("id", "state", "bookmark_tags_authoritative"):
            continue
        if getattr(combined, f.name) is None and getattr(summary, f.name) is not None:
            setattr(combined, f.name, getattr(summary, f.name))
            if f.name == "bookmark_tags":
                combined.bookmark_tags_authoritative = summary.bookmark_tags_authoritative
    return combined


class ReconcileOutcome(NamedTuple):
    snapshot: Snapshot
    change: Change


class EntityReconciler:
    """Loads, merges and persists one entity per transaction. Never touches artifact rows."""

    def __init__(self, db: ArchiveDB, clock: Optional[Callable[[], str]] = None):
        self.db = db
        self._clock = clock or get_current_utc_timestamp_iso

    def exists(self, kind: EntityKind, entity_id: int) -> bool:
        return self.db.entity_exists(kind, entity_id)

    def load(self, kind: EntityKind, entity_id: int) -> Optional[Snapshot]:
        row = self.db.get_entity_row(kind, entity_id)
        if row is None:
            return None
        tags = self.db.get_entity_tags(kind, entity_id)
        bookmark_tags = self.db.get_entity_tags(kind, entity_id, bookmark=True)
        return snapshot_type_for(kind).from_row(row, tags, bookmark_tags)

    def reconcile(self, fetched: Snapshot, authorization: Authorization) -> ReconcileOutcome:
        kind = fetched.KIND
        try:
            with self.db.transaction():
                stored = self.load(kind, fetched.id)
                merged, change = merge(stored, fetched, authorization, now=self._clock())
                self._write(merged, stored)
        except ArchiveDBError as e:
            raise ReconcileError(f"Failed to store snapshot: {e}", entity_id=fetched.id, kind=kind.value) from e

        if change is Change.DEGRADED_SKIP:
            logger.warning(f"{kind.value} {fetched.id} is {merged.state.name.lower()}; kept stored content")
        else:
            logger.debug(f"{kind.value} {fetched.id}: {change.value}")
        return ReconcileOutcome(merged, change)

    def _write(self, merged: Snapshot, stored: Optional[Snapshot]) -> None:
        kind = merged.KIND
        if isinstance(merged, IllustSnapshot) and merged.author_id is not None:
            self.db.upsert_author(merged.author_id, merged.author_name or str(merged.author_id),
                                  merged.author_account)
        self.db.upsert_entity_row(kind, merged.to_row())

        if merged.tags is not None and (stored is None or merged.tags != stored.tags):
            self.db.replace_entity_tags(kind, merged.id, merged.tags)
        bookmark_tags = getattr(merged, "bookmark_tags", None)
        if bookmark_tags is not None and (stored is None or bookmark_tags != stored.bookmark_tags):
            self.db.replace_entity_tags(kind, merged.id, bookmark_tags, bookmark=True)
