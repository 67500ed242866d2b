# Sync/driver.py
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional, Callable, List, Dict, Any, Iterator

from loguru import logger

from illust_archiver.app.core.DB_Management.Archive_DB import ArchiveDBError, EntityKind, EntityState
from illust_archiver.app.core.Fetchers.fetch_types import FetchError, FetchErrorKind
from .exceptions import SyncError
from .models import Snapshot, Authorization, Change, snapshot_type_for
from .reconciler import EntityReconciler, ReconcileOutcome, combine

DetailFetcher = Callable[[Snapshot], Snapshot]


class TerminationPolicy(str, Enum):
    NONE = "until-end"
    ON_HIT = "on-hit"


@dataclass
class SyncFailure:
    entity_id: Optional[int]
    error_kind: str
    message: str


@dataclass
class SyncReport:
    new: int = 0
    updated: int = 0
    unchanged: int = 0
    degraded: int = 0
    failed: List[SyncFailure] = field(default_factory=list)
    processed: int = 0
    stopped_on_hit: Optional[int] = None
    reached_max_count: bool = False
    cancelled: bool = False
    aborted: Optional[str] = None

    def record(self, change: Change) -> None:
        self.processed += 1
        if change is Change.NEW:
            self.new += 1
        elif change is Change.UPDATED:
            self.updated += 1
        elif change is Change.UNCHANGED:
            self.unchanged += 1
        else:
            self.degraded += 1

    def record_failure(self, entity_id: Optional[int], error_kind: str, message: str) -> None:
        self.processed += 1
        self.failed.append(SyncFailure(entity_id, error_kind, message))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "new": self.new,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "degraded": self.degraded,
            "failed": [f.__dict__ for f in self.failed],
            "processed": self.processed,
            "stopped_on_hit": self.stopped_on_hit,
            "reached_max_count": self.reached_max_count,
            "cancelled": self.cancelled,
            "aborted": self.aborted,
        }


class SyncDriver:
    """
    Drives a remote-ordered summary sequence through the reconciler, one entity at a time.

    Each entity is committed in its own transaction, so stopping for any reason (policy, count,
    cancellation, interrupt) leaves the store at the last entity boundary.

    ``ON_HIT`` stops before the first summary whose id is already stored, without checking whether
    that entity changed remotely. Edits to older, previously seen entities are therefore not picked
    up by an ``ON_HIT`` run; use ``run_ids`` or a ``NONE`` run to refresh them.
    """

    def __init__(self, reconciler: EntityReconciler, fetch_detail: Optional[DetailFetcher] = None, *,
                 max_retries: int = 3, retry_backoff_seconds: float = 5.0,
                 sleep: Callable[[float], None] = time.sleep):
        self.reconciler = reconciler
        self.fetch_detail = fetch_detail
        self.max_retries = max_retries
        self.retry_backoff_seconds = retry_backoff_seconds
        self._sleep = sleep
        self._lock = threading.Lock()

    def run(self, summaries: Iterable[Snapshot], policy: TerminationPolicy = TerminationPolicy.NONE,
            max_count: Optional[int] = None, cancel_event: Optional[threading.Event] = None) -> SyncReport:
        policy = TerminationPolicy(policy)
        report = SyncReport()
        if not self._lock.acquire(blocking=False):
            raise SyncError("A sync run is already in progress on this driver")
        try:
            iterator: Iterator[Snapshot] = iter(summaries)
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    logger.info("Sync cancelled by caller.")
                    report.cancelled = True
                    break
                try:
                    summary = next(iterator)
                except StopIteration:
                    break
                except FetchError as e:
                    # the listing itself failed; nothing further can be consumed
                    logger.error(f"Summary listing failed: {e}")
                    report.aborted = str(e)
                    break

                if policy is TerminationPolicy.ON_HIT and self.reconciler.exists(summary.KIND, summary.id):
                    logger.info(f"Encountered already stored {summary.KIND.value} {summary.id}. Terminating.")
                    report.stopped_on_hit = summary.id
                    break

                self._process(summary, report)

                if max_count is not None and report.processed >= max_count:
                    logger.info(f"Reached the maximum number of processed entities ({max_count}). Terminating.")
                    report.reached_max_count = True
                    break
        finally:
            self._lock.release()

        logger.info(
            f"Sync finished: {report.new} new, {report.updated} updated, {report.unchanged} unchanged, "
            f"{report.degraded} degraded, {len(report.failed)} failed")
        return report

    def run_ids(self, kind: EntityKind, ids: Iterable[int],
                cancel_event: Optional[threading.Event] = None) -> SyncReport:
        """Force a re-sync of exactly the given ids, whether or not they are already stored."""
        if self.fetch_detail is None:
            raise SyncError("Re-syncing by id requires a detail fetcher")
        snapshot_type = snapshot_type_for(kind)
        summaries = (snapshot_type(id=int(entity_id)) for entity_id in ids)
        return self.run(summaries, TerminationPolicy.NONE, cancel_event=cancel_event)

    # --- per-entity work ---
    def _process(self, summary: Snapshot, report: SyncReport) -> None:
        try:
            outcome = self._sync_one(summary)
        except FetchError as e:
            logger.error(f"Fetching {summary.KIND.value} {summary.id} failed: {e}")
            report.record_failure(summary.id, e.kind.value, str(e))
            return
        except (SyncError, ArchiveDBError) as e:
            logger.error(f"Reconciling {summary.KIND.value} {summary.id} failed: {e}")
            report.record_failure(summary.id, "store", str(e))
            return

        report.record(outcome.change)
        title = outcome.snapshot.title or "(unknown)"
        logger.info(f"Synced {summary.KIND.value} {summary.id}: [{outcome.change.value.upper()}] {title}")

    def _sync_one(self, summary: Snapshot) -> ReconcileOutcome:
        # masked/unlisted listing entries carry no content and have no detail to fetch
        if self.fetch_detail is None or (summary.is_degraded() and summary.state is not EntityState.NORMAL):
            authorization = Authorization.NONE if summary.is_degraded() else Authorization.PARTIAL
            return self.reconciler.reconcile(summary, authorization)

        try:
            detail = self._fetch_with_retry(summary)
        except FetchError as e:
            if not e.kind.degrades_entity:
                raise
            state = EntityState.RESTRICTED if e.kind is FetchErrorKind.UNAUTHORIZED else EntityState.DELETED
            logger.warning(f"{summary.KIND.value} {summary.id} is {state.name.lower()} ({e.kind.value})")
            return self.reconciler.reconcile(summary.degraded(state), Authorization.NONE)

        fetched = combine(summary, detail)
        if detail.is_degraded():
            authorization = Authorization.NONE
        elif detail.state is not EntityState.NORMAL:
            # e.g. a restricted FANBOX post: listing fields visible, body withheld
            authorization = Authorization.PARTIAL
        else:
            authorization = Authorization.FULL
        return self.reconciler.reconcile(fetched, authorization)

    def _fetch_with_retry(self, summary: Snapshot) -> Snapshot:
        attempt = 0
        while True:
            try:
                return self.fetch_detail(summary)
            except FetchError as e:
                if not e.kind.retryable or attempt >= self.max_retries:
                    raise
                attempt += 1
                delay = self.retry_backoff_seconds * attempt
                logger.warning(f"Attempt {attempt} for {summary.KIND.value} {summary.id} failed ({e.kind.value}); "
                               f"retrying in {delay:.1f}s")
                self._sleep(delay)
