# test_sync_driver.py
# Tests for the summary-stream driver: termination, failure isolation, retries and cancellation.
#
# Imports
import threading
#
# Third-Party Imports
import pytest
#
# Local Imports
from illust_archiver.app.core.DB_Management.Archive_DB import EntityKind, EntityState
from illust_archiver.app.core.Fetchers.fetch_types import FetchError, FetchErrorKind
from illust_archiver.app.core.Sync import (
    Authorization,
    EntityReconciler,
    IllustSnapshot,
    SyncDriver,
    SyncError,
    TerminationPolicy,
)
#
#######################################################################################################################
#
# Functions:


def summary(illust_id, **extra):
    return IllustSnapshot(id=illust_id, title=f"summary {illust_id}", page_count=1,
                          bookmark_id=1000 + illust_id, bookmark_private=False, **extra)


class FakeDetailFetcher:
    """Returns a detail snapshot per id; `failures` maps an id to the errors to raise first."""

    def __init__(self, failures=None):
        self.calls = []
        self.failures = {k: list(v) for k, v in (failures or {}).items()}

    def __call__(self, snap):
        self.calls.append(snap.id)
        pending = self.failures.get(snap.id)
        if pending:
            raise pending.pop(0)
        return IllustSnapshot(id=snap.id, title=f"detail {snap.id}", description="desc", tags=["t"])


@pytest.fixture
def reconciler(mem_db_instance, clock):
    return EntityReconciler(mem_db_instance, clock=clock)


@pytest.fixture
def sleeps():
    return []


def make_driver(reconciler, fetcher, sleeps, max_retries=3):
    return SyncDriver(reconciler, fetcher, max_retries=max_retries, retry_backoff_seconds=5, sleep=sleeps.append)


class TestTermination:
    def test_on_hit_stops_before_first_stored(self, reconciler, sleeps):
        reconciler.reconcile(summary(2), Authorization.PARTIAL)
        fetcher = FakeDetailFetcher()
        driver = make_driver(reconciler, fetcher, sleeps)

        report = driver.run([summary(1), summary(2), summary(3), summary(4)], TerminationPolicy.ON_HIT)

        assert report.processed == 1
        assert report.new == 1
        assert report.stopped_on_hit == 2
        assert fetcher.calls == [1]
        assert not reconciler.exists(EntityKind.ILLUST, 3)
        assert not reconciler.exists(EntityKind.ILLUST, 4)

    def test_until_end_processes_everything(self, reconciler, sleeps):
        reconciler.reconcile(summary(2), Authorization.PARTIAL)
        driver = make_driver(reconciler, FakeDetailFetcher(), sleeps)
        report = driver.run([summary(i) for i in (1, 2, 3, 4)], TerminationPolicy.NONE)
        assert report.processed == 4
        assert report.new == 3
        assert report.updated == 1
        assert report.stopped_on_hit is None

    def test_max_count(self, reconciler, sleeps):
        driver = make_driver(reconciler, FakeDetailFetcher(), sleeps)
        report = driver.run([summary(i) for i in (1, 2, 3, 4)], max_count=2)
        assert report.processed == 2
        assert report.reached_max_count
        assert not reconciler.exists(EntityKind.ILLUST, 3)

    def test_summary_stream_is_consumed_lazily(self, reconciler, sleeps):
        reconciler.reconcile(summary(2), Authorization.PARTIAL)
        consumed = []

        def stream():
            for i in (1, 2, 3, 4):
                consumed.append(i)
                yield summary(i)

        make_driver(reconciler, FakeDetailFetcher(), sleeps).run(stream(), TerminationPolicy.ON_HIT)
        assert consumed == [1, 2]

    def test_cancellation_between_entities(self, reconciler, sleeps):
        cancel = threading.Event()
        fetcher = FakeDetailFetcher()

        def cancelling_fetcher(snap):
            cancel.set()
            return fetcher(snap)

        driver = make_driver(reconciler, cancelling_fetcher, sleeps)
        report = driver.run([summary(i) for i in (1, 2, 3)], cancel_event=cancel)
        assert report.cancelled
        assert report.processed == 1
        assert reconciler.exists(EntityKind.ILLUST, 1)
        assert not reconciler.exists(EntityKind.ILLUST, 2)

    def test_listing_failure_aborts_but_keeps_progress(self, reconciler, sleeps):
        def stream():
            yield summary(1)
            raise FetchError("listing broke", FetchErrorKind.TRANSIENT_NETWORK)

        report = make_driver(reconciler, FakeDetailFetcher(), sleeps).run(stream())
        assert report.aborted is not None
        assert reconciler.exists(EntityKind.ILLUST, 1)

    def test_concurrent_run_rejected(self, reconciler, sleeps):
        driver = make_driver(reconciler, FakeDetailFetcher(), sleeps)
        driver._lock.acquire()
        try:
            with pytest.raises(SyncError, match="already in progress"):
                driver.run([summary(1)])
        finally:
            driver._lock.release()


class TestFailures:
    def test_failure_is_isolated(self, reconciler, sleeps):
        error = FetchError("bad gateway", FetchErrorKind.TRANSIENT_NETWORK, entity_id=2)
        fetcher = FakeDetailFetcher({2: [error] * 10})
        driver = make_driver(reconciler, fetcher, sleeps, max_retries=2)

        report = driver.run([summary(i) for i in (1, 2, 3)])

        assert report.new == 2
        assert [f.entity_id for f in report.failed] == [2]
        assert report.failed[0].error_kind == "transient_network"
        assert reconciler.exists(EntityKind.ILLUST, 3)
        assert not reconciler.exists(EntityKind.ILLUST, 2)
        assert sleeps == [5, 10]

    def test_retry_then_succeed(self, reconciler, sleeps):
        errors = [FetchError("slow down", FetchErrorKind.RATE_LIMITED)] * 2
        fetcher = FakeDetailFetcher({1: errors})
        report = make_driver(reconciler, fetcher, sleeps).run([summary(1)])
        assert report.new == 1
        assert fetcher.calls == [1, 1, 1]
        assert sleeps == [5, 10]
        assert reconciler.load(EntityKind.ILLUST, 1).title == "detail 1"

    def test_malformed_is_not_retried(self, reconciler, sleeps):
        fetcher = FakeDetailFetcher({1: [FetchError("garbage", FetchErrorKind.MALFORMED)]})
        report = make_driver(reconciler, fetcher, sleeps).run([summary(1)])
        assert len(report.failed) == 1
        assert fetcher.calls == [1]
        assert sleeps == []

    def test_not_found_marks_entity_deleted(self, reconciler, sleeps):
        driver = make_driver(reconciler, FakeDetailFetcher(), sleeps)
        driver.run([summary(1)])

        gone = FakeDetailFetcher({1: [FetchError("gone", FetchErrorKind.NOT_FOUND)]})
        report = make_driver(reconciler, gone, sleeps).run([summary(1)])

        assert report.degraded == 1
        stored = reconciler.load(EntityKind.ILLUST, 1)
        assert stored.state is EntityState.DELETED
        assert stored.title == "detail 1"
        assert stored.description == "desc"

    def test_unauthorized_marks_entity_restricted(self, reconciler, sleeps):
        fetcher = FakeDetailFetcher({1: [FetchError("forbidden", FetchErrorKind.UNAUTHORIZED)]})
        make_driver(reconciler, fetcher, sleeps).run([summary(1)])
        stored = reconciler.load(EntityKind.ILLUST, 1)
        assert stored.state is EntityState.RESTRICTED
        assert stored.bookmark_id == 1001


class TestDetailFetching:
    def test_detail_combined_with_summary(self, reconciler, sleeps):
        make_driver(reconciler, FakeDetailFetcher(), sleeps).run([summary(1)])
        stored = reconciler.load(EntityKind.ILLUST, 1)
        assert stored.title == "detail 1"
        assert stored.page_count == 1
        assert stored.bookmark_id == 1001
        assert stored.last_full_fetch is not None

    def test_masked_summary_skips_detail(self, reconciler, sleeps):
        fetcher = FakeDetailFetcher()
        masked = IllustSnapshot(id=5, state=EntityState.MASKED, bookmark_id=77, bookmark_private=True)
        report = make_driver(reconciler, fetcher, sleeps).run([masked])
        assert fetcher.calls == []
        assert report.new == 1
        stored = reconciler.load(EntityKind.ILLUST, 5)
        assert stored.state is EntityState.MASKED
        assert stored.last_full_fetch is None

    def test_without_fetcher_summaries_are_partial(self, reconciler, sleeps):
        driver = SyncDriver(reconciler, None, sleep=sleeps.append)
        driver.run([summary(1)])
        stored = reconciler.load(EntityKind.ILLUST, 1)
        assert stored.last_successful_fetch is not None
        assert stored.last_full_fetch is None

    def test_run_ids_refetches_stored_entities(self, reconciler, sleeps):
        reconciler.reconcile(summary(1), Authorization.PARTIAL)
        fetcher = FakeDetailFetcher()
        report = make_driver(reconciler, fetcher, sleeps).run_ids(EntityKind.ILLUST, [1, 2])
        assert fetcher.calls == [1, 2]
        assert report.updated == 1
        assert report.new == 1

    def test_run_ids_requires_fetcher(self, reconciler, sleeps):
        with pytest.raises(SyncError):
            SyncDriver(reconciler, None).run_ids(EntityKind.ILLUST, [1])

#
# End of test_sync_driver.py
#######################################################################################################################
