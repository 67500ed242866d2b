# test_fsck_canonicalize.py
# Tests for the store/filesystem consistency check and for path canonicalization.
#
# Imports
import hashlib
import os
#
# Third-Party Imports
import pytest
#
# Local Imports
from illust_archiver.app.core.Artifacts import (
    ArtifactStore,
    CanonicalizeMode,
    ConsistencyChecker,
    DownloadReconciler,
    FsckMode,
    PathCanonicalizer,
    PathLayout,
    ReconcileAction,
)
from illust_archiver.app.core.config import DatabasePathFormat
#
#######################################################################################################################
#
# Functions:

LATER = "2024-03-01T00:00:00.000Z"
BY_ID = {"illust_page": "by_id/{entity_id}/{slot}.{ext}"}


@pytest.fixture
def two_pages(downloader, make_page, remote):
    pages = [make_page(1, 0), make_page(1, 1)]
    for descriptor in pages:
        remote.files[descriptor.url] = f"page {descriptor.key.slot}".encode()
        assert downloader.reconcile(descriptor).action is ReconcileAction.DOWNLOADED
    return pages


class TestFsck:
    def test_report_only_leaves_rows(self, db_instance, layout, base_dir, two_pages):
        (base_dir / "pixiv" / "1_p1.png").unlink()

        findings = ConsistencyChecker(db_instance, layout).fsck(FsckMode.REPORT_ONLY)

        assert [f.key for f in findings] == [two_pages[1].key]
        assert findings[0].resolved == base_dir / "pixiv" / "1_p1.png"
        assert not findings[0].cleared
        assert ArtifactStore(db_instance).current(two_pages[1].key).path == "pixiv/1_p1.png"

    def test_clear_nulls_path_and_is_idempotent(self, db_instance, layout, base_dir, two_pages):
        (base_dir / "pixiv" / "1_p0.png").unlink()
        checker = ConsistencyChecker(db_instance, layout)

        findings = checker.fsck(FsckMode.REPORT_AND_CLEAR)

        assert len(findings) == 1 and findings[0].cleared
        cleared = ArtifactStore(db_instance).current(two_pages[0].key)
        assert cleared.path is None
        assert cleared.download_date is None
        assert checker.fsck(FsckMode.REPORT_AND_CLEAR) == []

    def test_small_batches_see_every_row(self, db_instance, layout, base_dir, two_pages, make_page, downloader,
                                         remote):
        extra = make_page(2, 0)
        remote.files[extra.url] = b"third"
        downloader.reconcile(extra)
        for name in ("1_p0.png", "2_p0.png"):
            (base_dir / "pixiv" / name).unlink()

        findings = ConsistencyChecker(db_instance, layout, batch_size=1).fsck()

        assert sorted(f.key.entity_id for f in findings) == [1, 2]

    def test_directory_in_place_of_file_is_missing(self, db_instance, layout, base_dir, two_pages):
        target = base_dir / "pixiv" / "1_p0.png"
        target.unlink()
        target.mkdir()
        assert len(ConsistencyChecker(db_instance, layout).fsck()) == 1


class TestCanonicalize:
    def test_template_change_moves_files(self, db_instance, base_dir, two_pages):
        new_layout = PathLayout(base_dir, templates=BY_ID)
        canonicalizer = PathCanonicalizer(db_instance, new_layout)

        report = canonicalizer.canonicalize(CanonicalizeMode.MOVE)

        assert report.moved == 2
        assert report.failed == []
        assert (base_dir / "by_id" / "1" / "1.png").read_bytes() == b"page 1"
        assert not (base_dir / "pixiv" / "1_p0.png").exists()
        assert ArtifactStore(db_instance).current(two_pages[0].key).path == "by_id/1/0.png"

        again = canonicalizer.canonicalize(CanonicalizeMode.MOVE)
        assert again.changed == 0
        assert again.unchanged == 2
        assert again.passes == 1

    def test_superseded_versions_keep_their_hash_name(self, db_instance, base_dir, downloader, make_page, remote,
                                                      clock):
        descriptor = make_page(1, 0)
        remote.files[descriptor.url] = b"v1"
        downloader.reconcile(descriptor)
        remote.files[descriptor.url] = b"v2"
        clock.now = LATER
        downloader.reconcile(descriptor)

        report = PathCanonicalizer(db_instance, PathLayout(base_dir, templates=BY_ID)).canonicalize()

        assert report.moved == 2
        old_path = PathLayout.content_addressed("by_id/1/0.png", hashlib.sha256(b"v1").hexdigest())
        versions = ArtifactStore(db_instance).versions(descriptor.key)
        assert [v.path for v in versions] == [old_path, "by_id/1/0.png"]
        assert (base_dir / old_path).read_bytes() == b"v1"
        assert (base_dir / "by_id" / "1" / "0.png").read_bytes() == b"v2"

    def test_colliding_targets_are_disambiguated(self, db_instance, base_dir, two_pages):
        flat = PathLayout(base_dir, templates={"illust_page": "flat/{entity_id}.{ext}"})
        canonicalizer = PathCanonicalizer(db_instance, flat)

        report = canonicalizer.canonicalize()

        assert report.moved == 2
        store = ArtifactStore(db_instance)
        assert [store.current(p.key).path for p in two_pages] == ["flat/1.png", "flat/1~1.png"]
        assert canonicalizer.canonicalize().changed == 0

    def test_skip_file_updates_rows_only(self, db_instance, base_dir, two_pages):
        moved_dir = base_dir / "by_id" / "1"
        moved_dir.mkdir(parents=True)
        (base_dir / "pixiv" / "1_p0.png").rename(moved_dir / "0.png")

        report = PathCanonicalizer(db_instance, PathLayout(base_dir, templates=BY_ID)).canonicalize(
            CanonicalizeMode.SKIP_FILE)

        assert report.updated == 1
        assert report.moved == 0
        assert [rowid for rowid, _ in report.skipped] == [
            ArtifactStore(db_instance).current(two_pages[1].key).rowid]
        store = ArtifactStore(db_instance)
        assert store.current(two_pages[0].key).path == "by_id/1/0.png"
        assert store.current(two_pages[1].key).path == "pixiv/1_p1.png"

    def test_path_format_change_rewrites_rows_in_place(self, db_instance, base_dir, make_page, remote, clock):
        absolute = PathLayout(base_dir, path_format=DatabasePathFormat.ABSOLUTE)
        descriptor = make_page(3, 0)
        remote.files[descriptor.url] = b"abs"
        result = DownloadReconciler(db_instance, absolute, remote, clock=clock).reconcile(descriptor)
        assert os.path.isabs(result.path)

        inline = PathLayout(base_dir, path_format=DatabasePathFormat.INLINE)
        report = PathCanonicalizer(db_instance, inline, previous_layout=absolute).canonicalize()

        assert report.updated == 1
        assert report.moved == 0
        assert ArtifactStore(db_instance).current(descriptor.key).path == "pixiv/3_p0.png"
        assert (base_dir / "pixiv" / "3_p0.png").read_bytes() == b"abs"

    def test_base_dir_move_with_previous_layout(self, db_instance, tmp_path, make_page, remote, clock):
        old_base = tmp_path / "old"
        new_base = tmp_path / "new"
        old_layout = PathLayout(old_base, path_format=DatabasePathFormat.AS_IS)
        descriptor = make_page(4, 0)
        remote.files[descriptor.url] = b"moving"
        DownloadReconciler(db_instance, old_layout, remote, clock=clock).reconcile(descriptor)

        new_layout = PathLayout(new_base, path_format=DatabasePathFormat.INLINE)
        report = PathCanonicalizer(db_instance, new_layout, previous_layout=old_layout).canonicalize()

        assert report.moved == 1
        assert (new_base / "pixiv" / "4_p0.png").read_bytes() == b"moving"
        assert not (old_base / "pixiv" / "4_p0.png").exists()

    def test_inline_rows_follow_a_moved_base_dir(self, db_instance, tmp_path, make_page, remote, clock):
        old_layout = PathLayout(tmp_path / "old")
        new_layout = PathLayout(tmp_path / "new")
        descriptor = make_page(5, 0)
        remote.files[descriptor.url] = b"inline"
        DownloadReconciler(db_instance, old_layout, remote, clock=clock).reconcile(descriptor)

        canonicalizer = PathCanonicalizer(db_instance, new_layout, previous_layout=old_layout)
        report = canonicalizer.canonicalize()

        assert report.moved == 1
        assert ArtifactStore(db_instance).current(descriptor.key).path == "pixiv/5_p0.png"
        assert (tmp_path / "new" / "pixiv" / "5_p0.png").read_bytes() == b"inline"
        assert canonicalizer.canonicalize().changed == 0

#
# End of test_fsck_canonicalize.py
#######################################################################################################################
