# test_cli.py
# End-to-end tests of the command line entry point against a temporary database.
#
# Imports
import json
#
# Third-Party Imports
import pytest
from loguru import logger
#
# Local Imports
from illust_archiver import cli
from illust_archiver.app.core.Artifacts import ArtifactKey, ArtifactStore, AttachmentDescriptor
from illust_archiver.app.core.DB_Management import Migrations
from illust_archiver.app.core.DB_Management.Archive_DB import ArchiveDB, ArtifactSource, EntityKind, EntityState
from illust_archiver.app.core.Fetchers.fetch_types import FetchError, FetchErrorKind
from illust_archiver.app.core.Sync import Authorization, EntityReconciler, IllustSnapshot
#
#######################################################################################################################
#
# Functions:


class FakePixivClient:
    """Serves bookmarks, details and page bytes from memory."""

    def __init__(self):
        self.bookmarks = [IllustSnapshot(id=i, title=f"summary {i}", page_count=1, bookmark_id=100 + i,
                                         bookmark_private=False, bookmark_tags=["fav"],
                                         bookmark_tags_authoritative=True) for i in (3, 2, 1)]
        self.missing_details = set()

    def iter_bookmarks(self, tag=None, offset=0, private=False):
        yield from self.bookmarks[offset:]

    def fetch_detail(self, summary):
        if summary.id in self.missing_details:
            raise FetchError("gone", FetchErrorKind.NOT_FOUND, entity_id=summary.id)
        return IllustSnapshot(id=summary.id, title=f"detail {summary.id}", tags=["sky"], illust_type=0,
                              description="desc")

    def attachments(self, illust_id, illust_type=None):
        key = ArtifactKey(ArtifactSource.ILLUST_PAGE, illust_id, 0)
        return [AttachmentDescriptor(key=key, url=f"https://i.example.net/{illust_id}_p0.png")]

    def download(self, descriptor, fileobj):
        fileobj.write(f"bytes of {descriptor.key.entity_id}".encode())


@pytest.fixture(autouse=True)
def isolate(monkeypatch):
    for name in ("ILLUST_ARCHIVER_CONFIG", "ILLUST_ARCHIVER_DB", "DATABASE_URL", "ILLUST_ARCHIVER_BASE_DIR",
                 "PIXIV_COOKIE", "FANBOX_COOKIE", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    yield
    # main() points loguru at the captured stderr of the current test
    logger.remove()


@pytest.fixture
def paths(tmp_path):
    config = tmp_path / "config.txt"
    config.write_text("[Network]\nrequest_delay_ms = 0\nrequest_jitter_ms = 0\n", encoding="utf-8")
    return {"config": config, "db": tmp_path / "archive.sqlite", "base": tmp_path / "files"}


@pytest.fixture
def run(paths, capsys):
    def _run(*argv):
        code = cli.main(["--config", str(paths["config"]), "--database", str(paths["db"]),
                         "--base-dir", str(paths["base"]), "--no-progress", "--log-level", "WARNING", *argv])
        captured = capsys.readouterr()
        return code, captured.out, captured.err
    return _run


@pytest.fixture
def fake_pixiv(monkeypatch):
    client = FakePixivClient()
    monkeypatch.setattr(cli, "_pixiv_client", lambda config: client)
    return client


class TestDbCommand:
    def test_setup_and_version(self, run, paths):
        code, out, _ = run("db", "setup")
        assert code == 0
        assert out.strip() == f"Schema version: {Migrations.LATEST_VERSION}"
        assert paths["db"].exists()

    def test_downgrade(self, run):
        run("db", "setup")
        code, out, _ = run("db", "downgrade", "--to", "1")
        assert code == 0
        assert run("db", "version")[1].strip() == "Schema version: 1"

    def test_version_of_new_database_is_zero(self, run):
        assert run("db", "version")[1].strip() == "Schema version: 0"


class TestSyncCommands:
    def test_bookmarks_sync(self, run, paths, fake_pixiv):
        code, out, _ = run("bookmarks", "--termination", "none")

        assert code == 0
        report = json.loads(out)
        assert report["new"] == 3
        db = ArchiveDB(paths["db"])
        stored = EntityReconciler(db).load(EntityKind.ILLUST, 2)
        assert stored.title == "detail 2"
        assert stored.bookmark_tags == frozenset({"fav"})
        db.close_connection()

    def test_bookmarks_stop_on_first_stored(self, run, paths, fake_pixiv):
        db = ArchiveDB(paths["db"])
        EntityReconciler(db).reconcile(IllustSnapshot(id=2, title="known"), Authorization.PARTIAL)
        db.close_connection()

        report = json.loads(run("bookmarks")[1])

        assert report["processed"] == 1
        assert report["stopped_on_hit"] == 2

    def test_vanished_work_is_stored_as_deleted(self, run, paths, fake_pixiv):
        fake_pixiv.missing_details.add(2)
        code, out, _ = run("bookmarks", "--termination", "none")
        # NOT_FOUND degrades the entity rather than failing the run
        assert code == 0
        assert json.loads(out)["failed"] == []
        db = ArchiveDB(paths["db"])
        stored = EntityReconciler(db).load(EntityKind.ILLUST, 2)
        assert stored.state is EntityState.DELETED
        assert stored.bookmark_id == 102
        db.close_connection()

    def test_bookmarks_need_a_cookie(self, run):
        code, _, err = run("bookmarks")
        assert code == 1
        assert "cookie" in err

    def test_illust_without_ids(self, run, fake_pixiv):
        assert run("illust")[0] == 1

    def test_illust_ids_from_file(self, run, paths, fake_pixiv, tmp_path):
        id_file = tmp_path / "ids.txt"
        id_file.write_text("# refresh\n7\n8\n", encoding="utf-8")
        code, out, _ = run("illust", "6", "--from-file", str(id_file))
        assert code == 0
        assert json.loads(out)["new"] == 3


class TestQueryCommand:
    @pytest.fixture
    def populated(self, run, fake_pixiv):
        run("bookmarks", "--termination", "none")

    def test_print_sql_dry_run_touches_nothing(self, run, paths):
        code, out, _ = run("query", "-t", "sky", "-f", "count", "--print-sql", "--dry-run")
        assert code == 0
        assert "SELECT COUNT(*) AS count" in out
        assert "-- params: ['sky']" in out
        assert not paths["db"].exists()

    def test_ids_and_count(self, run, populated):
        assert run("query", "-t", "sky")[1].split() == ["1", "2", "3"]
        assert run("query", "-b", "fav", "-f", "count")[1].strip() == "3"
        assert run("query", "-o", "bookmark-id-desc", "-l", "2")[1].split() == ["3", "2"]

    def test_json_rows(self, run, populated):
        rows = json.loads(run("query", "-i", "1", "-f", "json")[1])
        assert rows[0]["title"] == "detail 1"
        assert rows[0]["tags"] == ["sky"]

    def test_invalid_input(self, run):
        assert run("query", "-i", "abc")[0] == 1
        assert run("query", "--kind", "fanbox", "-b", "x")[0] == 1


class TestDownloadCommand:
    def test_download_missing(self, run, paths, fake_pixiv):
        run("bookmarks", "--termination", "none")

        code, out, _ = run("download", "--missing")

        assert code == 0
        assert json.loads(out) == {"downloaded": 3, "entities_failed": 0}
        assert (paths["base"] / "pixiv" / "2_p0.png").read_bytes() == b"bytes of 2"
        assert run("query", "-d", "not-fully-downloaded")[1].split() == []

        code, out, _ = run("download", "--ids", "1", "2")
        assert json.loads(out) == {"kept": 2, "entities_failed": 0}

    def test_nothing_to_download(self, run, fake_pixiv):
        code, out, _ = run("download")
        assert code == 0
        assert out == ""


class TestMaintenanceCommands:
    @pytest.fixture
    def dangling_row(self, paths):
        db = ArchiveDB(paths["db"])
        descriptor = AttachmentDescriptor(ArtifactKey(ArtifactSource.ILLUST_PAGE, 1, 0),
                                          url="https://i.example.net/1_p0.png")
        with db.transaction():
            ArtifactStore(db).insert_version(descriptor, "0" * 64, "pixiv/1_p0.png", "2024-01-01T00:00:00.000Z")
        db.close_connection()

    def test_fsck_reports_then_clears(self, run, dangling_row):
        code, out, _ = run("fsck")
        assert code == 1
        assert out.startswith("missing\tillust_page:1#0\tpixiv/1_p0.png")

        code, out, _ = run("fsck", "--clear")
        assert code == 0
        assert out.startswith("cleared")

        assert run("fsck")[:2] == (0, "")

    def test_canonicalize_reports_json(self, run):
        run("db", "setup")
        code, out, _ = run("canonicalize")
        assert code == 0
        assert json.loads(out)["moved"] == 0

#
# End of test_cli.py
#######################################################################################################################
