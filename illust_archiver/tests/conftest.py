# tests/conftest.py
# Description: Fixtures shared by every test area.
#
# Imports
import sqlite3
#
# Third-Party Imports
import pytest
#
# Local Imports
from illust_archiver.app.core.DB_Management.Archive_DB import ArchiveDB
#
########################################################################################################################
#
# Functions


class FixedClock:
    """Callable clock returning a settable ISO timestamp."""

    def __init__(self, now: str = "2024-01-01T00:00:00.000Z"):
        self.now = now

    def __call__(self) -> str:
        return self.now


@pytest.fixture
def db_path(tmp_path):
    """Provides a temporary path for the database file for each test."""
    return tmp_path / "test_archive.sqlite"


@pytest.fixture
def db_instance(db_path):
    db = ArchiveDB(db_path)
    yield db
    db.close_connection()


@pytest.fixture
def mem_db_instance():
    db = ArchiveDB(":memory:")
    yield db
    db.close_connection()


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def held_write_lock(db_path, db_instance):
    """A second connection holding the write lock; `db_instance` gives up on it at once."""
    db_instance.get_connection().execute("PRAGMA busy_timeout = 0")
    blocker = sqlite3.connect(str(db_path), isolation_level=None)
    blocker.execute("BEGIN IMMEDIATE")
    yield blocker
    if blocker.in_transaction:
        blocker.rollback()
    blocker.close()
    db_instance.get_connection().execute("PRAGMA busy_timeout = 15000")

#
# End of conftest.py
########################################################################################################################
