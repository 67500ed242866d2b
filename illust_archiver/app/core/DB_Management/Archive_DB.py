# Archive_DB.py
# Description: DB Library for archived illustrations, FANBOX posts, their tags and downloaded attachments.
#
# Imports
import sqlite3
import threading
from enum import Enum, IntEnum
from pathlib import Path
from typing import List, Dict, Optional, Any, Union, Iterable, Set, Tuple
#
# Third-Party Libraries
from loguru import logger
#
# Local Imports
from illust_archiver.app.core.DB_Management import Migrations
#
########################################################################################################################
#
# Functions:


# --- Custom Exceptions ---
class ArchiveDBError(Exception):
    """Base exception for ArchiveDB related errors."""
    pass


class SchemaError(ArchiveDBError):
    """Exception for schema version mismatches or migration failures."""
    pass


class InputError(ValueError):
    """Custom exception for input validation errors."""
    pass


class ConflictError(ArchiveDBError):
    """Indicates a unique constraint violation (e.g. two artifact rows claiming one path)."""

    def __init__(self, message="Conflict detected.", entity: Optional[str] = None, entity_id: Any = None):
        super().__init__(message)
        self.entity = entity
        self.entity_id = entity_id

    def __str__(self):
        base = super().__str__()
        details = []
        if self.entity:
            details.append(f"Entity: {self.entity}")
        if self.entity_id is not None:
            details.append(f"ID: {self.entity_id}")
        return f"{base} ({', '.join(details)})" if details else base


# --- Stored enumerations ---
class EntityKind(str, Enum):
    ILLUST = "illust"
    FANBOX_POST = "fanbox_post"


class EntityState(IntEnum):
    NORMAL = 0
    UNLISTED = 1
    MASKED = 2
    DELETED = 3
    RESTRICTED = 4


class ArtifactSource(str, Enum):
    ILLUST_PAGE = "illust_page"
    FANBOX_IMAGE = "fanbox_image"
    FANBOX_FILE = "fanbox_file"

    @property
    def entity_kind(self) -> EntityKind:
        return EntityKind.ILLUST if self is ArtifactSource.ILLUST_PAGE else EntityKind.FANBOX_POST


class _EntityTables:
    def __init__(self, table: str, state_column: str, tag_table: str, link_column: str,
                 bookmark_tag_table: Optional[str], columns: Tuple[str, ...]):
        self.table = table
        self.state_column = state_column
        self.tag_table = tag_table
        self.link_column = link_column
        self.bookmark_tag_table = bookmark_tag_table
        self.columns = columns


ENTITY_TABLES: Dict[EntityKind, _EntityTables] = {
    EntityKind.ILLUST: _EntityTables(
        table="illusts",
        state_column="illust_state",
        tag_table="illust_tags",
        link_column="illust_id",
        bookmark_tag_table="illust_bookmark_tags",
        columns=("id", "title", "author_id", "illust_state", "illust_type", "page_count", "create_date",
                 "update_date", "x_restrict", "ai_type", "description", "is_howto", "is_original",
                 "bookmark_id", "bookmark_private", "last_fetch", "last_successful_fetch", "last_full_fetch"),
    ),
    EntityKind.FANBOX_POST: _EntityTables(
        table="fanbox_posts",
        state_column="post_state",
        tag_table="fanbox_post_tags",
        link_column="post_id",
        bookmark_tag_table=None,
        columns=("id", "creator_id", "title", "post_state", "fee", "published_datetime", "updated_datetime",
                 "body", "is_body_rich", "attachment_count", "last_fetch", "last_successful_fetch",
                 "last_full_fetch"),
    ),
}


# --- Database Class ---
class ArchiveDB:
    """
    Manages the SQLite connection and entity-level operations for the archive database.

    Connections are thread-local and run in autocommit mode; every multi-row mutation is wrapped in
    ``transaction()``. Schema versioning is handled by ``Migrations``; artifact rows are managed by
    ``ArtifactStore`` on top of this class.
    """
    _SCHEMA_NAME = Migrations.SCHEMA_NAME
    _CURRENT_SCHEMA_VERSION = Migrations.LATEST_VERSION

    def __init__(self, db_path: Union[str, Path], *, migrate: bool = True):
        if isinstance(db_path, Path):
            self.is_memory_db = False
            self.db_path = db_path.resolve()
        else:
            self.is_memory_db = (db_path == ':memory:')
            self.db_path = Path(db_path).resolve() if not self.is_memory_db else Path(":memory:")
        self.db_path_str = str(self.db_path) if not self.is_memory_db else ':memory:'

        if not self.is_memory_db:
            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise ArchiveDBError(f"Failed to create database directory {self.db_path.parent}: {e}") from e

        logger.info(f"Initializing ArchiveDB for path: {self.db_path_str}")
        self._local = threading.local()
        self._tag_cache: Dict[str, int] = {}
        self._tag_cache_lock = threading.Lock()
        if migrate:
            try:
                self._initialize_schema()
            except ArchiveDBError:
                self.close_connection()
                raise

    # --- Connection Management ---
    def _get_thread_connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, 'conn', None)
        if conn:
            try:
                conn.execute("SELECT 1")
            except (sqlite3.ProgrammingError, sqlite3.OperationalError):
                logger.warning(f"Thread-local connection for {self.db_path_str} became unusable. Reopening.")
                conn = None

        if not conn:
            try:
                conn = sqlite3.connect(
                    self.db_path_str,
                    check_same_thread=False,
                    timeout=15,
                    isolation_level=None,
                )
                conn.row_factory = sqlite3.Row
                if not self.is_memory_db:
                    conn.execute("PRAGMA journal_mode=WAL;")
                conn.execute("PRAGMA foreign_keys = ON;")
                self._local.conn = conn
                logger.debug(f"Opened SQLite connection to {self.db_path_str} for thread {threading.get_ident()}")
            except sqlite3.Error as e:
                self._local.conn = None
                raise ArchiveDBError(f"Failed to connect to database '{self.db_path_str}': {e}") from e
        return self._local.conn

    def get_connection(self) -> sqlite3.Connection:
        return self._get_thread_connection()

    def close_connection(self):
        conn = getattr(self._local, 'conn', None)
        if conn is None:
            return
        try:
            if conn.in_transaction:
                logger.warning(f"Connection to {self.db_path_str} closed inside a transaction; rolling back.")
                conn.rollback()
            if not self.is_memory_db:
                try:
                    conn.execute("PRAGMA wal_checkpoint(TRUNCATE);")
                except sqlite3.Error as cp_err:
                    logger.warning(f"WAL checkpoint failed for {self.db_path_str}: {cp_err}")
            conn.close()
            logger.debug(f"Closed connection for thread {threading.get_ident()} to {self.db_path_str}.")
        except sqlite3.Error as e:
            logger.warning(f"Error during SQLite connection close for {self.db_path_str}: {e}")
        finally:
            self._local.conn = None

    # --- Query Execution ---
    def execute_query(self, query: str, params: Optional[Union[tuple, Dict[str, Any]]] = None) -> sqlite3.Cursor:
        conn = self.get_connection()
        try:
            logger.debug(f"Executing SQL: {query[:300]} Params: {str(params)[:200]}")
            return conn.execute(query, params or ())
        except sqlite3.IntegrityError as e:
            logger.warning(f"Integrity constraint violation: {query[:300]} Error: {e}")
            if "unique constraint failed" in str(e).lower():
                raise ConflictError(message=f"Unique constraint violation: {e}") from e
            raise ArchiveDBError(f"Database constraint violation: {e}") from e
        except sqlite3.Error as e:
            logger.error(f"Query execution failed: {query[:300]} Error: {e}")
            raise ArchiveDBError(f"Query execution failed: {e}") from e

    def execute_many(self, query: str, params_list: List[tuple]) -> Optional[sqlite3.Cursor]:
        if not params_list:
            return None
        conn = self.get_connection()
        try:
            logger.debug(f"Executing Many: {query[:150]} with {len(params_list)} sets.")
            return conn.executemany(query, params_list)
        except sqlite3.IntegrityError as e:
            if "unique constraint failed" in str(e).lower():
                raise ConflictError(message=f"Unique constraint violation during batch: {e}") from e
            raise ArchiveDBError(f"Database constraint violation during batch: {e}") from e
        except sqlite3.Error as e:
            raise ArchiveDBError(f"Execute Many failed: {e}") from e

    def fetch_one(self, query: str, params: Optional[Union[tuple, Dict[str, Any]]] = None) -> Optional[Dict[str, Any]]:
        row = self.execute_query(query, params).fetchone()
        return dict(row) if row else None

    def fetch_all(self, query: str, params: Optional[Union[tuple, Dict[str, Any]]] = None) -> List[Dict[str, Any]]:
        return [dict(row) for row in self.execute_query(query, params).fetchall()]

    # --- Transaction Context ---
    def transaction(self) -> 'TransactionContextManager':
        return TransactionContextManager(self)

    # --- Schema Initialization and Migration ---
    def get_db_version(self) -> int:
        try:
            return Migrations.get_schema_version(self.get_connection())
        except sqlite3.Error as e:
            raise SchemaError(f"Could not determine schema version for '{self._SCHEMA_NAME}': {e}") from e

    def migrate(self, target_version: int = Migrations.LATEST_VERSION) -> int:
        conn = self.get_connection()
        try:
            version = Migrations.migrate(conn, target_version)
        except (sqlite3.Error, ValueError) as e:
            logger.error(f"Schema migration for '{self._SCHEMA_NAME}' to v{target_version} failed: {e}")
            raise SchemaError(f"Schema migration for '{self._SCHEMA_NAME}' failed: {e}") from e
        logger.info(f"Database schema '{self._SCHEMA_NAME}' is at version {version}.")
        return version

    def _initialize_schema(self):
        current = self.get_db_version()
        target = self._CURRENT_SCHEMA_VERSION
        logger.info(f"Checking DB schema '{self._SCHEMA_NAME}'. Current version: {current}. Code supports: {target}")
        if current == target:
            return
        if current > target:
            raise SchemaError(
                f"Database schema '{self._SCHEMA_NAME}' version ({current}) is newer than supported by code ({target}).")
        self.migrate(target)

    # --- Internal Helpers ---
    @staticmethod
    def _tables(kind: EntityKind) -> _EntityTables:
        try:
            return ENTITY_TABLES[EntityKind(kind)]
        except (KeyError, ValueError) as e:
            raise InputError(f"Unknown entity kind: {kind}") from e

    # --- Authors ---
    def upsert_author(self, author_id: int, name: str, account: Optional[str] = None) -> None:
        if author_id is None or not name:
            raise InputError("Author id and name are required.")
        self.execute_query(
            """
            INSERT INTO authors(id, name, account) VALUES(?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET name = excluded.name,
                                          account = COALESCE(excluded.account, authors.account)
            """,
            (author_id, name, account),
        )

    def get_author(self, author_id: int) -> Optional[Dict[str, Any]]:
        return self.fetch_one("SELECT id, name, account FROM authors WHERE id = ?", (author_id,))

    # --- Tags ---
    def get_or_create_tag_id(self, tag: str) -> int:
        tag = (tag or "").strip()
        if not tag:
            raise InputError("Tag text cannot be empty.")
        with self._tag_cache_lock:
            cached = self._tag_cache.get(tag)
        if cached is not None:
            return cached
        row = self.execute_query(
            "INSERT INTO tags(tag) VALUES(?) ON CONFLICT(tag) DO UPDATE SET tag = excluded.tag RETURNING id",
            (tag,),
        ).fetchone()
        tag_id = row["id"]
        with self._tag_cache_lock:
            self._tag_cache[tag] = tag_id
        return tag_id

    def clear_tag_cache(self) -> None:
        with self._tag_cache_lock:
            self._tag_cache.clear()

    def get_entity_tags(self, kind: EntityKind, entity_id: int, *, bookmark: bool = False) -> Set[str]:
        tables = self._tables(kind)
        link_table = tables.bookmark_tag_table if bookmark else tables.tag_table
        if link_table is None:
            return set()
        rows = self.execute_query(
            f"SELECT t.tag FROM tags t JOIN {link_table} l ON l.tag_id = t.id WHERE l.{tables.link_column} = ?",
            (entity_id,),
        ).fetchall()
        return {row["tag"] for row in rows}

    def replace_entity_tags(self, kind: EntityKind, entity_id: int, tags: Iterable[str], *,
                            bookmark: bool = False) -> None:
        """Set-replace the tag associations of one entity. Callers wrap this in ``transaction()``."""
        tables = self._tables(kind)
        link_table = tables.bookmark_tag_table if bookmark else tables.tag_table
        if link_table is None:
            raise InputError(f"{kind} entities have no bookmark tags.")
        tag_ids = sorted({self.get_or_create_tag_id(tag) for tag in tags})
        self.execute_query(f"DELETE FROM {link_table} WHERE {tables.link_column} = ?", (entity_id,))
        self.execute_many(
            f"INSERT OR IGNORE INTO {link_table}({tables.link_column}, tag_id) VALUES(?, ?)",
            [(entity_id, tag_id) for tag_id in tag_ids],
        )

    # --- Entities ---
    def entity_exists(self, kind: EntityKind, entity_id: int) -> bool:
        tables = self._tables(kind)
        row = self.execute_query(f"SELECT 1 FROM {tables.table} WHERE id = ? LIMIT 1", (entity_id,)).fetchone()
        return row is not None

    def get_entity_row(self, kind: EntityKind, entity_id: int) -> Optional[Dict[str, Any]]:
        tables = self._tables(kind)
        if tables.table == "illusts":
            return self.fetch_one(
                """
                SELECT i.*, a.name AS author_name, a.account AS author_account
                FROM illusts i LEFT JOIN authors a ON a.id = i.author_id
                WHERE i.id = ?
                """,
                (entity_id,),
            )
        return self.fetch_one(f"SELECT * FROM {tables.table} WHERE id = ?", (entity_id,))

    def upsert_entity_row(self, kind: EntityKind, row: Dict[str, Any]) -> None:
        """Insert or fully overwrite one entity row; unknown keys in `row` are ignored."""
        tables = self._tables(kind)
        if row.get("id") is None:
            raise InputError("Entity row requires an id.")
        if not row.get("last_fetch"):
            raise InputError("Entity row requires last_fetch.")
        columns = [c for c in tables.columns if c in row]
        placeholders = ", ".join("?" for _ in columns)
        updates = ", ".join(f"{c} = excluded.{c}" for c in columns if c != "id")
        try:
            self.execute_query(
                f"INSERT INTO {tables.table}({', '.join(columns)}) VALUES({placeholders}) "
                f"ON CONFLICT(id) DO UPDATE SET {updates}",
                tuple(row[c] for c in columns),
            )
        except ConflictError as e:
            raise ConflictError(str(e), entity=tables.table, entity_id=row["id"]) from e

    def list_entity_ids(self, kind: EntityKind) -> List[int]:
        tables = self._tables(kind)
        return [row["id"] for row in self.execute_query(f"SELECT id FROM {tables.table} ORDER BY id").fetchall()]


class TransactionContextManager:
    """BEGIN/COMMIT/ROLLBACK for the outermost block only; nested blocks join the enclosing transaction."""

    def __init__(self, db_instance: ArchiveDB):
        self.db = db_instance
        self.conn: Optional[sqlite3.Connection] = None
        self.is_outermost_transaction = False

    def __enter__(self) -> sqlite3.Connection:
        self.conn = self.db.get_connection()
        if not self.conn.in_transaction:
            try:
                self.conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                logger.error(f"Could not begin transaction on thread {threading.get_ident()}: {e}")
                raise ArchiveDBError(f"Could not begin transaction: {e}") from e
            self.is_outermost_transaction = True
            logger.debug(f"Transaction started (outermost) on thread {threading.get_ident()}.")
        return self.conn

    def __exit__(self, exc_type, exc_val, exc_tb):
        if not self.is_outermost_transaction:
            return False

        if exc_type:
            logger.debug(f"Transaction failed, rolling back on thread {threading.get_ident()}: "
                         f"{exc_type.__name__} - {exc_val}")
            try:
                self.conn.rollback()
            except sqlite3.Error as rb_err:
                logger.critical(f"Rollback FAILED on thread {threading.get_ident()}: {rb_err}")
            # tag ids created inside the rolled-back transaction no longer exist
            self.db.clear_tag_cache()
            return False

        try:
            self.conn.commit()
            logger.debug(f"Transaction committed on thread {threading.get_ident()}.")
        except sqlite3.Error as commit_err:
            logger.error(f"Commit FAILED on thread {threading.get_ident()}, attempting rollback: {commit_err}")
            try:
                self.conn.rollback()
            except sqlite3.Error as rb_err:
                logger.critical(f"Rollback after failed commit also FAILED: {rb_err}")
            self.db.clear_tag_cache()
            raise ArchiveDBError(f"Commit failed: {commit_err}") from commit_err
        return False

#
# End of Archive_DB.py
########################################################################################################################
