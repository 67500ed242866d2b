# Migrations.py
# Description: Versioned schema scripts for the archive database, with forward and reverse steps.
#
# Imports
import sqlite3
from dataclasses import dataclass
from typing import List
#
# Third-Party Libraries
from loguru import logger
#
# Local Imports
#
########################################################################################################################
#
# Functions:

SCHEMA_NAME = "illust_archive_schema"


@dataclass(frozen=True)
class Migration:
    version: int
    description: str
    up_sql: str
    down_sql: str


_V1_UP = f"""
BEGIN;

CREATE TABLE IF NOT EXISTS db_schema_version(
  schema_name TEXT PRIMARY KEY NOT NULL,
  version     INTEGER NOT NULL
);
INSERT OR IGNORE INTO db_schema_version(schema_name, version) VALUES('{SCHEMA_NAME}', 0);

/*----------------------------------------------------------------
  1. Authors
----------------------------------------------------------------*/
CREATE TABLE IF NOT EXISTS authors(
  id      INTEGER PRIMARY KEY,
  name    TEXT NOT NULL,
  account TEXT
);

/*----------------------------------------------------------------
  2. pixiv illustrations
----------------------------------------------------------------*/
CREATE TABLE IF NOT EXISTS illusts(
  id                    INTEGER PRIMARY KEY,
  title                 TEXT,
  author_id             INTEGER REFERENCES authors(id),
  illust_state          INTEGER NOT NULL DEFAULT 0 CHECK(illust_state BETWEEN 0 AND 4),
  illust_type           INTEGER CHECK(illust_type BETWEEN 0 AND 2),
  page_count            INTEGER,
  create_date           TEXT,
  update_date           TEXT,
  x_restrict            INTEGER CHECK(x_restrict BETWEEN 0 AND 2),
  ai_type               INTEGER CHECK(ai_type BETWEEN 0 AND 2),
  description           TEXT,
  is_howto              INTEGER,
  is_original           INTEGER,
  bookmark_id           INTEGER,
  bookmark_private      INTEGER,
  last_fetch            TEXT NOT NULL,
  last_successful_fetch TEXT,
  last_full_fetch       TEXT,
  CHECK((bookmark_id IS NULL) = (bookmark_private IS NULL))
);
CREATE INDEX IF NOT EXISTS idx_illusts_author   ON illusts(author_id);
CREATE INDEX IF NOT EXISTS idx_illusts_bookmark ON illusts(bookmark_id);

/*----------------------------------------------------------------
  3. Tags and associations
----------------------------------------------------------------*/
CREATE TABLE IF NOT EXISTS tags(
  id  INTEGER PRIMARY KEY AUTOINCREMENT,
  tag TEXT NOT NULL UNIQUE
);

CREATE TABLE IF NOT EXISTS illust_tags(
  illust_id INTEGER NOT NULL REFERENCES illusts(id) ON DELETE CASCADE,
  tag_id    INTEGER NOT NULL REFERENCES tags(id),
  PRIMARY KEY(illust_id, tag_id)
);
CREATE INDEX IF NOT EXISTS idx_illust_tags_tag ON illust_tags(tag_id);

CREATE TABLE IF NOT EXISTS illust_bookmark_tags(
  illust_id INTEGER NOT NULL REFERENCES illusts(id) ON DELETE CASCADE,
  tag_id    INTEGER NOT NULL REFERENCES tags(id),
  PRIMARY KEY(illust_id, tag_id)
);
CREATE INDEX IF NOT EXISTS idx_illust_bookmark_tags_tag ON illust_bookmark_tags(tag_id);

/*----------------------------------------------------------------
  4. FANBOX posts
----------------------------------------------------------------*/
CREATE TABLE IF NOT EXISTS fanbox_posts(
  id                    INTEGER PRIMARY KEY,
  creator_id            TEXT,
  title                 TEXT,
  post_state            INTEGER NOT NULL DEFAULT 0 CHECK(post_state BETWEEN 0 AND 4),
  fee                   INTEGER,
  published_datetime    TEXT,
  updated_datetime      TEXT,
  body                  TEXT,
  is_body_rich          INTEGER,
  attachment_count      INTEGER,
  last_fetch            TEXT NOT NULL,
  last_successful_fetch TEXT,
  last_full_fetch       TEXT,
  CHECK((body IS NULL) = (is_body_rich IS NULL))
);
CREATE INDEX IF NOT EXISTS idx_fanbox_posts_creator ON fanbox_posts(creator_id);

CREATE TABLE IF NOT EXISTS fanbox_post_tags(
  post_id INTEGER NOT NULL REFERENCES fanbox_posts(id) ON DELETE CASCADE,
  tag_id  INTEGER NOT NULL REFERENCES tags(id),
  PRIMARY KEY(post_id, tag_id)
);

/*----------------------------------------------------------------
  5. Attachments (one row per slot)
----------------------------------------------------------------*/
CREATE TABLE IF NOT EXISTS artifacts(
  source        TEXT    NOT NULL CHECK(source IN ('illust_page', 'fanbox_image', 'fanbox_file')),
  entity_id     INTEGER NOT NULL,
  slot          INTEGER NOT NULL,
  url           TEXT    NOT NULL,
  size          INTEGER,
  width         INTEGER,
  height        INTEGER,
  ext           TEXT,
  name          TEXT,
  ugoira_frames TEXT,
  download_date TEXT,
  path          TEXT UNIQUE,
  PRIMARY KEY(source, entity_id, slot)
);

UPDATE db_schema_version SET version = 1 WHERE schema_name = '{SCHEMA_NAME}';

COMMIT;
"""

_V1_DOWN = f"""
BEGIN;
DROP TABLE IF EXISTS artifacts;
DROP TABLE IF EXISTS fanbox_post_tags;
DROP TABLE IF EXISTS fanbox_posts;
DROP TABLE IF EXISTS illust_bookmark_tags;
DROP TABLE IF EXISTS illust_tags;
DROP TABLE IF EXISTS tags;
DROP TABLE IF EXISTS illusts;
DROP TABLE IF EXISTS authors;
UPDATE db_schema_version SET version = 0 WHERE schema_name = '{SCHEMA_NAME}';
COMMIT;
"""

# Artifacts become versioned: the slot primary key is dropped so that a slot can hold several rows,
# each with its own content hash and verification time. Existing rows count as verified when downloaded.
_V2_UP = f"""
BEGIN;

CREATE TABLE artifacts_v2(
  source        TEXT    NOT NULL CHECK(source IN ('illust_page', 'fanbox_image', 'fanbox_file')),
  entity_id     INTEGER NOT NULL,
  slot          INTEGER NOT NULL,
  url           TEXT    NOT NULL,
  size          INTEGER,
  width         INTEGER,
  height        INTEGER,
  ext           TEXT,
  name          TEXT,
  ugoira_frames TEXT,
  content_hash  TEXT,
  download_date TEXT,
  verified_date TEXT,
  path          TEXT UNIQUE
);

INSERT INTO artifacts_v2(rowid, source, entity_id, slot, url, size, width, height, ext, name,
                         ugoira_frames, content_hash, download_date, verified_date, path)
SELECT rowid, source, entity_id, slot, url, size, width, height, ext, name,
       ugoira_frames, NULL, download_date, download_date, path
FROM artifacts;

DROP TABLE artifacts;
ALTER TABLE artifacts_v2 RENAME TO artifacts;

CREATE INDEX IF NOT EXISTS idx_artifacts_slot_verified ON artifacts(source, entity_id, slot, verified_date);
CREATE INDEX IF NOT EXISTS idx_artifacts_hash ON artifacts(content_hash);

UPDATE db_schema_version SET version = 2 WHERE schema_name = '{SCHEMA_NAME}';

COMMIT;
"""

# Best effort: keep, per slot, the row with the greatest verified_date (ties broken by insertion order).
# Superseded files stay on disk but are no longer referenced.
_V2_DOWN = f"""
BEGIN;

CREATE TABLE artifacts_v1(
  source        TEXT    NOT NULL CHECK(source IN ('illust_page', 'fanbox_image', 'fanbox_file')),
  entity_id     INTEGER NOT NULL,
  slot          INTEGER NOT NULL,
  url           TEXT    NOT NULL,
  size          INTEGER,
  width         INTEGER,
  height        INTEGER,
  ext           TEXT,
  name          TEXT,
  ugoira_frames TEXT,
  download_date TEXT,
  path          TEXT UNIQUE,
  PRIMARY KEY(source, entity_id, slot)
);

INSERT OR REPLACE INTO artifacts_v1(source, entity_id, slot, url, size, width, height, ext, name,
                                    ugoira_frames, download_date, path)
SELECT source, entity_id, slot, url, size, width, height, ext, name,
       ugoira_frames, download_date, path
FROM artifacts
ORDER BY verified_date ASC, rowid ASC;

DROP TABLE artifacts;
ALTER TABLE artifacts_v1 RENAME TO artifacts;

UPDATE db_schema_version SET version = 1 WHERE schema_name = '{SCHEMA_NAME}';

COMMIT;
"""

MIGRATIONS: List[Migration] = [
    Migration(1, "initial tables", _V1_UP, _V1_DOWN),
    Migration(2, "versioned artifacts with content hash and verified_date", _V2_UP, _V2_DOWN),
]

LATEST_VERSION = MIGRATIONS[-1].version


def get_schema_version(conn: sqlite3.Connection) -> int:
    try:
        row = conn.execute("SELECT version FROM db_schema_version WHERE schema_name = ? LIMIT 1",
                           (SCHEMA_NAME,)).fetchone()
    except sqlite3.OperationalError as e:
        if "no such table" in str(e).lower():
            return 0
        raise
    return row[0] if row else 0


def _run_script(conn: sqlite3.Connection, script: str) -> None:
    try:
        conn.executescript(script)
    except sqlite3.Error:
        if conn.in_transaction:
            conn.rollback()
        raise


def migrate(conn: sqlite3.Connection, target_version: int = LATEST_VERSION) -> int:
    """
    Step the schema up or down to `target_version`, one migration per transaction.

    Returns the resulting version. Raises ``sqlite3.Error`` or ``ValueError``; the caller wraps them.
    """
    if target_version < 0 or target_version > LATEST_VERSION:
        raise ValueError(f"Unknown schema version {target_version} (supported: 0..{LATEST_VERSION})")

    current = get_schema_version(conn)
    if current > LATEST_VERSION:
        raise ValueError(f"Database schema version ({current}) is newer than supported ({LATEST_VERSION})")

    while current < target_version:
        migration = MIGRATIONS[current]
        logger.info(f"[{SCHEMA_NAME}] Migrating up to v{migration.version}: {migration.description}")
        _run_script(conn, migration.up_sql)
        current = get_schema_version(conn)
        if current != migration.version:
            raise ValueError(f"Migration to v{migration.version} did not record its version (got {current})")

    while current > target_version:
        migration = MIGRATIONS[current - 1]
        logger.warning(f"[{SCHEMA_NAME}] Reverting v{migration.version}: {migration.description}")
        _run_script(conn, migration.down_sql)
        current = get_schema_version(conn)
        if current != migration.version - 1:
            raise ValueError(f"Reverting v{migration.version} did not record its version (got {current})")

    return current

#
# End of Migrations.py
########################################################################################################################
