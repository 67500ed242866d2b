# query.py
# Description: Filtered, parameterized queries over stored illusts and FANBOX posts.
#
# Imports
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Iterator, List, Optional, Tuple, Dict, Any, Union, Sequence
#
# 3rd-party imports
from loguru import logger
#
# Local Imports
from illust_archiver.app.core.DB_Management.Archive_DB import (ArchiveDB, ArtifactSource, EntityKind, EntityState,
                                                                InputError, ENTITY_TABLES)
#
#######################################################################################################################
#
# Functions:


class DownloadState(str, Enum):
    FULLY = "fully-downloaded"
    NOT_FULLY = "not-fully-downloaded"


class SyncState(str, Enum):
    NEVER_FULLY_FETCHED = "never-fully-fetched"
    FULLY_FETCHED = "fully-fetched"


class QueryOrder(str, Enum):
    ID_ASC = "id-asc"
    ID_DESC = "id-desc"
    BOOKMARK_ID_ASC = "bookmark-id-asc"
    BOOKMARK_ID_DESC = "bookmark-id-desc"


_ORDER_SQL = {
    QueryOrder.ID_ASC: "e.id ASC",
    QueryOrder.ID_DESC: "e.id DESC",
    QueryOrder.BOOKMARK_ID_ASC: "e.bookmark_id ASC, e.id ASC",
    QueryOrder.BOOKMARK_ID_DESC: "e.bookmark_id DESC, e.id DESC",
}

# column holding the number of attachment slots the remote reported
_EXPECTED_COUNT_COLUMN = {
    EntityKind.ILLUST: "page_count",
    EntityKind.FANBOX_POST: "attachment_count",
}

_AUTHOR_COLUMN = {
    EntityKind.ILLUST: "author_id",
    EntityKind.FANBOX_POST: "creator_id",
}


@dataclass
class EntityQuery:
    """
    Filters combine with AND. ``tags`` and ``bookmark_tags`` each require every listed tag to be linked
    to the entity; an unknown tag therefore matches nothing.
    """
    kind: EntityKind = EntityKind.ILLUST
    ids: Sequence[int] = field(default_factory=list)
    states: Sequence[EntityState] = field(default_factory=list)
    download_state: Optional[DownloadState] = None
    tags: Sequence[str] = field(default_factory=list)
    bookmark_tags: Sequence[str] = field(default_factory=list)
    author_id: Optional[Union[int, str]] = None
    sync_state: Optional[SyncState] = None
    order: QueryOrder = QueryOrder.ID_ASC
    limit: Optional[int] = None

    def __post_init__(self):
        self.kind = EntityKind(self.kind)
        self.order = QueryOrder(self.order)
        self.states = [EntityState(s) for s in self.states]
        if self.download_state is not None:
            self.download_state = DownloadState(self.download_state)
        if self.sync_state is not None:
            self.sync_state = SyncState(self.sync_state)
        if self.limit is not None and self.limit < 0:
            raise InputError("limit must be non-negative")
        tables = ENTITY_TABLES[self.kind]
        if tables.bookmark_tag_table is None:
            if self.bookmark_tags:
                raise InputError(f"{self.kind.value} entities have no bookmark tags")
            if self.order in (QueryOrder.BOOKMARK_ID_ASC, QueryOrder.BOOKMARK_ID_DESC):
                raise InputError(f"{self.kind.value} entities cannot be ordered by bookmark id")

    # --- SQL ---
    def _where(self) -> Tuple[List[str], List[Any]]:
        tables = ENTITY_TABLES[self.kind]
        clauses: List[str] = []
        params: List[Any] = []

        if self.ids:
            clauses.append(f"e.id IN ({', '.join('?' for _ in self.ids)})")
            params.extend(int(i) for i in self.ids)

        if self.states:
            clauses.append(f"e.{tables.state_column} IN ({', '.join('?' for _ in self.states)})")
            params.extend(int(s) for s in self.states)

        if self.download_state is not None:
            sources = [s.value for s in ArtifactSource if s.entity_kind is self.kind]
            downloaded = (
                "(SELECT COUNT(*) FROM artifacts a "
                f"WHERE a.source IN ({', '.join('?' for _ in sources)}) AND a.entity_id = e.id "
                "AND a.path IS NOT NULL AND a.rowid = ("
                "SELECT b.rowid FROM artifacts b WHERE b.source = a.source AND b.entity_id = a.entity_id "
                "AND b.slot = a.slot ORDER BY b.verified_date DESC, b.rowid DESC LIMIT 1))"
            )
            expected = f"e.{_EXPECTED_COUNT_COLUMN[self.kind]}"
            if self.download_state is DownloadState.FULLY:
                clauses.append(f"({expected} IS NOT NULL AND {expected} = {downloaded})")
            else:
                # an unknown slot count is never considered complete
                clauses.append(f"({expected} IS NULL OR {expected} != {downloaded})")
            params.extend(sources)

        for tag in self.tags:
            clauses.append(
                f"EXISTS (SELECT 1 FROM {tables.tag_table} lt JOIN tags t ON t.id = lt.tag_id "
                f"WHERE lt.{tables.link_column} = e.id AND t.tag = ?)")
            params.append(tag)

        for tag in self.bookmark_tags:
            clauses.append(
                f"EXISTS (SELECT 1 FROM {tables.bookmark_tag_table} lt JOIN tags t ON t.id = lt.tag_id "
                f"WHERE lt.{tables.link_column} = e.id AND t.tag = ?)")
            params.append(tag)

        if self.author_id is not None:
            clauses.append(f"e.{_AUTHOR_COLUMN[self.kind]} = ?")
            params.append(int(self.author_id) if self.kind is EntityKind.ILLUST else str(self.author_id))

        if self.sync_state is SyncState.NEVER_FULLY_FETCHED:
            clauses.append("e.last_full_fetch IS NULL")
        elif self.sync_state is SyncState.FULLY_FETCHED:
            clauses.append("e.last_full_fetch IS NOT NULL")

        return clauses, params

    def build_sql(self, select: str = "id") -> Tuple[str, List[Any]]:
        """
        Build the statement for one of the output shapes: ``id`` (ids only), ``row`` (all columns) or
        ``count`` (a single ``count`` column honouring ``limit``).
        """
        table = ENTITY_TABLES[self.kind].table
        columns = {"id": "e.id", "row": "e.*", "count": "e.id"}
        if select not in columns:
            raise InputError(f"Unknown select shape: {select}")

        clauses, params = self._where()
        sql = f"SELECT {columns[select]} FROM {table} e"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += f" ORDER BY {_ORDER_SQL[self.order]}"
        if self.limit is not None:
            sql += " LIMIT ?"
            params.append(self.limit)
        if select == "count":
            sql = f"SELECT COUNT(*) AS count FROM ({sql})"
        return sql, params

    # --- execution ---
    def count(self, db: ArchiveDB) -> int:
        sql, params = self.build_sql("count")
        return db.execute_query(sql, tuple(params)).fetchone()["count"]

    def iter_ids(self, db: ArchiveDB) -> Iterator[int]:
        sql, params = self.build_sql("id")
        logger.debug(f"Query: {sql} {params}")
        for row in db.execute_query(sql, tuple(params)):
            yield row["id"]

    def iter_rows(self, db: ArchiveDB) -> Iterator[Dict[str, Any]]:
        """Full rows, with tag names attached as sorted lists."""
        sql, params = self.build_sql("row")
        rows = db.execute_query(sql, tuple(params)).fetchall()
        for row in rows:
            data = dict(row)
            data["tags"] = sorted(db.get_entity_tags(self.kind, data["id"]))
            if ENTITY_TABLES[self.kind].bookmark_tag_table is not None:
                data["bookmark_tags"] = sorted(db.get_entity_tags(self.kind, data["id"], bookmark=True))
            yield data


def read_id_list(lines: Iterable[str]) -> List[int]:
    """
    Parse entity ids from command-line arguments or the lines of a file. Blank lines and anything
    after ``#`` are ignored.
    """
    ids: List[int] = []
    for lineno, line in enumerate(lines, start=1):
        text = line.split("#", 1)[0].strip()
        if not text:
            continue
        try:
            value = int(text)
        except ValueError as e:
            raise InputError(f"Invalid id {text!r} on line {lineno}") from e
        if value <= 0:
            raise InputError(f"Invalid id {text!r} on line {lineno}")
        ids.append(value)
    return ids

#
# End of query.py
#######################################################################################################################
