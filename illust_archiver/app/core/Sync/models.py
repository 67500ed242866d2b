# Sync/models.py
# Normalized entity snapshots shared by the fetchers, the reconciler and the store.
import dataclasses
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Optional, Dict, Any, FrozenSet, Tuple, ClassVar, Iterable, Type

from illust_archiver.app.core.DB_Management.Archive_DB import EntityKind, EntityState


class Authorization(IntEnum):
    """How much of an entity a fetch was allowed to observe."""
    NONE = 0      # access revoked or entity removed: content unobservable
    PARTIAL = 1   # list summary only
    FULL = 2      # detail record fetched with full access


class Change(str, Enum):
    NEW = "new"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    DEGRADED_SKIP = "degraded_skip"


class IllustType(IntEnum):
    ILLUSTRATION = 0
    MANGA = 1
    UGOIRA = 2


class XRestrict(IntEnum):
    PUBLIC = 0
    R18 = 1
    R18G = 2


class AIType(IntEnum):
    UNSPECIFIED = 0
    NON_AI = 1
    AI = 2


TIMESTAMP_FIELDS = ("last_fetch", "last_successful_fetch", "last_full_fetch")
TAG_FIELDS = ("tags", "bookmark_tags")

_BOOL_COLUMNS = ("is_howto", "is_original", "bookmark_private", "is_body_rich")


def _as_tag_set(tags: Optional[Iterable[str]]) -> Optional[FrozenSet[str]]:
    if tags is None:
        return None
    return frozenset(t.strip() for t in tags if t and t.strip())


@dataclass
class Snapshot:
    """
    One observation of a remote entity. ``None`` means "not observed", never "empty".

    Subclasses declare which fields travel in pairs (both null or both set) and which fields
    belong to the archiving user rather than the entity (observable even when content is not).
    """
    KIND: ClassVar[EntityKind]
    PAIRED_FIELDS: ClassVar[Tuple[Tuple[str, ...], ...]] = ()
    OWNER_FIELDS: ClassVar[Tuple[str, ...]] = ()
    _SPECIAL: ClassVar[Tuple[str, ...]] = ("id", "state") + TIMESTAMP_FIELDS + TAG_FIELDS + (
        "bookmark_tags_authoritative",)

    id: int
    state: EntityState = EntityState.NORMAL
    title: Optional[str] = None
    tags: Optional[FrozenSet[str]] = None
    last_fetch: Optional[str] = None
    last_successful_fetch: Optional[str] = None
    last_full_fetch: Optional[str] = None

    def __post_init__(self):
        self.id = int(self.id)
        self.state = EntityState(self.state)
        self.tags = _as_tag_set(self.tags)

    # --- field classification ---
    @classmethod
    def paired_field_names(cls) -> Tuple[str, ...]:
        return tuple(name for group in cls.PAIRED_FIELDS for name in group)

    @classmethod
    def content_field_names(cls) -> Tuple[str, ...]:
        """Entity-owned scalar fields that follow the never-regress rule one by one."""
        excluded = set(cls._SPECIAL) | set(cls.paired_field_names()) | set(cls.OWNER_FIELDS)
        return tuple(f.name for f in dataclasses.fields(cls) if f.name not in excluded)

    def is_degraded(self) -> bool:
        """True when no entity-owned content was observed."""
        content = self.content_field_names() + tuple(
            n for n in self.paired_field_names() if n not in self.OWNER_FIELDS)
        return all(getattr(self, name) is None for name in content) and self.tags is None

    def comparable(self) -> Dict[str, Any]:
        """Every stored value except the fetch timestamps and transient flags."""
        return {f.name: getattr(self, f.name) for f in dataclasses.fields(self)
                if f.compare and f.name not in TIMESTAMP_FIELDS}

    def degraded(self, state: EntityState) -> "Snapshot":
        """A copy that keeps only identity and user-owned data, with `state` recorded."""
        kept = {name: getattr(self, name) for name in self.OWNER_FIELDS}
        if hasattr(self, "bookmark_tags"):
            kept["bookmark_tags"] = getattr(self, "bookmark_tags")
            kept["bookmark_tags_authoritative"] = getattr(self, "bookmark_tags_authoritative")
        return type(self)(id=self.id, state=state, **kept)

    # --- persistence ---
    def to_dict(self) -> Dict[str, Any]:
        data = {}
        for f in dataclasses.fields(self):
            value = getattr(self, f.name)
            if isinstance(value, frozenset):
                value = sorted(value)
            elif isinstance(value, Enum):
                value = value.name.lower()
            data[f.name] = value
        data["kind"] = self.KIND.value
        return data

    @staticmethod
    def _row_value(name: str, value: Any) -> Any:
        if value is None:
            return None
        if isinstance(value, IntEnum):
            return int(value)
        if name in _BOOL_COLUMNS:
            return int(bool(value))
        return value


@dataclass
class IllustSnapshot(Snapshot):
    KIND: ClassVar[EntityKind] = EntityKind.ILLUST
    PAIRED_FIELDS: ClassVar[Tuple[Tuple[str, ...], ...]] = (("bookmark_id", "bookmark_private"),)
    OWNER_FIELDS: ClassVar[Tuple[str, ...]] = ("bookmark_id", "bookmark_private")

    author_id: Optional[int] = None
    author_name: Optional[str] = None
    author_account: Optional[str] = None
    illust_type: Optional[IllustType] = None
    page_count: Optional[int] = None
    create_date: Optional[str] = None
    update_date: Optional[str] = None
    x_restrict: Optional[XRestrict] = None
    ai_type: Optional[AIType] = None
    description: Optional[str] = None
    is_howto: Optional[bool] = None
    is_original: Optional[bool] = None
    bookmark_id: Optional[int] = None
    bookmark_private: Optional[bool] = None
    bookmark_tags: Optional[FrozenSet[str]] = None
    bookmark_tags_authoritative: bool = field(default=False, compare=False)

    def __post_init__(self):
        super().__post_init__()
        self.bookmark_tags = _as_tag_set(self.bookmark_tags)
        if self.illust_type is not None:
            self.illust_type = IllustType(self.illust_type)
        if self.x_restrict is not None:
            self.x_restrict = XRestrict(self.x_restrict)
        if self.ai_type is not None:
            self.ai_type = AIType(self.ai_type)

    def to_row(self) -> Dict[str, Any]:
        row = {
            "id": self.id,
            "title": self.title,
            "author_id": self.author_id,
            "illust_state": int(self.state),
            "illust_type": self.illust_type,
            "page_count": self.page_count,
            "create_date": self.create_date,
            "update_date": self.update_date,
            "x_restrict": self.x_restrict,
            "ai_type": self.ai_type,
            "description": self.description,
            "is_howto": self.is_howto,
            "is_original": self.is_original,
            "bookmark_id": self.bookmark_id,
            "bookmark_private": self.bookmark_private,
            "last_fetch": self.last_fetch,
            "last_successful_fetch": self.last_successful_fetch,
            "last_full_fetch": self.last_full_fetch,
        }
        return {k: self._row_value(k, v) for k, v in row.items()}

    @classmethod
    def from_row(cls, row: Dict[str, Any], tags: Iterable[str] = (),
                 bookmark_tags: Iterable[str] = ()) -> "IllustSnapshot":
        def as_bool(value):
            return None if value is None else bool(value)

        return cls(
            id=row["id"],
            state=EntityState(row["illust_state"]),
            title=row["title"],
            tags=frozenset(tags),
            last_fetch=row["last_fetch"],
            last_successful_fetch=row["last_successful_fetch"],
            last_full_fetch=row["last_full_fetch"],
            author_id=row["author_id"],
            author_name=row.get("author_name"),
            author_account=row.get("author_account"),
            illust_type=row["illust_type"],
            page_count=row["page_count"],
            create_date=row["create_date"],
            update_date=row["update_date"],
            x_restrict=row["x_restrict"],
            ai_type=row["ai_type"],
            description=row["description"],
            is_howto=as_bool(row["is_howto"]),
            is_original=as_bool(row["is_original"]),
            bookmark_id=row["bookmark_id"],
            bookmark_private=as_bool(row["bookmark_private"]),
            bookmark_tags=frozenset(bookmark_tags),
        )


@dataclass
class PostSnapshot(Snapshot):
    KIND: ClassVar[EntityKind] = EntityKind.FANBOX_POST
    PAIRED_FIELDS: ClassVar[Tuple[Tuple[str, ...], ...]] = (("body", "is_body_rich"),)

    creator_id: Optional[str] = None
    fee: Optional[int] = None
    published_datetime: Optional[str] = None
    updated_datetime: Optional[str] = None
    body: Optional[str] = None
    is_body_rich: Optional[bool] = None
    attachment_count: Optional[int] = None

    def to_row(self) -> Dict[str, Any]:
        row = {
            "id": self.id,
            "creator_id": self.creator_id,
            "title": self.title,
            "post_state": int(self.state),
            "fee": self.fee,
            "published_datetime": self.published_datetime,
            "updated_datetime": self.updated_datetime,
            "body": self.body,
            "is_body_rich": self.is_body_rich,
            "attachment_count": self.attachment_count,
            "last_fetch": self.last_fetch,
            "last_successful_fetch": self.last_successful_fetch,
            "last_full_fetch": self.last_full_fetch,
        }
        return {k: self._row_value(k, v) for k, v in row.items()}

    @classmethod
    def from_row(cls, row: Dict[str, Any], tags: Iterable[str] = (),
                 bookmark_tags: Iterable[str] = ()) -> "PostSnapshot":
        return cls(
            id=row["id"],
            state=EntityState(row["post_state"]),
            title=row["title"],
            tags=frozenset(tags),
            last_fetch=row["last_fetch"],
            last_successful_fetch=row["last_successful_fetch"],
            last_full_fetch=row["last_full_fetch"],
            creator_id=row["creator_id"],
            fee=row["fee"],
            published_datetime=row["published_datetime"],
            updated_datetime=row["updated_datetime"],
            body=row["body"],
            is_body_rich=None if row["is_body_rich"] is None else bool(row["is_body_rich"]),
            attachment_count=row["attachment_count"],
        )


SNAPSHOT_TYPES: Dict[EntityKind, Type[Snapshot]] = {
    EntityKind.ILLUST: IllustSnapshot,
    EntityKind.FANBOX_POST: PostSnapshot,
}


def snapshot_type_for(kind: EntityKind) -> Type[Snapshot]:
    return SNAPSHOT_TYPES[EntityKind(kind)]
