# pixiv_models.py
# Description: Pydantic models for pixiv ajax responses, converted once into normalized snapshots.
#
# Imports
from datetime import datetime
from typing import List, Optional, Union, Dict, Any
#
# 3rd-party imports
from pydantic import BaseModel, ConfigDict, Field, AliasChoices, field_validator
from pydantic.alias_generators import to_camel
#
# Local Imports
from illust_archiver.app.core.DB_Management.Archive_DB import EntityState
from illust_archiver.app.core.Sync.models import IllustSnapshot
from illust_archiver.app.core.Utils.Utils import to_utc_iso
#
#######################################################################################################################
#
# Schemas:


class PixivModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class PixivEnvelope(BaseModel):
    """Every ajax endpoint wraps its payload as ``{error, message, body}``."""
    error: bool
    message: str = ""
    body: Optional[Any] = None


class BookmarkData(PixivModel):
    id: int
    private: bool


class DetailedTag(PixivModel):
    tag: str
    locked: bool = False
    romaji: Optional[str] = None
    translation: Optional[Dict[str, str]] = None


class DetailedTags(PixivModel):
    author_id: Optional[int] = None
    is_locked: bool = False
    tags: List[DetailedTag] = Field(default_factory=list)


def tag_names(tags: Union[List[str], DetailedTags, None]) -> Optional[List[str]]:
    if tags is None:
        return None
    if isinstance(tags, DetailedTags):
        return [t.tag for t in tags.tags]
    return list(tags)


class WorkBrief(PixivModel):
    """A work as it appears in list endpoints (bookmarks)."""
    id: int
    title: Optional[str] = None
    tags: Union[List[str], DetailedTags, None] = None
    x_restrict: Optional[int] = None
    illust_type: Optional[int] = None
    page_count: Optional[int] = None
    user_id: Optional[int] = None
    user_name: Optional[str] = None
    user_account: Optional[str] = None
    bookmark_data: Optional[BookmarkData] = None
    create_date: Optional[datetime] = None
    update_date: Optional[datetime] = Field(None, validation_alias=AliasChoices("updateDate", "uploadDate"))
    width: Optional[int] = None
    height: Optional[int] = None
    is_unlisted: bool = False
    is_masked: bool = False
    ai_type: Optional[int] = None

    @field_validator("user_account", "user_name", "title", mode="before")
    @classmethod
    def empty_to_none(cls, value):
        return None if value == "" else value

    @property
    def state(self) -> EntityState:
        if self.is_unlisted:
            return EntityState.UNLISTED
        if self.is_masked:
            return EntityState.MASKED
        return EntityState.NORMAL

    def to_snapshot(self) -> IllustSnapshot:
        bookmark_id = self.bookmark_data.id if self.bookmark_data else None
        bookmark_private = self.bookmark_data.private if self.bookmark_data else None
        if self.state is not EntityState.NORMAL:
            # masked/unlisted entries carry placeholder content; only the bookmark is real
            return IllustSnapshot(id=self.id, state=self.state, bookmark_id=bookmark_id,
                                  bookmark_private=bookmark_private)
        return IllustSnapshot(
            id=self.id,
            state=EntityState.NORMAL,
            title=self.title,
            tags=tag_names(self.tags),
            author_id=self.user_id,
            author_name=self.user_name,
            author_account=self.user_account,
            illust_type=self.illust_type,
            page_count=self.page_count,
            create_date=to_utc_iso(self.create_date),
            update_date=to_utc_iso(self.update_date),
            x_restrict=self.x_restrict,
            ai_type=self.ai_type,
            bookmark_id=bookmark_id,
            bookmark_private=bookmark_private,
        )


class WorkDetail(WorkBrief):
    """``/ajax/illust/{id}``: the brief fields plus description and flags."""
    id: int = Field(validation_alias=AliasChoices("illustId", "id"))
    title: Optional[str] = Field(None, validation_alias=AliasChoices("illustTitle", "title"))
    description: Optional[str] = None
    is_howto: Optional[bool] = None
    is_original: Optional[bool] = None

    def to_snapshot(self) -> IllustSnapshot:
        snapshot = super().to_snapshot()
        if snapshot.state is EntityState.NORMAL:
            snapshot.description = self.description
            snapshot.is_howto = self.is_howto
            snapshot.is_original = self.is_original
        return snapshot


class BookmarksBody(PixivModel):
    total: int
    works: List[WorkBrief] = Field(default_factory=list)
    bookmark_tags: Dict[int, List[str]] = Field(default_factory=dict)

    @field_validator("bookmark_tags", mode="before")
    @classmethod
    def empty_array_is_empty_map(cls, value):
        # the API sends [] instead of {} when no work on the page has bookmark tags
        if isinstance(value, list):
            if value:
                raise ValueError("bookmarkTags must be a map or an empty array")
            return {}
        return value

    def to_snapshots(self) -> List[IllustSnapshot]:
        snapshots = []
        for work in self.works:
            snapshot = work.to_snapshot()
            if snapshot.bookmark_id is not None:
                snapshot.bookmark_tags = frozenset(self.bookmark_tags.get(snapshot.bookmark_id, []))
                snapshot.bookmark_tags_authoritative = True
            snapshots.append(snapshot)
        return snapshots


class PageUrls(PixivModel):
    original: str
    regular: Optional[str] = None


class Page(PixivModel):
    urls: PageUrls
    width: Optional[int] = None
    height: Optional[int] = None


class UgoiraFrame(PixivModel):
    file: str
    delay: int


class UgoiraMeta(PixivModel):
    src: Optional[str] = None
    original_src: str
    mime_type: Optional[str] = Field(None, validation_alias=AliasChoices("mime_type", "mimeType"))
    frames: List[UgoiraFrame] = Field(default_factory=list)

#
# End of pixiv_models.py
#######################################################################################################################
