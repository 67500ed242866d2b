# fanbox_models.py
# Description: Pydantic models for FANBOX api responses.
#
# Imports
import json
from datetime import datetime
from typing import List, Optional, Dict, Any, Tuple
#
# 3rd-party imports
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
#
# Local Imports
from illust_archiver.app.core.Artifacts.models import ArtifactKey, AttachmentDescriptor
from illust_archiver.app.core.DB_Management.Archive_DB import ArtifactSource, EntityState
from illust_archiver.app.core.Sync.models import PostSnapshot
from illust_archiver.app.core.Utils.Utils import to_utc_iso
#
#######################################################################################################################
#
# Schemas:


class FanboxModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class FanboxEnvelope(BaseModel):
    """Success is ``{body}``; failure is ``{error}``."""
    body: Optional[Any] = None
    error: Optional[str] = None


class PostImage(FanboxModel):
    id: str
    extension: str
    width: Optional[int] = None
    height: Optional[int] = None
    original_url: str


class PostFile(FanboxModel):
    id: str
    name: Optional[str] = None
    extension: str
    size: Optional[int] = None
    url: str


class PostBody(FanboxModel):
    text: Optional[str] = None
    images: List[PostImage] = Field(default_factory=list)
    files: List[PostFile] = Field(default_factory=list)
    blocks: Optional[List[Dict[str, Any]]] = None
    image_map: Dict[str, PostImage] = Field(default_factory=dict)
    file_map: Dict[str, PostFile] = Field(default_factory=dict)

    def ordered_images(self) -> List[PostImage]:
        if self.blocks is None:
            return list(self.images)
        ordered = _in_block_order(self.blocks, "image", "imageId", self.image_map)
        return ordered + [img for img in self.image_map.values() if img not in ordered]

    def ordered_files(self) -> List[PostFile]:
        if self.blocks is None:
            return list(self.files)
        ordered = _in_block_order(self.blocks, "file", "fileId", self.file_map)
        return ordered + [f for f in self.file_map.values() if f not in ordered]


def _in_block_order(blocks, block_type: str, id_field: str, mapping: Dict[str, Any]) -> List[Any]:
    ordered = []
    for block in blocks:
        if block.get("type") == block_type and block.get(id_field) in mapping:
            item = mapping[block[id_field]]
            if item not in ordered:
                ordered.append(item)
    return ordered


class PostListItem(FanboxModel):
    """A post as listed by ``post.listCreator`` pages."""
    id: int
    title: Optional[str] = None
    fee_required: Optional[int] = None
    published_datetime: Optional[datetime] = None
    updated_datetime: Optional[datetime] = None
    tags: Optional[List[str]] = None
    is_restricted: bool = False
    creator_id: Optional[str] = None

    def to_snapshot(self) -> PostSnapshot:
        return PostSnapshot(
            id=self.id,
            state=EntityState.RESTRICTED if self.is_restricted else EntityState.NORMAL,
            title=self.title,
            tags=self.tags,
            creator_id=self.creator_id,
            fee=self.fee_required,
            published_datetime=to_utc_iso(self.published_datetime),
            updated_datetime=to_utc_iso(self.updated_datetime),
        )


class PostDetail(PostListItem):
    """``post.info``: the listed fields plus a type-dependent body (null when restricted)."""
    type: Optional[str] = None
    body: Optional[PostBody] = None

    def normalized_body(self) -> Tuple[Optional[str], Optional[bool]]:
        """(body, is_body_rich): article bodies are kept as JSON, the rest as plain text."""
        if self.body is None:
            return None, None
        if self.type == "article" or self.body.blocks is not None:
            payload = {"blocks": self.body.blocks or []}
            return json.dumps(payload, ensure_ascii=False, sort_keys=True), True
        return self.body.text or "", False

    def attachments(self) -> List[AttachmentDescriptor]:
        if self.body is None:
            return []
        descriptors = []
        for idx, image in enumerate(self.body.ordered_images()):
            descriptors.append(AttachmentDescriptor(
                key=ArtifactKey(ArtifactSource.FANBOX_IMAGE, self.id, idx),
                url=image.original_url, width=image.width, height=image.height, ext=image.extension,
                name=image.id,
            ))
        for idx, post_file in enumerate(self.body.ordered_files()):
            descriptors.append(AttachmentDescriptor(
                key=ArtifactKey(ArtifactSource.FANBOX_FILE, self.id, idx),
                url=post_file.url, size=post_file.size, ext=post_file.extension,
                name=post_file.name or post_file.id,
            ))
        return descriptors

    def to_snapshot(self) -> PostSnapshot:
        snapshot = super().to_snapshot()
        if self.body is None:
            # restricted: the listing fields are still visible, the body is not
            return snapshot
        snapshot.body, snapshot.is_body_rich = self.normalized_body()
        snapshot.attachment_count = len(self.attachments())
        return snapshot

#
# End of fanbox_models.py
#######################################################################################################################
