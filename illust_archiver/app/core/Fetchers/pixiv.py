# pixiv.py
# Description: pixiv ajax client: bookmarks listing, illust detail, pages and ugoira metadata.
#
# Imports
import json
from typing import Iterator, List, Optional, Any, BinaryIO
#
# 3rd-party imports
from loguru import logger
from pydantic import BaseModel, TypeAdapter, ValidationError
#
# Local Imports
from illust_archiver.app.core.Artifacts.models import ArtifactKey, AttachmentDescriptor
from illust_archiver.app.core.config import PixivSession
from illust_archiver.app.core.DB_Management.Archive_DB import ArtifactSource
from illust_archiver.app.core.Fetchers.fetch_types import FetchError, FetchErrorKind
from illust_archiver.app.core.Fetchers.transport import HttpTransport
from illust_archiver.app.core.Sync.models import IllustSnapshot, IllustType
from illust_archiver.app.schemas.pixiv_models import (PixivEnvelope, BookmarksBody, WorkDetail, Page, UgoiraMeta)
#
#######################################################################################################################
#
# Functions:

PIXIV_AJAX_BASE = "https://www.pixiv.net/ajax"
PIXIV_REFERER = "https://www.pixiv.net/"
BOOKMARKS_PAGE_LIMIT = 48


class PixivClient:
    def __init__(self, session: PixivSession, transport: HttpTransport):
        self.session = session
        self.transport = transport

    def _headers(self) -> dict:
        return {"Cookie": f"PHPSESSID={self.session.cookie};"}

    def _get_body(self, url: str, model: Any, params: Optional[dict] = None,
                  entity_id: Optional[int] = None):
        payload = self.transport.get_json(url, params=params, headers=self._headers(), entity_id=entity_id)
        try:
            envelope = PixivEnvelope.model_validate(payload)
        except ValidationError as e:
            raise FetchError(f"Unexpected response shape from {url}", FetchErrorKind.MALFORMED,
                             entity_id=entity_id) from e
        if envelope.error:
            raise FetchError(f"pixiv API error: {envelope.message or 'unknown'}", FetchErrorKind.MALFORMED,
                             entity_id=entity_id)
        if envelope.body is None:
            raise FetchError(f"No body in response from {url}", FetchErrorKind.MALFORMED, entity_id=entity_id)
        try:
            if isinstance(model, type) and issubclass(model, BaseModel):
                return model.model_validate(envelope.body)
            return TypeAdapter(model).validate_python(envelope.body)
        except ValidationError as e:
            logger.debug(f"Validation failure for {url}: {e}")
            raise FetchError(f"Could not parse response from {url}: {e.error_count()} errors",
                             FetchErrorKind.MALFORMED, entity_id=entity_id) from e

    # --- bookmarks ---
    def get_bookmarks_page(self, offset: int, tag: Optional[str] = None, private: bool = False,
                           limit: int = BOOKMARKS_PAGE_LIMIT) -> BookmarksBody:
        params = {
            "tag": tag or "",
            "offset": offset,
            "limit": limit,
            "rest": "hide" if private else "show",
            "lang": "en",
        }
        url = f"{PIXIV_AJAX_BASE}/user/{self.session.uid}/illusts/bookmarks"
        return self._get_body(url, BookmarksBody, params=params)

    def iter_bookmarks(self, tag: Optional[str] = None, offset: int = 0,
                       private: bool = False) -> Iterator[IllustSnapshot]:
        """Bookmarked works, newest bookmark first, fetched one page at a time as the caller consumes them."""
        while True:
            batch = self.get_bookmarks_page(offset, tag=tag, private=private)
            batch_size = len(batch.works)
            yield from batch.to_snapshots()

            offset += batch_size
            if offset < batch.total and batch_size == 0:
                logger.warning("Empty batch before reaching end of bookmark list.")
            if offset >= batch.total or batch_size == 0:
                return
            logger.info(f"Fetched {offset}/{batch.total} bookmarks")

    # --- illust detail ---
    def get_illust(self, illust_id: int) -> WorkDetail:
        return self._get_body(f"{PIXIV_AJAX_BASE}/illust/{illust_id}", WorkDetail, entity_id=illust_id)

    def fetch_detail(self, summary: IllustSnapshot) -> IllustSnapshot:
        return self.get_illust(summary.id).to_snapshot()

    def get_pages(self, illust_id: int) -> List[Page]:
        return self._get_body(f"{PIXIV_AJAX_BASE}/illust/{illust_id}/pages", List[Page], entity_id=illust_id)

    def get_ugoira_meta(self, illust_id: int) -> UgoiraMeta:
        return self._get_body(f"{PIXIV_AJAX_BASE}/illust/{illust_id}/ugoira_meta", UgoiraMeta,
                              entity_id=illust_id)

    def attachments(self, illust_id: int, illust_type: Optional[int] = None) -> List[AttachmentDescriptor]:
        """
        Attachment slots of an illust. Ugoira works have a single slot holding the frame archive,
        with the frame list kept as JSON; every other type has one slot per page.
        """
        if illust_type is not None and IllustType(illust_type) is IllustType.UGOIRA:
            meta = self.get_ugoira_meta(illust_id)
            frames = json.dumps([frame.model_dump() for frame in meta.frames])
            return [AttachmentDescriptor(key=ArtifactKey(ArtifactSource.ILLUST_PAGE, illust_id, 0),
                                         url=meta.original_src, ugoira_frames=frames)]
        return [
            AttachmentDescriptor(key=ArtifactKey(ArtifactSource.ILLUST_PAGE, illust_id, slot),
                                 url=page.urls.original, width=page.width, height=page.height)
            for slot, page in enumerate(self.get_pages(illust_id))
        ]

    def download(self, descriptor: AttachmentDescriptor, fileobj: BinaryIO) -> None:
        headers = dict(self._headers())
        headers["Referer"] = PIXIV_REFERER
        self.transport.download(descriptor.url, fileobj, headers=headers, entity_id=descriptor.key.entity_id)

#
# End of pixiv.py
#######################################################################################################################
