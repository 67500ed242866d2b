# fanbox.py
# Description: FANBOX api client: creator post listing, post detail and attachment downloads.
#
# Imports
from typing import Iterator, List, Optional, Any, BinaryIO
#
# 3rd-party imports
from loguru import logger
from pydantic import BaseModel, TypeAdapter, ValidationError
#
# Local Imports
from illust_archiver.app.core.Artifacts.models import AttachmentDescriptor
from illust_archiver.app.core.config import FanboxSession
from illust_archiver.app.core.Fetchers.fetch_types import FetchError, FetchErrorKind
from illust_archiver.app.core.Fetchers.transport import HttpTransport
from illust_archiver.app.core.Sync.models import PostSnapshot
from illust_archiver.app.schemas.fanbox_models import FanboxEnvelope, PostListItem, PostDetail
#
#######################################################################################################################
#
# Functions:

FANBOX_API_BASE = "https://api.fanbox.cc"
FANBOX_ORIGIN = "https://www.fanbox.cc"


class FanboxClient:
    def __init__(self, session: FanboxSession, transport: HttpTransport):
        self.session = session
        self.transport = transport

    def _headers(self) -> dict:
        return {
            "Cookie": f"FANBOXSESSID={self.session.cookie};",
            "Origin": FANBOX_ORIGIN,
            "Referer": f"{FANBOX_ORIGIN}/",
        }

    def _get_body(self, url: str, model: Any, params: Optional[dict] = None, entity_id: Optional[int] = None):
        query = {"lang": "en"}
        query.update(params or {})
        payload = self.transport.get_json(url, params=query, headers=self._headers(), entity_id=entity_id)
        try:
            envelope = FanboxEnvelope.model_validate(payload)
        except ValidationError as e:
            raise FetchError(f"Unexpected response shape from {url}", FetchErrorKind.MALFORMED,
                             entity_id=entity_id) from e
        if envelope.error is not None:
            raise FetchError(f"FANBOX API error: {envelope.error}", FetchErrorKind.MALFORMED, entity_id=entity_id)
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

    def paginate_creator(self, creator_id: str) -> List[str]:
        """Page URLs covering every post of a creator, newest first."""
        return self._get_body(f"{FANBOX_API_BASE}/post.paginateCreator", List[str],
                              params={"creatorId": creator_id, "sort": "newest"})

    def iter_creator_posts(self, creator_id: str) -> Iterator[PostSnapshot]:
        for page_url in self.paginate_creator(creator_id):
            if not page_url.startswith(FANBOX_API_BASE):
                raise FetchError(f"Unexpected page URL {page_url}", FetchErrorKind.MALFORMED)
            logger.info(f"Fetching: {page_url}")
            for post in self._get_body(page_url, List[PostListItem]):
                yield post.to_snapshot()

    def get_post(self, post_id: int) -> PostDetail:
        return self._get_body(f"{FANBOX_API_BASE}/post.info", PostDetail, params={"postId": post_id},
                              entity_id=post_id)

    def fetch_detail(self, summary: PostSnapshot) -> PostSnapshot:
        return self.get_post(summary.id).to_snapshot()

    def attachments(self, post_id: int) -> List[AttachmentDescriptor]:
        return self.get_post(post_id).attachments()

    def download(self, descriptor: AttachmentDescriptor, fileobj: BinaryIO) -> None:
        self.transport.download(descriptor.url, fileobj, headers=self._headers(),
                                entity_id=descriptor.key.entity_id)

#
# End of fanbox.py
#######################################################################################################################
