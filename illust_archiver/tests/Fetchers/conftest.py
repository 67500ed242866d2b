# Fetchers/conftest.py
# Description: Canned-response transport for the pixiv and FANBOX client tests.
#
# Imports
import pytest
#
# Local Imports
from illust_archiver.app.core.config import FanboxSession, PixivSession
from illust_archiver.app.core.Fetchers.fanbox import FanboxClient
from illust_archiver.app.core.Fetchers.pixiv import PixivClient
#
########################################################################################################################
#
# Functions


class FakeTransport:
    """
    Stands in for HttpTransport. ``responses`` maps a URL to a payload, an exception to raise, or a list
    of those consumed one call at a time.
    """

    def __init__(self):
        self.responses = {}
        self.calls = []
        self.downloads = []

    def get_json(self, url, params=None, headers=None, entity_id=None):
        self.calls.append({"url": url, "params": dict(params or {}), "headers": dict(headers or {}),
                           "entity_id": entity_id})
        response = self.responses[url]
        if isinstance(response, list):
            response = response.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def download(self, url, fileobj, headers=None, entity_id=None, progress=False):
        self.downloads.append({"url": url, "headers": dict(headers or {}), "entity_id": entity_id})
        fileobj.write(b"payload")
        return len(b"payload")


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def pixiv(transport):
    return PixivClient(PixivSession(uid=1234, cookie="1234_secret"), transport)


@pytest.fixture
def fanbox(transport):
    return FanboxClient(FanboxSession(cookie="fanbox-secret"), transport)

#
# End of conftest.py
########################################################################################################################
