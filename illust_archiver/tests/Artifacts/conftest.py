# Artifacts/conftest.py
# Description: Fake remote and layout fixtures for the artifact tests.
#
# Imports
import pytest
#
# Local Imports
from illust_archiver.app.core.Artifacts import ArtifactKey, AttachmentDescriptor, DownloadReconciler, PathLayout
from illust_archiver.app.core.DB_Management.Archive_DB import ArtifactSource
from illust_archiver.app.core.Fetchers.fetch_types import FetchError, FetchErrorKind
#
########################################################################################################################
#
# Functions


class FakeRemote:
    """In-memory stand-in for the download transport: url -> bytes."""

    def __init__(self):
        self.files = {}
        self.failing = set()
        self.calls = []

    def __call__(self, descriptor, fileobj):
        self.calls.append(descriptor.url)
        if descriptor.url in self.failing:
            fileobj.write(b"partial")
            raise FetchError(f"connection reset for {descriptor.url}", FetchErrorKind.TRANSIENT_NETWORK)
        fileobj.write(self.files[descriptor.url])


def page(entity_id, slot, url=None, **extra):
    url = url or f"https://i.example.net/img/{entity_id}_p{slot}.png"
    return AttachmentDescriptor(key=ArtifactKey(ArtifactSource.ILLUST_PAGE, entity_id, slot), url=url, **extra)


@pytest.fixture
def make_page():
    return page


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def base_dir(tmp_path):
    path = tmp_path / "archive"
    path.mkdir()
    return path


@pytest.fixture
def layout(base_dir):
    return PathLayout(base_dir)


@pytest.fixture
def downloader(db_instance, layout, remote, clock):
    return DownloadReconciler(db_instance, layout, remote, reverify_after_days=30, clock=clock)

#
# End of conftest.py
########################################################################################################################
