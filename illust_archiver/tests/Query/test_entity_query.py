# test_entity_query.py
#
#
# Imports
import pytest
#
# Local Imports
from illust_archiver.app.core.Artifacts import ArtifactKey, ArtifactStore, AttachmentDescriptor
from illust_archiver.app.core.DB_Management.Archive_DB import ArtifactSource, EntityKind, EntityState, InputError
from illust_archiver.app.core.Query import DownloadState, EntityQuery, QueryOrder, SyncState, read_id_list
from illust_archiver.app.core.Sync import Authorization, EntityReconciler, IllustSnapshot, PostSnapshot
#
#######################################################################################################################
#
# Functions:

T0 = "2024-01-01T00:00:00.000Z"
T1 = "2024-02-01T00:00:00.000Z"


def add_artifact(store, source, entity_id, slot, path, now=T0):
    descriptor = AttachmentDescriptor(ArtifactKey(source, entity_id, slot), url=f"https://example.net/{path}")
    with store.db.transaction():
        return store.insert_version(descriptor, f"hash-{path}", path, now)


@pytest.fixture
def archive(db_instance, clock):
    """
    illust 1: painter 7, tags sky+sea, fully downloaded (2/2), bookmark 30, fully fetched
    illust 2: painter 7, tag sky, 1/2 pages, bookmark 10, partial fetch only
    illust 3: painter 8, deleted, unknown page count, bookmark 20 with tag "fav"
    illust 4: one page whose current version was cleared by fsck
    post 100: creator "alice", two images, both downloaded
    """
    reconciler = EntityReconciler(db_instance, clock=clock)
    reconciler.reconcile(IllustSnapshot(id=1, title="one", author_id=7, author_name="painter", page_count=2,
                                        tags=["sky", "sea"], bookmark_id=30, bookmark_private=False),
                         Authorization.FULL)
    reconciler.reconcile(IllustSnapshot(id=2, title="two", author_id=7, author_name="painter", page_count=2,
                                        tags=["sky"], bookmark_id=10, bookmark_private=False),
                         Authorization.PARTIAL)
    reconciler.reconcile(IllustSnapshot(id=3, title="three", author_id=8, author_name="other",
                                        state=EntityState.DELETED, bookmark_id=20, bookmark_private=True,
                                        bookmark_tags=["fav"]),
                         Authorization.NONE)
    reconciler.reconcile(IllustSnapshot(id=4, title="four", page_count=1), Authorization.FULL)
    reconciler.reconcile(PostSnapshot(id=100, title="post", creator_id="alice", attachment_count=2, tags=["wip"]),
                         Authorization.FULL)

    store = ArtifactStore(db_instance)
    add_artifact(store, ArtifactSource.ILLUST_PAGE, 1, 0, "pixiv/1_p0.png")
    add_artifact(store, ArtifactSource.ILLUST_PAGE, 1, 1, "pixiv/1_p1.png")
    add_artifact(store, ArtifactSource.ILLUST_PAGE, 2, 0, "pixiv/2_p0.png")
    add_artifact(store, ArtifactSource.ILLUST_PAGE, 4, 0, "pixiv/4_p0.1111.png", now=T0)
    cleared = add_artifact(store, ArtifactSource.ILLUST_PAGE, 4, 0, "pixiv/4_p0.png", now=T1)
    store.clear_path(cleared)
    add_artifact(store, ArtifactSource.FANBOX_IMAGE, 100, 0, "fanbox/100/image_0.jpg")
    add_artifact(store, ArtifactSource.FANBOX_FILE, 100, 0, "fanbox/100/file_0.zip")
    return db_instance


def ids(query, db):
    return list(query.iter_ids(db))


class TestFilters:
    def test_no_filters_lists_everything(self, archive):
        assert ids(EntityQuery(), archive) == [1, 2, 3, 4]

    def test_ids_and_states(self, archive):
        assert ids(EntityQuery(ids=[1, 3, 99]), archive) == [1, 3]
        assert ids(EntityQuery(states=[EntityState.DELETED]), archive) == [3]
        assert ids(EntityQuery(states=[0]), archive) == [1, 2, 4]

    def test_tags_are_anded(self, archive):
        assert ids(EntityQuery(tags=["sky"]), archive) == [1, 2]
        assert ids(EntityQuery(tags=["sky", "sea"]), archive) == [1]
        assert ids(EntityQuery(tags=["unknown"]), archive) == []

    def test_bookmark_tags(self, archive):
        assert ids(EntityQuery(bookmark_tags=["fav"]), archive) == [3]

    def test_author(self, archive):
        assert ids(EntityQuery(author_id=7), archive) == [1, 2]
        assert ids(EntityQuery(kind=EntityKind.FANBOX_POST, author_id="alice"), archive) == [100]

    def test_sync_state(self, archive):
        assert ids(EntityQuery(sync_state=SyncState.FULLY_FETCHED), archive) == [1, 4]
        assert ids(EntityQuery(sync_state="never-fully-fetched"), archive) == [2, 3]

    def test_tag_values_are_bound_not_inlined(self, archive):
        query = EntityQuery(tags=["x' OR 1=1 --"])
        sql, params = query.build_sql()
        assert "1=1" not in sql
        assert params == ["x' OR 1=1 --"]
        assert ids(query, archive) == []


class TestDownloadState:
    def test_fully_downloaded(self, archive):
        assert ids(EntityQuery(download_state=DownloadState.FULLY), archive) == [1]

    def test_not_fully_downloaded(self, archive):
        # 2 is short a page, 3 has no known page count, 4's current version has no file
        assert ids(EntityQuery(download_state=DownloadState.NOT_FULLY), archive) == [2, 3, 4]

    def test_fanbox_counts_images_and_files(self, archive):
        query = EntityQuery(kind=EntityKind.FANBOX_POST, download_state=DownloadState.FULLY)
        assert ids(query, archive) == [100]


class TestOrderAndLimit:
    def test_bookmark_order(self, archive):
        assert ids(EntityQuery(order=QueryOrder.BOOKMARK_ID_DESC, ids=[1, 2, 3]), archive) == [1, 3, 2]
        assert ids(EntityQuery(order="bookmark-id-asc", ids=[1, 2, 3]), archive) == [2, 3, 1]

    def test_id_desc_with_limit(self, archive):
        assert ids(EntityQuery(order=QueryOrder.ID_DESC, limit=2), archive) == [4, 3]

    def test_count_honours_filters_and_limit(self, archive):
        assert EntityQuery(tags=["sky"]).count(archive) == 2
        assert EntityQuery(limit=3).count(archive) == 3
        assert EntityQuery(limit=0).count(archive) == 0

    def test_negative_limit_rejected(self):
        with pytest.raises(InputError):
            EntityQuery(limit=-1)


class TestFanboxRestrictions:
    def test_no_bookmark_tags(self):
        with pytest.raises(InputError, match="bookmark tags"):
            EntityQuery(kind=EntityKind.FANBOX_POST, bookmark_tags=["x"])

    def test_no_bookmark_order(self):
        with pytest.raises(InputError):
            EntityQuery(kind="fanbox_post", order=QueryOrder.BOOKMARK_ID_ASC)


class TestRows:
    def test_rows_carry_sorted_tags(self, archive):
        rows = list(EntityQuery(ids=[1]).iter_rows(archive))
        assert len(rows) == 1
        assert rows[0]["title"] == "one"
        assert rows[0]["tags"] == ["sea", "sky"]
        assert rows[0]["bookmark_tags"] == []

    def test_post_rows_have_no_bookmark_tags(self, archive):
        rows = list(EntityQuery(kind=EntityKind.FANBOX_POST).iter_rows(archive))
        assert rows[0]["tags"] == ["wip"]
        assert "bookmark_tags" not in rows[0]

    def test_unknown_select_shape(self):
        with pytest.raises(InputError):
            EntityQuery().build_sql("everything")


class TestReadIdList:
    def test_comments_and_blanks(self):
        lines = ["# bookmarks to refresh\n", "12\n", "\n", "  34  # keep\n", "56"]
        assert read_id_list(lines) == [12, 34, 56]

    @pytest.mark.parametrize("bad", ["abc", "0", "-3", "1.5"])
    def test_invalid_ids_name_the_line(self, bad):
        with pytest.raises(InputError, match="line 2"):
            read_id_list(["1", bad])

#
# End of test_entity_query.py
#######################################################################################################################
