import pytest
from flash_orm import InvalidArgumentError, Query

from .models import Comment, Post, User

pytestmark = pytest.mark.asyncio


class TestSoftDeletingScope:
    """Tests for hiding and revealing trashed rows."""

    async def test_trashed_rows_are_hidden(self, db_session, seeded):
        bodies = await Comment.query(db_session).order_by("comments.id").pluck("comments.body")
        assert bodies == ["nice", "agreed", "hm"]

    async def test_with_trashed(self, db_session, seeded):
        assert await Comment.query(db_session).with_trashed().count() == 4
        assert await Comment.query(db_session).with_trashed(False).count() == 3

    async def test_only_trashed(self, db_session, seeded):
        trashed = await Comment.query(db_session).only_trashed().get()
        assert trashed.pluck("body") == ["spam"]
        assert trashed[0].trashed()

    async def test_non_soft_deleting_model_rejects_with_trashed(self, db_session):
        with pytest.raises(InvalidArgumentError, match="does not soft delete"):
            User.query(db_session).with_trashed()

    async def test_relations_hide_trashed(self, db_session, seeded):
        p3 = seeded["posts"][2]
        assert (await p3.related("comments").get()).pluck("body") == ["hm"]
        everything = await p3.related("comments").with_trashed().get()
        assert sorted(everything.pluck("body")) == ["hm", "spam"]

    async def test_eager_loads_hide_trashed(self, db_session, seeded):
        posts = await Post.query(db_session).with_("comments").order_by("posts.id").get()
        assert posts[2].get_relation("comments").pluck("body") == ["hm"]


class TestSoftDeleteWrites:
    """Tests for deleting, restoring and force deleting."""

    async def test_model_delete_flags_row(self, db_session, seeded):
        comment = await Comment.query(db_session).where("comments.body", "nice").first()
        assert await comment.delete()
        assert comment.trashed()

        row = await Query(db_session, "comments").where("id", comment.id).first()
        assert row is not None
        assert row["deleted_at"] is not None

    async def test_builder_delete_is_soft(self, db_session, seeded):
        assert await Comment.query(db_session).where("comments.post_id", 1).delete() == 2
        assert await Comment.query(db_session).count() == 1
        assert await Query(db_session, "comments").count() == 4

    async def test_model_restore(self, db_session, seeded):
        spam = await Comment.query(db_session).only_trashed().first()
        await spam.restore()
        assert not spam.trashed()
        assert await Comment.query(db_session).count() == 4

    async def test_builder_restore(self, db_session, seeded):
        await Comment.query(db_session).where("comments.post_id", 1).delete()
        restored = await Comment.query(db_session).where("comments.post_id", 1).restore()
        assert restored == 2
        assert await Comment.query(db_session).count() == 3

    async def test_force_delete(self, db_session, seeded):
        spam = await Comment.query(db_session).only_trashed().first()
        assert await spam.force_delete()
        assert not spam.exists
        assert await Query(db_session, "comments").count() == 3

    async def test_builder_force_delete(self, db_session, seeded):
        deleted = await Comment.query(db_session).only_trashed().force_delete()
        assert deleted == 1
        assert await Comment.query(db_session).with_trashed().count() == 3
