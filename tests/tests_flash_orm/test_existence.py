import pytest

from .models import Country, Post, Role, User

pytestmark = pytest.mark.asyncio


async def _names(builder):
    return (await builder.order_by("users.id").get()).pluck("name")


class TestHas:
    """Tests for filtering parents by the existence of related rows."""

    async def test_has(self, db_session, seeded):
        assert await _names(User.query(db_session).has("posts")) == ["alice", "bob"]

    async def test_has_with_count(self, db_session, seeded):
        """Should count through a sub-select and skip trashed related rows."""
        posts = await Post.query(db_session).has("comments", ">=", 2).get()
        assert posts.model_keys() == [1]

        assert await _names(User.query(db_session).has("posts", ">", 1)) == ["alice", "bob"]
        assert await _names(User.query(db_session).has("posts", "=", 3)) == []

    async def test_doesnt_have(self, db_session, seeded):
        assert await _names(User.query(db_session).doesnt_have("posts")) == ["carol"]

    async def test_where_has(self, db_session, seeded):
        builder = User.query(db_session).where_has("posts", lambda q: q.where("posts.votes", ">", 20))
        assert await _names(builder) == ["bob"]

    async def test_where_doesnt_have(self, db_session, seeded):
        builder = User.query(db_session).where_doesnt_have(
            "posts", lambda q: q.where("posts.published", False)
        )
        assert await _names(builder) == ["bob", "carol"]

    async def test_or_has(self, db_session, seeded):
        builder = User.query(db_session).where("users.name", "carol").or_has("roles")
        assert await _names(builder) == ["alice", "bob", "carol"]

    async def test_nested_has(self, db_session, seeded):
        assert await _names(User.query(db_session).has("posts.comments")) == ["alice", "bob"]
        assert await _names(User.query(db_session).has("posts.comments", ">=", 2)) == ["alice"]
        assert await _names(User.query(db_session).doesnt_have("posts.comments")) == ["carol"]

    async def test_self_referencing(self, db_session, seeded):
        with_children = await Post.query(db_session).has("children").get()
        assert with_children.model_keys() == [1]

        with_parent = await Post.query(db_session).has("parent").get()
        assert with_parent.model_keys() == [4]

    async def test_many_to_many(self, db_session, seeded):
        assert await _names(User.query(db_session).has("roles")) == ["alice", "bob"]
        unused = await Role.query(db_session).doesnt_have("users").get()
        assert unused.pluck("name") == ["viewer"]

    async def test_through(self, db_session, seeded):
        countries = await Country.query(db_session).has("posts").get()
        assert countries.pluck("name") == ["Norway"]

    async def test_has_respects_relation_constraints(self, db_session, seeded):
        """Should carry with_pivot_value filters into the existence query."""
        assert await _names(User.query(db_session).has("admin_roles")) == ["alice"]

    async def test_has_combines_with_scopes(self, db_session, seeded):
        posts = await Post.query(db_session).scope("published_only").has("comments").order_by("posts.id").get()
        assert posts.model_keys() == [1, 3]


class TestWithAggregates:
    """Tests for related aggregates selected as extra columns."""

    async def test_with_count(self, db_session, seeded):
        users = await User.query(db_session).with_count("posts").order_by("users.id").get()
        assert [u.get_attribute("posts_count") for u in users] == [2, 2, 0]
        assert users[0].name == "alice"

    async def test_with_count_alias(self, db_session, seeded):
        users = await User.query(db_session).with_count("posts as total").order_by("users.id").get()
        assert [u.get_attribute("total") for u in users] == [2, 2, 0]

    async def test_with_count_constraint(self, db_session, seeded):
        users = await (
            User.query(db_session)
            .with_count({"posts": lambda q: q.where("posts.votes", ">", 10)})
            .order_by("users.id")
            .get()
        )
        assert [u.get_attribute("posts_count") for u in users] == [1, 1, 0]

    async def test_several_counts(self, db_session, seeded):
        users = await User.query(db_session).with_count("posts", "roles").order_by("users.id").get()
        counts = [(u.get_attribute("posts_count"), u.get_attribute("roles_count")) for u in users]
        assert counts == [(2, 2), (2, 1), (0, 0)]

    async def test_with_sum_and_max(self, db_session, seeded):
        users = await (
            User.query(db_session)
            .with_sum("posts", "votes")
            .with_max("posts", "votes")
            .order_by("users.id")
            .get()
        )
        assert [u.get_attribute("posts_sum_votes") for u in users] == [15, 26, None]
        assert [u.get_attribute("posts_max_votes") for u in users] == [12, 25, None]

    async def test_with_exists(self, db_session, seeded):
        users = await User.query(db_session).with_exists("posts").order_by("users.id").get()
        assert [u.get_attribute("posts_exists") for u in users] == [1, 1, 0]

    async def test_self_referencing_count(self, db_session, seeded):
        posts = await Post.query(db_session).with_count("children").order_by("posts.id").get()
        assert [p.get_attribute("children_count") for p in posts] == [1, 0, 0, 0]

    async def test_many_to_many_count(self, db_session, seeded):
        roles = await Role.query(db_session).with_count("users").order_by("roles.id").get()
        assert [r.get_attribute("users_count") for r in roles] == [1, 2, 0]

    async def test_count_excludes_trashed(self, db_session, seeded):
        posts = await Post.query(db_session).with_count("comments").order_by("posts.id").get()
        assert [p.get_attribute("comments_count") for p in posts] == [2, 0, 1, 0]

    async def test_with_count_after_select(self, db_session, seeded):
        users = await User.query(db_session).select("users.id").with_count("posts").order_by("users.id").get()
        assert users[0].get_attributes() == {"id": 1, "posts_count": 2}
