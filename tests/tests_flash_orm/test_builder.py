import pytest
from flash_orm import (
    Builder,
    InvalidArgumentError,
    Model,
    ModelNotFoundError,
    Paginator,
    RelationNotFoundError,
    ScopeNotFoundError,
)

from .models import Member, MemberScope, Post, PostWithAuthor, User

pytestmark = pytest.mark.asyncio


class TestBuilderFetching:
    """Tests for hydrating models through the builder."""

    async def test_get_hydrates_existing_models(self, db_session, seeded):
        users = await User.query(db_session).order_by("users.id").get()
        assert [u.name for u in users] == ["alice", "bob", "carol"]
        assert all(u.exists for u in users)
        assert not users[0].is_dirty()
        assert users[0].db is db_session

    async def test_find_single_and_many(self, db_session, seeded):
        bob = await User.query(db_session).find(2)
        assert bob.name == "bob"

        found = await User.query(db_session).find([3, 1, 3])
        assert sorted(found.model_keys()) == [1, 3]

        assert await User.query(db_session).find(99) is None
        assert await User.query(db_session).find([]) == []

    async def test_find_or_fail_reports_missing_ids(self, db_session, seeded):
        with pytest.raises(ModelNotFoundError) as exc:
            await User.query(db_session).find_or_fail([1, 98, 99])
        assert exc.value.ids == [98, 99]
        assert str(exc.value) == "No query results for model [User] 98, 99"

        with pytest.raises(ModelNotFoundError, match=r"\[User\] 42"):
            await User.query(db_session).find_or_fail(42)

    async def test_first_or_fail(self, db_session, seeded):
        with pytest.raises(ModelNotFoundError, match=r"model \[User\]"):
            await User.query(db_session).where("users.name", "nobody").first_or_fail()

    async def test_first_or_create_and_update_or_create(self, db_session, seeded):
        existing = await User.query(db_session).first_or_create({"name": "alice"})
        assert existing.id == 1

        created = await User.query(db_session).first_or_create({"name": "dave"}, {"email": "d@example.com"})
        assert created.exists
        assert created.email == "d@example.com"
        assert await User.query(db_session).count() == 4

        updated = await User.query(db_session).update_or_create({"name": "dave"}, {"email": "new@example.com"})
        assert updated.id == created.id
        fetched = await User.query(db_session).find(created.id)
        assert fetched.email == "new@example.com"

    async def test_find_or_new(self, db_session, seeded):
        model = await User.query(db_session).find_or_new(99)
        assert isinstance(model, User)
        assert not model.exists

    async def test_aggregates_and_pluck(self, db_session, seeded):
        query = Post.query(db_session)
        assert await query.count() == 4
        assert await query.max("posts.votes") == 25
        assert await query.sum("posts.votes") == 41
        assert await Post.query(db_session).where("posts.user_id", 1).pluck("posts.title") == [
            "First",
            "Second",
        ]
        assert await Post.query(db_session).where("posts.votes", ">", 100).doesnt_exist()

    async def test_latest_and_oldest(self, db_session, seeded):
        top = await Post.query(db_session).latest("votes").first()
        assert top.title == "Third"
        bottom = await Post.query(db_session).oldest("votes").first()
        assert bottom.title == "Reply"

    async def test_where_key(self, db_session, seeded):
        alice, bob, _ = seeded["users"]
        users = await User.query(db_session).where_key([bob, alice.id]).order_by("users.id").get()
        assert users.model_keys() == [1, 2]
        others = await User.query(db_session).where_key_not(1).get()
        assert sorted(others.model_keys()) == [2, 3]

    async def test_nested_where_receives_builder(self, db_session, seeded):
        """Should let local scopes be used inside a nested where group."""
        users = await (
            User.query(db_session)
            .where(lambda q: q.scope("named", "alice").or_where("users.name", "carol"))
            .order_by("users.id")
            .get()
        )
        assert users.pluck("name") == ["alice", "carol"]

    async def test_terminal_methods_do_not_mutate_builder(self, db_session, seeded):
        builder = Member.query(db_session).where("users.name", "carol")
        before = builder.to_sql()
        await builder.get()
        await builder.count()
        assert builder.to_sql() == before
        assert len(builder.get_query().wheres) == 1

    async def test_get_model_without_model_raises(self):
        from flash_orm import Query

        with pytest.raises(RuntimeError, match="no model"):
            Builder(Query(None, "users")).get_model()

    async def test_builder_requires_query_engine(self):
        with pytest.raises(InvalidArgumentError, match="query engine"):
            Builder("users")

    async def test_where_between(self, db_session, seeded):
        inside = await Post.query(db_session).where_between("posts.votes", [3, 12]).order_by("posts.id").get()
        assert inside.model_keys() == [1, 2]
        outside = await Post.query(db_session).where_not_between("posts.votes", [3, 12]).order_by("posts.id").get()
        assert outside.model_keys() == [3, 4]

    async def test_scoped_copy_is_independent(self, db_session):
        builder = Post.query(db_session)
        scoped = builder.apply_scopes()
        scoped.select("posts.id").limit(1)
        assert scoped is not builder
        assert builder.get_query().columns == []


class TestPagination:
    """Tests for paginate() and chunk()."""

    async def test_paginate(self, db_session, seeded):
        page = await Post.query(db_session).order_by("posts.id").paginate(per_page=3, page=2)
        assert isinstance(page, Paginator)
        assert page.total == 4
        assert page.last_page == 2
        assert not page.has_more_pages
        assert page.items.model_keys() == [4]
        assert (page.from_item, page.to_item) == (4, 4)
        assert page.to_dict()["data"][0]["title"] == "Reply"

    async def test_paginate_defaults_to_settings(self, db_session, seeded):
        page = await Post.query(db_session).paginate()
        assert page.per_page == 15
        assert page.current_page == 1
        assert len(page) == 4

    async def test_paginate_past_the_end_is_empty(self, db_session, seeded):
        page = await Post.query(db_session).paginate(per_page=2, page=5)
        assert len(page) == 0
        assert page.from_item is None

    @pytest.mark.parametrize(("per_page", "page"), [(-1, 1), (501, 1), (10, 0)])
    async def test_paginate_rejects_bad_arguments(self, db_session, per_page, page):
        with pytest.raises(InvalidArgumentError):
            await Post.query(db_session).paginate(per_page=per_page, page=page)

    async def test_chunk_walks_every_page(self, db_session, seeded):
        seen = []

        async def collect(posts, page):
            seen.append((page, posts.model_keys()))

        assert await Post.query(db_session).chunk(3, collect) is True
        assert seen == [(1, [1, 2, 3]), (2, [4])]

    async def test_chunk_stops_when_callback_returns_false(self, db_session, seeded):
        pages = []

        def stop_after_first(posts, page):
            pages.append(page)
            return False

        assert await Post.query(db_session).chunk(1, stop_after_first) is False
        assert pages == [1]


class TestScopes:
    """Tests for local and global scopes."""

    async def test_local_scope(self, db_session, seeded):
        posts = await Post.query(db_session).scope("published_only").order_by("posts.id").get()
        assert posts.model_keys() == [1, 3, 4]

    async def test_local_scope_with_arguments(self, db_session, seeded):
        posts = await Post.query(db_session).scope("popular", 20).get()
        assert posts.model_keys() == [3]

    async def test_scopes_list_and_mapping(self, db_session, seeded):
        listed = await Post.query(db_session).scopes(["published_only", "popular"]).order_by("posts.id").get()
        assert listed.model_keys() == [1, 3]
        mapped = await Post.query(db_session).scopes({"popular": 20}).get()
        assert mapped.model_keys() == [3]

    async def test_unknown_scope_raises(self, db_session):
        with pytest.raises(ScopeNotFoundError, match=r"\[Post\] has no scope named \[trending\]"):
            Post.query(db_session).scope("trending")

    async def test_global_scope_applies(self, db_session, seeded):
        members = await Member.query(db_session).order_by("users.id").get()
        assert members.pluck("name") == ["alice", "carol"]

    async def test_global_scope_groups_or_wheres(self, db_session, seeded):
        """Should keep an OR in user wheres from escaping the global scope."""
        members = await (
            Member.query(db_session)
            .where("users.name", "bob")
            .or_where("users.name", "carol")
            .get()
        )
        assert members.pluck("name") == ["carol"]

    async def test_without_global_scope(self, db_session, seeded):
        by_class = await Member.query(db_session).without_global_scope(MemberScope).count()
        by_name = await Member.query(db_session).without_global_scope("member_scope").count()
        assert by_class == by_name == 3

        builder = Member.query(db_session).without_global_scopes()
        assert set(builder.removed_scopes()) == {"member_scope", "soft_deleting"}

    async def test_with_global_scope_callable(self, db_session, seeded):
        count = await (
            User.query(db_session)
            .with_global_scope("norway", lambda q: q.where("users.country_id", 1))
            .count()
        )
        assert count == 2


class TestBuilderEagerLoadRegistration:
    """Tests for with_() / without() bookkeeping."""

    async def test_unknown_relation_raises_immediately(self, db_session):
        with pytest.raises(RelationNotFoundError, match=r"Model \[User\]'s relation \[nope\] doesn't exist."):
            User.query(db_session).with_("nope")

    async def test_without_drops_nested_paths(self, db_session):
        builder = User.query(db_session).with_("posts.comments", "roles").without("posts")
        assert list(builder.eager_load) == ["roles"]

    async def test_default_with_is_loaded(self, db_session, seeded):
        posts = await PostWithAuthor.query(db_session).order_by("posts.id").get()
        assert all(p.relation_loaded("author") for p in posts)
        assert posts[0].get_relation("author").name == "alice"


class TestBuilderWrites:
    """Tests for update/delete through the builder."""

    async def test_update_touches_updated_at(self, db_session, seeded):
        changed = await Post.query(db_session).where("posts.user_id", 1).update({"votes": 0})
        assert changed == 2
        rows = await Post.query(db_session).where("posts.user_id", 1).get()
        assert all(p.votes == 0 and p.updated_at is not None for p in rows)

    async def test_increment(self, db_session, seeded):
        await Post.query(db_session).where("posts.id", 1).increment("votes", 5)
        post = await Post.query(db_session).find(1)
        assert post.votes == 17

    async def test_delete_requires_filters(self, db_session, seeded):
        with pytest.raises(ValueError, match="Refusing to delete without filters"):
            await User.query(db_session).delete()

    async def test_delete(self, db_session, seeded):
        assert await Post.query(db_session).where("posts.votes", "<", 5).delete() == 2
        assert await Post.query(db_session).count() == 2


class TestGlobalScopeRegistration:
    """Tests for validating __global_scopes__ when a model class is defined."""

    async def test_non_scope_entry_raises(self):
        with pytest.raises(InvalidArgumentError, match="instance of Scope or a callable"):

            class Broken(Model):
                __tablename__ = "broken"
                __global_scopes__ = (42,)

    async def test_empty_scope_name_raises(self):
        with pytest.raises(InvalidArgumentError, match="non-empty strings"):

            class Unnamed(Model):
                __tablename__ = "unnamed"
                __global_scopes__ = {"": MemberScope()}

    async def test_mapping_of_callables_is_accepted(self):
        class Scoped(Model):
            __tablename__ = "scoped"
            __global_scopes__ = {"recent": lambda q: q.where("scoped.id", ">", 1)}

        assert set(Scoped._meta.global_scopes) == {"recent"}
