import pytest
from flash_orm import InvalidArgumentError, Query
from flash_orm.query import combine_wheres, split_alias
from sqlalchemy import literal_column

pytestmark = pytest.mark.asyncio


async def _seed_posts(db):
    await Query(db, "posts").insert(
        [
            {"id": 1, "user_id": 1, "title": "Alpha", "votes": 5},
            {"id": 2, "user_id": 1, "title": "Beta", "votes": 15},
            {"id": 3, "user_id": 2, "title": "Gamma", "votes": 25},
            {"id": 4, "user_id": None, "title": "Delta", "votes": 0},
        ]
    )


class TestQueryConstruction:
    """Tests for composing queries without touching the database."""

    async def test_split_alias_parses_as_clause(self):
        """Should split 'table as alias' and leave plain names alone."""
        assert split_alias("posts as p") == ("posts", "p")
        assert split_alias("posts AS p") == ("posts", "p")
        assert split_alias("posts") == ("posts", None)

    async def test_and_binds_tighter_than_or(self):
        """Should group a OR b AND c as a OR (b AND c)."""
        a = literal_column("a") == 1
        b = literal_column("b") == 2
        c = literal_column("c") == 3
        clause = combine_wheres([("and", a), ("or", b), ("and", c)])
        sql = str(clause.compile(compile_kwargs={"literal_binds": True}))
        assert sql == "a = 1 OR b = 2 AND c = 3"

    async def test_combine_wheres_empty_returns_none(self):
        assert combine_wheres([]) is None

    async def test_clone_is_independent(self):
        """Should not leak clauses added to a clone back into the original."""
        base = Query(None, "posts").where("votes", ">", 1)
        clone = base.clone().where("user_id", 1).order_by("id")
        assert len(base.wheres) == 1
        assert len(clone.wheres) == 2
        assert base.orders == []

    async def test_add_select_prepends_table_star(self):
        query = Query(None, "posts").add_select("extra")
        assert query.columns == ["posts.*", "extra"]

    async def test_add_select_uses_alias(self):
        query = Query(None, "posts as p").add_select("extra")
        assert query.columns == ["p.*", "extra"]

    async def test_to_sql_renders_where_and_params(self):
        sql, params = Query(None, "posts").where("votes", ">=", 10).limit(5).to_sql()
        assert "FROM posts" in sql
        assert "WHERE votes >=" in sql
        assert 10 in params.values()

    async def test_where_none_means_is_null(self):
        sql, _ = Query(None, "posts").where("user_id", None).to_sql()
        assert "user_id IS NULL" in sql

    async def test_where_between(self):
        sql, params = Query(None, "posts").where_between("votes", [3, 12]).to_sql()
        assert "votes BETWEEN" in sql
        assert sorted(params.values()) == [3, 12]

        sql, _ = Query(None, "posts").where("id", 1).or_where_between("votes", [3, 12]).to_sql()
        assert " OR " in sql

    async def test_where_between_needs_two_values(self):
        with pytest.raises(InvalidArgumentError, match="exactly two values"):
            Query(None, "posts").where_between("votes", [1, 2, 3])

    async def test_unknown_operator_raises(self):
        with pytest.raises(InvalidArgumentError, match="Unsupported operator"):
            Query(None, "posts").where("votes", "~~", 1)

    async def test_unknown_lookup_raises(self):
        with pytest.raises(InvalidArgumentError, match="Unsupported lookup"):
            Query(None, "posts").filter(votes__near=1)

    async def test_invalid_boolean_raises(self):
        with pytest.raises(InvalidArgumentError, match="Unsupported boolean"):
            Query(None, "posts").where("votes", 1, boolean="xor")

    async def test_invalid_order_direction_raises(self):
        with pytest.raises(InvalidArgumentError, match="asc"):
            Query(None, "posts").order_by("id", "sideways")

    async def test_join_renders_on_clause(self):
        sql, _ = (
            Query(None, "roles")
            .join("role_user", "roles.id", "=", "role_user.role_id")
            .to_sql()
        )
        assert "JOIN role_user ON roles.id = role_user.role_id" in sql

    async def test_query_without_session_refuses_to_run(self):
        with pytest.raises(RuntimeError, match="no database session"):
            await Query(None, "posts").get()


class TestQueryExecution:
    """Tests for running queries against SQLite."""

    async def test_get_returns_dicts(self, db_session):
        await _seed_posts(db_session)
        rows = await Query(db_session, "posts").order_by("id").get()
        assert [row["title"] for row in rows] == ["Alpha", "Beta", "Gamma", "Delta"]
        assert rows[0]["votes"] == 5

    async def test_where_mapping_and_callable(self, db_session):
        """Should support mapping wheres and nested groups."""
        await _seed_posts(db_session)
        rows = await (
            Query(db_session, "posts")
            .where({"user_id": 1})
            .where(lambda q: q.where("votes", ">", 10).or_where("title", "Alpha"))
            .order_by("id")
            .get()
        )
        assert [row["id"] for row in rows] == [1, 2]

    async def test_filter_lookups(self, db_session):
        await _seed_posts(db_session)
        rows = await Query(db_session, "posts").filter(votes__gte=15, title__startswith="G").get()
        assert [row["id"] for row in rows] == [3]

        rows = await Query(db_session, "posts").filter(user_id__isnull=True).get()
        assert [row["id"] for row in rows] == [4]

    async def test_where_in_empty_list_matches_nothing(self, db_session):
        await _seed_posts(db_session)
        assert await Query(db_session, "posts").where_in("id", []).get() == []
        assert await Query(db_session, "posts").where_not_in("id", []).count() == 4

    async def test_where_null_variants(self, db_session):
        await _seed_posts(db_session)
        assert await Query(db_session, "posts").where_null("user_id").count() == 1
        assert await Query(db_session, "posts").where_not_null("user_id").count() == 3

    async def test_aggregates(self, db_session):
        await _seed_posts(db_session)
        query = Query(db_session, "posts")
        assert await query.count() == 4
        assert await query.max("votes") == 25
        assert await query.min("votes") == 0
        assert await query.sum("votes") == 45
        assert await query.avg("votes") == pytest.approx(11.25)

    async def test_count_respects_limit(self, db_session):
        """Should count only the rows a limited query would return."""
        await _seed_posts(db_session)
        assert await Query(db_session, "posts").order_by("id").limit(2).count() == 2

    async def test_exists_and_pluck(self, db_session):
        await _seed_posts(db_session)
        assert await Query(db_session, "posts").where("votes", ">", 20).exists()
        assert not await Query(db_session, "posts").where("votes", ">", 100).exists()
        titles = await Query(db_session, "posts").where("user_id", 1).order_by("id").pluck("posts.title")
        assert titles == ["Alpha", "Beta"]

    async def test_first_returns_none_when_empty(self, db_session):
        assert await Query(db_session, "posts").first() is None

    async def test_paging(self, db_session):
        await _seed_posts(db_session)
        rows = await Query(db_session, "posts").order_by("id").for_page(2, 3).get()
        assert [row["id"] for row in rows] == [4]

    async def test_distinct_and_group_by(self, db_session):
        await _seed_posts(db_session)
        owners = await Query(db_session, "posts").where_not_null("user_id").distinct().pluck("user_id")
        assert sorted(owners) == [1, 2]
        grouped = await Query(db_session, "posts").where_not_null("user_id").group_by("user_id").count()
        assert grouped == 2


class TestQueryWrites:
    """Tests for insert, update and delete."""

    async def test_insert_batches_by_key_set(self, db_session):
        """Should insert rows with different columns without forcing NULLs."""
        written = await Query(db_session, "posts").insert(
            [
                {"id": 1, "title": "A"},
                {"id": 2, "title": "B", "votes": 9},
            ]
        )
        assert written == 2
        rows = await Query(db_session, "posts").order_by("id").get()
        assert [row["votes"] for row in rows] == [0, 9]

    async def test_insert_get_id(self, db_session):
        new_id = await Query(db_session, "roles").insert_get_id({"name": "admin"})
        assert new_id == 1

    async def test_update_and_delete_return_row_counts(self, db_session):
        await _seed_posts(db_session)
        assert await Query(db_session, "posts").where("user_id", 1).update({"votes": 0}) == 2
        assert await Query(db_session, "posts").where("votes", 0).count() == 3
        assert await Query(db_session, "posts").where("user_id", 1).delete() == 2
        assert await Query(db_session, "posts").count() == 2

    async def test_update_without_filters_is_refused(self, db_session):
        with pytest.raises(ValueError, match="Refusing to update without filters"):
            await Query(db_session, "posts").update({"votes": 1})

    async def test_delete_without_filters_is_refused(self, db_session):
        with pytest.raises(ValueError, match="Refusing to delete without filters"):
            await Query(db_session, "posts").delete()

    async def test_increment_and_decrement(self, db_session):
        await _seed_posts(db_session)
        await Query(db_session, "posts").where("id", 1).increment("votes", 3)
        await Query(db_session, "posts").where("id", 2).decrement("votes")
        rows = await Query(db_session, "posts").where_in("id", [1, 2]).order_by("id").get()
        assert [row["votes"] for row in rows] == [8, 14]

    async def test_transaction_runs_callable(self, db_session):
        await db_session.commit()

        async def write(query):
            await query.insert({"name": "editor"})
            return "done"

        assert await Query(db_session, "roles").transaction(write) == "done"
        assert await Query(db_session, "roles").count() == 1
