import pytest
import pytest_asyncio
from flash_orm import db as db_module
from sqlalchemy import event
from sqlalchemy.pool import StaticPool

from .models import metadata

DATABASE_URL = "sqlite+aiosqlite:///:memory:"  # in-memory DB for tests


@pytest_asyncio.fixture(scope="function")
async def init_test_db():
    """Initialize the test database and create every table."""
    # One shared connection, otherwise each checkout sees an empty :memory: db
    engine = db_module.init_db(DATABASE_URL, echo=False, poolclass=StaticPool)

    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)

    yield engine

    await db_module.close_db()


@pytest_asyncio.fixture()
async def db_session(init_test_db):  # noqa: ARG001
    """Provide a database session for tests."""
    async for session in db_module.get_db():
        yield session


@pytest.fixture()
def query_counter(init_test_db):
    """Record every SQL statement sent to the database while the test runs."""
    statements: list[str] = []

    def _record(conn, cursor, statement, parameters, context, executemany):  # noqa: ARG001
        statements.append(statement)

    sync_engine = init_test_db.sync_engine
    event.listen(sync_engine, "before_cursor_execute", _record)
    yield statements
    event.remove(sync_engine, "before_cursor_execute", _record)


@pytest_asyncio.fixture()
async def seeded(db_session):
    """
    A small graph:

    - countries: 1 "Norway" (users 1, 2), 2 "Chile" (user 3), 3 "Empty"
    - users: 1 "alice", 2 "bob", 3 "carol" (no posts)
    - posts: 1, 2 by alice; 3 by bob; 4 is a child of post 1 by bob
    - comments: 2 on post 1, 1 on post 3, 1 trashed on post 3
    - roles: 1 "admin", 2 "editor", 3 "viewer"; alice has 1, 2; bob has 2
    """
    from .models import Comment, Country, Post, Role, User

    norway = await Country.create(db_session, name="Norway")
    chile = await Country.create(db_session, name="Chile")
    await Country.create(db_session, name="Empty")

    alice = await User.create(db_session, name="alice", email="a@example.com", country_id=norway.id)
    bob = await User.create(db_session, name="bob", email=None, country_id=norway.id)
    carol = await User.create(db_session, name="carol", email="c@example.com", country_id=chile.id)

    p1 = await Post.create(db_session, user_id=alice.id, title="First", votes=12, published=True)
    p2 = await Post.create(db_session, user_id=alice.id, title="Second", votes=3, published=False)
    p3 = await Post.create(db_session, user_id=bob.id, title="Third", votes=25, published=True)
    p4 = await Post.create(
        db_session, user_id=bob.id, parent_id=p1.id, title="Reply", votes=1, published=True
    )

    await Comment.create(db_session, post_id=p1.id, body="nice")
    await Comment.create(db_session, post_id=p1.id, body="agreed")
    await Comment.create(db_session, post_id=p3.id, body="hm")
    trashed = await Comment.create(db_session, post_id=p3.id, body="spam")
    await trashed.delete()

    admin = await Role.create(db_session, name="admin")
    editor = await Role.create(db_session, name="editor")
    viewer = await Role.create(db_session, name="viewer")
    await alice.related("roles").attach({admin.id: {"level": "admin"}, editor.id: {"level": "member"}})
    await bob.related("roles").attach(editor.id, {"level": "member"})

    return {
        "countries": [norway, chile],
        "users": [alice, bob, carol],
        "posts": [p1, p2, p3, p4],
        "roles": [admin, editor, viewer],
    }
