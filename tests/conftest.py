"""
Test infrastructure for the forum API.

Strategy
--------
- SQLite in-memory via aiosqlite, with StaticPool so every session in a
  test shares the one connection that holds the in-memory database.
- ``get_db`` is overridden so requests use the test session factory.
- Tables are created before and dropped after each test.
- Redis is disabled (``cache._redis = None``); the cache manager treats
  that as a permanent miss, so the real database paths are exercised.
- bcrypt runs at its minimum cost so account-heavy tests stay fast.
"""
import os

os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("DEBUG", "false")

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

from forum_api.cache import cache
from forum_api.database import Base, get_db
from forum_api.main import app
from forum_api.middleware import install_query_counter
from forum_api.models import Comment, Post, User, UserRole
from forum_api.security import create_access_token, hash_password

# ---------------------------------------------------------------------------
# Test database engine: SQLite in-memory with aiosqlite
# ---------------------------------------------------------------------------

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

engine_test = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

install_query_counter(engine_test)

async_session_test = async_sessionmaker(
    engine_test,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def override_get_db():
    async with async_session_test() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


app.dependency_overrides[get_db] = override_get_db


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture(autouse=True)
async def setup_db():
    """Create all tables before each test, drop after to guarantee isolation."""
    async with engine_test.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine_test.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture
async def db_session() -> AsyncSession:
    """A live session for seeding data and calling services directly."""
    async with async_session_test() as session:
        yield session


@pytest_asyncio.fixture
async def async_client() -> AsyncClient:
    cache._redis = None
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest_asyncio.fixture
async def make_user(db_session: AsyncSession):
    """
    Factory fixture: ``await make_user("alice", UserRole.ADMIN)`` inserts and
    commits a user whose password is ``secret123``.
    """

    async def _make(username: str, role: UserRole = UserRole.STUDENT, active: bool = True) -> User:
        user = User(
            username=username,
            email=f"{username}@university.edu",
            password_hash=hash_password("secret123"),
            full_name=username.title(),
            role=role,
            is_active=active,
        )
        db_session.add(user)
        await db_session.commit()
        return user

    return _make


@pytest_asyncio.fixture
async def make_post(db_session: AsyncSession):
    """Factory fixture inserting a post (and optionally comments) directly."""

    async def _make(author: User, title: str = "A post", comments: int = 0) -> Post:
        post = Post(title=title, content="Body", author_id=author.id)
        db_session.add(post)
        await db_session.flush()
        for i in range(comments):
            db_session.add(Comment(content=f"Comment {i}", post_id=post.id, author_id=author.id))
        await db_session.commit()
        return post

    return _make


def auth_headers(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}


@pytest.fixture
def headers_for():
    """``headers_for(user)`` returns a bearer Authorization header."""
    return auth_headers
