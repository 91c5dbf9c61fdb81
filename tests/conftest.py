import os
import tempfile
import uuid
import warnings

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlmodel import select

try:
    from sqlalchemy.exc import SAWarning
    warnings.filterwarnings('ignore', category=SAWarning)
except Exception:
    # If SQLAlchemy not available at import, ignore
    pass

# The database engine is created at import time, so point it at a throwaway
# file before anything from tasklane is imported.
_tmpdir = tempfile.mkdtemp(prefix='tasklane-tests-')
os.environ.setdefault('DATABASE_URL', f"sqlite+aiosqlite:///{os.path.join(_tmpdir, 'test.db')}")
# Ensure a secure SECRET_KEY is available during tests so the app lifespan
# check doesn't raise.
os.environ.setdefault('SECRET_KEY', 'test-secret-key-for-unit-tests')

# Reduce SQLAlchemy logger verbosity during tests
import logging as _logging
for _name in ('sqlalchemy', 'sqlalchemy.engine', 'sqlalchemy.pool', 'sqlmodel'):
    _logging.getLogger(_name).setLevel(_logging.ERROR)

from tasklane.main import app
from tasklane.db import init_db, async_session
from tasklane.auth import create_user
from tasklane.models import Todo
from tasklane import activity


@pytest_asyncio.fixture
async def ensure_db():
    await init_db()
    yield
    # let fire-and-forget activity writes land before the loop closes
    await activity.drain()


@pytest_asyncio.fixture
async def make_user(ensure_db):
    """Factory creating users with unique names so tests never share rows."""
    async def _make(password: str = 'testpass'):
        return await create_user(f'user-{uuid.uuid4().hex[:12]}', password)
    return _make


@pytest_asyncio.fixture
async def user(make_user):
    return await make_user()


@pytest_asyncio.fixture
async def anon_client(ensure_db):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def client(ensure_db, user):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        resp = await ac.post("/auth/token", json={"username": user.username, "password": "testpass"})
        assert resp.status_code == 200
        ac.headers.update({"Authorization": f"Bearer {resp.json()['access_token']}"})
        yield ac


@pytest.fixture
def seed_todos():
    """Create ``n`` top-level todos laid out densely as 0..n-1; returns their ids in order."""
    async def _seed(owner_id: int, n: int, category_id=None, prefix: str = 'item'):
        ids = []
        async with async_session() as sess:
            for i in range(n):
                t = Todo(title=f'{prefix}-{i}', owner_id=owner_id, category_id=category_id, sort_order=i)
                sess.add(t)
                await sess.flush()
                ids.append(t.id)
            await sess.commit()
        return ids
    return _seed


@pytest.fixture
def scope_orders():
    """Return {todo_id: sort_order} for one owner's top-level todos in a category (None = uncategorized)."""
    async def _orders(owner_id: int, category_id=None):
        stmt = select(Todo.id, Todo.sort_order).where(Todo.owner_id == owner_id).where(Todo.parent_id.is_(None))
        if category_id is None:
            stmt = stmt.where(Todo.category_id.is_(None))
        else:
            stmt = stmt.where(Todo.category_id == category_id)
        async with async_session() as sess:
            q = await sess.exec(stmt)
            return {tid: order for tid, order in q.all()}
    return _orders


def pytest_sessionfinish(session, exitstatus):
    """Dispose the async engine at the end of the pytest session."""
    try:
        import asyncio
        from tasklane import db as app_db
        asyncio.run(app_db.engine.dispose())
    except Exception:
        # best-effort: if disposal fails, don't crash pytest teardown
        pass
