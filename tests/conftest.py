import os
import sys
import tempfile
from datetime import timedelta
from pathlib import Path

# Point every path at a scratch directory before ojudge.config is imported
_DATA_DIR = Path(tempfile.mkdtemp(prefix="ojudge_test_"))
os.environ.setdefault("OJUDGE_DATA_DIR", str(_DATA_DIR))
os.environ.setdefault("OJUDGE_BULK_ROOT", str(_DATA_DIR))
os.environ.setdefault("OJUDGE_PYTHON", sys.executable)
os.environ.setdefault("OJUDGE_ADMIN_TOKEN", "test-admin-token")

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from ojudge.fixtures import FixtureStore
from ojudge.models import init_db, utcnow


@pytest.fixture
def data_dir() -> Path:
    return _DATA_DIR


@pytest.fixture
def store(tmp_path) -> FixtureStore:
    return FixtureStore(tmp_path / "fixtures")


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/judge.db")
    await init_db(engine)
    yield sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def contest_window():
    now = utcnow()
    return now - timedelta(hours=1), now + timedelta(hours=4)
