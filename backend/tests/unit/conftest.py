import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.database import Base

# Import models so Base.metadata is populated for create_all.
import app.models  # noqa: F401


@pytest.fixture
def _unit_engine():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        future=True,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def unit_session_factory(_unit_engine):
    """Session factory bound to a fresh in-memory database per test."""
    return sessionmaker(bind=_unit_engine, expire_on_commit=False, future=True)
