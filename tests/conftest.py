"""
Shared pytest fixtures — in-memory SQLite + FastAPI TestClient.
"""
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from rescrub.config import Settings
from rescrub.database import Base, get_db
from rescrub import models  # noqa: F401  register models
from rescrub.main import app
from rescrub.pipeline.campaign import CampaignManager
from rescrub.pipeline.notifier import LoggingNotifier

# StaticPool ensures all connections share the same in-memory database
_ENGINE = create_engine(
    "sqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
_Session = sessionmaker(autocommit=False, autoflush=False, bind=_ENGINE)


@pytest.fixture(autouse=True)
def _reset_tables():
    Base.metadata.create_all(bind=_ENGINE)
    yield
    Base.metadata.drop_all(bind=_ENGINE)


@pytest.fixture()
def db():
    session = _Session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def cfg(tmp_path):
    return Settings(
        EVIDENCE_ARCHIVE_DIR=str(tmp_path / "archive"),
        NOTIFY_BACKOFF_SECONDS=0,
    )


@pytest.fixture()
def notifier():
    return LoggingNotifier()


@pytest.fixture()
def campaign(db, cfg, notifier):
    return CampaignManager(db, cfg, notifier=notifier)


@pytest.fixture()
def client(db):
    def _override():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = _override
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
