"""Shared pytest fixtures."""

from collections.abc import Generator
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ballotflow.config import Settings
from ballotflow.db import create_tables


@pytest.fixture()
def engine() -> Generator[Engine, None, None]:
    """In-memory SQLite engine shared across threads, with every table created."""
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture()
def db(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.close()


@pytest.fixture()
def settings() -> Settings:
    """Settings with Gemini disabled and fast retries."""
    return Settings(
        gemini_enabled=False,
        retry_base_delay_seconds=1.0,
        dispatch_concurrency=1,
        admin_email="admin@example.org",
        ops_email="ops@example.org",
        public_app_url="https://app.example.org",
    )


@pytest.fixture()
def mock_mailer() -> MagicMock:
    """Mock Resend mailer that always succeeds."""
    mailer = MagicMock()
    mailer.send.return_value = "msg-1"
    return mailer


@pytest.fixture()
def file_session_factory(tmp_path) -> Generator[sessionmaker[Session], None, None]:
    """Sessions on a file-backed SQLite database, so each thread gets its own connection."""
    eng = create_engine(
        f"sqlite:///{tmp_path / 'ballotflow.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    create_tables(eng)
    yield sessionmaker(bind=eng, autocommit=False, autoflush=False)
    eng.dispose()
