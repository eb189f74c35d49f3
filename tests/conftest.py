from __future__ import annotations

from collections.abc import Iterator

import pytest
from sqlalchemy import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from treeflow.db.base import Base
from treeflow.db.models import Step, TreeFlow
from treeflow.db.session import build_engine
from treeflow.graph.authoring import TreeFlowEditor
from treeflow.seed import seed_onboarding_flow


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: Fast unit tests without a database")


@pytest.fixture
def engine() -> Iterator[Engine]:
    """Fresh in-memory SQLite database with foreign keys enforced."""
    eng = build_engine(
        "sqlite+pysqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(eng)
    try:
        yield eng
    finally:
        eng.dispose()


@pytest.fixture
def session(engine: Engine) -> Iterator[Session]:
    factory = sessionmaker(bind=engine, autoflush=False, future=True)
    db = factory()
    try:
        yield db
    finally:
        db.rollback()
        db.close()


@pytest.fixture
def editor(session: Session) -> TreeFlowEditor:
    return TreeFlowEditor(session)


@pytest.fixture
def onboarding(session: Session) -> TreeFlow:
    """Onboarding v1: A (first) -> B (guard ANY) -> C (guard FULLY_COMPLETED), plus unwired "retry"."""
    return seed_onboarding_flow(session)


@pytest.fixture
def steps(onboarding: TreeFlow) -> dict[str, Step]:
    return {step.slug: step for step in onboarding.steps}
