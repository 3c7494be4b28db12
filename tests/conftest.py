"""Shared fixtures: in-memory database and flow builders."""
import pytest
from sqlalchemy.orm import sessionmaker

from apps.backend.database import Base, get_test_engine
from apps.backend.models.bot import Bot, Flow, FlowVersion


@pytest.fixture
def session_factory():
    engine = get_test_engine()
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine)


@pytest.fixture
def test_db_session(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def make_flow(test_db_session):
    """Create (bot, flow, version) for flow data; reuses `bot` when given."""

    def _make(
        nodes: list[dict],
        edges: list[dict] | None = None,
        *,
        bot: Bot | None = None,
        name: str = "Main",
        is_main: bool = True,
        production: bool = True,
        draft: bool = False,
    ):
        db = test_db_session
        if bot is None:
            bot = Bot(name="Test bot")
            db.add(bot)
            db.commit()
            db.refresh(bot)
        flow = Flow(bot_id=bot.id, name=name, is_main_flow=is_main)
        db.add(flow)
        db.commit()
        db.refresh(flow)
        version = FlowVersion(
            flow_id=flow.id,
            version_number=1,
            flow_data={"nodes": nodes, "edges": edges or []},
            is_draft=draft,
            is_production=production,
        )
        db.add(version)
        db.commit()
        db.refresh(version)
        return bot, flow, version

    return _make


@pytest.fixture
def client(session_factory):
    """TestClient whose requests share the in-memory database."""
    from fastapi.testclient import TestClient

    from apps.backend.deps import get_db
    from apps.backend.main import app

    def _get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
