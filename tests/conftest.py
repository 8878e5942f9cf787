from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from app.config import AppSettings
from app.db import Database
from app.execution_store import ExecutionStore
from app.main import create_app
from app.plan_store import PlanStore


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        database_path=str(tmp_path / "test.db"),
        host="127.0.0.1",
        port=4040,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(*, config_path: Path | None = None, **settings_overrides):
        settings = make_settings(tmp_path, **settings_overrides)
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(settings, config_path=cfg_path)
        return app, cfg_path

    return _factory


@pytest.fixture
async def client(app_factory):
    app, config_path = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.config_path = config_path  # type: ignore[attr-defined]
            yield http_client


@pytest.fixture
async def db(tmp_path: Path) -> Database:
    database = Database(str(tmp_path / "store.db"))
    await database.init()
    return database


@pytest.fixture
def plan_store(db: Database) -> PlanStore:
    return PlanStore(db)


@pytest.fixture
def execution_store(db: Database) -> ExecutionStore:
    return ExecutionStore(db)
