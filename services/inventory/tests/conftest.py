import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from services.inventory.main import app, get_repo
from services.inventory.repo import InventoryRepo, init_db


@pytest.fixture
def engine():
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def repo(engine):
    r = InventoryRepo(bind=engine)
    r.upsert_product("runner-01", "Trail Runner", 150000, {8: 5, 9: 2})
    r.upsert_product("court-02", "Court Classic", 75000, {9: 1, 10: 3})
    return r


@pytest.fixture
def api(repo):
    app.dependency_overrides[get_repo] = lambda: repo
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
