import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from services.payments.main import app, get_repo
from services.payments.repo import PaymentsRepo, init_db


@pytest.fixture
def repo():
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    init_db(eng)
    yield PaymentsRepo(bind=eng)
    eng.dispose()


@pytest.fixture
def api(repo):
    app.dependency_overrides[get_repo] = lambda: repo
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
