import pytest
from fastapi.testclient import TestClient

from juryapp.config import DEFAULT_RUBRIC, Settings
from juryapp.db import init_db
from juryapp.identity import make_identity
from juryapp.main import create_app
from juryapp.records import EvaluationRecord

DEPLOY = "deploy-secret"
ADMIN = "admin-secret"


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "jury.sqlite")
    init_db(path)
    return path


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        db_path=str(tmp_path / "api.sqlite"),
        deployment_secret=DEPLOY,
        admin_secret=ADMIN,
    )


@pytest.fixture
def http(settings):
    app = create_app(settings)
    with TestClient(app, headers={"X-Deployment-Secret": DEPLOY}) as client:
        yield client


@pytest.fixture
def rubric():
    return DEFAULT_RUBRIC


@pytest.fixture
def alice():
    return make_identity("Alice Yılmaz", "EE Department")


def rec(identity_id="j1-aaaa", group_id=1, ts="2026-05-01T10:00:00Z", status="in_progress",
        scores=None, **kw) -> EvaluationRecord:
    """Terse record builder for tests."""
    if scores is None:
        scores = {"design": 20, "delivery": None, "technical": None, "teamwork": None}
    return EvaluationRecord(
        identity_id=identity_id,
        group_id=group_id,
        timestamp=ts,
        scores=scores,
        status=status,
        **kw,
    )


FULL = {"design": 25, "delivery": 24, "technical": 27, "teamwork": 9}
