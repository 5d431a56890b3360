"""
Tests for health server

Liveness, readiness (database reachable) and detailed health, which turns
degraded as soon as any resource is halted on an unresolved gap.
"""

from pathlib import Path

import pytest

from eventfold.health_server import app, initialize_health_server
from eventfold.pipeline import Pipeline
from tests.helpers import make_event


@pytest.fixture
def client():
    """Flask test client"""
    app.config["TESTING"] = True
    with app.test_client() as client:
        yield client


def test_liveness(client) -> None:
    response = client.get("/health/live")

    assert response.status_code == 200
    assert response.get_json() == {"status": "alive", "service": "eventfold"}


def test_readiness(client, pipeline: Pipeline) -> None:
    pipeline.submit("createEntry", {"title": "A"})
    initialize_health_server(pipeline.db_path, pipeline)

    response = client.get("/health/ready")

    assert response.status_code == 200
    data = response.get_json()
    assert data["status"] == "ready"
    assert data["entry_count"] == 1


def test_readiness_without_database(client, tmp_path: Path) -> None:
    initialize_health_server(tmp_path / "missing.db")

    response = client.get("/health/ready")

    assert response.status_code == 503
    assert response.get_json()["reason"] == "database_file_not_found"


def test_readiness_uninitialized_schema(client, tmp_path: Path) -> None:
    db_path = tmp_path / "empty.db"
    db_path.touch()
    initialize_health_server(db_path)

    response = client.get("/health/ready")

    assert response.status_code == 503
    assert response.get_json()["reason"] == "database_operational_error"


def test_detailed_health(client, pipeline: Pipeline) -> None:
    pipeline.submit("createEntry", {"title": "A"})
    initialize_health_server(pipeline.db_path, pipeline)

    response = client.get("/health")

    assert response.status_code == 200
    data = response.get_json()
    assert data["status"] == "healthy"
    assert data["database"]["status"] == "healthy"
    assert data["pipeline"]["lag"] == {"commands": 1, "events": 0}


def test_unresolved_gap_degrades_health(client, pipeline: Pipeline) -> None:
    pipeline.materializer.apply(make_event("e1", 1, "create", {"title": "A"}))
    for version in range(3, 3 + pipeline.settings.gap_window + 1):
        pipeline.materializer.apply(make_event("e1", version))
    initialize_health_server(pipeline.db_path, pipeline)

    response = client.get("/health")

    assert response.status_code == 503
    data = response.get_json()
    assert data["status"] == "degraded"
    assert data["pipeline"]["unresolved_gaps"] == 1
