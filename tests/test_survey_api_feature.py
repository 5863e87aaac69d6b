import asyncio
import copy
import time

from fastapi.testclient import TestClient

from backend.config import DEFAULT_CONFIG
from backend.main import create_app
from backend.survey.write_queue import DEFAULT_MAX_SIZE, DEFAULT_MAX_WAIT_SECONDS


def _config(**overrides):
    cfg = copy.deepcopy(DEFAULT_CONFIG)
    for section, values in overrides.items():
        if isinstance(values, dict):
            cfg[section].update(values)
        else:
            cfg[section] = values
    return cfg


def _wait_for(client, predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    status = client.get("/api/queue-status").json()
    while not predicate(status) and time.monotonic() < deadline:
        time.sleep(0.01)
        status = client.get("/api/queue-status").json()
    return status


def test_survey_is_acknowledged_and_persisted_in_background():
    persisted = []

    async def persist(payload):
        persisted.append(payload)

    app = create_app(config=_config(), persist=persist)
    with TestClient(app) as client:
        res = client.post(
            "/api/survey",
            json={"path": "/about", "surveyId": "s-1", "stars": 5, "barriers": ["cost"]},
        )
        assert res.status_code == 200
        body = res.json()
        assert body["success"] is True
        assert body["message"] == "Survey data received and queued for processing"
        assert body["timestamp"]

        status = _wait_for(client, lambda s: s["total_processed"] == 1)

    assert status["total_errors"] == 0
    assert status["success_rate_percent"] == 100.0
    assert persisted[0]["surveyId"] == "s-1"
    assert persisted[0]["stars"] == 5
    assert persisted[0]["barriers"] == ["cost"]


def test_survey_without_path_is_rejected():
    app = create_app(config=_config(), persist=lambda payload: asyncio.sleep(0))
    with TestClient(app) as client:
        res = client.post("/api/survey", json={"surveyId": "s-1"})
        assert res.status_code == 400
        assert res.json()["detail"] == "Page URL or path is required"
        assert client.get("/api/queue-status").json()["current_length"] == 0


def test_malformed_json_is_rejected():
    app = create_app(config=_config(), persist=lambda payload: asyncio.sleep(0))
    with TestClient(app) as client:
        res = client.post("/api/survey", content=b"invalid json", headers={"Content-Type": "application/json"})
        assert res.status_code == 400
        assert res.json()["detail"] == "Invalid JSON body"
        assert client.get("/api/queue-status").json()["current_length"] == 0


def test_non_object_body_is_rejected():
    app = create_app(config=_config(), persist=lambda payload: asyncio.sleep(0))
    with TestClient(app) as client:
        res = client.post("/api/survey", json=["/about"])
        assert res.status_code == 400
        assert res.json()["detail"] == "Survey payload must be a JSON object"


def test_loosely_typed_fields_are_passed_through():
    persisted = []

    async def persist(payload):
        persisted.append(payload)

    app = create_app(config=_config(), persist=persist)
    with TestClient(app) as client:
        res = client.post(
            "/api/survey",
            json={"path": "/x", "barriers": [1, 2], "resubmissionCount": 1.5, "exited": "yes"},
        )
        assert res.status_code == 200
        assert res.json()["success"] is True
        _wait_for(client, lambda s: s["total_processed"] == 1)

    assert persisted[0]["barriers"] == [1, 2]
    assert persisted[0]["resubmissionCount"] == 1.5
    assert persisted[0]["exited"] == "yes"


def test_full_queue_answers_503():
    app = create_app(config=_config(), persist=lambda payload: asyncio.sleep(0))
    app.state.write_queue.max_size = 0
    with TestClient(app) as client:
        res = client.post("/api/survey", json={"path": "/about"})
        assert res.status_code == 503
        assert res.headers["retry-after"] == "30"
        assert "try again later" in res.json()["detail"]


def test_persistence_failure_shows_up_in_queue_status():
    async def persist(payload):
        raise RuntimeError("workbook locked")

    app = create_app(config=_config(), persist=persist)
    with TestClient(app) as client:
        assert client.post("/api/survey", json={"page_url": "https://example.com"}).status_code == 200
        status = _wait_for(client, lambda s: s["total_errors"] == 1)

    assert status["total_processed"] == 0
    assert status["success_rate_percent"] == 0.0


def test_queue_status_on_fresh_app():
    app = create_app(config=_config(), persist=lambda payload: asyncio.sleep(0))
    with TestClient(app) as client:
        res = client.get("/api/queue-status")
    assert res.status_code == 200
    assert res.json() == {
        "current_length": 0,
        "is_draining": False,
        "total_processed": 0,
        "total_errors": 0,
        "last_processed_at": None,
        "max_queue_size_observed": 0,
        "success_rate_percent": 100.0,
    }


def test_health_reports_environment():
    app = create_app(config=_config(environment="test"), persist=lambda payload: asyncio.sleep(0))
    with TestClient(app) as client:
        res = client.get("/api/health")
    assert res.status_code == 200
    assert res.json()["status"] == "OK"
    assert res.json()["environment"] == "test"


def test_queue_policy_comes_from_config():
    app = create_app(config=_config(queue={"max_size": 5, "max_wait_seconds": 15}), persist=lambda payload: asyncio.sleep(0))
    queue = app.state.write_queue
    assert queue.max_size == 5
    assert queue.max_wait_seconds == 15.0


def test_unknown_route_is_404():
    app = create_app(config=_config(), persist=lambda payload: asyncio.sleep(0))
    with TestClient(app) as client:
        assert client.get("/api/nope").status_code == 404


def test_queue_policy_defaults_when_config_section_is_missing():
    cfg = _config()
    cfg["queue"] = {}
    app = create_app(config=cfg, persist=lambda payload: asyncio.sleep(0))
    queue = app.state.write_queue
    assert queue.max_size == DEFAULT_MAX_SIZE
    assert queue.max_wait_seconds == DEFAULT_MAX_WAIT_SECONDS
