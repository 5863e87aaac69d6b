import asyncio
import copy

from fastapi.testclient import TestClient

from backend.config import DEFAULT_CONFIG
from backend.main import create_app
from backend.security import SlidingWindowLimiter, extract_bearer_token_from_header


def _noop(payload):
    return asyncio.sleep(0)


def _config(environment="development", **security):
    cfg = copy.deepcopy(DEFAULT_CONFIG)
    cfg["environment"] = environment
    cfg["workbook"]["client_id"] = "0123456789abcdef"
    cfg["workbook"]["access_token"] = "secret-token"
    cfg["security"].update(security)
    return cfg


def test_debug_config_open_outside_production():
    with TestClient(create_app(config=_config(), persist=_noop)) as client:
        res = client.get("/api/debug-config")
    assert res.status_code == 200
    body = res.json()
    assert body["client_id_start"] == "01234567..."
    assert body["has_access_token"] is True
    assert "secret-token" not in res.text


def test_debug_config_hidden_in_production_by_default():
    with TestClient(create_app(config=_config("production"), persist=_noop)) as client:
        assert client.get("/api/debug-config").status_code == 404


def test_debug_config_requires_password_in_production():
    cfg = _config("production", debug_endpoints_enabled=True, debug_password="test123")
    with TestClient(create_app(config=cfg, persist=_noop)) as client:
        assert client.get("/api/debug-config").status_code == 401
        assert client.get("/api/debug-config", headers={"Authorization": "Bearer wrong"}).status_code == 401
        ok = client.get("/api/debug-config", headers={"Authorization": "Bearer test123"})
        assert ok.status_code == 200


def test_queue_status_is_always_available_in_production():
    with TestClient(create_app(config=_config("production"), persist=_noop)) as client:
        assert client.get("/api/queue-status").status_code == 200


def test_survey_route_is_rate_limited():
    cfg = _config(rate_limit={"enabled": True, "window_seconds": 900, "max_requests": 2})
    with TestClient(create_app(config=cfg, persist=_noop)) as client:
        first = client.post("/api/survey", json={"path": "/"})
        assert first.headers["x-ratelimit-remaining"] == "1"
        assert client.post("/api/survey", json={"path": "/"}).status_code == 200
        blocked = client.post("/api/survey", json={"path": "/"})
        assert blocked.status_code == 429
        assert int(blocked.headers["retry-after"]) >= 1
        # Monitoring is not rate limited.
        assert client.get("/api/queue-status").status_code == 200


def test_rate_limited_response_keeps_cors_and_security_headers():
    cfg = _config(rate_limit={"enabled": True, "window_seconds": 900, "max_requests": 1})
    origin = {"Origin": "https://ataloss.org"}
    with TestClient(create_app(config=cfg, persist=_noop)) as client:
        assert client.post("/api/survey", json={"path": "/"}, headers=origin).status_code == 200
        blocked = client.post("/api/survey", json={"path": "/"}, headers=origin)

    assert blocked.status_code == 429
    assert blocked.headers["access-control-allow-origin"] == "https://ataloss.org"
    assert blocked.headers["x-content-type-options"] == "nosniff"
    assert blocked.headers["x-frame-options"] == "deny"


def test_production_site_origins_are_allowed_by_default():
    with TestClient(create_app(config=_config(), persist=_noop)) as client:
        for origin in ("https://ataloss.org", "https://www.ataloss.org"):
            res = client.get("/api/health", headers={"Origin": origin})
            assert res.headers["access-control-allow-origin"] == origin
        other = client.get("/api/health", headers={"Origin": "https://evil.example"})
        assert "access-control-allow-origin" not in other.headers


def test_security_headers_are_set():
    with TestClient(create_app(config=_config(), persist=_noop)) as client:
        res = client.get("/api/health")
    assert res.headers["x-content-type-options"] == "nosniff"
    assert res.headers["x-frame-options"] == "deny"


def test_untrusted_host_is_rejected():
    with TestClient(create_app(config=_config(), persist=_noop), base_url="http://evil.example") as client:
        assert client.get("/api/health").status_code == 400


def test_sliding_window_limiter_counts_per_key():
    limiter = SlidingWindowLimiter()
    assert limiter.allow("a", 1, 60)[0] is True
    assert limiter.allow("a", 1, 60)[0] is False
    assert limiter.allow("b", 1, 60)[0] is True


def test_extract_bearer_token_from_header():
    assert extract_bearer_token_from_header("Bearer abc") == "abc"
    assert extract_bearer_token_from_header("bearer   abc ") == "abc"
    assert extract_bearer_token_from_header("Basic abc") is None
    assert extract_bearer_token_from_header("") is None
