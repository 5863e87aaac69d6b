from __future__ import annotations

import hmac
import ipaddress
import threading
import time
from collections import defaultdict, deque

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse

from backend.config import is_production, load_config

RATE_LIMITED_PREFIXES = ("/api/survey",)


def constant_time_equal(left: str, right: str) -> bool:
    if not isinstance(left, str) or not isinstance(right, str):
        return False
    return hmac.compare_digest(left, right)


def extract_bearer_token_from_header(auth_header: str) -> str | None:
    raw = str(auth_header or "").strip()
    if not raw:
        return None
    parts = raw.split(None, 1)
    if len(parts) != 2:
        return None
    if parts[0].strip().lower() != "bearer":
        return None
    token = parts[1].strip()
    return token or None


def extract_bearer_token(request: Request) -> str | None:
    return extract_bearer_token_from_header(request.headers.get("Authorization", ""))


def _app_config(request: Request) -> dict:
    cfg = getattr(request.app.state, "config", None)
    return cfg if isinstance(cfg, dict) else load_config()


def debug_access_guard(request: Request) -> None:
    """
    Debug endpoints are open outside production. In production they answer 404 unless
    explicitly enabled, and require the debug password as a Bearer token when one is set.
    """
    cfg = _app_config(request)
    if not is_production(cfg):
        return
    sec = cfg.get("security", {}) if isinstance(cfg.get("security"), dict) else {}
    if not bool(sec.get("debug_endpoints_enabled", False)):
        raise HTTPException(status_code=404, detail="Endpoint not found")

    password = str(sec.get("debug_password") or "")
    if password:
        token = extract_bearer_token(request) or ""
        if not constant_time_equal(token, password):
            raise HTTPException(status_code=401, detail="Unauthorized")


class SlidingWindowLimiter:
    def __init__(self):
        self._lock = threading.Lock()
        self._hits: dict[str, deque[float]] = defaultdict(deque)

    def allow(self, key: str, limit: int, window_seconds: int) -> tuple[bool, int, int]:
        now = time.monotonic()
        cutoff = now - float(window_seconds)
        with self._lock:
            q = self._hits[key]
            while q and q[0] <= cutoff:
                q.popleft()
            if len(q) >= int(limit):
                retry_after = max(1, int(window_seconds - (now - q[0])))
                return False, retry_after, len(q)
            q.append(now)
            remaining = max(0, int(limit) - len(q))
            return True, 0, remaining


_RATE_LIMITER = SlidingWindowLimiter()


def _extract_forwarded_for_ip(header_value: str) -> str:
    first = str(header_value or "").split(",")[0].strip()
    if not first:
        return ""
    try:
        ipaddress.ip_address(first)
    except ValueError:
        return ""
    return first


def _client_id_for_rate_limit(request: Request, trusted_proxies: set[str]) -> str:
    """
    X-Forwarded-For is only trusted when the direct peer is a configured proxy
    (security.trusted_proxy_ips); otherwise the TCP peer address is used.
    """
    direct_ip = str(request.client.host) if request.client else None
    if direct_ip and direct_ip in trusted_proxies:
        xff = _extract_forwarded_for_ip(request.headers.get("X-Forwarded-For", ""))
        if xff:
            return xff
    return direct_ip or "unknown"


class RateLimitMiddleware:
    def __init__(self, app, config: dict | None = None, limiter: SlidingWindowLimiter | None = None):
        self.app = app
        self.config = config
        self.limiter = limiter or _RATE_LIMITER

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            return await self.app(scope, receive, send)

        request = Request(scope, receive)
        if request.method.upper() == "OPTIONS" or not request.url.path.startswith(RATE_LIMITED_PREFIXES):
            return await self.app(scope, receive, send)

        cfg = self.config if isinstance(self.config, dict) else load_config()
        sec = cfg.get("security", {}) if isinstance(cfg.get("security"), dict) else {}
        rate_cfg = sec.get("rate_limit", {}) if isinstance(sec.get("rate_limit"), dict) else {}
        if not bool(rate_cfg.get("enabled", True)):
            return await self.app(scope, receive, send)

        limit = int(rate_cfg.get("max_requests", 0) or 0)
        if limit <= 0:
            return await self.app(scope, receive, send)
        window_seconds = int(rate_cfg.get("window_seconds", 900) or 900)
        trusted = set(sec.get("trusted_proxy_ips", []) or [])
        key = _client_id_for_rate_limit(request, trusted)
        allowed, retry_after, remaining = self.limiter.allow(key, limit, window_seconds)
        if not allowed:
            response = JSONResponse(
                status_code=429,
                content={"detail": "Too many requests from this IP, please try again later."},
                headers={"Retry-After": str(retry_after)},
            )
            return await response(scope, receive, send)

        async def send_wrapper(message):
            if message["type"] == "http.response.start":
                headers = message.setdefault("headers", [])
                headers.append((b"x-ratelimit-limit", str(limit).encode("latin1")))
                headers.append((b"x-ratelimit-remaining", str(remaining).encode("latin1")))
            await send(message)

        return await self.app(scope, receive, send_wrapper)


class SecurityHeadersMiddleware:
    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            return await self.app(scope, receive, send)

        async def send_wrapper(message):
            if message["type"] == "http.response.start":
                headers = message.setdefault("headers", [])
                headers.append((b"x-content-type-options", b"nosniff"))
                headers.append((b"x-frame-options", b"deny"))
                headers.append((b"referrer-policy", b"no-referrer"))
                headers.append((b"cross-origin-resource-policy", b"same-origin"))
            await send(message)

        return await self.app(scope, receive, send_wrapper)
