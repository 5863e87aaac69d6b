from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.trustedhost import TrustedHostMiddleware
from datetime import datetime, timezone
import os
import logging

from backend.config import load_config
from backend.routers import admin, survey
from backend.security import RateLimitMiddleware, SecurityHeadersMiddleware, SlidingWindowLimiter
from backend.survey.workbook import WorkbookWriter
from backend.survey.write_queue import DEFAULT_MAX_SIZE, DEFAULT_MAX_WAIT_SECONDS, PersistFn, WriteQueue

logger = logging.getLogger(__name__)

SERVICE_NAME = "Website Exit Survey API - Workbook Integration"


def _trusted_hosts(cfg: dict) -> list[str]:
    defaults = ["127.0.0.1", "localhost", "testserver"]
    security_cfg = cfg.get("security", {}) if isinstance(cfg.get("security"), dict) else {}
    configured = security_cfg.get("trusted_hosts")
    hosts: list[str] = []
    seen: set[str] = set()
    for raw in configured if isinstance(configured, list) else []:
        value = str(raw or "").strip()
        if value and value.lower() not in seen:
            seen.add(value.lower())
            hosts.append(value)
    return hosts or defaults


def build_write_queue(cfg: dict, persist: PersistFn | None = None) -> WriteQueue:
    queue_cfg = cfg.get("queue", {}) if isinstance(cfg.get("queue"), dict) else {}
    if persist is None:
        persist = WorkbookWriter(cfg.get("workbook", {}))
    return WriteQueue(
        persist,
        max_size=int(queue_cfg.get("max_size", DEFAULT_MAX_SIZE)),
        max_wait_seconds=float(queue_cfg.get("max_wait_seconds", DEFAULT_MAX_WAIT_SECONDS)),
    )


def create_app(
    config: dict | None = None,
    persist: PersistFn | None = None,
    workbook_writer: WorkbookWriter | None = None,
) -> FastAPI:
    cfg = config if isinstance(config, dict) else load_config(force_reload=True)

    app = FastAPI(title="Survey Relay API", version="0.1.0")
    app.state.config = cfg
    app.state.workbook_writer = workbook_writer or WorkbookWriter(cfg.get("workbook", {}))
    # One queue per process; everything that writes to the workbook goes through it.
    app.state.write_queue = build_write_queue(cfg, persist or app.state.workbook_writer)

    # ─── Middleware ───────────────────────────────────────────────────────────
    # Last added runs first: rate-limit rejections still get CORS and security headers.
    security_cfg = cfg.get("security", {}) if isinstance(cfg.get("security"), dict) else {}
    app.add_middleware(RateLimitMiddleware, config=cfg, limiter=SlidingWindowLimiter())
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(security_cfg.get("cors_origins") or []),
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "Authorization"],
    )
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=_trusted_hosts(cfg))

    # ─── Routers ──────────────────────────────────────────────────────────────
    app.include_router(survey.router)
    app.include_router(admin.router)

    @app.get("/api/health")
    async def health():
        return {
            "status": "OK",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": SERVICE_NAME,
            "environment": cfg.get("environment", "development"),
        }

    @app.on_event("shutdown")
    async def shutdown_event():
        queue: WriteQueue = app.state.write_queue
        pending = len(queue)
        if pending or queue.is_draining:
            logger.info(f"Waiting for write queue to drain ({pending} pending)")
        await queue.join()

    return app


app = create_app()

# ─── Entry Point ──────────────────────────────────────────────────────────────
if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("SURVEY_RELAY_PORT", 3000))
    uvicorn.run(app, host="127.0.0.1", port=port, log_level="info")
