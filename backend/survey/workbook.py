from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import quote

import httpx

logger = logging.getLogger(__name__)

SURVEY_COLUMNS = [
    "Timestamp", "Survey ID", "Submission Stage", "Trigger", "Page Path",
    "Rating Selected", "Rating Label", "Stars", "Audience", "Heard Where",
    "Intent", "Age Group", "Gender", "Ethnicity", "Barriers",
    "Comments", "User Agent", "Is Resubmission", "Resubmission Count", "Exited Early",
    "User Fingerprint", "Session ID",
]

TokenProvider = Callable[[], Awaitable[str]]


class WorkbookError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        endpoint: str = "",
        available_drives: list[dict] | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.endpoint = endpoint
        self.available_drives = available_drives


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def format_timestamp(value: Any) -> str:
    """UTC "YYYY-MM-DD HH:MM:SS", which the spreadsheet reads as a date/time cell."""
    parsed = _parse_timestamp(value) or datetime.now(timezone.utc)
    return parsed.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def _text(payload: dict, *keys: str) -> Any:
    for key in keys:
        value = payload.get(key)
        if value not in (None, ""):
            return value
    return ""


def survey_row(payload: dict) -> list:
    barriers = payload.get("barriers")
    if isinstance(barriers, (list, tuple)):
        barriers = ", ".join(str(b) for b in barriers)
    return [
        format_timestamp(payload.get("timestamp")),
        _text(payload, "surveyId"),
        _text(payload, "submissionStage"),
        _text(payload, "trigger"),
        _text(payload, "path", "page_url"),
        _text(payload, "selected"),
        _text(payload, "label"),
        _text(payload, "stars"),
        _text(payload, "audience"),
        _text(payload, "heardWhere"),
        _text(payload, "intent"),
        _text(payload, "ageGroup"),
        _text(payload, "gender"),
        _text(payload, "ethnicity"),
        barriers or "",
        _text(payload, "comments"),
        _text(payload, "ua", "user_agent"),
        bool(payload.get("resubmission") or False),
        int(payload.get("resubmissionCount") or 0),
        bool(payload.get("exited") or False),
        _text(payload, "userFingerprint"),
        _text(payload, "sessionId"),
    ]


class WorkbookWriter:
    """
    Appends one survey row to the hosted workbook table.

    Each call runs the full sequence inside its own workbook session:
    site -> drive -> file -> createSession -> add row -> closeSession.
    Sessions are not safe for concurrent use, so calls must be serialized by the caller
    (see backend.survey.write_queue). No retries happen here.
    """

    def __init__(
        self,
        config: dict,
        *,
        token_provider: TokenProvider | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        cfg = config if isinstance(config, dict) else {}
        self.base_url = str(cfg.get("graph_base_url") or "https://graph.microsoft.com/v1.0").rstrip("/")
        self.site_hostname = str(cfg.get("site_hostname") or "").strip()
        self.site_path = "/" + str(cfg.get("site_path") or "").strip().strip("/")
        self.drive_name = str(cfg.get("drive_name") or "Documents")
        self.file_path = "/" + str(cfg.get("file_path") or "").strip().lstrip("/")
        self.worksheet_name = str(cfg.get("worksheet_name") or "Sheet1")
        self.table_name = str(cfg.get("table_name") or "Table1")
        self.timeout = max(1, int(cfg.get("request_timeout_seconds") or 20))
        self._static_token = str(cfg.get("access_token") or "")
        self._token_provider = token_provider or self._configured_token
        self._transport = transport

    async def _configured_token(self) -> str:
        if not self._static_token:
            raise WorkbookError("No workbook access token configured")
        return self._static_token

    async def _call(
        self,
        client: httpx.AsyncClient,
        endpoint: str,
        method: str = "GET",
        data: dict | None = None,
        headers: dict | None = None,
    ) -> dict:
        token = await self._token_provider()
        request_headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            **(headers or {}),
        }
        res = await client.request(
            method,
            f"{self.base_url}{endpoint}",
            json=data if method in {"POST", "PATCH"} else None,
            headers=request_headers,
        )
        if res.status_code >= 400:
            detail = res.text[:300] if res.content else ""
            raise WorkbookError(
                f"{method} {endpoint} failed ({res.status_code}) {detail}".strip(),
                status_code=res.status_code,
                endpoint=endpoint,
            )
        return res.json() if res.content else {}

    def _pick_drive(self, drives: dict) -> dict:
        candidates = [d for d in drives.get("value", []) or [] if isinstance(d, dict)]
        for drive in candidates:
            if drive.get("name") == self.drive_name or "Shared%20Documents" in str(drive.get("webUrl") or ""):
                return drive
        raise WorkbookError(
            f"{self.drive_name} drive not found",
            status_code=404,
            available_drives=[{"name": d.get("name"), "webUrl": d.get("webUrl")} for d in candidates],
        )

    async def resolve(self, client: httpx.AsyncClient) -> dict:
        """Look up the site, document drive and workbook file; returns their Graph items."""
        if not self.site_hostname:
            raise WorkbookError("Workbook site hostname is not configured")
        site = await self._call(client, f"/sites/{self.site_hostname}:{self.site_path}")
        drives = await self._call(client, f"/sites/{site['id']}/drives")
        drive = self._pick_drive(drives)
        file_info = await self._call(client, f"/drives/{drive['id']}/root:{quote(self.file_path)}")
        return {"site": site, "drive": drive, "file": file_info}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def locate(self) -> dict:
        async with self._client() as client:
            return await self.resolve(client)

    async def check_session(self) -> dict:
        """
        Open a non-persisting workbook session, list the worksheet's tables and close it again.
        Nothing is written to the file.
        """
        async with self._client() as client:
            found = await self.resolve(client)
            item = f"/drives/{found['drive']['id']}/items/{found['file']['id']}/workbook"
            session = await self._call(client, f"{item}/createSession", "POST", {"persistChanges": False})
            session_headers = {"workbook-session-id": str(session.get("id") or "")}
            try:
                tables = await self._call(
                    client, f"{item}/worksheets('{self.worksheet_name}')/tables", headers=session_headers
                )
            finally:
                try:
                    await self._call(client, f"{item}/closeSession", "POST", {}, session_headers)
                except (WorkbookError, httpx.HTTPError) as e:
                    logger.warning(f"Failed to close workbook session: {e}")
        found["session_id"] = session_headers["workbook-session-id"]
        found["tables"] = [
            {"id": t.get("id"), "name": t.get("name"), "address": t.get("address")}
            for t in tables.get("value", []) or []
            if isinstance(t, dict)
        ]
        return found

    async def __call__(self, payload: dict) -> None:
        async with self._client() as client:
            found = await self.resolve(client)
            item = f"/drives/{found['drive']['id']}/items/{found['file']['id']}/workbook"
            session = await self._call(client, f"{item}/createSession", "POST", {"persistChanges": True})
            session_headers = {"workbook-session-id": str(session.get("id") or "")}
            try:
                await self._call(
                    client,
                    f"{item}/worksheets('{self.worksheet_name}')/tables('{self.table_name}')/rows",
                    "POST",
                    {"values": [survey_row(payload)]},
                    session_headers,
                )
            finally:
                try:
                    await self._call(client, f"{item}/closeSession", "POST", {}, session_headers)
                except (WorkbookError, httpx.HTTPError) as e:
                    logger.warning(f"Failed to close workbook session: {e}")

        logger.info(f"Survey row written (survey={payload.get('surveyId')})")
