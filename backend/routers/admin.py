import logging

import httpx
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from backend.config import is_production
from backend.security import debug_access_guard
from backend.survey.workbook import WorkbookError, WorkbookWriter
from backend.survey.write_queue import WriteQueue
from backend.utils.dependencies import get_write_queue

router = APIRouter(prefix="/api", tags=["admin"])
logger = logging.getLogger(__name__)


@router.get("/queue-status")
async def get_queue_status(queue: WriteQueue = Depends(get_write_queue)):
    """Point-in-time queue health for external monitoring. Always available."""
    return queue.snapshot()


@router.get("/debug-config", dependencies=[Depends(debug_access_guard)])
async def get_debug_config(request: Request):
    cfg = request.app.state.config
    workbook = cfg.get("workbook", {}) if isinstance(cfg.get("workbook"), dict) else {}
    queue_cfg = cfg.get("queue", {}) if isinstance(cfg.get("queue"), dict) else {}
    client_id = str(workbook.get("client_id") or "")
    return {
        "environment": cfg.get("environment"),
        "production": is_production(cfg),
        "has_client_id": bool(client_id),
        "client_id_start": f"{client_id[:8]}..." if client_id else "",
        "has_access_token": bool(workbook.get("access_token")),
        "site_hostname": workbook.get("site_hostname") or "",
        "site_path": workbook.get("site_path") or "",
        "file_path": workbook.get("file_path") or "",
        "worksheet_name": workbook.get("worksheet_name") or "",
        "table_name": workbook.get("table_name") or "",
        "queue_max_size": queue_cfg.get("max_size"),
        "queue_max_wait_seconds": queue_cfg.get("max_wait_seconds"),
    }


def _workbook_failure(error: str, exc: Exception) -> JSONResponse:
    logger.error(f"{error}: {exc}")
    return JSONResponse(status_code=500, content={"success": False, "error": error, "message": str(exc)})


def _drive_not_found(exc: WorkbookError, *, with_drives: bool) -> JSONResponse:
    content = {"success": False, "error": str(exc)}
    if with_drives:
        content["available_drives"] = exc.available_drives or []
    return JSONResponse(status_code=404, content=content)


@router.get("/debug-excel", dependencies=[Depends(debug_access_guard)])
async def get_debug_excel(request: Request):
    """Check that the configured site, document drive and workbook file can be reached."""
    writer: WorkbookWriter = request.app.state.workbook_writer
    try:
        found = await writer.locate()
    except WorkbookError as e:
        if e.available_drives is not None:
            return _drive_not_found(e, with_drives=True)
        return _workbook_failure("Excel file access failed", e)
    except httpx.HTTPError as e:
        return _workbook_failure("Excel file access failed", e)

    site, drive, file_info = found["site"], found["drive"], found["file"]
    return {
        "success": True,
        "message": "Excel file found",
        "site": {"id": site.get("id"), "name": site.get("displayName")},
        "drive": {"id": drive.get("id"), "name": drive.get("name")},
        "file": {"id": file_info.get("id"), "name": file_info.get("name"), "webUrl": file_info.get("webUrl")},
    }


@router.get("/debug-workbook", dependencies=[Depends(debug_access_guard)])
async def get_debug_workbook(request: Request):
    """Open a throwaway workbook session, list the worksheet tables and close it."""
    writer: WorkbookWriter = request.app.state.workbook_writer
    try:
        found = await writer.check_session()
    except WorkbookError as e:
        if e.available_drives is not None:
            return _drive_not_found(e, with_drives=False)
        return _workbook_failure("Workbook test failed", e)
    except httpx.HTTPError as e:
        return _workbook_failure("Workbook test failed", e)

    return {
        "success": True,
        "message": "Workbook session opened and closed",
        "site": {"id": found["site"].get("id"), "name": found["site"].get("displayName")},
        "drive": {"id": found["drive"].get("id"), "name": found["drive"].get("name")},
        "file": {"id": found["file"].get("id"), "name": found["file"].get("name")},
        "session_id": found["session_id"],
        "worksheet": writer.worksheet_name,
        "tables": found["tables"],
    }
