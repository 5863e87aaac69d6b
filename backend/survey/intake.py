import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

from backend.survey.write_queue import WriteQueue

logger = logging.getLogger(__name__)


class SurveyValidationError(ValueError):
    pass


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_submission(raw: Any) -> dict:
    """Minimal shape check; the record is otherwise passed through untouched."""
    if not isinstance(raw, dict):
        raise SurveyValidationError("Survey payload must be a JSON object")

    path = str(raw.get("path") or "").strip()
    page_url = str(raw.get("page_url") or "").strip()
    if not path and not page_url:
        raise SurveyValidationError("Page URL or path is required")

    record = dict(raw)
    if not record.get("timestamp"):
        record["timestamp"] = _utc_now_iso()
    return record


def _log_outcome(record: dict, future: asyncio.Future) -> None:
    if future.cancelled():
        logger.warning(f"Queued survey write cancelled (survey={record.get('surveyId')})")
        return
    error = future.exception()
    if error is not None:
        logger.error(
            f"Queued survey write failed (survey={record.get('surveyId')}, "
            f"stage={record.get('submissionStage')}): {error}"
        )


def accept_submission(queue: WriteQueue, raw: Any) -> dict:
    """
    Validate and queue one survey record without waiting for it to be persisted.
    Raises SurveyValidationError or QueueFull; persistence failures only reach the logs
    and the queue stats.
    """
    record = normalize_submission(raw)
    future = queue.submit(record)
    future.add_done_callback(lambda f: _log_outcome(record, f))

    logger.info(
        f"Survey queued: survey={record.get('surveyId')} "
        f"stage={record.get('submissionStage')} trigger={record.get('trigger')}"
    )
    return {
        "success": True,
        "message": "Survey data received and queued for processing",
        "timestamp": record["timestamp"],
        "queue_position": len(queue),
    }
