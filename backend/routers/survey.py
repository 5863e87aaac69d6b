import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from backend.survey.intake import SurveyValidationError, accept_submission
from backend.survey.write_queue import QueueFull, WriteQueue
from backend.utils.dependencies import get_write_queue

router = APIRouter(prefix="/api", tags=["survey"])
logger = logging.getLogger(__name__)


def _internal_error(message: str, exc: Exception | None = None) -> HTTPException:
    if exc is not None:
        logger.exception(message)
    return HTTPException(status_code=500, detail=message)


async def _json_body(request: Request):
    # The widget adds fields over time; the body is passed through as sent and
    # only checked by normalize_submission.
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=400, detail="Invalid JSON body")


@router.post("/survey")
async def submit_survey(request: Request, queue: WriteQueue = Depends(get_write_queue)):
    payload = await _json_body(request)
    try:
        return accept_submission(queue, payload)
    except SurveyValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except QueueFull as e:
        raise HTTPException(status_code=503, detail=str(e), headers={"Retry-After": "30"})
    except Exception as e:
        raise _internal_error("Internal server error", e)
