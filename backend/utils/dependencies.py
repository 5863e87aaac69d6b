from fastapi import HTTPException, Request

from backend.survey.write_queue import WriteQueue


def get_write_queue(request: Request) -> WriteQueue:
    queue = getattr(request.app.state, "write_queue", None)
    if not isinstance(queue, WriteQueue):
        raise HTTPException(status_code=503, detail="Write queue is not running")
    return queue
