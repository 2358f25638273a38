# app/routers/cron.py
import logging

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from sqlmodel import Session

from app.db import get_session
from app.deps import get_dispatcher, require_cron_secret
from app.services.dispatcher import Dispatcher
from app.services.sweep import BatchFetchError, run_sweep

log = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cron", tags=["cron"], dependencies=[Depends(require_cron_secret)])


@router.api_route("/process-tasks", methods=["GET", "POST"])
def process_tasks(
    limit: int | None = Query(None, ge=1, le=200),
    session: Session = Depends(get_session),
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    try:
        summary = run_sweep(session, dispatcher, limit=limit)
    except BatchFetchError as e:
        body = e.summary.as_dict()
        body["error"] = str(e)
        return JSONResponse(body, status_code=500)
    return summary.as_dict()


@router.get("/task-stats")
def task_stats(
    session: Session = Depends(get_session),
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    counts = dispatcher.store(session).stats()
    return {"stats": counts, "total": sum(counts.values())}
