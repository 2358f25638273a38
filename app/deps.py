# app/deps.py
import logging
import secrets
from typing import Optional

from fastapi import Header, HTTPException, Query, Request

from app.config import settings
from app.services.dispatcher import Dispatcher

log = logging.getLogger(__name__)


def _matches(got: Optional[str], expected: Optional[str]) -> bool:
    expected = (expected or "").strip()
    got = (got or "").strip()
    # an unset secret never authorizes anything
    if not expected or not got:
        return False
    return secrets.compare_digest(got.encode(), expected.encode())


def require_cron_secret(
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> None:
    """
    Accepts Authorization: Bearer <token>
    Must match CRON_SECRET.
    """
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing Authorization header")

    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(status_code=401, detail="Invalid Authorization header")

    if not settings.CRON_SECRET:
        log.error("[auth] CRON_SECRET is not set; rejecting trigger request")
    if not _matches(parts[1], settings.CRON_SECRET):
        raise HTTPException(status_code=401, detail="Unauthorized")


def require_webhook_secret(
    x_webhook_secret: Optional[str] = Header(None, alias="X-Webhook-Secret"),
    secret: Optional[str] = Query(None),
) -> None:
    if not _matches(x_webhook_secret or secret, settings.EMAIL_WEBHOOK_SECRET):
        raise HTTPException(status_code=401, detail="Invalid webhook secret")


def get_dispatcher(request: Request) -> Dispatcher:
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        raise HTTPException(status_code=503, detail="Task dispatcher not initialized")
    return dispatcher
