# app/main.py
import logging

from fastapi import FastAPI

from app.config import settings
from app.db import create_db_and_tables, engine
from app.logging_config import setup_logging
from app.services.dispatcher import build_dispatcher

# Routers
from app.routers.cron import router as cron_router
from app.routers.health import router as health_router
from app.routers.sequences import router as sequences_router
from app.routers.webhooks import router as webhooks_router

log = logging.getLogger("app")

app = FastAPI(title=f"{settings.SITE_NAME} Outreach Scheduler", version="0.1.0")


@app.get("/")
def root():
    return {"ok": True, "msg": "root alive"}


# ---------- Routers ----------
app.include_router(health_router)
app.include_router(cron_router)
app.include_router(sequences_router)
app.include_router(webhooks_router)


# ---------- Startup ----------
@app.on_event("startup")
def on_startup():
    setup_logging()
    create_db_and_tables()
    if getattr(app.state, "dispatcher", None) is None:
        app.state.dispatcher = build_dispatcher(settings, engine)
    if not settings.CRON_SECRET:
        log.warning("CRON_SECRET is not set; /api/cron and /api/sequences will reject every request")
    log.info("Startup complete (env=%s)", settings.ENV)
