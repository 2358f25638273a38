# scripts/run_sweep.py
# Runs one sweep without going through HTTP (local cron, manual catch-up).
import argparse
import json

from sqlmodel import Session

from app.config import settings
from app.db import create_db_and_tables, engine
from app.logging_config import setup_logging
from app.services.dispatcher import build_dispatcher
from app.services.sweep import BatchFetchError, run_sweep


def main() -> int:
    parser = argparse.ArgumentParser(description="Process due scheduled tasks once.")
    parser.add_argument("--limit", type=int, default=settings.TASKS_PER_RUN)
    parser.add_argument("--stats", action="store_true", help="print queue counts after the sweep")
    args = parser.parse_args()

    setup_logging()
    create_db_and_tables()
    dispatcher = build_dispatcher(settings, engine)

    with Session(engine) as session:
        try:
            summary = run_sweep(session, dispatcher, limit=args.limit)
        except BatchFetchError as e:
            print(json.dumps({"error": str(e), **e.summary.as_dict()}, indent=2))
            return 1
        print(json.dumps(summary.as_dict(), indent=2))
        if args.stats:
            print(json.dumps(dispatcher.store(session).stats(), indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
