# scripts/init_db.py
from sqlalchemy import inspect

from app.db import create_db_and_tables, engine


def main() -> None:
    print("Using engine:", engine.url)

    print("Creating tables...")
    create_db_and_tables()

    insp = inspect(engine)
    print("Tables now in DB:", insp.get_table_names())
    print("Indexes on scheduled_task:", [ix["name"] for ix in insp.get_indexes("scheduled_task")])


if __name__ == "__main__":
    main()
