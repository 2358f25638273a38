# app/db.py
from pathlib import Path

from sqlmodel import SQLModel, create_engine, Session

from app import models  # noqa: F401  ensures tables are registered before create_all()
from app.config import settings

DATABASE_URL = settings.DATABASE_URL

# SQLite needs this connect arg and a real folder
connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
if DATABASE_URL.startswith("sqlite:///data/"):
    Path("data").mkdir(parents=True, exist_ok=True)

engine = create_engine(DATABASE_URL, connect_args=connect_args)


def create_db_and_tables(bind=None) -> None:
    SQLModel.metadata.create_all(bind or engine)


def get_session():
    with Session(engine) as session:
        yield session
