# =============================================
# File: app/db/repo.py
# Purpose: DB repository bootstrap: build the audit engine from DB_URL (default SQLite) and create tables.
# =============================================

from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine
import os

from . import models  # noqa: F401  (registers tables on SQLModel.metadata)


def make_engine(url: str | None = None) -> Engine:
    url = url or os.getenv("DB_URL", "sqlite:///./askdb.db")
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, echo=False, connect_args=connect_args)


def init_db(engine: Engine) -> None:
    SQLModel.metadata.create_all(engine)
