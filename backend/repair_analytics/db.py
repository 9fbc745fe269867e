from __future__ import annotations

import os

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker


def _build_database_url() -> str:
    """Prefer explicit DATABASE_URL; otherwise construct one from DB_* parts."""
    explicit_url = os.getenv("DATABASE_URL")
    if explicit_url:
        return explicit_url

    user = os.getenv("DB_USER")
    password = os.getenv("DB_PASSWORD")
    db_name = os.getenv("DB_NAME", "postgres")
    host = os.getenv("DB_HOST")
    port = os.getenv("DB_PORT", "5432")

    if user and password and host:
        return f"postgresql+psycopg2://{user}:{password}@{host}:{port}/{db_name}"

    return "sqlite:///./repair_analytics.db"


DATABASE_URL = _build_database_url()

connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(DATABASE_URL, connect_args=connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def init_db(bind=None) -> None:
    """Create the analytics tables when they do not exist yet.

    Production schemas are managed by Alembic; this keeps dev and test
    databases usable without running migrations.
    """
    # Importing here avoids circular imports at module load time.
    from . import db_models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
