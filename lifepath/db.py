# lifepath/db.py
from __future__ import annotations
import os

from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker

# ──────────────────────────────────────────────────────────────────────────────
# DATABASE URL
# ──────────────────────────────────────────────────────────────────────────────

# Prefer env var; fall back to config.py if present; else default local PG.
DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    try:
        from .config import settings  # optional fallback
        DATABASE_URL = getattr(settings, "DATABASE_URL", None)
    except Exception:
        DATABASE_URL = None
if not DATABASE_URL:
    # final fallback: local Postgres without credentials (override via .env)
    DATABASE_URL = "postgresql+psycopg2://localhost/lifepath"

# ──────────────────────────────────────────────────────────────────────────────
# SQLAlchemy engine/session
# ──────────────────────────────────────────────────────────────────────────────
_connect_args = {}
if DATABASE_URL.startswith("sqlite"):
    # scheduler jobs run on worker threads
    _connect_args = {"check_same_thread": False}

engine = create_engine(DATABASE_URL, pool_pre_ping=True, future=True, connect_args=_connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# ──────────────────────────────────────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────────────────────────────────────
def _is_postgres() -> bool:
    try:
        return engine.url.get_backend_name().startswith("postgres")
    except Exception:
        return False

def _table_exists(conn, table_name: str) -> bool:
    """
    Works on Postgres and SQLite. Uses information_schema for PG and sqlite_master for SQLite.
    """
    try:
        if _is_postgres():
            res = conn.execute(text("""
                SELECT EXISTS (
                    SELECT FROM information_schema.tables
                    WHERE table_schema = 'public' AND table_name = :t
                )
            """), {"t": table_name}).scalar()
            return bool(res)
        else:
            res = conn.execute(text("""
                SELECT 1 FROM sqlite_master WHERE type='table' AND name=:t
            """), {"t": table_name}).first()
            return bool(res)
    except Exception:
        return False

def ping() -> bool:
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        print(f"[db] WARN: ping failed: {e}")
        return False

def init_db(reset: bool = False) -> None:
    """
    One-shot initializer to call at startup: optionally drop, then create tables.
    The partial unique index on completed generations is part of the model metadata.
    """
    # Import here to avoid circular import at module import time
    from .models import Base

    if reset:
        Base.metadata.drop_all(bind=engine)
        print("[db] schema dropped (reset requested)")

    Base.metadata.create_all(bind=engine)

    with engine.connect() as conn:
        if not _table_exists(conn, "daily_routine_generations"):
            print("[db] WARN: daily_routine_generations missing after create_all")
