import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        # One shared connection keeps in-memory databases alive across sessions.
        options = {"connect_args": {"check_same_thread": False}, "future": True}
        if ":memory:" in url or url in ("sqlite://", "sqlite+pysqlite://"):
            options["poolclass"] = StaticPool
        return options
    return {"pool_pre_ping": True, "future": True}


RENTAL_DB_URL = _require_env("RENTAL_DB_URL")

engine = create_engine(RENTAL_DB_URL, **_engine_options(RENTAL_DB_URL))

SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    future=True,
)
