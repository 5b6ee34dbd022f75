import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def _engine_options(db_url: str) -> dict:
    options = {"pool_pre_ping": True, "future": True}
    if db_url.startswith("sqlite"):
        options["connect_args"] = {"check_same_thread": False}
        if ":memory:" in db_url or db_url in {"sqlite://", "sqlite+pysqlite://"}:
            # One shared connection, otherwise every session sees its own empty database.
            options["poolclass"] = StaticPool
    return options


def build_engine(db_url: str):
    return create_engine(db_url, **_engine_options(db_url))


def build_session_factory(engine):
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


RENTAL_STOCK_DB_URL = _require_env("RENTAL_STOCK_DB_URL")

engine_stock = build_engine(RENTAL_STOCK_DB_URL)

SessionLocalStock = build_session_factory(engine_stock)
