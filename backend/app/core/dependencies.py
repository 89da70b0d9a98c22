from __future__ import annotations

from collections.abc import Generator
from typing import TYPE_CHECKING

from fastapi import Request
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import get_settings

if TYPE_CHECKING:
    from app.core.runtime import VoucherRuntime


def build_engine(database_url: str, **kwargs) -> Engine:
    connect_args: dict[str, object] = dict(kwargs.pop("connect_args", {}) or {})
    is_sqlite = database_url.startswith("sqlite")

    if is_sqlite:
        # FastAPI may run sync DB work in a threadpool, so the connection must be usable across threads.
        connect_args.setdefault("check_same_thread", False)
        connect_args.setdefault("timeout", 30)
    else:
        kwargs.setdefault("pool_pre_ping", True)

    engine = create_engine(database_url, connect_args=connect_args, **kwargs)

    if is_sqlite:
        # pysqlite manages BEGIN on its own and breaks SAVEPOINT; take over transaction control.
        @event.listens_for(engine, "connect")
        def _set_sqlite_pragmas(dbapi_connection, _connection_record) -> None:  # type: ignore[no-untyped-def]
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA busy_timeout=30000")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _sqlite_begin(conn) -> None:  # type: ignore[no-untyped-def]
            conn.exec_driver_sql("BEGIN")

    return engine


settings = get_settings()

engine = build_engine(settings.database_url) if settings.database_url else None

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine) if engine else None


def get_db() -> Generator[Session, None, None]:
    if SessionLocal is None:
        raise RuntimeError("DATABASE_URL is not configured")
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_runtime(request: Request) -> "VoucherRuntime":
    runtime = getattr(request.app.state, "voucher_runtime", None)
    if runtime is None:
        raise RuntimeError("Voucher runtime is not initialised")
    return runtime
