# app/db/session.py
from typing import Any, Dict

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from app.core.config import settings


def engine_kwargs(db_uri: str) -> Dict[str, Any]:
    """
    Pool settings for server databases; sqlite gets its default pool.
    """
    if db_uri.startswith("sqlite"):
        return {"future": True, "connect_args": {"check_same_thread": False}}
    return {
        "pool_pre_ping": True,
        "pool_recycle": 280,
        "pool_size": 10,
        "max_overflow": 20,
        "future": True,
    }


def enable_sqlite_savepoints(engine: Engine) -> None:
    """
    pysqlite opens transactions lazily, which breaks SAVEPOINT.
    Let SQLAlchemy emit BEGIN itself instead.
    """

    @event.listens_for(engine, "connect")
    def _no_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")


def make_engine(db_uri: str) -> Engine:
    eng = create_engine(db_uri, **engine_kwargs(db_uri))
    if db_uri.startswith("sqlite"):
        enable_sqlite_savepoints(eng)
    return eng


engine: Engine = make_engine(settings.SQLALCHEMY_DATABASE_URI)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    future=True,
)
