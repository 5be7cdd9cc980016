import json
from datetime import date, datetime

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import sessionmaker
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from registry_sync.core.config import DB_URL, STORE_CONNECT_ATTEMPTS
from registry_sync.core.errors import StoreUnavailableError


def _json_default(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def _enable_sqlite_savepoints(engine: Engine) -> None:
    # pysqlite defers BEGIN until the first DML statement, which breaks SAVEPOINT.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def make_engine(url: str = DB_URL, **kwargs) -> Engine:
    engine = create_engine(
        url,
        pool_pre_ping=True,
        json_serializer=lambda obj: json.dumps(obj, default=_json_default),
        **kwargs,
    )
    if engine.dialect.name == "sqlite":
        _enable_sqlite_savepoints(engine)
    return engine


def wait_for_store(engine: Engine, attempts: int = STORE_CONNECT_ATTEMPTS) -> None:
    @retry(
        stop=stop_after_attempt(max(attempts, 1)),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
        retry=retry_if_exception_type(OperationalError),
        reraise=True,
    )
    def _ping():
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))

    try:
        _ping()
    except DBAPIError as exc:
        raise StoreUnavailableError(f"Store unreachable: {exc}") from exc


engine = make_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
