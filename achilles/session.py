"""Database sessions: connectors for SQLAlchemy engines and Spark.

A *connector* knows how to open sessions against one database; a *session*
executes translated SQL scripts, answers small queries and checks whether
a table exists. ``SessionManager`` hands sessions to workers and owns their
lifetimes.
"""

import itertools
import sqlite3
import statistics
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

from pyspark.sql import SparkSession
from pyspark.sql.utils import AnalysisException
from sqlalchemy import create_engine, event, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, DisconnectionError, SQLAlchemyError

from achilles.errors import DatabaseConnectionError, ExecutionError
from achilles.sqlrender import SPARK, SQL_SERVER, SQLITE, normalize_dialect, split_statements
from achilles.utils import split_qualified

_session_ids = itertools.count(1)


class Session(ABC):
    """One open database session."""

    def __init__(self, dialect: str):
        self.dialect = dialect
        self.session_id = f"session-{next(_session_ids)}"
        self.closed = False
        self.listeners: List[Callable[[str, str], None]] = []

    def execute(self, sql: str) -> None:
        """Run every statement of a translated script, in order."""
        for stmt in split_statements(sql):
            self._notify(stmt)
            self._execute_one(stmt)

    def query(self, sql: str) -> List[dict]:
        """Run a single SELECT and return its rows as dicts."""
        statements = split_statements(sql)
        if len(statements) != 1:
            raise ExecutionError(f"Expected one statement, got {len(statements)}", sql=sql)
        self._notify(statements[0])
        return self._query_one(statements[0])

    def _notify(self, stmt: str) -> None:
        if self.closed:
            raise DatabaseConnectionError(f"{self.session_id} is closed")
        for listener in self.listeners:
            listener(self.session_id, stmt)

    @abstractmethod
    def _execute_one(self, stmt: str) -> None:
        ...

    @abstractmethod
    def _query_one(self, stmt: str) -> List[dict]:
        ...

    @abstractmethod
    def table_exists(self, name: str) -> bool:
        ...

    @abstractmethod
    def close(self) -> None:
        ...


class Connector(ABC):
    """Opens sessions against one database in one dialect."""

    dialect: str

    @abstractmethod
    def connect(self) -> Session:
        ...

    def dispose(self) -> None:
        """Release connector-wide resources; sessions must already be closed."""


# ---------------------------------------------------------------------------
# SQLAlchemy
# ---------------------------------------------------------------------------


class _Stdev:
    """Sample standard deviation aggregate for SQLite (SQL Server ``STDEV``)."""

    def __init__(self):
        self.values: List[float] = []

    def step(self, value):
        if value is not None:
            self.values.append(float(value))

    def finalize(self):
        if len(self.values) < 2:
            return None
        return statistics.stdev(self.values)


def _register_sqlite_functions(dbapi_connection, connection_record):
    if isinstance(dbapi_connection, sqlite3.Connection):
        dbapi_connection.create_aggregate("stdev", 1, _Stdev)


_DIALECT_BY_DRIVER = {
    "sqlite": SQLITE,
    "postgresql": "postgresql",
    "mssql": SQL_SERVER,
}


class SqlAlchemySession(Session):
    def __init__(self, engine: Engine, dialect: str):
        super().__init__(dialect)
        try:
            conn = engine.connect()
        except SQLAlchemyError as exc:
            raise DatabaseConnectionError(f"Could not connect: {exc}") from exc
        # no_parameters keeps '%' and ':' in literals away from the driver's paramstyle
        self._conn = conn.execution_options(no_parameters=True)

    def _wrap(self, exc: SQLAlchemyError, stmt: str) -> Exception:
        if isinstance(exc, DisconnectionError) or (
            isinstance(exc, DBAPIError) and exc.connection_invalidated
        ):
            return DatabaseConnectionError(f"{self.session_id} lost its connection: {exc}")
        return ExecutionError(str(getattr(exc, "orig", None) or exc), sql=stmt)

    def _execute_one(self, stmt: str) -> None:
        try:
            self._conn.exec_driver_sql(stmt)
            self._conn.commit()
        except SQLAlchemyError as exc:
            self._conn.rollback()
            raise self._wrap(exc, stmt) from exc

    def _query_one(self, stmt: str) -> List[dict]:
        try:
            result = self._conn.exec_driver_sql(stmt)
            rows = [dict(row._mapping) for row in result]
            self._conn.commit()
        except SQLAlchemyError as exc:
            self._conn.rollback()
            raise self._wrap(exc, stmt) from exc
        return rows

    def table_exists(self, name: str) -> bool:
        if self.dialect != SQL_SERVER:
            name = name.lstrip("#")
        schema, table = split_qualified(name)
        try:
            return inspect(self._conn).has_table(table, schema=schema)
        except SQLAlchemyError as exc:
            raise self._wrap(exc, f"-- has_table {name}") from exc

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._conn.close()


class SqlAlchemyConnector(Connector):
    """Sessions on a SQLAlchemy engine, one pooled connection per session.

    SQLite engines get ``check_same_thread=False`` so sessions can move
    between worker threads, and a ``stdev`` aggregate.
    """

    def __init__(
        self,
        url_or_engine: Union[str, Engine],
        dialect: Optional[str] = None,
        **engine_kwargs,
    ):
        if isinstance(url_or_engine, Engine):
            self.engine = url_or_engine
        else:
            url = str(url_or_engine)
            if url.startswith("sqlite"):
                engine_kwargs.setdefault(
                    "connect_args", {"check_same_thread": False, "timeout": 30}
                )
            self.engine = create_engine(url, **engine_kwargs)
        if self.engine.dialect.name == "sqlite":
            event.listen(self.engine, "connect", _register_sqlite_functions)
        driver = self.engine.dialect.name
        self.dialect = normalize_dialect(dialect or _DIALECT_BY_DRIVER.get(driver, driver))

    def connect(self) -> Session:
        return SqlAlchemySession(self.engine, self.dialect)

    def dispose(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Spark
# ---------------------------------------------------------------------------


class SparkSqlSession(Session):
    """A child Spark session: shares the catalog, owns its temp views."""

    def __init__(self, spark: SparkSession):
        super().__init__(SPARK)
        self._spark = spark.newSession()

    def _execute_one(self, stmt: str) -> None:
        try:
            self._spark.sql(stmt)
        except AnalysisException as exc:
            raise ExecutionError(str(exc), sql=stmt) from exc

    def _query_one(self, stmt: str) -> List[dict]:
        try:
            return [row.asDict() for row in self._spark.sql(stmt).collect()]
        except AnalysisException as exc:
            raise ExecutionError(str(exc), sql=stmt) from exc

    def table_exists(self, name: str) -> bool:
        return self._spark.catalog.tableExists(name.lstrip("#"))

    def close(self) -> None:
        self.closed = True


class SparkConnector(Connector):
    dialect = SPARK

    def __init__(self, spark: Optional[SparkSession] = None):
        if spark is None:
            spark = SparkSession.getActiveSession() or SparkSession.builder.getOrCreate()
        self.spark = spark

    def connect(self) -> Session:
        return SparkSqlSession(self.spark)


# ---------------------------------------------------------------------------
# SQL-only capture
# ---------------------------------------------------------------------------


class CaptureSession(Session):
    """Records statements instead of running them; every table "exists"."""

    def __init__(self, dialect: str, sink: "SqlFileSink"):
        super().__init__(dialect)
        self._sink = sink

    def _execute_one(self, stmt: str) -> None:
        self._sink.record(stmt)

    def _query_one(self, stmt: str) -> List[dict]:
        self._sink.record(stmt)
        return []

    def table_exists(self, name: str) -> bool:
        return True

    def close(self) -> None:
        self.closed = True


class SqlFileSink(Connector):
    """Connector for ``sql_only`` runs: collects the SQL into named files."""

    def __init__(self, dialect: str, output_folder: Union[str, Path], cdm_version: str = "5"):
        self.dialect = normalize_dialect(dialect)
        self.folder = Path(output_folder) / f"v{cdm_version}"
        self._lock = threading.Lock()
        self._current = "achilles.sql"
        self._files: Dict[str, List[str]] = {}

    def connect(self) -> Session:
        return CaptureSession(self.dialect, self)

    def switch(self, file_name: str) -> None:
        """Direct subsequent statements to *file_name*."""
        with self._lock:
            self._current = file_name
            self._files.setdefault(file_name, [])

    def record(self, stmt: str) -> None:
        with self._lock:
            self._files.setdefault(self._current, []).append(stmt)

    def statements(self, file_name: str) -> List[str]:
        return list(self._files.get(file_name, []))

    def write(self) -> List[Path]:
        """Write every collected file and return their paths."""
        self.folder.mkdir(parents=True, exist_ok=True)
        paths = []
        for name, stmts in self._files.items():
            path = self.folder / name
            path.write_text("".join(f"{s};\n" for s in stmts), encoding="utf-8")
            paths.append(path)
        return paths


# ---------------------------------------------------------------------------
# Session manager
# ---------------------------------------------------------------------------


class SessionManager:
    """Issues sessions from one connector and closes them all at the end."""

    def __init__(
        self,
        connector: Connector,
        listeners: Optional[List[Callable[[str, str], None]]] = None,
    ):
        self.connector = connector
        self.dialect = connector.dialect
        self.listeners = list(listeners or [])
        self._open: Dict[str, Session] = {}
        self._lock = threading.Lock()

    def acquire(self) -> Session:
        session = self.connector.connect()
        session.listeners.extend(self.listeners)
        with self._lock:
            self._open[session.session_id] = session
        return session

    def acquire_with_retry(self, attempts: int = 3, delay: float = 0.5) -> Session:
        """Acquire a session, retrying connection failures a bounded number of times."""
        last_exc: Optional[Exception] = None
        for attempt in range(max(1, attempts)):
            try:
                return self.acquire()
            except DatabaseConnectionError as exc:
                last_exc = exc
                if attempt + 1 < attempts:
                    time.sleep(delay * (attempt + 1))
        raise DatabaseConnectionError(
            f"Could not acquire a session after {attempts} attempt(s): {last_exc}"
        )

    def release(self, session: Session) -> None:
        with self._lock:
            self._open.pop(session.session_id, None)
        session.close()

    @property
    def open_sessions(self) -> List[Session]:
        with self._lock:
            return list(self._open.values())

    def close(self) -> None:
        """Close every session still open, then the connector itself."""
        for session in self.open_sessions:
            try:
                self.release(session)
            except Exception as exc:  # noqa: BLE001
                print(f"[ACHILLES] Could not close {session.session_id}: {exc}")
        self.connector.dispose()
