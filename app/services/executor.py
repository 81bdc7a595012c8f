# =============================================
# File: app/services/executor.py
# Purpose: Run generated queries against a named store (SQLAlchemy) with typed errors
# =============================================
from __future__ import annotations

import os
import re
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

from loguru import logger
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy import exc as sa_exc

from app.utils.numeric import is_unsafe_number
from app.utils.timing import timer

from .catalog import StoreConfig, StoreRegistry
from .dialects import get_dialect
from .errors import (
    ExecutionConnectionError,
    ExecutionPermissionError,
    ExecutionSyntaxError,
    ExecutionTimeout,
    QueryPipelineError,
    ValidationError,
)
from .models import ExecutionResult

_READ_KEYWORDS = ("select", "with", "explain")
_COMMENT_RE = re.compile(r"(--[^\n]*\n?)|(/\*.*?\*/)", re.DOTALL)

# Ordered: first match wins. Message checks run before exception-type checks.
_MESSAGE_KINDS: List[Tuple[Tuple[str, ...], type]] = [
    (("permission denied", "access denied", "not authorized", "readonly", "read-only"), ExecutionPermissionError),
    (("timeout", "timed out", "canceling statement", "interrupted"), ExecutionTimeout),
    (("could not connect", "connection refused", "unable to open database", "server closed",
      "can't connect", "network"), ExecutionConnectionError),
    (("syntax error", "no such table", "no such column", "does not exist", "unknown column",
      "ambiguous column", "invalid"), ExecutionSyntaxError),
]


def _get_limits() -> Tuple[float, int]:
    try:
        timeout_s = float(os.getenv("EXEC_TIMEOUT_SECONDS", "30"))
    except ValueError:
        timeout_s = 30.0
    try:
        max_rows = int(os.getenv("EXEC_MAX_ROWS", "1000"))
    except ValueError:
        max_rows = 1000
    return timeout_s, max(1, max_rows)


def _strip_statement(query: str) -> str:
    q = _COMMENT_RE.sub(" ", query or "").strip()
    while q.endswith(";"):
        q = q[:-1].rstrip()
    return q


def ensure_read_only(query: str) -> str:
    """Return the executable statement or raise ExecutionPermissionError."""
    q = _strip_statement(query)
    if not q:
        raise ExecutionSyntaxError("syntax error: empty query")
    if ";" in q:
        raise ExecutionPermissionError("permission denied: multiple statements are not allowed")
    first = q.lstrip("( \t\n").split(None, 1)[0].lower()
    if first not in _READ_KEYWORDS:
        raise ExecutionPermissionError(f"permission denied: {first.upper()} statements are not allowed")
    return q


def map_db_error(err: Exception) -> QueryPipelineError:
    """SQLAlchemy / DBAPI exception -> one typed execution error."""
    if isinstance(err, QueryPipelineError):
        return err
    msg = str(getattr(err, "orig", None) or err)
    low = msg.lower()
    for needles, cls in _MESSAGE_KINDS:
        if any(n in low for n in needles):
            return cls(msg)
    if isinstance(err, (sa_exc.InterfaceError, sa_exc.DisconnectionError, sa_exc.TimeoutError)):
        return ExecutionConnectionError(msg)
    if isinstance(err, sa_exc.OperationalError):
        return ExecutionConnectionError(msg)
    if isinstance(err, sa_exc.DBAPIError):
        return ExecutionSyntaxError(msg)
    return ExecutionConnectionError(msg)


def _type_hint(value: Any) -> str:
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "number"
    if isinstance(value, Decimal):
        return "decimal"
    if isinstance(value, datetime):
        return "datetime"
    if isinstance(value, date):
        return "date"
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "binary"
    if isinstance(value, str):
        return "string"
    return "unknown"


def describe_rows(columns: List[str], rows: List[Dict[str, Any]]) -> Tuple[Dict[str, str], List[str]]:
    """(column -> type hint from the first non-null value, columns holding unsafe numbers)."""
    types: Dict[str, str] = {}
    unsafe: List[str] = []
    for col in columns:
        hint = "null"
        flagged = False
        for row in rows:
            v = row.get(col)
            if v is None:
                continue
            if hint == "null":
                hint = _type_hint(v)
            if not flagged and is_unsafe_number(v):
                flagged = True
            if hint != "null" and flagged:
                break
        types[col] = hint
        if flagged:
            unsafe.append(col)
    return types, unsafe


class QueryExecutor:
    """
    Executes read-only queries through one lazily created engine per store.
    Each call runs on a worker thread so a deadline can be enforced.
    """

    def __init__(
        self,
        registry: StoreRegistry,
        timeout_s: Optional[float] = None,
        max_rows: Optional[int] = None,
        engine_factory: Callable[..., Engine] = create_engine,
        max_workers: int = 4,
    ):
        cfg_timeout, cfg_rows = _get_limits()
        self.registry = registry
        self.timeout_s = timeout_s if timeout_s is not None else cfg_timeout
        self.max_rows = max_rows if max_rows is not None else cfg_rows
        self._engine_factory = engine_factory
        self._engines: Dict[str, Engine] = {}
        self._lock = threading.Lock()
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="askdb-exec")

    def _engine(self, store: StoreConfig) -> Engine:
        with self._lock:
            eng = self._engines.get(store.id)
            if eng is None:
                kwargs: Dict[str, Any] = {"pool_pre_ping": True}
                if store.url.startswith("sqlite"):
                    # connections are opened on pool worker threads
                    kwargs["connect_args"] = {"check_same_thread": False}
                try:
                    eng = self._engine_factory(store.url, **kwargs)
                except Exception as e:
                    raise ExecutionConnectionError(f"connection setup failed for '{store.id}': {e}") from e
                self._engines[store.id] = eng
            return eng

    def _run(self, engine: Engine, statement: str) -> Tuple[List[str], List[Dict[str, Any]], bool]:
        # exec_driver_sql: no bind-parameter parsing of ':' inside literals
        with engine.connect() as conn:
            result = conn.exec_driver_sql(statement)
            if not result.returns_rows:
                return [], [], False
            columns = [str(c) for c in result.keys()]
            fetched = result.fetchmany(self.max_rows + 1)
        truncated = len(fetched) > self.max_rows
        rows = [dict(zip(columns, r)) for r in fetched[: self.max_rows]]
        return columns, rows, truncated

    def execute(self, store_id: str, query: str, question: str = "") -> ExecutionResult:
        store = self.registry.get(store_id)
        if store is None:
            raise ValidationError(f"Unknown database '{store_id}'")
        if not get_dialect(store.dialect).sql:
            raise ExecutionConnectionError(
                f"connection unavailable: no SQL driver for {store.dialect} store '{store.id}'"
            )
        statement = ensure_read_only(query)
        engine = self._engine(store)

        with timer() as elapsed:
            future = self._pool.submit(self._run, engine, statement)
            try:
                columns, rows, truncated = future.result(timeout=self.timeout_s)
            except FutureTimeout:
                future.cancel()
                raise ExecutionTimeout(f"query timed out after {self.timeout_s:g}s")
            except sa_exc.SQLAlchemyError as e:
                mapped = map_db_error(e)
                logger.info("execution failed on {} ({}): {}", store.id, mapped.kind.value, mapped.message)
                raise mapped from e
            took = elapsed()

        column_types, unsafe = describe_rows(columns, rows)
        if truncated:
            logger.info("result for {} truncated to {} rows", store.id, self.max_rows)
        return ExecutionResult(
            rows=rows,
            row_count=len(rows),
            execution_time_ms=took,
            column_types=column_types,
            unsafe_fields=unsafe,
            truncated=truncated,
        )

    def dispose(self) -> None:
        with self._lock:
            for eng in self._engines.values():
                eng.dispose()
            self._engines.clear()
