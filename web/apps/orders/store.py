"""Order store: parameterized SQL over Django's database connections.

Two modes are offered:

- ``OrderStore.query`` runs one statement in autocommit mode on the current
  thread's connection (a pooled connection on PostgreSQL);
- ``OrderStore.with_transaction`` returns a ``TransactionHandle`` whose
  statements share one transaction. The caller drives it explicitly:
  ``begin()``, any number of ``query()``, exactly one of ``commit()`` or
  ``rollback()``, then ``release()``. ``OrderStore.transaction()`` wraps the
  handle in a context manager that always releases it.

A failed statement does not end the transaction: the caller decides between
``rollback()`` and compensation. Releasing a handle whose transaction is still
open rolls it back, so a connection never goes back to the pool mid
transaction.

The handle is built on ``django.db.transaction.atomic``; inside an outer
atomic block (tests) its transaction becomes a savepoint.
"""

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator, List, Optional, Sequence

from django.db import DEFAULT_DB_ALIAS, connections
from django.db import transaction as db_transaction

from apps.monitoring.metrics import database_query_duration

logger = logging.getLogger(__name__)


@dataclass
class RowSet:
    """Rows returned by a statement, as dicts keyed by column name."""

    rows: List[dict] = field(default_factory=list)
    rowcount: int = 0

    def first(self) -> Optional[dict]:
        return self.rows[0] if self.rows else None

    def __iter__(self) -> Iterator[dict]:
        return iter(self.rows)

    def __len__(self) -> int:
        return len(self.rows)


def _execute(connection, sql: str, params: Optional[Sequence[Any]], operation: str) -> RowSet:
    started = time.perf_counter()
    try:
        with connection.cursor() as cur:
            cur.execute(sql, list(params or []))
            if cur.description:
                columns = [c[0] for c in cur.description]
                rows = [dict(zip(columns, r)) for r in cur.fetchall()]
            else:
                rows = []
            return RowSet(rows, cur.rowcount)
    finally:
        database_query_duration.labels(operation).observe(time.perf_counter() - started)


class TransactionHandle:
    """One explicit transaction on the calling thread's connection."""

    def __init__(self, using: str = DEFAULT_DB_ALIAS):
        self.using = using
        self._atomic = None
        self._released = False

    @property
    def connection(self):
        return connections[self.using]

    @property
    def in_transaction(self) -> bool:
        return self._atomic is not None

    def begin(self) -> None:
        if self._released:
            raise RuntimeError("transaction handle already released")
        if self._atomic is not None:
            raise RuntimeError("transaction already begun")
        atomic = db_transaction.atomic(using=self.using)
        atomic.__enter__()
        self._atomic = atomic

    def query(self, sql: str, params: Optional[Sequence[Any]] = None, operation: str = "query") -> RowSet:
        if self._atomic is None:
            raise RuntimeError("query() called outside begin()")
        return _execute(self.connection, sql, params, operation)

    def commit(self) -> None:
        """Commit the transaction. On failure Django rolls it back before re-raising."""
        self._end().__exit__(None, None, None)

    def rollback(self) -> None:
        atomic = self._end()
        db_transaction.set_rollback(True, using=self.using)
        atomic.__exit__(None, None, None)

    def release(self) -> None:
        if self._released:
            return
        try:
            if self._atomic is not None:
                logger.warning("transaction handle released with an open transaction, rolling back")
                self.rollback()
        finally:
            self._released = True

    def _end(self):
        if self._atomic is None:
            raise RuntimeError("no transaction in progress")
        atomic, self._atomic = self._atomic, None
        return atomic


class OrderStore:
    """Entry point to the orders database."""

    def __init__(self, using: str = DEFAULT_DB_ALIAS):
        self.using = using

    @property
    def connection(self):
        return connections[self.using]

    def query(self, sql: str, params: Optional[Sequence[Any]] = None, operation: str = "query") -> RowSet:
        return _execute(self.connection, sql, params, operation)

    def with_transaction(self) -> TransactionHandle:
        return TransactionHandle(self.using)

    @contextmanager
    def transaction(self) -> Iterator[TransactionHandle]:
        handle = self.with_transaction()
        try:
            yield handle
        finally:
            handle.release()

    def adapt_datetime(self, value):
        """Convert an aware datetime to the backend's parameter representation."""
        return self.connection.ops.adapt_datetimefield_value(value)
