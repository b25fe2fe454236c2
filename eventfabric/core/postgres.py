"""Lazily opened psycopg2 connection shared by the Postgres stores."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator

logger = logging.getLogger(__name__)


class PostgresConnection:
    """One connection per store, opened on first use.

    Each `cursor()` block is its own transaction: committed when the block
    exits cleanly, rolled back on any psycopg2 error. A connection that is
    lost or closed is dropped, and the next block reconnects.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self._conn = None

    def _get_conn(self):
        if self._conn is None:
            import psycopg2  # type: ignore
            self._conn = psycopg2.connect(self.dsn)
        return self._conn

    def _discard(self, conn) -> None:
        self._conn = None
        # close() on an already closed connection is a no-op.
        conn.close()

    @contextmanager
    def cursor(self) -> Iterator[Any]:
        import psycopg2  # type: ignore

        conn = self._get_conn()
        try:
            with conn.cursor() as cur:
                yield cur
            conn.commit()
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
            logger.warning(f"Postgres connection lost, reconnecting on next use: {e}")
            self._discard(conn)
            raise
        except psycopg2.Error:
            if conn.closed:
                self._discard(conn)
                raise
            try:
                conn.rollback()
            except psycopg2.Error as e:
                logger.warning(f"Postgres rollback failed, reconnecting on next use: {e}")
                self._discard(conn)
            raise
