from __future__ import annotations

from datetime import datetime, timezone

import psycopg2
import pytest

from eventfabric.core.models import EventEnvelope
from eventfabric.core.outbox import OutboxRecord, PostgresOutboxStore
from eventfabric.core.projection import ApplyOutcome, PostgresProjectionStore, ProjectionRecord
from eventfabric.search.projection import SearchIndexProjection


class FakeDatabase:
    """Hands out fake connections; `errors` are raised by the next executes, in order."""

    def __init__(self) -> None:
        self.errors: list[Exception] = []
        self.connections: list[FakeConnection] = []

    def connect(self, dsn):
        conn = FakeConnection(self)
        self.connections.append(conn)
        return conn


class FakeCursor:
    def __init__(self, conn: "FakeConnection") -> None:
        self.conn = conn
        self.rowcount = 0

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        if self.conn.closed:
            raise psycopg2.InterfaceError("connection already closed")
        self.conn.statements.append(sql)
        if self.conn.db.errors:
            raise self.conn.db.errors.pop(0)
        self.rowcount = 1

    def fetchone(self):
        return None

    def fetchall(self):
        return []


class FakeConnection:
    def __init__(self, db: FakeDatabase) -> None:
        self.db = db
        self.statements: list[str] = []
        self.commits = 0
        self.rollbacks = 0
        self.closed = 0

    def cursor(self):
        return FakeCursor(self)

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1

    def close(self):
        self.closed = 1


@pytest.fixture
def db(monkeypatch) -> FakeDatabase:
    fake = FakeDatabase()
    monkeypatch.setattr(psycopg2, "connect", fake.connect)
    return fake


def _record(version: int = 1) -> ProjectionRecord:
    return ProjectionRecord(
        entity_id="42",
        state={"content": "hello"},
        last_applied_event_id=f"evt-{version}",
        last_applied_version=version,
    )


def test_each_statement_commits_on_success(db: FakeDatabase) -> None:
    store = PostgresProjectionStore("dbname=test", projection="search_index")

    assert store.get("42") is None
    assert store.save(_record(), expected_version=None) is True

    (conn,) = db.connections
    assert conn.commits == 2
    assert conn.rollbacks == 0


def test_failed_statement_rolls_back_and_keeps_the_connection(db: FakeDatabase) -> None:
    store = PostgresProjectionStore("dbname=test", projection="search_index")
    db.errors.append(psycopg2.DataError("invalid input syntax for type json"))

    with pytest.raises(psycopg2.DataError):
        store.save(_record(), expected_version=None)
    assert store.save(_record(), expected_version=None) is True

    (conn,) = db.connections
    assert conn.rollbacks == 1
    assert conn.commits == 1


def test_lost_connection_is_replaced_on_next_call(db: FakeDatabase) -> None:
    store = PostgresProjectionStore("dbname=test", projection="search_index")
    db.errors.append(psycopg2.OperationalError("server closed the connection unexpectedly"))

    with pytest.raises(psycopg2.OperationalError):
        store.get("42")
    assert store.get("42") is None

    first, second = db.connections
    assert first.closed
    assert second.commits == 1


def test_projection_recovers_after_database_blip(db: FakeDatabase) -> None:
    projection = SearchIndexProjection(PostgresProjectionStore("dbname=test", projection="search_index"))
    env = EventEnvelope(
        event_id="evt-1",
        event_type="PostCreated",
        schema_version=2,
        occurred_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
        source_service="posts-service",
        correlation_id="corr",
        payload={"post_id": "42", "author_id": "user-7", "version": 1, "content": "hello", "media": []},
    )
    db.errors.append(psycopg2.OperationalError("terminating connection due to administrator command"))

    with pytest.raises(psycopg2.OperationalError):
        projection.handle(env)
    # The consumer's retry lands on a fresh connection.
    assert projection.handle(env) == ApplyOutcome.APPLIED
    assert len(db.connections) == 2


def test_outbox_store_rolls_back_and_reconnects(db: FakeDatabase) -> None:
    store = PostgresOutboxStore("dbname=test")
    record = OutboxRecord(event_id="evt-1", topic="posts.events", ordering_key="42", data=b"{}")

    db.errors.append(psycopg2.IntegrityError("null value in column"))
    with pytest.raises(psycopg2.IntegrityError):
        store.add(record)
    assert db.connections[0].rollbacks == 1

    db.errors.append(psycopg2.InterfaceError("connection already closed"))
    with pytest.raises(psycopg2.InterfaceError):
        store.due(0.0, limit=10)

    assert store.due(0.0, limit=10) == []
    store.update(record)
    assert len(db.connections) == 2
    assert db.connections[1].commits == 2
