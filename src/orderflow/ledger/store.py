"""Ledger store: durable records with compare-and-set updates.

Every entity kind lives in its own table with the same shape: a status column
and a version column that the conditional update keys on, plus a JSON document
holding the rest of the aggregate. The store has no business rules; it only
guarantees that a write lands when the row still has the status and version
the caller read.
"""

import json
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from protean.exceptions import ObjectNotFoundError
from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    select,
    update,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import StaticPool

from orderflow.errors import ConflictError

metadata = MetaData()

RECORD_TABLES = (
    "orders",
    "payments",
    "shipments",
    "delivery_otps",
    "return_requests",
    "exchanges",
    "wallets",
)


def _record_table(name: str) -> Table:
    return Table(
        name,
        metadata,
        Column("id", String(64), primary_key=True),
        Column("status", String(32), nullable=False),
        Column("version", Integer, nullable=False, default=0),
        Column("owner_id", String(64), index=True),
        Column("lookup_key", String(255), index=True),
        Column("document", Text, nullable=False),
        Column("created_at", DateTime(timezone=True), nullable=False),
        Column("updated_at", DateTime(timezone=True), nullable=False),
    )


tables = {name: _record_table(name) for name in RECORD_TABLES}

processed_events = Table(
    "processed_events",
    metadata,
    Column("source", String(64), primary_key=True),
    Column("event_key", String(255), primary_key=True),
    Column("received_at", DateTime(timezone=True), nullable=False),
)


@dataclass(frozen=True)
class Record:
    id: str
    status: str
    version: int
    owner_id: str | None
    lookup_key: str | None
    document: dict
    created_at: datetime
    updated_at: datetime


def _to_record(row) -> Record:
    return Record(
        id=row.id,
        status=row.status,
        version=row.version,
        owner_id=row.owner_id,
        lookup_key=row.lookup_key,
        document=json.loads(row.document),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class LedgerStore:
    """SQLAlchemy-backed ledger shared by every component."""

    def __init__(self, database_uri: str, echo: bool = False) -> None:
        self.database_uri = database_uri
        self.engine = self._create_engine(database_uri, echo)
        self._connection: ContextVar = ContextVar(f"ledger_connection_{id(self)}", default=None)

    @staticmethod
    def _create_engine(database_uri: str, echo: bool):
        if database_uri.startswith("sqlite"):
            options: dict[str, Any] = {"connect_args": {"check_same_thread": False, "timeout": 30}}
            if database_uri in ("sqlite://", "sqlite:///:memory:"):
                # One shared connection; only safe for single-threaded use
                options["poolclass"] = StaticPool
            return create_engine(database_uri, echo=echo, **options)
        return create_engine(database_uri, echo=echo, pool_pre_ping=True)

    # -------------------------------------------------------------------
    # Schema
    # -------------------------------------------------------------------
    def create_schema(self) -> None:
        metadata.create_all(self.engine)

    def drop_schema(self) -> None:
        metadata.drop_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    # -------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------
    @contextmanager
    def transaction(self):
        """Run every ledger call inside the block on one database transaction.

        Nested blocks join the outermost transaction; it commits when the
        outermost block exits cleanly and rolls back on any exception.
        """
        active = self._connection.get()
        if active is not None:
            yield active
            return

        with self.engine.begin() as conn:
            token = self._connection.set(conn)
            try:
                yield conn
            finally:
                self._connection.reset(token)

    @contextmanager
    def _connect(self):
        active = self._connection.get()
        if active is not None:
            yield active
        else:
            with self.engine.begin() as conn:
                yield conn

    # -------------------------------------------------------------------
    # Records
    # -------------------------------------------------------------------
    def insert(
        self,
        table: str,
        record_id: str,
        status: str,
        document: dict,
        owner_id: str | None = None,
        lookup_key: str | None = None,
    ) -> Record:
        now = datetime.now(UTC)
        values = {
            "id": record_id,
            "status": status,
            "version": 0,
            "owner_id": owner_id,
            "lookup_key": lookup_key,
            "document": json.dumps(document),
            "created_at": now,
            "updated_at": now,
        }
        try:
            with self._connect() as conn:
                conn.execute(tables[table].insert().values(**values))
        except IntegrityError as exc:
            raise ConflictError({"id": [f"{table} record {record_id} already exists"]}) from exc
        return Record(
            id=record_id,
            status=status,
            version=0,
            owner_id=owner_id,
            lookup_key=lookup_key,
            document=document,
            created_at=now,
            updated_at=now,
        )

    def get(self, table: str, record_id: str) -> Record | None:
        t = tables[table]
        with self._connect() as conn:
            row = conn.execute(select(t).where(t.c.id == record_id)).first()
        return _to_record(row) if row is not None else None

    def find(
        self,
        table: str,
        owner_id: str | None = None,
        lookup_key: str | None = None,
        status: str | None = None,
    ) -> list[Record]:
        t = tables[table]
        query = select(t)
        if owner_id is not None:
            query = query.where(t.c.owner_id == owner_id)
        if lookup_key is not None:
            query = query.where(t.c.lookup_key == lookup_key)
        if status is not None:
            query = query.where(t.c.status == status)
        query = query.order_by(t.c.created_at)
        with self._connect() as conn:
            rows = conn.execute(query).all()
        return [_to_record(row) for row in rows]

    def compare_and_set(
        self,
        table: str,
        record_id: str,
        expected_status: str,
        expected_version: int,
        new_status: str,
        document: dict,
        lookup_key: str | None = None,
    ) -> int:
        """Conditionally write a record; return the new version.

        The write is a single ``UPDATE ... WHERE id AND status AND version``.
        When no row matches, the caller's view is stale and ConflictError is
        raised; nothing is written.
        """
        t = tables[table]
        values = {
            "status": new_status,
            "version": t.c.version + 1,
            "document": json.dumps(document),
            "updated_at": datetime.now(UTC),
        }
        if lookup_key is not None:
            values["lookup_key"] = lookup_key

        statement = (
            update(t)
            .where(t.c.id == record_id)
            .where(t.c.status == expected_status)
            .where(t.c.version == expected_version)
            .values(**values)
        )
        with self._connect() as conn:
            result = conn.execute(statement)
            if result.rowcount == 1:
                return expected_version + 1

            current = conn.execute(select(t.c.status, t.c.version).where(t.c.id == record_id)).first()

        if current is None:
            raise ObjectNotFoundError(f"{table} record {record_id} does not exist")
        raise ConflictError(
            {
                "status": [
                    f"{table} record {record_id} is {current.status} at version {current.version}, "
                    f"expected {expected_status} at version {expected_version}"
                ]
            }
        )

    # -------------------------------------------------------------------
    # Idempotency keys
    # -------------------------------------------------------------------
    def claim_event(self, source: str, event_key: str) -> bool:
        """Record an idempotency key; return False if it was already recorded."""
        if self.engine.dialect.name == "postgresql":
            statement = postgresql.insert(processed_events)
        else:
            statement = sqlite.insert(processed_events)
        statement = statement.values(
            source=source,
            event_key=event_key,
            received_at=datetime.now(UTC),
        ).on_conflict_do_nothing()

        with self._connect() as conn:
            result = conn.execute(statement)
        return result.rowcount == 1

    def is_claimed(self, source: str, event_key: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                select(processed_events.c.event_key)
                .where(processed_events.c.source == source)
                .where(processed_events.c.event_key == event_key)
            ).first()
        return row is not None
