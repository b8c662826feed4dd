"""
PostgreSQL Event Store
Persists events with async psycopg and compare-and-set status updates
"""

import asyncio
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

import psycopg
import structlog
from psycopg import AsyncConnection, sql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from src.models.event import Event, EventStatus, REPLAYABLE_STATUSES
from src.store.base import (
    EventMetrics,
    EventNotFoundError,
    EventStore,
    StatusConflictError,
    StoreError,
    check_transition_fields,
)

logger = structlog.get_logger(__name__)


SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS events (
        id TEXT PRIMARY KEY,
        event_type TEXT NOT NULL,
        payload JSONB NOT NULL,
        metadata JSONB,
        status TEXT NOT NULL DEFAULT 'PENDING'
            CHECK (status IN ('PENDING', 'PROCESSING', 'PROCESSED', 'FAILED', 'DEAD_LETTER')),
        retry_count INTEGER NOT NULL DEFAULT 0 CHECK (retry_count >= 0),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        processed_at TIMESTAMPTZ,
        failed_at TIMESTAMPTZ,
        failure_reason TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS events_status_idx ON events (status)",
    "CREATE INDEX IF NOT EXISTS events_event_type_idx ON events (event_type)",
    "CREATE INDEX IF NOT EXISTS events_created_at_idx ON events (created_at)",
)


def row_to_event(row: Dict[str, Any]) -> Event:
    """Map a database row (dict_row) to an Event"""
    return Event(
        id=row["id"],
        event_type=row["event_type"],
        payload=row["payload"],
        metadata=row["metadata"],
        status=EventStatus(row["status"]),
        retry_count=row["retry_count"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        processed_at=row["processed_at"],
        failed_at=row["failed_at"],
        failure_reason=row["failure_reason"],
    )


class PostgresEventStore(EventStore):
    """
    Event store on a single async Postgres connection

    Every status write is a single ``UPDATE ... WHERE status = ANY(...)`` so two
    overlapping leases can never both win the same transition.
    """

    def __init__(self, connection_url: str, create_schema: bool = True):
        """
        Initialize Postgres event store

        Args:
            connection_url: Postgres connection URL
            create_schema: Create the events table and indexes on connect
        """
        self.connection_url = connection_url
        self.create_schema = create_schema
        self._conn: Optional[AsyncConnection] = None
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        """
        Establish async connection to Postgres

        Raises:
            StoreError: If connection fails
        """
        try:
            self._conn = await AsyncConnection.connect(
                self.connection_url,
                row_factory=dict_row,
                autocommit=True,  # every statement is a single-row atomic write
            )
            if self.create_schema:
                async with self._conn.cursor() as cur:
                    for statement in SCHEMA_STATEMENTS:
                        await cur.execute(statement)
            logger.info("Connected to Postgres event store")

        except psycopg.Error as e:
            raise StoreError(f"Failed to connect to Postgres: {e}") from e

    async def close(self) -> None:
        """Close Postgres connection"""
        if self._conn:
            await self._conn.close()
            self._conn = None
            logger.info("Disconnected from Postgres event store")

    async def health_check(self) -> bool:
        try:
            if not self._conn:
                return False
            await self._fetchone("SELECT 1 AS ok")
            return True

        except StoreError as e:
            logger.warning("Postgres health check failed", error=str(e))
            return False

    async def _execute(self, query, params=None) -> List[Dict[str, Any]]:
        if not self._conn:
            raise StoreError("Not connected to Postgres")

        try:
            async with self._lock:
                async with self._conn.cursor() as cur:
                    await cur.execute(query, params)
                    if cur.description is None:
                        return []
                    return await cur.fetchall()

        except psycopg.Error as e:
            raise StoreError(f"Postgres query failed: {e}") from e

    async def _fetchone(self, query, params=None) -> Optional[Dict[str, Any]]:
        rows = await self._execute(query, params)
        return rows[0] if rows else None

    async def create(self, event: Event) -> Event:
        row = await self._fetchone(
            """
            INSERT INTO events (
                id, event_type, payload, metadata, status, retry_count,
                created_at, updated_at, processed_at, failed_at, failure_reason
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                event.id,
                event.event_type,
                Jsonb(event.payload),
                Jsonb(event.metadata) if event.metadata is not None else None,
                event.status.value,
                event.retry_count,
                event.created_at,
                event.updated_at,
                event.processed_at,
                event.failed_at,
                event.failure_reason,
            ),
        )
        logger.debug("Event stored", event_id=event.id, event_type=event.event_type)
        return row_to_event(row)

    async def get(self, event_id: str) -> Optional[Event]:
        row = await self._fetchone("SELECT * FROM events WHERE id = %s", (event_id,))
        return row_to_event(row) if row else None

    async def transition(
        self,
        event_id: str,
        expected: Iterable[EventStatus],
        status: EventStatus,
        stale_before: Optional[datetime] = None,
        **fields: Any,
    ) -> Event:
        check_transition_fields(fields)
        expected = frozenset(expected)

        assignments = [sql.SQL("status = {}").format(sql.Placeholder()), sql.SQL("updated_at = now()")]
        params: List[Any] = [status.value]
        for column, value in fields.items():
            assignments.append(sql.SQL("{} = {}").format(sql.Identifier(column), sql.Placeholder()))
            params.append(value)

        query = sql.SQL(
            """
            UPDATE events SET {assignments}
            WHERE id = %s
              AND (
                status = ANY(%s)
                OR (%s::timestamptz IS NOT NULL AND status = 'PROCESSING' AND updated_at < %s)
              )
            RETURNING *
            """
        ).format(assignments=sql.SQL(", ").join(assignments))
        params.extend([event_id, [s.value for s in expected], stale_before, stale_before])

        row = await self._fetchone(query, params)
        if row is not None:
            return row_to_event(row)

        current = await self.get(event_id)
        if current is None:
            raise EventNotFoundError(event_id)
        raise StatusConflictError(event_id, expected, current)

    async def list_failed(self, page: int = 1, limit: int = 50) -> Tuple[List[Event], int]:
        statuses = [s.value for s in REPLAYABLE_STATUSES]
        rows = await self._execute(
            """
            SELECT * FROM events
            WHERE status = ANY(%s)
            ORDER BY failed_at DESC NULLS LAST
            LIMIT %s OFFSET %s
            """,
            (statuses, limit, (page - 1) * limit),
        )
        count = await self._fetchone(
            "SELECT count(*) AS total FROM events WHERE status = ANY(%s)", (statuses,)
        )
        return [row_to_event(row) for row in rows], count["total"]

    async def get_metrics(self) -> EventMetrics:
        status_rows = await self._execute(
            "SELECT status, count(*) AS count FROM events GROUP BY status"
        )
        type_rows = await self._execute(
            "SELECT event_type, count(*) AS count FROM events GROUP BY event_type"
        )
        average = await self._fetchone(
            """
            SELECT avg(extract(epoch FROM processed_at - created_at)) AS seconds
            FROM events
            WHERE status = 'PROCESSED' AND processed_at IS NOT NULL
            """
        )

        by_status = {EventStatus(row["status"]): row["count"] for row in status_rows}
        return EventMetrics(
            total=sum(by_status.values()),
            by_status=by_status,
            by_type={row["event_type"]: row["count"] for row in type_rows},
            average_processing_seconds=float(average["seconds"] or 0.0),
        )
