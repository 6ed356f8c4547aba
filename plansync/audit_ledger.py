from __future__ import annotations

import json
import logging
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from plansync.models import AuditRecord

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

_COLUMNS = (
    "id, event_id, operation, actor_email, actor_name, timestamp, source_collection, "
    "target_collection, before_state, after_state, status, error_message, created_at"
)


def format_timestamp(value: datetime) -> str:
    """Fixed-width UTC form, so string order is time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def _as_timestamp_bound(value: str | datetime | None) -> str | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return format_timestamp(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return format_timestamp(datetime.fromisoformat(text))


def _check_limit(limit: int) -> int:
    value = int(limit)
    if value < 1:
        raise ValueError(f"limit must be at least 1, got {value}")
    return value


def _dump_state(state: dict[str, Any] | None) -> str | None:
    if state is None:
        return None
    return json.dumps(state, ensure_ascii=False, default=str)


def _load_state(raw: str | None) -> dict[str, Any] | None:
    if raw is None:
        return None
    try:
        loaded = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Audit row carries unreadable state JSON")
        return None
    return loaded if isinstance(loaded, dict) else None


@dataclass(frozen=True)
class PreviousState:
    record_id: int
    operation: str
    timestamp: str
    state: dict[str, Any]
    source_collection: str
    target_collection: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.record_id,
            "operation": self.operation,
            "timestamp": self.timestamp,
            "state": self.state,
            "source_collection": self.source_collection,
            "target_collection": self.target_collection,
        }


class AuditLedger:
    """Append-only sqlite history of every mutation, newest first on read."""

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self._lock = threading.RLock()
        self._last_timestamp: datetime | None = None
        self.is_initialized = False

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def initialize(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS audit_history (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            event_id TEXT NOT NULL,
            operation TEXT NOT NULL,
            actor_email TEXT,
            actor_name TEXT,
            timestamp TEXT NOT NULL,
            source_collection TEXT NOT NULL,
            target_collection TEXT,
            before_state TEXT,
            after_state TEXT,
            status TEXT NOT NULL DEFAULT 'SUCCESS',
            error_message TEXT,
            created_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_audit_event_id ON audit_history(event_id);
        CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_history(timestamp);
        CREATE INDEX IF NOT EXISTS idx_audit_actor ON audit_history(actor_email);
        CREATE INDEX IF NOT EXISTS idx_audit_operation ON audit_history(operation);
        CREATE INDEX IF NOT EXISTS idx_audit_source ON audit_history(source_collection);
        """
        with self._lock:
            if self.is_initialized:
                return
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            with self._connect() as conn:
                conn.executescript(schema_sql)
                row = conn.execute("SELECT MAX(timestamp) AS latest FROM audit_history").fetchone()
            if row is not None and row["latest"]:
                self._last_timestamp = datetime.strptime(row["latest"], TIMESTAMP_FORMAT).replace(
                    tzinfo=timezone.utc
                )
            self.is_initialized = True
        logger.info("Audit ledger ready at %s", self.db_path)

    def close(self) -> None:
        with self._lock:
            self.is_initialized = False

    def _next_timestamp(self) -> str:
        now = datetime.now(timezone.utc)
        if self._last_timestamp is not None and now <= self._last_timestamp:
            now = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = now
        return format_timestamp(now)

    def append(self, record: AuditRecord) -> int | None:
        """Persist one record; returns its id, or None when the write failed."""
        try:
            with self._lock:
                if not self.is_initialized:
                    self.initialize()
                timestamp = self._next_timestamp()
                with self._connect() as conn:
                    cursor = conn.execute(
                        """
                        INSERT INTO audit_history(
                            event_id, operation, actor_email, actor_name, timestamp, source_collection,
                            target_collection, before_state, after_state, status, error_message, created_at
                        )
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            record.event_id,
                            record.operation,
                            record.actor_email,
                            record.actor_name,
                            timestamp,
                            record.source_collection,
                            record.target_collection,
                            _dump_state(record.before_state),
                            _dump_state(record.after_state),
                            record.status,
                            record.error_message,
                            timestamp,
                        ),
                    )
                    conn.commit()
                    record_id = int(cursor.lastrowid)
        except (sqlite3.Error, OSError, TypeError, ValueError) as exc:
            logger.error("Audit write failed for %s %s: %s", record.operation, record.event_id, exc)
            return None
        logger.debug("Audit %s %s recorded as #%d (%s)", record.operation, record.event_id, record_id, record.status)
        return record_id

    def _query(self, sql: str, params: tuple[Any, ...]) -> list[sqlite3.Row]:
        with self._lock:
            if not self.is_initialized:
                self.initialize()
            with self._connect() as conn:
                return conn.execute(sql, params).fetchall()

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> AuditRecord:
        return AuditRecord(
            id=int(row["id"]),
            event_id=row["event_id"],
            operation=row["operation"],
            actor_email=row["actor_email"],
            actor_name=row["actor_name"],
            timestamp=row["timestamp"],
            source_collection=row["source_collection"],
            target_collection=row["target_collection"],
            before_state=_load_state(row["before_state"]),
            after_state=_load_state(row["after_state"]),
            status=row["status"],
            error_message=row["error_message"],
            created_at=row["created_at"],
        )

    def get_event_history(self, event_id: str, limit: int = 50) -> list[AuditRecord]:
        rows = self._query(
            f"""
            SELECT {_COLUMNS}
            FROM audit_history
            WHERE event_id = ?
            ORDER BY timestamp DESC, id DESC
            LIMIT ?
            """,
            (event_id, _check_limit(limit)),
        )
        return [self._row_to_record(row) for row in rows]

    def get_recent_history(
        self,
        *,
        operation: str | None = None,
        actor_email: str | None = None,
        collection: str | None = None,
        since: str | datetime | None = None,
        until: str | datetime | None = None,
        limit: int = 100,
    ) -> list[AuditRecord]:
        clauses: list[str] = []
        params: list[Any] = []
        if operation:
            clauses.append("operation = ?")
            params.append(operation.upper())
        if actor_email:
            clauses.append("actor_email = ?")
            params.append(actor_email)
        if collection:
            clauses.append("(source_collection = ? OR target_collection = ?)")
            params.extend([collection, collection])
        since_bound = _as_timestamp_bound(since)
        if since_bound:
            clauses.append("timestamp >= ?")
            params.append(since_bound)
        until_bound = _as_timestamp_bound(until)
        if until_bound:
            clauses.append("timestamp <= ?")
            params.append(until_bound)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(_check_limit(limit))
        rows = self._query(
            f"""
            SELECT {_COLUMNS}
            FROM audit_history
            {where}
            ORDER BY timestamp DESC, id DESC
            LIMIT ?
            """,
            tuple(params),
        )
        return [self._row_to_record(row) for row in rows]

    def get_previous_state(self, event_id: str) -> PreviousState | None:
        rows = self._query(
            f"""
            SELECT {_COLUMNS}
            FROM audit_history
            WHERE event_id = ? AND status = 'SUCCESS' AND before_state IS NOT NULL
            ORDER BY timestamp DESC, id DESC
            LIMIT 1
            """,
            (event_id,),
        )
        if not rows:
            return None
        record = self._row_to_record(rows[0])
        if record.before_state is None:
            return None
        return PreviousState(
            record_id=int(record.id or 0),
            operation=record.operation,
            timestamp=str(record.timestamp),
            state=record.before_state,
            source_collection=record.source_collection,
            target_collection=record.target_collection,
        )

    def get_latest_record(self, event_id: str) -> AuditRecord | None:
        rows = self._query(
            f"""
            SELECT {_COLUMNS}
            FROM audit_history
            WHERE event_id = ? AND status = 'SUCCESS'
            ORDER BY timestamp DESC, id DESC
            LIMIT 1
            """,
            (event_id,),
        )
        return self._row_to_record(rows[0]) if rows else None

    def get_statistics(self) -> dict[str, Any]:
        cutoff = format_timestamp(datetime.now(timezone.utc) - timedelta(hours=24))
        with self._lock:
            if not self.is_initialized:
                self.initialize()
            with self._connect() as conn:
                total = conn.execute("SELECT COUNT(*) AS n FROM audit_history").fetchone()["n"]
                by_operation = conn.execute(
                    """
                    SELECT operation, COUNT(*) AS n
                    FROM audit_history
                    GROUP BY operation
                    ORDER BY n DESC, operation
                    """
                ).fetchall()
                top_actors = conn.execute(
                    """
                    SELECT actor_email, COUNT(*) AS n
                    FROM audit_history
                    WHERE actor_email IS NOT NULL
                    GROUP BY actor_email
                    ORDER BY n DESC, actor_email
                    LIMIT 10
                    """
                ).fetchall()
                last_24h = conn.execute(
                    "SELECT COUNT(*) AS n FROM audit_history WHERE timestamp >= ?",
                    (cutoff,),
                ).fetchone()["n"]
        return {
            "total_operations": int(total),
            "by_operation": {row["operation"]: int(row["n"]) for row in by_operation},
            "top_actors": [{"email": row["actor_email"], "count": int(row["n"])} for row in top_actors],
            "last_24h": int(last_24h),
        }
