"""Audit reporting for pipeline runs.

The pipeline only talks to the ``AuditClient`` protocol, always through an
``AuditDispatcher`` so that a slow or broken sink can never block or fail a
run. Delivery failures are logged and dropped.
"""

from __future__ import annotations

import json
import logging
import queue
import sqlite3
import threading
from collections.abc import Callable, Generator
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from patchgate.core.utils import utc_now

if TYPE_CHECKING:
    from patchgate.core.config import PipelineConfig
    from patchgate.core.models import PreflightChecklist

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("patchgate.audit")


class AuditEventType(str, Enum):
    """Types of events in the audit log."""

    EXECUTION_STARTED = "execution_started"
    EXECUTION_ENDED = "execution_ended"
    PREFLIGHT_COMPLETED = "preflight_completed"
    APPLY_COMPLETED = "apply_completed"


class AuditEvent(BaseModel):
    """Immutable event in the audit log."""

    id: int | None = None
    proposal_id: str
    event_type: AuditEventType
    kind: str | None = None
    status: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)


class _SafeJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles datetime, Path, enums and pydantic models."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, BaseModel):
            return obj.model_dump(mode="json")
        if isinstance(obj, Path):
            return str(obj)
        if isinstance(obj, Enum):
            return obj.value
        return super().default(obj)


def _safe_json_dumps(obj: Any) -> str:
    return json.dumps(obj, cls=_SafeJSONEncoder, separators=(",", ":"))


@runtime_checkable
class AuditClient(Protocol):
    """Sink for pipeline audit events."""

    def execution_started(self, proposal_id: str, kind: str, timestamp: datetime) -> None: ...

    def execution_ended(
        self, proposal_id: str, kind: str, status: str, details: dict[str, Any]
    ) -> None: ...

    def preflight_completed(self, proposal_id: str, checklist: PreflightChecklist) -> None: ...

    def apply_completed(
        self,
        proposal_id: str,
        branch_name: str | None,
        commit_sha: str | None,
        apply_log: str,
        success: bool,
    ) -> None: ...


class _EventSink:
    """Maps the protocol calls onto AuditEvent records."""

    def record(self, event: AuditEvent) -> None:
        raise NotImplementedError

    def execution_started(self, proposal_id: str, kind: str, timestamp: datetime) -> None:
        self.record(
            AuditEvent(
                proposal_id=proposal_id,
                event_type=AuditEventType.EXECUTION_STARTED,
                kind=kind,
                timestamp=timestamp,
            )
        )

    def execution_ended(
        self, proposal_id: str, kind: str, status: str, details: dict[str, Any]
    ) -> None:
        self.record(
            AuditEvent(
                proposal_id=proposal_id,
                event_type=AuditEventType.EXECUTION_ENDED,
                kind=kind,
                status=status,
                payload=dict(details),
            )
        )

    def preflight_completed(self, proposal_id: str, checklist: PreflightChecklist) -> None:
        data = checklist.to_dict()
        self.record(
            AuditEvent(
                proposal_id=proposal_id,
                event_type=AuditEventType.PREFLIGHT_COMPLETED,
                payload={"checklist": {k: v for k, v in data.items() if k != "logs"}},
            )
        )

    def apply_completed(
        self,
        proposal_id: str,
        branch_name: str | None,
        commit_sha: str | None,
        apply_log: str,
        success: bool,
    ) -> None:
        self.record(
            AuditEvent(
                proposal_id=proposal_id,
                event_type=AuditEventType.APPLY_COMPLETED,
                status="success" if success else "failure",
                payload={
                    "branch_name": branch_name,
                    "commit_sha": commit_sha,
                    "apply_log": apply_log,
                },
            )
        )


class LoggingAuditClient(_EventSink):
    """Emit each event as one compact JSON object on the ``patchgate.audit`` logger."""

    def __init__(self, log: logging.Logger | None = None):
        self.log = log or audit_logger

    def record(self, event: AuditEvent) -> None:
        self.log.info(_safe_json_dumps(event.model_dump(mode="json", exclude={"id"})))


class NullAuditClient(_EventSink):
    def record(self, event: AuditEvent) -> None:
        pass


class EventLogAuditClient(_EventSink):
    """Append-only SQLite audit log (WAL mode)."""

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS audit_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        proposal_id TEXT NOT NULL,
        event_type TEXT NOT NULL,
        kind TEXT,
        status TEXT,
        payload JSON,
        timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    CREATE INDEX IF NOT EXISTS idx_audit_proposal ON audit_events(proposal_id, id);
    """

    def __init__(self, db_path: str | Path = ".patchgate/audit.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        with self._connect() as conn:
            # WAL lets the CLI read while a run is writing
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(self.SCHEMA)

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 30000")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def record(self, event: AuditEvent) -> None:
        self.append_event(event)

    def append_event(self, event: AuditEvent) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO audit_events (proposal_id, event_type, kind, status,
                                          payload, timestamp)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    event.proposal_id,
                    event.event_type.value,
                    event.kind,
                    event.status,
                    _safe_json_dumps(event.payload),
                    event.timestamp.isoformat(),
                ),
            )
            return cursor.lastrowid  # type: ignore[return-value]

    def get_events(
        self, proposal_id: str, event_types: list[AuditEventType] | None = None
    ) -> list[AuditEvent]:
        """Get events for a proposal in insertion order, optionally filtered by type."""
        with self._connect() as conn:
            if event_types:
                placeholders = ",".join("?" * len(event_types))
                rows = conn.execute(
                    f"""
                    SELECT * FROM audit_events
                    WHERE proposal_id = ? AND event_type IN ({placeholders})
                    ORDER BY id
                    """,
                    [proposal_id] + [et.value for et in event_types],
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM audit_events WHERE proposal_id = ? ORDER BY id",
                    (proposal_id,),
                ).fetchall()
            return [self._row_to_event(row) for row in rows]

    def _row_to_event(self, row: sqlite3.Row) -> AuditEvent:
        return AuditEvent(
            id=row["id"],
            proposal_id=row["proposal_id"],
            event_type=AuditEventType(row["event_type"]),
            kind=row["kind"],
            status=row["status"],
            payload=json.loads(row["payload"]) if row["payload"] else {},
            timestamp=datetime.fromisoformat(row["timestamp"]),
        )


class AuditDispatcher:
    """Fire-and-forget wrapper around an AuditClient.

    Calls are queued and delivered by a daemon thread in submission order.
    Exceptions raised by the client are logged at WARNING and dropped.
    """

    def __init__(self, client: AuditClient):
        self.client = client
        self._queue: queue.Queue[tuple[str, Callable[[], None]]] = queue.Queue()
        self._thread: threading.Thread | None = None
        self._thread_lock = threading.Lock()

    def _ensure_worker(self) -> None:
        with self._thread_lock:
            if self._thread is None or not self._thread.is_alive():
                self._thread = threading.Thread(
                    target=self._worker, name="patchgate-audit", daemon=True
                )
                self._thread.start()

    def _worker(self) -> None:
        while True:
            name, call = self._queue.get()
            try:
                call()
            except Exception as e:
                logger.warning(f"Audit delivery '{name}' failed: {type(e).__name__}: {e}")
            finally:
                self._queue.task_done()

    def _submit(self, name: str, call: Callable[[], None]) -> None:
        self._queue.put((name, call))
        self._ensure_worker()

    def flush(self) -> None:
        """Block until every queued event has been delivered (or dropped)."""
        self._queue.join()

    def execution_started(self, proposal_id: str, kind: str, timestamp: datetime) -> None:
        self._submit(
            "execution_started",
            lambda: self.client.execution_started(proposal_id, kind, timestamp),
        )

    def execution_ended(
        self, proposal_id: str, kind: str, status: str, details: dict[str, Any]
    ) -> None:
        details = dict(details)
        self._submit(
            "execution_ended",
            lambda: self.client.execution_ended(proposal_id, kind, status, details),
        )

    def preflight_completed(self, proposal_id: str, checklist: PreflightChecklist) -> None:
        self._submit(
            "preflight_completed",
            lambda: self.client.preflight_completed(proposal_id, checklist),
        )

    def apply_completed(
        self,
        proposal_id: str,
        branch_name: str | None,
        commit_sha: str | None,
        apply_log: str,
        success: bool,
    ) -> None:
        self._submit(
            "apply_completed",
            lambda: self.client.apply_completed(
                proposal_id, branch_name, commit_sha, apply_log, success
            ),
        )


def build_audit_client(config: PipelineConfig, repo_root: Path | None = None) -> AuditClient:
    """Create the audit client named by ``audit.backend``.

    A relative sqlite ``db_path`` is resolved against repo_root.
    """
    backend = config.audit.backend
    if backend == "sqlite":
        db_path = config.audit.db_path
        if not db_path.is_absolute() and repo_root is not None:
            db_path = repo_root / db_path
        return EventLogAuditClient(db_path)
    if backend == "none":
        return NullAuditClient()
    return LoggingAuditClient()
