"""Persistence for approval audit entries, the review queue and finalized documents."""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Protocol

from backend.core.config import settings
from backend.core.errors import PersistenceError
from backend.core.logging import get_logger
from backend.core.models import PRIORITY_RANK, ApprovalQueueItem, ApprovalStatus, AuditEntry
from backend.core.state import WorkflowState

logger = get_logger(__name__)

OPEN_STATUSES = (ApprovalStatus.PENDING.value, ApprovalStatus.NEEDS_REVIEW.value)


class AuditRepository(Protocol):
    def append(self, entry: AuditEntry, queue_item: Optional[ApprovalQueueItem] = None) -> None: ...

    def history(self, workflow_id: str) -> List[AuditEntry]: ...

    def entries(self, since: Optional[datetime] = None, until: Optional[datetime] = None) -> List[AuditEntry]: ...

    def save_queue_item(self, item: ApprovalQueueItem) -> None: ...

    def get_approval_queue(
        self, status: Optional[str] = None, priority: Optional[str] = None
    ) -> List[ApprovalQueueItem]: ...

    def get_overdue_items(self, now: Optional[datetime] = None) -> List[ApprovalQueueItem]: ...

    def save_document(self, workflow_id: str, state: WorkflowState) -> None: ...

    def get_document(self, workflow_id: str) -> Optional[Dict[str, Any]]: ...


def _document_status(state: WorkflowState) -> Optional[str]:
    return state.workflow_data.status.value if state.workflow_data else None


def _ts(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _queue_key(item: ApprovalQueueItem):
    return (PRIORITY_RANK[item.priority], item.created_at)


def _in_range(entry: AuditEntry, since: Optional[datetime], until: Optional[datetime]) -> bool:
    if since is not None and entry.timestamp < since:
        return False
    if until is not None and entry.timestamp > until:
        return False
    return True


class SqliteAuditStore:
    """SQLite-based persistence for the audit trail, review queue and final documents."""

    def __init__(self, db_path: Optional[str] = None):
        """
        Initialize audit store.

        Args:
            db_path: Path to SQLite database (defaults to settings)
        """
        self.db_path = db_path or settings.audit_db_path
        self._init_db()

    @contextmanager
    def _connect(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Connection for one operation; sqlite failures surface as PersistenceError."""
        conn = None
        try:
            conn = sqlite3.connect(self.db_path)
            conn.row_factory = sqlite3.Row
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            if conn is not None:
                conn.rollback()
            logger.error("audit_store_failed", operation=operation, db_path=self.db_path, error=str(e))
            raise PersistenceError(f"Échec de l'opération '{operation}': {e}", operation=operation, cause=e) from e
        finally:
            if conn is not None:
                conn.close()

    def _init_db(self):
        """Create the audit, queue and document tables if they don't exist."""
        with self._connect("init") as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS audit_entries (
                    id TEXT PRIMARY KEY,
                    workflow_id TEXT NOT NULL,
                    action TEXT NOT NULL,
                    actor TEXT,
                    previous_status TEXT,
                    new_status TEXT NOT NULL,
                    comment TEXT,
                    timestamp TEXT NOT NULL,
                    metadata_json TEXT NOT NULL DEFAULT '{}'
                )
            """)
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_audit_workflow ON audit_entries (workflow_id, timestamp)"
            )

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS approval_queue (
                    workflow_id TEXT PRIMARY KEY,
                    form_type TEXT,
                    title TEXT,
                    status TEXT NOT NULL,
                    priority TEXT NOT NULL,
                    score REAL NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    due_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS workflow_documents (
                    workflow_id TEXT PRIMARY KEY,
                    form_type TEXT,
                    status TEXT,
                    state_json TEXT NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

        logger.info("audit_store_initialized", db_path=self.db_path)

    # ── Audit trail ──────────────────────────────────────────────────────

    def append(self, entry: AuditEntry, queue_item: Optional[ApprovalQueueItem] = None) -> None:
        """
        Append an audit entry. Existing rows are never updated.

        When ``queue_item`` is given it is written in the same transaction,
        so the queue never disagrees with the audit trail.

        Args:
            entry: Audit entry to store
            queue_item: Queue row reflecting the entry's new status
        """
        with self._connect("append") as conn:
            conn.execute(
                """
                INSERT INTO audit_entries
                (id, workflow_id, action, actor, previous_status, new_status, comment, timestamp, metadata_json)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.id,
                    entry.workflow_id,
                    entry.action.value,
                    entry.actor,
                    entry.previous_status.value if entry.previous_status else None,
                    entry.new_status.value,
                    entry.comment,
                    _ts(entry.timestamp),
                    json.dumps(entry.metadata, default=str),
                ),
            )
            if queue_item is not None:
                self._upsert_queue_item(conn, queue_item)

        logger.debug("audit_entry_appended", workflow_id=entry.workflow_id, action=entry.action.value)

    def history(self, workflow_id: str) -> List[AuditEntry]:
        """
        Audit entries for one workflow, oldest first.

        Args:
            workflow_id: Workflow identifier

        Returns:
            List of audit entries
        """
        with self._connect("history") as conn:
            rows = conn.execute(
                "SELECT * FROM audit_entries WHERE workflow_id = ? ORDER BY timestamp ASC, rowid ASC",
                (workflow_id,),
            ).fetchall()

        return [self._row_to_entry(row) for row in rows]

    def entries(self, since: Optional[datetime] = None, until: Optional[datetime] = None) -> List[AuditEntry]:
        """
        Audit entries of every workflow, oldest first.

        Args:
            since: Keep entries at or after this instant
            until: Keep entries at or before this instant

        Returns:
            List of audit entries
        """
        query = "SELECT * FROM audit_entries"
        clauses, params = [], []
        if since is not None:
            clauses.append("timestamp >= ?")
            params.append(_ts(since))
        if until is not None:
            clauses.append("timestamp <= ?")
            params.append(_ts(until))
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY timestamp ASC, rowid ASC"

        with self._connect("entries") as conn:
            rows = conn.execute(query, params).fetchall()

        return [self._row_to_entry(row) for row in rows]

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> AuditEntry:
        return AuditEntry(
            id=row["id"],
            workflow_id=row["workflow_id"],
            action=row["action"],
            actor=row["actor"],
            previous_status=row["previous_status"],
            new_status=row["new_status"],
            comment=row["comment"],
            timestamp=row["timestamp"],
            metadata=json.loads(row["metadata_json"]),
        )

    # ── Review queue ─────────────────────────────────────────────────────

    def save_queue_item(self, item: ApprovalQueueItem) -> None:
        """Insert or refresh the queue row of one workflow."""
        with self._connect("save_queue_item") as conn:
            self._upsert_queue_item(conn, item)

    @staticmethod
    def _upsert_queue_item(conn: sqlite3.Connection, item: ApprovalQueueItem) -> None:
        conn.execute(
            """
            INSERT OR REPLACE INTO approval_queue
            (workflow_id, form_type, title, status, priority, score, created_at, updated_at, due_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                item.workflow_id,
                item.form_type.value if item.form_type else None,
                item.title,
                item.status.value,
                item.priority.value,
                item.score,
                _ts(item.created_at),
                _ts(item.updated_at),
                _ts(item.due_at),
            ),
        )

    def get_approval_queue(
        self, status: Optional[str] = None, priority: Optional[str] = None
    ) -> List[ApprovalQueueItem]:
        """
        Open approval items, most urgent priority first, then oldest first.

        Args:
            status: Restrict to one open status (pending, needs_review)
            priority: Restrict to one priority

        Returns:
            List of queue items
        """
        statuses = [status] if status else list(OPEN_STATUSES)
        query = f"SELECT * FROM approval_queue WHERE status IN ({', '.join('?' for _ in statuses)})"
        params: List[Any] = list(statuses)
        if priority:
            query += " AND priority = ?"
            params.append(priority)
        query += """
            ORDER BY CASE priority
                WHEN 'critical' THEN 0 WHEN 'high' THEN 1 WHEN 'medium' THEN 2 ELSE 3
            END, created_at ASC
        """

        with self._connect("get_approval_queue") as conn:
            rows = conn.execute(query, params).fetchall()

        items = [ApprovalQueueItem(**dict(row)) for row in rows]
        logger.info("approval_queue_retrieved", status=status, priority=priority, count=len(items))
        return items

    def get_overdue_items(self, now: Optional[datetime] = None) -> List[ApprovalQueueItem]:
        """Open items whose due date has passed, most urgent first."""
        now = now or datetime.now(timezone.utc)
        with self._connect("get_overdue_items") as conn:
            rows = conn.execute(
                f"SELECT * FROM approval_queue WHERE due_at < ? AND status IN ({', '.join('?' for _ in OPEN_STATUSES)})",
                (_ts(now), *OPEN_STATUSES),
            ).fetchall()

        return sorted((ApprovalQueueItem(**dict(row)) for row in rows), key=_queue_key)

    # ── Documents ────────────────────────────────────────────────────────

    def save_document(self, workflow_id: str, state: WorkflowState) -> None:
        """
        Save or update the final state of a document.

        Args:
            workflow_id: Workflow identifier
            state: Workflow state snapshot
        """
        with self._connect("save_document") as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO workflow_documents
                (workflow_id, form_type, status, state_json, updated_at)
                VALUES (?, ?, ?, ?, CURRENT_TIMESTAMP)
                """,
                (
                    workflow_id,
                    state.mapping_data.form_type if state.mapping_data else None,
                    _document_status(state),
                    state.model_dump_json(),
                ),
            )

        logger.info("workflow_document_saved", workflow_id=workflow_id, status=_document_status(state))

    def get_document(self, workflow_id: str) -> Optional[Dict[str, Any]]:
        """
        Retrieve a saved document by workflow ID.

        Args:
            workflow_id: Workflow identifier

        Returns:
            Document dictionary or None if not found
        """
        with self._connect("get_document") as conn:
            row = conn.execute(
                "SELECT * FROM workflow_documents WHERE workflow_id = ?",
                (workflow_id,),
            ).fetchone()

        if row:
            return self._row_to_document(row)

        return None

    def get_documents_by_status(self, status: str) -> List[Dict[str, Any]]:
        """
        Get saved documents with a given approval status, newest first.

        Args:
            status: Approval status (pending, approved, rejected, needs_review)

        Returns:
            List of document dictionaries
        """
        with self._connect("get_documents_by_status") as conn:
            rows = conn.execute(
                """
                SELECT * FROM workflow_documents
                WHERE status = ?
                ORDER BY updated_at DESC
                """,
                (status,),
            ).fetchall()

        documents = [self._row_to_document(row) for row in rows]
        logger.info("documents_by_status_retrieved", status=status, count=len(documents))

        return documents

    @staticmethod
    def _row_to_document(row: sqlite3.Row) -> Dict[str, Any]:
        return {
            "workflow_id": row["workflow_id"],
            "form_type": row["form_type"],
            "status": row["status"],
            "state": WorkflowState.model_validate_json(row["state_json"]),
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }


class InMemoryAuditStore:
    """Process-local repository for sessions without a database."""

    def __init__(self):
        self._entries: List[AuditEntry] = []
        self._queue: Dict[str, ApprovalQueueItem] = {}
        self._documents: Dict[str, Dict[str, Any]] = {}

    def append(self, entry: AuditEntry, queue_item: Optional[ApprovalQueueItem] = None) -> None:
        self._entries.append(entry.model_copy(deep=True))
        if queue_item is not None:
            self.save_queue_item(queue_item)

    def history(self, workflow_id: str) -> List[AuditEntry]:
        return [e.model_copy(deep=True) for e in self._entries if e.workflow_id == workflow_id]

    def entries(self, since: Optional[datetime] = None, until: Optional[datetime] = None) -> List[AuditEntry]:
        return [e.model_copy(deep=True) for e in self._entries if _in_range(e, since, until)]

    def save_queue_item(self, item: ApprovalQueueItem) -> None:
        self._queue[item.workflow_id] = item.model_copy(deep=True)

    def get_approval_queue(
        self, status: Optional[str] = None, priority: Optional[str] = None
    ) -> List[ApprovalQueueItem]:
        statuses = [status] if status else list(OPEN_STATUSES)
        items = [
            item for item in self._queue.values()
            if item.status.value in statuses and (priority is None or item.priority.value == priority)
        ]
        return sorted(items, key=_queue_key)

    def get_overdue_items(self, now: Optional[datetime] = None) -> List[ApprovalQueueItem]:
        now = now or datetime.now(timezone.utc)
        return [item for item in self.get_approval_queue() if item.due_at < now]

    def save_document(self, workflow_id: str, state: WorkflowState) -> None:
        self._documents[workflow_id] = {
            "workflow_id": workflow_id,
            "form_type": state.mapping_data.form_type if state.mapping_data else None,
            "status": _document_status(state),
            "state": state.model_copy(deep=True),
        }

    def get_document(self, workflow_id: str) -> Optional[Dict[str, Any]]:
        return self._documents.get(workflow_id)

    def get_documents_by_status(self, status: str) -> List[Dict[str, Any]]:
        return [d for d in self._documents.values() if d["status"] == status]
