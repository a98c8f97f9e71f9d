"""Unit tests for audit and document persistence."""

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from backend.core.errors import PersistenceError
from backend.core.models import (
    ApprovalAction,
    ApprovalStatus,
    ApprovalPriority,
    ApprovalQueueItem,
    AuditEntry,
    FormType,
    LegalMappingData,
    LegalTextFields,
    WorkflowData,
    WorkflowStep,
)
from backend.core.state import WorkflowState
from backend.storage.audit_store import SqliteAuditStore


def _entry(workflow_id, action, new_status, previous=None, actor=None):
    return AuditEntry(
        workflow_id=workflow_id,
        action=action,
        actor=actor,
        previous_status=previous,
        new_status=new_status,
        metadata={"source": "test"},
    )


@pytest.fixture
def final_state():
    return WorkflowState(
        current_step=WorkflowStep.COMPLETED,
        completed_steps=[WorkflowStep.MAPPING, WorkflowStep.WORKFLOW],
        mapping_data=LegalMappingData(form_fields=LegalTextFields(title="Loi n° 08-09")),
        workflow_data=WorkflowData(status=ApprovalStatus.APPROVED, approver="amina"),
    )


@pytest.fixture(params=["sqlite", "memory"])
def repository(request, sqlite_store, memory_store):
    return sqlite_store if request.param == "sqlite" else memory_store


def test_history_is_ordered_and_scoped(repository):
    repository.append(_entry("wf-1", ApprovalAction.CREATED, ApprovalStatus.PENDING))
    repository.append(_entry("wf-2", ApprovalAction.CREATED, ApprovalStatus.PENDING))
    repository.append(_entry(
        "wf-1", ApprovalAction.APPROVE, ApprovalStatus.APPROVED, ApprovalStatus.PENDING, actor="amina"
    ))

    history = repository.history("wf-1")

    assert [e.action for e in history] == [ApprovalAction.CREATED, ApprovalAction.APPROVE]
    assert history[1].actor == "amina"
    assert history[1].previous_status == ApprovalStatus.PENDING
    assert history[0].metadata == {"source": "test"}


def test_unknown_workflow_has_no_history(repository):
    assert repository.history("missing") == []
    assert repository.get_document("missing") is None


def test_document_round_trip(repository, final_state):
    repository.save_document("wf-1", final_state)

    document = repository.get_document("wf-1")

    assert document["status"] == "approved"
    assert document["form_type"] == "legal"
    assert document["state"] == final_state
    assert [d["workflow_id"] for d in repository.get_documents_by_status("approved")] == ["wf-1"]


def test_save_document_overwrites(repository, final_state):
    repository.save_document("wf-1", final_state)
    reopened = final_state.model_copy(
        update={"workflow_data": WorkflowData(status=ApprovalStatus.NEEDS_REVIEW)}
    )

    repository.save_document("wf-1", reopened)

    assert repository.get_document("wf-1")["status"] == "needs_review"
    assert repository.get_documents_by_status("approved") == []


def test_sqlite_audit_rows_are_append_only(sqlite_store):
    entry = _entry("wf-1", ApprovalAction.CREATED, ApprovalStatus.PENDING)
    sqlite_store.append(entry)

    with pytest.raises(PersistenceError) as exc_info:
        sqlite_store.append(entry)

    assert isinstance(exc_info.value.cause, sqlite3.IntegrityError)
    assert exc_info.value.capability == "persistence"

    assert len(sqlite_store.history("wf-1")) == 1


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _queue_item(workflow_id, priority, created_hours_ago, status=ApprovalStatus.PENDING, due_in_days=5):
    created_at = NOW - timedelta(hours=created_hours_ago)
    return ApprovalQueueItem(
        workflow_id=workflow_id,
        form_type=FormType.LEGAL,
        status=status,
        priority=priority,
        score=80.0,
        created_at=created_at,
        updated_at=created_at,
        due_at=created_at + timedelta(days=due_in_days),
    )


def test_queue_orders_by_priority_then_age(repository):
    """Test the review queue lists urgent items first, oldest first within a priority"""
    repository.save_queue_item(_queue_item("wf-low", ApprovalPriority.LOW, 48))
    repository.save_queue_item(_queue_item("wf-high-new", ApprovalPriority.HIGH, 1))
    repository.save_queue_item(_queue_item("wf-critical", ApprovalPriority.CRITICAL, 2))
    repository.save_queue_item(_queue_item("wf-high-old", ApprovalPriority.HIGH, 10, ApprovalStatus.NEEDS_REVIEW))

    queue = repository.get_approval_queue()

    assert [item.workflow_id for item in queue] == ["wf-critical", "wf-high-old", "wf-high-new", "wf-low"]
    assert [i.workflow_id for i in repository.get_approval_queue(status="needs_review")] == ["wf-high-old"]
    assert [i.workflow_id for i in repository.get_approval_queue(priority="high")] == ["wf-high-old", "wf-high-new"]


def test_queue_drops_decided_items(repository):
    repository.save_queue_item(_queue_item("wf-1", ApprovalPriority.LOW, 1))
    repository.save_queue_item(_queue_item("wf-1", ApprovalPriority.LOW, 1, ApprovalStatus.APPROVED))

    assert repository.get_approval_queue() == []


def test_overdue_items(repository):
    repository.save_queue_item(_queue_item("wf-late", ApprovalPriority.MEDIUM, 72, due_in_days=1))
    repository.save_queue_item(_queue_item("wf-on-time", ApprovalPriority.CRITICAL, 1, due_in_days=1))
    repository.save_queue_item(
        _queue_item("wf-closed", ApprovalPriority.HIGH, 72, ApprovalStatus.REJECTED, due_in_days=1)
    )

    overdue = repository.get_overdue_items(now=NOW)

    assert [item.workflow_id for item in overdue] == ["wf-late"]


def test_entries_across_workflows(repository):
    old = _entry("wf-1", ApprovalAction.CREATED, ApprovalStatus.PENDING)
    old.timestamp = NOW - timedelta(days=3)
    recent = _entry("wf-2", ApprovalAction.CREATED, ApprovalStatus.PENDING)
    recent.timestamp = NOW
    repository.append(old)
    repository.append(recent)

    assert [e.workflow_id for e in repository.entries()] == ["wf-1", "wf-2"]
    assert [e.workflow_id for e in repository.entries(since=NOW - timedelta(days=1))] == ["wf-2"]
    assert [e.workflow_id for e in repository.entries(until=NOW - timedelta(days=1))] == ["wf-1"]


def test_sqlite_queue_row_follows_the_audit_write(sqlite_store):
    """Test a failed audit append leaves the queue row unchanged"""
    entry = _entry("wf-1", ApprovalAction.CREATED, ApprovalStatus.PENDING)
    sqlite_store.append(entry, _queue_item("wf-1", ApprovalPriority.LOW, 1))

    with pytest.raises(PersistenceError):
        sqlite_store.append(entry, _queue_item("wf-1", ApprovalPriority.LOW, 1, ApprovalStatus.APPROVED))

    assert [item.status for item in sqlite_store.get_approval_queue()] == [ApprovalStatus.PENDING]


def test_unreachable_database(tmp_path):
    with pytest.raises(PersistenceError):
        SqliteAuditStore(db_path=str(tmp_path / "missing" / "audit.db"))
