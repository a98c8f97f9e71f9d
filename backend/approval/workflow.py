"""
Approval state machine for validated documents.

Statuses and the actions that move between them:

    pending       approve -> approved, reject -> rejected, request_review -> needs_review
    needs_review  resubmit -> pending, reject -> rejected
    approved      reopen -> needs_review
    rejected      reopen -> needs_review

Approved and rejected are terminal for every automatic path; only an
explicit ``reopen`` call leaves them. Every transition is audited.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from backend.approval.audit import AuditTrail
from backend.core.config import settings
from backend.core.errors import IllegalTransitionError
from backend.core.logging import get_logger
from backend.core.models import (
    ApprovalAction,
    ApprovalPriority,
    ApprovalQueueItem,
    ApprovalStatus,
    AuditEntry,
    LegalMappingData,
    ProcedureMappingData,
    ValidationData,
    WorkflowData,
)
from backend.storage.audit_store import AuditRepository, InMemoryAuditStore
from backend.workflow.events import APPROVAL_TRANSITION, WorkflowEventBus

logger = get_logger(__name__)

APPROVAL_TRANSITIONS: Dict[ApprovalStatus, Dict[ApprovalAction, ApprovalStatus]] = {
    ApprovalStatus.PENDING: {
        ApprovalAction.APPROVE: ApprovalStatus.APPROVED,
        ApprovalAction.REJECT: ApprovalStatus.REJECTED,
        ApprovalAction.REQUEST_REVIEW: ApprovalStatus.NEEDS_REVIEW,
    },
    ApprovalStatus.NEEDS_REVIEW: {
        ApprovalAction.RESUBMIT: ApprovalStatus.PENDING,
        ApprovalAction.REJECT: ApprovalStatus.REJECTED,
    },
    ApprovalStatus.APPROVED: {
        ApprovalAction.REOPEN: ApprovalStatus.NEEDS_REVIEW,
    },
    ApprovalStatus.REJECTED: {
        ApprovalAction.REOPEN: ApprovalStatus.NEEDS_REVIEW,
    },
}

TERMINAL_STATUSES = (ApprovalStatus.APPROVED, ApprovalStatus.REJECTED)


class ApprovalStateMachine:
    """Pure transition checks over APPROVAL_TRANSITIONS."""

    @staticmethod
    def can_transition(
        status: Union[ApprovalStatus, str], action: Union[ApprovalAction, str]
    ) -> Tuple[bool, Optional[ApprovalStatus], str]:
        """
        Check whether ``action`` is allowed from ``status``.

        Returns:
            (can_transition, next_status, reason)
        """
        try:
            status = ApprovalStatus(status)
            action = ApprovalAction(action)
        except ValueError as e:
            return (False, None, str(e))

        transitions = APPROVAL_TRANSITIONS.get(status, {})
        next_status = transitions.get(action)
        if next_status is None:
            valid = [a.value for a in transitions]
            return (False, None, f"Action '{action.value}' not valid for status '{status.value}'. Valid: {valid}")
        return (True, next_status, "Transition allowed")

    @staticmethod
    def allowed_actions(status: Union[ApprovalStatus, str]) -> List[ApprovalAction]:
        return list(APPROVAL_TRANSITIONS.get(ApprovalStatus(status), {}))

    @staticmethod
    def is_terminal(status: Union[ApprovalStatus, str]) -> bool:
        return ApprovalStatus(status) in TERMINAL_STATUSES


def compute_priority(validation: ValidationData) -> ApprovalPriority:
    """Review priority from the validation score; any error is at least high."""
    if validation.score < settings.approval_priority_critical_below:
        return ApprovalPriority.CRITICAL
    if validation.score < settings.approval_priority_high_below or validation.errors:
        return ApprovalPriority.HIGH
    if validation.score < settings.approval_priority_medium_below:
        return ApprovalPriority.MEDIUM
    return ApprovalPriority.LOW


def due_date(priority: ApprovalPriority, created_at: datetime) -> datetime:
    """Review deadline: the more urgent the priority, the sooner."""
    days = {
        ApprovalPriority.CRITICAL: settings.approval_due_days_critical,
        ApprovalPriority.HIGH: settings.approval_due_days_high,
        ApprovalPriority.MEDIUM: settings.approval_due_days_medium,
        ApprovalPriority.LOW: settings.approval_due_days_low,
    }[priority]
    return created_at + timedelta(days=days)


class ApprovalWorkflow:
    """
    Approval item for one document.

    Holds the current status, reviewer modifications and the audit trail.
    Each change is written to the repository first; the in-memory status and
    trail only move once that write has succeeded.
    """

    def __init__(
        self,
        workflow_id: str,
        repository: Optional[AuditRepository] = None,
        events: Optional[WorkflowEventBus] = None,
    ):
        self.workflow_id = workflow_id
        self.repository = repository or InMemoryAuditStore()
        self.events = events
        self.audit = AuditTrail(workflow_id)

        self.status: Optional[ApprovalStatus] = None
        self.validation: Optional[ValidationData] = None
        self.mapping: Optional[Union[LegalMappingData, ProcedureMappingData]] = None
        self.modifications: Dict[str, Any] = {}
        self.approver: Optional[str] = None
        self.approved_at: Optional[datetime] = None
        self.comments: Optional[str] = None
        self.created_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status is not None

    @property
    def is_decided(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def priority(self) -> Optional[ApprovalPriority]:
        return compute_priority(self.validation) if self.validation else None

    def open(
        self,
        validation: ValidationData,
        mapping: Union[LegalMappingData, ProcedureMappingData],
    ) -> ApprovalStatus:
        """
        Create the item in ``pending`` and triage it.

        Documents with errors or warnings go straight to ``needs_review``;
        clean ones wait in ``pending`` for a human decision.
        """
        if self.is_open:
            raise IllegalTransitionError(
                f"Approval for workflow '{self.workflow_id}' is already open",
                current=self.status.value,
                action=ApprovalAction.CREATED.value,
            )

        created_at = datetime.now(timezone.utc)
        priority = compute_priority(validation)
        entry = self._entry(
            ApprovalAction.CREATED,
            None,
            None,
            ApprovalStatus.PENDING,
            None,
            {"score": validation.score, "priority": priority.value},
        )
        self.repository.append(
            entry, self._queue_item(ApprovalStatus.PENDING, validation, mapping, created_at)
        )

        self.validation = validation
        self.mapping = mapping
        self.created_at = created_at
        self.status = ApprovalStatus.PENDING
        self._record(entry)

        self._triage()
        logger.info(
            "approval_opened",
            workflow_id=self.workflow_id,
            status=self.status.value,
            priority=self.priority.value,
        )
        return self.status

    def update_validation(self, validation: ValidationData) -> ApprovalStatus:
        """Judge an open item against a new validation result, then triage it again."""
        self._require_undecided("update_validation")
        self.repository.save_queue_item(self._queue_item(self.status, validation, self.mapping, self.created_at))
        self.validation = validation
        logger.info("approval_validation_updated", workflow_id=self.workflow_id, is_valid=validation.is_valid)
        self._triage()
        return self.status

    def update_mapping(self, mapping: Union[LegalMappingData, ProcedureMappingData]) -> None:
        """Replace the mapped fields an open item will finalize with."""
        self._require_undecided("update_mapping")
        self.repository.save_queue_item(self._queue_item(self.status, self.validation, mapping, self.created_at))
        self.mapping = mapping
        logger.info("approval_mapping_updated", workflow_id=self.workflow_id, fields=len(mapping.mapped_fields))

    # ── Actions ──────────────────────────────────────────────────────────

    def approve(
        self, actor: str, comment: Optional[str] = None, modifications: Optional[Dict[str, Any]] = None
    ) -> ApprovalStatus:
        if self.validation is not None and self.validation.errors:
            logger.warning(
                "approval_transition_blocked",
                workflow_id=self.workflow_id,
                reason="validation_errors",
                errors=len(self.validation.errors),
            )
            raise IllegalTransitionError(
                "Cannot approve a document with validation errors",
                current=self.status.value if self.status else None,
                action=ApprovalAction.APPROVE.value,
            )
        return self._transition(
            ApprovalAction.APPROVE,
            actor,
            comment,
            {"modifications": modifications or {}},
            updates={
                "approver": actor,
                "approved_at": datetime.now(timezone.utc),
                "modifications": {**self.modifications, **(modifications or {})},
            },
        )

    def reject(self, actor: str, comment: Optional[str] = None) -> ApprovalStatus:
        return self._transition(
            ApprovalAction.REJECT, actor, comment, updates={"approver": actor, "approved_at": None}
        )

    def request_review(self, actor: Optional[str], comment: Optional[str] = None) -> ApprovalStatus:
        return self._transition(ApprovalAction.REQUEST_REVIEW, actor, comment)

    def resubmit(
        self, actor: str, comment: Optional[str] = None, modifications: Optional[Dict[str, Any]] = None
    ) -> ApprovalStatus:
        return self._transition(
            ApprovalAction.RESUBMIT,
            actor,
            comment,
            {"modifications": modifications or {}},
            updates={"modifications": {**self.modifications, **(modifications or {})}},
        )

    def reopen(self, actor: str, comment: Optional[str] = None) -> ApprovalStatus:
        return self._transition(ApprovalAction.REOPEN, actor, comment, updates={"approved_at": None})

    # ── Output ───────────────────────────────────────────────────────────

    def history(self) -> List[AuditEntry]:
        return self.audit.entries

    def queue_item(self) -> Optional[ApprovalQueueItem]:
        if not self.is_open:
            return None
        return self._queue_item(self.status, self.validation, self.mapping, self.created_at)

    def to_workflow_data(self) -> WorkflowData:
        if not self.is_open:
            raise IllegalTransitionError(
                f"Approval for workflow '{self.workflow_id}' has not been opened", action="finalize"
            )
        final_data = dict(self.mapping.mapped_fields) if self.mapping is not None else {}
        final_data.update(self.modifications)
        return WorkflowData(
            status=self.status,
            approver=self.approver,
            approved_at=self.approved_at,
            comments=self.comments,
            final_data=final_data,
        )

    # ── Internals ────────────────────────────────────────────────────────

    def _triage(self) -> None:
        validation = self.validation
        if self.status != ApprovalStatus.PENDING or not (validation.errors or validation.warnings):
            return
        self._transition(
            ApprovalAction.REQUEST_REVIEW,
            actor=None,
            comment="; ".join(validation.errors + validation.warnings),
            metadata={"automatic": True, "errors": len(validation.errors), "warnings": len(validation.warnings)},
        )

    def _require_undecided(self, action: str) -> None:
        if not self.is_open:
            raise IllegalTransitionError(
                f"Approval for workflow '{self.workflow_id}' has not been opened", action=action
            )
        if self.is_decided:
            raise IllegalTransitionError(
                f"Approval for workflow '{self.workflow_id}' is {self.status.value}; reopen it first",
                current=self.status.value,
                action=action,
            )

    def _transition(
        self,
        action: ApprovalAction,
        actor: Optional[str],
        comment: Optional[str],
        metadata: Optional[Dict[str, Any]] = None,
        updates: Optional[Dict[str, Any]] = None,
    ) -> ApprovalStatus:
        if not self.is_open:
            raise IllegalTransitionError(
                f"Approval for workflow '{self.workflow_id}' has not been opened", action=action.value
            )

        allowed, next_status, reason = ApprovalStateMachine.can_transition(self.status, action)
        if not allowed:
            logger.warning(
                "approval_transition_blocked",
                workflow_id=self.workflow_id,
                status=self.status.value,
                action=action.value,
                reason=reason,
            )
            raise IllegalTransitionError(reason, current=self.status.value, action=action.value)

        entry = self._entry(action, actor, self.status, next_status, comment, metadata or {})
        self.repository.append(
            entry, self._queue_item(next_status, self.validation, self.mapping, self.created_at)
        )

        self.status = next_status
        if comment:
            self.comments = comment
        for name, value in (updates or {}).items():
            setattr(self, name, value)
        self._record(entry)

        if self.events is not None:
            self.events.publish(APPROVAL_TRANSITION, entry)
        return next_status

    def _entry(
        self,
        action: ApprovalAction,
        actor: Optional[str],
        previous: Optional[ApprovalStatus],
        new: ApprovalStatus,
        comment: Optional[str],
        metadata: Dict[str, Any],
    ) -> AuditEntry:
        return AuditEntry(
            workflow_id=self.workflow_id,
            action=action,
            actor=actor,
            previous_status=previous,
            new_status=new,
            comment=comment,
            metadata=metadata,
        )

    def _record(self, entry: AuditEntry) -> None:
        self.audit.record(entry)
        logger.info(
            "approval_transition",
            workflow_id=self.workflow_id,
            action=entry.action.value,
            actor=entry.actor or "system",
            previous_status=entry.previous_status.value if entry.previous_status else None,
            new_status=entry.new_status.value,
        )

    def _queue_item(
        self,
        status: ApprovalStatus,
        validation: ValidationData,
        mapping: Optional[Union[LegalMappingData, ProcedureMappingData]],
        created_at: datetime,
    ) -> ApprovalQueueItem:
        priority = compute_priority(validation)
        return ApprovalQueueItem(
            workflow_id=self.workflow_id,
            form_type=mapping.form_type if mapping is not None else None,
            title=mapping.mapped_fields.get("title") if mapping is not None else None,
            status=status,
            priority=priority,
            score=validation.score,
            created_at=created_at,
            updated_at=datetime.now(timezone.utc),
            due_at=due_date(priority, created_at),
        )
