from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowStep(str, Enum):
    EXTRACTION = "extraction"
    MAPPING = "mapping"
    VALIDATION = "validation"
    WORKFLOW = "workflow"
    COMPLETED = "completed"


# Gated steps in pipeline order; COMPLETED sits after the last one
STEP_ORDER: List[WorkflowStep] = [
    WorkflowStep.EXTRACTION,
    WorkflowStep.MAPPING,
    WorkflowStep.VALIDATION,
    WorkflowStep.WORKFLOW,
]


class FormType(str, Enum):
    LEGAL = "legal"
    PROCEDURE = "procedure"


# ── Extraction ────────────────────────────────────────────────────────────────


class RecognitionResult(BaseModel):
    """Raw output of a recognition capability, before normalisation."""

    text: str
    confidence: float  # either 0-1 or 0-100 depending on the engine
    pages: int = 1
    language: Optional[str] = None
    method: str = "unknown"


class ExtractionData(BaseModel):
    file_reference: Optional[str] = None
    file_name: str
    file_size: int = 0
    file_type: str = "application/octet-stream"
    text: str
    confidence: float = Field(ge=0, le=1)
    language: str = "fr"  # ar, fr, mixed
    pages: int = 1
    method: str = "unknown"
    extracted_at: datetime = Field(default_factory=_utcnow)


class ExtractionLogEntry(BaseModel):
    timestamp: datetime = Field(default_factory=_utcnow)
    method: str
    file_name: str
    success: bool
    details: Optional[str] = None


# ── Entities & mapping ────────────────────────────────────────────────────────


class LegalEntity(BaseModel):
    type: str  # date, number, institution, reference, subject, jo_number, jo_date, doc_type
    value: str
    original_text: str
    confidence: float = Field(ge=0, le=1)
    start: int = 0
    end: int = 0
    order: int = 0  # extraction sequence, used to break confidence ties


class FieldCandidate(BaseModel):
    """One proposed value for a form field."""

    field_name: str
    value: Any
    confidence: float = Field(ge=0, le=1)
    source: str = "extraction"  # regex, extraction, inference
    source_entities: List[LegalEntity] = Field(default_factory=list)
    order: int = 0
    position: Optional[int] = None


class MappingSource(str, Enum):
    AUTOMATIC = "automatic"
    SUGGESTED = "suggested"
    MANUAL = "manual"


class MappedField(BaseModel):
    field_name: str
    field_label: str
    mapped_value: Any = None
    suggested_value: Any = None
    confidence: float = Field(ge=0, le=1)
    source_entities: List[LegalEntity] = Field(default_factory=list)
    mapping_source: MappingSource = MappingSource.SUGGESTED
    is_accepted: bool = False
    is_edited: bool = False
    original_value: Any = None
    alternatives: List[FieldCandidate] = Field(default_factory=list)


class MappingActionType(str, Enum):
    ACCEPT = "accept"
    EDIT = "edit"
    REJECT = "reject"


class MappingAction(BaseModel):
    type: MappingActionType
    field_name: str
    value: Any = None
    timestamp: datetime = Field(default_factory=_utcnow)


class LegalTextFields(BaseModel):
    """Typed field set of the legal-text form."""

    title: Optional[str] = None
    number: Optional[str] = None
    date: Optional[str] = None
    type: Optional[str] = None
    institution: Optional[str] = None
    jo_number: Optional[str] = None
    jo_date: Optional[str] = None
    wilaya: Optional[str] = None
    sector: Optional[str] = None
    description: Optional[str] = None
    content: Optional[str] = None
    language: Optional[str] = None


class ProcedureFields(BaseModel):
    """Typed field set of the administrative-procedure form."""

    title: Optional[str] = None
    description: Optional[str] = None
    institution: Optional[str] = None
    category: Optional[str] = None
    duration: Optional[str] = None
    cost: Optional[str] = None
    required_documents: Optional[List[str]] = None
    steps: Optional[List[str]] = None
    tags: Optional[List[str]] = None


class _MappingDataBase(BaseModel):
    unmapped_fields: List[str] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0, le=1)
    mapping_completed: bool = False

    @property
    def mapped_fields(self) -> Dict[str, Any]:
        """Field name -> value for every field that received a value."""
        return self.form_fields.model_dump(exclude_none=True)


class LegalMappingData(_MappingDataBase):
    form_type: Literal["legal"] = "legal"
    form_fields: LegalTextFields = Field(default_factory=LegalTextFields)


class ProcedureMappingData(_MappingDataBase):
    form_type: Literal["procedure"] = "procedure"
    form_fields: ProcedureFields = Field(default_factory=ProcedureFields)


MappingData = Annotated[
    Union[LegalMappingData, ProcedureMappingData],
    Field(discriminator="form_type"),
]


# ── Validation ────────────────────────────────────────────────────────────────


class ValidationData(BaseModel):
    is_valid: bool
    warnings: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    reviewed_at: datetime = Field(default_factory=_utcnow)
    reviewer: Optional[str] = None
    score: float = Field(default=0.0, ge=0, le=100)
    recommendations: List[str] = Field(default_factory=list)


# ── Approval ──────────────────────────────────────────────────────────────────


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    NEEDS_REVIEW = "needs_review"


class ApprovalAction(str, Enum):
    CREATED = "created"
    APPROVE = "approve"
    REJECT = "reject"
    REQUEST_REVIEW = "request_review"
    RESUBMIT = "resubmit"
    REOPEN = "reopen"


class ApprovalPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


PRIORITY_RANK = {
    ApprovalPriority.CRITICAL: 0,
    ApprovalPriority.HIGH: 1,
    ApprovalPriority.MEDIUM: 2,
    ApprovalPriority.LOW: 3,
}


class WorkflowData(BaseModel):
    status: ApprovalStatus = ApprovalStatus.PENDING
    approver: Optional[str] = None
    approved_at: Optional[datetime] = None
    comments: Optional[str] = None
    final_data: Dict[str, Any] = Field(default_factory=dict)


class AuditEntry(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_id: str
    action: ApprovalAction
    actor: Optional[str] = None  # None when system-initiated
    previous_status: Optional[ApprovalStatus] = None
    new_status: ApprovalStatus
    comment: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ApprovalQueueItem(BaseModel):
    """An approval item as listed in the review queue."""

    workflow_id: str
    form_type: Optional[FormType] = None
    title: Optional[str] = None
    status: ApprovalStatus
    priority: ApprovalPriority
    score: float = Field(default=0.0, ge=0, le=100)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    due_at: datetime
