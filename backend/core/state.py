from typing import List, Optional

from pydantic import BaseModel, Field

from backend.core.models import (
    ExtractionData,
    MappingData,
    ValidationData,
    WorkflowData,
    WorkflowStep,
)


class WorkflowState(BaseModel):
    """State of one document under review, as seen by observers."""

    current_step: WorkflowStep = WorkflowStep.EXTRACTION
    completed_steps: List[WorkflowStep] = Field(default_factory=list)  # insertion order, no duplicates

    extraction_data: Optional[ExtractionData] = None
    mapping_data: Optional[MappingData] = None
    validation_data: Optional[ValidationData] = None
    workflow_data: Optional[WorkflowData] = None
