"""In-memory step state for one document under review."""

import uuid
from typing import Any, Optional, Tuple, Type, Union

from backend.core.logging import get_logger
from backend.core.models import (
    STEP_ORDER,
    ExtractionData,
    LegalMappingData,
    ProcedureMappingData,
    ValidationData,
    WorkflowData,
    WorkflowStep,
)
from backend.core.state import WorkflowState
from backend.workflow.events import STATE_CHANGED, WorkflowEventBus

logger = get_logger(__name__)

StepLike = Union[WorkflowStep, str]


def _ordinal(step: WorkflowStep) -> int:
    if step == WorkflowStep.COMPLETED:
        return len(STEP_ORDER)
    return STEP_ORDER.index(step)


class WorkflowStore:
    """
    Observable container for a single review session.

    Setters store a step's payload, mark the step completed and move
    ``current_step`` to the next step. Nothing here performs I/O.
    """

    def __init__(self, workflow_id: Optional[str] = None, events: Optional[WorkflowEventBus] = None):
        self.workflow_id = workflow_id or str(uuid.uuid4())
        self.events = events or WorkflowEventBus(self.workflow_id)
        self._state = WorkflowState()

    # ── Reads ────────────────────────────────────────────────────────────

    @property
    def state(self) -> WorkflowState:
        """Deep copy of the current state."""
        return self._state.model_copy(deep=True)

    @property
    def current_step(self) -> WorkflowStep:
        return self._state.current_step

    @property
    def completed_steps(self) -> Tuple[WorkflowStep, ...]:
        return tuple(self._state.completed_steps)

    @property
    def extraction_data(self) -> Optional[ExtractionData]:
        return self._state.extraction_data

    @property
    def mapping_data(self) -> Optional[Union[LegalMappingData, ProcedureMappingData]]:
        return self._state.mapping_data

    @property
    def validation_data(self) -> Optional[ValidationData]:
        return self._state.validation_data

    @property
    def workflow_data(self) -> Optional[WorkflowData]:
        return self._state.workflow_data

    # ── Step setters ─────────────────────────────────────────────────────

    def set_extraction_data(self, data: ExtractionData) -> bool:
        return self._complete_step(
            WorkflowStep.EXTRACTION, "extraction_data", data, ExtractionData, WorkflowStep.MAPPING
        )

    def set_mapping_data(self, data: Union[LegalMappingData, ProcedureMappingData]) -> bool:
        return self._complete_step(
            WorkflowStep.MAPPING,
            "mapping_data",
            data,
            (LegalMappingData, ProcedureMappingData),
            WorkflowStep.VALIDATION,
        )

    def set_validation_data(self, data: ValidationData) -> bool:
        return self._complete_step(
            WorkflowStep.VALIDATION, "validation_data", data, ValidationData, WorkflowStep.WORKFLOW
        )

    def set_workflow_data(self, data: WorkflowData) -> bool:
        return self._complete_step(
            WorkflowStep.WORKFLOW, "workflow_data", data, WorkflowData, WorkflowStep.COMPLETED
        )

    def _complete_step(
        self,
        step: WorkflowStep,
        attribute: str,
        data: Any,
        expected: Union[Type, Tuple[Type, ...]],
        next_step: WorkflowStep,
    ) -> bool:
        if not isinstance(data, expected):
            logger.warning(
                "step_data_ignored",
                workflow_id=self.workflow_id,
                step=step.value,
                received=type(data).__name__,
            )
            return False

        setattr(self._state, attribute, data)
        self._insert_completed(step)
        self._state.current_step = next_step

        logger.debug(
            "step_completed",
            workflow_id=self.workflow_id,
            step=step.value,
            current_step=next_step.value,
        )
        self._notify()
        return True

    # ── Navigation ───────────────────────────────────────────────────────

    def go_to_step(self, step: StepLike) -> None:
        """Jump to ``step`` without touching data or completed steps."""
        self._state.current_step = WorkflowStep(step)
        self._notify()

    def mark_step_completed(self, step: StepLike) -> None:
        if self._insert_completed(WorkflowStep(step)):
            self._notify()

    def reset_workflow(self) -> None:
        """Drop every payload and start again from extraction."""
        self._state = WorkflowState()
        logger.info("workflow_reset", workflow_id=self.workflow_id)
        self._notify()

    # ── Queries ──────────────────────────────────────────────────────────

    def can_access_step(self, step: StepLike) -> bool:
        try:
            target = WorkflowStep(step)
        except ValueError:
            return False
        if target in self._state.completed_steps:
            return True
        return _ordinal(target) <= _ordinal(self._state.current_step)

    def is_step_completed(self, step: StepLike) -> bool:
        try:
            return WorkflowStep(step) in self._state.completed_steps
        except ValueError:
            return False

    # ── Internals ────────────────────────────────────────────────────────

    def _insert_completed(self, step: WorkflowStep) -> bool:
        if step in self._state.completed_steps:
            return False
        self._state.completed_steps.append(step)
        return True

    def _notify(self) -> None:
        self.events.publish(STATE_CHANGED, self.state)


def create_workflow_store(
    workflow_id: Optional[str] = None, events: Optional[WorkflowEventBus] = None
) -> WorkflowStore:
    """Create a store for a new review session."""
    return WorkflowStore(workflow_id=workflow_id, events=events)
