"""
Per-document review session.

A WorkflowSession owns one store, one event bus, the step engines and the
approval item for a single document. Step methods never raise for expected
failures: capability errors and out-of-order calls come back as a failed
StepOutcome and leave the store untouched.
"""

import uuid
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional, Union

from pydantic import BaseModel

from backend.approval.workflow import ApprovalWorkflow
from backend.core.errors import IllegalTransitionError, RecoverableCapabilityError
from backend.core.logging import QanunLogger, get_logger, session_scope
from backend.core.models import FormType, MappingAction, ValidationData, WorkflowStep
from backend.ingestion.entities import EntityExtractionCapability
from backend.ingestion.extraction import ExtractionStatusLog, ExtractionStep, RecognitionCapability
from backend.ingestion.mapping import MappingResult, MappingStep
from backend.ingestion.validation import DuplicateIndex, ValidationRuleEngine
from backend.storage.audit_store import AuditRepository, InMemoryAuditStore
from backend.workflow.events import (
    APPROVAL_FINALIZED,
    EXTRACTION_LOGGED,
    MAPPING_REQUESTED,
    STEP_FAILED,
    WorkflowEventBus,
)
from backend.workflow.store import WorkflowStore

logger = get_logger(__name__)
timer = QanunLogger.get("session")

IdentityProvider = Callable[[], Optional[str]]


class StepOutcome(BaseModel):
    success: bool
    message: str
    step: WorkflowStep
    data: Any = None


class WorkflowSession:
    """Drives one document from upload to a final approval decision."""

    def __init__(
        self,
        store: WorkflowStore,
        extraction: ExtractionStep,
        mapping: MappingStep,
        validation: ValidationRuleEngine,
        repository: AuditRepository,
        identity: IdentityProvider,
    ):
        self.store = store
        self.events: WorkflowEventBus = store.events
        self.extraction = extraction
        self.mapping = mapping
        self.validation = validation
        self.repository = repository
        self.identity = identity

        self.mapping_result: Optional[MappingResult] = None
        self.approval = ApprovalWorkflow(store.workflow_id, repository=repository, events=self.events)

    @classmethod
    def create(
        cls,
        workflow_id: Optional[str] = None,
        recognizer: Optional[RecognitionCapability] = None,
        entity_extractor: Optional[EntityExtractionCapability] = None,
        repository: Optional[AuditRepository] = None,
        duplicates: Optional[DuplicateIndex] = None,
        identity: Optional[IdentityProvider] = None,
        status_log: Optional[ExtractionStatusLog] = None,
    ) -> "WorkflowSession":
        """Build a session with its own store and event bus."""
        workflow_id = workflow_id or str(uuid.uuid4())
        store = WorkflowStore(workflow_id=workflow_id, events=WorkflowEventBus(workflow_id))
        session = cls(
            store=store,
            extraction=ExtractionStep(recognizer=recognizer, status_log=status_log),
            mapping=MappingStep(capability=entity_extractor),
            validation=ValidationRuleEngine(duplicates=duplicates),
            repository=repository or InMemoryAuditStore(),
            identity=identity or (lambda: None),
        )
        logger.info("session_created", workflow_id=workflow_id)
        return session

    @property
    def workflow_id(self) -> str:
        return self.store.workflow_id

    # ── Extraction ───────────────────────────────────────────────────────

    def run_extraction(self, source: Union[str, Path], file_type: Optional[str] = None) -> StepOutcome:
        step = WorkflowStep.EXTRACTION
        with session_scope(self.workflow_id):
            try:
                with timer.timed("extraction", context={"source": str(source)}):
                    data = self.extraction.run(source, file_type=file_type)
            except RecoverableCapabilityError as e:
                self._publish_last_extraction_log()
                return self._fail(step, e)

            self._publish_last_extraction_log()
            self.store.set_extraction_data(data)
            return StepOutcome(
                success=True,
                message=f"{len(data.text)} caractères extraits de {data.file_name}",
                step=step,
                data=data,
            )

    def _publish_last_extraction_log(self) -> None:
        recent = self.extraction.status_log.recent(1)
        if recent:
            self.events.publish(EXTRACTION_LOGGED, recent[0])

    # ── Mapping ──────────────────────────────────────────────────────────

    def run_mapping(self, form_type: Union[FormType, str]) -> StepOutcome:
        step = WorkflowStep.MAPPING
        with session_scope(self.workflow_id):
            blocked = self._gate(step)
            if blocked:
                return blocked
            extraction = self.store.extraction_data
            if extraction is None:
                return self._refuse(step, "Aucun texte extrait à mapper")

            try:
                form_type = FormType(form_type)
            except ValueError:
                return self._refuse(step, f"Type de formulaire inconnu: {form_type}")

            self.events.publish(MAPPING_REQUESTED, {"form_type": form_type.value, "workflow_id": self.workflow_id})
            try:
                with timer.timed("mapping", context={"form_type": form_type.value}):
                    self.mapping_result = self.mapping.run(extraction, form_type)
            except RecoverableCapabilityError as e:
                return self._fail(step, e)

            result = self.mapping_result
            return StepOutcome(
                success=True,
                message=f"{len(result.fields)} champ(s) mappé(s), {len(result.unmapped_fields)} non mappé(s)",
                step=step,
                data=result,
            )

    def apply_mapping_action(self, action: MappingAction) -> StepOutcome:
        step = WorkflowStep.MAPPING
        with session_scope(self.workflow_id):
            if self.mapping_result is None:
                return self._refuse(step, "Aucun mapping en cours")
            try:
                field = self.mapping_result.apply_action(action)
            except (KeyError, ValueError) as e:
                return self._refuse(step, str(e))
            return StepOutcome(success=True, message=f"{action.type.value}: {action.field_name}", step=step, data=field)

    def confirm_mapping(self) -> StepOutcome:
        """Write the current mapping result into the store."""
        step = WorkflowStep.MAPPING
        with session_scope(self.workflow_id):
            blocked = self._gate(step)
            if blocked:
                return blocked
            if self.mapping_result is None:
                return self._refuse(step, "Aucun mapping à confirmer")

            if self.approval.is_decided:
                return self._refuse(step, "Rouvrir l'approbation avant de modifier le mapping")

            data = self.mapping_result.to_mapping_data()
            if self.approval.is_open:
                try:
                    self.approval.update_mapping(data)
                except RecoverableCapabilityError as e:
                    return self._fail(step, e)
            self.store.set_mapping_data(data)
            return StepOutcome(success=True, message="Mapping confirmé", step=step, data=data)

    # ── Validation ───────────────────────────────────────────────────────

    def run_validation(self, reviewer: Optional[str] = None) -> StepOutcome:
        step = WorkflowStep.VALIDATION
        with session_scope(self.workflow_id):
            blocked = self._gate(step)
            if blocked:
                return blocked
            if self.mapping_result is None or self.store.mapping_data is None:
                return self._refuse(step, "Le mapping doit être confirmé avant la validation")

            result = self.validation.validate(self.mapping_result, self.store.extraction_data, reviewer=reviewer)
            failed = self._store_validation(step, result)
            if failed:
                return failed
            return StepOutcome(
                success=True,
                message="Document valide" if result.is_valid else f"{len(result.errors)} erreur(s) de validation",
                step=step,
                data=result,
            )

    def review_validation(
        self,
        reviewer: Optional[str] = None,
        add_warnings: Iterable[str] = (),
        add_errors: Iterable[str] = (),
        resolved: Iterable[str] = (),
    ) -> StepOutcome:
        step = WorkflowStep.VALIDATION
        with session_scope(self.workflow_id):
            current = self.store.validation_data
            if current is None:
                return self._refuse(step, "Aucune validation à réviser")
            reviewer = reviewer or self.identity()
            if not reviewer:
                return self._refuse(step, "Un réviseur identifié est requis")

            result = self.validation.review(current, reviewer, add_warnings, add_errors, resolved)
            failed = self._store_validation(step, result)
            if failed:
                return failed
            return StepOutcome(success=True, message="Validation révisée", step=step, data=result)

    def _store_validation(self, step: WorkflowStep, result: ValidationData) -> Optional[StepOutcome]:
        """Hand the result to an open approval item, then to the store."""
        if self.approval.is_decided:
            return self._refuse(step, "Rouvrir l'approbation avant de revalider")
        if self.approval.is_open:
            try:
                self.approval.update_validation(result)
            except RecoverableCapabilityError as e:
                return self._fail(step, e)
        self.store.set_validation_data(result)
        return None

    # ── Approval ─────────────────────────────────────────────────────────

    def open_approval(self) -> StepOutcome:
        step = WorkflowStep.WORKFLOW
        with session_scope(self.workflow_id):
            blocked = self._gate_decision()
            if blocked:
                return blocked
            validation, mapping = self.store.validation_data, self.store.mapping_data
            if validation is None or mapping is None:
                return self._refuse(step, "La validation doit précéder l'approbation")

            try:
                status = self.approval.open(validation, mapping)
            except IllegalTransitionError as e:
                return self._refuse(step, e.message)
            except RecoverableCapabilityError as e:
                return self._fail(step, e)
            return StepOutcome(success=True, message=f"Statut: {status.value}", step=step, data=status)

    def approve(self, comment: Optional[str] = None, modifications: Optional[Dict[str, Any]] = None) -> StepOutcome:
        return self._approval_action(self.approval.approve, comment, modifications=modifications)

    def reject(self, comment: Optional[str] = None) -> StepOutcome:
        return self._approval_action(self.approval.reject, comment)

    def request_review(self, comment: Optional[str] = None) -> StepOutcome:
        return self._approval_action(self.approval.request_review, comment)

    def resubmit(self, comment: Optional[str] = None, modifications: Optional[Dict[str, Any]] = None) -> StepOutcome:
        return self._approval_action(self.approval.resubmit, comment, modifications=modifications)

    def reopen(self, comment: Optional[str] = None) -> StepOutcome:
        return self._approval_action(self.approval.reopen, comment)

    def _approval_action(self, action: Callable[..., Any], comment: Optional[str], **kwargs: Any) -> StepOutcome:
        step = WorkflowStep.WORKFLOW
        with session_scope(self.workflow_id):
            blocked = self._gate_decision()
            if blocked:
                return blocked
            try:
                status = action(self.identity(), comment, **kwargs)
            except IllegalTransitionError as e:
                return self._refuse(step, e.message)
            except RecoverableCapabilityError as e:
                return self._fail(step, e)
            return StepOutcome(success=True, message=f"Statut: {status.value}", step=step, data=status)

    def finalize(self) -> StepOutcome:
        """Store the approval outcome, complete the workflow and persist it."""
        step = WorkflowStep.WORKFLOW
        with session_scope(self.workflow_id):
            blocked = self._gate_decision()
            if blocked:
                return blocked
            try:
                data = self.approval.to_workflow_data()
            except IllegalTransitionError as e:
                return self._refuse(step, e.message)

            state = self.store.state
            completed = state.completed_steps
            if WorkflowStep.WORKFLOW not in completed:
                completed = completed + [WorkflowStep.WORKFLOW]
            final_state = state.model_copy(
                update={"workflow_data": data, "current_step": WorkflowStep.COMPLETED, "completed_steps": completed}
            )
            try:
                self.repository.save_document(self.workflow_id, final_state)
            except RecoverableCapabilityError as e:
                return self._fail(step, e)

            self.store.set_workflow_data(data)
            self.events.publish(APPROVAL_FINALIZED, data)
            logger.info("workflow_finalized", workflow_id=self.workflow_id, status=data.status.value)
            return StepOutcome(success=True, message=f"Workflow terminé: {data.status.value}", step=step, data=data)

    # ── Misc ─────────────────────────────────────────────────────────────

    def reset(self) -> None:
        """Start the document over; the audit trail in the repository is kept."""
        self.store.reset_workflow()
        self.mapping_result = None
        self.approval = ApprovalWorkflow(self.workflow_id, repository=self.repository, events=self.events)

    def _gate(self, step: WorkflowStep) -> Optional[StepOutcome]:
        if self.store.can_access_step(step):
            return None
        return self._refuse(
            step, f"Étape '{step.value}' inaccessible depuis '{self.store.current_step.value}'"
        )

    def _gate_decision(self) -> Optional[StepOutcome]:
        """Approval decisions need a confirmed mapping that has been validated."""
        current = self.store.current_step
        if current in (WorkflowStep.WORKFLOW, WorkflowStep.COMPLETED):
            return None
        return self._refuse(
            WorkflowStep.WORKFLOW, f"Étape 'workflow' inaccessible depuis '{current.value}'"
        )

    def _refuse(self, step: WorkflowStep, message: str) -> StepOutcome:
        logger.warning("step_refused", workflow_id=self.workflow_id, step=step.value, reason=message)
        return StepOutcome(success=False, message=message, step=step)

    def _fail(self, step: WorkflowStep, error: RecoverableCapabilityError) -> StepOutcome:
        logger.error(
            "step_failed",
            workflow_id=self.workflow_id,
            step=step.value,
            capability=error.capability,
            error=error.message,
        )
        self.events.publish(
            STEP_FAILED,
            {"step": step.value, "capability": error.capability, "message": error.message},
        )
        return StepOutcome(success=False, message=error.message, step=step)
