"""Mapping step - projects extracted entities onto a target form."""

import math
from typing import Dict, List, Optional, Sequence, Union

import structlog

from backend.core.config import settings
from backend.core.errors import RecoverableCapabilityError
from backend.core.models import (
    ExtractionData,
    FieldCandidate,
    FormType,
    LegalMappingData,
    LegalTextFields,
    MappedField,
    MappingAction,
    MappingActionType,
    MappingSource,
    ProcedureFields,
    ProcedureMappingData,
)
from backend.ingestion.entities import AlgerianLegalEntityExtractor, EntityExtractionCapability
from backend.ingestion.schemas import FormFieldSpec, FormSchema, get_schema

logger = structlog.get_logger()


def _rank(candidate: FieldCandidate):
    position = candidate.position if candidate.position is not None else math.inf
    return (-candidate.confidence, candidate.order, position)


def _coerce_edit(field_spec: FormFieldSpec, value):
    """Shape a human edit for its field kind; list fields take one item per line."""
    if field_spec.kind == "list":
        if value is None:
            return []
        if isinstance(value, str):
            return [line.strip() for line in value.splitlines() if line.strip()]
        if isinstance(value, (list, tuple)):
            return [str(item).strip() for item in value if str(item).strip()]
        raise ValueError(f"{field_spec.name} expects a list, got {type(value).__name__}")
    if isinstance(value, (list, tuple, dict)):
        raise ValueError(f"{field_spec.name} expects a single value, got {type(value).__name__}")
    return value


class MappingResult:
    """
    Mapped fields for one form, in schema order, plus the fields left empty.

    Human overrides go through ``apply_action``; the aggregate confidence
    and missing-field lists are recomputed after each one.
    """

    def __init__(self, schema: FormSchema, fields: Dict[str, MappedField]):
        self.schema = schema
        self.fields: Dict[str, MappedField] = {
            name: fields[name] for name in schema.field_names if name in fields
        }
        self.actions: List[MappingAction] = []

    @property
    def form_type(self) -> FormType:
        return self.schema.form_type

    @property
    def unmapped_fields(self) -> List[str]:
        return [name for name in self.schema.field_names if name not in self.fields]

    @property
    def missing_required_fields(self) -> List[str]:
        return [name for name in self.schema.required_fields if name not in self.fields]

    @property
    def confidence(self) -> float:
        """Mean confidence over mapped fields; 0.0 when nothing is mapped."""
        if not self.fields:
            return 0.0
        return sum(f.confidence for f in self.fields.values()) / len(self.fields)

    @property
    def mapping_completed(self) -> bool:
        return not self.missing_required_fields

    @property
    def pending_review(self) -> List[str]:
        return [name for name, f in self.fields.items() if not f.is_accepted]

    @property
    def mapped_values(self) -> Dict[str, object]:
        return {name: f.mapped_value for name, f in self.fields.items()}

    def apply_action(self, action: MappingAction) -> MappedField:
        """Apply an accept, edit or reject decision to a single field."""
        field_spec = self.schema.get(action.field_name)
        field = self.fields.get(action.field_name)

        if action.type == MappingActionType.ACCEPT:
            if field is None:
                raise ValueError(f"Cannot accept unmapped field '{action.field_name}'")
            field.is_accepted = True
            if field.mapped_value is None:
                field.mapped_value = field.suggested_value

        elif action.type == MappingActionType.EDIT:
            value = _coerce_edit(field_spec, action.value)
            if field is None:
                field = MappedField(
                    field_name=field_spec.name,
                    field_label=field_spec.label,
                    confidence=1.0,
                    mapping_source=MappingSource.MANUAL,
                )
                self.fields[field_spec.name] = field
                self._reorder()
            if not field.is_edited:
                field.original_value = field.mapped_value
            field.mapped_value = value
            field.is_edited = True
            field.is_accepted = True
            field.mapping_source = MappingSource.MANUAL
            field.confidence = 1.0

        elif action.type == MappingActionType.REJECT:
            if field is None:
                raise ValueError(f"Cannot reject unmapped field '{action.field_name}'")
            del self.fields[action.field_name]

        self.actions.append(action)
        logger.info(
            "mapping_action_applied",
            action=action.type.value,
            field=action.field_name,
            confidence=round(self.confidence, 3),
        )
        return field

    def _reorder(self) -> None:
        self.fields = {name: self.fields[name] for name in self.schema.field_names if name in self.fields}

    def to_mapping_data(self) -> Union[LegalMappingData, ProcedureMappingData]:
        values = {}
        for name, field in self.fields.items():
            value = field.mapped_value
            if value is not None and self.schema.get(name).kind != "list" and not isinstance(value, str):
                value = str(value)
            values[name] = value

        common = dict(
            unmapped_fields=self.unmapped_fields,
            confidence=self.confidence,
            mapping_completed=self.mapping_completed,
        )
        if self.form_type == FormType.PROCEDURE:
            return ProcedureMappingData(form_fields=ProcedureFields(**values), **common)
        return LegalMappingData(form_fields=LegalTextFields(**values), **common)


class MappingStep:
    """Turns extracted text into a MappingResult for the selected form."""

    def __init__(
        self,
        capability: Optional[EntityExtractionCapability] = None,
        auto_accept_threshold: Optional[float] = None,
    ):
        self.capability = capability or AlgerianLegalEntityExtractor()
        self.auto_accept_threshold = (
            settings.mapping_auto_accept_threshold if auto_accept_threshold is None else auto_accept_threshold
        )

    def run(self, extraction: Union[ExtractionData, str], form_type: Union[FormType, str]) -> MappingResult:
        schema = get_schema(form_type)
        text = extraction.text if isinstance(extraction, ExtractionData) else extraction

        try:
            entities = self.capability.extract_entities(text)
            candidates = self.capability.map_to_schema(entities, text, schema.form_type)
        except Exception as e:
            logger.error("entity_extraction_failed", form_type=schema.form_type.value, error=str(e))
            raise RecoverableCapabilityError(
                f"L'extraction des entités a échoué: {e}", capability="entity_extraction", cause=e
            ) from e

        result = self.resolve(schema, candidates)
        logger.info(
            "mapping_completed",
            form_type=schema.form_type.value,
            mapped=len(result.fields),
            unmapped=len(result.unmapped_fields),
            missing_required=result.missing_required_fields,
            confidence=round(result.confidence, 3),
        )
        return result

    def resolve(self, schema: FormSchema, candidates: Sequence[FieldCandidate]) -> MappingResult:
        """Pick one winner per schema field; other candidates become alternatives."""
        by_field: Dict[str, List[FieldCandidate]] = {}
        for candidate in candidates:
            if candidate.field_name not in schema.field_names:
                logger.debug("candidate_ignored", field=candidate.field_name, form_type=schema.form_type.value)
                continue
            if candidate.value in (None, "", []):
                continue
            by_field.setdefault(candidate.field_name, []).append(candidate)

        fields: Dict[str, MappedField] = {}
        for name, options in by_field.items():
            ranked = sorted(options, key=_rank)
            winner = ranked[0]
            automatic = winner.confidence >= self.auto_accept_threshold
            fields[name] = MappedField(
                field_name=name,
                field_label=schema.label_for(name),
                mapped_value=winner.value,
                suggested_value=winner.value,
                confidence=winner.confidence,
                source_entities=winner.source_entities,
                mapping_source=MappingSource.AUTOMATIC if automatic else MappingSource.SUGGESTED,
                is_accepted=automatic,
                alternatives=ranked[1:],
            )

        return MappingResult(schema, fields)
