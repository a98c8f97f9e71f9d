"""Unit tests for the mapping step and human overrides."""

import pytest
from pydantic import TypeAdapter
from unittest.mock import Mock

from backend.core.errors import RecoverableCapabilityError
from backend.core.models import (
    ExtractionData,
    FormType,
    LegalMappingData,
    MappingAction,
    MappingActionType,
    MappingData,
    MappingSource,
    ProcedureMappingData,
)
from backend.ingestion.mapping import MappingStep
from backend.ingestion.schemas import FormFieldSpec, FormSchema, LEGAL_TEXT_SCHEMA, PROCEDURE_SCHEMA


@pytest.fixture
def three_field_schema():
    return FormSchema(
        form_type=FormType.LEGAL,
        label="Test",
        fields=[
            FormFieldSpec(name="title", label="Titre", required=True),
            FormFieldSpec(name="number", label="Numéro"),
            FormFieldSpec(name="date", label="Date", kind="date"),
        ],
    )


@pytest.fixture
def step():
    return MappingStep(capability=Mock())


class TestAggregateConfidence:
    def test_mean_over_all_mapped(self, step, three_field_schema, candidate):
        result = step.resolve(three_field_schema, [
            candidate("title", "Loi n° 08-09", 0.9),
            candidate("number", "08-09", 0.6),
            candidate("date", "25 février 2008", 0.3),
        ])

        assert result.confidence == pytest.approx(0.6)
        assert result.unmapped_fields == []

    def test_unmapped_fields_are_excluded_from_mean(self, step, three_field_schema, candidate):
        result = step.resolve(three_field_schema, [
            candidate("title", "Loi n° 08-09", 0.9),
            candidate("number", "08-09", 0.6),
        ])

        assert result.confidence == pytest.approx(0.75)
        assert result.unmapped_fields == ["date"]

    def test_nothing_mapped(self, step, three_field_schema):
        result = step.resolve(three_field_schema, [])

        assert result.confidence == 0.0
        assert result.missing_required_fields == ["title"]
        assert result.mapping_completed is False


class TestResolve:
    def test_threshold_decides_source(self, step, three_field_schema, candidate):
        result = step.resolve(three_field_schema, [
            candidate("title", "Loi n° 08-09", 0.8),
            candidate("number", "08-09", 0.79),
        ])

        assert result.fields["title"].mapping_source == MappingSource.AUTOMATIC
        assert result.fields["title"].is_accepted is True
        assert result.fields["number"].mapping_source == MappingSource.SUGGESTED
        assert result.fields["number"].is_accepted is False
        assert result.pending_review == ["number"]

    def test_highest_confidence_wins(self, step, three_field_schema, candidate):
        result = step.resolve(three_field_schema, [
            candidate("number", "90-08", 0.7, order=0),
            candidate("number", "08-09", 0.95, order=5),
        ])

        field = result.fields["number"]
        assert field.mapped_value == "08-09"
        assert [a.value for a in field.alternatives] == ["90-08"]

    def test_tie_goes_to_earliest_extracted(self, step, three_field_schema, candidate):
        result = step.resolve(three_field_schema, [
            candidate("number", "90-08", 0.95, order=7, position=120),
            candidate("number", "08-09", 0.95, order=2, position=4),
        ])

        assert result.fields["number"].mapped_value == "08-09"

    def test_tie_on_order_uses_position(self, step, three_field_schema, candidate):
        result = step.resolve(three_field_schema, [
            candidate("title", "second", 0.9, order=0, position=50),
            candidate("title", "first", 0.9, order=0, position=10),
        ])

        assert result.fields["title"].mapped_value == "first"

    def test_fields_follow_schema_order(self, step, three_field_schema, candidate):
        result = step.resolve(three_field_schema, [
            candidate("date", "25 février 2008"),
            candidate("title", "Loi"),
        ])

        assert list(result.fields) == ["title", "date"]

    def test_unknown_and_empty_candidates_are_ignored(self, step, three_field_schema, candidate):
        result = step.resolve(three_field_schema, [
            candidate("signatory", "Abdelaziz"),
            candidate("title", ""),
        ])

        assert result.fields == {}


class TestMappingActions:
    def test_edit_keeps_original(self, legal_mapping):
        legal_mapping.apply_action(MappingAction(type=MappingActionType.EDIT, field_name="number", value="08-10"))

        field = legal_mapping.fields["number"]
        assert field.mapped_value == "08-10"
        assert field.original_value == "08-09"
        assert field.is_edited is True
        assert field.mapping_source == MappingSource.MANUAL
        assert field.confidence == 1.0

    def test_edit_unmapped_field_maps_it(self, legal_mapping):
        legal_mapping.apply_action(MappingAction(type=MappingActionType.EDIT, field_name="jo_number", value="21"))

        assert legal_mapping.unmapped_fields == []
        assert list(legal_mapping.fields).index("jo_number") == LEGAL_TEXT_SCHEMA.field_names.index("jo_number")

    def test_reject_unmaps_field(self, legal_mapping):
        legal_mapping.apply_action(MappingAction(type=MappingActionType.REJECT, field_name="title"))

        assert "title" in legal_mapping.unmapped_fields
        assert legal_mapping.missing_required_fields == ["title"]

    def test_accept_suggestion(self, step, three_field_schema, candidate):
        result = step.resolve(three_field_schema, [candidate("number", "08-09", 0.5)])

        result.apply_action(MappingAction(type=MappingActionType.ACCEPT, field_name="number"))

        assert result.fields["number"].is_accepted is True
        assert result.fields["number"].mapping_source == MappingSource.SUGGESTED

    def test_accept_unmapped_field_raises(self, legal_mapping):
        with pytest.raises(ValueError):
            legal_mapping.apply_action(MappingAction(type=MappingActionType.ACCEPT, field_name="jo_number"))

    def test_unknown_field_raises(self, legal_mapping):
        with pytest.raises(KeyError):
            legal_mapping.apply_action(MappingAction(type=MappingActionType.EDIT, field_name="signatory", value="x"))

    def test_actions_are_recorded(self, legal_mapping):
        legal_mapping.apply_action(MappingAction(type=MappingActionType.ACCEPT, field_name="title"))

        assert [a.type for a in legal_mapping.actions] == [MappingActionType.ACCEPT]


class TestMappingData:
    def test_legal_payload(self, legal_mapping):
        data = legal_mapping.to_mapping_data()

        assert isinstance(data, LegalMappingData)
        assert data.form_type == "legal"
        assert data.form_fields.title == "Loi n°08-09"
        assert data.mapped_fields["number"] == "08-09"
        assert "jo_number" not in data.mapped_fields
        assert data.unmapped_fields == ["jo_number"]
        assert data.confidence == pytest.approx(0.95)
        assert data.mapping_completed is True

    def test_procedure_payload(self, step, candidate):
        result = step.resolve(PROCEDURE_SCHEMA, [
            candidate("title", "Extrait de naissance"),
            candidate("steps", ["Se présenter au guichet"]),
        ])

        data = result.to_mapping_data()

        assert isinstance(data, ProcedureMappingData)
        assert data.form_fields.steps == ["Se présenter au guichet"]
        assert data.mapping_completed is False

    def test_tagged_union_round_trip(self, legal_mapping):
        adapter = TypeAdapter(MappingData)

        parsed = adapter.validate_python(legal_mapping.to_mapping_data().model_dump())

        assert isinstance(parsed, LegalMappingData)
        assert adapter.validate_python({"form_type": "procedure"}).form_fields.title is None


class TestMappingStepRun:
    def test_uses_capability(self, mock_entity_extractor):
        extraction = ExtractionData(file_name="loi.pdf", text="Article 1 ...", confidence=0.95)

        result = MappingStep(capability=mock_entity_extractor).run(extraction, "legal")

        mock_entity_extractor.extract_entities.assert_called_once_with("Article 1 ...")
        assert result.form_type == FormType.LEGAL
        assert result.unmapped_fields == ["jo_number"]

    def test_capability_failure_is_recoverable(self):
        capability = Mock()
        capability.extract_entities.side_effect = RuntimeError("model unavailable")

        with pytest.raises(RecoverableCapabilityError) as exc_info:
            MappingStep(capability=capability).run("Article 1 ...", FormType.LEGAL)

        assert exc_info.value.capability == "entity_extraction"

    def test_real_extractor_on_legal_text(self, legal_text):
        result = MappingStep().run(legal_text, FormType.LEGAL)

        assert result.fields["number"].mapped_value == "08-09"
        assert result.fields["type"].mapped_value == "loi"
        assert result.fields["date"].mapped_value == "25 février 2008"
        assert result.fields["jo_number"].mapped_value == "21"
        assert set(result.unmapped_fields) == {"wilaya", "sector"}


def test_edit_list_field_with_text(step, candidate):
    """Test a text edit on a list field becomes one item per line"""
    result = step.resolve(PROCEDURE_SCHEMA, [candidate("title", "Extrait de naissance")])

    result.apply_action(MappingAction(type=MappingActionType.EDIT, field_name="steps", value="Se présenter au guichet"))
    result.apply_action(
        MappingAction(type=MappingActionType.EDIT, field_name="tags", value="état civil\n\nnaissance\n")
    )
    data = result.to_mapping_data()

    assert isinstance(data, ProcedureMappingData)
    assert data.form_fields.steps == ["Se présenter au guichet"]
    assert data.form_fields.tags == ["état civil", "naissance"]


def test_edit_rejects_mismatched_shapes(step, candidate):
    """Test edits whose shape does not fit the field kind are refused"""
    result = step.resolve(PROCEDURE_SCHEMA, [candidate("title", "Extrait de naissance")])

    with pytest.raises(ValueError):
        result.apply_action(MappingAction(type=MappingActionType.EDIT, field_name="steps", value=3))
    with pytest.raises(ValueError):
        result.apply_action(MappingAction(type=MappingActionType.EDIT, field_name="title", value=["a", "b"]))

    assert result.fields["title"].mapped_value == "Extrait de naissance"
    assert "steps" not in result.fields
