"""Unit tests for the validation rule engine."""

import pytest
from datetime import date
from unittest.mock import Mock

from backend.core.models import ExtractionData, MappingAction, MappingActionType
from backend.ingestion.mapping import MappingStep
from backend.ingestion.schemas import LEGAL_TEXT_SCHEMA, PROCEDURE_SCHEMA
from backend.ingestion.validation import DuplicateIndex, ValidationRuleEngine, parse_document_date


@pytest.fixture
def engine():
    return ValidationRuleEngine()


def _edit(mapping, field_name, value):
    mapping.apply_action(MappingAction(type=MappingActionType.EDIT, field_name=field_name, value=value))


def _resolve(schema, candidates):
    return MappingStep(capability=Mock()).resolve(schema, candidates)


class TestParseDocumentDate:
    def test_french(self):
        assert parse_document_date("25 février 2008") == date(2008, 2, 25)
        assert parse_document_date("1er mars 2010") == date(2010, 3, 1)

    def test_numeric_is_day_first(self):
        assert parse_document_date("05/03/2008") == date(2008, 3, 5)

    def test_iso(self):
        assert parse_document_date("2008-02-25") == date(2008, 2, 25)

    def test_unparseable(self):
        assert parse_document_date("hier") is None
        assert parse_document_date("31 février 2008") is None
        assert parse_document_date(None) is None


class TestValidate:
    def test_only_optional_field_missing(self, engine, legal_mapping):
        """Test a complete mapping without jo_number is valid with one warning"""
        result = engine.validate(legal_mapping)

        assert result.is_valid is True
        assert result.warnings == ["jo_number missing"]
        assert result.errors == []
        assert result.score == pytest.approx(85.0)

    def test_required_field_missing(self, engine, legal_mapping):
        legal_mapping.apply_action(MappingAction(type=MappingActionType.REJECT, field_name="institution"))

        result = engine.validate(legal_mapping)

        assert result.is_valid is False
        assert "institution is required" in result.errors
        assert result.recommendations[0].startswith("Corriger 1 problème")

    def test_empty_critical_field(self, engine, legal_mapping):
        _edit(legal_mapping, "title", "   ")

        result = engine.validate(legal_mapping)

        assert "title is empty" in result.errors

    def test_low_confidence_warning(self, engine, candidate, legal_candidates):
        candidates = [c for c in legal_candidates if c.field_name != "sector"]
        candidates.append(candidate("sector", "justice", 0.5))

        result = engine.validate(_resolve(LEGAL_TEXT_SCHEMA, candidates))

        assert "sector low confidence (50%)" in result.warnings
        assert "Réviser manuellement les champs à faible confiance" in result.recommendations

    def test_edited_field_is_not_low_confidence(self, engine, candidate, legal_candidates):
        candidates = [c for c in legal_candidates if c.field_name != "sector"]
        candidates.append(candidate("sector", "justice", 0.5))
        mapping = _resolve(LEGAL_TEXT_SCHEMA, candidates)
        _edit(mapping, "sector", "justice")

        result = engine.validate(mapping)

        assert not any("low confidence" in w for w in result.warnings)

    def test_low_recognition_confidence(self, engine, legal_mapping):
        extraction = ExtractionData(file_name="scan.png", text="...", confidence=0.4)

        result = engine.validate(legal_mapping, extraction)

        assert "recognition low confidence (40%)" in result.warnings

    def test_bad_formats(self, engine, legal_mapping):
        _edit(legal_mapping, "date", "hier")
        _edit(legal_mapping, "number", "huit")

        result = engine.validate(legal_mapping)

        assert "date has an unrecognized date format: hier" in result.warnings
        assert "number has an unexpected number format: huit" in result.warnings
        assert result.is_valid is True

    def test_date_span(self, engine, legal_mapping):
        _edit(legal_mapping, "jo_date", "23 avril 2010")

        result = engine.validate(legal_mapping)

        assert "dates are more than 365 days apart" in result.warnings

    def test_duplicate(self, legal_mapping):
        engine = ValidationRuleEngine(duplicates=DuplicateIndex([("LOI", "08-09")]))

        result = engine.validate(legal_mapping)

        assert result.is_valid is False
        assert "duplicate document: loi n° 08-09 already exists" in result.errors

    def test_numbered_type_requires_number(self, engine, legal_mapping):
        legal_mapping.apply_action(MappingAction(type=MappingActionType.REJECT, field_name="number"))

        result = engine.validate(legal_mapping)

        assert "number is required for loi" in result.errors
        assert "number missing" in result.warnings

    def test_type_must_be_allowed(self, engine, legal_mapping):
        _edit(legal_mapping, "type", "memo")

        result = engine.validate(legal_mapping)

        assert "type 'memo' is not an allowed legal text type" in result.errors

    def test_procedure_needs_a_step(self, engine, candidate):
        mapping = _resolve(PROCEDURE_SCHEMA, [
            candidate("title", "Extrait de naissance"),
            candidate("institution", "APC d'Alger"),
            candidate("steps", ["Se présenter au guichet"]),
        ])
        _edit(mapping, "steps", [])

        result = engine.validate(mapping)

        assert "at least one step is required" in result.errors

    def test_score_is_clamped(self, engine):
        result = engine.validate(_resolve(LEGAL_TEXT_SCHEMA, []))

        assert result.score == 0.0
        assert result.is_valid is False
        assert "Vérifier la qualité du document source" in result.recommendations

    def test_reviewer_is_recorded(self, engine, legal_mapping):
        assert engine.validate(legal_mapping, reviewer="amina").reviewer == "amina"


class TestReview:
    def test_resolving_a_warning(self, engine, legal_mapping):
        automated = engine.validate(legal_mapping)

        reviewed = engine.review(automated, "amina", resolved=["jo_number missing"])

        assert reviewed.warnings == []
        assert reviewed.reviewer == "amina"
        assert reviewed.score == pytest.approx(95.0)
        assert automated.warnings == ["jo_number missing"]

    def test_adding_an_error(self, engine, legal_mapping):
        automated = engine.validate(legal_mapping)

        reviewed = engine.review(automated, "amina", add_errors=["signature illisible"])

        assert reviewed.is_valid is False
        assert reviewed.errors == ["signature illisible"]
        assert reviewed.score == pytest.approx(60.0)
