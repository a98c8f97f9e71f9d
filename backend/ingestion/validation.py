"""
Validation step - rule checks over a mapping result.

A document that fails validation is a normal outcome: the engine always
returns ValidationData and never raises for rule violations.
"""

import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Iterable, List, Optional, Set, Tuple

import structlog
from dateutil import parser as date_parser

from backend.core.config import settings
from backend.core.models import ExtractionData, FormType, ValidationData
from backend.ingestion.mapping import MappingResult
from backend.ingestion.schemas import LEGAL_TEXT_TYPES, NUMBERED_TEXT_TYPES

logger = structlog.get_logger()

FRENCH_MONTH_NUMBERS = {
    "janvier": 1, "février": 2, "fevrier": 2, "mars": 3, "avril": 4, "mai": 5, "juin": 6,
    "juillet": 7, "août": 8, "aout": 8, "septembre": 9, "octobre": 10, "novembre": 11,
    "décembre": 12, "decembre": 12,
}

_FRENCH_DATE = re.compile(r"^(\d{1,2})(?:er)?\s+([^\s\d]+)\s+(\d{4})$", re.IGNORECASE)
_NUMERIC_DATE = re.compile(r"^\d{1,2}[/\-]\d{1,2}[/\-]\d{4}$")
_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_OFFICIAL_NUMBER = re.compile(r"^\d{2}-\d{2,3}$")


def parse_document_date(value) -> Optional[date]:
    """Parse French (``23 février 2008``), ``dd/mm/yyyy`` or ISO dates."""
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None
    text = value.strip()

    french = _FRENCH_DATE.match(text)
    if french:
        month = FRENCH_MONTH_NUMBERS.get(french.group(2).lower())
        if month is None:
            return None
        try:
            return date(int(french.group(3)), month, int(french.group(1)))
        except ValueError:
            return None

    if _ISO_DATE.match(text) or _NUMERIC_DATE.match(text):
        try:
            return date_parser.parse(text, dayfirst=not _ISO_DATE.match(text)).date()
        except (ValueError, OverflowError):
            return None

    return None


class DuplicateIndex:
    """Known (document type, number) pairs."""

    def __init__(self, known: Iterable[Tuple[str, str]] = ()):
        self._known: Set[Tuple[str, str]] = {self._key(t, n) for t, n in known}

    @staticmethod
    def _key(doc_type: str, number: str) -> Tuple[str, str]:
        return (str(doc_type).strip().lower(), str(number).strip())

    def contains(self, doc_type: str, number: str) -> bool:
        return self._key(doc_type, number) in self._known

    def register(self, doc_type: str, number: str) -> None:
        self._known.add(self._key(doc_type, number))

    def __len__(self) -> int:
        return len(self._known)


@dataclass
class _Findings:
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    low_confidence: bool = False
    format_issue: bool = False


class ValidationRuleEngine:
    """Runs presence, format, consistency, duplicate and compliance rules."""

    def __init__(self, duplicates: Optional[DuplicateIndex] = None):
        self.duplicates = duplicates or DuplicateIndex()
        self.low_confidence_threshold = settings.validation_low_confidence_threshold
        self.critical_fields = list(settings.validation_critical_fields)

    def validate(
        self,
        mapping: MappingResult,
        extraction: Optional[ExtractionData] = None,
        reviewer: Optional[str] = None,
    ) -> ValidationData:
        findings = _Findings()

        self._check_presence(mapping, findings)
        self._check_confidence(mapping, extraction, findings)
        self._check_formats(mapping, findings)
        self._check_date_span(mapping, findings)
        self._check_duplicates(mapping, findings)
        self._check_compliance(mapping, findings)

        score = self._score(mapping.confidence * 100, len(findings.errors), len(findings.warnings))
        result = ValidationData(
            is_valid=not findings.errors,
            warnings=findings.warnings,
            errors=findings.errors,
            reviewer=reviewer,
            score=score,
            recommendations=self._recommendations(findings),
        )

        logger.info(
            "validation_completed",
            form_type=mapping.form_type.value,
            is_valid=result.is_valid,
            errors=len(result.errors),
            warnings=len(result.warnings),
            score=round(score, 1),
        )
        return result

    # ── Rules ────────────────────────────────────────────────────────────

    def _check_presence(self, mapping: MappingResult, findings: _Findings) -> None:
        required = set(mapping.schema.required_fields)
        for name in mapping.unmapped_fields:
            if name in required:
                findings.errors.append(f"{name} is required")
            else:
                findings.warnings.append(f"{name} missing")

        for name, mapped in mapping.fields.items():
            if name in self.critical_fields and _is_empty(mapped.mapped_value):
                findings.errors.append(f"{name} is empty")

    def _check_confidence(
        self, mapping: MappingResult, extraction: Optional[ExtractionData], findings: _Findings
    ) -> None:
        for name, mapped in mapping.fields.items():
            if mapped.is_edited:
                continue
            if mapped.confidence < self.low_confidence_threshold:
                findings.low_confidence = True
                findings.warnings.append(f"{name} low confidence ({mapped.confidence:.0%})")

        if extraction is not None and extraction.confidence < self.low_confidence_threshold:
            findings.low_confidence = True
            findings.warnings.append(f"recognition low confidence ({extraction.confidence:.0%})")

    def _check_formats(self, mapping: MappingResult, findings: _Findings) -> None:
        for name, mapped in mapping.fields.items():
            value = mapped.mapped_value
            if _is_empty(value):
                continue
            kind = mapping.schema.get(name).kind
            if kind == "date" and parse_document_date(value) is None:
                findings.format_issue = True
                findings.warnings.append(f"{name} has an unrecognized date format: {value}")
            elif kind == "number" and not _OFFICIAL_NUMBER.match(str(value).strip()):
                findings.format_issue = True
                findings.warnings.append(f"{name} has an unexpected number format: {value}")

    def _check_date_span(self, mapping: MappingResult, findings: _Findings) -> None:
        dates = [
            parse_document_date(f.mapped_value)
            for name, f in mapping.fields.items()
            if mapping.schema.get(name).kind == "date"
        ]
        dates = sorted(d for d in dates if d is not None)
        if len(dates) > 1 and (dates[-1] - dates[0]).days > settings.validation_max_date_span_days:
            findings.warnings.append(
                f"dates are more than {settings.validation_max_date_span_days} days apart"
            )

    def _check_duplicates(self, mapping: MappingResult, findings: _Findings) -> None:
        values = mapping.mapped_values
        doc_type, number = values.get("type"), values.get("number")
        if doc_type and number and self.duplicates.contains(doc_type, number):
            findings.errors.append(f"duplicate document: {doc_type} n° {number} already exists")

    def _check_compliance(self, mapping: MappingResult, findings: _Findings) -> None:
        values = mapping.mapped_values
        if mapping.form_type == FormType.LEGAL:
            doc_type = values.get("type")
            if _is_empty(doc_type):
                return
            doc_type = str(doc_type).strip().lower()
            if doc_type not in LEGAL_TEXT_TYPES:
                findings.errors.append(f"type '{doc_type}' is not an allowed legal text type")
            elif doc_type in NUMBERED_TEXT_TYPES and _is_empty(values.get("number")):
                findings.errors.append(f"number is required for {doc_type}")
        elif "steps" in mapping.fields and _is_empty(values.get("steps")):
            findings.errors.append("at least one step is required")

    # ── Scoring ──────────────────────────────────────────────────────────

    @staticmethod
    def _score(base: float, errors: int, warnings: int) -> float:
        score = base - errors * settings.validation_error_penalty - warnings * settings.validation_warning_penalty
        return max(0.0, min(100.0, score))

    @staticmethod
    def _recommendations(findings: _Findings) -> List[str]:
        recommendations = []
        if findings.errors:
            recommendations.append(f"Corriger {len(findings.errors)} problème(s) critique(s) avant approbation")
        if len(findings.warnings) > 3:
            recommendations.append("Vérifier la qualité du document source")
            recommendations.append("Considérer une nouvelle extraction OCR")
        if findings.low_confidence:
            recommendations.append("Réviser manuellement les champs à faible confiance")
        if findings.format_issue:
            recommendations.append("Corriger le format des dates et numéros signalés")
        return recommendations

    # ── Human review ─────────────────────────────────────────────────────

    def review(
        self,
        validation: ValidationData,
        reviewer: str,
        add_warnings: Iterable[str] = (),
        add_errors: Iterable[str] = (),
        resolved: Iterable[str] = (),
    ) -> ValidationData:
        """
        Merge a human review pass into an automated result.

        Args:
            validation: Result to amend
            reviewer: Identity of the reviewer
            add_warnings: Warnings raised by the reviewer
            add_errors: Errors raised by the reviewer
            resolved: Existing warnings or errors the reviewer dismisses

        Returns:
            A new ValidationData; the input is left untouched
        """
        resolved = set(resolved)
        add_warnings = [w for w in add_warnings if w not in validation.warnings]
        add_errors = [e for e in add_errors if e not in validation.errors]

        kept_errors = [e for e in validation.errors if e not in resolved]
        kept_warnings = [w for w in validation.warnings if w not in resolved]
        errors = kept_errors + add_errors
        warnings = kept_warnings + add_warnings

        # Undo penalties for dismissed findings, apply them for new ones
        base = (
            validation.score
            + (len(validation.errors) - len(kept_errors)) * settings.validation_error_penalty
            + (len(validation.warnings) - len(kept_warnings)) * settings.validation_warning_penalty
        )
        score = self._score(base, len(add_errors), len(add_warnings))

        reviewed = validation.model_copy(
            update={
                "is_valid": not errors,
                "errors": errors,
                "warnings": warnings,
                "reviewer": reviewer,
                "reviewed_at": datetime.now(timezone.utc),
                "score": score,
            }
        )
        logger.info(
            "validation_reviewed",
            reviewer=reviewer,
            resolved=len(resolved),
            added_errors=len(add_errors),
            added_warnings=len(add_warnings),
            is_valid=reviewed.is_valid,
        )
        return reviewed


def _is_empty(value) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple)):
        return not value
    return False
