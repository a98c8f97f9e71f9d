"""
Regex entity extraction for Algerian legal texts and administrative procedures.

The extractor recognizes dates (French, numeric and transliterated Hijri),
official numbers, issuing institutions, ``vu ...`` and article references,
subjects, Journal Officiel references and the document type, then proposes
candidate values for the fields of a target form.
"""

import re
from typing import List, Optional, Protocol, Sequence, Tuple

import structlog

from backend.core.config import settings
from backend.core.models import FieldCandidate, FormType, LegalEntity
from backend.ingestion.extraction import detect_language

logger = structlog.get_logger()


# Entity types
DATE = "date"
NUMBER = "number"
INSTITUTION = "institution"
REFERENCE = "reference"
SUBJECT = "subject"
JO_NUMBER = "jo_number"
JO_DATE = "jo_date"
DOC_TYPE = "doc_type"


class EntityExtractionCapability(Protocol):
    def extract_entities(self, text: str) -> List[LegalEntity]: ...

    def map_to_schema(
        self, entities: Sequence[LegalEntity], text: str, form_type: FormType
    ) -> List[FieldCandidate]: ...


FRENCH_MONTHS = (
    "janvier|février|fevrier|mars|avril|mai|juin|juillet|août|aout|"
    "septembre|octobre|novembre|décembre|decembre"
)

HIJRI_MONTHS = (
    r"moharram|safar|rabi'?\s*(?:el\s+)?(?:aouel|ethani)|joumada\s+(?:el\s+)?(?:oula|ethania)|"
    r"rajab|cha'?bane?|ramadhan|chaoual|dhou\s+el\s+(?:kaada|hidja)"
)

ARABIC_MONTHS = (
    r"محرم|صفر|ربيع\s+الأول|ربيع\s+الثاني|جمادى\s+الأولى|جمادى\s+الثانية|"
    r"رجب|شعبان|رمضان|شوال|ذو\s+القعدة|ذو\s+الحجة"
)

# Ordered by confidence: 0.9, 0.8, 0.7, 0.6
DATE_PATTERNS = [
    re.compile(rf"\b(\d{{1,2}})(?:er)?\s+({FRENCH_MONTHS})\s+(\d{{4}})\b", re.IGNORECASE),
    re.compile(r"\b(\d{1,2})[/\-](\d{1,2})[/\-](\d{4})\b"),
    re.compile(rf"\b(\d{{1,2}})\s+({HIJRI_MONTHS})\s+(\d{{3,4}})\b", re.IGNORECASE),
    re.compile(rf"(\d{{1,2}})\s+({ARABIC_MONTHS})\s+(\d{{4}})"),
]

NUMBER_PATTERNS = [
    re.compile(r"\bloi\s+n°?\s*(\d{2}-\d{2,3})", re.IGNORECASE),
    re.compile(r"\bordonnance\s+n°?\s*(\d{2}-\d{2,3})", re.IGNORECASE),
    re.compile(r"\bdécret\s+(?:exécutif\s+|présidentiel\s+)?n°?\s*(\d{2}-\d{2,3})", re.IGNORECASE),
    re.compile(r"\barrêté\s+(?:interministériel\s+|ministériel\s+)?n°?\s*(\d{1,4}(?:-\d{2,3})?)", re.IGNORECASE),
]

INSTITUTION_PATTERNS = [
    re.compile(r"présidence\s+de\s+la\s+république", re.IGNORECASE),
    re.compile(r"premier\s+ministère", re.IGNORECASE),
    re.compile(r"ministère\s+(?:de\s+la\s+|de\s+l'|des\s+|du\s+|de\s+)[^\n,.;]+", re.IGNORECASE),
    re.compile(r"assemblée\s+populaire\s+nationale", re.IGNORECASE),
    re.compile(r"\b(?:APC|APW|wilaya)\s+(?:de\s+|du\s+|d')[A-ZÀ-Ÿ][\w'\- ]+"),
    re.compile(r"(?:وزارة|رئاسة\s+الجمهورية)[^\n،.]*"),
]

REFERENCE_PATTERNS = [
    re.compile(r"\bvu\s+(?:la\s+|le\s+|l')?(?:loi|décret|arrêté|ordonnance)[^\n]*?n°?\s*[\d\-]+", re.IGNORECASE),
    re.compile(r"\barticles?\s+(\d+(?:\s+(?:et|à)\s+\d+)?)", re.IGNORECASE),
]

SUBJECT_PATTERNS = [
    re.compile(r"\bportant\s+[^\n.;]+", re.IGNORECASE),
    re.compile(r"\brelati(?:f|ve)s?\s+(?:à\s+la\s+|à\s+l'|à|au|aux)\s+[^\n.;]+", re.IGNORECASE),
]

JO_NUMBER_PATTERNS = [
    re.compile(r"journal\s+officiel\s+n[°\-\s]*(\d+)\b", re.IGNORECASE),
    re.compile(r"\bJORA\s+n[°\-\s]*(\d+)\b", re.IGNORECASE),
    re.compile(r"\bJO\s*n[°\-\s]*(\d+)\b"),
    re.compile(r"الجريدة\s+الرسمية\s*رقم\s*(\d+)"),
]

JO_DATE_PATTERNS = [
    re.compile(rf"(?:journal\s+officiel|JORA)[^\n]*?du\s+(\d{{1,2}}(?:er)?\s+(?:{FRENCH_MONTHS})\s+\d{{4}})", re.IGNORECASE),
    re.compile(r"(?:journal\s+officiel|JORA)[^\n]*?du\s+(\d{1,2}[/\-]\d{1,2}[/\-]\d{4})", re.IGNORECASE),
]

DOC_TYPE_KEYWORDS = [
    ("loi", r"loi"),
    ("ordonnance", r"ordonnance"),
    ("decret", r"décret"),
    ("arrete", r"arrêté"),
    ("circulaire", r"circulaire"),
    ("instruction", r"instruction"),
    ("decision", r"décision"),
]

WILAYA_PATTERN = re.compile(r"\bwilaya\s+(?:de\s+|du\s+|d')([A-ZÀ-Ÿ][\w'\-]+(?:\s+[A-ZÀ-Ÿ][\w'\-]+)*)", re.IGNORECASE)

SECTORS = [
    "agriculture", "industrie", "commerce", "transport", "éducation", "santé",
    "environnement", "urbanisme", "finance", "justice", "sécurité", "culture",
    "jeunesse", "sports", "tourisme", "énergie", "mines", "pêche", "forêts",
]

PROCEDURE_CATEGORIES = [
    ("état civil", ["acte de naissance", "état civil", "mariage", "décès", "livret de famille"]),
    ("identité", ["passeport", "carte d'identité", "carte nationale"]),
    ("urbanisme", ["permis de construire", "certificat d'urbanisme", "lotissement"]),
    ("commerce", ["registre du commerce", "commerçant", "activité commerciale"]),
    ("transport", ["permis de conduire", "carte grise", "immatriculation"]),
    ("fiscalité", ["impôt", "fiscal", "taxe"]),
    ("emploi", ["emploi", "chômage", "travail"]),
]

DURATION_PATTERNS = [
    (re.compile(r"(?:délai|durée)[^\n\d]*(\d+\s*(?:jours?|semaines?|mois|heures?))", re.IGNORECASE), 0.8),
    (re.compile(r"\b(\d+\s*(?:jours?|semaines?|mois))\b", re.IGNORECASE), 0.6),
]

COST_PATTERNS = [
    (re.compile(r"(?:coût|frais|tarif|droit\s+de\s+timbre)[^\n\d]*(\d[\d\s.,]*\s*(?:DA|DZD|dinars?))", re.IGNORECASE), 0.8),
    (re.compile(r"\b(gratuite?)\b", re.IGNORECASE), 0.8),
    (re.compile(r"\b(\d[\d\s.,]*\s*(?:DA|DZD))\b"), 0.6),
]

DOCUMENTS_HEADING = re.compile(r"(?:pièces|documents|dossier)\s+(?:à\s+fournir|requis|exigés|constitutif)", re.IGNORECASE)
STEPS_HEADING = re.compile(r"(?:étapes|démarches|déroulement)", re.IGNORECASE)
STEP_LINE = re.compile(r"^\s*étape\s*\d+\s*[:.\-)]?\s*(.+)$", re.IGNORECASE | re.MULTILINE)
BULLET = re.compile(r"^\s*(?:[-•*–]|\d+[.)])\s*(.+)$")


def _first_meaningful_line(text: str) -> Tuple[Optional[str], int]:
    offset = 0
    for line in text.splitlines(keepends=True):
        stripped = line.strip()
        if len(stripped) > 10:
            return stripped, offset + line.index(stripped[0])
        offset += len(line)
    return None, 0


def _section_items(text: str, heading: re.Pattern) -> Tuple[List[str], int]:
    """Bullet items following the first line that matches ``heading``."""
    lines = text.splitlines()
    offset = 0
    for i, line in enumerate(lines):
        if heading.search(line):
            items = []
            for following in lines[i + 1:]:
                if not following.strip():
                    if items:
                        break
                    continue
                bullet = BULLET.match(following)
                if not bullet:
                    break
                items.append(bullet.group(1).strip())
            return items, offset
        offset += len(line) + 1
    return [], 0


class AlgerianLegalEntityExtractor:
    """Default entity-extraction capability for Algerian documents."""

    def __init__(self, description_max_chars: Optional[int] = None):
        self.description_max_chars = description_max_chars or settings.description_max_chars

    # ── Entity detection ─────────────────────────────────────────────────

    def extract_entities(self, text: str) -> List[LegalEntity]:
        found: List[LegalEntity] = []
        found += self._match_all(DATE, DATE_PATTERNS, text, [0.9, 0.8, 0.7, 0.6], value_group=0)
        found += self._match_all(NUMBER, NUMBER_PATTERNS, text, [0.95, 0.95, 0.9, 0.85], value_group=1)
        found += self._match_all(INSTITUTION, INSTITUTION_PATTERNS, text, [0.9] * len(INSTITUTION_PATTERNS), value_group=0)
        found += self._match_all(REFERENCE, REFERENCE_PATTERNS, text, [0.8, 0.8], value_group=0)
        found += self._match_all(SUBJECT, SUBJECT_PATTERNS, text, [0.7, 0.7], value_group=0)
        found += self._match_first(JO_NUMBER, JO_NUMBER_PATTERNS, text, 0.85)
        found += self._match_first(JO_DATE, JO_DATE_PATTERNS, text, 0.85)
        found += self._detect_document_types(text)

        # Extraction order follows position in the text
        found.sort(key=lambda e: (e.start, e.end))
        for index, entity in enumerate(found):
            entity.order = index

        logger.info("entities_extracted", count=len(found), text_length=len(text))
        return found

    def _match_all(
        self,
        entity_type: str,
        patterns: Sequence[re.Pattern],
        text: str,
        confidences: Sequence[float],
        value_group: int,
    ) -> List[LegalEntity]:
        entities = []
        for pattern, confidence in zip(patterns, confidences):
            for match in pattern.finditer(text):
                entities.append(
                    LegalEntity(
                        type=entity_type,
                        value=match.group(value_group).strip(),
                        original_text=match.group(0),
                        confidence=confidence,
                        start=match.start(),
                        end=match.end(),
                    )
                )
        return entities

    def _match_first(
        self, entity_type: str, patterns: Sequence[re.Pattern], text: str, confidence: float
    ) -> List[LegalEntity]:
        for pattern in patterns:
            match = pattern.search(text)
            if match:
                return [
                    LegalEntity(
                        type=entity_type,
                        value=match.group(1).strip(),
                        original_text=match.group(0),
                        confidence=confidence,
                        start=match.start(),
                        end=match.end(),
                    )
                ]
        return []

    def _detect_document_types(self, text: str) -> List[LegalEntity]:
        # A headword followed by "n°" is an explicit title; a bare mention is weaker
        entities = []
        for doc_type, keyword in DOC_TYPE_KEYWORDS:
            titled = re.search(rf"\b{keyword}\s+(?:\w+\s+)?n°?\s*\d", text, re.IGNORECASE)
            match = titled or re.search(rf"\b{keyword}\b", text, re.IGNORECASE)
            if match:
                entities.append(
                    LegalEntity(
                        type=DOC_TYPE,
                        value=doc_type,
                        original_text=match.group(0),
                        confidence=0.9 if titled else 0.6,
                        start=match.start(),
                        end=match.end(),
                    )
                )
        return entities

    # ── Schema projection ────────────────────────────────────────────────

    def map_to_schema(
        self, entities: Sequence[LegalEntity], text: str, form_type: FormType
    ) -> List[FieldCandidate]:
        form_type = FormType(form_type)
        if form_type == FormType.PROCEDURE:
            candidates = self._procedure_candidates(entities, text)
        else:
            candidates = self._legal_candidates(entities, text)
        logger.debug("candidates_proposed", form_type=form_type.value, count=len(candidates))
        return candidates

    def _from_entities(self, field_name: str, entities: Sequence[LegalEntity], entity_type: str) -> List[FieldCandidate]:
        return [
            FieldCandidate(
                field_name=field_name,
                value=e.value,
                confidence=e.confidence,
                source="regex",
                source_entities=[e],
                order=e.order,
                position=e.start,
            )
            for e in entities
            if e.type == entity_type
        ]

    def _inferred(self, field_name: str, value, confidence: float, position: Optional[int] = None) -> FieldCandidate:
        return FieldCandidate(
            field_name=field_name,
            value=value,
            confidence=confidence,
            source="inference",
            position=position,
        )

    def _legal_candidates(self, entities: Sequence[LegalEntity], text: str) -> List[FieldCandidate]:
        candidates: List[FieldCandidate] = []

        title, title_position = _first_meaningful_line(text)
        if title:
            candidates.append(self._inferred("title", title, 0.85, title_position))

        candidates += self._from_entities("number", entities, NUMBER)
        candidates += self._from_entities("date", entities, DATE)
        candidates += self._from_entities("type", entities, DOC_TYPE)
        candidates += self._from_entities("institution", entities, INSTITUTION)
        candidates += self._from_entities("jo_number", entities, JO_NUMBER)
        candidates += self._from_entities("jo_date", entities, JO_DATE)

        wilaya = WILAYA_PATTERN.search(text)
        if wilaya:
            candidates.append(self._inferred("wilaya", wilaya.group(1).strip(), 0.75, wilaya.start()))

        lowered = text.lower()
        for sector in SECTORS:
            position = lowered.find(sector)
            if position >= 0:
                candidates.append(self._inferred("sector", sector, 0.6, position))
                break

        for subject in (e for e in entities if e.type == SUBJECT):
            candidates.append(
                FieldCandidate(
                    field_name="description",
                    value=subject.value[: self.description_max_chars],
                    confidence=subject.confidence,
                    source="regex",
                    source_entities=[subject],
                    order=subject.order,
                    position=subject.start,
                )
            )

        candidates.append(self._inferred("content", text.strip(), 0.95, 0))
        candidates.append(self._inferred("language", detect_language(text), 0.9, 0))
        return candidates

    def _procedure_candidates(self, entities: Sequence[LegalEntity], text: str) -> List[FieldCandidate]:
        candidates: List[FieldCandidate] = []

        title, title_position = _first_meaningful_line(text)
        if title:
            candidates.append(self._inferred("title", title, 0.8, title_position))
            body = text[title_position + len(title):].strip()
            paragraph = body.split("\n\n", 1)[0].replace("\n", " ").strip()
            if paragraph:
                candidates.append(
                    self._inferred("description", paragraph[: self.description_max_chars], 0.6, title_position + len(title))
                )

        candidates += self._from_entities("institution", entities, INSTITUTION)

        lowered = text.lower()
        for category, keywords in PROCEDURE_CATEGORIES:
            hits = [lowered.find(k) for k in keywords if k in lowered]
            if hits:
                candidates.append(self._inferred("category", category, 0.6, min(hits)))
                break

        for pattern, confidence in DURATION_PATTERNS:
            match = pattern.search(text)
            if match:
                candidates.append(self._inferred("duration", match.group(1).strip(), confidence, match.start()))
                break

        for pattern, confidence in COST_PATTERNS:
            match = pattern.search(text)
            if match:
                candidates.append(self._inferred("cost", match.group(1).strip(), confidence, match.start()))
                break

        documents, documents_position = _section_items(text, DOCUMENTS_HEADING)
        if documents:
            candidates.append(self._inferred("required_documents", documents, 0.75, documents_position))

        steps, steps_position = _section_items(text, STEPS_HEADING)
        if not steps:
            step_lines = list(STEP_LINE.finditer(text))
            steps = [m.group(1).strip() for m in step_lines]
            steps_position = step_lines[0].start() if step_lines else 0
        if steps:
            candidates.append(self._inferred("steps", steps, 0.75, steps_position))

        tags = [s for s in SECTORS if s in lowered]
        if tags:
            candidates.append(self._inferred("tags", tags, 0.5))

        return candidates
