import pytest
from unittest.mock import Mock

from backend.core.models import FieldCandidate, RecognitionResult
from backend.ingestion.mapping import MappingStep
from backend.ingestion.schemas import LEGAL_TEXT_SCHEMA
from backend.storage.audit_store import InMemoryAuditStore, SqliteAuditStore


LEGAL_TEXT = (
    "Loi n° 08-09 du 25 février 2008 portant code de procédure civile et administrative\n"
    "Présidence de la République\n"
    "Le Président de la République,\n"
    "Vu la loi n° 90-08 du 7 avril 1990 relative à la commune,\n"
    "Article 1er. La présente loi a pour objet de fixer les règles de procédure.\n"
    "Journal officiel n° 21 du 23 avril 2008\n"
)

PROCEDURE_TEXT = (
    "Demande d'extrait d'acte de naissance\n"
    "Cette procédure permet d'obtenir un extrait d'acte de naissance auprès de l'APC.\n"
    "\n"
    "Ministère de l'Intérieur et des Collectivités locales\n"
    "Délai de traitement : 3 jours\n"
    "Coût : gratuit\n"
    "Pièces à fournir :\n"
    "- Carte nationale d'identité\n"
    "- Livret de famille\n"
    "\n"
    "Étapes :\n"
    "1. Se présenter au guichet de l'état civil\n"
    "2. Remplir le formulaire\n"
    "3. Retirer le document\n"
)


@pytest.fixture
def legal_text():
    """Recognized text of a short Algerian law."""
    return LEGAL_TEXT


@pytest.fixture
def procedure_text():
    """Recognized text of an administrative procedure sheet."""
    return PROCEDURE_TEXT


@pytest.fixture
def candidate():
    """Factory for field candidates."""
    def _make(field_name, value, confidence=0.95, order=0, position=None):
        return FieldCandidate(
            field_name=field_name,
            value=value,
            confidence=confidence,
            order=order,
            position=position,
        )
    return _make


@pytest.fixture
def legal_candidates(candidate):
    """High-confidence candidates for every legal field except jo_number."""
    values = {
        "title": "Loi n°08-09",
        "number": "08-09",
        "date": "25 février 2008",
        "type": "loi",
        "institution": "Présidence de la République",
        "jo_date": "23 avril 2008",
        "wilaya": "Alger",
        "sector": "justice",
        "description": "portant code de procédure civile et administrative",
        "content": "Article 1 La présente loi a pour objet de fixer les règles de procédure.",
        "language": "fr",
    }
    return [candidate(name, value, 0.95, order=i) for i, (name, value) in enumerate(values.items())]


@pytest.fixture
def legal_mapping(legal_candidates):
    """MappingResult over the legal form with jo_number left unmapped."""
    return MappingStep(capability=Mock()).resolve(LEGAL_TEXT_SCHEMA, legal_candidates)


@pytest.fixture
def mock_recognizer():
    """Recognition capability returning a percentage confidence."""
    recognizer = Mock()
    recognizer.recognize.return_value = RecognitionResult(
        text="Article 1 La présente loi a pour objet de fixer les règles de procédure.",
        confidence=95,
        pages=1,
        method="mock",
    )
    return recognizer


@pytest.fixture
def mock_entity_extractor(legal_candidates):
    """Entity capability that proposes the legal candidates."""
    extractor = Mock()
    extractor.extract_entities.return_value = []
    extractor.map_to_schema.return_value = legal_candidates
    return extractor


@pytest.fixture
def pdf_file(tmp_path):
    """An uploaded file on disk; contents are read by the mocked recognizer."""
    path = tmp_path / "loi.pdf"
    path.write_bytes(b"%PDF-1.4 test")
    return path


@pytest.fixture
def sqlite_store(tmp_path):
    """Audit store backed by a temporary SQLite file."""
    return SqliteAuditStore(db_path=str(tmp_path / "audit.db"))


@pytest.fixture
def memory_store():
    return InMemoryAuditStore()
