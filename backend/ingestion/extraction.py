"""Extraction step - turns an uploaded file into recognized text."""

import mimetypes
import re
from collections import deque
from pathlib import Path
from typing import Deque, List, Optional, Protocol, Union

import pdfplumber
import pytesseract
import structlog
from PIL import Image
from pypdf import PdfReader

from backend.core.config import settings
from backend.core.errors import RecoverableCapabilityError
from backend.core.models import ExtractionData, ExtractionLogEntry, RecognitionResult

logger = structlog.get_logger()

Source = Union[str, Path]

IMAGE_SUFFIXES = {".png", ".jpg", ".jpeg", ".tif", ".tiff", ".bmp", ".webp"}

_ARABIC_CHARS = re.compile(r"[؀-ۿ]")
_LATIN_CHARS = re.compile(r"[a-zA-Z]")


class RecognitionCapability(Protocol):
    def recognize(self, source: Path) -> RecognitionResult: ...


def detect_language(text: str) -> str:
    """Return ``ar``, ``fr`` or ``mixed`` from character classes."""
    arabic = len(_ARABIC_CHARS.findall(text))
    latin = len(_LATIN_CHARS.findall(text))
    if arabic and latin:
        return "mixed"
    if arabic > latin:
        return "ar"
    return "fr"


def normalize_confidence(value: Optional[float]) -> float:
    """Bring an engine confidence onto [0, 1]; values above 1 are percentages."""
    if value is None:
        return 0.0
    value = float(value)
    if value > 1:
        value = value / 100.0
    return max(0.0, min(1.0, value))


class PdfTextRecognizer:
    """Reads the text layer of a PDF with pdfplumber, falling back to pypdf."""

    def recognize(self, source: Path) -> RecognitionResult:
        try:
            logger.info("extracting_pdf_text", path=str(source), method="pdfplumber")
            with pdfplumber.open(source) as pdf:
                pages = [page.extract_text() or "" for page in pdf.pages]
            text = "\n".join(p for p in pages if p).strip()
            if text:
                return RecognitionResult(text=text, confidence=1.0, pages=len(pages), method="pdfplumber")
        except Exception as e:
            logger.warning("pdfplumber_failed", error=str(e))

        try:
            logger.info("extracting_pdf_text", path=str(source), method="pypdf")
            reader = PdfReader(source)
            pages = [page.extract_text() or "" for page in reader.pages]
            text = "\n".join(p for p in pages if p).strip()
            return RecognitionResult(text=text, confidence=1.0 if text else 0.0, pages=len(pages), method="pypdf")
        except Exception as e:
            logger.error("pypdf_failed", error=str(e))
            raise RecoverableCapabilityError(
                f"Impossible de lire le PDF {source.name}: {e}", capability="recognition", cause=e
            ) from e


class TesseractRecognizer:
    """OCR over a raster image with Tesseract."""

    def __init__(self, lang: Optional[str] = None, tesseract_cmd: Optional[str] = None):
        self.lang = lang or settings.tesseract_lang
        if tesseract_cmd or settings.tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd or settings.tesseract_cmd

    def recognize(self, source: Path) -> RecognitionResult:
        with Image.open(source) as img:
            data = pytesseract.image_to_data(img, lang=self.lang, output_type=pytesseract.Output.DICT)

        words: List[str] = []
        confidences: List[float] = []
        for word, conf in zip(data.get("text", []), data.get("conf", [])):
            conf = float(conf)
            if word.strip() and conf >= 0:
                words.append(word)
                confidences.append(conf)

        text = " ".join(words)
        mean_conf = sum(confidences) / len(confidences) if confidences else 0.0
        return RecognitionResult(text=text, confidence=mean_conf, pages=1, method="tesseract")


class AutoRecognizer:
    """Dispatches to the PDF or image recognizer by file type."""

    def __init__(
        self,
        pdf: Optional[RecognitionCapability] = None,
        image: Optional[RecognitionCapability] = None,
    ):
        self.pdf = pdf or PdfTextRecognizer()
        self.image = image or TesseractRecognizer()

    def recognize(self, source: Path) -> RecognitionResult:
        suffix = source.suffix.lower()
        if suffix == ".pdf":
            return self.pdf.recognize(source)
        if suffix in IMAGE_SUFFIXES:
            return self.image.recognize(source)
        raise RecoverableCapabilityError(
            f"Type de fichier non pris en charge: {source.name}", capability="recognition"
        )


class ExtractionStatusLog:
    """Bounded history of extraction attempts, newest last."""

    def __init__(self, capacity: Optional[int] = None):
        self._entries: Deque[ExtractionLogEntry] = deque(maxlen=capacity or settings.extraction_status_log_size)

    def record(self, method: str, file_name: str, success: bool, details: Optional[str] = None) -> ExtractionLogEntry:
        entry = ExtractionLogEntry(method=method, file_name=file_name, success=success, details=details)
        self._entries.append(entry)
        return entry

    def entries(self) -> List[ExtractionLogEntry]:
        return list(self._entries)

    def recent(self, limit: int = 10) -> List[ExtractionLogEntry]:
        return list(self._entries)[-limit:]

    def __len__(self) -> int:
        return len(self._entries)


class ExtractionStep:
    """
    Runs a recognition capability over a file and classifies the outcome.

    Success means more than ``settings.min_text_length`` characters of text.
    Anything else raises RecoverableCapabilityError; the caller decides
    whether to retry.
    """

    def __init__(
        self,
        recognizer: Optional[RecognitionCapability] = None,
        status_log: Optional[ExtractionStatusLog] = None,
        min_text_length: Optional[int] = None,
    ):
        self.recognizer = recognizer or AutoRecognizer()
        self.status_log = status_log or ExtractionStatusLog()
        self.min_text_length = settings.min_text_length if min_text_length is None else min_text_length

    def run(self, source: Source, file_type: Optional[str] = None) -> ExtractionData:
        path = Path(source)
        file_type = file_type or mimetypes.guess_type(path.name)[0] or "application/octet-stream"

        try:
            result = self.recognizer.recognize(path)
        except RecoverableCapabilityError as e:
            self.status_log.record("unknown", path.name, False, e.message)
            logger.error("recognition_failed", file_name=path.name, error=e.message)
            raise
        except Exception as e:
            self.status_log.record("unknown", path.name, False, str(e))
            logger.error("recognition_failed", file_name=path.name, error=str(e))
            raise RecoverableCapabilityError(
                f"La reconnaissance de {path.name} a échoué: {e}", capability="recognition", cause=e
            ) from e

        text = (result.text or "").strip()
        if len(text) <= self.min_text_length:
            details = f"{len(text)} caractères reconnus"
            self.status_log.record(result.method, path.name, False, details)
            logger.warning("recognition_empty", file_name=path.name, text_length=len(text))
            raise RecoverableCapabilityError(
                f"Aucun texte exploitable dans {path.name} ({details})", capability="recognition"
            )

        confidence = normalize_confidence(result.confidence)
        self.status_log.record(result.method, path.name, True, f"{len(text)} caractères, confiance {confidence:.2f}")

        logger.info(
            "extraction_succeeded",
            file_name=path.name,
            method=result.method,
            text_length=len(text),
            confidence=confidence,
        )

        return ExtractionData(
            file_reference=str(path),
            file_name=path.name,
            file_size=path.stat().st_size if path.exists() else 0,
            file_type=file_type,
            text=text,
            confidence=confidence,
            language=result.language or detect_language(text),
            pages=result.pages,
            method=result.method,
        )
