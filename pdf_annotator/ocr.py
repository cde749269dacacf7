"""
Recognition Adapter
===================
Optional OCR over rasterized image regions using Tesseract (pytesseract).

The recognizer degrades to a disabled no-op when the engine or its language
data is missing, so a parse never fails because OCR is unavailable.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Iterator, Optional

import pytesseract
from PIL import Image

from .errors import RecognitionFailure, RecognitionUnavailable
from .models import DetectedLanguage, RecognitionResult

logger = logging.getLogger(__name__)

DEFAULT_LANGUAGES = "eng+hin"

# Language name -> Tesseract traineddata code(s)
TESSERACT_LANGUAGES: dict[str, str] = {
    "hindi": "hin",
    "english": "eng",
    "arabic": "ara",
    "chinese": "chi_sim+chi_tra",
    "japanese": "jpn",
    "korean": "kor",
    "spanish": "spa",
    "french": "fra",
    "german": "deu",
    "russian": "rus",
    "portuguese": "por",
    "italian": "ita",
    "bengali": "ben",
    "gujarati": "guj",
    "punjabi": "pan",
    "tamil": "tam",
    "telugu": "tel",
    "kannada": "kan",
    "malayalam": "mal",
    "marathi": "mar",
    "nepali": "nep",
    "urdu": "urd",
    "assamese": "asm",
    "oriya": "ori",
    "sinhala": "sin",
    "thai": "tha",
    "vietnamese": "vie",
    "dutch": "nld",
    "swedish": "swe",
    "norwegian": "nor",
    "danish": "dan",
    "finnish": "fin",
    "turkish": "tur",
    "greek": "ell",
    "hebrew": "heb",
}


@dataclass
class OCRConfig:
    """OCR options for a parse run."""

    enabled: bool = False
    primary_language: str = "english"
    fallback_languages: list[str] = field(
        default_factory=lambda: ["english", "hindi"]
    )

    # Images narrower or shorter than this (in px) are not recognized
    min_image_size: int = 50
    # Longest side of the rendered region handed to the engine
    max_image_size: Optional[int] = None
    render_scale: float = 2.0

    # Callback(page_number, page_count, images_so_far)
    progress_callback: Optional[Callable[[int, int, int], None]] = None


def resolve_language_codes(
    primary_language: str = "english",
    fallback_languages: Optional[list[str]] = None,
) -> str:
    """
    Map language names to a '+'-joined Tesseract language string.

    Unknown names are dropped and an 'auto' primary is ignored. Falls back
    to English + Hindi when nothing resolves.
    """
    if fallback_languages is None:
        fallback_languages = ["english", "hindi"]

    names = []
    if primary_language and primary_language.strip().lower() != "auto":
        names.append(primary_language)
    names.extend(fallback_languages)

    codes: list[str] = []
    for name in names:
        mapped = TESSERACT_LANGUAGES.get(name.strip().lower())
        if mapped is None:
            logger.debug(f"Ignoring unknown OCR language: {name!r}")
            continue
        for code in mapped.split("+"):
            if code not in codes:
                codes.append(code)

    return "+".join(codes) if codes else DEFAULT_LANGUAGES


class TesseractRecognizer:
    """
    Stateful OCR session over pytesseract.

    Usage:
        recognizer = TesseractRecognizer()
        recognizer.initialize("english", ["hindi"])
        result = recognizer.recognize(image)
        recognizer.terminate()
    """

    def __init__(self, config: str = ""):
        self.config = config
        self.languages: Optional[str] = None
        self.available = False
        self._initialized = False
        self._lock = threading.Lock()

    def initialize(
        self,
        primary_language: str = "english",
        fallback_languages: Optional[list[str]] = None,
    ) -> bool:
        """
        Load the engine once per session.

        Returns True when recognition is available. Failure is logged and
        leaves the recognizer disabled.
        """
        if self._initialized:
            return self.available
        self._initialized = True

        requested = resolve_language_codes(primary_language, fallback_languages)
        try:
            self.languages = self._check_installed(requested)
        except RecognitionUnavailable as e:
            logger.warning(f"OCR disabled, continuing without text recognition: {e}")
            self.languages = None
            self.available = False
            return False

        self.available = True
        logger.info(f"OCR initialized with languages: {self.languages}")
        return True

    def _check_installed(self, requested: str) -> str:
        try:
            installed = set(pytesseract.get_languages(config=""))
        except (pytesseract.TesseractNotFoundError, pytesseract.TesseractError, OSError) as e:
            raise RecognitionUnavailable(f"Tesseract engine not found: {e}") from e

        usable = []
        for code in requested.split("+"):
            if code in installed:
                usable.append(code)
            else:
                logger.warning(f"Tesseract language data not installed: {code}")

        if not usable:
            raise RecognitionUnavailable(
                f"None of the requested languages are installed ({requested})"
            )
        return "+".join(usable)

    def recognize(self, image: Image.Image) -> Optional[RecognitionResult]:
        """Recognize text in an image. Returns None when disabled or on failure."""
        if not self.available:
            return None

        with self._lock:
            try:
                return self._run_recognition(image)
            except Exception as e:
                logger.error(f"OCR failed: {e}")
                return None

    def _run_recognition(self, image: Image.Image) -> RecognitionResult:
        try:
            data = pytesseract.image_to_data(
                image,
                lang=self.languages,
                config=self.config,
                output_type=pytesseract.Output.DICT,
            )
        except Exception as e:
            raise RecognitionFailure(str(e)) from e

        lines: dict[tuple[int, int, int], list[str]] = {}
        confidences: list[float] = []

        for i, word in enumerate(data.get("text", [])):
            word = (word or "").strip()
            conf = float(data["conf"][i])
            # Structural rows carry conf -1
            if not word or conf < 0:
                continue
            key = (data["block_num"][i], data["par_num"][i], data["line_num"][i])
            lines.setdefault(key, []).append(word)
            confidences.append(conf)

        text = "\n".join(" ".join(words) for words in lines.values())
        confidence = sum(confidences) / len(confidences) if confidences else 0.0

        return RecognitionResult(
            text=text,
            confidence=round(min(max(confidence, 0.0), 100.0), 2),
            language=self.languages if text else None,
        )

    def detect_languages(self, image: Image.Image) -> list[DetectedLanguage]:
        """Script detection through Tesseract OSD. Empty on any failure."""
        if not self.available:
            return []

        with self._lock:
            try:
                osd = pytesseract.image_to_osd(
                    image, output_type=pytesseract.Output.DICT
                )
                script = osd.get("script")
                if not script:
                    return []
                return [DetectedLanguage(
                    lang=str(script),
                    confidence=float(osd.get("script_conf", 0.0)),
                )]
            except Exception as e:
                logger.debug(f"Language detection failed: {e}")
                return []

    def terminate(self):
        """Release the session. Safe to call more than once."""
        if self._initialized:
            logger.debug("OCR session terminated")
        self.languages = None
        self.available = False
        self._initialized = False


@contextmanager
def recognition_session(
    recognizer: Optional[TesseractRecognizer],
    config: OCRConfig,
) -> Iterator[Optional[TesseractRecognizer]]:
    """
    Initialize a recognizer for the duration of a parse.

    Yields None when OCR is not enabled. Teardown always runs.
    """
    if not config.enabled:
        yield None
        return

    recognizer = recognizer or TesseractRecognizer()
    try:
        recognizer.initialize(config.primary_language, config.fallback_languages)
        yield recognizer
    finally:
        recognizer.terminate()
