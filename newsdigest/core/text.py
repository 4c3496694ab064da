"""Text cleaning, normalization and language detection helpers."""
import re
import unicodedata

from bs4 import BeautifulSoup
from langdetect import DetectorFactory, LangDetectException, detect

from .logging import get_logger

logger = get_logger(__name__)

# langdetect is probabilistic unless seeded
DetectorFactory.seed = 0


def clean_text(html_or_text: str) -> str:
    """
    Strip markup from feed content and normalize whitespace.

    Args:
        html_or_text: Raw HTML or text content

    Returns:
        Plain text with collapsed whitespace
    """
    if not html_or_text:
        return ""

    soup = BeautifulSoup(html_or_text, "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()

    text = soup.get_text(" ")
    return re.sub(r"\s+", " ", text).strip()


def normalize_for_embedding(text: str) -> str:
    """
    Lowercase, strip diacritics and collapse whitespace.

    Only used on the way into the embedder; the stored TextValue keeps
    the original text.
    """
    if not text:
        return ""

    decomposed = unicodedata.normalize("NFKD", text)
    stripped = "".join(c for c in decomposed if not unicodedata.combining(c))
    return re.sub(r"\s+", " ", stripped.lower()).strip()


def detect_lang(text: str, fallback_lang: str) -> str:
    """
    Detect the ISO 639-1 language of a text.

    Args:
        text: Text to inspect, already cleaned
        fallback_lang: Returned when the text is too short or detection fails

    Returns:
        Two letter language code
    """
    if not text or len(text.strip()) < 20:
        return fallback_lang

    try:
        lang = detect(text)
    except LangDetectException as e:
        logger.debug(f"Language detection failed: {e}")
        return fallback_lang

    if lang and len(lang) == 2 and lang.isalpha():
        return lang.lower()
    return fallback_lang
