import re
import unicodedata
from typing import List, Optional, Tuple

from rapidfuzz import fuzz


PUNCT_PATTERN = re.compile(r"[^\w\s]|_")
NON_ALNUM_PATTERN = re.compile(r"[^0-9a-z]")
NON_DIGIT_PATTERN = re.compile(r"\D")


def normalize_text(text: Optional[str]) -> str:
    if not text:
        return ""
    text = unicodedata.normalize("NFKD", text)
    text = "".join(c for c in text if not unicodedata.combining(c))
    text = text.lower().strip()
    text = PUNCT_PATTERN.sub(" ", text)
    text = re.sub(r"\s+", " ", text)
    return text.strip()


def tokenize(text: Optional[str]) -> List[str]:
    normalized = normalize_text(text)
    return normalized.split(" ") if normalized else []


def compact_alnum(text: Optional[str]) -> str:
    # registration numbers are printed with arbitrary separators
    return NON_ALNUM_PATTERN.sub("", normalize_text(text))


def extract_digits(text: Optional[str]) -> str:
    if not text:
        return ""
    return NON_DIGIT_PATTERN.sub("", text)


def simple_ratio(a: str, b: str) -> float:
    if not a or not b:
        return 0.0
    return fuzz.ratio(a, b) / 100.0


def token_sort_ratio(a: str, b: str) -> float:
    if not a or not b:
        return 0.0
    return fuzz.token_sort_ratio(a, b) / 100.0


def partial_alignment(needle: str, haystack: str) -> Tuple[float, Optional[str]]:
    """Best alignment of ``needle`` inside ``haystack`` as (similarity, substring)."""
    if not needle or not haystack:
        return 0.0, None
    alignment = fuzz.partial_ratio_alignment(needle, haystack)
    matched = haystack[alignment.dest_start:alignment.dest_end]
    return alignment.score / 100.0, matched or None
