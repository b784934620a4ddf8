from typing import Dict, List, Optional, Tuple

import yaml

from provider_trust_engine.normalizers.text_normalizer import (
    compact_alnum,
    extract_digits,
    normalize_text,
    partial_alignment,
    simple_ratio,
    token_sort_ratio,
    tokenize,
)
from provider_trust_engine.trust.schemas import FieldResult, IdentityExpectation

CONFIG_PATH = (
    __import__("pathlib").Path(__file__).resolve().parents[1]
    / "config"
    / "thresholds.yml"
)
with CONFIG_PATH.open() as f:
    THRESHOLDS = yaml.safe_load(f)

DEFAULT_THRESHOLD = float(THRESHOLDS.get("DEFAULT_SIM_THRESHOLD", 0.75))
FIELD_THRESHOLDS = {
    key: float(value) for key, value in (THRESHOLDS.get("field_thresholds") or {}).items()
}
WINDOW_SLACK = int(THRESHOLDS.get("WINDOW_SLACK", 1))

REGISTRATION_FIELDS = {"registrationNumber"}
DIGIT_FIELDS = {"date"}


def threshold_for(field_key: str) -> float:
    return FIELD_THRESHOLDS.get(field_key, DEFAULT_THRESHOLD)


def _window_sizes(expected_tokens: int, available: int) -> List[int]:
    sizes = range(expected_tokens - WINDOW_SLACK, expected_tokens + WINDOW_SLACK + 1)
    return [size for size in sizes if 1 <= size <= available]


def _best_token_window(expected: str, tokens: List[str]) -> Tuple[float, Optional[str]]:
    expected_norm = normalize_text(expected)
    if not expected_norm or not tokens:
        return 0.0, None
    best_score = 0.0
    best_window: Optional[str] = None
    sizes = _window_sizes(len(expected_norm.split(" ")), len(tokens)) or [len(tokens)]
    for size in sizes:
        for start in range(len(tokens) - size + 1):
            candidate = " ".join(tokens[start:start + size])
            score = max(
                simple_ratio(expected_norm, candidate),
                token_sort_ratio(expected_norm, candidate),
            )
            if score > best_score:
                best_score = score
                best_window = candidate
    return best_score, best_window


def _best_compact_alignment(expected: str, haystack: str) -> Tuple[float, Optional[str]]:
    if not expected or not haystack:
        return 0.0, None
    if expected in haystack:
        return 1.0, expected
    return partial_alignment(expected, haystack)


def match_fields(expected: IdentityExpectation, recognized_text: str) -> Dict[str, FieldResult]:
    """Score every declared identity field against the recognised document text.

    Name-like fields are compared against token windows of the normalised
    text; registration numbers and dates are compared on compacted
    alphanumerics / digits so separators printed on the document do not
    matter. Empty text yields ``found=False, similarity=0`` for every field.
    """
    tokens = tokenize(recognized_text)
    compact_text = compact_alnum(recognized_text)
    digits_text = extract_digits(recognized_text)

    results: Dict[str, FieldResult] = {}
    for field_key, value in expected.declared_fields().items():
        if not tokens:
            similarity, matched = 0.0, None
        elif field_key in REGISTRATION_FIELDS:
            similarity, matched = _best_compact_alignment(compact_alnum(value), compact_text)
        elif field_key in DIGIT_FIELDS:
            similarity, matched = _best_compact_alignment(extract_digits(value), digits_text)
        else:
            similarity, matched = _best_token_window(value, tokens)
        similarity = round(min(max(similarity, 0.0), 1.0), 4)
        results[field_key] = FieldResult(
            field_key=field_key,
            expected_value=value,
            found=similarity >= threshold_for(field_key),
            similarity=similarity,
            matched_substring=matched,
        )
    return results
