from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from provider_trust_engine.matchers.field_matcher import match_fields
from provider_trust_engine.trust.config import ScoringConfig, get_trust_config
from provider_trust_engine.trust.schemas import (
    DocumentType,
    FieldResult,
    IdentityExpectation,
    OCRResult,
)

# Only demanded when the provider declared one.
OPTIONAL_REQUIRED_FIELDS = {"registrationNumber"}


def required_fields_for(
    document_type: DocumentType | str,
    expectation: IdentityExpectation,
    config: Optional[ScoringConfig] = None,
) -> List[str]:
    config = config or get_trust_config().scoring
    declared = expectation.declared_fields()
    doc_type = DocumentType(document_type).value
    return [
        key
        for key in config.required_fields_for(doc_type)
        if key not in OPTIONAL_REQUIRED_FIELDS or key in declared
    ]


def score(fields: Dict[str, FieldResult], required_fields: Iterable[str]) -> OCRResult:
    """Aggregate per-field results into a pre-verification outcome.

    ``overall_score`` is advisory (queue ordering, reviewer confidence);
    ``success`` is the binary signal and fails whenever any required field
    is missing or not found, regardless of the average.
    """
    if not fields:
        return OCRResult(success=False, overall_score=0.0, fields={})
    overall = 100.0 * sum(result.similarity for result in fields.values()) / len(fields)
    success = all(
        key in fields and fields[key].found for key in required_fields
    )
    return OCRResult(
        success=success,
        overall_score=round(min(overall, 100.0), 2),
        fields=dict(fields),
    )


def score_text(
    expectation: IdentityExpectation,
    recognized_text: str,
    document_type: DocumentType | str,
    config: Optional[ScoringConfig] = None,
) -> OCRResult:
    fields = match_fields(expectation, recognized_text)
    return score(fields, required_fields_for(document_type, expectation, config))
