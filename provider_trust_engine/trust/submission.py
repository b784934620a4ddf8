from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Dict, Mapping, Optional
from uuid import uuid4

from provider_trust_engine.extraction.extractor import TextExtractor
from provider_trust_engine.scoring.scoring_task import ProgressObserver, score_documents
from provider_trust_engine.store.trust_store import utc_now
from provider_trust_engine.trust.schemas import (
    DocumentRef,
    DocumentType,
    IdentityExpectation,
    OCRResult,
    VerificationDocuments,
    VerificationRequest,
)
from provider_trust_engine.trust.state_machine import TrustStateMachine

logger = logging.getLogger(__name__)


def build_verification_request(
    provider_id: str,
    provider_name: str,
    document_refs: Mapping[str, DocumentRef],
    ocr_results: Optional[Mapping[str, OCRResult]] = None,
    additional_notes: Optional[str] = None,
    submitted_at: Optional[datetime] = None,
) -> VerificationRequest:
    """Assemble a pending request from per-slot document refs and scoring results."""
    ocr_results = ocr_results or {}
    documents = VerificationDocuments(
        license=document_refs.get(DocumentType.LICENSE.value),
        license_ocr=ocr_results.get(DocumentType.LICENSE.value),
        id_document=document_refs.get(DocumentType.ID.value),
        id_ocr=ocr_results.get(DocumentType.ID.value),
        additional_notes=additional_notes or None,
    )
    if not documents.has_documents():
        raise ValueError("At least one verification document is required")
    return VerificationRequest(
        id=str(uuid4()),
        provider_id=provider_id,
        provider_name=provider_name,
        submitted_at=submitted_at or utc_now(),
        documents=documents,
    )


async def submit_documents(
    state_machine: TrustStateMachine,
    provider_id: str,
    provider_name: str,
    uploads: Mapping[str, bytes],
    extractor: TextExtractor,
    expectation: Optional[IdentityExpectation] = None,
    document_refs: Optional[Mapping[str, DocumentRef]] = None,
    additional_notes: Optional[str] = None,
    timeout_s: Optional[float] = None,
    observer: Optional[ProgressObserver] = None,
) -> VerificationRequest:
    """Score every uploaded document, then submit the request for review.

    Low scores never block the submission; they only lower its queue priority.
    """
    expectation = expectation or IdentityExpectation.from_provider_name(provider_name)
    slots = {DocumentType(slot).value: data for slot, data in uploads.items()}
    refs: Dict[str, DocumentRef] = {
        DocumentType(slot).value: ref for slot, ref in (document_refs or {}).items()
    }
    for slot in slots:
        refs.setdefault(slot, DocumentRef(ref=f"{provider_id}/{slot}"))
    results = await score_documents(slots, expectation, extractor, timeout_s, observer)
    request = build_verification_request(
        provider_id, provider_name, refs, results, additional_notes
    )
    logger.info(
        "Documents scored provider_id=%s slots=%s pre_verified=%s priority_score=%.2f",
        provider_id,
        sorted(results),
        request.pre_verified,
        request.priority_score,
    )
    return await asyncio.to_thread(state_machine.submit, provider_id, request)
