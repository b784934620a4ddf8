import base64
import binascii
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import Body, FastAPI, Header, HTTPException, Query
from pydantic import Field
from sqlalchemy.engine import Engine

from provider_trust_engine.extraction.extractor import PlainTextExtractor, TextExtractor
from provider_trust_engine.extraction.ocr_client import OCRServiceClient
from provider_trust_engine.notifications.dispatcher import NotificationDispatcher, build_dispatcher
from provider_trust_engine.store.trust_store import TrustStore
from provider_trust_engine.trust.config import get_trust_config
from provider_trust_engine.trust.errors import (
    ConcurrentSubmissionConflict,
    InvalidProfileUpdate,
    InvalidStateTransition,
    RequestNotFound,
    TrustError,
)
from provider_trust_engine.trust.profile_updates import ProfileUpdateService
from provider_trust_engine.trust.review_queue import AdminReviewQueue, QueueFilter
from provider_trust_engine.trust.schemas import (
    DocumentRef,
    DocumentType,
    IdentityExpectation,
    RequestStatus,
    TrustModel,
    VerificationRequest,
)
from provider_trust_engine.trust.state_machine import TrustStateMachine
from provider_trust_engine.trust.submission import submit_documents

logger = logging.getLogger(__name__)

app = FastAPI(title="Provider Trust API")


@dataclass
class Services:
    store: TrustStore
    state_machine: TrustStateMachine
    profile_updates: ProfileUpdateService
    review_queue: AdminReviewQueue
    extractor: TextExtractor


def _default_extractor() -> TextExtractor:
    config = get_trust_config()
    url = os.getenv(config.ocr_service_url_env)
    if url:
        return OCRServiceClient(
            api_url=url,
            api_key=os.getenv(config.ocr_api_key_env),
            timeout_s=config.scoring.extraction_timeout_s,
        )
    return PlainTextExtractor()


def build_services(
    engine: Optional[Engine] = None,
    extractor: Optional[TextExtractor] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
) -> Services:
    store = TrustStore(engine)
    state_machine = TrustStateMachine(store, dispatcher or build_dispatcher())
    return Services(
        store=store,
        state_machine=state_machine,
        profile_updates=ProfileUpdateService(state_machine),
        review_queue=AdminReviewQueue(state_machine),
        extractor=extractor or _default_extractor(),
    )


_services: Optional[Services] = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = build_services()
    return _services


class DocumentUpload(TrustModel):
    content_base64: str = Field(min_length=1)
    file_name: Optional[str] = None
    content_type: Optional[str] = None


class SubmissionPayload(TrustModel):
    provider_name: str = Field(min_length=1)
    registration_number: Optional[str] = None
    facility_name: Optional[str] = None
    date: Optional[str] = None
    documents: Dict[DocumentType, DocumentUpload]
    additional_notes: Optional[str] = None


class DecisionPayload(TrustModel):
    notes: Optional[str] = None


def _require_internal_key(provided: Optional[str]) -> None:
    expected = os.getenv(get_trust_config().internal_api_key_env)
    if not expected:
        raise HTTPException(status_code=503, detail="Internal API key is not configured")
    if provided != expected:
        raise HTTPException(status_code=401, detail="Invalid internal API key")


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, RequestNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (ConcurrentSubmissionConflict, InvalidStateTransition)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, (InvalidProfileUpdate, ValueError)):
        return HTTPException(status_code=422, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def _request_payload(request: VerificationRequest) -> Dict[str, Any]:
    payload = request.to_wire()
    payload["preVerified"] = request.pre_verified
    payload["priorityScore"] = round(request.priority_score, 2)
    payload["defaultAction"] = AdminReviewQueue.default_action(request)
    return payload


def _decode_documents(payload: SubmissionPayload):
    uploads: Dict[str, bytes] = {}
    refs: Dict[str, DocumentRef] = {}
    for doc_type, upload in payload.documents.items():
        try:
            uploads[doc_type.value] = base64.b64decode(upload.content_base64, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise HTTPException(
                status_code=422, detail=f"Document '{doc_type.value}' is not valid base64"
            ) from exc
        refs[doc_type.value] = DocumentRef(
            ref=upload.file_name or doc_type.value,
            file_name=upload.file_name,
            content_type=upload.content_type,
        )
    return uploads, refs


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/providers/{provider_id}/verification-requests")
async def create_verification_request(provider_id: str, payload: SubmissionPayload):
    services = get_services()
    uploads, refs = _decode_documents(payload)
    try:
        expectation = IdentityExpectation.from_provider_name(
            payload.provider_name,
            registration_number=payload.registration_number,
            facility_name=payload.facility_name,
            date=payload.date,
        )
        request = await submit_documents(
            services.state_machine,
            provider_id,
            payload.provider_name,
            uploads,
            services.extractor,
            expectation=expectation,
            document_refs=refs,
            additional_notes=payload.additional_notes,
        )
    except (TrustError, ValueError) as exc:
        raise _http_error(exc) from exc
    return _request_payload(request)


@app.get("/providers/{provider_id}/verification-requests/latest")
def get_latest_verification_request(provider_id: str):
    request = get_services().state_machine.latest_request(provider_id)
    if request is None:
        raise HTTPException(status_code=404, detail="No verification request found")
    return _request_payload(request)


@app.get("/providers/{provider_id}/trust-state")
def get_trust_state(provider_id: str):
    return get_services().state_machine.get_state(provider_id).to_wire()


@app.patch("/providers/{provider_id}/profile")
def update_profile(provider_id: str, update: Dict[str, Any] = Body(...)):
    try:
        result = get_services().profile_updates.apply(provider_id, update)
    except (TrustError, ValueError) as exc:
        raise _http_error(exc) from exc
    return result.to_wire()


@app.post("/providers/{provider_id}/profile/preview")
def preview_profile_update(provider_id: str, update: Dict[str, Any] = Body(...)):
    try:
        preview = get_services().profile_updates.preview(provider_id, update)
    except (TrustError, ValueError) as exc:
        raise _http_error(exc) from exc
    return preview.to_wire()


@app.get("/admin/verification-requests")
def list_verification_requests(
    status: Optional[str] = Query(default=RequestStatus.PENDING.value),
    provider_id: Optional[str] = None,
    pre_verified_only: bool = False,
    limit: Optional[int] = Query(default=None, ge=1, le=1000),
    x_internal_api_key: Optional[str] = Header(default=None, alias="X-Internal-API-Key"),
):
    _require_internal_key(x_internal_api_key)
    try:
        status_filter = None if status in (None, "all") else RequestStatus(status)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=f"Unknown status '{status}'") from exc
    requests = get_services().review_queue.list(
        QueueFilter(
            status=status_filter,
            provider_id=provider_id,
            pre_verified_only=pre_verified_only,
            limit=limit,
        )
    )
    return {"requests": [_request_payload(request) for request in requests]}


@app.get("/admin/verification-requests/report")
def verification_queue_report(
    x_internal_api_key: Optional[str] = Header(default=None, alias="X-Internal-API-Key"),
):
    _require_internal_key(x_internal_api_key)
    return get_services().review_queue.report()


@app.post("/admin/verification-requests/{request_id}/approve")
def approve_verification_request(
    request_id: str,
    payload: Optional[DecisionPayload] = None,
    x_internal_api_key: Optional[str] = Header(default=None, alias="X-Internal-API-Key"),
):
    _require_internal_key(x_internal_api_key)
    notes = payload.notes if payload else None
    try:
        request = get_services().review_queue.approve(request_id, notes)
    except (TrustError, ValueError) as exc:
        raise _http_error(exc) from exc
    return _request_payload(request)


@app.post("/admin/verification-requests/{request_id}/reject")
def reject_verification_request(
    request_id: str,
    payload: DecisionPayload,
    x_internal_api_key: Optional[str] = Header(default=None, alias="X-Internal-API-Key"),
):
    _require_internal_key(x_internal_api_key)
    try:
        request = get_services().review_queue.reject(request_id, payload.notes or "")
    except (TrustError, ValueError) as exc:
        raise _http_error(exc) from exc
    return _request_payload(request)
