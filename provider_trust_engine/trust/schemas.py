from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class TrustModel(BaseModel):
    """Base model: snake_case attributes, camelCase wire keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class VerificationStatus(str, Enum):
    NONE = "none"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class RequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class DocumentType(str, Enum):
    LICENSE = "license"
    ID = "id"


class IdentityExpectation(TrustModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )

    full_name: str = Field(min_length=1)
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    registration_number: Optional[str] = None
    facility_name: Optional[str] = None
    date: Optional[str] = None

    def declared_fields(self) -> Dict[str, str]:
        declared = self.model_dump(by_alias=True)
        return {
            key: value.strip()
            for key, value in declared.items()
            if isinstance(value, str) and value.strip()
        }

    @classmethod
    def from_provider_name(cls, provider_name: str, **extra: Any) -> "IdentityExpectation":
        parts = provider_name.split()
        return cls(
            full_name=provider_name.strip(),
            first_name=parts[0] if parts else None,
            last_name=" ".join(parts[1:]) or None,
            **extra,
        )


class FieldResult(TrustModel):
    field_key: str
    expected_value: str
    found: bool
    similarity: float = Field(ge=0.0, le=1.0)
    matched_substring: Optional[str] = None


class OCRResult(TrustModel):
    success: bool
    overall_score: float = Field(ge=0.0, le=100.0)
    fields: Dict[str, FieldResult] = Field(default_factory=dict)
    error: Optional[str] = None
    processing_time_ms: Optional[float] = None

    @classmethod
    def failed(cls, reason: str) -> "OCRResult":
        return cls(success=False, overall_score=0.0, fields={}, error=reason)


class DocumentRef(TrustModel):
    ref: str = Field(min_length=1)
    file_name: Optional[str] = None
    content_type: Optional[str] = None


class VerificationDocuments(TrustModel):
    license: Optional[DocumentRef] = None
    license_ocr: Optional[OCRResult] = Field(default=None, alias="licenseOCR")
    id_document: Optional[DocumentRef] = Field(default=None, alias="id")
    id_ocr: Optional[OCRResult] = Field(default=None, alias="idOCR")
    additional_notes: Optional[str] = None

    def ocr_results(self) -> List[OCRResult]:
        return [result for result in (self.license_ocr, self.id_ocr) if result is not None]

    def has_documents(self) -> bool:
        return self.license is not None or self.id_document is not None


class VerificationRequest(TrustModel):
    id: str
    provider_id: str
    provider_name: str
    submitted_at: datetime
    status: RequestStatus = RequestStatus.PENDING
    documents: VerificationDocuments = Field(default_factory=VerificationDocuments)
    reviewed_at: Optional[datetime] = None
    review_notes: Optional[str] = None

    @property
    def pre_verified(self) -> bool:
        results = self.documents.ocr_results()
        return bool(results) and all(result.success for result in results)

    @property
    def priority_score(self) -> float:
        results = self.documents.ocr_results()
        if not results:
            return 0.0
        return sum(result.overall_score for result in results) / len(results)


class ProviderTrustState(TrustModel):
    provider_id: str
    provider_name: Optional[str] = None
    verification_status: VerificationStatus = VerificationStatus.NONE
    is_public: bool = False
    last_approved_snapshot: Optional[Dict[str, Any]] = None
    verification_revoked_at: Optional[datetime] = None
    verification_revoked_reason: Optional[str] = None
    version: int = 0

    @model_validator(mode="after")
    def _check_invariants(self) -> "ProviderTrustState":
        approved = self.verification_status == VerificationStatus.APPROVED
        if self.is_public and not approved:
            raise ValueError("isPublic requires verificationStatus 'approved'")
        if approved != (self.last_approved_snapshot is not None):
            raise ValueError(
                "lastApprovedSnapshot must exist exactly when status is 'approved'"
            )
        return self


class ProfileUpdateResult(TrustModel):
    provider_id: str
    applied_fields: List[str] = Field(default_factory=list)
    verification_revoked: bool = False
    modified_sensitive_fields: List[str] = Field(default_factory=list)
    verification_status: VerificationStatus
    is_public: bool


class ProfileUpdatePreview(TrustModel):
    provider_id: str
    verification_status: VerificationStatus
    would_revoke: bool
    modified_sensitive_fields: List[str] = Field(default_factory=list)


class NotificationEvent(TrustModel):
    provider_id: str
    event_type: Literal["submission_created", "decision_made", "verification_revoked"]
    timestamp: datetime
    details: Dict[str, Any] = Field(default_factory=dict)
