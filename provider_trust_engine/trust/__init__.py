"""Provider trust lifecycle: records, errors and the protected-field registry."""

from provider_trust_engine.trust.config import TrustConfig, get_trust_config
from provider_trust_engine.trust.errors import (
    ConcurrentSubmissionConflict,
    InvalidStateTransition,
    TrustError,
)
from provider_trust_engine.trust.protected_fields import PROTECTED_FIELDS
from provider_trust_engine.trust.schemas import (
    OCRResult,
    ProviderTrustState,
    VerificationRequest,
    VerificationStatus,
)

__all__ = [
    "TrustConfig",
    "get_trust_config",
    "TrustError",
    "ConcurrentSubmissionConflict",
    "InvalidStateTransition",
    "PROTECTED_FIELDS",
    "OCRResult",
    "ProviderTrustState",
    "VerificationRequest",
    "VerificationStatus",
]
