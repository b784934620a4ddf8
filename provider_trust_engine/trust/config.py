from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Dict, Tuple

import yaml

CONFIG_PATH = Path(__file__).resolve().parents[1] / "config" / "trust.yml"

DEFAULT_REQUIRED_FIELDS: Dict[str, Tuple[str, ...]] = {
    "license": ("fullName", "registrationNumber"),
    "id": ("fullName",),
}


@dataclass(frozen=True)
class ScoringConfig:
    extraction_timeout_s: float
    required_fields: Dict[str, Tuple[str, ...]] = field(
        default_factory=lambda: dict(DEFAULT_REQUIRED_FIELDS)
    )

    def required_fields_for(self, document_type: str) -> Tuple[str, ...]:
        return self.required_fields.get(document_type, ("fullName",))


@dataclass(frozen=True)
class TrustConfig:
    database_url_env: str
    database_url_default: str
    internal_api_key_env: str
    ocr_service_url_env: str
    ocr_api_key_env: str
    notification_webhook_env: str
    scoring: ScoringConfig
    review_queue_default_limit: int = 100


@lru_cache
def get_trust_config(path: Path = CONFIG_PATH) -> TrustConfig:
    data = yaml.safe_load(path.read_text()) if path.exists() else {}
    data = data or {}
    scoring_data = data.get("scoring") or {}
    required = {
        key: tuple(value or ())
        for key, value in (scoring_data.get("required_fields") or {}).items()
    }
    scoring = ScoringConfig(
        extraction_timeout_s=float(scoring_data.get("extraction_timeout_s", 30)),
        required_fields=required or dict(DEFAULT_REQUIRED_FIELDS),
    )
    queue_data = data.get("review_queue") or {}
    return TrustConfig(
        database_url_env=data.get("database_url_env", "TRUST_DB_URL"),
        database_url_default=data.get(
            "database_url_default", "sqlite:///./provider_trust.db"
        ),
        internal_api_key_env=data.get("internal_api_key_env", "INTERNAL_API_KEY"),
        ocr_service_url_env=data.get("ocr_service_url_env", "OCR_SERVICE_URL"),
        ocr_api_key_env=data.get("ocr_api_key_env", "OCR_API_KEY"),
        notification_webhook_env=data.get(
            "notification_webhook_env", "NOTIFICATION_WEBHOOK_URL"
        ),
        scoring=scoring,
        review_queue_default_limit=int(queue_data.get("default_limit", 100)),
    )
