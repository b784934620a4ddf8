from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

import pandas as pd
from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from provider_trust_engine.store.connections import get_engine, init_db
from provider_trust_engine.trust.config import get_trust_config
from provider_trust_engine.trust.errors import (
    ConcurrentSubmissionConflict,
    InvalidStateTransition,
)
from provider_trust_engine.trust.schemas import (
    ProviderTrustState,
    RequestStatus,
    VerificationDocuments,
    VerificationRequest,
    VerificationStatus,
)

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_request(row: Mapping[str, Any]) -> VerificationRequest:
    return VerificationRequest(
        id=row["id"],
        provider_id=row["provider_id"],
        provider_name=row["provider_name"],
        submitted_at=_from_iso(row["submitted_at"]),
        status=RequestStatus(row["status"]),
        documents=VerificationDocuments.model_validate(json.loads(row["documents"])),
        reviewed_at=_from_iso(row["reviewed_at"]),
        review_notes=row["review_notes"],
    )


def _row_to_state(row: Mapping[str, Any]) -> ProviderTrustState:
    snapshot = row["last_approved_snapshot"]
    return ProviderTrustState(
        provider_id=row["provider_id"],
        provider_name=row["provider_name"],
        verification_status=VerificationStatus(row["verification_status"]),
        is_public=bool(row["is_public"]),
        last_approved_snapshot=json.loads(snapshot) if snapshot is not None else None,
        verification_revoked_at=_from_iso(row["verification_revoked_at"]),
        verification_revoked_reason=row["verification_revoked_reason"],
        version=int(row["version"]),
    )


class TrustStore:
    """SQL persistence for verification requests, trust states and profile fields.

    Every read/write method takes the caller's open connection so several
    writes can share one transaction (see ``transaction``).
    """

    def __init__(self, engine: Optional[Engine] = None) -> None:
        if engine is None:
            config = get_trust_config()
            engine = get_engine(config.database_url_env, config.database_url_default)
        self.engine = engine
        init_db(self.engine)

    def transaction(self):
        return self.engine.begin()

    # Verification requests

    def insert_request(self, conn: Connection, request: VerificationRequest) -> None:
        try:
            conn.execute(
                text(
                    """
                    INSERT INTO verification_requests (
                        id, provider_id, provider_name, submitted_at, status,
                        documents, pre_verified, ocr_score, reviewed_at, review_notes
                    ) VALUES (
                        :id, :provider_id, :provider_name, :submitted_at, :status,
                        :documents, :pre_verified, :ocr_score, :reviewed_at, :review_notes
                    )
                    """
                ),
                {
                    "id": request.id,
                    "provider_id": request.provider_id,
                    "provider_name": request.provider_name,
                    "submitted_at": _to_iso(request.submitted_at),
                    "status": request.status.value,
                    "documents": request.documents.model_dump_json(by_alias=True),
                    "pre_verified": int(request.pre_verified),
                    "ocr_score": float(request.priority_score),
                    "reviewed_at": _to_iso(request.reviewed_at),
                    "review_notes": request.review_notes,
                },
            )
        except IntegrityError as exc:
            logger.warning(
                "Pending request already exists provider_id=%s request_id=%s",
                request.provider_id,
                request.id,
            )
            raise ConcurrentSubmissionConflict(request.provider_id) from exc

    def get_request(self, conn: Connection, request_id: str) -> Optional[VerificationRequest]:
        row = (
            conn.execute(
                text("SELECT * FROM verification_requests WHERE id = :id"),
                {"id": request_id},
            )
            .mappings()
            .first()
        )
        return _row_to_request(row) if row else None

    def find_pending_request(
        self, conn: Connection, provider_id: str
    ) -> Optional[VerificationRequest]:
        row = (
            conn.execute(
                text(
                    """
                    SELECT * FROM verification_requests
                    WHERE provider_id = :provider_id AND status = 'pending'
                    LIMIT 1
                    """
                ),
                {"provider_id": provider_id},
            )
            .mappings()
            .first()
        )
        return _row_to_request(row) if row else None

    def latest_request(self, conn: Connection, provider_id: str) -> Optional[VerificationRequest]:
        row = (
            conn.execute(
                text(
                    """
                    SELECT * FROM verification_requests
                    WHERE provider_id = :provider_id
                    ORDER BY submitted_at DESC
                    LIMIT 1
                    """
                ),
                {"provider_id": provider_id},
            )
            .mappings()
            .first()
        )
        return _row_to_request(row) if row else None

    def mark_request_decided(
        self,
        conn: Connection,
        request_id: str,
        status: RequestStatus,
        notes: Optional[str],
        reviewed_at: datetime,
    ) -> bool:
        """Decide a pending request; returns False when it was no longer pending."""
        result = conn.execute(
            text(
                """
                UPDATE verification_requests
                SET status = :status, review_notes = :notes, reviewed_at = :reviewed_at
                WHERE id = :id AND status = 'pending'
                """
            ),
            {
                "status": status.value,
                "notes": notes,
                "reviewed_at": _to_iso(reviewed_at),
                "id": request_id,
            },
        )
        return result.rowcount == 1

    def list_requests(
        self,
        conn: Connection,
        status: Optional[RequestStatus] = RequestStatus.PENDING,
        provider_id: Optional[str] = None,
        pre_verified_only: bool = False,
        limit: int = 100,
    ) -> List[VerificationRequest]:
        clauses = []
        params: Dict[str, Any] = {"limit": limit}
        if status is not None:
            clauses.append("status = :status")
            params["status"] = status.value
        if provider_id is not None:
            clauses.append("provider_id = :provider_id")
            params["provider_id"] = provider_id
        if pre_verified_only:
            clauses.append("pre_verified = 1")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = (
            conn.execute(
                text(
                    f"""
                    SELECT * FROM verification_requests
                    {where}
                    ORDER BY pre_verified DESC, ocr_score DESC, submitted_at ASC
                    LIMIT :limit
                    """
                ),
                params,
            )
            .mappings()
            .all()
        )
        return [_row_to_request(row) for row in rows]

    def load_requests_frame(self) -> pd.DataFrame:
        with self.engine.connect() as conn:
            frame = pd.read_sql(
                text(
                    """
                    SELECT id, provider_id, status, pre_verified, ocr_score,
                           submitted_at, reviewed_at
                    FROM verification_requests
                    """
                ),
                conn,
            )
        for column in ("submitted_at", "reviewed_at"):
            frame[column] = pd.to_datetime(frame[column], utc=True, format="ISO8601")
        return frame

    # Provider trust states

    def get_trust_state(self, conn: Connection, provider_id: str) -> ProviderTrustState:
        row = (
            conn.execute(
                text("SELECT * FROM provider_trust_states WHERE provider_id = :provider_id"),
                {"provider_id": provider_id},
            )
            .mappings()
            .first()
        )
        if not row:
            return ProviderTrustState(provider_id=provider_id)
        return _row_to_state(row)

    def save_trust_state(
        self, conn: Connection, state: ProviderTrustState, expected_version: int
    ) -> ProviderTrustState:
        """Write ``state`` if the stored version still equals ``expected_version``."""
        params = {
            "provider_id": state.provider_id,
            "provider_name": state.provider_name,
            "verification_status": state.verification_status.value,
            "is_public": int(state.is_public),
            "last_approved_snapshot": (
                json.dumps(state.last_approved_snapshot)
                if state.last_approved_snapshot is not None
                else None
            ),
            "verification_revoked_at": _to_iso(state.verification_revoked_at),
            "verification_revoked_reason": state.verification_revoked_reason,
            "expected_version": expected_version,
            "new_version": expected_version + 1,
            "updated_at": _to_iso(utc_now()),
        }
        if expected_version == 0:
            result = conn.execute(
                text(
                    """
                    INSERT INTO provider_trust_states (
                        provider_id, provider_name, verification_status, is_public,
                        last_approved_snapshot, verification_revoked_at,
                        verification_revoked_reason, version, updated_at
                    ) VALUES (
                        :provider_id, :provider_name, :verification_status, :is_public,
                        :last_approved_snapshot, :verification_revoked_at,
                        :verification_revoked_reason, :new_version, :updated_at
                    )
                    ON CONFLICT (provider_id) DO NOTHING
                    """
                ),
                params,
            )
        else:
            result = conn.execute(
                text(
                    """
                    UPDATE provider_trust_states
                    SET provider_name = :provider_name,
                        verification_status = :verification_status,
                        is_public = :is_public,
                        last_approved_snapshot = :last_approved_snapshot,
                        verification_revoked_at = :verification_revoked_at,
                        verification_revoked_reason = :verification_revoked_reason,
                        version = :new_version,
                        updated_at = :updated_at
                    WHERE provider_id = :provider_id AND version = :expected_version
                    """
                ),
                params,
            )
        if result.rowcount != 1:
            logger.warning(
                "Trust state version conflict provider_id=%s expected_version=%s",
                state.provider_id,
                expected_version,
            )
            raise InvalidStateTransition(
                f"Trust state for provider={state.provider_id} changed concurrently",
                current_status=state.verification_status.value,
            )
        return state.model_copy(update={"version": expected_version + 1})

    # Provider profile fields

    def get_profile_fields(
        self, conn: Connection, provider_id: str, keys: Optional[Iterable[str]] = None
    ) -> Dict[str, Any]:
        rows = (
            conn.execute(
                text(
                    """
                    SELECT field_key, value FROM provider_profile_fields
                    WHERE provider_id = :provider_id
                    ORDER BY field_key
                    """
                ),
                {"provider_id": provider_id},
            )
            .mappings()
            .all()
        )
        wanted = set(keys) if keys is not None else None
        return {
            row["field_key"]: json.loads(row["value"]) if row["value"] is not None else None
            for row in rows
            if wanted is None or row["field_key"] in wanted
        }

    def upsert_profile_fields(
        self, conn: Connection, provider_id: str, fields: Mapping[str, Any]
    ) -> None:
        if not fields:
            return
        updated_at = _to_iso(utc_now())
        conn.execute(
            text(
                """
                INSERT INTO provider_profile_fields (provider_id, field_key, value, updated_at)
                VALUES (:provider_id, :field_key, :value, :updated_at)
                ON CONFLICT (provider_id, field_key)
                DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """
            ),
            [
                {
                    "provider_id": provider_id,
                    "field_key": key,
                    "value": json.dumps(value) if value is not None else None,
                    "updated_at": updated_at,
                }
                for key, value in fields.items()
            ],
        )
