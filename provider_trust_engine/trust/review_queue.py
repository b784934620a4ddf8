from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from provider_trust_engine.trust.config import get_trust_config
from provider_trust_engine.trust.schemas import RequestStatus, VerificationRequest
from provider_trust_engine.trust.state_machine import TrustStateMachine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueueFilter:
    status: Optional[RequestStatus] = RequestStatus.PENDING
    provider_id: Optional[str] = None
    pre_verified_only: bool = False
    limit: Optional[int] = None


class AdminReviewQueue:
    """Operator view over verification requests.

    Ordering: pre-verified first, then higher OCR score, then oldest
    submission. Decisions go through the state machine one request at a time.
    """

    def __init__(self, state_machine: TrustStateMachine) -> None:
        self.state_machine = state_machine
        self.store = state_machine.store

    def list(self, queue_filter: Optional[QueueFilter] = None) -> List[VerificationRequest]:
        queue_filter = queue_filter or QueueFilter()
        limit = queue_filter.limit or get_trust_config().review_queue_default_limit
        with self.store.engine.connect() as conn:
            return self.store.list_requests(
                conn,
                status=queue_filter.status,
                provider_id=queue_filter.provider_id,
                pre_verified_only=queue_filter.pre_verified_only,
                limit=limit,
            )

    def approve(self, request_id: str, notes: Optional[str] = None) -> VerificationRequest:
        return self.state_machine.decide(request_id, RequestStatus.APPROVED, notes)

    def reject(self, request_id: str, notes: str) -> VerificationRequest:
        if not notes or not notes.strip():
            raise ValueError("Rejection notes are required")
        return self.state_machine.decide(request_id, RequestStatus.REJECTED, notes.strip())

    @staticmethod
    def default_action(request: VerificationRequest) -> str:
        """Suggested operator action; advisory only, never applied automatically."""
        return "approve" if request.pre_verified else "review"

    def report(self) -> Dict[str, Any]:
        frame = self.store.load_requests_frame()
        if frame.empty:
            return {
                "total": 0,
                "by_status": {},
                "pending": 0,
                "pending_pre_verified_share": 0.0,
                "pending_mean_ocr_score": 0.0,
                "mean_turnaround_hours": None,
            }
        by_status = frame["status"].value_counts().to_dict()
        pending = frame[frame["status"] == RequestStatus.PENDING.value]
        decided = frame[frame["reviewed_at"].notna()]
        turnaround = (
            (decided["reviewed_at"] - decided["submitted_at"]).dt.total_seconds() / 3600
        )
        report = {
            "total": int(len(frame)),
            "by_status": {str(key): int(value) for key, value in by_status.items()},
            "pending": int(len(pending)),
            "pending_pre_verified_share": (
                round(float(pending["pre_verified"].astype(bool).mean()), 4)
                if len(pending)
                else 0.0
            ),
            "pending_mean_ocr_score": (
                round(float(pending["ocr_score"].mean()), 2) if len(pending) else 0.0
            ),
            "mean_turnaround_hours": (
                round(float(turnaround.mean()), 2) if len(turnaround) else None
            ),
        }
        logger.info(
            "Review queue report total=%s pending=%s", report["total"], report["pending"]
        )
        return report
