from __future__ import annotations

import logging
import os
import time
from typing import Any, Dict, Optional
from uuid import uuid4

import httpx

from provider_trust_engine.trust.errors import ExtractionFailure

logger = logging.getLogger(__name__)


class OCRServiceClient:
    """Text extractor backed by an external OCR HTTP service."""

    def __init__(
        self,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        languages: str = "eng+fra+ara",
        timeout_s: float = 30.0,
    ) -> None:
        api_url = api_url or os.getenv("OCR_SERVICE_URL")
        if not api_url:
            raise ValueError("OCR service URL is required")
        self.api_url: str = api_url
        self.api_key = api_key
        self.languages = languages
        self.timeout_s = timeout_s
        self.last_latency_ms: Optional[float] = None
        self.last_request_id: Optional[str] = None

    @staticmethod
    def _extract_content(data: Any) -> Optional[str]:
        if not isinstance(data, dict):
            return None
        if isinstance(data.get("text"), str):
            return data["text"]
        pages = data.get("pages")
        if isinstance(pages, list) and pages:
            texts = [
                page["text"]
                for page in pages
                if isinstance(page, dict) and isinstance(page.get("text"), str)
            ]
            if texts:
                return "\n".join(texts)
        lines = data.get("lines")
        if isinstance(lines, list) and lines:
            texts = [line for line in lines if isinstance(line, str)]
            if texts:
                return "\n".join(texts)
        return None

    def extract_text(self, data: bytes) -> str:
        if not data:
            raise ExtractionFailure("Empty document")
        request_id = str(uuid4())
        self.last_request_id = request_id
        headers = {
            "Content-Type": "application/octet-stream",
            "X-Request-ID": request_id,
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        start_time = time.monotonic()
        try:
            with httpx.Client(timeout=self.timeout_s) as client:
                response = client.post(
                    self.api_url,
                    headers=headers,
                    params={"languages": self.languages},
                    content=data,
                )
                response.raise_for_status()
                payload: Dict[str, Any] = response.json()
        except httpx.TimeoutException as exc:
            raise ExtractionFailure(
                f"OCR request timed out request_id={request_id}"
            ) from exc
        except httpx.HTTPError as exc:
            raise ExtractionFailure(
                f"OCR request failed request_id={request_id}"
            ) from exc
        except ValueError as exc:
            raise ExtractionFailure(
                f"Invalid JSON response from OCR service request_id={request_id}"
            ) from exc
        finally:
            self.last_latency_ms = (time.monotonic() - start_time) * 1000
            logger.debug(
                "OCR request completed request_id=%s latency_ms=%.2f",
                request_id,
                self.last_latency_ms,
            )
        content = self._extract_content(payload)
        if content is None:
            keys = sorted(payload.keys()) if isinstance(payload, dict) else []
            raise ExtractionFailure(
                f"Unexpected OCR response format request_id={request_id} keys={keys}"
            )
        return content
