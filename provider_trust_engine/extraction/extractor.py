from __future__ import annotations

from typing import Protocol, runtime_checkable

from provider_trust_engine.trust.errors import ExtractionFailure


@runtime_checkable
class TextExtractor(Protocol):
    def extract_text(self, data: bytes) -> str:
        ...


class PlainTextExtractor:
    """Reads documents that already carry a text layer (fixtures, text exports)."""

    def __init__(self, encoding: str = "utf-8") -> None:
        self.encoding = encoding

    def extract_text(self, data: bytes) -> str:
        if not data:
            raise ExtractionFailure("Empty document")
        try:
            return data.decode(self.encoding)
        except UnicodeDecodeError as exc:
            raise ExtractionFailure(
                f"Document is not {self.encoding} text; an OCR service is required"
            ) from exc
