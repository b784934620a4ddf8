from __future__ import annotations

import asyncio
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Mapping, Optional, Tuple

from provider_trust_engine.extraction.extractor import TextExtractor
from provider_trust_engine.matchers.field_matcher import match_fields
from provider_trust_engine.scoring.scorer import required_fields_for, score
from provider_trust_engine.trust.config import get_trust_config
from provider_trust_engine.trust.errors import ExtractionFailure
from provider_trust_engine.trust.schemas import DocumentType, IdentityExpectation, OCRResult

logger = logging.getLogger(__name__)

# Kept off the loop default executor: asyncio.run shutdown must not wait on a hung extractor.
_EXTRACTION_POOL = ThreadPoolExecutor(max_workers=8, thread_name_prefix="text-extraction")


class ScoringStage(str, Enum):
    EXTRACTING = "extracting_text"
    MATCHING = "matching_fields"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class ScoringProgress:
    document_type: str
    stage: ScoringStage
    progress: int
    message: str


ProgressObserver = Callable[[ScoringProgress], None]


def _notify(
    observer: Optional[ProgressObserver],
    document_type: str,
    stage: ScoringStage,
    progress: int,
    message: str,
) -> None:
    if observer is None:
        return
    try:
        observer(ScoringProgress(document_type, stage, progress, message))
    except Exception:
        logger.exception("Progress observer failed document_type=%s stage=%s", document_type, stage.value)


async def score_document(
    data: bytes,
    expectation: IdentityExpectation,
    document_type: DocumentType | str,
    extractor: TextExtractor,
    timeout_s: Optional[float] = None,
    observer: Optional[ProgressObserver] = None,
) -> OCRResult:
    """Extract text from one document and score it against the expectation.

    Extraction runs on the extraction thread pool bounded by ``timeout_s``.
    An extractor carrying its own ``timeout_s`` (the OCR HTTP client) is
    capped to the same budget. Any extraction problem is absorbed into
    ``OCRResult.failed`` so the submission can always proceed to manual
    review. Cancellation propagates.
    """
    doc_type = DocumentType(document_type).value
    timeout_s = timeout_s if timeout_s is not None else get_trust_config().scoring.extraction_timeout_s
    _cap_extractor_timeout(extractor, timeout_s)
    start_time = time.monotonic()

    _notify(observer, doc_type, ScoringStage.EXTRACTING, 0, "Extracting text")
    loop = asyncio.get_running_loop()
    try:
        text = await asyncio.wait_for(
            loop.run_in_executor(_EXTRACTION_POOL, extractor.extract_text, data),
            timeout=timeout_s,
        )
    except asyncio.TimeoutError:
        logger.warning(
            "Text extraction timed out document_type=%s timeout_s=%s", doc_type, timeout_s
        )
        _notify(observer, doc_type, ScoringStage.FAILED, 100, "Extraction timed out")
        return _with_timing(OCRResult.failed(f"Extraction timed out after {timeout_s}s"), start_time)
    except ExtractionFailure as exc:
        logger.warning("Text extraction failed document_type=%s error=%s", doc_type, exc)
        _notify(observer, doc_type, ScoringStage.FAILED, 100, "Extraction failed")
        return _with_timing(OCRResult.failed(str(exc)), start_time)
    except Exception as exc:
        logger.exception("Unexpected extractor error document_type=%s", doc_type)
        _notify(observer, doc_type, ScoringStage.FAILED, 100, "Extraction failed")
        return _with_timing(OCRResult.failed(f"Extractor error: {exc}"), start_time)

    _notify(observer, doc_type, ScoringStage.MATCHING, 50, "Matching fields")
    fields = match_fields(expectation, text)
    result = score(fields, required_fields_for(doc_type, expectation))
    _notify(observer, doc_type, ScoringStage.DONE, 100, "Done")
    logger.info(
        "Document scored document_type=%s success=%s overall_score=%.2f",
        doc_type,
        result.success,
        result.overall_score,
    )
    return _with_timing(result, start_time)


def _cap_extractor_timeout(extractor: TextExtractor, timeout_s: float) -> None:
    own_timeout = getattr(extractor, "timeout_s", None)
    if own_timeout is not None and own_timeout > timeout_s:
        logger.info(
            "Capping extractor timeout extractor=%s from_s=%s to_s=%s",
            type(extractor).__name__,
            own_timeout,
            timeout_s,
        )
        extractor.timeout_s = timeout_s


def _with_timing(result: OCRResult, start_time: float) -> OCRResult:
    elapsed_ms = (time.monotonic() - start_time) * 1000
    return result.model_copy(update={"processing_time_ms": round(elapsed_ms, 2)})


async def score_documents(
    uploads: Mapping[DocumentType | str, bytes],
    expectation: IdentityExpectation,
    extractor: TextExtractor,
    timeout_s: Optional[float] = None,
    observer: Optional[ProgressObserver] = None,
) -> Dict[str, OCRResult]:
    """Score independent documents concurrently; results are keyed by document type."""
    doc_types = [DocumentType(doc_type).value for doc_type in uploads]
    results = await asyncio.gather(
        *(
            score_document(data, expectation, doc_type, extractor, timeout_s, observer)
            for doc_type, data in zip(doc_types, uploads.values())
        )
    )
    return dict(zip(doc_types, results))


SlotKey = Tuple[str, str]


class UploadSlotScorer:
    """Keeps at most one live scoring task per (owner, upload slot).

    Replacing a file in a slot cancels the in-flight task for the old file,
    and only the most recently started task may record its result.
    """

    def __init__(self, extractor: TextExtractor, timeout_s: Optional[float] = None) -> None:
        self.extractor = extractor
        self.timeout_s = timeout_s
        self._tasks: Dict[SlotKey, asyncio.Task] = {}
        self._generations: Dict[SlotKey, int] = {}
        self._results: Dict[SlotKey, OCRResult] = {}

    def start(
        self,
        owner_id: str,
        slot: DocumentType | str,
        data: bytes,
        expectation: IdentityExpectation,
        observer: Optional[ProgressObserver] = None,
    ) -> asyncio.Task:
        key = (owner_id, DocumentType(slot).value)
        previous = self._tasks.get(key)
        if previous is not None and not previous.done():
            previous.cancel()
            logger.info("Superseded scoring task cancelled owner_id=%s slot=%s", *key)
        generation = self._generations.get(key, 0) + 1
        self._generations[key] = generation
        self._results.pop(key, None)
        task = asyncio.create_task(self._run(key, generation, data, expectation, observer))
        self._tasks[key] = task
        return task

    async def _run(
        self,
        key: SlotKey,
        generation: int,
        data: bytes,
        expectation: IdentityExpectation,
        observer: Optional[ProgressObserver],
    ) -> OCRResult:
        result = await score_document(
            data, expectation, key[1], self.extractor, self.timeout_s, observer
        )
        if self._generations.get(key) == generation:
            self._results[key] = result
        else:
            logger.info("Discarded stale scoring result owner_id=%s slot=%s", *key)
        return result

    def discard(self, owner_id: str, slot: DocumentType | str) -> None:
        key = (owner_id, DocumentType(slot).value)
        task = self._tasks.pop(key, None)
        if task is not None and not task.done():
            task.cancel()
        self._generations[key] = self._generations.get(key, 0) + 1
        self._results.pop(key, None)

    def result_for(self, owner_id: str, slot: DocumentType | str) -> Optional[OCRResult]:
        return self._results.get((owner_id, DocumentType(slot).value))

    async def collect(self, owner_id: str) -> Dict[str, OCRResult]:
        """Wait for the owner's live tasks and hand over their results.

        Collecting ends the round: the owner's slots are cleared, so a later
        round only sees files uploaded after this call.
        """
        while True:
            live = [
                task
                for key, task in self._tasks.items()
                if key[0] == owner_id and not task.done()
            ]
            if not live:
                break
            await asyncio.gather(*live, return_exceptions=True)
        collected = {}
        for key in [key for key in self._tasks if key[0] == owner_id]:
            del self._tasks[key]
        for key in [key for key in self._generations if key[0] == owner_id]:
            del self._generations[key]
        for key in [key for key in self._results if key[0] == owner_id]:
            collected[key[1]] = self._results.pop(key)
        return collected
