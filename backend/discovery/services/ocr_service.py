"""
OCR via the case API: submission, status polling and result download.

``OcrPoller`` drives one submitted job to a terminal state. It is a small
state machine (submitted → polling → completed | failed | stuck | timed_out)
with an injectable sleep and clock, so stuck and timeout handling can be
exercised without waiting in real time.
"""

from __future__ import annotations

import asyncio
import base64
import enum
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from discovery.core.config import Settings, settings as default_settings
from discovery.core.logger import logger
from discovery.db.schemas import OcrResult, OcrStatus, OcrSubmission
from discovery.services.case_api_client import CaseApiClient, CaseApiError
from discovery.services.interfaces import OcrService, ProgressCallback
from discovery.utils.exceptions import (
    OCRStatusError,
    OCRSubmitError,
    OCRTimeoutError,
    ProcessingCancelledError,
    StuckJobError,
)


def _pick(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return None


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


# ============================================================================
# HTTP client
# ============================================================================

class HttpOcrService:
    """OCR service on the case API (``/ocr/v1``)."""

    def __init__(self, api: CaseApiClient) -> None:
        self.api = api

    async def submit(
        self,
        content: bytes,
        file_name: str,
        content_type: str,
        public_url: Optional[str] = None,
    ) -> OcrSubmission:
        if public_url:
            document_url = public_url
        else:
            encoded = base64.b64encode(content).decode("ascii")
            document_url = f"data:{content_type or 'application/octet-stream'};base64,{encoded}"

        logger.info(
            "Submitting OCR job for %s (%s)",
            file_name,
            "public URL" if public_url else "data URL",
        )
        try:
            data = await self.api.request_json(
                "POST",
                "/ocr/v1/process",
                json={"document_url": document_url, "file_name": file_name},
            )
        except CaseApiError as exc:
            raise OCRSubmitError(str(exc)) from exc

        links = data.get("links") or {}
        job_id = _pick(data, "jobId", "job_id", "id")
        if not job_id:
            raise OCRSubmitError("OCR service did not return a job id")
        job_id = str(job_id)

        return OcrSubmission(
            job_id=job_id,
            status_url=self.api.url(
                _pick(data, "statusUrl", "status_url") or links.get("self") or f"/ocr/v1/{job_id}"
            ),
            result_url=self.api.url(
                _pick(data, "textUrl", "text_url") or links.get("text") or f"/ocr/v1/{job_id}/download/text"
            ),
        )

    async def poll_status(self, submission: OcrSubmission) -> OcrStatus:
        try:
            data = await self.api.request_json("GET", submission.status_url)
        except CaseApiError as exc:
            raise OCRStatusError(f"Failed to check OCR status: {exc}") from exc

        return OcrStatus(
            status=str(data.get("status") or ""),
            text=data.get("text"),
            chunks_completed=_as_int(_pick(data, "chunksCompleted", "chunks_completed")),
            chunks_processing=_as_int(_pick(data, "chunksProcessing", "chunks_processing")),
            chunk_count=_as_int(_pick(data, "chunkCount", "chunk_count")),
            page_count=_as_int(_pick(data, "pageCount", "page_count")),
            error=data.get("error"),
        )

    async def fetch_result(self, submission: OcrSubmission) -> OcrResult:
        try:
            response = await self.api.request("GET", submission.result_url)
        except CaseApiError as exc:
            raise OCRStatusError(f"Failed to download OCR text: {exc}") from exc

        if "json" not in response.headers.get("content-type", ""):
            return OcrResult(text=response.text)

        data = response.json()
        page_count = _as_int(_pick(data, "pageCount", "page_count"))
        text = _pick(data, "text", "extracted_text", "content")
        if text is None and isinstance(data.get("pages"), list):
            text = "\n\n".join(str(page.get("text") or "") for page in data["pages"])
            page_count = page_count or len(data["pages"])
        return OcrResult(text=str(text or ""), page_count=page_count)


# ============================================================================
# Polling state machine
# ============================================================================

class OcrJobState(str, enum.Enum):
    submitted = "submitted"
    polling = "polling"
    completed = "completed"
    failed = "failed"
    stuck = "stuck"
    timed_out = "timed_out"


class OcrPoller:
    """Polls one OCR job until it completes, fails, stalls or runs out of time."""

    def __init__(
        self,
        ocr_service: OcrService,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        settings = settings or default_settings
        self.ocr_service = ocr_service
        self.poll_interval = settings.OCR_POLL_INTERVAL_SECONDS
        self.max_wait = settings.OCR_MAX_WAIT_SECONDS
        self.max_stuck_polls = settings.OCR_MAX_STUCK_POLLS
        self._sleep = sleep
        self._clock = clock
        self.state = OcrJobState.submitted
        self.polls = 0

    def _check_cancelled(self, cancel_event: Optional[asyncio.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise ProcessingCancelledError()

    async def run(
        self,
        submission: OcrSubmission,
        on_progress: ProgressCallback,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> OcrResult:
        self.state = OcrJobState.submitted
        self.polls = 0
        started = self._clock()
        progress = 10
        last_status = ""
        last_completed = -1
        stuck_polls = 0

        while self._clock() - started < self.max_wait:
            self._check_cancelled(cancel_event)
            await self._sleep(self.poll_interval)
            self._check_cancelled(cancel_event)

            status = await self.ocr_service.poll_status(submission)
            self.state = OcrJobState.polling
            self.polls += 1

            if status.status == "completed":
                self.state = OcrJobState.completed
                if status.text is not None:
                    result = OcrResult(text=status.text, page_count=status.page_count)
                else:
                    result = await self.ocr_service.fetch_result(submission)
                    if result.page_count is None:
                        result.page_count = status.page_count
                on_progress(100)
                return result

            if status.status == "failed":
                self.state = OcrJobState.failed
                raise OCRStatusError(status.error or "OCR processing failed")

            chunks_completed = status.chunks_completed or 0
            chunks_processing = status.chunks_processing or 0
            has_progress = (
                status.status != last_status
                or chunks_completed != last_completed
                or chunks_processing > 0
            )

            if has_progress:
                stuck_polls = 0
                last_status = status.status
                last_completed = chunks_completed
            else:
                stuck_polls += 1
                if stuck_polls % 10 == 0:
                    logger.info(
                        "OCR job %s waiting (%d/%d) - status: %s, chunks: %d/%d",
                        submission.job_id,
                        stuck_polls,
                        self.max_stuck_polls,
                        status.status,
                        chunks_completed,
                        status.chunk_count or 0,
                    )
                if stuck_polls >= self.max_stuck_polls:
                    self.state = OcrJobState.stuck
                    raise StuckJobError(polls=self.polls)

            progress = min(progress + 5, 90)
            on_progress(progress)

        self.state = OcrJobState.timed_out
        raise OCRTimeoutError(waited_seconds=self._clock() - started)