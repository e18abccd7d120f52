"""
Text extraction for uploads.

Each upload is classified once into a ``FileCategory`` and handed to the
extractor for that category:

    plain_text        → decoded locally
    office_document   → .docx read locally with python-docx
    scanned_document  → PDFs, images and anything unknown go to OCR
"""

from __future__ import annotations

import asyncio
import enum
import io
import os
from typing import Callable, Dict, Optional, Protocol

from docx import Document as DocxDocument

from discovery.core.config import Settings
from discovery.core.logger import logger
from discovery.db.schemas import ExtractedText, UploadedFile
from discovery.services.interfaces import OcrService, ProgressCallback, UsageGate
from discovery.services.ocr_service import OcrPoller
from discovery.services.usage_service import ensure_allowed
from discovery.utils.exceptions import DocxExtractionError

DOCX_MIME_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"

OCR_MIME_TYPES = frozenset({
    "application/pdf",
    "image/png",
    "image/jpeg",
    "image/jpg",
    "image/gif",
    "image/webp",
    "image/tiff",
    "image/bmp",
})


class FileCategory(str, enum.Enum):
    plain_text = "plain_text"
    office_document = "office_document"
    scanned_document = "scanned_document"


class Extractor(Protocol):
    async def extract(
        self,
        upload: UploadedFile,
        on_progress: ProgressCallback,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ExtractedText: ...


def classify_file(file_name: str, content_type: str = "") -> FileCategory:
    """MIME type first, then extension; unknown files need OCR."""
    mime = (content_type or "").split(";")[0].strip().lower()
    if mime == "text/plain":
        return FileCategory.plain_text
    if mime == DOCX_MIME_TYPE:
        return FileCategory.office_document
    if mime in OCR_MIME_TYPES:
        return FileCategory.scanned_document

    ext = os.path.splitext(file_name or "")[1].lower().lstrip(".")
    if ext == "txt":
        return FileCategory.plain_text
    if ext == "docx":
        return FileCategory.office_document
    return FileCategory.scanned_document


# ============================================================================
# Extractors
# ============================================================================

class PlainTextExtractor:
    async def extract(
        self,
        upload: UploadedFile,
        on_progress: ProgressCallback,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ExtractedText:
        text = upload.content.decode("utf-8", errors="replace")
        on_progress(100)
        return ExtractedText(text=text)


class DocxExtractor:
    """Reads Word documents locally; no metered call is made."""

    async def extract(
        self,
        upload: UploadedFile,
        on_progress: ProgressCallback,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ExtractedText:
        logger.info("Extracting text from DOCX %s", upload.file_name)
        on_progress(10)
        data = upload.content
        on_progress(30)
        try:
            text = await asyncio.to_thread(self._read_docx, data)
        except Exception as exc:
            logger.error("DOCX extraction failed for %s: %s", upload.file_name, str(exc))
            raise DocxExtractionError(upload.file_name, str(exc)) from exc
        on_progress(90)
        on_progress(100)
        return ExtractedText(text=text)

    @staticmethod
    def _read_docx(data: bytes) -> str:
        document = DocxDocument(io.BytesIO(data))
        parts = [p.text for p in document.paragraphs if p.text]
        for table in document.tables:
            for row in table.rows:
                cells = [cell.text for cell in row.cells]
                if any(cells):
                    parts.append("\t".join(cells))
        return "\n".join(parts)


class OcrExtractor:
    """Submits the upload to the OCR service and waits for the text."""

    def __init__(
        self,
        ocr_service: OcrService,
        usage_gate: UsageGate,
        poller_factory: Callable[[], OcrPoller],
    ) -> None:
        self.ocr_service = ocr_service
        self.usage_gate = usage_gate
        self.poller_factory = poller_factory

    async def extract(
        self,
        upload: UploadedFile,
        on_progress: ProgressCallback,
        cancel_event: Optional[asyncio.Event] = None,
        on_submitted: Optional[Callable[[str], None]] = None,
    ) -> ExtractedText:
        ensure_allowed(self.usage_gate)

        submission = await self.ocr_service.submit(
            upload.content,
            upload.file_name,
            upload.content_type,
            public_url=upload.public_url,
        )
        logger.info("OCR job %s submitted for %s", submission.job_id, upload.file_name)
        if on_submitted is not None:
            on_submitted(submission.job_id)
        on_progress(10)

        result = await self.poller_factory().run(submission, on_progress, cancel_event)
        if result.page_count:
            self.usage_gate.record(ocr_pages=result.page_count)
        return ExtractedText(
            text=result.text,
            page_count=result.page_count,
            external_job_id=submission.job_id,
        )


# ============================================================================
# Dispatcher
# ============================================================================

class TextExtractionService:
    """Routes each upload to the extractor for its file category."""

    def __init__(
        self,
        ocr_service: OcrService,
        usage_gate: UsageGate,
        settings: Optional[Settings] = None,
        poller_factory: Optional[Callable[[], OcrPoller]] = None,
    ) -> None:
        self.ocr_extractor = OcrExtractor(
            ocr_service,
            usage_gate,
            poller_factory or (lambda: OcrPoller(ocr_service, settings=settings)),
        )
        self.extractors: Dict[FileCategory, Extractor] = {
            FileCategory.plain_text: PlainTextExtractor(),
            FileCategory.office_document: DocxExtractor(),
            FileCategory.scanned_document: self.ocr_extractor,
        }

    async def extract_document(
        self,
        upload: UploadedFile,
        on_progress: ProgressCallback,
        cancel_event: Optional[asyncio.Event] = None,
        on_submitted: Optional[Callable[[str], None]] = None,
    ) -> ExtractedText:
        """
        Extract text plus whatever metadata the extractor knows (page count,
        OCR job id). *on_submitted* receives the OCR job id before polling.
        """
        category = classify_file(upload.file_name, upload.content_type)
        logger.info("Extracting text from %s (category: %s)", upload.file_name, category.value)
        if category is FileCategory.scanned_document:
            return await self.ocr_extractor.extract(upload, on_progress, cancel_event, on_submitted)
        return await self.extractors[category].extract(upload, on_progress, cancel_event)

    async def extract(
        self,
        upload: UploadedFile,
        on_progress: ProgressCallback,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> str:
        return (await self.extract_document(upload, on_progress, cancel_event)).text
