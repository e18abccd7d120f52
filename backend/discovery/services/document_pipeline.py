"""
Drives one document through the processing pipeline:
  pending → ocr (text extraction) → chunking → embedding → completed | error

Each stage gets a fresh ProcessingJob. On failure the running job is marked
failed and the document moves to ``error`` before the exception propagates.
"""

from __future__ import annotations

import asyncio
from typing import Callable, List, Optional, Sequence, Tuple, Union

from discovery.core.config import Settings, settings as default_settings
from discovery.core.logger import logger
from discovery.db.models import (
    Document,
    DocumentStatus,
    ProcessingJob,
    ProcessingJobStatus,
    ProcessingJobType,
)
from discovery.db.schemas import UploadProgress, UploadedFile
from discovery.db.store import DiscoveryStore
from discovery.services.chunker import chunk_text
from discovery.services.embedding_orchestrator import EmbeddingOrchestrator
from discovery.services.text_extraction_service import TextExtractionService
from discovery.utils.exceptions import ProcessingCancelledError

UploadProgressCallback = Callable[[UploadProgress], None]


class DocumentPipeline:
    """
    Runs extraction, chunking and embedding for uploaded documents.

    Documents are processed stage by stage; several documents may run at
    once through ``process_many``.
    """

    def __init__(
        self,
        store: DiscoveryStore,
        extraction_service: TextExtractionService,
        embedding_orchestrator: EmbeddingOrchestrator,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or default_settings
        self.store = store
        self.extraction_service = extraction_service
        self.embedding_orchestrator = embedding_orchestrator

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _start_stage(self, document: Document, status: DocumentStatus, job_type: ProcessingJobType) -> ProcessingJob:
        self.store.update_document_status(document.id, status)
        job = self.store.create_job(document.id, document.case_id, job_type)
        logger.info("Document %s → stage=%s job=%s", document.id, job_type.value, job.id)
        return job

    def _finish_stage(self, job: ProcessingJob) -> None:
        self.store.update_job(job.id, status=ProcessingJobStatus.completed, progress=100)

    def _job_progress(
        self,
        job: ProcessingJob,
        emit: Callable[[str, int], None],
        stage: str,
    ) -> Callable[[int], None]:
        def report(progress: int) -> None:
            self.store.update_job(job.id, progress=progress)
            emit(stage, progress)
        return report

    @staticmethod
    def _check_cancelled(document_id: str, cancel_event: Optional[asyncio.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise ProcessingCancelledError(document_id)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def upload_document(
        self,
        case_id: str,
        upload: UploadedFile,
        uploaded_by: str,
        on_progress: Optional[UploadProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Document:
        """Create the document record for *upload* and process it."""
        document = self.store.create_document(
            case_id,
            file_name=upload.file_name,
            file_type=upload.content_type or "application/octet-stream",
            file_size=upload.size,
            uploaded_by=uploaded_by,
        )
        if on_progress is not None:
            on_progress(UploadProgress(document_id=document.id, file_name=upload.file_name, stage="uploading", progress=100))
        return await self.process_document(document.id, upload, on_progress, cancel_event)

    async def process_document(
        self,
        document_id: str,
        upload: UploadedFile,
        on_progress: Optional[UploadProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Document:
        document = self.store.require_document(document_id)

        def emit(stage: str, progress: int, error: Optional[str] = None) -> None:
            if on_progress is not None:
                on_progress(
                    UploadProgress(
                        document_id=document.id,
                        file_name=document.file_name,
                        stage=stage,
                        progress=max(0, min(100, int(progress))),
                        error=error,
                    )
                )

        job: Optional[ProcessingJob] = None
        try:
            # Stage 1: text extraction
            self._check_cancelled(document.id, cancel_event)
            emit("ocr", 0)
            job = self._start_stage(document, DocumentStatus.ocr, ProcessingJobType.ocr)
            ocr_job_id = job.id
            extracted = await self.extraction_service.extract_document(
                upload,
                self._job_progress(job, emit, "ocr"),
                cancel_event,
                on_submitted=lambda external_id: self.store.update_job(ocr_job_id, external_job_id=external_id),
            )
            self.store.set_extracted_text(document.id, extracted.text, extracted.page_count)
            self._finish_stage(job)
            job = None
            emit("ocr", 100)

            # Stage 2: chunking
            self._check_cancelled(document.id, cancel_event)
            emit("chunking", 0)
            job = self._start_stage(document, DocumentStatus.chunking, ProcessingJobType.chunking)
            chunks = self.store.bulk_insert_chunks(
                document.id,
                document.case_id,
                chunk_text(extracted.text, self.settings.CHUNK_SIZE, self.settings.CHUNK_OVERLAP),
            )
            self._finish_stage(job)
            job = None
            emit("chunking", 100)

            # Stage 3: embeddings
            self._check_cancelled(document.id, cancel_event)
            emit("embedding", 0)
            job = self._start_stage(document, DocumentStatus.embedding, ProcessingJobType.embedding)
            await self.embedding_orchestrator.generate_and_store(
                chunks,
                self._job_progress(job, emit, "embedding"),
                cancel_event,
            )
            self._finish_stage(job)
            job = None
            emit("embedding", 100)

            document = self.store.update_document_status(document.id, DocumentStatus.completed)
            emit("completed", 100)
            logger.info("Document %s processed (%d chunks)", document.id, len(chunks))
            return document

        except Exception as exc:
            message = str(exc) or "Processing failed"
            logger.exception("Processing failed for document %s: %s", document.id, message)
            if job is not None:
                self.store.update_job(job.id, status=ProcessingJobStatus.failed, error_message=message)
            current = self.store.require_document(document.id)
            if DocumentStatus(current.status) not in (DocumentStatus.completed, DocumentStatus.error):
                self.store.update_document_status(document.id, DocumentStatus.error, error_message=message)
            emit("error", 0, message)
            raise

    async def process_many(
        self,
        items: Sequence[Tuple[str, UploadedFile]],
        on_progress: Optional[UploadProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> List[Union[Document, BaseException]]:
        """
        Process several documents concurrently, at most
        ``MAX_CONCURRENT_DOCUMENTS`` at a time. Returns each document or the
        exception its run raised, in input order.
        """
        semaphore = asyncio.Semaphore(max(1, self.settings.MAX_CONCURRENT_DOCUMENTS))

        async def run(document_id: str, upload: UploadedFile) -> Document:
            async with semaphore:
                return await self.process_document(document_id, upload, on_progress, cancel_event)

        return await asyncio.gather(
            *(run(document_id, upload) for document_id, upload in items),
            return_exceptions=True,
        )
