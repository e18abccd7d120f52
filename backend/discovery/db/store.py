"""
Record store for cases, documents, chunks, embeddings, jobs, search
history, themes and usage.

All writes go through a single lock and commit in one transaction, so a
reader never sees half of a status change or a partial cascade.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence

from sqlalchemy import func
from sqlalchemy.orm import Session, sessionmaker

from discovery.core.logger import logger
from discovery.db.database import session_scope
from discovery.db.models import (
    Case,
    CaseStatus,
    CaseTheme,
    ChunkEmbedding,
    Document,
    DocumentChunk,
    DocumentStatus,
    ProcessingJob,
    ProcessingJobStatus,
    ProcessingJobType,
    SearchHistory,
    SuggestedQuestion,
    ThemeAnalysis,
    ThemeAnalysisStatus,
    UsageRecord,
    is_valid_document_transition,
)
from discovery.db.schemas import ChunkData, DocumentStats, LinkedQuestion, QuestionDraft, ThemeDraft
from discovery.utils.exceptions import (
    CaseNotFoundError,
    DocumentNotFoundError,
    InvalidStatusTransitionError,
)

QuestionLinker = Callable[[List[CaseTheme], List[QuestionDraft]], List[LinkedQuestion]]


class DiscoveryStore:
    """SQLAlchemy-backed persistence for the discovery pipeline."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory
        self._write_lock = threading.RLock()

    # ------------------------------------------------------------------
    # Session helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _read(self) -> Iterator[Session]:
        with session_scope(self._session_factory) as db:
            yield db

    @contextmanager
    def _write(self) -> Iterator[Session]:
        """Serialized write transaction; commits on success, rolls back on error."""
        with self._write_lock:
            with session_scope(self._session_factory) as db:
                yield db
                db.commit()

    # ------------------------------------------------------------------
    # Cases
    # ------------------------------------------------------------------

    def create_case(self, name: str, created_by: str, description: Optional[str] = None) -> Case:
        with self._write() as db:
            case = Case(name=name, description=description, created_by=created_by)
            db.add(case)
        logger.info("Created case %s (%s)", case.id, name)
        return case

    def get_case(self, case_id: str) -> Optional[Case]:
        with self._read() as db:
            return db.get(Case, case_id)

    def require_case(self, case_id: str) -> Case:
        case = self.get_case(case_id)
        if case is None:
            raise CaseNotFoundError(case_id)
        return case

    def list_cases(self, status: Optional[CaseStatus] = None) -> List[Case]:
        with self._read() as db:
            query = db.query(Case)
            if status is not None:
                query = query.filter(Case.status == status)
            return query.order_by(Case.created_at.desc()).all()

    def update_case(self, case_id: str, **fields: Any) -> Case:
        allowed = {"name", "description", "status"}
        with self._write() as db:
            case = db.get(Case, case_id)
            if case is None:
                raise CaseNotFoundError(case_id)
            for key, value in fields.items():
                if key not in allowed:
                    raise ValueError(f"Cannot update case field '{key}'")
                setattr(case, key, value)
            case.updated_at = datetime.utcnow()
        return case

    def delete_case(self, case_id: str) -> None:
        """Delete a case and everything that belongs to it."""
        with self._write() as db:
            if db.get(Case, case_id) is None:
                raise CaseNotFoundError(case_id)
            for model in (
                ChunkEmbedding,
                DocumentChunk,
                ProcessingJob,
                Document,
                SearchHistory,
                SuggestedQuestion,
                CaseTheme,
                ThemeAnalysis,
            ):
                db.query(model).filter(model.case_id == case_id).delete(synchronize_session=False)
            db.query(Case).filter(Case.id == case_id).delete(synchronize_session=False)
        logger.info("Deleted case %s with all documents and analysis", case_id)

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def create_document(
        self,
        case_id: str,
        file_name: str,
        file_type: str,
        file_size: int,
        uploaded_by: str,
    ) -> Document:
        with self._write() as db:
            if db.get(Case, case_id) is None:
                raise CaseNotFoundError(case_id)
            document = Document(
                case_id=case_id,
                file_name=file_name,
                file_type=file_type,
                file_size=file_size,
                uploaded_by=uploaded_by,
                status=DocumentStatus.pending,
            )
            db.add(document)
        return document

    def get_document(self, document_id: str) -> Optional[Document]:
        with self._read() as db:
            return db.get(Document, document_id)

    def require_document(self, document_id: str) -> Document:
        document = self.get_document(document_id)
        if document is None:
            raise DocumentNotFoundError(document_id)
        return document

    def get_documents(self, document_ids: Iterable[str]) -> Dict[str, Document]:
        ids = list(set(document_ids))
        if not ids:
            return {}
        with self._read() as db:
            rows = db.query(Document).filter(Document.id.in_(ids)).all()
        return {row.id: row for row in rows}

    def list_documents(
        self,
        case_id: str,
        status: Optional[DocumentStatus] = None,
    ) -> List[Document]:
        with self._read() as db:
            query = db.query(Document).filter(Document.case_id == case_id)
            if status is not None:
                query = query.filter(Document.status == status)
            return query.order_by(Document.uploaded_at.desc()).all()

    def count_documents(self, case_id: str, status: Optional[DocumentStatus] = None) -> int:
        with self._read() as db:
            query = db.query(func.count(Document.id)).filter(Document.case_id == case_id)
            if status is not None:
                query = query.filter(Document.status == status)
            return int(query.scalar() or 0)

    def get_document_stats(self, case_id: str) -> DocumentStats:
        with self._read() as db:
            rows = (
                db.query(Document.status, func.count(Document.id))
                .filter(Document.case_id == case_id)
                .group_by(Document.status)
                .all()
            )
        by_status = {status.value: 0 for status in DocumentStatus}
        for status, count in rows:
            by_status[DocumentStatus(status).value] = int(count)
        return DocumentStats(total=sum(by_status.values()), by_status=by_status)

    def update_document_status(
        self,
        document_id: str,
        status: DocumentStatus,
        error_message: Optional[str] = None,
    ) -> Document:
        """Move a document forward; raises InvalidStatusTransitionError otherwise."""
        with self._write() as db:
            document = db.get(Document, document_id)
            if document is None:
                raise DocumentNotFoundError(document_id)
            current = DocumentStatus(document.status)
            if not is_valid_document_transition(current, status):
                raise InvalidStatusTransitionError(current.value, DocumentStatus(status).value)
            document.status = status
            if error_message is not None:
                document.error_message = error_message
        logger.info("Document %s → status=%s", document_id, DocumentStatus(status).value)
        return document

    def set_extracted_text(
        self,
        document_id: str,
        text: str,
        page_count: Optional[int] = None,
    ) -> Document:
        with self._write() as db:
            document = db.get(Document, document_id)
            if document is None:
                raise DocumentNotFoundError(document_id)
            document.extracted_text = text
            if page_count is not None:
                document.page_count = page_count
        return document

    def delete_document(self, document_id: str) -> None:
        """Delete a document with its chunks, embeddings and jobs."""
        with self._write() as db:
            if db.get(Document, document_id) is None:
                raise DocumentNotFoundError(document_id)
            for model in (ChunkEmbedding, DocumentChunk, ProcessingJob):
                db.query(model).filter(model.document_id == document_id).delete(synchronize_session=False)
            db.query(Document).filter(Document.id == document_id).delete(synchronize_session=False)
        logger.info("Deleted document %s", document_id)

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    def bulk_insert_chunks(
        self,
        document_id: str,
        case_id: str,
        chunks: Sequence[ChunkData],
    ) -> List[DocumentChunk]:
        with self._write() as db:
            rows = [
                DocumentChunk(
                    document_id=document_id,
                    case_id=case_id,
                    chunk_index=chunk.chunk_index,
                    content=chunk.content,
                    content_hash=chunk.content_hash,
                    start_offset=chunk.start_offset,
                    end_offset=chunk.end_offset,
                    page_number=chunk.page_number,
                    heading=chunk.heading,
                )
                for chunk in chunks
            ]
            db.add_all(rows)
        logger.info("Stored %d chunks for document %s", len(rows), document_id)
        return rows

    def get_chunks(self, document_id: str) -> List[DocumentChunk]:
        with self._read() as db:
            return (
                db.query(DocumentChunk)
                .filter(DocumentChunk.document_id == document_id)
                .order_by(DocumentChunk.chunk_index)
                .all()
            )

    def get_case_chunks(self, case_id: str, document_ids: Optional[Sequence[str]] = None) -> List[DocumentChunk]:
        with self._read() as db:
            query = db.query(DocumentChunk).filter(DocumentChunk.case_id == case_id)
            if document_ids is not None:
                query = query.filter(DocumentChunk.document_id.in_(list(document_ids)))
            return query.order_by(DocumentChunk.document_id, DocumentChunk.chunk_index).all()

    def get_chunks_by_ids(self, chunk_ids: Iterable[str]) -> Dict[str, DocumentChunk]:
        ids = list(set(chunk_ids))
        if not ids:
            return {}
        with self._read() as db:
            rows = db.query(DocumentChunk).filter(DocumentChunk.id.in_(ids)).all()
        return {row.id: row for row in rows}

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------

    def bulk_insert_embeddings(self, embeddings: Sequence[ChunkEmbedding]) -> List[ChunkEmbedding]:
        with self._write() as db:
            db.add_all(list(embeddings))
        logger.info("Stored %d embeddings", len(embeddings))
        return list(embeddings)

    def get_case_embeddings(
        self,
        case_id: str,
        document_ids: Optional[Sequence[str]] = None,
    ) -> List[ChunkEmbedding]:
        """Embeddings for a case in stable storage order."""
        with self._read() as db:
            query = (
                db.query(ChunkEmbedding)
                .join(DocumentChunk, DocumentChunk.id == ChunkEmbedding.chunk_id)
                .filter(ChunkEmbedding.case_id == case_id)
            )
            if document_ids is not None:
                query = query.filter(ChunkEmbedding.document_id.in_(list(document_ids)))
            return query.order_by(
                ChunkEmbedding.created_at,
                ChunkEmbedding.document_id,
                DocumentChunk.chunk_index,
            ).all()

    def count_embeddings(self, document_id: str) -> int:
        with self._read() as db:
            return int(
                db.query(func.count(ChunkEmbedding.id))
                .filter(ChunkEmbedding.document_id == document_id)
                .scalar()
                or 0
            )

    # ------------------------------------------------------------------
    # Processing jobs
    # ------------------------------------------------------------------

    def create_job(self, document_id: str, case_id: str, job_type: ProcessingJobType) -> ProcessingJob:
        """Start a fresh job for one pipeline stage."""
        now = datetime.utcnow()
        with self._write() as db:
            job = ProcessingJob(
                document_id=document_id,
                case_id=case_id,
                type=job_type,
                status=ProcessingJobStatus.processing,
                progress=0,
                created_at=now,
                started_at=now,
            )
            db.add(job)
        return job

    def update_job(
        self,
        job_id: str,
        status: Optional[ProcessingJobStatus] = None,
        progress: Optional[int] = None,
        error_message: Optional[str] = None,
        external_job_id: Optional[str] = None,
    ) -> ProcessingJob:
        with self._write() as db:
            job = db.get(ProcessingJob, job_id)
            if job is None:
                raise ValueError(f"Processing job {job_id} not found")
            if status is not None:
                job.status = status
                if status in (ProcessingJobStatus.completed, ProcessingJobStatus.failed):
                    job.completed_at = datetime.utcnow()
            if progress is not None:
                job.progress = max(0, min(100, int(progress)))
            if error_message is not None:
                job.error_message = error_message
            if external_job_id is not None:
                job.external_job_id = external_job_id
        return job

    def get_jobs_for_document(self, document_id: str) -> List[ProcessingJob]:
        with self._read() as db:
            return (
                db.query(ProcessingJob)
                .filter(ProcessingJob.document_id == document_id)
                .order_by(ProcessingJob.created_at, ProcessingJob.id)
                .all()
            )

    def get_active_jobs(self, case_id: str) -> List[ProcessingJob]:
        with self._read() as db:
            return (
                db.query(ProcessingJob)
                .filter(
                    ProcessingJob.case_id == case_id,
                    ProcessingJob.status.in_([ProcessingJobStatus.queued, ProcessingJobStatus.processing]),
                )
                .order_by(ProcessingJob.created_at)
                .all()
            )

    # ------------------------------------------------------------------
    # Search history
    # ------------------------------------------------------------------

    def add_search_history(
        self,
        case_id: str,
        query: str,
        result_count: int,
        results: Optional[List[Dict[str, Any]]] = None,
    ) -> SearchHistory:
        with self._write() as db:
            entry = SearchHistory(
                case_id=case_id,
                query=query,
                result_count=result_count,
                results=results,
            )
            db.add(entry)
        return entry

    def get_search_history(self, history_id: str) -> Optional[SearchHistory]:
        with self._read() as db:
            return db.get(SearchHistory, history_id)

    def list_search_history(self, case_id: str, limit: int = 10) -> List[SearchHistory]:
        with self._read() as db:
            return (
                db.query(SearchHistory)
                .filter(SearchHistory.case_id == case_id)
                .order_by(SearchHistory.searched_at.desc())
                .limit(limit)
                .all()
            )

    # ------------------------------------------------------------------
    # Themes
    # ------------------------------------------------------------------

    def get_theme_analysis(self, case_id: str) -> Optional[ThemeAnalysis]:
        with self._read() as db:
            return db.query(ThemeAnalysis).filter(ThemeAnalysis.case_id == case_id).first()

    def upsert_theme_analysis(
        self,
        case_id: str,
        status: ThemeAnalysisStatus,
        document_count: Optional[int] = None,
        error_message: Optional[str] = None,
    ) -> ThemeAnalysis:
        with self._write() as db:
            analysis = db.query(ThemeAnalysis).filter(ThemeAnalysis.case_id == case_id).first()
            if analysis is None:
                analysis = ThemeAnalysis(case_id=case_id, document_count_at_analysis=0)
                db.add(analysis)
            analysis.status = status
            analysis.error_message = error_message
            if document_count is not None:
                analysis.document_count_at_analysis = document_count
            if status == ThemeAnalysisStatus.completed:
                analysis.analyzed_at = datetime.utcnow()
        return analysis

    def replace_themes(
        self,
        case_id: str,
        themes: Sequence[ThemeDraft],
        questions: Sequence[QuestionDraft],
        supporting_doc_ids: Sequence[str],
        link_questions: QuestionLinker,
    ) -> List[CaseTheme]:
        """
        Replace a case's themes and questions wholesale.

        Themes are flushed first so *link_questions* can resolve each draft's
        theme title to a real theme id; everything commits together.
        """
        with self._write() as db:
            db.query(SuggestedQuestion).filter(SuggestedQuestion.case_id == case_id).delete(synchronize_session=False)
            db.query(CaseTheme).filter(CaseTheme.case_id == case_id).delete(synchronize_session=False)

            saved = [
                CaseTheme(
                    case_id=case_id,
                    title=theme.title,
                    description=theme.description,
                    relevance_score=theme.relevance_score,
                    key_terms=list(theme.key_terms),
                    supporting_doc_ids=list(supporting_doc_ids),
                )
                for theme in themes
            ]
            db.add_all(saved)
            db.flush()

            for linked in link_questions(saved, list(questions)):
                db.add(
                    SuggestedQuestion(
                        case_id=case_id,
                        theme_id=linked.theme_id,
                        question=linked.question,
                        rationale=linked.rationale,
                        priority=linked.priority,
                    )
                )
        logger.info("Stored %d themes and %d questions for case %s", len(saved), len(questions), case_id)
        return saved

    def get_themes(self, case_id: str) -> List[CaseTheme]:
        with self._read() as db:
            return (
                db.query(CaseTheme)
                .filter(CaseTheme.case_id == case_id)
                .order_by(CaseTheme.relevance_score.desc(), CaseTheme.created_at)
                .all()
            )

    def get_questions(self, case_id: str) -> List[SuggestedQuestion]:
        with self._read() as db:
            return (
                db.query(SuggestedQuestion)
                .filter(SuggestedQuestion.case_id == case_id)
                .order_by(SuggestedQuestion.priority.desc(), SuggestedQuestion.created_at)
                .all()
            )

    # ------------------------------------------------------------------
    # Usage
    # ------------------------------------------------------------------

    def get_usage_record(self, period_start: date) -> Optional[UsageRecord]:
        with self._read() as db:
            return db.query(UsageRecord).filter(UsageRecord.period_start == period_start).first()

    def add_usage(
        self,
        period_start: date,
        period_end: date,
        input_tokens: int = 0,
        output_tokens: int = 0,
        ocr_pages: int = 0,
    ) -> UsageRecord:
        with self._write() as db:
            record = db.query(UsageRecord).filter(UsageRecord.period_start == period_start).first()
            if record is None:
                record = UsageRecord(
                    period_start=period_start,
                    period_end=period_end,
                    input_tokens=0,
                    output_tokens=0,
                    ocr_pages=0,
                )
                db.add(record)
            record.input_tokens += int(input_tokens)
            record.output_tokens += int(output_tokens)
            record.ocr_pages += int(ocr_pages)
        return record

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def get_database_stats(self) -> Dict[str, int]:
        with self._read() as db:
            return {
                "cases": db.query(func.count(Case.id)).scalar() or 0,
                "documents": db.query(func.count(Document.id)).scalar() or 0,
                "chunks": db.query(func.count(DocumentChunk.id)).scalar() or 0,
                "embeddings": db.query(func.count(ChunkEmbedding.id)).scalar() or 0,
                "jobs": db.query(func.count(ProcessingJob.id)).scalar() or 0,
                "searches": db.query(func.count(SearchHistory.id)).scalar() or 0,
                "themes": db.query(func.count(CaseTheme.id)).scalar() or 0,
            }

    def clear_all_data(self) -> None:
        logger.warning("Clearing all discovery data")
        with self._write() as db:
            for model in (
                ChunkEmbedding,
                DocumentChunk,
                ProcessingJob,
                SuggestedQuestion,
                CaseTheme,
                ThemeAnalysis,
                SearchHistory,
                Document,
                Case,
                UsageRecord,
            ):
                db.query(model).delete(synchronize_session=False)
