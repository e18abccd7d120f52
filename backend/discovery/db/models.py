"""
SQLAlchemy ORM Models
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    Date,
    Enum as SQLEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TIMESTAMP,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from discovery.db.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())

# ============================================================================
# Enums
# ============================================================================

class CaseStatus(str, enum.Enum):
    """Case status enum"""
    active = "active"
    archived = "archived"


class DocumentStatus(str, enum.Enum):
    """Processing lifecycle of an uploaded document"""
    pending = "pending"
    ocr = "ocr"
    chunking = "chunking"
    embedding = "embedding"
    completed = "completed"
    error = "error"


class ProcessingJobType(str, enum.Enum):
    """Pipeline stage a job tracks"""
    ocr = "ocr"
    chunking = "chunking"
    embedding = "embedding"


class ProcessingJobStatus(str, enum.Enum):
    """Status of a single pipeline stage run"""
    queued = "queued"
    processing = "processing"
    completed = "completed"
    failed = "failed"


class ThemeAnalysisStatus(str, enum.Enum):
    """Status of the per-case theme analysis"""
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"


# pending → ocr → chunking → embedding → completed; error from any non-terminal stage
DOCUMENT_STATUS_ORDER = {
    DocumentStatus.pending: 0,
    DocumentStatus.ocr: 1,
    DocumentStatus.chunking: 2,
    DocumentStatus.embedding: 3,
    DocumentStatus.completed: 4,
}

TERMINAL_DOCUMENT_STATUSES = frozenset({DocumentStatus.completed, DocumentStatus.error})


def is_valid_document_transition(current: DocumentStatus, requested: DocumentStatus) -> bool:
    current = DocumentStatus(current)
    requested = DocumentStatus(requested)
    if current in TERMINAL_DOCUMENT_STATUSES:
        return False
    if requested == DocumentStatus.error:
        return True
    return DOCUMENT_STATUS_ORDER[requested] > DOCUMENT_STATUS_ORDER[current]

# ============================================================================
# Cases & documents
# ============================================================================

class Case(Base):
    """A discovery case grouping uploaded documents"""
    __tablename__ = "cases"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    created_by = Column(String(255), nullable=False)
    status = Column(SQLEnum(CaseStatus), nullable=False, default=CaseStatus.active, index=True)
    created_at = Column(TIMESTAMP, nullable=False, default=datetime.utcnow)
    updated_at = Column(TIMESTAMP, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    documents = relationship("Document", back_populates="case", cascade="all, delete-orphan", passive_deletes=True)
    search_history = relationship("SearchHistory", back_populates="case", cascade="all, delete-orphan", passive_deletes=True)
    themes = relationship("CaseTheme", back_populates="case", cascade="all, delete-orphan", passive_deletes=True)


class Document(Base):
    """
    One uploaded file. ``status`` only moves forward through the pipeline;
    ``error`` is terminal.
    """
    __tablename__ = "documents"

    id = Column(String(36), primary_key=True, default=_uuid)
    case_id = Column(String(36), ForeignKey("cases.id", ondelete="CASCADE"), nullable=False, index=True)
    uploaded_by = Column(String(255), nullable=False)
    uploaded_at = Column(TIMESTAMP, nullable=False, default=datetime.utcnow, index=True)
    status = Column(SQLEnum(DocumentStatus), nullable=False, default=DocumentStatus.pending, index=True)
    file_name = Column(String(500), nullable=False)
    file_type = Column(String(255), nullable=False)
    file_size = Column(BigInteger, nullable=False, default=0)
    extracted_text = Column(Text, nullable=True)
    page_count = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)

    case = relationship("Case", back_populates="documents")
    chunks = relationship("DocumentChunk", back_populates="document", cascade="all, delete-orphan", passive_deletes=True)
    jobs = relationship("ProcessingJob", back_populates="document", cascade="all, delete-orphan", passive_deletes=True)

    __table_args__ = (
        Index("ix_documents_case_status", "case_id", "status"),
    )


class DocumentChunk(Base):
    """
    Contiguous span of a document's extracted text.
    ``start_offset``/``end_offset`` index into ``Document.extracted_text``.
    """
    __tablename__ = "document_chunks"

    id = Column(String(36), primary_key=True, default=_uuid)
    document_id = Column(String(36), ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True)
    case_id = Column(String(36), ForeignKey("cases.id", ondelete="CASCADE"), nullable=False, index=True)
    chunk_index = Column(Integer, nullable=False)
    content = Column(Text, nullable=False)
    content_hash = Column(String(16), nullable=False, index=True)
    start_offset = Column(Integer, nullable=False)
    end_offset = Column(Integer, nullable=False)
    page_number = Column(Integer, nullable=True)
    heading = Column(String(500), nullable=True)

    document = relationship("Document", back_populates="chunks")
    embedding = relationship("ChunkEmbedding", back_populates="chunk", uselist=False, cascade="all, delete-orphan", passive_deletes=True)

    __table_args__ = (
        UniqueConstraint("document_id", "chunk_index", name="uq_document_chunk_index"),
    )


class ChunkEmbedding(Base):
    """Vector for one chunk, stored as a JSON float array"""
    __tablename__ = "chunk_embeddings"

    id = Column(String(36), primary_key=True, default=_uuid)
    chunk_id = Column(String(36), ForeignKey("document_chunks.id", ondelete="CASCADE"), nullable=False, index=True)
    document_id = Column(String(36), ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True)
    case_id = Column(String(36), ForeignKey("cases.id", ondelete="CASCADE"), nullable=False, index=True)
    embedding = Column(JSON, nullable=False)
    model = Column(String(200), nullable=False)
    created_at = Column(TIMESTAMP, nullable=False, default=datetime.utcnow)

    chunk = relationship("DocumentChunk", back_populates="embedding")


class ProcessingJob(Base):
    """One row per pipeline stage per document run"""
    __tablename__ = "processing_jobs"

    id = Column(String(36), primary_key=True, default=_uuid)
    document_id = Column(String(36), ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True)
    case_id = Column(String(36), ForeignKey("cases.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(SQLEnum(ProcessingJobType), nullable=False)
    status = Column(SQLEnum(ProcessingJobStatus), nullable=False, default=ProcessingJobStatus.queued, index=True)
    progress = Column(Integer, nullable=False, default=0)
    external_job_id = Column(String(255), nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(TIMESTAMP, nullable=False, default=datetime.utcnow)
    started_at = Column(TIMESTAMP, nullable=True)
    completed_at = Column(TIMESTAMP, nullable=True)

    document = relationship("Document", back_populates="jobs")

    __table_args__ = (
        Index("ix_processing_jobs_case_status", "case_id", "status"),
    )

# ============================================================================
# Search & themes
# ============================================================================

class SearchHistory(Base):
    """A past query; ``results`` keeps the matches for replay"""
    __tablename__ = "search_history"

    id = Column(String(36), primary_key=True, default=_uuid)
    case_id = Column(String(36), ForeignKey("cases.id", ondelete="CASCADE"), nullable=False, index=True)
    query = Column(Text, nullable=False)
    result_count = Column(Integer, nullable=False, default=0)
    results = Column(JSON, nullable=True)
    searched_at = Column(TIMESTAMP, nullable=False, default=datetime.utcnow, index=True)

    case = relationship("Case", back_populates="search_history")


class CaseTheme(Base):
    __tablename__ = "case_themes"

    id = Column(String(36), primary_key=True, default=_uuid)
    case_id = Column(String(36), ForeignKey("cases.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String(500), nullable=False)
    description = Column(Text, nullable=False, default="")
    relevance_score = Column(Float, nullable=False, default=0.8)
    key_terms = Column(JSON, nullable=False, default=list)
    supporting_doc_ids = Column(JSON, nullable=False, default=list)
    created_at = Column(TIMESTAMP, nullable=False, default=datetime.utcnow)
    updated_at = Column(TIMESTAMP, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    case = relationship("Case", back_populates="themes")


class SuggestedQuestion(Base):
    __tablename__ = "suggested_questions"

    id = Column(String(36), primary_key=True, default=_uuid)
    case_id = Column(String(36), ForeignKey("cases.id", ondelete="CASCADE"), nullable=False, index=True)
    theme_id = Column(String(36), ForeignKey("case_themes.id", ondelete="SET NULL"), nullable=True, index=True)
    question = Column(Text, nullable=False)
    rationale = Column(Text, nullable=False, default="")
    priority = Column(Integer, nullable=False, default=3)
    created_at = Column(TIMESTAMP, nullable=False, default=datetime.utcnow)


class ThemeAnalysis(Base):
    """Bookkeeping for the latest theme analysis of a case"""
    __tablename__ = "theme_analyses"

    id = Column(String(36), primary_key=True, default=_uuid)
    case_id = Column(String(36), ForeignKey("cases.id", ondelete="CASCADE"), nullable=False, unique=True, index=True)
    status = Column(SQLEnum(ThemeAnalysisStatus), nullable=False, default=ThemeAnalysisStatus.pending)
    document_count_at_analysis = Column(Integer, nullable=False, default=0)
    analyzed_at = Column(TIMESTAMP, nullable=True)
    error_message = Column(Text, nullable=True)

# ============================================================================
# Usage
# ============================================================================

class UsageRecord(Base):
    """Metered usage accumulated for one billing period"""
    __tablename__ = "usage_records"

    id = Column(String(36), primary_key=True, default=_uuid)
    period_start = Column(Date, nullable=False, unique=True, index=True)
    period_end = Column(Date, nullable=False)
    input_tokens = Column(BigInteger, nullable=False, default=0)
    output_tokens = Column(BigInteger, nullable=False, default=0)
    ocr_pages = Column(Integer, nullable=False, default=0)
    updated_at = Column(TIMESTAMP, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
