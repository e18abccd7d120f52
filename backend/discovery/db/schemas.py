"""
Pydantic schemas passed between services
"""
from datetime import date, datetime, timezone
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

# ============================================================================
# Uploads & progress
# ============================================================================

class UploadedFile(BaseModel):
    """Raw upload handed to the pipeline"""
    content: bytes
    file_name: str
    content_type: str = ""
    # Publicly reachable copy of the file, if the caller stored one
    public_url: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.content)


class UploadProgress(BaseModel):
    document_id: str
    file_name: str
    stage: Literal["uploading", "ocr", "chunking", "embedding", "completed", "error"]
    progress: int = Field(0, ge=0, le=100)
    error: Optional[str] = None


class ExtractedText(BaseModel):
    text: str
    page_count: Optional[int] = None
    external_job_id: Optional[str] = None


class ChunkData(BaseModel):
    """A chunk before it is persisted"""
    chunk_index: int
    content: str
    content_hash: str
    start_offset: int
    end_offset: int
    page_number: Optional[int] = None
    heading: Optional[str] = None

# ============================================================================
# Collaborator payloads
# ============================================================================

class OcrSubmission(BaseModel):
    job_id: str
    status_url: str
    result_url: str


class OcrStatus(BaseModel):
    status: str
    text: Optional[str] = None
    chunks_completed: Optional[int] = None
    chunks_processing: Optional[int] = None
    chunk_count: Optional[int] = None
    page_count: Optional[int] = None
    error: Optional[str] = None


class OcrResult(BaseModel):
    text: str
    page_count: Optional[int] = None


class EmbeddingResult(BaseModel):
    vectors: List[List[float]]
    model: str
    tokens_used: int = 0


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class ChatCompletion(BaseModel):
    text: str
    input_tokens: int = 0
    output_tokens: int = 0


class UsageCheck(BaseModel):
    allowed: bool
    reason: Optional[str] = None

# ============================================================================
# Search
# ============================================================================

class DateRange(BaseModel):
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    @field_validator("start", "end")
    @classmethod
    def to_naive_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        # Upload times are stored as naive UTC
        if v is not None and v.tzinfo is not None:
            return v.astimezone(timezone.utc).replace(tzinfo=None)
        return v


class SearchFilters(BaseModel):
    document_ids: Optional[List[str]] = None
    date_range: Optional[DateRange] = None
    file_types: Optional[List[str]] = None


class SearchMatch(BaseModel):
    chunk_id: str
    document_id: str
    document_name: str
    content: str
    similarity: float
    highlights: List[str] = Field(default_factory=list)
    page_number: Optional[int] = None


class SearchResult(BaseModel):
    query: str
    case_id: str
    matches: List[SearchMatch] = Field(default_factory=list)
    total_matches: int = 0
    searched_at: datetime = Field(default_factory=datetime.utcnow)
    history_id: Optional[str] = None


class DocumentMatchGroup(BaseModel):
    document_id: str
    document_name: str
    matches: List[SearchMatch]

    @property
    def best_similarity(self) -> float:
        return max((m.similarity for m in self.matches), default=0.0)

# ============================================================================
# Themes
# ============================================================================

EntityType = Literal["person", "organization", "case", "concept", "date", "money", "location"]


class Entity(BaseModel):
    type: EntityType
    name: str
    document_ids: List[str] = Field(default_factory=list)


class ChunkSample(BaseModel):
    """Chunk content with enough provenance for sampling"""
    id: str
    document_id: str
    chunk_index: int = 0
    content: str


class ThemeExtractionInput(BaseModel):
    case_id: str
    case_name: str
    case_description: Optional[str] = None
    chunks: List[ChunkSample] = Field(default_factory=list)
    entities: List[Entity] = Field(default_factory=list)


class ThemeDraft(BaseModel):
    title: str
    description: str = ""
    relevance_score: float = 0.8
    key_terms: List[str] = Field(default_factory=list)


class QuestionDraft(BaseModel):
    """Suggested question keyed by theme title until themes have ids"""
    question: str
    theme_title: str = ""
    rationale: str = ""
    priority: int = 3


class LinkedQuestion(BaseModel):
    question: str
    theme_id: Optional[str] = None
    rationale: str = ""
    priority: int = 3


class ThemeExtractionResult(BaseModel):
    themes: List[ThemeDraft] = Field(default_factory=list)
    questions: List[QuestionDraft] = Field(default_factory=list)
    output_tokens: int = 0


class DocumentStats(BaseModel):
    total: int = 0
    by_status: Dict[str, int] = Field(default_factory=dict)


class UsageSummary(BaseModel):
    period_start: date
    period_end: date
    input_tokens: int = 0
    output_tokens: int = 0
    ocr_pages: int = 0
    limits: Dict[str, int] = Field(default_factory=dict)
