"""
Custom exception classes
"""
from typing import Optional


class DiscoveryError(Exception):
    """Base class for all discovery errors"""


# ============================================================================
# Extraction
# ============================================================================

class ExtractionError(DiscoveryError):
    """Raised when text cannot be extracted from an upload"""


class DocxExtractionError(ExtractionError):
    """Raised when a Word document cannot be decoded locally"""
    def __init__(self, file_name: str, reason: str = "Unknown error"):
        self.file_name = file_name
        super().__init__(f"Failed to extract text from {file_name}: {reason}")


class OCRSubmitError(ExtractionError):
    """Raised when the OCR service rejects a submission"""
    def __init__(self, reason: str = "Unknown error"):
        super().__init__(f"OCR submission failed: {reason}")


class OCRStatusError(ExtractionError):
    """Raised when an OCR status check fails or the OCR job reports failure"""
    def __init__(self, reason: str = "OCR processing failed"):
        super().__init__(reason)


class StuckJobError(ExtractionError):
    """Raised when an OCR job stops making progress"""
    def __init__(self, polls: Optional[int] = None):
        self.polls = polls
        super().__init__(
            "OCR job appears stuck - the service may be unable to access "
            "the document. Please try again."
        )


class OCRTimeoutError(ExtractionError):
    """Raised when an OCR job exceeds the maximum wait"""
    def __init__(self, waited_seconds: Optional[float] = None):
        self.waited_seconds = waited_seconds
        super().__init__("OCR timed out")


# ============================================================================
# Embeddings / quota / cancellation
# ============================================================================

class EmbeddingError(DiscoveryError):
    """Raised when the embedding service fails or returns a bad payload"""


class QuotaExceededError(DiscoveryError):
    """Raised when the usage gate denies a metered call"""
    def __init__(self, reason: Optional[str] = None):
        self.reason = reason or "usage_limit"
        super().__init__(f"Usage limit reached: {self.reason}")


class ProcessingCancelledError(DiscoveryError):
    """Raised when a document run is cancelled by its caller"""
    def __init__(self, document_id: Optional[str] = None):
        self.document_id = document_id
        super().__init__(
            f"Processing cancelled for document {document_id}"
            if document_id else "Processing cancelled"
        )


class AnalysisError(DiscoveryError):
    """Raised when a theme analysis cannot produce a result"""


# ============================================================================
# Records
# ============================================================================

class CaseNotFoundError(DiscoveryError):
    """Raised when case doesn't exist"""
    def __init__(self, case_id: str):
        self.case_id = case_id
        super().__init__(f"Case {case_id} not found")


class DocumentNotFoundError(DiscoveryError):
    """Raised when document doesn't exist"""
    def __init__(self, document_id: str):
        self.document_id = document_id
        super().__init__(f"Document {document_id} not found")


class InvalidStatusTransitionError(DiscoveryError):
    """Raised when a document status would move backwards or leave a terminal state"""
    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot move document from {current} to {requested}")
