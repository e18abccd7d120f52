"""
Collaborator interfaces the pipeline depends on.

Concrete implementations live next to them in ``discovery.services``;
tests substitute in-memory fakes.
"""

from __future__ import annotations

from typing import Callable, List, Optional, Protocol, Sequence

from discovery.db.schemas import (
    ChatCompletion,
    ChatMessage,
    EmbeddingResult,
    OcrResult,
    OcrStatus,
    OcrSubmission,
    UsageCheck,
)

ProgressCallback = Callable[[int], None]


class OcrService(Protocol):
    async def submit(
        self,
        content: bytes,
        file_name: str,
        content_type: str,
        public_url: Optional[str] = None,
    ) -> OcrSubmission: ...

    async def poll_status(self, submission: OcrSubmission) -> OcrStatus: ...

    async def fetch_result(self, submission: OcrSubmission) -> OcrResult: ...


class EmbeddingService(Protocol):
    # Similarity floor that suits this embedding strategy
    default_search_threshold: float

    async def embed(self, texts: Sequence[str], model: Optional[str] = None) -> EmbeddingResult: ...


class ChatService(Protocol):
    async def complete(
        self,
        messages: List[ChatMessage],
        model: Optional[str] = None,
        temperature: float = 0.5,
        max_tokens: int = 2000,
    ) -> ChatCompletion: ...


class UsageGate(Protocol):
    def check_allowed(self) -> UsageCheck: ...

    def record(self, input_tokens: int = 0, output_tokens: int = 0, ocr_pages: int = 0) -> None: ...
