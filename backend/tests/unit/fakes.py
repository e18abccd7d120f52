"""In-memory collaborators shared by the unit tests."""

import asyncio
from typing import List, Optional, Sequence

from discovery.core.config import Settings
from discovery.db.database import create_engine, create_session_factory, init_db
from discovery.db.schemas import (
    ChatCompletion,
    ChatMessage,
    EmbeddingResult,
    OcrResult,
    OcrStatus,
    OcrSubmission,
    UsageCheck,
)
from discovery.db.store import DiscoveryStore


def make_settings(**overrides) -> Settings:
    values = {"DATABASE_URL": "sqlite://", "CASE_API_KEY": "", "LOG_LEVEL": "WARNING"}
    values.update(overrides)
    return Settings(**values)


def make_store() -> DiscoveryStore:
    engine = create_engine("sqlite://")
    init_db(engine)
    return DiscoveryStore(create_session_factory(engine))


class FakeClock:
    """Monotonic clock whose sleep just advances time."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps = 0

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps += 1
        self.now += seconds


class FakeUsageGate:
    def __init__(self, allowed: bool = True, reason: Optional[str] = None) -> None:
        self.allowed = allowed
        self.reason = reason
        self.checks = 0
        self.records: List[dict] = []

    def check_allowed(self) -> UsageCheck:
        self.checks += 1
        if self.allowed:
            return UsageCheck(allowed=True)
        return UsageCheck(allowed=False, reason=self.reason or "input_token_limit")

    def record(self, input_tokens: int = 0, output_tokens: int = 0, ocr_pages: int = 0) -> None:
        self.records.append(
            {"input_tokens": input_tokens, "output_tokens": output_tokens, "ocr_pages": ocr_pages}
        )

    def total(self, key: str) -> int:
        return sum(r[key] for r in self.records)


class FakeEmbeddingService:
    """
    Returns ``[len(text), 1.0, 0.0]`` per text, or a custom vector function.
    Tracks how many requests are in flight at once.
    """

    default_search_threshold = 0.1

    def __init__(self, vector_fn=None, tokens_per_call: int = 7, fail: bool = False, drop_one: bool = False) -> None:
        self.vector_fn = vector_fn or (lambda text: [float(len(text)), 1.0, 0.0])
        self.tokens_per_call = tokens_per_call
        self.fail = fail
        self.drop_one = drop_one
        self.calls: List[List[str]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def embed(self, texts: Sequence[str], model: Optional[str] = None) -> EmbeddingResult:
        self.calls.append(list(texts))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            if self.fail:
                raise RuntimeError("embedding backend unavailable")
            vectors = [self.vector_fn(text) for text in texts]
            if self.drop_one:
                vectors = vectors[:-1]
            return EmbeddingResult(vectors=vectors, model="fake-embed", tokens_used=self.tokens_per_call)
        finally:
            self.in_flight -= 1


class FakeOcrService:
    def __init__(
        self,
        statuses: Sequence[OcrStatus],
        result: Optional[OcrResult] = None,
        repeat_last: bool = True,
    ) -> None:
        self.statuses = list(statuses)
        self.result = result or OcrResult(text="fetched text")
        self.repeat_last = repeat_last
        self.submitted: List[str] = []
        self.polls = 0
        self.fetches = 0

    async def submit(self, content: bytes, file_name: str, content_type: str, public_url: Optional[str] = None) -> OcrSubmission:
        self.submitted.append(file_name)
        return OcrSubmission(job_id="job-1", status_url="https://ocr/status/job-1", result_url="https://ocr/text/job-1")

    async def poll_status(self, submission: OcrSubmission) -> OcrStatus:
        index = min(self.polls, len(self.statuses) - 1) if self.repeat_last else self.polls
        self.polls += 1
        return self.statuses[index]

    async def fetch_result(self, submission: OcrSubmission) -> OcrResult:
        self.fetches += 1
        return self.result


class FakeChatService:
    def __init__(self, text: str, input_tokens: int = 120, output_tokens: int = 80) -> None:
        self.text = text
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens
        self.calls: List[dict] = []

    async def complete(
        self,
        messages: List[ChatMessage],
        model: Optional[str] = None,
        temperature: float = 0.5,
        max_tokens: int = 2000,
    ) -> ChatCompletion:
        self.calls.append({"messages": messages, "temperature": temperature, "max_tokens": max_tokens})
        return ChatCompletion(text=self.text, input_tokens=self.input_tokens, output_tokens=self.output_tokens)


def sentence_text(length: int) -> str:
    """'Sentence 1. Sentence 2. ...' cut to exactly *length* characters."""
    parts = []
    i = 1
    while sum(len(p) + 1 for p in parts) < length + 20:
        parts.append(f"Sentence {i}.")
        i += 1
    return " ".join(parts)[:length]
