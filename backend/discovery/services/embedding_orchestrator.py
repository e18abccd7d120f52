"""
Batches chunk texts into embedding requests, runs a few batches at a time,
meters usage, and stores every vector in one bulk insert at the end.
"""

from __future__ import annotations

import asyncio
import math
from typing import List, Optional, Sequence

from discovery.core.config import Settings, settings as default_settings
from discovery.core.logger import logger
from discovery.db.models import ChunkEmbedding, DocumentChunk
from discovery.db.schemas import EmbeddingResult
from discovery.db.store import DiscoveryStore
from discovery.services.interfaces import EmbeddingService, ProgressCallback, UsageGate
from discovery.services.usage_service import ensure_allowed
from discovery.utils.exceptions import EmbeddingError, ProcessingCancelledError


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


class EmbeddingOrchestrator:
    def __init__(
        self,
        store: DiscoveryStore,
        embedding_service: EmbeddingService,
        usage_gate: UsageGate,
        settings: Optional[Settings] = None,
    ) -> None:
        settings = settings or default_settings
        self.store = store
        self.embedding_service = embedding_service
        self.usage_gate = usage_gate
        self.batch_size = settings.EMBEDDING_BATCH_SIZE
        self.parallel_requests = settings.PARALLEL_EMBEDDING_REQUESTS

    def _batches(self, chunks: Sequence[DocumentChunk]) -> List[List[DocumentChunk]]:
        return [
            list(chunks[i:i + self.batch_size])
            for i in range(0, len(chunks), self.batch_size)
        ]

    async def _embed_batch(self, batch: List[DocumentChunk]) -> EmbeddingResult:
        try:
            result = await self.embedding_service.embed([chunk.content for chunk in batch])
        except EmbeddingError:
            raise
        except Exception as exc:
            raise EmbeddingError(f"Embedding request failed: {exc}") from exc

        if result.tokens_used:
            self.usage_gate.record(input_tokens=result.tokens_used)
        if len(result.vectors) != len(batch):
            raise EmbeddingError(
                f"Embedding service returned {len(result.vectors)} vectors for {len(batch)} texts"
            )
        return result

    async def generate_and_store(
        self,
        chunks: Sequence[DocumentChunk],
        on_progress: ProgressCallback,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> List[ChunkEmbedding]:
        """
        Embed *chunks* in order and persist the vectors.

        Batches run ``parallel_requests`` at a time; each group finishes before
        the next starts. Progress covers 0-80 while embedding and reaches 100
        once the vectors are stored. Any failure abandons the remaining work
        and stores nothing.
        """
        if not chunks:
            on_progress(100)
            return []

        batches = self._batches(chunks)
        results: List[EmbeddingResult] = []

        for group_start in range(0, len(batches), self.parallel_requests):
            if cancel_event is not None and cancel_event.is_set():
                raise ProcessingCancelledError()

            group = batches[group_start:group_start + self.parallel_requests]
            for _ in group:
                ensure_allowed(self.usage_gate)

            # Let every request in the group settle so none outlives a failure
            group_results = await asyncio.gather(
                *(self._embed_batch(batch) for batch in group),
                return_exceptions=True,
            )
            for result in group_results:
                if isinstance(result, BaseException):
                    raise result
            results.extend(group_results)

            completed = group_start + len(group)
            on_progress(_round_half_up(completed / len(batches) * 80))

        rows: List[ChunkEmbedding] = []
        for batch, result in zip(batches, results):
            for chunk, vector in zip(batch, result.vectors):
                rows.append(
                    ChunkEmbedding(
                        chunk_id=chunk.id,
                        document_id=chunk.document_id,
                        case_id=chunk.case_id,
                        embedding=[float(v) for v in vector],
                        model=result.model,
                    )
                )

        self.store.bulk_insert_embeddings(rows)
        logger.info("Generated %d embeddings in %d batches", len(rows), len(batches))
        on_progress(100)
        return rows
