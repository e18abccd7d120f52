"""
Embedding strategies.

``HttpEmbeddingService`` calls the case API. ``LocalHashEmbeddingService``
is the offline fallback: a hashed bag-of-words vector that is cheap and
deterministic but only captures word overlap, so searches against it use a
much lower similarity floor.
"""

from __future__ import annotations

import math
import re
from collections import Counter
from typing import List, Optional, Sequence

import numpy as np

from discovery.core.config import Settings, settings as default_settings
from discovery.core.logger import logger
from discovery.db.schemas import EmbeddingResult
from discovery.services.case_api_client import CaseApiClient, CaseApiError
from discovery.services.interfaces import EmbeddingService
from discovery.utils.exceptions import EmbeddingError

DENSE_SEARCH_THRESHOLD = 0.5
BAG_OF_WORDS_SEARCH_THRESHOLD = 0.1


class HttpEmbeddingService:
    """Neural embeddings from ``/llm/v1/embeddings``."""

    default_search_threshold = DENSE_SEARCH_THRESHOLD

    def __init__(self, api: CaseApiClient, model: str = "voyage-law-2") -> None:
        self.api = api
        self.model = model

    async def embed(self, texts: Sequence[str], model: Optional[str] = None) -> EmbeddingResult:
        model = model or self.model
        try:
            data = await self.api.request_json(
                "POST",
                "/llm/v1/embeddings",
                json={"input": list(texts), "model": model},
            )
        except CaseApiError as exc:
            raise EmbeddingError(f"Embedding request failed: {exc}") from exc

        usage = data.get("usage") or {}

        # OpenAI-style: {"data": [{"embedding": [...], "index": 0}], "usage": {...}}
        items = data.get("data")
        if isinstance(items, list):
            ordered = sorted(items, key=lambda item: item.get("index", 0))
            return EmbeddingResult(
                vectors=[item["embedding"] for item in ordered],
                model=data.get("model") or model,
                tokens_used=int(usage.get("total_tokens") or 0),
            )

        vectors = data.get("embeddings")
        if isinstance(vectors, list):
            return EmbeddingResult(
                vectors=vectors,
                model=data.get("model") or model,
                tokens_used=int(data.get("tokensUsed") or usage.get("total_tokens") or 0),
            )

        logger.error("Unrecognized embedding response keys: %s", list(data.keys()))
        raise EmbeddingError("Unexpected embedding API response format")


# ============================================================================
# Local fallback
# ============================================================================

STOP_WORDS = frozenset("""
a an and are as at be by for from has he in is it its of on that the to was
were will with this but they have had what when where who which why how all
each every both few more most other some such no nor not only own same so
than too very can just should now been being do does did doing would could
might must shall into through during before after above below between under
again further then once here there any about
""".split())

_NON_WORD = re.compile(r"[^a-z0-9\s]")


def djb2_hash(value: str) -> int:
    """Signed 32-bit djb2 variant (``hash * 33 ^ char``)."""
    h = 5381
    for ch in value:
        h = ((h * 33) & 0xFFFFFFFF) ^ ord(ch)
    if h >= 0x80000000:
        h -= 0x100000000
    return h


def _sign(h: int) -> float:
    return 1.0 if h > 0 else -1.0


class LocalHashEmbeddingService:
    """Deterministic hashed bag-of-words embeddings; no network access."""

    default_search_threshold = BAG_OF_WORDS_SEARCH_THRESHOLD

    def __init__(self, model: str = "voyage-law-2", dimensions: int = 1536) -> None:
        self.model = model
        self.dimensions = dimensions

    def tokenize(self, text: str) -> List[str]:
        words = _NON_WORD.sub(" ", text.lower()).split()
        return [w for w in words if len(w) > 2 and w not in STOP_WORDS]

    def embed_text(self, text: str) -> List[float]:
        dim = self.dimensions
        vector = np.zeros(dim, dtype=np.float64)

        for word, freq in Counter(self.tokenize(text)).items():
            weight = math.log2(1 + freq)
            for suffix, scale in (("", 1.0), ("_2", 0.5), ("_3", 0.25)):
                h = djb2_hash(word + suffix)
                vector[abs(h) % dim] += weight * scale * _sign(h)

            for i in range(len(word) - 2):
                h = djb2_hash(word[i:i + 3])
                vector[abs(h) % dim] += 0.1 * _sign(h)

        magnitude = float(np.linalg.norm(vector))
        if magnitude > 0:
            vector /= magnitude
        return vector.tolist()

    async def embed(self, texts: Sequence[str], model: Optional[str] = None) -> EmbeddingResult:
        model = model or self.model
        return EmbeddingResult(
            vectors=[self.embed_text(text) for text in texts],
            model=f"local-bow-{model}",
            tokens_used=sum(math.ceil(len(text) / 4) for text in texts),
        )


def build_embedding_service(
    api: CaseApiClient,
    settings: Optional[Settings] = None,
) -> EmbeddingService:
    """HTTP embeddings when the case API is configured, local hashing otherwise."""
    settings = settings or default_settings
    if api.configured:
        return HttpEmbeddingService(api, model=settings.EMBEDDING_MODEL)
    logger.warning("No CASE_API_KEY configured - using local bag-of-words embeddings")
    return LocalHashEmbeddingService(
        model=settings.EMBEDDING_MODEL,
        dimensions=settings.EMBEDDING_DIMENSIONS,
    )
