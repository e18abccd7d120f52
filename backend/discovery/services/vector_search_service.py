"""
Brute-force cosine similarity search over a case's chunk embeddings.
"""

from __future__ import annotations

import re
from collections import OrderedDict
from typing import Dict, List, Optional, Sequence

import numpy as np

from discovery.core.logger import logger
from discovery.db.models import Document
from discovery.db.schemas import DocumentMatchGroup, SearchFilters, SearchMatch
from discovery.db.store import DiscoveryStore
from discovery.services.embedding_service import BAG_OF_WORDS_SEARCH_THRESHOLD

MAX_HIGHLIGHTS = 2
MAX_HIGHLIGHT_CHARS = 300
FALLBACK_SNIPPET_CHARS = 200

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+|\n+")
_QUERY_TERM = re.compile(r"[a-z0-9]+")


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of the angle between *a* and *b*; 0 when either has zero magnitude."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise ValueError(f"Vector dimensions differ: {va.shape} vs {vb.shape}")
    magnitude = float(np.linalg.norm(va)) * float(np.linalg.norm(vb))
    if magnitude == 0:
        return 0.0
    return float(np.clip(np.dot(va, vb) / magnitude, -1.0, 1.0))


def query_terms(query: str) -> List[str]:
    return [t for t in _QUERY_TERM.findall(query.lower()) if len(t) > 2]


def build_highlights(content: str, query: str) -> List[str]:
    """Up to two sentences of *content* sharing the most words with *query*."""
    terms = set(query_terms(query))
    sentences = [s.strip() for s in _SENTENCE_SPLIT.split(content) if s and s.strip()]

    if terms:
        scored = []
        for sentence in sentences:
            lowered = sentence.lower()
            score = sum(1 for term in terms if term in lowered)
            if score:
                scored.append((score, sentence))
        scored.sort(key=lambda item: item[0], reverse=True)
        highlights = [
            s if len(s) <= MAX_HIGHLIGHT_CHARS else s[:MAX_HIGHLIGHT_CHARS].rstrip() + "..."
            for _, s in scored[:MAX_HIGHLIGHTS]
        ]
        if highlights:
            return highlights

    snippet = content.strip()
    if len(snippet) > FALLBACK_SNIPPET_CHARS:
        snippet = snippet[:FALLBACK_SNIPPET_CHARS].rstrip() + "..."
    return [snippet] if snippet else []


def group_matches_by_document(matches: Sequence[SearchMatch]) -> List[DocumentMatchGroup]:
    """Group ranked matches per document, keeping rank order within and across groups."""
    groups: "OrderedDict[str, DocumentMatchGroup]" = OrderedDict()
    for match in matches:
        group = groups.get(match.document_id)
        if group is None:
            group = DocumentMatchGroup(
                document_id=match.document_id,
                document_name=match.document_name,
                matches=[],
            )
            groups[match.document_id] = group
        group.matches.append(match)
    return list(groups.values())


class VectorSearchService:
    def __init__(
        self,
        store: DiscoveryStore,
        default_threshold: float = BAG_OF_WORDS_SEARCH_THRESHOLD,
        default_limit: int = 20,
    ) -> None:
        self.store = store
        self.default_threshold = default_threshold
        self.default_limit = default_limit

    # ------------------------------------------------------------------
    # Filters
    # ------------------------------------------------------------------

    def _filtered_document_ids(self, case_id: str, filters: Optional[SearchFilters]) -> Optional[List[str]]:
        if filters is None or not (filters.document_ids is not None or filters.date_range or filters.file_types):
            return None

        documents: List[Document] = self.store.list_documents(case_id)
        if filters.document_ids is not None:
            wanted = set(filters.document_ids)
            documents = [d for d in documents if d.id in wanted]
        if filters.date_range is not None:
            start, end = filters.date_range.start, filters.date_range.end
            documents = [
                d for d in documents
                if (start is None or d.uploaded_at >= start) and (end is None or d.uploaded_at <= end)
            ]
        if filters.file_types:
            types = set(filters.file_types)
            documents = [d for d in documents if d.file_type in types]
        return [d.id for d in documents]

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search(
        self,
        case_id: str,
        query_vector: Sequence[float],
        query_text: str = "",
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
        filters: Optional[SearchFilters] = None,
    ) -> List[SearchMatch]:
        """
        Rank the case's chunks by cosine similarity to *query_vector*.

        Scores below *threshold* are dropped, ties keep storage order, and at
        most *limit* matches are returned.
        """
        limit = self.default_limit if limit is None else limit
        threshold = self.default_threshold if threshold is None else threshold
        if limit <= 0:
            return []

        document_ids = self._filtered_document_ids(case_id, filters)
        if document_ids is not None and not document_ids:
            return []

        embeddings = self.store.get_case_embeddings(case_id, document_ids=document_ids)
        query = np.asarray(query_vector, dtype=np.float64)

        usable = [e for e in embeddings if len(e.embedding) == query.shape[0]]
        if len(usable) != len(embeddings):
            logger.warning(
                "Skipping %d embeddings with mismatched dimensions in case %s",
                len(embeddings) - len(usable),
                case_id,
            )
        if not usable:
            return []

        matrix = np.asarray([e.embedding for e in usable], dtype=np.float64)
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        dots = matrix @ query
        scores = np.zeros(len(usable), dtype=np.float64)
        nonzero = norms > 0
        scores[nonzero] = np.clip(dots[nonzero] / norms[nonzero], -1.0, 1.0)

        order = np.argsort(-scores, kind="stable")
        ranked = [int(i) for i in order if scores[i] >= threshold][:limit]
        if not ranked:
            return []

        chunks = self.store.get_chunks_by_ids(usable[i].chunk_id for i in ranked)
        documents: Dict[str, Document] = self.store.get_documents(usable[i].document_id for i in ranked)

        matches: List[SearchMatch] = []
        for i in ranked:
            embedding = usable[i]
            chunk = chunks.get(embedding.chunk_id)
            document = documents.get(embedding.document_id)
            if chunk is None or document is None:
                continue
            matches.append(
                SearchMatch(
                    chunk_id=chunk.id,
                    document_id=document.id,
                    document_name=document.file_name,
                    content=chunk.content,
                    similarity=float(scores[i]),
                    highlights=build_highlights(chunk.content, query_text),
                    page_number=chunk.page_number,
                )
            )
        return matches
