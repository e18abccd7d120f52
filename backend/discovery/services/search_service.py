"""
Semantic search over a case: embeds the query, ranks chunks and keeps a
replayable search history.
"""

from __future__ import annotations

from typing import List, Optional

from discovery.core.config import Settings, settings as default_settings
from discovery.core.logger import logger
from discovery.db.models import SearchHistory
from discovery.db.schemas import SearchFilters, SearchMatch, SearchResult
from discovery.db.store import DiscoveryStore
from discovery.services.interfaces import EmbeddingService, UsageGate
from discovery.services.usage_service import ensure_allowed
from discovery.services.vector_search_service import VectorSearchService
from discovery.utils.exceptions import DiscoveryError, EmbeddingError


class SearchService:
    def __init__(
        self,
        store: DiscoveryStore,
        embedding_service: EmbeddingService,
        vector_search: VectorSearchService,
        usage_gate: UsageGate,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or default_settings
        self.store = store
        self.embedding_service = embedding_service
        self.vector_search = vector_search
        self.usage_gate = usage_gate

    async def _embed_query(self, query: str) -> List[float]:
        ensure_allowed(self.usage_gate)
        result = await self.embedding_service.embed([query])
        if len(result.vectors) != 1:
            raise EmbeddingError("Embedding service returned no vector for the query")
        if result.tokens_used:
            self.usage_gate.record(input_tokens=result.tokens_used)
        return result.vectors[0]

    async def search(
        self,
        case_id: str,
        query: str,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
        filters: Optional[SearchFilters] = None,
        record_history: bool = True,
    ) -> SearchResult:
        query = (query or "").strip()
        if not query:
            return SearchResult(query="", case_id=case_id)

        self.store.require_case(case_id)
        query_vector = await self._embed_query(query)

        matches = self.vector_search.search(
            case_id,
            query_vector,
            query_text=query,
            limit=limit if limit is not None else self.settings.SEARCH_DEFAULT_LIMIT,
            threshold=threshold if threshold is not None else self.embedding_service.default_search_threshold,
            filters=filters,
        )
        logger.info("Search in case %s for %r returned %d matches", case_id, query, len(matches))

        result = SearchResult(
            query=query,
            case_id=case_id,
            matches=matches,
            total_matches=len(matches),
        )
        if record_history:
            entry = self.store.add_search_history(
                case_id,
                query,
                len(matches),
                [m.model_dump(mode="json") for m in matches],
            )
            result.history_id = entry.id
            result.searched_at = entry.searched_at
        return result

    async def load_previous_search(self, history_id: str) -> SearchResult:
        """Replay a stored search; re-runs the query if no matches were kept."""
        entry = self.store.get_search_history(history_id)
        if entry is None:
            raise DiscoveryError(f"Search {history_id} not found")

        if entry.results:
            matches = [SearchMatch.model_validate(item) for item in entry.results]
            return SearchResult(
                query=entry.query,
                case_id=entry.case_id,
                matches=matches,
                total_matches=len(matches),
                searched_at=entry.searched_at,
                history_id=entry.id,
            )

        result = await self.search(entry.case_id, entry.query, record_history=False)
        result.history_id = entry.id
        return result

    def recent_searches(self, case_id: str, limit: Optional[int] = None) -> List[SearchHistory]:
        return self.store.list_search_history(
            case_id,
            limit=limit if limit is not None else self.settings.SEARCH_HISTORY_LIMIT,
        )
