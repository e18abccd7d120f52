"""
Service wiring.

``ServiceContainer`` builds every service from one Settings object and
owns the resources that need closing (database engine, HTTP client).
"""

from __future__ import annotations

from typing import Any, Optional

from sqlalchemy.engine import Engine

from discovery.core.config import Settings, get_settings
from discovery.core.logger import logger
from discovery.db.database import create_engine, create_session_factory, init_db
from discovery.db.store import DiscoveryStore
from discovery.services.case_api_client import CaseApiClient
from discovery.services.document_pipeline import DocumentPipeline
from discovery.services.embedding_orchestrator import EmbeddingOrchestrator
from discovery.services.embedding_service import build_embedding_service
from discovery.services.interfaces import ChatService, EmbeddingService, OcrService
from discovery.services.llm_service import BedrockChatService
from discovery.services.ocr_service import HttpOcrService
from discovery.services.search_service import SearchService
from discovery.services.text_extraction_service import TextExtractionService
from discovery.services.theme_analysis_service import ThemeAnalysisService
from discovery.services.theme_extractor import ThemeExtractor
from discovery.services.usage_service import UsageService
from discovery.services.vector_search_service import VectorSearchService


class ServiceContainer:
    """
    Explicitly constructed services for one application instance.

    Collaborators (OCR, embeddings, chat) can be passed in to replace the
    HTTP and Bedrock implementations.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        engine: Optional[Engine] = None,
        ocr_service: Optional[OcrService] = None,
        embedding_service: Optional[EmbeddingService] = None,
        chat_service: Optional[ChatService] = None,
        http_client: Any = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.engine = engine or create_engine(self.settings.DATABASE_URL, echo=self.settings.DEBUG)
        self.store = DiscoveryStore(create_session_factory(self.engine))

        self.case_api = CaseApiClient(self.settings, client=http_client)
        self.usage = UsageService(self.store, self.settings)

        self.ocr_service = ocr_service or HttpOcrService(self.case_api)
        self.embedding_service = embedding_service or build_embedding_service(self.case_api, self.settings)
        self._chat_service = chat_service

        self.extraction = TextExtractionService(self.ocr_service, self.usage, self.settings)
        self.embedding_orchestrator = EmbeddingOrchestrator(
            self.store,
            self.embedding_service,
            self.usage,
            self.settings,
        )
        self.pipeline = DocumentPipeline(
            self.store,
            self.extraction,
            self.embedding_orchestrator,
            self.settings,
        )
        self.vector_search = VectorSearchService(
            self.store,
            default_threshold=self.embedding_service.default_search_threshold,
            default_limit=self.settings.SEARCH_DEFAULT_LIMIT,
        )
        self.search = SearchService(
            self.store,
            self.embedding_service,
            self.vector_search,
            self.usage,
            self.settings,
        )
        self._themes: Optional[ThemeAnalysisService] = None

    @property
    def chat_service(self) -> ChatService:
        # Bedrock client is only created when theme analysis is first used
        if self._chat_service is None:
            self._chat_service = BedrockChatService(self.settings)
        return self._chat_service

    @property
    def themes(self) -> ThemeAnalysisService:
        if self._themes is None:
            extractor = ThemeExtractor(self.chat_service, self.usage, self.settings)
            self._themes = ThemeAnalysisService(self.store, extractor, self.settings)
        return self._themes

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> "ServiceContainer":
        init_db(self.engine)
        logger.info("%s services ready", self.settings.APP_NAME)
        return self

    async def close(self) -> None:
        await self.case_api.aclose()
        self.engine.dispose()
        logger.info("%s services closed", self.settings.APP_NAME)

    async def __aenter__(self) -> "ServiceContainer":
        return self.open()

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


def build_services(settings: Optional[Settings] = None, **overrides: Any) -> ServiceContainer:
    """Create and open a ServiceContainer."""
    return ServiceContainer(settings=settings, **overrides).open()
