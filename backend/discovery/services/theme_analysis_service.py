"""
Per-case theme analysis: decides when a case needs (re)analysis and runs
the extraction, storing themes and questions together.
"""

from __future__ import annotations

from typing import List, Optional, Sequence

from discovery.core.config import Settings, settings as default_settings
from discovery.core.logger import logger
from discovery.db.models import CaseTheme, DocumentStatus, SuggestedQuestion, ThemeAnalysisStatus
from discovery.db.schemas import ChunkSample, Entity, ThemeExtractionInput
from discovery.db.store import DiscoveryStore
from discovery.services.theme_extractor import ThemeExtractor, link_questions_to_themes, should_refresh
from discovery.utils.exceptions import AnalysisError


class ThemeAnalysisService:
    def __init__(
        self,
        store: DiscoveryStore,
        extractor: ThemeExtractor,
        settings: Optional[Settings] = None,
    ) -> None:
        self.store = store
        self.extractor = extractor
        self.settings = settings or default_settings

    def needs_refresh(self, case_id: str) -> bool:
        completed = self.store.count_documents(case_id, DocumentStatus.completed)
        return should_refresh(
            self.store.get_theme_analysis(case_id),
            completed,
            threshold=self.settings.THEME_REFRESH_THRESHOLD,
        )

    def get_themes(self, case_id: str) -> List[CaseTheme]:
        return self.store.get_themes(case_id)

    def get_questions(self, case_id: str) -> List[SuggestedQuestion]:
        return self.store.get_questions(case_id)

    async def trigger_analysis(
        self,
        case_id: str,
        entities: Sequence[Entity] = (),
    ) -> List[CaseTheme]:
        """
        Analyze the case's completed documents and replace its themes.

        Raises AnalysisError when there is nothing to analyze or no themes
        come back; the analysis record is marked failed on any error.
        """
        case = self.store.require_case(case_id)

        completed = self.store.count_documents(case_id, DocumentStatus.completed)
        if completed == 0:
            raise AnalysisError("No completed documents to analyze")

        completed_ids = [d.id for d in self.store.list_documents(case_id, DocumentStatus.completed)]
        chunks = self.store.get_case_chunks(case_id, document_ids=completed_ids)
        if not chunks:
            raise AnalysisError("No document chunks found")

        self.store.upsert_theme_analysis(
            case_id,
            ThemeAnalysisStatus.processing,
            document_count=completed,
        )

        try:
            result = await self.extractor.extract_themes(
                ThemeExtractionInput(
                    case_id=case_id,
                    case_name=case.name,
                    case_description=case.description,
                    chunks=[
                        ChunkSample(
                            id=c.id,
                            document_id=c.document_id,
                            chunk_index=c.chunk_index,
                            content=c.content,
                        )
                        for c in chunks
                    ],
                    entities=list(entities),
                ),
                document_count=completed,
            )

            if not result.themes:
                self.store.upsert_theme_analysis(
                    case_id,
                    ThemeAnalysisStatus.failed,
                    error_message="No themes extracted",
                )
                raise AnalysisError("Could not extract themes from documents")

            supporting = sorted({c.document_id for c in chunks})
            saved = self.store.replace_themes(
                case_id,
                result.themes,
                result.questions,
                supporting,
                link_questions_to_themes,
            )
            self.store.upsert_theme_analysis(case_id, ThemeAnalysisStatus.completed)
        except AnalysisError:
            raise
        except Exception as exc:
            logger.exception("Theme analysis failed for case %s", case_id)
            self.store.upsert_theme_analysis(
                case_id,
                ThemeAnalysisStatus.failed,
                error_message=str(exc) or "Analysis failed",
            )
            raise

        logger.info("Theme analysis completed for case %s (%d themes)", case_id, len(saved))
        return saved
