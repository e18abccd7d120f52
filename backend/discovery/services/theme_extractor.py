"""
Theme and suggested-question extraction for a case.

A sample of chunks plus an entity summary is sent to the LLM, which
answers with JSON themes and questions. Questions reference themes by
title; they are linked to theme ids only after the themes are stored.
"""

from __future__ import annotations

import json
import re
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Sequence

from discovery.core.config import Settings, settings as default_settings
from discovery.core.logger import logger
from discovery.db.models import CaseTheme, ThemeAnalysis, ThemeAnalysisStatus
from discovery.db.schemas import (
    ChatMessage,
    ChunkSample,
    Entity,
    LinkedQuestion,
    QuestionDraft,
    ThemeDraft,
    ThemeExtractionInput,
    ThemeExtractionResult,
)
from discovery.services.interfaces import ChatService, UsageGate
from discovery.services.usage_service import ensure_allowed

EXCERPT_CHARS = 500
ENTITIES_PER_TYPE = 5
ENTITY_TYPE_ORDER = ("person", "organization", "case", "concept", "date", "money", "location")

SYSTEM_PROMPT = """You are a legal discovery analyst specializing in identifying key themes and patterns in case documents. Your task is to analyze document content and extract the most important themes for legal review.

Output your analysis in the following JSON format:
{
  "themes": [
    {
      "title": "Short theme title (3-5 words)",
      "description": "1-2 sentence description of the theme",
      "relevanceScore": 0.95,
      "keyTerms": ["term1", "term2", "term3"]
    }
  ],
  "suggestedQuestions": [
    {
      "question": "A specific question to investigate",
      "themeTitle": "Related Theme Title",
      "rationale": "Why this question matters",
      "priority": 5
    }
  ]
}

Guidelines:
- Identify 3-5 key themes that represent the core issues in the case
- Each theme should be distinct and legally relevant
- Suggested questions should help uncover important facts
- Priority: 5 = critical, 4 = important, 3 = useful, 2 = supplementary, 1 = optional
- Focus on patterns, disputes, relationships, key events, and potential issues
- Questions should be specific enough to guide semantic search
- Return ONLY valid JSON, no additional text"""

_FENCED_JSON = re.compile(r"```json\n?([\s\S]*?)\n?```")
_FENCED = re.compile(r"```\n?([\s\S]*?)\n?```")
_BARE_OBJECT = re.compile(r"\{[\s\S]*\}")


# ============================================================================
# Sampling & context
# ============================================================================

def sample_chunks(chunks: Sequence[ChunkSample], limit: int = 50) -> List[ChunkSample]:
    """
    Pick up to *limit* chunks spread across documents: every document's first
    chunk, then an even stride through the rest of it.
    """
    if len(chunks) <= limit:
        return list(chunks)

    by_document: "OrderedDict[str, List[ChunkSample]]" = OrderedDict()
    for chunk in chunks:
        by_document.setdefault(chunk.document_id, []).append(chunk)

    per_doc = max(1, limit // len(by_document))
    sampled: List[ChunkSample] = []

    for doc_chunks in by_document.values():
        sampled.append(doc_chunks[0])

        if len(doc_chunks) > 1 and per_doc > 1:
            rest = doc_chunks[1:]
            step = max(1, len(rest) // (per_doc - 1))
            i = 0
            while i < len(rest) and len(sampled) < limit:
                sampled.append(rest[i])
                i += step

        if len(sampled) >= limit:
            break

    return sampled[:limit]


def summarize_entities(entities: Sequence[Entity]) -> str:
    """One line per entity type, most widely mentioned names first."""
    by_type: Dict[str, List[str]] = {}
    for entity in sorted(entities, key=lambda e: len(e.document_ids), reverse=True):
        names = by_type.setdefault(entity.type, [])
        if len(names) < ENTITIES_PER_TYPE:
            names.append(entity.name)

    return "\n".join(
        f"- {entity_type}: {', '.join(by_type[entity_type])}"
        for entity_type in ENTITY_TYPE_ORDER
        if entity_type in by_type
    )


def build_analysis_context(
    chunks: Sequence[ChunkSample],
    entities: Sequence[Entity],
    case_name: str,
    case_description: Optional[str] = None,
    max_chars: int = 15000,
) -> str:
    context = f"Case: {case_name}\n"
    if case_description:
        context += f"Description: {case_description}\n"

    entity_summary = summarize_entities(entities)
    if entity_summary:
        context += f"\nKey Entities Found:\n{entity_summary}\n"

    context += "\nDocument Excerpts:\n"
    for chunk in chunks:
        excerpt = chunk.content[:EXCERPT_CHARS]
        ellipsis = "..." if len(chunk.content) > EXCERPT_CHARS else ""
        context += f"---\n{excerpt}{ellipsis}\n"

    if len(context) > max_chars:
        context = context[:max_chars] + "\n[truncated]"
    return context


def build_theme_prompt(context: str, document_count: int) -> List[ChatMessage]:
    user_prompt = (
        f"Analyze this legal discovery case with {document_count} documents.\n\n"
        f"{context}\n\n"
        "Extract the key themes and suggest investigative questions based on "
        "the document content and entities."
    )
    return [
        ChatMessage(role="system", content=SYSTEM_PROMPT),
        ChatMessage(role="user", content=user_prompt),
    ]


# ============================================================================
# Parsing & linking
# ============================================================================

def _clamp_number(value: Any, low: float, high: float, default: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return min(high, max(low, value))


def parse_theme_response(content: str) -> ThemeExtractionResult:
    """
    Parse the LLM's JSON answer. Fenced or bare JSON is accepted; anything
    unparseable yields an empty result rather than an error.
    """
    match = _FENCED_JSON.search(content) or _FENCED.search(content) or _BARE_OBJECT.search(content)
    if match is None:
        json_str = content
    else:
        json_str = match.group(1) if match.groups() else match.group(0)

    try:
        parsed = json.loads(json_str)
        if not isinstance(parsed, dict):
            raise ValueError("theme response is not a JSON object")

        themes = [
            ThemeDraft(
                title=str(t.get("title") or "Untitled Theme"),
                description=str(t.get("description") or ""),
                relevance_score=float(_clamp_number(t.get("relevanceScore"), 0.0, 1.0, 0.8)),
                key_terms=[str(term) for term in t["keyTerms"]] if isinstance(t.get("keyTerms"), list) else [],
            )
            for t in parsed.get("themes") or []
            if isinstance(t, dict)
        ]
        questions = [
            QuestionDraft(
                question=str(q.get("question") or ""),
                theme_title=str(q.get("themeTitle") or ""),
                rationale=str(q.get("rationale") or ""),
                priority=int(_clamp_number(q.get("priority"), 1, 5, 3)),
            )
            for q in parsed.get("suggestedQuestions") or []
            if isinstance(q, dict)
        ]
    except (ValueError, TypeError, AttributeError) as exc:
        logger.warning("Failed to parse theme response: %s; raw content: %s", str(exc), content[:500])
        return ThemeExtractionResult()

    return ThemeExtractionResult(themes=themes, questions=questions)


def link_questions_to_themes(
    saved_themes: Sequence[CaseTheme],
    questions: Sequence[QuestionDraft],
) -> List[LinkedQuestion]:
    """
    Resolve each question's theme title to a stored theme id: exact
    case-insensitive title match, else the first theme, else no theme.
    """
    by_title = {}
    for theme in saved_themes:
        by_title.setdefault(theme.title.lower(), theme.id)
    fallback = saved_themes[0].id if saved_themes else None

    return [
        LinkedQuestion(
            question=q.question,
            theme_id=by_title.get(q.theme_title.lower(), fallback),
            rationale=q.rationale,
            priority=q.priority,
        )
        for q in questions
    ]


def should_refresh(
    analysis: Optional[ThemeAnalysis],
    completed_count: int,
    threshold: float = 0.2,
) -> bool:
    """
    True when there is no analysis yet (and something to analyze), or the
    completed-document count grew by at least *threshold* since the last
    completed analysis.
    """
    if analysis is None:
        return completed_count >= 1
    if ThemeAnalysisStatus(analysis.status) != ThemeAnalysisStatus.completed:
        return False
    previous = analysis.document_count_at_analysis or 0
    if previous <= 0:
        return False
    return (completed_count - previous) / previous >= threshold


# ============================================================================
# Extractor
# ============================================================================

class ThemeExtractor:
    """Runs one theme extraction round trip against the chat service."""

    def __init__(
        self,
        chat_service: ChatService,
        usage_gate: UsageGate,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or default_settings
        self.chat_service = chat_service
        self.usage_gate = usage_gate

    async def extract_themes(
        self,
        data: ThemeExtractionInput,
        document_count: Optional[int] = None,
    ) -> ThemeExtractionResult:
        if document_count is None:
            document_count = len({chunk.document_id for chunk in data.chunks})

        logger.info(
            "Extracting themes for case %s (%d chunks, %d entities, %d documents)",
            data.case_id,
            len(data.chunks),
            len(data.entities),
            document_count,
        )

        sampled = sample_chunks(data.chunks, self.settings.THEME_SAMPLE_CHUNKS)
        context = build_analysis_context(
            sampled,
            data.entities,
            data.case_name,
            data.case_description,
            max_chars=self.settings.THEME_MAX_CONTEXT_CHARS,
        )

        ensure_allowed(self.usage_gate)
        completion = await self.chat_service.complete(
            build_theme_prompt(context, document_count),
            temperature=self.settings.THEME_TEMPERATURE,
            max_tokens=self.settings.THEME_MAX_TOKENS,
        )
        self.usage_gate.record(
            input_tokens=completion.input_tokens,
            output_tokens=completion.output_tokens,
        )

        result = parse_theme_response(completion.text)
        result.output_tokens = completion.output_tokens
        logger.info(
            "Extracted %d themes and %d questions for case %s",
            len(result.themes),
            len(result.questions),
            data.case_id,
        )
        return result
