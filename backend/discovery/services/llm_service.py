"""
Chat completions via AWS Bedrock (Claude).
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, List, Optional

import boto3

from discovery.core.config import Settings, settings as default_settings
from discovery.core.logger import logger
from discovery.db.schemas import ChatCompletion, ChatMessage


class BedrockChatService:
    """Anthropic messages API on Bedrock; system messages go into ``system``."""

    def __init__(self, settings: Optional[Settings] = None, client: Any = None) -> None:
        settings = settings or default_settings
        self.model: str = settings.THEME_MODEL_ID.strip()
        self.client = client or boto3.client(
            "bedrock-runtime",
            region_name=settings.AWS_REGION,
            aws_access_key_id=settings.AWS_ACCESS_KEY_ID or None,
            aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY or None,
        )
        logger.info("BedrockChatService initialised with model=%s", self.model)

    # ------------------------------------------------------------------
    # Low-level Bedrock call
    # ------------------------------------------------------------------

    def _invoke(
        self,
        messages: List[ChatMessage],
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> ChatCompletion:
        system = "\n\n".join(m.content for m in messages if m.role == "system")
        payload = {
            "anthropic_version": "bedrock-2023-05-31",
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [
                {"role": m.role, "content": m.content}
                for m in messages
                if m.role != "system"
            ],
        }
        if system:
            payload["system"] = system

        response = self.client.invoke_model(
            modelId=model,
            contentType="application/json",
            accept="application/json",
            body=json.dumps(payload),
        )
        result = json.loads(response["body"].read())
        # Claude response: {"content": [{"type": "text", "text": "..."}], "usage": {...}}
        text_parts: list[str] = []
        for block in result.get("content", []):
            if isinstance(block, dict) and block.get("type") == "text":
                text_parts.append(block.get("text", ""))
        usage = result.get("usage") or {}
        return ChatCompletion(
            text="".join(text_parts),
            input_tokens=int(usage.get("input_tokens") or 0),
            output_tokens=int(usage.get("output_tokens") or 0),
        )

    async def complete(
        self,
        messages: List[ChatMessage],
        model: Optional[str] = None,
        temperature: float = 0.5,
        max_tokens: int = 2000,
    ) -> ChatCompletion:
        return await asyncio.to_thread(
            self._invoke,
            messages,
            model or self.model,
            temperature,
            max_tokens,
        )
