"""
Thin async HTTP client for the case API that hosts OCR and embeddings.
"""

from __future__ import annotations

from typing import Any, Optional

import httpx

from discovery.core.config import Settings, settings as default_settings
from discovery.core.logger import logger


class CaseApiError(Exception):
    """Non-2xx response or transport failure from the case API"""
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class CaseApiClient:
    """Bearer-authenticated JSON client; owns its httpx.AsyncClient unless one is passed in."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.settings = settings or default_settings
        self.base_url = (self.settings.CASE_API_URL or "https://api.case.dev").rstrip("/")
        self.api_key = (self.settings.CASE_API_KEY or "").strip()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=self.settings.CASE_API_TIMEOUT_SECONDS)

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def url(self, path_or_url: str) -> str:
        if path_or_url.startswith(("http://", "https://")):
            return path_or_url
        return f"{self.base_url}/{path_or_url.lstrip('/')}"

    async def request(self, method: str, path_or_url: str, json: Any = None) -> httpx.Response:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        try:
            response = await self._client.request(method, self.url(path_or_url), json=json, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("Case API %s %s failed: %s", method, path_or_url, str(exc))
            raise CaseApiError(f"Case API request failed: {exc}") from exc

        if response.status_code >= 400:
            raise CaseApiError(
                f"Case API error: {response.status_code} - {response.text}",
                status_code=response.status_code,
            )
        return response

    async def request_json(self, method: str, path_or_url: str, json: Any = None) -> Any:
        response = await self.request(method, path_or_url, json=json)
        try:
            return response.json()
        except ValueError as exc:
            raise CaseApiError("Case API returned invalid JSON") from exc

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
