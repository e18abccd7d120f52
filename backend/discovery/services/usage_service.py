"""
Usage gate: metered calls (OCR pages, embedding tokens, LLM tokens) are
checked against per-period limits before they are made and recorded after.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Callable, Dict, Optional, Tuple

from discovery.core.config import Settings, settings as default_settings
from discovery.core.logger import logger
from discovery.db.schemas import UsageCheck, UsageSummary
from discovery.db.store import DiscoveryStore
from discovery.services.interfaces import UsageGate
from discovery.utils.exceptions import QuotaExceededError

INPUT_TOKEN_LIMIT = "input_token_limit"
OUTPUT_TOKEN_LIMIT = "output_token_limit"
OCR_PAGE_LIMIT = "ocr_page_limit"


def ensure_allowed(gate: UsageGate) -> None:
    """Raise QuotaExceededError if *gate* denies the next metered call."""
    check = gate.check_allowed()
    if not check.allowed:
        raise QuotaExceededError(check.reason)


class UsageService:
    """Database-backed usage gate with limits taken from settings."""

    def __init__(
        self,
        store: DiscoveryStore,
        settings: Optional[Settings] = None,
        today: Callable[[], date] = lambda: datetime.utcnow().date(),
    ) -> None:
        self.store = store
        self.settings = settings or default_settings
        self._today = today

    def _current_period(self) -> Tuple[date, date]:
        days = max(1, self.settings.USAGE_PERIOD_DAYS)
        today = self._today()
        epoch = date(1970, 1, 1)
        offset = (today - epoch).days % days
        start = today - timedelta(days=offset)
        return start, start + timedelta(days=days - 1)

    def _limits(self) -> Dict[str, int]:
        return {
            "input_tokens": self.settings.USAGE_MAX_INPUT_TOKENS,
            "output_tokens": self.settings.USAGE_MAX_OUTPUT_TOKENS,
            "ocr_pages": self.settings.USAGE_MAX_OCR_PAGES,
        }

    def get_usage(self) -> UsageSummary:
        start, end = self._current_period()
        record = self.store.get_usage_record(start)
        return UsageSummary(
            period_start=start,
            period_end=end,
            input_tokens=record.input_tokens if record else 0,
            output_tokens=record.output_tokens if record else 0,
            ocr_pages=record.ocr_pages if record else 0,
            limits=self._limits(),
        )

    def check_allowed(self) -> UsageCheck:
        usage = self.get_usage()
        limits = usage.limits

        if limits["input_tokens"] and usage.input_tokens >= limits["input_tokens"]:
            return UsageCheck(allowed=False, reason=INPUT_TOKEN_LIMIT)
        if limits["output_tokens"] and usage.output_tokens >= limits["output_tokens"]:
            return UsageCheck(allowed=False, reason=OUTPUT_TOKEN_LIMIT)
        if limits["ocr_pages"] and usage.ocr_pages >= limits["ocr_pages"]:
            return UsageCheck(allowed=False, reason=OCR_PAGE_LIMIT)
        return UsageCheck(allowed=True)

    def record(self, input_tokens: int = 0, output_tokens: int = 0, ocr_pages: int = 0) -> None:
        if not (input_tokens or output_tokens or ocr_pages):
            return
        start, end = self._current_period()
        self.store.add_usage(
            start,
            end,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            ocr_pages=ocr_pages,
        )
        logger.debug(
            "Recorded usage: input=%s output=%s ocr_pages=%s",
            input_tokens,
            output_tokens,
            ocr_pages,
        )
