# bounded_rag/budget/detector.py
"""
Budget Detector.

Discovers the engine's input quota once, caches it, and provides
best-effort token measurement. Neither operation ever raises: an
unreachable engine yields the conservative fallback quota, and a failing
measurement call yields the chars/4 heuristic flagged as degraded.
"""

from __future__ import annotations

import asyncio
import logging
import math

from bounded_rag.config import (
    CHARS_PER_TOKEN,
    FALLBACK_QUOTA_TOKENS,
    PROMPT_FIT_THRESHOLD,
    RESPONSE_RESERVE_TOKENS,
)
from bounded_rag.engine import GenerationSession, LanguageModelFactory, SessionOptions
from bounded_rag.models import PromptFit, TokenBudget, TokenMeasurement

logger = logging.getLogger(__name__)

# Worst-case prompt overhead (chat with summary and history) used for max chunk sizing
WORST_CASE_PROMPT_TOKENS = 800


def estimate_tokens(text: str) -> int:
    """Rough token estimate: ~4 characters per token, rounded up."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


class BudgetDetector:
    """
    Detects and caches the input quota of one engine instance.

    Usage::

        detector = BudgetDetector(factory)
        quota = await detector.detect()
        measurement = await detector.measure(session, prompt)
    """

    def __init__(
        self,
        factory: LanguageModelFactory | None,
        fallback_quota: int = FALLBACK_QUOTA_TOKENS,
    ) -> None:
        self._factory = factory
        self._fallback_quota = fallback_quota
        self._quota: int | None = None
        self._detected = False
        self._lock = asyncio.Lock()

    @property
    def cached_quota(self) -> int | None:
        return self._quota

    async def detect(self) -> int:
        """Return the engine's input quota, detecting it on first use."""
        if self._quota is not None:
            return self._quota

        async with self._lock:
            if self._quota is not None:  # Another caller finished detection
                return self._quota
            self._quota = await self._detect_once()
        return self._quota

    async def _detect_once(self) -> int:
        if self._factory is None:
            logger.warning(f"No generation engine configured, using fallback quota {self._fallback_quota}")
            self._detected = False
            return self._fallback_quota

        session: GenerationSession | None = None
        try:
            session = await self._factory.create(SessionOptions())
            quota = int(session.input_quota or 0)
        except Exception as e:
            logger.warning(f"Failed to detect input quota ({e}), using fallback {self._fallback_quota}")
            self._detected = False
            return self._fallback_quota
        finally:
            if session is not None:
                try:
                    await session.destroy()
                except Exception as e:
                    logger.debug(f"Error destroying quota detection session: {e}")

        if quota <= 0:
            logger.warning(f"Engine reported no input quota, using fallback {self._fallback_quota}")
            self._detected = False
            return self._fallback_quota

        logger.info(f"Detected input quota: {quota} tokens")
        self._detected = True
        return quota

    async def budget(self, safety_margin_ratio: float = 1.0) -> TokenBudget:
        quota = await self.detect()
        return TokenBudget(quota_tokens=quota, safety_margin_ratio=safety_margin_ratio, detected=self._detected)

    def reset(self) -> None:
        """Invalidate the cached quota so the next call re-detects."""
        self._quota = None
        self._detected = False

    async def measure(self, session: GenerationSession | None, text: str) -> TokenMeasurement:
        """Measure text with the engine, falling back to the heuristic."""
        if session is not None:
            try:
                tokens = await session.measure_input_usage(text)
                return TokenMeasurement(tokens=int(tokens), degraded=False)
            except Exception as e:
                logger.warning(f"measure_input_usage failed ({e}), estimating from length")
        return TokenMeasurement(tokens=estimate_tokens(text), degraded=True)

    async def validate_prompt_size(
        self,
        session: GenerationSession,
        prompt: str,
        threshold: float = PROMPT_FIT_THRESHOLD,
    ) -> PromptFit:
        """
        Check a prompt against the space left in a live session.

        Only ``threshold`` of the remaining space counts as available so the
        streamed response does not hit the quota mid-generation.
        """
        measurement = await self.measure(session, prompt)
        quota = int(session.input_quota or 0)
        remaining = quota - int(session.input_usage or 0)
        available = math.floor(remaining * threshold)
        fits = measurement.tokens <= available

        logger.debug(
            f"Prompt validation: usage={measurement.tokens}, available={available}/{quota}, "
            f"fits={fits}, degraded={measurement.degraded}"
        )
        return PromptFit(
            fits=fits,
            actual_usage=measurement.tokens,
            quota=quota,
            available=available,
            degraded=measurement.degraded,
        )

    async def max_chunk_size_chars(self) -> int:
        """Largest chunk (in chars) that still lets two chunks fit worst-case."""
        quota = await self.detect()
        available = quota - WORST_CASE_PROMPT_TOKENS - RESPONSE_RESERVE_TOKENS
        max_chunk_tokens = max(0, available // 2)
        return max_chunk_tokens * CHARS_PER_TOKEN
