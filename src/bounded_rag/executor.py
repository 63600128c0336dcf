# bounded_rag/executor.py
"""
Prompt execution with a wall-clock timeout and bounded retries.

Long one-shot prompts race the engine against a timeout. A timed-out
session is assumed wedged: it is destroyed and recreated with the same
options before the next attempt.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from pydantic import BaseModel, Field

from bounded_rag.config import PROMPT_TIMEOUT_SECONDS, RETRY_DELAY_SECONDS
from bounded_rag.engine import SessionOptions
from bounded_rag.exceptions import PromptTimeoutError
from bounded_rag.session_manager import SessionLifecycleManager

logger = logging.getLogger(__name__)

_QUOTA_ERROR_MARKERS = ("quotaexceedederror", "quota exceeded", "input is too large", "quota")


def is_quota_exceeded_error(error: BaseException) -> bool:
    """Whether an engine error means the prompt exceeded the session's input quota."""
    message = f"{type(error).__name__} {error}".lower()
    return any(marker in message for marker in _QUOTA_ERROR_MARKERS)


class TimeoutConfig(BaseModel):
    timeout_seconds: float = Field(default=PROMPT_TIMEOUT_SECONDS, gt=0)
    max_retries: int = Field(default=2, ge=1, description="Total attempts")
    retry_delay_seconds: float = Field(default=RETRY_DELAY_SECONDS, ge=0)
    backoff_factor: float = Field(default=1.0, ge=1.0)
    recreate_session_on_timeout: bool = True


class RetryState(BaseModel):
    """Accumulated state of one execute_with_timeout call."""

    attempt: int = 0
    delay_seconds: float = 0.0
    last_error: str | None = None


class PromptExecutor:
    """Runs prompts on the sessions owned by a SessionLifecycleManager."""

    def __init__(self, session_manager: SessionLifecycleManager, config: TimeoutConfig | None = None) -> None:
        self.session_manager = session_manager
        self.config = config or TimeoutConfig()

    async def execute_with_timeout(
        self,
        context_id: str,
        text: str,
        config: TimeoutConfig | None = None,
        options: SessionOptions | None = None,
        response_constraint: dict[str, Any] | None = None,
    ) -> str:
        """
        Prompt the context's session, retrying on timeout.

        Raises:
            PromptTimeoutError: every attempt timed out
            asyncio.CancelledError: propagated untouched, never retried
        """
        config = config or self.config
        retry = RetryState(delay_seconds=config.retry_delay_seconds)

        while True:
            retry.attempt += 1
            session = await self.session_manager.get_or_create(context_id, options)
            try:
                return await asyncio.wait_for(
                    session.prompt(text, response_constraint=response_constraint),
                    timeout=config.timeout_seconds,
                )
            except TimeoutError:
                retry.last_error = f"timed out after {config.timeout_seconds}s"
                logger.warning(
                    f"Prompt for {context_id} {retry.last_error} (attempt {retry.attempt}/{config.max_retries})"
                )

            if retry.attempt >= config.max_retries:
                raise PromptTimeoutError(context_id, retry.attempt, config.timeout_seconds)

            if config.recreate_session_on_timeout:
                options = options or self.session_manager.session_options(context_id)
                await self.session_manager.destroy(context_id)
                logger.debug(f"Destroyed session for {context_id}, will recreate on retry")

            await asyncio.sleep(retry.delay_seconds)
            retry.delay_seconds *= config.backoff_factor
