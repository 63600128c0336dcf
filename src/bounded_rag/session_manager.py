# bounded_rag/session_manager.py
"""
Session Lifecycle Manager.

Owns one generation session per logical context (e.g. ``chat-<doc_id>``)
and at most one in-flight request per context:

- get_or_create: reuse the live session or create it
- destroy: tear down the session and cancel the context's in-flight request
- clone: rebase a conversation onto a fresh session whose opening turns are
  the system prompt (with embedded summary) and the recent messages
- run_request: start a request, cancelling its predecessor for the same context

All state lives in a SessionRegistry owned by the manager; nothing is
module-global. Distinct contexts never share a lock.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any, TypeVar

from pydantic import BaseModel, Field

from bounded_rag.config import SESSION_REBASE_THRESHOLD
from bounded_rag.engine import GenerationSession, LanguageModelFactory, SessionOptions
from bounded_rag.exceptions import EngineUnavailableError, RequestCancelledError, SessionNotFoundError
from bounded_rag.formatting import build_initial_prompts
from bounded_rag.models import ChatMessage, ConversationState, SessionUsage

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SessionEntry(BaseModel):
    """A registered session and what it was created with."""

    session: Any = Field(..., description="GenerationSession")
    options: SessionOptions
    created_at: float = Field(default_factory=time.monotonic)


class SessionRegistry:
    """
    contextId -> session and contextId -> in-flight request.

    Mutated only by SessionLifecycleManager; callers receive it by handle
    for inspection.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, SessionEntry] = {}
        self._requests: dict[str, asyncio.Task] = {}

    def entry(self, context_id: str) -> SessionEntry | None:
        return self._sessions.get(context_id)

    def request(self, context_id: str) -> asyncio.Task | None:
        return self._requests.get(context_id)

    def context_ids(self) -> list[str]:
        return list(self._sessions)

    def __contains__(self, context_id: object) -> bool:
        return context_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    # Mutators below are for SessionLifecycleManager only

    def _put(self, context_id: str, entry: SessionEntry) -> None:
        self._sessions[context_id] = entry

    def _pop(self, context_id: str) -> SessionEntry | None:
        return self._sessions.pop(context_id, None)

    def _put_request(self, context_id: str, task: asyncio.Task) -> None:
        self._requests[context_id] = task

    def _pop_request(self, context_id: str, task: asyncio.Task | None = None) -> asyncio.Task | None:
        current = self._requests.get(context_id)
        if task is not None and current is not task:
            return None
        return self._requests.pop(context_id, None)


class SessionLifecycleManager:
    """
    Creates, replaces and destroys generation sessions per context.

    Examples:
        ```python
        manager = SessionLifecycleManager(factory)
        session = await manager.get_or_create("chat-42", SessionOptions(system_prompt="..."))
        answer = await manager.run_request("chat-42", lambda: session.prompt("hi"))
        await manager.clone("chat-42", state, system_prompt)
        ```
    """

    def __init__(self, factory: LanguageModelFactory, registry: SessionRegistry | None = None) -> None:
        self._factory = factory
        self.registry = registry if registry is not None else SessionRegistry()
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @asynccontextmanager
    async def _context_lock(self, context_id: str) -> AsyncIterator[None]:
        """Hold the context's lock; the lock is dropped once nobody holds or awaits it."""
        lock = self._locks.setdefault(context_id, asyncio.Lock())
        self._lock_users[context_id] = self._lock_users.get(context_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[context_id] -= 1
            if not self._lock_users[context_id]:
                del self._lock_users[context_id]
                del self._locks[context_id]

    @property
    def lock_count(self) -> int:
        return len(self._locks)

    # ------------------------------------------------------------------ #
    # Sessions
    # ------------------------------------------------------------------ #

    def get_session(self, context_id: str) -> GenerationSession | None:
        entry = self.registry.entry(context_id)
        return entry.session if entry else None

    def require_session(self, context_id: str) -> GenerationSession:
        session = self.get_session(context_id)
        if session is None:
            raise SessionNotFoundError(context_id)
        return session

    def session_options(self, context_id: str) -> SessionOptions | None:
        entry = self.registry.entry(context_id)
        return entry.options if entry else None

    def has_session(self, context_id: str) -> bool:
        return context_id in self.registry

    def active_contexts(self) -> list[str]:
        return self.registry.context_ids()

    @property
    def session_count(self) -> int:
        return len(self.registry)

    async def get_or_create(self, context_id: str, options: SessionOptions | None = None) -> GenerationSession:
        """Return the context's live session, creating it if needed."""
        existing = self.get_session(context_id)
        if existing is not None:
            return existing

        async with self._context_lock(context_id):
            existing = self.get_session(context_id)
            if existing is not None:  # Created while we waited
                return existing
            return await self._create_unlocked(context_id, options or SessionOptions())

    async def _create_unlocked(self, context_id: str, options: SessionOptions) -> GenerationSession:
        resolved = options.model_copy(
            update={"initial_prompts": options.resolved_initial_prompts(), "system_prompt": None}
        )
        try:
            session = await self._factory.create(resolved)
        except Exception as e:
            logger.error(f"Failed to create session for context {context_id}: {e}")
            raise EngineUnavailableError(f"Could not create session for {context_id}: {e}") from e

        self.registry._put(context_id, SessionEntry(session=session, options=resolved))
        logger.debug(f"Session created for context {context_id} ({len(resolved.initial_prompts)} initial prompts)")
        return session

    async def destroy(self, context_id: str) -> None:
        """Destroy the context's session and cancel its in-flight request."""
        async with self._context_lock(context_id):
            await self._destroy_unlocked(context_id)

    async def _destroy_unlocked(self, context_id: str) -> None:
        entry = self.registry._pop(context_id)
        if entry is not None:
            try:
                await entry.session.destroy()
                logger.debug(f"Session destroyed for context {context_id}")
            except Exception as e:
                logger.error(f"Error destroying session for context {context_id}: {e}")
        self.abort_request(context_id)

    async def destroy_all(self) -> None:
        context_ids = self.active_contexts()
        logger.debug(f"Destroying all sessions ({len(context_ids)} total)")
        await asyncio.gather(*(self.destroy(context_id) for context_id in context_ids))

    async def clone(
        self,
        context_id: str,
        conversation_state: ConversationState,
        system_prompt: str,
        options: SessionOptions | None = None,
        recent_messages: list[ChatMessage] | None = None,
    ) -> GenerationSession:
        """
        Rebase a conversation onto a fresh session.

        The replacement opens with ``[system(+summary), *recent_messages]``, so
        the quota consumed by earlier turns is released while the summary
        keeps the conversation coherent. ``recent_messages`` overrides the
        state's window.
        """
        initial_prompts = build_initial_prompts(system_prompt, conversation_state, recent_messages)
        recent_count = len(conversation_state.recent_messages if recent_messages is None else recent_messages)
        async with self._context_lock(context_id):
            base = options or self.session_options(context_id) or SessionOptions()
            new_options = base.model_copy(update={"initial_prompts": initial_prompts, "system_prompt": None})
            await self._destroy_unlocked(context_id)
            session = await self._create_unlocked(context_id, new_options)

        logger.info(
            f"Rebased context {context_id} onto a fresh session "
            f"(summary={conversation_state.has_summary}, recent={recent_count})"
        )
        return session

    async def cleanup_old_sessions(self, max_age_seconds: float = 3600.0) -> int:
        """Destroy sessions older than ``max_age_seconds``; returns how many."""
        now = time.monotonic()
        stale = [
            context_id
            for context_id in self.active_contexts()
            if (entry := self.registry.entry(context_id)) and now - entry.created_at > max_age_seconds
        ]
        for context_id in stale:
            await self.destroy(context_id)
        if stale:
            logger.debug(f"Cleaned up {len(stale)} old sessions")
        return len(stale)

    # ------------------------------------------------------------------ #
    # Usage
    # ------------------------------------------------------------------ #

    def usage(self, context_id: str) -> SessionUsage | None:
        session = self.get_session(context_id)
        if session is None:
            return None
        try:
            return SessionUsage(input_usage=int(session.input_usage or 0), input_quota=int(session.input_quota or 0))
        except Exception as e:
            logger.warning(f"Could not read usage for context {context_id}: {e}")
            return SessionUsage()

    def is_approaching_limit(self, context_id: str, threshold: float = SESSION_REBASE_THRESHOLD) -> bool:
        usage = self.usage(context_id)
        return usage is not None and usage.usage_ratio >= threshold

    # ------------------------------------------------------------------ #
    # Requests
    # ------------------------------------------------------------------ #

    def abort_request(self, context_id: str) -> bool:
        """Cancel the context's in-flight request. Never cancels the calling task."""
        task = self.registry.request(context_id)
        if task is None or task.done() or task is asyncio.current_task():
            return False
        task.cancel()
        self.registry._pop_request(context_id, task)
        logger.debug(f"Aborted request for context {context_id}")
        return True

    async def run_request(self, context_id: str, request: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``request`` as the context's only in-flight request.

        A predecessor still running for the same context is cancelled first.
        Raises RequestCancelledError if this request is itself superseded
        or aborted.
        """
        if self.abort_request(context_id):
            logger.info(f"Superseded in-flight request for context {context_id}")

        task = asyncio.ensure_future(request())
        self.registry._put_request(context_id, task)
        try:
            return await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise  # The caller itself is being cancelled
            raise RequestCancelledError(context_id) from None
        finally:
            self.registry._pop_request(context_id, task)
