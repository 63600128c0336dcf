# bounded_rag/exceptions.py
"""Exception hierarchy for bounded_rag."""

from __future__ import annotations


class BoundedRagError(Exception):
    """Base class for all bounded_rag errors."""


class EngineUnavailableError(BoundedRagError):
    """The generation or summarization engine cannot be reached."""


class SessionNotFoundError(BoundedRagError):
    """No live generation session is registered for a context."""

    def __init__(self, context_id: str):
        self.context_id = context_id
        super().__init__(f"No session found for context: {context_id}")


class RequestCancelledError(BoundedRagError):
    """
    A request was superseded or aborted.

    Distinct from failure: callers must never retry a cancelled request.
    """

    def __init__(self, context_id: str):
        self.context_id = context_id
        super().__init__(f"Request cancelled for context: {context_id}")


class PromptTimeoutError(BoundedRagError):
    """The engine did not answer within the wall-clock limit."""

    def __init__(self, context_id: str, attempts: int, timeout_seconds: float):
        self.context_id = context_id
        self.attempts = attempts
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Prompt for context {context_id} timed out after {attempts} attempt(s) of {timeout_seconds}s"
        )


class NoRelevantContentError(BoundedRagError):
    """The chunk store returned nothing for a query."""


class ContextTooLargeError(BoundedRagError):
    """The prompt cannot be made to fit the session budget."""


class SchemaOrderError(BoundedRagError):
    """The response schema does not declare ``answer`` before ``sources``."""
