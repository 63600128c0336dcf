# bounded_rag/config.py
"""
Process-wide defaults.

Every constant can be overridden with a ``BOUNDED_RAG_*`` environment
variable (a ``.env`` file in the working directory is honoured).
Component-level tunables live on the pydantic config models next to the
components that use them; those models take their defaults from here.
"""

from __future__ import annotations

import os

from dotenv import load_dotenv

load_dotenv()


def _int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


# Budget detection
FALLBACK_QUOTA_TOKENS = _int("BOUNDED_RAG_FALLBACK_QUOTA", 1024)
CHARS_PER_TOKEN = 4
PROMPT_FIT_THRESHOLD = _float("BOUNDED_RAG_PROMPT_FIT_THRESHOLD", 0.80)
MIN_RETRIEVAL_QUOTA = 512

# Retrieval sizing
DEFAULT_AVG_CHUNK_CHARS = 500
RESPONSE_RESERVE_TOKENS = _int("BOUNDED_RAG_RESPONSE_RESERVE", 500)
MIN_OPTIMAL_CHUNKS = 2
MAX_OPTIMAL_CHUNKS = 8

# Trimming
KNOWN_OVERHEAD_SAFETY_MARGIN = _float("BOUNDED_RAG_KNOWN_OVERHEAD_MARGIN", 0.75)
ESTIMATED_OVERHEAD_SAFETY_MARGIN = _float("BOUNDED_RAG_ESTIMATED_OVERHEAD_MARGIN", 0.65)
MIN_CONTEXT_TOKENS = _int("BOUNDED_RAG_MIN_CONTEXT_TOKENS", 1000)
FLOOR_OVERFLOW_RATIO = 1.2
TIGHT_BUDGET_RATIO = 0.9
CHUNK_LABEL_OVERHEAD_TOKENS = 15
CHUNK_SEPARATOR_OVERHEAD_TOKENS = 2
FORMATTING_OVERHEAD_TOKENS = 50

# Conversation
MAX_RECENT_MESSAGES = 6
PRE_SUMMARIZATION_THRESHOLD = _float("BOUNDED_RAG_PRE_SUMMARIZATION_THRESHOLD", 0.85)
POST_TURN_THRESHOLD = _float("BOUNDED_RAG_POST_TURN_THRESHOLD", 0.80)
SESSION_REBASE_THRESHOLD = _float("BOUNDED_RAG_SESSION_REBASE_THRESHOLD", 0.70)
RESUMMARIZE_AFTER = 2

# Timeouts
CHAT_TIMEOUT_SECONDS = _float("BOUNDED_RAG_CHAT_TIMEOUT", 10.0)
MAX_CHAT_ATTEMPTS = _int("BOUNDED_RAG_MAX_CHAT_ATTEMPTS", 3)
MAX_QUOTA_RETRIES = _int("BOUNDED_RAG_MAX_QUOTA_RETRIES", 3)
PROMPT_TIMEOUT_SECONDS = _float("BOUNDED_RAG_PROMPT_TIMEOUT", 60.0)
RETRY_DELAY_SECONDS = _float("BOUNDED_RAG_RETRY_DELAY", 1.0)

# Session defaults
DEFAULT_TEMPERATURE = 0.0
DEFAULT_TOP_K = 1
