# bounded_rag/budget/__init__.py
"""Token budget: quota detection, retrieval sizing and chunk trimming."""

from bounded_rag.budget.detector import BudgetDetector, estimate_tokens
from bounded_rag.budget.sizer import RetrievalSizer, SizerConfig
from bounded_rag.budget.trimmer import FALLBACK_HISTORY_WINDOWS, BudgetTrimmer, TrimmerConfig

__all__ = [
    "BudgetDetector",
    "estimate_tokens",
    "RetrievalSizer",
    "SizerConfig",
    "BudgetTrimmer",
    "TrimmerConfig",
    "FALLBACK_HISTORY_WINDOWS",
]
