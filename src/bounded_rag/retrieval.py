# bounded_rag/retrieval.py
"""
Retrieval for chat turns: oversample, trim to budget, format.

    store -> adaptive_chunk_limit -> get_relevant_chunks -> trim
          -> sort by document order -> format_context
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from pydantic import BaseModel, Field

from bounded_rag.budget import BudgetTrimmer, RetrievalSizer
from bounded_rag.engine import ChunkStore
from bounded_rag.exceptions import NoRelevantContentError
from bounded_rag.formatting import build_source_info_map, format_context
from bounded_rag.models import BudgetStatus, ChatMessage, ContentChunk, ConversationState, SourceInfo, UseCase

logger = logging.getLogger(__name__)


class RetrievalContext(BaseModel):
    """Budgeted evidence ready to be placed in a prompt."""

    chunks: list[ContentChunk] = Field(default_factory=list, description="Selected chunks in document order")
    context: str = ""
    source_map: dict[str, SourceInfo] = Field(default_factory=dict)
    sources: list[str] = Field(default_factory=list, description="Unique section names, first-seen order")
    status: BudgetStatus
    retrieved_count: int = 0


class ChatRetrievalService:
    def __init__(self, store: ChunkStore, sizer: RetrievalSizer, trimmer: BudgetTrimmer) -> None:
        self.store = store
        self.sizer = sizer
        self.trimmer = trimmer

    async def _average_chunk_size(self, doc_id: str) -> int | None:
        try:
            return await self.store.average_chunk_size(doc_id)
        except Exception as e:
            logger.warning(f"Could not read chunk metadata for {doc_id}: {e}")
            return None

    async def get_relevant_chunks(
        self,
        doc_id: str,
        query: str,
        use_case: UseCase = UseCase.CHAT,
        conversation_state: ConversationState | None = None,
        history: Sequence[ChatMessage] | None = None,
        system_prompt: str = "",
    ) -> RetrievalContext:
        """
        Retrieve and budget evidence for a question.

        With a conversation state the trimmer measures the real overhead and
        may shrink the history window; without one it uses static estimates.

        Raises:
            NoRelevantContentError: the store returned no chunks
        """
        avg_chars = await self._average_chunk_size(doc_id)
        limit = await self.sizer.adaptive_chunk_limit(avg_chars, use_case)

        retrieved = await self.store.get_relevant_chunks(doc_id, query, limit)
        if not retrieved:
            raise NoRelevantContentError("No relevant content found to answer this question.")
        logger.debug(f"Retrieved {len(retrieved)} chunks for {doc_id} (limit {limit})")

        if conversation_state is not None:
            result = await self.trimmer.trim_with_progressive_fallback(
                retrieved,
                use_case,
                conversation_state,
                history,
                system_prompt=system_prompt,
                question=query,
            )
        else:
            result = await self.trimmer.trim(retrieved, use_case, question=query)

        # Prompt flow follows the document, not the relevance rank
        chunks = sorted(result.selected_chunks, key=lambda chunk: chunk.document_order_index)

        return RetrievalContext(
            chunks=chunks,
            context=format_context(chunks),
            source_map=build_source_info_map(chunks),
            sources=list(dict.fromkeys(chunk.section for chunk in chunks)),
            status=result.status,
            retrieved_count=len(retrieved),
        )
