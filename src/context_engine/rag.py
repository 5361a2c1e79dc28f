"""
RAG (Retrieval-Augmented Generation) context injection.

This module provides the stage that grounds the latest user message in
retrieved knowledge, featuring:

CHUNK BUDGETING:
- budget_chunks(): similarity filter, stable descending sort and
  length-budgeted truncation with a minimum fragment floor

CONTEXT FORMATTING:
- format_rag_context(): numbered references with similarity percentages,
  optional rewritten-query note and closing instruction

INJECTION STAGE:
- RAGContextInjector: appends the formatted block to the last user message
  and records a RAGContextSummary in context metadata
- RAGContextConfigBuilder: builds the immutable RAGContextConfig, optionally
  seeded from environment configuration
"""

from typing import List, Optional, Sequence, Dict, Any
from loguru import logger

from .base import ContextStage
from .models import (
    ChunkStats,
    ConversationMessage,
    MessageRole,
    PipelineContext,
    RAGContextConfig,
    RAGContextSummary,
    RetrievalChunk,
)
from .utils import get_config


# Budgeting constants
MIN_TRUNCATED_FRAGMENT_LENGTH = 100  # Truncated remainders must be longer than this
TRUNCATION_SUFFIX = "..."

# Formatting text
CONTEXT_PREAMBLE = (
    "The following is relevant background information. "
    "Please answer the user's question based on this information:"
)
REWRITE_QUERY_HEADER = "The user query was rewritten for retrieval:"
CONTEXT_CLOSING = (
    "Please answer the user's question based on the references above. "
    "If the references do not contain the relevant information, say so explicitly."
)

RAG_METADATA_KEY = "rag_context"


# Chunk Budgeting

def filter_by_similarity(chunks: Sequence[RetrievalChunk], min_similarity: float) -> List[RetrievalChunk]:
    """Keep chunks whose similarity is at least min_similarity."""
    return [chunk for chunk in chunks if chunk.similarity >= min_similarity]


def sort_by_similarity(chunks: Sequence[RetrievalChunk]) -> List[RetrievalChunk]:
    """Stable sort, highest similarity first. Ties keep their input order."""
    return sorted(chunks, key=lambda chunk: chunk.similarity, reverse=True)


def truncate_by_length(chunks: Sequence[RetrievalChunk], max_length: int) -> List[RetrievalChunk]:
    """
    Keep chunks in order until their combined content length reaches max_length.

    The first chunk that does not fit is truncated to the remaining budget only
    when more than MIN_TRUNCATED_FRAGMENT_LENGTH characters remain; otherwise it
    is dropped. Either way no later chunk is considered.

    Args:
        chunks: Ordered chunks
        max_length: Maximum combined content length

    Returns:
        List[RetrievalChunk]: Budgeted chunks, truncated ones are new values
    """
    result = []
    total_length = 0

    for chunk in chunks:
        chunk_length = len(chunk.content)

        if total_length + chunk_length <= max_length:
            result.append(chunk)
            total_length += chunk_length
            continue

        remaining_length = max_length - total_length
        if remaining_length > MIN_TRUNCATED_FRAGMENT_LENGTH:
            # The suffix counts against the budget
            keep = remaining_length - len(TRUNCATION_SUFFIX)
            result.append(chunk.model_copy(update={"content": chunk.content[:keep] + TRUNCATION_SUFFIX}))
        break

    return result


def budget_chunks(
    chunks: Sequence[RetrievalChunk],
    min_similarity: Optional[float] = None,
    sort_descending: bool = True,
    max_total_length: Optional[int] = None
) -> List[RetrievalChunk]:
    """
    Filter, sort and length-budget retrieved chunks.

    Steps run in this order, each one optional:
    1. drop chunks below min_similarity
    2. stable sort by similarity, highest first
    3. truncate to max_total_length (in the order left by steps 1-2)

    Args:
        chunks: Retrieved chunks, in any order
        min_similarity: Minimum similarity threshold
        sort_descending: Whether to sort by similarity
        max_total_length: Maximum combined content length

    Returns:
        List[RetrievalChunk]: Budgeted chunks, possibly empty
    """
    processed = list(chunks)

    if min_similarity is not None:
        processed = filter_by_similarity(processed, min_similarity)
        logger.debug("Chunks filtered by similarity", remaining=len(processed), min_similarity=min_similarity)

    if sort_descending:
        processed = sort_by_similarity(processed)

    if max_total_length is not None:
        processed = truncate_by_length(processed, max_total_length)
        logger.debug("Chunks budgeted by length", remaining=len(processed), max_length=max_total_length)

    return processed


# Context Formatting

def format_rag_context(chunks: Sequence[RetrievalChunk], rewrite_query: Optional[str] = None) -> str:
    """
    Render chunks as an instructional block for the model.

    Args:
        chunks: Budgeted chunks in presentation order
        rewrite_query: Rewritten query to mention, if any

    Returns:
        str: Formatted context block
    """
    parts = [CONTEXT_PREAMBLE, ""]

    for i, chunk in enumerate(chunks, 1):
        parts.extend([
            f"[Reference {i}] (Similarity: {chunk.similarity * 100:.1f}%)",
            chunk.content.strip(),
            "",
        ])

    if rewrite_query:
        parts.extend([
            REWRITE_QUERY_HEADER,
            f"Original query -> Rewritten query: {rewrite_query}",
            "",
        ])

    parts.append(CONTEXT_CLOSING)

    return "\n".join(parts)


def find_last_user_message(messages: Sequence[ConversationMessage]) -> Optional[ConversationMessage]:
    for message in reversed(messages):
        if message.role == MessageRole.USER:
            return message
    return None


def inject_rag_context(original_content: str, rag_context: str) -> str:
    """Append the context block after a blank line."""
    return "\n".join([original_content, "", rag_context]).strip()


def summarize_chunks(chunks: Sequence[RetrievalChunk]) -> Dict[str, float]:
    """Min/max/avg similarity. Callers must not pass an empty sequence."""
    similarities = [chunk.similarity for chunk in chunks]
    return {
        "min_similarity": min(similarities),
        "max_similarity": max(similarities),
        "avg_similarity": sum(similarities) / len(similarities),
    }


class RAGContextConfigBuilder:
    """Fluent builder for the immutable RAGContextConfig."""

    def __init__(self):
        self._values: Dict[str, Any] = {}

    @classmethod
    def from_settings(cls, config: Optional[Dict[str, Any]] = None) -> "RAGContextConfigBuilder":
        """
        Seed budgeting defaults from environment configuration.

        Args:
            config: Configuration dictionary, defaults to get_config()
        """
        if config is None:
            config = get_config()
        builder = cls()
        builder._values["max_context_length"] = config.get("RAG_MAX_CONTEXT_LENGTH")
        builder._values["min_similarity"] = config.get("RAG_MIN_SIMILARITY")
        builder._values["sort_by_similarity"] = config.get("RAG_SORT_BY_SIMILARITY", True)
        return builder

    def with_chunks(self, chunks: Sequence[RetrievalChunk]) -> "RAGContextConfigBuilder":
        self._values["chunks"] = list(chunks)
        return self

    def with_rewrite_query(self, rewrite_query: Optional[str]) -> "RAGContextConfigBuilder":
        self._values["rewrite_query"] = rewrite_query
        return self

    def with_query_id(self, query_id: Optional[str]) -> "RAGContextConfigBuilder":
        self._values["query_id"] = query_id
        return self

    def with_max_context_length(self, max_length: Optional[int]) -> "RAGContextConfigBuilder":
        self._values["max_context_length"] = max_length
        return self

    def with_min_similarity(self, min_similarity: Optional[float]) -> "RAGContextConfigBuilder":
        self._values["min_similarity"] = min_similarity
        return self

    def with_sort_by_similarity(self, enabled: bool) -> "RAGContextConfigBuilder":
        self._values["sort_by_similarity"] = enabled
        return self

    def build(self) -> RAGContextConfig:
        return RAGContextConfig(**self._values)


class RAGContextInjector(ContextStage):
    """
    Injects retrieved knowledge into the last user message.

    The configuration is an immutable RAGContextConfig. The set_* methods
    replace it with an updated copy and return the stage for chaining.
    """
    name = "RAGContextInjector"

    def __init__(self, config: Optional[RAGContextConfig] = None):
        self.config = config if config is not None else RAGContextConfig()

    def _process(self, context: PipelineContext) -> PipelineContext:
        if not self.config.chunks:
            logger.debug("No retrieval chunks to inject")
            return self.mark_as_executed(context)

        processed_chunks = self._budget(self.config.chunks)

        if not processed_chunks:
            logger.debug("No retrieval chunks left after budgeting", configured=len(self.config.chunks))
            return self.mark_as_executed(context)

        last_user_message = find_last_user_message(context.messages)

        if last_user_message is None:
            logger.warning("No user message found, skipping RAG context injection")
            return self.mark_as_executed(context)

        rag_context = format_rag_context(processed_chunks, self.config.rewrite_query)
        last_user_message.content = inject_rag_context(last_user_message.content, rag_context)

        summary = RAGContextSummary(
            chunks_count=len(processed_chunks),
            total_context_length=len(rag_context),
            query_id=self.config.query_id,
            rewrite_query=self.config.rewrite_query,
            **summarize_chunks(processed_chunks)
        )
        context.metadata[RAG_METADATA_KEY] = summary.model_dump()

        logger.info(
            "RAG context injection complete",
            chunks_count=summary.chunks_count,
            total_context_length=summary.total_context_length,
            message_id=last_user_message.id,
            query_id=self.config.query_id
        )

        return self.mark_as_executed(context)

    def _budget(self, chunks: Sequence[RetrievalChunk]) -> List[RetrievalChunk]:
        return budget_chunks(
            chunks,
            min_similarity=self.config.min_similarity,
            sort_descending=self.config.sort_by_similarity,
            max_total_length=self.config.max_context_length
        )

    def preview(self) -> str:
        """Formatted block that run() would inject, without touching any message."""
        return format_rag_context(self._budget(self.config.chunks), self.config.rewrite_query)

    def get_chunks_stats(self) -> Optional[ChunkStats]:
        """
        Statistics over the configured chunk list, before budgeting.

        Returns:
            Optional[ChunkStats]: None when no chunks are configured
        """
        chunks = self.config.chunks
        if not chunks:
            return None

        lengths = [len(chunk.content) for chunk in chunks]
        return ChunkStats(
            count=len(chunks),
            total_length=sum(lengths),
            avg_length=sum(lengths) / len(lengths),
            **summarize_chunks(chunks)
        )

    def get_config(self) -> RAGContextConfig:
        """Deep copy of the current configuration."""
        return self.config.model_copy(deep=True)

    def _update_config(self, **changes) -> "RAGContextInjector":
        self.config = RAGContextConfig(**{**dict(self.config), **changes})
        return self

    def set_chunks(self, chunks: Sequence[RetrievalChunk]) -> "RAGContextInjector":
        return self._update_config(chunks=list(chunks))

    def set_rewrite_query(self, rewrite_query: Optional[str]) -> "RAGContextInjector":
        return self._update_config(rewrite_query=rewrite_query)

    def set_query_id(self, query_id: Optional[str]) -> "RAGContextInjector":
        return self._update_config(query_id=query_id)

    def set_min_similarity(self, min_similarity: Optional[float]) -> "RAGContextInjector":
        return self._update_config(min_similarity=min_similarity)

    def set_max_context_length(self, max_length: Optional[int]) -> "RAGContextInjector":
        return self._update_config(max_context_length=max_length)

    def set_sort_by_similarity(self, enabled: bool) -> "RAGContextInjector":
        return self._update_config(sort_by_similarity=enabled)
