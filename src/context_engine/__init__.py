"""
Context Engine
Context transformation stages that prepare a conversation for a language model
"""

__version__ = "2.0.0"

from .base import ContextStage, StageError

from .rag import (
    RAGContextInjector,
    RAGContextConfigBuilder,
    budget_chunks,
    format_rag_context,
    find_last_user_message,
    inject_rag_context,
    MIN_TRUNCATED_FRAGMENT_LENGTH
)

from .placeholders import PlaceholderVariableInjector

from .templating import (
    expand,
    extract_placeholders,
    has_placeholders,
    stringify_value,
    validate_variables,
    TemplateExpansionError,
    TemplateVariableError
)

from .models import (
    MessageRole, ConversationMessage, PipelineContext, RetrievalChunk,
    RAGContextConfig, RAGContextSummary, ChunkStats, PlaceholderPreview
)
from .utils import ContextEngineError, ConfigurationError, setup_logging, get_config

__all__ = [
    # Stage contract
    "ContextStage",
    "StageError",

    # RAG injection
    "RAGContextInjector",
    "RAGContextConfigBuilder",
    "budget_chunks",
    "format_rag_context",
    "find_last_user_message",
    "inject_rag_context",
    "MIN_TRUNCATED_FRAGMENT_LENGTH",

    # Placeholder injection
    "PlaceholderVariableInjector",
    "expand",
    "extract_placeholders",
    "has_placeholders",
    "stringify_value",
    "validate_variables",
    "TemplateExpansionError",
    "TemplateVariableError",

    # Models and Utils
    "MessageRole",
    "ConversationMessage",
    "PipelineContext",
    "RetrievalChunk",
    "RAGContextConfig",
    "RAGContextSummary",
    "ChunkStats",
    "PlaceholderPreview",
    "ContextEngineError",
    "ConfigurationError",
    "setup_logging",
    "get_config"
]
