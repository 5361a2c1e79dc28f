"""
Pydantic data models for the context engine.

This module defines the data structures that flow through the context
transformation stages: conversation messages, the pipeline context that
carries them, retrieved knowledge chunks and the configuration/summary
models used by the RAG and placeholder stages.
"""

from typing import Any, Dict, List, Optional, Union
from pydantic import BaseModel, Field, field_validator
from enum import Enum
import uuid


class MessageRole(str, Enum):
    """Message roles in conversation."""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


class ConversationMessage(BaseModel):
    """Individual message in a conversation."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Unique message identifier")
    role: Union[MessageRole, str] = Field(..., union_mode="left_to_right", description="Role of the message sender, open to roles beyond MessageRole")
    content: str = Field("", description="Message text content")

    @field_validator("role", mode="before")
    @classmethod
    def normalize_role(cls, v):
        if isinstance(v, str) and not isinstance(v, MessageRole):
            try:
                return MessageRole(v)
            except ValueError:
                return v
        return v

    class Config:
        extra = "allow"
        json_schema_extra = {
            "example": {
                "id": "msg_550e8400-e29b-41d4-a716-446655440000",
                "role": "user",
                "content": "How do I set up a Databricks connector?"
            }
        }


class PipelineContext(BaseModel):
    """Ordered conversation messages plus open metadata, passed between stages."""
    messages: List[ConversationMessage] = Field(default_factory=list, description="Ordered conversation messages")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Open key/value metadata written by stages")
    executed_stages: List[str] = Field(default_factory=list, description="Names of stages that have run on this context")

    def clone(self) -> "PipelineContext":
        """Deep copy so a stage can mutate freely without touching the caller's context."""
        return self.model_copy(deep=True)

    def is_executed(self, stage_name: str) -> bool:
        return stage_name in self.executed_stages


# Retrieval models
class RetrievalChunk(BaseModel):
    """A knowledge chunk produced by the retrieval subsystem."""
    content: str = Field(..., description="The text content of the chunk")
    # Range is not enforced, callers may pass out-of-range scores
    similarity: float = Field(..., description="Similarity score, nominally in [0,1]")

    class Config:
        extra = "allow"
        frozen = True
        json_schema_extra = {
            "example": {
                "content": "Quick-start guide Step-by-step onboarding...",
                "similarity": 0.85,
                "source_url": "https://docs.atlan.com/"
            }
        }


class RAGContextConfig(BaseModel):
    """Immutable per-run configuration for RAG context injection."""
    chunks: List[RetrievalChunk] = Field(default_factory=list, description="Retrieved chunks to inject")
    rewrite_query: Optional[str] = Field(None, description="Rewritten form of the user query")
    query_id: Optional[str] = Field(None, description="Identifier of the retrieval query")
    max_context_length: Optional[int] = Field(None, ge=0, description="Maximum total chunk content length")
    min_similarity: Optional[float] = Field(None, description="Minimum similarity a chunk needs to be kept")
    sort_by_similarity: bool = Field(True, description="Sort chunks by similarity, highest first")

    class Config:
        frozen = True
        json_schema_extra = {
            "example": {
                "chunks": [{"content": "Databricks connectors need a PAT...", "similarity": 0.82}],
                "rewrite_query": "databricks connector setup personal access token",
                "query_id": "q_123",
                "max_context_length": 4000,
                "min_similarity": 0.5,
                "sort_by_similarity": True
            }
        }


class RAGContextSummary(BaseModel):
    """Summary recorded in context metadata after RAG injection."""
    chunks_count: int = Field(..., ge=0, description="Number of chunks injected")
    total_context_length: int = Field(..., ge=0, description="Length of the formatted context block")
    query_id: Optional[str] = Field(None, description="Identifier of the retrieval query")
    rewrite_query: Optional[str] = Field(None, description="Rewritten query, if any")
    min_similarity: float = Field(..., description="Lowest similarity among injected chunks")
    max_similarity: float = Field(..., description="Highest similarity among injected chunks")
    avg_similarity: float = Field(..., description="Mean similarity of injected chunks")


class ChunkStats(BaseModel):
    """Aggregate statistics over the configured (unbudgeted) chunk list."""
    count: int = Field(..., ge=0)
    total_length: int = Field(..., ge=0)
    avg_length: float = Field(..., ge=0.0)
    min_similarity: float
    max_similarity: float
    avg_similarity: float


class PlaceholderPreview(BaseModel):
    """Result of previewing placeholder expansion on a piece of text."""
    original: str
    processed: str
    has_changes: bool
