"""
Base contract for context transformation stages.

A stage receives a PipelineContext, works on a deep-cloned copy and returns
that copy marked as executed. The context passed in is never mutated.
"""

from abc import ABC, abstractmethod

from .models import PipelineContext
from .utils import ContextEngineError, Timer


class StageError(ContextEngineError):
    """Raised when an exception escapes a stage's processing."""

    def __init__(self, stage_name: str, cause: Exception):
        self.stage_name = stage_name
        self.cause = cause
        super().__init__(f"Stage {stage_name} failed: {cause}")


class ContextStage(ABC):
    """
    Base class for a single context transformation stage.

    Subclasses define:
      - name: stage identifier written to PipelineContext.executed_stages
      - _process(context): mutate the already-cloned context and return it
    """
    name: str = "ContextStage"

    def run(self, context: PipelineContext) -> PipelineContext:
        """
        Run the stage on a clone of the given context.

        Args:
            context: Context from the pipeline host, left untouched

        Returns:
            PipelineContext: Processed clone marked as executed

        Raises:
            StageError: If processing raises, which indicates a defect in the stage
        """
        cloned = self.clone_context(context)
        with Timer(f"stage {self.name}"):
            try:
                return self._process(cloned)
            except Exception as e:
                raise StageError(self.name, e) from e

    @abstractmethod
    def _process(self, context: PipelineContext) -> PipelineContext:
        ...

    def clone_context(self, context: PipelineContext) -> PipelineContext:
        return context.clone()

    def mark_as_executed(self, context: PipelineContext) -> PipelineContext:
        """Record this stage on the context. Marking twice has no further effect."""
        if not context.is_executed(self.name):
            context.executed_stages.append(self.name)
        return context
