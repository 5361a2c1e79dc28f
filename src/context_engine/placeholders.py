"""
Placeholder variable injection stage.

Expands {{var}}, {{{var}}} and {% ... %} placeholders in every message of the
context against the stage's variables. A message whose expansion fails keeps
its original content and is counted as an error; the run itself never fails
because of one message.
"""

from typing import Any, Dict, Mapping, Optional, Set
from loguru import logger

from .base import ContextStage
from .models import PipelineContext, PlaceholderPreview
from .templating import (
    TemplateExpansionError,
    expand,
    extract_placeholders,
    has_placeholders,
    validate_variables,
)
from .utils import sanitize_for_logging


class PlaceholderVariableInjector(ContextStage):
    """Replaces placeholders in message content with variable values."""
    name = "PlaceholderVariableInjector"

    def __init__(self, variables: Optional[Mapping[str, Any]] = None):
        self.variables: Dict[str, Any] = {}
        if variables:
            self.set_variables(variables)

    def _process(self, context: PipelineContext) -> PipelineContext:
        if not self.variables:
            logger.debug("No placeholder variables to process")
            return self.mark_as_executed(context)

        processed_count = 0
        error_count = 0

        for message in context.messages:
            original_content = message.content
            if not has_placeholders(original_content):
                continue

            try:
                processed_content = expand(original_content, self.variables)
            except TemplateExpansionError as e:
                error_count += 1
                logger.warning(
                    "Placeholder expansion failed, keeping original content",
                    message_id=message.id,
                    content=sanitize_for_logging(original_content),
                    error=str(e)
                )
                continue

            if processed_content != original_content:
                message.content = processed_content
                processed_count += 1
                logger.debug("Placeholders replaced", message_id=message.id)

        context.metadata["placeholders_processed"] = processed_count
        context.metadata["placeholder_errors"] = error_count
        context.metadata["available_variables"] = list(self.variables.keys())

        logger.info(
            "Placeholder processing complete",
            processed=processed_count,
            errors=error_count
        )

        return self.mark_as_executed(context)

    def preview(self, text: str) -> PlaceholderPreview:
        """
        Expand text without touching any context.

        Falls back to the unchanged text when expansion fails.
        """
        if not has_placeholders(text):
            return PlaceholderPreview(original=text, processed=text, has_changes=False)

        try:
            processed = expand(text, self.variables)
        except TemplateExpansionError as e:
            logger.debug("Placeholder preview failed", error=str(e))
            return PlaceholderPreview(original=text, processed=text, has_changes=False)

        return PlaceholderPreview(original=text, processed=processed, has_changes=processed != text)

    def extract_placeholders(self, text: str) -> Set[str]:
        return extract_placeholders(text)

    def set_variables(self, variables: Mapping[str, Any]) -> "PlaceholderVariableInjector":
        validate_variables(variables)
        self.variables = dict(variables)
        return self

    def add_variable(self, key: str, value: Any) -> "PlaceholderVariableInjector":
        validate_variables({key: value})
        self.variables[key] = value
        return self

    def remove_variable(self, key: str) -> "PlaceholderVariableInjector":
        self.variables.pop(key, None)
        return self

    def get_variables(self) -> Dict[str, Any]:
        return dict(self.variables)

    def clear_variables(self) -> "PlaceholderVariableInjector":
        self.variables = {}
        return self
