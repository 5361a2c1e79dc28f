"""
Utility functions for the context engine.

This module provides:
- Environment variable loading with typed defaults
- Logging configuration with structured JSON output
- Timing utilities for stage execution
- Text sanitization for safe logging of message content
"""

import os
import re
import sys
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from dotenv import load_dotenv
from loguru import logger


class ContextEngineError(Exception):
    """Base class for all context engine errors."""
    pass


class ConfigurationError(ContextEngineError):
    """Raised when configuration is invalid."""
    pass


_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def setup_logging(level: Optional[str] = None, serialize: Optional[bool] = None) -> None:
    """
    Configure structured logging with Loguru.

    Args:
        level: Minimum log level, defaults to LOG_LEVEL from configuration
        serialize: Emit JSON records, defaults to LOG_JSON from configuration
    """
    config = get_config()
    if level is None:
        level = config["LOG_LEVEL"]
    if serialize is None:
        serialize = config["LOG_JSON"]

    # Remove default handler
    logger.remove()

    logger.add(
        sys.stderr,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {name}:{function}:{line} | {message}",
        level=level,
        serialize=serialize
    )

    logger.info("Logging configuration complete", level=level, serialize=serialize)


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    lowered = str(value).strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"not a boolean: {value!r}")


def load_and_validate_env() -> Dict[str, Any]:
    """
    Load and validate context engine environment variables.

    Every variable is optional. Values that cannot be converted fall back to
    their default with a warning.

    Returns:
        Dict[str, Any]: Configuration dictionary with validated values

    Raises:
        ConfigurationError: If a value converts but is out of range
    """
    load_dotenv()

    # name -> (default, converter)
    optional_vars = {
        "LOG_LEVEL": ("INFO", lambda v: str(v).upper()),
        "LOG_JSON": (True, _parse_bool),
        "RAG_MAX_CONTEXT_LENGTH": (None, int),
        "RAG_MIN_SIMILARITY": (None, float),
        "RAG_SORT_BY_SIMILARITY": (True, _parse_bool),
    }

    config = {}

    for var, (default, convert) in optional_vars.items():
        value = os.getenv(var)
        if value is None or value == "":
            config[var] = default
            continue
        try:
            config[var] = convert(value)
        except ValueError:
            logger.warning(f"Invalid value for {var}: {value!r}, using default: {default!r}")
            config[var] = default

    max_length = config["RAG_MAX_CONTEXT_LENGTH"]
    if max_length is not None and max_length < 0:
        raise ConfigurationError(f"RAG_MAX_CONTEXT_LENGTH must be non-negative, got {max_length}")

    logger.debug("Environment configuration loaded")
    return config


def sanitize_for_logging(text: str, max_length: int = 200) -> str:
    """
    Sanitize message text for safe logging by masking secrets and truncating.

    Args:
        text: Input text to sanitize
        max_length: Maximum length of sanitized text

    Returns:
        str: Sanitized text safe for logging
    """
    if not text:
        return ""

    sensitive_patterns = [
        r'sk-[a-zA-Z0-9]+',  # API keys starting with sk-
        r'Bearer\s+[a-zA-Z0-9]+',  # Bearer tokens
        r'\b[A-Za-z0-9]{20,}\b'  # Long alphanumeric strings (potential tokens)
    ]

    sanitized = text
    for pattern in sensitive_patterns:
        sanitized = re.sub(pattern, '[REDACTED]', sanitized, flags=re.IGNORECASE)

    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length] + "..."

    return sanitized


class Timer:
    """Context manager for timing operations."""

    def __init__(self, operation_name: str = "operation"):
        self.operation_name = operation_name
        self.start_time = None
        self.end_time = None

    def __enter__(self):
        self.start_time = datetime.now(timezone.utc)
        logger.debug(f"Starting {self.operation_name}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.end_time = datetime.now(timezone.utc)
        duration_ms = (self.end_time - self.start_time).total_seconds() * 1000

        if exc_type is None:
            logger.debug(f"Completed {self.operation_name}", duration_ms=duration_ms)
        else:
            logger.error(f"Failed {self.operation_name}", duration_ms=duration_ms, error=str(exc_val))

    @property
    def duration_ms(self) -> float:
        """Get duration in milliseconds."""
        if self.start_time and self.end_time:
            return (self.end_time - self.start_time).total_seconds() * 1000
        return 0.0


# Global configuration instance
_config: Optional[Dict[str, Any]] = None


def get_config() -> Dict[str, Any]:
    """
    Get the global configuration, loading it if not already loaded.

    Returns:
        Dict[str, Any]: Configuration dictionary
    """
    global _config
    if _config is None:
        _config = load_and_validate_env()
    return _config


def reset_config() -> None:
    """Drop the cached configuration so the next get_config() reloads it."""
    global _config
    _config = None
