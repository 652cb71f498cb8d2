"""Context-tagged logging shared by the pipeline components."""

import logging
from typing import Any, Dict, Optional

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(level: str = "INFO") -> None:
    """Install the standard handler/format on the root logger once."""
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper()))


def format_context(message: str, extra_context: Optional[Dict[str, Any]] = None) -> str:
    if not extra_context:
        return message
    context_parts = [f"{k}={v}" for k, v in extra_context.items()]
    return f"{message} | Context: {', '.join(context_parts)}"


def log_with_context(
    logger: logging.Logger,
    message: str,
    level: str = "INFO",
    extra_context: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Log message with optional additional context.

    Args:
        logger: Target logger
        message: Log message
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        extra_context: Additional context to include in log
    """
    log_method = getattr(logger, level.lower())
    log_method(format_context(message, extra_context))
