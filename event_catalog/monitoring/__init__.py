from event_catalog.monitoring.logging import (
    ContextAdapter,
    JsonFormatter,
    LoggingOptions,
    LogSampler,
    TextFormatter,
    setup_logging,
    with_context,
)

__all__ = [
    "ContextAdapter",
    "JsonFormatter",
    "LoggingOptions",
    "LogSampler",
    "TextFormatter",
    "setup_logging",
    "with_context",
]
