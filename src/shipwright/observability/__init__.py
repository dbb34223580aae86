"""Structured session logging, log redaction and the supervisor event log."""

from shipwright.observability.event_log import (
    SupervisorEventRecorder,
    read_event_stream,
    write_event_stream,
)
from shipwright.observability.logging import (
    JsonLineFormatter,
    LoggingConfig,
    StructuredLoggingHandle,
    configure_structlog,
    correlation_scope,
    flush_logging,
    get_active_logging_handle,
    get_correlation_context,
    setup_logging,
    setup_structured_logging,
    shutdown_logging,
)
from shipwright.observability.redaction import (
    REDACTED,
    LogRedactor,
    default_log_redactor,
    redact_text,
)

__all__ = [
    "REDACTED",
    "JsonLineFormatter",
    "LogRedactor",
    "LoggingConfig",
    "StructuredLoggingHandle",
    "SupervisorEventRecorder",
    "configure_structlog",
    "correlation_scope",
    "default_log_redactor",
    "flush_logging",
    "get_active_logging_handle",
    "get_correlation_context",
    "read_event_stream",
    "redact_text",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
    "write_event_stream",
]
