"""Telemetry module for structured logging and trace correlation.

This module provides:
- TraceContext for request tracing
- Structured logging via structlog
- Semantic event constants
"""

from chorus.telemetry.events import (
    ARTIFACT_MISSING,
    ARTIFACT_PARSE_FAILED,
    ARTIFACT_PARSED,
    CONCIERGE_DISABLED,
    CONCIERGE_HANDOFF_CAPTURED,
    CONCIERGE_INSTANCE_CONTINUED,
    CONCIERGE_INSTANCE_FRESH,
    CONCIERGE_PROMPT_DEGRADED,
    CONCIERGE_SKIPPED_DUPLICATE,
    CONCIERGE_STATE_UPDATE_FAILED,
    CONCIERGE_STATE_UPDATED,
    CONTEXT_RESOLVED,
    CONTINUATION_DUPLICATE_DROPPED,
    CONTINUATION_RECEIVED,
    CONTINUATION_REJECTED,
    PIPELINE_COMPLETED,
    PIPELINE_FAILED,
    PIPELINE_PAUSED,
    PIPELINE_STARTED,
    PROVIDER_CALL_COMPLETED,
    PROVIDER_CALL_FAILED,
    PROVIDER_CALL_STARTED,
    PROVIDER_CALL_TIMEOUT,
    PROMPT_REFINED,
    PROMPT_REFINEMENT_FAILED,
    REQUEST_RECEIVED,
    STEP_COMPLETED,
    STEP_FAILED,
    STEP_STARTED,
    STREAM_DIVERGENCE,
    STREAM_REGRESSION,
    TURN_FINALIZED,
    TURN_STATUS_CHANGED,
)
from chorus.telemetry.logger import configure_logging, get_logger
from chorus.telemetry.trace import TraceContext

__all__ = [
    # Core exports
    "TraceContext",
    "get_logger",
    "configure_logging",
    # Event constants
    "REQUEST_RECEIVED",
    "PIPELINE_STARTED",
    "PIPELINE_PAUSED",
    "PIPELINE_COMPLETED",
    "PIPELINE_FAILED",
    "STEP_STARTED",
    "STEP_COMPLETED",
    "STEP_FAILED",
    "TURN_STATUS_CHANGED",
    "TURN_FINALIZED",
    "CONTEXT_RESOLVED",
    "PROVIDER_CALL_STARTED",
    "PROVIDER_CALL_COMPLETED",
    "PROVIDER_CALL_FAILED",
    "PROVIDER_CALL_TIMEOUT",
    "PROMPT_REFINED",
    "PROMPT_REFINEMENT_FAILED",
    "ARTIFACT_PARSED",
    "ARTIFACT_PARSE_FAILED",
    "ARTIFACT_MISSING",
    "CONCIERGE_DISABLED",
    "CONCIERGE_SKIPPED_DUPLICATE",
    "CONCIERGE_INSTANCE_FRESH",
    "CONCIERGE_INSTANCE_CONTINUED",
    "CONCIERGE_PROMPT_DEGRADED",
    "CONCIERGE_HANDOFF_CAPTURED",
    "CONCIERGE_STATE_UPDATED",
    "CONCIERGE_STATE_UPDATE_FAILED",
    "CONTINUATION_RECEIVED",
    "CONTINUATION_REJECTED",
    "CONTINUATION_DUPLICATE_DROPPED",
    "STREAM_DIVERGENCE",
    "STREAM_REGRESSION",
]
