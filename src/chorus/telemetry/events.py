"""Semantic event constants for structured logging.

All log events should use these constants rather than magic strings to ensure
consistency and enable reliable querying and analysis.
"""

# Pipeline events
REQUEST_RECEIVED = "request_received"
PIPELINE_STARTED = "pipeline_started"
PIPELINE_PAUSED = "pipeline_paused"
PIPELINE_COMPLETED = "pipeline_completed"
PIPELINE_FAILED = "pipeline_failed"
STEP_STARTED = "step_started"
STEP_COMPLETED = "step_completed"
STEP_FAILED = "step_failed"
TURN_STATUS_CHANGED = "turn_status_changed"
TURN_FINALIZED = "turn_finalized"

# Context resolution events
CONTEXT_RESOLVED = "context_resolved"
CONTEXT_NEW_JOINER = "context_new_joiner"
ANALYSIS_FALLBACK = "analysis_fallback"

# Provider events
PROVIDER_CALL_STARTED = "provider_call_started"
PROVIDER_CALL_COMPLETED = "provider_call_completed"
PROVIDER_CALL_FAILED = "provider_call_failed"
PROVIDER_CALL_TIMEOUT = "provider_call_timeout"
PROMPT_REFINED = "prompt_refined"
PROMPT_REFINEMENT_FAILED = "prompt_refinement_failed"

# Artifact events
ARTIFACT_PARSED = "artifact_parsed"
ARTIFACT_PARSE_FAILED = "artifact_parse_failed"
ARTIFACT_MISSING = "artifact_missing"

# Concierge continuity events
CONCIERGE_DISABLED = "concierge_disabled"
CONCIERGE_SKIPPED_DUPLICATE = "concierge_skipped_duplicate"
CONCIERGE_INSTANCE_FRESH = "concierge_instance_fresh"
CONCIERGE_INSTANCE_CONTINUED = "concierge_instance_continued"
CONCIERGE_PROMPT_DEGRADED = "concierge_prompt_degraded"
CONCIERGE_HANDOFF_CAPTURED = "concierge_handoff_captured"
CONCIERGE_STATE_UPDATED = "concierge_state_updated"
CONCIERGE_STATE_UPDATE_FAILED = "concierge_state_update_failed"

# Continuation events
CONTINUATION_RECEIVED = "continuation_received"
CONTINUATION_REJECTED = "continuation_rejected"
CONTINUATION_DUPLICATE_DROPPED = "continuation_duplicate_dropped"

# Streaming events
STREAM_DIVERGENCE = "stream_divergence"
STREAM_REGRESSION = "stream_regression"
STREAM_CACHE_CLEARED = "stream_cache_cleared"

# Persistence events
PERSISTENCE_WRITE_FAILED = "persistence_write_failed"
SESSION_CREATED = "session_created"

# Observer events
OBSERVER_NOTIFY_FAILED = "observer_notify_failed"
