"""Workflow orchestrator: context resolution, staged execution, concierge continuity, and streaming."""

from chorus.orchestrator.context_resolver import ContextResolver
from chorus.orchestrator.errors import (
    ChorusError,
    ConcurrencyConflict,
    InvalidRequest,
    MissingData,
    NotFound,
)
from chorus.orchestrator.inflight import InFlightGuard
from chorus.orchestrator.observers import Observer, RecordingObserver
from chorus.orchestrator.orchestrator import PipelineOrchestrator
from chorus.orchestrator.prompts import DefaultPromptBuilder, PromptBuilder
from chorus.orchestrator.streaming import StreamChannel, StreamDeltaEngine
from chorus.orchestrator.types import (
    ContinueRequest,
    ExtendRequest,
    InitializeRequest,
    RecomputeRequest,
    StepType,
    TurnOutcome,
    TurnRequest,
)

__all__ = [
    "PipelineOrchestrator",
    "ContextResolver",
    "StreamDeltaEngine",
    "StreamChannel",
    "InFlightGuard",
    "PromptBuilder",
    "DefaultPromptBuilder",
    "Observer",
    "RecordingObserver",
    "InitializeRequest",
    "ExtendRequest",
    "RecomputeRequest",
    "TurnRequest",
    "ContinueRequest",
    "TurnOutcome",
    "StepType",
    "ChorusError",
    "InvalidRequest",
    "NotFound",
    "MissingData",
    "ConcurrencyConflict",
]
