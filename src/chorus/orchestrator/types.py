"""Core types for the orchestrator.

This module defines the data structures used throughout the orchestrator:
- Request primitives: InitializeRequest, ExtendRequest, RecomputeRequest,
  TurnRequest, and ContinueRequest
- Resolved contexts: immutable values produced by the context resolver
- Observer events: TypedDicts emitted to the presentation layer
- Outcomes: what run_turn and handle_continue_request return
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, TypedDict

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from chorus.artifact import DecisionArtifact, StructuralAnalysis, TraversalState
from chorus.orchestrator.errors import InvalidRequest
from chorus.persistence import (
    AiTurnRecord,
    PipelineStatus,
    ProviderResponseRecord,
    ResponseStatus,
    ResponseType,
    UserTurnRecord,
)
from chorus.providers.errors import ProviderFailure


class StepType(str, Enum):
    """Pipeline stages a step plan can contain."""

    BATCH = "batch"
    MAPPING = "mapping"
    SINGULARITY = "singularity"

    @property
    def response_type(self) -> ResponseType:
        """Response type persisted for this stage."""
        return ResponseType(self.value)


class ContextSource(str, Enum):
    """Where a provider's continuation context was resolved from."""

    FORCED_RESET = "forced_reset"
    ROLE_SCOPED = "role_scoped"
    FLAT = "flat"
    NEW_JOINER = "new_joiner"


# ---------------------------------------------------------------------------
# Request primitives
# ---------------------------------------------------------------------------


class _Request(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class InitializeRequest(_Request):
    """Start a new session with a set of providers."""

    type: Literal["initialize"] = "initialize"
    providers: list[str] = Field(default_factory=list)


class ExtendRequest(_Request):
    """Continue an existing session with a set of providers."""

    type: Literal["extend"] = "extend"
    session_id: str | None = None
    providers: list[str] = Field(default_factory=list)
    forced_context_reset: list[str] = Field(default_factory=list)


class RecomputeRequest(_Request):
    """Re-run one stage of a past turn."""

    type: Literal["recompute"] = "recompute"
    session_id: str | None = None
    source_turn_id: str | None = None
    step_type: StepType = StepType.BATCH
    target_provider: str | None = None
    user_message: str | None = None
    preferred_mapping_provider: str | None = None


WorkflowRequest = InitializeRequest | ExtendRequest | RecomputeRequest

_request_adapter: TypeAdapter[WorkflowRequest] = TypeAdapter(
    Annotated[WorkflowRequest, Field(discriminator="type")]
)


def parse_request(raw: WorkflowRequest | dict[str, Any] | None) -> WorkflowRequest:
    """Validate a request primitive.

    Raises:
        InvalidRequest: If the type is absent or unrecognized, or the payload
            does not match the request shape.
    """
    if isinstance(raw, InitializeRequest | ExtendRequest | RecomputeRequest):
        return raw
    if not isinstance(raw, dict) or not raw.get("type"):
        raise InvalidRequest("Request type is required")
    if raw["type"] not in ("initialize", "extend", "recompute"):
        raise InvalidRequest(f"Unsupported request type: {raw['type']}")
    try:
        return _request_adapter.validate_python(raw)
    except ValidationError as e:
        raise InvalidRequest(f"Malformed {raw['type']} request: {e.error_count()} errors") from e


class TurnRequest(_Request):
    """A user message to run through the full pipeline.

    ``concierge_provider`` set explicitly to None or "" disables the concierge
    phase for this turn; leaving it unset falls back to the session's last
    provider and then the configured default.
    """

    session_id: str | None = None
    user_message: str
    providers: list[str] | None = None
    mapping_provider: str | None = None
    concierge_provider: str | None = None
    forced_context_reset: list[str] = Field(default_factory=list)
    refiner_provider: str | None = None
    artifact: dict[str, Any] | None = None
    use_thinking: bool = False

    @property
    def concierge_disabled(self) -> bool:
        """Whether the caller explicitly turned the concierge off."""
        return "concierge_provider" in self.model_fields_set and not self.concierge_provider


class ContinueRequest(_Request):
    """Re-enter the concierge phase for an existing AI turn."""

    session_id: str
    ai_turn_id: str
    provider_id: str | None = None
    is_traversal_continuation: bool = False
    traversal_state: TraversalState | None = None
    user_message: str | None = None
    artifact: dict[str, Any] | None = None
    use_thinking: bool = False


# ---------------------------------------------------------------------------
# Resolved contexts
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProviderContext:
    """Continuation state resolved for one provider.

    ``meta`` is the provider's opaque continuation metadata, passed back to it
    verbatim. A new joiner has empty ``meta``.
    """

    provider_id: str
    meta: dict[str, Any] = field(default_factory=dict)
    source: ContextSource = ContextSource.NEW_JOINER

    @property
    def is_new_joiner(self) -> bool:
        """True when the provider starts without continuation state."""
        return self.source in (ContextSource.NEW_JOINER, ContextSource.FORCED_RESET)


@dataclass(frozen=True)
class FrozenOutput:
    """Snapshot of one persisted provider response used for replay."""

    provider_id: str
    text: str
    status: ResponseStatus
    response_index: int = 0
    meta: dict[str, Any] = field(default_factory=dict)
    updated_at: datetime | None = None

    @classmethod
    def from_record(cls, record: ProviderResponseRecord) -> "FrozenOutput":
        """Freeze a response record."""
        return cls(
            provider_id=record.provider_id,
            text=record.text,
            status=record.status,
            response_index=record.response_index,
            meta=dict(record.meta),
            updated_at=record.recency,
        )


@dataclass(frozen=True)
class InitializeContext:
    """Resolved context for a brand-new session."""

    providers: tuple[str, ...]
    type: Literal["initialize"] = "initialize"


@dataclass(frozen=True)
class ExtendContext:
    """Resolved context for continuing a session."""

    session_id: str
    last_turn_id: str
    provider_contexts: dict[str, ProviderContext]
    structural_analysis: StructuralAnalysis | None = None
    type: Literal["extend"] = "extend"


@dataclass(frozen=True)
class BatchRecomputeContext:
    """Resolved context for a single-provider batch retry."""

    session_id: str
    source_turn_id: str
    provider_id: str
    provider_context: ProviderContext
    user_message: str
    type: Literal["recompute"] = "recompute"
    step_type: StepType = StepType.BATCH


@dataclass(frozen=True)
class ReplayRecomputeContext:
    """Resolved context for a mapping or singularity replay."""

    session_id: str
    source_turn_id: str
    step_type: StepType
    user_message: str
    frozen_batch_outputs: dict[str, FrozenOutput]
    latest_mapping: FrozenOutput | None = None
    latest_synthesis: FrozenOutput | None = None
    frozen_prompt_type: str | None = None
    frozen_prompt_seed: Any = None
    target_provider: str | None = None
    type: Literal["recompute"] = "recompute"


ResolvedContext = InitializeContext | ExtendContext | BatchRecomputeContext | ReplayRecomputeContext


# ---------------------------------------------------------------------------
# Observer events
# ---------------------------------------------------------------------------


class StepUpdateEvent(TypedDict, total=False):
    """Per-step completion or failure."""

    type: Literal["step_update"]
    session_id: str
    ai_turn_id: str
    step_id: str
    step_type: str
    provider_id: str
    status: Literal["completed", "failed"]
    result: dict[str, Any] | None
    error: str | None
    failure: dict[str, Any] | None


class ArtifactReadyEvent(TypedDict, total=False):
    """Decision artifact (and any concierge output) for a turn."""

    type: Literal["artifact_ready"]
    session_id: str
    ai_turn_id: str
    artifact: dict[str, Any] | None
    concierge_text: str | None
    pipeline_status: str | None


class TurnFinalizedEvent(TypedDict, total=False):
    """Fully reconstructed turn after a pipeline run or continuation."""

    type: Literal["turn_finalized"]
    session_id: str
    ai_turn_id: str
    turn: dict[str, Any]


class PartialResultEvent(TypedDict):
    """One streaming delta for a (session, step, provider) key."""

    type: Literal["partial_result"]
    session_id: str
    step_id: str
    provider_id: str
    text: str
    is_final: bool
    is_replace: bool


ObserverEvent = StepUpdateEvent | ArtifactReadyEvent | TurnFinalizedEvent | PartialResultEvent


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


@dataclass
class StepOutcome:
    """Result of executing one provider call for one stage."""

    step_type: StepType
    provider_id: str
    ok: bool
    text: str = ""
    meta: dict[str, Any] = field(default_factory=dict)
    failure: ProviderFailure | None = None
    response: ProviderResponseRecord | None = None


@dataclass
class TurnView:
    """A turn rebuilt from persisted responses.

    ``responses`` is bucketed by stage, then by provider; each list is sorted
    by ``response_index``.
    """

    ai_turn: AiTurnRecord
    user_turn: UserTurnRecord | None
    responses: dict[ResponseType, dict[str, list[ProviderResponseRecord]]]

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready form for observers."""
        return {
            "ai_turn": self.ai_turn.model_dump(mode="json"),
            "user_turn": self.user_turn.model_dump(mode="json") if self.user_turn else None,
            "responses": {
                stage.value: {
                    pid: [r.model_dump(mode="json") for r in records]
                    for pid, records in by_provider.items()
                }
                for stage, by_provider in self.responses.items()
            },
        }


@dataclass
class ConciergeOutcome:
    """What the concierge phase did for one turn."""

    status: Literal["completed", "skipped", "disabled", "failed"]
    provider_id: str | None = None
    text: str | None = None
    turn_in_instance: int | None = None
    fresh_instance: bool = False
    failure: ProviderFailure | None = None
    error: str | None = None


@dataclass
class TurnOutcome:
    """Result of a full pipeline run for one user message."""

    session_id: str
    ai_turn_id: str
    pipeline_status: PipelineStatus | None
    artifact: DecisionArtifact | None = None
    analysis: StructuralAnalysis | None = None
    batch: dict[str, StepOutcome] = field(default_factory=dict)
    mapping: StepOutcome | None = None
    concierge: ConciergeOutcome | None = None
    error: str | None = None

    @property
    def is_paused(self) -> bool:
        """True when the turn is waiting on traversal input."""
        return self.pipeline_status == PipelineStatus.AWAITING_TRAVERSAL


@dataclass
class ContinueOutcome:
    """Result of a continuation request."""

    status: Literal["completed", "dropped", "failed"]
    concierge: ConciergeOutcome | None = None
    turn: TurnView | None = None
