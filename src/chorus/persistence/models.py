"""Record models for sessions, turns, provider responses, and concierge state."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    """Current UTC timestamp."""
    return datetime.now(UTC)


class ResponseType(str, Enum):
    """Stage a provider response belongs to."""

    BATCH = "batch"
    MAPPING = "mapping"
    SINGULARITY = "singularity"
    SYNTHESIS = "synthesis"
    HIDDEN = "hidden"


class ResponseStatus(str, Enum):
    """Lifecycle status of one provider response attempt."""

    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


class PipelineStatus(str, Enum):
    """Explicit pipeline statuses of an AI turn (absent means running)."""

    AWAITING_TRAVERSAL = "awaiting_traversal"
    COMPLETE = "complete"


# Tie-break rank used when two responses share the same recency.
STATUS_RANK: dict[ResponseStatus, int] = {
    ResponseStatus.COMPLETED: 2,
    ResponseStatus.STREAMING: 1,
    ResponseStatus.PENDING: 0,
}


class HandoffPayload(BaseModel):
    """Structured context a concierge instance volunteers for its successor."""

    constraints: list[str] = Field(default_factory=list)
    eliminated: list[str] = Field(default_factory=list)
    preferences: list[str] = Field(default_factory=list)
    context: list[str] = Field(default_factory=list)
    commit: str | None = None

    def has_content(self) -> bool:
        """Whether any section carries information."""
        return bool(
            self.constraints or self.eliminated or self.preferences or self.context or self.commit
        )


class ConciergeState(BaseModel):
    """Per-session continuity record for the concierge phase.

    Written as a whole record, once per successful concierge execution.
    """

    last_provider: str | None = None
    has_run: bool = False
    last_processed_turn_id: str | None = None
    turn_in_instance: int = 0
    pending_handoff: HandoffPayload | None = None
    commit_pending: bool = False


class SessionRecord(BaseModel):
    """One continuing conversation."""

    id: str
    last_turn_id: str | None = None
    last_structural_turn_id: str | None = None
    concierge_state: ConciergeState = Field(default_factory=ConciergeState)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class UserTurnRecord(BaseModel):
    """A user message within a session."""

    id: str
    type: Literal["user"] = "user"
    session_id: str
    text: str
    created_at: datetime = Field(default_factory=utc_now)


class AiTurnRecord(BaseModel):
    """AI-side processing for one user turn.

    ``provider_contexts`` is keyed by ``providerId`` (legacy flat entries) or
    ``providerId:role`` (role-scoped entries, e.g. ``claude:batch``). Values
    are provider continuation metadata, possibly nested under ``meta``.
    """

    id: str
    type: Literal["ai"] = "ai"
    session_id: str
    user_turn_id: str
    provider_contexts: dict[str, Any] = Field(default_factory=dict)
    decision_artifact: dict[str, Any] | None = None
    pipeline_status: PipelineStatus | None = None
    structural_analysis: dict[str, Any] | None = None
    meta: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


TurnRecord = UserTurnRecord | AiTurnRecord


class ProviderResponseRecord(BaseModel):
    """One attempt by one provider for one (turn, response type) pair."""

    id: str
    session_id: str
    ai_turn_id: str
    provider_id: str
    response_type: ResponseType
    response_index: int = 0
    text: str = ""
    status: ResponseStatus = ResponseStatus.PENDING
    meta: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime | None = None

    @property
    def recency(self) -> datetime:
        """``updated_at`` falling back to ``created_at``."""
        return self.updated_at or self.created_at

    @property
    def status_rank(self) -> int:
        """Rank used to break exact recency ties."""
        return STATUS_RANK.get(self.status, -1)


def latest_response(
    responses: list[ProviderResponseRecord],
) -> ProviderResponseRecord | None:
    """Pick the latest response: greatest recency, status rank breaks exact ties.

    Args:
        responses: Candidate responses, typically for one (turn, provider, type).

    Returns:
        The latest response, or None for an empty list.
    """
    best: ProviderResponseRecord | None = None
    for response in responses:
        if best is None:
            best = response
            continue
        if response.recency > best.recency:
            best = response
        elif response.recency == best.recency and response.status_rank > best.status_rank:
            best = response
    return best
