"""Persistence layer: record models, store contract, and continuity accessor."""

from chorus.persistence.continuity import ContinuityStore
from chorus.persistence.models import (
    STATUS_RANK,
    AiTurnRecord,
    ConciergeState,
    HandoffPayload,
    PipelineStatus,
    ProviderResponseRecord,
    ResponseStatus,
    ResponseType,
    SessionRecord,
    TurnRecord,
    UserTurnRecord,
    latest_response,
)
from chorus.persistence.store import DurableStore, InMemoryStore

__all__ = [
    "ContinuityStore",
    "DurableStore",
    "InMemoryStore",
    "AiTurnRecord",
    "UserTurnRecord",
    "TurnRecord",
    "SessionRecord",
    "ProviderResponseRecord",
    "ConciergeState",
    "HandoffPayload",
    "PipelineStatus",
    "ResponseStatus",
    "ResponseType",
    "STATUS_RANK",
    "latest_response",
]
