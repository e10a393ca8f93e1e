"""Concierge continuity state machine.

Pure decisions over a session's ConciergeState: which provider runs the phase,
whether a turn was already processed, whether a fresh provider-session
instance is needed, and what the state becomes after a successful run. The
orchestrator is the only writer of the resulting record.
"""

from dataclasses import dataclass

from chorus.orchestrator.handoff import ParsedConciergeOutput
from chorus.persistence import ConciergeState, HandoffPayload


@dataclass(frozen=True)
class ConciergePlan:
    """How the next concierge turn should run.

    Attributes:
        provider_id: Provider running the phase.
        fresh_instance: Start a new provider session (no continuation context).
        turn_in_instance: 1-based turn number within the provider-session instance.
        fresh_reason: Why a fresh instance was chosen (None when continuing).
        prior_handoff: Handoff carried into a fresh instance's full prompt.
        echo_handoff: Handoff echoed back on turn 3+.
    """

    provider_id: str
    fresh_instance: bool
    turn_in_instance: int
    fresh_reason: str | None = None
    prior_handoff: HandoffPayload | None = None
    echo_handoff: HandoffPayload | None = None


def resolve_concierge_provider(
    state: ConciergeState,
    default_provider: str | None,
    *,
    requested: str | None = None,
    explicitly_set: bool = False,
) -> str | None:
    """Pick the concierge provider: request, then last used, then default.

    An explicitly set but falsy request disables the phase (returns None).
    """
    if explicitly_set:
        return requested or None
    return requested or state.last_provider or default_provider or None


def already_processed(state: ConciergeState, ai_turn_id: str) -> bool:
    """Idempotency guard: the turn was already handled by the concierge."""
    return state.last_processed_turn_id == ai_turn_id


def plan_concierge_turn(state: ConciergeState, provider_id: str) -> ConciergePlan:
    """Decide fresh-vs-continue and the per-instance turn number."""
    reason: str | None = None
    if not state.has_run:
        reason = "first_run"
    elif state.last_provider != provider_id:
        reason = "provider_changed"
    elif state.commit_pending:
        reason = "commit"

    if reason is not None:
        prior = state.pending_handoff if reason == "commit" else None
        return ConciergePlan(
            provider_id=provider_id,
            fresh_instance=True,
            turn_in_instance=1,
            fresh_reason=reason,
            prior_handoff=prior,
        )

    turn = max(state.turn_in_instance, 0) + 1
    return ConciergePlan(
        provider_id=provider_id,
        fresh_instance=False,
        turn_in_instance=turn,
        echo_handoff=state.pending_handoff if turn >= 3 else None,
    )


def next_concierge_state(
    state: ConciergeState,
    plan: ConciergePlan,
    ai_turn_id: str,
    output: ParsedConciergeOutput,
) -> ConciergeState:
    """State after a successful concierge execution.

    A new handoff block replaces the pending one. Without one, a handoff that
    was just consumed by a commit-triggered fresh instance is dropped and any
    other pending handoff is carried forward.
    """
    if output.handoff is not None:
        handoff = output.handoff
    elif plan.fresh_reason == "commit":
        handoff = None
    else:
        handoff = state.pending_handoff

    return ConciergeState(
        last_provider=plan.provider_id,
        has_run=True,
        last_processed_turn_id=ai_turn_id,
        turn_in_instance=plan.turn_in_instance,
        pending_handoff=handoff.model_copy(deep=True) if handoff else None,
        commit_pending=output.commit_requested,
    )
