"""Traversal gating and continuation prompts.

A turn pauses in ``awaiting_traversal`` when its artifact has a traversal
graph with forcing points and the request was not itself a traversal
continuation. The continuation supplies the user's gate answers and
forcing-point choices, which become the follow-up user message.
"""

from chorus.artifact import DecisionArtifact, TraversalState


def requires_traversal_pause(
    artifact: DecisionArtifact | None, *, is_traversal_continuation: bool
) -> bool:
    """Whether the pipeline must pause for user traversal input."""
    if artifact is None or is_traversal_continuation:
        return False
    return artifact.requires_traversal()


def build_traversal_continuation_prompt(
    original_query: str,
    state: TraversalState | None,
    artifact: DecisionArtifact | None,
) -> str:
    """Follow-up message built from the user's traversal decisions.

    Args:
        original_query: The user message of the paused turn.
        state: Gate and forcing-point resolutions.
        artifact: Artifact used to look up chosen claims.

    Returns:
        Message text for the concierge.
    """
    parts = [f'Original Question: "{original_query}"\n']
    state = state or TraversalState()

    if state.gate_resolutions:
        parts.append("User Context:")
        for gate_id, resolution in state.gate_resolutions.items():
            if resolution.satisfied and resolution.user_input:
                parts.append(f"- {resolution.user_input}")
            elif not resolution.satisfied:
                parts.append(f"- Does NOT apply: {gate_id}")
        parts.append("")

    if state.forcing_point_resolutions:
        decisions: list[str] = []
        for resolution in state.forcing_point_resolutions.values():
            claim = artifact.claim(resolution.selected_claim_id) if artifact and resolution.selected_claim_id else None
            if claim is not None:
                decisions.append(f'- Chose: "{claim.label or claim.id}"')
                if claim.text:
                    decisions.append(f"  Rationale: {claim.text}")
            elif resolution.answer:
                decisions.append(f"- Answered: {resolution.answer}")
        if decisions:
            parts.append("User Decisions:")
            parts.extend(decisions)
            parts.append("")

    parts.append(
        "Based on my context and choices above, provide a personalized synthesis. "
        "Explain how my selected path addresses my original question, highlight any "
        "trade-offs I should be aware of, and suggest next steps if relevant."
    )
    return "\n".join(parts)
