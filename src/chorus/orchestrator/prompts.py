"""Prompt construction for batch, mapping, and concierge stages.

Prompt builders are injected into the orchestrator. ``DefaultPromptBuilder``
produces plain, serviceable prompts; deployments can swap in their own
builder. ``build_concierge_prompt`` picks the tier for a concierge turn and
degrades to the full first-turn prompt if a builder raises.
"""

import re
from dataclasses import dataclass
from typing import Any, Literal, Protocol

from chorus.artifact import StructuralAnalysis
from chorus.orchestrator.concierge import ConciergePlan
from chorus.orchestrator.handoff import HANDOFF_PROTOCOL, format_handoff_echo
from chorus.persistence import HandoffPayload
from chorus.telemetry import CONCIERGE_PROMPT_DEGRADED, get_logger

log = get_logger(__name__)

Stance = Literal["decide", "explore", "challenge", "default"]
PromptTier = Literal["full", "handoff_protocol", "handoff_echo", "degraded"]

_STRONG_DECIDE = [
    r"\bshould i\b",
    r"\bjust tell me\b",
    r"\bwhat do i do\b",
    r"\bmake (the |a )?decision\b",
    r"\bpick (one|the best)\b",
]
_MEDIUM_DECIDE = [r"\bwhich (one|should)\b", r"\bchoose\b", r"\bbest\b", r"\brecommend\b"]
_CHALLENGE = [
    r"\bwhat('s| is) wrong\b",
    r"\bchallenge\b",
    r"\bdevil'?s advocate\b",
    r"\bpoke holes\b",
    r"\bstress test\b",
    r"\bwhat am i missing\b",
    r"\bblind spot",
    r"\bweak(ness|point)",
    r"\bcritique\b",
    r"\bpush back\b",
]
_EXPLORE = [
    r"\bwhat are (the |my )?options\b",
    r"\bexplore\b",
    r"\bmap out\b",
    r"\bpossibilities\b",
    r"\balternatives\b",
    r"\bwhat else\b",
    r"\btrade-?offs?\b",
    r"\bpros and cons\b",
    r"\bcompare\b",
    r"\bwalk me through\b",
]

_STANCE_GUIDANCE: dict[str, str] = {
    "decide": "The user needs a decision, not exploration. Eliminate until one path remains and say why.",
    "explore": "The user wants to see the space. Lay out the distinct paths and what each one costs.",
    "challenge": "The user wants pressure-testing. Find the weakest assumption and push on it.",
    "default": "Give the clearest useful answer the evidence supports, and say what it hinges on.",
}

_SHAPE_GUIDANCE: dict[str, str] = {
    "settled": "The perspectives largely agree. Lead with the shared answer, then name what could overturn it.",
    "contested": "There is real disagreement. Name the disagreement and what would resolve it.",
    "forked": "Two well-supported paths are incompatible. Frame the choice and the deciding factor.",
    "keystone": "One position holds the rest up. Test it first; everything else follows from it.",
    "sparse": "The evidence is thin. Be honest about gaps and suggest what would help most.",
}


def _matches(patterns: list[str], text: str) -> bool:
    return any(re.search(p, text) for p in patterns)


@dataclass(frozen=True)
class StanceSelection:
    """Chosen concierge stance and why."""

    stance: Stance
    reason: Literal["query_signal", "shape_default", "frozen"]
    confidence: float


def select_stance(user_message: str, analysis: StructuralAnalysis | None) -> StanceSelection:
    """Pick a stance from explicit query signals, else from the problem shape."""
    lower = (user_message or "").lower()
    if _matches(_STRONG_DECIDE, lower):
        return StanceSelection("decide", "query_signal", 0.9)
    if _matches(_MEDIUM_DECIDE, lower):
        return StanceSelection("decide", "query_signal", 0.7)
    if _matches(_CHALLENGE, lower):
        return StanceSelection("challenge", "query_signal", 0.85)
    if _matches(_EXPLORE, lower):
        return StanceSelection("explore", "query_signal", 0.75)

    shape = analysis.shape if analysis else "sparse"
    if shape == "sparse":
        return StanceSelection("explore", "shape_default", 0.7)
    if shape == "keystone":
        return StanceSelection("challenge", "shape_default", 0.6)
    if shape == "settled":
        return StanceSelection("default", "shape_default", 0.75)
    return StanceSelection("default", "shape_default", 0.6)


def fence_user_message(message: str) -> str:
    """Wrap a user message in a code fence, escaping embedded fences."""
    return "```\n" + (message or "").replace("```", "\\`\\`\\`") + "\n```"


@dataclass(frozen=True)
class FrozenPrompt:
    """Prompt exactly as sent, recorded for deterministic recompute."""

    text: str
    type: PromptTier
    seed: str | None = None

    def to_meta(self) -> dict[str, Any]:
        """Metadata form stored on the provider response."""
        return {"text": self.text, "type": self.type, "seed": self.seed}


@dataclass(frozen=True)
class ConciergePromptRequest:
    """Inputs for one concierge prompt.

    ``frozen_stance`` pins the stance recorded by a prior attempt.
    """

    user_message: str
    plan: ConciergePlan
    analysis: StructuralAnalysis | None = None
    frozen_stance: str | None = None


class PromptBuilder(Protocol):
    """Text construction for every stage."""

    def build_refinement_prompt(self, draft: str) -> str:
        """Prompt asking a provider to tighten a draft user message."""
        ...

    def build_batch_prompt(self, user_message: str) -> str:
        """Prompt sent to each batch provider."""
        ...

    def build_mapping_prompt(
        self,
        user_message: str,
        outputs: dict[int, tuple[str, str]],
        *,
        prior_synthesis: str | None = None,
    ) -> str:
        """Prompt asking the mapping provider for a decision artifact.

        ``outputs`` maps 1-based citation index to ``(provider_id, text)``.
        ``prior_synthesis`` is an earlier synthesis of the same answers, given
        to a mapping replay as reference.
        """
        ...

    def build_full_prompt(
        self,
        user_message: str,
        analysis: StructuralAnalysis | None,
        *,
        stance: str,
        prior_handoff: HandoffPayload | None = None,
    ) -> str:
        """First-turn concierge prompt."""
        ...

    def build_turn2_prompt(self, user_message: str) -> str:
        """Second-turn follow-up introducing the handoff protocol."""
        ...

    def build_turn3_prompt(self, user_message: str, handoff: HandoffPayload | None) -> str:
        """Turn 3+ follow-up echoing the current handoff."""
        ...


class DefaultPromptBuilder:
    """Plain-text prompt builder used when no custom builder is configured."""

    def build_refinement_prompt(self, draft: str) -> str:
        return (
            "Rewrite the question below so it is specific and self-contained. "
            "Keep the user's intent and constraints. Reply with the rewritten question only.\n\n"
            f"{fence_user_message(draft)}"
        )

    def build_batch_prompt(self, user_message: str) -> str:
        return user_message

    def build_mapping_prompt(
        self,
        user_message: str,
        outputs: dict[int, tuple[str, str]],
        *,
        prior_synthesis: str | None = None,
    ) -> str:
        sections = [f'The user asked:\n"{user_message}"\n', "Independent answers:"]
        for index, (_, text) in sorted(outputs.items()):
            sections.append(f"[{index}]\n{text.strip()}\n")
        if prior_synthesis and prior_synthesis.strip():
            sections.append(f"An earlier synthesis of these answers, for reference:\n{prior_synthesis.strip()}\n")
        sections.append(
            "Extract the distinct claims these answers make and how they relate. "
            "Respond with prose, then a JSON object inside <map></map> tags with keys "
            '"claims" (id, label, text, supporters as answer numbers, type), '
            '"edges" (from, to, type: supports|conflicts|tradeoff|prerequisite), '
            '"traversalGraph" and "forcingPoints" when the user must choose before '
            f'later claims apply. Use "model_count": {len(outputs)}.'
        )
        return "\n".join(sections)

    def build_full_prompt(
        self,
        user_message: str,
        analysis: StructuralAnalysis | None,
        *,
        stance: str,
        prior_handoff: HandoffPayload | None = None,
    ) -> str:
        parts = [
            "You are drawing on several independent expert perspectives.",
            _STANCE_GUIDANCE.get(stance, _STANCE_GUIDANCE["default"]),
            "",
            "## The Query",
            "",
            f'"{user_message}"',
            "",
        ]
        if prior_handoff is not None and prior_handoff.has_content():
            parts.append(prior_context_section(prior_handoff))
        parts.extend(["## What You Know", "", structural_brief(analysis), ""])
        if analysis is not None:
            parts.extend(["## How To Respond", "", _SHAPE_GUIDANCE[analysis.shape], ""])
        parts.append("Respond.")
        return "\n".join(parts)

    def build_turn2_prompt(self, user_message: str) -> str:
        return f"{HANDOFF_PROTOCOL}\n\nUser Message:\n{fence_user_message(user_message)}"

    def build_turn3_prompt(self, user_message: str, handoff: HandoffPayload | None) -> str:
        echo = f"\n\n{format_handoff_echo(handoff)}" if handoff and handoff.has_content() else ""
        return f"{echo}\n\nUser Message:\n{fence_user_message(user_message)}"


def prior_context_section(handoff: HandoffPayload) -> str:
    """Render a committed handoff as prior context for a fresh instance."""
    parts: list[str] = []
    if handoff.commit:
        parts.append(f"## What's Been Decided\n\n{handoff.commit}\n")
    if handoff.constraints or handoff.eliminated or handoff.preferences or handoff.context:
        parts.append("## Prior Context\n")
        if handoff.constraints:
            parts.append(f"**Constraints:** {'; '.join(handoff.constraints)}")
        if handoff.eliminated:
            parts.append(f"**Ruled out:** {'; '.join(handoff.eliminated)}")
        if handoff.preferences:
            parts.append(f"**Preferences:** {'; '.join(handoff.preferences)}")
        if handoff.context:
            parts.append(f"**Situation:** {'; '.join(handoff.context)}")
        parts.append("")
    return "\n".join(parts) + "\n" if parts else ""


def structural_brief(analysis: StructuralAnalysis | None) -> str:
    """Short description of the decision landscape."""
    if analysis is None:
        return "No structured view of the perspectives is available; answer from first principles."

    land = analysis.landscape
    lines = [f"{land.claim_count} positions drawn from {land.model_count} perspectives."]
    strong = [c for c in analysis.claims if c.is_high_support]
    if strong:
        lines.append("Strong positions: " + "; ".join(c.label for c in strong[:5]))
    for pair in analysis.conflicts[:3]:
        lines.append(f"Disagreement: {pair.a_label} vs {pair.b_label}")
    for pair in analysis.tradeoffs[:3]:
        lines.append(f"Tradeoff: {pair.a_label} vs {pair.b_label}")
    if analysis.keystone_claim_id:
        keystone = next((c for c in analysis.claims if c.id == analysis.keystone_claim_id), None)
        if keystone:
            lines.append(f"Load-bearing position: {keystone.label}")
    return "\n".join(lines)


def _full_prompt(builder: PromptBuilder, request: ConciergePromptRequest, stance: str) -> FrozenPrompt:
    text = builder.build_full_prompt(
        request.user_message,
        request.analysis,
        stance=stance,
        prior_handoff=request.plan.prior_handoff,
    )
    return FrozenPrompt(text=text, type="full", seed=stance)


def build_concierge_prompt(builder: PromptBuilder, request: ConciergePromptRequest) -> FrozenPrompt:
    """Build the prompt for a concierge turn by its number within the instance.

    Turn 1 gets the full prompt, turn 2 the handoff protocol, turn 3+ the
    handoff echo. Any builder failure falls back to the full prompt with no
    structural analysis, and finally to the bare user message.
    """
    stance = request.frozen_stance or select_stance(request.user_message, request.analysis).stance
    turn = request.plan.turn_in_instance
    try:
        if turn <= 1:
            return _full_prompt(builder, request, stance)
        if turn == 2:
            return FrozenPrompt(builder.build_turn2_prompt(request.user_message), "handoff_protocol", stance)
        return FrozenPrompt(
            builder.build_turn3_prompt(request.user_message, request.plan.echo_handoff),
            "handoff_echo",
            stance,
        )
    except Exception as e:
        log.warning(CONCIERGE_PROMPT_DEGRADED, turn_in_instance=turn, error=str(e))

    try:
        text = builder.build_full_prompt(
            request.user_message, None, stance=stance, prior_handoff=request.plan.prior_handoff
        )
        return FrozenPrompt(text=text, type="degraded", seed=stance)
    except Exception as e:
        log.error(CONCIERGE_PROMPT_DEGRADED, turn_in_instance=turn, fallback="user_message", error=str(e))
        return FrozenPrompt(text=request.user_message, type="degraded", seed=stance)
