"""Tests for stance selection and tiered concierge prompts."""

from unittest.mock import MagicMock

from chorus.artifact import DecisionArtifact, compute_base_analysis
from chorus.orchestrator.concierge import ConciergePlan
from chorus.orchestrator.handoff import HANDOFF_OPEN
from chorus.orchestrator.prompts import (
    ConciergePromptRequest,
    DefaultPromptBuilder,
    build_concierge_prompt,
    fence_user_message,
    prior_context_section,
    select_stance,
    structural_brief,
)
from chorus.persistence import HandoffPayload

FORKED = DecisionArtifact.model_validate(
    {
        "claims": [
            {"id": "a", "label": "Monolith", "supporters": [1, 2]},
            {"id": "b", "label": "Microservices", "supporters": [2, 3]},
        ],
        "edges": [{"from": "a", "to": "b", "type": "conflicts"}],
        "model_count": 3,
    }
)


def _plan(turn: int, **kwargs) -> ConciergePlan:
    return ConciergePlan(provider_id="gemini", fresh_instance=turn == 1, turn_in_instance=turn, **kwargs)


class TestStance:
    def test_strong_decide_signal(self) -> None:
        selection = select_stance("Should I use Postgres?", None)
        assert selection.stance == "decide"
        assert selection.reason == "query_signal"
        assert selection.confidence == 0.9

    def test_challenge_signal(self) -> None:
        assert select_stance("Poke holes in this plan", None).stance == "challenge"

    def test_explore_signal(self) -> None:
        assert select_stance("What are the trade-offs here?", None).stance == "explore"

    def test_shape_default(self) -> None:
        analysis = compute_base_analysis(FORKED)
        selection = select_stance("Thoughts on architecture", analysis)
        assert analysis.shape == "forked"
        assert selection.stance == "default"
        assert selection.reason == "shape_default"

    def test_sparse_without_analysis_explores(self) -> None:
        assert select_stance("Thoughts?", None).stance == "explore"


def test_fence_escapes_embedded_fences() -> None:
    fenced = fence_user_message("run ```rm -rf``` now")
    assert fenced.startswith("```\n")
    assert fenced.endswith("\n```")
    assert fenced.count("```") == 2


class TestDefaultPromptBuilder:
    def test_mapping_prompt_numbers_answers(self) -> None:
        prompt = DefaultPromptBuilder().build_mapping_prompt(
            "Which DB?", {2: ("gemini", "Use MySQL"), 1: ("claude", "Use Postgres")}
        )
        assert "Independent answers:" in prompt
        assert prompt.index("[1]\nUse Postgres") < prompt.index("[2]\nUse MySQL")
        assert '"model_count": 2' in prompt
        assert "earlier synthesis" not in prompt

    def test_mapping_prompt_cites_prior_synthesis(self) -> None:
        prompt = DefaultPromptBuilder().build_mapping_prompt(
            "Which DB?", {1: ("claude", "Use Postgres")}, prior_synthesis="  Postgres, then a cache.  "
        )
        assert "An earlier synthesis of these answers, for reference:\nPostgres, then a cache." in prompt
        assert prompt.index("[1]\nUse Postgres") < prompt.index("An earlier synthesis")

    def test_full_prompt_includes_query_and_landscape(self) -> None:
        prompt = DefaultPromptBuilder().build_full_prompt(
            "Which architecture?", compute_base_analysis(FORKED), stance="decide"
        )
        assert "## The Query" in prompt
        assert '"Which architecture?"' in prompt
        assert "Disagreement: Monolith vs Microservices" in prompt
        assert "Eliminate until one path remains" in prompt

    def test_turn2_prompt_carries_protocol(self) -> None:
        prompt = DefaultPromptBuilder().build_turn2_prompt("And the cache?")
        assert "## Handoff Protocol" in prompt
        assert prompt.endswith("User Message:\n```\nAnd the cache?\n```")

    def test_refinement_prompt_fences_draft(self) -> None:
        prompt = DefaultPromptBuilder().build_refinement_prompt("db??")
        assert prompt.startswith("Rewrite the question below")
        assert prompt.endswith("```\ndb??\n```")


def test_prior_context_section() -> None:
    section = prior_context_section(
        HandoffPayload(constraints=["two engineers"], eliminated=["Kubernetes"], commit="Postgres now")
    )
    assert "## What's Been Decided\n\nPostgres now" in section
    assert "**Constraints:** two engineers" in section
    assert "**Ruled out:** Kubernetes" in section
    assert "**Preferences:**" not in section
    assert prior_context_section(HandoffPayload()) == ""


def test_structural_brief_without_analysis() -> None:
    assert "first principles" in structural_brief(None)


class TestConciergePromptTiers:
    """Prompt tier by turn number within the provider-session instance."""

    def test_turn_one_is_full(self) -> None:
        prompt = build_concierge_prompt(
            DefaultPromptBuilder(), ConciergePromptRequest(user_message="Should I pick one?", plan=_plan(1))
        )
        assert prompt.type == "full"
        assert prompt.seed == "decide"
        assert "## The Query" in prompt.text
        assert prompt.to_meta() == {"text": prompt.text, "type": "full", "seed": "decide"}

    def test_turn_one_after_commit_carries_prior_context(self) -> None:
        handoff = HandoffPayload(constraints=["budget"], commit="managed Postgres")
        prompt = build_concierge_prompt(
            DefaultPromptBuilder(),
            ConciergePromptRequest(user_message="Next steps?", plan=_plan(1, fresh_reason="commit", prior_handoff=handoff)),
        )
        assert "## What's Been Decided" in prompt.text
        assert "managed Postgres" in prompt.text

    def test_turn_two_is_handoff_protocol(self) -> None:
        prompt = build_concierge_prompt(
            DefaultPromptBuilder(), ConciergePromptRequest(user_message="More?", plan=_plan(2))
        )
        assert prompt.type == "handoff_protocol"
        assert "## Handoff Protocol" in prompt.text
        assert "## The Query" not in prompt.text

    def test_turn_three_echoes_handoff(self) -> None:
        handoff = HandoffPayload(constraints=["two engineers"])
        prompt = build_concierge_prompt(
            DefaultPromptBuilder(),
            ConciergePromptRequest(user_message="And now?", plan=_plan(3, echo_handoff=handoff)),
        )
        assert prompt.type == "handoff_echo"
        assert HANDOFF_OPEN in prompt.text
        assert "constraints: two engineers" in prompt.text
        assert "User Message:" in prompt.text

    def test_frozen_stance_is_pinned(self) -> None:
        prompt = build_concierge_prompt(
            DefaultPromptBuilder(),
            ConciergePromptRequest(user_message="Should I?", plan=_plan(1), frozen_stance="challenge"),
        )
        assert prompt.seed == "challenge"

    def test_builder_failure_degrades_to_full_prompt(self) -> None:
        builder = MagicMock(wraps=DefaultPromptBuilder())
        builder.build_turn2_prompt.side_effect = RuntimeError("template missing")
        prompt = build_concierge_prompt(
            builder,
            ConciergePromptRequest(user_message="More?", plan=_plan(2), analysis=compute_base_analysis(FORKED)),
        )
        assert prompt.type == "degraded"
        assert "## The Query" in prompt.text
        assert "Disagreement" not in prompt.text

    def test_total_failure_falls_back_to_user_message(self) -> None:
        builder = MagicMock()
        builder.build_full_prompt.side_effect = RuntimeError("boom")
        prompt = build_concierge_prompt(builder, ConciergePromptRequest(user_message="Raw question", plan=_plan(1)))
        assert prompt.type == "degraded"
        assert prompt.text == "Raw question"
