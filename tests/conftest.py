"""Shared fixtures: scripted fake providers and store seeding helpers."""

import asyncio
import os
import tempfile
from datetime import UTC, datetime
from typing import Any

import orjson
import pytest

# Keep test runs from writing log files into the project tree.
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("CHORUS_LOG_DIR", tempfile.mkdtemp(prefix="chorus-logs-"))

from chorus.orchestrator import PipelineOrchestrator, RecordingObserver  # noqa: E402
from chorus.persistence import (  # noqa: E402
    AiTurnRecord,
    ContinuityStore,
    InMemoryStore,
    ProviderResponseRecord,
    ResponseStatus,
    ResponseType,
    UserTurnRecord,
)
from chorus.persistence.store import PROVIDER_RESPONSES  # noqa: E402
from chorus.providers import ProviderCapabilities, ProviderResult  # noqa: E402

SIMPLE_MAP: dict[str, Any] = {
    "claims": [
        {"id": "c1", "label": "Use Postgres", "text": "Postgres covers the workload.", "supporters": [1, 2]},
        {"id": "c2", "label": "Add a cache", "text": "A cache absorbs read spikes.", "supporters": [2]},
    ],
    "edges": [{"from": "c1", "to": "c2", "type": "supports"}],
}

GATED_MAP: dict[str, Any] = {
    **SIMPLE_MAP,
    "traversalGraph": {
        "tiers": [{"tierIndex": 0, "claimIds": ["c1"]}, {"tierIndex": 1, "claimIds": ["c2"]}],
        "maxTier": 1,
        "roots": ["c1"],
    },
    "forcingPoints": [
        {
            "id": "fp1",
            "type": "conflict",
            "question": "Which path fits?",
            "options": [{"claimId": "c1", "label": "Postgres"}, {"claimId": "c2", "label": "Cache"}],
        }
    ],
}


def mapping_reply(artifact: dict[str, Any]) -> str:
    """Mapping-stage text with the artifact embedded in a <map> tag."""
    return f"The answers mostly agree.\n<map>{orjson.dumps(artifact).decode()}</map>\nThat's the map."


class FakeProvider:
    """Provider client that routes on the prompt and records every call.

    Mapping prompts get ``mapping_text``, concierge prompts pop from
    ``concierge_replies``, refinement prompts get ``refined_text``, and
    anything else is treated as a batch prompt.
    """

    def __init__(
        self,
        provider_id: str,
        *,
        capabilities: ProviderCapabilities | None = None,
        batch_text: str | None = None,
        mapping_text: str | None = None,
        concierge_replies: list[str] | None = None,
        refined_text: str = "Which managed database fits a two-person team?",
        error: BaseException | None = None,
        fail_kinds: set[str] | None = None,
        partial_before_error: str | None = None,
        delay: float = 0.0,
    ) -> None:
        self.provider_id = provider_id
        self.capabilities = capabilities or ProviderCapabilities()
        self.batch_text = batch_text or (
            f"{provider_id} says: Postgres is the safe default for a small team, "
            "and a cache can come later once read load is measured."
        )
        self.mapping_text = mapping_text if mapping_text is not None else mapping_reply(SIMPLE_MAP)
        self.concierge_replies = list(concierge_replies or [])
        self.refined_text = refined_text
        self.error = error
        self.fail_kinds = fail_kinds
        self.partial_before_error = partial_before_error
        self.delay = delay
        self.calls: list[dict[str, Any]] = []

    @staticmethod
    def kind_of(prompt: str) -> str:
        if prompt.startswith("Rewrite the question below"):
            return "refine"
        if "Independent answers:" in prompt:
            return "mapping"
        if "## The Query" in prompt or "User Message:" in prompt:
            return "concierge"
        return "batch"

    def calls_of(self, kind: str) -> list[dict[str, Any]]:
        return [c for c in self.calls if c["kind"] == kind]

    def _reply(self, kind: str) -> str:
        if kind == "refine":
            return self.refined_text
        if kind == "mapping":
            return self.mapping_text
        if kind == "concierge":
            if self.concierge_replies:
                return self.concierge_replies.pop(0)
            return f"{self.provider_id} concierge answer {len(self.calls_of('concierge'))}"
        return self.batch_text

    async def ask(
        self,
        prompt: str,
        continuation_context: dict[str, Any] | None = None,
        *,
        use_thinking: bool = False,
        on_partial: Any = None,
    ) -> ProviderResult:
        kind = self.kind_of(prompt)
        self.calls.append(
            {
                "kind": kind,
                "prompt": prompt,
                "continuation_context": continuation_context,
                "use_thinking": use_thinking,
                "on_partial": on_partial,
            }
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None and (self.fail_kinds is None or kind in self.fail_kinds):
            if on_partial and self.partial_before_error:
                on_partial(self.partial_before_error)
            raise self.error

        text = self._reply(kind)
        if on_partial:
            on_partial(text[: len(text) // 2])
            on_partial(text)
        return ProviderResult(
            provider_id=self.provider_id,
            ok=True,
            text=text,
            meta={"conversation_id": f"{self.provider_id}-thread", "cursor": len(self.calls)},
        )


@pytest.fixture
def make_provider() -> type[FakeProvider]:
    return FakeProvider


@pytest.fixture
def gated_mapping_text() -> str:
    """Mapping reply whose artifact pauses the turn for traversal."""
    return mapping_reply(GATED_MAP)


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def continuity(store: InMemoryStore) -> ContinuityStore:
    return ContinuityStore(store)


@pytest.fixture
def observer() -> RecordingObserver:
    return RecordingObserver()


@pytest.fixture
def providers() -> dict[str, FakeProvider]:
    return {pid: FakeProvider(pid) for pid in ("claude", "gemini", "chatgpt")}


@pytest.fixture
def make_orchestrator(store: InMemoryStore, observer: RecordingObserver):
    """Factory building an orchestrator over the shared store and observer."""

    def factory(providers: dict[str, FakeProvider], **kwargs: Any) -> PipelineOrchestrator:
        kwargs.setdefault("default_batch_providers", ["claude", "gemini"])
        kwargs.setdefault("default_concierge_provider", "gemini")
        kwargs.setdefault("provider_timeout_seconds", 5.0)
        return PipelineOrchestrator(providers, store, observers=[observer], **kwargs)

    return factory


@pytest.fixture
def orchestrator(make_orchestrator, providers: dict[str, FakeProvider]) -> PipelineOrchestrator:
    return make_orchestrator(providers)


@pytest.fixture
def seed_turn(continuity: ContinuityStore):
    """Async helper writing a user turn and an AI turn, and pointing the session at it."""

    async def seed(
        session_id: str,
        ai_turn_id: str,
        *,
        user_text: str = "Which database should we use?",
        provider_contexts: dict[str, Any] | None = None,
        decision_artifact: dict[str, Any] | None = None,
        structural_analysis: dict[str, Any] | None = None,
        structural: bool = False,
    ) -> AiTurnRecord:
        session = await continuity.ensure_session(session_id)
        user_turn = UserTurnRecord(id=f"u-{ai_turn_id}", session_id=session_id, text=user_text)
        ai_turn = AiTurnRecord(
            id=ai_turn_id,
            session_id=session_id,
            user_turn_id=user_turn.id,
            provider_contexts=provider_contexts or {},
            decision_artifact=decision_artifact,
            structural_analysis=structural_analysis,
        )
        await continuity.put_turn(user_turn)
        await continuity.put_turn(ai_turn)
        session.last_turn_id = ai_turn_id
        if structural:
            session.last_structural_turn_id = ai_turn_id
        await continuity.put_session(session)
        return ai_turn

    return seed


@pytest.fixture
def seed_response(store: InMemoryStore):
    """Async helper writing a provider response with explicit timestamps."""

    async def seed(
        session_id: str,
        ai_turn_id: str,
        provider_id: str,
        response_type: ResponseType,
        *,
        text: str = "",
        status: ResponseStatus = ResponseStatus.COMPLETED,
        response_index: int = 0,
        updated_at: datetime | None = None,
        meta: dict[str, Any] | None = None,
    ) -> ProviderResponseRecord:
        stamp = updated_at or datetime(2026, 1, 1, tzinfo=UTC)
        record = ProviderResponseRecord(
            id=f"pr-{session_id}-{ai_turn_id}-{provider_id}-{response_type.value}-{response_index}",
            session_id=session_id,
            ai_turn_id=ai_turn_id,
            provider_id=provider_id,
            response_type=response_type,
            response_index=response_index,
            text=text,
            status=status,
            meta=meta or {},
            created_at=stamp,
            updated_at=stamp,
        )
        await store.put(PROVIDER_RESPONSES, record.model_dump(mode="json"))
        return record

    return seed
