"""Context resolution for request primitives.

Given ``initialize``, ``extend`` or ``recompute``, produce an immutable
resolved context carrying everything the next stage needs without further
store lookups.
"""

from typing import Any

from chorus.artifact import (
    StructuralAnalysis,
    coerce_artifact,
    compute_base_analysis,
    load_analysis,
)
from chorus.orchestrator.errors import InvalidRequest, MissingData, NotFound
from chorus.orchestrator.types import (
    BatchRecomputeContext,
    ContextSource,
    ExtendContext,
    ExtendRequest,
    FrozenOutput,
    InitializeContext,
    InitializeRequest,
    ProviderContext,
    RecomputeRequest,
    ReplayRecomputeContext,
    ResolvedContext,
    StepType,
    WorkflowRequest,
    parse_request,
)
from chorus.persistence import (
    AiTurnRecord,
    ContinuityStore,
    ProviderResponseRecord,
    ResponseType,
    latest_response,
)
from chorus.telemetry import CONTEXT_RESOLVED, get_logger
from chorus.telemetry.events import ANALYSIS_FALLBACK, CONTEXT_NEW_JOINER

log = get_logger(__name__)

BATCH_ROLE = "batch"


def normalize_provider_contexts(raw: dict[str, Any] | None) -> dict[str, dict[str, Any]]:
    """Flatten stored provider contexts.

    An entry may be stored as the metadata itself or wrapped as
    ``{"meta": {...}}``; both forms come out as the bare metadata dict.
    Empty entries are dropped.
    """
    normalized: dict[str, dict[str, Any]] = {}
    for key, value in (raw or {}).items():
        if isinstance(value, dict) and isinstance(value.get("meta"), dict):
            value = value["meta"]
        if isinstance(value, dict) and value:
            normalized[key] = dict(value)
    return normalized


def role_key(provider_id: str, role: str = BATCH_ROLE) -> str:
    """Key of a role-scoped provider context entry."""
    return f"{provider_id}:{role}"


def pick_provider_context(
    provider_id: str, contexts: dict[str, dict[str, Any]], *, forced_reset: bool = False
) -> ProviderContext:
    """Resolve one provider's continuation context.

    Order: forced reset, role-scoped ``<pid>:batch`` entry, legacy flat entry,
    new joiner.
    """
    if forced_reset:
        return ProviderContext(provider_id=provider_id, source=ContextSource.FORCED_RESET)
    scoped = contexts.get(role_key(provider_id))
    if scoped:
        return ProviderContext(provider_id=provider_id, meta=scoped, source=ContextSource.ROLE_SCOPED)
    flat = contexts.get(provider_id)
    if flat:
        return ProviderContext(provider_id=provider_id, meta=flat, source=ContextSource.FLAT)
    return ProviderContext(provider_id=provider_id, source=ContextSource.NEW_JOINER)


def aggregate_batch_outputs(responses: list[ProviderResponseRecord]) -> dict[str, FrozenOutput]:
    """One frozen batch snapshot per provider.

    Picks the response with the greatest recency; status rank breaks exact
    ties only.
    """
    by_provider: dict[str, list[ProviderResponseRecord]] = {}
    for response in responses:
        if response.response_type == ResponseType.BATCH:
            by_provider.setdefault(response.provider_id, []).append(response)

    frozen: dict[str, FrozenOutput] = {}
    for provider_id, candidates in by_provider.items():
        latest = latest_response(candidates)
        if latest is not None:
            frozen[provider_id] = FrozenOutput.from_record(latest)
    return frozen


def find_latest_output(
    responses: list[ProviderResponseRecord],
    response_type: ResponseType,
    preferred_provider: str | None = None,
) -> FrozenOutput | None:
    """Most recent non-empty response of a type, honoring a preferred provider."""
    candidates = [
        r for r in responses if r.response_type == response_type and r.text and r.text.strip()
    ]
    if not candidates:
        return None
    candidates.sort(key=lambda r: (r.recency, r.status_rank), reverse=True)
    if preferred_provider:
        preferred = next((r for r in candidates if r.provider_id == preferred_provider), None)
        if preferred is not None:
            return FrozenOutput.from_record(preferred)
    return FrozenOutput.from_record(candidates[0])


class ContextResolver:
    """Resolve request primitives into immutable contexts.

    Usage:
        resolver = ContextResolver(continuity)
        ctx = await resolver.resolve({"type": "extend", "session_id": "s-1", "providers": ["claude"]})
    """

    def __init__(self, continuity: ContinuityStore) -> None:
        """Initialize the resolver.

        Args:
            continuity: Accessor for sessions, turns, and responses.
        """
        self.continuity = continuity

    async def resolve(self, request: WorkflowRequest | dict[str, Any] | None) -> ResolvedContext:
        """Resolve a request primitive.

        Raises:
            InvalidRequest: If the request type is absent or unrecognized.
            NotFound: If a referenced session or turn cannot be loaded.
            MissingData: If a non-batch recompute has no batch outputs.
        """
        parsed = parse_request(request)
        if isinstance(parsed, InitializeRequest):
            return InitializeContext(providers=tuple(parsed.providers))
        if isinstance(parsed, ExtendRequest):
            return await self._resolve_extend(parsed)
        if isinstance(parsed, RecomputeRequest):
            return await self._resolve_recompute(parsed)
        raise InvalidRequest(f"Unsupported request: {type(parsed).__name__}")

    async def _resolve_extend(self, request: ExtendRequest) -> ExtendContext:
        if not request.session_id:
            raise InvalidRequest("extend requires session_id")

        session = await self.continuity.get_session(request.session_id)
        if session is None or not session.last_turn_id:
            raise NotFound(f"Cannot extend: no last turn for session {request.session_id}")

        last_turn = await self.continuity.get_ai_turn(session.last_turn_id)
        if last_turn is None:
            raise NotFound(f"Last turn {session.last_turn_id} not found")

        contexts = normalize_provider_contexts(last_turn.provider_contexts)
        forced = set(request.forced_context_reset)
        resolved: dict[str, ProviderContext] = {}
        for provider_id in request.providers:
            ctx = pick_provider_context(provider_id, contexts, forced_reset=provider_id in forced)
            if ctx.is_new_joiner:
                log.debug(
                    CONTEXT_NEW_JOINER,
                    session_id=request.session_id,
                    provider_id=provider_id,
                    source=ctx.source.value,
                )
            resolved[provider_id] = ctx

        analysis = await self._resolve_structural_analysis(
            request.session_id, last_turn, session.last_structural_turn_id
        )

        log.info(
            CONTEXT_RESOLVED,
            request_type="extend",
            session_id=request.session_id,
            last_turn_id=last_turn.id,
            providers=list(resolved),
            has_analysis=analysis is not None,
        )
        return ExtendContext(
            session_id=request.session_id,
            last_turn_id=last_turn.id,
            provider_contexts=resolved,
            structural_analysis=analysis,
        )

    async def _resolve_structural_analysis(
        self, session_id: str, last_turn: AiTurnRecord, structural_turn_id: str | None
    ) -> StructuralAnalysis | None:
        """Walk the fallback chain for the most recent usable analysis.

        Order: last turn's stored analysis, structural turn's stored analysis,
        recompute from the last turn's artifact, recompute from the structural
        turn's artifact, and only when no structural turn is recorded a reverse
        scan of the session's AI turns. Never raises.
        """
        try:
            structural_turn = (
                await self.continuity.get_ai_turn(structural_turn_id) if structural_turn_id else None
            )

            stored = load_analysis(last_turn.structural_analysis)
            if stored is not None:
                return stored
            if structural_turn is not None:
                stored = load_analysis(structural_turn.structural_analysis)
                if stored is not None:
                    log.debug(ANALYSIS_FALLBACK, session_id=session_id, source="structural_turn_stored")
                    return stored

            for source, turn in (("last_turn_artifact", last_turn), ("structural_turn_artifact", structural_turn)):
                computed = self._analysis_from_artifact(turn)
                if computed is not None:
                    log.debug(ANALYSIS_FALLBACK, session_id=session_id, source=source)
                    return computed

            if structural_turn_id:
                return None

            turns = await self.continuity.get_turns_for_session(session_id)
            for turn in reversed(turns):
                if not isinstance(turn, AiTurnRecord):
                    continue
                found = load_analysis(turn.structural_analysis) or self._analysis_from_artifact(turn)
                if found is not None:
                    log.debug(ANALYSIS_FALLBACK, session_id=session_id, source="session_scan", turn_id=turn.id)
                    return found
        except Exception as e:
            log.warning(ANALYSIS_FALLBACK, session_id=session_id, source="error", error=str(e))
        return None

    @staticmethod
    def _analysis_from_artifact(turn: AiTurnRecord | None) -> StructuralAnalysis | None:
        if turn is None:
            return None
        artifact = coerce_artifact(turn.decision_artifact)
        if artifact is None or not artifact.claims:
            return None
        return compute_base_analysis(artifact)

    async def _resolve_recompute(
        self, request: RecomputeRequest
    ) -> BatchRecomputeContext | ReplayRecomputeContext:
        if not request.session_id or not request.source_turn_id:
            raise InvalidRequest("recompute requires session_id and source_turn_id")

        source_turn = await self.continuity.get_ai_turn(request.source_turn_id)
        if source_turn is None:
            raise NotFound(f"Source turn {request.source_turn_id} not found")

        if request.step_type == StepType.BATCH:
            if not request.target_provider:
                raise InvalidRequest("batch recompute requires target_provider")
            contexts = normalize_provider_contexts(source_turn.provider_contexts)
            user_message = request.user_message or await self.continuity.get_user_message(source_turn)
            log.info(
                CONTEXT_RESOLVED,
                request_type="recompute",
                step_type="batch",
                session_id=request.session_id,
                source_turn_id=source_turn.id,
                provider_id=request.target_provider,
            )
            return BatchRecomputeContext(
                session_id=request.session_id,
                source_turn_id=source_turn.id,
                provider_id=request.target_provider,
                provider_context=pick_provider_context(request.target_provider, contexts),
                user_message=user_message,
            )

        responses = await self.continuity.get_responses(source_turn.id)
        frozen = aggregate_batch_outputs(responses)
        if not any(out.text.strip() for out in frozen.values()):
            raise MissingData(f"Source turn {source_turn.id} has no batch outputs")

        latest_mapping = find_latest_output(
            responses, ResponseType.MAPPING, request.preferred_mapping_provider
        )
        latest_synthesis = find_latest_output(responses, ResponseType.SYNTHESIS)

        prompt_type = None
        prompt_seed = None
        prior_singularity = latest_response(
            [r for r in responses if r.response_type == ResponseType.SINGULARITY]
        )
        if prior_singularity is not None:
            frozen_prompt = prior_singularity.meta.get("frozen_prompt") or {}
            prompt_type = frozen_prompt.get("type")
            prompt_seed = frozen_prompt.get("seed")

        log.info(
            CONTEXT_RESOLVED,
            request_type="recompute",
            step_type=request.step_type.value,
            session_id=request.session_id,
            source_turn_id=source_turn.id,
            frozen_providers=list(frozen),
            has_mapping=latest_mapping is not None,
        )
        return ReplayRecomputeContext(
            session_id=request.session_id,
            source_turn_id=source_turn.id,
            step_type=request.step_type,
            user_message=request.user_message or await self.continuity.get_user_message(source_turn),
            frozen_batch_outputs=frozen,
            latest_mapping=latest_mapping,
            latest_synthesis=latest_synthesis,
            frozen_prompt_type=prompt_type,
            frozen_prompt_seed=prompt_seed,
            target_provider=request.target_provider,
        )
