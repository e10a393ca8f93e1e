"""Pipeline orchestrator.

Drives one user turn through the stages:

    batch fan-out -> mapping (decision artifact) -> traversal gate -> concierge

and re-enters the concierge phase for continuation and recompute requests.
Turn status moves running -> awaiting_traversal -> complete, or straight
from running to complete when no gating applies.
"""

import asyncio
import uuid
from collections import defaultdict
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from chorus.artifact import (
    DecisionArtifact,
    StructuralAnalysis,
    coerce_artifact,
    compute_base_analysis,
    compute_full_analysis,
    parse_mapping_text,
)
from chorus.config import settings
from chorus.orchestrator.concierge import (
    already_processed,
    next_concierge_state,
    plan_concierge_turn,
    resolve_concierge_provider,
)
from chorus.orchestrator.context_resolver import (
    ContextResolver,
    aggregate_batch_outputs,
    find_latest_output,
    normalize_provider_contexts,
    role_key,
)
from chorus.orchestrator.errors import ConcurrencyConflict, InvalidRequest, MissingData, NotFound
from chorus.orchestrator.executor import StepExecutor, step_id_for
from chorus.orchestrator.handoff import ParsedConciergeOutput, parse_concierge_output
from chorus.orchestrator.inflight import InFlightGuard, inflight_key
from chorus.orchestrator.observers import Observer, ObserverHub
from chorus.orchestrator.prompts import (
    ConciergePromptRequest,
    DefaultPromptBuilder,
    PromptBuilder,
    build_concierge_prompt,
)
from chorus.orchestrator.streaming import StreamDeltaEngine
from chorus.orchestrator.traversal import (
    build_traversal_continuation_prompt,
    requires_traversal_pause,
)
from chorus.orchestrator.types import (
    ArtifactReadyEvent,
    BatchRecomputeContext,
    ConciergeOutcome,
    ContinueOutcome,
    ContinueRequest,
    ExtendContext,
    ExtendRequest,
    InitializeRequest,
    ProviderContext,
    RecomputeRequest,
    ReplayRecomputeContext,
    ResolvedContext,
    StepOutcome,
    StepType,
    StepUpdateEvent,
    TurnFinalizedEvent,
    TurnOutcome,
    TurnRequest,
    TurnView,
)
from chorus.persistence import (
    AiTurnRecord,
    ContinuityStore,
    DurableStore,
    PipelineStatus,
    ResponseType,
    UserTurnRecord,
    latest_response,
)
from chorus.providers import FailureKind, ProviderClient, ProviderFailure
from chorus.security import sanitize_error_message
from chorus.telemetry import (
    ARTIFACT_MISSING,
    CONCIERGE_DISABLED,
    CONCIERGE_HANDOFF_CAPTURED,
    CONCIERGE_INSTANCE_CONTINUED,
    CONCIERGE_INSTANCE_FRESH,
    CONCIERGE_SKIPPED_DUPLICATE,
    CONCIERGE_STATE_UPDATE_FAILED,
    CONCIERGE_STATE_UPDATED,
    CONTINUATION_RECEIVED,
    CONTINUATION_REJECTED,
    PIPELINE_COMPLETED,
    PIPELINE_FAILED,
    PIPELINE_PAUSED,
    PIPELINE_STARTED,
    PROMPT_REFINED,
    PROMPT_REFINEMENT_FAILED,
    STEP_FAILED,
    TURN_FINALIZED,
    TURN_STATUS_CHANGED,
    TraceContext,
    get_logger,
)

log = get_logger(__name__)

SINGULARITY_ROLE = "singularity"


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class PipelineOrchestrator:
    """Top-level driver for turns, continuations, and recomputes.

    The in-flight guard and delta engine are owned by the orchestrator and
    live as long as it does.

    Usage:
        orchestrator = PipelineOrchestrator(providers, InMemoryStore())
        outcome = await orchestrator.run_turn(TurnRequest(user_message="Which database?"))
    """

    def __init__(
        self,
        providers: Mapping[str, ProviderClient],
        store: DurableStore | ContinuityStore,
        *,
        prompt_builder: PromptBuilder | None = None,
        delta_engine: StreamDeltaEngine | None = None,
        inflight: InFlightGuard | None = None,
        observers: list[Observer] | None = None,
        default_batch_providers: list[str] | None = None,
        default_concierge_provider: str | None = None,
        provider_timeout_seconds: float | None = None,
    ) -> None:
        """Wire the orchestrator.

        Args:
            providers: Provider clients keyed by provider id.
            store: Durable store, or an already wrapped ContinuityStore.
            prompt_builder: Text construction; defaults to DefaultPromptBuilder.
            delta_engine: Streaming delta engine; a new one by default.
            inflight: Continuation guard; a new one by default.
            observers: Event observers.
            default_batch_providers: Providers used when a turn names none.
            default_concierge_provider: Fallback concierge provider.
            provider_timeout_seconds: Per-call cap for provider calls.
        """
        self.providers = providers
        self.continuity = store if isinstance(store, ContinuityStore) else ContinuityStore(store)
        self.prompt_builder: PromptBuilder = prompt_builder or DefaultPromptBuilder()
        self.delta_engine = delta_engine or StreamDeltaEngine()
        self.inflight = inflight or InFlightGuard()
        self.observers = ObserverHub(observers)
        self.resolver = ContextResolver(self.continuity)
        self.executor = StepExecutor(
            providers, self.continuity, self.delta_engine, timeout_seconds=provider_timeout_seconds
        )
        self.default_batch_providers = default_batch_providers or list(settings.default_batch_providers)
        self.default_concierge_provider = (
            default_concierge_provider
            if default_concierge_provider is not None
            else settings.default_concierge_provider
        )
        self._concierge_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # ------------------------------------------------------------------
    # Full turn
    # ------------------------------------------------------------------

    async def run_turn(self, request: TurnRequest | dict[str, Any]) -> TurnOutcome:
        """Run a user message through every stage.

        Returns:
            A completed, failed, or paused (awaiting_traversal) outcome.

        Raises:
            InvalidRequest: If the request is malformed.
            NotFound: If the session's last turn cannot be loaded.
        """
        if isinstance(request, dict):
            try:
                request = TurnRequest.model_validate(request)
            except ValidationError as e:
                raise InvalidRequest(f"Malformed turn request: {e.error_count()} errors") from e

        trace = TraceContext.new_trace()
        session = await self.continuity.ensure_session(request.session_id or _new_id("session"))
        providers = list(request.providers or self.default_batch_providers)

        if session.last_turn_id:
            resolved = await self.resolver.resolve(
                ExtendRequest(
                    session_id=session.id,
                    providers=providers,
                    forced_context_reset=request.forced_context_reset,
                )
            )
        else:
            resolved = await self.resolver.resolve(InitializeRequest(providers=providers))
        contexts = self._contexts_from(resolved, providers)

        user_turn = UserTurnRecord(id=_new_id("user"), session_id=session.id, text=request.user_message)
        ai_turn = AiTurnRecord(id=_new_id("ai"), session_id=session.id, user_turn_id=user_turn.id)
        await self.continuity.put_turn(user_turn)
        await self.continuity.put_turn(ai_turn)
        session = await self.continuity.advance_session(session.id, last_turn_id=ai_turn.id)

        log.info(
            PIPELINE_STARTED,
            trace_id=trace.trace_id,
            session_id=session.id,
            ai_turn_id=ai_turn.id,
            providers=providers,
        )
        outcome = TurnOutcome(session_id=session.id, ai_turn_id=ai_turn.id, pipeline_status=None)

        # Batch fan-out
        batch_message = request.user_message
        if request.refiner_provider:
            batch_message = await self.refine_prompt(request.refiner_provider, batch_message, trace=trace)
        batch_prompt = self.prompt_builder.build_batch_prompt(batch_message)
        results = await asyncio.gather(
            *(
                self._run_stage(
                    session.id,
                    ai_turn.id,
                    StepType.BATCH,
                    pid,
                    prompt=batch_prompt,
                    continuation_context=contexts[pid].meta or None,
                    use_thinking=request.use_thinking,
                    trace=trace,
                )
                for pid in providers
            )
        )
        for result in results:
            outcome.batch[result.provider_id] = result
            if result.ok and result.meta:
                ai_turn.provider_contexts[role_key(result.provider_id)] = result.meta
        batch_outputs = {r.provider_id: r.text for r in results if r.ok and r.text.strip()}
        await self.continuity.put_turn(ai_turn)

        # Mapping / artifact
        citation_order = {pid: i + 1 for i, pid in enumerate(batch_outputs)}
        artifact = coerce_artifact(request.artifact)
        if artifact is None and batch_outputs:
            mapping_provider = request.mapping_provider or self._pick_mapping_provider(batch_outputs)
            outcome.mapping = await self._run_stage(
                session.id,
                ai_turn.id,
                StepType.MAPPING,
                mapping_provider,
                prompt=self.prompt_builder.build_mapping_prompt(
                    request.user_message,
                    {i: (pid, batch_outputs[pid]) for pid, i in citation_order.items()},
                ),
                extra_meta={"citation_source_order": citation_order},
                trace=trace,
            )
            if outcome.mapping.ok:
                artifact = parse_mapping_text(outcome.mapping.text)

        if artifact is None:
            log.warning(ARTIFACT_MISSING, trace_id=trace.trace_id, session_id=session.id, ai_turn_id=ai_turn.id)
            if not batch_outputs:
                outcome.error = "No batch outputs were produced for this turn"
                ai_turn = await self._set_status(ai_turn, PipelineStatus.COMPLETE)
                outcome.pipeline_status = ai_turn.pipeline_status
                log.error(PIPELINE_FAILED, trace_id=trace.trace_id, session_id=session.id, ai_turn_id=ai_turn.id)
                await self._emit_artifact_ready(ai_turn, None, None)
                await self._finalize(ai_turn, trace)
                return outcome
        else:
            if not artifact.model_count:
                artifact.model_count = len(batch_outputs) or None
            ai_turn.decision_artifact = artifact.to_record()
            await self.continuity.advance_session(session.id, last_structural_turn_id=ai_turn.id)

        analysis = self._analyze(artifact, batch_outputs, citation_order)
        if analysis is not None:
            ai_turn.structural_analysis = analysis.to_record()
        await self.continuity.put_turn(ai_turn)
        outcome.artifact = artifact
        outcome.analysis = analysis

        # Traversal gate
        if requires_traversal_pause(artifact, is_traversal_continuation=False):
            ai_turn = await self._set_status(ai_turn, PipelineStatus.AWAITING_TRAVERSAL)
            outcome.pipeline_status = ai_turn.pipeline_status
            log.info(
                PIPELINE_PAUSED,
                trace_id=trace.trace_id,
                session_id=session.id,
                ai_turn_id=ai_turn.id,
                forcing_points=len(artifact.forcing_points) if artifact else 0,
            )
            await self._emit_artifact_ready(ai_turn, artifact, None)
            self.delta_engine.clear(session.id)
            return outcome

        # Concierge. Status is written before the concierge response and state.
        ai_turn = await self._set_status(ai_turn, PipelineStatus.COMPLETE)
        outcome.pipeline_status = ai_turn.pipeline_status
        outcome.concierge = await self.run_concierge_phase(
            session.id,
            ai_turn.id,
            request.user_message,
            artifact=artifact,
            analysis=analysis,
            requested_provider=request.concierge_provider,
            explicitly_set="concierge_provider" in request.model_fields_set,
            use_thinking=request.use_thinking,
            trace=trace,
        )
        ai_turn = await self.continuity.get_ai_turn(ai_turn.id) or ai_turn
        await self._emit_artifact_ready(ai_turn, artifact, outcome.concierge.text)
        await self._finalize(ai_turn, trace)
        log.info(
            PIPELINE_COMPLETED,
            trace_id=trace.trace_id,
            session_id=session.id,
            ai_turn_id=ai_turn.id,
            concierge_status=outcome.concierge.status,
        )
        return outcome

    async def refine_prompt(self, provider_id: str, draft: str, *, trace: TraceContext | None = None) -> str:
        """Ask one provider to tighten a draft question before the batch fan-out.

        Refinement is auxiliary: any failure (unknown provider, timeout, error
        result, empty reply) logs and returns the draft unchanged.
        """
        trace = trace or TraceContext.new_trace()
        client = self.providers.get(provider_id)
        if client is None:
            log.warning(PROMPT_REFINEMENT_FAILED, trace_id=trace.trace_id, provider_id=provider_id, reason="unknown")
            return draft
        try:
            result = await asyncio.wait_for(
                client.ask(self.prompt_builder.build_refinement_prompt(draft)),
                timeout=settings.refinement_timeout_seconds,
            )
        except Exception as e:
            log.warning(
                PROMPT_REFINEMENT_FAILED,
                trace_id=trace.trace_id,
                provider_id=provider_id,
                error=sanitize_error_message(e),
            )
            return draft
        refined = (result.get("text") or "").strip() if result.get("ok") else ""
        if not refined:
            log.warning(PROMPT_REFINEMENT_FAILED, trace_id=trace.trace_id, provider_id=provider_id, reason="empty")
            return draft
        log.info(PROMPT_REFINED, trace_id=trace.trace_id, provider_id=provider_id, draft_len=len(draft))
        return refined

    # ------------------------------------------------------------------
    # Concierge phase
    # ------------------------------------------------------------------

    async def run_concierge_phase(
        self,
        session_id: str,
        ai_turn_id: str,
        user_message: str,
        *,
        artifact: DecisionArtifact | None = None,
        analysis: StructuralAnalysis | None = None,
        requested_provider: str | None = None,
        explicitly_set: bool = False,
        use_thinking: bool = False,
        frozen_stance: str | None = None,
        bypass_idempotency: bool = False,
        trace: TraceContext | None = None,
    ) -> ConciergeOutcome:
        """Run the concierge step for a turn with continuity bookkeeping.

        Serialized per session so the idempotency guard holds for concurrent
        triggers. The ConciergeState record is written once, whole, after a
        successful call; a failed write is logged and the already persisted
        response stands.
        """
        trace = trace or TraceContext.new_trace()
        async with self._concierge_locks[session_id]:
            state = await self.continuity.read_concierge_state(session_id)
            provider_id = resolve_concierge_provider(
                state,
                self.default_concierge_provider,
                requested=requested_provider,
                explicitly_set=explicitly_set,
            )
            if provider_id is None:
                log.info(CONCIERGE_DISABLED, trace_id=trace.trace_id, session_id=session_id, ai_turn_id=ai_turn_id)
                return ConciergeOutcome(status="disabled")

            if not bypass_idempotency and already_processed(state, ai_turn_id):
                log.info(
                    CONCIERGE_SKIPPED_DUPLICATE,
                    trace_id=trace.trace_id,
                    session_id=session_id,
                    ai_turn_id=ai_turn_id,
                )
                return ConciergeOutcome(status="skipped", provider_id=provider_id)

            plan = plan_concierge_turn(state, provider_id)
            log.info(
                CONCIERGE_INSTANCE_FRESH if plan.fresh_instance else CONCIERGE_INSTANCE_CONTINUED,
                trace_id=trace.trace_id,
                session_id=session_id,
                ai_turn_id=ai_turn_id,
                provider_id=provider_id,
                turn_in_instance=plan.turn_in_instance,
                reason=plan.fresh_reason,
            )

            prompt = build_concierge_prompt(
                self.prompt_builder,
                ConciergePromptRequest(
                    user_message=user_message,
                    plan=plan,
                    analysis=analysis if analysis is not None else self._analyze(artifact, {}, {}),
                    frozen_stance=frozen_stance,
                ),
            )
            continuation = None
            if not plan.fresh_instance:
                continuation = await self._latest_singularity_context(session_id, provider_id)

            captured: list[ParsedConciergeOutput] = []

            def transform(raw: str) -> tuple[str, dict[str, Any]]:
                parsed = parse_concierge_output(raw)
                captured.append(parsed)
                return parsed.visible_text, {
                    "frozen_prompt": prompt.to_meta(),
                    "handoff": parsed.handoff.model_dump(mode="json") if parsed.handoff else None,
                    "commit_pending": parsed.commit_requested,
                    "turn_in_instance": plan.turn_in_instance,
                    "fresh_instance": plan.fresh_instance,
                }

            step = await self._run_stage(
                session_id,
                ai_turn_id,
                StepType.SINGULARITY,
                provider_id,
                prompt=prompt.text,
                continuation_context=continuation,
                use_thinking=use_thinking,
                extra_meta={"frozen_prompt": prompt.to_meta()},
                transform=transform,
                trace=trace,
            )
            if not step.ok or not captured:
                return ConciergeOutcome(
                    status="failed",
                    provider_id=provider_id,
                    turn_in_instance=plan.turn_in_instance,
                    fresh_instance=plan.fresh_instance,
                    failure=step.failure,
                    error=step.failure.message if step.failure else None,
                )

            output = captured[-1]
            if step.meta:
                ai_turn = await self.continuity.get_ai_turn(ai_turn_id)
                if ai_turn is not None:
                    ai_turn.provider_contexts[role_key(provider_id, SINGULARITY_ROLE)] = step.meta
                    await self.continuity.put_turn(ai_turn)
            if output.handoff is not None:
                log.info(
                    CONCIERGE_HANDOFF_CAPTURED,
                    trace_id=trace.trace_id,
                    session_id=session_id,
                    ai_turn_id=ai_turn_id,
                    commit=output.commit_requested,
                )

            new_state = next_concierge_state(state, plan, ai_turn_id, output)
            try:
                await self.continuity.write_concierge_state(session_id, new_state)
                log.info(
                    CONCIERGE_STATE_UPDATED,
                    trace_id=trace.trace_id,
                    session_id=session_id,
                    provider_id=provider_id,
                    turn_in_instance=new_state.turn_in_instance,
                    commit_pending=new_state.commit_pending,
                )
            except Exception as e:
                log.error(
                    CONCIERGE_STATE_UPDATE_FAILED,
                    trace_id=trace.trace_id,
                    session_id=session_id,
                    ai_turn_id=ai_turn_id,
                    error=str(e),
                )

            return ConciergeOutcome(
                status="completed",
                provider_id=provider_id,
                text=output.visible_text,
                turn_in_instance=plan.turn_in_instance,
                fresh_instance=plan.fresh_instance,
            )

    # ------------------------------------------------------------------
    # Continuation
    # ------------------------------------------------------------------

    async def handle_continue_request(
        self, request: ContinueRequest | dict[str, Any], *, force_rerun: bool = False
    ) -> ContinueOutcome:
        """Re-enter the concierge phase for an existing AI turn.

        Args:
            request: Continuation request.
            force_rerun: Re-run even if the concierge already processed the turn.

        Returns:
            ``completed`` with the rebuilt turn, ``failed`` when the concierge
            call failed, or ``dropped`` for a duplicate in-flight request.

        Raises:
            InvalidRequest: Session mismatch, or a traversal continuation for a
                turn that is not awaiting traversal.
            NotFound: The AI turn does not exist.
            MissingData: No decision artifact can be recovered.
        """
        if isinstance(request, dict):
            try:
                request = ContinueRequest.model_validate(request)
            except ValidationError as e:
                raise InvalidRequest(f"Malformed continue request: {e.error_count()} errors") from e

        trace = TraceContext.new_trace()
        log.info(
            CONTINUATION_RECEIVED,
            trace_id=trace.trace_id,
            session_id=request.session_id,
            ai_turn_id=request.ai_turn_id,
            traversal=request.is_traversal_continuation,
        )

        ai_turn = await self.continuity.get_ai_turn(request.ai_turn_id)
        if ai_turn is None:
            raise NotFound(f"AI turn {request.ai_turn_id} not found")
        if ai_turn.session_id != request.session_id:
            log.warning(CONTINUATION_REJECTED, reason="session_mismatch", ai_turn_id=ai_turn.id)
            raise InvalidRequest(f"Turn {ai_turn.id} does not belong to session {request.session_id}")
        if request.is_traversal_continuation and ai_turn.pipeline_status != PipelineStatus.AWAITING_TRAVERSAL:
            log.warning(CONTINUATION_REJECTED, reason="not_awaiting_traversal", ai_turn_id=ai_turn.id)
            raise InvalidRequest(f"Turn {ai_turn.id} is not awaiting traversal")

        key = inflight_key(request.session_id, ai_turn.id, request.provider_id)
        try:
            with self.inflight.hold(key):
                return await self._continue(ai_turn, request, trace, force_rerun=force_rerun)
        except ConcurrencyConflict:
            return ContinueOutcome(status="dropped")

    async def _continue(
        self,
        ai_turn: AiTurnRecord,
        request: ContinueRequest,
        trace: TraceContext,
        *,
        force_rerun: bool,
    ) -> ContinueOutcome:
        responses = await self.continuity.get_responses(ai_turn.id)
        artifact = coerce_artifact(request.artifact) or coerce_artifact(ai_turn.decision_artifact)
        if artifact is None:
            latest_mapping = find_latest_output(responses, ResponseType.MAPPING)
            artifact = parse_mapping_text(latest_mapping.text) if latest_mapping else None
        if artifact is None:
            await self._emit_step_failure(
                ai_turn.session_id, ai_turn.id, StepType.SINGULARITY, request.provider_id, "No decision artifact"
            )
            raise MissingData(f"No decision artifact recoverable for turn {ai_turn.id}")

        original = await self.continuity.get_user_message(ai_turn)
        if request.is_traversal_continuation:
            message = build_traversal_continuation_prompt(original, request.traversal_state, artifact)
        else:
            message = request.user_message or original

        frozen = aggregate_batch_outputs(responses)
        batch_outputs = {pid: out.text for pid, out in frozen.items() if out.text.strip()}
        mapping_meta = latest_response([r for r in responses if r.response_type == ResponseType.MAPPING])
        analysis = self._analyze(
            artifact,
            batch_outputs,
            mapping_meta.meta.get("citation_source_order") if mapping_meta else None,
        )

        prior = latest_response([r for r in responses if r.response_type == ResponseType.SINGULARITY])
        frozen_stance = (prior.meta.get("frozen_prompt") or {}).get("seed") if prior else None

        concierge = await self.run_concierge_phase(
            ai_turn.session_id,
            ai_turn.id,
            message,
            artifact=artifact,
            analysis=analysis,
            requested_provider=request.provider_id,
            use_thinking=request.use_thinking,
            frozen_stance=frozen_stance,
            bypass_idempotency=force_rerun,
            trace=trace,
        )
        if concierge.status == "failed":
            return ContinueOutcome(status="failed", concierge=concierge)

        ai_turn = await self.continuity.get_ai_turn(ai_turn.id) or ai_turn
        if ai_turn.decision_artifact is None:
            ai_turn.decision_artifact = artifact.to_record()
            await self.continuity.put_turn(ai_turn)
        if ai_turn.pipeline_status == PipelineStatus.AWAITING_TRAVERSAL:
            ai_turn = await self._set_status(ai_turn, PipelineStatus.COMPLETE)

        await self._emit_artifact_ready(ai_turn, artifact, concierge.text)
        view = await self._finalize(ai_turn, trace)
        return ContinueOutcome(status="completed", concierge=concierge, turn=view)

    # ------------------------------------------------------------------
    # Recompute
    # ------------------------------------------------------------------

    async def recompute(self, request: RecomputeRequest | dict[str, Any]) -> StepOutcome | ConciergeOutcome:
        """Re-run one stage of a past turn.

        Raises:
            InvalidRequest: If the request is not a valid recompute.
            NotFound: If the source turn cannot be loaded.
            MissingData: If there are no batch outputs, or no artifact can be
                recovered for a mapping or singularity replay.
        """
        if isinstance(request, dict) and request.get("type") is None:
            request = {**request, "type": "recompute"}
        trace = TraceContext.new_trace()
        ctx = await self.resolver.resolve(request)
        if isinstance(ctx, BatchRecomputeContext):
            return await self._recompute_batch(ctx, trace)
        if not isinstance(ctx, ReplayRecomputeContext):
            raise InvalidRequest("recompute expects a recompute request")

        source = await self.continuity.get_ai_turn(ctx.source_turn_id)
        if source is None:
            raise NotFound(f"Source turn {ctx.source_turn_id} not found")
        batch_outputs = {pid: out.text for pid, out in ctx.frozen_batch_outputs.items() if out.text.strip()}

        if ctx.step_type == StepType.MAPPING:
            return await self._recompute_mapping(ctx, source, batch_outputs, trace)

        artifact = coerce_artifact(source.decision_artifact)
        if artifact is None and ctx.latest_mapping is not None:
            artifact = parse_mapping_text(ctx.latest_mapping.text)
        if artifact is None:
            await self._emit_step_failure(
                ctx.session_id, source.id, StepType.SINGULARITY, ctx.target_provider, "No decision artifact"
            )
            raise MissingData(f"No decision artifact recoverable for turn {source.id}")

        citation = ctx.latest_mapping.meta.get("citation_source_order") if ctx.latest_mapping else None
        concierge = await self.run_concierge_phase(
            ctx.session_id,
            source.id,
            ctx.user_message,
            artifact=artifact,
            analysis=self._analyze(artifact, batch_outputs, citation),
            requested_provider=ctx.target_provider,
            frozen_stance=ctx.frozen_prompt_seed,
            bypass_idempotency=True,
            trace=trace,
        )
        await self._finalize(await self.continuity.get_ai_turn(source.id) or source, trace)
        return concierge

    async def _recompute_batch(self, ctx: BatchRecomputeContext, trace: TraceContext) -> StepOutcome:
        outcome = await self._run_stage(
            ctx.session_id,
            ctx.source_turn_id,
            StepType.BATCH,
            ctx.provider_id,
            prompt=self.prompt_builder.build_batch_prompt(ctx.user_message),
            continuation_context=ctx.provider_context.meta or None,
            trace=trace,
        )
        if outcome.ok and outcome.meta:
            source = await self.continuity.get_ai_turn(ctx.source_turn_id)
            if source is not None:
                source.provider_contexts[role_key(ctx.provider_id)] = outcome.meta
                await self.continuity.put_turn(source)
        return outcome

    async def _recompute_mapping(
        self,
        ctx: ReplayRecomputeContext,
        source: AiTurnRecord,
        batch_outputs: dict[str, str],
        trace: TraceContext,
    ) -> StepOutcome:
        citation_order = {pid: i + 1 for i, pid in enumerate(batch_outputs)}
        provider_id = (
            ctx.target_provider
            or (ctx.latest_mapping.provider_id if ctx.latest_mapping else None)
            or self._pick_mapping_provider(batch_outputs)
        )
        outcome = await self._run_stage(
            ctx.session_id,
            source.id,
            StepType.MAPPING,
            provider_id,
            prompt=self.prompt_builder.build_mapping_prompt(
                ctx.user_message,
                {i: (pid, batch_outputs[pid]) for pid, i in citation_order.items()},
                prior_synthesis=ctx.latest_synthesis.text if ctx.latest_synthesis else None,
            ),
            extra_meta={"citation_source_order": citation_order},
            trace=trace,
        )
        artifact = parse_mapping_text(outcome.text) if outcome.ok else None
        if artifact is None:
            if outcome.ok:
                await self._emit_step_failure(
                    ctx.session_id, source.id, StepType.MAPPING, provider_id, "No decision artifact in mapping output"
                )
            raise MissingData(f"Mapping recompute for turn {source.id} produced no artifact")

        if not artifact.model_count:
            artifact.model_count = len(batch_outputs) or None
        analysis = self._analyze(artifact, batch_outputs, citation_order)
        source = await self.continuity.get_ai_turn(source.id) or source
        source.decision_artifact = artifact.to_record()
        source.structural_analysis = analysis.to_record() if analysis else None
        await self.continuity.put_turn(source)
        await self.continuity.advance_session(ctx.session_id, last_structural_turn_id=source.id)
        await self._emit_artifact_ready(source, artifact, None)
        return outcome

    # ------------------------------------------------------------------
    # Turn view
    # ------------------------------------------------------------------

    async def build_turn_view(self, ai_turn_id: str) -> TurnView:
        """Rebuild a turn from persisted responses.

        Raises:
            NotFound: If the AI turn does not exist.
        """
        ai_turn = await self.continuity.get_ai_turn(ai_turn_id)
        if ai_turn is None:
            raise NotFound(f"AI turn {ai_turn_id} not found")
        user_turn = await self.continuity.get_turn(ai_turn.user_turn_id)

        buckets: dict[ResponseType, dict[str, list]] = {}
        for response in await self.continuity.get_responses(ai_turn_id):
            buckets.setdefault(response.response_type, {}).setdefault(response.provider_id, []).append(response)
        for by_provider in buckets.values():
            for records in by_provider.values():
                records.sort(key=lambda r: r.response_index)
        return TurnView(
            ai_turn=ai_turn,
            user_turn=user_turn if isinstance(user_turn, UserTurnRecord) else None,
            responses=buckets,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _contexts_from(
        self, resolved: ResolvedContext, providers: list[str]
    ) -> dict[str, ProviderContext]:
        if isinstance(resolved, ExtendContext):
            return {pid: resolved.provider_contexts.get(pid, ProviderContext(pid)) for pid in providers}
        return {pid: ProviderContext(pid) for pid in providers}

    def _pick_mapping_provider(self, batch_outputs: dict[str, str]) -> str:
        for pid in batch_outputs:
            if pid in self.providers:
                return pid
        return next(iter(self.providers))

    @staticmethod
    def _analyze(
        artifact: DecisionArtifact | None, batch_outputs: dict[str, str], citation_order: Any
    ) -> StructuralAnalysis | None:
        if artifact is None:
            return None
        if batch_outputs:
            return compute_full_analysis(batch_outputs, artifact, citation_order)
        return compute_base_analysis(artifact)

    async def _latest_singularity_context(self, session_id: str, provider_id: str) -> dict[str, Any] | None:
        key = role_key(provider_id, SINGULARITY_ROLE)
        for turn in reversed(await self.continuity.get_turns_for_session(session_id)):
            if isinstance(turn, AiTurnRecord):
                contexts = normalize_provider_contexts(turn.provider_contexts)
                if key in contexts:
                    return contexts[key]
        return None

    async def _run_stage(
        self,
        session_id: str,
        ai_turn_id: str,
        step_type: StepType,
        provider_id: str,
        **kwargs: Any,
    ) -> StepOutcome:
        """Execute one step and report it; store failures become failed steps."""
        try:
            outcome = await self.executor.execute(
                session_id=session_id,
                ai_turn_id=ai_turn_id,
                step_type=step_type,
                provider_id=provider_id,
                **kwargs,
            )
        except Exception as e:
            log.error(
                STEP_FAILED,
                session_id=session_id,
                ai_turn_id=ai_turn_id,
                step_type=step_type.value,
                provider_id=provider_id,
                error=str(e),
            )
            outcome = StepOutcome(
                step_type=step_type,
                provider_id=provider_id,
                ok=False,
                failure=ProviderFailure(kind=FailureKind.UNKNOWN, message=sanitize_error_message(e)),
            )

        event = StepUpdateEvent(
            type="step_update",
            session_id=session_id,
            ai_turn_id=ai_turn_id,
            step_id=step_id_for(step_type, ai_turn_id),
            step_type=step_type.value,
            provider_id=provider_id,
            status="completed" if outcome.ok else "failed",
            result={"text": outcome.text, "meta": outcome.meta} if outcome.ok else None,
            error=outcome.failure.message if outcome.failure else None,
            failure=outcome.failure.model_dump(mode="json") if outcome.failure else None,
        )
        await self.observers.emit(event)
        return outcome

    async def _emit_step_failure(
        self, session_id: str, ai_turn_id: str, step_type: StepType, provider_id: str | None, error: str
    ) -> None:
        log.warning(
            STEP_FAILED,
            session_id=session_id,
            ai_turn_id=ai_turn_id,
            step_type=step_type.value,
            error=error,
        )
        await self.observers.emit(
            StepUpdateEvent(
                type="step_update",
                session_id=session_id,
                ai_turn_id=ai_turn_id,
                step_id=step_id_for(step_type, ai_turn_id),
                step_type=step_type.value,
                provider_id=provider_id or "",
                status="failed",
                result=None,
                error=error,
            )
        )

    async def _set_status(self, ai_turn: AiTurnRecord, status: PipelineStatus) -> AiTurnRecord:
        previous = ai_turn.pipeline_status
        ai_turn = await self.continuity.set_pipeline_status(ai_turn, status)
        log.info(
            TURN_STATUS_CHANGED,
            session_id=ai_turn.session_id,
            ai_turn_id=ai_turn.id,
            from_status=previous.value if previous else "running",
            to_status=status.value,
        )
        return ai_turn

    async def _emit_artifact_ready(
        self, ai_turn: AiTurnRecord, artifact: DecisionArtifact | None, concierge_text: str | None
    ) -> None:
        await self.observers.emit(
            ArtifactReadyEvent(
                type="artifact_ready",
                session_id=ai_turn.session_id,
                ai_turn_id=ai_turn.id,
                artifact=artifact.to_record() if artifact else None,
                concierge_text=concierge_text,
                pipeline_status=ai_turn.pipeline_status.value if ai_turn.pipeline_status else None,
            )
        )

    async def _finalize(self, ai_turn: AiTurnRecord, trace: TraceContext) -> TurnView:
        view = await self.build_turn_view(ai_turn.id)
        await self.observers.emit(
            TurnFinalizedEvent(
                type="turn_finalized",
                session_id=ai_turn.session_id,
                ai_turn_id=ai_turn.id,
                turn=view.to_dict(),
            )
        )
        self.delta_engine.clear(ai_turn.session_id)
        log.info(TURN_FINALIZED, trace_id=trace.trace_id, session_id=ai_turn.session_id, ai_turn_id=ai_turn.id)
        return view
