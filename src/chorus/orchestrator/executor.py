"""Provider step execution.

One call = one provider, one stage. The executor honors the provider's
reported capabilities, bounds the call with a timeout, streams snapshots
through the delta engine, persists the response record, and turns every
failure into a classified ProviderFailure instead of raising.
"""

import asyncio
from collections.abc import Callable, Mapping
from typing import Any

from chorus.config import settings
from chorus.orchestrator.streaming import StreamDeltaEngine
from chorus.orchestrator.types import StepOutcome, StepType
from chorus.persistence import ContinuityStore, ResponseStatus
from chorus.providers import FailureKind, ProviderClient, ProviderFailure, classify_error
from chorus.security import sanitize_error_message
from chorus.telemetry import (
    PROVIDER_CALL_COMPLETED,
    PROVIDER_CALL_FAILED,
    PROVIDER_CALL_STARTED,
    PROVIDER_CALL_TIMEOUT,
    TraceContext,
    get_logger,
)

log = get_logger(__name__)

# Maps raw provider text to (visible text, extra response metadata).
TextTransform = Callable[[str], tuple[str, dict[str, Any]]]


def step_id_for(step_type: StepType, ai_turn_id: str) -> str:
    """Stream step id for a stage of a turn."""
    return f"{step_type.value}-{ai_turn_id}"


def _failure_from_result(error: Any) -> ProviderFailure:
    if isinstance(error, dict):
        try:
            return ProviderFailure.model_validate(error)
        except ValueError:
            return ProviderFailure(kind=FailureKind.UNKNOWN, message=str(error.get("message", error)))
    return ProviderFailure(kind=FailureKind.UNKNOWN, message=str(error or "Provider returned no result"))


class StepExecutor:
    """Executes single provider calls for pipeline stages.

    Usage:
        executor = StepExecutor(providers, continuity, engine)
        outcome = await executor.execute(
            session_id="s-1", ai_turn_id="t-1", step_type=StepType.BATCH,
            provider_id="claude", prompt="...",
        )
    """

    def __init__(
        self,
        providers: Mapping[str, ProviderClient],
        continuity: ContinuityStore,
        delta_engine: StreamDeltaEngine,
        *,
        timeout_seconds: float | None = None,
    ) -> None:
        """Initialize the executor.

        Args:
            providers: Provider clients keyed by provider id.
            continuity: Store accessor for response records.
            delta_engine: Engine the live stream is written through.
            timeout_seconds: Per-call cap; defaults to settings.
        """
        self.providers = providers
        self.continuity = continuity
        self.delta_engine = delta_engine
        self.timeout_seconds = timeout_seconds or settings.provider_timeout_seconds

    async def execute(
        self,
        *,
        session_id: str,
        ai_turn_id: str,
        step_type: StepType,
        provider_id: str,
        prompt: str,
        continuation_context: dict[str, Any] | None = None,
        use_thinking: bool = False,
        response_index: int | None = None,
        extra_meta: dict[str, Any] | None = None,
        transform: TextTransform | None = None,
        timeout_seconds: float | None = None,
        trace: TraceContext | None = None,
    ) -> StepOutcome:
        """Run one provider call and persist its response.

        Args:
            session_id: Owning session.
            ai_turn_id: AI turn the response belongs to.
            step_type: Stage being executed.
            provider_id: Provider to call.
            prompt: Prompt text.
            continuation_context: Opaque continuation metadata (ignored for
                providers without continuation support).
            use_thinking: Request extended mode (ignored when unsupported).
            response_index: Index to write; defaults to the next free index.
            extra_meta: Metadata merged into the response record.
            transform: Post-processing of the final text.
            timeout_seconds: Overrides the executor's call cap.
            trace: Request trace; the call runs in its own span.

        Returns:
            StepOutcome; never raises for provider failures.
        """
        response_type = step_type.response_type
        step_id = step_id_for(step_type, ai_turn_id)
        trace, _ = (trace or TraceContext.new_trace()).new_span()
        if response_index is None:
            response_index = await self.continuity.next_response_index(ai_turn_id, provider_id, response_type)
        base_meta = dict(extra_meta or {})

        await self.continuity.upsert_provider_response(
            session_id,
            ai_turn_id,
            provider_id,
            response_type,
            response_index,
            text="",
            status=ResponseStatus.STREAMING,
            meta=base_meta,
        )

        client = self.providers.get(provider_id)
        if client is None:
            failure = ProviderFailure(
                kind=FailureKind.UNKNOWN,
                message=f"Provider {provider_id} is not available",
                retryable=False,
            )
            return await self._record_failure(
                session_id, ai_turn_id, step_type, provider_id, response_index, base_meta, failure, trace
            )

        caps = client.capabilities
        on_partial = None
        if caps.streaming:

            def on_partial(snapshot: str) -> None:
                self.delta_engine.dispatch(session_id, step_id, provider_id, snapshot)

        log.info(
            PROVIDER_CALL_STARTED,
            **trace.log_fields(),
            session_id=session_id,
            ai_turn_id=ai_turn_id,
            step_type=step_type.value,
            provider_id=provider_id,
            has_context=bool(continuation_context) and caps.continuation,
        )
        timeout = timeout_seconds or self.timeout_seconds
        try:
            result = await asyncio.wait_for(
                client.ask(
                    prompt,
                    continuation_context if caps.continuation else None,
                    use_thinking=use_thinking and caps.thinking,
                    on_partial=on_partial,
                ),
                timeout=timeout,
            )
        except TimeoutError as e:
            log.warning(
                PROVIDER_CALL_TIMEOUT,
                **trace.log_fields(),
                session_id=session_id,
                provider_id=provider_id,
                timeout_s=timeout,
            )
            return await self._record_failure(
                session_id, ai_turn_id, step_type, provider_id, response_index, base_meta, classify_error(e), trace
            )
        except Exception as e:
            return await self._record_failure(
                session_id, ai_turn_id, step_type, provider_id, response_index, base_meta, classify_error(e), trace
            )

        if not result.get("ok"):
            failure = _failure_from_result(result.get("error"))
            return await self._record_failure(
                session_id, ai_turn_id, step_type, provider_id, response_index, base_meta, failure, trace
            )

        raw_text = result.get("text") or ""
        provider_meta = dict(result.get("meta") or {})
        visible_text, transform_meta = transform(raw_text) if transform else (raw_text, {})
        self.delta_engine.dispatch(session_id, step_id, provider_id, visible_text, is_final=True)

        record = await self.continuity.upsert_provider_response(
            session_id,
            ai_turn_id,
            provider_id,
            response_type,
            response_index,
            text=visible_text,
            status=ResponseStatus.COMPLETED,
            meta={**base_meta, **transform_meta, "provider_meta": provider_meta},
        )
        log.info(
            PROVIDER_CALL_COMPLETED,
            **trace.log_fields(),
            session_id=session_id,
            ai_turn_id=ai_turn_id,
            step_type=step_type.value,
            provider_id=provider_id,
            text_len=len(visible_text),
        )
        return StepOutcome(
            step_type=step_type,
            provider_id=provider_id,
            ok=True,
            text=visible_text,
            meta=provider_meta,
            response=record,
        )

    async def _record_failure(
        self,
        session_id: str,
        ai_turn_id: str,
        step_type: StepType,
        provider_id: str,
        response_index: int,
        base_meta: dict[str, Any],
        failure: ProviderFailure,
        trace: TraceContext,
    ) -> StepOutcome:
        failure = failure.model_copy(update={"message": sanitize_error_message(failure.message)})
        recovered = self.delta_engine.get_recovered_text(
            session_id, step_id_for(step_type, ai_turn_id), provider_id
        )
        log.warning(
            PROVIDER_CALL_FAILED,
            **trace.log_fields(),
            session_id=session_id,
            ai_turn_id=ai_turn_id,
            step_type=step_type.value,
            provider_id=provider_id,
            kind=failure.kind.value,
            retryable=failure.retryable,
        )
        record = None
        try:
            record = await self.continuity.upsert_provider_response(
                session_id,
                ai_turn_id,
                provider_id,
                step_type.response_type,
                response_index,
                text=recovered,
                status=ResponseStatus.ERROR,
                meta={**base_meta, "failure": failure.model_dump(mode="json")},
            )
        except Exception as e:
            log.error(
                PROVIDER_CALL_FAILED,
                **trace.log_fields(),
                session_id=session_id,
                provider_id=provider_id,
                persist_error=str(e),
            )
        return StepOutcome(
            step_type=step_type,
            provider_id=provider_id,
            ok=False,
            text=recovered,
            failure=failure,
            response=record,
        )
