"""Continuity store accessor.

Thin read/write facade over sessions, turns, and provider responses backed by
a DurableStore. Converts between store dicts and record models in one place so
the rest of the orchestrator only sees typed records.
"""

import asyncio
from collections import defaultdict
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from chorus.persistence.models import (
    AiTurnRecord,
    ConciergeState,
    PipelineStatus,
    ProviderResponseRecord,
    ResponseStatus,
    ResponseType,
    SessionRecord,
    TurnRecord,
    UserTurnRecord,
    utc_now,
)
from chorus.persistence.store import PROVIDER_RESPONSES, SESSIONS, TURNS, DurableStore
from chorus.telemetry import get_logger
from chorus.telemetry.events import PERSISTENCE_WRITE_FAILED, SESSION_CREATED

log = get_logger(__name__)


def _to_turn(raw: dict[str, Any]) -> TurnRecord:
    if raw.get("type") == "user":
        return UserTurnRecord.model_validate(raw)
    return AiTurnRecord.model_validate(raw)


class ContinuityStore:
    """Typed accessor over the durable store.

    Usage:
        continuity = ContinuityStore(InMemoryStore())
        session = await continuity.ensure_session("s-1")
    """

    def __init__(self, store: DurableStore) -> None:
        """Wrap a durable store.

        Args:
            store: Backing keyed store.
        """
        self.store = store
        self._session_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # Sessions

    @asynccontextmanager
    async def _locked_session(self, session_id: str) -> AsyncIterator[SessionRecord]:
        """Fresh copy of a session, written back on exit.

        Every partial session update goes through here, so no writer ever
        puts back fields it read before another writer's update.
        """
        async with self._session_locks[session_id]:
            session = await self.get_session(session_id) or SessionRecord(id=session_id)
            yield session
            await self.put_session(session)

    async def get_session(self, session_id: str) -> SessionRecord | None:
        """Load a session, or None when missing or unreadable."""
        try:
            raw = await self.store.get(SESSIONS, session_id)
        except Exception as e:
            log.error("session_read_failed", session_id=session_id, error=str(e))
            return None
        return SessionRecord.model_validate(raw) if raw else None

    async def ensure_session(self, session_id: str) -> SessionRecord:
        """Load a session, creating it on first use."""
        session = await self.get_session(session_id)
        if session is not None:
            return session
        async with self._session_locks[session_id]:
            session = await self.get_session(session_id)
            if session is None:
                session = SessionRecord(id=session_id)
                await self.put_session(session)
                log.info(SESSION_CREATED, session_id=session_id)
        return session

    async def put_session(self, session: SessionRecord) -> None:
        """Write a whole session record."""
        session.updated_at = utc_now()
        await self.store.put(SESSIONS, session.model_dump(mode="json"))

    async def advance_session(
        self,
        session_id: str,
        *,
        last_turn_id: str | None = None,
        last_structural_turn_id: str | None = None,
    ) -> SessionRecord:
        """Move a session's turn pointers, leaving its concierge state alone.

        Returns:
            The session as written.
        """
        async with self._locked_session(session_id) as session:
            if last_turn_id:
                session.last_turn_id = last_turn_id
            if last_structural_turn_id:
                session.last_structural_turn_id = last_structural_turn_id
        return session

    # Turns

    async def get_turn(self, turn_id: str | None) -> TurnRecord | None:
        """Load a user or AI turn, or None when missing or unreadable."""
        if not turn_id:
            return None
        try:
            raw = await self.store.get(TURNS, turn_id)
            return _to_turn(raw) if raw else None
        except Exception as e:
            log.error("turn_read_failed", turn_id=turn_id, error=str(e))
            return None

    async def get_ai_turn(self, turn_id: str | None) -> AiTurnRecord | None:
        """Load a turn and return it only if it is an AI turn."""
        turn = await self.get_turn(turn_id)
        return turn if isinstance(turn, AiTurnRecord) else None

    async def put_turn(self, turn: TurnRecord) -> None:
        """Write a whole turn record."""
        if isinstance(turn, AiTurnRecord):
            turn.updated_at = utc_now()
        await self.store.put(TURNS, turn.model_dump(mode="json"))

    async def get_turns_for_session(self, session_id: str) -> list[TurnRecord]:
        """All turns of a session in store order."""
        raw_turns = await self.store.get_turns_by_session_id(session_id)
        return [_to_turn(raw) for raw in raw_turns]

    async def get_user_message(self, ai_turn: AiTurnRecord) -> str:
        """Text of the user turn an AI turn answers ("" if unavailable)."""
        user_turn = await self.get_turn(ai_turn.user_turn_id)
        return user_turn.text if isinstance(user_turn, UserTurnRecord) else ""

    async def set_pipeline_status(
        self, ai_turn: AiTurnRecord, status: PipelineStatus | None
    ) -> AiTurnRecord:
        """Persist a pipeline status transition on an AI turn."""
        ai_turn.pipeline_status = status
        await self.put_turn(ai_turn)
        return ai_turn

    # Provider responses

    async def get_responses(self, ai_turn_id: str) -> list[ProviderResponseRecord]:
        """All provider responses for an AI turn."""
        raw = await self.store.get_responses_by_turn_id(ai_turn_id)
        return [ProviderResponseRecord.model_validate(r) for r in raw]

    async def next_response_index(
        self, ai_turn_id: str, provider_id: str, response_type: ResponseType
    ) -> int:
        """Next monotonically increasing index for a (turn, provider, type)."""
        indices = [
            r.response_index
            for r in await self.get_responses(ai_turn_id)
            if r.provider_id == provider_id and r.response_type == response_type
        ]
        return max(indices) + 1 if indices else 0

    async def upsert_provider_response(
        self,
        session_id: str,
        ai_turn_id: str,
        provider_id: str,
        response_type: ResponseType,
        response_index: int,
        *,
        text: str | None = None,
        status: ResponseStatus | None = None,
        meta: dict[str, Any] | None = None,
    ) -> ProviderResponseRecord:
        """Create or update the response at a compound key.

        The id is stable per (session, turn, provider, type, index); an update
        keeps ``created_at`` and any field the caller leaves as None, and
        refreshes ``updated_at``.

        Returns:
            The record as written.
        """
        record_id = f"pr-{session_id}-{ai_turn_id}-{provider_id}-{response_type.value}-{response_index}"
        existing_raw = await self.store.get(PROVIDER_RESPONSES, record_id)
        existing = ProviderResponseRecord.model_validate(existing_raw) if existing_raw else None

        record = ProviderResponseRecord(
            id=record_id,
            session_id=session_id,
            ai_turn_id=ai_turn_id,
            provider_id=provider_id,
            response_type=response_type,
            response_index=response_index,
            text=text if text is not None else (existing.text if existing else ""),
            status=status or (existing.status if existing else ResponseStatus.STREAMING),
            meta=meta if meta is not None else (existing.meta if existing else {}),
            created_at=existing.created_at if existing else utc_now(),
            updated_at=utc_now(),
        )
        try:
            await self.store.put(PROVIDER_RESPONSES, record.model_dump(mode="json"))
        except Exception as e:
            log.error(
                PERSISTENCE_WRITE_FAILED,
                collection=PROVIDER_RESPONSES,
                record_id=record_id,
                error=str(e),
            )
            raise
        return record

    # Concierge state

    async def read_concierge_state(self, session_id: str) -> ConciergeState:
        """Current concierge state (defaults for an unknown session)."""
        session = await self.get_session(session_id)
        return session.concierge_state.model_copy(deep=True) if session else ConciergeState()

    async def write_concierge_state(self, session_id: str, state: ConciergeState) -> None:
        """Replace the whole concierge state record of a session.

        Single writer: only the pipeline orchestrator calls this, once per
        successful concierge execution. Other session writes patch their own
        fields through the same per-session lock and never carry this one.
        """
        async with self._locked_session(session_id) as session:
            session.concierge_state = state.model_copy(deep=True)
