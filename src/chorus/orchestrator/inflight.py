"""In-flight request guard.

Tracks which (session, turn, provider) continuations are currently running so
a duplicate concurrent request for the same key is dropped instead of
executing twice. Owned by one orchestrator; not shared across processes.
"""

import itertools
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager

from chorus.config import settings
from chorus.orchestrator.errors import ConcurrencyConflict
from chorus.telemetry import CONTINUATION_DUPLICATE_DROPPED, get_logger

log = get_logger(__name__)


def inflight_key(session_id: str, ai_turn_id: str, provider_id: str | None) -> str:
    """Guard key for a continuation."""
    return f"{session_id}:{ai_turn_id}:{provider_id or 'default'}"


class InFlightGuard:
    """Key to (start time, holder token) map with synchronous check-and-insert.

    Entries older than ``stale_after_seconds`` are treated as abandoned and
    may be re-acquired. Each acquisition gets its own token, so a late release
    from an abandoned holder cannot free the key under its successor.

    Usage:
        with guard.hold(key):
            await run()
    """

    def __init__(
        self,
        stale_after_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize an empty guard."""
        self.stale_after_seconds = (
            stale_after_seconds if stale_after_seconds is not None else settings.inflight_stale_after_seconds
        )
        self._clock = clock
        self._tokens = itertools.count(1)
        self._entries: dict[str, tuple[float, int]] = {}

    def try_acquire(self, key: str) -> int | None:
        """Insert ``key`` unless a live entry exists.

        No await happens between the check and the insert.

        Returns:
            The holder token, or None when the key is taken.
        """
        now = self._clock()
        entry = self._entries.get(key)
        if entry is not None and now - entry[0] < self.stale_after_seconds:
            return None
        token = next(self._tokens)
        self._entries[key] = (now, token)
        return token

    def release(self, key: str, token: int | None = None) -> None:
        """Remove ``key`` (no-op if absent).

        With a token, only the holder that acquired it is removed.
        """
        entry = self._entries.get(key)
        if entry is None or (token is not None and entry[1] != token):
            return
        del self._entries[key]

    def is_held(self, key: str) -> bool:
        """Whether ``key`` is currently held."""
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        """Hold ``key`` for the duration of the block, releasing on any exit.

        Raises:
            ConcurrencyConflict: If the key is already held.
        """
        token = self.try_acquire(key)
        if token is None:
            log.info(CONTINUATION_DUPLICATE_DROPPED, key=key)
            raise ConcurrencyConflict(f"Request already in flight: {key}")
        try:
            yield
        finally:
            self.release(key, token)
