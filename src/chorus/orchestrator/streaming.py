"""Streaming delta computation and per-key stream channels.

Providers report full-text snapshots while they generate. The delta engine
turns consecutive snapshots for one (session, step, provider) key into
minimal append instructions for a live viewer, tolerating small regressions
and answer rewrites. Deltas are written into a per-key StreamChannel that the
transport drains in order.
"""

import asyncio
import time
from collections import deque
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass

from chorus.config import settings
from chorus.orchestrator.types import PartialResultEvent
from chorus.telemetry import STREAM_DIVERGENCE, STREAM_REGRESSION, get_logger
from chorus.telemetry.events import STREAM_CACHE_CLEARED

log = get_logger(__name__)

StreamKey = tuple[str, str, str]


@dataclass(frozen=True)
class Delta:
    """One computed delta.

    An empty ``text`` means nothing should be emitted.
    """

    text: str = ""
    is_replace: bool = False

    def __bool__(self) -> bool:
        return bool(self.text)

    def __iter__(self):  # type: ignore[no-untyped-def]
        # Allows ``text, is_replace = engine.compute_delta(...)``.
        return iter((self.text, self.is_replace))


NO_DELTA = Delta()


def common_prefix_length(a: str, b: str) -> int:
    """Length of the longest common prefix of two strings."""
    limit = min(len(a), len(b))
    i = 0
    while i < limit and a[i] == b[i]:
        i += 1
    return i


class StreamChannel:
    """Ordered queue of partial-result events for one stream key.

    Single writer (the delta engine), single reader (the transport).

    Usage:
        async for event in channel:
            send(event)
    """

    _CLOSED = object()

    def __init__(self, key: StreamKey) -> None:
        """Create an open channel for a key."""
        self.key = key
        self._queue: asyncio.Queue[PartialResultEvent | object] = asyncio.Queue()
        self.closed = False

    def publish(self, event: PartialResultEvent) -> None:
        """Enqueue an event. Ignored once the channel is closed."""
        if not self.closed:
            self._queue.put_nowait(event)

    def close(self) -> None:
        """Close the channel; readers finish after draining queued events."""
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(self._CLOSED)

    def drain_nowait(self) -> list[PartialResultEvent]:
        """Pop every queued event without waiting."""
        events: list[PartialResultEvent] = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is self._CLOSED:
                break
            events.append(item)  # type: ignore[arg-type]
        return events

    async def __aiter__(self) -> AsyncIterator[PartialResultEvent]:
        while True:
            item = await self._queue.get()
            if item is self._CLOSED:
                return
            yield item  # type: ignore[misc]


class StreamDeltaEngine:
    """Per-key text diffing for live streaming.

    Buffers are in-memory only and scoped to the owning orchestrator.

    Usage:
        engine = StreamDeltaEngine()
        delta = engine.compute_delta("s-1", "batch-1", "claude", "Hello")
    """

    def __init__(
        self,
        *,
        append_prefix_ratio: float | None = None,
        regression_max_chars: int | None = None,
        regression_max_ratio: float | None = None,
        warn_max: int | None = None,
        warn_window_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the engine; unset thresholds come from settings."""
        self.append_prefix_ratio = (
            append_prefix_ratio if append_prefix_ratio is not None else settings.stream_append_prefix_ratio
        )
        self.regression_max_chars = (
            regression_max_chars if regression_max_chars is not None else settings.stream_regression_max_chars
        )
        self.regression_max_ratio = (
            regression_max_ratio if regression_max_ratio is not None else settings.stream_regression_max_ratio
        )
        self.warn_max = warn_max if warn_max is not None else settings.stream_warn_max
        self.warn_window_seconds = (
            warn_window_seconds if warn_window_seconds is not None else settings.stream_warn_window_seconds
        )
        self._clock = clock
        self._buffers: dict[StreamKey, str] = {}
        self._warnings: dict[StreamKey, deque[float]] = {}
        self._channels: dict[StreamKey, StreamChannel] = {}

    def compute_delta(self, session_id: str, step_id: str, provider_id: str, full_text: str) -> Delta:
        """Compute the delta for a new full-text snapshot.

        Args:
            session_id: Session the stream belongs to.
            step_id: Step within the session.
            provider_id: Provider producing the text.
            full_text: Complete text so far.

        Returns:
            The delta to emit (empty for duplicates and regressions).
        """
        key = (session_id, step_id, provider_id)
        prev = self._buffers.get(key, "")
        full_text = full_text or ""

        if not prev:
            if full_text:
                self._buffers[key] = full_text
                return Delta(full_text)
            return NO_DELTA

        if full_text == prev:
            return NO_DELTA

        if len(full_text) > len(prev):
            k = common_prefix_length(prev, full_text)
            self._buffers[key] = full_text
            if k >= self.append_prefix_ratio * len(prev):
                return Delta(full_text[len(prev) :])
            log.debug(
                STREAM_DIVERGENCE,
                session_id=session_id,
                step_id=step_id,
                provider_id=provider_id,
                common_prefix=k,
                prev_len=len(prev),
            )
            return Delta(full_text[k:])

        # Shrinking text cannot be represented as an append.
        self._buffers[key] = full_text
        regression = len(prev) - len(full_text)
        if regression <= self.regression_max_chars or regression <= self.regression_max_ratio * len(prev):
            return NO_DELTA
        self._warn_regression(key, prev_len=len(prev), full_len=len(full_text))
        return NO_DELTA

    def _warn_regression(self, key: StreamKey, *, prev_len: int, full_len: int) -> None:
        now = self._clock()
        recent = self._warnings.setdefault(key, deque())
        while recent and now - recent[0] >= self.warn_window_seconds:
            recent.popleft()
        if len(recent) >= self.warn_max:
            return
        recent.append(now)
        session_id, step_id, provider_id = key
        log.warning(
            STREAM_REGRESSION,
            session_id=session_id,
            step_id=step_id,
            provider_id=provider_id,
            prev_len=prev_len,
            full_len=full_len,
            regression=prev_len - full_len,
            regression_percent=round((prev_len - full_len) / prev_len * 100, 1),
        )

    def force_final(self, session_id: str, step_id: str, provider_id: str, full_text: str) -> Delta:
        """Overwrite the buffer and emit the full text as a replace."""
        self._buffers[(session_id, step_id, provider_id)] = full_text or ""
        return Delta(full_text or "", is_replace=True)

    def get_recovered_text(self, session_id: str, step_id: str, provider_id: str) -> str:
        """Last buffered text for a key ("" if none)."""
        return self._buffers.get((session_id, step_id, provider_id), "")

    def clear(self, session_id: str) -> int:
        """Evict every buffered key (and close every channel) for a session.

        Returns:
            Number of buffer entries removed.
        """
        keys = [k for k in self._buffers if k[0] == session_id]
        for key in keys:
            del self._buffers[key]
        for key in [k for k in self._warnings if k[0] == session_id]:
            del self._warnings[key]
        for key in [k for k in self._channels if k[0] == session_id]:
            self._channels.pop(key).close()
        log.debug(STREAM_CACHE_CLEARED, session_id=session_id, cleared=len(keys))
        return len(keys)

    def channel(self, session_id: str, step_id: str, provider_id: str) -> StreamChannel:
        """Get or open the channel for a key."""
        key = (session_id, step_id, provider_id)
        existing = self._channels.get(key)
        if existing is None or existing.closed:
            existing = StreamChannel(key)
            self._channels[key] = existing
        return existing

    def channels_for(self, session_id: str) -> list[StreamChannel]:
        """Open channels belonging to a session."""
        return [c for k, c in self._channels.items() if k[0] == session_id and not c.closed]

    def dispatch(
        self,
        session_id: str,
        step_id: str,
        provider_id: str,
        full_text: str,
        *,
        is_final: bool = False,
    ) -> bool:
        """Compute a delta and publish it to the key's channel.

        Final emissions bypass diffing and replace the viewer's text.

        Returns:
            True if an event was published.
        """
        if is_final:
            delta = self.force_final(session_id, step_id, provider_id, full_text)
        else:
            delta = self.compute_delta(session_id, step_id, provider_id, full_text)
        if not delta:
            return False
        self.channel(session_id, step_id, provider_id).publish(
            PartialResultEvent(
                type="partial_result",
                session_id=session_id,
                step_id=step_id,
                provider_id=provider_id,
                text=delta.text,
                is_final=is_final,
                is_replace=delta.is_replace,
            )
        )
        return True
