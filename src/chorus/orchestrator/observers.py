"""Observer contract for the presentation layer.

The orchestrator emits step updates, artifact-ready, and turn-finalized
events to every registered observer. Observer failures are logged and never
affect the pipeline.
"""

from typing import Protocol

from chorus.orchestrator.types import ObserverEvent
from chorus.telemetry import get_logger
from chorus.telemetry.events import OBSERVER_NOTIFY_FAILED

log = get_logger(__name__)


class Observer(Protocol):
    """Receives orchestrator events."""

    async def notify(self, event: ObserverEvent) -> None:
        """Handle one event."""
        ...


class RecordingObserver:
    """Observer that keeps every event, for tests and local tooling."""

    def __init__(self) -> None:
        self.events: list[ObserverEvent] = []

    async def notify(self, event: ObserverEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> list[ObserverEvent]:
        """Events with the given ``type``."""
        return [e for e in self.events if e.get("type") == event_type]


class ObserverHub:
    """Fan-out to registered observers."""

    def __init__(self, observers: list[Observer] | None = None) -> None:
        self._observers: list[Observer] = list(observers or [])

    def add(self, observer: Observer) -> None:
        """Register an observer."""
        self._observers.append(observer)

    async def emit(self, event: ObserverEvent) -> None:
        """Deliver an event to every observer."""
        for observer in self._observers:
            try:
                await observer.notify(event)
            except Exception as e:
                log.warning(OBSERVER_NOTIFY_FAILED, event_type=event.get("type"), error=str(e))
