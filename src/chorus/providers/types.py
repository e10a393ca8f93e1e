"""Provider contract types.

Each backend-specific client (session emulation, token extraction, anti-bot
signatures) lives outside this package. The orchestrator only depends on the
uniform contract defined here:

- ProviderCapabilities: what a provider reports it can do
- ProviderResult: normalized outcome of one ``ask`` call
- ProviderClient: the async call surface
"""

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from typing_extensions import NotRequired, TypedDict


@dataclass(frozen=True)
class ProviderCapabilities:
    """Capability set a provider reports.

    Attributes:
        streaming: Emits partial full-text snapshots while generating.
        continuation: Accepts continuation metadata to resume a thread.
        thinking: Supports an extended "thinking" mode.
    """

    streaming: bool = True
    continuation: bool = True
    thinking: bool = False


class ProviderResult(TypedDict):
    """Normalized outcome of a provider call.

    Attributes:
        provider_id: Provider that produced the result.
        ok: Whether the call succeeded.
        text: Full response text (empty on failure).
        meta: Opaque continuation identifiers (conversation id, cursor,
            message id). Stored verbatim and returned unmodified on the
            next extend/recompute for this provider.
        error: Classified failure payload when ``ok`` is False.
    """

    provider_id: str
    ok: bool
    text: str
    meta: dict[str, Any]
    error: NotRequired[dict[str, Any] | None]


PartialCallback = Callable[[str], None]


class ProviderClient(Protocol):
    """Async surface every provider client implements."""

    provider_id: str
    capabilities: ProviderCapabilities

    async def ask(
        self,
        prompt: str,
        continuation_context: dict[str, Any] | None = None,
        *,
        use_thinking: bool = False,
        on_partial: PartialCallback | None = None,
    ) -> ProviderResult:
        """Send one prompt and return the normalized result.

        ``on_partial`` receives full-text snapshots (not deltas) while the
        provider streams. Implementations may raise ProviderError subclasses;
        the executor classifies anything raised.
        """
        ...
