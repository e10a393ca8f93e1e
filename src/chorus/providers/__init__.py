"""Provider contract consumed by the orchestrator.

Wire-protocol clients are external collaborators; this module defines the
uniform surface they implement and how their failures are classified.
"""

from chorus.providers.errors import (
    FailureKind,
    ProviderAuthRequired,
    ProviderContextMissing,
    ProviderError,
    ProviderFailure,
    ProviderNetworkError,
    ProviderRateLimited,
    classify_error,
)
from chorus.providers.types import (
    PartialCallback,
    ProviderCapabilities,
    ProviderClient,
    ProviderResult,
)

__all__ = [
    "ProviderCapabilities",
    "ProviderClient",
    "ProviderResult",
    "PartialCallback",
    "ProviderError",
    "ProviderAuthRequired",
    "ProviderRateLimited",
    "ProviderNetworkError",
    "ProviderContextMissing",
    "ProviderFailure",
    "FailureKind",
    "classify_error",
]
