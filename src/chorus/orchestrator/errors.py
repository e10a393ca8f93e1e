"""Exception hierarchy for the orchestrator.

Provider failures are not exceptions at this level: they are classified into
``ProviderFailure`` records (see ``chorus.providers.errors``) and reported as
failed step updates.
"""


class ChorusError(Exception):
    """Base exception for all orchestrator errors."""

    pass


class InvalidRequest(ChorusError):
    """Raised when a request primitive is malformed or of an unsupported type."""

    pass


class NotFound(ChorusError):
    """Raised when a referenced session or turn cannot be loaded."""

    pass


class MissingData(ChorusError):
    """Raised when a stage has no artifact or batch outputs to work from."""

    pass


class ConcurrencyConflict(ChorusError):
    """Raised internally for a duplicate in-flight or already-processed request.

    Callers short-circuit on this error; it is never surfaced to the user.
    """

    pass
