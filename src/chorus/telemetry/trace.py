"""Trace context for correlating the log lines of one pipeline request.

A trace covers one turn, continuation, or recompute. Each provider call
opens a span inside it, so concurrent batch calls stay distinguishable.
"""

import uuid
from dataclasses import dataclass, replace


@dataclass(frozen=True)
class TraceContext:
    """Correlation ids for one request.

    Attributes:
        trace_id: Identifier shared by every log line of the request.
        parent_span_id: Span the current operation runs under, if any.
    """

    trace_id: str
    parent_span_id: str | None = None

    @classmethod
    def new_trace(cls) -> "TraceContext":
        """Start a new trace with no span."""
        return cls(trace_id=str(uuid.uuid4()))

    def new_span(self) -> tuple["TraceContext", str]:
        """Open a child span in this trace.

        Returns:
            (context scoped to the new span, the span id)
        """
        span_id = uuid.uuid4().hex[:16]
        return replace(self, parent_span_id=span_id), span_id

    def log_fields(self) -> dict[str, str]:
        """Fields to splat into a structlog call."""
        fields = {"trace_id": self.trace_id}
        if self.parent_span_id:
            fields["span_id"] = self.parent_span_id
        return fields
