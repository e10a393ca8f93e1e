"""Handoff block protocol for the concierge phase.

From its second turn on, a concierge instance may end a response with a
handoff block carrying context worth preserving if its provider session has to
restart::

    ---HANDOFF---
    constraints: budget under 10k; two engineers
    eliminated: Kubernetes (too heavy)
    preferences: speed over polish
    context: seed-stage startup
    >>>COMMIT: go with managed Postgres, start this week
    ---/HANDOFF---

The block is stripped from the user-visible text. A ``>>>COMMIT`` line marks
the handoff for commit, which makes the next concierge turn start a fresh
instance seeded with that handoff.
"""

import re
from dataclasses import dataclass

from chorus.persistence import HandoffPayload

HANDOFF_OPEN = "---HANDOFF---"
HANDOFF_CLOSE = "---/HANDOFF---"
COMMIT_MARKER = ">>>COMMIT:"

HANDOFF_PROTOCOL = f"""## Handoff Protocol

From this turn forward, if meaningful context emerges that would help future analysis, end your response with a handoff block:

{HANDOFF_OPEN}
constraints: [hard limits - budget, team size, timeline, technical requirements]
eliminated: [options ruled out, with brief reason]
preferences: [trade-off signals user has indicated: "X over Y"]
context: [situational facts revealed: stage, domain, team composition]
{COMMIT_MARKER} [only if user commits to a plan or requests execution guidance; summarize decision and intent]
{HANDOFF_CLOSE}

Rules:
- Only include if something worth capturing emerged this turn
- Each handoff is COMPLETE: carry forward anything still true
- Be terse: few words per item, semicolon-separated
- {COMMIT_MARKER.rstrip(':')} is a special signal; only use when user is done exploring and ready to execute
- Never reference the handoff in your visible response to the user
- Omit the entire block if nothing meaningful emerged
"""

_BLOCK_PATTERN = re.compile(
    re.escape(HANDOFF_OPEN) + r"(.*?)(?:" + re.escape(HANDOFF_CLOSE) + r"|\Z)",
    re.DOTALL,
)
_FIELD_PATTERN = re.compile(r"^\s*(constraints|eliminated|preferences|context)\s*:\s*(.*)$", re.IGNORECASE)
_EMPTY_VALUES = {"", "none", "n/a", "-", "[]"}


@dataclass(frozen=True)
class ParsedConciergeOutput:
    """Concierge response split into visible text and handoff."""

    visible_text: str
    handoff: HandoffPayload | None

    @property
    def commit_requested(self) -> bool:
        """Whether the handoff carries a commit marker."""
        return self.handoff is not None and bool(self.handoff.commit)


def _split_items(value: str) -> list[str]:
    value = value.strip()
    if value.startswith("[") and value.endswith("]"):
        value = value[1:-1]
    items = [item.strip().strip('"') for item in value.split(";")]
    return [item for item in items if item.lower() not in _EMPTY_VALUES]


def parse_handoff_block(body: str) -> HandoffPayload:
    """Parse the inside of a handoff block."""
    payload = HandoffPayload()
    for line in body.splitlines():
        stripped = line.strip()
        if stripped.startswith(COMMIT_MARKER):
            commit = stripped[len(COMMIT_MARKER) :].strip().strip("[]").strip()
            if commit.lower() not in _EMPTY_VALUES:
                payload.commit = commit
            continue
        match = _FIELD_PATTERN.match(line)
        if match:
            getattr(payload, match.group(1).lower()).extend(_split_items(match.group(2)))
    return payload


def parse_concierge_output(text: str) -> ParsedConciergeOutput:
    """Extract the last handoff block and strip every block from the text.

    A block missing its closing marker extends to the end of the text.
    """
    matches = list(_BLOCK_PATTERN.finditer(text or ""))
    if not matches:
        return ParsedConciergeOutput(visible_text=(text or "").strip(), handoff=None)

    handoff = parse_handoff_block(matches[-1].group(1))
    visible = _BLOCK_PATTERN.sub("", text).strip()
    return ParsedConciergeOutput(
        visible_text=visible,
        handoff=handoff if handoff.has_content() else None,
    )


def format_handoff_echo(handoff: HandoffPayload) -> str:
    """Render the current handoff so the next turn can update or carry it forward."""
    lines = ["Current handoff (update it or carry forward anything still true):", HANDOFF_OPEN]
    for name in ("constraints", "eliminated", "preferences", "context"):
        items = getattr(handoff, name)
        if items:
            lines.append(f"{name}: {'; '.join(items)}")
    if handoff.commit:
        lines.append(f"{COMMIT_MARKER} {handoff.commit}")
    lines.append(HANDOFF_CLOSE)
    return "\n".join(lines)
