"""Recover a decision artifact from raw mapping-stage text.

Mapping providers answer in prose with the artifact embedded either inside an
XML-ish tag (``<map>``, ``<decision_map>``, ``<mapper_artifact>``,
``<mapping_output>``) or after a ``===GRAPH_TOPOLOGY===`` header. The JSON is
located by balanced-brace scanning, so trailing prose and code fences do not
break extraction.
"""

import re
from typing import Any

import orjson
from pydantic import ValidationError

from chorus.artifact.models import DecisionArtifact
from chorus.telemetry import ARTIFACT_PARSE_FAILED, ARTIFACT_PARSED, get_logger

log = get_logger(__name__)

ARTIFACT_TAGS = ("map", "decision_map", "mapper_artifact", "mapping_output")

_TAG_PATTERN = re.compile(
    r"<(" + "|".join(ARTIFACT_TAGS) + r")>(.*?)</\1>",
    re.DOTALL | re.IGNORECASE,
)
_TOPOLOGY_PATTERN = re.compile(
    r"(?:={3,}\s*GRAPH[_\s]*TOPOLOGY\s*={3,}|#{1,3}[^\n]*GRAPH[_\s]*TOPOLOGY)",
    re.IGNORECASE,
)


def extract_balanced_json(text: str, start: int = 0) -> str | None:
    """Return the first balanced ``{...}`` object at or after ``start``.

    Braces inside JSON string literals are ignored.

    Args:
        text: Text to scan.
        start: Offset to begin scanning from.

    Returns:
        The JSON object text, or None if no balanced object exists.
    """
    begin = text.find("{", start)
    if begin == -1:
        return None

    depth = 0
    in_string = False
    escaped = False
    for i in range(begin, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[begin : i + 1]
    return None


def _topology_to_artifact(data: dict[str, Any]) -> dict[str, Any]:
    """Convert a nodes/edges graph topology into artifact shape."""
    claims = [
        {
            "id": node.get("id"),
            "label": node.get("label", ""),
            "text": node.get("text") or node.get("label", ""),
            "supporters": node.get("supporters", []),
            "type": node.get("type") or "factual",
        }
        for node in data.get("nodes", [])
        if isinstance(node, dict) and node.get("id")
    ]
    edges = [
        {"from": edge.get("source"), "to": edge.get("target"), "type": edge.get("type")}
        for edge in data.get("edges", [])
        if isinstance(edge, dict)
    ]
    return {**data, "claims": claims, "edges": edges}


def _candidates(text: str) -> list[str]:
    found: list[str] = []
    for match in _TAG_PATTERN.finditer(text):
        body = extract_balanced_json(match.group(2))
        if body:
            found.append(body)

    topology = _TOPOLOGY_PATTERN.search(text)
    if topology:
        body = extract_balanced_json(text, topology.end())
        if body:
            found.append(body)

    if not found and text.lstrip().startswith("{"):
        body = extract_balanced_json(text)
        if body:
            found.append(body)
    return found


def parse_mapping_text(text: str | None) -> DecisionArtifact | None:
    """Parse mapping-stage text into a decision artifact.

    Candidates are tried in order (tagged blocks, then a graph topology
    section, then a bare JSON document); the first one that decodes into a
    valid artifact wins.

    Args:
        text: Raw mapping response text.

    Returns:
        The parsed artifact, or None when nothing usable is embedded.
    """
    if not text or not text.strip():
        return None

    for candidate in _candidates(text):
        try:
            data = orjson.loads(candidate)
        except orjson.JSONDecodeError as e:
            log.warning(ARTIFACT_PARSE_FAILED, reason="invalid_json", error=str(e))
            continue
        if not isinstance(data, dict):
            continue
        if "claims" not in data and "nodes" in data:
            data = _topology_to_artifact(data)
        try:
            artifact = DecisionArtifact.model_validate(data)
        except ValidationError as e:
            log.warning(ARTIFACT_PARSE_FAILED, reason="invalid_shape", error_count=e.error_count())
            continue
        if not artifact.claims:
            continue
        log.debug(
            ARTIFACT_PARSED,
            claim_count=len(artifact.claims),
            edge_count=len(artifact.edges),
            forcing_point_count=len(artifact.forcing_points),
        )
        return artifact
    return None


def coerce_artifact(raw: DecisionArtifact | dict[str, Any] | None) -> DecisionArtifact | None:
    """Accept a stored or request-supplied artifact in either form.

    Returns:
        A validated artifact, or None when ``raw`` is empty or malformed.
    """
    if raw is None or isinstance(raw, DecisionArtifact):
        return raw
    if not raw:
        return None
    try:
        return DecisionArtifact.model_validate(raw)
    except ValidationError as e:
        log.warning(ARTIFACT_PARSE_FAILED, reason="stored_artifact_invalid", error_count=e.error_count())
        return None


def derive_model_count(
    artifact: DecisionArtifact, citation_order: dict[int, str] | None = None
) -> int:
    """Number of providers the artifact was mapped from.

    Uses the artifact's own ``model_count`` when present, then the citation
    order, then the highest supporter index seen on any claim.
    """
    if artifact.model_count:
        return artifact.model_count
    if citation_order:
        return len(citation_order)
    supporters = {s for claim in artifact.claims for s in claim.supporters}
    return max(supporters) if supporters else 0
