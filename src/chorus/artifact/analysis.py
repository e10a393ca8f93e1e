"""Structural analysis of a decision artifact.

Base analysis works from the artifact alone. Full analysis additionally knows
which provider produced which batch output, so claim supporters can be labeled
by provider in citation order.
"""

from collections import defaultdict
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError

from chorus.artifact.models import DecisionArtifact
from chorus.artifact.parser import derive_model_count

ShapeName = Literal["settled", "contested", "forked", "keystone", "sparse"]

HIGH_SUPPORT_RATIO = 0.5
CONSENSUS_RATIO = 0.67
KEYSTONE_MIN_DEPENDENTS = 2


class Landscape(BaseModel):
    """Size of the decision space."""

    claim_count: int = 0
    edge_count: int = 0
    model_count: int = 0


class ClaimMetrics(BaseModel):
    """Per-claim support and connectivity."""

    id: str
    label: str = ""
    support_count: int = 0
    support_ratio: float = 0.0
    is_high_support: bool = False
    is_consensus: bool = False
    in_degree: int = 0
    out_degree: int = 0
    dependents: int = 0
    supporting_providers: list[str] = Field(default_factory=list)


class ClaimPair(BaseModel):
    """Two claims joined by a conflict or tradeoff edge."""

    a: str
    b: str
    a_label: str = ""
    b_label: str = ""
    both_high_support: bool = False


class StructuralAnalysis(BaseModel):
    """Derived view of an artifact used for prompt context and gating."""

    landscape: Landscape = Field(default_factory=Landscape)
    claims: list[ClaimMetrics] = Field(default_factory=list)
    conflicts: list[ClaimPair] = Field(default_factory=list)
    tradeoffs: list[ClaimPair] = Field(default_factory=list)
    prerequisite_chains: list[list[str]] = Field(default_factory=list)
    isolated_claims: list[str] = Field(default_factory=list)
    shape: ShapeName = "sparse"
    shape_confidence: float = 0.0
    keystone_claim_id: str | None = None
    provider_labels: dict[int, str] = Field(default_factory=dict)
    batch_output_count: int = 0

    @property
    def is_full(self) -> bool:
        """Whether batch outputs were available when computing."""
        return self.batch_output_count > 0

    def to_record(self) -> dict[str, Any]:
        """JSON-ready form stored on the AI turn."""
        return self.model_dump(mode="json")


def load_analysis(raw: dict[str, Any] | None) -> StructuralAnalysis | None:
    """Rehydrate a stored analysis, or None if absent or unreadable."""
    if not raw:
        return None
    try:
        return StructuralAnalysis.model_validate(raw)
    except ValidationError:
        return None


def normalize_citation_order(raw: Any) -> dict[int, str]:
    """Canonicalize a citation-order map to ``{index: provider_id}``.

    Stored citation orders come in three shapes: ``{provider: index}``,
    ``{index: provider}`` (index possibly a string), or a list of provider ids
    in citation order (1-based). Anything else yields an empty map.
    """
    if isinstance(raw, list):
        return {i + 1: str(pid) for i, pid in enumerate(raw) if pid}
    if not isinstance(raw, dict) or not raw:
        return {}

    out: dict[int, str] = {}
    if all(isinstance(v, int) and not isinstance(v, bool) for v in raw.values()):
        for provider_id, index in raw.items():
            out[int(index)] = str(provider_id)
        return out

    for key, value in raw.items():
        try:
            out[int(key)] = str(value)
        except (TypeError, ValueError):
            continue
    return out


def _prerequisite_chains(artifact: DecisionArtifact) -> list[list[str]]:
    graph: dict[str, list[str]] = defaultdict(list)
    has_incoming: set[str] = set()
    for edge in artifact.edges:
        if edge.type == "prerequisite":
            graph[edge.source].append(edge.target)
            has_incoming.add(edge.target)

    chains: list[list[str]] = []

    def walk(node: str, path: list[str]) -> None:
        nexts = [n for n in graph.get(node, []) if n not in path]
        if not nexts:
            if len(path) > 1:
                chains.append(path)
            return
        for nxt in nexts:
            walk(nxt, [*path, nxt])

    for root in [n for n in graph if n not in has_incoming]:
        walk(root, [root])
    return chains


def _pairs(
    artifact: DecisionArtifact, edge_type: str, metrics: dict[str, ClaimMetrics]
) -> list[ClaimPair]:
    pairs: list[ClaimPair] = []
    seen: set[frozenset[str]] = set()
    for edge in artifact.edges:
        if edge.type != edge_type:
            continue
        key = frozenset((edge.source, edge.target))
        if key in seen or edge.source not in metrics or edge.target not in metrics:
            continue
        seen.add(key)
        a, b = metrics[edge.source], metrics[edge.target]
        pairs.append(
            ClaimPair(
                a=a.id,
                b=b.id,
                a_label=a.label,
                b_label=b.label,
                both_high_support=a.is_high_support and b.is_high_support,
            )
        )
    return pairs


def _classify_shape(
    analysis: StructuralAnalysis,
) -> tuple[ShapeName, float, str | None]:
    claims = analysis.claims
    if not claims:
        return "sparse", 0.0, None

    forked = [p for p in analysis.conflicts if p.both_high_support]
    if forked:
        return "forked", min(1.0, 0.6 + 0.1 * len(forked)), None
    if analysis.conflicts:
        return "contested", min(1.0, 0.5 + 0.1 * len(analysis.conflicts)), None

    keystone = max(claims, key=lambda c: c.dependents)
    if keystone.dependents >= max(KEYSTONE_MIN_DEPENDENTS, (len(claims) - 1) / 2):
        return "keystone", min(1.0, keystone.dependents / max(1, len(claims) - 1)), keystone.id

    consensus = [c for c in claims if c.is_consensus]
    if consensus and len(consensus) * 2 >= len(claims):
        return "settled", len(consensus) / len(claims), None

    return "sparse", 0.3 if analysis.landscape.edge_count else 0.1, None


def compute_base_analysis(
    artifact: DecisionArtifact, citation_order: dict[int, str] | None = None
) -> StructuralAnalysis:
    """Analyze an artifact without batch outputs.

    Args:
        artifact: Parsed decision artifact.
        citation_order: Optional canonical ``{index: provider_id}`` map.

    Returns:
        Landscape, per-claim metrics, patterns, and the primary shape.
    """
    model_count = derive_model_count(artifact, citation_order)
    in_deg: dict[str, int] = defaultdict(int)
    out_deg: dict[str, int] = defaultdict(int)
    dependents: dict[str, set[str]] = defaultdict(set)
    for edge in artifact.edges:
        out_deg[edge.source] += 1
        in_deg[edge.target] += 1
        if edge.type in ("supports", "prerequisite"):
            dependents[edge.source].add(edge.target)

    metrics: dict[str, ClaimMetrics] = {}
    for claim in artifact.claims:
        support = len(set(claim.supporters))
        ratio = support / model_count if model_count else 0.0
        metrics[claim.id] = ClaimMetrics(
            id=claim.id,
            label=claim.label or claim.id,
            support_count=support,
            support_ratio=round(ratio, 4),
            is_high_support=ratio >= HIGH_SUPPORT_RATIO,
            is_consensus=ratio >= CONSENSUS_RATIO,
            in_degree=in_deg[claim.id],
            out_degree=out_deg[claim.id],
            dependents=len(dependents[claim.id]),
            supporting_providers=[
                citation_order[s] for s in sorted(set(claim.supporters)) if citation_order and s in citation_order
            ],
        )

    analysis = StructuralAnalysis(
        landscape=Landscape(
            claim_count=len(artifact.claims),
            edge_count=len(artifact.edges),
            model_count=model_count,
        ),
        claims=list(metrics.values()),
        conflicts=_pairs(artifact, "conflicts", metrics),
        tradeoffs=_pairs(artifact, "tradeoff", metrics),
        prerequisite_chains=_prerequisite_chains(artifact),
        isolated_claims=[m.id for m in metrics.values() if m.in_degree == 0 and m.out_degree == 0],
        provider_labels=dict(citation_order or {}),
    )
    shape, confidence, keystone_id = _classify_shape(analysis)
    analysis.shape = shape
    analysis.shape_confidence = round(confidence, 3)
    analysis.keystone_claim_id = keystone_id
    return analysis


def compute_full_analysis(
    batch_outputs: dict[str, str],
    artifact: DecisionArtifact,
    citation_order: Any = None,
) -> StructuralAnalysis:
    """Analyze an artifact together with the batch outputs it was mapped from.

    Args:
        batch_outputs: ``{provider_id: text}`` for the turn's batch stage.
        artifact: Parsed decision artifact.
        citation_order: Citation-order map in any stored shape. When absent,
            providers are numbered in ``batch_outputs`` order.

    Returns:
        Base analysis enriched with provider labels and batch output count.
    """
    order = normalize_citation_order(citation_order)
    if not order:
        order = {i + 1: pid for i, pid in enumerate(batch_outputs)}
    analysis = compute_base_analysis(artifact, order)
    analysis.batch_output_count = sum(1 for text in batch_outputs.values() if text and text.strip())
    return analysis
