"""Decision artifact models, parsing, and structural analysis."""

from chorus.artifact.analysis import (
    StructuralAnalysis,
    compute_base_analysis,
    compute_full_analysis,
    load_analysis,
    normalize_citation_order,
)
from chorus.artifact.models import (
    Claim,
    DecisionArtifact,
    Edge,
    ForcingPoint,
    ForcingPointResolution,
    GateResolution,
    TraversalGraph,
    TraversalState,
)
from chorus.artifact.parser import coerce_artifact, derive_model_count, parse_mapping_text

__all__ = [
    "Claim",
    "Edge",
    "ForcingPoint",
    "TraversalGraph",
    "DecisionArtifact",
    "GateResolution",
    "ForcingPointResolution",
    "TraversalState",
    "StructuralAnalysis",
    "compute_base_analysis",
    "compute_full_analysis",
    "load_analysis",
    "normalize_citation_order",
    "parse_mapping_text",
    "coerce_artifact",
    "derive_model_count",
]
