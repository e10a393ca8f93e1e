"""Decision artifact models.

The mapping stage produces a decision artifact: claims, typed edges between
claims, an optional traversal graph partitioning claims into dependency tiers,
and forcing points that need an explicit user choice before traversal unlocks
later tiers. Mapping output arrives as loosely shaped JSON (camelCase or
snake_case keys), so every model accepts both spellings and drops fields it
does not know about.
"""

from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

EdgeType = Literal["supports", "conflicts", "tradeoff", "prerequisite"]
EDGE_TYPES: frozenset[str] = frozenset({"supports", "conflicts", "tradeoff", "prerequisite"})


class _ArtifactModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class Claim(_ArtifactModel):
    """One position extracted from the batch outputs.

    ``supporters`` holds 1-based citation indices of the providers whose batch
    output backs the claim.
    """

    id: str
    label: str = ""
    text: str = ""
    supporters: list[int] = Field(default_factory=list)
    type: str = "factual"
    role: str | None = None
    challenges: str | None = None

    @field_validator("supporters", mode="before")
    @classmethod
    def _coerce_supporters(cls, value: Any) -> list[int]:
        if not isinstance(value, list):
            return []
        out: list[int] = []
        for item in value:
            try:
                out.append(int(item))
            except (TypeError, ValueError):
                continue
        return out


class Edge(_ArtifactModel):
    """Typed relation between two claims."""

    source: str = Field(validation_alias=AliasChoices("from", "source", "from_"))
    target: str = Field(validation_alias=AliasChoices("to", "target"))
    type: EdgeType


class ConflictOption(_ArtifactModel):
    """One labeled consequence offered at a conflict forcing point."""

    claim_id: str
    label: str = ""


class ForcingPoint(_ArtifactModel):
    """A claim requiring an explicit user choice before dependent tiers unlock."""

    id: str
    type: Literal["conditional", "prerequisite", "conflict"] = "conditional"
    tier: int = 0
    question: str = ""
    condition: str = ""
    gate_id: str | None = None
    claim_id: str | None = None
    options: list[ConflictOption] = Field(default_factory=list)
    unlocks: list[str] = Field(default_factory=list)
    prunes: list[str] = Field(default_factory=list)
    blocked_by: list[str] = Field(default_factory=list)


class TraversalTier(_ArtifactModel):
    """Claims unlocked together, plus the gates guarding them."""

    tier_index: int = 0
    claim_ids: list[str] = Field(default_factory=list)
    gates: list[str] = Field(default_factory=list)


class TraversalGraph(_ArtifactModel):
    """Claims partitioned into dependency tiers."""

    tiers: list[TraversalTier] = Field(default_factory=list)
    max_tier: int = 0
    roots: list[str] = Field(default_factory=list)
    cycles: list[list[str]] = Field(default_factory=list)


class DecisionArtifact(_ArtifactModel):
    """Structured output of the mapping stage."""

    claims: list[Claim] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)
    ghosts: list[str] = Field(default_factory=list)
    traversal_graph: TraversalGraph | None = None
    forcing_points: list[ForcingPoint] = Field(default_factory=list)
    model_count: int | None = None
    narrative: str | None = None
    query: str | None = None

    @field_validator("edges", mode="before")
    @classmethod
    def _drop_unknown_edges(cls, value: Any) -> list[Any]:
        # Mapping models occasionally invent edge types; keep the known ones.
        if not isinstance(value, list):
            return []
        return [e for e in value if not isinstance(e, dict) or e.get("type") in EDGE_TYPES]

    @field_validator("ghosts", mode="before")
    @classmethod
    def _coerce_ghosts(cls, value: Any) -> list[str]:
        if not isinstance(value, list):
            return []
        return [str(g) for g in value if g]

    def claim(self, claim_id: str) -> Claim | None:
        """Look up a claim by id."""
        return next((c for c in self.claims if c.id == claim_id), None)

    def requires_traversal(self) -> bool:
        """Whether the artifact carries a traversal graph with open forcing points."""
        return self.traversal_graph is not None and len(self.forcing_points) > 0

    def to_record(self) -> dict[str, Any]:
        """JSON-ready form stored on the AI turn."""
        return self.model_dump(mode="json")


class GateResolution(_ArtifactModel):
    """User answer to a conditional or prerequisite gate."""

    satisfied: bool
    user_input: str | None = None


class ForcingPointResolution(_ArtifactModel):
    """User choice at a forcing point."""

    selected_claim_id: str | None = None
    answer: str | None = None


class TraversalState(_ArtifactModel):
    """Resolutions a traversal continuation supplies, keyed by gate / forcing point id."""

    gate_resolutions: dict[str, GateResolution] = Field(default_factory=dict)
    forcing_point_resolutions: dict[str, ForcingPointResolution] = Field(default_factory=dict)
