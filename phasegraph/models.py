"""Core data models used by detection, storage, and impact analysis layers.

Persisted shapes (the relationship graph and everything inside it) are
pydantic models serialised with camelCase keys.  Transient results such as
impact reports are plain dataclasses.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from .errors import SchemaValidationError

GRAPH_SCHEMA_VERSION = "1.0"


class RelationshipType(str, Enum):
    # Direct content references
    REFERENCES = "references"
    MENTIONS = "mentions"
    QUOTES = "quotes"
    # Logical dependencies
    DEPENDS_ON = "depends_on"
    INFLUENCES = "influences"
    DERIVES_FROM = "derives_from"
    # Structural
    PART_OF = "part_of"
    CONTAINS = "contains"
    EXTENDS = "extends"
    # Temporal
    PRECEDES = "precedes"
    FOLLOWS = "follows"
    CONCURRENT = "concurrent"
    # Quality
    VALIDATES = "validates"
    CONFLICTS_WITH = "conflicts_with"
    SUPPORTS = "supports"


class RelationshipStrength:
    """Standard confidence/strength levels assigned by detectors."""

    WEAK = 0.1
    LOW = 0.3
    MEDIUM = 0.5
    HIGH = 0.7
    STRONG = 0.9


class Severity(str, Enum):
    MINIMAL = "minimal"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


SEVERITY_ORDER: List[Severity] = [
    Severity.MINIMAL,
    Severity.LOW,
    Severity.MEDIUM,
    Severity.HIGH,
    Severity.CRITICAL,
]

EvidenceKind = Literal["content_match", "structural_reference", "semantic_similarity", "explicit_mention"]
ValidationStatus = Literal["pending", "confirmed", "rejected", "needs_review"]
ChangeType = Literal["creation", "modification", "deletion", "restructure"]
ChangeScope = Literal["trivial", "minor", "moderate", "major", "critical"]
ImpactType = Literal["direct", "indirect", "cascading"]


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ===================================================================
# Persisted schema
# ===================================================================

class _Schema(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
    )

    def to_json_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class ArtifactRef(_Schema):
    """Identity of a deliverable: unique by ``(phase, name)`` within a project."""

    model_config = ConfigDict(frozen=True)

    phase: str = Field(min_length=1)
    name: str = Field(min_length=1)
    type: Optional[str] = None
    path: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.phase}/{self.name}"

    def matches(self, artifact_id: Union[str, "ArtifactRef"]) -> bool:
        """Match by ref, canonical key, legacy ``phase_name`` key, or bare name."""
        if isinstance(artifact_id, ArtifactRef):
            return artifact_id.key == self.key
        return artifact_id in (self.key, f"{self.phase}_{self.name}", self.name)


class Evidence(_Schema):
    kind: EvidenceKind
    description: str
    location: Optional[str] = None
    score: Optional[float] = Field(default=None, ge=0, le=1)


class RelationshipMetadata(_Schema):
    detected_by: str
    detected_at: str
    detection_method: Optional[str] = None
    validation_status: ValidationStatus = "pending"
    last_validated: Optional[str] = None
    last_updated: Optional[str] = None


def relationship_id(source: ArtifactRef, target: ArtifactRef, rel_type: Union[str, RelationshipType]) -> str:
    """Deterministic id so re-detection of the same edge can be deduplicated."""
    type_value = RelationshipType(rel_type).value
    raw = f"{source.phase}_{source.name}_{target.phase}_{target.name}_{type_value}"
    return re.sub(r"[^a-zA-Z0-9_]", "_", raw)


class Relationship(_Schema):
    id: str = Field(min_length=1)
    source: ArtifactRef
    target: ArtifactRef
    type: RelationshipType
    strength: float = Field(ge=0, le=1)
    confidence: float = Field(ge=0, le=1)
    evidence: List[Evidence] = Field(default_factory=list)
    metadata: RelationshipMetadata

    @model_validator(mode="after")
    def _distinct_endpoints(self) -> "Relationship":
        if self.source.key == self.target.key:
            raise ValueError(f"relationship {self.id} points {self.source.key} at itself")
        return self

    @classmethod
    def create(
        cls,
        source: ArtifactRef,
        target: ArtifactRef,
        rel_type: Union[str, RelationshipType],
        confidence: float,
        evidence: Iterable[Evidence],
        detected_by: str,
        detection_method: Optional[str] = None,
        strength: Optional[float] = None,
    ) -> "Relationship":
        return cls(
            id=relationship_id(source, target, rel_type),
            source=source,
            target=target,
            type=rel_type,
            strength=confidence if strength is None else strength,
            confidence=confidence,
            evidence=list(evidence),
            metadata=RelationshipMetadata(
                detected_by=detected_by,
                detected_at=utc_now(),
                detection_method=detection_method,
            ),
        )

    @property
    def dedup_key(self) -> Tuple[str, str, str]:
        return (self.source.key, self.target.key, self.type)


class GraphStatistics(_Schema):
    total_relationships: int = Field(default=0, ge=0)
    relationships_by_type: Dict[str, int] = Field(default_factory=dict)
    relationships_by_phase: Dict[str, int] = Field(default_factory=dict)
    average_strength: float = Field(default=0.0, ge=0, le=1)
    average_confidence: float = Field(default=0.0, ge=0, le=1)


class GraphMetadata(_Schema):
    generated_by: str
    detection_algorithms: List[str] = Field(default_factory=list)
    validation_rules: List[str] = Field(default_factory=list)
    quality_score: Optional[float] = Field(default=None, ge=0, le=1)


class RelationshipGraph(_Schema):
    project_id: str = Field(min_length=1)
    version: str = GRAPH_SCHEMA_VERSION
    generated_at: str
    last_updated: str
    relationships: List[Relationship] = Field(default_factory=list)
    artifacts: List[ArtifactRef] = Field(default_factory=list)
    statistics: GraphStatistics = Field(default_factory=GraphStatistics)
    metadata: GraphMetadata

    @classmethod
    def empty(cls, project_id: str, generated_by: str) -> "RelationshipGraph":
        now = utc_now()
        return cls(
            project_id=project_id or "project",
            generated_at=now,
            last_updated=now,
            metadata=GraphMetadata(generated_by=generated_by),
        )

    @property
    def is_empty(self) -> bool:
        return not self.relationships

    def refresh_statistics(self) -> None:
        self.statistics = compute_statistics(self.relationships)

    def _refs(self) -> Iterator[ArtifactRef]:
        yield from self.artifacts
        for rel in self.relationships:
            yield rel.source
            yield rel.target

    def find_artifact(self, artifact_id: Union[str, ArtifactRef]) -> Optional[ArtifactRef]:
        """Resolve an id to a single artifact.

        A ``phase/name`` key always wins.  Legacy ``phase_name`` ids and bare
        names resolve only when exactly one artifact matches; ambiguous ids
        resolve to ``None``.
        """
        key = artifact_id.key if isinstance(artifact_id, ArtifactRef) else artifact_id
        candidates: Dict[str, ArtifactRef] = {}
        for ref in self._refs():
            if ref.key == key:
                return ref
            if ref.matches(artifact_id):
                candidates.setdefault(ref.key, ref)
        if len(candidates) == 1:
            return next(iter(candidates.values()))
        return None

    def relationships_for(self, artifact_id: Union[str, ArtifactRef]) -> List[Relationship]:
        artifact = self.find_artifact(artifact_id)
        if artifact is None:
            return []
        return [rel for rel in self.relationships if artifact.key in (rel.source.key, rel.target.key)]

    def outgoing(self, artifact_key: str) -> List[Relationship]:
        return [rel for rel in self.relationships if rel.source.key == artifact_key]


class ChangeDescription(_Schema):
    type: ChangeType = "modification"
    scope: ChangeScope = "minor"
    description: str = "Unspecified change"


class DetectionOptions(_Schema):
    algorithms: Optional[List[str]] = None
    min_confidence: Optional[float] = Field(default=None, ge=0, le=1)
    max_relationships: int = Field(default=100, ge=1)
    cross_phase_only: bool = False
    target_phases: Optional[List[str]] = None
    exclude_types: Optional[List[RelationshipType]] = None


class QueryOptions(_Schema):
    relationship_types: Optional[List[RelationshipType]] = None
    min_strength: Optional[float] = Field(default=None, ge=0, le=1)
    sort_by: Literal["strength", "confidence", "type", "created"] = "strength"
    sort_order: Literal["asc", "desc"] = "desc"
    limit: int = Field(default=50, ge=1, le=1000)


def validate_graph(data: Any) -> RelationshipGraph:
    """Validate raw data (or an existing model) against the graph schema."""
    if isinstance(data, RelationshipGraph):
        data = data.model_dump(by_alias=True, mode="json")
    try:
        return RelationshipGraph.model_validate(data)
    except ValidationError as exc:
        raise SchemaValidationError(
            f"Invalid relationship graph: {exc.error_count()} validation error(s)",
            exc.errors(include_url=False),
        ) from exc


# ===================================================================
# Graph helpers
# ===================================================================

def compute_statistics(relationships: List[Relationship]) -> GraphStatistics:
    """Statistics are always a pure function of the relationship list."""
    if not relationships:
        return GraphStatistics()

    by_type: Dict[str, int] = {}
    by_phase: Dict[str, int] = {}
    total_strength = 0.0
    total_confidence = 0.0
    for rel in relationships:
        by_type[rel.type] = by_type.get(rel.type, 0) + 1
        phase_key = f"{rel.source.phase}->{rel.target.phase}"
        by_phase[phase_key] = by_phase.get(phase_key, 0) + 1
        total_strength += rel.strength
        total_confidence += rel.confidence

    count = len(relationships)
    return GraphStatistics(
        total_relationships=count,
        relationships_by_type=by_type,
        relationships_by_phase=by_phase,
        average_strength=min(total_strength / count, 1.0),
        average_confidence=min(total_confidence / count, 1.0),
    )


def compute_quality_score(relationships: List[Relationship]) -> float:
    """Blend of mean confidence and evidence richness (3+ items counts as full)."""
    if not relationships:
        return 0.0
    count = len(relationships)
    avg_confidence = sum(rel.confidence for rel in relationships) / count
    evidence_quality = sum(min(len(rel.evidence) / 3, 1.0) for rel in relationships) / count
    return min(avg_confidence * 0.7 + evidence_quality * 0.3, 1.0)


# ===================================================================
# Transient models
# ===================================================================

@dataclass
class ArtifactContent:
    """An artifact together with the content handed to detectors."""

    phase: str
    name: str
    type: Optional[str] = None
    path: Optional[str] = None
    content: str = ""
    insights: Any = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def ref(self) -> ArtifactRef:
        return ArtifactRef(phase=self.phase, name=self.name, type=self.type, path=self.path)

    @property
    def key(self) -> str:
        return f"{self.phase}/{self.name}"


@dataclass
class DetectorInfo:
    name: str
    version: str
    kind: str
    capabilities: List[str]
    supported_types: List[str]
    priority: int
    configuration: Dict[str, Any] = field(default_factory=dict)


@dataclass
class EffortEstimate:
    hours: float
    complexity: str


@dataclass
class ImpactedArtifact:
    artifact: ArtifactRef
    impact_type: ImpactType
    severity: Severity
    confidence: float
    propagation_path: List[ArtifactRef]
    estimated_effort: EffortEstimate
    recommendations: List[str]
    score: float = 0.0


@dataclass
class ImpactSummary:
    total_impacted: int
    highest_severity: Severity
    average_confidence: float
    critical_path: Optional[List[ArtifactRef]]
    severity_counts: Dict[str, int]
    estimated_total_effort: EffortEstimate


@dataclass
class ImpactReport:
    analysis_id: str
    source_artifact: ArtifactRef
    change_description: str
    analyzed_at: str
    impacted_artifacts: List[ImpactedArtifact]
    summary: ImpactSummary
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        def refs(path: Optional[List[ArtifactRef]]) -> Optional[List[Dict[str, Any]]]:
            return None if path is None else [ref.to_json_dict() for ref in path]

        return {
            "analysisId": self.analysis_id,
            "sourceArtifact": self.source_artifact.to_json_dict(),
            "changeDescription": self.change_description,
            "analyzedAt": self.analyzed_at,
            "impactedArtifacts": [
                {
                    "artifact": item.artifact.to_json_dict(),
                    "impactType": item.impact_type,
                    "severity": item.severity.value,
                    "confidence": item.confidence,
                    "propagationPath": refs(item.propagation_path),
                    "estimatedEffort": {
                        "hours": item.estimated_effort.hours,
                        "complexity": item.estimated_effort.complexity,
                    },
                    "recommendations": list(item.recommendations),
                }
                for item in self.impacted_artifacts
            ],
            "summary": {
                "totalImpacted": self.summary.total_impacted,
                "highestSeverity": self.summary.highest_severity.value,
                "averageConfidence": self.summary.average_confidence,
                "criticalPath": refs(self.summary.critical_path),
                "severityCounts": dict(self.summary.severity_counts),
                "estimatedTotalEffort": {
                    "hours": self.summary.estimated_total_effort.hours,
                    "complexity": self.summary.estimated_total_effort.complexity,
                },
            },
            "metadata": dict(self.metadata),
        }


@dataclass
class StorageIssue:
    type: Literal["corruption", "performance", "capacity", "access"]
    severity: Severity
    description: str
    recommendation: Optional[str] = None


@dataclass
class StorageHealth:
    status: Literal["healthy", "degraded", "unhealthy"]
    last_check: str
    metrics: Dict[str, Any] = field(default_factory=dict)
    issues: List[StorageIssue] = field(default_factory=list)
