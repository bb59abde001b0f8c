"""Change-impact propagation over a relationship graph.

Starting from a changed artifact the analyzer walks outgoing edges depth
first, scores every path it discovers and keeps the strongest path per
impacted artifact.  A path's combined score is::

    0.4 * path_score + 0.3 * change_score + 0.3 * relationship_score

where ``path_score`` is the mean of ``weight(type) * strength`` over the
path's edges, ``change_score`` is the change-type coefficient times the
change-scope coefficient, and ``relationship_score`` is the weakest edge
strength on the path.
"""

from __future__ import annotations

import logging
import re
import time
import warnings
from collections import defaultdict
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from pydantic import ValidationError

from .config_manager import ImpactSettings
from .errors import ArtifactNotFoundError, SchemaValidationError
from .models import (
    SEVERITY_ORDER,
    ArtifactRef,
    ChangeDescription,
    EffortEstimate,
    ImpactedArtifact,
    ImpactReport,
    ImpactSummary,
    Relationship,
    RelationshipGraph,
    Severity,
    utc_now,
)

logger = logging.getLogger(__name__)

CHANGE_TYPE_SCORES: Dict[str, float] = {
    "creation": 0.3,
    "modification": 0.5,
    "deletion": 0.8,
    "restructure": 0.9,
}

CHANGE_SCOPE_SCORES: Dict[str, float] = {
    "trivial": 0.1,
    "minor": 0.3,
    "moderate": 0.5,
    "major": 0.7,
    "critical": 0.9,
}

BASE_EFFORT_HOURS: Dict[Severity, float] = {
    Severity.MINIMAL: 0.5,
    Severity.LOW: 2.0,
    Severity.MEDIUM: 8.0,
    Severity.HIGH: 24.0,
    Severity.CRITICAL: 72.0,
}

IMPACT_TYPE_MULTIPLIERS: Dict[str, float] = {
    "direct": 1.0,
    "indirect": 1.5,
    "cascading": 2.0,
}

COMPLEXITY_LABELS: Dict[Severity, str] = {
    Severity.MINIMAL: "trivial",
    Severity.LOW: "simple",
    Severity.MEDIUM: "moderate",
    Severity.HIGH: "complex",
    Severity.CRITICAL: "major",
}

SEVERITY_RECOMMENDATIONS: Dict[Severity, List[str]] = {
    Severity.CRITICAL: [
        "Immediate review and update required",
        "Consider blocking deployment until resolved",
    ],
    Severity.HIGH: [
        "Schedule update in current iteration",
        "Review dependencies and test thoroughly",
    ],
    Severity.MEDIUM: [
        "Plan update in next iteration",
        "Monitor for consistency issues",
    ],
}

CASCADING_RECOMMENDATION = "Review entire dependency chain"

_MAX_CONFIDENCE = 0.95


@dataclass
class PropagationPath:
    """Artifacts visited from the source together with the edges followed."""

    nodes: List[ArtifactRef]
    edges: List[Relationship]

    @property
    def target(self) -> ArtifactRef:
        return self.nodes[-1]

    @property
    def impact_type(self) -> str:
        if len(self.nodes) <= 2:
            return "direct"
        if len(self.nodes) == 3:
            return "indirect"
        return "cascading"


def compare_severity(a: Union[str, Severity], b: Union[str, Severity]) -> int:
    """Return -1, 0 or 1 following MINIMAL < LOW < MEDIUM < HIGH < CRITICAL."""
    rank_a = SEVERITY_ORDER.index(Severity(a))
    rank_b = SEVERITY_ORDER.index(Severity(b))
    return (rank_a > rank_b) - (rank_a < rank_b)


def _coerce_change(change: Union[ChangeDescription, Mapping[str, Any], None]) -> ChangeDescription:
    if change is None:
        return ChangeDescription()
    if isinstance(change, ChangeDescription):
        return change
    try:
        return ChangeDescription.model_validate(dict(change))
    except ValidationError as exc:
        raise SchemaValidationError("Invalid change description", exc.errors(include_url=False)) from exc


class ImpactAnalyzer:
    """Graph-traversal impact analysis with severity scoring."""

    name = "ImpactAnalyzer"
    version = "1.0.0"

    def __init__(self, settings: Optional[ImpactSettings] = None):
        self.settings = settings or ImpactSettings()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def analyze_impact(
        self,
        artifact_id: Union[str, ArtifactRef],
        change: Union[ChangeDescription, Mapping[str, Any], None],
        graph: RelationshipGraph,
    ) -> ImpactReport:
        """Predict which artifacts a change to ``artifact_id`` affects.

        Raises:
            ArtifactNotFoundError: ``artifact_id`` does not appear in ``graph``.
        """
        started = time.perf_counter()
        change = _coerce_change(change)
        source = graph.find_artifact(artifact_id)
        if source is None:
            raise ArtifactNotFoundError(str(getattr(artifact_id, "key", artifact_id)))

        paths = self._collect_paths(graph, source.key, self.settings.max_traversal_depth)
        best: Dict[str, Tuple[float, PropagationPath]] = {}
        for path in paths:
            score = self.score_path(path, change)
            current = best.get(path.target.key)
            if current is None or score > current[0]:
                best[path.target.key] = (score, path)

        impacted: List[ImpactedArtifact] = []
        for score, path in best.values():
            severity = self.score_to_severity(score)
            if severity == Severity.MINIMAL:
                continue
            impacted.append(ImpactedArtifact(
                artifact=path.target,
                impact_type=path.impact_type,
                severity=severity,
                confidence=round(min(score, _MAX_CONFIDENCE), 4),
                propagation_path=list(path.nodes),
                estimated_effort=self.estimate_effort(severity, path.impact_type),
                recommendations=self.generate_recommendations(severity, path.impact_type),
                score=round(score, 4),
            ))

        impacted.sort(key=lambda item: (SEVERITY_ORDER.index(item.severity), item.confidence), reverse=True)
        summary = self._summarize(impacted)
        logger.debug(
            "Impact of %s on %s: %d path(s), %d impacted",
            change.type, source.key, len(paths), len(impacted),
        )

        return ImpactReport(
            analysis_id=self._analysis_id(source.key),
            source_artifact=source,
            change_description=change.description,
            analyzed_at=utc_now(),
            impacted_artifacts=impacted,
            summary=summary,
            metadata={
                "analyzer": self.name,
                "version": self.version,
                "changeType": change.type,
                "changeScope": change.scope,
                "totalPathsAnalyzed": len(paths),
                "maxDepth": self.settings.max_traversal_depth,
                "analysisQuality": self._analysis_quality(impacted, len(paths)),
                "processingTimeMs": round((time.perf_counter() - started) * 1000, 2),
            },
        )

    def get_impact_paths(
        self,
        graph: RelationshipGraph,
        source_id: Union[str, ArtifactRef],
        max_depth: Optional[int] = None,
    ) -> List[List[ArtifactRef]]:
        """Every propagation path from ``source_id``; ``[]`` for unknown artifacts."""
        source = graph.find_artifact(source_id)
        if source is None:
            return []
        depth = self.settings.max_traversal_depth if max_depth is None else max_depth
        return [path.nodes for path in self._collect_paths(graph, source.key, depth)]

    def calculate_impact_severity(
        self,
        paths: Sequence[Sequence[ArtifactRef]],
        change: Union[ChangeDescription, Mapping[str, Any], None],
        graph: RelationshipGraph,
    ) -> Severity:
        """Overall severity of a set of paths: the worst path wins."""
        change = _coerce_change(change)
        worst = Severity.MINIMAL
        for nodes in paths:
            path = self._resolve_path(graph, nodes)
            if path is None:
                logger.debug("Skipping path with no traversable edge: %s", [n.key for n in nodes])
                continue
            severity = self.score_to_severity(self.score_path(path, change))
            if compare_severity(severity, worst) > 0:
                worst = severity
        return worst

    def score_path(self, path: PropagationPath, change: ChangeDescription) -> float:
        if not path.edges:
            return 0.0
        path_score = sum(self.weight_for(rel.type) * rel.strength for rel in path.edges) / len(path.edges)
        relationship_score = min(rel.strength for rel in path.edges)
        return (
            0.4 * path_score
            + 0.3 * self.change_score(change)
            + 0.3 * relationship_score
        )

    @staticmethod
    def change_score(change: ChangeDescription) -> float:
        return CHANGE_TYPE_SCORES.get(change.type, 0.5) * CHANGE_SCOPE_SCORES.get(change.scope, 0.5)

    def score_to_severity(self, score: float) -> Severity:
        thresholds = self.settings.severity_thresholds
        for severity in reversed(SEVERITY_ORDER[1:]):
            if score >= thresholds.get(severity.value, 1.0):
                return severity
        return Severity.MINIMAL

    def weight_for(self, rel_type: Any) -> float:
        return self.settings.impact_weights.get(getattr(rel_type, "value", rel_type), 0.0)

    @staticmethod
    def estimate_effort(severity: Severity, impact_type: str) -> EffortEstimate:
        hours = BASE_EFFORT_HOURS[severity] * IMPACT_TYPE_MULTIPLIERS.get(impact_type, 1.0)
        return EffortEstimate(hours=hours, complexity=COMPLEXITY_LABELS[severity])

    @staticmethod
    def generate_recommendations(severity: Severity, impact_type: str) -> List[str]:
        recommendations = list(SEVERITY_RECOMMENDATIONS.get(severity, []))
        if impact_type == "cascading":
            recommendations.append(CASCADING_RECOMMENDATION)
        return recommendations

    def attenuated_path_severity(
        self,
        path: Sequence[ArtifactRef],
        change: Union[ChangeDescription, Mapping[str, Any], None],
    ) -> Dict[str, Any]:
        """Quick severity preview that only attenuates the change score by path length.

        Deprecated: it ignores edge types and strengths and can disagree with
        :meth:`analyze_impact`.  Use :meth:`calculate_impact_severity`.
        """
        warnings.warn(
            "attenuated_path_severity is deprecated; use calculate_impact_severity",
            DeprecationWarning,
            stacklevel=2,
        )
        change = _coerce_change(change)
        change_score = self.change_score(change)
        attenuation = 0.8 ** max(len(path) - 1, 0)
        score = change_score * attenuation
        return {
            "severity": self.score_to_severity(score),
            "score": score,
            "factors": {
                "pathLength": len(path),
                "changeScore": change_score,
                "attenuationFactor": attenuation,
            },
        }

    def get_analyzer_info(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "type": "graph_traversal",
            "capabilities": [
                "impact_propagation",
                "severity_analysis",
                "effort_estimation",
                "recommendation_generation",
            ],
            "configuration": asdict(self.settings),
        }

    # ------------------------------------------------------------------
    # Traversal
    # ------------------------------------------------------------------

    def _collect_paths(self, graph: RelationshipGraph, source_key: str, max_depth: int) -> List[PropagationPath]:
        adjacency: Dict[str, List[Relationship]] = defaultdict(list)
        for rel in graph.relationships:
            weight = self.weight_for(rel.type)
            if weight > 0 and weight >= self.settings.min_impact_threshold:
                adjacency[rel.source.key].append(rel)

        source = graph.find_artifact(source_key)
        paths: List[PropagationPath] = []
        if source is None or max_depth <= 0:
            return paths

        # The visited set only covers the current path, so a node reachable
        # along several branches is reported once per branch.
        stack: List[Tuple[PropagationPath, frozenset]] = [
            (PropagationPath(nodes=[source], edges=[]), frozenset({source.key}))
        ]
        while stack:
            path, visited = stack.pop()
            if len(path.edges) >= max_depth:
                continue
            for rel in reversed(adjacency.get(path.target.key, [])):
                if rel.target.key in visited:
                    continue
                extended = PropagationPath(nodes=path.nodes + [rel.target], edges=path.edges + [rel])
                paths.append(extended)
                stack.append((extended, visited | {rel.target.key}))
        return paths

    def _resolve_path(self, graph: RelationshipGraph, nodes: Sequence[ArtifactRef]) -> Optional[PropagationPath]:
        """Rebuild the edges of a node path, picking the heaviest edge per hop."""
        edges: List[Relationship] = []
        for current, following in zip(nodes, nodes[1:]):
            candidates = [
                rel for rel in graph.outgoing(current.key)
                if rel.target.key == following.key and self.weight_for(rel.type) > 0
            ]
            if not candidates:
                return None
            edges.append(max(candidates, key=lambda rel: self.weight_for(rel.type) * rel.strength))
        if not edges:
            return None
        return PropagationPath(nodes=list(nodes), edges=edges)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def _summarize(self, impacted: List[ImpactedArtifact]) -> ImpactSummary:
        counts = {severity.value: 0 for severity in SEVERITY_ORDER}
        for item in impacted:
            counts[item.severity.value] += 1

        if not impacted:
            return ImpactSummary(
                total_impacted=0,
                highest_severity=Severity.MINIMAL,
                average_confidence=0.0,
                critical_path=None,
                severity_counts=counts,
                estimated_total_effort=EffortEstimate(hours=0.0, complexity=COMPLEXITY_LABELS[Severity.MINIMAL]),
            )

        worst = impacted[0]
        for item in impacted[1:]:
            if compare_severity(item.severity, worst.severity) > 0:
                worst = item
        return ImpactSummary(
            total_impacted=len(impacted),
            highest_severity=worst.severity,
            average_confidence=round(sum(i.confidence for i in impacted) / len(impacted), 4),
            critical_path=list(worst.propagation_path),
            severity_counts=counts,
            estimated_total_effort=EffortEstimate(
                hours=sum(i.estimated_effort.hours for i in impacted),
                complexity=COMPLEXITY_LABELS[worst.severity],
            ),
        )

    @staticmethod
    def _analysis_quality(impacted: List[ImpactedArtifact], path_count: int) -> float:
        if not impacted:
            return 0.0
        avg_confidence = sum(i.confidence for i in impacted) / len(impacted)
        coverage = min(path_count / 10, 1.0)
        return round(avg_confidence * 0.7 + coverage * 0.3, 4)

    @staticmethod
    def _analysis_id(source_key: str) -> str:
        raw = f"impact_{source_key}_{int(time.time() * 1000)}"
        return re.sub(r"[^a-zA-Z0-9_]", "_", raw)
