"""Coordinates detectors, graph storage and impact analysis for a project."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from functools import partial
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from pydantic import ValidationError

from .artifacts import ArtifactEnumerator, ContentProvider, PhaseDirectoryEnumerator, TextContentProvider
from .cache import TTLCache
from .config_manager import Settings
from .detector import DetectorRegistry, RelationshipDetector
from .errors import ContentProviderError, DetectorTimeoutError, SchemaValidationError, StorageError
from .impact import ImpactAnalyzer
from .models import (
    ArtifactContent,
    ArtifactRef,
    ChangeDescription,
    DetectionOptions,
    GraphMetadata,
    ImpactReport,
    QueryOptions,
    Relationship,
    RelationshipGraph,
    StorageHealth,
    compute_quality_score,
    utc_now,
)
from .storage import GraphStorage, JSONGraphStore
from .structural_detector import StructuralDetector

logger = logging.getLogger(__name__)

ProjectRoot = Union[str, Path]

VALIDATION_RULES = ["distinct_endpoints", "score_range", "deduplicated"]


@dataclass
class BatchOutcome:
    """Detector invocation counts for one analysis run."""

    total: int = 0
    successful: int = 0
    failed: int = 0
    timed_out: int = 0


def deduplicate_relationships(relationships: Iterable[Relationship]) -> List[Relationship]:
    """Collapse edges sharing ``(source, target, type)``, keeping the most confident.

    First-seen order is preserved.
    """
    kept: Dict[tuple, Relationship] = {}
    for rel in relationships:
        existing = kept.get(rel.dedup_key)
        if existing is None or rel.confidence > existing.confidence:
            kept[rel.dedup_key] = rel
    return list(kept.values())


def _coerce(model, value, label: str):
    if value is None:
        return model()
    if isinstance(value, model):
        return value
    try:
        return model.model_validate(dict(value))
    except ValidationError as exc:
        raise SchemaValidationError(f"Invalid {label}", exc.errors(include_url=False)) from exc


def _log_abandoned(detector_name: str, source_key: str, task: asyncio.Future) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("%s failed after timing out on %s: %s", detector_name, source_key, exc)
    else:
        logger.debug("Discarding late result from %s for %s", detector_name, source_key)


class RelationshipOrchestrator:
    """Runs detection over a project's artifacts and serves the resulting graph."""

    name = "RelationshipOrchestrator"
    version = "1.0.0"

    def __init__(
        self,
        detectors: Union[DetectorRegistry, Iterable[RelationshipDetector], None] = None,
        storage: Optional[GraphStorage] = None,
        impact_analyzer: Optional[ImpactAnalyzer] = None,
        enumerator: Optional[ArtifactEnumerator] = None,
        content_provider: Optional[ContentProvider] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or Settings()
        if detectors is None:
            detectors = [StructuralDetector(self.settings.detection)]
        self.detectors = detectors if isinstance(detectors, DetectorRegistry) else DetectorRegistry(detectors)
        self.storage = storage or JSONGraphStore(self.settings.storage)
        self.impact_analyzer = impact_analyzer or ImpactAnalyzer(self.settings.impact)
        self.enumerator = enumerator or PhaseDirectoryEnumerator(
            self.settings.orchestrator.deliverables_dir,
            self.settings.orchestrator.phases,
        )
        self.content_provider = content_provider or TextContentProvider()
        self.cache = TTLCache(self.settings.orchestrator.cache_ttl_seconds)
        self.metrics: Dict[str, Any] = {
            "total_analyses": 0,
            "average_processing_time_ms": 0.0,
            "total_relationships_detected": 0,
            "cache_hits": 0,
            "cache_misses": 0,
            "last_batch": None,
        }

    # ------------------------------------------------------------------
    # Artifact collection
    # ------------------------------------------------------------------

    def collect_artifacts(self, project_root: ProjectRoot) -> List[ArtifactContent]:
        """Enumerate deliverables and load their content.

        Raises:
            ContentProviderError: the provider failed on any artifact.
        """
        root = Path(project_root)
        artifacts: List[ArtifactContent] = []
        for phase, files in self.enumerator.list_artifacts(root).items():
            for item in files:
                key = f"{phase}/{item.name}"
                try:
                    result = self.content_provider.analyze(item.path, item.type)
                except ContentProviderError:
                    raise
                except Exception as exc:
                    raise ContentProviderError(f"Content provider failed on {key}: {exc}", {"artifact": key}) from exc
                if not result.get("success"):
                    raise ContentProviderError(
                        f"Content provider failed on {key}: {result.get('error', 'unknown error')}",
                        {"artifact": key},
                    )

                try:
                    path = str(Path(item.path).relative_to(root))
                except ValueError:
                    path = str(item.path)
                artifacts.append(ArtifactContent(
                    phase=phase,
                    name=item.name,
                    type=item.type,
                    path=path,
                    content=result.get("content") or "",
                    insights=result.get("insights"),
                    metadata={"size": item.size, "modified": item.modified, "analyzed": utc_now()},
                ))
        return artifacts

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    async def analyze_project_relationships(
        self,
        project_root: ProjectRoot,
        options: Union[DetectionOptions, Mapping[str, Any], None] = None,
    ) -> RelationshipGraph:
        """Detect, deduplicate, score and persist every relationship in a project.

        A project without artifacts yields an empty graph that is not
        persisted.  Individual detector failures and timeouts are logged and
        counted in ``metrics["last_batch"]``; they never abort the run.
        """
        started = time.perf_counter()
        options = _coerce(DetectionOptions, options, "detection options")
        project_id = Path(project_root).resolve().name

        artifacts = self.collect_artifacts(project_root)
        if not artifacts:
            logger.info("No artifacts found under %s", project_root)
            return RelationshipGraph.empty(project_id, self.name)

        detectors = self.detectors.available(options.algorithms)
        if not detectors:
            logger.warning("No available detectors for %s", project_root)

        batch = BatchOutcome()
        if self.settings.orchestrator.enable_parallel_detection:
            semaphore = asyncio.Semaphore(max(1, self.settings.orchestrator.max_concurrency))

            async def bounded(source: ArtifactContent) -> List[Relationship]:
                async with semaphore:
                    return await self._detect_for_source(source, artifacts, detectors, options, batch)

            results = await asyncio.gather(*(bounded(s) for s in artifacts), return_exceptions=True)
        else:
            results = []
            for source in artifacts:
                try:
                    results.append(await self._detect_for_source(source, artifacts, detectors, options, batch))
                except Exception as exc:
                    results.append(exc)

        candidates: List[Relationship] = []
        for source, result in zip(artifacts, results):
            if isinstance(result, BaseException):
                logger.warning("Relationship detection failed for %s: %s", source.key, result)
                continue
            candidates.extend(result)

        if options.exclude_types:
            excluded = set(options.exclude_types)
            candidates = [rel for rel in candidates if rel.type not in excluded]

        relationships = deduplicate_relationships(candidates)
        if len(relationships) > options.max_relationships:
            relationships.sort(key=lambda rel: rel.confidence, reverse=True)
            relationships = relationships[: options.max_relationships]

        now = utc_now()
        graph = RelationshipGraph(
            project_id=project_id,
            generated_at=now,
            last_updated=now,
            relationships=relationships,
            artifacts=[artifact.ref for artifact in artifacts],
            metadata=GraphMetadata(
                generated_by=self.name,
                detection_algorithms=[d.name for d in detectors],
                validation_rules=list(VALIDATION_RULES),
                quality_score=compute_quality_score(relationships),
            ),
        )
        graph.refresh_statistics()

        # store() may wait on the advisory lock
        if not await asyncio.to_thread(self.storage.store, project_root, graph):
            raise StorageError(f"Failed to store relationships for {project_root}")
        self._invalidate_project(project_root)

        elapsed_ms = (time.perf_counter() - started) * 1000
        self._record_analysis(elapsed_ms, len(relationships), batch)
        logger.info(
            "Detected %d relationships across %d artifacts in %.0f ms (%d/%d detector runs succeeded)",
            len(relationships), len(artifacts), elapsed_ms, batch.successful, batch.total,
        )
        return graph

    async def _detect_for_source(
        self,
        source: ArtifactContent,
        artifacts: List[ArtifactContent],
        detectors: List[RelationshipDetector],
        options: DetectionOptions,
        batch: BatchOutcome,
    ) -> List[Relationship]:
        targets = [a for a in artifacts if a.key != source.key]
        if options.cross_phase_only:
            targets = [t for t in targets if t.phase != source.phase]
        if options.target_phases:
            wanted = set(options.target_phases)
            targets = [t for t in targets if t.phase in wanted]
        if not targets:
            return []

        found: List[Relationship] = []
        for detector in detectors:
            batch.total += 1
            try:
                relationships = await self._run_with_timeout(detector, source, targets, options)
            except DetectorTimeoutError as exc:
                batch.failed += 1
                batch.timed_out += 1
                logger.warning("%s on %s", exc, source.key)
                continue
            except Exception as exc:
                batch.failed += 1
                logger.warning("%s failed on %s: %s", detector.name, source.key, exc)
                continue
            batch.successful += 1
            found.extend(rel for rel in relationships or [] if isinstance(rel, Relationship))
        return found

    async def _run_with_timeout(
        self,
        detector: RelationshipDetector,
        source: ArtifactContent,
        targets: List[ArtifactContent],
        options: DetectionOptions,
    ) -> List[Relationship]:
        """Race one detector call against the configured timeout.

        On timeout the call is left running; its eventual result is dropped
        and any exception it raises is logged.
        """
        timeout_ms = self.settings.orchestrator.timeout_ms
        task = asyncio.ensure_future(detector.detect(source, targets, options))
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout_ms / 1000)
        except asyncio.TimeoutError:
            task.add_done_callback(partial(_log_abandoned, detector.name, source.key))
            raise DetectorTimeoutError(detector.name, timeout_ms) from None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_deliverable_relationships(
        self,
        project_root: ProjectRoot,
        artifact_id: Union[str, ArtifactRef],
        query_options: Union[QueryOptions, Mapping[str, Any], None] = None,
    ) -> List[Relationship]:
        """Relationships touching an artifact; ``[]`` for unknown artifacts."""
        options = _coerce(QueryOptions, query_options, "query options")
        artifact_key = artifact_id.key if isinstance(artifact_id, ArtifactRef) else str(artifact_id)
        cache_key = (self._project_key(project_root), artifact_key, options.model_dump_json())

        if self.settings.orchestrator.enable_caching:
            cached = self.cache.get(cache_key)
            if cached is not None:
                self.metrics["cache_hits"] += 1
                return [rel.model_copy(deep=True) for rel in cached]
        self.metrics["cache_misses"] += 1

        relationships = await asyncio.to_thread(self.storage.get, project_root, artifact_id, options)
        if self.settings.orchestrator.enable_caching:
            self.cache.set(cache_key, [rel.model_copy(deep=True) for rel in relationships])
        return relationships

    async def analyze_change_impact(
        self,
        project_root: ProjectRoot,
        artifact_id: Union[str, ArtifactRef],
        change: Union[ChangeDescription, Mapping[str, Any], None] = None,
    ) -> ImpactReport:
        """Impact of changing an artifact, running detection first if nothing is stored.

        Raises:
            ArtifactNotFoundError: the artifact is not part of the graph.
        """
        graph = await asyncio.to_thread(self.storage.get_all, project_root)
        if graph.is_empty:
            logger.info("No stored relationships for %s; running full analysis", project_root)
            graph = await self.analyze_project_relationships(project_root)
        return self.impact_analyzer.analyze_impact(artifact_id, change, graph)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def update_relationship(self, project_root: ProjectRoot, relationship_id: str, patch: Dict[str, Any]) -> bool:
        updated = self.storage.update(project_root, relationship_id, patch)
        self._invalidate_project(project_root)
        return updated

    def delete_relationship(self, project_root: ProjectRoot, relationship_id: str) -> bool:
        deleted = self.storage.delete(project_root, relationship_id)
        self._invalidate_project(project_root)
        return deleted

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_storage_health(self, project_root: Optional[ProjectRoot] = None) -> StorageHealth:
        return self.storage.health(project_root)

    def get_metrics(self) -> Dict[str, Any]:
        metrics = dict(self.metrics)
        metrics["cache_size"] = len(self.cache)
        metrics["cache_hit_rate"] = self.cache.hit_rate
        return metrics

    def get_detector_info(self) -> List[Dict[str, Any]]:
        info = []
        for detector in self.detectors:
            entry = asdict(detector.get_info())
            entry["available"] = detector.is_available()
            info.append(entry)
        return info

    def get_analyzer_info(self) -> Dict[str, Any]:
        return self.impact_analyzer.get_analyzer_info()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _project_key(project_root: ProjectRoot) -> str:
        return str(Path(project_root).resolve())

    def _invalidate_project(self, project_root: ProjectRoot) -> int:
        project_key = self._project_key(project_root)
        return self.cache.invalidate_where(lambda key: key[0] == project_key)

    def _record_analysis(self, elapsed_ms: float, relationship_count: int, batch: BatchOutcome) -> None:
        count = self.metrics["total_analyses"] + 1
        average = self.metrics["average_processing_time_ms"]
        self.metrics["total_analyses"] = count
        self.metrics["average_processing_time_ms"] = average + (elapsed_ms - average) / count
        self.metrics["total_relationships_detected"] += relationship_count
        self.metrics["last_batch"] = asdict(batch)
