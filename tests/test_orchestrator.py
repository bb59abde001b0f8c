"""Tests for the relationship orchestrator."""

import asyncio
from pathlib import Path
from typing import List

import pytest

from phasegraph.config_manager import OrchestratorSettings, Settings
from phasegraph.errors import (
    ArtifactNotFoundError,
    ContentProviderError,
    LockTimeoutError,
    RelationshipNotFoundError,
)
from phasegraph.file_io import lock_path_for
from phasegraph.models import DetectionOptions, Relationship
from phasegraph.orchestrator import RelationshipOrchestrator, deduplicate_relationships
from phasegraph.storage import JSONGraphStore
from phasegraph.structural_detector import StructuralDetector

EXPECTED_EDGES = {
    ("requirements/prd", "concept/market_analysis", "references"),
    ("requirements/prd", "concept/market_analysis", "depends_on"),
    ("design/system_design", "requirements/prd", "references"),
    ("design/system_design", "requirements/prd", "depends_on"),
}


def make_settings(**orchestrator) -> Settings:
    return Settings(orchestrator=OrchestratorSettings(**orchestrator))


class SlowDetector(StructuralDetector):
    name = "SlowDetector"

    def __init__(self, delay: float):
        super().__init__()
        self.delay = delay

    async def detect(self, source, targets, options=None) -> List[Relationship]:
        await asyncio.sleep(self.delay)
        return await super().detect(source, targets, options)


class ExplodingDetector(StructuralDetector):
    name = "ExplodingDetector"

    async def detect(self, source, targets, options=None) -> List[Relationship]:
        raise RuntimeError("detector crashed")


class FixedDetector(StructuralDetector):
    """Returns the same canned relationships for every source."""

    name = "FixedDetector"

    def __init__(self, relationships: List[Relationship], priority: int = 10):
        super().__init__()
        self.relationships = relationships
        self.priority = priority

    async def detect(self, source, targets, options=None) -> List[Relationship]:
        return [rel for rel in self.relationships if rel.source.key == source.key]


class FailingProvider:
    def analyze(self, path, artifact_type):
        return {"success": False, "error": "unreadable"}


class TestAnalyzeProject:
    """Tests for full-project detection."""

    @pytest.mark.asyncio
    async def test_detects_and_persists(self, project_root: Path):
        orchestrator = RelationshipOrchestrator(settings=make_settings())
        graph = await orchestrator.analyze_project_relationships(project_root)

        assert {rel.dedup_key for rel in graph.relationships} == EXPECTED_EDGES
        assert graph.statistics.total_relationships == 4
        assert len(graph.artifacts) == 3
        assert graph.metadata.detection_algorithms == ["StructuralDetector"]
        assert 0 < graph.metadata.quality_score <= 1
        for rel in graph.relationships:
            assert 0 <= rel.confidence <= 1
            assert 0 <= rel.strength <= 1
            assert rel.source.key != rel.target.key

        stored = orchestrator.storage.get_all(project_root)
        assert len(stored.relationships) == 4
        assert stored.artifacts[0].path.endswith("market_analysis.md")

    @pytest.mark.asyncio
    async def test_sequential_matches_parallel(self, project_root: Path):
        parallel = await RelationshipOrchestrator(settings=make_settings()).analyze_project_relationships(project_root)
        sequential = await RelationshipOrchestrator(
            settings=make_settings(enable_parallel_detection=False)
        ).analyze_project_relationships(project_root)

        assert {r.id for r in parallel.relationships} == {r.id for r in sequential.relationships}

    @pytest.mark.asyncio
    async def test_empty_project_not_persisted(self, empty_project: Path):
        orchestrator = RelationshipOrchestrator(settings=make_settings())
        graph = await orchestrator.analyze_project_relationships(empty_project)

        assert graph.relationships == []
        assert graph.statistics.total_relationships == 0
        assert not orchestrator.storage.graph_path(empty_project).exists()
        assert orchestrator.get_metrics()["total_analyses"] == 0

    @pytest.mark.asyncio
    async def test_metrics(self, project_root: Path):
        orchestrator = RelationshipOrchestrator(settings=make_settings())
        await orchestrator.analyze_project_relationships(project_root)
        await orchestrator.analyze_project_relationships(project_root)

        metrics = orchestrator.get_metrics()
        assert metrics["total_analyses"] == 2
        assert metrics["average_processing_time_ms"] > 0
        assert metrics["last_batch"] == {"total": 3, "successful": 3, "failed": 0, "timed_out": 0}

    @pytest.mark.asyncio
    async def test_timeout_does_not_abort_batch(self, project_root: Path):
        orchestrator = RelationshipOrchestrator(
            detectors=[StructuralDetector(), SlowDetector(delay=5.0)],
            settings=make_settings(timeout_ms=200),
        )
        graph = await orchestrator.analyze_project_relationships(project_root)

        assert {rel.dedup_key for rel in graph.relationships} == EXPECTED_EDGES
        batch = orchestrator.get_metrics()["last_batch"]
        assert batch["timed_out"] == 3
        assert batch["failed"] == 3
        assert batch["successful"] == 3

    @pytest.mark.parametrize("parallel", [True, False])
    @pytest.mark.asyncio
    async def test_failing_detector_contributes_nothing(self, project_root: Path, parallel):
        orchestrator = RelationshipOrchestrator(
            detectors=[ExplodingDetector(), StructuralDetector()],
            settings=make_settings(enable_parallel_detection=parallel),
        )
        graph = await orchestrator.analyze_project_relationships(project_root)

        assert {rel.dedup_key for rel in graph.relationships} == EXPECTED_EDGES
        assert orchestrator.get_metrics()["last_batch"]["failed"] == 3

    @pytest.mark.asyncio
    async def test_duplicates_keep_higher_confidence(self, project_root, make_relationship):
        weak = make_relationship(
            "requirements/prd", "concept/market_analysis", "references", confidence=0.75, detected_by="Fixed"
        )
        strong = make_relationship(
            "requirements/prd", "concept/market_analysis", "references", confidence=0.95, detected_by="Fixed"
        )
        orchestrator = RelationshipOrchestrator(
            detectors=[StructuralDetector(), FixedDetector([weak, strong])],
            settings=make_settings(),
        )
        graph = await orchestrator.analyze_project_relationships(project_root)

        matching = [
            rel for rel in graph.relationships
            if rel.dedup_key == ("requirements/prd", "concept/market_analysis", "references")
        ]
        assert len(matching) == 1
        assert matching[0].confidence == 0.95

    @pytest.mark.asyncio
    async def test_options_filter_candidates(self, project_root: Path):
        orchestrator = RelationshipOrchestrator(settings=make_settings())
        graph = await orchestrator.analyze_project_relationships(
            project_root,
            {"excludeTypes": ["references"], "targetPhases": ["concept"]},
        )
        assert {rel.dedup_key for rel in graph.relationships} == {
            ("requirements/prd", "concept/market_analysis", "depends_on"),
        }

    @pytest.mark.asyncio
    async def test_max_relationships_cap(self, project_root: Path):
        orchestrator = RelationshipOrchestrator(settings=make_settings())
        graph = await orchestrator.analyze_project_relationships(project_root, DetectionOptions(max_relationships=2))
        assert len(graph.relationships) == 2
        assert graph.statistics.total_relationships == 2

    @pytest.mark.asyncio
    async def test_algorithms_option(self, project_root: Path):
        orchestrator = RelationshipOrchestrator(settings=make_settings())
        graph = await orchestrator.analyze_project_relationships(project_root, {"algorithms": ["Nothing"]})
        assert graph.relationships == []
        assert graph.metadata.detection_algorithms == []

    @pytest.mark.asyncio
    async def test_content_provider_failure_propagates(self, project_root: Path):
        orchestrator = RelationshipOrchestrator(content_provider=FailingProvider(), settings=make_settings())
        with pytest.raises(ContentProviderError):
            await orchestrator.analyze_project_relationships(project_root)

    @pytest.mark.asyncio
    async def test_lock_wait_keeps_event_loop_running(self, project_root: Path):
        settings = make_settings()
        settings.storage.lock_timeout_seconds = 0.6
        orchestrator = RelationshipOrchestrator(settings=settings)
        lock = lock_path_for(orchestrator.storage.graph_path(project_root))
        lock.parent.mkdir(parents=True, exist_ok=True)
        lock.write_text("{}", encoding="utf-8")

        ticks = 0

        async def ticker():
            nonlocal ticks
            while True:
                ticks += 1
                await asyncio.sleep(0.02)

        task = asyncio.create_task(ticker())
        try:
            with pytest.raises(LockTimeoutError):
                await orchestrator.analyze_project_relationships(project_root)
        finally:
            task.cancel()

        assert ticks >= 10
        assert lock.exists()


class TestQueries:
    """Tests for relationship lookups and impact analysis."""

    @pytest.mark.asyncio
    async def test_deliverable_relationships_cached(self, project_root: Path):
        orchestrator = RelationshipOrchestrator(settings=make_settings())
        await orchestrator.analyze_project_relationships(project_root)

        first = await orchestrator.get_deliverable_relationships(project_root, "prd")
        second = await orchestrator.get_deliverable_relationships(project_root, "prd")

        assert len(first) == 4
        assert [r.id for r in first] == [r.id for r in second]
        metrics = orchestrator.get_metrics()
        assert metrics["cache_hits"] == 1
        assert metrics["cache_misses"] == 1

    @pytest.mark.asyncio
    async def test_query_options(self, project_root: Path):
        orchestrator = RelationshipOrchestrator(settings=make_settings())
        await orchestrator.analyze_project_relationships(project_root)

        found = await orchestrator.get_deliverable_relationships(
            project_root, "requirements/prd", {"relationshipTypes": ["depends_on"], "limit": 1}
        )
        assert len(found) == 1
        assert found[0].type == "depends_on"

    @pytest.mark.asyncio
    async def test_unknown_artifact_returns_empty(self, project_root: Path):
        orchestrator = RelationshipOrchestrator(settings=make_settings())
        await orchestrator.analyze_project_relationships(project_root)
        assert await orchestrator.get_deliverable_relationships(project_root, "deployment/ghost") == []

    @pytest.mark.asyncio
    async def test_impact_runs_analysis_when_graph_empty(self, project_root: Path):
        orchestrator = RelationshipOrchestrator(settings=make_settings())
        report = await orchestrator.analyze_change_impact(
            project_root, "design/system_design", {"type": "deletion", "scope": "major"}
        )

        assert orchestrator.get_metrics()["total_analyses"] == 1
        keys = {item.artifact.key for item in report.impacted_artifacts}
        assert keys == {"requirements/prd", "concept/market_analysis"}

    @pytest.mark.asyncio
    async def test_impact_unknown_artifact(self, project_root: Path):
        orchestrator = RelationshipOrchestrator(settings=make_settings())
        with pytest.raises(ArtifactNotFoundError):
            await orchestrator.analyze_change_impact(project_root, "deployment/ghost")


class TestMutations:
    """Tests for update/delete through the orchestrator."""

    @pytest.mark.asyncio
    async def test_update_invalidates_cache(self, project_root: Path):
        orchestrator = RelationshipOrchestrator(settings=make_settings())
        await orchestrator.analyze_project_relationships(project_root)
        before = await orchestrator.get_deliverable_relationships(project_root, "prd")

        orchestrator.update_relationship(project_root, before[0].id, {"metadata": {"validation_status": "rejected"}})
        after = await orchestrator.get_deliverable_relationships(project_root, "prd")

        changed = next(rel for rel in after if rel.id == before[0].id)
        assert changed.metadata.validation_status == "rejected"

    @pytest.mark.asyncio
    async def test_delete(self, project_root: Path):
        orchestrator = RelationshipOrchestrator(settings=make_settings())
        graph = await orchestrator.analyze_project_relationships(project_root)
        await orchestrator.get_deliverable_relationships(project_root, "prd")

        assert orchestrator.delete_relationship(project_root, graph.relationships[0].id) is True
        assert len(await orchestrator.get_deliverable_relationships(project_root, "prd")) == 3

    def test_delete_unknown(self, project_root: Path):
        orchestrator = RelationshipOrchestrator(settings=make_settings())
        with pytest.raises(RelationshipNotFoundError):
            orchestrator.delete_relationship(project_root, "missing")


class TestIntrospection:
    """Tests for health and info helpers."""

    def test_detector_info(self):
        info = RelationshipOrchestrator(settings=make_settings()).get_detector_info()
        assert [entry["name"] for entry in info] == ["StructuralDetector"]
        assert info[0]["available"] is True

    def test_analyzer_info(self):
        info = RelationshipOrchestrator(settings=make_settings()).get_analyzer_info()
        assert info["type"] == "graph_traversal"

    def test_storage_health(self, project_root: Path):
        orchestrator = RelationshipOrchestrator(storage=JSONGraphStore(), settings=make_settings())
        assert orchestrator.get_storage_health(project_root).status == "healthy"


def test_deduplicate_relationships(make_relationship):
    rels = [
        make_relationship("concept/a", "design/b", confidence=0.6),
        make_relationship("concept/a", "design/b", confidence=0.9),
        make_relationship("concept/a", "design/b", "references", confidence=0.7),
    ]
    result = deduplicate_relationships(rels)
    assert [(r.type, r.confidence) for r in result] == [("depends_on", 0.9), ("references", 0.7)]
