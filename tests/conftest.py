"""Pytest configuration and fixtures for PhaseGraph tests."""

import shutil
import tempfile
from pathlib import Path
from typing import Callable, Generator, List, Optional

import pytest

from phasegraph.config_manager import Settings, StorageSettings
from phasegraph.models import (
    ArtifactRef,
    Evidence,
    Relationship,
    RelationshipGraph,
    utc_now,
)
from phasegraph.storage import JSONGraphStore

DELIVERABLES = {
    "concept/market_analysis.md": (
        "# Market Analysis\n"
        "Target users are small product teams.\n"
    ),
    "requirements/prd.md": (
        "# PRD\n"
        "This document is derived from market_analysis. See market_analysis.md for sizing.\n"
        "The feature set depends on market analysis findings.\n"
    ),
    "design/system_design.md": (
        "# System Design\n"
        "As described in prd. The architecture requires prd sign-off.\n"
    ),
}


@pytest.fixture(autouse=True)
def _isolated_config(tmp_path_factory, monkeypatch):
    """Point the user-level config at an empty temp dir and clear env overrides."""
    home = tmp_path_factory.mktemp("phasegraph_home")
    monkeypatch.setattr("phasegraph.config.BASE_DIR", home)
    monkeypatch.setattr("phasegraph.config.CONFIG_FILE", home / "config.toml")
    monkeypatch.delenv("PHASEGRAPH_TIMEOUT_MS", raising=False)
    monkeypatch.delenv("PHASEGRAPH_PARALLEL", raising=False)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    tmp = Path(tempfile.mkdtemp())
    yield tmp
    shutil.rmtree(tmp, ignore_errors=True)


def write_deliverables(project_root: Path, files: dict) -> Path:
    base = project_root / ".phasegraph" / "deliverables"
    for relative, content in files.items():
        path = base / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    return project_root


@pytest.fixture
def project_root(temp_dir: Path) -> Path:
    """A project with one deliverable in each of concept, requirements and design."""
    return write_deliverables(temp_dir / "demo_project", DELIVERABLES)


@pytest.fixture
def empty_project(temp_dir: Path) -> Path:
    root = temp_dir / "empty_project"
    root.mkdir()
    return root


@pytest.fixture
def settings() -> Settings:
    return Settings()


@pytest.fixture
def store() -> JSONGraphStore:
    """A JSON store with a short lock timeout."""
    return JSONGraphStore(StorageSettings(lock_timeout_seconds=0.3))


@pytest.fixture
def make_relationship() -> Callable[..., Relationship]:
    """Factory for relationships between ``phase/name`` keys."""

    def _make(
        source: str,
        target: str,
        rel_type: str = "depends_on",
        confidence: float = 0.8,
        strength: Optional[float] = None,
        evidence: int = 1,
        detected_by: str = "test",
    ) -> Relationship:
        src_phase, src_name = source.split("/")
        tgt_phase, tgt_name = target.split("/")
        return Relationship.create(
            ArtifactRef(phase=src_phase, name=src_name),
            ArtifactRef(phase=tgt_phase, name=tgt_name),
            rel_type,
            confidence=confidence,
            evidence=[
                Evidence(kind="structural_reference", description=f"match {i}", score=confidence)
                for i in range(evidence)
            ],
            detected_by=detected_by,
            strength=strength,
        )

    return _make


@pytest.fixture
def make_graph() -> Callable[..., RelationshipGraph]:
    """Factory for graphs with statistics already computed."""

    def _make(relationships: List[Relationship], project_id: str = "demo") -> RelationshipGraph:
        artifacts = {}
        for rel in relationships:
            artifacts.setdefault(rel.source.key, rel.source)
            artifacts.setdefault(rel.target.key, rel.target)
        now = utc_now()
        graph = RelationshipGraph(
            project_id=project_id,
            generated_at=now,
            last_updated=now,
            relationships=relationships,
            artifacts=list(artifacts.values()),
            metadata={"generated_by": "test"},
        )
        graph.refresh_statistics()
        return graph

    return _make


@pytest.fixture
def chain_graph(make_relationship, make_graph) -> RelationshipGraph:
    """concept/a -> requirements/b -> design/c -> architecture/d (depends_on, strength 0.9)."""
    return make_graph([
        make_relationship("concept/a", "requirements/b", strength=0.9),
        make_relationship("requirements/b", "design/c", strength=0.9),
        make_relationship("design/c", "architecture/d", strength=0.9),
    ])


@pytest.fixture
def deliverable_writer() -> Callable[[Path, dict], Path]:
    return write_deliverables
