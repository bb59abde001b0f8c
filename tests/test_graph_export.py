"""Tests for DOT export."""

from pathlib import Path

from phasegraph.graph_export import export_dot


def test_export_writes_clusters_and_edges(temp_dir: Path, chain_graph):
    out = temp_dir / "graph.dot"

    count = export_dot(chain_graph, out)

    text = out.read_text(encoding="utf-8")
    assert count == 3
    assert text.startswith("digraph PhaseGraph {")
    assert text.count("subgraph cluster_") == 4
    assert 'label="concept";' in text
    assert '"concept/a" -> "requirements/b" [label="depends_on (0.80)", style=solid];' in text


def test_low_confidence_edges_are_dashed(temp_dir: Path, make_relationship, make_graph):
    graph = make_graph([make_relationship("concept/a", "design/b", "mentions", confidence=0.5)])
    out = temp_dir / "graph.dot"
    export_dot(graph, out)
    assert "style=dashed" in out.read_text(encoding="utf-8")


def test_focus_limits_to_neighbours(temp_dir: Path, chain_graph):
    out = temp_dir / "graph.dot"

    count = export_dot(chain_graph, out, focus="design/c")

    text = out.read_text(encoding="utf-8")
    assert count == 2
    assert '"concept/a"' not in text
    assert '"requirements/b" -> "design/c"' in text
    assert '"design/c" -> "architecture/d"' in text


def test_unknown_focus_exports_everything(temp_dir: Path, chain_graph):
    assert export_dot(chain_graph, temp_dir / "graph.dot", focus="nothing-here") == 3


def test_quotes_are_escaped(temp_dir: Path, make_relationship, make_graph):
    graph = make_graph([make_relationship('concept/say "hi"', "design/b")])
    out = temp_dir / "graph.dot"
    export_dot(graph, out)
    assert '"concept/say \\"hi\\""' in out.read_text(encoding="utf-8")
