"""Graph export helpers for DOT output."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List

from .models import ArtifactRef, Relationship, RelationshipGraph


def export_dot(graph: RelationshipGraph, output_file: Path, focus: str = "") -> int:
    """Write *graph* as a Graphviz digraph, one cluster per phase.

    Returns the number of edges written.
    """
    nodes: Dict[str, ArtifactRef] = {artifact.key: artifact for artifact in graph.artifacts}
    for rel in graph.relationships:
        nodes.setdefault(rel.source.key, rel.source)
        nodes.setdefault(rel.target.key, rel.target)

    selected = _focused_subgraph(nodes, graph.relationships, focus)

    by_phase: Dict[str, List[ArtifactRef]] = {}
    for key in selected["nodes"]:
        node = nodes[key]
        by_phase.setdefault(node.phase, []).append(node)

    lines = ["digraph PhaseGraph {"]
    lines.append("  rankdir=LR;")
    lines.append("  node [shape=box];")

    for index, (phase, members) in enumerate(by_phase.items()):
        lines.append(f"  subgraph cluster_{index} {{")
        lines.append(f'    label="{_esc(phase)}";')
        for node in members:
            label = f"{_esc(node.name)}\\n{_esc(node.type or 'artifact')}"
            lines.append(f'    "{_esc(node.key)}" [label="{label}"];')
        lines.append("  }")

    for rel in selected["edges"]:
        label = f"{rel.type} ({rel.confidence:.2f})"
        style = "solid" if rel.confidence >= 0.7 else "dashed"
        lines.append(
            f'  "{_esc(rel.source.key)}" -> "{_esc(rel.target.key)}" '
            f'[label="{_esc(label)}", style={style}];'
        )

    lines.append("}")
    output_file.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return len(selected["edges"])


def _focused_subgraph(nodes: Dict[str, ArtifactRef], edges: List[Relationship], focus: str) -> Dict[str, List]:
    if not focus:
        return {"nodes": list(nodes.keys()), "edges": list(edges)}

    focus_ids = {key for key, node in nodes.items() if node.matches(focus) or focus in key}

    if not focus_ids:
        return {"nodes": list(nodes.keys()), "edges": list(edges)}

    edge_subset = [e for e in edges if e.source.key in focus_ids or e.target.key in focus_ids]
    node_subset = set(focus_ids)
    for e in edge_subset:
        node_subset.add(e.source.key)
        node_subset.add(e.target.key)
    return {"nodes": sorted(node_subset), "edges": edge_subset}


def _esc(text: str) -> str:
    return text.replace("\\", "\\\\").replace('"', '\\"')
