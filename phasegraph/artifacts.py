"""Artifact enumeration and content providers consumed by the orchestrator.

Both are narrow protocols.  The defaults here read deliverables from
``<project_root>/.phasegraph/deliverables/<phase>/`` and hand detectors the
raw text of each file.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence, Union

from . import config

logger = logging.getLogger(__name__)

_HEADING_RE = re.compile(r"^\s{0,3}#{1,6}\s+(.+?)\s*#*\s*$", re.MULTILINE)

# (substring in filename, artifact type); first match wins
_TYPE_HINTS = [
    ("market", "market_analysis"),
    ("analysis", "market_analysis"),
    ("persona", "user_personas"),
    ("user", "user_personas"),
    ("competitor", "competitor_research"),
    ("prd", "prd_complete"),
    ("requirements", "prd_complete"),
    ("stories", "user_stories"),
    ("wireframe", "wireframes"),
    ("flow", "user_flows"),
    ("system", "system_design"),
    ("design", "system_design"),
    ("architecture", "architecture"),
    ("database", "database_schema"),
    ("schema", "database_schema"),
    ("api", "api_specification"),
]


@dataclass(frozen=True)
class ArtifactFile:
    """A deliverable file discovered in a phase directory."""

    phase: str
    name: str
    path: Path
    type: str
    size: int = 0
    modified: Optional[float] = None


class ArtifactEnumerator(Protocol):
    def list_artifacts(self, project_root: Union[str, Path]) -> Dict[str, List[ArtifactFile]]:
        """Artifacts per phase, phases in workflow order."""
        ...


class ContentProvider(Protocol):
    def analyze(self, path: Union[str, Path], artifact_type: str) -> Dict[str, Any]:
        """Return ``{"success": bool, "content": str, "insights": ..., "error"?: str}``."""
        ...


def infer_artifact_type(filename: str) -> str:
    lowered = filename.lower()
    for hint, artifact_type in _TYPE_HINTS:
        if hint in lowered:
            return artifact_type
    suffix = Path(lowered).suffix
    if suffix == ".json":
        return "structured_data"
    if suffix == ".md":
        return "documentation"
    return "unknown"


class PhaseDirectoryEnumerator:
    """Lists files under ``<root>/<deliverables_dir>/<phase>/``.

    Known phases come first in workflow order, then any other phase
    directories alphabetically.  Dotfiles and ``metadata`` entries are skipped.
    """

    def __init__(self, deliverables_dir: str = config.DELIVERABLES_DIR, phases: Sequence[str] = config.PROJECT_PHASES):
        self.deliverables_dir = deliverables_dir
        self.phases = list(phases)

    def phase_order(self, base: Path) -> List[str]:
        present = {p.name for p in base.iterdir() if p.is_dir()} if base.exists() else set()
        ordered = [phase for phase in self.phases if phase in present]
        ordered.extend(sorted(present - set(self.phases)))
        return ordered

    def list_artifacts(self, project_root: Union[str, Path]) -> Dict[str, List[ArtifactFile]]:
        base = Path(project_root) / self.deliverables_dir
        result: Dict[str, List[ArtifactFile]] = {}
        for phase in self.phase_order(base):
            files: List[ArtifactFile] = []
            for entry in sorted((base / phase).iterdir()):
                if entry.name.startswith(".") or entry.stem == "metadata" or not entry.is_file():
                    continue
                stat = entry.stat()
                files.append(ArtifactFile(
                    phase=phase,
                    name=entry.stem,
                    path=entry,
                    type=infer_artifact_type(entry.name),
                    size=stat.st_size,
                    modified=stat.st_mtime,
                ))
            if files:
                result[phase] = files
            else:
                logger.debug("Phase %s has no deliverables", phase)
        return result


class TextContentProvider:
    """Reads artifacts as UTF-8 text.

    Insights are the markdown headings for text files and the top-level keys
    for JSON objects.
    """

    def __init__(self, max_bytes: int = 2 * 1024 * 1024):
        self.max_bytes = max_bytes

    def analyze(self, path: Union[str, Path], artifact_type: str) -> Dict[str, Any]:
        path = Path(path)
        try:
            raw = path.read_bytes()[: self.max_bytes]
        except OSError as exc:
            return {"success": False, "content": "", "insights": {}, "error": str(exc)}

        content = raw.decode("utf-8", errors="replace")
        insights: Dict[str, Any] = {"type": artifact_type}
        if path.suffix.lower() == ".json":
            try:
                data = json.loads(content)
            except json.JSONDecodeError:
                data = None
            if isinstance(data, dict):
                insights["keys"] = sorted(data.keys())
        else:
            insights["headings"] = _HEADING_RE.findall(content)
        return {"success": True, "content": content, "insights": insights}
