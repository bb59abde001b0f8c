"""Configuration paths and defaults for PhaseGraph."""

from __future__ import annotations

import os
from pathlib import Path

BASE_DIR = Path(os.environ.get("PHASEGRAPH_HOME", str(Path.home() / ".phasegraph"))).expanduser()
CONFIG_FILE = BASE_DIR / "config.toml"

# Per-project data lives under the project root
PROJECT_DATA_DIR = ".phasegraph"
RELATIONSHIPS_FILE = f"{PROJECT_DATA_DIR}/relationships.json"
DELIVERABLES_DIR = f"{PROJECT_DATA_DIR}/deliverables"
BACKUP_DIR_NAME = "backups"

# Workflow phases in execution order
PROJECT_PHASES = [
    "concept",
    "requirements",
    "design",
    "architecture",
    "implementation",
    "deployment",
]
