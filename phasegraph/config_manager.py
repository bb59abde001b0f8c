"""Configuration manager for PhaseGraph using TOML files.

The user-level ``config.toml`` may contain the sections ``[detection]``,
``[storage]``, ``[impact]`` and ``[orchestrator]``.  Every key is optional;
missing keys fall back to :data:`DEFAULT_CONFIG`.
"""

from __future__ import annotations

import copy
import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import toml

from . import config

logger = logging.getLogger(__name__)


DEFAULT_IMPACT_WEIGHTS: Dict[str, float] = {
    "depends_on": 0.9,
    "derives_from": 0.8,
    "influences": 0.7,
    "references": 0.5,
    "mentions": 0.3,
    "validates": 0.8,
    "conflicts_with": 0.9,
    "supports": 0.6,
}

DEFAULT_SEVERITY_THRESHOLDS: Dict[str, float] = {
    "minimal": 0.1,
    "low": 0.3,
    "medium": 0.5,
    "high": 0.7,
    "critical": 0.9,
}


@dataclass
class DetectorSettings:
    min_confidence: float = 0.7
    enable_file_references: bool = True
    enable_phase_references: bool = True
    enable_explicit_mentions: bool = True
    case_sensitive: bool = False
    max_evidence: int = 10


@dataclass
class StorageSettings:
    relationships_file: str = config.RELATIONSHIPS_FILE
    backup_enabled: bool = True
    backup_retention: int = 5
    cache_enabled: bool = True
    cache_ttl_seconds: float = 15 * 60
    lock_timeout_seconds: float = 5.0
    max_file_size_mb: float = 50.0


@dataclass
class ImpactSettings:
    max_traversal_depth: int = 5
    min_impact_threshold: float = 0.1
    impact_weights: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_IMPACT_WEIGHTS))
    severity_thresholds: Dict[str, float] = field(
        default_factory=lambda: dict(DEFAULT_SEVERITY_THRESHOLDS)
    )


@dataclass
class OrchestratorSettings:
    enable_caching: bool = True
    cache_ttl_seconds: float = 30 * 60
    timeout_ms: int = 15000
    enable_parallel_detection: bool = True
    max_concurrency: int = 8
    deliverables_dir: str = config.DELIVERABLES_DIR
    phases: List[str] = field(default_factory=lambda: list(config.PROJECT_PHASES))


@dataclass
class Settings:
    detection: DetectorSettings = field(default_factory=DetectorSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    impact: ImpactSettings = field(default_factory=ImpactSettings)
    orchestrator: OrchestratorSettings = field(default_factory=OrchestratorSettings)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


DEFAULT_CONFIG: Dict[str, Dict[str, Any]] = Settings().to_dict()

_SECTIONS = {
    "detection": DetectorSettings,
    "storage": StorageSettings,
    "impact": ImpactSettings,
    "orchestrator": OrchestratorSettings,
}


def load_full_config(config_file: Optional[Path] = None) -> Dict[str, Any]:
    """Load the entire TOML config (all sections).

    Returns an empty dict when the file is missing or cannot be parsed.
    """
    path = config_file or config.CONFIG_FILE
    if not path.exists():
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            return toml.load(f)
    except (OSError, toml.TomlDecodeError) as exc:
        logger.warning("Ignoring unreadable config file %s: %s", path, exc)
        return {}


def _build_section(name: str, values: Dict[str, Any]):
    cls = _SECTIONS[name]
    merged = copy.deepcopy(DEFAULT_CONFIG[name])
    known = {f.name for f in fields(cls)}
    for key, value in values.items():
        if key not in known:
            logger.warning("Unknown config key [%s].%s ignored", name, key)
            continue
        if isinstance(merged.get(key), dict) and isinstance(value, dict):
            merged[key].update(value)
        else:
            merged[key] = value
    return cls(**merged)


def _apply_env_overrides(settings: Settings) -> None:
    timeout = os.environ.get("PHASEGRAPH_TIMEOUT_MS")
    if timeout:
        try:
            settings.orchestrator.timeout_ms = int(timeout)
        except ValueError:
            logger.warning("PHASEGRAPH_TIMEOUT_MS must be an integer, got %r", timeout)
    parallel = os.environ.get("PHASEGRAPH_PARALLEL")
    if parallel is not None:
        settings.orchestrator.enable_parallel_detection = parallel.strip().lower() not in ("0", "false", "no")


def load_settings(
    config_file: Optional[Path] = None,
    overrides: Optional[Dict[str, Dict[str, Any]]] = None,
) -> Settings:
    """Resolve settings from defaults, the TOML file, env vars and overrides.

    Args:
        config_file: Alternate TOML file (defaults to ``~/.phasegraph/config.toml``).
        overrides: Per-section values applied last, e.g.
            ``{"orchestrator": {"timeout_ms": 500}}``.

    Returns:
        Fully populated :class:`Settings`.
    """
    raw = load_full_config(config_file)
    for section, values in (overrides or {}).items():
        raw.setdefault(section, {}).update(values)

    sections = {}
    for name in _SECTIONS:
        values = raw.get(name, {})
        if not isinstance(values, dict):
            logger.warning("Config section [%s] must be a table; using defaults", name)
            values = {}
        sections[name] = _build_section(name, values)

    settings = Settings(**sections)
    _apply_env_overrides(settings)
    return settings


def save_settings(settings: Settings, config_file: Optional[Path] = None) -> bool:
    """Write settings to TOML, preserving sections this module does not own."""
    path = config_file or config.CONFIG_FILE
    payload = load_full_config(path)
    payload.update(settings.to_dict())
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            toml.dump(payload, f)
        return True
    except OSError as exc:
        logger.error("Could not write config file %s: %s", path, exc)
        return False
