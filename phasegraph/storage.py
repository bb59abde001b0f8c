"""Persistence layer for project relationship graphs.

Architecture:
- :class:`GraphStorage` is the narrow interface the orchestrator depends on,
  so another backend (embedded KV store, relational table) can be swapped in.
- :class:`JSONGraphStore` keeps one JSON document per project under
  ``<project_root>/.phasegraph/relationships.json`` with rotating backups in a
  sibling ``backups/`` directory, atomic writes under an advisory lock, and a
  read-through :class:`~phasegraph.cache.TTLCache` keyed by project root.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from .cache import TTLCache
from .config import BACKUP_DIR_NAME, PROJECT_DATA_DIR
from .config_manager import StorageSettings
from .errors import RelationshipNotFoundError, SchemaValidationError, StorageError
from .file_io import atomic_write_json, file_lock, read_json
from .models import (
    ArtifactRef,
    QueryOptions,
    Relationship,
    RelationshipGraph,
    Severity,
    StorageHealth,
    StorageIssue,
    relationship_id,
    utc_now,
    validate_graph,
)

logger = logging.getLogger(__name__)

ProjectRoot = Union[str, Path]
ArtifactId = Union[str, ArtifactRef]

UPDATABLE_FIELDS = frozenset({"type", "strength", "confidence", "evidence", "metadata"})
BACKUP_PREFIX = "relationships-"


def apply_query_options(relationships: List[Relationship], options: QueryOptions) -> List[Relationship]:
    """Filter by type and strength, sort, then cut to ``options.limit``."""
    filtered = list(relationships)

    if options.relationship_types:
        wanted = set(options.relationship_types)
        filtered = [rel for rel in filtered if rel.type in wanted]

    if options.min_strength is not None:
        filtered = [rel for rel in filtered if rel.strength >= options.min_strength]

    sort_keys = {
        "strength": lambda rel: rel.strength,
        "confidence": lambda rel: rel.confidence,
        "type": lambda rel: rel.type,
        "created": lambda rel: rel.metadata.detected_at,
    }
    filtered.sort(key=sort_keys[options.sort_by], reverse=options.sort_order == "desc")
    return filtered[: options.limit]


def _coerce_query_options(options: Union[QueryOptions, Dict[str, Any], None]) -> QueryOptions:
    if options is None:
        return QueryOptions()
    if isinstance(options, QueryOptions):
        return options
    try:
        return QueryOptions.model_validate(options)
    except ValidationError as exc:
        raise SchemaValidationError("Invalid query options", exc.errors(include_url=False)) from exc


def _camel_key(key: str) -> str:
    head, *rest = key.split("_")
    return head + "".join(part.title() for part in rest)


def relationship_id_for(rel: Relationship) -> str:
    return relationship_id(rel.source, rel.target, rel.type)


# ===================================================================
# Storage interface
# ===================================================================

class GraphStorage(ABC):
    """Store and retrieve relationship graphs for a project."""

    @abstractmethod
    def store(self, project_root: ProjectRoot, graph: RelationshipGraph) -> bool:
        ...

    @abstractmethod
    def get(
        self,
        project_root: ProjectRoot,
        artifact_id: ArtifactId,
        query_options: Union[QueryOptions, Dict[str, Any], None] = None,
    ) -> List[Relationship]:
        ...

    @abstractmethod
    def get_all(self, project_root: ProjectRoot) -> RelationshipGraph:
        ...

    @abstractmethod
    def update(self, project_root: ProjectRoot, relationship_id: str, patch: Dict[str, Any]) -> bool:
        ...

    @abstractmethod
    def delete(self, project_root: ProjectRoot, relationship_id: str) -> bool:
        ...

    @abstractmethod
    def health(self, project_root: Optional[ProjectRoot] = None) -> StorageHealth:
        ...


# ===================================================================
# JSONGraphStore
# ===================================================================

class JSONGraphStore(GraphStorage):
    """JSON-file graph store with backups, advisory locking and a TTL cache."""

    name = "JSONGraphStore"
    version = "1.0.0"

    def __init__(
        self,
        settings: Optional[StorageSettings] = None,
        cache: Optional[TTLCache] = None,
        health_dir: Optional[Path] = None,
    ) -> None:
        self.settings = settings or StorageSettings()
        self.cache = cache if cache is not None else TTLCache(self.settings.cache_ttl_seconds)
        self.health_dir = health_dir

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def graph_path(self, project_root: ProjectRoot) -> Path:
        return Path(project_root) / self.settings.relationships_file

    def backup_dir(self, project_root: ProjectRoot) -> Path:
        return self.graph_path(project_root).parent / BACKUP_DIR_NAME

    def list_backups(self, project_root: ProjectRoot) -> List[Path]:
        """Backups newest first (timestamped names sort chronologically)."""
        directory = self.backup_dir(project_root)
        if not directory.exists():
            return []
        return sorted(
            (p for p in directory.iterdir() if p.name.startswith(BACKUP_PREFIX) and p.suffix == ".json"),
            key=lambda p: p.name,
            reverse=True,
        )

    @staticmethod
    def _cache_key(project_root: ProjectRoot) -> str:
        return str(Path(project_root).resolve())

    def _empty_graph(self, project_root: ProjectRoot) -> RelationshipGraph:
        return RelationshipGraph.empty(Path(project_root).resolve().name, self.name)

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def store(self, project_root: ProjectRoot, graph: RelationshipGraph) -> bool:
        """Validate and persist *graph*, replacing any previous graph.

        Raises:
            SchemaValidationError: the graph does not match the schema.
            LockTimeoutError: another writer held the lock too long.
            StorageError: the backup of the previous file failed.
        """
        validated = validate_graph(graph)
        validated.refresh_statistics()
        path = self.graph_path(project_root)

        with file_lock(path, timeout=self.settings.lock_timeout_seconds):
            if self.settings.backup_enabled:
                self._create_backup(project_root)
            try:
                atomic_write_json(path, validated.to_json_dict())
            except OSError as exc:
                logger.error("Error storing relationships to %s: %s", path, exc)
                return False

        if self.settings.cache_enabled:
            self.cache.set(self._cache_key(project_root), validated)
        logger.info("Stored %d relationships in %s", len(validated.relationships), path)
        return True

    def update(self, project_root: ProjectRoot, relationship_id: str, patch: Dict[str, Any]) -> bool:
        """Patch one relationship in place.

        Only ``type``, ``strength``, ``confidence``, ``evidence`` and
        ``metadata`` may change; metadata is merged rather than replaced.

        Raises:
            RelationshipNotFoundError: no relationship has this id.
            ValueError: unsupported patch keys, or a type change collides
                with an existing relationship.
        """
        unknown = set(patch) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update relationship fields: {', '.join(sorted(unknown))}")

        path = self.graph_path(project_root)
        with file_lock(path, timeout=self.settings.lock_timeout_seconds):
            graph = self._read_for_write(path, relationship_id)
            index = self._index_of(graph, relationship_id)

            now = utc_now()
            payload = graph.relationships[index].model_dump(by_alias=True, mode="json")
            for key, value in patch.items():
                if key == "metadata":
                    metadata_patch = {_camel_key(k): v for k, v in value.items()}
                    payload["metadata"].update(metadata_patch)
                    if "validationStatus" in metadata_patch:
                        payload["metadata"]["lastValidated"] = now
                else:
                    payload[key] = value
            payload["metadata"]["lastUpdated"] = now

            try:
                updated = Relationship.model_validate(payload)
            except ValidationError as exc:
                raise SchemaValidationError(
                    f"Invalid update for relationship {relationship_id}",
                    exc.errors(include_url=False),
                ) from exc

            new_id = relationship_id_for(updated)
            if new_id != updated.id:
                if any(rel.id == new_id for rel in graph.relationships):
                    raise ValueError(f"Relationship {new_id} already exists")
                updated = updated.model_copy(update={"id": new_id})

            graph.relationships[index] = updated
            self._write_mutation(path, graph, now)

        self.cache.invalidate(self._cache_key(project_root))
        logger.info("Updated relationship %s", relationship_id)
        return True

    def delete(self, project_root: ProjectRoot, relationship_id: str) -> bool:
        """Remove one relationship.

        Raises:
            RelationshipNotFoundError: no relationship has this id.
        """
        path = self.graph_path(project_root)
        with file_lock(path, timeout=self.settings.lock_timeout_seconds):
            graph = self._read_for_write(path, relationship_id)
            index = self._index_of(graph, relationship_id)
            del graph.relationships[index]
            self._write_mutation(path, graph, utc_now())

        self.cache.invalidate(self._cache_key(project_root))
        logger.info("Deleted relationship %s", relationship_id)
        return True

    def _read_for_write(self, path: Path, relationship_id: str) -> RelationshipGraph:
        if not path.exists():
            raise RelationshipNotFoundError(relationship_id)
        try:
            data = read_json(path)
        except (OSError, json.JSONDecodeError) as exc:
            raise StorageError(f"Cannot read relationship graph {path}: {exc}") from exc
        return validate_graph(data)

    @staticmethod
    def _index_of(graph: RelationshipGraph, relationship_id: str) -> int:
        for index, rel in enumerate(graph.relationships):
            if rel.id == relationship_id:
                return index
        raise RelationshipNotFoundError(relationship_id)

    @staticmethod
    def _write_mutation(path: Path, graph: RelationshipGraph, now: str) -> None:
        graph.last_updated = now
        graph.refresh_statistics()
        validated = validate_graph(graph)
        try:
            atomic_write_json(path, validated.to_json_dict())
        except OSError as exc:
            raise StorageError(f"Cannot write relationship graph {path}: {exc}") from exc

    def _create_backup(self, project_root: ProjectRoot) -> Optional[Path]:
        path = self.graph_path(project_root)
        if not path.exists():
            return None

        directory = self.backup_dir(project_root)
        stamp = datetime.now(timezone.utc)
        try:
            directory.mkdir(parents=True, exist_ok=True)
            backup = directory / f"{BACKUP_PREFIX}{stamp.strftime('%Y%m%dT%H%M%S%fZ')}.json"
            while backup.exists():
                stamp += timedelta(microseconds=1)
                backup = directory / f"{BACKUP_PREFIX}{stamp.strftime('%Y%m%dT%H%M%S%fZ')}.json"
            shutil.copy2(path, backup)
            for stale in self.list_backups(project_root)[self.settings.backup_retention:]:
                stale.unlink()
        except OSError as exc:
            raise StorageError(f"Failed to back up {path}: {exc}") from exc

        logger.debug("Backed up %s to %s", path, backup)
        return backup

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def get_all(self, project_root: ProjectRoot) -> RelationshipGraph:
        """Full graph for a project; an empty skeleton when nothing is stored.

        A file that cannot be parsed or fails validation is logged and
        treated as absent.
        """
        key = self._cache_key(project_root)
        if self.settings.cache_enabled:
            cached = self.cache.get(key)
            if cached is not None:
                return cached.model_copy(deep=True)

        path = self.graph_path(project_root)
        if not path.exists():
            return self._empty_graph(project_root)

        try:
            graph = validate_graph(read_json(path))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Cannot read relationship graph %s: %s", path, exc)
            return self._empty_graph(project_root)
        except SchemaValidationError as exc:
            logger.warning("Relationship graph %s failed validation: %s", path, exc)
            return self._empty_graph(project_root)

        if self.settings.cache_enabled:
            self.cache.set(key, graph)
        return graph.model_copy(deep=True)

    def get(
        self,
        project_root: ProjectRoot,
        artifact_id: ArtifactId,
        query_options: Union[QueryOptions, Dict[str, Any], None] = None,
    ) -> List[Relationship]:
        """Relationships where *artifact_id* is source or target."""
        options = _coerce_query_options(query_options)
        graph = self.get_all(project_root)
        return apply_query_options(graph.relationships_for(artifact_id), options)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def health(self, project_root: Optional[ProjectRoot] = None) -> StorageHealth:
        """Probe the storage directory and, if given, the project's graph file."""
        issues: List[StorageIssue] = []
        metrics: Dict[str, Any] = {
            "total_relationships": 0,
            "storage_size": 0,
            "last_backup": None,
            "corrupted_records": 0,
        }

        if project_root is not None:
            probe_dir = self.graph_path(project_root).parent
        else:
            probe_dir = self.health_dir or Path.cwd() / PROJECT_DATA_DIR

        try:
            probe_dir.mkdir(parents=True, exist_ok=True)
            probe = probe_dir / f".health-check-{os.getpid()}.json"
            probe.write_text(json.dumps({"test": True}), encoding="utf-8")
            probe.unlink()
        except OSError as exc:
            issues.append(StorageIssue(
                type="access",
                severity=Severity.CRITICAL,
                description=f"Cannot write to storage directory {probe_dir}: {exc}",
                recommendation="Check file permissions",
            ))

        if project_root is not None:
            self._inspect_graph_file(project_root, metrics, issues)

        if any(issue.type == "access" or issue.severity == Severity.CRITICAL for issue in issues):
            status = "unhealthy"
        elif issues:
            status = "degraded"
        else:
            status = "healthy"
        return StorageHealth(status=status, last_check=utc_now(), metrics=metrics, issues=issues)

    def _inspect_graph_file(self, project_root: ProjectRoot, metrics: Dict[str, Any], issues: List[StorageIssue]) -> None:
        path = self.graph_path(project_root)
        backups = self.list_backups(project_root)
        if backups:
            metrics["last_backup"] = backups[0].name
        if not path.exists():
            return

        size = path.stat().st_size
        metrics["storage_size"] = size
        try:
            graph = validate_graph(read_json(path))
            metrics["total_relationships"] = len(graph.relationships)
        except (OSError, json.JSONDecodeError, SchemaValidationError) as exc:
            metrics["corrupted_records"] = 1
            issues.append(StorageIssue(
                type="corruption",
                severity=Severity.HIGH,
                description=f"Relationship graph is unreadable or invalid: {exc}",
                recommendation=f"Restore the newest file from {self.backup_dir(project_root)}",
            ))

        if size > self.settings.max_file_size_mb * 1024 * 1024:
            issues.append(StorageIssue(
                type="performance",
                severity=Severity.MEDIUM,
                description=f"Relationship graph is {size / (1024 * 1024):.1f} MB",
                recommendation="Raise the confidence threshold or prune rejected relationships",
            ))
