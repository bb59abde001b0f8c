"""Exception taxonomy for PhaseGraph."""

from __future__ import annotations

from typing import Dict, Optional


class PhaseGraphError(Exception):
    """Base exception for all PhaseGraph errors."""

    def __init__(self, message: str, details: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


class NotFoundError(PhaseGraphError):
    """A requested entity does not exist."""


class ArtifactNotFoundError(NotFoundError):
    def __init__(self, artifact_id: str):
        super().__init__(
            f"Artifact {artifact_id} not found in relationship graph",
            {"artifact": artifact_id},
        )
        self.artifact_id = artifact_id


class RelationshipNotFoundError(NotFoundError):
    def __init__(self, relationship_id: str):
        super().__init__(
            f"Relationship {relationship_id} not found",
            {"relationship": relationship_id},
        )
        self.relationship_id = relationship_id


class StorageError(PhaseGraphError):
    """Reading or writing the persisted graph failed."""


class LockTimeoutError(StorageError, TimeoutError):
    def __init__(self, path: str, timeout: float):
        super().__init__(
            f"File lock timeout for {path}",
            {"timeout": f"{timeout:g}s"},
        )
        self.path = path
        self.timeout = timeout


class SchemaValidationError(PhaseGraphError):
    """Data does not match the relationship graph schema."""

    def __init__(self, message: str, errors: Optional[list] = None):
        details = {"errors": str(len(errors))} if errors else None
        super().__init__(message, details)
        self.errors = errors or []


class DetectorTimeoutError(PhaseGraphError):
    def __init__(self, detector_name: str, timeout_ms: int):
        super().__init__(
            f"{detector_name} detection timeout",
            {"timeout": f"{timeout_ms}ms"},
        )
        self.detector_name = detector_name
        self.timeout_ms = timeout_ms


class ContentProviderError(PhaseGraphError):
    """The content provider could not analyze an artifact."""
