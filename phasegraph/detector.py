"""Relationship detector interface and registry.

The orchestrator only ever talks to :class:`RelationshipDetector`; concrete
detectors are registered in a :class:`DetectorRegistry`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, Iterable, Iterator, List, Optional

from .models import ArtifactContent, DetectionOptions, DetectorInfo, Relationship


class RelationshipDetector(ABC):
    """Proposes typed, confidence-scored edges from one source to many targets.

    Implementations must not raise on malformed input: on internal failure
    :meth:`detect` returns an empty list.
    """

    name: str = "RelationshipDetector"
    version: str = "1.0.0"

    @abstractmethod
    async def detect(
        self,
        source: ArtifactContent,
        targets: List[ArtifactContent],
        options: Optional[DetectionOptions] = None,
    ) -> List[Relationship]:
        ...

    @abstractmethod
    def get_info(self) -> DetectorInfo:
        ...

    def is_available(self) -> bool:
        return True

    def get_priority(self) -> int:
        return 50


class DetectorRegistry:
    """Named collection of detectors, iterated in registration order."""

    def __init__(self, detectors: Optional[Iterable[RelationshipDetector]] = None):
        self._detectors: Dict[str, RelationshipDetector] = {}
        for detector in detectors or ():
            self.register(detector)

    def register(self, detector: RelationshipDetector) -> RelationshipDetector:
        if detector.name in self._detectors:
            raise ValueError(f"Detector '{detector.name}' is already registered")
        self._detectors[detector.name] = detector
        return detector

    def unregister(self, name: str) -> bool:
        return self._detectors.pop(name, None) is not None

    def get(self, name: str) -> Optional[RelationshipDetector]:
        return self._detectors.get(name)

    def names(self) -> List[str]:
        return list(self._detectors)

    def available(self, names: Optional[Iterable[str]] = None) -> List[RelationshipDetector]:
        """Available detectors, highest priority first, optionally restricted by name."""
        wanted = set(names) if names else None
        detectors = [
            d for d in self._detectors.values()
            if d.is_available() and (wanted is None or d.name in wanted)
        ]
        return sorted(detectors, key=lambda d: d.get_priority(), reverse=True)

    def __iter__(self) -> Iterator[RelationshipDetector]:
        return iter(list(self._detectors.values()))

    def __len__(self) -> int:
        return len(self._detectors)

    def __contains__(self, name: object) -> bool:
        return name in self._detectors
