"""Structural relationship detection using text-pattern heuristics.

Five independent pattern families run over the source artifact's text for
every target:

==================  ============  ==========
family              type          confidence
==================  ============  ==========
file references     references    HIGH
phase references    references    MEDIUM
explicit mentions   mentions      MEDIUM
cross references    references    HIGH
dependency phrases  depends_on    HIGH
==================  ============  ==========

Matches for the same ``(target, type)`` collapse into one relationship that
keeps the strongest confidence and all evidence.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import asdict, dataclass, field
from functools import lru_cache
from pathlib import PurePath
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from .config_manager import DetectorSettings
from .detector import RelationshipDetector
from .models import (
    ArtifactContent,
    DetectionOptions,
    DetectorInfo,
    Evidence,
    Relationship,
    RelationshipStrength,
    RelationshipType,
)

logger = logging.getLogger(__name__)

_GENERIC_TYPES = {"unknown", "documentation", "structured_data"}
_MAX_EXCERPT = 160

FILE_REFERENCE_PATTERNS = [
    r"\b(?:see|refer to|check|view|from)\s+([a-zA-Z0-9_-]+\.[a-zA-Z]{2,4})\b",
    r"\b(?:file|document|report):\s*([a-zA-Z0-9_/.-]+\.[a-zA-Z]{2,4})\b",
    r"\[[^\]]+\]\(([^)\s]*\.(?:md|json|txt|pdf|docx?))\)",
]

CROSS_REFERENCE_PATTERNS = [
    r"\bas\s+(?:mentioned|described|outlined|specified)\s+in\s+([^.]+)",
    r"\b(?:according\s+to|based\s+on|derived\s+from)\s+([^.]+)",
    r"\bsee\s+(?:section|chapter|part|appendix)\s+([^.]+)",
]

DEPENDENCY_PATTERNS = [
    r"\b(?:depends\s+on|requires|needs|prerequisite)\s+([^.]+)",
    r"\b(?:after|once|when)\s+([^.]+?)\s+(?:is\s+)?(?:complete|done|finished)\b",
    r"\b(?:blocked\s+by|waiting\s+for)\s+([^.]+)",
]


@dataclass
class _Match:
    rel_type: RelationshipType
    confidence: float
    method: str
    evidence: Evidence


@dataclass
class _Candidate:
    confidence: float = 0.0
    methods: List[str] = field(default_factory=list)
    evidence: List[Evidence] = field(default_factory=list)


def _excerpt(text: str) -> str:
    text = " ".join(text.split())
    return text if len(text) <= _MAX_EXCERPT else text[: _MAX_EXCERPT - 3] + "..."


@lru_cache(maxsize=128)
def _phase_patterns(phase: str, flags: int) -> Tuple[re.Pattern, ...]:
    escaped = re.escape(phase)
    return (
        re.compile(rf"\b(?:from|in|during|after|before)\s+(?:the\s+)?({escaped})\s+phase\b", flags),
        re.compile(rf"\b({escaped})\s+(?:phase|stage|step)\b", flags),
    )


@lru_cache(maxsize=512)
def _term_pattern(term: str, flags: int) -> re.Pattern:
    """Whole-word match for *term*; ``ui`` does not match ``building``."""
    return re.compile(rf"(?<!\w){re.escape(term)}(?!\w)", flags)


class StructuralDetector(RelationshipDetector):
    """Detects explicit references and structural patterns between deliverables."""

    name = "StructuralDetector"
    version = "1.0.0"
    priority = 80

    def __init__(self, settings: Optional[DetectorSettings] = None):
        self.settings = settings or DetectorSettings()
        self._flags = 0 if self.settings.case_sensitive else re.IGNORECASE
        self._file_patterns = [re.compile(p, self._flags) for p in FILE_REFERENCE_PATTERNS]
        self._cross_patterns = [re.compile(p, self._flags) for p in CROSS_REFERENCE_PATTERNS]
        self._dependency_patterns = [re.compile(p, self._flags) for p in DEPENDENCY_PATTERNS]

    # ------------------------------------------------------------------
    # Interface
    # ------------------------------------------------------------------

    async def detect(
        self,
        source: ArtifactContent,
        targets: List[ArtifactContent],
        options: Optional[DetectionOptions] = None,
    ) -> List[Relationship]:
        try:
            min_confidence = self.settings.min_confidence
            if options is not None and options.min_confidence is not None:
                min_confidence = options.min_confidence

            content = source.content if isinstance(source.content, str) else ""
            if not content or not targets:
                return []

            relationships: List[Relationship] = []
            for target in targets:
                relationships.extend(self._detect_pair(source, target, content))
                # Yield between targets so timeouts and sibling tasks can run
                await asyncio.sleep(0)

            return [rel for rel in relationships if rel.confidence >= min_confidence]
        except Exception:
            logger.warning(
                "Structural detection failed for %s",
                getattr(source, "key", source),
                exc_info=True,
            )
            return []

    def get_info(self) -> DetectorInfo:
        return DetectorInfo(
            name=self.name,
            version=self.version,
            kind="structural",
            capabilities=[
                "file_references",
                "phase_references",
                "explicit_mentions",
                "cross_references",
                "dependencies",
            ],
            supported_types=[
                RelationshipType.REFERENCES.value,
                RelationshipType.MENTIONS.value,
                RelationshipType.DEPENDS_ON.value,
            ],
            priority=self.priority,
            configuration=asdict(self.settings),
        )

    def get_priority(self) -> int:
        return self.priority

    # ------------------------------------------------------------------
    # Pair detection
    # ------------------------------------------------------------------

    def _detect_pair(self, source: ArtifactContent, target: ArtifactContent, content: str) -> List[Relationship]:
        if source.key == target.key:
            return []

        matches: List[_Match] = []
        if self.settings.enable_file_references:
            matches.extend(self._file_references(content, target))
        if self.settings.enable_phase_references:
            matches.extend(self._phase_references(content, target.phase))
        if self.settings.enable_explicit_mentions:
            matches.extend(self._explicit_mentions(content, target))
        names = self._name_variants(target.name)
        matches.extend(self._phrase_matches(
            content, self._cross_patterns, names,
            RelationshipType.REFERENCES, RelationshipStrength.HIGH, "cross_reference", "Cross-reference",
        ))
        matches.extend(self._phrase_matches(
            content, self._dependency_patterns, names,
            RelationshipType.DEPENDS_ON, RelationshipStrength.HIGH, "dependency", "Dependency",
        ))

        candidates: Dict[RelationshipType, _Candidate] = {}
        for match in matches:
            candidate = candidates.setdefault(match.rel_type, _Candidate())
            candidate.confidence = max(candidate.confidence, match.confidence)
            if match.method not in candidate.methods:
                candidate.methods.append(match.method)
            if len(candidate.evidence) < self.settings.max_evidence:
                candidate.evidence.append(match.evidence)

        source_ref, target_ref = source.ref, target.ref
        return [
            Relationship.create(
                source_ref,
                target_ref,
                rel_type,
                confidence=candidate.confidence,
                evidence=candidate.evidence,
                detected_by=self.name,
                detection_method="+".join(candidate.methods),
            )
            for rel_type, candidate in candidates.items()
        ]

    def _file_references(self, content: str, target: ArtifactContent) -> Iterator[_Match]:
        target_file = PurePath(target.path).name.lower() if target.path else ""
        target_name = target.name.lower()
        for pattern in self._file_patterns:
            for match in pattern.finditer(content):
                referenced = PurePath(match.group(1)).name.lower()
                if referenced == target_file or PurePath(referenced).stem == target_name:
                    yield _Match(
                        RelationshipType.REFERENCES,
                        RelationshipStrength.HIGH,
                        "file_reference",
                        self._evidence("structural_reference", "File reference", match, RelationshipStrength.HIGH),
                    )

    def _phase_references(self, content: str, target_phase: str) -> Iterator[_Match]:
        for pattern in _phase_patterns(target_phase, self._flags):
            for match in pattern.finditer(content):
                yield _Match(
                    RelationshipType.REFERENCES,
                    RelationshipStrength.MEDIUM,
                    "phase_reference",
                    self._evidence("structural_reference", "Phase reference", match, RelationshipStrength.MEDIUM),
                )

    def _explicit_mentions(self, content: str, target: ArtifactContent) -> Iterator[_Match]:
        terms = self._name_variants(target.name)
        if target.type and target.type not in _GENERIC_TYPES and target.type not in terms:
            terms.append(target.type)
        for term in terms:
            for match in _term_pattern(term, self._flags).finditer(content):
                yield _Match(
                    RelationshipType.MENTIONS,
                    RelationshipStrength.MEDIUM,
                    "explicit_mention",
                    self._evidence("explicit_mention", "Explicit mention", match, RelationshipStrength.MEDIUM),
                )

    def _phrase_matches(
        self,
        content: str,
        patterns: Sequence[re.Pattern],
        names: List[str],
        rel_type: RelationshipType,
        confidence: float,
        method: str,
        label: str,
    ) -> Iterator[_Match]:
        terms = [_term_pattern(name, self._flags) for name in names]
        for pattern in patterns:
            for match in pattern.finditer(content):
                if any(term.search(match.group(1)) for term in terms):
                    yield _Match(
                        rel_type,
                        confidence,
                        method,
                        self._evidence("structural_reference", label, match, confidence),
                    )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _name_variants(name: str) -> List[str]:
        variants = [
            name,
            re.sub(r"[_-]", " ", name),
            re.sub(r"\s+", "_", name),
            re.sub(r"\s+", "-", name),
        ]
        return list(dict.fromkeys(v for v in variants if v.strip()))

    @staticmethod
    def _evidence(kind: str, label: str, match: re.Match, score: float) -> Evidence:
        return Evidence(
            kind=kind,
            description=f'{label}: "{_excerpt(match.group(0))}"',
            location=f"offset {match.start()}",
            score=score,
        )
