"""PhaseGraph: cross-phase relationship tracking and change impact analysis."""

__version__ = "0.1.0"
