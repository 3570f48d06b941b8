"""Analysis backends for media processing."""

from .analysis import (
    AnalysisResult,
    Analyzer,
    MediaReference,
    RandomSensitivityAnalyzer,
    StaticAnalyzer,
)

__all__ = [
    "AnalysisResult",
    "Analyzer",
    "MediaReference",
    "RandomSensitivityAnalyzer",
    "StaticAnalyzer",
]
