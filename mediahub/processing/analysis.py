"""Pluggable content analyzers used by the processing pipeline."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Optional, Protocol, Sequence

import numpy as np

from ..errors import AnalysisFailure


LOGGER = logging.getLogger(__name__)

Classification = Literal["safe", "flagged"]

CLASSIFICATIONS = ("safe", "flagged")

_CODECS: Sequence[str] = ("H.264", "H.265", "VP9", "AV1")
_RESOLUTIONS: Sequence[str] = ("1920x1080", "1280x720", "854x480", "640x360")
_FRAME_RATES: Sequence[int] = (24, 30, 60)


@dataclass(frozen=True)
class MediaReference:
    """What an analyzer is told about the object it inspects."""

    media_id: str
    location_ref: str
    content_type: str
    size_bytes: int


@dataclass(frozen=True)
class AnalysisResult:
    """Outcome of one analysis: a classification, a score and codec metadata."""

    classification: Classification
    score: float
    metadata: Dict[str, Any] = field(default_factory=dict)

    def validate(self) -> "AnalysisResult":
        if self.classification not in CLASSIFICATIONS:
            raise AnalysisFailure(
                f"Analyzer returned unknown classification {self.classification!r}"
            )
        try:
            score = float(self.score)
        except (TypeError, ValueError) as error:
            raise AnalysisFailure(f"Analyzer returned non-numeric score {self.score!r}") from error
        if not np.isfinite(score) or not 0.0 <= score <= 100.0:
            raise AnalysisFailure(f"Analyzer score {score} is outside [0, 100]")
        return self


class Analyzer(Protocol):
    """Protocol describing a content classifier."""

    def analyze(self, reference: MediaReference) -> AnalysisResult:
        """Classify the media behind *reference*."""


class RandomSensitivityAnalyzer:
    """Stand-in classifier that assigns a random verdict and mock codec data."""

    def __init__(self, *, safe_ratio: float = 0.7, seed: Optional[int] = None) -> None:
        if not 0.0 <= safe_ratio <= 1.0:
            raise ValueError("safe_ratio must be within [0, 1]")
        self._safe_ratio = safe_ratio
        self._rng = np.random.default_rng(seed)

    def analyze(self, reference: MediaReference) -> AnalysisResult:
        score = int(self._rng.integers(0, 100))
        classification: Classification = (
            "safe" if self._rng.random() < self._safe_ratio else "flagged"
        )
        metadata = {
            "codec": str(self._rng.choice(_CODECS)),
            "resolution": str(self._rng.choice(_RESOLUTIONS)),
            "bitrate": int(self._rng.integers(2000, 10000)),
            "fps": int(self._rng.choice(_FRAME_RATES)),
        }
        LOGGER.debug(
            "Random analysis of %s -> %s (score=%s)", reference.media_id, classification, score
        )
        return AnalysisResult(classification=classification, score=score, metadata=metadata)


class StaticAnalyzer:
    """Analyzer returning the same verdict for every object."""

    def __init__(
        self,
        classification: Classification = "safe",
        score: float = 0.0,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._result = AnalysisResult(
            classification=classification,
            score=score,
            metadata=dict(metadata or {}),
        )

    def analyze(self, reference: MediaReference) -> AnalysisResult:
        return self._result


__all__ = [
    "AnalysisResult",
    "Analyzer",
    "CLASSIFICATIONS",
    "Classification",
    "MediaReference",
    "RandomSensitivityAnalyzer",
    "StaticAnalyzer",
]
