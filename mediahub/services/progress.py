"""Utilities for reporting deterministic progress percentages."""

from __future__ import annotations

from typing import Optional, Tuple


# Phase labels surfaced to the owner, one per analysis step of the default
# ten-step run. Longer runs fall back to a generic label.
PHASE_MESSAGES: Tuple[str, ...] = (
    "Initializing video analysis...",
    "Extracting video frames...",
    "Analyzing audio track...",
    "Running content detection...",
    "Performing sensitivity scan...",
    "Checking for policy violations...",
    "Extracting metadata...",
    "Generating thumbnail...",
    "Finalizing analysis...",
    "Completing processing...",
)
FALLBACK_PHASE_MESSAGE = "Processing..."


def describe_phase(step: int) -> str:
    """Return the human readable label for the 1-based *step*."""

    if 1 <= step <= len(PHASE_MESSAGES):
        return PHASE_MESSAGES[step - 1]
    return FALLBACK_PHASE_MESSAGE


def compute_progress_percent(completed_steps: float, total_steps: float) -> int:
    """Return ``round(completed / total * 100)`` clamped to ``[0, 100]``."""

    if total_steps <= 0:
        raise ValueError("total_steps must be positive")
    ratio = max(0.0, min(float(completed_steps) / float(total_steps), 1.0))
    return int(round(ratio * 100))


def format_progress_message(
    message: str,
    completed_steps: Optional[float],
    total_steps: Optional[float],
) -> str:
    """Append a percentage indicator to ``message`` when possible.

    When the totals are unavailable (``None`` or zero) the message is returned
    unchanged.
    """

    if completed_steps is None or total_steps in {None, 0}:
        return message
    percent = compute_progress_percent(completed_steps, total_steps)
    return f"{message} ({percent}%)"


__all__ = [
    "FALLBACK_PHASE_MESSAGE",
    "PHASE_MESSAGES",
    "compute_progress_percent",
    "describe_phase",
    "format_progress_message",
]
