import pytest

from mediahub.services.progress import (
    FALLBACK_PHASE_MESSAGE,
    PHASE_MESSAGES,
    compute_progress_percent,
    describe_phase,
    format_progress_message,
)


def test_progress_percent_rounds_and_clamps() -> None:
    assert compute_progress_percent(1, 10) == 10
    assert compute_progress_percent(1, 3) == 33
    assert compute_progress_percent(2, 3) == 67
    assert compute_progress_percent(12, 10) == 100
    assert compute_progress_percent(-1, 10) == 0
    with pytest.raises(ValueError):
        compute_progress_percent(1, 0)


def test_describe_phase_uses_labels_then_fallback() -> None:
    assert describe_phase(1) == PHASE_MESSAGES[0]
    assert describe_phase(10) == "Completing processing..."
    assert describe_phase(11) == FALLBACK_PHASE_MESSAGE
    assert describe_phase(0) == FALLBACK_PHASE_MESSAGE


def test_format_progress_message_appends_percentage() -> None:
    assert format_progress_message("Scanning", 5, 10) == "Scanning (50%)"
    assert format_progress_message("Scanning", None, 10) == "Scanning"
    assert format_progress_message("Scanning", 1, 0) == "Scanning"
