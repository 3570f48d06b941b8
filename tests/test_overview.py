from __future__ import annotations

import io

from rich.console import Console

from mediahub.services.storage import MediaRepository
from mediahub.ui.overview import OverviewUI, collect_overview


def test_collect_overview_counts_states(repository: MediaRepository, sample_media: str) -> None:
    other = repository.add_media(
        owner_id="owner-2",
        location_ref="owner-2/other.mp4",
        content_type="video/mp4",
        size_bytes=10,
    )
    repository.claim_for_processing(other)
    repository.complete_processing(other, state="flagged", score=70)
    repository.increment_view_count(sample_media)

    snapshot = collect_overview(repository)

    assert snapshot.state_totals["pending"] == 1
    assert snapshot.state_totals["flagged"] == 1
    assert snapshot.total_views == 1
    assert len(collect_overview(repository, owner_id="owner-2").records) == 1


def test_overview_renders_empty_catalogue(repository: MediaRepository) -> None:
    buffer = io.StringIO()
    console = Console(file=buffer, width=120, force_terminal=False)

    OverviewUI(repository, console=console).run()

    assert "No media has been registered yet" in buffer.getvalue()


def test_overview_renders_table(repository: MediaRepository, sample_media: str) -> None:
    buffer = io.StringIO()
    console = Console(file=buffer, width=200, force_terminal=False)

    snapshot = OverviewUI(repository, console=console).run()

    output = buffer.getvalue()
    assert sample_media in output
    assert "pending" in output
    assert snapshot.total_bytes > 0
