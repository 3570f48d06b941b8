"""Catalogue snapshot and its Rich rendering."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..services.storage import MEDIA_STATES, MediaRecord, MediaRepository


STATE_STYLES: Dict[str, str] = {
    "pending": "yellow",
    "processing": "cyan",
    "safe": "green",
    "flagged": "red",
    "error": "bold red",
}


@dataclass
class OverviewSnapshot:
    records: List[MediaRecord]
    state_totals: Dict[str, int]
    total_views: int
    total_bytes: int


def collect_overview(
    repository: MediaRepository, *, owner_id: Optional[str] = None
) -> OverviewSnapshot:
    """Aggregate repository data into a snapshot for terminal views."""

    records = repository.iter_media(owner_id=owner_id)
    state_totals = {state: 0 for state in MEDIA_STATES}
    for record in records:
        state_totals[record.state] = state_totals.get(record.state, 0) + 1
    return OverviewSnapshot(
        records=records,
        state_totals=state_totals,
        total_views=sum(record.view_count for record in records),
        total_bytes=sum(record.size_bytes for record in records),
    )


def _format_size(size_bytes: int) -> str:
    value = float(size_bytes)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if value < 1024 or unit == "GiB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{size_bytes} B"


class OverviewUI:
    """Render the catalogue as a Rich table."""

    def __init__(self, repository: MediaRepository, *, console: Optional[Console] = None) -> None:
        self._repository = repository
        self._console = console or Console()

    def run(self, *, owner_id: Optional[str] = None) -> OverviewSnapshot:
        snapshot = collect_overview(self._repository, owner_id=owner_id)
        console = self._console
        console.rule("[bold magenta]MediaHub Overview")

        if not snapshot.records:
            console.print(
                Panel(
                    "No media has been registered yet.\n"
                    "Use [bold]python run.py register[/bold] to add a file.",
                    border_style="yellow",
                    box=box.ROUNDED,
                )
            )
            return snapshot

        console.print(self._build_table(snapshot.records))
        console.print(self._build_totals(snapshot))
        return snapshot

    @staticmethod
    def _build_table(records: List[MediaRecord]) -> Table:
        table = Table(box=box.SIMPLE_HEAVY, expand=True)
        table.add_column("ID", style="dim", no_wrap=True)
        table.add_column("Title")
        table.add_column("Owner")
        table.add_column("State")
        table.add_column("Progress", justify="right")
        table.add_column("Score", justify="right")
        table.add_column("Views", justify="right")
        table.add_column("Size", justify="right")
        for record in records:
            style = STATE_STYLES.get(record.state, "")
            table.add_row(
                record.id,
                record.title or "[dim]untitled",
                record.owner_id,
                f"[{style}]{record.state}[/]" if style else record.state,
                f"{record.progress_percent}%",
                "-" if record.score is None else f"{record.score:g}",
                str(record.view_count),
                _format_size(record.size_bytes),
            )
        return table

    @staticmethod
    def _build_totals(snapshot: OverviewSnapshot) -> Panel:
        grid = Table.grid(padding=(0, 2))
        grid.add_column(justify="left")
        grid.add_column(justify="right")
        for state in MEDIA_STATES:
            grid.add_row(state.capitalize(), str(snapshot.state_totals.get(state, 0)))
        grid.add_row("Views", str(snapshot.total_views))
        grid.add_row("Stored", _format_size(snapshot.total_bytes))
        return Panel(grid, title="Totals", border_style="cyan", box=box.ROUNDED)


__all__ = ["OverviewSnapshot", "OverviewUI", "collect_overview"]
