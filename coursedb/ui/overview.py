"""Rich overview of the stored course catalogue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from rich import box
from rich.columns import Columns
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from ..services.storage import ARTIFACT_FIELDS, CourseRecord, CourseRepository, Difficulty


ARTIFACT_LABELS: Dict[str, str] = {
    "data_encrypted": "Encrypted",
    "data_compressed": "Compressed",
    "data_transcoded": "Transcoded",
    "thumb": "Thumbnail",
    "thumb_s": "Thumb S",
    "thumb_m": "Thumb M",
    "thumb_l": "Thumb L",
}

_UNRATED = "unrated"


@dataclass
class OverviewSnapshot:
    courses: List[CourseRecord]
    course_count: int
    difficulty_totals: Dict[str, int] = field(default_factory=dict)
    artifact_totals: Dict[str, int] = field(default_factory=dict)


def collect_overview(
    repository: CourseRepository,
    *,
    owner: Optional[str] = None,
    limit: Optional[int] = None,
) -> OverviewSnapshot:
    """Aggregate stored courses into a snapshot for rendering."""

    courses = repository.list_courses(owner=owner, limit=limit)
    difficulty_totals = {difficulty.value: 0 for difficulty in Difficulty}
    difficulty_totals[_UNRATED] = 0
    artifact_totals = {name: 0 for name in ARTIFACT_FIELDS}

    for record in courses:
        key = record.difficulty.value if record.difficulty else _UNRATED
        difficulty_totals[key] += 1
        for name in record.artifacts:
            artifact_totals[name] += 1

    return OverviewSnapshot(
        courses=courses,
        course_count=len(courses),
        difficulty_totals=difficulty_totals,
        artifact_totals=artifact_totals,
    )


class OverviewUI:
    """Render the catalogue as a table plus summary panels."""

    def __init__(self, repository: CourseRepository, *, console: Optional[Console] = None) -> None:
        self._repository = repository
        self._console = console or Console()

    def run(self, *, owner: Optional[str] = None, limit: Optional[int] = None) -> OverviewSnapshot:
        snapshot = collect_overview(self._repository, owner=owner, limit=limit)
        console = self._console
        console.rule("[bold magenta]CourseDB Overview")

        if snapshot.course_count == 0:
            console.print(
                Panel(
                    "No courses have been uploaded yet.\n"
                    "Use [bold]python run.py ingest[/bold] to add an archive.",
                    border_style="yellow",
                    box=box.ROUNDED,
                )
            )
            return snapshot

        console.print(self._build_table(snapshot.courses))
        console.print(
            Columns(
                [
                    self._build_totals_panel("Difficulty", snapshot.difficulty_totals),
                    self._build_totals_panel(
                        "Cached artifacts",
                        {ARTIFACT_LABELS[name]: count for name, count in snapshot.artifact_totals.items()},
                    ),
                ],
                expand=True,
                equal=True,
            )
        )
        return snapshot

    @staticmethod
    def _build_table(courses: List[CourseRecord]) -> Table:
        table = Table(box=box.SIMPLE_HEAVY, header_style="bold cyan")
        table.add_column("ID", justify="right")
        table.add_column("Title")
        table.add_column("Owner", style="dim")
        table.add_column("Difficulty")
        table.add_column("Votes", justify="right")
        table.add_column("Uploaded")
        for record in courses:
            uploaded = datetime.fromtimestamp(record.uploaded / 1000, tz=timezone.utc)
            table.add_row(
                str(record.id),
                record.title,
                record.owner,
                record.difficulty.value if record.difficulty else Text(_UNRATED, style="dim"),
                str(record.votes),
                uploaded.strftime("%Y-%m-%d %H:%M"),
            )
        return table

    @staticmethod
    def _build_totals_panel(title: str, totals: Dict[str, int]) -> Panel:
        table = Table.grid(padding=(0, 2))
        table.add_column(style="bold")
        table.add_column(justify="right")
        for label, count in totals.items():
            table.add_row(label, str(count))
        return Panel(table, title=title, border_style="cyan", box=box.ROUNDED)


__all__ = ["ARTIFACT_LABELS", "OverviewSnapshot", "OverviewUI", "collect_overview"]
