"""
CLI Display and Progress Utilities

Provides user feedback, progress bars, and formatted output for CLI.
"""

import click
from typing import List, Dict, Any, Optional

from tqdm import tqdm

from ..contracts.migration_engine_service import EntityStats, EntityStatus, MigrationResult
from ..contracts.validation_service import Severity

STATUS_COLORS = {
    EntityStatus.COMPLETED: 'green',
    EntityStatus.PARTIAL: 'yellow',
    EntityStatus.FAILED: 'red',
    EntityStatus.SKIPPED: 'blue',
}


class ProgressDisplay:
    """Progress display utilities for CLI operations"""

    @staticmethod
    def format_duration(seconds: Optional[float]) -> str:
        """
        Format duration in human-readable format

        Args:
            seconds: Duration in seconds

        Returns:
            Formatted string (e.g., "1m 30s")
        """
        if seconds is None:
            return "-"
        if seconds < 60:
            return f"{seconds:.1f}s"
        elif seconds < 3600:
            minutes = int(seconds / 60)
            secs = seconds % 60
            return f"{minutes}m {secs:.0f}s"
        else:
            hours = int(seconds / 3600)
            minutes = int((seconds % 3600) / 60)
            return f"{hours}h {minutes}m"

    @staticmethod
    def print_table(headers: List[str], rows: List[List[Any]]):
        """
        Print a formatted table

        Args:
            headers: List of column headers
            rows: List of row data
        """
        col_widths = [len(h) for h in headers]
        for row in rows:
            for i, cell in enumerate(row):
                col_widths[i] = max(col_widths[i], len(str(cell)))

        header_row = " | ".join(h.ljust(col_widths[i]) for i, h in enumerate(headers))
        click.echo(header_row)
        click.echo("-" * len(header_row))

        for row in rows:
            row_str = " | ".join(str(cell).ljust(col_widths[i]) for i, cell in enumerate(row))
            click.echo(row_str)

    @staticmethod
    def print_summary(title: str, data: Dict[str, Any]):
        """
        Print a formatted summary

        Args:
            title: Summary title
            data: Dictionary of key-value pairs to display
        """
        click.echo(f"\n{title}")
        click.echo("=" * len(title))

        for key, value in data.items():
            key_formatted = key.replace('_', ' ').title()
            click.echo(f"{key_formatted}: {value}")

    @staticmethod
    def print_success(message: str):
        """Print success message with icon"""
        click.echo(click.style(f"✓ {message}", fg='green', bold=True))

    @staticmethod
    def print_error(message: str):
        """Print error message with icon"""
        click.echo(click.style(f"✗ {message}", fg='red', bold=True), err=True)

    @staticmethod
    def print_warning(message: str):
        """Print warning message with icon"""
        click.echo(click.style(f"⚠ {message}", fg='yellow'))

    @staticmethod
    def print_info(message: str):
        """Print info message with icon"""
        click.echo(click.style(f"ℹ {message}", fg='blue'))

    @staticmethod
    def confirm_action(prompt: str, default: bool = False) -> bool:
        """
        Prompt user for confirmation

        Args:
            prompt: Confirmation prompt
            default: Default value if user just presses Enter

        Returns:
            True if confirmed, False otherwise
        """
        return click.confirm(prompt, default=default)

    @staticmethod
    def print_result(result: MigrationResult):
        """Print per-entity counters, validation issues and errors of a run"""
        rows = []
        for stats in result.entities.values():
            status = click.style(stats.status.value, fg=STATUS_COLORS.get(stats.status))
            rows.append([
                stats.name,
                status,
                stats.batches,
                stats.inserted,
                stats.updated,
                stats.skipped,
                stats.failed,
                ProgressDisplay.format_duration(stats.duration),
            ])
        click.echo()
        ProgressDisplay.print_table(
            ['Entity', 'Status', 'Batches', 'Inserted', 'Updated', 'Skipped', 'Failed', 'Duration'],
            rows
        )

        for stats in result.entities.values():
            if stats.blocked_by:
                ProgressDisplay.print_warning(f"{stats.name} skipped: blocked by {stats.blocked_by}")

        issues = [i for i in result.validation_issues if i.severity != Severity.INFO]
        if issues:
            click.echo("\nValidation issues:")
            for issue in issues:
                color = 'red' if issue.severity == Severity.ERROR else 'yellow'
                click.echo(click.style(f"  [{issue.severity.value}] {issue.table}: {issue.message}", fg=color))
                if issue.suggested_fix:
                    click.echo(f"      fix: {issue.suggested_fix}")

        if result.errors:
            click.echo(f"\nErrors ({len(result.errors)}):")
            for error in result.errors[:20]:
                where = f" id={error.legacy_id}" if error.legacy_id is not None else ""
                click.echo(f"  {error.entity}{where} [{error.kind}/{error.action}] {error.message}")
            if len(result.errors) > 20:
                click.echo(f"  ... {len(result.errors) - 20} more in the run report")

        if result.rolled_back:
            ProgressDisplay.print_warning(
                "Rolled back: " + ", ".join(f"{name}={count}" for name, count in result.rolled_back.items())
            )


class EntityProgressBar:
    """
    tqdm progress bar driven by orchestrator progress events

    Pass an instance as the orchestrator's ``progress_callback``; one bar
    is opened per entity and closed when the entity finishes.
    """

    def __init__(self, disable: bool = False):
        self.disable = disable
        self._bar: Optional[tqdm] = None

    def __call__(self, event: str, stats: EntityStats, total: Optional[int]) -> None:
        if event == "start":
            self._close()
            self._bar = tqdm(total=total, unit="rows", desc=stats.name, disable=self.disable)
        elif event == "batch" and self._bar is not None:
            self._bar.update(stats.total_processed - self._bar.n)
            self._bar.set_postfix(inserted=stats.inserted, skipped=stats.skipped)
        elif event == "finish":
            self._close()

    def _close(self) -> None:
        if self._bar is not None:
            self._bar.close()
            self._bar = None
