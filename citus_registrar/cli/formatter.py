"""Rich terminal rendering of a registration run."""

import json
from typing import Any, Optional

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from citus_registrar.cluster.models import (
    DiscoveryReport,
    MembershipRecord,
    NodeRole,
    ReportOutcome,
)


class ReportFormatter:
    """Writes the human-readable summary to stdout (or any rich Console)."""

    ROLE_COLORS: dict[NodeRole, str] = {
        NodeRole.COORDINATOR: "magenta",
        NodeRole.WORKER: "cyan",
    }

    def __init__(self, console: Optional[Console] = None) -> None:
        self.console = console or Console()

    # ── banners ──────────────────────────────────────────────────────

    def print_banner(self, schemes: list[str], coordinator: str) -> None:
        """Print the start-up banner."""
        lines = [
            "[bold]Citus Worker Registration[/bold]",
            f"[dim]Coordinator:[/dim] {coordinator}",
            f"[dim]Naming patterns:[/dim] {', '.join(schemes)}",
            "[dim]Re-run at any time after adding workers; registered nodes are skipped.[/dim]",
        ]
        self.console.print(Panel("\n".join(lines), border_style="cyan", expand=False))

    # ── membership table ─────────────────────────────────────────────

    def print_members(self, members: tuple[MembershipRecord, ...]) -> None:
        """Format and print the coordinator's node table."""
        table = Table(
            title=f"Cluster Members ({len(members)})",
            box=box.ROUNDED,
            border_style="cyan",
        )
        table.add_column("Node", style="bold")
        table.add_column("Port", justify="right")
        table.add_column("Role")
        table.add_column("Active", justify="center")

        for member in members:
            color = self.ROLE_COLORS.get(member.role, "white")
            table.add_row(
                member.node_name,
                str(member.port),
                f"[{color}]{member.role.value}[/{color}]",
                "[green]yes[/green]" if member.active else "[red]no[/red]",
            )
        self.console.print(table)

    # ── summary ──────────────────────────────────────────────────────

    def print_report(self, report: DiscoveryReport) -> None:
        """Print counts, failures, the membership table and a verdict."""
        if report.members:
            self.print_members(report.members)

        counts = Table(box=box.SIMPLE, show_header=False)
        counts.add_column("Metric", style="bold")
        counts.add_column("Value", justify="right")
        counts.add_row("Discovered", str(len(report.discovered)))
        counts.add_row("Registered", f"[green]{len(report.registered)}[/green]")
        counts.add_row("Already registered", str(len(report.skipped_existing)))
        failed_style = "red" if report.failed else "dim"
        counts.add_row("Failed", f"[{failed_style}]{len(report.failed)}[/{failed_style}]")
        counts.add_row("Active workers", str(report.active_worker_count))
        counts.add_row("Coordinator", report.coordinator)
        counts.add_row("Duration", f"{report.duration_seconds:.1f}s")
        self.console.print(Panel(counts, title="Registration Summary", border_style="cyan"))

        for failure in report.failed:
            self.error(f"{failure.candidate}: {failure.reason}")
        for note in report.warnings:
            self.warning(note)

        self.print_verdict(report)

    def print_verdict(self, report: DiscoveryReport) -> None:
        outcome = report.outcome
        if outcome is ReportOutcome.NO_WORKERS_FOUND:
            self.warning("No workers found. Cluster runs as a single node.")
        elif outcome is ReportOutcome.REGISTRATION_FAILURES:
            self.error(
                f"{len(report.failed)} worker(s) found but not registered. "
                "Check the reasons above and re-run."
            )
        elif report.active_worker_count > 0:
            self.success(f"Citus cluster is ready with {report.active_worker_count} worker(s).")
        else:
            self.warning("No active workers registered. Cluster runs as a single node.")

    # ── generic JSON ─────────────────────────────────────────────────

    def print_json(self, data: Any) -> None:
        """Print machine-readable output without markup or wrapping."""
        self.console.out(json.dumps(data, indent=2, default=str), highlight=False)

    # ── messages ─────────────────────────────────────────────────────

    def success(self, message: str) -> None:
        self.console.print(Text.assemble(("✓ ", "green"), message))

    def warning(self, message: str) -> None:
        self.console.print(Text.assemble(("! ", "yellow"), message))

    def error(self, message: str) -> None:
        self.console.print(Text.assemble(("✗ ", "bold red"), message))
