"""Rich-based display and logging setup for Gmail Triage."""

import logging

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from .models import MessageReport, RiskLevel, Watermark

console = Console()

_NOISY_LOGGERS = ("googleapiclient.discovery_cache", "httpx", "openai")


def setup_logging(verbose: bool = False) -> None:
    """Route log records through Rich on stderr."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=verbose, rich_tracebacks=True)],
        force=True,
    )
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def _risk_color(risk: RiskLevel | None) -> str:
    if risk is RiskLevel.HIGH:
        return "red"
    if risk is RiskLevel.MODERATE:
        return "yellow"
    return "green"


def _status(report: MessageReport) -> str:
    if not report.fetched:
        return "[red]fetch failed[/red]"
    if report.skipped_reason:
        return f"[dim]skipped ({report.skipped_reason})[/dim]"
    return "processed"


def display_reports(reports: list[MessageReport], title: str = "Triage Results") -> None:
    """Display one row per processed message plus a summary panel."""
    table = Table(title=title)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Message ID")
    table.add_column("Status")
    table.add_column("Urgent")
    table.add_column("Risk")
    table.add_column("Labels added")
    table.add_column("Alert")

    for idx, report in enumerate(reports, start=1):
        urgent = "-" if report.urgent is None else ("[bold red]yes[/bold red]" if report.urgent else "no")
        if report.risk is None:
            risk = "-"
        else:
            color = _risk_color(report.risk)
            risk = f"[{color}]{report.risk.value}[/{color}]"
        table.add_row(
            str(idx),
            report.message_id,
            _status(report),
            urgent,
            risk,
            ", ".join(report.labels_added),
            "sent" if report.reply_sent else "",
        )

    console.print(table)

    labelled = sum(1 for r in reports if r.labels_added)
    failed = sum(1 for r in reports if not r.fetched)
    console.print(
        Panel(
            f"Messages: {len(reports)}  |  Labelled: {labelled}  |  Fetch failures: {failed}",
            title="Summary",
        )
    )


def display_watermark(mark: Watermark | None, account: str) -> None:
    if mark is None:
        console.print(f"[dim]No stored historyId for {account}.[/dim]")
        return
    console.print(
        Panel(
            f"[bold]Account:[/bold] {mark.account}\n"
            f"[bold]History ID:[/bold] {mark.history_id}\n"
            f"[bold]Last updated:[/bold] {mark.last_updated}",
            title="Watermark",
        )
    )
