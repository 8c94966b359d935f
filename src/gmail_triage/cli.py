"""CLI entry point for Gmail Triage."""

from __future__ import annotations

from contextlib import contextmanager
from typing import BinaryIO, Iterator

import click

from .app import TriageApp
from .config import load_settings
from .display import console, display_reports, display_watermark, setup_logging
from .errors import TriageError
from .notifications import decode_notification
from .watch import expiration_to_datetime


@contextmanager
def _errors() -> Iterator[None]:
    try:
        yield
    except TriageError as e:
        raise click.ClickException(str(e)) from e


@contextmanager
def _open_app() -> Iterator[TriageApp]:
    with _errors():
        settings = load_settings()
        with TriageApp.from_settings(settings) as app:
            yield app


@click.group()
@click.version_option(version="0.1.0", prog_name="gmail-triage")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Gmail Triage - label urgent and risky mail as it arrives."""
    setup_logging(verbose)


# --- auth ---


@cli.group(name="auth")
def auth_group() -> None:
    """Authorize, check or revoke Gmail access."""


@auth_group.command(name="url")
def auth_url() -> None:
    """Print the Google consent URL."""
    with _open_app() as app:
        url = app.credentials.authorization_url()
    console.print("Open this URL and approve access, then run 'gmail-triage auth exchange CODE':")
    console.print(url, soft_wrap=True)


@auth_group.command(name="exchange")
@click.argument("code")
def auth_exchange(code: str) -> None:
    """Exchange an authorization CODE for stored credentials."""
    with _open_app() as app:
        app.credentials.exchange_code(app.account, code)
        console.print(f"[green]Credentials stored for {app.account}.[/green]")


@auth_group.command(name="check")
def auth_check() -> None:
    """Verify the stored credentials by reading the mailbox profile."""
    with _open_app() as app:
        profile = app.gateway().get_profile()
    console.print(f"[green]Authenticated as {profile.get('emailAddress', '?')}[/green]")
    console.print(f"[bold]Messages:[/bold] {profile.get('messagesTotal', '?')}")
    console.print(f"[bold]History ID:[/bold] {profile.get('historyId', '?')}")


@auth_group.command(name="revoke")
def auth_revoke() -> None:
    """Revoke the token and delete it locally."""
    with _open_app() as app:
        app.credentials.revoke(app.account)
        console.print(f"[green]Credentials revoked for {app.account}.[/green]")


# --- watch ---


@cli.group(name="watch")
def watch_group() -> None:
    """Manage Gmail push notifications."""


def _print_watch(response: dict) -> None:
    console.print(f"[bold]History ID:[/bold] {response.get('historyId', '?')}")
    console.print(f"[bold]Expires:[/bold] {expiration_to_datetime(response.get('expiration'))}")


@watch_group.command(name="start")
def watch_start() -> None:
    """Seed the watermark and start watching INBOX."""
    with _open_app() as app:
        response = app.watch_manager().start(app.settings.pubsub_topic)
    console.print("[green]Watch started.[/green]")
    _print_watch(response)


@watch_group.command(name="renew")
def watch_renew() -> None:
    """Renew the watch before it expires."""
    with _open_app() as app:
        response = app.watch_manager().renew(app.settings.pubsub_topic)
    console.print("[green]Watch renewed.[/green]")
    _print_watch(response)


@watch_group.command(name="stop")
def watch_stop() -> None:
    """Stop push notifications for the mailbox."""
    with _open_app() as app:
        app.watch_manager().stop()
    console.print("[green]Watch stopped.[/green]")


# --- history ---


@cli.group(name="history")
def history_group() -> None:
    """Inspect or reset the stored history watermark."""


@history_group.command(name="show")
def history_show() -> None:
    """Show the stored historyId."""
    with _open_app() as app:
        display_watermark(app.watermarks.get(app.account), app.account)


@history_group.command(name="init")
def history_init() -> None:
    """Set the watermark to the mailbox's current historyId."""
    with _open_app() as app:
        history_id = app.watch_manager().initialize_watermark()
    if history_id is None:
        raise click.ClickException("Mailbox profile did not include a historyId.")
    console.print(f"[green]History ID initialized to {history_id}.[/green]")


@history_group.command(name="reset")
def history_reset() -> None:
    """Forget the watermark; the next notification replays a short lookback window."""
    with _open_app() as app:
        removed = app.watermarks.reset(app.account)
    console.print("[green]Watermark cleared.[/green]" if removed else "[dim]No watermark stored.[/dim]")


# --- processing ---


@cli.command()
@click.argument("payload", type=click.File("rb"), default="-")
def notify(payload: BinaryIO) -> None:
    """Reconcile one Pub/Sub push body read from PAYLOAD (default stdin)."""
    with _errors():
        event = decode_notification(payload.read())
    if event.kind == "inert":
        console.print("[yellow]Notification carries no message or history id; nothing to do.[/yellow]")
        return

    with _open_app() as app:
        account = event.account or app.account
        processed = app.engine.reconcile(account, event)
    console.print(f"Processed {processed} message(s) for {account}.")


@cli.command()
@click.argument("message_id")
def process(message_id: str) -> None:
    """Classify and label a single message."""
    with _open_app() as app:
        report = app.pipeline.process_message(app.account, message_id)
    display_reports([report])


@cli.command()
@click.option("-l", "--label", "labels", multiple=True, default=("INBOX",), help="Label ID to sweep (repeatable).")
@click.option("-m", "--max-messages", default=None, type=int, help="Maximum messages to process.")
def sweep(labels: tuple[str, ...], max_messages: int | None) -> None:
    """Classify messages already in the mailbox."""
    with _open_app() as app:
        with console.status("[bold blue]Classifying messages...") as status:
            def _advance(report) -> None:  # noqa: ANN001
                status.update(f"[bold blue]Classified {report.message_id}")

            reports = app.pipeline.sweep(
                app.account, label_ids=list(labels), max_results=max_messages, callback=_advance
            )
    if not reports:
        console.print("[dim]No messages found.[/dim]")
        return
    display_reports(reports, title="Sweep Results")
