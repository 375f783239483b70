#!/usr/bin/env python3
"""kasina-timer: run a meditation session from the terminal.

Usage:
    kasina-timer run --minutes 10 --kasina blue
    kasina-timer run --count-up --kasina white
    kasina-timer recover
    kasina-timer pending
"""

from __future__ import annotations

import asyncio
import signal

import click
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from rich.console import Console, Group
from rich.panel import Panel
from rich.live import Live
from rich.table import Table
from rich.text import Text

from .client import SessionStorageClient
from .config import Settings
from .controller import CompletionOutcome, ControllerState, TimerCallbacks, TimerController
from .logs import configure_logging, recent_logs
from .models import PersistResult, TimerConfig
from .persister import SessionPersister
from .resolver import format_clock, kasina_display_name
from .store import FallbackStore
from .ticker import TickSource

console = Console()

LEVEL_STYLES = {"WARNING": "yellow", "ERROR": "red", "DEBUG": "dim"}


def _build_persister(settings: Settings) -> SessionPersister:
    store = FallbackStore(settings.db_path)
    client = SessionStorageClient(settings.api_url, settings.api_token)
    return SessionPersister(store, client, settings)


def _build_config(minutes: int | None, seconds: int | None, count_up: bool) -> TimerConfig:
    if count_up:
        if minutes or seconds:
            raise click.UsageError("--count-up cannot be combined with --minutes/--seconds")
        return TimerConfig.count_up()
    total = (minutes or 0) * 60 + (seconds or 0)
    if total <= 0:
        raise click.UsageError("Give a duration with --minutes/--seconds, or use --count-up")
    return TimerConfig.countdown(total)


def _render(controller: TimerController) -> Group:
    elapsed = controller.elapsed_seconds
    remaining = controller.remaining_seconds
    state = controller.state

    body = Text()
    body.append(f"{format_clock(elapsed)}", style="bold cyan")
    body.append(" elapsed")
    if controller.config is not None and controller.config.bounded:
        body.append("   ")
        body.append(f"{format_clock(remaining)}", style="bold green")
        body.append(" remaining")
    body.append(f"\n[{state.value}]", style="dim")

    logs = Text()
    for entry in recent_logs(4):
        style = LEVEL_STYLES.get(entry["level"], "white")
        logs.append(f"{entry['timestamp']} {entry['message']}\n", style=style)

    title = f"{(controller.kasina_type or 'kasina').title()} kasina"
    return Group(
        Panel(body, title=title, border_style="blue", subtitle="Ctrl-C to stop"),
        Panel(logs, title="Log", border_style="dim"),
    )


def _summary(outcome: CompletionOutcome | None, kasina: str) -> str:
    if outcome is None:
        return "Session ended."
    if outcome.duration_seconds == 0:
        return f"Session too short to save ({outcome.event.elapsed_seconds}s)."
    if outcome.success:
        name = kasina_display_name(kasina, outcome.duration_seconds)
        return f"Saved {name} session ({format_clock(outcome.duration_seconds)})."
    return f"Could not save session: {outcome.result.error}. It will be retried on next start."


def _results_table(results: list[PersistResult]) -> Table:
    table = Table(show_header=True, header_style="bold cyan", border_style="blue")
    table.add_column("Session", style="white")
    table.add_column("Status", width=8)
    table.add_column("Attempts", justify="right")
    table.add_column("Error", style="dim")
    for result in results:
        status = "[green]saved[/green]" if result.success else f"[red]{result.status.value}[/red]"
        table.add_row(result.session_key, status, str(result.attempts), result.error or "-")
    return table


async def _run_session(settings: Settings, config: TimerConfig, kasina: str) -> CompletionOutcome | None:
    persister = _build_persister(settings)
    await persister.init()
    recovered = await persister.recover()
    if recovered:
        console.print(_results_table(recovered))

    scheduler = AsyncIOScheduler()
    scheduler.start()
    loop = asyncio.get_running_loop()
    stop_requested = asyncio.Event()
    try:
        loop.add_signal_handler(signal.SIGINT, stop_requested.set)
    except NotImplementedError:
        pass

    controller = TimerController(persister, TimerCallbacks(), TickSource(scheduler), settings)
    controller.configure(config, kasina)
    outcome = None
    try:
        with Live(_render(controller), console=console, refresh_per_second=4) as live:
            await controller.start()
            while controller.state in (ControllerState.RUNNING, ControllerState.COMPLETING):
                if stop_requested.is_set() and controller.state == ControllerState.RUNNING:
                    outcome = await controller.stop()
                    break
                live.update(_render(controller))
                await asyncio.sleep(0.25)
            live.update(_render(controller))
    finally:
        await controller.teardown()
        scheduler.shutdown(wait=False)
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except NotImplementedError:
            pass
    return outcome or controller.last_outcome


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.pass_context
def cli(ctx, verbose):
    """Kasina meditation timer."""
    configure_logging(verbose)
    try:
        settings = Settings.from_env()
    except ValueError as e:
        raise click.ClickException(str(e))
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings
    if verbose:
        click.echo(f"Backend: {settings.api_url}  Store: {settings.db_path}")


@cli.command()
@click.option("--minutes", type=int, help="Countdown length in minutes")
@click.option("--seconds", type=int, help="Countdown length in seconds (added to --minutes)")
@click.option("--count-up", is_flag=True, help="Unbounded session; stop with Ctrl-C")
@click.option("--kasina", default="white", show_default=True, help="Kasina type to record")
@click.pass_context
def run(ctx, minutes, seconds, count_up, kasina):
    """Run one session and save it."""
    settings = ctx.obj["settings"]
    config = _build_config(minutes, seconds, count_up)
    outcome = asyncio.run(_run_session(settings, config, kasina))

    click.echo(_summary(outcome, kasina))
    if outcome is not None and not outcome.success:
        ctx.exit(1)


@cli.command()
@click.pass_context
def recover(ctx):
    """Resync sessions that never reached the backend."""
    settings = ctx.obj["settings"]

    async def _recover():
        persister = _build_persister(settings)
        await persister.init()
        return await persister.recover()

    results = asyncio.run(_recover())
    if not results:
        click.echo("Nothing to recover.")
        return
    console.print(_results_table(results))
    if any(not r.success for r in results):
        ctx.exit(1)


@cli.command()
@click.pass_context
def pending(ctx):
    """List sessions saved locally but not yet on the backend."""
    settings = ctx.obj["settings"]

    async def _pending():
        persister = _build_persister(settings)
        await persister.init()
        return await persister.pending()

    records = asyncio.run(_pending())
    if not records:
        click.echo("No unsynced sessions.")
        return

    table = Table(show_header=True, header_style="bold cyan", border_style="blue")
    table.add_column("Started", style="white")
    table.add_column("Session", style="yellow")
    table.add_column("Duration", justify="right")
    table.add_column("Attempts", justify="right")
    table.add_column("Last error", style="dim", max_width=40)
    for record in records:
        table.add_row(
            record.started_at,
            record.kasina_name,
            format_clock(record.duration_seconds),
            str(record.attempts),
            record.last_error or "-",
        )
    console.print(table)


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
