"""ClinicRelay main entry point — CLI for the relay worker and the dashboard side.

Commands:
  clinicrelay run                      Start the channel relay worker
  clinicrelay send PATIENT_ID TEXT     Compose a staff message
  clinicrelay history PATIENT_ID       Show a conversation
  clinicrelay tasks                    Dump recent outbound tasks as JSON
  clinicrelay add-patient PATIENT_ID   Register or update a patient
  clinicrelay status                   Show queue health
"""

from __future__ import annotations

import asyncio
import json
import logging

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from clinicrelay import __version__
from clinicrelay.config import RelayConfig, load_config
from clinicrelay.conversation.cache import ConversationCache
from clinicrelay.conversation.history import ConversationHistory
from clinicrelay.dashboard.client import DashboardClient
from clinicrelay.relay.worker import RelayWorker
from clinicrelay.store.documents import DocumentStore

console = Console()


# ─── CLI Commands ────────────────────────────────────────────────


def _setup_logging(verbose: bool = False, default: int = logging.WARNING) -> None:
    """Configure structured logging with Rich."""
    level = logging.DEBUG if verbose else default
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


@click.group()
@click.version_option(__version__, prog_name="ClinicRelay")
def cli() -> None:
    """🩺 ClinicRelay — clinic chat sync and outbound delivery."""
    pass


@cli.command()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def run(verbose: bool) -> None:
    """Start the channel relay worker."""
    _setup_logging(verbose, default=logging.INFO)
    try:
        asyncio.run(_run_worker())
    except KeyboardInterrupt:
        console.print("\n[dim]Shutting down...[/]")


@cli.command()
@click.argument("patient_id")
@click.argument("text")
@click.option("--reply-to", default=None, help="Id of the message being replied to.")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def send(patient_id: str, text: str, reply_to: str | None, verbose: bool) -> None:
    """Compose a staff message and queue it for delivery."""
    _setup_logging(verbose)
    asyncio.run(_run_send(patient_id, text, reply_to))


@cli.command()
@click.argument("patient_id")
@click.option("--limit", "-n", default=30, show_default=True, help="Number of messages.")
def history(patient_id: str, limit: int) -> None:
    """Show the latest messages of a conversation."""
    _setup_logging()
    asyncio.run(_run_history(patient_id, limit))


@cli.command()
@click.option("--limit", "-n", default=20, show_default=True, help="Number of tasks.")
def tasks(limit: int) -> None:
    """Print recent outbound tasks as wire-format JSON."""
    _setup_logging()
    asyncio.run(_run_tasks(limit))


@cli.command("add-patient")
@click.argument("patient_id")
@click.option("--name", default="", help="Full name.")
@click.option("--phone", default="", help="Phone number, e.g. +998 90 123 45 67.")
@click.option("--identity", default=None, help="External channel identity (chat id).")
def add_patient(patient_id: str, name: str, phone: str, identity: str | None) -> None:
    """Register a patient or update their details."""
    _setup_logging()
    asyncio.run(_run_add_patient(patient_id, name, phone, identity))


@cli.command()
def status() -> None:
    """Show configuration and outbound queue counts."""
    _setup_logging()
    asyncio.run(_run_status())


# ─── Async Runners ───────────────────────────────────────────────


async def _open_store(config: RelayConfig) -> DocumentStore:
    store = DocumentStore(config.database_path, config.store.busy_timeout)
    await store.connect()
    return store


async def _run_worker() -> None:
    """Run the relay worker until the channel closes."""
    config = load_config()
    worker = RelayWorker(config)
    await worker.startup()
    try:
        await worker.run()
    finally:
        await worker.shutdown()


async def _run_send(patient_id: str, text: str, reply_to: str | None) -> None:
    config = load_config()
    store = await _open_store(config)
    try:
        client = DashboardClient(
            store, config.conversation, ConversationCache(config.cache_path)
        )
        result = await client.compose(patient_id, text=text, reply_to=reply_to)
        if not result.saved:
            console.print(f"[red]Not saved:[/] {result.error}")
        elif result.error:
            console.print(f"[yellow]Saved locally as {result.message.id}, not queued:[/] {result.error}")
        else:
            console.print(f"[green]Saved {result.message.id}, queued task {result.task_id}[/]")
    finally:
        await store.close()


async def _run_history(patient_id: str, limit: int) -> None:
    config = load_config()
    store = await _open_store(config)
    try:
        patient = await store.get_patient(patient_id)
        if patient is None:
            console.print(f"[red]Unknown patient {patient_id}[/]")
            return
        messages = await ConversationHistory(store).fetch_latest(patient_id, limit)
        console.print(f"[bold cyan]🩺 {patient.full_name or patient.id}[/] [dim]unread {patient.unread_count}[/]\n")
        for m in messages:
            who = "[blue]staff[/]" if m.sender.value == "staff" else "[green]patient[/]"
            body = m.text or m.image or m.voice or ""
            status = f" [dim]{m.status.value}[/]" if m.status else ""
            console.print(f"  [dim]{m.time}[/] {who}: {body}{status}")
    finally:
        await store.close()


async def _run_tasks(limit: int) -> None:
    config = load_config()
    store = await _open_store(config)
    try:
        recent = await store.recent_tasks(limit)
        console.print_json(json.dumps([t.to_wire() for t in recent]))
    finally:
        await store.close()


async def _run_add_patient(
    patient_id: str, name: str, phone: str, identity: str | None
) -> None:
    config = load_config()
    store = await _open_store(config)
    try:
        fields = {}
        if name:
            fields["full_name"] = name
        if phone:
            fields["phone"] = phone
        if identity:
            fields["channel_identity"] = identity
        await store.upsert_patient(patient_id, **fields)
        console.print(f"[green]Patient {patient_id} saved ✅[/]")
    finally:
        await store.close()


async def _run_status() -> None:
    config = load_config()
    store = await _open_store(config)
    try:
        counts = await store.count_tasks_by_status()
    finally:
        await store.close()

    console.print("[bold cyan]🩺 ClinicRelay Status[/]\n")
    console.print(f"  Version: {__version__}")
    console.print(f"  Config: {config.config_dir}")
    console.print(f"  Database: {config.database_path}")
    console.print(f"  Channel: {config.channel.type}")
    console.print()

    table = Table(title="Outbound tasks")
    table.add_column("Status")
    table.add_column("Count", justify="right")
    for name, count in counts.items():
        table.add_row(name, str(count))
    console.print(table)


# ─── Direct execution ───────────────────────────────────────────

if __name__ == "__main__":
    cli()
