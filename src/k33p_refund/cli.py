"""
K33P refund monitor CLI.

Usage:
    k33p-refund [OPTIONS] COMMAND [ARGS]...
"""
from __future__ import annotations

import asyncio
import signal
from typing import Optional

import click
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from .config import K33PSettings, load_settings
from .exceptions import K33PError
from .logging_config import mask_api_key, setup_logging
from .monitor import RefundMonitor, build_monitor, build_store
from .refund import RefundSubmitter, SimulatedRefundSubmitter
from .store_postgres import PostgresDepositStore

console = Console()


def _monitor(ctx, submitter: Optional[RefundSubmitter] = None) -> RefundMonitor:
    try:
        return build_monitor(ctx.obj["settings"], submitter=submitter)
    except K33PError as e:
        raise click.ClickException(e.message) from e


@click.group()
@click.version_option(package_name="k33p-refund", message="%(prog)s %(version)s")
@click.option("--env-file", type=click.Path(dir_okay=False), help="Path to a .env file")
@click.option("--log-level", help="Override K33P_LOG_LEVEL")
@click.option("--json-logs", is_flag=True, help="Emit JSON log lines")
@click.pass_context
def cli(ctx, env_file: str | None, log_level: str | None, json_logs: bool):
    """K33P deposit refund monitor."""
    ctx.ensure_object(dict)
    try:
        settings = load_settings(env_file)
    except ValidationError as e:
        raise click.ClickException(f"Invalid configuration: {e}") from e

    setup_logging(
        level=log_level or settings.log_level,
        json_output=json_logs or settings.log_json,
        log_file=settings.log_file,
    )
    ctx.obj["settings"] = settings


@cli.command()
@click.pass_context
def run(ctx):
    """Run the auto-refund monitor until interrupted."""
    settings: K33PSettings = ctx.obj["settings"]

    async def _run() -> None:
        monitor = _monitor(ctx)
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)

        try:
            if not await monitor.start():
                console.print("[yellow]Auto-refund is disabled (K33P_AUTO_REFUND_ENABLED=false)[/yellow]")
                return
            console.print(
                f"[green]✓ Monitoring[/green] [cyan]{settings.deposit_address}[/cyan] "
                f"every {monitor.current_polling_interval:.0f}s"
            )
            await stop.wait()
        finally:
            await monitor.close()
        console.print("[green]✓ Monitor stopped[/green]")

    try:
        asyncio.run(_run())
    except K33PError as e:
        raise click.ClickException(e.message) from e


@cli.command("check-once")
@click.pass_context
def check_once(ctx):
    """Run a single reconciliation cycle."""

    async def _check():
        monitor = _monitor(ctx)
        try:
            return await monitor.trigger_manual_check()
        finally:
            await monitor.close()

    result = asyncio.run(_check())

    table = Table(title="Reconciliation Cycle")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    for key, value in result.to_dict().items():
        table.add_row(key, str(value))
    console.print(table)


@cli.command()
@click.pass_context
def status(ctx):
    """Show configuration and persisted monitor state."""
    settings: K33PSettings = ctx.obj["settings"]

    async def _status():
        # Read-only; never submits
        monitor = _monitor(ctx, submitter=SimulatedRefundSubmitter())
        try:
            await monitor.initialize()
            unrefunded = await monitor.ledger.list_unrefunded_deposits()
            return monitor.get_status(), len(unrefunded)
        finally:
            await monitor.close()

    state, unrefunded = asyncio.run(_status())

    console.print("\n[bold blue]K33P Refund Monitor[/bold blue]\n")
    console.print(f"Environment: [cyan]{settings.environment}[/cyan]")
    console.print(f"Indexer: [cyan]{settings.blockfrost_url}[/cyan]")
    console.print(f"API Key: [green]{mask_api_key(settings.blockfrost_api_key)}[/green]")
    console.print(f"Deposit Address: [cyan]{state['deposit_address'] or 'Not configured'}[/cyan]")
    enabled = "[green]enabled[/green]" if settings.auto_refund_enabled else "[yellow]disabled[/yellow]"
    console.print(f"Auto-refund: {enabled}")
    console.print(f"Processed transactions: [cyan]{state['processed_count']}[/cyan]")
    console.print(f"Last seen tx: [cyan]{state['last_seen_tx_hash'] or '-'}[/cyan]")
    console.print(f"Unrefunded deposits: [yellow]{unrefunded}[/yellow]")
    console.print()


@cli.command("retry-refunds")
@click.pass_context
def retry_refunds(ctx):
    """Retry refunds for verified deposits that were never refunded."""

    async def _retry():
        monitor = _monitor(ctx)
        try:
            await monitor.initialize()
            return await monitor.retry_unrefunded_deposits()
        finally:
            await monitor.close()

    summary = asyncio.run(_retry())
    console.print(
        f"Attempted [cyan]{summary['attempted']}[/cyan], "
        f"refunded [green]{summary['refunded']}[/green], "
        f"failed [red]{summary['failed']}[/red]"
    )


@cli.command("release-claim")
@click.argument("deposit_tx_hash")
@click.confirmation_option(
    prompt="Only release a claim after checking on-chain that no refund was sent. Continue?"
)
@click.pass_context
def release_claim(ctx, deposit_tx_hash: str):
    """Release an unfinished refund claim so the deposit can be retried."""
    settings: K33PSettings = ctx.obj["settings"]

    async def _release():
        store = build_store(settings)
        try:
            await store.initialize()
            claim = await store.get_refund_claim(deposit_tx_hash)
            released = await store.release_refund_claim(deposit_tx_hash)
            return claim, released
        finally:
            await store.close()

    claim, released = asyncio.run(_release())
    if claim is None:
        raise click.ClickException(f"No refund claim for {deposit_tx_hash}")
    if not released:
        raise click.ClickException(
            f"Claim on {deposit_tx_hash} already has refund {claim.refund_tx_hash}; not released"
        )
    console.print(
        f"[green]✓ Released claim on[/green] [cyan]{deposit_tx_hash}[/cyan] "
        f"(held for {claim.user_address})"
    )


@cli.command("init-db")
@click.pass_context
def init_db(ctx):
    """Create the PostgreSQL schema."""
    settings: K33PSettings = ctx.obj["settings"]
    if not settings.database_url:
        raise click.ClickException("K33P_DATABASE_URL is not set")

    async def _init():
        store = PostgresDepositStore(settings.database_url)
        try:
            await store.initialize()
        finally:
            await store.close()

    asyncio.run(_init())
    console.print("[green]✓ Database schema initialized[/green]")


if __name__ == "__main__":
    cli()
