"""tokenledger CLI entry point.

Provides commands to inspect the sharing policy, compute local rollups,
run a one-off sync and query the remote store.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Annotated

import typer

from tokenledger.config import TokenLedgerConfig, clamp_lookback_days, get_config
from tokenledger.models.schemas import ROLLUP_DIMENSIONS
from tokenledger.policy.sharing import policy_from_settings
from tokenledger.rollups.aggregator import aggregate_by_dimension, aggregate_by_week

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = typer.Typer(
    name="tokenledger",
    help="tokenledger - local token usage rollups with policy-controlled sharing",
    add_completion=False,
)

ConfigOption = Annotated[str, typer.Option("--config", "-c", help="Path to YAML configuration file")]
VerboseOption = Annotated[bool, typer.Option("--verbose", "-v", help="Enable verbose output")]


def _load(config: str, verbose: bool) -> TokenLedgerConfig:
    try:
        settings = get_config(config or None)
    except ValueError as e:
        typer.echo(f"❌ Invalid configuration: {e}", err=True)
        raise typer.Exit(code=1) from e
    if verbose or settings.debug:
        logging.getLogger().setLevel(logging.DEBUG)
    return settings


@app.command()
def policy(config: ConfigOption = "", verbose: VerboseOption = False) -> None:
    """Show the effective sharing policy."""
    settings = _load(config, verbose)
    effective = policy_from_settings(settings.backend)

    typer.echo(f"Profile: {effective.profile.value}")
    typer.echo(f"  Cloud sync: {'allowed' if effective.allow_cloud_sync else 'disabled'}")
    typer.echo(f"  User dimension: {'included' if effective.include_user_dimension else 'excluded'}")
    typer.echo(f"  Names: {'included' if effective.include_names else 'excluded'}")
    typer.echo(f"  Workspace ids: {effective.workspace_id_strategy.value}")
    typer.echo(f"  Machine ids: {effective.machine_id_strategy.value}")


@app.command()
def rollups(
    lookback: Annotated[int, typer.Option("--lookback", "-l", help="Days to include (1-90)")] = 0,
    by: Annotated[str, typer.Option("--by", "-b", help="Group by dimension")] = "day",
    week: Annotated[bool, typer.Option("--week", "-w", help="Group by ISO week")] = False,
    config: ConfigOption = "",
    verbose: VerboseOption = False,
) -> None:
    """Compute local daily rollups from session logs."""
    if by not in ROLLUP_DIMENSIONS:
        typer.echo(f"❌ Invalid dimension: {by}", err=True)
        typer.echo(f"   Valid dimensions: {', '.join(ROLLUP_DIMENSIONS)}", err=True)
        raise typer.Exit(code=1)

    settings = _load(config, verbose)
    lookback_days = clamp_lookback_days(lookback) if lookback else settings.backend.lookback_days

    from tokenledger.main import TokenLedgerApplication

    async def _build():
        ledger = TokenLedgerApplication(settings)
        await ledger.initialize()
        try:
            builder, _, _ = ledger.services()
            return await builder.build(lookback_days)
        finally:
            await ledger.dispose()

    result = asyncio.run(_build())
    entries = list(result.rollups.values())
    grouped = aggregate_by_week(entries) if week else aggregate_by_dimension(entries, by)

    typer.echo(f"Rollups {result.start_day}..{result.end_day} ({result.stats.files_seen} files)")
    for name, value in sorted(grouped.items()):
        typer.echo(
            f"  {name}: input={value.input_tokens} output={value.output_tokens} "
            f"interactions={value.interactions}"
        )


@app.command()
def sync(config: ConfigOption = "", verbose: VerboseOption = False) -> None:
    """Run one forced sync into the configured table store."""
    settings = _load(config, verbose)
    if settings.backend.store_path == ":memory:":
        typer.echo("❌ Sync needs a persistent store; set backend.store_path to a file", err=True)
        raise typer.Exit(code=1)

    from tokenledger.main import TokenLedgerApplication
    from tokenledger.sync.service import SyncStatus

    async def _sync():
        ledger = TokenLedgerApplication(settings)
        await ledger.initialize()
        try:
            _, sync_service, _ = ledger.services()
            return await sync_service.sync(force=True)
        finally:
            await ledger.dispose()

    result = asyncio.run(_sync())
    for warning in result.warnings:
        typer.echo(f"⚠️  {warning}", err=True)

    if result.status is SyncStatus.SUCCESS:
        typer.echo(f"✅ Synced {result.entities_written} entities")
        return
    typer.echo(f"❌ Sync {result.status.value}: {result.reason}", err=True)
    raise typer.Exit(code=1)


@app.command()
def query(
    lookback: Annotated[int, typer.Option("--lookback", "-l", help="Days to include (1-90)")] = 0,
    model: Annotated[str, typer.Option("--model", help="Only this model")] = "",
    workspace: Annotated[str, typer.Option("--workspace", help="Only this workspace id")] = "",
    machine: Annotated[str, typer.Option("--machine", help="Only this machine id")] = "",
    config: ConfigOption = "",
    verbose: VerboseOption = False,
) -> None:
    """Aggregate remote rollups for the lookback window."""
    settings = _load(config, verbose)

    from tokenledger.main import TokenLedgerApplication

    async def _query():
        ledger = TokenLedgerApplication(settings)
        await ledger.initialize()
        try:
            _, _, query_service = ledger.services()
            changes: dict[str, object] = {"model": model, "workspace_id": workspace, "machine_id": machine}
            if lookback:
                changes["lookback_days"] = lookback
            query_service.set_filters(**changes)
            return await query_service.query_rollups()
        finally:
            await ledger.dispose()

    result = asyncio.run(_query())
    typer.echo(
        f"Total: input={result.total_input_tokens} output={result.total_output_tokens} "
        f"interactions={result.total_interactions} ({result.entity_count} entities)"
    )
    for name, usage in sorted(result.model_usage.items()):
        typer.echo(f"  {name}: input={usage.input_tokens} output={usage.output_tokens}")
    for workspace_id, tokens in result.workspace_token_totals:
        label = result.workspace_names.get(workspace_id, workspace_id)
        typer.echo(f"  workspace {label}: {tokens}")


@app.command()
def run(config: ConfigOption = "", verbose: VerboseOption = False) -> None:
    """Run the periodic sync until interrupted."""
    settings = _load(config, verbose)

    from tokenledger.main import TokenLedgerApplication

    asyncio.run(TokenLedgerApplication(settings).run())


@app.command()
def version() -> None:
    """Show tokenledger version information."""
    import importlib.metadata

    try:
        ver = importlib.metadata.version("tokenledger")
    except importlib.metadata.PackageNotFoundError:
        from tokenledger import __version__ as ver
    typer.echo(f"tokenledger version: {ver}")


def main() -> None:
    """Main CLI entry point."""
    app()


if __name__ == "__main__":
    main()
