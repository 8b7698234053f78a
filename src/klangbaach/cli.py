from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
    TimeRemainingColumn,
)

from klangbaach.constants import DEFAULT_PAIR_ADDRESS, DEFAULT_START_HEIGHT
from klangbaach.core.cancel import CancelToken
from klangbaach.core.config import InfluxConfig, MinerConfig, RetryPolicy
from klangbaach.core.errors import KlangbaachError

console = Console()

# every option reads KLANGBAACH_<OPTION>, subcommand names are not part of the variable
ENV_SETTINGS = {"auto_envvar_prefix": "KLANGBAACH"}


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def _end_height(value: str) -> int | str:
    if value.lower() == "latest":
        return "latest"
    try:
        return int(value)
    except ValueError as e:
        raise click.BadParameter("expected a block height or 'latest'") from e


@click.group(context_settings=ENV_SETTINGS)
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default="info",
    show_default=True,
)
def cli(log_level: str) -> None:
    """klangbaach: Uniswap-v2 pair reserves & volumes as a time series."""
    _setup_logging(log_level)


@cli.command("mine", context_settings=ENV_SETTINGS)
@click.option("--rpc", "rpc_url", required=True, envvar="KLANGBAACH_RPC_URL", help="RPC endpoint URL")
@click.option("--pair", "pair_address", default=DEFAULT_PAIR_ADDRESS, show_default=True, help="Pair contract address")
@click.option("--start-height", type=int, default=DEFAULT_START_HEIGHT, show_default=True)
@click.option("--end-height", default="latest", show_default=True, help="Last height (inclusive) or 'latest'")
@click.option("--batch-size", type=int, default=100, show_default=True, help="Heights per eth_getLogs request")
@click.option("--measurement", default="ethereum", show_default=True)
@click.option("--pair-name", default="WETH/USDC", show_default=True, help="Static `pair` tag")
@click.option("--chain-name", default=None, help="Static `chain` tag")
@click.option(
    "--tags-source",
    type=click.Choice(["static", "token-metadata"]),
    default="static",
    show_default=True,
    help="token-metadata reads token symbols and chain id on-chain",
)
@click.option("--encoding", "field_encoding", type=click.Choice(["decimal", "hex"]), default="decimal", show_default=True)
@click.option("--reserve-policy", type=click.Choice(["additive", "last"]), default="additive", show_default=True)
@click.option("--abi", "abi_path", type=click.Path(exists=True, dir_okay=False, path_type=Path), default=None,
              help="Pair ABI JSON to take the Swap/Sync definitions from")
@click.option("--cache", "cache_path", type=click.Path(dir_okay=False, path_type=Path),
              default=Path("./data/timestamps.duckdb"), show_default=True, help="DuckDB timestamp cache")
@click.option("--no-cache", is_flag=True, default=False, help="Run without the timestamp cache")
@click.option("--sink", type=click.Choice(["parquet", "influx"]), default="parquet", show_default=True)
@click.option("--out-root", type=click.Path(file_okay=False, path_type=Path), default=Path("./data"), show_default=True)
@click.option("--points-per-shard", type=int, default=100_000, show_default=True)
@click.option("--points-per-write", type=int, default=5_000, show_default=True)
@click.option("--influx-url", default=None, envvar="KLANGBAACH_INFLUX_URL")
@click.option("--influx-token", default=None, envvar="KLANGBAACH_INFLUX_TOKEN")
@click.option("--influx-org", default=None, envvar="KLANGBAACH_INFLUX_ORG")
@click.option("--influx-bucket", default=None, envvar="KLANGBAACH_INFLUX_BUCKET")
@click.option("--concurrency", "timestamp_concurrency", type=int, default=16, show_default=True,
              help="Max parallel header fetches")
@click.option("--timeout", "timeout_s", type=int, default=20, show_default=True, help="Per-call timeout (s)")
@click.option("--max-attempts", type=int, default=5, show_default=True)
@click.option("--backoff", "backoff_s", type=float, default=0.8, show_default=True)
@click.option("--retry-timeouts/--no-retry-timeouts", default=True, show_default=True)
@click.option("--pipeline-writes/--no-pipeline-writes", default=False, show_default=True,
              help="Overlap sink writes with fetching the next batch")
@click.option("--manifest/--no-manifest", default=True, show_default=True, help="Journal batches to JSONL")
@click.option("--resume/--no-resume", default=False, show_default=True,
              help="Skip batches already journaled as done")
def mine_cmd(
    rpc_url: str,
    pair_address: str,
    start_height: int,
    end_height: str,
    batch_size: int,
    measurement: str,
    pair_name: str,
    chain_name: str | None,
    tags_source: str,
    field_encoding: str,
    reserve_policy: str,
    abi_path: Path | None,
    cache_path: Path,
    no_cache: bool,
    sink: str,
    out_root: Path,
    points_per_shard: int,
    points_per_write: int,
    influx_url: str | None,
    influx_token: str | None,
    influx_org: str | None,
    influx_bucket: str | None,
    timestamp_concurrency: int,
    timeout_s: int,
    max_attempts: int,
    backoff_s: float,
    retry_timeouts: bool,
    pipeline_writes: bool,
    manifest: bool,
    resume: bool,
) -> None:
    """Mine Swap/Sync aggregates of a pair over a block range."""
    influx = None
    if sink == "influx":
        missing = [
            name
            for name, v in (
                ("--influx-url", influx_url),
                ("--influx-token", influx_token),
                ("--influx-org", influx_org),
                ("--influx-bucket", influx_bucket),
            )
            if not v
        ]
        if missing:
            raise click.UsageError(f"--sink influx needs {', '.join(missing)}")
        influx = InfluxConfig(url=influx_url, token=influx_token, org=influx_org, bucket=influx_bucket)

    try:
        config = MinerConfig(
            rpc_url=rpc_url,
            pair_address=pair_address,
            start_height=start_height,
            end_height=_end_height(end_height),
            batch_size=batch_size,
            measurement=measurement,
            pair_name=pair_name,
            chain_name=chain_name,
            field_encoding=field_encoding,
            reserve_policy=reserve_policy,
            tags_source=tags_source,
            abi_path=abi_path,
            cache_path=None if no_cache else cache_path,
            sink=sink,
            out_root=out_root,
            points_per_shard=points_per_shard,
            points_per_write=points_per_write,
            influx=influx,
            timestamp_concurrency=timestamp_concurrency,
            timeout_s=timeout_s,
            retry=RetryPolicy(max_attempts=max_attempts, backoff_s=backoff_s, retry_timeouts=retry_timeouts),
            pipeline_writes=pipeline_writes,
            manifest=manifest,
            resume=resume,
        )
    except ValueError as e:
        raise click.UsageError(str(e)) from e

    from klangbaach.orchestration.orchestrator import mine

    progress = Progress(
        SpinnerColumn(),
        TextColumn("[bold]mining[/]"),
        BarColumn(),
        MofNCompleteColumn(),
        TextColumn("•"),
        TimeElapsedColumn(),
        TextColumn("→"),
        TimeRemainingColumn(),
        TextColumn(" • {task.description}"),
        console=console,
        transient=False,
        expand=True,
    )

    async def run():
        cancel = CancelToken()
        loop = asyncio.get_running_loop()
        # first Ctrl-C stops after the current batch, completed batches are still flushed
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(signal.SIGINT, cancel.cancel)

        task_id = None

        def on_start(start: int, end: int, batches: int) -> None:
            nonlocal task_id
            task_id = progress.add_task(description=f"{start:,}-{end:,}", total=batches)

        def on_batch(a: int, b: int, stats) -> None:
            progress.update(task_id, advance=1, description=f"{b:,} • points={stats.points_emitted:,}")

        with progress:
            return await mine(config, cancel=cancel, on_start=on_start, on_batch=on_batch)

    try:
        out = asyncio.run(run())
    except (KlangbaachError, ValueError) as e:
        raise click.ClickException(str(e)) from e

    s = out.stats
    console.print(f"[bold]done[/]: [{out.start_height:,}, {out.last_height:,}] • {s.elapsed_s:.2f}s")
    console.print(
        f"[bold]summary[/]: "
        f"[green]batches[/]={s.batches_done}  "
        f"[yellow]skipped[/]={s.batches_skipped}  "
        f"logs={s.total_logs} (ignored={s.ignored_logs})  "
        f"heights={s.heights}  points={s.points_emitted}  "
        f"timestamps cached={s.timestamps_cached} fetched={s.timestamps_fetched}"
    )
    if out.manifest_path is not None:
        console.print(f"[dim]manifest[/]: {out.manifest_path}")


@cli.command("import-timestamps", context_settings=ENV_SETTINGS)
@click.argument("csv_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--cache", "cache_path", type=click.Path(dir_okay=False, path_type=Path),
              default=Path("./data/timestamps.duckdb"), show_default=True, help="DuckDB timestamp cache")
@click.option("--chunk-rows", type=int, default=1_000, show_default=True)
def import_timestamps_cmd(csv_path: Path, cache_path: Path, chunk_rows: int) -> None:
    """Load a `height,timestamp` CSV (unix seconds) into the timestamp cache."""
    from klangbaach.storage.imports import import_height_timestamps
    from klangbaach.storage.timestamps import DuckDBTimestampCache

    async def run() -> tuple[int, int]:
        cache = DuckDBTimestampCache(cache_path)
        try:
            rows = await import_height_timestamps(csv_path, cache, chunk_rows=chunk_rows)
            return rows, cache.count()
        finally:
            cache.close()

    try:
        rows, total = asyncio.run(run())
    except ValueError as e:
        raise click.ClickException(str(e)) from e
    console.print(f"[bold]imported[/]: {rows} rows from {csv_path} • cache holds {total} heights")


if __name__ == "__main__":
    cli()
