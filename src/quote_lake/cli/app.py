from __future__ import annotations

import signal
from collections.abc import Sequence
from types import FrameType

import typer
from pydantic import ValidationError
from pydantic_settings import SettingsError
from redis.exceptions import RedisError
from rich.console import Console
from rich.table import Table

from quote_lake.core.config import SUPPORTED_EXCHANGES, Settings
from quote_lake.core.enums import ConnectionState
from quote_lake.core.errors import ConfigurationError
from quote_lake.core.logging import configure_logging
from quote_lake.core.quote import series_keys
from quote_lake.feeds.registry import build_feeds
from quote_lake.pipeline.orchestrator import PipelineSummary, QuoteIngestionOrchestrator
from quote_lake.writer.timeseries import TimeSeriesQuoteWriter, create_redis_client

app = typer.Typer(help="Crypto best bid/ask quote ingestion CLI")
console = Console()

CONFIG_ERROR_EXIT_CODE = 2


def _parse_exchanges(values: Sequence[str] | None) -> list[str] | None:
    if not values:
        return None
    parsed: list[str] = []
    for raw in values:
        for item in raw.split(","):
            name = item.strip().upper()
            if not name:
                continue
            if name not in SUPPORTED_EXCHANGES:
                raise typer.BadParameter(
                    f"unknown exchange {item.strip()!r}; choose from {', '.join(SUPPORTED_EXCHANGES)}"
                )
            if name not in parsed:
                parsed.append(name)
    return parsed or None


def _load_settings() -> Settings:
    try:
        return Settings()
    except (ValidationError, SettingsError) as exc:
        console.print(f"[red]Invalid configuration:[/red] {exc}")
        raise typer.Exit(code=CONFIG_ERROR_EXIT_CODE) from exc


def _exit_code_for(summaries: Sequence[PipelineSummary]) -> int:
    if any(summary.error is not None for summary in summaries):
        return 1
    return 0


def _summary_table(summaries: Sequence[PipelineSummary]) -> Table:
    table = Table(title="Exchange pipelines")
    table.add_column("exchange")
    table.add_column("state")
    table.add_column("quotes", justify="right")
    table.add_column("points written", justify="right")
    table.add_column("points failed", justify="right")
    table.add_column("discarded", justify="right")
    table.add_column("sessions", justify="right")
    for summary in summaries:
        state = summary.state.value
        if summary.state is ConnectionState.ABORTED:
            state = f"[red]{state}[/red]"
        table.add_row(
            summary.exchange,
            state,
            str(summary.quotes_accepted),
            str(summary.points_written),
            str(summary.points_failed),
            str(summary.frames_discarded),
            str(summary.sessions_opened),
        )
    return table


@app.command("run")
def run(
    exchanges: list[str] | None = typer.Argument(
        default=None,
        help="Exchanges to ingest (default: every configured exchange)",
    ),
) -> None:
    settings = _load_settings()
    configure_logging(settings.log_level)
    selected = _parse_exchanges(exchanges)

    try:
        settings.redis_url()
        orchestrator = QuoteIngestionOrchestrator(settings=settings, feeds=build_feeds(settings, selected))
    except ConfigurationError as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        raise typer.Exit(code=CONFIG_ERROR_EXIT_CODE) from exc

    def _handle_shutdown(signum: int, _frame: FrameType | None) -> None:
        console.print(f"Received {signal.Signals(signum).name}; stopping pipelines")
        orchestrator.request_stop()

    signal.signal(signal.SIGINT, _handle_shutdown)
    signal.signal(signal.SIGTERM, _handle_shutdown)

    summaries = orchestrator.run()
    console.print(_summary_table(summaries))
    code = _exit_code_for(summaries)
    if code:
        raise typer.Exit(code=code)


@app.command("list-exchanges")
def list_exchanges() -> None:
    settings = _load_settings()
    configured = set(settings.exchanges)
    for exchange in SUPPORTED_EXCHANGES:
        marker = "[green]enabled[/green]" if exchange in configured else "disabled"
        console.print(f"{exchange:<10} {marker}")


@app.command("show-series")
def show_series(exchange: str = typer.Argument(help="Exchange name, e.g. KRAKEN")) -> None:
    settings = _load_settings()
    names = _parse_exchanges([exchange]) or []
    if len(names) != 1:
        raise typer.BadParameter("expected exactly one exchange")

    table = Table(title=f"{names[0]} series (retention {settings.retention_ms} ms, duplicates keep last)")
    table.add_column("key", no_wrap=True)
    table.add_column("labels")
    for key in series_keys(names[0], pair=settings.series_pair):
        table.add_row(key.name, " ".join(f"{label}={value}" for label, value in key.labels.items()))
    console.print(table)


@app.command("check-store")
def check_store() -> None:
    settings = _load_settings()
    configure_logging(settings.log_level)
    try:
        writer = TimeSeriesQuoteWriter(create_redis_client(settings), pair=settings.series_pair)
    except ConfigurationError as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        raise typer.Exit(code=CONFIG_ERROR_EXIT_CODE) from exc

    try:
        writer.ping()
    except RedisError as exc:
        console.print(f"[red]Store unreachable at {settings.redis_host}:{settings.redis_port}:[/red] {exc}")
        raise typer.Exit(code=1) from exc
    finally:
        writer.close()
    console.print(f"[green]Store reachable at {settings.redis_host}:{settings.redis_port}.[/green]")


if __name__ == "__main__":
    app()
