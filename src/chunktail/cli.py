from __future__ import annotations
import json
import logging
import os
from collections import Counter
from typing import Any, Dict, Optional
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import BarColumn, DownloadColumn, Progress as ProgressBar, TextColumn, TimeElapsedColumn
from rich.table import Table
from .config import Config, IngestOptions, load_config
from .errors import ConfigurationError, DecodeError, ReadError
from .filters import LineFilter, Verdict
from .pipeline import IngestPipeline
from .reader import MiB, Progress
from .sources.file_handle import LocalFile
from .watcher import WatchStatus

app = typer.Typer(help="chunktail - chunked log ingestion with filtering and tailing")
console = Console()
err_console = Console(stderr=True)

EXIT_FATAL = 2


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def _resolve(config: Optional[str], chunk_size: Optional[int], max_initial_mb: Optional[float],
             poll_interval: Optional[float] = None) -> Config:
    cfg = load_config(config)
    opts = cfg.options
    cfg.options = IngestOptions(
        chunk_size=chunk_size if chunk_size is not None else opts.chunk_size,
        max_initial_bytes=int(max_initial_mb * MiB) if max_initial_mb is not None else opts.max_initial_bytes,
        poll_interval=poll_interval if poll_interval is not None else opts.poll_interval,
        decode_errors=opts.decode_errors,
    )
    return cfg


def _open_file(path: str) -> LocalFile:
    if not os.path.exists(path):
        raise FileNotFoundError(
            f"Log file not found: {path}\n"
            f"Please check the file path and try again"
        )
    if not os.access(path, os.R_OK):
        raise PermissionError(
            f"Permission denied: {path}\n"
            f"Please ensure you have read permission for this file"
        )
    return LocalFile(path)


def _fail(e: Exception) -> None:
    if isinstance(e, ConfigurationError):
        err_console.print(f"[bold red]Configuration Error:[/bold red] {e}", style="red")
    else:
        err_console.print(f"[bold red]Error:[/bold red] {e}", style="red")
    raise typer.Exit(1)


def _print_line(line: str, json_out: bool) -> None:
    if json_out:
        print(json.dumps({"line": line}, ensure_ascii=False))
    else:
        console.print(line, markup=False, highlight=False, soft_wrap=True)


# Options shared by all commands
FILE_OPT = typer.Option(..., "--file", "-f", help="Path to the log file")
CONFIG_OPT = typer.Option(None, "--config", "-c", help="Path to a YAML config (defaults are built in)")
CHUNK_OPT = typer.Option(None, "--chunk-size", help="Bytes per read (default 1 MiB)")
MAX_MB_OPT = typer.Option(None, "--max-initial-mb", help="Only read the last N MiB of an existing file (default 20)")
VERBOSE_OPT = typer.Option(False, "--verbose", "-v", help="Log pass and watch activity to stderr")


@app.command()
def scan(
    file: str = FILE_OPT,
    config: Optional[str] = CONFIG_OPT,
    json_out: bool = typer.Option(False, "--json", help="Output JSON lines instead of plain text"),
    chunk_size: Optional[int] = CHUNK_OPT,
    max_initial_mb: Optional[float] = MAX_MB_OPT,
    verbose: bool = VERBOSE_OPT,
):
    """Read the file once and print the accepted lines."""
    _setup_logging(verbose)
    try:
        cfg = _resolve(config, chunk_size, max_initial_mb)
        handle = _open_file(file)
    except (FileNotFoundError, PermissionError, ValueError) as e:
        _fail(e)

    with ProgressBar(
        TextColumn("[bold blue]{task.description}"),
        BarColumn(),
        DownloadColumn(binary_units=True),
        TimeElapsedColumn(),
        console=err_console,
        transient=True,
        disable=json_out,
    ) as bar:
        task = bar.add_task("reading", total=None)

        def on_progress(p: Progress) -> None:
            bar.update(task, completed=p.bytes_read, total=p.total_bytes)

        pipeline = IngestPipeline(
            cfg.options,
            LineFilter.from_rule(cfg.rule),
            on_line=lambda line: _print_line(line, json_out),
            on_progress=on_progress,
        )
        try:
            pipeline.ingest(handle, follow=False)
        except (OSError, ReadError, DecodeError) as e:
            _fail(e)


@app.command()
def follow(
    file: str = FILE_OPT,
    config: Optional[str] = CONFIG_OPT,
    json_out: bool = typer.Option(False, "--json", help="Output JSON lines (one accepted line per object)"),
    chunk_size: Optional[int] = CHUNK_OPT,
    max_initial_mb: Optional[float] = MAX_MB_OPT,
    poll_interval: Optional[float] = typer.Option(None, "--poll", help="Polling interval seconds (default 1.0)"),
    verbose: bool = VERBOSE_OPT,
):
    """Read the tail of the file, then keep printing accepted lines as it grows."""
    _setup_logging(verbose)
    try:
        cfg = _resolve(config, chunk_size, max_initial_mb, poll_interval)
        handle = _open_file(file)
    except (FileNotFoundError, PermissionError, ValueError) as e:
        _fail(e)

    def on_fatal(reason: str) -> None:
        err_console.print(f"[bold red]Fatal:[/bold red] {reason}; stopped following {file}")

    pipeline = IngestPipeline(
        cfg.options,
        LineFilter.from_rule(cfg.rule),
        on_line=lambda line: _print_line(line, json_out),
        on_fatal=on_fatal,
    )
    session = pipeline.open(handle)
    if not json_out:
        err_console.print(f"[green]Following[/green] {file}  (Ctrl+C to stop)")
        err_console.print(
            f"chunk={cfg.options.chunk_size}B | max_initial={cfg.options.max_initial_bytes}B "
            f"| poll={cfg.options.poll_interval}s"
        )

    try:
        status = session.run()
    except KeyboardInterrupt:
        # flush the partial last line before leaving
        session.stop()
        err_console.print("[yellow]Stopped.[/yellow]")
        return
    except (OSError, ReadError, DecodeError) as e:
        _fail(e)

    if status is WatchStatus.STOPPED:
        raise typer.Exit(EXIT_FATAL)


def _generate_statistics(counts: Counter, bytes_read: int, passes: int) -> Dict[str, Any]:
    """
    Summarise one scan of a file.

    Args:
        counts: Verdict counts for every line seen
        bytes_read: Bytes consumed by the pass
        passes: Number of passes (1 for a scan)

    Returns:
        Dictionary containing all statistics
    """
    total = sum(counts.values())
    accepted = counts.get(Verdict.ACCEPTED, 0)
    return {
        "total_lines": total,
        "accepted": accepted,
        "no_match": counts.get(Verdict.NO_MATCH, 0),
        "excluded": counts.get(Verdict.EXCLUDED, 0),
        "acceptance_rate": (accepted / total) if total else 0.0,
        "bytes_read": bytes_read,
        "passes": passes,
    }


@app.command()
def stats(
    file: str = FILE_OPT,
    config: Optional[str] = CONFIG_OPT,
    json_out: bool = typer.Option(False, "--json", help="Output JSON instead of a table"),
    chunk_size: Optional[int] = CHUNK_OPT,
    max_initial_mb: Optional[float] = MAX_MB_OPT,
    verbose: bool = VERBOSE_OPT,
):
    """
    Scan the file once and report how many lines the filter accepts.

    Lines rejected because nothing in `include` matched are counted apart
    from lines dropped by `exclude`.
    """
    _setup_logging(verbose)
    try:
        cfg = _resolve(config, chunk_size, max_initial_mb)
        handle = _open_file(file)
    except (FileNotFoundError, PermissionError, ValueError) as e:
        _fail(e)

    line_filter = LineFilter.from_rule(cfg.rule)
    counts: Counter = Counter()
    progress: Dict[str, int] = {"bytes": 0}

    def on_progress(p: Progress) -> None:
        progress["bytes"] = p.bytes_read

    def count(line: str) -> None:
        counts[line_filter.classify(line)] += 1

    pipeline = IngestPipeline(
        cfg.options,
        line_filter,
        on_line=count,
        on_reject=count,
        on_progress=on_progress,
    )
    try:
        pipeline.ingest(handle, follow=False)
    except (OSError, ReadError, DecodeError) as e:
        _fail(e)

    stats_data = _generate_statistics(counts, progress["bytes"], passes=1)

    if json_out:
        print(json.dumps(stats_data, ensure_ascii=False, indent=2))
        raise typer.Exit(0)

    console.print(f"[bold]File:[/bold] {file}")
    console.print(f"[bold]Bytes read:[/bold] {stats_data['bytes_read']:,}")
    console.print(f"[bold]Total lines:[/bold] {stats_data['total_lines']:,}\n")

    table = Table(title="Filter Verdicts", show_header=True, header_style="bold magenta")
    table.add_column("Verdict", style="cyan", width=20)
    table.add_column("Lines", justify="right", style="green")
    table.add_column("Percentage", justify="right", style="yellow")

    total = stats_data["total_lines"]
    for key in ("accepted", "no_match", "excluded"):
        n = stats_data[key]
        percentage = (n / total) * 100 if total else 0.0
        table.add_row(key, str(n), f"{percentage:.1f}%")

    console.print(table)


if __name__ == "__main__":
    app()
