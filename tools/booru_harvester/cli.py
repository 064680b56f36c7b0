"""CLI entry-point for the booru harvester."""

from __future__ import annotations

import logging
import signal
import sys
import threading
from pathlib import Path
from types import FrameType

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from .config import LEDGER_FILENAME, BooruConfig, HarvesterConfig
from .errors import ConfigError, HarvesterError
from .harvester import Harvester, verify_ledger
from .models import DownloadTask
from .scheduler import RunReport

console = Console(stderr=True)

EXIT_FAILURES = 1
EXIT_FATAL = 2
EXIT_CANCELLED = 130


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, console=console)],
    )
    # Suppress noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def _print_stats(report: RunReport) -> None:
    table = Table(title="Harvest Summary", show_header=True, header_style="bold cyan")
    table.add_column("Metric", style="bold")
    table.add_column("Count", justify="right")
    for key, val in report.as_dict().items():
        table.add_row(key.capitalize(), str(val))
    console.print(table)
    for post_id, reason, detail in report.failures[:20]:
        console.print(f"  [red]✗[/red] {post_id}: {reason.value} {detail}")
    if len(report.failures) > 20:
        console.print(f"  … and {len(report.failures) - 20} more")


def exit_status(report: RunReport, *, max_failures: int = 0) -> int:
    """0 when clean, 1 when failures exceed the tolerance, 2 on a run-fatal error."""
    if report.aborted:
        return EXIT_FATAL
    if report.cancelled:
        return EXIT_CANCELLED
    if report.failed > max_failures:
        return EXIT_FAILURES
    return 0


def _install_cancel_handler(cancel: threading.Event) -> None:
    def _handler(signum: int, frame: FrameType | None) -> None:
        if cancel.is_set():
            raise KeyboardInterrupt
        console.print("[yellow]Stopping after in-flight downloads… (Ctrl-C again to force)[/yellow]")
        cancel.set()

    signal.signal(signal.SIGINT, _handler)


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
def cli(verbose: bool) -> None:
    """Booru Harvester – Download Gelbooru images and tag files.

    Fetches post metadata page by page, downloads each image with MD5
    verification, writes a sidecar .txt with its tags, and records every
    verified file in a ledger so later runs skip it.
    """
    _setup_logging(verbose)


# ─── Commands ────────────────────────────────────────────────────


@cli.command()
@click.argument("tags", nargs=-1, required=True)
@click.option("-o", "--dir", "download_dir", envvar="BOORU_DOWNLOAD_DIR", default="downloads", type=click.Path(path_type=Path), help="Output directory")
@click.option("--ledger", "ledger_path", default=None, type=click.Path(path_type=Path), help=f"Ledger file (default: <dir>/{LEDGER_FILENAME})")
@click.option("--limit", default=0, type=int, help="Max posts to download (0 = all)")
@click.option("--max-pages", default=0, type=int, help="Max pages to fetch (0 = all)")
@click.option("--page-size", default=100, type=int, help="Posts per API page (1-100)")
@click.option("-w", "--workers", default=4, type=int, help="Concurrent downloads")
@click.option("--hash-workers", default=2, type=int, help="Concurrent hash verifications")
@click.option("--queue-size", default=8, type=int, help="Downloads allowed to wait for verification")
@click.option("--delay", envvar="BOORU_REQUEST_DELAY", default=0.5, type=float, help="Seconds between requests")
@click.option("--retries", default=5, type=int, help="Attempts per request")
@click.option("--timeout", default=30.0, type=float, help="Per-request timeout in seconds")
@click.option("--max-failures", default=0, type=int, help="Failed posts tolerated before exiting non-zero")
@click.option("--tag-separator", default=" ", help="Separator between tags in the .txt sidecar")
def download(
    tags: tuple[str, ...],
    download_dir: Path,
    ledger_path: Path | None,
    limit: int,
    max_pages: int,
    page_size: int,
    workers: int,
    hash_workers: int,
    queue_size: int,
    delay: float,
    retries: int,
    timeout: float,
    max_failures: int,
    tag_separator: str,
) -> None:
    """Download every post matching TAGS.

    Example: booru-harvester download cat rating:general --limit 200
    """
    cfg = HarvesterConfig(
        tags=" ".join(tags),
        download_dir=download_dir,
        booru=BooruConfig(page_size=page_size, request_delay=delay, max_retries=retries, timeout=timeout),
        ledger_path=ledger_path,
        download_workers=workers,
        hash_workers=hash_workers,
        hash_queue_size=queue_size,
        max_posts=limit,
        max_pages=max_pages,
        max_failures=max_failures,
        tag_separator=tag_separator,
    )
    cancel = threading.Event()
    try:
        h = Harvester(cfg, cancel=cancel)
    except ConfigError as exc:
        console.print(f"[red]✗[/red] {exc}")
        sys.exit(EXIT_FATAL)

    _install_cancel_handler(cancel)
    with h, Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
        console=console,
    ) as progress:
        task_id = progress.add_task(f"{cfg.tags}", total=cfg.max_posts or None)

        def _advance(task: DownloadTask) -> None:
            progress.advance(task_id)

        console.print(f"[bold]Harvesting [cyan]{cfg.tags}[/cyan] into {cfg.download_dir}...[/bold]")
        try:
            h.run(on_task_done=_advance)
        except ConfigError as exc:
            progress.stop()
            console.print(f"[red]✗[/red] {exc}")
            sys.exit(EXIT_FATAL)
        except HarvesterError as exc:
            progress.stop()
            console.print(f"[red]✗[/red] Run aborted: {exc}")
    _print_stats(h.report)
    sys.exit(exit_status(h.report, max_failures=cfg.max_failures))


@cli.command(name="preview")
@click.argument("tags", nargs=-1, required=True)
@click.option("--limit", default=10, type=int, help="Number of posts to show")
def preview(tags: tuple[str, ...], limit: int) -> None:
    """Preview a query's posts without downloading.

    Example: booru-harvester preview cat --limit 5
    """
    cfg = HarvesterConfig(tags=" ".join(tags), download_dir=Path("."), booru=BooruConfig(page_size=min(max(limit, 1), 100)))
    try:
        with Harvester(cfg) as h:
            posts = h.preview(limit)
    except HarvesterError as exc:
        console.print(f"[red]✗[/red] {exc}")
        sys.exit(EXIT_FATAL)

    table = Table(title=f"{cfg.tags} Preview", show_header=True, header_style="bold cyan")
    table.add_column("Id", style="bold", justify="right")
    table.add_column("File")
    table.add_column("MD5")
    table.add_column("Tags", max_width=50)
    for post in posts:
        table.add_row(str(post.id), post.filename, post.content_hash, post.tag_string[:50])
    console.print(table)


@cli.command(name="verify")
@click.option("-o", "--dir", "download_dir", envvar="BOORU_DOWNLOAD_DIR", default="downloads", type=click.Path(path_type=Path), help="Output directory")
@click.option("--ledger", "ledger_path", default=None, type=click.Path(path_type=Path), help=f"Ledger file (default: <dir>/{LEDGER_FILENAME})")
def verify(download_dir: Path, ledger_path: Path | None) -> None:
    """Re-hash every downloaded file recorded in the ledger."""
    report = verify_ledger(ledger_path or download_dir / LEDGER_FILENAME)
    for entry in report.missing:
        console.print(f"  [yellow]?[/yellow] missing {entry.path}")
    for entry in report.corrupt:
        console.print(f"  [red]✗[/red] corrupt {entry.path}")
    console.print(f"[green]✓[/green] {report.ok} files verified")
    if not report.clean:
        sys.exit(EXIT_FAILURES)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
