"""CLI entry-point for the gallery archiver."""

from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

import click
import psycopg
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import BarColumn, DownloadColumn, Progress, SpinnerColumn, TextColumn, TransferSpeedColumn
from rich.table import Table

from .config import ArchiverConfig, DatabaseConfig, SiteConfig, StorageConfig
from .db import Database
from .downloader import ProgressHook
from .errors import ArchiverError
from .pipeline import Archiver

console = Console()


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
    logging.getLogger("PIL").setLevel(logging.WARNING)


def _print_stats(stats: dict, title: str = "Archive Summary") -> None:
    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column("Metric", style="bold")
    table.add_column("Count", justify="right")
    for key, val in stats.items():
        table.add_row(key.replace("_", " ").capitalize(), str(val))
    console.print(table)


@contextmanager
def _download_progress() -> Iterator[ProgressHook]:
    """A rich progress display with one bar per download worker."""
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        DownloadColumn(),
        TransferSpeedColumn(),
        console=console,
        transient=True,
    ) as progress:
        tasks: dict[str, int] = {}

        def hook(kind: str, name: str, transferred: int, total: int | None) -> None:
            if kind not in tasks:
                tasks[kind] = progress.add_task(kind, total=None)
            progress.update(tasks[kind], description=f"{kind}: {name}", completed=transferred, total=total)

        yield hook


@click.group()
@click.option("--db-host", envvar="DB_HOST", default="localhost", help="PostgreSQL host")
@click.option("--db-port", envvar="DB_PORT", default=5432, type=int, help="PostgreSQL port")
@click.option("--db-name", envvar="DB_NAME", default="archiver", help="PostgreSQL database name")
@click.option("--db-user", envvar="DB_USER", default="archiver", help="PostgreSQL user")
@click.option("--db-password", envvar="DB_PASSWORD", default="archiver", help="PostgreSQL password")
@click.option("--base-url", envvar="FA_BASE_URL", default="https://www.furaffinity.net", help="Site base URL")
@click.option("--cookie-a", envvar="FA_COOKIE_A", default="", help="Session cookie 'a'")
@click.option("--cookie-b", envvar="FA_COOKIE_B", default="", help="Session cookie 'b'")
@click.option(
    "--archive-dir",
    envvar="ARCHIVE_DIR",
    default="fa_gallery_downloader",
    type=click.Path(file_okay=False, path_type=Path),
    help="Root directory for downloaded files",
)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, **kwargs: object) -> None:
    """Gallery Archiver – Keep a local copy of FurAffinity galleries.

    Discovers submissions, saves their metadata and comments to PostgreSQL,
    and downloads the files into one folder per account.
    """
    _setup_logging(bool(kwargs.pop("verbose")))
    ctx.ensure_object(dict)
    ctx.obj["db_cfg"] = DatabaseConfig(
        host=kwargs["db_host"],  # type: ignore[arg-type]
        port=kwargs["db_port"],  # type: ignore[arg-type]
        dbname=kwargs["db_name"],  # type: ignore[arg-type]
        user=kwargs["db_user"],  # type: ignore[arg-type]
        password=kwargs["db_password"],  # type: ignore[arg-type]
    )
    ctx.obj["site_cfg"] = SiteConfig(
        base_url=str(kwargs["base_url"]).rstrip("/"),
        cookie_a=kwargs["cookie_a"],  # type: ignore[arg-type]
        cookie_b=kwargs["cookie_b"],  # type: ignore[arg-type]
    )
    ctx.obj["storage_cfg"] = StorageConfig(root=kwargs["archive_dir"])  # type: ignore[arg-type]


def _make_config(ctx: click.Context, *, comments: bool = True, thumbnails: bool = True) -> ArchiverConfig:
    return ArchiverConfig(
        db=ctx.obj["db_cfg"],
        site=ctx.obj["site_cfg"],
        storage=ctx.obj["storage_cfg"],
        download_comments=comments,
        download_thumbnails=thumbnails,
    )


@contextmanager
def _database_errors() -> Iterator[None]:
    try:
        yield
    except psycopg.Error as exc:
        console.print(f"[red]✗[/red] Database error: {exc}")
        sys.exit(1)


@contextmanager
def _database(ctx: click.Context) -> Iterator[Database]:
    """Open the store with its schema in place."""
    with _database_errors(), Database(ctx.obj["db_cfg"]) as db:
        db.init_schema()
        yield db


@contextmanager
def _archiver(cfg: ArchiverConfig) -> Iterator[Archiver]:
    """Open an Archiver; Ctrl-C cancels, a cancelled run exits non-zero."""
    with _database_errors(), Archiver(cfg) as a:
        try:
            yield a
        except KeyboardInterrupt:
            a.token.cancel("interrupted")
            console.print("[yellow]Interrupted[/yellow]")
            sys.exit(130)
        except ArchiverError as exc:
            console.print(f"[red]✗[/red] {exc}")
            _print_stats(dict(a.stats))
            sys.exit(1)


# ─── Commands ────────────────────────────────────────────────────


@cli.command(name="init-db")
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Create the database tables (safe to run repeatedly)."""
    with _database(ctx):
        pass
    console.print("[green]✓[/green] Database ready")


@cli.command()
@click.argument("username")
@click.option("--scraps", is_flag=True, help="Walk the scraps folder instead of the gallery")
@click.option("--favorites", is_flag=True, help="Walk the user's favorites")
@click.pass_context
def walk(ctx: click.Context, username: str, scraps: bool, favorites: bool) -> None:
    """Discover submission links for a user.

    Example: gallery-archiver walk someartist --scraps
    """
    if scraps and favorites:
        raise click.UsageError("--scraps and --favorites are mutually exclusive")
    with _archiver(_make_config(ctx)) as a:
        result = a.walk(username.lower(), scraps=scraps, favorites=favorites)
        a.token.raise_if_cancelled()
        _print_stats({"pages": result.pages, "found": result.found, "new": result.new, "known": result.known})


@cli.command()
@click.option("--comments/--no-comments", default=True, help="Also save submission comments")
@click.option("--repair", is_flag=True, help="Re-read submissions with incomplete metadata")
@click.option("--user", "username", default=None, help="Limit --repair to one account")
@click.pass_context
def metadata(ctx: click.Context, comments: bool, repair: bool, username: str | None) -> None:
    """Fetch metadata for every discovered submission."""
    with _archiver(_make_config(ctx, comments=comments)) as a:
        stats = a.harvest(repair=repair, username=username)
        a.token.raise_if_cancelled()
        _print_stats(stats)


@cli.command()
@click.option("--user", "username", default=None, help="Only download files for this account")
@click.option("--no-thumbs", is_flag=True, help="Skip thumbnail downloads")
@click.pass_context
def download(ctx: click.Context, username: str | None, no_thumbs: bool) -> None:
    """Download pending content and thumbnails."""
    with _archiver(_make_config(ctx, thumbnails=not no_thumbs)) as a:
        with _download_progress() as hook:
            stats = a.download(username=username, on_progress=hook)
        a.token.raise_if_cancelled()
        _print_stats(dict(stats), title="Download Summary")


@cli.command()
@click.pass_context
def reconcile(ctx: click.Context) -> None:
    """Move saved files into their account folders and purge invalid ones."""
    with _archiver(_make_config(ctx)) as a:
        _print_stats(a.reconcile(), title="Reconcile Summary")


@cli.command()
@click.argument("usernames", nargs=-1)
@click.option("--no-comments", is_flag=True, help="Skip comment harvesting")
@click.option("--no-thumbs", is_flag=True, help="Skip thumbnail downloads")
@click.pass_context
def run(ctx: click.Context, usernames: tuple[str, ...], no_comments: bool, no_thumbs: bool) -> None:
    """Run the whole pipeline for the given users, or every owned account.

    Example: gallery-archiver run artist_one artist_two
    """
    cfg = _make_config(ctx, comments=not no_comments, thumbnails=not no_thumbs)
    with _archiver(cfg) as a:
        with _download_progress() as hook:
            stats = a.run([u.lower() for u in usernames], on_progress=hook)
        _print_stats(dict(stats))


@cli.group()
def accounts() -> None:
    """Manage the accounts archived by 'run'."""


@accounts.command(name="add")
@click.argument("username")
@click.pass_context
def accounts_add(ctx: click.Context, username: str) -> None:
    with _database(ctx) as db:
        db.add_owned_account(username.lower())
    console.print(f"[green]✓[/green] Added {username.lower()}")


@accounts.command(name="remove")
@click.argument("username")
@click.pass_context
def accounts_remove(ctx: click.Context, username: str) -> None:
    with _database(ctx) as db:
        removed = db.remove_owned_account(username.lower())
    if not removed:
        console.print(f"[red]✗[/red] {username} is not an owned account")
        sys.exit(1)
    console.print(f"[green]✓[/green] Removed {username.lower()}")


@accounts.command(name="list")
@click.pass_context
def accounts_list(ctx: click.Context) -> None:
    with _database(ctx) as db:
        names = db.owned_accounts()
    table = Table(title="Owned Accounts", show_header=True, header_style="bold cyan")
    table.add_column("Username", style="bold")
    for name in names:
        table.add_row(name)
    console.print(table)


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show how many submissions are in each state."""
    with _database(ctx) as db:
        counts = db.status_counts()
        settings = db.get_settings()
        fans = db.favorite_usernames()
    _print_stats(counts, title="Submission Status")
    if fans:
        console.print(f"Favorites archived for: {', '.join(fans)}")
    if settings.get("scrape_in_progress"):
        console.print("[yellow]A run is in progress or was interrupted[/yellow]")
    if settings.get("last_run_at"):
        console.print(f"Last run: {settings['last_run_at']:%Y-%m-%d %H:%M}")


@cli.command()
@click.argument("submission_id")
@click.pass_context
def comments(ctx: click.Context, submission_id: str) -> None:
    """Show the saved comments of one submission."""
    with _database(ctx) as db:
        rows = db.get_comments(submission_id)
    if not rows:
        console.print(f"No comments saved for {submission_id}")
        return
    table = Table(title=f"Comments on {submission_id}", show_header=True, header_style="bold cyan")
    table.add_column("User", style="bold")
    table.add_column("Date")
    table.add_column("Comment")
    for c in rows:
        table.add_row(c.username or c.account_name or "", c.date or "", c.description)
    console.print(table)


@cli.command()
@click.argument("username")
@click.confirmation_option(prompt="Forget every record for this account? Files on disk are kept.")
@click.pass_context
def forget(ctx: click.Context, username: str) -> None:
    """Delete a user's submissions and favorites from the database."""
    with _database(ctx) as db:
        count = db.delete_account(username.lower())
    console.print(f"[green]✓[/green] Forgot {count} submissions for {username.lower()}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
