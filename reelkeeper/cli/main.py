# Copyright (c) 2025 Trae AI. All rights reserved.

import logging
import sys
from pathlib import Path
from typing import List, Optional
import typer
from rich.console import Console
from rich.progress import Progress
from rich.table import Table
from ..core.config import Config
from ..core.errors import ReelkeeperError
from ..core.models import CycleState, MediaKind, PendingStatus, ProviderCandidate
from ..core.parser import TitleParser
from ..core.reconcile import ReconcilePolicy
from ..infrastructure.db.database import Database
from ..infrastructure.db.repository import LogRepository, SnapshotRepository, WatchStateRepository
from ..services.library_service import LibraryStore
from ..services.reconcile_service import ReconciliationOrchestrator
from ..services.watch_state_service import WatchStateTracker, reaches_completion

app = typer.Typer(help="reelkeeper - Keep a local movie and TV library in sync with your disks.")
console = Console()


class Context:
    """
    Everything a command needs, wired from one config file.
    """

    def __init__(self, config_path: str):
        self.config_path = config_path
        self.config = Config.load(config_path)
        logging.basicConfig(
            level=logging.DEBUG if self.config.verbose else logging.WARNING,
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            handlers=[logging.StreamHandler(sys.stdout)]
        )
        self.db = Database(self.config.database_path)
        self.log_repo = LogRepository(self.db)
        self.store = LibraryStore(SnapshotRepository(self.db), self.log_repo, ReconcilePolicy.from_config(self.config))
        self.tracker = WatchStateTracker(WatchStateRepository(self.db), self.store, self.log_repo)


def _context(config_path: str) -> Context:
    try:
        return Context(config_path)
    except ReelkeeperError as e:
        console.print(f"[red]Error loading config:[/red] {e}")
        raise typer.Exit(1)


def _fail(e: Exception):
    console.print(f"[red]Error:[/red] {e}")
    raise typer.Exit(1)


@app.command("scan")
def scan(config_path: str = "config.yaml", rematch: bool = False):
    """
    Run one reconciliation cycle: scan roots, match new files, update the library.
    """
    ctx = _context(config_path)
    orchestrator = ReconciliationOrchestrator(lambda: Config.load(config_path), ctx.store, log_repo=ctx.log_repo)

    for root in ctx.config.roots:
        console.print(f"Scanning [cyan]{root}[/cyan]...")

    with Progress() as progress:
        task = progress.add_task("[green]Reconciling...", total=100)
        orchestrator.on_progress = lambda p, message: progress.update(task, completed=p, description=message)
        result = orchestrator.run(rematch=rematch)

    if result.state == CycleState.FAILED:
        _fail(result.error)

    counts = result.counts
    table = Table(title=f"Cycle result: {result.state.value}")
    table.add_column("Change", style="cyan")
    table.add_column("Count", justify="right")
    for key in ("matched", "ambiguous", "unmatched", "removed", "orphaned"):
        table.add_row(key, str(counts.get(key, 0)))
    if result.report:
        table.add_row("moved", str(len(result.report.moved)))
        table.add_row("deleted", str(len(result.report.deleted)))
    console.print(table)

    for warning in result.warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning}")
    if result.state == CycleState.PARTIAL_SUCCESS:
        console.print(
            f"\n[bold]{result.pending_ambiguous}[/bold] ambiguous and "
            f"[bold]{result.pending_unmatched}[/bold] unmatched files need attention "
            f"(see [cyan]pending[/cyan])."
        )


@app.command("library")
def library(config_path: str = "config.yaml", kind: Optional[str] = None, item_id: Optional[int] = None):
    """
    List library items, or the children of one item.
    """
    ctx = _context(config_path)
    try:
        if item_id is not None:
            items = ctx.store.children(item_id)
            title = ctx.store.full_title(item_id)
        elif kind:
            items = ctx.store.items(MediaKind(kind))
            title = f"{kind} items"
        else:
            items = ctx.store.items(MediaKind.MOVIE) + ctx.store.items(MediaKind.SHOW)
            title = "Library"
    except (ReelkeeperError, ValueError) as e:
        _fail(e)

    table = Table(title=title)
    table.add_column("ID", justify="right")
    table.add_column("Type", style="green")
    table.add_column("Title", style="magenta")
    table.add_column("Files", justify="right")
    table.add_column("Watched", justify="right", style="cyan")
    table.add_column("Status", style="yellow")

    for item in items:
        files = len(ctx.store.files_for(item.id))
        status = f"orphaned ({item.orphan_age})" if item.orphaned else ""
        if files > 1:
            status = "duplicates"
        table.add_row(
            str(item.id),
            item.kind.value,
            ctx.store.full_title(item.id),
            str(files) if item.is_playable else "",
            f"{ctx.tracker.progress(item.id):.0%}",
            status,
        )

    console.print(table)
    console.print(f"\n[bold]{len(items)}[/bold] items.")


@app.command("pending")
def pending(config_path: str = "config.yaml", status: Optional[str] = None):
    """
    List files that are ambiguous, unmatched or hidden.
    """
    ctx = _context(config_path)
    try:
        entries = ctx.store.pending(PendingStatus(status) if status else None)
    except ValueError as e:
        _fail(e)

    table = Table(title="Pending Files")
    table.add_column("Fingerprint", style="dim")
    table.add_column("Path", style="magenta")
    table.add_column("Status", style="yellow")
    table.add_column("Guess", style="green")
    table.add_column("Candidates / Reason", style="cyan")

    for entry in entries:
        guess = entry.title + (f" ({entry.year})" if entry.year else "")
        if entry.kind == MediaKind.EPISODE:
            guess += f" S{entry.season or 0:02d}E{entry.episode or 0:02d}"
        if entry.candidates:
            detail = ", ".join(
                f"{c.candidate.title} ({c.candidate.year}) [{c.candidate.provider_id}] {c.score:.2f}"
                for c in entry.candidates[:3]
            )
        else:
            detail = entry.reason or ""
        table.add_row(entry.fingerprint[:12], str(entry.path), entry.status.value, guess, detail)

    console.print(table)
    console.print(f"\nFound [bold]{len(entries)}[/bold] pending files.")


@app.command("resolve")
def resolve(fingerprint: str, provider_id: Optional[str] = None, title: Optional[str] = None,
            kind: str = "Movie", year: Optional[int] = None, season: Optional[int] = None,
            episode: Optional[int] = None, choice: Optional[int] = None, config_path: str = "config.yaml"):
    """
    Attach a pending file to a candidate, either by --choice (1-based) or explicit --provider-id/--title.
    """
    ctx = _context(config_path)
    try:
        entry = ctx.store.find_pending(fingerprint)
        if choice is not None:
            if not 1 <= choice <= len(entry.candidates):
                _fail(f"Choice must be between 1 and {len(entry.candidates)}")
            candidate = entry.candidates[choice - 1].candidate
        elif provider_id and title:
            candidate = ProviderCandidate(provider_id=provider_id, title=title, kind=MediaKind(kind), year=year)
        else:
            _fail("Give --choice or both --provider-id and --title")
        item = ctx.store.resolve(entry.fingerprint, candidate, season, episode)
    except (ReelkeeperError, ValueError) as e:
        _fail(e)

    console.print(f"[green]Resolved[/green] {entry.path} -> {ctx.store.full_title(item.id)} (id {item.id})")


@app.command("hide")
def hide(fingerprint: str, undo: bool = False, config_path: str = "config.yaml"):
    """
    Exclude a file from matching (or include it again with --undo).
    """
    ctx = _context(config_path)
    try:
        snapshot = ctx.store.snapshot()
        key = fingerprint if fingerprint in snapshot.links else ctx.store.find_pending(fingerprint).fingerprint
        entry = ctx.store.unhide(key) if undo else ctx.store.hide(key)
    except ReelkeeperError as e:
        _fail(e)
    console.print(f"{'Unhidden' if undo else 'Hidden'}: [cyan]{entry.path}[/cyan]")


@app.command("progress")
def progress(item_id: int, position: Optional[float] = None, duration: Optional[float] = None,
             completed: Optional[bool] = typer.Option(None, "--completed/--not-completed"),
             mark: Optional[bool] = typer.Option(None, "--watched/--unwatched"),
             clear: bool = False, config_path: str = "config.yaml"):
    """
    Show or record watch progress for a library item.
    """
    ctx = _context(config_path)
    try:
        if clear:
            removed = ctx.tracker.clear(item_id)
            console.print("Watch state cleared." if removed else "No watch state to clear.")
            return
        if mark is not None:
            states = ctx.tracker.mark(item_id, mark)
            console.print(f"Marked {len(states)} items as {'watched' if mark else 'unwatched'}.")
        elif position is not None:
            if completed is None:
                completed = reaches_completion(position, duration, ctx.config.completion_fraction)
            ctx.tracker.record(item_id, position, completed, duration)

        title = ctx.store.full_title(item_id) if ctx.store.exists(item_id) else f"[dim]deleted item {item_id}[/dim]"
        state = ctx.tracker.query(item_id)
    except (ReelkeeperError, ValueError) as e:
        _fail(e)

    console.print(f"[bold]{title}[/bold]")
    if ctx.store.exists(item_id):
        console.print(f"Watched: {ctx.tracker.progress(item_id):.0%}")
        next_ep = ctx.store.next_episode(item_id)
        if next_ep:
            console.print(f"Next: {ctx.store.full_title(next_ep.id)} (id {next_ep.id})")
    if state:
        console.print(f"Position: {state.position:.0f}s" + (f" / {state.duration:.0f}s" if state.duration else ""))
        console.print(f"Completed: {state.completed}")


@app.command("parse")
def parse(paths: List[Path]):
    """
    Show how file paths are interpreted, without touching the library.
    """
    parser = TitleParser()
    table = Table(title="Parsed Titles")
    table.add_column("Path", style="magenta")
    table.add_column("Kind", style="green")
    table.add_column("Title", style="cyan")
    table.add_column("Year")
    table.add_column("S/E")
    table.add_column("Noise", style="dim")
    for path in paths:
        guess = parser.parse(path)
        se = f"S{guess.season:02d}E{guess.episode:02d}" if guess.season is not None and guess.episode is not None else ""
        table.add_row(str(path), guess.kind.value, guess.cleaned_name, str(guess.year or ""), se,
                      " ".join(guess.noise_tokens))
    console.print(table)


collection_app = typer.Typer(help="Group library items into named collections.")
app.add_typer(collection_app, name="collection")


@collection_app.command("list")
def collection_list(config_path: str = "config.yaml"):
    """
    List collections and how many items each holds.
    """
    ctx = _context(config_path)
    table = Table(title="Collections")
    table.add_column("ID", justify="right")
    table.add_column("Name", style="magenta")
    table.add_column("Items", justify="right")
    for collection in ctx.store.collections():
        table.add_row(str(collection.id), collection.name, str(len(collection.item_ids)))
    console.print(table)


@collection_app.command("show")
def collection_show(collection_id: int, config_path: str = "config.yaml"):
    ctx = _context(config_path)
    try:
        collection = ctx.store.collection(collection_id)
        items = ctx.store.collection_items(collection_id)
    except ReelkeeperError as e:
        _fail(e)

    table = Table(title=collection.name)
    table.add_column("ID", justify="right")
    table.add_column("Type", style="green")
    table.add_column("Title", style="magenta")
    table.add_column("Watched", justify="right", style="cyan")
    for item in items:
        table.add_row(str(item.id), item.kind.value, ctx.store.full_title(item.id),
                      f"{ctx.tracker.progress(item.id):.0%}")
    console.print(table)


@collection_app.command("create")
def collection_create(name: str, config_path: str = "config.yaml"):
    ctx = _context(config_path)
    collection = ctx.store.create_collection(name)
    console.print(f"[green]Created[/green] collection {collection.id}: {collection.name}")


@collection_app.command("rename")
def collection_rename(collection_id: int, name: str, config_path: str = "config.yaml"):
    ctx = _context(config_path)
    try:
        collection = ctx.store.rename_collection(collection_id, name)
    except ReelkeeperError as e:
        _fail(e)
    console.print(f"Renamed collection {collection.id} to {collection.name}")


@collection_app.command("add")
def collection_add(collection_id: int, item_ids: List[int], config_path: str = "config.yaml"):
    """
    Add library items to a collection. Items already in it are left alone.
    """
    ctx = _context(config_path)
    try:
        for item_id in item_ids:
            collection = ctx.store.add_to_collection(collection_id, item_id)
    except ReelkeeperError as e:
        _fail(e)
    console.print(f"{collection.name}: [bold]{len(collection.item_ids)}[/bold] items.")


@collection_app.command("remove")
def collection_remove(collection_id: int, item_ids: List[int], config_path: str = "config.yaml"):
    ctx = _context(config_path)
    try:
        for item_id in item_ids:
            collection = ctx.store.remove_from_collection(collection_id, item_id)
    except ReelkeeperError as e:
        _fail(e)
    console.print(f"{collection.name}: [bold]{len(collection.item_ids)}[/bold] items.")


@collection_app.command("delete")
def collection_delete(collection_id: int, config_path: str = "config.yaml"):
    ctx = _context(config_path)
    try:
        collection = ctx.store.delete_collection(collection_id)
    except ReelkeeperError as e:
        _fail(e)
    console.print(f"Deleted collection {collection.id}: {collection.name}")
