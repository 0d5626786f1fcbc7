"""
CLI for Mortimer.

Thin layer over the storage backends: builds a MortimerConfig from the
environment and options, runs one operation and renders the result.
"""

import sys
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Optional

import click
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from mortimer import __version__
from mortimer.config import BackendKind, MortimerConfig
from mortimer.errors import MortimerError
from mortimer.export import ExportFormat
from mortimer.models import Entry, FrequencyDimension, SessionFilter, TokenFilter
from mortimer.redaction import validate_pattern
from mortimer.search import SearchFilter
from mortimer.shells import Shell
from mortimer.storage import HistoryBackend, open_backend


console = Console()
logger = logging.getLogger(__name__)

HIGHLIGHT_STYLE = "bold yellow"
TIME_FORMAT = "%Y-%m-%d %H:%M:%S"
DATETIME_FORMATS = ["%Y-%m-%d", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%d %H:%M:%S"]


def setup_logging(verbose: bool = False):
    """Configure logging based on verbosity."""
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@contextmanager
def _handle_errors():
    """Print mortimer failures as one line and exit 1 instead of a traceback."""
    try:
        yield
    except MortimerError as e:
        console.print(f"[red]Error \\[{e.kind}]:[/red] {escape(str(e))}", highlight=False)
        sys.exit(1)


def _backend(ctx: click.Context) -> HistoryBackend:
    backend = open_backend(ctx.obj["config"])
    ctx.call_on_close(backend.close)
    return backend


def _command_text(entry: Entry) -> Text:
    text = Text(entry.command)
    for start, end in entry.highlights:
        text.stylize(HIGHLIGHT_STYLE, start, end)
    return text


def _entries_table(entries: list[Entry], title: str, show_score: bool = False) -> Table:
    table = Table(title=title, show_header=True)
    table.add_column("#", style="dim", width=4)
    table.add_column("Time (UTC)", style="green", no_wrap=True)
    table.add_column("Directory", style="magenta")
    if show_score:
        table.add_column("Score", style="cyan", justify="right")
    table.add_column("Command")

    for i, entry in enumerate(entries, 1):
        row = [str(i), entry.timestamp.strftime(TIME_FORMAT), Text(entry.directory)]
        if show_score:
            row.append(f"{entry.score:.2f}" if entry.score is not None else "-")
        row.append(_command_text(entry))
        table.add_row(*row)
    return table


@click.group()
@click.version_option(__version__, prog_name="mortimer")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.option(
    "--backend", "-b",
    type=click.Choice([kind.value for kind in BackendKind]),
    help="Storage backend (env: MORTIMER_BACKEND, default: file)",
)
@click.option("--history-file", type=click.Path(dir_okay=False), help="Flat history file path")
@click.option("--db-path", type=click.Path(dir_okay=False), help="SQLite database path")
@click.option("--session-id", help="Session identifier (env: MORTIMER_SESSION_ID)")
@click.pass_context
def main(
    ctx: click.Context,
    verbose: bool,
    backend: Optional[str],
    history_file: Optional[str],
    db_path: Optional[str],
    session_id: Optional[str],
):
    """Mortimer - shell history with secret redaction."""
    setup_logging(verbose)
    try:
        config = MortimerConfig.from_env(
            backend=backend,
            history_file=history_file,
            db_path=db_path,
            session_id=session_id,
        )
    except ValidationError as e:
        console.print(f"[red]Configuration error:[/red] {escape(str(e))}")
        sys.exit(1)
    ctx.ensure_object(dict)
    ctx.obj["config"] = config


@main.command(context_settings={"ignore_unknown_options": True, "allow_interspersed_args": False})
@click.argument("command", nargs=-1, required=True, type=click.UNPROCESSED)
@click.option("--directory", "-d", help="Working directory (defaults to the current one)")
@click.option("--exit-code", "-e", type=int, help="Exit status of the command")
@click.pass_context
def log(ctx: click.Context, command: tuple, directory: Optional[str], exit_code: Optional[int]):
    """Record COMMAND in history. Meant to be called from a shell hook."""
    with _handle_errors():
        backend = _backend(ctx)
        ref = backend.log(" ".join(command), directory=directory, exit_code=exit_code)
    if ref is None:
        logger.debug("Command ignored")


@main.command()
@click.argument("query", required=False, default="")
@click.option("--regex", "-r", is_flag=True, help="Treat QUERY as a regular expression")
@click.option("--fuzzy", "-f", is_flag=True, help="Fuzzy match and rank by score")
@click.option("--threshold", type=click.FloatRange(0.0, 1.0), help="Fuzzy score cutoff (0-1)")
@click.option("--case-sensitive", "-c", is_flag=True, help="Match case exactly")
@click.option("--dir", "directory", help="Only commands run under this directory prefix")
@click.option("--since", type=click.DateTime(DATETIME_FORMATS), help="Only commands at/after this UTC time")
@click.option("--before", type=click.DateTime(DATETIME_FORMATS), help="Only commands before this UTC time")
@click.option("--redacted-only", is_flag=True, help="Only commands that had secrets redacted")
@click.option("--host", "hostname", help="Only commands from this host (database backend)")
@click.option("--session", "session_id", help="Only commands from this session (database backend)")
@click.option("--limit", "-n", type=click.IntRange(min=0), help="Maximum results")
@click.option("--no-highlight", is_flag=True, help="Do not highlight matches")
@click.pass_context
def search(
    ctx: click.Context,
    query: str,
    regex: bool,
    fuzzy: bool,
    threshold: Optional[float],
    case_sensitive: bool,
    directory: Optional[str],
    since: Optional[datetime],
    before: Optional[datetime],
    redacted_only: bool,
    hostname: Optional[str],
    session_id: Optional[str],
    limit: Optional[int],
    no_highlight: bool,
):
    """Search history for QUERY (substring by default)."""
    config = ctx.obj["config"]
    search_filter = SearchFilter(
        query=query,
        regex=regex,
        fuzzy=fuzzy,
        threshold=threshold,
        case_sensitive=True if case_sensitive else None,
        directory=directory,
        since=since,
        before=before,
        redacted_only=redacted_only,
        hostname=hostname,
        session_id=session_id,
        limit=limit if limit is not None else config.search.max_results,
        highlight=False if no_highlight else None,
    )
    with _handle_errors():
        results = list(_backend(ctx).search(search_filter))

    if not results:
        console.print("[yellow]No matching commands found[/yellow]")
        return
    console.print(_entries_table(results, "Search Results", show_score=fuzzy))


@main.command()
@click.option("--limit", "-n", default=20, type=click.IntRange(min=0), help="Number of commands")
@click.pass_context
def recent(ctx: click.Context, limit: int):
    """Show the most recent commands."""
    with _handle_errors():
        entries = _backend(ctx).recent(limit)
    if not entries:
        console.print("[yellow]History is empty[/yellow]")
        return
    console.print(_entries_table(entries, "Recent Commands"))


@main.command()
@click.option(
    "--by", "dimension",
    type=click.Choice([d.value for d in FrequencyDimension]),
    default=FrequencyDimension.COMMAND.value,
    help="Count commands or directories",
)
@click.option("--limit", "-n", default=10, type=click.IntRange(min=0), help="Number of rows")
@click.pass_context
def frequent(ctx: click.Context, dimension: str, limit: int):
    """Show the most frequently used commands or directories."""
    with _handle_errors():
        rows = _backend(ctx).frequent(dimension, limit)
    if not rows:
        console.print("[yellow]History is empty[/yellow]")
        return

    table = Table(title=f"Most Frequent ({dimension})", show_header=True)
    table.add_column("Count", style="cyan", justify="right")
    table.add_column(dimension.capitalize())
    for row in rows:
        table.add_row(str(row.count), Text(row.value))
    console.print(table)


@main.command()
@click.pass_context
def stats(ctx: click.Context):
    """Show history statistics."""
    with _handle_errors():
        summary = _backend(ctx).stats()

    table = Table(title=f"History Statistics ({summary.backend})", show_header=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Commands", str(summary.total_commands))
    table.add_row("Unique commands", str(summary.unique_commands))
    table.add_row("Redacted commands", str(summary.redacted_commands))
    table.add_row("Directories", str(summary.directories))
    if summary.sessions is not None:
        table.add_row("Sessions", str(summary.sessions))
        table.add_row("Hosts", str(summary.hosts))
        table.add_row("Stored tokens", str(summary.stored_tokens))
    if summary.oldest:
        table.add_row("Oldest", summary.oldest.strftime(TIME_FORMAT))
        table.add_row("Newest", summary.newest.strftime(TIME_FORMAT))
    console.print(table)


@main.command()
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@click.pass_context
def clear(ctx: click.Context, yes: bool):
    """Delete ALL recorded history."""
    with _handle_errors():
        backend = _backend(ctx)
        if not yes:
            console.print(Panel(
                "[bold red]WARNING: This permanently deletes all recorded history![/bold red]\n\n"
                f"Backend: [cyan]{backend.kind.value}[/cyan]",
                title="Clear History",
            ))
            if not click.confirm("Delete all history?"):
                console.print("Cancelled")
                return
        removed = backend.clear(confirm=True)
    console.print(f"[green][OK][/green] Removed {removed} command(s)")


@main.command()
@click.option(
    "--format", "-f", "fmt",
    type=click.Choice([f.value for f in ExportFormat]),
    default=ExportFormat.JSON.value,
    help="Output format",
)
@click.option("--output", "-o", type=click.Path(dir_okay=False), help="Write to file instead of stdout")
@click.option("--query", "-q", default="", help="Only commands containing this text")
@click.option("--dir", "directory", help="Only commands run under this directory prefix")
@click.option("--redacted-only", is_flag=True, help="Only commands that had secrets redacted")
@click.pass_context
def export(
    ctx: click.Context,
    fmt: str,
    output: Optional[str],
    query: str,
    directory: Optional[str],
    redacted_only: bool,
):
    """Export history as json, csv, tsv or plain text."""
    search_filter = None
    if query or directory or redacted_only:
        search_filter = SearchFilter(
            query=query, directory=directory, redacted_only=redacted_only, highlight=False
        )
    with _handle_errors():
        data = _backend(ctx).export(fmt, search_filter)
        if output:
            try:
                with open(output, "wb") as f:
                    f.write(data)
            except OSError as e:
                console.print(f"[red]Error:[/red] cannot write {output}: {e}")
                sys.exit(1)
            console.print(f"[green][OK][/green] Exported to {output}")
        else:
            sys.stdout.buffer.write(data)
            sys.stdout.buffer.flush()


@main.command(name="import")
@click.argument("shell", type=click.Choice([s.value for s in Shell]))
@click.argument("path", required=False, type=click.Path(dir_okay=False))
@click.pass_context
def import_history(ctx: click.Context, shell: str, path: Optional[str]):
    """Import a native bash, zsh or fish history file."""
    with _handle_errors():
        report = _backend(ctx).import_history(shell, path)
    console.print(
        f"[green][OK][/green] Imported {report.imported} {report.shell} command(s)"
        f" ({report.duplicates} duplicate, {report.skipped} skipped)"
    )


@main.command()
@click.argument("source", required=False, type=click.Path(dir_okay=False))
@click.pass_context
def migrate(ctx: click.Context, source: Optional[str]):
    """Copy a flat history file into the database (defaults to --history-file)."""
    with _handle_errors():
        report = _backend(ctx).migrate(source)
    console.print(
        f"[green][OK][/green] Imported {report.imported} command(s),"
        f" {report.duplicates} duplicate(s), {report.skipped} skipped"
    )
    for message in report.errors:
        console.print(f"  [yellow]-[/yellow] {message}", highlight=False)


@main.command()
@click.argument("source", type=click.Path(dir_okay=False))
@click.pass_context
def merge(ctx: click.Context, source: str):
    """Merge another mortimer database into this one."""
    with _handle_errors():
        report = _backend(ctx).merge(source)
    console.print(
        f"[green][OK][/green] Merged {report.imported} command(s) and"
        f" {report.tokens_imported} token(s); {report.duplicates} duplicate(s),"
        f" {report.hosts_created} new host(s), {report.sessions_created} new session(s)"
    )


@main.command()
@click.option("--command-id", type=int, help="Tokens of one command")
@click.option("--session", "session_id", help="Tokens from one session")
@click.option("--dir", "directory", help="Tokens from commands under this directory")
@click.option("--type", "token_type", help="Only this token type")
@click.option("--show-values", is_flag=True, help="Reveal the original secret values")
@click.option("--limit", "-n", type=click.IntRange(min=0), help="Maximum rows")
@click.pass_context
def tokens(
    ctx: click.Context,
    command_id: Optional[int],
    session_id: Optional[str],
    directory: Optional[str],
    token_type: Optional[str],
    show_values: bool,
    limit: Optional[int],
):
    """List stored redaction tokens (database backend)."""
    token_filter = TokenFilter(
        command_id=command_id,
        session_id=session_id,
        directory=directory,
        token_type=token_type,
        show_values=show_values,
        limit=limit,
    )
    with _handle_errors():
        rows = _backend(ctx).tokens(token_filter)
    if not rows:
        console.print("[yellow]No tokens found[/yellow]")
        return

    table = Table(title="Redaction Tokens", show_header=True)
    table.add_column("Command", style="dim", justify="right")
    table.add_column("Type", style="cyan")
    table.add_column("Placeholder", style="magenta")
    table.add_column("Value")
    for token in rows:
        value = Text(token.original_value) if show_values else Text("hidden", style="dim")
        table.add_row(str(token.command_id), token.token_type, Text(token.placeholder), value)
    console.print(table)


@main.command()
@click.pass_context
def hosts(ctx: click.Context):
    """List hosts that have recorded commands (database backend)."""
    with _handle_errors():
        rows = _backend(ctx).hosts()
    if not rows:
        console.print("[yellow]No hosts found[/yellow]")
        return

    table = Table(title="Hosts", show_header=True)
    table.add_column("ID", style="dim", justify="right")
    table.add_column("Hostname", style="cyan")
    table.add_column("First seen", style="green")
    for host in rows:
        table.add_row(str(host.id), host.hostname, host.created_at.strftime(TIME_FORMAT))
    console.print(table)


@main.command(name="sessions")
@click.option("--host", "hostname", help="Only sessions of this host")
@click.option("--active", is_flag=True, help="Only sessions that have not ended")
@click.option("--limit", "-n", default=20, type=click.IntRange(min=0), help="Maximum results")
@click.pass_context
def list_sessions(ctx: click.Context, hostname: Optional[str], active: bool, limit: int):
    """List shell sessions (database backend)."""
    with _handle_errors():
        rows = _backend(ctx).sessions(
            SessionFilter(hostname=hostname, active_only=active, limit=limit)
        )
    if not rows:
        console.print("[yellow]No sessions found[/yellow]")
        return

    table = Table(title="Sessions", show_header=True)
    table.add_column("Session ID", style="cyan")
    table.add_column("Host", style="magenta")
    table.add_column("Started", style="green")
    table.add_column("Ended", style="dim")
    table.add_column("Commands", justify="right")
    for session in rows:
        table.add_row(
            session.id,
            session.hostname or "?",
            session.started_at.strftime(TIME_FORMAT),
            session.ended_at.strftime(TIME_FORMAT) if session.ended_at else "active",
            str(session.command_count),
        )
    console.print(table)


@main.command()
@click.argument("pattern")
@click.argument("sample")
@click.pass_context
def validate(ctx: click.Context, pattern: str, sample: str):
    """Test a custom redaction PATTERN against SAMPLE text."""
    config = ctx.obj["config"]
    with _handle_errors():
        result = validate_pattern(pattern, sample, config.redaction)

    if not result.matched:
        console.print("[yellow]Pattern did not redact anything[/yellow]")
        return
    console.print(Text(result.text))
    for token in result.tokens:
        console.print(f"  [cyan]{token.placeholder}[/cyan] <- ", Text(token.original), sep="")


if __name__ == "__main__":
    main()
