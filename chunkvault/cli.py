"""Command line interface for chunkvault."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import NoReturn, Sequence

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__
from .config import (
    Config,
    load_config,
    resolve_account_id,
    resolve_api_key,
    resolve_d1_database_id,
    update_config,
)
from .embeddings import build_embedding_service
from .errors import ChunkvaultError
from .services.index_service import IndexOptions, IndexStage, IndexStatus, build_index
from .services.search_service import search_index
from .store import IndexStore, open_store
from .text import Messages, Styles
from .utils import ensure_positive, format_path, normalize_patterns, resolve_directory

console = Console()

app = typer.Typer(
    help=Messages.APP_HELP,
    no_args_is_help=True,
    context_settings={"help_option_names": ["-h", "--help"]},
)


def _styled(text: str, style: str) -> str:
    return f"[{style}]{text}[/{style}]"


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"chunkvault v{__version__}")
        raise typer.Exit()


def _configure_logging(verbose: bool, debug: bool) -> None:
    level = logging.DEBUG if debug else logging.INFO if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _fail(exc: Exception) -> NoReturn:
    console.print(_styled(str(exc), Styles.ERROR))
    raise typer.Exit(code=1)


def _resolve_root(path: Path) -> Path:
    try:
        return resolve_directory(path)
    except (FileNotFoundError, NotADirectoryError) as exc:
        _fail(exc)


def _open(config: Config, root: Path, *, check_dimension: bool = True) -> IndexStore:
    try:
        return open_store(config, root, check_dimension=check_dimension)
    except ChunkvaultError as exc:
        _fail(exc)


def _path_option(help_text: str) -> Path:
    return typer.Option(Path.cwd(), "--path", "-p", help=help_text)


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help=Messages.HELP_VERBOSE),
    debug: bool = typer.Option(False, "--debug", help=Messages.HELP_DEBUG),
) -> None:
    """Global Typer callback for shared options."""
    _configure_logging(verbose, debug)


@app.command(help=Messages.HELP_INDEX)
def index(
    path: Path = _path_option(Messages.HELP_INDEX_PATH),
    full: bool = typer.Option(False, "--full", help=Messages.HELP_INDEX_FULL),
    no_delete: bool = typer.Option(False, "--no-delete", help=Messages.HELP_INDEX_NO_DELETE),
    include: list[str] | None = typer.Option(
        None, "--include", help=Messages.HELP_INDEX_INCLUDE
    ),
    exclude: list[str] | None = typer.Option(
        None, "--exclude", "-e", help=Messages.HELP_INDEX_EXCLUDE
    ),
    max_size: int | None = typer.Option(None, "--max-size", help=Messages.HELP_INDEX_MAX_SIZE),
    language: list[str] | None = typer.Option(
        None, "--language", "-l", help=Messages.HELP_INDEX_LANGUAGE
    ),
    include_hidden: bool = typer.Option(
        False, "--include-hidden", "-i", help=Messages.HELP_INCLUDE_HIDDEN
    ),
    no_gitignore: bool = typer.Option(False, "--no-gitignore", help=Messages.HELP_NO_GITIGNORE),
) -> None:
    config = load_config()
    directory = _resolve_root(path)
    include_patterns = normalize_patterns(include)
    exclude_patterns = normalize_patterns(exclude)
    options = IndexOptions.from_config(
        config,
        include_patterns=include_patterns or None,
        exclude_patterns=(
            tuple(config.exclude_patterns) + exclude_patterns if exclude_patterns else None
        ),
        max_file_size=max_size,
        include_hidden=include_hidden or None,
        respect_gitignore=False if no_gitignore else None,
        incremental=False if full else None,
        detect_deletions=False if no_delete else None,
        languages=tuple(language) if language else None,
    )
    if max_size is not None:
        try:
            ensure_positive(max_size, "--max-size")
        except ChunkvaultError as exc:
            _fail(exc)

    stages_seen: set[IndexStage] = set()

    def progress(stage: IndexStage, percent: float, message: str) -> None:
        if stage in stages_seen or stage == IndexStage.EXTRACT:
            return
        stages_seen.add(stage)
        console.print(_styled(f"{percent:3.0f}% {message}", Styles.INFO))

    console.print(_styled(Messages.INFO_INDEX_RUNNING.format(path=directory), Styles.INFO))
    store = _open(config, directory)
    try:
        embedder = build_embedding_service(config)
        result = build_index(
            directory,
            store=store,
            embedder=embedder,
            options=options,
            progress=progress,
        )
    except ChunkvaultError as exc:
        _fail(exc)
    finally:
        store.close()

    if result.files_deleted:
        console.print(
            _styled(
                Messages.INFO_INDEX_DELETED.format(
                    deleted=len(result.files_deleted), cleaned=result.files_cleaned
                ),
                Styles.INFO,
            )
        )
    if result.status == IndexStatus.EMPTY:
        console.print(_styled(Messages.INFO_NO_FILES, Styles.WARNING))
        return
    if result.status == IndexStatus.UP_TO_DATE:
        console.print(_styled(Messages.INFO_INDEX_UP_TO_DATE, Styles.INFO))
        return
    console.print(
        _styled(
            Messages.INFO_INDEX_SUMMARY.format(
                files=result.files_indexed,
                files_plural="" if result.files_indexed == 1 else "s",
                chunks=result.chunks_indexed,
                chunks_plural="" if result.chunks_indexed == 1 else "s",
                seconds=result.duration_ms / 1000,
            ),
            Styles.SUCCESS,
        )
    )
    if result.failures:
        console.print(
            _styled(Messages.WARNING_INDEX_FAILURES.format(count=result.errors_count), Styles.WARNING)
        )
        for failure in result.failures:
            console.print(
                _styled(
                    f"  {format_path(failure.path, directory)} ({failure.stage}): {failure.message}",
                    Styles.WARNING,
                )
            )
    if embedder.placeholder_count:
        console.print(_styled(Messages.WARNING_PLACEHOLDER_EMBEDDING, Styles.WARNING))


@app.command(help=Messages.HELP_SEARCH)
def search(
    query: str = typer.Argument(..., help=Messages.HELP_SEARCH_QUERY),
    path: Path = _path_option(Messages.HELP_SEARCH_PATH),
    top: int = typer.Option(5, "--top", "-k", help=Messages.HELP_SEARCH_TOP),
    language: str | None = typer.Option(
        None, "--language", "-l", help=Messages.HELP_SEARCH_LANGUAGE
    ),
) -> None:
    if not query.strip():
        console.print(_styled(Messages.ERROR_EMPTY_QUERY, Styles.ERROR))
        raise typer.Exit(code=1)
    config = load_config()
    directory = _resolve_root(path)
    store = _open(config, directory)
    try:
        hits = search_index(
            query,
            store=store,
            embedder=build_embedding_service(config),
            top_k=top,
            language=language,
        )
    except ChunkvaultError as exc:
        _fail(exc)
    finally:
        store.close()
    if not hits:
        console.print(_styled(Messages.INFO_NO_RESULTS, Styles.WARNING))
        return

    console.print(_styled(Messages.TABLE_SEARCH_TITLE, Styles.TITLE))
    table = Table(show_header=True, header_style=Styles.TABLE_HEADER)
    table.add_column(Messages.TABLE_HEADER_INDEX, justify="right")
    table.add_column(Messages.TABLE_HEADER_SIMILARITY, justify="right")
    table.add_column(Messages.TABLE_HEADER_PATH, overflow="fold")
    table.add_column(Messages.TABLE_HEADER_NAME, overflow="fold")
    table.add_column(Messages.TABLE_HEADER_LANGUAGE, no_wrap=True)
    for idx, hit in enumerate(hits, start=1):
        chunk = hit.chunk
        table.add_row(
            str(idx),
            f"{hit.score:.3f}",
            f"{format_path(chunk.file_path, directory)}:{chunk.start_line}-{chunk.end_line}",
            chunk.name or "-",
            chunk.language,
        )
    console.print(table)


@app.command(help=Messages.HELP_STATS)
def stats(path: Path = _path_option(Messages.HELP_SEARCH_PATH)) -> None:
    directory = _resolve_root(path)
    store = _open(load_config(), directory, check_dimension=False)
    try:
        summary = store.get_stats()
    except ChunkvaultError as exc:
        _fail(exc)
    finally:
        store.close()

    console.print(_styled(Messages.TABLE_STATS_TITLE, Styles.TITLE))
    table = Table(show_header=True, header_style=Styles.TABLE_HEADER)
    table.add_column(Messages.TABLE_HEADER_FIELD)
    table.add_column(Messages.TABLE_HEADER_VALUE, justify="right")
    last_updated = (
        datetime.fromtimestamp(summary.last_updated / 1000, tz=timezone.utc).isoformat()
        if summary.last_updated
        else "-"
    )
    for label, value in (
        ("Files", summary.total_files),
        ("Chunks", summary.total_chunks),
        ("Bytes", summary.total_bytes),
        ("Deleted files", summary.deleted_files),
        ("Pending cleanup", summary.pending_cleanup),
        ("Inactive chunks", summary.inactive_chunks),
        ("Embedding dimension", summary.embedding_dimension),
        ("Schema version", summary.schema_version),
        ("Last updated", last_updated),
    ):
        table.add_row(label, str(value))
    console.print(table)

    if summary.chunks_by_language:
        languages = Table(show_header=True, header_style=Styles.TABLE_HEADER)
        languages.add_column(Messages.TABLE_HEADER_LANGUAGE)
        languages.add_column(Messages.TABLE_HEADER_CHUNKS, justify="right")
        for name, count in summary.chunks_by_language.items():
            languages.add_row(name, str(count))
        console.print(languages)


@app.command(help=Messages.HELP_CLEANUP)
def cleanup(path: Path = _path_option(Messages.HELP_SEARCH_PATH)) -> None:
    directory = _resolve_root(path)
    store = _open(load_config(), directory, check_dimension=False)
    try:
        count = store.cleanup_deleted_files()
    except ChunkvaultError as exc:
        _fail(exc)
    finally:
        store.close()
    console.print(_styled(Messages.INFO_CLEANUP_DONE.format(count=count), Styles.SUCCESS))


@app.command(help=Messages.HELP_BACKUP)
def backup(path: Path = _path_option(Messages.HELP_SEARCH_PATH)) -> None:
    directory = _resolve_root(path)
    store = _open(load_config(), directory, check_dimension=False)
    try:
        destination = store.create_backup()
    except ChunkvaultError as exc:
        _fail(exc)
    finally:
        store.close()
    console.print(_styled(Messages.INFO_BACKUP_CREATED.format(path=destination), Styles.SUCCESS))


@app.command(help=Messages.HELP_RESTORE)
def restore(
    backup_file: Path = typer.Argument(..., help=Messages.HELP_RESTORE),
    path: Path = _path_option(Messages.HELP_SEARCH_PATH),
) -> None:
    directory = _resolve_root(path)
    store = _open(load_config(), directory, check_dimension=False)
    try:
        snapshot = store.restore_backup(backup_file)
    except ChunkvaultError as exc:
        _fail(exc)
    finally:
        store.close()
    console.print(_styled(Messages.INFO_RESTORE_DONE.format(path=backup_file), Styles.SUCCESS))
    console.print(_styled(Messages.INFO_BACKUP_CREATED.format(path=snapshot), Styles.INFO))


@app.command(help=Messages.HELP_EXPORT)
def export(
    output: Path | None = typer.Option(None, "--output", "-o", help=Messages.HELP_OUTPUT),
    path: Path = _path_option(Messages.HELP_SEARCH_PATH),
) -> None:
    directory = _resolve_root(path)
    store = _open(load_config(), directory, check_dimension=False)
    try:
        payload = store.export_index()
    except ChunkvaultError as exc:
        _fail(exc)
    finally:
        store.close()
    text = json.dumps(payload, ensure_ascii=False, indent=2)
    if output is None:
        typer.echo(text)
        return
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(text, encoding="utf-8")
    console.print(_styled(Messages.INFO_EXPORT_DONE.format(path=output), Styles.SUCCESS))


@app.command(help=Messages.HELP_VACUUM)
def vacuum(path: Path = _path_option(Messages.HELP_SEARCH_PATH)) -> None:
    directory = _resolve_root(path)
    store = _open(load_config(), directory, check_dimension=False)
    try:
        count = store.vacuum()
    except ChunkvaultError as exc:
        _fail(exc)
    finally:
        store.close()
    console.print(_styled(Messages.INFO_VACUUM_DONE.format(count=count), Styles.SUCCESS))


@app.command(help=Messages.HELP_VALIDATE)
def validate(path: Path = _path_option(Messages.HELP_SEARCH_PATH)) -> None:
    directory = _resolve_root(path)
    store = _open(load_config(), directory, check_dimension=False)
    try:
        report = store.validate_index()
    except ChunkvaultError as exc:
        _fail(exc)
    finally:
        store.close()
    if report.is_valid:
        console.print(_styled(Messages.INFO_VALIDATE_OK, Styles.SUCCESS))
        return
    issues = report.issues
    console.print(_styled(Messages.WARNING_VALIDATE_ISSUES.format(count=len(issues)), Styles.WARNING))
    for issue in issues:
        console.print(_styled(f"  {issue}", Styles.WARNING))
    raise typer.Exit(code=1)


@app.command(help=Messages.HELP_CLEAR)
def clear(path: Path = _path_option(Messages.HELP_SEARCH_PATH)) -> None:
    config = load_config()
    directory = _resolve_root(path)
    store = _open(config, directory, check_dimension=False)
    try:
        store.clear_index(config.embedding_dimension)
    except ChunkvaultError as exc:
        _fail(exc)
    finally:
        store.close()
    console.print(_styled(Messages.INFO_CLEAR_DONE, Styles.SUCCESS))


def _config_summary(config: Config) -> str:
    return Messages.INFO_CONFIG_SUMMARY.format(
        backend=config.store_backend,
        remote=config.remote_provider,
        local=config.local_provider,
        account="yes" if resolve_account_id(config) else "no",
        token="yes" if resolve_api_key(config) else "no",
        database="yes" if resolve_d1_database_id(config) else "no",
        dimension=config.embedding_dimension,
        max_size=config.max_file_size,
        incremental="yes" if config.incremental else "no",
    )


@app.command(help=Messages.HELP_CONFIG)
def config(
    set_backend: str | None = typer.Option(None, "--set-backend", help=Messages.HELP_SET_BACKEND),
    set_remote_provider: str | None = typer.Option(
        None, "--set-remote-provider", help=Messages.HELP_SET_REMOTE_PROVIDER
    ),
    set_local_provider: str | None = typer.Option(
        None, "--set-local-provider", help=Messages.HELP_SET_LOCAL_PROVIDER
    ),
    set_account_id: str | None = typer.Option(
        None, "--set-account-id", help=Messages.HELP_SET_ACCOUNT_ID
    ),
    set_api_key: str | None = typer.Option(None, "--set-api-key", help=Messages.HELP_SET_API_KEY),
    set_database_id: str | None = typer.Option(
        None, "--set-database-id", help=Messages.HELP_SET_DATABASE_ID
    ),
    set_dimension: int | None = typer.Option(
        None, "--set-dimension", help=Messages.HELP_SET_DIMENSION
    ),
    set_max_file_size: int | None = typer.Option(
        None, "--set-max-file-size", help=Messages.HELP_SET_MAX_FILE_SIZE
    ),
    show: bool = typer.Option(False, "--show", help=Messages.HELP_SHOW_CONFIG),
) -> None:
    updates = {
        name: value
        for name, value in (
            ("store_backend", set_backend),
            ("remote_provider", set_remote_provider),
            ("local_provider", set_local_provider),
            ("cloudflare_account_id", set_account_id),
            ("cloudflare_api_key", set_api_key),
            ("d1_database_id", set_database_id),
            ("embedding_dimension", set_dimension),
            ("max_file_size", set_max_file_size),
        )
        if value is not None
    }
    try:
        for name in ("embedding_dimension", "max_file_size"):
            if name in updates:
                ensure_positive(updates[name], name)
        current = update_config(**updates) if updates else load_config()
    except ChunkvaultError as exc:
        _fail(exc)
    if updates:
        console.print(_styled(Messages.INFO_CONFIG_UPDATED, Styles.SUCCESS))
    if show or not updates:
        console.print(_styled(_config_summary(current), Styles.INFO))


def run(argv: Sequence[str] | None = None) -> None:
    """Entry point wrapper allowing optional argument override."""
    if argv is None:
        app()
    else:
        app(args=list(argv))
