"""
CLI interface for the context store.

Usage:
    echo "notes" | context-store put --key design-notes
    context-store get --key design-notes
    context-store find "rust AND async"
    context-store sync push --remote /mnt/shared/context
"""

import json
import os
import sys
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .config import StoreConfig, get_store_path, load_or_create_config, resolve_project, save_config
from .document_store import DocumentStore
from .errors import ContextStoreError, log_exception
from .logging_config import configure_ops_log, configure_quiet_mode, enable_debug_mode
from . import sync as sync_engine
from .types import Document, SearchQuery, SourceType, format_timestamp

# Configure quiet mode by default
# Set CONTEXT_VERBOSE=1 to enable debug mode via environment
if os.environ.get("CONTEXT_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


# Global state for CLI options
_json_output = False
_store_override: Optional[Path] = None
_project_override: Optional[str] = None


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        print(f"context-store {version('context-store')}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


app = typer.Typer(
    name="context-store",
    help="Local-first document store with full-text search and file sync.",
    no_args_is_help=True,
    rich_markup_mode=None,
)

sync_app = typer.Typer(help="Replicate the store file to a remote directory.", no_args_is_help=True)
app.add_typer(sync_app, name="sync")


@app.callback()
def main_callback(
    store: Annotated[Optional[Path], typer.Option(
        "--store", "-s",
        envvar="CONTEXT_STORE_PATH",
        help="Store directory (default: ~/.context-store)",
    )] = None,
    project: Annotated[Optional[str], typer.Option(
        "--project", "-p",
        help="Project name (default: CONTEXT_PROJECT, config, or current directory)",
    )] = None,
    json_output: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
    )] = False,
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
):
    global _json_output, _store_override, _project_override
    _json_output = json_output
    _store_override = store
    _project_override = project


def _fail(exc: Exception, context: str):
    """Log the traceback, show a one-line message, exit 1."""
    log_exception(exc, context, _store_override)
    typer.echo(f"Error: {exc}", err=True)
    raise typer.Exit(1)


def _load_config() -> StoreConfig:
    path = get_store_path(_store_override)
    try:
        config = load_or_create_config(path)
    except (OSError, ValueError) as e:
        _fail(e, "config")
    configure_ops_log(path)
    return config


def _open_store(config: StoreConfig) -> DocumentStore:
    try:
        return DocumentStore(config.db_path)
    except ContextStoreError as e:
        _fail(e, "open")


def _echo_json(value) -> None:
    typer.echo(json.dumps(value, indent=2, ensure_ascii=False))


def _format_line(doc: Document) -> str:
    label = doc.key or doc.id
    title = f" {doc.title}" if doc.title else ""
    tags = f" [{', '.join(doc.tags)}]" if doc.tags else ""
    return f"{label}@v{doc.version} {format_timestamp(doc.updated_at)[:10]}{title}{tags}"


def _read_body(body: Optional[str]) -> str:
    if body is not None:
        return body
    if sys.stdin.isatty():
        typer.echo("Error: Provide --body or pipe content on stdin", err=True)
        raise typer.Exit(1)
    return sys.stdin.read()


def _require_one(key: Optional[str], id: Optional[str]) -> None:
    if (key is None) == (id is None):
        typer.echo("Error: Provide --key or --id (exactly one)", err=True)
        raise typer.Exit(1)


# -----------------------------------------------------------------------------
# Document commands
# -----------------------------------------------------------------------------

@app.command()
def put(
    key: Annotated[Optional[str], typer.Option("--key", "-k", help="Human-readable key")] = None,
    body: Annotated[Optional[str], typer.Option("--body", "-b", help="Body text (default: stdin)")] = None,
    title: Annotated[Optional[str], typer.Option("--title", help="Title")] = None,
    namespace: Annotated[Optional[str], typer.Option("--namespace", help="Namespace")] = None,
    tag: Annotated[Optional[list[str]], typer.Option("--tag", "-t", help="Tag (repeatable)")] = None,
    ttl: Annotated[Optional[int], typer.Option("--ttl", help="Lifetime in seconds")] = None,
    source: Annotated[str, typer.Option("--source", help="Agent, User, Import or System")] = "User",
):
    """Store a document, or update the one with the same key."""
    config = _load_config()
    project = resolve_project(_project_override, config)
    text = _read_body(body)
    try:
        source_type = SourceType.parse(source)
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    with _open_store(config) as store:
        try:
            existing = store.get_by_key(project, key) if key else None
            if existing is not None:
                doc = existing.revise(
                    body=text,
                    title=title if title is not None else existing.title,
                    namespace=namespace if namespace is not None else existing.namespace,
                    tags=list(tag) if tag else existing.tags,
                    ttl_seconds=ttl if ttl is not None else existing.ttl_seconds,
                    source=source_type,
                )
            else:
                doc = Document.new(
                    project, text, key=key, namespace=namespace, title=title,
                    tags=list(tag or []), source=source_type, ttl_seconds=ttl,
                )
            store.put(doc)
        except (ContextStoreError, ValueError) as e:
            _fail(e, "put")

    if _json_output:
        _echo_json({"status": "stored", **doc.to_dict()})
    else:
        typer.echo(_format_line(doc))


@app.command()
def get(
    key: Annotated[Optional[str], typer.Option("--key", "-k")] = None,
    id: Annotated[Optional[str], typer.Option("--id")] = None,
):
    """Print a document by key or id."""
    _require_one(key, id)
    config = _load_config()
    project = resolve_project(_project_override, config)
    with _open_store(config) as store:
        try:
            doc = store.get_by_key(project, key) if key is not None else store.get(id)
        except ContextStoreError as e:
            _fail(e, "get")
    if doc is None:
        typer.echo(f"Not found: {key or id}", err=True)
        raise typer.Exit(1)
    if _json_output:
        _echo_json(doc.to_dict())
    else:
        typer.echo(_format_line(doc))
        typer.echo("")
        typer.echo(doc.body)


@app.command()
def find(
    query: Annotated[str, typer.Argument(help="Full-text query (FTS5 syntax)")],
    limit: Annotated[Optional[int], typer.Option("--limit", "-n", help="Maximum results")] = None,
    all_projects: Annotated[bool, typer.Option("--all-projects", "-a", help="Search every project")] = False,
):
    """Search documents, best match first."""
    config = _load_config()
    project = None if all_projects else resolve_project(_project_override, config)
    with _open_store(config) as store:
        try:
            hits = store.search(SearchQuery(text=query, project=project, limit=limit))
        except (ContextStoreError, ValueError) as e:
            _fail(e, "find")
    if _json_output:
        _echo_json([{"score": h.score, **h.document.to_dict()} for h in hits])
        return
    for hit in hits:
        prefix = f"{hit.document.project}/" if all_projects else ""
        typer.echo(f"[{hit.score:.3f}] {prefix}{_format_line(hit.document)}")


@app.command("ls")
def list_documents(
    limit: Annotated[Optional[int], typer.Option("--limit", "-n")] = None,
    all_projects: Annotated[bool, typer.Option("--all-projects", "-a")] = False,
    deleted: Annotated[bool, typer.Option("--deleted", help="Include deleted and expired")] = False,
):
    """List documents, most recently updated first."""
    config = _load_config()
    project = None if all_projects else resolve_project(_project_override, config)
    with _open_store(config) as store:
        try:
            docs = store.list_documents(project, limit=limit, include_deleted=deleted)
        except ContextStoreError as e:
            _fail(e, "ls")
    if _json_output:
        _echo_json([d.to_dict() for d in docs])
        return
    for doc in docs:
        typer.echo(_format_line(doc))


@app.command()
def rm(
    key: Annotated[Optional[str], typer.Option("--key", "-k")] = None,
    id: Annotated[Optional[str], typer.Option("--id")] = None,
):
    """Soft-delete a document (kept in history until gc)."""
    _require_one(key, id)
    config = _load_config()
    project = resolve_project(_project_override, config)
    with _open_store(config) as store:
        try:
            doc = store.delete(project, key=key, id=id)
        except ContextStoreError as e:
            _fail(e, "rm")
    if doc is None:
        typer.echo(f"Not found: {key or id}", err=True)
        raise typer.Exit(1)
    if _json_output:
        _echo_json({"status": "deleted", "project": project, "key": doc.key, "id": doc.id})
    else:
        typer.echo(f"Deleted {doc.key or doc.id}")


@app.command()
def history(
    key: Annotated[Optional[str], typer.Option("--key", "-k")] = None,
    id: Annotated[Optional[str], typer.Option("--id")] = None,
):
    """Show the version history of a document."""
    _require_one(key, id)
    config = _load_config()
    project = resolve_project(_project_override, config)
    with _open_store(config) as store:
        try:
            if key is not None:
                doc = store.get_by_key(project, key)
                if doc is None:
                    typer.echo(f"Not found: {key}", err=True)
                    raise typer.Exit(1)
                id = doc.id
            versions = store.list_versions(id)
        except ContextStoreError as e:
            _fail(e, "history")
    if _json_output:
        _echo_json([
            {
                "version": v.version,
                "created_at": format_timestamp(v.created_at),
                "deleted": v.deleted_at is not None,
                "body": v.body,
            }
            for v in versions
        ])
        return
    for v in versions:
        marker = " (deleted)" if v.deleted_at else ""
        typer.echo(f"v{v.version} {format_timestamp(v.created_at)}{marker} {v.body[:60]}")


@app.command()
def gc(
    dry_run: Annotated[bool, typer.Option("--dry-run", help="Report without removing")] = False,
):
    """Remove deleted and expired documents, then compact the store."""
    config = _load_config()
    with _open_store(config) as store:
        try:
            result = store.gc(dry_run=dry_run)
        except ContextStoreError as e:
            _fail(e, "gc")
    if _json_output:
        _echo_json({
            "status": "ok",
            "dry_run": result.dry_run,
            "deleted": result.deleted,
            "vacuumed": result.vacuumed,
        })
    else:
        verb = "would remove" if dry_run else "removed"
        typer.echo(
            f"Garbage collection complete: {verb} {result.deleted} documents, "
            f"vacuumed={str(result.vacuumed).lower()}"
        )


# -----------------------------------------------------------------------------
# Sync commands
# -----------------------------------------------------------------------------

def _sync_config(remote: Optional[Path]) -> tuple[StoreConfig, sync_engine.SyncConfig]:
    config = _load_config()
    target = remote or config.remote
    if target is None:
        typer.echo("Error: No remote configured. Pass --remote PATH", err=True)
        raise typer.Exit(1)
    if remote is not None and config.remote != remote:
        config.remote = remote
        save_config(config)
    return config, sync_engine.SyncConfig.for_store(config.path, target)


def _meta_dict(meta: Optional[sync_engine.SyncMeta]) -> Optional[dict]:
    return meta.to_dict() if meta is not None else None


@sync_app.command("status")
def sync_status(
    remote: Annotated[Optional[Path], typer.Option("--remote", "-r")] = None,
):
    """Compare local and remote generations."""
    _, cfg = _sync_config(remote)
    try:
        result = sync_engine.status(cfg)
    except ContextStoreError as e:
        _fail(e, "sync status")
    if _json_output:
        _echo_json({
            "state": result.state.value,
            "local": _meta_dict(result.local),
            "remote": _meta_dict(result.remote),
        })
        return
    typer.echo(f"state: {result.state.value}")
    for label, meta in (("local", result.local), ("remote", result.remote)):
        if meta is None:
            typer.echo(f"{label}: no metadata")
        else:
            typer.echo(
                f"{label}: generation {meta.generation} hash {meta.db_hash[:12]} "
                f"({meta.db_bytes} bytes, {meta.machine}, {format_timestamp(meta.last_synced_at)})"
            )


@sync_app.command("push")
def sync_push(
    remote: Annotated[Optional[Path], typer.Option("--remote", "-r")] = None,
    force: Annotated[bool, typer.Option("--force", "-f", help="Overwrite a diverged remote")] = False,
):
    """Copy the local store to the remote."""
    config, cfg = _sync_config(remote)
    try:
        result = sync_engine.push(cfg, force=force, machine=config.machine)
    except ContextStoreError as e:
        _fail(e, "sync push")
    _echo_sync_result("pushed", result)


@sync_app.command("pull")
def sync_pull(
    remote: Annotated[Optional[Path], typer.Option("--remote", "-r")] = None,
    force: Annotated[bool, typer.Option("--force", "-f", help="Overwrite a diverged local store")] = False,
):
    """Replace the local store with the remote copy."""
    _, cfg = _sync_config(remote)
    try:
        result = sync_engine.pull(cfg, force=force)
    except ContextStoreError as e:
        _fail(e, "sync pull")
    _echo_sync_result("pulled", result)


def _echo_sync_result(status: str, result: sync_engine.SyncResult) -> None:
    if _json_output:
        _echo_json({
            "status": status,
            "generation": result.generation,
            "db_hash": result.db_hash,
            "db_bytes": result.db_bytes,
        })
    else:
        typer.echo(
            f"{status.capitalize()} generation {result.generation} "
            f"({result.db_bytes} bytes, {result.db_hash[:12]})"
        )


def main():
    app()


if __name__ == "__main__":
    main()
