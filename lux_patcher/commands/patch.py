"""Patch and diff commands."""

from __future__ import annotations

import json
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click
import structlog
from rich.console import Console
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from lux_patcher.core.config import AppConfig
from lux_patcher.core.differ import compute_diff, summarize
from lux_patcher.core.environment import EnvironmentResolver, ManifestSource
from lux_patcher.core.errors import PatcherError
from lux_patcher.core.hash_store import HashStore
from lux_patcher.core.local import LocalInstallation, filter_manifest
from lux_patcher.core.orchestrator import run_patch
from lux_patcher.core.session import (
    CancellationToken,
    PatchSession,
    ProgressEvent,
    SessionResult,
)
from lux_patcher.core.types import (
    DeleteOperation,
    EnvironmentDescriptor,
    Manifest,
    Operation,
    OperationStatus,
    UpdateOperation,
)
from lux_patcher.core.utils import format_size
from lux_patcher.formats.manifest import ManifestParser
from lux_patcher.formats.patcher_ini import PatcherConfig

logger = structlog.get_logger()

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_INCOMPLETE = 2


def _get_context_objects(ctx: click.Context) -> tuple[AppConfig, Console, bool, bool]:
    """Extract common context objects."""
    config: AppConfig = ctx.obj["config"]
    console: Console = ctx.obj["console"]
    verbose: bool = ctx.obj["verbose"]
    debug: bool = ctx.obj["debug"]
    return config, console, verbose, debug


def _output_json(data: dict[str, Any]) -> None:
    """Output data as JSON."""
    print(json.dumps(data, indent=2, default=str))


@dataclass
class _Target:
    """Everything needed to build a session."""

    environment: EnvironmentDescriptor
    desired: Manifest
    patcher_config: PatcherConfig


def _resolve_target(
    config: AppConfig,
    cfg_url: str | None,
    env: str,
    server: str | None,
    manifest_file: Path | None,
    patch_url: str | None,
) -> _Target:
    """Resolve the desired manifest either from a local file or the environment."""
    if manifest_file is not None:
        desired = ManifestParser().parse_file(manifest_file)
        environment = EnvironmentDescriptor(
            name=env,
            patch_server_base_url=patch_url or "http://localhost/",
            manifest_url=manifest_file.resolve().as_uri(),
        )
        return _Target(environment, desired, PatcherConfig())

    url = cfg_url or config.cfg_url
    if not url:
        raise click.UsageError("Either --cfg-url (or cfg_url in the config file) or --manifest is required")

    with EnvironmentResolver(url, config.fetch) as resolver:
        environment, patcher_config = resolver.resolve(env, server)
        if patch_url:
            environment = environment.model_copy(update={"patch_server_base_url": patch_url})
        desired = ManifestSource(resolver, patcher_config).fetch_desired(environment)
    return _Target(environment, desired, patcher_config)


def _build_local(
    config: AppConfig,
    install_dir: Path,
    target: _Target,
    hash_store: HashStore,
    clean: bool,
) -> tuple[Manifest, LocalInstallation]:
    """Apply platform excludes and build the local view with its ignore list."""
    patcher_config = target.patcher_config
    exclude = patcher_config.exclude_for(sys.platform)
    desired = filter_manifest(target.desired, exclude)

    ignore = [
        f"{config.staging_dir}/*",
        f"{patcher_config.downloaddirectory}/*",
        *exclude,
        *patcher_config.noclean,
    ]
    local = LocalInstallation(
        install_dir,
        hash_store,
        scan=clean and patcher_config.clean,
        ignore=ignore,
    )
    return desired, local


def _quickcheck_path(install_dir: Path, patcher_config: PatcherConfig) -> Path:
    return install_dir / patcher_config.downloaddirectory / patcher_config.cachefile


def _describe(op: Operation) -> tuple[str, str, str]:
    if isinstance(op, DeleteOperation):
        return op.kind, op.path, ""
    detail = format_size(op.entry.size)
    if isinstance(op, UpdateOperation) and op.is_delta:
        detail += " (delta)"
    return op.kind, op.path, detail


def _show_failures(result: SessionResult, console: Console) -> None:
    table = Table(title="Failed Operations")
    table.add_column("Path", style="cyan")
    table.add_column("Operation", style="magenta")
    table.add_column("Error", style="red")
    table.add_column("Details")
    for failed in result.failed_operations:
        table.add_row(failed.path, failed.operation.kind, failed.kind, failed.message)
    console.print(table)


def _exit_code(result: SessionResult) -> int:
    return EXIT_OK if result.converged else EXIT_INCOMPLETE


_target_options = [
    click.option("--cfg-url", type=str, help="Universe configuration service URL"),
    click.option("--env", "env", type=str, default=None, help="Environment name (default: from config)"),
    click.option("--server", type=str, help="Universe name (default: first listed)"),
    click.option(
        "--install-dir",
        "-i",
        type=click.Path(file_okay=False, path_type=Path),
        default=Path("."),
        show_default=True,
        help="Installation directory",
    ),
    click.option(
        "--manifest",
        "manifest_file",
        type=click.Path(exists=True, dir_okay=False, path_type=Path),
        help="Use a local manifest instead of resolving the environment",
    ),
    click.option("--patch-url", type=str, help="Override the patch server base URL"),
    click.option("--no-clean", is_flag=True, help="Never delete files missing from the manifest"),
]


def target_options(func):
    """Attach the options shared by patch and diff."""
    for option in reversed(_target_options):
        func = option(func)
    return func


@click.command()
@target_options
@click.option("--concurrency", "-j", type=int, default=None, help="Concurrent operations")
@click.pass_context
def patch(
    ctx: click.Context,
    cfg_url: str | None,
    env: str | None,
    server: str | None,
    install_dir: Path,
    manifest_file: Path | None,
    patch_url: str | None,
    no_clean: bool,
    concurrency: int | None,
) -> None:
    """Bring an installation up to date with the patch server.

    Exit status is 0 when the installation converged, 1 on a fatal error
    and 2 when some operations failed or the run was cancelled.
    """
    config, console, verbose, _ = _get_context_objects(ctx)
    env = env or config.environment
    concurrency = concurrency or config.concurrency
    if concurrency < 1:
        raise click.BadParameter("must be at least 1", param_hint="--concurrency")

    try:
        target = _resolve_target(config, cfg_url, env, server, manifest_file, patch_url)
        install_dir.mkdir(parents=True, exist_ok=True)

        hash_store = HashStore()
        cache_file = _quickcheck_path(install_dir, target.patcher_config)
        use_quickcheck = config.use_quickcheck and target.patcher_config.quickcheck
        if use_quickcheck:
            hash_store.load(cache_file, install_dir)

        desired, local = _build_local(config, install_dir, target, hash_store, not no_clean)
        session = PatchSession(
            target.environment,
            install_dir,
            desired,
            local,
            staging_dir=install_dir / config.staging_dir,
            hash_store=hash_store,
        )
        session.set_operations(compute_diff(desired, local))
    except click.ClickException:
        raise
    except (PatcherError, ValueError) as e:
        logger.error("patch_setup_failed", error=str(e))
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(EXIT_FATAL)

    assert session.operations is not None
    summary = summarize(session.operations)
    if config.output_format != "json":
        console.print(
            f"[blue]{target.environment.name}[/blue] {desired.name} {desired.version}: "
            f"{summary.added} add, {summary.updated} update ({summary.delta_updates} delta), "
            f"{summary.deleted} delete, ~{format_size(summary.download_bytes)} to download"
        )

    token = CancellationToken()
    previous_handler = signal.signal(signal.SIGINT, lambda *_: token.cancel())
    try:
        if config.output_format == "rich" and session.operations:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                MofNCompleteColumn(),
                TimeElapsedColumn(),
                console=console,
            ) as progress:
                task = progress.add_task("Patching...", total=len(session.operations))

                def sink(event: ProgressEvent) -> None:
                    if event.status in (OperationStatus.APPLIED, OperationStatus.FAILED):
                        progress.update(task, completed=event.completed)
                        if verbose:
                            progress.console.print(f"  {event.status}: {event.operation.path}")

                result = run_patch(session, concurrency, sink, token, config=config.fetch)
        else:
            result = run_patch(session, concurrency, None, token, config=config.fetch)
    except PatcherError as e:
        logger.error("patch_failed", error=str(e))
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(EXIT_FATAL)
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    if use_quickcheck:
        try:
            hash_store.save(cache_file, install_dir)
        except OSError as e:
            logger.warning("quickcheck_save_failed", path=str(cache_file), error=str(e))

    if config.output_format == "json":
        _output_json(
            {
                "environment": target.environment.name,
                "version": desired.version,
                "applied": result.applied_count,
                "cancelled": result.cancelled_count,
                "converged": result.converged,
                "failed": [
                    {"path": f.path, "operation": f.operation.kind, "kind": f.kind, "message": f.message}
                    for f in result.failed_operations
                ],
            }
        )
    else:
        if result.failed_operations:
            _show_failures(result, console)
        if result.converged:
            console.print(f"[green]Up to date ({result.applied_count} operations applied)[/green]")
        else:
            console.print(
                f"[yellow]Incomplete: {result.applied_count} applied, "
                f"{result.failed_count} failed, {result.cancelled_count} cancelled[/yellow]"
            )

    sys.exit(_exit_code(result))


@click.command()
@target_options
@click.pass_context
def diff(
    ctx: click.Context,
    cfg_url: str | None,
    env: str | None,
    server: str | None,
    install_dir: Path,
    manifest_file: Path | None,
    patch_url: str | None,
    no_clean: bool,
) -> None:
    """Show the operations a patch run would perform."""
    config, console, _, _ = _get_context_objects(ctx)
    env = env or config.environment

    try:
        target = _resolve_target(config, cfg_url, env, server, manifest_file, patch_url)
        desired, local = _build_local(config, install_dir, target, HashStore(), not no_clean)
        operations = compute_diff(desired, local)
    except click.ClickException:
        raise
    except (PatcherError, ValueError) as e:
        logger.error("diff_failed", error=str(e))
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(EXIT_FATAL)

    summary = summarize(operations)
    if config.output_format == "json":
        _output_json(
            {
                "environment": target.environment.name,
                "version": desired.version,
                "operations": [
                    {"kind": kind, "path": path, "detail": detail}
                    for kind, path, detail in map(_describe, operations)
                ],
                "summary": {
                    "added": summary.added,
                    "updated": summary.updated,
                    "deleted": summary.deleted,
                    "delta_updates": summary.delta_updates,
                    "download_bytes": summary.download_bytes,
                },
            }
        )
        return

    if not operations:
        console.print("[green]Installation is up to date[/green]")
        return

    table = Table(title=f"Pending Operations ({desired.name} {desired.version})")
    table.add_column("Operation", style="magenta")
    table.add_column("Path", style="cyan")
    table.add_column("Size")
    for row in map(_describe, operations):
        table.add_row(*row)
    console.print(table)
    console.print(
        f"{summary.added} add, {summary.updated} update, {summary.deleted} delete, "
        f"~{format_size(summary.download_bytes)} to download"
    )
