"""Thin CLI wrapper for hubris_imagegen.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.

Exit codes: 0 on success, 1 when the toolchain failed (execution error),
2 when the caller must fix something first (configuration error).
"""

import json
from pathlib import Path
from typing import Annotated, Any, NoReturn

import typer
from rich.console import Console

from hubris_imagegen import __version__
from hubris_imagegen.config import Settings, get_settings, print_settings_json
from hubris_imagegen.errors import HermeticBuildError

EXIT_EXECUTION_ERROR = 1
EXIT_CONFIGURATION_ERROR = 2

app = typer.Typer(
    name="imagegen",
    help="Hubris Image Generator - hermetic, cached firmware image builds",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"hubris-imagegen version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """Hubris Image Generator - hermetic, cached firmware image builds."""
    from hubris_imagegen.log import configure_logging

    configure_logging(get_settings().log_level, err_console)


def _fail(error: HermeticBuildError) -> NoReturn:
    """Report a pipeline error and exit with its category's code."""
    # Plain echo: tool output is printed verbatim
    typer.echo(f"Error [{error.code}]: {error}", err=True)
    if error.is_configuration_error:
        raise typer.Exit(code=EXIT_CONFIGURATION_ERROR)
    raise typer.Exit(code=EXIT_EXECUTION_ERROR)


def _echo_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


def _effective_settings(offline: bool = False) -> Settings:
    settings = get_settings()
    if offline:
        settings = settings.model_copy(update={"offline": True})
    return settings


def _open_store(settings: Settings) -> Any:
    from hubris_imagegen.db import create_all_tables, get_engine, get_session_factory
    from hubris_imagegen.store import Store

    engine = get_engine(settings.db_url)
    create_all_tables(engine)
    return Store(settings.store_dir, get_session_factory(engine))


def _overrides(name: str | None, version: str | None) -> Any:
    from hubris_imagegen.builds.identity import IdentityOverrides

    if name is None and version is None:
        return None
    return IdentityOverrides(name=name, version=version)


RootOption = Annotated[
    Path,
    typer.Option("--root", "-r", help="Project root directory"),
]
NameOption = Annotated[
    str | None,
    typer.Option("--name", help="Override the image name"),
]
VersionOption = Annotated[
    str | None,
    typer.Option("--version", help="Override the image version"),
]
OfflineOption = Annotated[
    bool,
    typer.Option("--offline", help="Vendor only from the local store"),
]
JsonOption = Annotated[
    bool,
    typer.Option("--json", help="Output as JSON"),
]


@app.command()
def config(json_output: JsonOption = False) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        typer.echo(print_settings_json(settings))
        return

    tmp_dir_display = str(settings.tmp_dir) if settings.tmp_dir else "(system default)"
    toolchain_display = (
        str(settings.toolchain_dir) if settings.toolchain_dir else "(not configured)"
    )
    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Store directory:     {settings.store_dir}")
    console.print(f"  Artifacts directory: {settings.artifacts_dir}")
    console.print(f"  Database URL:        {settings.db_url}")
    console.print(f"  Temp directory:      {tmp_dir_display}")
    console.print(f"  Toolchain directory: {toolchain_display}")
    console.print()
    console.print("[bold]Operational:[/bold]")
    console.print(f"  Offline mode:        {settings.offline}")
    console.print(f"  Log level:           {settings.log_level}")
    console.print(f"  Excluded names:      {', '.join(settings.excluded_names)}")
    console.print(f"  Version variable:    {settings.version_env_var}")
    console.print()
    console.print("[bold]Concurrency:[/bold]")
    console.print(f"  Max builds:          {settings.max_concurrent_builds}")
    console.print()
    console.print("[bold]Timeouts (seconds):[/bold]")
    console.print(f"  Download timeout:    {settings.download_timeout}")
    console.print(f"  Build timeout:       {settings.build_timeout}")
    console.print(f"  Lock timeout:        {settings.lock_timeout}")


@app.command()
def identity(
    manifest: Annotated[str, typer.Argument(help="Manifest path, e.g. app/x/app.toml")],
    name: NameOption = None,
    version: VersionOption = None,
    json_output: JsonOption = False,
) -> None:
    """Show the image identity derived from a manifest path."""
    from hubris_imagegen.builds.identity import parse_manifest_identity

    settings = get_settings()
    try:
        result = parse_manifest_identity(
            manifest,
            manifest_root=settings.manifest_root,
            default_version=settings.default_version,
            overrides=_overrides(name, version),
        )
    except HermeticBuildError as e:
        _fail(e)

    if json_output:
        _echo_json({"name": result.name, "version": result.version})
    else:
        console.print(f"{result.name} {result.version}")


@app.command()
def plan(
    manifest: Annotated[str, typer.Argument(help="Manifest path, e.g. app/x/app.toml")],
    root: RootOption = Path("."),
    name: NameOption = None,
    version: VersionOption = None,
    offline: OfflineOption = False,
    json_output: JsonOption = False,
) -> None:
    """Plan an image build and show both derivations without running them."""
    from hubris_imagegen.builds.planner import prepare_plan
    from hubris_imagegen.source.snapshot import filter_source
    from hubris_imagegen.vendor.service import vendor

    settings = _effective_settings(offline)
    store = _open_store(settings)
    try:
        snapshot = filter_source(root, settings.excluded_names)
        vendor_store = vendor(snapshot, store, settings)
        image_plan = prepare_plan(
            manifest, snapshot, vendor_store, settings, _overrides(name, version)
        )
    except HermeticBuildError as e:
        _fail(e)

    description = image_plan.describe()
    if json_output:
        _echo_json(description)
        return

    console.print(f"[bold]Plan for {image_plan.identity}[/bold]")
    console.print(f"  Manifest:   {description['manifest_path']}")
    console.print(f"  Board:      {description['board'] or 'N/A'}")
    console.print(f"  Packages:   {', '.join(description['packages'])}")
    console.print(f"  Stage 1:    {description['stage1_key']}")
    console.print(f"  Stage 2:    {description['stage2_key']}")
    for step in description["build_steps"]:
        console.print(f"  Step:       {' '.join(step)}", markup=False)


@app.command("vendor")
def vendor_cmd(
    root: RootOption = Path("."),
    offline: OfflineOption = False,
    json_output: JsonOption = False,
) -> None:
    """Vendor every locked dependency of a project into the store."""
    from hubris_imagegen.source.snapshot import filter_source
    from hubris_imagegen.vendor.service import vendor

    settings = _effective_settings(offline)
    store = _open_store(settings)
    try:
        snapshot = filter_source(root, settings.excluded_names)
        vendor_store = vendor(snapshot, store, settings)
    except HermeticBuildError as e:
        _fail(e)

    if json_output:
        _echo_json(
            {
                "digest": vendor_store.digest,
                "entries": [
                    {
                        "name": c.name,
                        "version": c.version,
                        "source": c.source,
                        "group": c.group,
                        "path": str(c.path),
                    }
                    for c in vendor_store.entries
                ],
            }
        )
        return

    console.print(f"[green]Vendored {len(vendor_store)} dependencies[/green]")
    console.print(f"  Digest: {vendor_store.digest}")
    for group, crates in sorted(vendor_store.groups().items()):
        console.print(f"  {group}: {len(crates)}")


builds_app = typer.Typer(help="Build images")
app.add_typer(builds_app, name="build")


def _print_build(result: Any, json_output: bool) -> None:
    if json_output:
        _echo_json(result.to_dict())
        return

    hit_marker = " (cache hit)" if result.cache_hit else ""
    console.print(f"[green]Built {result.identity}{hit_marker}[/green]")
    console.print(f"  Build ID: {result.build.id}")
    console.print(f"  Stage 1:  {'cached' if result.stage1.cache_hit else 'built'}")
    for artifact in result.artifacts:
        console.print(f"  {artifact.kind}: {result.published[artifact.filename]}")


@builds_app.command("run")
def build_run(
    manifest: Annotated[str, typer.Argument(help="Manifest path, e.g. app/x/app.toml")],
    root: RootOption = Path("."),
    name: NameOption = None,
    version: VersionOption = None,
    offline: OfflineOption = False,
    json_output: JsonOption = False,
) -> None:
    """Build one image from its manifest."""
    from hubris_imagegen.builds.service import build_image

    settings = _effective_settings(offline)
    store = _open_store(settings)
    try:
        result = build_image(
            store,
            manifest,
            root=root,
            settings=settings,
            overrides=_overrides(name, version),
        )
    except HermeticBuildError as e:
        _fail(e)

    _print_build(result, json_output)


@builds_app.command("default")
def build_default(
    image_set: Annotated[Path, typer.Argument(help="Image set YAML file")],
    root: RootOption = Path("."),
    offline: OfflineOption = False,
    json_output: JsonOption = False,
) -> None:
    """Build the default image named by an image set file."""
    from hubris_imagegen.builds.service import build_image
    from hubris_imagegen.builds.targets import load_image_set

    settings = _effective_settings(offline)
    try:
        request = load_image_set(image_set).default_request()
        store = _open_store(settings)
        result = build_image(
            store,
            request.manifest_path,
            root=root,
            settings=settings,
            overrides=request.overrides,
        )
    except HermeticBuildError as e:
        _fail(e)

    _print_build(result, json_output)


@builds_app.command("batch")
def build_batch_cmd(
    image_set: Annotated[Path, typer.Argument(help="Image set YAML file")],
    images: Annotated[
        list[str] | None,
        typer.Option("--image", "-i", help="Image key(s) to build (default: all)"),
    ] = None,
    root: RootOption = Path("."),
    mode: Annotated[
        str,
        typer.Option(
            "--mode", "-m", help="Batch mode: fail-fast or best-effort (default)"
        ),
    ] = "best-effort",
    offline: OfflineOption = False,
    json_output: JsonOption = False,
) -> None:
    """Build several images from an image set file.

    Use --mode=fail-fast to stop scheduling on the first failure, or
    --mode=best-effort to build every selected image.
    """
    from hubris_imagegen.builds.service import build_batch
    from hubris_imagegen.builds.targets import load_image_set
    from hubris_imagegen.types import BatchMode

    try:
        batch_mode = BatchMode(mode)
    except ValueError:
        err_console.print(f"[red]Invalid mode: {mode}[/red]")
        err_console.print("Valid values: fail-fast, best-effort")
        raise typer.Exit(code=EXIT_CONFIGURATION_ERROR) from None

    settings = _effective_settings(offline)
    try:
        requests = load_image_set(image_set).requests(images)
        store = _open_store(settings)
        result = build_batch(
            store, requests, root=root, settings=settings, mode=batch_mode
        )
    except HermeticBuildError as e:
        _fail(e)

    if json_output:
        typer.echo(result.model_dump_json(indent=2))
    else:
        console.print()
        console.print("[bold]Batch Build Results:[/bold]")
        console.print(f"  Total images: {result.total}")
        console.print(f"  [green]Succeeded: {result.succeeded}[/green]")
        console.print(f"  [blue]Cache hits: {result.cache_hits}[/blue]")
        if result.failed > 0:
            console.print(f"  [red]Failed: {result.failed}[/red]")
        if result.stopped_early:
            console.print(f"  [yellow]Skipped: {result.skipped} (fail-fast)[/yellow]")

        console.print()
        console.print("[bold]Per-Image Results:[/bold]")
        for r in result.results:
            image = r["image"]
            if r["success"]:
                hit_marker = " (cache hit)" if r["is_cache_hit"] else ""
                console.print(f"  [green]✓ {image}{hit_marker}[/green]")
                for a in r["artifacts"]:
                    console.print(f"      {a['filename']}")
            elif r.get("skipped"):
                console.print(f"  [yellow]- {image} (skipped)[/yellow]")
            else:
                console.print(f"  [red]✗ {image}[/red]")
                typer.echo(f"      Error: {r['error_message']}", err=True)

    if result.failed > 0:
        categories = {
            r.get("error_category") for r in result.results if not r["success"]
        }
        if categories == {"configuration"}:
            raise typer.Exit(code=EXIT_CONFIGURATION_ERROR)
        raise typer.Exit(code=EXIT_EXECUTION_ERROR)


@builds_app.command("list")
def builds_list(
    name: Annotated[
        str | None,
        typer.Option("--name", "-n", help="Filter by image name"),
    ] = None,
    status: Annotated[
        str | None,
        typer.Option(
            "--status", "-s", help="Filter by status (pending/running/succeeded/failed)"
        ),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum number of records to return"),
    ] = 100,
    json_output: JsonOption = False,
) -> None:
    """List build records."""
    from hubris_imagegen.builds.service import list_builds
    from hubris_imagegen.db import create_all_tables, get_engine, get_session_factory
    from hubris_imagegen.types import BuildStatus

    status_filter: BuildStatus | None = None
    if status:
        try:
            status_filter = BuildStatus(status)
        except ValueError:
            err_console.print(f"[red]Invalid status: {status}[/red]")
            err_console.print("Valid values: pending, running, succeeded, failed")
            raise typer.Exit(code=EXIT_CONFIGURATION_ERROR) from None

    engine = get_engine(get_settings().db_url)
    create_all_tables(engine)
    factory = get_session_factory(engine)

    with factory() as session:
        builds = list_builds(session, name=name, status=status_filter, limit=limit)

        if not builds:
            if json_output:
                typer.echo("[]")
            else:
                console.print("[yellow]No build records found[/yellow]")
            return

        if json_output:
            output = [
                {
                    "id": b.id,
                    "name": b.name,
                    "version": b.version,
                    "manifest_path": b.manifest_path,
                    "status": b.status,
                    "stage1_key": b.stage1_key,
                    "stage2_key": b.stage2_key,
                    "is_cache_hit": b.is_cache_hit,
                    "requested_at": b.requested_at.isoformat()
                    if b.requested_at
                    else None,
                    "started_at": b.started_at.isoformat() if b.started_at else None,
                    "finished_at": b.finished_at.isoformat() if b.finished_at else None,
                    "log_path": b.log_path,
                    "error_type": b.error_type,
                    "error_message": b.error_message,
                    "artifact_count": len(b.artifacts),
                }
                for b in builds
            ]
            _echo_json(output)
        else:
            console.print(f"[bold]Found {len(builds)} build(s):[/bold]")
            console.print()
            for b in builds:
                status_color = {
                    "succeeded": "green",
                    "failed": "red",
                    "running": "blue",
                    "pending": "yellow",
                }.get(b.status, "white")
                console.print(f"  [{status_color}]Build #{b.id}[/{status_color}]")
                console.print(f"    Image: {b.name} {b.version}")
                console.print(f"    Manifest: {b.manifest_path}")
                console.print(f"    Status: {b.status}")
                console.print(f"    Cache hit: {b.is_cache_hit}")
                console.print(f"    Artifacts: {len(b.artifacts)}")
                if b.error_type:
                    console.print(f"    Error: {b.error_type}")
                console.print()


artifacts_app = typer.Typer(help="Inspect build artifacts")
app.add_typer(artifacts_app, name="artifacts")


@artifacts_app.command("list")
def artifacts_list(
    build_id: Annotated[
        int | None,
        typer.Option("--build-id", "-b", help="Filter by build ID"),
    ] = None,
    kind: Annotated[
        str | None,
        typer.Option("--kind", "-k", help="Filter by artifact kind (archive/elf/bin)"),
    ] = None,
    json_output: JsonOption = False,
) -> None:
    """List artifacts."""
    from hubris_imagegen.builds.service import list_artifacts
    from hubris_imagegen.db import create_all_tables, get_engine, get_session_factory

    engine = get_engine(get_settings().db_url)
    create_all_tables(engine)
    factory = get_session_factory(engine)

    with factory() as session:
        artifacts = list_artifacts(session, build_id=build_id, kind=kind)

        if not artifacts:
            if json_output:
                typer.echo("[]")
            else:
                console.print("[yellow]No artifacts found[/yellow]")
            return

        if json_output:
            output = [
                {
                    "id": a.id,
                    "build_id": a.build_id,
                    "kind": a.kind,
                    "filename": a.filename,
                    "relative_path": a.relative_path,
                    "absolute_path": a.absolute_path,
                    "size_bytes": a.size_bytes,
                    "sha256": a.sha256,
                }
                for a in artifacts
            ]
            _echo_json(output)
        else:
            console.print(f"[bold]Found {len(artifacts)} artifact(s):[/bold]")
            console.print()
            for a in artifacts:
                console.print(f"  [green]Artifact #{a.id}[/green]")
                console.print(f"    Build ID: {a.build_id}")
                console.print(f"    Kind: {a.kind or 'unknown'}")
                console.print(f"    Filename: {a.filename}")
                console.print(f"    Size: {a.size_bytes:,} bytes")
                console.print(f"    SHA256: {a.sha256[:16]}...")
                console.print()


if __name__ == "__main__":
    app()
