"""Thin CLI wrapper for packer_images.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import dataclasses
import json
import logging
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console

from packer_images import __version__
from packer_images.config import Settings, get_settings, print_settings_json
from packer_images.types import BuildContext, StageStatus

app = typer.Typer(
    name="packer-images",
    help="Packer Images - build, publish and maintain Jenkins agent images",
    no_args_is_help=True,
)
console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"packer-images version {__version__}")
        raise typer.Exit()


def print_json(data: Any) -> None:
    """Print JSON without rich markup or wrapping."""
    console.print(
        json.dumps(data, indent=2, default=str),
        soft_wrap=True,
        markup=False,
        highlight=False,
    )


def load_settings(dry_run: bool = False) -> Settings:
    """Load settings, applying CLI overrides."""
    settings = get_settings()
    if dry_run:
        settings = settings.model_copy(update={"dry_run": True})
    return settings


def load_context(
    branch: str | None = None,
    tag: str | None = None,
    commit: str | None = None,
) -> BuildContext:
    """Read the CI context from the environment, applying CLI overrides."""
    context = BuildContext.from_env()
    overrides = {
        key: value
        for key, value in {"branch": branch, "tag": tag, "commit": commit}.items()
        if value is not None
    }
    return dataclasses.replace(context, **overrides) if overrides else context


BranchOption = Annotated[
    str | None, typer.Option("--branch", help="Branch name (default: $BRANCH_NAME)")
]
TagOption = Annotated[
    str | None, typer.Option("--tag", help="Tag name (default: $TAG_NAME)")
]
CommitOption = Annotated[
    str | None, typer.Option("--commit", help="Source revision (default: $GIT_COMMIT)")
]
JsonOption = Annotated[bool, typer.Option("--json", help="Output as JSON")]
DryRunOption = Annotated[
    bool, typer.Option("--dry-run", help="Log commands without executing them")
]


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
    """Packer Images - build, publish and maintain Jenkins agent images."""
    logging.basicConfig(
        level=get_settings().log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command()
def config(json_output: JsonOption = False) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        console.print(print_settings_json(settings), soft_wrap=True, markup=False)
        return

    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Repository root:     {settings.repo_root}")
    console.print(f"  Template directory:  {settings.template_path}")
    console.print(f"  Manifests directory: {settings.manifests_path}")
    console.print(f"  Lock directory:      {settings.lock_dir}")
    console.print(f"  Log directory:       {settings.log_dir}")
    console.print()
    console.print("[bold]Build:[/bold]")
    console.print(f"  Primary branch:      {settings.primary_branch}")
    console.print(f"  Image name:          {settings.image_name_template}")
    console.print(f"  Build attempts:      {settings.build_attempts}")
    console.print(f"  Parallel cells:      {settings.max_parallel_cells}")
    console.print(f"  Dry run:             {settings.dry_run}")
    console.print(f"  Log level:           {settings.log_level}")
    console.print()
    console.print("[bold]Timeouts (seconds):[/bold]")
    console.print(f"  Pipeline timeout:    {settings.pipeline_timeout}")
    console.print(f"  HTTP timeout:        {settings.http_timeout}")


matrix_app = typer.Typer(help="Inspect the build matrix")
app.add_typer(matrix_app, name="matrix")


@matrix_app.command("list")
def matrix_list(
    include_excluded: Annotated[
        bool,
        typer.Option("--all", help="Also show excluded cells and the rule excluding them"),
    ] = False,
    branch: BranchOption = None,
    tag: TagOption = None,
    commit: CommitOption = None,
    json_output: JsonOption = False,
) -> None:
    """List the matrix cells and their derived parameters."""
    from packer_images.matrix.expand import all_cells, find_exclusion
    from packer_images.matrix.models import DEFAULT_MATRIX
    from packer_images.matrix.params import derive_parameters

    settings = get_settings()
    context = load_context(branch, tag, commit)

    rows: list[dict[str, Any]] = []
    for cell in all_cells(DEFAULT_MATRIX):
        rule = find_exclusion(cell, DEFAULT_MATRIX.excludes)
        if rule is not None and not include_excluded:
            continue
        row: dict[str, Any] = {**cell.as_dict(), "excluded": rule is not None}
        if rule is None:
            params = derive_parameters(
                cell, context, settings.primary_branch, settings.default_image_version
            )
            row["env"] = params.to_packer_env()
        else:
            row["reason"] = rule.reason
        rows.append(row)

    if json_output:
        print_json(rows)
        return

    built = [r for r in rows if not r["excluded"]]
    console.print(f"[bold]{len(built)} cell(s) to build:[/bold]")
    console.print()
    for row in rows:
        label = f"{row['cpu_architecture']} / {row['agent_type']} / {row['compute_type']}"
        if row["excluded"]:
            console.print(f"  [dim]{label} (excluded: {row['reason']})[/dim]")
            continue
        console.print(f"  [green]{label}[/green]")
        for key, value in row["env"].items():
            console.print(f"    {key}={value}")


@matrix_app.command("env")
def matrix_env(
    cpu_architecture: Annotated[str, typer.Argument(help="CPU architecture")],
    agent_type: Annotated[str, typer.Argument(help="Agent type, e.g. ubuntu-20.04")],
    compute_type: Annotated[str, typer.Argument(help="Compute type, e.g. docker")],
    branch: BranchOption = None,
    tag: TagOption = None,
    commit: CommitOption = None,
    json_output: JsonOption = False,
) -> None:
    """Print the Packer environment of one cell."""
    from packer_images.matrix.expand import find_exclusion
    from packer_images.matrix.models import DEFAULT_MATRIX, MatrixCell
    from packer_images.matrix.params import derive_parameters

    settings = get_settings()
    cell = MatrixCell(cpu_architecture, agent_type, compute_type)
    rule = find_exclusion(cell, DEFAULT_MATRIX.excludes)
    if rule is not None:
        console.print(f"[red]Cell {cell.cell_id} is excluded: {rule.reason}[/red]")
        raise typer.Exit(code=1)

    params = derive_parameters(
        cell,
        load_context(branch, tag, commit),
        settings.primary_branch,
        settings.default_image_version,
    )
    env = params.to_packer_env()
    if json_output:
        print_json(env)
    else:
        for key, value in env.items():
            console.print(f"{key}={value}", markup=False)


def _print_result(result: Any) -> None:
    """Print one OperationResult line."""
    color = {
        StageStatus.SUCCESS: "green",
        StageStatus.UNSTABLE: "yellow",
        StageStatus.SKIPPED: "dim",
    }.get(result.status, "red")
    line = f"  [{color}]{result.status.value:<8}[/{color}] {result.name}"
    if result.attempts > 1:
        line += f" ({result.attempts} attempts)"
    console.print(line)
    if result.message and not result.success:
        console.print(f"    {result.message}", markup=False)
    if result.log_path and not result.success:
        console.print(f"    Log: {result.log_path}", markup=False)


@app.command()
def build(
    cpu_architecture: Annotated[str, typer.Argument(help="CPU architecture")],
    agent_type: Annotated[str, typer.Argument(help="Agent type, e.g. ubuntu-20.04")],
    compute_type: Annotated[str, typer.Argument(help="Compute type, e.g. docker")],
    branch: BranchOption = None,
    tag: TagOption = None,
    commit: CommitOption = None,
    dry_run: DryRunOption = False,
    json_output: JsonOption = False,
) -> None:
    """Build (and on tagged runs publish) a single matrix cell."""
    from packer_images.matrix.expand import find_exclusion
    from packer_images.matrix.models import DEFAULT_MATRIX, MatrixCell
    from packer_images.pipeline.service import run_pipeline

    cell = MatrixCell(cpu_architecture, agent_type, compute_type)
    rule = find_exclusion(cell, DEFAULT_MATRIX.excludes)
    if rule is not None:
        console.print(f"[red]Cell {cell.cell_id} is excluded: {rule.reason}[/red]")
        raise typer.Exit(code=1)

    result = run_pipeline(
        load_settings(dry_run),
        load_context(branch, tag, commit),
        cells=[cell],
        side_tasks=False,
    )
    if json_output:
        print_json(result.to_dict())
    else:
        for item in [*result.stages, *result.cells]:
            _print_result(item)
    if result.status.is_failing:
        raise typer.Exit(code=1)


pipeline_app = typer.Typer(help="Run the image pipeline")
app.add_typer(pipeline_app, name="pipeline")


@pipeline_app.command("run")
def pipeline_run(
    skip_side_tasks: Annotated[
        bool,
        typer.Option("--skip-side-tasks", help="Skip cleanups and update check"),
    ] = False,
    branch: BranchOption = None,
    tag: TagOption = None,
    commit: CommitOption = None,
    dry_run: DryRunOption = False,
    json_output: JsonOption = False,
) -> None:
    """Run side tasks, then build every matrix cell in parallel."""
    from packer_images.pipeline.service import LockTimeoutError, run_pipeline

    try:
        result = run_pipeline(
            load_settings(dry_run),
            load_context(branch, tag, commit),
            side_tasks=not skip_side_tasks,
        )
    except LockTimeoutError as e:
        console.print(str(e), style="red", markup=False)
        raise typer.Exit(code=1) from None

    if json_output:
        print_json(result.to_dict())
    else:
        console.print(
            f"[bold]Pipeline ({result.channel.value}): {result.status.value}[/bold]"
        )
        console.print()
        console.print("[bold]Side tasks:[/bold]")
        for stage in result.stages:
            _print_result(stage)
        console.print("[bold]Matrix:[/bold]")
        for cell in result.cells:
            _print_result(cell)
    if result.status.is_failing:
        raise typer.Exit(code=1)


@app.command()
def cleanup(
    provider: Annotated[str, typer.Argument(help="Cloud provider (aws, azure)")],
    apply: Annotated[
        bool,
        typer.Option("--apply", help="Delete resources (default only reports them)"),
    ] = False,
    branch: BranchOption = None,
    tag: TagOption = None,
    dry_run: DryRunOption = False,
) -> None:
    """Clean up stale cloud resources of the current build channel."""
    from packer_images.matrix.params import derive_build_channel
    from packer_images.pipeline.cleanup import CleanupError, CloudProvider, run_cleanup
    from packer_images.pipeline.runner import CommandError

    try:
        cloud = CloudProvider(provider)
    except ValueError:
        console.print(f"[red]Invalid provider: {provider}[/red]")
        console.print("Valid values: aws, azure")
        raise typer.Exit(code=1) from None

    settings = load_settings(dry_run)
    channel = derive_build_channel(load_context(branch, tag), settings.primary_branch)
    try:
        run_cleanup(cloud, settings, channel, apply=apply)
    except (CleanupError, CommandError) as e:
        console.print(str(e), style="red", markup=False)
        raise typer.Exit(code=1) from None
    console.print(f"[green]✓ {cloud.value} cleanup finished ({channel.value})[/green]")


updates_app = typer.Typer(help="Manage dependency-update manifests")
app.add_typer(updates_app, name="updates")


@updates_app.command("list")
def updates_list(
    path: Annotated[
        str | None,
        typer.Argument(help="Manifest file or directory (default: manifests dir)"),
    ] = None,
    json_output: JsonOption = False,
) -> None:
    """List the version-bump tasks described by the manifests."""
    from packer_images.updates.io import ManifestError, load_manifest, load_manifests

    target = Path(path) if path else get_settings().manifests_path
    try:
        manifests = (
            load_manifests(target) if target.is_dir() else [(target, load_manifest(target))]
        )
    except ManifestError as e:
        console.print(str(e), style="red", markup=False)
        raise typer.Exit(code=1) from None

    tasks = [task for _, manifest in manifests for task in manifest.to_tasks()]
    if json_output:
        print_json([task.model_dump() for task in tasks])
        return

    console.print(f"[bold]Found {len(tasks)} version-bump task(s):[/bold]")
    console.print()
    for task in tasks:
        console.print(f"  [green]{task.manifest}[/green]")
        console.print(f"    Source: {task.source_query}", markup=False)
        console.print(f"    Target: {task.target_file} ({task.target_key})")
        if task.labels:
            console.print(f"    Labels: {', '.join(task.labels)}")
        console.print()


@updates_app.command("validate")
def updates_validate(
    path: Annotated[
        str | None,
        typer.Argument(help="Manifest file or directory (default: manifests dir)"),
    ] = None,
    skip_targets: Annotated[
        bool,
        typer.Option("--skip-targets", help="Do not check target files and keys"),
    ] = False,
    json_output: JsonOption = False,
) -> None:
    """Validate manifests without running updatecli."""
    from packer_images.updates.io import (
        ManifestError,
        validate_manifest_file,
        validate_manifests,
    )

    settings = get_settings()
    target = Path(path) if path else settings.manifests_path
    repo_root = None if skip_targets else settings.repo_root
    if not target.exists():
        console.print(f"[red]Path not found: {target}[/red]")
        raise typer.Exit(code=1)

    try:
        results = (
            validate_manifests(target, repo_root)
            if target.is_dir()
            else [validate_manifest_file(target, repo_root)]
        )
    except ManifestError as e:
        console.print(str(e), style="red", markup=False)
        raise typer.Exit(code=1) from None

    if json_output:
        print_json([r.model_dump() for r in results])
    else:
        for r in results:
            if r.success:
                console.print(f"[green]✓ Valid manifest: {r.name}[/green] ({r.path})")
            else:
                console.print(f"[red]✗ Invalid manifest: {r.path}[/red]")
                for error in r.errors:
                    console.print(f"    {error}", markup=False)
    if any(not r.success for r in results):
        raise typer.Exit(code=1)


def _run_updatecli(action_name: str, dry_run: bool) -> None:
    from packer_images.pipeline.runner import CommandError
    from packer_images.types import UpdateAction
    from packer_images.updates.runner import UpdatecliError, run_updatecli

    try:
        run_updatecli(UpdateAction(action_name), load_settings(dry_run))
    except (UpdatecliError, CommandError) as e:
        console.print(str(e), style="red", markup=False)
        raise typer.Exit(code=1) from None
    console.print(f"[green]✓ updatecli {action_name} finished[/green]")


@updates_app.command("diff")
def updates_diff(dry_run: DryRunOption = False) -> None:
    """Show the version bumps updatecli would apply."""
    _run_updatecli("diff", dry_run)


@updates_app.command("apply")
def updates_apply(dry_run: DryRunOption = False) -> None:
    """Apply the version bumps and open pull requests."""
    _run_updatecli("apply", dry_run)


@updates_app.command("fetch-docker-ce")
def updates_fetch_docker_ce(
    index_url: Annotated[
        str | None,
        typer.Option("--index-url", help="apt Packages index to read"),
    ] = None,
) -> None:
    """Print the latest docker-ce version (updatecli shell source)."""
    import httpx

    from packer_images.updates.fetch import FetchError, fetch_latest_docker_ce_version

    settings = get_settings()
    try:
        with httpx.Client() as client:
            version = fetch_latest_docker_ce_version(
                client, index_url, timeout=settings.http_timeout
            )
    except FetchError as e:
        console.print(str(e), style="red", markup=False)
        raise typer.Exit(code=1) from None
    # Bare value on stdout: updatecli reads it as the source output
    typer.echo(version)


@updates_app.command("check-jdk")
def updates_check_jdk(
    version: Annotated[str, typer.Argument(help="JDK version, e.g. 8u345-b01")],
) -> None:
    """Check a JDK release is published for all platforms (updatecli condition)."""
    import httpx

    from packer_images.updates.fetch import FetchError, check_jdk_release

    settings = get_settings()
    try:
        with httpx.Client() as client:
            missing = check_jdk_release(client, version, timeout=settings.http_timeout)
    except (FetchError, ValueError) as e:
        console.print(str(e), style="red", markup=False)
        raise typer.Exit(code=1) from None

    if missing:
        console.print(f"[red]JDK {version} is not available for every platform:[/red]")
        for url in missing:
            console.print(f"  {url}", markup=False)
        raise typer.Exit(code=1)
    console.print(f"[green]✓ JDK {version} is available[/green]")


if __name__ == "__main__":
    app()
