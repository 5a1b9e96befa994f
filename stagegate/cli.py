"""Thin CLI wrapper for stagegate.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.

Exit codes:
    0: success
    1: a stage failed (or a runtime lookup failed)
    2: descriptor or validation error, before anything executed
"""

import json
import logging
from pathlib import Path
from typing import Annotated, Any, NoReturn

import typer
from pydantic import ValidationError
from rich.console import Console

from stagegate import __version__
from stagegate.config import get_settings, print_settings_json
from stagegate.errors import DESCRIPTOR_INVALID, StagegateError

app = typer.Typer(
    name="stagegate",
    help="stagegate - platform-aware multi-stage builds with verification gates",
    no_args_is_help=True,
)
console = Console()

EXIT_FAILED = 1
EXIT_INVALID = 2

STATUS_COLORS = {
    "succeeded": "green",
    "failed": "red",
    "blocked": "yellow",
    "running": "blue",
    "pending": "white",
}


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"stagegate version {__version__}")
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
    """stagegate - platform-aware multi-stage builds with verification gates."""
    logging.basicConfig(
        level=get_settings().log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _print_json(data: Any) -> None:
    console.print(
        json.dumps(data, indent=2), soft_wrap=True, markup=False, highlight=False
    )


def _fail(
    message: str,
    code: int,
    json_output: bool,
    error: dict[str, Any] | None = None,
    details: list[str] | None = None,
) -> NoReturn:
    """Print an error and exit with the given code."""
    if json_output:
        payload = error or {"code": "error", "message": message}
        if details:
            payload = {**payload, "problems": details}
        _print_json({"error": payload})
    else:
        console.print(f"[red]{message}[/red]")
        for line in details or []:
            console.print(f"  - {line}")
    raise typer.Exit(code=code)


def _load_plan(
    descriptor: Path,
    registry: Path | None,
    target_platform: str | None,
    json_output: bool,
    strict: bool = True,
):
    """Load a build plan, exiting with code 2 on any validation error."""
    from stagegate.builds.service import load_build_plan
    from stagegate.descriptor.io import format_validation_error
    from stagegate.errors import GraphValidationError

    try:
        return load_build_plan(
            descriptor,
            registry_path=registry,
            target_platform=target_platform,
            strict=strict,
        )
    except ValidationError as e:
        _fail(
            f"Invalid descriptor: {descriptor}",
            EXIT_INVALID,
            json_output,
            error={
                "code": DESCRIPTOR_INVALID,
                "message": f"Invalid descriptor: {descriptor}",
            },
            details=format_validation_error(e),
        )
    except GraphValidationError as e:
        _fail(str(e), EXIT_INVALID, json_output, error=e.to_dict(), details=e.problems)
    except StagegateError as e:
        _fail(str(e), EXIT_INVALID, json_output, error=e.to_dict())


def _create_executor(kind: str | None, json_output: bool):
    from stagegate.builds.service import create_executor

    try:
        return create_executor(kind=kind)
    except ValueError as e:
        _fail(str(e), EXIT_INVALID, json_output)


DescriptorArg = Annotated[
    Path,
    typer.Argument(help="Build descriptor (YAML or JSON)"),
]
RegistryOpt = Annotated[
    Path | None,
    typer.Option(
        "--registry", "-r", help="Base-image platform registry (YAML or JSON)"
    ),
]
TargetPlatformOpt = Annotated[
    str | None,
    typer.Option(
        "--target-platform",
        "-p",
        help="Platform override for every stage, e.g. linux/arm64/musl-1.2.4",
    ),
]
ExecutorOpt = Annotated[
    str | None,
    typer.Option("--executor", "-e", help="Build executor: docker or local"),
]
JsonOpt = Annotated[
    bool,
    typer.Option("--json", help="Output as JSON"),
]


@app.command()
def config(json_output: JsonOpt = False) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        console.print(print_settings_json(settings), soft_wrap=True)
        return

    def _timeout(value: int | None) -> str:
        return str(value) if value is not None else "(none)"

    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Work directory:      {settings.work_dir}")
    console.print(f"  Reports directory:   {settings.reports_dir}")
    console.print(f"  Database URL:        {settings.db_url}")
    console.print()
    console.print("[bold]Platforms:[/bold]")
    console.print(f"  Target platform:     {settings.target_platform or '(none)'}")
    console.print(f"  Compatibility:       {settings.compatibility}")
    console.print()
    console.print("[bold]Execution:[/bold]")
    console.print(f"  Executor:            {settings.executor}")
    console.print(f"  Docker binary:       {settings.docker_binary}")
    console.print(f"  Max workers:         {settings.max_workers}")
    console.print(f"  Log level:           {settings.log_level}")
    console.print()
    console.print("[bold]Timeouts (seconds):[/bold]")
    console.print(f"  Stage timeout:       {_timeout(settings.stage_timeout)}")
    console.print(f"  Check timeout:       {_timeout(settings.check_timeout)}")


@app.command()
def build(
    descriptor: DescriptorArg,
    registry: RegistryOpt = None,
    target_platform: TargetPlatformOpt = None,
    no_cache: Annotated[
        bool,
        typer.Option("--no-cache", help="Rebuild every stage, ignoring cached results"),
    ] = False,
    executor: ExecutorOpt = None,
    json_output: JsonOpt = False,
) -> None:
    """Validate, plan and run a multi-stage build.

    Exits 0 when the terminal stage and everything it depends on
    succeeded and no other stage failed, 1 otherwise, and 2 when the
    descriptor is invalid (nothing is executed in that case).
    """
    from stagegate.builds.service import run_build
    from stagegate.db import (
        create_all_tables,
        get_engine,
        get_session,
        get_session_factory,
    )

    plan = _load_plan(descriptor, registry, target_platform, json_output)
    build_executor = _create_executor(executor, json_output)

    engine = get_engine()
    create_all_tables(engine)
    factory = get_session_factory(engine)

    if not json_output:
        console.print(
            f"[blue]Building {plan.graph.name} "
            f"({len(plan.order)} stages, terminal {plan.terminal_stage_id})...[/blue]"
        )

    with get_session(factory) as session:
        result = run_build(
            session,
            plan,
            build_executor,
            no_cache=no_cache,
            descriptor_path=descriptor,
        )

    if json_output:
        _print_json(result.to_dict())
    else:
        console.print()
        console.print(f"[bold]Run {result.run_id}[/bold]")
        for sid in plan.order:
            outcome = result.outcomes[sid]
            color = STATUS_COLORS.get(outcome.status.value, "white")
            hit = " (cache hit)" if outcome.is_cache_hit else ""
            console.print(f"  [{color}]{sid}: {outcome.status.value}{hit}[/{color}]")
            if outcome.platform is not None:
                console.print(f"    Platform: {outcome.platform}")
            for check in outcome.check_results:
                mark = "✓" if check.passed else "✗"
                console.print(f"    {mark} {check.name}")
            if outcome.error is not None:
                console.print(f"    Error: {outcome.error}", markup=False)
        console.print()
        if result.exit_code == 0:
            console.print("[green]Build succeeded[/green]")
        else:
            console.print("[red]Build failed[/red]")

    if result.exit_code != 0:
        raise typer.Exit(code=EXIT_FAILED)


@app.command()
def verify(
    descriptor: DescriptorArg,
    stage: Annotated[
        str,
        typer.Option("--stage", "-s", help="Stage whose checks to run"),
    ],
    registry: RegistryOpt = None,
    target_platform: TargetPlatformOpt = None,
    executor: ExecutorOpt = None,
    json_output: JsonOpt = False,
) -> None:
    """Re-run one stage's verification checks without building.

    Checks run against the stage's most recent build output.
    """
    from stagegate.builds.service import verify_stage
    from stagegate.verification.gate import gate_passed

    plan = _load_plan(descriptor, registry, target_platform, json_output, strict=False)
    if stage not in plan.graph:
        _fail(f"Unknown stage: {stage}", EXIT_INVALID, json_output)
    build_executor = _create_executor(executor, json_output)

    try:
        results = verify_stage(plan, stage, build_executor)
    except StagegateError as e:
        _fail(str(e), EXIT_INVALID, json_output, error=e.to_dict())

    passed = gate_passed(results)
    if json_output:
        _print_json(
            {
                "stage_id": stage,
                "platform": str(plan.platforms[stage]),
                "passed": passed,
                "checks": [r.to_dict() for r in results],
            }
        )
    else:
        platform = plan.platforms[stage]
        console.print(f"[bold]Verification of {stage} ({platform}):[/bold]")
        if not results:
            console.print("[yellow]No checks declared[/yellow]")
        for r in results:
            if r.passed:
                console.print(f"  [green]✓ {r.name}[/green]")
            else:
                console.print(f"  [red]✗ {r.name} (exit code {r.exit_code})[/red]")
                if r.output:
                    console.print(r.output.rstrip(), markup=False)

    if not passed:
        raise typer.Exit(code=EXIT_FAILED)


@app.command()
def plan(
    descriptor: DescriptorArg,
    registry: RegistryOpt = None,
    target_platform: TargetPlatformOpt = None,
    json_output: JsonOpt = False,
) -> None:
    """Validate a descriptor, resolve platforms and preflight transfers.

    Nothing is executed. Exits 2 if any platform is ambiguous or any
    transfer would be rejected.
    """
    build_plan = _load_plan(
        descriptor, registry, target_platform, json_output, strict=False
    )

    if json_output:
        _print_json({"ok": build_plan.ok, **build_plan.to_dict()})
    else:
        console.print(f"[bold]Plan for {build_plan.graph.name}:[/bold]")
        console.print(f"  Terminal stage: {build_plan.terminal_stage_id}")
        if build_plan.override is not None:
            console.print(f"  Platform override: {build_plan.override}")
        console.print()
        for sid in build_plan.order:
            platform = build_plan.platforms.get(sid)
            upstream = build_plan.graph.upstream_ids(sid)
            console.print(f"  [green]{sid}[/green]")
            console.print(f"    Platform: {platform if platform else '(unresolved)'}")
            if upstream:
                console.print(f"    Upstream: {', '.join(upstream)}")
            if sid in build_plan.ambiguities:
                console.print(f"    {build_plan.ambiguities[sid]}", markup=False)
            if sid in build_plan.mismatches:
                console.print(f"    {build_plan.mismatches[sid]}", markup=False)

    if not build_plan.ok:
        raise typer.Exit(code=EXIT_INVALID)


@app.command("inspect-ledger")
def inspect_ledger(
    run_id: Annotated[str, typer.Argument(help="Run ID")],
    json_output: JsonOpt = False,
) -> None:
    """Show a persisted run: stage outcomes, checks and artifact ledger."""
    from stagegate.builds.service import inspect_ledger as inspect_run
    from stagegate.db import create_all_tables, get_engine, get_session_factory
    from stagegate.errors import RunNotFoundError

    engine = get_engine()
    create_all_tables(engine)
    factory = get_session_factory(engine)

    with factory() as session:
        try:
            data = inspect_run(session, run_id)
        except RunNotFoundError as e:
            _fail(str(e), EXIT_FAILED, json_output, error=e.to_dict())

    if json_output:
        _print_json(data)
        return

    console.print(f"[bold]Run {data['run_id']}[/bold] ({data['descriptor']})")
    console.print(f"  Status: {data['status']}")
    console.print(f"  Terminal stage: {data['target_stage']}")
    if data["target_platform"]:
        console.print(f"  Platform override: {data['target_platform']}")
    if data["error_message"]:
        console.print(f"  Error: {data['error_message']}", markup=False)
    console.print()
    console.print("[bold]Stages:[/bold]")
    for s in data["stages"]:
        color = STATUS_COLORS.get(s["status"], "white")
        hit = " (cache hit)" if s["is_cache_hit"] else ""
        console.print(f"  [{color}]{s['stage_id']}: {s['status']}{hit}[/{color}]")
        console.print(f"    Platform: {s['platform'] or '(unresolved)'}")
        for c in s["checks"]:
            mark = "✓" if c["outcome"] == "pass" else "✗"
            console.print(f"    {mark} {c['name']}")
        if s["error_message"]:
            console.print(f"    Error: {s['error_message']}", markup=False)
    console.print()
    console.print(f"[bold]Ledger ({len(data['ledger'])} artifact(s)):[/bold]")
    for e in data["ledger"]:
        console.print(f"  {e['stage_id']}:{e['path']}", markup=False)
        console.print(f"    Kind: {e['kind']}  Platform: {e['platform'] or '-'}")
        console.print(f"    Hash: {e['content_hash']}")


runs_app = typer.Typer(help="Inspect persisted build runs")
app.add_typer(runs_app, name="runs")


@runs_app.command("list")
def runs_list(
    status: Annotated[
        str | None,
        typer.Option("--status", help="Filter by status (running, succeeded, failed)"),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-n", help="Maximum runs to show"),
    ] = 20,
    json_output: JsonOpt = False,
) -> None:
    """List persisted runs, newest first."""
    from stagegate.db import create_all_tables, get_engine, get_session_factory
    from stagegate.ledger.store import list_runs
    from stagegate.types import RunStatus

    status_filter = None
    if status:
        try:
            status_filter = RunStatus(status)
        except ValueError:
            console.print(f"[red]Invalid status: {status}[/red]")
            console.print("Valid values: running, succeeded, failed")
            raise typer.Exit(code=1) from None

    engine = get_engine()
    create_all_tables(engine)
    factory = get_session_factory(engine)

    with factory() as session:
        runs = list_runs(session, status=status_filter, limit=limit)
        output = [
            {
                "run_id": r.run_id,
                "descriptor": r.descriptor_name,
                "target_stage": r.target_stage,
                "status": r.status,
                "started_at": r.started_at.isoformat() if r.started_at else None,
                "error_type": r.error_type,
            }
            for r in runs
        ]

    if json_output:
        _print_json(output)
        return
    if not output:
        console.print("[yellow]No runs found[/yellow]")
        return
    console.print(f"[bold]Found {len(output)} run(s):[/bold]")
    console.print()
    for r in output:
        color = STATUS_COLORS.get(r["status"], "white")
        console.print(f"  [{color}]{r['run_id']}[/{color}]")
        console.print(f"    Descriptor: {r['descriptor']}")
        console.print(f"    Terminal stage: {r['target_stage']}")
        console.print(f"    Status: {r['status']}")
        if r["error_type"]:
            console.print(f"    Error: {r['error_type']}")
        console.print()


if __name__ == "__main__":
    app()
