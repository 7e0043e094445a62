"""Typer-powered command line interface for ``vpsctl``.

The CLI is a thin shell over the lifecycle components: it builds a
:class:`RuntimeContext` once per invocation, resolves the calling subject from
``--subject``/``--role`` (or the configured default) and renders results with
Rich tables or ``--json`` documents. Every command runs inside a structured
operation scope so ``operations.jsonl`` records what happened.
"""
from __future__ import annotations

import json
import logging
import textwrap
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import ALLOWED_RUNTIME_MODES, AppConfig, ConfigError, load_config
from .errors import VpsError
from .exit_codes import ExitCode
from .lifecycle import (
    ActionOrchestrator,
    ExpiryReconciler,
    ExpiryScheduler,
    ProvisioningPipeline,
    StatusAggregator,
)
from .locking import LockManager
from .logging import OperationScope, StructuredLogger
from .models import (
    AggregatedView,
    InstanceRecord,
    InstanceSpec,
    InstanceStatus,
    ResourceSpec,
    Role,
    Subject,
    Verb,
    format_timestamp,
    parse_timestamp,
)
from .nodes import NodeRegistry
from .providers import RuntimeProvider, build_runtime_provider
from .state import StateRegistry

console = Console()

SIMULATED_RUNTIME_FILE = "simulated-runtime.yml"

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to vpsctl's YAML config file.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit JSON instead of human readable output.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        VPS lifecycle orchestrator.

        Provision LXC-backed virtual private servers, drive their lifecycle,
        report declared and live status side by side and suspend instances
        whose lease has expired.
        """
    ).strip(),
)
vps_app = typer.Typer(help="Provision, inspect and control VPS instances.")
node_app = typer.Typer(help="Manage the physical nodes instances are placed on.")
reconcile_app = typer.Typer(help="Run the expiry reconciler.")
config_app = typer.Typer(help="Inspect the effective configuration.")

app.add_typer(vps_app, name="vps")
app.add_typer(node_app, name="node")
app.add_typer(reconcile_app, name="reconcile")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    registry: StateRegistry
    locks: LockManager
    logger: StructuredLogger
    runtime: RuntimeProvider
    subject: Subject
    actions: ActionOrchestrator
    provisioning: ProvisioningPipeline
    status: StatusAggregator
    nodes: NodeRegistry
    reconciler: ExpiryReconciler


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    *,
    runtime_mode: str | None = None,
    subject_id: str | None = None,
    role: Role | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if runtime_mode is not None:
        overrides["runtime"] = {"mode": runtime_mode.strip().lower()}

    config = load_config(config_file=config_file, overrides=overrides)
    registry = StateRegistry(config.registry_dir)
    registry.ensure_root()
    locks = LockManager(config.runtime_dir, config.lock_timeout)
    logger = StructuredLogger(config.logs_dir)
    provider = build_runtime_provider(
        config.runtime,
        simulate_state=config.state_dir / SIMULATED_RUNTIME_FILE,
    )
    subject = Subject(
        id=(subject_id or config.subject.id).strip(),
        role=role or config.subject.role,
    )
    runtime = RuntimeContext(
        config=config,
        registry=registry,
        locks=locks,
        logger=logger,
        runtime=provider,
        subject=subject,
        actions=ActionOrchestrator(registry=registry, runtime=provider, locks=locks),
        provisioning=ProvisioningPipeline(
            registry,
            provider,
            locks,
            logger,
            max_workers=config.provisioning.max_workers,
            defaults=config.provisioning.defaults,
        ),
        status=StatusAggregator(
            registry,
            provider,
            max_concurrency=config.status.max_concurrency,
        ),
        nodes=NodeRegistry(registry),
        reconciler=ExpiryReconciler(registry, logger),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the vpsctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    subject_id: str | None = typer.Option(
        None,
        "--subject",
        help="Identity to act as (defaults to subject.id from the config).",
    ),
    role: Role | None = typer.Option(
        None,
        "--role",
        case_sensitive=False,
        help="Role of the acting subject (defaults to subject.role from the config).",
    ),
    runtime_mode: str | None = typer.Option(
        None,
        "--runtime-mode",
        help=f"Runtime adapter to use: {', '.join(sorted(ALLOWED_RUNTIME_MODES))}.",
    ),
    log_level: str | None = typer.Option(
        None,
        "--log-level",
        help="Write diagnostic messages at this level (e.g. INFO) to stderr.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"vpsctl {__version__}")
        raise typer.Exit(code=0)

    if log_level is not None:
        level = logging.getLevelName(log_level.strip().upper())
        if not isinstance(level, int):
            console.print(f"[red]Unknown log level '{log_level}'.[/red]")
            raise typer.Exit(code=ExitCode.VALIDATION)
        logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")

    try:
        _ensure_runtime(
            ctx,
            config_file,
            runtime_mode=runtime_mode,
            subject_id=subject_id,
            role=role,
        )
    except ConfigError as exc:
        console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc
    except OSError as exc:
        console.print(f"[red]Unable to prepare vpsctl directories: {exc}[/red]")
        raise typer.Exit(code=ExitCode.ENVIRONMENT) from exc

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    json_output: bool = False,
    payload: Mapping[str, object] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    if json_output:
        console.print_json(data=dict(payload or {"error": {"kind": "error", "message": message}}))
    else:
        console.print(f"[red]{message}[/red]")
    op.error(message, errors=[message], rc=int(rc))
    raise typer.Exit(code=int(rc))


def _vps_error(op: OperationScope, exc: VpsError, *, json_output: bool = False) -> NoReturn:
    _command_error(
        op,
        exc.message,
        rc=exc.exit_code,
        json_output=json_output,
        payload=exc.to_payload(),
    )


def _subject_args(runtime: RuntimeContext) -> dict[str, object]:
    return {"subject": runtime.subject.id, "role": runtime.subject.role.value}


def _render_views(views: list[AggregatedView]) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("ID", style="bold")
    table.add_column("Name")
    table.add_column("Owner")
    table.add_column("Declared")
    table.add_column("Live")
    table.add_column("Address")
    table.add_column("Expires")

    if not views:
        table.add_row("(none)", "", "", "", "", "", "")
    for view in views:
        record = view.record
        addresses = ", ".join(view.live.addresses) if view.live else ""
        table.add_row(
            record.id,
            record.name,
            record.owner_id,
            view.declared_status.value,
            view.live_status,
            addresses,
            format_timestamp(record.expiry_at) or "-",
        )
    console.print(table)


def _render_mapping(data: Mapping[str, object]) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Key", style="bold")
    table.add_column("Value")
    for key, value in data.items():
        if isinstance(value, (dict, list)):
            rendered = json.dumps(value, indent=2, sort_keys=True)
        else:
            rendered = "" if value is None else str(value)
        table.add_row(key, rendered)
    console.print(table)


def _status_style(status: InstanceStatus) -> str:
    if status is InstanceStatus.ERROR:
        return "red"
    if status is InstanceStatus.CREATING:
        return "yellow"
    return "green"


# ----------------------------------------------------------------------
# vps
# ----------------------------------------------------------------------
@vps_app.command("list")
def vps_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List the VPS instances visible to the subject with live status."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "vps list",
        args={"json": json_output, **_subject_args(runtime)},
        target={"kind": "instance", "scope": "registry"},
    ) as op:
        views = runtime.status.list_instances(runtime.subject)
        degraded = [view.record.name for view in views if view.live_error]
        if json_output:
            console.print_json(data={"instances": [view.to_dict() for view in views]})
        else:
            _render_views(views)
        message = f"Reported {len(views)} instance(s)."
        if degraded:
            op.warning(message, warnings=[f"live status unknown: {name}" for name in degraded])
        else:
            op.success(message, changed=0)


@vps_app.command("show")
def vps_show(
    ctx: typer.Context,
    instance_id: str = typer.Argument(..., help="ID of the VPS to display."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show stored and live details for a single VPS."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "vps show",
        args={"json": json_output, **_subject_args(runtime)},
        target={"kind": "instance", "id": instance_id},
    ) as op:
        try:
            view = runtime.status.get_instance(instance_id, runtime.subject)
        except VpsError as exc:
            _vps_error(op, exc, json_output=json_output)
        data = view.to_dict()
        if json_output:
            console.print_json(data=data)
        else:
            _render_mapping(data)
        op.success(f"Reported VPS '{view.record.name}'.", changed=0)


@vps_app.command("create")
def vps_create(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Runtime name of the new VPS."),
    image: str = typer.Option(..., "--image", help="Image reference, e.g. ubuntu/22.04."),
    owner: str | None = typer.Option(None, "--owner", help="ID of the owning user."),
    node: str | None = typer.Option(None, "--node", help="ID of the node to place on."),
    cpu: int | None = typer.Option(None, "--cpu", help="CPU cores (default from config)."),
    ram: int | None = typer.Option(None, "--ram", help="Memory in MiB (default from config)."),
    disk: int | None = typer.Option(None, "--disk", help="Disk in GiB (default from config)."),
    expires: str | None = typer.Option(
        None,
        "--expires",
        help="ISO 8601 expiry timestamp; naive values are taken as UTC.",
    ),
    wait: bool = typer.Option(
        True,
        "--wait/--no-wait",
        help=(
            "Report the final record (default) or the record as first stored. "
            "The command always finishes materialisation before exiting."
        ),
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Record a new VPS and materialise it through the runtime.

    ``--no-wait`` only changes what is printed: the stored ``creating`` record
    is reported, but the process still drains the provisioning worker before
    it exits.
    """
    runtime = _get_runtime(ctx)
    defaults = runtime.provisioning.defaults
    resources = ResourceSpec(
        cpu_cores=defaults.cpu_cores if cpu is None else cpu,
        ram_mib=defaults.ram_mib if ram is None else ram,
        disk_gib=defaults.disk_gib if disk is None else disk,
    )
    args = {
        "name": name,
        "image": image,
        "owner": owner,
        "node": node,
        "resources": resources.to_dict(),
        "expires": expires,
        "wait": wait,
        "json": json_output,
        **_subject_args(runtime),
    }
    with runtime.logger.operation(
        "vps create",
        args=args,
        target={"kind": "instance", "name": name},
    ) as op:
        expiry_at = None
        if expires:
            expiry_at = parse_timestamp(expires)
            if expiry_at is None:
                _command_error(
                    op,
                    f"Invalid --expires value '{expires}'; expected an ISO 8601 timestamp.",
                    json_output=json_output,
                )
        try:
            try:
                ticket = runtime.provisioning.provision(
                    InstanceSpec(name=name, image_ref=image, resources=resources),
                    owner,
                    node,
                    expiry_at,
                    runtime.subject,
                )
            except VpsError as exc:
                _vps_error(op, exc, json_output=json_output)
            op.add_step("registry.create", detail=f"id={ticket.record.id}")
            record: InstanceRecord = ticket.wait() if wait else ticket.record
        finally:
            runtime.provisioning.shutdown(wait=True)

        if json_output:
            console.print_json(data=record.to_dict())
        else:
            style = _status_style(record.status)
            console.print(
                f"VPS [bold]{record.name}[/bold] ({record.id}) is "
                f"[{style}]{record.status.value}[/{style}]."
            )
            if record.status_detail:
                console.print(f"  detail: {record.status_detail}")

        context = {"instance": record.to_dict()}
        if record.status is InstanceStatus.ERROR:
            message = f"VPS '{record.name}' failed to materialise: {record.status_detail}"
            if not json_output:
                console.print(f"[red]{message}[/red]")
            op.error(message, rc=int(ExitCode.PROVIDER), context=context)
            raise typer.Exit(code=ExitCode.PROVIDER)
        op.success(f"VPS '{record.name}' recorded as {record.status.value}.", changed=1, context=context)


def _run_action(ctx: typer.Context, instance_id: str, verb: str, json_output: bool) -> None:
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        f"vps {verb}",
        args={"verb": verb, "json": json_output, **_subject_args(runtime)},
        target={"kind": "instance", "id": instance_id},
    ) as op:
        try:
            result = runtime.actions.apply_action(instance_id, verb, runtime.subject)
        except VpsError as exc:
            _vps_error(op, exc, json_output=json_output)
        if json_output:
            console.print_json(data=result.to_dict())
        else:
            console.print(f"[green]{result.message}[/green]")
        op.success(result.message, changed=1)


@vps_app.command("action")
def vps_action(
    ctx: typer.Context,
    instance_id: str = typer.Argument(..., help="ID of the VPS."),
    verb: str = typer.Argument(..., help="One of: start, stop, restart."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Apply a lifecycle verb to a VPS."""
    _run_action(ctx, instance_id, verb, json_output)


@vps_app.command("start")
def vps_start(
    ctx: typer.Context,
    instance_id: str = typer.Argument(..., help="ID of the VPS."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Start a VPS."""
    _run_action(ctx, instance_id, Verb.START.value, json_output)


@vps_app.command("stop")
def vps_stop(
    ctx: typer.Context,
    instance_id: str = typer.Argument(..., help="ID of the VPS."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Stop a VPS."""
    _run_action(ctx, instance_id, Verb.STOP.value, json_output)


@vps_app.command("restart")
def vps_restart(
    ctx: typer.Context,
    instance_id: str = typer.Argument(..., help="ID of the VPS."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Restart a VPS."""
    _run_action(ctx, instance_id, Verb.RESTART.value, json_output)


@vps_app.command("delete")
def vps_delete(
    ctx: typer.Context,
    instance_id: str = typer.Argument(..., help="ID of the VPS to delete."),
    force: bool = typer.Option(
        False,
        "--force",
        help="Remove the record even when the runtime delete fails.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Delete a VPS from the runtime and the registry."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "vps delete",
        args={"force": force, "json": json_output, **_subject_args(runtime)},
        target={"kind": "instance", "id": instance_id},
    ) as op:
        try:
            result = runtime.actions.delete(instance_id, runtime.subject, force=force)
        except VpsError as exc:
            _vps_error(op, exc, json_output=json_output)
        if json_output:
            console.print_json(data=result.to_dict())
        else:
            console.print(f"[green]{result.message}[/green]")
            if result.detail:
                console.print(f"  detail: {result.detail}")
        if result.detail and force:
            op.warning(result.message, warnings=[result.detail], changed=1)
        else:
            op.success(result.message, changed=1)


# ----------------------------------------------------------------------
# node
# ----------------------------------------------------------------------
@node_app.command("list")
def node_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List registered nodes."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "node list",
        args={"json": json_output},
        target={"kind": "node", "scope": "registry"},
    ) as op:
        nodes = runtime.nodes.list_nodes()
        if json_output:
            console.print_json(data={"nodes": [node.to_dict() for node in nodes]})
            op.success("Reported node list as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("ID", style="bold")
        table.add_column("Name")
        table.add_column("IP")
        table.add_column("CPU")
        table.add_column("RAM (MiB)")
        table.add_column("Disk (GiB)")
        table.add_column("Status")
        if not nodes:
            table.add_row("(none)", "", "", "", "", "", "")
        for node in nodes:
            table.add_row(
                node.id,
                node.name,
                node.ip,
                str(node.capacity.cpu),
                str(node.capacity.ram_mib),
                str(node.capacity.disk_gib),
                node.status,
            )
        console.print(table)
        op.success("Reported node list.", changed=0)


@node_app.command("add")
def node_add(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Display name of the node."),
    ip: str = typer.Option(..., "--ip", help="Management IP address of the node."),
    cpu: int = typer.Option(..., "--cpu", help="Total CPU cores."),
    ram: int = typer.Option(..., "--ram", help="Total memory in MiB."),
    disk: int = typer.Option(..., "--disk", help="Total disk in GiB."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Register a physical node."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "node add",
        args={"ip": ip, "cpu": cpu, "ram": ram, "disk": disk, **_subject_args(runtime)},
        target={"kind": "node", "name": name},
    ) as op:
        try:
            node = runtime.nodes.add_node(name, ip, cpu, ram, disk, runtime.subject)
        except VpsError as exc:
            _vps_error(op, exc, json_output=json_output)
        if json_output:
            console.print_json(data=node.to_dict())
        else:
            console.print(f"Node [bold]{node.name}[/bold] added with id {node.id}.")
        op.success(f"Node '{node.name}' added.", changed=1, context={"node": node.to_dict()})


@node_app.command("remove")
def node_remove(
    ctx: typer.Context,
    node_id: str = typer.Argument(..., help="ID of the node to remove."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Remove a node that no VPS is placed on."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "node remove",
        args=_subject_args(runtime),
        target={"kind": "node", "id": node_id},
    ) as op:
        try:
            node = runtime.nodes.remove_node(node_id, runtime.subject)
        except VpsError as exc:
            _vps_error(op, exc, json_output=json_output)
        message = f"Node '{node.name}' removed."
        if json_output:
            console.print_json(data={"success": True, "message": message})
        else:
            console.print(f"[green]{message}[/green]")
        op.success(message, changed=1)


# ----------------------------------------------------------------------
# reconcile
# ----------------------------------------------------------------------
@reconcile_app.command("once")
def reconcile_once(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Suspend every expired VPS once and report the outcome."""
    runtime = _get_runtime(ctx)
    report = runtime.reconciler.sweep()
    if json_output:
        console.print_json(data=report.to_dict())
    else:
        console.print(f"Suspended {len(report.suspended)} expired VPS.")
        for instance_id, reason in report.failures.items():
            console.print(f"[yellow]  {instance_id}: {reason}[/yellow]")
    if report.error is not None:
        if not json_output:
            console.print(f"[red]Expiry query failed: {report.error}[/red]")
        raise typer.Exit(code=ExitCode.ENVIRONMENT)


@reconcile_app.command("run")
def reconcile_run(
    ctx: typer.Context,
    interval: float | None = typer.Option(
        None,
        "--interval",
        min=0.001,
        help="Seconds between sweeps (default expiry.interval_seconds).",
    ),
    duration: float = typer.Option(
        0.0,
        "--duration",
        min=0.0,
        help="Stop after this many seconds; 0 runs until interrupted.",
    ),
) -> None:
    """Run the expiry reconciler in the foreground until interrupted."""
    runtime = _get_runtime(ctx)
    if not runtime.config.expiry.enabled and interval is None:
        console.print("[yellow]Expiry reconciliation is disabled (expiry.enabled=false).[/yellow]")
        return

    scheduler = ExpiryScheduler(
        runtime.reconciler,
        interval_seconds=interval or runtime.config.expiry.interval_seconds,
    )
    console.print(
        f"Expiry reconciler running every {scheduler.interval_seconds:g}s. Press Ctrl+C to stop."
    )
    stop = threading.Event()
    with scheduler:
        try:
            stop.wait(duration if duration > 0 else None)
        except KeyboardInterrupt:
            console.print("Stopping expiry reconciler.")
    report = scheduler.last_report
    if report is not None:
        console.print(f"Last sweep suspended {len(report.suspended)} VPS.")


# ----------------------------------------------------------------------
# config
# ----------------------------------------------------------------------
@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return
        _render_mapping(data)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["RuntimeContext", "app", "main"]
