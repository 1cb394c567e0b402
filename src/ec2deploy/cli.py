"""Command line interface: plan, apply, output, destroy and deploy one environment."""

import os
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

import typer
from rich import box, print
from rich.prompt import Confirm
from rich.table import Table

from ._provider import Ec2Provider
from ._reconciler import Reconciler
from .errors import Ec2DeployError
from .handoff import (
    DeploymentSpec,
    HandoffNotifier,
    LoggingNotifier,
    RegistryCredentials,
    SshRemoteExecutor,
    SsmRemoteExecutor,
)
from .outputs import write_github_output
from .pipeline import DeploymentPipeline
from .planner import Action, ChangePlan
from .readiness import ReadinessGate
from .schema import Ec2DeployConfig, env_prefix

app = typer.Typer(
    name="ec2deploy",
    help="Provision a single EC2 deployment host and hand it to a deployment step.",
    add_completion=False,
    no_args_is_help=True,
)

ACTION_STYLES = {Action.CREATE: "green", Action.UPDATE: "yellow", Action.DELETE: "red"}


def build_reconciler(config: Ec2DeployConfig) -> Reconciler:
    return Reconciler(
        store=config.state_store(),
        provider=Ec2Provider(config.region),
        lock_timeout=config.lock_timeout,
    )


def _is_interactive() -> bool:
    is_interactive_shell = sys.stdin.isatty()
    is_ci = "CI" in os.environ
    is_pytest = "PYTEST_CURRENT_TEST" in os.environ
    return is_interactive_shell and not is_ci and not is_pytest


@contextmanager
def _reporting_errors() -> Iterator[None]:
    try:
        yield
    except Ec2DeployError as e:
        print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)


def _config(ctx: typer.Context) -> Ec2DeployConfig:
    return ctx.obj


def _print_plan(plan: ChangePlan) -> None:
    if plan.is_empty:
        print("\nNo changes. Infrastructure matches the configuration.\n")
        return

    table = Table(box=box.SQUARE, show_lines=False, title="Planned changes", title_style="bold", title_justify="left")
    table.add_column("Action")
    table.add_column("Resource")
    table.add_column("Attributes")
    table.add_column("Reason")
    for change in plan:
        style = ACTION_STYLES[change.action]
        table.add_row(
            f"[{style}]{change.action.value}[/{style}]",
            change.address,
            ", ".join(change.changed),
            change.reason,
        )
    print(table)
    summary = plan.summary()
    print(
        f"Plan: {summary['create']} to create, {summary['update']} to update, "
        f"{summary['delete']} to delete."
    )


@app.callback()
def main(
    ctx: typer.Context,
    environment: Optional[str] = typer.Option(None, "--environment", "-e", help="Environment name"),
    region: Optional[str] = typer.Option(None, help="AWS region"),
    ami_id: Optional[str] = typer.Option(None, help="AMI ID, or 'ubuntu-24.04'"),
    instance_type: Optional[str] = typer.Option(None, help="EC2 instance type"),
    key_name: Optional[str] = typer.Option(None, help="EC2 key pair name"),
    lock_timeout: Optional[float] = typer.Option(None, help="Seconds to wait for the state lock"),
) -> None:
    try:
        ctx.obj = Ec2DeployConfig.from_settings(
            environment=environment,
            region=region,
            ami_id=ami_id,
            instance_type=instance_type,
            key_name=key_name,
            lock_timeout=lock_timeout,
        )
    except ValueError as e:
        print(f"[red]Invalid configuration:[/red] {e}")
        raise typer.Exit(code=2)


@app.command()
def plan(ctx: typer.Context) -> None:
    """Show the changes apply would make."""
    config = _config(ctx)
    with _reporting_errors():
        _print_plan(build_reconciler(config).plan(config.declaration()))


@app.command()
def apply(
    ctx: typer.Context,
    auto_approve: bool = typer.Option(False, "--auto-approve", help="Skip the confirmation prompt"),
) -> None:
    """Create or update the environment's resources and record their outputs."""
    config = _config(ctx)
    reconciler = build_reconciler(config)
    declaration = config.declaration()
    confirm = not auto_approve and _is_interactive()
    with _reporting_errors():
        if confirm:
            preview = reconciler.plan(declaration)
            _print_plan(preview)
            if preview.is_empty:
                return
            if not Confirm.ask("Apply these changes?"):
                print("Cancelled.")
                return

        result = reconciler.apply(declaration)
        if not confirm:
            _print_plan(result.plan)
        print("\n[green]Apply complete.[/green]")
        for name, value in result.outputs.items():
            print(f"{name} = {value}")


@app.command()
def output(
    ctx: typer.Context,
    name: Optional[str] = typer.Argument(None, help="Print only this output's value"),
    as_json: bool = typer.Option(False, "--json", help="Print all outputs as JSON"),
    github_output: Optional[Path] = typer.Option(
        None,
        envvar="GITHUB_OUTPUT",
        help="Also append the outputs to this GITHUB_OUTPUT file",
    ),
) -> None:
    """Print outputs recorded by the last successful apply."""
    config = _config(ctx)
    with _reporting_errors():
        outputs = build_reconciler(config).outputs(config.declaration())
        if github_output is not None:
            write_github_output(outputs, github_output)

        if name is not None:
            typer.echo(outputs[name])
        elif as_json:
            typer.echo(outputs.to_json())
        else:
            for key, value in outputs.items():
                print(f"{key} = {value}")


@app.command()
def destroy(
    ctx: typer.Context,
    auto_approve: bool = typer.Option(False, "--auto-approve", help="Skip the confirmation prompt"),
) -> None:
    """Delete every resource recorded in state."""
    config = _config(ctx)
    if not auto_approve and _is_interactive():
        if not Confirm.ask(f"Destroy all resources in {config.environment}?"):
            print("Cancelled.")
            return
    with _reporting_errors():
        removed = build_reconciler(config).destroy()
        _print_plan(removed)
        print(f"\n[green]Destroy complete.[/green] {len(removed)} resource(s) removed.")


@app.command()
def deploy(
    ctx: typer.Context,
    image: str = typer.Option(..., help="Image reference to run on the host"),
    container_name: str = typer.Option("app", help="Name of the container to replace"),
    port: List[str] = typer.Option(["80:80"], help="host:container port mapping, repeatable"),
    executor: str = typer.Option("ssh", help="Remote execution mechanism: ssh or ssm"),
    registry: Optional[str] = typer.Option(None, help="Registry to log in to"),
    registry_username: Optional[str] = typer.Option(
        None, envvar=f"{env_prefix}REGISTRY_USERNAME", help="Registry user"
    ),
    registry_password: Optional[str] = typer.Option(
        None, envvar=f"{env_prefix}REGISTRY_PASSWORD", help="Registry password or token"
    ),
    registry_password_parameter: Optional[str] = typer.Option(
        None,
        envvar=f"{env_prefix}REGISTRY_PASSWORD_PARAMETER",
        help="SSM SecureString the host reads the registry password from",
    ),
) -> None:
    """Apply, wait for the host, then replace the running container."""
    config = _config(ctx)

    try:
        ports = tuple(
            (int(host_port), int(container_port))
            for host_port, container_port in (p.split(":", 1) for p in port)
        )
    except ValueError:
        print(f"[red]Ports must look like 8080:80, got {', '.join(port)}[/red]")
        raise typer.Exit(code=2)

    if executor == "ssh":
        remote = SshRemoteExecutor(
            user=config.ssh_user,
            key_file=Path(config.ssh_key_file) if config.ssh_key_file else None,
        )
    elif executor == "ssm":
        remote = SsmRemoteExecutor(region=config.region)
    else:
        print(f"[red]Unknown executor {executor}, expected ssh or ssm[/red]")
        raise typer.Exit(code=2)

    credentials = None
    if registry_username and (registry_password or registry_password_parameter):
        if executor == "ssm" and not registry_password_parameter:
            print(
                "[red]The ssm executor would record the registry password in the command; "
                f"set {env_prefix}REGISTRY_PASSWORD_PARAMETER instead[/red]"
            )
            raise typer.Exit(code=2)
        credentials = RegistryCredentials(
            username=registry_username,
            password=None if registry_password_parameter else registry_password,
            password_parameter=registry_password_parameter,
            registry=registry,
        )

    notifier = LoggingNotifier()
    pipeline = DeploymentPipeline(
        reconciler=build_reconciler(config),
        gate=ReadinessGate(
            timeout=config.readiness_timeout, interval=config.readiness_interval
        ),
        handoff=HandoffNotifier(remote, notifier=notifier),
        notifier=notifier,
        readiness_port=config.readiness_port,
    )
    with _reporting_errors():
        result = pipeline.run(
            config.declaration(),
            DeploymentSpec(image=image, container_name=container_name, ports=ports),
            credentials,
        )
        print(
            f"\n[green]Deployed {image} to "
            f"{result.applied.outputs['ec2_public_ip']}.[/green]"
        )


@app.command("force-unlock")
def force_unlock(ctx: typer.Context, lock_id: str = typer.Argument(..., help="ID of the lock to remove")) -> None:
    """Remove a stale state lock left behind by an interrupted run."""
    with _reporting_errors():
        build_reconciler(_config(ctx)).force_unlock(lock_id)
        print(f"Lock {lock_id} removed.")


@app.command()
def cleanup(ctx: typer.Context) -> None:
    """Terminate instances tagged for this environment that state does not track."""
    config = _config(ctx)
    reconciler = build_reconciler(config)
    with _reporting_errors():
        instances = reconciler.orphaned_instances(config.environment)

        if not instances:
            print("\nNo untracked instances found to clean up.\n")
            return

        vms_table = Table(
            box=box.SQUARE,
            show_lines=False,
            title_style="bold",
            title_justify="left",
        )
        vms_table.add_column("Instance ID")
        vms_table.add_column("Instance Name")
        vms_table.add_column("State")
        for instance in instances:
            vms_table.add_row(instance["id"], instance["name"], instance["state"])
        print(vms_table)

        if _is_interactive():
            if not Confirm.ask("Are you sure you want to terminate ALL the above instances?"):
                print("Cancelled.")
                return

        reconciler.remove_orphans(instances)
        print(f"\nTerminated {len(instances)} instance(s).\n")


def run() -> None:
    app()
