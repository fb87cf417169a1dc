"""
Command Line Interface for nodefleet.
"""
import logging
import sys

import click

from ..MANAGERS.service_manager import ServiceManager
from ..MODELS.errors import AllocationExhausted, ConfigurationError, FleetError, ServiceNotFound
from ..MODELS.results import ActionOptions, OperationResult
from ..MODELS.settings import FleetSettings

EXIT_FAILED = 1
EXIT_CONFIG = 2


def parse_assignments(values):
    """
    Turns repeated KEY=VALUE options into a dict.
    """
    config = {}
    for item in values:
        if '=' not in item:
            raise click.BadParameter(f"'{item}' is not KEY=VALUE", param_hint="--set")
        key, value = item.split('=', 1)
        key = key.strip()
        if not key:
            raise click.BadParameter(f"'{item}' has an empty key", param_hint="--set")
        config[key] = value
    return config


def fail(message: str, code: int):
    click.echo(f"Error: {message}", err=True)
    sys.exit(code)


def wait_for_background(manager: ServiceManager):
    """
    Keeps the process alive until detached tasks such as the collector attach have run.
    """
    pending = manager.pending_tasks()
    if pending:
        click.echo(f"Waiting for {pending} background task(s)...", err=True)
        manager.wait_for_detached()


def report(result: OperationResult):
    """
    Prints a lifecycle result and exits with its status.
    """
    if result.cancelled:
        click.echo("Cancelled.")
        sys.exit(result.exit_code)

    lifecycle = result.lifecycle
    if lifecycle is not None:
        for outcome in lifecycle.steps_run:
            mark = "ok" if outcome.succeeded else "FAILED"
            line = f"  {outcome.step:22} {mark}"
            if outcome.error:
                line += f"  ({outcome.error})"
            click.echo(line)
        if lifecycle.aborted:
            click.echo(f"{result.action} {result.service_name} failed at {lifecycle.failed_step}: {lifecycle.error}",
                       err=True)
        else:
            suffix = ""
            if lifecycle.non_critical_failures:
                suffix = f" with {len(lifecycle.non_critical_failures)} non-critical failure(s)"
            click.echo(f"{result.action} {result.service_name} completed{suffix}.")
    sys.exit(result.exit_code)


def run(ctx, action, name, **options):
    manager: ServiceManager = ctx.obj['manager']
    try:
        return manager.operate(action, name, ActionOptions(**options))
    except (ConfigurationError, AllocationExhausted, ServiceNotFound) as e:
        fail(str(e), EXIT_CONFIG)
    except FleetError as e:
        fail(str(e), EXIT_FAILED)


@click.group()
@click.option('--root', type=click.Path(file_okay=False), default=None, help='Directory instances live in')
@click.option('--env-file', type=click.Path(dir_okay=False), default=None, help='Dotenv file with NODEFLEET_* settings')
@click.option('--verbose', '-v', is_flag=True, help='Verbose logging')
@click.pass_context
def cli(ctx, root, env_file, verbose):
    """
    nodefleet - lifecycle manager for a fleet of node services on one host.

    Installs, starts, stops, updates and removes ethnodes, validators, the
    remote signer, the monitoring stack and plugins, keeping their networks
    and ports consistent.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    if 'manager' not in ctx.obj:
        settings = FleetSettings.from_env(env_file, root_dir=root)
        ctx.obj['manager'] = ServiceManager(
            settings,
            confirm=lambda message: click.confirm(message, default=False),
            echo=click.echo,
        )
    ctx.call_on_close(lambda: wait_for_background(ctx.obj['manager']))


@cli.command()
@click.argument('name')
@click.option('--set', 'assignments', multiple=True, help='Configuration KEY=VALUE, repeatable')
@click.option('--no-mevboost', is_flag=True, help='Do not allocate the MEV-Boost relay port')
@click.option('--dry-run', is_flag=True, help='Show the configuration without installing')
@click.pass_context
def install(ctx, name, assignments, no_mevboost, dry_run):
    """Install a service."""
    result = run(ctx, 'install', name, config=parse_assignments(assignments),
                 include_mevboost=not no_mevboost, dry_run=dry_run)
    if dry_run:
        for key, value in result.configuration.items():
            click.echo(f"{key}={value}")
        return
    report(result)


@cli.command()
@click.argument('name')
@click.option('--yes', '-y', is_flag=True, help='Do not ask for confirmation')
@click.option('--dry-run', is_flag=True, help='Only show the removal plan')
@click.pass_context
def remove(ctx, name, yes, dry_run):
    """Remove a service and everything it owns."""
    result = run(ctx, 'remove', name, interactive=not yes, dry_run=dry_run)
    if dry_run:
        click.echo(result.plan.render())
        return
    report(result)


@cli.command()
@click.argument('name')
@click.pass_context
def start(ctx, name):
    """Start a service."""
    report(run(ctx, 'start', name))


@cli.command()
@click.argument('name')
@click.pass_context
def stop(ctx, name):
    """Stop a service."""
    report(run(ctx, 'stop', name))


@cli.command()
@click.argument('name')
@click.option('--set', 'assignments', multiple=True, help='Configuration KEY=VALUE, repeatable')
@click.pass_context
def update(ctx, name, assignments):
    """Update configuration, pull images and recreate a service."""
    report(run(ctx, 'update', name, config=parse_assignments(assignments)))


@cli.command()
@click.argument('name')
@click.pass_context
def status(ctx, name):
    """Show live status of a service."""
    st = run(ctx, 'status', name).status
    click.echo(f"{st.name} ({st.service_type.value}): {st.state}")
    for container in st.containers:
        click.echo(f"  {container.name:30} {container.state}")
    click.echo(f"  networks: {', '.join(st.networks) or 'none'}")
    click.echo(f"  volumes: {st.volume_count}")


@cli.command(name='list')
@click.pass_context
def list_(ctx):
    """List installed services."""
    services = run(ctx, 'list', None).services
    if not services:
        click.echo("No services installed.")
        return
    click.echo(f"{'SERVICE':20} {'TYPE':12} {'STATUS':12}")
    click.echo("-" * 44)
    for st in services:
        click.echo(f"{st.name:20} {st.service_type.value:12} {st.state:12}")


@cli.command()
@click.argument('name')
@click.pass_context
def plan(ctx, name):
    """Show what removing a service would touch."""
    click.echo(run(ctx, 'plan', name).plan.render())


@cli.command()
@click.option('--no-prune', is_flag=True, help='Keep orphaned fleet networks')
@click.pass_context
def reconcile(ctx, no_prune):
    """Rebuild network membership for the whole fleet."""
    manager: ServiceManager = ctx.obj['manager']
    try:
        result = manager.reconcile(prune=not no_prune)
    except FleetError as e:
        fail(str(e), EXIT_FAILED)
    for title, names in (("created", result.created), ("removed", result.removed),
                         ("rebuilt", result.rebuilt), ("restarted", result.restarted)):
        if names:
            click.echo(f"{title}: {', '.join(names)}")
    for name, error in result.failures.items():
        click.echo(f"failed: {name}: {error}", err=True)
    if not result.changed and not result.failures:
        click.echo("Network topology is up to date.")
    sys.exit(EXIT_FAILED if result.failures else 0)


@cli.command()
@click.pass_context
def ports(ctx):
    """Show used ports per category."""
    manager: ServiceManager = ctx.obj['manager']
    for category, used in manager.port_usage().items():
        click.echo(f"{category:15} {', '.join(map(str, used)) or '-'}")


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
