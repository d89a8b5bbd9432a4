# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Command Line Interface for stackvisor.
"""
import functools
import json
import os
import signal

import click

from ..MANAGERS.supervisor import Supervisor
from ..MODELS.runtime_state import ServiceState
from ..TEMPLATES.local_ai_stack import ENV_EXAMPLE, STACK_MANIFEST
from ..UTILS.logging_setup import configure_logging
from ..exceptions import ConfigurationError, StackvisorError, TunnelAuthError


def handle_errors(command):
    """
    Turns stackvisor errors into a one-line message on stderr and the
    error's exit code.
    """
    @functools.wraps(command)
    def wrapper(*args, **kwargs):
        try:
            return command(*args, **kwargs)
        except StackvisorError as e:
            click.echo(f"Error: {e}", err=True)
            raise SystemExit(e.exit_code)
    return wrapper


def _supervisor(ctx, require_tunnel: bool = False) -> Supervisor:
    return Supervisor.from_project(
        base_dir=ctx.obj['project_dir'],
        manifest=ctx.obj['file'],
        env_file=ctx.obj['env_file'],
        require_tunnel=require_tunnel,
    )


@click.group()
@click.option('--project-dir', '-C', default='.', type=click.Path(file_okay=False),
              help='Project directory holding the manifest, .env and .stackvisor/')
@click.option('--file', '-f', default=None, help='Manifest path (default: $STACKVISOR_MANIFEST or stack.yml)')
@click.option('--env-file', default='.env', help='Env file, relative to the project directory')
@click.option('--verbose', '-v', is_flag=True, help='Log debug output')
@click.pass_context
def cli(ctx, project_dir, file, env_file, verbose):
    """
    stackvisor - supervisor for a local AI stack.

    Starts the database, workflow engine, model server and chat UI in
    dependency order, waits for each to become healthy, and keeps an
    outbound tunnel to them alive.
    """
    ctx.ensure_object(dict)
    ctx.obj['project_dir'] = project_dir
    ctx.obj['file'] = file
    ctx.obj['env_file'] = env_file
    configure_logging("DEBUG" if verbose else os.environ.get("STACKVISOR_LOG_LEVEL", "INFO"))


@cli.command()
@click.option('--force', is_flag=True, help='Overwrite existing files')
@click.pass_context
def init(ctx, force):
    """Write a default manifest and .env.example."""
    project_dir = ctx.obj['project_dir']
    os.makedirs(project_dir, exist_ok=True)
    targets = {
        ctx.obj['file'] or os.path.join(project_dir, os.environ.get("STACKVISOR_MANIFEST", "stack.yml")): STACK_MANIFEST,
        os.path.join(project_dir, ".env.example"): ENV_EXAMPLE,
    }
    for path, content in targets.items():
        if os.path.exists(path) and not force:
            click.echo(f"{path} already exists, skipping (use --force to overwrite)")
            continue
        with open(path, 'w') as f:
            f.write(content)
        click.echo(f"Wrote {path}")
    click.echo("Copy .env.example to .env and fill in the credentials, then run 'stackvisor start'.")


@cli.command()
@click.argument('services', nargs=-1)
@click.option('--detach', '-d', is_flag=True, help='Return once services are healthy')
@click.pass_context
@handle_errors
def start(ctx, services, detach):
    """Start services (default: all) in dependency order."""
    supervisor = _supervisor(ctx)
    if not detach:
        def _shutdown(signum, frame):
            supervisor.request_shutdown()

        signal.signal(signal.SIGINT, _shutdown)
        signal.signal(signal.SIGTERM, _shutdown)
        click.echo("Running... Press Ctrl+C to stop.")
        supervisor.run(list(services) or None)
        click.echo("Services stopped.")
        return

    if supervisor.settings.runtime == "process":
        raise ConfigurationError(
            "The process runtime cannot run detached",
            hint="run in the foreground or set STACKVISOR_RUNTIME=docker",
        )
    started = supervisor.start(list(services) or None)
    if started:
        click.echo(f"Healthy: {', '.join(started)}")
    else:
        click.echo("All services already healthy.")


@cli.command()
@click.pass_context
@handle_errors
def stop(ctx):
    """Stop all running services, dependents first."""
    stopped = _supervisor(ctx).stop()
    if stopped:
        click.echo(f"Stopped: {', '.join(stopped)}")
    else:
        click.echo("Nothing to stop.")


@cli.command()
@click.argument('service')
@click.pass_context
@handle_errors
def restart(ctx, service):
    """Restart one service once its dependencies are healthy."""
    _supervisor(ctx).restart(service)
    click.echo(f"{service} is healthy.")


@cli.command()
@click.option('--json', 'as_json', is_flag=True, help='Print machine-readable output')
@click.pass_context
@handle_errors
def status(ctx, as_json):
    """Show per-service and tunnel status."""
    supervisor = _supervisor(ctx)
    snapshot = supervisor.status()
    tunnel = supervisor.tunnel_status()

    if as_json:
        click.echo(json.dumps({
            "services": {name: s.to_dict() for name, s in snapshot.items()},
            "tunnel": tunnel.model_dump(mode="json") if tunnel is not None else None,
        }, indent=2))
        return

    click.echo(f"{'SERVICE':15} {'STATE':10} {'SINCE':28} LAST ERROR")
    click.echo("-" * 70)
    for name, s in snapshot.items():
        since = s.healthy_since if s.state == ServiceState.HEALTHY and s.healthy_since else ""
        click.echo(f"{name:15} {s.state.value:10} {since:28} {s.last_error or ''}")
    if tunnel is not None:
        line = f"tunnel: {tunnel.state.value}"
        if tunnel.attempt:
            line += f" (attempt {tunnel.attempt})"
        if tunnel.last_error:
            line += f" - {tunnel.last_error}"
        click.echo(line)
    else:
        click.echo("tunnel: not configured")


@cli.command()
@click.argument('services', nargs=-1)
@click.option('--follow/--no-follow', default=True, help='Keep streaming new output')
@click.pass_context
@handle_errors
def logs(ctx, services, follow):
    """Stream service output (default: all services)."""
    _supervisor(ctx).logs(list(services), follow=follow, echo=click.echo)


@cli.command()
@click.pass_context
@handle_errors
def tunnel(ctx):
    """Run only the tunnel in the foreground."""
    supervisor = _supervisor(ctx, require_tunnel=True)

    def _shutdown(signum, frame):
        supervisor.request_shutdown()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)
    routes = ", ".join(f"{r.hostname} -> {r.target}" for r in supervisor.tunnel_config.routes)
    click.echo(f"Publishing: {routes or 'routes managed by the tunnel provider'}")
    final = supervisor.run_tunnel()
    if final.fatal:
        raise TunnelAuthError(final.last_error or "credential rejected")


@cli.group()
def volumes():
    """Manage named volumes."""


@volumes.command('list')
@click.pass_context
@handle_errors
def volumes_list(ctx):
    """List named volumes and their size."""
    supervisor = _supervisor(ctx)
    click.echo(f"{'VOLUME':20} {'OWNER':15} {'SIZE':>12}  PATH")
    for volume in supervisor.volumes():
        size = supervisor.volume_manager.get_volume_size(volume.name)
        click.echo(f"{volume.name:20} {volume.owner or '':15} {size:>12}  {volume.path}")


@volumes.command('backup')
@click.argument('name')
@click.argument('destination', type=click.Path(dir_okay=False))
@click.pass_context
@handle_errors
def volumes_backup(ctx, name, destination):
    """Archive a volume to DESTINATION (.tar.gz)."""
    path = _supervisor(ctx).backup_volume(name, destination)
    click.echo(f"Backed up {name} to {path}")


@volumes.command('restore')
@click.argument('name')
@click.argument('archive', type=click.Path(exists=True, dir_okay=False))
@click.pass_context
@handle_errors
def volumes_restore(ctx, name, archive):
    """Replace a volume's contents with ARCHIVE."""
    _supervisor(ctx).restore_volume(name, archive)
    click.echo(f"Restored {name} from {archive}")


@volumes.command('wipe')
@click.argument('name')
@click.confirmation_option(prompt='This deletes all data in the volume. Continue?')
@click.pass_context
@handle_errors
def volumes_wipe(ctx, name):
    """Delete a volume and its data."""
    if _supervisor(ctx).wipe_volume(name):
        click.echo(f"Wiped {name}")
    else:
        click.echo(f"No volume named {name}")


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
