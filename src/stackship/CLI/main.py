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
Command Line Interface for stackship.
"""
import functools
import os
import sys
import time

import click

from ..errors import StackshipError, TopologyError
from ..MANAGERS.network_manager import NetworkManager
from ..MANAGERS.reconcile_engine import ReconcileEngine
from ..MANAGERS.restart_supervisor import RestartSupervisor
from ..MANAGERS.volume_manager import VolumeManager
from ..MODELS.container import ReconcileResult
from ..MODELS.pipeline_run import PipelineRun, RunStatus
from ..MODELS.route_rule import DecisionKind, RouteRequest
from ..CONVERTERS.to_nginx import NginxConverter
from ..PARSERS.compose_parser import ComposeParser
from ..PARSERS.route_parser import RouteParser, check_routes_against_topology
from ..PIPELINE.controller import build_controller
from ..PIPELINE.history import PipelineHistory
from ..PIPELINE.trigger import TriggerEvent
from ..REGISTRY.registry_client import DockerRegistry, RegistryAuth
from ..ROUTING.proxy_router import ProxyRouter
from ..RUNTIME.docker_runtime import DockerRuntime
from ..settings import SECRET_REGISTRY_PASSWORD, SECRET_REGISTRY_USERNAME, Settings, load_secrets
from ..UTILS.logging_setup import LEVELS, setup_logging


def handles_errors(f):
    """Reports stackship errors as ``Error: ...`` on stderr and exits with 1."""
    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except StackshipError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
    return wrapper


def load_topology(ctx):
    file = ctx.obj['file']
    if not os.path.exists(file):
        raise TopologyError(f"{file} not found.")
    topology = ComposeParser().parse(file, project=ctx.obj.get('project'))
    topology.validate()
    return topology


def make_engine(ctx, wait_ready=False):
    secrets = load_secrets()
    auth = RegistryAuth(secrets.get(SECRET_REGISTRY_USERNAME), secrets.get(SECRET_REGISTRY_PASSWORD))
    return ReconcileEngine(
        ctx.obj.get('runtime') or DockerRuntime(),
        ctx.obj.get('registry') or DockerRegistry(auth=auth),
        base_dir=os.path.dirname(os.path.abspath(ctx.obj['file'])),
        wait_for_readiness=wait_ready,
    )


def echo_result(result: ReconcileResult):
    click.echo(f"{'SERVICE':15} {'ACTION':12} {'IMAGE':30} DETAIL")
    click.echo("-" * 70)
    for o in result.outcomes:
        detail = o.error or (f"exit code {o.exit_code}" if o.exit_code is not None else "")
        click.echo(f"{o.service:15} {o.action.value:12} {(o.image or ''):30} {detail}")


def echo_run(run: PipelineRun):
    click.echo(f"Run {run.id} ({run.trigger_ref} -> {run.target}): {run.status.value}")
    for stage in run.stages:
        click.echo(f"  {stage.name.value:10} {stage.status.value}")
        for line in stage.logs:
            click.echo(f"      {line}")
    if run.error:
        click.echo(f"  error: {run.error}")


@click.group()
@click.option('--file', '-f', default=None, help='Topology file path')
@click.option('--project', '-p', default=None, help='Project name (prefixes container names)')
@click.option('--log-level', type=click.Choice(LEVELS, case_sensitive=False), default=None)
@click.option('--log-format', type=click.Choice(['default', 'json']), default='default')
@click.option('--env-file', default=None, help='dotenv file with STACKSHIP_* settings')
@click.pass_context
def cli(ctx, file, project, log_level, log_format, env_file):
    """
    stackship - build, publish and reconcile a multi-service stack.
    """
    ctx.ensure_object(dict)
    settings = Settings.load(env_file)
    setup_logging(log_level or settings.log_level, log_format)
    ctx.obj['settings'] = settings
    ctx.obj['file'] = file or settings.topology_file
    ctx.obj['project'] = project or settings.project


@cli.command()
@click.option('--routes', '-r', default=None, help='Route rule file to check as well')
@click.pass_context
@handles_errors
def validate(ctx, routes):
    """Validate the topology (and route rules)."""
    topology = load_topology(ctx)
    routes = routes or ctx.obj['settings'].routes_file
    if os.path.exists(routes):
        check_routes_against_topology(RouteParser().parse(routes), topology)
        click.echo(f"Routes OK: {routes}")
    click.echo(f"Topology OK: {topology.project} ({len(topology.services)} services)")


@cli.command()
@click.option('--waves', is_flag=True, help='Group services that may start together')
@click.pass_context
@handles_errors
def order(ctx, waves):
    """Print the service startup order."""
    topology = load_topology(ctx)
    if waves:
        for number, wave in enumerate(topology.dependency_waves(), start=1):
            click.echo(f"{number}: {' '.join(s.name for s in wave)}")
    else:
        for svc in topology.dependency_order():
            click.echo(svc.name)


@cli.command()
@click.option('--remove-orphans', is_flag=True)
@click.option('--json', 'as_json', is_flag=True)
@click.pass_context
@handles_errors
def plan(ctx, remove_orphans, as_json):
    """Show what reconcile would change."""
    topology = load_topology(ctx)
    result = make_engine(ctx).plan(topology, remove_orphans=remove_orphans)
    if as_json:
        click.echo(result.model_dump_json(indent=2))
    else:
        echo_result(result)


@cli.command()
@click.option('--pull', is_flag=True, help='Pull every image and recreate services whose image changed')
@click.option('--json', 'as_json', is_flag=True, help='Print the result as JSON')
@click.option('--remove-orphans', is_flag=True, help='Remove containers of services no longer declared')
@click.option('--wait-ready', is_flag=True, help="Wait for each service's readiness probe")
@click.pass_context
@handles_errors
def reconcile(ctx, pull, as_json, remove_orphans, wait_ready):
    """Bring running containers in line with the topology."""
    topology = load_topology(ctx)
    engine = make_engine(ctx, wait_ready=wait_ready)
    result = engine.reconcile(topology, refresh_images=pull, remove_orphans=remove_orphans)
    if as_json:
        click.echo(result.model_dump_json(indent=2))
    else:
        echo_result(result)
    if not result.succeeded:
        sys.exit(1)


@cli.command()
@click.pass_context
@handles_errors
def down(ctx):
    """Stop and remove all service containers."""
    topology = load_topology(ctx)
    make_engine(ctx).down(topology)
    click.echo("Services stopped.")


@cli.command()
@click.pass_context
@handles_errors
def ps(ctx):
    """List service status"""
    topology = load_topology(ctx)
    status = make_engine(ctx).ps(topology)
    click.echo(f"{'SERVICE':15} {'STATUS':10}")
    click.echo("-" * 25)
    for name, state in status.items():
        click.echo(f"{name:15} {state:10}")


@cli.command()
@click.option('--interval', default=5.0, show_default=True, help='Seconds between checks')
@click.pass_context
@handles_errors
def supervise(ctx, interval):
    """Enforce restart policies until interrupted."""
    topology = load_topology(ctx)

    def report(outcome):
        click.echo(f"{outcome.service}: {outcome.action.value} (exit code {outcome.exit_code})")

    supervisor = RestartSupervisor(make_engine(ctx), topology, interval=interval, on_exit=report)
    supervisor.start()
    click.echo("Supervising... Press Ctrl+C to stop.")
    try:
        while supervisor.running:
            time.sleep(1)
    except KeyboardInterrupt:
        click.echo("\nStopping supervisor...")
    finally:
        supervisor.stop()


@cli.command()
@click.argument('path')
@click.option('--routes', '-r', default=None, help='Route rule file')
@click.option('--method', default='GET')
@click.pass_context
@handles_errors
def route(ctx, path, routes, method):
    """Show how the proxy would route PATH."""
    table = RouteParser().parse(routes or ctx.obj['settings'].routes_file)
    resolver = None
    if os.path.exists(ctx.obj['file']):
        resolver = NetworkManager.from_topology(load_topology(ctx)).resolver(table.network)
    path, _, query = path.partition("?")
    decision = ProxyRouter(table, resolver=resolver).route(RouteRequest(path=path, query=query, method=method))

    if decision.kind == DecisionKind.FORWARD:
        target = decision.upstream_url or "unresolvable (502)"
        click.echo(f"forward -> {decision.target_service}: {target}")
    elif decision.kind == DecisionKind.STATIC:
        suffix = " (index fallback)" if decision.fallback else ""
        click.echo(f"static -> {decision.file_path}{suffix}")
    else:
        click.echo("not-found (404)")


@cli.command('render-proxy')
@click.option('--routes', '-r', default=None, help='Route rule file')
@click.option('--out', '-o', default=None, help='Write to this file instead of stdout')
@click.option('--listen', default=80, show_default=True)
@click.option('--static-root', default=None, help='Static root inside the proxy container')
@click.pass_context
@handles_errors
def render_proxy(ctx, routes, out, listen, static_root):
    """Render the route rules as nginx configuration."""
    table = RouteParser().parse(routes or ctx.obj['settings'].routes_file)
    converter = NginxConverter(table, listen=listen, static_root=static_root)
    if out:
        converter.convert(out)
        click.echo(f"Written {out}")
    else:
        click.echo(converter.render())


@cli.group()
def volumes():
    """Named volume management."""


@volumes.command('ls')
@click.pass_context
@handles_errors
def volumes_ls(ctx):
    topology = load_topology(ctx)
    runtime = ctx.obj.get('runtime') or DockerRuntime()
    for name in VolumeManager(runtime).list_volumes(topology.project):
        click.echo(name)


@volumes.command('prune')
@click.confirmation_option(prompt='Remove volumes no longer declared, with their data?')
@click.pass_context
@handles_errors
def volumes_prune(ctx):
    topology = load_topology(ctx)
    runtime = ctx.obj.get('runtime') or DockerRuntime()
    removed = VolumeManager(runtime).prune(topology)["volumes_removed"]
    click.echo(f"Removed {len(removed)} volume(s): {', '.join(removed)}" if removed else "Nothing to prune.")


@cli.group()
def pipeline():
    """Build, publish and deploy."""


@pipeline.command('run')
@click.option('--ref', required=True, help='Branch, tag or commit to deploy')
@click.option('--target', default='default', show_default=True)
@click.pass_context
@handles_errors
def pipeline_run(ctx, ref, target):
    """Run the pipeline once and wait for it."""
    controller = ctx.obj.get('controller') or build_controller(ctx.obj['settings'], load_secrets())
    run = controller.run_sync(TriggerEvent(ref=ref, target=target, source="cli"))
    controller.shutdown()
    echo_run(run)
    if run.status != RunStatus.SUCCEEDED:
        sys.exit(1)


@pipeline.command('history')
@click.option('--limit', default=10, show_default=True)
@click.pass_context
def pipeline_history(ctx, limit):
    """Show finished runs."""
    runs = PipelineHistory(ctx.obj['settings'].history_file).load()
    if not runs:
        click.echo("No runs recorded.")
        return
    click.echo(f"{'RUN':14} {'REF':20} {'TARGET':10} {'STATUS':10} FINISHED")
    for run in runs[-limit:]:
        finished = run.finished_at.isoformat() if run.finished_at else "-"
        click.echo(f"{run.id:14} {run.trigger_ref[:20]:20} {run.target:10} {run.status.value:10} {finished}")


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
