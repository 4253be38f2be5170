import json
import os

import pytest
from click.testing import CliRunner

from conftest import THREE_TIER, FakeRegistry, FakeRuntime
from stackship.CLI.main import cli
from stackship.MODELS.pipeline_run import PipelineRun, RunStatus, StageName
from stackship.PIPELINE.controller import PipelineController
from stackship.PIPELINE.history import PipelineHistory
from stackship.PIPELINE.stages import PipelineStage

ROUTES = """
network: front
static_root: site
routes:
  - path: /api/
    service: api
    port: 8000
    rewrite: strip-prefix
  - path: /
"""


@pytest.fixture
def project(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    for name in list(os.environ):
        if name.startswith("STACKSHIP_"):
            monkeypatch.delenv(name)
    (tmp_path / "stackship.yml").write_text(THREE_TIER)
    (tmp_path / "routes.yml").write_text(ROUTES)
    (tmp_path / "site").mkdir()
    (tmp_path / "site" / "index.html").write_text("<html></html>")
    return tmp_path


@pytest.fixture
def fakes():
    runtime = FakeRuntime()
    return {"runtime": runtime, "registry": FakeRegistry(runtime)}


def invoke(args, obj=None, **kwargs):
    return CliRunner().invoke(cli, ["--log-level", "ERROR"] + args, obj=obj if obj is not None else {}, **kwargs)


def json_output(result):
    # stderr may share the captured stream; the JSON document is printed last
    text = result.stdout
    return json.loads(text[text.index("{"):])


def test_cli_help():
    runner = CliRunner()
    result = runner.invoke(cli, ['--help'])
    assert result.exit_code == 0
    assert 'reconcile' in result.output
    assert 'pipeline' in result.output


def test_cli_missing_file(project):
    result = invoke(['-f', 'non_existent.yml', 'order'])
    assert result.exit_code == 1
    assert 'Error: non_existent.yml not found.' in result.output


def test_validate(project):
    result = invoke(['validate'])
    assert result.exit_code == 0
    assert 'Routes OK: routes.yml' in result.output
    assert 'Topology OK: shop (3 services)' in result.output


def test_validate_reports_cycle(project):
    (project / "stackship.yml").write_text(
        "services:\n  a: {image: a, depends_on: [b]}\n  b: {image: b, depends_on: [a]}\n")
    result = invoke(['validate'])
    assert result.exit_code == 1
    assert 'a -> b -> a' in result.output


def test_order(project):
    result = invoke(['order'])
    assert result.exit_code == 0
    assert result.output.split() == ['db', 'api', 'proxy']

    result = invoke(['order', '--waves'])
    assert result.output.splitlines() == ['1: db', '2: api', '3: proxy']


def test_route(project):
    result = invoke(['route', '/api/items?page=2'])
    assert result.exit_code == 0
    assert 'forward -> api: http://api:8000/items' in result.output

    result = invoke(['route', '/dashboard'])
    assert 'index fallback' in result.output


def test_route_without_catch_all(project):
    (project / "routes.yml").write_text("- {path: /api/, service: api, port: 8000}\n")
    result = invoke(['route', '/home'])
    assert result.exit_code == 0
    assert 'not-found (404)' in result.output


def test_render_proxy(project):
    result = invoke(['render-proxy', '--out', 'nginx.conf'])
    assert result.exit_code == 0
    config = (project / "nginx.conf").read_text()
    assert 'location /api/' in config
    assert 'try_files' in config


def test_reconcile_json(project, fakes):
    result = invoke(['reconcile', '--json'], obj=dict(fakes))
    assert result.exit_code == 0
    data = json_output(result)
    assert data['project'] == 'shop'
    assert [o['action'] for o in data['outcomes']] == ['created', 'created', 'created']

    again = invoke(['reconcile', '--json'], obj=dict(fakes))
    assert [o['action'] for o in json_output(again)['outcomes']] == ['unchanged'] * 3


def test_reconcile_failure_exits_non_zero(project, fakes):
    fakes["registry"].fail_pull.add("registry.local/shop/api:latest")
    result = invoke(['reconcile', '--json'], obj=dict(fakes))
    assert result.exit_code == 1
    outcomes = {o['service']: o['action'] for o in json_output(result)['outcomes']}
    assert outcomes == {'db': 'created', 'api': 'failed', 'proxy': 'skipped'}


def test_reconcile_leaves_finished_job_stopped(project, fakes):
    invoke(['reconcile'], obj=dict(fakes))
    fakes["runtime"].exit("db", 0)
    before = len(fakes["runtime"].mutations)

    result = invoke(['reconcile', '--pull'], obj=dict(fakes))

    assert result.exit_code == 0
    assert 'left-stopped' in result.output
    assert 'exit code 0' in result.output
    assert len(fakes["runtime"].mutations) == before


def test_plan_ps_and_down(project, fakes):
    result = invoke(['plan'], obj=dict(fakes))
    assert result.exit_code == 0
    assert 'created' in result.output
    assert fakes["runtime"].calls == []

    invoke(['reconcile'], obj=dict(fakes))
    result = invoke(['ps'], obj=dict(fakes))
    assert 'running' in result.output

    result = invoke(['down'], obj=dict(fakes))
    assert result.exit_code == 0
    assert fakes["runtime"].containers == {}


def test_volumes(project, fakes):
    invoke(['reconcile'], obj=dict(fakes))
    fakes["runtime"].ensure_volume("shop", "old-cache")

    result = invoke(['volumes', 'ls'], obj=dict(fakes))
    assert result.output.split() == ['dbdata', 'old-cache']

    result = invoke(['volumes', 'prune', '--yes'], obj=dict(fakes))
    assert result.exit_code == 0
    assert 'old-cache' in result.output
    assert fakes["runtime"].list_volumes("shop") == ['dbdata']


class OkStage(PipelineStage):
    name = StageName.CHECKOUT

    def execute(self, ctx, stage):
        self.log(stage, f"Checked out {ctx.run.trigger_ref}")


def test_pipeline_run(project):
    controller = PipelineController([OkStage()], str(project))
    result = invoke(['pipeline', 'run', '--ref', 'main'], obj={"controller": controller})
    assert result.exit_code == 0
    assert 'succeeded' in result.output
    assert 'Checked out main' in result.output


def test_pipeline_run_needs_repository(project):
    result = invoke(['pipeline', 'run', '--ref', 'main'])
    assert result.exit_code == 1
    assert 'STACKSHIP_REPO_URL' in result.output


def test_pipeline_history(project):
    result = invoke(['pipeline', 'history'])
    assert 'No runs recorded.' in result.output

    history = PipelineHistory(str(project / ".stackship" / "history.jsonl"))
    run = PipelineRun(trigger_ref="main", status=RunStatus.SUCCEEDED)
    history.record_finished(run)

    result = invoke(['pipeline', 'history'])
    assert result.exit_code == 0
    assert run.id in result.output
    assert 'succeeded' in result.output
