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

import os

import pytest

from stackship.errors import RemoteCommandError
from stackship.MODELS.pipeline_run import PipelineRun, StageName
from stackship.MODELS.route_rule import DecisionKind, RouteRequest
from stackship.PARSERS.route_parser import RouteParser
from stackship.PIPELINE.stages import DeployStage, RunContext
from stackship.REGISTRY.registry_client import RegistryAuth
from stackship.REMOTE.session import LocalExecutor, SSHCredentials
from stackship.ROUTING.proxy_router import ProxyRouter


def test_command_injection_attempt(tmp_path):
    """
    Values interpolated into the remote command are shell-quoted, so a crafted
    topology path cannot run a second command on the deploy host.
    """
    injected_file = tmp_path / "injected.txt"
    stage = DeployStage(LocalExecutor(cwd=str(tmp_path)), "local", SSHCredentials(),
                        "stackship.yml; touch injected.txt", command="echo")
    ctx = RunContext(run=PipelineRun(trigger_ref="main"), work_dir=str(tmp_path))

    # echo prints the arguments back, which is not a reconcile result
    with pytest.raises(RemoteCommandError):
        stage.execute(ctx, ctx.run.stage(StageName.DEPLOY))

    assert not injected_file.exists(), "Command injection successful! Security vulnerability found."


def test_path_traversal_static_files(tmp_path):
    """
    Requests cannot read files outside the static root.
    """
    root = tmp_path / "site"
    root.mkdir()
    (root / "index.html").write_text("app")
    (tmp_path / "secret.txt").write_text("top secret")
    table = RouteParser().parse_from_string("static_root: site\nroutes:\n  - {path: /}\n", base_dir=str(tmp_path))
    router = ProxyRouter(table)

    for path in ["/../secret.txt", "/..%2fsecret.txt", "/assets/../../secret.txt", "//" + str(tmp_path / "secret.txt")]:
        decision = router.route(RouteRequest(path=path))
        assert decision.kind == DecisionKind.STATIC
        assert os.path.realpath(decision.file_path).startswith(os.path.realpath(str(root)))
        assert router.handle(RouteRequest(path=path)).body != b"top secret"


def test_credentials_are_not_printed():
    auth = RegistryAuth("ci-bot", "s3cr3t-token")
    credentials = SSHCredentials(user="deploy", key_path="/home/ci/.ssh/deploy_key")
    assert "s3cr3t-token" not in repr(auth)
    assert "deploy_key" not in repr(credentials)
