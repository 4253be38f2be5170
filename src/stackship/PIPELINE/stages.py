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
The four pipeline stages: checkout, build, publish and deploy.

Each stage reads what earlier stages left in the ``RunContext`` and raises a
``StackshipError`` on failure. Stages never retry.
"""
import logging
import os
import shlex
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from pydantic import ValidationError as PydanticValidationError

from ..BUILDERS.image_builder import ImageBuilder
from ..errors import RemoteCommandError, SourceUnavailableError, TopologyError
from ..MODELS.container import Artifact, ReconcileResult
from ..MODELS.pipeline_run import PipelineRun, Stage, StageName
from ..MODELS.topology import ServiceTopology
from ..PARSERS.compose_parser import ComposeParser
from ..REGISTRY.image_reference import PUBLISH_TAG, ImageReference
from ..REGISTRY.registry_client import Registry
from ..REMOTE.session import Executor, SSHCredentials

logger = logging.getLogger(__name__)


@dataclass
class RunContext:
    """State handed from one stage to the next within a single run."""

    run: PipelineRun
    work_dir: str
    commit: Optional[str] = None
    topology: Optional[ServiceTopology] = None
    artifacts: List[Artifact] = field(default_factory=list)
    published: List[Artifact] = field(default_factory=list)
    reconcile_result: Optional[ReconcileResult] = None


class PipelineStage(ABC):
    name: StageName

    @abstractmethod
    def execute(self, ctx: RunContext, stage: Stage) -> None:
        """Runs the stage; raises on failure."""

    def log(self, stage: Stage, message: str) -> None:
        stage.log(message)
        logger.info("[%s] %s", stage.name.value, message)


class GitSource:
    """
    A git working copy of the application repository.
    """

    def __init__(self, repo_url: str, work_dir: str, timeout: int = 300):
        self.repo_url = repo_url
        self.work_dir = work_dir
        self.timeout = timeout

    def _run(self, args: List[str], cwd: Optional[str] = None) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                ["git"] + args,
                cwd=cwd or self.work_dir,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise SourceUnavailableError(" ".join(args), f"git timed out after {self.timeout}s") from e
        except FileNotFoundError as e:
            raise SourceUnavailableError(" ".join(args), "git is not installed") from e

    def sync(self) -> None:
        """Clones the repository on first use, fetches it afterwards."""
        if os.path.isdir(os.path.join(self.work_dir, ".git")):
            result = self._run(["fetch", "--prune", "--tags", "--force", "origin"])
        else:
            parent = os.path.dirname(os.path.abspath(self.work_dir))
            os.makedirs(parent, exist_ok=True)
            result = self._run(["clone", self.repo_url, self.work_dir], cwd=parent)
        if result.returncode != 0:
            raise SourceUnavailableError(self.repo_url, (result.stderr or "").strip())

    def resolve(self, ref: str) -> str:
        """
        Resolves a branch, tag or commit to a commit id. Remote branches win
        over stale local ones.

        :raises SourceUnavailableError: If the ref does not exist.
        """
        short = ref[len("refs/heads/"):] if ref.startswith("refs/heads/") else ref
        for candidate in (f"origin/{short}", ref):
            result = self._run(["rev-parse", "--verify", "--quiet", f"{candidate}^{{commit}}"])
            if result.returncode == 0 and result.stdout.strip():
                return result.stdout.strip()
        raise SourceUnavailableError(ref, "no such branch, tag or commit")

    def checkout(self, ref: str) -> str:
        """
        Fetches and checks out ``ref`` (detached), discarding local changes.

        :return: The checked-out commit id.
        """
        self.sync()
        commit = self.resolve(ref)
        result = self._run(["checkout", "--force", "--detach", commit])
        if result.returncode != 0:
            raise SourceUnavailableError(ref, (result.stderr or "").strip())
        return commit


def check_publishable(topology: ServiceTopology) -> None:
    """
    Every built image is published as ``latest`` and the deploy host pulls the
    declared reference, so a buildable service must be declared with that tag.

    :raises TopologyError: Naming the first service declared with another tag or a digest.
    """
    for svc in topology.services:
        if not svc.is_buildable:
            continue
        ref = ImageReference.parse(svc.image)
        if ref.digest or ref.tag != PUBLISH_TAG:
            raise TopologyError(
                f"Service '{svc.name}' is built by the pipeline but declares image {svc.image}; "
                f"published images are tagged '{PUBLISH_TAG}', declare {ref.with_tag(PUBLISH_TAG)}"
            )


class CheckoutStage(PipelineStage):
    name = StageName.CHECKOUT

    def __init__(self, source: GitSource, topology_file: str, project: Optional[str] = None):
        self.source = source
        self.topology_file = topology_file
        self.project = project

    def execute(self, ctx: RunContext, stage: Stage) -> None:
        ctx.commit = self.source.checkout(ctx.run.trigger_ref)
        self.log(stage, f"Checked out {ctx.run.trigger_ref} at {ctx.commit}")

        path = os.path.join(ctx.work_dir, self.topology_file)
        if not os.path.exists(path):
            raise TopologyError(f"Topology file {self.topology_file} not found at {ctx.commit}")
        topology = ComposeParser().parse(path, project=self.project)
        topology.validate()
        check_publishable(topology)
        ctx.topology = topology
        self.log(stage, f"Topology {topology.project}: {', '.join(topology.service_names)}")


class BuildStage(PipelineStage):
    name = StageName.BUILD

    def __init__(self, builder: ImageBuilder):
        self.builder = builder

    def execute(self, ctx: RunContext, stage: Stage) -> None:
        services = ctx.topology.dependency_order()
        buildable = [s.name for s in services if s.is_buildable]
        if not buildable:
            self.log(stage, "No service has a build context; nothing to build")
            return
        self.log(stage, f"Building: {', '.join(buildable)}")
        ctx.artifacts = self.builder.build_all(services, log=stage.log)
        for artifact in ctx.artifacts:
            self.log(stage, f"Built {artifact.service}: {artifact.image} ({artifact.image_id})")


class PublishStage(PipelineStage):
    """
    Pushes every artifact under the fixed ``latest`` tag. The previous image
    under that tag is overwritten; there is no rollback pointer.
    """
    name = StageName.PUBLISH

    def __init__(self, registry: Registry, registry_host: Optional[str] = None):
        self.registry = registry
        self.registry_host = registry_host

    def execute(self, ctx: RunContext, stage: Stage) -> None:
        if not ctx.artifacts:
            self.log(stage, "No artifacts to publish")
            return
        refs = [ImageReference.parse(a.image).with_tag(PUBLISH_TAG) for a in ctx.artifacts]
        hosts = [self.registry_host] if self.registry_host else sorted({r.registry for r in refs})
        for host in hosts:
            self.registry.login(host)

        for artifact, ref in zip(ctx.artifacts, refs):
            published = self.registry.push(str(ref), artifact)
            ctx.published.append(published)
            self.log(stage, f"Published {artifact.service} as {published.image}")


class DeployStage(PipelineStage):
    """
    Runs the reconcile command on the deploy host and interprets its JSON result.
    """
    name = StageName.DEPLOY

    def __init__(self, executor: Executor, host: str, credentials: SSHCredentials,
                 remote_topology: str, pre_commands: Sequence[str] = (),
                 command: str = "stackship", project: Optional[str] = None,
                 timeout: Optional[float] = None):
        self.executor = executor
        self.host = host
        self.credentials = credentials
        self.remote_topology = remote_topology
        self.pre_commands = list(pre_commands)
        self.command = command
        self.project = project
        self.timeout = timeout

    def reconcile_command(self) -> str:
        args = [self.command, "-f", self.remote_topology]
        if self.project:
            args += ["--project", self.project]
        args += ["reconcile", "--pull", "--json"]
        return " ".join(shlex.quote(a) for a in args)

    def execute(self, ctx: RunContext, stage: Stage) -> None:
        self.log(stage, f"Connecting to {self.host}")
        with self.executor.connect(self.host, self.credentials) as session:
            for command in self.pre_commands:
                self.log(stage, f"$ {command}")
                result = session.run(command, timeout=self.timeout)
                self._log_output(stage, result.stdout)
                result.check(command)

            command = self.reconcile_command()
            self.log(stage, f"$ {command}")
            result = session.run(command, timeout=self.timeout)

        try:
            reconcile_result = ReconcileResult.model_validate_json(result.stdout)
        except PydanticValidationError as e:
            if result.ok:
                raise RemoteCommandError(command, result.exit_code, "output is not a reconcile result") from e
            raise RemoteCommandError(command, result.exit_code, result.stderr) from e

        ctx.reconcile_result = reconcile_result
        for outcome in reconcile_result.outcomes:
            detail = f": {outcome.error}" if outcome.error else ""
            self.log(stage, f"{outcome.service} {outcome.action.value}{detail}")
        reconcile_result.raise_for_failure()

    def _log_output(self, stage: Stage, output: str) -> None:
        for line in (output or "").splitlines():
            if line.strip():
                stage.log(line.rstrip())
