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
In-memory stand-ins for the container runtime, the registry and the deploy host.
"""
import itertools
import logging
from typing import Dict, List, Optional

import pytest

from stackship.errors import ContainerRuntimeError, ImagePullError, RegistryPushError, RemoteConnectError
from stackship.MANAGERS.reconcile_engine import ReconcileEngine
from stackship.MODELS.container import ContainerHandle, ContainerSpec, ContainerStatus, LocalImage
from stackship.PARSERS.compose_parser import ComposeParser
from stackship.REGISTRY.registry_client import Registry
from stackship.REMOTE.session import CommandResult, Executor, Session
from stackship.RUNTIME.base import ContainerRuntime, LABEL_CONFIG_HASH, LABEL_PROJECT

MUTATIONS = ("create", "start", "stop", "remove")

THREE_TIER = """
name: shop
services:
  proxy:
    image: nginx:1.25
    ports: ["80:80"]
    depends_on: [api]
    networks: [front]
  api:
    build: ./api
    image: registry.local/shop/api:latest
    environment:
      DATABASE_URL: postgres://db:5432/shop
    depends_on: [db]
    networks: [front, back]
    restart: always
  db:
    image: postgres:16
    volumes: ["dbdata:/var/lib/postgresql/data"]
    networks: [back]
    restart: "no"
networks:
  front: {}
  back: {}
volumes:
  dbdata: {}
"""


class FakeRuntime(ContainerRuntime):
    def __init__(self):
        self.containers: Dict[str, ContainerHandle] = {}
        self.specs: Dict[str, ContainerSpec] = {}
        self.projects: Dict[str, str] = {}
        self.calls: List[tuple] = []
        self.networks = set()
        self.volumes: Dict[str, set] = {}
        self.image_ids: Dict[str, str] = {}
        self.probe_results: Dict[str, bool] = {}
        self.fail_create = set()
        self._ids = itertools.count(1)

    @property
    def mutations(self) -> List[tuple]:
        return [c for c in self.calls if c[0] in MUTATIONS]

    def list_containers(self, project: str) -> List[ContainerHandle]:
        return [h for cid, h in self.containers.items() if self.projects[cid] == project]

    def inspect(self, handle: ContainerHandle) -> ContainerHandle:
        current = self.containers.get(handle.container_id)
        if current is None:
            return handle.model_copy(update={"status": ContainerStatus.MISSING})
        return current

    def create_container(self, spec: ContainerSpec) -> ContainerHandle:
        self.calls.append(("create", spec.service))
        if spec.service in self.fail_create:
            raise ContainerRuntimeError(f"Cannot create container {spec.name}")
        cid = f"c{next(self._ids)}"
        handle = ContainerHandle(
            service=spec.service,
            container_id=cid,
            name=spec.name,
            image=spec.image,
            image_id=self.image_ids.get(spec.image, f"sha256:{spec.image}"),
            config_hash=spec.labels.get(LABEL_CONFIG_HASH),
        )
        self.containers[cid] = handle
        self.specs[cid] = spec
        self.projects[cid] = spec.labels.get(LABEL_PROJECT, "")
        return handle

    def start_container(self, handle: ContainerHandle) -> ContainerHandle:
        self.calls.append(("start", handle.service))
        spec = self.specs[handle.container_id]
        number = handle.container_id[1:]
        started = handle.model_copy(update={
            "status": ContainerStatus.RUNNING,
            "addresses": {net: f"10.0.{i}.{number}" for i, net in enumerate(spec.networks)},
        })
        self.containers[handle.container_id] = started
        return started

    def stop_container(self, handle: ContainerHandle, timeout: int = 10) -> None:
        self.calls.append(("stop", handle.service))

    def remove_container(self, handle: ContainerHandle) -> None:
        self.calls.append(("remove", handle.service))
        self.containers.pop(handle.container_id, None)

    def run_probe(self, handle: ContainerHandle, command: List[str], timeout: float) -> bool:
        self.calls.append(("probe", handle.service))
        return self.probe_results.get(handle.service, True)

    def ensure_network(self, project: str, name: str) -> None:
        self.networks.add((project, name))

    def ensure_volume(self, project: str, name: str) -> None:
        self.volumes.setdefault(project, set()).add(name)

    def list_volumes(self, project: str) -> List[str]:
        return sorted(self.volumes.get(project, set()))

    def remove_volume(self, project: str, name: str) -> None:
        self.calls.append(("remove-volume", name))
        self.volumes.get(project, set()).discard(name)

    # helpers

    def handle_of(self, service: str) -> Optional[ContainerHandle]:
        for handle in list(self.containers.values()):
            if handle.service == service:
                return handle
        return None

    def exit(self, service: str, exit_code: int) -> ContainerHandle:
        handle = self.handle_of(service)
        exited = handle.model_copy(update={"status": ContainerStatus.EXITED, "exit_code": exit_code})
        self.containers[handle.container_id] = exited
        return exited


class FakeRegistry(Registry):
    def __init__(self, runtime: Optional[FakeRuntime] = None):
        self.runtime = runtime
        self.images: Dict[str, str] = {}
        self.pulled: List[str] = []
        self.pushed: List[str] = []
        self.logins: List[str] = []
        self.fail_pull = set()
        self.fail_push = set()

    def login(self, registry: str) -> None:
        self.logins.append(registry)

    def pull(self, image_ref: str) -> LocalImage:
        if image_ref in self.fail_pull:
            raise ImagePullError(image_ref, "manifest unknown")
        image_id = self.images.setdefault(image_ref, f"sha256:{image_ref}")
        if self.runtime is not None:
            self.runtime.image_ids[image_ref] = image_id
        self.pulled.append(image_ref)
        return LocalImage(reference=image_ref, image_id=image_id)

    def push(self, image_ref, artifact):
        if image_ref in self.fail_push:
            raise RegistryPushError(image_ref, "connection reset")
        self.pushed.append(image_ref)
        self.images[image_ref] = artifact.image_id
        return artifact.model_copy(update={"image": image_ref, "published": True})


class FakeSession(Session):
    def __init__(self, responses: Optional[Dict[str, CommandResult]] = None):
        self.host = "deploy.example"
        self.responses = responses or {}
        self.commands: List[str] = []
        self.closed = False

    def run(self, command: str, timeout: Optional[float] = None) -> CommandResult:
        self.commands.append(command)
        for prefix, result in self.responses.items():
            if command.startswith(prefix):
                return result
        return CommandResult(0)

    def close(self) -> None:
        self.closed = True


class FakeExecutor(Executor):
    def __init__(self, session: Optional[FakeSession] = None, reachable: bool = True):
        self.session = session or FakeSession()
        self.reachable = reachable
        self.connected_to: List[str] = []

    def connect(self, host, credentials):
        if not self.reachable:
            raise RemoteConnectError(f"Cannot connect to {host}: Connection refused")
        self.connected_to.append(host)
        return self.session


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    logger = logging.getLogger("stackship")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)
    logger.propagate = True


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def registry(runtime):
    return FakeRegistry(runtime)


@pytest.fixture
def engine(runtime, registry, tmp_path):
    return ReconcileEngine(runtime, registry, base_dir=str(tmp_path))


@pytest.fixture
def three_tier():
    return ComposeParser(context={}).parse_from_string(THREE_TIER)


@pytest.fixture
def parse_topology():
    def parse(content, context=None):
        return ComposeParser(context=context or {}).parse_from_string(content)
    return parse
