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
Container runtime backed by the Docker engine.
"""
import logging
from typing import Dict, List, Optional

import docker
from docker.errors import DockerException, NotFound

from ..errors import ContainerRuntimeError
from ..MODELS.container import ContainerHandle, ContainerSpec, ContainerStatus
from .base import ContainerRuntime, LABEL_CONFIG_HASH, LABEL_PROJECT, LABEL_SERVICE, resource_name

logger = logging.getLogger(__name__)

_STATUS_MAP = {
    "created": ContainerStatus.CREATED,
    "running": ContainerStatus.RUNNING,
    "restarting": ContainerStatus.RUNNING,
    "paused": ContainerStatus.RUNNING,
    "exited": ContainerStatus.EXITED,
    "dead": ContainerStatus.EXITED,
    "removing": ContainerStatus.EXITED,
}


class DockerRuntime(ContainerRuntime):
    """
    Docker SDK implementation. Containers are labelled with the project,
    service and config hash so they can be rediscovered on the next run.
    Docker's own restart policy stays off; restarts are driven by the engine.
    """

    def __init__(self, client: Optional[docker.DockerClient] = None):
        self._client = client

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise ContainerRuntimeError(f"Docker is not available: {e}") from e
        return self._client

    def list_containers(self, project: str) -> List[ContainerHandle]:
        try:
            containers = self.client.containers.list(all=True, filters={"label": f"{LABEL_PROJECT}={project}"})
        except DockerException as e:
            raise ContainerRuntimeError(f"Cannot list containers: {e}") from e
        return [self._to_handle(c) for c in containers]

    def inspect(self, handle: ContainerHandle) -> ContainerHandle:
        try:
            container = self.client.containers.get(handle.container_id)
        except NotFound:
            return handle.model_copy(update={"status": ContainerStatus.MISSING})
        except DockerException as e:
            raise ContainerRuntimeError(f"Cannot inspect {handle.name}: {e}") from e
        return self._to_handle(container)

    def create_container(self, spec: ContainerSpec) -> ContainerHandle:
        project = spec.labels.get(LABEL_PROJECT, "")
        networks = [resource_name(project, n) for n in spec.networks]
        volumes = {
            (resource_name(project, src) if not src.startswith("/") else src): mount
            for src, mount in spec.volumes.items()
        }
        kwargs = {}
        if networks:
            kwargs["network"] = networks[0]
            kwargs["networking_config"] = {
                networks[0]: self.client.api.create_endpoint_config(aliases=spec.aliases),
            }
        try:
            container = self.client.containers.create(
                spec.image,
                command=spec.command or None,
                name=spec.name,
                environment=spec.environment,
                ports=spec.ports,
                volumes=volumes,
                labels=spec.labels,
                restart_policy={"Name": "no"},
                detach=True,
                **kwargs,
            )
            for network in networks[1:]:
                self.client.networks.get(network).connect(container, aliases=spec.aliases)
        except DockerException as e:
            raise ContainerRuntimeError(f"Cannot create container {spec.name}: {e}") from e
        logger.debug("Created container %s from %s", spec.name, spec.image)
        return self._to_handle(container)

    def start_container(self, handle: ContainerHandle) -> ContainerHandle:
        try:
            container = self.client.containers.get(handle.container_id)
            container.start()
            container.reload()
        except DockerException as e:
            raise ContainerRuntimeError(f"Cannot start container {handle.name}: {e}") from e
        return self._to_handle(container)

    def stop_container(self, handle: ContainerHandle, timeout: int = 10) -> None:
        try:
            self.client.containers.get(handle.container_id).stop(timeout=timeout)
        except NotFound:
            return
        except DockerException as e:
            raise ContainerRuntimeError(f"Cannot stop container {handle.name}: {e}") from e

    def remove_container(self, handle: ContainerHandle) -> None:
        try:
            self.client.containers.get(handle.container_id).remove(force=True)
        except NotFound:
            return
        except DockerException as e:
            raise ContainerRuntimeError(f"Cannot remove container {handle.name}: {e}") from e

    def run_probe(self, handle: ContainerHandle, command: List[str], timeout: float) -> bool:
        try:
            result = self.client.containers.get(handle.container_id).exec_run(command)
        except DockerException as e:
            logger.debug("Probe on %s failed to run: %s", handle.name, e)
            return False
        return result.exit_code == 0

    def ensure_network(self, project: str, name: str) -> None:
        full_name = resource_name(project, name)
        try:
            if not self.client.networks.list(names=[full_name]):
                self.client.networks.create(full_name, driver="bridge", labels={LABEL_PROJECT: project})
                logger.info("Created network %s", full_name)
        except DockerException as e:
            raise ContainerRuntimeError(f"Cannot create network {full_name}: {e}") from e

    def ensure_volume(self, project: str, name: str) -> None:
        full_name = resource_name(project, name)
        try:
            self.client.volumes.get(full_name)
        except NotFound:
            try:
                self.client.volumes.create(full_name, labels={LABEL_PROJECT: project})
                logger.info("Created volume %s", full_name)
            except DockerException as e:
                raise ContainerRuntimeError(f"Cannot create volume {full_name}: {e}") from e
        except DockerException as e:
            raise ContainerRuntimeError(f"Cannot inspect volume {full_name}: {e}") from e

    def list_volumes(self, project: str) -> List[str]:
        prefix = resource_name(project, "")
        try:
            volumes = self.client.volumes.list(filters={"label": f"{LABEL_PROJECT}={project}"})
        except DockerException as e:
            raise ContainerRuntimeError(f"Cannot list volumes: {e}") from e
        return [v.name[len(prefix):] if v.name.startswith(prefix) else v.name for v in volumes]

    def remove_volume(self, project: str, name: str) -> None:
        full_name = resource_name(project, name)
        try:
            self.client.volumes.get(full_name).remove()
        except NotFound:
            return
        except DockerException as e:
            raise ContainerRuntimeError(f"Cannot remove volume {full_name}: {e}") from e

    def _to_handle(self, container) -> ContainerHandle:
        attrs = container.attrs or {}
        labels = attrs.get("Config", {}).get("Labels") or {}
        state = attrs.get("State", {})
        project = labels.get(LABEL_PROJECT, "")
        status = _STATUS_MAP.get(state.get("Status", ""), ContainerStatus.CREATED)
        exit_code = state.get("ExitCode") if status == ContainerStatus.EXITED else None

        addresses: Dict[str, str] = {}
        prefix = resource_name(project, "")
        for net_name, net in (attrs.get("NetworkSettings", {}).get("Networks") or {}).items():
            short = net_name[len(prefix):] if net_name.startswith(prefix) else net_name
            if net.get("IPAddress"):
                addresses[short] = net["IPAddress"]

        return ContainerHandle(
            service=labels.get(LABEL_SERVICE, container.name),
            container_id=container.id,
            name=container.name,
            image=attrs.get("Config", {}).get("Image", ""),
            image_id=attrs.get("Image"),
            config_hash=labels.get(LABEL_CONFIG_HASH),
            status=status,
            exit_code=exit_code,
            addresses=addresses,
        )
