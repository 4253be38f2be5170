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
Interface to the container runtime on the deploy host.

The runtime is a single shared, mutable resource. Implementations do not
coordinate with other mutators; the reconcile engine serialises its own calls.
"""
from abc import ABC, abstractmethod
from typing import List

from ..MODELS.container import ContainerHandle, ContainerSpec

LABEL_PROJECT = "stackship.project"
LABEL_SERVICE = "stackship.service"
LABEL_CONFIG_HASH = "stackship.config-hash"


def container_name(project: str, service: str) -> str:
    return f"{project}-{service}"


def resource_name(project: str, name: str) -> str:
    """Runtime name of a project-scoped network or named volume."""
    return f"{project}_{name}"


class ContainerRuntime(ABC):
    """
    Operations the reconcile engine needs from a container engine.
    Every method raises ContainerRuntimeError when the engine rejects the call.
    """

    @abstractmethod
    def list_containers(self, project: str) -> List[ContainerHandle]:
        """Containers labelled with ``project``, running or not."""

    @abstractmethod
    def inspect(self, handle: ContainerHandle) -> ContainerHandle:
        """Fresh state of a container; status MISSING if it no longer exists."""

    @abstractmethod
    def create_container(self, spec: ContainerSpec) -> ContainerHandle:
        pass

    @abstractmethod
    def start_container(self, handle: ContainerHandle) -> ContainerHandle:
        """Starts the process and returns the handle once the runtime reports it started."""

    @abstractmethod
    def stop_container(self, handle: ContainerHandle, timeout: int = 10) -> None:
        pass

    @abstractmethod
    def remove_container(self, handle: ContainerHandle) -> None:
        """Removes the container; a container that is already gone is not an error."""

    @abstractmethod
    def run_probe(self, handle: ContainerHandle, command: List[str], timeout: float) -> bool:
        """Runs ``command`` inside the container; True on exit code 0."""

    @abstractmethod
    def ensure_network(self, project: str, name: str) -> None:
        pass

    @abstractmethod
    def ensure_volume(self, project: str, name: str) -> None:
        pass

    @abstractmethod
    def list_volumes(self, project: str) -> List[str]:
        """Topology-level names of the project's named volumes."""

    @abstractmethod
    def remove_volume(self, project: str, name: str) -> None:
        pass
