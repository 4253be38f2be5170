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
Exception hierarchy shared by the topology, routing, reconcile and pipeline layers.

Topology and route problems are ``ValidationError`` and are raised before any
side effect. Registry, image and runtime failures are ``TransientInfraError``.
Deploy host problems are ``RemoteExecutionError``.
"""
from typing import List, Optional, Sequence


class StackshipError(Exception):
    """Base class for every error raised by stackship."""


# Validation

class ValidationError(StackshipError):
    """A declarative input (topology or route list) is malformed."""


class TopologyError(ValidationError):
    """The service topology is malformed."""


class DuplicateServiceError(TopologyError):
    """Two services share the same name."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Service '{name}' is declared more than once")


class UnknownReferenceError(TopologyError):
    """A service refers to a dependency, network or volume that is not declared."""

    def __init__(self, name: str, kind: str = "service", referrer: Optional[str] = None):
        self.name = name
        self.kind = kind
        self.referrer = referrer
        where = f" (referenced by '{referrer}')" if referrer else ""
        super().__init__(f"Unknown {kind} '{name}'{where}")


class CyclicDependencyError(TopologyError):
    """The depends_on graph contains a cycle."""

    def __init__(self, cycle: Sequence[str]):
        self.cycle = list(cycle)
        super().__init__(f"Circular dependency detected: {' -> '.join(self.cycle)}")


class RouteConfigError(ValidationError):
    """The route rule list is malformed."""


# Infrastructure

class TransientInfraError(StackshipError):
    """A network or infrastructure operation failed; prior work is kept."""


class ImagePullError(TransientInfraError):
    def __init__(self, image: str, reason: str = "", service: Optional[str] = None):
        self.image = image
        self.reason = reason
        self.service = service
        prefix = f"[{service}] " if service else ""
        super().__init__(f"{prefix}Failed to pull image {image}: {reason}".rstrip(": "))


class RegistryError(TransientInfraError):
    """Base class for registry push and authentication failures."""


class RegistryAuthError(RegistryError):
    pass


class RegistryPushError(RegistryError):
    def __init__(self, image: str, reason: str = ""):
        self.image = image
        self.reason = reason
        super().__init__(f"Failed to push image {image}: {reason}".rstrip(": "))


class ContainerRuntimeError(TransientInfraError):
    """The container runtime rejected an operation."""


class ReadinessTimeoutError(TransientInfraError):
    def __init__(self, service: str, timeout: float):
        self.service = service
        self.timeout = timeout
        super().__init__(f"Service '{service}' did not become ready within {timeout:.0f}s")


# Remote execution

class RemoteExecutionError(StackshipError):
    """The deploy host could not be reached or a command on it failed."""


class RemoteConnectError(RemoteExecutionError):
    pass


class RemoteCommandError(RemoteExecutionError):
    def __init__(self, command: str, exit_code: int, stderr: str = ""):
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        detail = f": {stderr.strip()}" if stderr and stderr.strip() else ""
        super().__init__(f"Remote command '{command}' exited with {exit_code}{detail}")


# Reconcile

class PartialReconcileError(StackshipError):
    """
    Some services were reconciled and others were not.

    ``outcomes`` holds one ``ServiceOutcome`` per service so a caller can
    retry only the failed subset.
    """

    def __init__(self, outcomes: List, message: Optional[str] = None):
        self.outcomes = list(outcomes)
        failed = [o.service for o in self.outcomes if o.action == "failed"]
        super().__init__(message or f"Reconcile failed for: {', '.join(failed) or 'unknown'}")

    @property
    def failed_services(self) -> List[str]:
        return [o.service for o in self.outcomes if o.action == "failed"]


# Pipeline

class PipelineError(StackshipError):
    """A pipeline stage failed."""


class SourceUnavailableError(PipelineError):
    def __init__(self, ref: str, reason: str = ""):
        self.ref = ref
        self.reason = reason
        super().__init__(f"Cannot resolve source reference '{ref}': {reason}".rstrip(": "))


class BuildError(PipelineError):
    def __init__(self, service: str, exit_code: int, reason: str = ""):
        self.service = service
        self.exit_code = exit_code
        self.reason = reason
        detail = f": {reason}" if reason else ""
        super().__init__(f"Build of '{service}' failed with exit code {exit_code}{detail}")


class StageTimeoutError(PipelineError):
    def __init__(self, stage: str, timeout: float):
        self.stage = stage
        self.timeout = timeout
        super().__init__(f"Stage '{stage}' timed out after {timeout:.0f}s")


class CancellationRejectedError(PipelineError):
    pass


class NameResolutionError(StackshipError):
    """A service name is not reachable from the resolver's network."""

    def __init__(self, name: str, network: str):
        self.name = name
        self.network = network
        super().__init__(f"'{name}' cannot be resolved on network '{network}'")
