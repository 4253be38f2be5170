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
Models for defining services, including restart policies, readiness probes and mounts.
"""
import hashlib
import json
from typing import List, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator
from enum import Enum

# Compose spellings accepted for restart conditions
_RESTART_ALIASES = {
    "no": "never",
    "false": "never",
    "unless-stopped": "always",
}


class RestartPolicyCondition(str, Enum):
    """
    Conditions under which an exited service container is recreated.
    """
    NEVER = "never"
    ON_FAILURE = "on-failure"
    ALWAYS = "always"


class RestartPolicy(BaseModel):
    """
    Defines how a service should be restarted when its process exits.

    ``max_retries`` of 0 means unbounded; ``delay`` is the first backoff step in seconds.
    """
    model_config = ConfigDict(frozen=True)

    condition: RestartPolicyCondition = RestartPolicyCondition.NEVER
    max_retries: int = 0
    delay: float = 1.0

    @field_validator("condition", mode="before")
    @classmethod
    def _accept_compose_spelling(cls, value):
        if isinstance(value, str):
            value = value.strip().lower()
            return _RESTART_ALIASES.get(value, value)
        return value

    def should_restart(self, exit_code: Optional[int]) -> bool:
        """
        Whether a container that exited with ``exit_code`` must be recreated.

        :param exit_code: Exit code of the container process, None if unknown.
        :return: True if the policy asks for a restart.
        """
        if self.condition == RestartPolicyCondition.ALWAYS:
            return True
        if self.condition == RestartPolicyCondition.ON_FAILURE:
            return exit_code is not None and exit_code != 0
        return False


class ReadinessProbe(BaseModel):
    """
    Command run inside a started container to decide it can serve requests.
    Only consulted when the reconcile engine runs with readiness waiting enabled.
    """
    model_config = ConfigDict(frozen=True)

    command: List[str]
    interval: float = 1.0
    timeout: float = 60.0


class VolumeMode(str, Enum):
    READ_WRITE = "rw"
    READ_ONLY = "ro"


class VolumeMount(BaseModel):
    """
    Defines a mapping between a host path or named volume and a container path.
    """
    model_config = ConfigDict(frozen=True)

    source: str
    target: str
    mode: VolumeMode = VolumeMode.READ_WRITE

    @property
    def is_named_volume(self) -> bool:
        return not self.source.startswith(("/", ".", "~"))

    @property
    def read_only(self) -> bool:
        return self.mode == VolumeMode.READ_ONLY


class PortBinding(BaseModel):
    """
    Publishes a container port on the host. ``host_port`` None lets the runtime pick.
    """
    model_config = ConfigDict(frozen=True)

    container_port: int
    host_port: Optional[int] = None
    protocol: str = "tcp"


class ServiceDefinition(BaseModel):
    """
    The full definition of a single service, translated from the topology document.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    image: str
    build_context: Optional[str] = None
    dockerfile: Optional[str] = None

    # Execution
    command: List[str] = []

    # Environment
    environment: Dict[str, str] = {}

    # Networking
    ports: List[PortBinding] = []
    networks: List[str] = []

    # Storage
    volumes: List[VolumeMount] = []

    # Lifecycle
    restart_policy: RestartPolicy = Field(default_factory=RestartPolicy)
    readiness: Optional[ReadinessProbe] = None
    depends_on: List[str] = []

    # Metadata
    labels: Dict[str, str] = {}

    @property
    def is_buildable(self) -> bool:
        return self.build_context is not None

    def config_hash(self) -> str:
        """
        Stable digest of everything that shapes the created container.

        Dependencies, restart policy and build settings are left out: changing
        them does not require the container to be recreated.
        """
        payload = self.model_dump(
            mode="json",
            include={"image", "command", "environment", "ports", "networks", "volumes", "labels"},
        )
        encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(encoded.encode()).hexdigest()
