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
Models for live containers and the outcome of a reconcile pass.
"""
from typing import List, Dict, Optional
from pydantic import BaseModel
from enum import Enum
from ..errors import PartialReconcileError


class ContainerStatus(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    EXITED = "exited"
    MISSING = "missing"


class ContainerSpec(BaseModel):
    """
    Everything the runtime needs to create one service container.
    """
    service: str
    name: str
    image: str
    command: List[str] = []
    environment: Dict[str, str] = {}
    ports: Dict[str, Optional[int]] = {}  # {"80/tcp": host_port}
    volumes: Dict[str, Dict[str, str]] = {}  # {source: {"bind": target, "mode": "rw"}}
    networks: List[str] = []
    aliases: List[str] = []
    labels: Dict[str, str] = {}


class ContainerHandle(BaseModel):
    """
    A container as reported by the runtime.
    """
    service: str
    container_id: str
    name: str
    image: str
    image_id: Optional[str] = None
    config_hash: Optional[str] = None
    status: ContainerStatus = ContainerStatus.CREATED
    exit_code: Optional[int] = None
    addresses: Dict[str, str] = {}  # network -> address

    @property
    def is_running(self) -> bool:
        return self.status == ContainerStatus.RUNNING

    @property
    def has_exited(self) -> bool:
        return self.status == ContainerStatus.EXITED


class LocalImage(BaseModel):
    """
    An image present in the runtime's local store after a pull or build.
    """
    reference: str
    image_id: str


class ReconcileAction(str, Enum):
    UNCHANGED = "unchanged"
    CREATED = "created"
    RECREATED = "recreated"
    RESTARTED = "restarted"
    LEFT_STOPPED = "left-stopped"
    REMOVED = "removed"
    FAILED = "failed"
    SKIPPED = "skipped"


class ServiceOutcome(BaseModel):
    """
    What happened to one service during reconcile or restart enforcement.
    """
    service: str
    action: ReconcileAction
    image: Optional[str] = None
    container_id: Optional[str] = None
    exit_code: Optional[int] = None
    error: Optional[str] = None
    error_type: Optional[str] = None

    @property
    def changed(self) -> bool:
        return self.action in (
            ReconcileAction.CREATED,
            ReconcileAction.RECREATED,
            ReconcileAction.RESTARTED,
            ReconcileAction.REMOVED,
        )


class ReconcileResult(BaseModel):
    """
    Per-service outcomes in dependency order. Reconcile is not transactional,
    so a failed result can hold a mix of updated and untouched services.
    """
    project: str
    outcomes: List[ServiceOutcome] = []

    @property
    def succeeded(self) -> bool:
        return not self.failed_services

    @property
    def failed_services(self) -> List[str]:
        return [o.service for o in self.outcomes if o.action == ReconcileAction.FAILED]

    @property
    def skipped_services(self) -> List[str]:
        return [o.service for o in self.outcomes if o.action == ReconcileAction.SKIPPED]

    @property
    def changed_services(self) -> List[str]:
        return [o.service for o in self.outcomes if o.changed]

    def outcome(self, service: str) -> Optional[ServiceOutcome]:
        for o in self.outcomes:
            if o.service == service:
                return o
        return None

    def raise_for_failure(self) -> None:
        if not self.succeeded:
            raise PartialReconcileError(self.outcomes)


class Artifact(BaseModel):
    """
    An image built for one service by the pipeline, tagged for publishing.
    """
    service: str
    image: str
    image_id: str
    published: bool = False
