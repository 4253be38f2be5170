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
Models for pipeline runs and their stages.
"""
import uuid
from datetime import datetime, timezone
from typing import List, Optional
from pydantic import BaseModel, Field
from enum import Enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StageName(str, Enum):
    CHECKOUT = "checkout"
    BUILD = "build"
    PUBLISH = "publish"
    DEPLOY = "deploy"


STAGE_SEQUENCE = [StageName.CHECKOUT, StageName.BUILD, StageName.PUBLISH, StageName.DEPLOY]


class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED)


class Stage(BaseModel):
    """
    One sequential phase of a run. ``logs`` is only ever appended to and
    ``retry_count`` stays 0: stages are never retried automatically.
    """
    name: StageName
    status: StageStatus = StageStatus.PENDING
    logs: List[str] = []
    retry_count: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None

    def log(self, message: str) -> None:
        self.logs.append(message)


class PipelineRun(BaseModel):
    """
    One pipeline execution for one trigger.
    """
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    trigger_ref: str
    target: str = "default"
    stages: List[Stage] = Field(default_factory=lambda: [Stage(name=name) for name in STAGE_SEQUENCE])
    status: RunStatus = RunStatus.PENDING
    queued_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None
    cancel_requested: bool = False

    def stage(self, name: StageName) -> Stage:
        for stage in self.stages:
            if stage.name == name:
                return stage
        raise KeyError(name)

    @property
    def current_stage(self) -> Optional[Stage]:
        for stage in self.stages:
            if stage.status == StageStatus.RUNNING:
                return stage
        return None

    @property
    def failed_stage(self) -> Optional[Stage]:
        for stage in self.stages:
            if stage.status == StageStatus.FAILED:
                return stage
        return None

    @property
    def state(self) -> str:
        """
        Position in the run state machine: pending, a stage name, or a terminal status.
        """
        if self.status == RunStatus.RUNNING:
            current = self.current_stage
            return current.name.value if current else RunStatus.RUNNING.value
        return self.status.value

    def has_started(self, name: StageName) -> bool:
        return self.stage(name).status != StageStatus.PENDING
