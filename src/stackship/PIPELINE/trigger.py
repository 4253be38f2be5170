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
Trigger events: the single entry point of the pipeline.
"""
from typing import Any, Dict
from pydantic import BaseModel

DEFAULT_TARGET = "default"
_DELETED_SHA = "0" * 40


class TriggerEvent(BaseModel):
    """
    A request to build and deploy ``ref`` (branch, tag or commit) to ``target``.
    """
    ref: str
    target: str = DEFAULT_TARGET
    source: str = "manual"

    @classmethod
    def from_push_payload(cls, payload: Dict[str, Any], target: str = DEFAULT_TARGET) -> "TriggerEvent":
        """
        Builds an event from a Git hosting push webhook body.

        The pushed commit (``after``) is preferred over the branch name so a run
        deploys exactly what was pushed.

        :raises ValueError: For a branch deletion or a payload without a ref.
        """
        after = payload.get("after")
        if after == _DELETED_SHA:
            raise ValueError("Push deletes the branch; nothing to deploy")
        ref = after or payload.get("ref")
        if not ref:
            raise ValueError("Push payload carries neither 'after' nor 'ref'")
        return cls(ref=ref, target=target, source="push")
