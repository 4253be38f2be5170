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
Append-only record of pipeline runs.
"""
import logging
import os
import threading
from typing import Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from ..MODELS.pipeline_run import PipelineRun

logger = logging.getLogger(__name__)


class PipelineHistory:
    """
    Keeps every run in trigger order. Finished runs are also appended, one JSON
    object per line, to ``path`` when it is set.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = path
        self._lock = threading.Lock()
        self._runs: Dict[str, PipelineRun] = {}

    def add(self, run: PipelineRun) -> None:
        with self._lock:
            self._runs[run.id] = run

    def get(self, run_id: str) -> Optional[PipelineRun]:
        with self._lock:
            return self._runs.get(run_id)

    def list(self, target: Optional[str] = None) -> List[PipelineRun]:
        with self._lock:
            runs = list(self._runs.values())
        if target:
            runs = [r for r in runs if r.target == target]
        return runs

    def record_finished(self, run: PipelineRun) -> None:
        """Writes a terminal run to the history file."""
        if not self.path:
            return
        line = run.model_dump_json()
        with self._lock:
            directory = os.path.dirname(self.path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")

    def load(self) -> List[PipelineRun]:
        """
        Reads previously finished runs from the history file.
        Lines that do not parse are logged and skipped.
        """
        if not self.path or not os.path.exists(self.path):
            return []
        runs = []
        with open(self.path, encoding="utf-8") as f:
            for number, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    runs.append(PipelineRun.model_validate_json(line))
                except PydanticValidationError as e:
                    logger.warning("Skipping unreadable history line %s in %s: %s", number, self.path, e)
        return runs
