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
Background supervision of exited containers against their restart policies.
"""
import logging
import threading
from typing import Callable, List, Optional, Set

from ..errors import StackshipError
from ..MODELS.container import ReconcileAction, ServiceOutcome
from ..MODELS.topology import ServiceTopology
from .reconcile_engine import ReconcileEngine

logger = logging.getLogger(__name__)


class RestartSupervisor:
    """
    Periodically asks the reconcile engine to enforce restart policies.

    Containers left stopped are reported once per container, not on every tick.
    """

    def __init__(
        self,
        engine: ReconcileEngine,
        topology: ServiceTopology,
        interval: float = 5.0,
        on_exit: Optional[Callable[[ServiceOutcome], None]] = None,
    ):
        """
        Initializes the supervisor.

        :param engine: Engine that owns the runtime.
        :param topology: Desired topology whose policies are enforced.
        :param interval: Seconds between checks.
        :param on_exit: Called for every restart, failed restart, or container left stopped.
        """
        self.engine = engine
        self.topology = topology
        self.interval = interval
        self.on_exit = on_exit
        self.thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._reported: Set[str] = set()

    @property
    def running(self) -> bool:
        return self.thread is not None and self.thread.is_alive()

    def start(self) -> None:
        """
        Starts the supervision thread.
        """
        self._stop_event.clear()
        self.thread = threading.Thread(target=self._loop, name="restart-supervisor", daemon=True)
        self.thread.start()

    def stop(self) -> None:
        """
        Stops the supervision thread.
        """
        self._stop_event.set()
        if self.thread:
            self.thread.join(timeout=self.interval + 1)

    def check_once(self) -> List[ServiceOutcome]:
        """
        Runs a single enforcement pass and returns the outcomes not seen before.
        """
        outcomes = self.engine.enforce_restart_policies(self.topology)
        # forget containers that were removed or replaced since the last pass
        self._reported &= {o.container_id for o in outcomes if o.action == ReconcileAction.LEFT_STOPPED}
        fresh = []
        for outcome in outcomes:
            if outcome.action == ReconcileAction.LEFT_STOPPED:
                if outcome.container_id in self._reported:
                    continue
                self._reported.add(outcome.container_id)
            fresh.append(outcome)
            if self.on_exit:
                self.on_exit(outcome)
        return fresh

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.check_once()
            except StackshipError as e:
                logger.error("Restart supervision pass failed: %s", e)
            self._stop_event.wait(self.interval)
