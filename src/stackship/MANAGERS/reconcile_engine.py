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
Reconciliation of running containers against a desired topology.

Services are handled wave by wave in dependency order. Within a wave, services
have no edges between them and are reconciled concurrently. A service is only
started once its dependencies have *started*; readiness is not awaited unless
``wait_for_readiness`` is enabled.
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Iterable, List, Optional

from tenacity import (
    RetryError, Retrying, retry_if_exception_type, retry_if_result,
    stop_after_attempt, stop_after_delay, wait_exponential, wait_fixed,
)

from ..errors import ContainerRuntimeError, ImagePullError, ReadinessTimeoutError, StackshipError
from ..MODELS.container import (
    ContainerHandle, ContainerSpec, ContainerStatus, LocalImage,
    ReconcileAction, ReconcileResult, ServiceOutcome,
)
from ..MODELS.service_definition import ServiceDefinition
from ..MODELS.topology import ServiceTopology
from ..REGISTRY.registry_client import Registry
from ..RUNTIME.base import (
    ContainerRuntime, LABEL_CONFIG_HASH, LABEL_PROJECT, LABEL_SERVICE, container_name,
)
from .network_manager import NetworkManager
from .volume_manager import VolumeManager

logger = logging.getLogger(__name__)

RESTART_ATTEMPTS = 3


class ReconcileEngine:
    """
    Brings the containers of one project in line with a desired topology.
    """
    def __init__(self,
                 runtime: ContainerRuntime,
                 registry: Registry,
                 base_dir: str = ".",
                 network_manager: Optional[NetworkManager] = None,
                 max_workers: int = 4,
                 wait_for_readiness: bool = False,
                 stop_timeout: int = 10):
        """
        Initializes the engine.

        :param runtime: Container runtime of the host being reconciled.
        :param registry: Source of service images.
        :param base_dir: Base directory for relative bind-mount paths.
        :param network_manager: Receives the live address of every started service.
        :param max_workers: Upper bound on concurrent per-service operations.
        :param wait_for_readiness: Enhancement: hold dependents until a service's
            readiness probe passes. Off by default; ordering is start-only otherwise.
        :param stop_timeout: Seconds given to a container to stop before it is killed.
        """
        self.runtime = runtime
        self.registry = registry
        self.volumes = VolumeManager(runtime, base_dir)
        self.networks = network_manager or NetworkManager()
        self.max_workers = max(1, max_workers)
        self.wait_for_readiness = wait_for_readiness
        self.stop_timeout = stop_timeout

        self.handles: Dict[str, ContainerHandle] = {}
        # container id -> restarts that led to it; a container created any other way starts at 0
        self.restart_counts: Dict[str, int] = {}
        self._mutation_lock = threading.Lock()

    # Inspection

    def current_state(self, project: str) -> Dict[str, ContainerHandle]:
        """
        Service name -> container handle for the project's containers.
        """
        return {h.service: h for h in self.runtime.list_containers(project)}

    def ps(self, desired: ServiceTopology) -> Dict[str, str]:
        """
        Status of every declared service, e.g. 'running', 'exited(1)', 'missing'.
        """
        current = self.current_state(desired.project)
        status = {}
        for name in desired.service_names:
            handle = current.get(name)
            if handle is None:
                status[name] = ContainerStatus.MISSING.value
            elif handle.has_exited:
                status[name] = f"exited({handle.exit_code})"
            else:
                status[name] = handle.status.value
        return status

    def plan(self, desired: ServiceTopology,
             current: Optional[Iterable[ContainerHandle]] = None,
             remove_orphans: bool = False) -> ReconcileResult:
        """
        Reports what ``reconcile`` would do, without touching the runtime.
        Image freshness is not checked because that requires a pull.
        """
        order = desired.dependency_order()
        current_map = self._index(desired.project, current)
        outcomes = []
        for svc in order:
            handle = current_map.get(svc.name)
            exit_code = None
            if handle is None or handle.status == ContainerStatus.MISSING:
                action = ReconcileAction.CREATED
            elif self._is_current(svc, handle):
                action = self._settled_action(svc, handle) or ReconcileAction.RECREATED
                exit_code = handle.exit_code
            else:
                action = ReconcileAction.RECREATED
            outcomes.append(ServiceOutcome(service=svc.name, action=action, image=svc.image,
                                           exit_code=exit_code))
        if remove_orphans:
            for handle in self._orphans(desired, current_map):
                outcomes.append(ServiceOutcome(service=handle.service, action=ReconcileAction.REMOVED,
                                               image=handle.image, container_id=handle.container_id))
        return ReconcileResult(project=desired.project, outcomes=outcomes)

    # Reconcile

    def reconcile(self, desired: ServiceTopology,
                  current: Optional[Iterable[ContainerHandle]] = None,
                  refresh_images: bool = False,
                  remove_orphans: bool = False) -> ReconcileResult:
        """
        Brings the runtime in line with ``desired``.

        :param desired: Target topology; validated before any side effect.
        :param current: Running containers; listed from the runtime when omitted.
        :param refresh_images: Pull every image and recreate services whose
            image changed even though the reference did not (e.g. ``latest``).
        :param remove_orphans: Remove managed containers of services no longer declared.
        :return: Per-service outcomes in dependency order. A failure stops all later
            waves; services already reconciled keep their new version.
        :raises TopologyError: If the topology is invalid.
        """
        waves = desired.dependency_waves()
        order = [svc.name for svc in desired.dependency_order()]
        current_map = self._index(desired.project, current)

        self._prepare(desired)

        outcomes: Dict[str, ServiceOutcome] = {}
        aborted = False
        for wave in waves:
            if aborted:
                for svc in wave:
                    outcomes[svc.name] = ServiceOutcome(
                        service=svc.name, action=ReconcileAction.SKIPPED, image=svc.image,
                        error="not attempted after an earlier failure",
                    )
                continue

            logger.info("Reconciling services: %s", ", ".join(s.name for s in wave))
            with ThreadPoolExecutor(max_workers=min(self.max_workers, len(wave))) as pool:
                futures = {
                    svc.name: pool.submit(self._reconcile_service, desired, svc,
                                          current_map.get(svc.name), refresh_images)
                    for svc in wave
                }
            for svc in wave:
                outcome = futures[svc.name].result()
                outcomes[svc.name] = outcome
                if outcome.action == ReconcileAction.FAILED:
                    logger.error("Service %s failed: %s", svc.name, outcome.error)
                    aborted = True

        result = [outcomes[name] for name in order]
        if remove_orphans and not aborted:
            result.extend(self._remove_orphans(desired, current_map))
        return ReconcileResult(project=desired.project, outcomes=result)

    def down(self, desired: ServiceTopology) -> List[ServiceOutcome]:
        """
        Stops and removes the project's containers in reverse dependency order.
        Named volumes are kept.
        """
        current_map = self.current_state(desired.project)
        outcomes = []
        for svc in reversed(desired.dependency_order()):
            handle = current_map.get(svc.name)
            if handle is None:
                continue
            logger.info("Stopping service: %s", svc.name)
            with self._mutation_lock:
                self.runtime.stop_container(handle, timeout=self.stop_timeout)
                self.runtime.remove_container(handle)
            self.restart_counts.pop(handle.container_id, None)
            self.handles.pop(svc.name, None)
            self.networks.disconnect_service(svc.name)
            outcomes.append(ServiceOutcome(service=svc.name, action=ReconcileAction.REMOVED,
                                           container_id=handle.container_id))
        return outcomes

    def _reconcile_service(self, desired: ServiceTopology, svc: ServiceDefinition,
                           handle: Optional[ContainerHandle], refresh_images: bool) -> ServiceOutcome:
        try:
            local_image = self._pull(svc) if refresh_images else None
            exists = handle is not None and handle.status != ContainerStatus.MISSING
            settled = None
            if exists and self._is_current(svc, handle, local_image):
                settled = self._settled_action(svc, handle)
            if settled == ReconcileAction.UNCHANGED:
                self.handles[svc.name] = handle
                self._register(desired, svc, handle)
                return ServiceOutcome(service=svc.name, action=settled,
                                      image=svc.image, container_id=handle.container_id)
            if settled == ReconcileAction.LEFT_STOPPED:
                self.handles[svc.name] = handle
                logger.info("Service %s exited with code %s and is left stopped (restart: %s)",
                            svc.name, handle.exit_code, svc.restart_policy.condition.value)
                return ServiceOutcome(service=svc.name, action=settled, image=svc.image,
                                      container_id=handle.container_id, exit_code=handle.exit_code)

            if local_image is None:
                self._pull(svc)
            new_handle = self._replace(desired, svc, handle)
            if self.wait_for_readiness and svc.readiness:
                self._await_ready(svc, new_handle)

            if settled == ReconcileAction.RESTARTED:
                action = settled
            else:
                action = ReconcileAction.RECREATED if exists else ReconcileAction.CREATED
            logger.info("Service %s %s (%s)", svc.name, action.value, svc.image)
            return ServiceOutcome(service=svc.name, action=action, image=svc.image,
                                  container_id=new_handle.container_id)
        except StackshipError as e:
            return ServiceOutcome(service=svc.name, action=ReconcileAction.FAILED, image=svc.image,
                                  error=str(e), error_type=type(e).__name__)

    def _is_current(self, svc: ServiceDefinition, handle: ContainerHandle,
                    local_image: Optional[LocalImage] = None) -> bool:
        if handle.config_hash != svc.config_hash():
            return False
        if local_image is not None and handle.image_id and handle.image_id != local_image.image_id:
            return False
        return True

    def _settled_action(self, svc: ServiceDefinition, handle: ContainerHandle) -> Optional[ReconcileAction]:
        """
        What an up-to-date container needs: nothing while it runs, a restart when
        it exited and its policy asks for one, otherwise it stays stopped.
        None means it never started and is replaced.
        """
        if handle.is_running:
            return ReconcileAction.UNCHANGED
        if handle.has_exited:
            if svc.restart_policy.should_restart(handle.exit_code):
                return ReconcileAction.RESTARTED
            return ReconcileAction.LEFT_STOPPED
        return None

    def _pull(self, svc: ServiceDefinition) -> LocalImage:
        try:
            return self.registry.pull(svc.image)
        except ImagePullError as e:
            if e.service:
                raise
            raise ImagePullError(e.image, e.reason, service=svc.name) from e

    def _replace(self, desired: ServiceTopology, svc: ServiceDefinition,
                 old: Optional[ContainerHandle]) -> ContainerHandle:
        with self._mutation_lock:
            if old is not None and old.status != ContainerStatus.MISSING:
                self.runtime.stop_container(old, timeout=self.stop_timeout)
                self.runtime.remove_container(old)
                self.restart_counts.pop(old.container_id, None)
            handle = self.runtime.create_container(self._spec(desired, svc))
            handle = self.runtime.start_container(handle)
        self.handles[svc.name] = handle
        self._register(desired, svc, handle)
        return handle

    def _await_ready(self, svc: ServiceDefinition, handle: ContainerHandle) -> None:
        probe = svc.readiness
        retryer = Retrying(
            stop=stop_after_delay(probe.timeout),
            wait=wait_fixed(probe.interval),
            retry=retry_if_result(lambda ready: not ready),
        )
        try:
            retryer(self.runtime.run_probe, handle, probe.command, probe.interval)
        except RetryError as e:
            raise ReadinessTimeoutError(svc.name, probe.timeout) from e

    def _spec(self, desired: ServiceTopology, svc: ServiceDefinition) -> ContainerSpec:
        labels = dict(svc.labels)
        labels.update({
            LABEL_PROJECT: desired.project,
            LABEL_SERVICE: svc.name,
            LABEL_CONFIG_HASH: svc.config_hash(),
        })
        return ContainerSpec(
            service=svc.name,
            name=container_name(desired.project, svc.name),
            image=svc.image,
            command=list(svc.command),
            environment=dict(svc.environment),
            ports={f"{p.container_port}/{p.protocol}": p.host_port for p in svc.ports},
            volumes=self.volumes.bindings(svc.volumes),
            networks=desired.networks_of(svc),
            aliases=[svc.name],
            labels=labels,
        )

    def _prepare(self, desired: ServiceTopology) -> None:
        with self._mutation_lock:
            for network in desired.network_names():
                self.runtime.ensure_network(desired.project, network)
                self.networks.create_network(network)
            self.volumes.ensure_volumes(desired)

    def _register(self, desired: ServiceTopology, svc: ServiceDefinition, handle: ContainerHandle) -> None:
        for network in desired.networks_of(svc):
            self.networks.connect_service(svc.name, network, handle.addresses.get(network))

    def _index(self, project: str,
               current: Optional[Iterable[ContainerHandle]]) -> Dict[str, ContainerHandle]:
        if current is None:
            return self.current_state(project)
        return {h.service: h for h in current}

    def _orphans(self, desired: ServiceTopology,
                 current_map: Dict[str, ContainerHandle]) -> List[ContainerHandle]:
        declared = set(desired.service_names)
        return [h for name, h in current_map.items() if name not in declared]

    def _remove_orphans(self, desired: ServiceTopology,
                        current_map: Dict[str, ContainerHandle]) -> List[ServiceOutcome]:
        outcomes = []
        for handle in self._orphans(desired, current_map):
            try:
                with self._mutation_lock:
                    self.runtime.stop_container(handle, timeout=self.stop_timeout)
                    self.runtime.remove_container(handle)
                self.networks.disconnect_service(handle.service)
                outcomes.append(ServiceOutcome(service=handle.service, action=ReconcileAction.REMOVED,
                                               image=handle.image, container_id=handle.container_id))
            except StackshipError as e:
                outcomes.append(ServiceOutcome(service=handle.service, action=ReconcileAction.FAILED,
                                               image=handle.image, error=str(e),
                                               error_type=type(e).__name__))
        return outcomes

    # Restart policy

    def enforce_restart_policies(self, desired: ServiceTopology,
                                 current: Optional[Iterable[ContainerHandle]] = None) -> List[ServiceOutcome]:
        """
        Recreates exited containers whose restart policy asks for it.

        ``always`` restarts on any exit, ``on-failure`` on a non-zero exit code.
        ``never`` containers stay stopped and are reported with their exit code,
        as are containers that reached ``max_retries``.
        """
        current_map = self._index(desired.project, current)
        outcomes = []
        for svc in desired.dependency_order():
            handle = current_map.get(svc.name)
            if handle is None or not handle.has_exited:
                continue

            policy = svc.restart_policy
            count = self.restart_counts.get(handle.container_id, 0)
            if not policy.should_restart(handle.exit_code):
                logger.warning("Service %s exited with code %s and is left stopped (restart: %s)",
                               svc.name, handle.exit_code, policy.condition.value)
                outcomes.append(ServiceOutcome(service=svc.name, action=ReconcileAction.LEFT_STOPPED,
                                               image=handle.image, container_id=handle.container_id,
                                               exit_code=handle.exit_code))
                continue
            if policy.max_retries and count >= policy.max_retries:
                logger.warning("Service %s exceeded max restart attempts (%s)", svc.name, policy.max_retries)
                outcomes.append(ServiceOutcome(service=svc.name, action=ReconcileAction.LEFT_STOPPED,
                                               image=handle.image, container_id=handle.container_id,
                                               exit_code=handle.exit_code, error="restart limit reached"))
                continue

            logger.info("Restarting service %s (attempt %s, exit code %s)", svc.name, count + 1, handle.exit_code)
            try:
                new_handle = self._restart(desired, svc, handle)
            except StackshipError as e:
                outcomes.append(ServiceOutcome(service=svc.name, action=ReconcileAction.FAILED,
                                               image=svc.image, exit_code=handle.exit_code,
                                               error=str(e), error_type=type(e).__name__))
                continue
            self.restart_counts[new_handle.container_id] = count + 1
            outcomes.append(ServiceOutcome(service=svc.name, action=ReconcileAction.RESTARTED,
                                           image=svc.image, container_id=new_handle.container_id,
                                           exit_code=handle.exit_code))
        return outcomes

    def _restart(self, desired: ServiceTopology, svc: ServiceDefinition,
                 handle: ContainerHandle) -> ContainerHandle:
        retryer = Retrying(
            stop=stop_after_attempt(RESTART_ATTEMPTS),
            wait=wait_exponential(multiplier=svc.restart_policy.delay, max=60),
            retry=retry_if_exception_type(ContainerRuntimeError),
            reraise=True,
        )
        return retryer(self._replace, desired, svc, handle)
