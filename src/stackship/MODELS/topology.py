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
Models for the overall deployment topology.
"""
from typing import List, Dict, Optional
from pydantic import BaseModel, ConfigDict
from .service_definition import ServiceDefinition
from ..errors import DuplicateServiceError, TopologyError, UnknownReferenceError
from ..RUNNERS.dependency_resolver import DependencyResolver

DEFAULT_NETWORK = "default"


class Network(BaseModel):
    """
    A network services can join. Members resolve each other by service name.
    """
    model_config = ConfigDict(frozen=True)

    name: str


class Volume(BaseModel):
    """
    A named volume. It outlives container recreation and is only removed by an explicit prune.
    """
    model_config = ConfigDict(frozen=True)

    name: str


class ServiceTopology(BaseModel):
    """
    Complete desired state for a multi-service stack.
    Equivalent to a parsed docker-compose.yml file, immutable once loaded.
    """
    model_config = ConfigDict(frozen=True)

    project: str = "stackship"
    services: List[ServiceDefinition]
    networks: List[Network] = []
    volumes: List[Volume] = []

    @property
    def service_names(self) -> List[str]:
        return [svc.name for svc in self.services]

    def service(self, name: str) -> ServiceDefinition:
        """
        Looks up a service by name.

        :raises UnknownReferenceError: If no service has that name.
        """
        for svc in self.services:
            if svc.name == name:
                return svc
        raise UnknownReferenceError(name, kind="service")

    def get(self, name: str) -> Optional[ServiceDefinition]:
        for svc in self.services:
            if svc.name == name:
                return svc
        return None

    def network_names(self) -> List[str]:
        names = [DEFAULT_NETWORK]
        names.extend(n.name for n in self.networks if n.name != DEFAULT_NETWORK)
        return names

    def networks_of(self, service: ServiceDefinition) -> List[str]:
        """
        Networks a service joins; services that declare none join the default network.
        """
        return list(service.networks) or [DEFAULT_NETWORK]

    def members_of(self, network: str) -> List[str]:
        return [svc.name for svc in self.services if network in self.networks_of(svc)]

    def validate(self) -> None:
        """
        Checks name uniqueness, referential integrity and acyclicity.

        :raises DuplicateServiceError: If two services share a name.
        :raises UnknownReferenceError: If a dependency, network or named volume is undeclared.
        :raises CyclicDependencyError: If depends_on edges form a cycle.
        :raises TopologyError: If a service mounts the same source twice.
        """
        seen = set()
        for svc in self.services:
            if svc.name in seen:
                raise DuplicateServiceError(svc.name)
            seen.add(svc.name)

        networks = set(self.network_names())
        volumes = {v.name for v in self.volumes}
        for svc in self.services:
            for dep in svc.depends_on:
                if dep not in seen:
                    raise UnknownReferenceError(dep, kind="service", referrer=svc.name)
            for net in svc.networks:
                if net not in networks:
                    raise UnknownReferenceError(net, kind="network", referrer=svc.name)
            sources = set()
            for mount in svc.volumes:
                if mount.is_named_volume and mount.source not in volumes:
                    raise UnknownReferenceError(mount.source, kind="volume", referrer=svc.name)
                if mount.source in sources:
                    raise TopologyError(f"Service '{svc.name}' mounts '{mount.source}' more than once")
                sources.add(mount.source)

        self._resolver().resolve_order()

    def dependency_order(self) -> List[ServiceDefinition]:
        """
        Services in startup order (Kahn's algorithm, ties by declaration order).

        The topology is validated first, so a cyclic or dangling graph fails
        before any ordering is attempted.
        """
        self.validate()
        return [self.service(name) for name in self._resolver().resolve_order()]

    def dependency_waves(self) -> List[List[ServiceDefinition]]:
        """
        Services grouped into waves that may start concurrently.
        """
        self.validate()
        return [[self.service(name) for name in wave] for wave in self._resolver().resolve_waves()]

    def config_hashes(self) -> Dict[str, str]:
        return {svc.name: svc.config_hash() for svc in self.services}

    def _resolver(self) -> DependencyResolver:
        return DependencyResolver({svc.name: svc.depends_on for svc in self.services})
