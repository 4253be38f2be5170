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
Network membership and per-network service name resolution.
"""
import threading
from typing import Dict, List, Optional
from ..errors import NameResolutionError
from ..MODELS.topology import ServiceTopology


class NetworkResolver:
    """
    Resolves service names for members of one network.

    A name resolves only if that service is connected to the same network,
    which mirrors the runtime's embedded DNS.
    """
    def __init__(self, manager: "NetworkManager", network: str):
        self.manager = manager
        self.network = network

    def resolve(self, name: str) -> str:
        """
        :param name: Service name to look up.
        :return: The address to connect to.
        :raises NameResolutionError: If the service is not on this network.
        """
        address = self.manager.lookup(self.network, name)
        if address is None:
            raise NameResolutionError(name, self.network)
        return address

    def can_resolve(self, name: str) -> bool:
        return self.manager.lookup(self.network, name) is not None


class NetworkManager:
    """
    Tracks which services are connected to which network and at what address.
    """
    def __init__(self):
        """
        Initializes the network manager.
        """
        self._lock = threading.Lock()
        self.dns_entries: Dict[str, Dict[str, str]] = {}  # network -> {service: address}

    @classmethod
    def from_topology(cls, topology: ServiceTopology) -> "NetworkManager":
        """
        Seeds memberships from a topology; each member resolves to its own
        service name until the runtime reports a concrete address.
        """
        manager = cls()
        for network in topology.network_names():
            manager.create_network(network)
        for svc in topology.services:
            for network in topology.networks_of(svc):
                manager.connect_service(svc.name, network)
        return manager

    @property
    def networks(self) -> List[str]:
        with self._lock:
            return list(self.dns_entries)

    def create_network(self, name: str) -> None:
        with self._lock:
            self.dns_entries.setdefault(name, {})

    def connect_service(self, service: str, network: str, address: Optional[str] = None) -> str:
        """
        Connects a service to a network.

        :param address: Concrete address, defaults to the service name.
        :return: The address recorded for the service.
        """
        with self._lock:
            entries = self.dns_entries.setdefault(network, {})
            entries[service] = address or service
            return entries[service]

    def disconnect_service(self, service: str, network: Optional[str] = None) -> None:
        with self._lock:
            targets = [network] if network else list(self.dns_entries)
            for net in targets:
                self.dns_entries.get(net, {}).pop(service, None)

    def lookup(self, network: str, service: str) -> Optional[str]:
        with self._lock:
            return self.dns_entries.get(network, {}).get(service)

    def networks_of(self, service: str) -> List[str]:
        with self._lock:
            return [net for net, entries in self.dns_entries.items() if service in entries]

    def resolver(self, network: str) -> NetworkResolver:
        return NetworkResolver(self, network)
