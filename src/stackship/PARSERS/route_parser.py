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
Parser for reverse-proxy route files.

Example::

    static_root: ./dist
    index: index.html
    network: frontend
    routes:
      - path: /api/
        service: backend
        port: 3000
        rewrite: strip-prefix
      - path: /
"""
import os
import yaml
from pydantic import ValidationError as ModelValidationError
from typing import Any, Dict, Optional
from ..errors import RouteConfigError, UnknownReferenceError
from ..MODELS.route_rule import RouteRule, RouteTable
from ..MODELS.topology import ServiceTopology


class RouteParser:
    """
    Loads a route table once; the table is immutable afterwards.
    """
    def parse(self, routes_path: str) -> RouteTable:
        """
        :param routes_path: Path to the routes YAML file.
        :return: Parsed route table. A relative static_root is resolved against the file.
        """
        if not os.path.exists(routes_path):
            raise RouteConfigError(f"{routes_path} not found.")
        with open(routes_path, 'r') as f:
            content = f.read()
        return self.parse_from_string(content, base_dir=os.path.dirname(os.path.abspath(routes_path)))

    def parse_from_string(self, content: str, base_dir: Optional[str] = None) -> RouteTable:
        try:
            data = yaml.safe_load(content) or {}
        except (yaml.YAMLError, ValueError) as e:
            raise RouteConfigError(f"Invalid YAML: {e}") from e
        if isinstance(data, list):
            data = {'routes': data}
        if not isinstance(data, dict):
            raise RouteConfigError("Route file must be a mapping or a list of rules")

        try:
            static_root = data.get('static_root', '.')
            if base_dir and not os.path.isabs(static_root):
                static_root = os.path.normpath(os.path.join(base_dir, static_root))
            rules = tuple(self._parse_rule(r) for r in data.get('routes', []))
            return RouteTable(
                rules=rules,
                static_root=static_root,
                index_document=data.get('index', 'index.html'),
                network=data.get('network', 'default'),
            )
        except (ModelValidationError, TypeError, AttributeError) as e:
            raise RouteConfigError(str(e)) from e

    def _parse_rule(self, spec: Dict[str, Any]) -> RouteRule:
        if isinstance(spec, str):
            spec = {'path': spec}
        return RouteRule(
            path_prefix=spec.get('path', spec.get('path_prefix', '/')),
            target_service=spec.get('service', spec.get('target_service')),
            target_port=spec.get('port', spec.get('target_port')),
            rewrite=spec.get('rewrite', 'passthrough'),
        )


def check_routes_against_topology(table: RouteTable, topology: ServiceTopology) -> None:
    """
    Every upstream must be a service that shares the proxy's network.

    :raises UnknownReferenceError: If a rule targets an undeclared service.
    :raises RouteConfigError: If a target is not reachable on the proxy network.
    """
    members = topology.members_of(table.network)
    for name in table.upstream_services():
        if topology.get(name) is None:
            raise UnknownReferenceError(name, kind="service", referrer="routes")
        if name not in members:
            raise RouteConfigError(f"Service '{name}' is not on network '{table.network}'")
