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
Models for reverse-proxy routing: rules, requests and routing decisions.
"""
from typing import Dict, List, Optional, Tuple
from pydantic import BaseModel, ConfigDict, model_validator
from enum import Enum

CATCH_ALL_PREFIX = "/"


class RewriteMode(str, Enum):
    STRIP_PREFIX = "strip-prefix"
    PASSTHROUGH = "passthrough"


class RouteRule(BaseModel):
    """
    Maps a path prefix to an upstream service, or the catch-all ``/`` to static content.
    """
    model_config = ConfigDict(frozen=True)

    path_prefix: str
    target_service: Optional[str] = None
    target_port: Optional[int] = None
    rewrite: RewriteMode = RewriteMode.PASSTHROUGH

    @model_validator(mode="after")
    def _check_target(self):
        if not self.path_prefix.startswith("/"):
            raise ValueError(f"path_prefix must start with '/': {self.path_prefix!r}")
        if not self.is_catch_all:
            if not self.target_service or not self.target_port:
                raise ValueError(f"Rule {self.path_prefix!r} needs target_service and target_port")
        return self

    @property
    def is_catch_all(self) -> bool:
        return self.path_prefix == CATCH_ALL_PREFIX and self.target_service is None

    def matches(self, path: str) -> bool:
        return path.startswith(self.path_prefix)


class RouteRequest(BaseModel):
    """
    The parts of an inbound HTTP request the router looks at.
    """
    path: str
    method: str = "GET"
    query: str = ""
    host: Optional[str] = None
    client_ip: Optional[str] = None
    headers: Dict[str, str] = {}


class DecisionKind(str, Enum):
    FORWARD = "forward"
    STATIC = "static"
    NOT_FOUND = "not-found"


class RouteDecision(BaseModel):
    """
    Result of routing one request.

    For FORWARD, ``upstream_url`` and ``upstream_headers`` describe the proxied call.
    For STATIC, ``file_path`` is the asset to serve and ``fallback`` tells whether
    it is the index document served in place of a missing file.
    """
    kind: DecisionKind
    rule: Optional[RouteRule] = None
    target_service: Optional[str] = None
    target_port: Optional[int] = None
    upstream_path: Optional[str] = None
    upstream_url: Optional[str] = None
    upstream_headers: Dict[str, str] = {}
    file_path: Optional[str] = None
    fallback: bool = False


class ProxyResponse(BaseModel):
    status: int
    headers: Dict[str, str] = {}
    body: bytes = b""


class RouteTable(BaseModel):
    """
    The ordered, immutable rule list a proxy serves, plus where static content lives.
    """
    model_config = ConfigDict(frozen=True)

    rules: Tuple[RouteRule, ...]
    static_root: str = "."
    index_document: str = "index.html"
    network: str = "default"

    @model_validator(mode="after")
    def _check_order(self):
        # a catch-all ahead of other rules would make them unreachable
        for position, rule in enumerate(self.rules):
            if rule.path_prefix == CATCH_ALL_PREFIX and position != len(self.rules) - 1:
                raise ValueError("The catch-all '/' rule must be declared last")
        return self

    @property
    def catch_all(self) -> Optional[RouteRule]:
        for rule in self.rules:
            if rule.is_catch_all:
                return rule
        return None

    def upstream_services(self) -> List[str]:
        names: List[str] = []
        for rule in self.rules:
            if rule.target_service and rule.target_service not in names:
                names.append(rule.target_service)
        return names
