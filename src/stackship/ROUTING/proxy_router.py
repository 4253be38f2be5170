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
Path-based reverse-proxy routing.

Rules are tried in declared order and the first matching prefix wins. The
catch-all ``/`` rule serves static files with a single-page-app fallback to
the index document; every other rule forwards to an upstream service.
"""
import logging
import mimetypes
import os
from typing import Dict, Optional
from urllib.parse import unquote

from ..errors import NameResolutionError
from ..MANAGERS.network_manager import NetworkResolver
from ..MODELS.route_rule import (
    DecisionKind, ProxyResponse, RewriteMode, RouteDecision, RouteRequest, RouteRule, RouteTable,
)
from .upstream import UpstreamForwarder, HOP_BY_HOP_HEADERS

logger = logging.getLogger(__name__)


class ProxyRouter:
    """
    Stateless router over an immutable route table; safe to share between threads.
    """

    def __init__(self, table: RouteTable, resolver: Optional[NetworkResolver] = None,
                 forwarder: Optional[UpstreamForwarder] = None):
        """
        :param table: Ordered route rules and static content location.
        :param resolver: Resolves upstream service names on the proxy's network.
            Without one, service names are used as host names directly.
        :param forwarder: Performs the upstream HTTP call in ``handle``.
        """
        self.table = table
        self.resolver = resolver
        self.forwarder = forwarder or UpstreamForwarder()
        self.static_root = os.path.realpath(table.static_root)

    def route(self, request: RouteRequest) -> RouteDecision:
        """
        Decides what to do with a request without performing any I/O upstream.
        """
        for rule in self.table.rules:
            if rule.matches(request.path):
                if rule.is_catch_all:
                    return self._static_decision(request, rule)
                return self._forward_decision(request, rule)
        return RouteDecision(kind=DecisionKind.NOT_FOUND)

    def handle(self, request: RouteRequest, body: bytes = b"") -> ProxyResponse:
        """
        Routes and serves a request: reads static files or forwards upstream.
        """
        decision = self.route(request)
        if decision.kind == DecisionKind.FORWARD:
            return self.forwarder.forward(decision, request, body)
        if decision.kind == DecisionKind.STATIC and decision.file_path and os.path.isfile(decision.file_path):
            with open(decision.file_path, 'rb') as f:
                content = f.read()
            content_type = mimetypes.guess_type(decision.file_path)[0] or "application/octet-stream"
            return ProxyResponse(status=200, headers={"Content-Type": content_type}, body=content)
        return ProxyResponse(status=404, headers={"Content-Type": "text/plain; charset=utf-8"},
                             body=b"404 Not Found")

    def _forward_decision(self, request: RouteRequest, rule: RouteRule) -> RouteDecision:
        if rule.rewrite == RewriteMode.STRIP_PREFIX:
            upstream_path = request.path[len(rule.path_prefix):]
            if not upstream_path.startswith("/"):
                upstream_path = "/" + upstream_path
        else:
            upstream_path = request.path

        upstream_url = None
        try:
            host = self.resolver.resolve(rule.target_service) if self.resolver else rule.target_service
            upstream_url = f"http://{host}:{rule.target_port}{upstream_path}"
        except NameResolutionError as e:
            logger.warning("No route to upstream: %s", e)

        return RouteDecision(
            kind=DecisionKind.FORWARD,
            rule=rule,
            target_service=rule.target_service,
            target_port=rule.target_port,
            upstream_path=upstream_path,
            upstream_url=upstream_url,
            upstream_headers=self._forwarded_headers(request),
        )

    def _forwarded_headers(self, request: RouteRequest) -> Dict[str, str]:
        headers = {k: v for k, v in request.headers.items() if k.lower() not in HOP_BY_HOP_HEADERS}
        # drop any case variant before setting the canonical names
        for name in ("host", "x-real-ip", "x-forwarded-for", "x-forwarded-host"):
            for key in [k for k in headers if k.lower() == name]:
                headers.pop(key)

        prior = next((v for k, v in request.headers.items() if k.lower() == "x-forwarded-for"), None)
        if request.host:
            headers["Host"] = request.host
            headers["X-Forwarded-Host"] = request.host
        if request.client_ip:
            headers["X-Real-IP"] = request.client_ip
            headers["X-Forwarded-For"] = f"{prior}, {request.client_ip}" if prior else request.client_ip
        elif prior:
            headers["X-Forwarded-For"] = prior
        return headers

    def _static_decision(self, request: RouteRequest, rule: RouteRule) -> RouteDecision:
        index = os.path.join(self.static_root, self.table.index_document)
        relative = unquote(request.path).lstrip("/")
        candidate = os.path.realpath(os.path.join(self.static_root, relative))

        inside_root = os.path.commonpath([self.static_root, candidate]) == self.static_root
        if relative and inside_root and os.path.isfile(candidate):
            return RouteDecision(kind=DecisionKind.STATIC, rule=rule, file_path=candidate)
        return RouteDecision(kind=DecisionKind.STATIC, rule=rule, file_path=index, fallback=True)
