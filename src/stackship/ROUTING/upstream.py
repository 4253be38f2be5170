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
Forwarding of routed requests to an upstream service over HTTP.
"""
import logging
from typing import Optional

import requests

from ..MODELS.route_rule import RouteDecision, RouteRequest, ProxyResponse

logger = logging.getLogger(__name__)

HOP_BY_HOP_HEADERS = {
    "connection", "keep-alive", "proxy-authenticate", "proxy-authorization",
    "te", "trailers", "transfer-encoding", "upgrade",
}


def bad_gateway(reason: str) -> ProxyResponse:
    return ProxyResponse(
        status=502,
        headers={"Content-Type": "text/plain; charset=utf-8"},
        body=f"502 Bad Gateway: {reason}".encode(),
    )


class UpstreamForwarder:
    """
    Sends one request upstream. There is no retry and no health check: a
    connection failure or timeout is reported as 502 straight away.
    """

    def __init__(self, timeout: float = 30.0, session: Optional[requests.Session] = None):
        self.timeout = timeout
        self.session = session or requests.Session()

    def forward(self, decision: RouteDecision, request: RouteRequest, body: bytes = b"") -> ProxyResponse:
        if not decision.upstream_url:
            return bad_gateway(f"upstream '{decision.target_service}' is not resolvable")

        url = decision.upstream_url
        if request.query:
            url = f"{url}?{request.query}"

        try:
            response = self.session.request(
                request.method,
                url,
                headers=decision.upstream_headers,
                data=body or None,
                timeout=self.timeout,
                allow_redirects=False,
            )
        except requests.Timeout:
            logger.warning("Upstream %s timed out after %ss", url, self.timeout)
            return bad_gateway(f"upstream '{decision.target_service}' timed out")
        except requests.RequestException as e:
            logger.warning("Upstream %s unreachable: %s", url, e)
            return bad_gateway(f"upstream '{decision.target_service}' unreachable")

        headers = {
            k: v for k, v in response.headers.items()
            if k.lower() not in HOP_BY_HOP_HEADERS and k.lower() != "content-length"
        }
        return ProxyResponse(status=response.status_code, headers=headers, body=response.content)
