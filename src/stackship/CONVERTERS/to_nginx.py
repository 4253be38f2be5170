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
Converter generating an nginx server block from a route table.
"""
import logging
import os
from typing import Optional
from jinja2 import Template
from ..MODELS.route_rule import RouteTable, RewriteMode

logger = logging.getLogger(__name__)

NGINX_TEMPLATE = """
server {
    listen {{ listen }};
    server_name {{ server_name }};
    root {{ static_root }};
    index {{ index_document }};
{% for rule in rules %}
{%- if rule.is_catch_all %}
    location / {
        try_files $uri /{{ index_document }};
    }
{%- else %}
    location {{ rule.path_prefix }} {
        proxy_pass http://{{ rule.target_service }}:{{ rule.target_port }}{{ '/' if rule.rewrite == strip else '' }};
        proxy_http_version 1.1;
        proxy_set_header Host $host;
        proxy_set_header X-Real-IP $remote_addr;
        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
        proxy_set_header X-Forwarded-Host $host;
        proxy_next_upstream off;
    }
{%- endif %}
{% endfor %}
}
"""


class NginxConverter:
    """
    Renders the route table as nginx configuration for the proxy container.

    ``proxy_pass`` with a trailing slash makes nginx strip the matched prefix,
    which is how strip-prefix rules are expressed.
    """

    def __init__(self, table: RouteTable, listen: int = 80, server_name: str = "_",
                 static_root: Optional[str] = None):
        """
        :param table: The route table to render.
        :param listen: Port nginx listens on.
        :param server_name: nginx server_name value.
        :param static_root: Path of the static files inside the proxy container;
            defaults to the table's static root.
        """
        self.table = table
        self.listen = listen
        self.server_name = server_name
        self.static_root = static_root or table.static_root
        self.template = Template(NGINX_TEMPLATE)

    def render(self) -> str:
        return self.template.render(
            listen=self.listen,
            server_name=self.server_name,
            static_root=self.static_root,
            index_document=self.table.index_document,
            rules=self.table.rules,
            strip=RewriteMode.STRIP_PREFIX,
        )

    def convert(self, output_path: str = "nginx/default.conf") -> str:
        """
        Writes the rendered configuration.

        :param output_path: Destination file.
        :return: The path written.
        """
        parent = os.path.dirname(output_path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        with open(output_path, "w") as f:
            f.write(self.render())
        logger.info("nginx configuration written to %s", output_path)
        return output_path
