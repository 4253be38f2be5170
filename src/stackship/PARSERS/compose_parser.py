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
Parsers for compose-style topology YAML files.
"""
import logging
import os
import re
import shlex
import yaml
from dotenv import dotenv_values
from pydantic import ValidationError as ModelValidationError
from typing import Dict, Any, List, Optional
from ..errors import TopologyError
from ..MODELS.topology import ServiceTopology, Network, Volume
from ..MODELS.service_definition import (
    ServiceDefinition, RestartPolicy, ReadinessProbe, VolumeMount, PortBinding,
)
from ..UTILS.string_interpolation import EnvironmentInterpolator

logger = logging.getLogger(__name__)

_DURATION = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600}


class ComposeParser:
    """
    Parser for docker-compose style topology files.
    """
    def __init__(self, context: Optional[Dict[str, str]] = None, base_dir: str = "."):
        """
        Initializes the parser with an optional environment context for interpolation.

        :param context: A dictionary of environment variables for interpolation.
        :param base_dir: Directory against which env_file paths are resolved.
        """
        self.context = context if context is not None else dict(os.environ)
        self.base_dir = base_dir

    def parse(self, compose_path: str, project: Optional[str] = None) -> ServiceTopology:
        """
        Parses a topology file from a path.

        :param compose_path: Path to the compose file.
        :param project: Project name; defaults to the ``name`` key or the file's directory name.
        :return: Parsed topology.
        """
        with open(compose_path, 'r') as f:
            content = f.read()
        self.base_dir = os.path.dirname(os.path.abspath(compose_path))
        default_project = os.path.basename(self.base_dir)
        return self.parse_from_string(content, project=project, default_project=default_project)

    def parse_from_string(self, content: str, project: Optional[str] = None,
                          default_project: str = "stackship") -> ServiceTopology:
        """
        Parses a topology from a string.

        :param content: YAML content of the compose file.
        :return: Parsed topology. It is not validated; call ``validate()`` on it.
        :raises TopologyError: If the document cannot be read as a topology.
        """
        try:
            content = EnvironmentInterpolator.interpolate(content, self.context)
        except KeyError as e:
            raise TopologyError(f"Interpolation failed: {e}") from e

        try:
            data = yaml.safe_load(content)
        except (yaml.YAMLError, ValueError) as e:
            raise TopologyError(f"Invalid YAML: {e}") from e
        if not data:
            data = {}
        if not isinstance(data, dict):
            raise TopologyError("Topology document must be a mapping")

        services_spec = data.get('services') or {}
        if not isinstance(services_spec, dict):
            raise TopologyError("'services' must map service names to definitions")

        services = []
        for name, spec in services_spec.items():
            if spec is not None and not isinstance(spec, dict):
                raise TopologyError(f"Service '{name}' must be a mapping")
            try:
                services.append(self._parse_service(str(name), spec or {}))
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                raise TopologyError(f"Invalid service '{name}': {e}") from e

        try:
            topology = ServiceTopology(
                project=project or data.get('name') or default_project,
                services=services,
                networks=[Network(name=n) for n in self._keys(data.get('networks'))],
                volumes=[Volume(name=v) for v in self._keys(data.get('volumes'))],
            )
        except (ModelValidationError, TypeError) as e:
            raise TopologyError(str(e)) from e
        logger.debug("Parsed topology %s with services: %s",
                     topology.project, ", ".join(topology.service_names))
        return topology

    def _parse_service(self, name: str, spec: Dict[str, Any]) -> ServiceDefinition:
        """
        Parses a single service definition.

        :param name: The name of the service.
        :param spec: The service specification dictionary.
        :return: A ServiceDefinition instance.
        """
        build = spec.get('build')
        if isinstance(build, dict):
            build_context, dockerfile = build.get('context', '.'), build.get('dockerfile')
        else:
            build_context, dockerfile = build, None

        image = spec.get('image')
        if not image:
            if build_context is None:
                raise TopologyError(f"Service '{name}' needs an image or a build context")
            image = f"{name}:latest"

        restart = spec.get('restart', 'no')
        if isinstance(restart, dict):
            restart_policy = self._parse_restart(name, restart)
        else:
            restart_policy = RestartPolicy(condition=str(restart))

        readiness = None
        if spec.get('readiness'):
            probe = dict(spec['readiness'])
            probe['command'] = self._to_command(probe.get('command', []))
            readiness = ReadinessProbe(**probe)

        depends_on = spec.get('depends_on', [])
        if isinstance(depends_on, dict):
            depends_on = list(depends_on.keys())

        try:
            return ServiceDefinition(
                name=name,
                image=image,
                build_context=build_context,
                dockerfile=dockerfile,
                command=self._to_command(spec.get('command')),
                environment=self._parse_environment(spec),
                ports=[self._parse_port(p) for p in spec.get('ports', [])],
                networks=self._keys(spec.get('networks')),
                volumes=[self._parse_volume(v) for v in spec.get('volumes', [])],
                restart_policy=restart_policy,
                readiness=readiness,
                depends_on=list(depends_on),
                labels={str(k): str(v) for k, v in self._mapping(spec.get('labels')).items()},
            )
        except (ModelValidationError, ValueError) as e:
            raise TopologyError(f"Invalid service '{name}': {e}") from e

    def _parse_restart(self, name: str, restart: Dict[str, Any]) -> RestartPolicy:
        # compose long form: condition, max_attempts, delay ("5s"), window
        options = dict(restart)
        if 'max_attempts' in options:
            options['max_retries'] = options.pop('max_attempts')
        options.pop('window', None)
        unknown = set(options) - set(RestartPolicy.model_fields)
        if unknown:
            raise TopologyError(f"Service '{name}' has unknown restart options: {', '.join(sorted(map(str, unknown)))}")
        if isinstance(options.get('delay'), str):
            options['delay'] = self._seconds(options['delay'])
        return RestartPolicy(**options)

    def _seconds(self, duration: str) -> float:
        text = duration.strip()
        if re.fullmatch(r"\d+(?:\.\d+)?", text):
            return float(text)
        parts = _DURATION.findall(text)
        if not parts or "".join(n + u for n, u in parts) != text:
            raise ValueError(f"invalid duration '{duration}'")
        return sum(float(n) * _DURATION_UNITS[u] for n, u in parts)

    def _parse_environment(self, spec: Dict[str, Any]) -> Dict[str, str]:
        # env files first, explicit environment overrides them
        environment: Dict[str, str] = {}
        for env_file in self._to_list(spec.get('env_file')):
            path = os.path.join(self.base_dir, env_file)
            if not os.path.exists(path):
                raise TopologyError(f"env_file not found: {env_file}")
            environment.update({k: v or "" for k, v in dotenv_values(path).items()})

        env_spec = spec.get('environment', [])
        if isinstance(env_spec, list):
            for e in env_spec:
                if '=' in e:
                    k, v = e.split('=', 1)
                    environment[k] = v
                else:
                    environment[e] = self.context.get(e, "")
        elif isinstance(env_spec, dict):
            for k, v in env_spec.items():
                environment[str(k)] = "" if v is None else str(v)
        return environment

    def _parse_port(self, port: Any) -> PortBinding:
        if isinstance(port, dict):
            return PortBinding(
                container_port=int(port['target']),
                host_port=int(port['published']) if port.get('published') else None,
                protocol=port.get('protocol', 'tcp'),
            )
        text = str(port)
        protocol = 'tcp'
        if '/' in text:
            text, protocol = text.split('/', 1)
        parts = text.split(':')
        # [ip:]host:container or container
        host_port = int(parts[-2]) if len(parts) >= 2 and parts[-2] else None
        return PortBinding(container_port=int(parts[-1]), host_port=host_port, protocol=protocol)

    def _parse_volume(self, volume: Any) -> VolumeMount:
        if isinstance(volume, dict):
            mode = 'ro' if volume.get('read_only') else volume.get('mode', 'rw')
            return VolumeMount(source=volume['source'], target=volume['target'], mode=mode)
        parts = str(volume).split(':')
        if len(parts) == 2:
            return VolumeMount(source=parts[0], target=parts[1])
        if len(parts) == 3:
            return VolumeMount(source=parts[0], target=parts[1], mode=parts[2])
        raise TopologyError(f"Cannot parse volume '{volume}'; expected source:target[:mode]")

    def _to_command(self, val: Any) -> List[str]:
        if isinstance(val, str):
            return shlex.split(val)
        return self._to_list(val)

    def _to_list(self, val: Any) -> List[str]:
        """
        Helper to ensure a value is a list of strings.

        :param val: The value to convert.
        :return: A list of strings.
        """
        if val is None:
            return []
        if isinstance(val, str):
            return [val]
        return [str(v) for v in val]

    def _keys(self, val: Any) -> List[str]:
        # networks/volumes may be a mapping or a plain list
        if not val:
            return []
        if isinstance(val, dict):
            return list(val.keys())
        return self._to_list(val)

    def _mapping(self, val: Any) -> Dict[str, Any]:
        if not val:
            return {}
        if isinstance(val, list):
            return dict(item.split('=', 1) if '=' in item else (item, '') for item in val)
        return dict(val)
