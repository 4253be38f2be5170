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
Volume management: named volumes survive container recreation and are only
removed by an explicit prune.
"""
import logging
import os
from typing import Dict, List
from ..errors import TopologyError
from ..MODELS.service_definition import VolumeMount
from ..MODELS.topology import ServiceTopology
from ..RUNTIME.base import ContainerRuntime

logger = logging.getLogger(__name__)


class VolumeManager:
    """
    Creates named volumes and maps service mounts to runtime volume bindings.
    """
    def __init__(self, runtime: ContainerRuntime, base_dir: str = "."):
        """
        Initializes the volume manager.

        :param runtime: Container runtime holding the volumes.
        :param base_dir: The base directory for resolving relative host paths.
        """
        self.runtime = runtime
        self.base_dir = os.path.abspath(base_dir)

    def ensure_volumes(self, topology: ServiceTopology) -> List[str]:
        """
        Creates every declared volume that does not exist yet. Existing volumes,
        and their data, are left alone.

        :return: Names of the declared volumes.
        """
        names = [v.name for v in topology.volumes]
        for name in names:
            self.runtime.ensure_volume(topology.project, name)
        return names

    def list_volumes(self, project: str) -> List[str]:
        return self.runtime.list_volumes(project)

    def prune(self, topology: ServiceTopology) -> Dict[str, List[str]]:
        """
        Removes the project's volumes that the topology no longer declares.

        :return: ``{"volumes_removed": [...]}``
        """
        declared = {v.name for v in topology.volumes}
        removed = []
        for name in self.runtime.list_volumes(topology.project):
            if name not in declared:
                self.runtime.remove_volume(topology.project, name)
                logger.info("Pruned volume %s", name)
                removed.append(name)
        return {"volumes_removed": removed}

    def bindings(self, mounts: List[VolumeMount]) -> Dict[str, Dict[str, str]]:
        """
        Runtime volume bindings for a service: ``{source: {"bind": target, "mode": mode}}``.
        Named volumes keep their topology name; host paths become absolute.

        :raises TopologyError: If two mounts resolve to the same source.
        """
        result = {}
        for mount in mounts:
            source = mount.source if mount.is_named_volume else self.resolve_source(mount.source)
            if source in result:
                raise TopologyError(f"'{source}' is mounted at both {result[source]['bind']} and {mount.target}")
            result[source] = {"bind": mount.target, "mode": mount.mode.value}
        return result

    def resolve_source(self, source: str) -> str:
        """
        Resolves the host path of a bind mount.

        :param source: Absolute, home-relative or base-dir-relative path.
        :return: The absolute path to the source.
        """
        source = os.path.expanduser(source)
        if os.path.isabs(source):
            return os.path.normpath(source)
        return os.path.abspath(os.path.join(self.base_dir, source))
