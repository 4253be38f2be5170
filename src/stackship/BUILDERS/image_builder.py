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
Builds service images from their build contexts.
"""
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, Iterable, List, Optional

import docker
from docker.errors import APIError, DockerException
from docker.errors import BuildError as DockerBuildError
from requests.exceptions import RequestException

from ..errors import BuildError
from ..MODELS.container import Artifact
from ..MODELS.service_definition import ServiceDefinition

logger = logging.getLogger(__name__)


def _exit_code(build_log: Iterable[Dict]) -> int:
    for entry in build_log or []:
        detail = entry.get("errorDetail") if isinstance(entry, dict) else None
        if detail and detail.get("code"):
            return int(detail["code"])
    return 1


class ImageBuilder:
    """
    Builds one image per buildable service using the Docker engine.
    """

    def __init__(self, base_dir: str = ".", client: Optional[docker.DockerClient] = None,
                 max_workers: int = 4, timeout: Optional[float] = None):
        """
        Initializes the ImageBuilder.

        :param base_dir: The base directory for resolving relative build contexts.
        :param client: Docker client; defaults to ``docker.from_env()``.
        :param max_workers: Number of images built at the same time.
        :param timeout: Seconds one build may take before it is abandoned.
        """
        self.base_dir = base_dir
        self._client = client
        self.max_workers = max(1, max_workers)
        self.timeout = timeout

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def build(self, service: ServiceDefinition, log: Optional[Callable[[str], None]] = None) -> Artifact:
        """
        Builds the image of one service.

        :param service: A service with a build context.
        :param log: Receives each line of build output.
        :return: The built artifact, tagged with the service's image reference.
        :raises BuildError: If the build fails; carries the exit code.
        """
        if not service.is_buildable:
            raise BuildError(service.name, 1, "service has no build context")

        context = os.path.join(self.base_dir, service.build_context)
        logger.info("Building %s from %s", service.image, context)
        try:
            options = {"timeout": max(1, int(self.timeout))} if self.timeout else {}
            image, output = self.client.images.build(
                path=context,
                dockerfile=service.dockerfile or "Dockerfile",
                tag=service.image,
                rm=True,
                **options,
            )
        except DockerBuildError as e:
            raise BuildError(service.name, _exit_code(e.build_log), e.msg) from e
        except (APIError, DockerException) as e:
            raise BuildError(service.name, 1, str(e)) from e
        except RequestException as e:
            raise BuildError(service.name, 1, f"no answer from the Docker engine: {e}") from e

        if log:
            for entry in output:
                line = entry.get("stream", "").rstrip() if isinstance(entry, dict) else ""
                if line:
                    log(f"[{service.name}] {line}")
        return Artifact(service=service.name, image=service.image, image_id=image.id)

    def build_all(self, services: List[ServiceDefinition],
                  log: Optional[Callable[[str], None]] = None) -> List[Artifact]:
        """
        Builds every buildable service concurrently.

        :return: Artifacts in the order of ``services``.
        :raises BuildError: The first failure in ``services`` order. Builds that
            were already running are allowed to finish.
        """
        buildable = [s for s in services if s.is_buildable]
        if not buildable:
            return []
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(buildable))) as pool:
            futures = [pool.submit(self.build, svc, log) for svc in buildable]
        return [f.result() for f in futures]
