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
Registry clients for publishing built images and pulling deployable ones.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

import docker
from docker.errors import APIError, DockerException, ImageNotFound

from ..errors import ImagePullError, RegistryAuthError, RegistryPushError
from ..MODELS.container import Artifact, LocalImage
from .image_reference import ImageReference

logger = logging.getLogger(__name__)

_AUTH_MARKERS = ("unauthorized", "authentication required", "denied", "no basic auth credentials")


@dataclass
class RegistryAuth:
    """Opaque credential pair for a registry, supplied by the secret store."""

    username: Optional[str] = None
    password: Optional[str] = None

    def as_auth_config(self) -> Optional[Dict[str, str]]:
        if self.username and self.password:
            return {"username": self.username, "password": self.password}
        return None

    def __repr__(self) -> str:
        return f"RegistryAuth(username={self.username!r}, password=***)"


class Registry(ABC):
    """
    Image registry as seen by the pipeline (push) and the reconcile engine (pull).
    """

    def login(self, registry: str) -> None:
        """Verifies credentials before a push; registries without auth accept anything."""

    @abstractmethod
    def push(self, image_ref: str, artifact: Artifact) -> Artifact:
        """
        Publishes ``artifact`` under ``image_ref``.

        :raises RegistryAuthError: If the registry rejects the credentials.
        :raises RegistryPushError: For any other push failure.
        """

    @abstractmethod
    def pull(self, image_ref: str) -> LocalImage:
        """
        Makes ``image_ref`` available locally.

        :raises ImagePullError: If the image cannot be pulled.
        """


def _is_auth_failure(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in _AUTH_MARKERS)


class DockerRegistry(Registry):
    """
    Registry access through the local Docker engine.
    """

    def __init__(self, client: Optional[docker.DockerClient] = None, auth: Optional[RegistryAuth] = None):
        """
        :param client: Docker client; defaults to ``docker.from_env()``.
        :param auth: Credentials for push and pull.
        """
        self._client = client
        self.auth = auth or RegistryAuth()

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def login(self, registry: str) -> None:
        """
        Verifies the credentials against ``registry`` before any push.

        :raises RegistryAuthError: If the login is refused.
        """
        if not self.auth.as_auth_config():
            return
        try:
            self.client.login(username=self.auth.username, password=self.auth.password, registry=registry)
        except APIError as e:
            raise RegistryAuthError(f"Login to {registry} failed: {e.explanation or e}") from e

    def push(self, image_ref: str, artifact: Artifact) -> Artifact:
        ref = ImageReference.parse(image_ref)
        try:
            image = self.client.images.get(artifact.image_id)
            image.tag(ref.name, tag=ref.tag)
            stream = self.client.images.push(
                ref.name, tag=ref.tag, stream=True, decode=True,
                auth_config=self.auth.as_auth_config(),
            )
            for line in stream:
                self._check_push_line(str(ref), line)
        except (RegistryAuthError, RegistryPushError):
            raise
        except APIError as e:
            reason = str(e.explanation or e)
            if e.status_code == 401 or _is_auth_failure(reason):
                raise RegistryAuthError(f"Push of {ref} rejected: {reason}") from e
            raise RegistryPushError(str(ref), reason) from e
        except DockerException as e:
            raise RegistryPushError(str(ref), str(e)) from e

        logger.info("Pushed %s (%s)", ref, artifact.image_id[:19])
        return artifact.model_copy(update={"image": str(ref), "published": True})

    def _check_push_line(self, ref: str, line: Dict[str, Any]) -> None:
        error = line.get("error") or (line.get("errorDetail") or {}).get("message")
        if not error:
            return
        if _is_auth_failure(error):
            raise RegistryAuthError(f"Push of {ref} rejected: {error}")
        raise RegistryPushError(ref, error)

    def pull(self, image_ref: str) -> LocalImage:
        ref = ImageReference.parse(image_ref)
        logger.info("Pulling image: %s", ref)
        try:
            # docker pulls `name@sha256:...` when the tag argument is a digest
            image = self.client.images.pull(ref.name, tag=ref.digest or ref.tag,
                                            auth_config=self.auth.as_auth_config())
        except ImageNotFound as e:
            raise ImagePullError(str(ref), "image not found") from e
        except APIError as e:
            raise ImagePullError(str(ref), str(e.explanation or e)) from e
        except DockerException as e:
            raise ImagePullError(str(ref), str(e)) from e
        return LocalImage(reference=str(ref), image_id=image.id)
