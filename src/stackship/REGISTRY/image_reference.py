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
Image reference parsing.
Parses references like 'nginx', 'myuser/api:v1' or 'registry.local:5000/app/web:latest'.
"""
from dataclasses import dataclass, replace
from typing import Optional

DEFAULT_REGISTRY = "docker.io"
PUBLISH_TAG = "latest"


@dataclass(frozen=True)
class ImageReference:
    """
    Parsed image reference.

    Examples:
        - nginx -> docker.io/library/nginx:latest
        - myuser/api:v1 -> docker.io/myuser/api:v1
        - localhost:5000/app/web -> localhost:5000/app/web:latest
    """

    registry: str
    repository: str
    tag: Optional[str] = None
    digest: Optional[str] = None

    @classmethod
    def parse(cls, reference: str) -> "ImageReference":
        """
        :param reference: Image reference string.
        :return: Parsed ImageReference; the tag defaults to ``latest`` when no digest is given.
        :raises ValueError: If the reference is empty.
        """
        reference = (reference or "").strip()
        if not reference:
            raise ValueError("Empty image reference")

        name, _, digest = reference.partition("@")

        tag = None
        slash, colon = name.rfind("/"), name.rfind(":")
        # a colon before the last slash belongs to a registry port
        if colon > slash:
            name, tag = name[:colon], name[colon + 1:]

        first, _, rest = name.partition("/")
        if rest and ("." in first or ":" in first or first == "localhost"):
            registry, repository = first, rest
        else:
            registry = DEFAULT_REGISTRY
            repository = name if "/" in name else f"library/{name}"

        if not tag and not digest:
            tag = PUBLISH_TAG
        return cls(registry=registry, repository=repository, tag=tag, digest=digest or None)

    @property
    def name(self) -> str:
        """Repository name as the container runtime expects it, without tag or digest."""
        if self.registry == DEFAULT_REGISTRY:
            repo = self.repository
            return repo[len("library/"):] if repo.startswith("library/") else repo
        return f"{self.registry}/{self.repository}"

    @property
    def full_name(self) -> str:
        name = f"{self.registry}/{self.repository}"
        if self.digest:
            return f"{name}@{self.digest}"
        return f"{name}:{self.tag}"

    def with_tag(self, tag: str) -> "ImageReference":
        return replace(self, tag=tag, digest=None)

    def __str__(self) -> str:
        if self.digest:
            return f"{self.name}@{self.digest}"
        return f"{self.name}:{self.tag}"
