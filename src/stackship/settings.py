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
Runtime settings, read from ``STACKSHIP_*`` environment variables after an
optional ``.env`` file has been loaded.
"""
import os
from typing import Dict, List, Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

ENV_PREFIX = "STACKSHIP_"

# Keys looked up in the secret mapping; their values are never logged.
SECRET_REGISTRY_USERNAME = "REGISTRY_USERNAME"
SECRET_REGISTRY_PASSWORD = "REGISTRY_PASSWORD"
SECRET_SSH_KEY = "SSH_KEY"


class Settings(BaseModel):
    repo_url: Optional[str] = None
    work_dir: str = ".stackship/source"
    topology_file: str = "stackship.yml"
    routes_file: str = "routes.yml"
    registry: Optional[str] = None
    deploy_host: str = "local"
    deploy_user: Optional[str] = None
    deploy_port: int = 22
    remote_topology: str = "stackship.yml"
    remote_pre_commands: List[str] = []
    remote_command: str = "stackship"
    stage_timeout: Optional[float] = None
    history_file: Optional[str] = ".stackship/history.jsonl"
    log_level: str = "INFO"
    project: Optional[str] = None

    @field_validator("remote_pre_commands", mode="before")
    @classmethod
    def _split_commands(cls, v):
        # One variable holds several commands separated by ';;'
        if isinstance(v, str):
            return [c.strip() for c in v.split(";;") if c.strip()]
        return v

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, v: str) -> str:
        return v.upper()

    @field_validator("stage_timeout", mode="before")
    @classmethod
    def _empty_timeout(cls, v):
        return None if v in ("", "0", 0) else v

    @classmethod
    def from_env(cls, environ: Mapping[str, str]) -> "Settings":
        values = {}
        for name in cls.model_fields:
            key = ENV_PREFIX + name.upper()
            if key in environ:
                values[name] = environ[key]
        return cls(**values)

    @classmethod
    def load(cls, env_file: Optional[str] = None) -> "Settings":
        """
        Loads ``env_file`` (default: ``.env`` in the working directory) without
        overriding variables already set, then reads the process environment.
        """
        load_dotenv(env_file or os.path.join(os.getcwd(), ".env"), override=False)
        return cls.from_env(os.environ)


def load_secrets(environ: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """
    Secret values from ``STACKSHIP_<KEY>`` variables. The mapping is opaque to
    everything except the component that consumes a given key.
    """
    environ = os.environ if environ is None else environ
    secrets = {}
    for key in (SECRET_REGISTRY_USERNAME, SECRET_REGISTRY_PASSWORD, SECRET_SSH_KEY):
        value = environ.get(ENV_PREFIX + key)
        if value:
            secrets[key] = value
    return secrets
