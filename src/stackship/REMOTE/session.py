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
Command execution on the deploy host.

``SSHExecutor`` shells out to the OpenSSH client so host keys, agents and
``~/.ssh/config`` behave as they do for an operator. ``LocalExecutor`` runs
commands on the current machine and serves the ``local`` target.
"""
import logging
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

from ..errors import RemoteCommandError, RemoteConnectError

logger = logging.getLogger(__name__)

LOCAL_HOST = "local"
SSH_CONNECT_FAILURE = 255


@dataclass
class CommandResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def check(self, command: str) -> "CommandResult":
        """Raises RemoteCommandError unless the command exited with 0."""
        if not self.ok:
            raise RemoteCommandError(command, self.exit_code, self.stderr)
        return self


@dataclass
class SSHCredentials:
    """Login for the deploy host. ``key_path`` comes from the secret store."""

    user: Optional[str] = None
    port: int = 22
    key_path: Optional[str] = None

    def __repr__(self) -> str:
        key = "***" if self.key_path else None
        return f"SSHCredentials(user={self.user!r}, port={self.port}, key_path={key})"


class Session(ABC):
    """An open connection to a host that runs shell commands."""

    host: str

    @abstractmethod
    def run(self, command: str, timeout: Optional[float] = None) -> CommandResult:
        """
        Runs ``command`` through the host's shell.

        A non-zero exit code is returned, not raised.

        :raises RemoteConnectError: If the host cannot be reached.
        """

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class SSHSession(Session):
    def __init__(self, host: str, credentials: SSHCredentials, connect_timeout: int = 10):
        self.host = host
        self.credentials = credentials
        self.connect_timeout = connect_timeout

    def ssh_command(self, command: str) -> List[str]:
        args = [
            "ssh",
            "-p", str(self.credentials.port),
            "-o", "BatchMode=yes",
            "-o", f"ConnectTimeout={self.connect_timeout}",
        ]
        if self.credentials.key_path:
            args += ["-i", self.credentials.key_path]
        target = f"{self.credentials.user}@{self.host}" if self.credentials.user else self.host
        return args + [target, command]

    def run(self, command: str, timeout: Optional[float] = None) -> CommandResult:
        logger.debug("ssh %s: %s", self.host, command)
        try:
            proc = subprocess.run(
                self.ssh_command(command),
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except FileNotFoundError as e:
            raise RemoteConnectError("OpenSSH client not found on PATH") from e
        except subprocess.TimeoutExpired as e:
            raise RemoteCommandError(command, -1, f"timed out after {timeout}s") from e

        if proc.returncode == SSH_CONNECT_FAILURE:
            raise RemoteConnectError(f"Cannot connect to {self.host}: {(proc.stderr or '').strip()}")
        return CommandResult(proc.returncode, proc.stdout or "", proc.stderr or "")


class LocalSession(Session):
    def __init__(self, cwd: Optional[str] = None):
        self.host = LOCAL_HOST
        self.cwd = cwd

    def run(self, command: str, timeout: Optional[float] = None) -> CommandResult:
        logger.debug("local: %s", command)
        try:
            proc = subprocess.run(
                command,
                shell=True,
                cwd=self.cwd,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise RemoteCommandError(command, -1, f"timed out after {timeout}s") from e
        return CommandResult(proc.returncode, proc.stdout or "", proc.stderr or "")


class Executor(ABC):
    @abstractmethod
    def connect(self, host: str, credentials: SSHCredentials) -> Session:
        """
        Opens a session on ``host``.

        :raises RemoteConnectError: If the host is unreachable or rejects the login.
        """


class SSHExecutor(Executor):
    def __init__(self, connect_timeout: int = 10):
        self.connect_timeout = connect_timeout

    def connect(self, host: str, credentials: SSHCredentials) -> Session:
        if host == LOCAL_HOST:
            return LocalSession()
        session = SSHSession(host, credentials, self.connect_timeout)
        # Fails fast on an unreachable host or a rejected key.
        session.run("true", timeout=self.connect_timeout + 5)
        logger.info("Connected to %s", host)
        return session


class LocalExecutor(Executor):
    def __init__(self, cwd: Optional[str] = None):
        self.cwd = cwd

    def connect(self, host: str, credentials: SSHCredentials) -> Session:
        return LocalSession(self.cwd)
