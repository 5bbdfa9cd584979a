"""Action executor: run command lines and talk to companion daemons."""

import logging
import os
import subprocess
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from .companions import CompanionRegistry
from .config import DaemonConfig
from .exceptions import ForwardError

logger = logging.getLogger(__name__)

# Host is ignored on a unix socket transport but httpx needs a URL.
SOCKET_URL = "http://localhost/"


class ActionExecutor(ABC):
    """Performs reactions on behalf of the dispatcher's workers."""

    @abstractmethod
    def run_command(self, cmdline: str) -> int:
        """Run a command line to completion and return its exit status."""
        pass

    @abstractmethod
    def forward(self, daemon: str, payload: str) -> str:
        """
        Send a payload to a companion daemon and return its response.

        Raises:
            ForwardError: If the daemon cannot be reached or rejects the request
        """
        pass


class ShellActionExecutor(ActionExecutor):
    """
    Runs command lines through the configured shell and forwards payloads
    over unix sockets with httpx.

    If a forward finds no listener and this process is privileged, the
    companion is spawned once and the request retried.
    """

    def __init__(
        self,
        config: Optional[DaemonConfig] = None,
        companions: Optional[CompanionRegistry] = None,
    ):
        self.config = config or DaemonConfig()
        self.companions = companions or CompanionRegistry(self.config.companions)

    def run_command(self, cmdline: str) -> int:
        logger.debug(f"Running: {cmdline}")
        result = subprocess.run(
            [self.config.shell, "-c", cmdline],
            stdin=subprocess.DEVNULL,
            capture_output=True,
            text=True,
        )
        if result.stdout.strip():
            logger.info(f"[{cmdline}] {result.stdout.strip()}")
        if result.stderr.strip():
            logger.warning(f"[{cmdline}] {result.stderr.strip()}")
        return result.returncode

    def forward(self, daemon: str, payload: str) -> str:
        socket_path = self.config.socket_for(daemon)
        try:
            return self._request(str(socket_path), payload)
        except httpx.ConnectError as e:
            if not self._spawn_companion(daemon):
                raise ForwardError(f"cannot reach {daemon} at {socket_path}: {e}") from e

        try:
            return self._request(str(socket_path), payload)
        except httpx.TransportError as e:
            raise ForwardError(f"cannot reach {daemon} at {socket_path}: {e}") from e

    def _request(self, socket_path: str, payload: str) -> str:
        transport = httpx.HTTPTransport(uds=socket_path)
        with httpx.Client(transport=transport, timeout=self.config.socket_timeout) as client:
            try:
                resp = client.post(
                    SOCKET_URL,
                    content=payload.encode("utf-8"),
                    headers={"Content-Type": "text/plain"},
                )
            except httpx.ConnectError:
                raise
            except httpx.TransportError as e:
                raise ForwardError(f"request to {socket_path} failed: {e}") from e

        if resp.status_code >= 400:
            raise ForwardError(
                f"{socket_path} rejected request: {resp.status_code} {resp.text.strip()}"
            )
        return resp.text

    def _spawn_companion(self, daemon: str) -> bool:
        companion = self.companions.get(daemon)
        if companion is None:
            return False
        if os.geteuid() != 0:
            logger.warning(f"{daemon} is not running and only root may start it")
            return False

        logger.info(f"{daemon} is not listening; starting it")
        if not self.companions.spawn(companion):
            return False
        return self.companions.wait_for_socket(companion, self.config.spawn_wait)
