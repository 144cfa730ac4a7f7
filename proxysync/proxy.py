from __future__ import annotations

import subprocess
from typing import Any, Callable, Sequence

import docker
from docker.errors import DockerException, NotFound

from .eventlog import log_event


def _docker_client() -> docker.DockerClient:
    return docker.from_env()


class ProxyController:
    """Tell the running proxy to reread its configuration file.

    Either runs a local reload command (``nginx -s reload``) or, when a
    container name is given, sends SIGHUP to that container. Failures are
    logged and reported through the return value; they never raise.
    """

    def __init__(
        self,
        command: Sequence[str] = ("nginx", "-s", "reload"),
        container: str | None = None,
        timeout_s: float = 10.0,
        runner: Callable[..., Any] = subprocess.run,
        docker_client: Callable[[], Any] = _docker_client,
    ):
        self.command = list(command)
        self.container = container
        self.timeout_s = timeout_s
        self._runner = runner
        self._docker_client = docker_client

    def reload(self) -> bool:
        log_event("INFO", "Reloading nginx...")
        if self.container:
            return self._signal_container()
        return self._run_command()

    def _run_command(self) -> bool:
        if not self.command:
            log_event("ERROR", "No reload command configured")
            return False
        try:
            result = self._runner(
                self.command,
                capture_output=True,
                text=True,
                timeout=self.timeout_s,
                check=False,
            )
        except FileNotFoundError:
            log_event("ERROR", f"Reload command not found: {self.command[0]}")
            return False
        except subprocess.TimeoutExpired:
            log_event("ERROR", f"Reload command timed out after {self.timeout_s}s")
            return False
        except OSError as e:
            log_event("ERROR", f"Reload command failed: {type(e).__name__}: {e}")
            return False

        if result.returncode != 0:
            detail = (result.stderr or result.stdout or "").strip()
            log_event("ERROR", f"Reload exited with status {result.returncode}: {detail}")
            return False
        return True

    def _signal_container(self) -> bool:
        try:
            client = self._docker_client()
            client.containers.get(self.container).kill(signal="SIGHUP")
        except NotFound:
            log_event("ERROR", f"Proxy container '{self.container}' not found")
            return False
        except DockerException as e:
            log_event("ERROR", f"Could not signal proxy container '{self.container}': {e}")
            return False
        return True
