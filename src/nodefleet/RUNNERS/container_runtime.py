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
Boundary to the container runtime.

RuntimeObserver is the read-only view the allocator, reconciler and planner
consult for live state; ContainerRuntime adds the operations lifecycle steps
issue. DockerCLIRuntime implements both on top of the docker CLI.
"""
import fnmatch
import json
import logging
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional, Set

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_fixed

from ..MODELS.errors import RuntimeCommandError
from ..MODELS.results import ContainerInfo
from ..UTILS.port_finder import parse_host_ports

logger = logging.getLogger(__name__)


class RuntimeObserver(ABC):
    """
    Read-only view of live container state. Nothing here is cached.
    """

    @abstractmethod
    def list_containers(self, pattern: str = "*") -> List[ContainerInfo]:
        """Containers, running or stopped, whose name matches the glob."""

    @abstractmethod
    def list_volumes(self, pattern: str = "*") -> List[str]:
        """Volume names matching the glob."""

    @abstractmethod
    def list_networks(self) -> List[str]:
        """Names of all networks."""

    @abstractmethod
    def network_containers(self, network: str) -> List[str]:
        """Containers attached to a network; empty if it does not exist."""

    @abstractmethod
    def is_group_running(self, directory: Path) -> bool:
        """Whether any container of the compose group in directory is running."""

    def network_exists(self, network: str) -> bool:
        return network in self.list_networks()

    def published_host_ports(self) -> Set[int]:
        """
        Host ports bound by any container, running or stopped.
        """
        ports = set()
        for container in self.list_containers():
            ports.update(parse_host_ports(container.ports))
        return ports


class ContainerRuntime(RuntimeObserver):
    """
    Operations lifecycle steps may issue. Every operation succeeds when the
    target is already in the requested state.
    """

    @abstractmethod
    def start_group(self, directory: Path) -> None:
        """Starts the compose group defined in directory."""

    @abstractmethod
    def stop_group(self, directory: Path, timeout: int = 30) -> None:
        """Stops and removes the compose group's containers."""

    @abstractmethod
    def pull_group(self, directory: Path) -> None:
        """Pulls the images of the compose group."""

    @abstractmethod
    def recreate_group(self, directory: Path) -> None:
        """Recreates the compose group's containers."""

    @abstractmethod
    def stop_container(self, name: str) -> None:
        """Stops one container."""

    @abstractmethod
    def remove_container(self, name: str) -> None:
        """Force-removes one container."""

    @abstractmethod
    def remove_volume(self, name: str) -> None:
        """Removes one volume."""

    @abstractmethod
    def create_network(self, network: str) -> bool:
        """Creates a network. Returns False if it already existed."""

    @abstractmethod
    def remove_network(self, network: str) -> bool:
        """Disconnects remaining containers and removes a network. Returns False if absent."""

    @abstractmethod
    def connect_network(self, network: str, container: str) -> bool:
        """Attaches a container to a network. Returns False if already attached."""


class DockerCLIRuntime(ContainerRuntime):
    """
    ContainerRuntime backed by the docker and docker compose CLIs.
    """

    def __init__(self, docker: str = "docker", stop_timeout: int = 30):
        """
        :param docker: The docker binary to invoke.
        :param stop_timeout: Default grace period in seconds for compose down.
        """
        self.docker = docker
        self.stop_timeout = stop_timeout

    def _run(self, args: List[str], cwd: Optional[Path] = None,
             check: bool = True) -> subprocess.CompletedProcess:
        command = [self.docker] + args
        logger.debug("Running %s", " ".join(command))
        try:
            result = subprocess.run(
                command,
                cwd=str(cwd) if cwd else None,
                capture_output=True,
                text=True,
                shell=False,
            )
        except FileNotFoundError as e:
            raise RuntimeCommandError(command, 127, str(e)) from e
        if check and result.returncode != 0:
            raise RuntimeCommandError(command, result.returncode, result.stderr)
        return result

    @staticmethod
    def _has_compose(directory: Path) -> bool:
        return directory.is_dir() and (directory / "compose.yml").exists()

    # Observation

    def list_containers(self, pattern: str = "*") -> List[ContainerInfo]:
        output = self._run(["ps", "-a", "--format", "{{json .}}"]).stdout
        containers = []
        for line in output.splitlines():
            line = line.strip()
            if not line:
                continue
            data = json.loads(line)
            name = data.get("Names", "")
            if not fnmatch.fnmatchcase(name, pattern):
                continue
            networks = [n for n in data.get("Networks", "").split(",") if n]
            containers.append(ContainerInfo(
                name=name,
                state=data.get("State", "unknown"),
                ports=data.get("Ports", ""),
                networks=networks,
            ))
        return containers

    def list_volumes(self, pattern: str = "*") -> List[str]:
        output = self._run(["volume", "ls", "--format", "{{.Name}}"]).stdout
        return [v for v in output.split() if fnmatch.fnmatchcase(v, pattern)]

    def list_networks(self) -> List[str]:
        output = self._run(["network", "ls", "--format", "{{.Name}}"]).stdout
        return output.split()

    def network_exists(self, network: str) -> bool:
        return self._run(["network", "inspect", network], check=False).returncode == 0

    def network_containers(self, network: str) -> List[str]:
        result = self._run(
            ["network", "inspect", network, "--format", "{{range .Containers}}{{.Name}} {{end}}"],
            check=False,
        )
        if result.returncode != 0:
            return []
        return result.stdout.split()

    def is_group_running(self, directory: Path) -> bool:
        if not self._has_compose(directory):
            return False
        result = self._run(["compose", "ps", "-q", "--status", "running"], cwd=directory, check=False)
        return result.returncode == 0 and bool(result.stdout.strip())

    # Compose groups

    def start_group(self, directory: Path) -> None:
        if not self._has_compose(directory):
            raise RuntimeCommandError(["compose", "up"], 1, f"No compose.yml found in {directory}")
        self._run(["compose", "up", "-d"], cwd=directory)

    def stop_group(self, directory: Path, timeout: Optional[int] = None) -> None:
        if not self._has_compose(directory):
            return
        grace = self.stop_timeout if timeout is None else timeout
        self._run(["compose", "down", "-t", str(grace)], cwd=directory)

    def pull_group(self, directory: Path) -> None:
        if not self._has_compose(directory):
            raise RuntimeCommandError(["compose", "pull"], 1, f"No compose.yml found in {directory}")
        self._run(["compose", "pull"], cwd=directory)

    def recreate_group(self, directory: Path) -> None:
        if not self._has_compose(directory):
            raise RuntimeCommandError(["compose", "up"], 1, f"No compose.yml found in {directory}")
        self._run(["compose", "up", "-d", "--force-recreate"], cwd=directory)

    # Single resources

    def stop_container(self, name: str) -> None:
        result = self._run(["stop", name], check=False)
        if result.returncode != 0 and "No such container" not in result.stderr:
            raise RuntimeCommandError([self.docker, "stop", name], result.returncode, result.stderr)

    def remove_container(self, name: str) -> None:
        result = self._run(["rm", "-f", name], check=False)
        if result.returncode != 0 and "No such container" not in result.stderr:
            raise RuntimeCommandError([self.docker, "rm", "-f", name], result.returncode, result.stderr)

    def remove_volume(self, name: str) -> None:
        self._run(["volume", "rm", "-f", name])

    def create_network(self, network: str) -> bool:
        if self.network_exists(network):
            return False
        self._run(["network", "create", network])
        return True

    def remove_network(self, network: str) -> bool:
        if not self.network_exists(network):
            return False
        for container in self.network_containers(network):
            logger.info("Disconnecting %s from %s", container, network)
            self._run(["network", "disconnect", "-f", network, container], check=False)
        self._remove_network(network)
        return True

    @retry(stop=stop_after_attempt(3), wait=wait_fixed(2),
           retry=retry_if_exception_type(RuntimeCommandError), reraise=True)
    def _remove_network(self, network: str) -> None:
        # Endpoints of just-stopped containers can take a moment to be released
        self._run(["network", "rm", network])

    def connect_network(self, network: str, container: str) -> bool:
        if container in self.network_containers(network):
            return False
        self._run(["network", "connect", network, container])
        return True
