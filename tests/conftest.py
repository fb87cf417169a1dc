"""
Shared fixtures: an in-memory container runtime and a fleet rooted in tmp_path.
"""
import fnmatch
import re
from pathlib import Path

import pytest
import yaml

from nodefleet.MANAGERS.background_tasks import ImmediateTaskScheduler
from nodefleet.MANAGERS.instance_store import InstanceStore
from nodefleet.MANAGERS.service_manager import ServiceManager
from nodefleet.MODELS.errors import RuntimeCommandError
from nodefleet.MODELS.results import ContainerInfo
from nodefleet.MODELS.settings import FleetSettings
from nodefleet.PARSERS.env_parser import EnvParser
from nodefleet.RUNNERS.container_runtime import ContainerRuntime

VARIABLE = re.compile(r"\$\{(\w+)(?::-([^}]*))?\}")


class FakeRuntime(ContainerRuntime):
    """
    Keeps containers, volumes and networks in memory. start_group reads the
    compose.yml and .env of a directory the way compose would.
    """

    def __init__(self):
        self.containers = {}
        self.volumes = set()
        self.networks = {}
        self.groups = {}
        self.calls = []
        self.fail_on = {}

    def _record(self, method, *args):
        self.calls.append((method,) + args)
        error = self.fail_on.get(method)
        if error is not None:
            raise error

    def mutating_calls(self):
        observing = {"list_containers", "list_volumes", "list_networks", "network_containers",
                     "is_group_running", "network_exists"}
        return [c for c in self.calls if c[0] not in observing]

    # Observation

    def list_containers(self, pattern="*"):
        self.calls.append(("list_containers", pattern))
        return [c for n, c in sorted(self.containers.items()) if fnmatch.fnmatchcase(n, pattern)]

    def list_volumes(self, pattern="*"):
        self.calls.append(("list_volumes", pattern))
        return sorted(v for v in self.volumes if fnmatch.fnmatchcase(v, pattern))

    def list_networks(self):
        self.calls.append(("list_networks",))
        return sorted(self.networks)

    def network_containers(self, network):
        self.calls.append(("network_containers", network))
        return sorted(self.networks.get(network, ()))

    def is_group_running(self, directory):
        self.calls.append(("is_group_running", str(directory)))
        return any(self.containers[n].running for n in self.groups.get(str(directory), ())
                   if n in self.containers)

    # Helpers for tests

    def add_network(self, name):
        self.networks.setdefault(name, set())

    def add_container(self, name, state="running", ports="", networks=()):
        self.containers[name] = ContainerInfo(name=name, state=state, ports=ports, networks=list(networks))
        for net in networks:
            self.networks.setdefault(net, set()).add(name)

    # Compose groups

    def start_group(self, directory):
        self._record("start_group", str(directory))
        directory = Path(directory)
        compose_file = directory / "compose.yml"
        if not compose_file.exists():
            raise RuntimeCommandError(["compose", "up"], 1, "no configuration file provided")
        env_file = directory / ".env"
        env = EnvParser.parse(env_file) if env_file.exists() else {}
        doc = yaml.safe_load(compose_file.read_text()) or {}

        declared = {}
        for key, spec in (doc.get("networks") or {}).items():
            declared[key] = (spec or {}).get("name", key)
        for name in declared.values():
            if name not in self.networks:
                raise RuntimeCommandError(["compose", "up"], 1, f"network {name} declared as external, but could not be found")

        names = []
        for service, spec in (doc.get("services") or {}).items():
            name = spec.get("container_name", f"{directory.name}-{service}")
            ports = ", ".join(self._published(self._resolve(p, env)) for p in spec.get("ports", []))
            nets = [declared.get(n, n) for n in (spec.get("networks") or [])]
            self.add_container(name, "running", ports, nets)
            names.append(name)
        for key, spec in (doc.get("volumes") or {}).items():
            self.volumes.add((spec or {}).get("name", key))
        self.groups[str(directory)] = names

    @staticmethod
    def _resolve(value, env):
        return VARIABLE.sub(lambda m: env.get(m.group(1)) or (m.group(2) or ""), str(value))

    @staticmethod
    def _published(mapping):
        parts = mapping.split(":")
        if len(parts) == 3:
            ip, host, target = parts
        else:
            ip, (host, target) = "0.0.0.0", parts
        if "/" not in target:
            target += "/tcp"
        return f"{ip}:{host}->{target}"

    def stop_group(self, directory, timeout=None):
        self._record("stop_group", str(directory))
        for name in self.groups.pop(str(directory), []):
            self._drop(name)

    def pull_group(self, directory):
        self._record("pull_group", str(directory))

    def recreate_group(self, directory):
        self._record("recreate_group", str(directory))
        self.stop_group(directory)
        self.start_group(directory)

    # Single resources

    def _drop(self, name):
        self.containers.pop(name, None)
        for members in self.networks.values():
            members.discard(name)

    def stop_container(self, name):
        self._record("stop_container", name)
        if name in self.containers:
            self.containers[name].state = "exited"

    def remove_container(self, name):
        self._record("remove_container", name)
        self._drop(name)

    def remove_volume(self, name):
        self._record("remove_volume", name)
        self.volumes.discard(name)

    def create_network(self, network):
        self._record("create_network", network)
        if network in self.networks:
            return False
        self.networks[network] = set()
        return True

    def remove_network(self, network):
        self._record("remove_network", network)
        if network not in self.networks:
            return False
        for name in self.networks.pop(network):
            if name in self.containers and network in self.containers[name].networks:
                self.containers[name].networks.remove(network)
        return True

    def connect_network(self, network, container):
        self._record("connect_network", network, container)
        if container in self.networks.get(network, set()):
            return False
        if network not in self.networks:
            raise RuntimeCommandError(["network", "connect"], 1, f"network {network} not found")
        self.networks[network].add(container)
        self.containers[container].networks.append(network)
        return True


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def settings(tmp_path):
    return FleetSettings(
        root_dir=tmp_path / "fleet",
        monitoring_attach_delay=0,
        health_check_attempts=2,
        health_check_interval=0,
    )


@pytest.fixture
def no_host_listeners(monkeypatch):
    """Keeps the real host's listening sockets out of port allocation."""
    monkeypatch.setattr("nodefleet.MANAGERS.port_allocator.listening_ports", lambda: set())


@pytest.fixture
def manager(settings, runtime, no_host_listeners):
    return ServiceManager(
        settings,
        runtime,
        scheduler=ImmediateTaskScheduler(),
        probe=lambda port: True,
        confirm=lambda message: True,
    )


@pytest.fixture
def make_instance(settings):
    """Writes an instance directory with the given configuration and returns the instance."""
    store = InstanceStore(settings)

    def _make(name, **configuration):
        instance = store.new(name, configuration)
        store.save(instance)
        return store.load(name)

    return _make
