import subprocess

import pytest

from nodefleet.MODELS.errors import ConfigurationError
from nodefleet.MODELS.settings import FleetSettings
from nodefleet.MANAGERS.instance_store import InstanceStore
from nodefleet.RUNNERS.container_runtime import DockerCLIRuntime


class Completed:
    returncode = 1
    stdout = ""
    stderr = "Error: No such network"


def test_runtime_never_uses_a_shell(monkeypatch):
    """
    Resource names are passed as single arguments, never through a shell.
    """
    calls = []

    def fake_run(command, **kwargs):
        calls.append((command, kwargs))
        return Completed()

    monkeypatch.setattr(subprocess, "run", fake_run)
    runtime = DockerCLIRuntime()
    runtime.network_exists("ethnode1-net; touch injected.txt")

    command, kwargs = calls[0]
    assert command == ["docker", "network", "inspect", "ethnode1-net; touch injected.txt"]
    assert kwargs["shell"] is False


@pytest.mark.parametrize("name", ["../ethnode1", "ethnode1/../../etc", "ssv/../../etc", "../validator", "/etc/passwd", "ethnode1\n", ""])
def test_path_traversal_names_rejected(tmp_path, name):
    """
    Instance names double as directory names; only the naming convention is accepted.
    """
    store = InstanceStore(FleetSettings(root_dir=tmp_path))
    with pytest.raises(ConfigurationError):
        store.new(name, {})
