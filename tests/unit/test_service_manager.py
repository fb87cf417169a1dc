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
Unit tests for the ServiceManager front door, run against the in-memory runtime.
"""
import pytest
import yaml

from nodefleet.MANAGERS.background_tasks import ImmediateTaskScheduler
from nodefleet.MANAGERS.service_manager import ServiceManager
from nodefleet.MODELS.errors import ConfigurationError, OperationInProgress, RuntimeCommandError, ServiceNotFound
from nodefleet.MODELS.results import ActionOptions
from nodefleet.PARSERS.env_parser import EnvParser
from nodefleet.RUNNERS.config_renderer import ConfigRenderer
from nodefleet.UTILS.session_lock import SessionLock

TWO_NODES = "http://ethnode1-consensus:5052,http://ethnode2-consensus:5052"


class BrokenRenderer(ConfigRenderer):
    def add_dashboard(self, name):
        raise RuntimeError("grafana unreachable")

    def remove_dashboard(self, name):
        raise RuntimeError("grafana unreachable")

    def reload(self):
        return False


def build_manager(settings, runtime, **kwargs):
    kwargs.setdefault("scheduler", ImmediateTaskScheduler())
    kwargs.setdefault("probe", lambda port: True)
    kwargs.setdefault("confirm", lambda message: True)
    return ServiceManager(settings, runtime, **kwargs)


def install(manager, name, **config):
    result = manager.operate("install", name, ActionOptions(config=config))
    assert result.exit_code == 0, result.lifecycle and result.lifecycle.error
    return result


def env_of(settings, name):
    return EnvParser.parse(settings.instance_dir(name) / ".env")


class TestInstall:
    """Tests for installing instances."""

    def test_install_ethnode(self, manager, runtime, settings):
        """Test a full ethnode install."""
        result = install(manager, "ethnode1")
        assert result.lifecycle.steps_run[-1].step == "register"
        config = env_of(settings, "ethnode1")
        assert config["EL_RPC_PORT"] == "8545"
        assert config["EL_WS_PORT"] == "8546"
        assert config["EE_PORT"] == "8547"
        assert config["CL_REST_PORT"] == "5052"
        assert config["MEVBOOST_PORT"] == "18550"
        assert "ethnode1-net" in runtime.networks
        assert runtime.containers["ethnode1-consensus"].networks == ["ethnode1-net"]
        assert manager.registry.is_registered("ethnode1")
        assert (settings.instance_dir("ethnode1") / "jwt").is_dir()

    def test_ports_do_not_collide(self, manager, settings):
        """Test that each ethnode gets the next free block."""
        for name in ("ethnode1", "ethnode2", "ethnode3"):
            install(manager, name)
        assert [env_of(settings, n)["EL_RPC_PORT"] for n in ("ethnode1", "ethnode2", "ethnode3")] == \
            ["8545", "8548", "8551"]
        assert [env_of(settings, n)["CL_REST_PORT"] for n in ("ethnode1", "ethnode2", "ethnode3")] == \
            ["5052", "5054", "5056"]

    def test_install_without_relay(self, manager, settings):
        manager.operate("install", "ethnode1", ActionOptions(include_mevboost=False))
        assert "MEVBOOST_PORT" not in env_of(settings, "ethnode1")

    def test_dry_run_has_no_side_effects(self, manager, runtime, settings):
        result = manager.operate("install", "ethnode1", ActionOptions(dry_run=True))
        assert result.configuration["EL_RPC_PORT"] == "8545"
        assert result.lifecycle is None
        assert not settings.instance_dir("ethnode1").exists()
        assert runtime.mutating_calls() == []

    def test_validator_defaults_to_first_ethnode(self, manager, runtime, settings):
        install(manager, "ethnode2")
        install(manager, "ethnode1")
        install(manager, "vero")
        assert env_of(settings, "vero")["BEACON_NODE_URLS"] == "http://ethnode1-consensus:5052"
        assert runtime.containers["vero"].networks == ["validator-net", "ethnode1-net", "web3signer-net"]

    def test_plugin_targets_first_ethnode(self, manager, runtime, settings):
        install(manager, "ethnode1")
        install(manager, "ssv")
        config = env_of(settings, "ssv")
        assert config["TARGET_NODE"] == "ethnode1"
        assert config["EXECUTION_NODE_URL"] == "ws://ethnode1-execution:8546"
        assert runtime.containers["ssv"].networks == ["ethnode1-net"]

    def test_missing_dependency(self, manager, runtime):
        """Test that a validator needs an ethnode first."""
        with pytest.raises(ConfigurationError):
            manager.operate("install", "vero")
        assert runtime.mutating_calls() == []

    def test_unknown_name(self, manager):
        with pytest.raises(ConfigurationError):
            manager.operate("install", "postgres")

    def test_already_installed(self, manager):
        install(manager, "ethnode1")
        with pytest.raises(ConfigurationError):
            manager.operate("install", "ethnode1")

    def test_critical_failure_aborts_and_resume(self, manager, runtime, settings):
        """Test that a failed start leaves the instance unregistered and a retry resumes it."""
        runtime.fail_on["start_group"] = RuntimeCommandError(["compose", "up"], 1, "image not found")
        result = manager.operate("install", "ethnode1")
        assert result.exit_code == 1
        assert result.lifecycle.failed_step == "start_services"
        assert "image not found" in result.lifecycle.error
        assert [s.step for s in result.lifecycle.steps_run][-1] == "start_services"
        assert not manager.registry.is_registered("ethnode1")
        ports = env_of(settings, "ethnode1")

        del runtime.fail_on["start_group"]
        result = install(manager, "ethnode1")
        assert env_of(settings, "ethnode1") == ports
        assert manager.registry.is_registered("ethnode1")

    def test_renderer_failure_is_not_critical(self, settings, runtime, no_host_listeners):
        manager = build_manager(settings, runtime, renderer_factory=lambda fleet: BrokenRenderer())
        result = manager.operate("install", "ethnode1")
        assert result.exit_code == 0
        assert [o.step for o in result.lifecycle.non_critical_failures] == ["integrate"]
        assert "grafana unreachable" in result.lifecycle.non_critical_failures[0].error
        assert manager.registry.is_registered("ethnode1")


class TestMonitoring:
    """Tests for monitoring wiring."""

    def test_new_ethnode_joins_running_monitoring(self, manager, runtime, settings):
        install(manager, "ethnode1")
        install(manager, "monitoring")
        assert runtime.containers["monitoring-grafana"].networks == ["monitoring-net"]

        install(manager, "ethnode2")
        assert "ethnode2-net" in runtime.containers["monitoring-prometheus"].networks
        dashboard = settings.instance_dir("monitoring") / "grafana" / "dashboards" / "ethnode2.json"
        assert dashboard.exists()

    def test_scrape_targets_follow_installs_and_removals(self, manager, runtime, settings):
        prometheus_yml = settings.instance_dir("monitoring") / "prometheus.yml"

        def targets():
            config = yaml.safe_load(prometheus_yml.read_text())
            return [t for job in config["scrape_configs"] for s in job["static_configs"] for t in s["targets"]]

        install(manager, "ethnode1")
        install(manager, "monitoring")
        assert "ethnode1-consensus:5054" in targets()

        install(manager, "ethnode2")
        assert "ethnode2-execution:6060" in targets()

        runtime.calls.clear()
        install(manager, "vero")
        assert "vero:8000" in targets()
        # Same networks, new targets: prometheus still has to pick them up
        assert ("stop_group", str(settings.instance_dir("monitoring"))) in runtime.calls

        manager.operate("remove", "ethnode2")
        manager.operate("remove", "vero")
        assert not any(t.startswith(("ethnode2-", "vero:")) for t in targets())
        assert "ethnode1-execution:6060" in targets()
        assert "monitoring" not in manager.reconcile().rebuilt

    def test_collector_attach(self, manager, runtime):
        install(manager, "ethnode1")
        install(manager, "monitoring")
        runtime.networks["ethnode1-net"].discard("monitoring-prometheus")
        runtime.containers["monitoring-prometheus"].networks.remove("ethnode1-net")

        assert manager.dispatch.attach_collector("monitoring") == ["monitoring-prometheus -> ethnode1-net"]
        assert manager.dispatch.attach_collector("monitoring") == []

    def test_collector_attach_skips_removed_monitoring(self, manager):
        assert manager.dispatch.attach_collector("monitoring") == []


class TestRemove:
    """Tests for removing instances."""

    def test_remove_ethnode_updates_validator(self, manager, runtime, settings):
        install(manager, "ethnode1")
        install(manager, "ethnode2")
        install(manager, "vero", BEACON_NODE_URLS=TWO_NODES)
        assert "ethnode1-net" in runtime.containers["vero"].networks

        result = manager.operate("remove", "ethnode1")
        assert result.exit_code == 0
        assert result.lifecycle.non_critical_failures == []
        assert env_of(settings, "vero")["BEACON_NODE_URLS"] == "http://ethnode2-consensus:5052"
        assert runtime.containers["vero"].networks == ["validator-net", "ethnode2-net", "web3signer-net"]
        assert "ethnode1-net" not in runtime.networks
        assert "ethnode2-net" in runtime.networks
        assert not any(v.startswith("ethnode1_") for v in runtime.volumes)
        assert not settings.instance_dir("ethnode1").exists()
        assert not manager.registry.is_registered("ethnode1")

    def test_remove_monitoring_keeps_shared_networks_in_use(self, manager, runtime):
        install(manager, "ethnode1")
        install(manager, "vero")
        install(manager, "monitoring")

        manager.operate("remove", "monitoring")
        assert "monitoring-net" not in runtime.networks
        assert "validator-net" in runtime.networks
        assert "ethnode1-net" in runtime.networks
        assert not any(name.startswith("monitoring-") for name in runtime.containers)

    def test_remove_is_idempotent(self, manager):
        install(manager, "ethnode1")
        assert manager.operate("remove", "ethnode1").exit_code == 0
        assert manager.operate("remove", "ethnode1").exit_code == 0
        assert manager.operate("remove", "ethnode7").exit_code == 0

    def test_remove_leaves_longer_names_alone(self, manager, runtime, settings):
        install(manager, "ethnode1")
        install(manager, "vero")
        install(manager, "vero-monitor")

        manager.operate("remove", "vero")
        assert "vero" not in runtime.containers
        assert "vero-monitor" in runtime.containers
        assert "vero-monitor_data" in runtime.volumes
        assert settings.instance_dir("vero-monitor").exists()

    def test_plan_has_no_side_effects(self, manager, runtime):
        install(manager, "ethnode1")
        install(manager, "vero")
        runtime.calls.clear()

        plan = manager.operate("plan", "ethnode1").plan
        assert runtime.mutating_calls() == []
        assert plan.containers == ["ethnode1-consensus", "ethnode1-execution", "ethnode1-mevboost"]
        assert plan.volumes == ["ethnode1_consensus-data", "ethnode1_execution-data"]
        assert "dependent vero" in plan.integrations
        assert plan.warnings[0] == "This will permanently remove ethnode1"
        assert "ethnode1-net (remove)" in plan.render()

    def test_dry_run_remove_returns_plan(self, manager, runtime):
        install(manager, "ethnode1")
        result = manager.operate("remove", "ethnode1", ActionOptions(dry_run=True))
        assert result.plan is not None
        assert "ethnode1-execution" in runtime.containers

    def test_interactive_decline(self, settings, runtime, no_host_listeners):
        shown = []
        manager = build_manager(settings, runtime, confirm=lambda message: False, echo=shown.append)
        install(manager, "ethnode1")

        result = manager.operate("remove", "ethnode1", ActionOptions(interactive=True))
        assert result.cancelled
        assert result.exit_code == 1
        assert shown and shown[0].startswith("Removal plan for ethnode1")
        assert manager.store.exists("ethnode1")


class TestStartStopUpdate:
    """Tests for start, stop, update and status."""

    def test_stop_then_start(self, manager, runtime):
        install(manager, "ethnode1")
        manager.operate("stop", "ethnode1")
        assert manager.operate("status", "ethnode1").status.state != "running"

        result = manager.operate("start", "ethnode1")
        assert result.exit_code == 0
        assert manager.operate("status", "ethnode1").status.state == "running"

    def test_health_check_failure(self, manager, runtime, monkeypatch):
        install(manager, "ethnode1")
        monkeypatch.setattr(runtime, "is_group_running", lambda directory: False)
        result = manager.operate("start", "ethnode1")
        assert result.exit_code == 1
        assert result.lifecycle.failed_step == "health_check"

    def test_update_writes_config(self, manager, runtime, settings):
        install(manager, "ethnode1")
        result = manager.operate("update", "ethnode1", ActionOptions(config={"EL_IMAGE": "geth:v2"}))
        assert result.exit_code == 0
        assert env_of(settings, "ethnode1")["EL_IMAGE"] == "geth:v2"
        assert ("pull_group", str(settings.instance_dir("ethnode1"))) in runtime.calls

    def test_start_unknown_instance(self, manager):
        with pytest.raises(ServiceNotFound):
            manager.operate("start", "ethnode1")

    def test_status_and_list(self, manager):
        install(manager, "ethnode1")
        install(manager, "vero")
        status = manager.operate("status", "ethnode1").status
        assert status.state == "running"
        assert status.networks == ["ethnode1-net"]
        assert status.volume_count == 2
        assert [s.name for s in manager.operate("list").services] == ["ethnode1", "vero"]

    def test_port_usage(self, manager):
        install(manager, "ethnode1")
        assert manager.port_usage()["execution_rpc"] == [8545, 8546, 8547]


class TestConcurrency:
    """Tests for the single-session lock."""

    def test_mutating_action_rejected_while_locked(self, manager, settings):
        with SessionLock(settings.lock_path):
            with pytest.raises(OperationInProgress):
                manager.operate("install", "ethnode1")
            # Reads need no lock
            assert manager.operate("list").services == []

    def test_unknown_action(self, manager):
        with pytest.raises(ConfigurationError):
            manager.operate("restart", "ethnode1")
