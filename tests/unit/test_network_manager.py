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
Unit tests for the network topology reconciler.
"""
import pytest

from nodefleet.CONVERTERS.to_compose import ComposeConverter
from nodefleet.MANAGERS.flow_registry import FLOW_REGISTRY
from nodefleet.MANAGERS.network_manager import NetworkReconciler
from nodefleet.RUNNERS.dependency_resolver import DependencyResolver


@pytest.fixture
def reconciler(settings, runtime):
    resolver = DependencyResolver({t: f.dependencies for t, f in FLOW_REGISTRY.items()})
    return NetworkReconciler(settings, runtime, resolver)


class TestRequiredNetworks:
    """Tests for required-network rules."""

    def test_ethnode(self, reconciler, make_instance):
        node = make_instance("ethnode1")
        assert reconciler.required_networks(node, [node]) == ["ethnode1-net"]

    def test_monitoring_sees_every_ethnode_in_natural_order(self, reconciler, make_instance):
        fleet = [make_instance(n) for n in ("ethnode10", "ethnode2", "monitoring")]
        assert reconciler.required_networks(fleet[2], fleet) == [
            "monitoring-net", "validator-net", "ethnode2-net", "ethnode10-net",
        ]

    def test_validator_only_joins_referenced_ethnodes(self, reconciler, make_instance):
        fleet = [make_instance("ethnode1"), make_instance("ethnode2"), make_instance("ethnode3")]
        vero = make_instance("vero", BEACON_NODE_URLS="http://ethnode1-teku:5052,http://ethnode3-nimbus:5052")
        fleet.append(vero)
        assert reconciler.required_networks(vero, fleet) == [
            "validator-net", "ethnode1-net", "ethnode3-net", "web3signer-net",
        ]

    def test_validator_ignores_missing_ethnodes(self, reconciler, make_instance):
        node = make_instance("ethnode1")
        vero = make_instance("vero", BEACON_NODE_URLS="http://ethnode1-teku:5052,http://ethnode9-teku:5052")
        assert reconciler.required_networks(vero, [node, vero]) == [
            "validator-net", "ethnode1-net", "web3signer-net",
        ]

    def test_explicit_refs(self, reconciler, make_instance):
        fleet = [make_instance("ethnode1"), make_instance("ethnode2")]
        validator = make_instance("teku-validator", BEACON_NODE_URL="http://ethnode1-teku:5052",
                                  ETHNODE_REFS="ethnode2")
        assert "ethnode2-net" in reconciler.required_networks(validator, fleet + [validator])
        assert "ethnode1-net" not in reconciler.required_networks(validator, fleet + [validator])

    def test_signer_and_plugin(self, reconciler, make_instance):
        node = make_instance("ethnode2")
        signer = make_instance("web3signer")
        plugin = make_instance("ssv", TARGET_NODE="ethnode2")
        orphan = make_instance("vero-monitor", TARGET_NODE="ethnode7")
        fleet = [node, signer, plugin, orphan]
        assert reconciler.required_networks(signer, fleet) == ["web3signer-net"]
        assert reconciler.required_networks(plugin, fleet) == ["ethnode2-net"]
        assert reconciler.required_networks(orphan, fleet) == []


class TestReconcile:
    """Tests for reconciliation passes."""

    def test_creates_networks_and_definitions(self, reconciler, runtime, make_instance):
        fleet = [make_instance("ethnode1"), make_instance("vero", BEACON_NODE_URLS="http://ethnode1-x:5052")]
        report = reconciler.reconcile(fleet)
        assert set(report.created) == {"ethnode1-net", "validator-net", "web3signer-net"}
        assert report.rebuilt == ["ethnode1", "vero"]
        assert report.restarted == []
        assert reconciler.converter.declared_networks(fleet[1]) == ["validator-net", "ethnode1-net", "web3signer-net"]

    def test_second_pass_is_a_no_op(self, reconciler, make_instance):
        fleet = [make_instance("ethnode1"), make_instance("monitoring")]
        reconciler.reconcile(fleet)
        report = reconciler.reconcile(fleet)
        assert not report.changed
        assert not report.failures

    def test_existing_network_is_not_recreated(self, reconciler, runtime, make_instance):
        runtime.add_network("ethnode1-net")
        report = reconciler.reconcile([make_instance("ethnode1")])
        assert report.created == []

    def test_prune_only_touches_managed_networks(self, reconciler, runtime, make_instance):
        for net in ("ethnode5-net", "monitoring-net", "bridge", "my-app-net"):
            runtime.add_network(net)
        report = reconciler.reconcile([make_instance("ethnode1")])
        assert set(report.removed) == {"ethnode5-net", "monitoring-net"}
        assert "bridge" in runtime.networks
        assert "my-app-net" in runtime.networks

    def test_without_prune_orphans_stay(self, reconciler, runtime, make_instance):
        runtime.add_network("ethnode5-net")
        report = reconciler.reconcile([make_instance("ethnode1")], prune=False)
        assert report.removed == []
        assert "ethnode5-net" in runtime.networks

    def test_running_instance_is_restarted_on_change(self, reconciler, runtime, settings, make_instance):
        node1 = make_instance("ethnode1", EL_RPC_PORT="8545")
        monitoring = make_instance("monitoring", GRAFANA_PORT="3000", PROMETHEUS_PORT="6060",
                                   NODE_EXPORTER_PORT="20000")
        reconciler.reconcile([node1, monitoring])
        runtime.start_group(monitoring.directory)
        runtime.calls.clear()

        node2 = make_instance("ethnode2")
        report = reconciler.reconcile([node1, node2, monitoring])

        assert report.rebuilt == ["ethnode2", "monitoring"]
        assert report.restarted == ["monitoring"]
        stop = runtime.calls.index(("stop_group", str(monitoring.directory)))
        start = runtime.calls.index(("start_group", str(monitoring.directory)))
        assert stop < start
        assert "ethnode2-net" in runtime.containers["monitoring-prometheus"].networks
        assert runtime.containers["monitoring-grafana"].networks == ["monitoring-net"]

    def test_stopped_instance_is_not_restarted(self, reconciler, make_instance):
        node1 = make_instance("ethnode1")
        monitoring = make_instance("monitoring")
        reconciler.reconcile([node1, monitoring])
        report = reconciler.reconcile([node1, make_instance("ethnode2"), monitoring])
        assert "monitoring" in report.rebuilt
        assert report.restarted == []

    def test_failure_does_not_block_others(self, reconciler, make_instance):
        broken = make_instance("ethnode1")
        broken.compose_file.write_text("services: [\n")
        fine = make_instance("ethnode2")
        report = reconciler.reconcile([broken, fine])
        assert "ethnode1" in report.failures
        assert "ethnode2" in report.rebuilt

    def test_only_limits_rebuilds(self, reconciler, make_instance):
        fleet = [make_instance("ethnode1"), make_instance("monitoring")]
        report = reconciler.reconcile(fleet, only=["monitoring"])
        assert report.rebuilt == ["monitoring"]
        assert not fleet[0].compose_file.exists()


class TestNetworkFates:
    """Tests for what removal does to networks."""

    def test_isolated_network_goes_with_its_ethnode(self, reconciler, runtime, make_instance):
        runtime.add_network("ethnode1-net")
        node = make_instance("ethnode1")
        vero = make_instance("vero", BEACON_NODE_URLS="http://ethnode1-x:5052")
        fates = {f.name: f for f in reconciler.network_fates(node, [node, vero])}
        assert fates["ethnode1-net"].will_remove

    def test_shared_network_kept_while_required(self, reconciler, runtime, make_instance):
        for net in ("validator-net", "web3signer-net", "ethnode1-net", "monitoring-net"):
            runtime.add_network(net)
        node = make_instance("ethnode1")
        vero = make_instance("vero", BEACON_NODE_URLS="http://ethnode1-x:5052")
        monitoring = make_instance("monitoring")
        fleet = [node, vero, monitoring]

        fates = {f.name: f for f in reconciler.network_fates(monitoring, fleet)}
        assert fates["monitoring-net"].will_remove
        assert not fates["validator-net"].will_remove
        assert fates["validator-net"].reason == "still required by vero"
        assert not fates["ethnode1-net"].will_remove

        fates = {f.name: f for f in reconciler.network_fates(vero, fleet)}
        assert fates["web3signer-net"].will_remove
        assert not fates["validator-net"].will_remove

    def test_absent_network_is_not_removed(self, reconciler, make_instance):
        node = make_instance("ethnode1")
        fates = reconciler.network_fates(node, [node])
        assert fates[0].exists is False
        assert fates[0].will_remove is False
