"""
Network topology management: which networks each instance must join, and
idempotent reconciliation of live networks and compose definitions against it.
"""
import logging
import re
from typing import Dict, Iterable, List, Optional, Sequence

from ..CONVERTERS.to_compose import ComposeConverter
from ..MODELS.results import ContainerInfo, NetworkFate, ReconcileReport
from ..MODELS.service_instance import ServiceInstance, ServiceType
from ..MODELS.settings import FleetSettings
from ..PARSERS.endpoint_parser import referenced_ethnodes
from ..RUNNERS.container_runtime import ContainerRuntime
from ..RUNNERS.dependency_resolver import DependencyResolver, natural_sorted

logger = logging.getLogger(__name__)

TARGET_NODE_KEY = "TARGET_NODE"


class NetworkReconciler:
    """
    Computes required network membership from live configuration and rebuilds it.
    """
    def __init__(self, settings: FleetSettings, runtime: ContainerRuntime,
                 resolver: DependencyResolver, converter: Optional[ComposeConverter] = None):
        """
        :param settings: Shared network names and the isolated network suffix.
        :param runtime: Container runtime used to inspect and change networks.
        :param resolver: Orders instances so dependencies are handled first.
        :param converter: Renders compose definitions; one is created when omitted.
        """
        self.settings = settings
        self.runtime = runtime
        self.resolver = resolver
        self.converter = converter or ComposeConverter(settings.monitoring_network)
        suffix = re.escape(settings.isolated_network_suffix)
        self._isolated = re.compile(rf"^ethnode\d*{suffix}$")

    def is_managed(self, network: str) -> bool:
        """
        Whether a network belongs to the fleet topology (and so may be pruned).
        """
        return network in self.settings.shared_networks or bool(self._isolated.match(network))

    @staticmethod
    def ethnode_names(fleet: Iterable[ServiceInstance]) -> List[str]:
        return natural_sorted(i.name for i in fleet if i.service_type == ServiceType.ETHNODE)

    def referenced_ethnodes(self, instance: ServiceInstance, fleet: Iterable[ServiceInstance]) -> List[str]:
        """
        Existing Ethnodes an instance is configured against.
        """
        existing = set(self.ethnode_names(fleet))
        if instance.service_type == ServiceType.PLUGIN:
            target = instance.configuration.get(TARGET_NODE_KEY, "").strip()
            refs = [target] if target else referenced_ethnodes(instance.configuration)[:1]
        else:
            refs = referenced_ethnodes(instance.configuration)
        return [name for name in refs if name in existing]

    def required_networks(self, instance: ServiceInstance, fleet: Iterable[ServiceInstance]) -> List[str]:
        """
        Networks an instance must join, in the order they are declared.

        :param instance: The instance.
        :param fleet: Every installed instance; only existing Ethnodes are referenced.
        :return: Network names without duplicates.
        """
        fleet = list(fleet)
        s = self.settings
        kind = instance.service_type
        if kind == ServiceType.ETHNODE:
            nets = [s.isolated_network(instance.name)]
        elif kind == ServiceType.MONITORING:
            nets = [s.monitoring_network, s.validator_network]
            nets += [s.isolated_network(n) for n in self.ethnode_names(fleet)]
        elif kind == ServiceType.VALIDATOR:
            nets = [s.validator_network]
            nets += [s.isolated_network(n) for n in self.referenced_ethnodes(instance, fleet)]
            nets.append(s.signer_network)
        elif kind == ServiceType.SIGNER:
            nets = [s.signer_network]
        else:
            nets = [s.isolated_network(n) for n in self.referenced_ethnodes(instance, fleet)]

        unique = []
        for net in nets:
            if net not in unique:
                unique.append(net)
        return unique

    def required_by_fleet(self, fleet: Sequence[ServiceInstance]) -> Dict[str, List[str]]:
        """Required networks keyed by instance name."""
        return {i.name: self.required_networks(i, fleet) for i in fleet}

    def network_fates(self, instance: ServiceInstance, fleet: Sequence[ServiceInstance]) -> List[NetworkFate]:
        """
        What removing an instance does to each network it joins.

        An isolated network goes only with its owning Ethnode; a shared network
        goes only when no other installed instance requires it.
        """
        others = [i for i in fleet if i.name != instance.name]
        still_required = {}
        for other in others:
            for net in self.required_networks(other, others):
                still_required.setdefault(net, other.name)

        fates = []
        own = self.settings.isolated_network(instance.name) if instance.service_type == ServiceType.ETHNODE else None
        for net in self.required_networks(instance, fleet):
            exists = self.runtime.network_exists(net)
            if net == own:
                fates.append(NetworkFate(net, exists, exists, "owned"))
            elif net in self.settings.shared_networks:
                user = still_required.get(net)
                if user:
                    fates.append(NetworkFate(net, exists, False, f"still required by {user}"))
                else:
                    fates.append(NetworkFate(net, exists, exists, "no remaining users"))
            else:
                fates.append(NetworkFate(net, exists, False, "owned by another instance"))
        return fates

    def connect_containers(self, containers: Sequence[ContainerInfo], networks: Sequence[str]) -> List[str]:
        """
        Attaches containers to the given networks where missing.

        :return: "container -> network" entries for each new attachment.
        """
        attached = []
        for container in containers:
            for net in networks:
                if net in container.networks:
                    continue
                if self.runtime.connect_network(net, container.name):
                    attached.append(f"{container.name} -> {net}")
        return attached

    def reconcile(self, instances: Sequence[ServiceInstance], prune: bool = True,
                  only: Optional[Iterable[str]] = None) -> ReconcileReport:
        """
        Brings networks and compose definitions in line with what the fleet requires.

        1. Creates every missing required network.
        2. With prune, removes managed networks nothing requires.
        3. Rewrites the compose definition of each instance whose declared
           networks differ, and the scrape configuration of monitoring
           instances, queueing a restart if it is running and anything changed.
        4. Restarts queued instances one at a time.

        A failure on one instance is recorded and never blocks the others.

        :param instances: The installed fleet.
        :param prune: Whether to remove orphaned managed networks.
        :param only: Restrict steps 3 and 4 to these instance names.
        :return: What changed.
        """
        report = ReconcileReport()
        fleet = self.resolver.order_instances(instances)
        required = self.required_by_fleet(fleet)

        wanted = []
        for nets in required.values():
            for net in nets:
                if net not in wanted:
                    wanted.append(net)

        for net in wanted:
            try:
                if self.runtime.create_network(net):
                    logger.info("Created network %s", net)
                    report.created.append(net)
            except Exception as e:
                logger.warning("Could not create network %s: %s", net, e)
                report.failures[net] = str(e)

        if prune:
            for net in self.runtime.list_networks():
                if not self.is_managed(net) or net in wanted:
                    continue
                try:
                    if self.runtime.remove_network(net):
                        logger.info("Removed orphaned network %s", net)
                        report.removed.append(net)
                except Exception as e:
                    logger.warning("Could not remove network %s: %s", net, e)
                    report.failures[net] = str(e)

        targets = set(only) if only is not None else None
        queued = []
        for instance in fleet:
            if targets is not None and instance.name not in targets:
                continue
            nets = required[instance.name]
            try:
                changed = False
                if self.converter.declared_networks(instance) != nets:
                    changed = self.converter.write(instance, nets)
                if self.converter.write_scrape_config(instance, fleet):
                    changed = True
                if changed:
                    report.rebuilt.append(instance.name)
                    if self.runtime.is_group_running(instance.directory):
                        queued.append(instance)
            except Exception as e:
                logger.warning("Could not rebuild %s: %s", instance.name, e)
                report.failures[instance.name] = str(e)

        for instance in queued:
            try:
                self.runtime.stop_group(instance.directory)
                self.runtime.start_group(instance.directory)
                logger.info("Restarted %s with networks %s", instance.name, required[instance.name])
                report.restarted.append(instance.name)
            except Exception as e:
                logger.warning("Could not restart %s: %s", instance.name, e)
                report.failures[instance.name] = str(e)

        return report
