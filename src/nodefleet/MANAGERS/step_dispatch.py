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
The step dispatch table: one idempotent handler per step kind, plus the
integration hooks the cross-service steps run.

Every handler succeeds when its target is already in the requested state.
Handlers signal failure by raising; the executor grades the failure by the
step's criticality.
"""
import fnmatch
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from tenacity import RetryError, Retrying, retry_if_result, stop_after_attempt, wait_fixed

from ..CONVERTERS.to_compose import ComposeConverter
from ..MODELS.errors import ConfigurationError, NonCriticalStepFailure, StepFailure
from ..MODELS.flow_definition import (
    FlowDefinition,
    IntegrationHook,
    IntegrationPhase,
    LifecycleAction,
    ResourcePatternSet,
    StepKind,
)
from ..MODELS.results import ActionOptions, ContainerInfo
from ..MODELS.service_instance import ServiceInstance, ServiceType
from ..MODELS.settings import FleetSettings
from ..PARSERS.endpoint_parser import prune_ethnode, referenced_ethnodes
from ..RUNNERS.config_renderer import ConfigRenderer, GrafanaProvisioningRenderer, NullConfigRenderer
from ..RUNNERS.container_runtime import ContainerRuntime
from .background_tasks import DetachedTaskScheduler
from .instance_store import InstanceStore
from .network_manager import NetworkReconciler
from .service_registry import ServiceRegistry

logger = logging.getLogger(__name__)

SUBDIRECTORIES: Mapping[ServiceType, Sequence[str]] = {
    ServiceType.ETHNODE: ("jwt",),
    ServiceType.SIGNER: ("keystores",),
    ServiceType.MONITORING: ("grafana/dashboards", "grafana/provisioning/dashboards"),
}


@dataclass
class StepContext:
    """
    Everything a handler sees. Built immediately before each step from live state.
    """
    instance: ServiceInstance
    flow: FlowDefinition
    action: LifecycleAction
    options: ActionOptions
    patterns: ResourcePatternSet
    fleet: List[ServiceInstance] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.instance.name

    @property
    def others(self) -> List[ServiceInstance]:
        return [i for i in self.fleet if i.name != self.instance.name]


StepHandler = Callable[[StepContext], None]
HookHandler = Callable[[StepContext, IntegrationPhase], None]
RendererFactory = Callable[[Sequence[ServiceInstance]], ConfigRenderer]


def default_renderer(fleet: Sequence[ServiceInstance]) -> ConfigRenderer:
    """Grafana provisioning when a monitoring instance is installed, otherwise nothing."""
    for instance in fleet:
        if instance.service_type == ServiceType.MONITORING:
            return GrafanaProvisioningRenderer(instance.directory)
    return NullConfigRenderer()


class StepDispatchTable:
    """
    Maps every StepKind to its handler. Construction fails when any step kind
    has no handler, so a sequence can always be checked up front.
    """
    def __init__(self, settings: FleetSettings, runtime: ContainerRuntime, store: InstanceStore,
                 reconciler: NetworkReconciler, registry: ServiceRegistry,
                 scheduler: Optional[DetachedTaskScheduler] = None,
                 renderer_factory: RendererFactory = default_renderer,
                 overrides: Optional[Mapping[StepKind, StepHandler]] = None):
        """
        :param settings: Fleet settings.
        :param runtime: Container runtime the handlers act on.
        :param store: Instance persistence.
        :param reconciler: Network topology reconciler.
        :param registry: Service ledger.
        :param scheduler: Runs detached post-start tasks.
        :param renderer_factory: Picks the config renderer for the current fleet.
        :param overrides: Replacement handlers for specific steps.
        """
        self.settings = settings
        self.runtime = runtime
        self.store = store
        self.reconciler = reconciler
        self.registry = registry
        self.scheduler = scheduler or DetachedTaskScheduler()
        self.renderer_factory = renderer_factory
        self.converter: ComposeConverter = reconciler.converter

        self._handlers: Dict[StepKind, StepHandler] = {
            StepKind.CREATE_DIRECTORIES: self.create_directories,
            StepKind.COPY_CONFIGS: self.copy_configs,
            StepKind.UPDATE_CONFIG: self.update_config,
            StepKind.REMOVE_DIRECTORIES: self.remove_directories,
            StepKind.SETUP_NETWORKING: self.setup_networking,
            StepKind.ENSURE_NETWORKS: self.ensure_networks,
            StepKind.CONNECT_TO_ETHNODES: self.connect_to_ethnodes,
            StepKind.REMOVE_NETWORKS: self.remove_networks,
            StepKind.START_SERVICES: self.start_services,
            StepKind.STOP_SERVICES: self.stop_services,
            StepKind.PULL_IMAGES: self.pull_images,
            StepKind.RECREATE_SERVICES: self.recreate_services,
            StepKind.HEALTH_CHECK: self.health_check,
            StepKind.REMOVE_CONTAINERS: self.remove_containers,
            StepKind.REMOVE_VOLUMES: self.remove_volumes,
            StepKind.INTEGRATE: self.integrate,
            StepKind.UPDATE_DEPENDENTS: self.update_dependents,
            StepKind.CLEANUP_INTEGRATIONS: self.cleanup_integrations,
            StepKind.REFRESH_DASHBOARDS: self.refresh_dashboards,
            StepKind.REGISTER: self.register,
            StepKind.UNREGISTER: self.unregister,
        }
        self._handlers.update(overrides or {})

        self._hooks: Dict[IntegrationHook, HookHandler] = {
            IntegrationHook.MONITORING_TARGETS: self.monitoring_targets,
            IntegrationHook.VALIDATOR_ENDPOINTS: self.validator_endpoints,
            IntegrationHook.SIGNER_LINK: self.signer_link,
            IntegrationHook.COLLECTOR_ATTACH: self.collector_attach,
        }

        missing = [s.value for s in StepKind if s not in self._handlers]
        if missing:
            raise ConfigurationError(f"No handler registered for step(s): {', '.join(missing)}")
        missing = [h.value for h in IntegrationHook if h not in self._hooks]
        if missing:
            raise ConfigurationError(f"No handler registered for hook(s): {', '.join(missing)}")

    def __contains__(self, step) -> bool:
        return step in self._handlers

    def handler_for(self, step: StepKind) -> StepHandler:
        try:
            return self._handlers[step]
        except (KeyError, TypeError):
            raise ConfigurationError(f"Unknown step '{step}'") from None

    def build_context(self, instance: ServiceInstance, flow: FlowDefinition,
                      action: LifecycleAction, options: ActionOptions) -> StepContext:
        """
        Reads live state and instantiates the resource patterns for the next step.
        The instance is reloaded from disk when it is installed, so earlier steps'
        configuration changes are visible.
        """
        if self.store.exists(instance.name):
            instance = self.store.load(instance.name)
        fleet = [i for i in self.store.discover() if i.name != instance.name] + [instance]
        networks = self.reconciler.required_networks(instance, fleet)
        return StepContext(
            instance=instance,
            flow=flow,
            action=action,
            options=options,
            patterns=flow.patterns_for(instance, networks),
            fleet=fleet,
        )

    # Matching

    def _owned_by_other(self, resource: str, ctx: StepContext) -> bool:
        """
        True when a name matched by this instance's patterns belongs to another
        instance whose name extends this one (vero / vero-monitor).
        """
        for other in ctx.others:
            if len(other.name) <= len(ctx.name) or not other.name.startswith(ctx.name):
                continue
            if resource == other.name or resource.startswith((f"{other.name}-", f"{other.name}_")):
                return True
        return False

    def matching_containers(self, ctx: StepContext) -> List[ContainerInfo]:
        found = {}
        for pattern in ctx.patterns.containers:
            for container in self.runtime.list_containers(pattern):
                if not self._owned_by_other(container.name, ctx):
                    found.setdefault(container.name, container)
        return list(found.values())

    def matching_volumes(self, ctx: StepContext) -> List[str]:
        found = []
        for pattern in ctx.patterns.volumes:
            for volume in self.runtime.list_volumes(pattern):
                if volume not in found and not self._owned_by_other(volume, ctx):
                    found.append(volume)
        return found

    # Filesystem and configuration

    def create_directories(self, ctx: StepContext) -> None:
        for directory in ctx.patterns.directories:
            directory.mkdir(parents=True, exist_ok=True)
            for sub in SUBDIRECTORIES.get(ctx.instance.service_type, ()):
                (directory / sub).mkdir(parents=True, exist_ok=True)

    def copy_configs(self, ctx: StepContext) -> None:
        instance = ctx.instance
        if instance.env_file.exists():
            instance = self.store.update(instance, dict(instance.configuration))
        else:
            self.store.save(instance)
        self.converter.write(instance, ctx.patterns.networks)
        self.converter.write_scrape_config(instance, ctx.fleet)

    def update_config(self, ctx: StepContext) -> None:
        instance = self.store.update(ctx.instance, dict(ctx.options.config))
        networks = self.reconciler.required_networks(instance, ctx.fleet)
        self.converter.write(instance, networks)

    def remove_directories(self, ctx: StepContext) -> None:
        if self.store.delete(ctx.instance):
            logger.info("Removed %s", ctx.instance.directory)

    # Networking

    def setup_networking(self, ctx: StepContext) -> None:
        for network in ctx.patterns.networks:
            if self.runtime.create_network(network):
                logger.info("Created network %s", network)

    def ensure_networks(self, ctx: StepContext) -> None:
        self.setup_networking(ctx)
        if self.converter.declared_networks(ctx.instance) != list(ctx.patterns.networks):
            self.converter.write(ctx.instance, ctx.patterns.networks)

    def connect_to_ethnodes(self, ctx: StepContext) -> None:
        refs = self.reconciler.referenced_ethnodes(ctx.instance, ctx.fleet)
        if not refs:
            logger.warning("%s references no installed ethnode", ctx.name)
            return
        networks = [self.settings.isolated_network(name) for name in refs]
        for network in networks:
            self.runtime.create_network(network)
        for entry in self.reconciler.connect_containers(self.matching_containers(ctx), networks):
            logger.info("Connected %s", entry)

    def remove_networks(self, ctx: StepContext) -> None:
        for fate in self.reconciler.network_fates(ctx.instance, ctx.fleet):
            if fate.will_remove:
                if self.runtime.remove_network(fate.name):
                    logger.info("Removed network %s", fate.name)
            elif fate.exists:
                logger.info("Keeping network %s: %s", fate.name, fate.reason)

    # Containers and volumes

    def start_services(self, ctx: StepContext) -> None:
        self.runtime.start_group(ctx.instance.directory)

    def stop_services(self, ctx: StepContext) -> None:
        self.runtime.stop_group(ctx.instance.directory, self.settings.stop_timeout)
        for container in self.matching_containers(ctx):
            if container.running:
                self.runtime.stop_container(container.name)

    def pull_images(self, ctx: StepContext) -> None:
        self.runtime.pull_group(ctx.instance.directory)

    def recreate_services(self, ctx: StepContext) -> None:
        self.runtime.recreate_group(ctx.instance.directory)

    def health_check(self, ctx: StepContext) -> None:
        attempts = max(1, self.settings.health_check_attempts)
        retrying = Retrying(
            stop=stop_after_attempt(attempts),
            wait=wait_fixed(self.settings.health_check_interval),
            retry=retry_if_result(lambda running: not running),
        )
        try:
            retrying(self.runtime.is_group_running, ctx.instance.directory)
        except RetryError:
            raise StepFailure(StepKind.HEALTH_CHECK.value,
                              f"{ctx.name} has no running containers after {attempts} checks") from None

    def remove_containers(self, ctx: StepContext) -> None:
        for container in self.matching_containers(ctx):
            self.runtime.remove_container(container.name)
            logger.info("Removed container %s", container.name)

    def remove_volumes(self, ctx: StepContext) -> None:
        for volume in self.matching_volumes(ctx):
            self.runtime.remove_volume(volume)
            logger.info("Removed volume %s", volume)

    # Cross-service

    def _run_hooks(self, ctx: StepContext, phase: IntegrationPhase, step: StepKind) -> None:
        if not ctx.options.with_integrations:
            return
        errors = []
        for target, hook in ctx.flow.integration_hooks.items():
            try:
                self._hooks[hook](ctx, phase)
            except Exception as e:
                logger.warning("%s hook for %s (%s) failed: %s", hook.value, ctx.name, target, e)
                errors.append(f"{target}: {e}")
        if errors:
            raise NonCriticalStepFailure(step.value, "; ".join(errors))

    def integrate(self, ctx: StepContext) -> None:
        self._run_hooks(ctx, IntegrationPhase.INTEGRATE, StepKind.INTEGRATE)

    def cleanup_integrations(self, ctx: StepContext) -> None:
        self._run_hooks(ctx, IntegrationPhase.CLEANUP, StepKind.CLEANUP_INTEGRATIONS)

    def update_dependents(self, ctx: StepContext) -> None:
        kind = ctx.instance.service_type
        affected = []
        for other in ctx.others:
            if other.service_type not in ctx.flow.dependents:
                continue
            if kind == ServiceType.ETHNODE and other.service_type == ServiceType.VALIDATOR:
                updates = prune_ethnode(other.configuration, ctx.name)
                if not updates:
                    continue
                updated = self.store.update(other, updates)
                affected.append(other.name)
                if not referenced_ethnodes(updated.configuration):
                    logger.warning("%s has no beacon endpoints left after removing %s", other.name, ctx.name)
            elif kind == ServiceType.ETHNODE and other.service_type == ServiceType.PLUGIN:
                if ctx.name in self.reconciler.referenced_ethnodes(other, ctx.fleet):
                    logger.warning("%s targets %s, which is being removed; reconfigure it", other.name, ctx.name)
            elif kind == ServiceType.SIGNER:
                logger.warning("%s signs through %s, which is being removed", other.name, ctx.name)

        if not affected:
            return
        remaining = [i for i in self.store.discover() if i.name != ctx.name]
        report = self.reconciler.reconcile(remaining, prune=False, only=affected)
        if report.failures:
            raise NonCriticalStepFailure(
                StepKind.UPDATE_DEPENDENTS.value,
                "; ".join(f"{k}: {v}" for k, v in report.failures.items()),
            )

    def refresh_dashboards(self, ctx: StepContext) -> None:
        renderer = self.renderer_factory(ctx.fleet)
        if ctx.instance.service_type == ServiceType.MONITORING:
            names = [i.name for i in ctx.others]
        else:
            names = [ctx.name]
        for name in names:
            renderer.add_dashboard(name)
        renderer.reload()

    def register(self, ctx: StepContext) -> None:
        self.registry.register(ctx.instance)

    def unregister(self, ctx: StepContext) -> None:
        self.registry.unregister(ctx.name)

    # Integration hooks

    def _reconcile_monitoring(self, fleet: Sequence[ServiceInstance]) -> None:
        monitors = [i.name for i in fleet if i.service_type == ServiceType.MONITORING]
        if not monitors:
            return
        report = self.reconciler.reconcile(fleet, prune=False, only=monitors)
        if report.failures:
            raise StepFailure("monitoring_targets", "; ".join(f"{k}: {v}" for k, v in report.failures.items()))

    def monitoring_targets(self, ctx: StepContext, phase: IntegrationPhase) -> None:
        renderer = self.renderer_factory(ctx.fleet)
        if phase == IntegrationPhase.INTEGRATE:
            renderer.add_dashboard(ctx.name)
            renderer.reload()
            self._reconcile_monitoring(ctx.fleet)
        else:
            renderer.remove_dashboard(ctx.name)
            renderer.reload()
            self._reconcile_monitoring(ctx.others)

    def validator_endpoints(self, ctx: StepContext, phase: IntegrationPhase) -> None:
        if phase == IntegrationPhase.CLEANUP:
            # Endpoint lists are pruned by update_dependents
            return
        validators = [
            v.name for v in ctx.others
            if v.service_type == ServiceType.VALIDATOR
            and ctx.name in self.reconciler.referenced_ethnodes(v, ctx.fleet)
        ]
        if validators:
            report = self.reconciler.reconcile(ctx.fleet, prune=False, only=validators)
            if report.failures:
                raise StepFailure("validator_endpoints", "; ".join(report.failures.values()))

    def signer_link(self, ctx: StepContext, phase: IntegrationPhase) -> None:
        signers = [i for i in ctx.fleet if i.service_type == ServiceType.SIGNER]
        if ctx.instance.service_type == ServiceType.VALIDATOR:
            if phase == IntegrationPhase.INTEGRATE and not signers:
                logger.warning("%s is installed but no remote signer is; it cannot sign until one is", ctx.name)
            return
        if phase == IntegrationPhase.INTEGRATE:
            self.runtime.create_network(self.settings.signer_network)
            validators = [i.name for i in ctx.others if i.service_type == ServiceType.VALIDATOR]
            if validators:
                self.reconciler.reconcile(ctx.fleet, prune=False, only=validators)
        else:
            for validator in ctx.others:
                if validator.service_type == ServiceType.VALIDATOR:
                    logger.warning("%s will lose its remote signer %s", validator.name, ctx.name)

    def collector_attach(self, ctx: StepContext, phase: IntegrationPhase) -> None:
        if phase != IntegrationPhase.INTEGRATE:
            return
        name = ctx.name
        self.scheduler.schedule(self.settings.monitoring_attach_delay, f"{name}-collector-attach",
                                lambda: self.attach_collector(name))

    def attach_collector(self, name: str) -> List[str]:
        """
        Connects the metrics collector of a monitoring instance to every Ethnode
        network it is missing. Runs detached; outcomes are only logged.
        """
        if not self.store.exists(name):
            logger.info("Collector attach skipped: %s is no longer installed", name)
            return []
        monitoring = self.store.load(name)
        if not self.runtime.is_group_running(monitoring.directory):
            logger.info("Collector attach skipped: %s is not running", name)
            return []
        fleet = self.store.discover()
        networks = [
            self.settings.isolated_network(n) for n in self.reconciler.ethnode_names(fleet)
            if self.runtime.network_exists(self.settings.isolated_network(n))
        ]
        collectors = self.runtime.list_containers(f"{name}-prometheus*")
        attached = self.reconciler.connect_containers(collectors, networks)
        for entry in attached:
            logger.info("Collector attached: %s", entry)
        return attached
