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
The front door: one entry point for every action on the fleet.
"""
import logging
from typing import Callable, Dict, List, Optional

from ..MODELS.errors import ConfigurationError
from ..MODELS.flow_definition import FlowDefinition, LifecycleAction
from ..MODELS.port_allocation import PORT_CATEGORIES
from ..MODELS.results import ActionOptions, OperationResult, ReconcileReport, RemovalPlan, ServiceStatus
from ..MODELS.service_instance import ServiceInstance, ServiceType, resolve_service_type
from ..MODELS.settings import FleetSettings
from ..RUNNERS.container_runtime import ContainerRuntime, DockerCLIRuntime
from ..RUNNERS.dependency_resolver import DependencyResolver
from ..RUNNERS.lifecycle_executor import LifecycleExecutor
from ..UTILS.port_finder import is_port_free
from ..UTILS.session_lock import SessionLock
from .background_tasks import DetachedTaskScheduler
from .flow_registry import FLOW_REGISTRY, get_flow
from .instance_store import InstanceStore
from .network_manager import NetworkReconciler
from .port_allocator import allocate_instance_ports, collect_used_ports, validate_port_config
from .service_registry import ServiceRegistry
from .step_dispatch import RendererFactory, StepDispatchTable, default_renderer

logger = logging.getLogger(__name__)

MUTATING_ACTIONS = {a.value for a in LifecycleAction}
READ_ACTIONS = {"status", "list", "plan"}

CONSENSUS_API_PORT = 5052
EXECUTION_WS_PORT = 8546


class ServiceManager:
    """
    Resolves names to types, serializes mutating actions and hands them to the
    lifecycle executor.
    """
    def __init__(self, settings: Optional[FleetSettings] = None,
                 runtime: Optional[ContainerRuntime] = None,
                 renderer_factory: RendererFactory = default_renderer,
                 scheduler: Optional[DetachedTaskScheduler] = None,
                 probe: Callable[[int], bool] = is_port_free,
                 confirm: Optional[Callable[[str], bool]] = None,
                 echo: Optional[Callable[[str], None]] = None):
        """
        Initializes the manager and all collaborators.

        :param settings: Fleet settings; resolved from the environment when omitted.
        :param runtime: Container runtime; the docker CLI when omitted.
        :param renderer_factory: Picks the dashboard renderer for the current fleet.
        :param scheduler: Runs detached post-start tasks.
        :param probe: Live port availability check used during allocation.
        :param confirm: Asks the user to confirm a removal plan; declines when omitted.
        :param echo: Shows removal plans to the user.
        """
        self.settings = settings or FleetSettings.from_env()
        self.runtime = runtime or DockerCLIRuntime(self.settings.docker_binary, self.settings.stop_timeout)
        self.probe = probe
        self.confirm = confirm or (lambda message: False)
        self.echo = echo or (lambda message: logger.info("%s", message))

        validate_port_config()
        self.resolver = DependencyResolver({t: f.dependencies for t, f in FLOW_REGISTRY.items()})
        self.store = InstanceStore(self.settings)
        self.registry = ServiceRegistry(self.settings.registry_path)
        self.reconciler = NetworkReconciler(self.settings, self.runtime, self.resolver)
        self.dispatch = StepDispatchTable(
            self.settings, self.runtime, self.store, self.reconciler, self.registry,
            scheduler=scheduler, renderer_factory=renderer_factory,
        )
        self.executor = LifecycleExecutor(self.dispatch)

    def _lock(self) -> SessionLock:
        return SessionLock(self.settings.lock_path)

    def operate(self, action: str, service_name: Optional[str] = None,
                options: Optional[ActionOptions] = None) -> OperationResult:
        """
        Runs one action.

        :param action: install, remove, start, stop, update, status, list or plan.
        :param service_name: Target instance; not needed for list.
        :param options: Caller options.
        :return: The operation result.
        :raises ConfigurationError: Unknown action or service type, missing dependency.
        :raises OperationInProgress: Another mutating action is running.
        """
        options = options or ActionOptions()
        if action == "list":
            return OperationResult(action=action, services=self.list_services())
        if action not in MUTATING_ACTIONS | READ_ACTIONS:
            raise ConfigurationError(f"Unknown action '{action}'")
        if not service_name:
            raise ConfigurationError(f"Action '{action}' needs a service name")

        if action == "status":
            return OperationResult(action=action, service_name=service_name, status=self.status(service_name))
        if action == "plan" or (action == "remove" and options.dry_run):
            return OperationResult(action=action, service_name=service_name, plan=self.plan(service_name))

        with self._lock():
            handler = getattr(self, action)
            return handler(service_name, options)

    # Lifecycle actions; callers go through operate, which holds the session lock

    def install(self, name: str, options: ActionOptions) -> OperationResult:
        """
        Installs a new instance. An instance found on disk but never registered
        is a partial install and is resumed with its persisted configuration.
        """
        flow = get_flow(resolve_service_type(name))
        if self.store.exists(name) and self.registry.is_registered(name):
            raise ConfigurationError(f"Service '{name}' is already installed")

        fleet = [i for i in self.store.discover() if i.name != name]
        for dependency in flow.dependencies:
            if not any(i.service_type == dependency for i in fleet):
                raise ConfigurationError(
                    f"Service '{name}' requires an installed {dependency.value}; install one first"
                )

        if self.store.exists(name):
            configuration = dict(self.store.load(name).configuration)
            logger.info("Resuming partial install of %s", name)
        else:
            used = collect_used_ports(self.runtime, fleet)
            configuration = allocate_instance_ports(flow.service_type, used, self.probe, options.include_mevboost)
            configuration["COMPOSE_FILE"] = "compose.yml"
            configuration.update(self._default_configuration(flow, fleet))
        configuration.update(options.config)

        instance = self.store.new(name, configuration)
        if options.dry_run:
            return OperationResult(action="install", service_name=name, configuration=configuration)
        result = self.executor.execute(instance, flow, LifecycleAction.INSTALL, options)
        return OperationResult(action="install", service_name=name, lifecycle=result, configuration=configuration)

    def remove(self, name: str, options: ActionOptions) -> OperationResult:
        """
        Removes an instance. Removing an instance that is already gone succeeds.
        """
        flow = get_flow(resolve_service_type(name))
        instance = self._load_or_blank(name)
        if options.interactive:
            plan = self.build_plan(instance, flow)
            self.echo(plan.render())
            if not self.confirm(f"Remove {name}?"):
                logger.info("Removal of %s cancelled", name)
                return OperationResult(action="remove", service_name=name, plan=plan, cancelled=True)
        result = self.executor.execute(instance, flow, LifecycleAction.REMOVE, options)
        return OperationResult(action="remove", service_name=name, lifecycle=result)

    def start(self, name: str, options: ActionOptions) -> OperationResult:
        return self._run(name, LifecycleAction.START, options)

    def stop(self, name: str, options: ActionOptions) -> OperationResult:
        return self._run(name, LifecycleAction.STOP, options)

    def update(self, name: str, options: ActionOptions) -> OperationResult:
        return self._run(name, LifecycleAction.UPDATE, options)

    def _run(self, name: str, action: LifecycleAction, options: ActionOptions) -> OperationResult:
        flow = get_flow(resolve_service_type(name))
        instance = self.store.load(name)
        result = self.executor.execute(instance, flow, action, options)
        return OperationResult(action=action.value, service_name=name, lifecycle=result)

    def _load_or_blank(self, name: str) -> ServiceInstance:
        if self.store.exists(name):
            return self.store.load(name)
        return self.store.new(name, {})

    def _default_configuration(self, flow: FlowDefinition, fleet: List[ServiceInstance]) -> Dict[str, str]:
        """
        Upstream endpoints for types that depend on an Ethnode: the first one, in natural order.
        """
        ethnodes = self.reconciler.ethnode_names(fleet)
        if not ethnodes or ServiceType.ETHNODE not in flow.dependencies:
            return {}
        target = ethnodes[0]
        if flow.service_type == ServiceType.VALIDATOR:
            return {"BEACON_NODE_URLS": f"http://{target}-consensus:{CONSENSUS_API_PORT}"}
        return {
            "TARGET_NODE": target,
            "BEACON_NODE_URL": f"http://{target}-consensus:{CONSENSUS_API_PORT}",
            "EXECUTION_NODE_URL": f"ws://{target}-execution:{EXECUTION_WS_PORT}",
        }

    # Read-only views

    def build_plan(self, instance: ServiceInstance, flow: FlowDefinition) -> RemovalPlan:
        """
        Concrete, live view of what removing an instance would touch. No side effects.
        """
        ctx = self.dispatch.build_context(instance, flow, LifecycleAction.REMOVE, ActionOptions())
        integrations = [f"{target} ({hook.value})" for target, hook in flow.integration_hooks.items()]
        for other in ctx.others:
            if other.service_type not in flow.dependents:
                continue
            if instance.service_type != ServiceType.ETHNODE or \
                    instance.name in self.reconciler.referenced_ethnodes(other, ctx.fleet):
                integrations.append(f"dependent {other.name}")
        warnings = [f"This will permanently remove {instance.name}"] + list(flow.risk_warnings)
        return RemovalPlan(
            service_name=instance.name,
            service_type=instance.service_type,
            containers=[c.name for c in self.dispatch.matching_containers(ctx)],
            volumes=self.dispatch.matching_volumes(ctx),
            networks=self.reconciler.network_fates(instance, ctx.fleet),
            directories=[d for d in ctx.patterns.directories if d.exists()],
            integrations=integrations,
            warnings=warnings,
        )

    def plan(self, name: str) -> RemovalPlan:
        flow = get_flow(resolve_service_type(name))
        return self.build_plan(self._load_or_blank(name), flow)

    def status(self, name: str) -> ServiceStatus:
        """
        Live state of an installed instance.

        :raises ServiceNotFound: If it is not installed.
        """
        instance = self.store.load(name)
        return self._status(instance)

    def _status(self, instance: ServiceInstance) -> ServiceStatus:
        flow = get_flow(instance.service_type)
        ctx = self.dispatch.build_context(instance, flow, LifecycleAction.START, ActionOptions())
        containers = self.dispatch.matching_containers(ctx)
        if any(c.running for c in containers):
            state = "running"
        elif containers:
            state = "stopped"
        else:
            state = "not created"
        networks = []
        for container in containers:
            for net in container.networks:
                if net not in networks:
                    networks.append(net)
        return ServiceStatus(
            name=instance.name,
            service_type=instance.service_type,
            state=state,
            containers=containers,
            networks=networks,
            volume_count=len(self.dispatch.matching_volumes(ctx)),
        )

    def list_services(self) -> List[ServiceStatus]:
        """Every installed instance, dependencies first."""
        return [self._status(i) for i in self.resolver.order_instances(self.store.discover())]

    def reconcile(self, prune: bool = True) -> ReconcileReport:
        """Runs a full reconciliation pass over the installed fleet."""
        with self._lock():
            return self.reconciler.reconcile(self.store.discover(), prune=prune)

    def port_usage(self) -> Dict[str, List[int]]:
        """
        Used ports falling inside each port category, read live.
        """
        used = collect_used_ports(self.runtime, self.store.discover())
        return {
            name: sorted(p for p in used if p in category)
            for name, category in PORT_CATEGORIES.items()
        }

    def pending_tasks(self) -> int:
        return self.dispatch.scheduler.pending()

    def wait_for_detached(self, timeout: Optional[float] = None) -> None:
        """
        Blocks until detached post-start tasks have run. A process that exits
        right after an action calls this first, or the tasks die with it.
        """
        self.dispatch.scheduler.join(timeout)
