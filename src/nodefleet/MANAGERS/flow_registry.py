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
The static, read-only table of lifecycle flows, one per service type.
"""
from types import MappingProxyType
from typing import Iterable, Mapping

from ..MODELS.errors import ConfigurationError
from ..MODELS.flow_definition import FlowDefinition, IntegrationHook, LifecycleAction, StepKind
from ..MODELS.service_instance import ServiceType
from ..RUNNERS.dependency_resolver import DependencyResolver

S = StepKind
A = LifecycleAction

REMOVE_STEPS = (
    S.STOP_SERVICES,
    S.UPDATE_DEPENDENTS,
    S.CLEANUP_INTEGRATIONS,
    S.REMOVE_CONTAINERS,
    S.REMOVE_VOLUMES,
    S.REMOVE_NETWORKS,
    S.REMOVE_DIRECTORIES,
    S.UNREGISTER,
)

UPDATE_STEPS = (
    S.UPDATE_CONFIG,
    S.PULL_IMAGES,
    S.ENSURE_NETWORKS,
    S.RECREATE_SERVICES,
    S.HEALTH_CHECK,
    S.REFRESH_DASHBOARDS,
)


def _lifecycle(install, start, connects_to_ethnodes=False):
    if connects_to_ethnodes:
        install = install[:3] + (S.CONNECT_TO_ETHNODES,) + install[3:]
        start = start[:1] + (S.CONNECT_TO_ETHNODES,) + start[1:]
    return MappingProxyType({
        A.INSTALL: install,
        A.START: start,
        A.STOP: (S.STOP_SERVICES,),
        A.UPDATE: UPDATE_STEPS,
        A.REMOVE: REMOVE_STEPS,
    })


INSTALL_STEPS = (
    S.CREATE_DIRECTORIES,
    S.COPY_CONFIGS,
    S.SETUP_NETWORKING,
    S.START_SERVICES,
    S.INTEGRATE,
    S.REGISTER,
)

START_STEPS = (
    S.ENSURE_NETWORKS,
    S.START_SERVICES,
    S.HEALTH_CHECK,
)

CONTAINER_LOSS = "Container and volumes will be deleted"


def default_flows() -> Iterable[FlowDefinition]:
    """
    The built-in flow for every service type.
    """
    return (
        FlowDefinition(
            service_type=ServiceType.ETHNODE,
            lifecycle=_lifecycle(INSTALL_STEPS, START_STEPS),
            dependents=(ServiceType.VALIDATOR, ServiceType.PLUGIN),
            integration_hooks=MappingProxyType({
                "monitoring": IntegrationHook.MONITORING_TARGETS,
                "validators": IntegrationHook.VALIDATOR_ENDPOINTS,
            }),
            risk_warnings=(
                "All blockchain data will be lost",
                CONTAINER_LOSS,
                "Network isolation will be removed",
                "Monitoring integration will be cleaned up",
                "Validator beacon endpoints will be updated",
            ),
        ),
        FlowDefinition(
            service_type=ServiceType.VALIDATOR,
            lifecycle=_lifecycle(INSTALL_STEPS, START_STEPS, connects_to_ethnodes=True),
            dependencies=(ServiceType.ETHNODE,),
            integration_hooks=MappingProxyType({
                "monitoring": IntegrationHook.MONITORING_TARGETS,
                "signer": IntegrationHook.SIGNER_LINK,
            }),
            risk_warnings=(
                "All validator configuration will be lost",
                CONTAINER_LOSS,
                "Beacon node connections will be removed",
                "Remote signing configuration will be lost",
                "Attestation and validation history will be lost",
                "Keys remain in web3signer - validator will stop but keys are safe",
            ),
        ),
        FlowDefinition(
            service_type=ServiceType.SIGNER,
            lifecycle=_lifecycle(INSTALL_STEPS, START_STEPS),
            container_suffixes=("", "-*", "_*"),
            dependents=(ServiceType.VALIDATOR,),
            integration_hooks=MappingProxyType({
                "monitoring": IntegrationHook.MONITORING_TARGETS,
                "validators": IntegrationHook.SIGNER_LINK,
            }),
            risk_warnings=(
                "All keystore configurations will be lost",
                "The signer database will be deleted",
                CONTAINER_LOSS,
                "This action cannot be undone",
                "Removed keys cannot be used for validation",
                "Validators using this signer will stop working",
            ),
        ),
        FlowDefinition(
            service_type=ServiceType.MONITORING,
            lifecycle=_lifecycle(INSTALL_STEPS, START_STEPS + (S.INTEGRATE,)),
            container_suffixes=("-*",),
            integration_hooks=MappingProxyType({
                "ethnodes": IntegrationHook.COLLECTOR_ATTACH,
            }),
            risk_warnings=(
                "All Grafana dashboards will be lost",
                "All Prometheus metrics history will be deleted",
                CONTAINER_LOSS,
                "This action cannot be undone",
                "All services will lose monitoring and observability",
            ),
        ),
        FlowDefinition(
            service_type=ServiceType.PLUGIN,
            lifecycle=_lifecycle(INSTALL_STEPS, START_STEPS, connects_to_ethnodes=True),
            dependencies=(ServiceType.ETHNODE,),
            integration_hooks=MappingProxyType({
                "monitoring": IntegrationHook.MONITORING_TARGETS,
            }),
            risk_warnings=(
                "All plugin configuration and keys stored with it will be lost",
                CONTAINER_LOSS,
            ),
        ),
    )


def validate_flow(flow: FlowDefinition) -> None:
    """
    Checks one flow: every action has a non-empty step list and every step is
    a known step kind.

    :raises ConfigurationError: On the first problem found.
    """
    name = flow.service_type.value
    for action in LifecycleAction:
        steps = flow.steps_for(action)
        if not steps:
            raise ConfigurationError(f"Flow '{name}' defines no steps for '{action.value}'")
        for step in steps:
            if not isinstance(step, StepKind):
                raise ConfigurationError(f"Flow '{name}' uses unknown step '{step}' in '{action.value}'")
    for hook in flow.integration_hooks.values():
        if not isinstance(hook, IntegrationHook):
            raise ConfigurationError(f"Flow '{name}' binds unknown integration hook '{hook}'")


def build_flow_registry(flows: Iterable[FlowDefinition] = None) -> Mapping[ServiceType, FlowDefinition]:
    """
    Builds and validates the registry. Every service type must have exactly
    one flow and the declared dependencies must not form a cycle.

    :param flows: Flow definitions; the built-in ones when omitted.
    :return: Read-only mapping from service type to its flow.
    :raises ConfigurationError: If the flows are malformed.
    """
    registry = {}
    for flow in default_flows() if flows is None else flows:
        if flow.service_type in registry:
            raise ConfigurationError(f"Duplicate flow for '{flow.service_type.value}'")
        validate_flow(flow)
        registry[flow.service_type] = flow

    missing = [t.value for t in ServiceType if t not in registry]
    if missing:
        raise ConfigurationError(f"No flow defined for: {', '.join(missing)}")

    DependencyResolver({t: f.dependencies for t, f in registry.items()}).resolve_order()
    return MappingProxyType(registry)


FLOW_REGISTRY: Mapping[ServiceType, FlowDefinition] = build_flow_registry()


def get_flow(service_type: ServiceType) -> FlowDefinition:
    try:
        return FLOW_REGISTRY[service_type]
    except KeyError:
        raise ConfigurationError(f"No flow defined for '{service_type}'") from None
