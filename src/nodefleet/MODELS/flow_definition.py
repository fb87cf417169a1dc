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
Models describing per-type lifecycle flows: actions, steps, hooks and resource patterns.
"""
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Mapping, Optional, Sequence, Tuple

from .service_instance import ServiceInstance, ServiceType


class LifecycleAction(str, Enum):
    """Actions a flow defines an ordered step list for."""

    INSTALL = "install"
    START = "start"
    STOP = "stop"
    UPDATE = "update"
    REMOVE = "remove"


class Criticality(str, Enum):
    """Whether a step failure aborts the remaining sequence."""

    CRITICAL = "critical"
    NON_CRITICAL = "non-critical"


class StepKind(str, Enum):
    """
    Closed set of lifecycle steps. Every member must have a handler in the
    step dispatch table.
    """

    # Filesystem and configuration
    CREATE_DIRECTORIES = "create_directories"
    COPY_CONFIGS = "copy_configs"
    UPDATE_CONFIG = "update_config"
    REMOVE_DIRECTORIES = "remove_directories"

    # Networking
    SETUP_NETWORKING = "setup_networking"
    ENSURE_NETWORKS = "ensure_networks"
    CONNECT_TO_ETHNODES = "connect_to_ethnodes"
    REMOVE_NETWORKS = "remove_networks"

    # Containers and volumes
    START_SERVICES = "start_services"
    STOP_SERVICES = "stop_services"
    PULL_IMAGES = "pull_images"
    RECREATE_SERVICES = "recreate_services"
    HEALTH_CHECK = "health_check"
    REMOVE_CONTAINERS = "remove_containers"
    REMOVE_VOLUMES = "remove_volumes"

    # Cross-service
    INTEGRATE = "integrate"
    UPDATE_DEPENDENTS = "update_dependents"
    CLEANUP_INTEGRATIONS = "cleanup_integrations"
    REFRESH_DASHBOARDS = "refresh_dashboards"
    REGISTER = "register"
    UNREGISTER = "unregister"

    @property
    def criticality(self) -> Criticality:
        if self in NON_CRITICAL_STEPS:
            return Criticality.NON_CRITICAL
        return Criticality.CRITICAL


# Steps that touch other services or advisory state; everything else owns the
# instance's own resources.
NON_CRITICAL_STEPS = frozenset({
    StepKind.INTEGRATE,
    StepKind.UPDATE_DEPENDENTS,
    StepKind.CLEANUP_INTEGRATIONS,
    StepKind.REFRESH_DASHBOARDS,
    StepKind.REGISTER,
    StepKind.UNREGISTER,
})


class IntegrationHook(str, Enum):
    """Cross-service integration routines a flow can bind."""

    MONITORING_TARGETS = "monitoring_targets"
    VALIDATOR_ENDPOINTS = "validator_endpoints"
    SIGNER_LINK = "signer_link"
    COLLECTOR_ATTACH = "collector_attach"


class IntegrationPhase(str, Enum):
    """Whether a hook is run to wire an instance in or to clean it out."""

    INTEGRATE = "integrate"
    CLEANUP = "cleanup"


@dataclass(frozen=True)
class ResourcePatternSet:
    """
    Concrete glob patterns for everything an instance owns or joins.
    """
    containers: Tuple[str, ...] = ()
    volumes: Tuple[str, ...] = ()
    networks: Tuple[str, ...] = ()
    directories: Tuple[Path, ...] = ()


@dataclass(frozen=True)
class FlowDefinition:
    """
    Static description of one service type: how its resources are named, the
    ordered steps of each action, and how it relates to other types.
    """
    service_type: ServiceType
    lifecycle: Mapping[LifecycleAction, Tuple[StepKind, ...]]
    container_suffixes: Tuple[str, ...] = ("", "-*")
    volume_suffixes: Tuple[str, ...] = ("_*", "-*")
    # Fixed resource name prefix for singletons whose containers are not named after the instance
    resource_prefix: Optional[str] = None
    dependencies: Tuple[ServiceType, ...] = ()
    dependents: Tuple[ServiceType, ...] = ()
    integration_hooks: Mapping[str, IntegrationHook] = field(default_factory=dict)
    # Shown before a confirmed removal
    risk_warnings: Tuple[str, ...] = ()

    def steps_for(self, action: LifecycleAction) -> Tuple[StepKind, ...]:
        return tuple(self.lifecycle.get(action, ()))

    def patterns_for(self, instance: ServiceInstance, networks: Sequence[str]) -> ResourcePatternSet:
        """
        Instantiates the resource patterns for one instance.

        :param instance: The instance the patterns belong to.
        :param networks: Networks the instance is required to join.
        :return: Concrete pattern set.
        """
        base = self.resource_prefix or instance.name
        return ResourcePatternSet(
            containers=tuple(f"{base}{suffix}" for suffix in self.container_suffixes),
            volumes=tuple(f"{base}{suffix}" for suffix in self.volume_suffixes),
            networks=tuple(networks),
            directories=(instance.directory,),
        )
