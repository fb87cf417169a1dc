"""
Reports produced by the lifecycle engine, the reconciler and the front door.
"""
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel

from .flow_definition import Criticality, LifecycleAction
from .service_instance import ServiceType


class ActionOptions(BaseModel):
    """
    Caller options for a front-door operation.
    """
    interactive: bool = False
    dry_run: bool = False
    with_integrations: bool = True
    include_mevboost: bool = True
    # Extra key=value pairs written into the instance configuration (install/update)
    config: Dict[str, str] = {}


@dataclass
class ContainerInfo:
    """A container as reported by the runtime."""

    name: str
    state: str = "unknown"
    ports: str = ""
    networks: List[str] = field(default_factory=list)

    @property
    def running(self) -> bool:
        return self.state == "running"


@dataclass
class StepOutcome:
    """Result of one executed step."""

    step: str
    criticality: Criticality
    succeeded: bool
    error: Optional[str] = None


@dataclass
class LifecycleResult:
    """
    Aggregate result of running one action's step sequence.
    """
    service_name: str
    action: LifecycleAction
    steps_run: List[StepOutcome] = field(default_factory=list)
    non_critical_failures: List[StepOutcome] = field(default_factory=list)
    aborted: bool = False
    failed_step: Optional[str] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return not self.aborted


@dataclass
class ReconcileReport:
    """
    What one reconciliation pass changed.
    """
    created: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    rebuilt: List[str] = field(default_factory=list)
    restarted: List[str] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return bool(self.created or self.removed or self.rebuilt or self.restarted)


@dataclass
class NetworkFate:
    """A network listed in a removal plan and what removal would do to it."""

    name: str
    exists: bool
    will_remove: bool
    reason: str = ""


@dataclass
class RemovalPlan:
    """
    Concrete, live view of what removing an instance would touch.
    """
    service_name: str
    service_type: ServiceType
    containers: List[str] = field(default_factory=list)
    volumes: List[str] = field(default_factory=list)
    networks: List[NetworkFate] = field(default_factory=list)
    directories: List[Path] = field(default_factory=list)
    integrations: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def render(self) -> str:
        lines = [f"Removal plan for {self.service_name} ({self.service_type.value}):"]
        for title, names in (("Containers to remove:", self.containers),
                             ("Volumes to remove:", self.volumes)):
            lines.append(title)
            if names:
                lines.extend(f"  - {name}" for name in names)
            else:
                lines.append("  - none found")
        lines.append("Networks:")
        for fate in self.networks:
            if not fate.exists:
                lines.append(f"  - {fate.name} (not found)")
            elif fate.will_remove:
                lines.append(f"  - {fate.name} (remove)")
            else:
                lines.append(f"  - {fate.name} (kept: {fate.reason})")
        lines.append("Directories to remove:")
        lines.extend(f"  - {path}" for path in self.directories)
        if self.integrations:
            lines.append("Integrations to update:")
            lines.extend(f"  - {item}" for item in self.integrations)
        if self.warnings:
            lines.append("")
            lines.extend(f"! {warning}" for warning in self.warnings)
        return "\n".join(lines)


@dataclass
class ServiceStatus:
    """Live status of one instance."""

    name: str
    service_type: ServiceType
    state: str
    containers: List[ContainerInfo] = field(default_factory=list)
    networks: List[str] = field(default_factory=list)
    volume_count: int = 0


@dataclass
class OperationResult:
    """
    What the front door returns for any action.
    """
    action: str
    service_name: Optional[str] = None
    lifecycle: Optional[LifecycleResult] = None
    plan: Optional[RemovalPlan] = None
    status: Optional[ServiceStatus] = None
    services: List[ServiceStatus] = field(default_factory=list)
    cancelled: bool = False
    # Configuration an install wrote, or would write on a dry run
    configuration: Dict[str, str] = field(default_factory=dict)

    @property
    def exit_code(self) -> int:
        if self.cancelled:
            return 1
        if self.lifecycle is not None and not self.lifecycle.succeeded:
            return 1
        return 0
