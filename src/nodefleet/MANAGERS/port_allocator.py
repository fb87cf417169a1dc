"""
Deterministic port allocation from categorized ranges.

Every call reads the set of used ports fresh; nothing is cached between
allocations. A port found free here can still be taken by another process
before the service binds it.
"""
import logging
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Set

from ..MODELS.errors import AllocationExhausted, ConfigurationError
from ..MODELS.port_allocation import (
    OPTIONAL_SPECS,
    PORT_CATEGORIES,
    PORT_PLANS,
    SERVICE_PORT_SPECS,
    PortCategory,
    ServicePortSpec,
)
from ..MODELS.service_instance import ServiceInstance, ServiceType
from ..RUNNERS.container_runtime import RuntimeObserver
from ..UTILS.port_finder import is_port_free, listening_ports

logger = logging.getLogger(__name__)

PortProbe = Callable[[int], bool]


def collect_used_ports(observer: Optional[RuntimeObserver],
                       instances: Iterable[ServiceInstance]) -> Set[int]:
    """
    Union of every port considered taken on this host.

    :param observer: Live runtime view; published ports of all containers, stopped ones included.
    :param instances: Installed instances whose configured ports are reserved.
    :return: The used port set.
    """
    used = set(listening_ports())
    if observer is not None:
        used.update(observer.published_host_ports())
    for instance in instances:
        used.update(instance.port_values())
    return used


def _category(spec: ServicePortSpec) -> PortCategory:
    try:
        return PORT_CATEGORIES[spec.category]
    except KeyError:
        raise ConfigurationError(f"Port spec '{spec.name}' uses unknown category '{spec.category}'") from None


def allocate(spec: ServicePortSpec, used_ports: Set[int], probe: PortProbe = is_port_free) -> List[int]:
    """
    Finds ports for one spec within its category range.

    For consecutive specs the lowest base (stepping by scan_increment) whose
    whole block is unused and passes the probe wins. Otherwise the range is
    walked by scan_increment, collecting free ports until port_count are found.

    :param spec: What to allocate.
    :param used_ports: Ports already taken; not modified.
    :param probe: Live availability check for a single port.
    :return: Allocated ports in increasing order.
    :raises AllocationExhausted: If the range has no room.
    """
    category = _category(spec)
    step = max(1, spec.scan_increment)

    def free(port):
        return port not in used_ports and probe(port)

    if spec.consecutive_required:
        base = category.range_start
        while base + spec.port_count <= category.range_end:
            block = list(range(base, base + spec.port_count))
            if all(free(p) for p in block):
                logger.debug("Allocated %s for %s", block, spec.name)
                return block
            base += step
        raise AllocationExhausted(spec.name, category.name, spec.port_count, 0)

    found = []
    for port in range(category.range_start, category.range_end, step):
        if free(port):
            found.append(port)
            if len(found) == spec.port_count:
                logger.debug("Allocated %s for %s", found, spec.name)
                return found
    raise AllocationExhausted(spec.name, category.name, spec.port_count, len(found))


def allocate_instance_ports(service_type: ServiceType, used_ports: Set[int],
                            probe: PortProbe = is_port_free,
                            include_mevboost: bool = True) -> Dict[str, str]:
    """
    Runs the port plan of a service type. Each sub-allocation is added to a
    working copy of the used set before the next one, so no two keys collide.

    :param service_type: Type being installed.
    :param used_ports: Ports already taken; not modified.
    :param probe: Live availability check for a single port.
    :param include_mevboost: Whether to allocate the optional relay port.
    :return: Ordered mapping of configuration key to port, as strings.
    :raises AllocationExhausted: If any sub-allocation fails; nothing is returned.
    """
    working = set(used_ports)
    assigned: Dict[str, str] = {}
    for spec_name, keys in PORT_PLANS.get(service_type, ()):
        if spec_name in OPTIONAL_SPECS and not include_mevboost:
            continue
        spec = SERVICE_PORT_SPECS[spec_name]
        ports = allocate(spec, working, probe)
        working.update(ports)
        for key, port in zip(keys, ports):
            assigned[key] = str(port)
    return assigned


def validate_port_config(categories: Mapping[str, PortCategory] = None,
                         specs: Mapping[str, ServicePortSpec] = None) -> None:
    """
    Checks every category range and that every spec names a known category.

    :raises ConfigurationError: On the first problem found.
    """
    categories = PORT_CATEGORIES if categories is None else categories
    specs = SERVICE_PORT_SPECS if specs is None else specs
    for category in categories.values():
        if not 1 <= category.range_start < category.range_end <= 65536:
            raise ConfigurationError(
                f"Invalid range for category '{category.name}': "
                f"[{category.range_start}, {category.range_end})"
            )
    for spec in specs.values():
        if spec.category not in categories:
            raise ConfigurationError(f"Port spec '{spec.name}' uses unknown category '{spec.category}'")
        if spec.port_count < 1 or spec.scan_increment < 1:
            raise ConfigurationError(f"Port spec '{spec.name}' needs a positive count and increment")
        width = categories[spec.category].range_end - categories[spec.category].range_start
        if spec.port_count > width:
            raise ConfigurationError(f"Port spec '{spec.name}' does not fit category '{spec.category}'")
