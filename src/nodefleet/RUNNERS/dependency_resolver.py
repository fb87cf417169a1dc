"""
Dependency resolution for service types and instances, to determine the order
in which they are reconciled, started and stopped.
"""
from typing import Iterable, List, Mapping, Sequence, TypeVar

from ..MODELS.errors import ConfigurationError
from ..MODELS.service_instance import ServiceInstance, ServiceType

T = TypeVar("T")


class DependencyResolver:
    """
    Resolves the order of service types from the dependencies their flows declare.
    """
    def __init__(self, dependencies: Mapping[ServiceType, Sequence[ServiceType]]):
        """
        :param dependencies: For each type, the types it depends on.
        """
        self.dependencies = {t: tuple(deps) for t, deps in dependencies.items()}

    def resolve_order(self) -> List[ServiceType]:
        """
        Determines the type order using a topological sort: dependencies first.

        :return: Every known type, dependencies before dependents.
        :raises ConfigurationError: If a circular dependency is detected.
        """
        ordered = []
        visited = set()
        processing = set()

        def visit(service_type):
            if service_type in processing:
                raise ConfigurationError(f"Circular dependency detected involving {service_type.value}")
            if service_type not in visited:
                processing.add(service_type)
                for dep in self.dependencies.get(service_type, ()):
                    visit(dep)
                processing.remove(service_type)
                visited.add(service_type)
                ordered.append(service_type)

        for service_type in ServiceType:
            visit(service_type)

        return ordered

    def order_instances(self, instances: Iterable[ServiceInstance]) -> List[ServiceInstance]:
        """
        Sorts instances so that every instance comes after the types it depends on.
        Within one type, names keep their natural order (ethnode2 before ethnode10).
        """
        rank = {t: i for i, t in enumerate(self.resolve_order())}
        return sorted(instances, key=lambda i: (rank[i.service_type], natural_key(i.name)))


def natural_key(name: str) -> tuple:
    """
    Sort key comparing embedded numbers numerically.
    """
    parts = []
    chunk = ""
    digits = False
    for ch in name:
        if ch.isdigit() != digits and chunk:
            parts.append((1, int(chunk), "") if digits else (0, 0, chunk))
            chunk = ""
        digits = ch.isdigit()
        chunk += ch
    if chunk:
        parts.append((1, int(chunk), "") if digits else (0, 0, chunk))
    return tuple(parts)


def natural_sorted(names: Iterable[T]) -> List[T]:
    return sorted(names, key=lambda n: natural_key(str(n)))
