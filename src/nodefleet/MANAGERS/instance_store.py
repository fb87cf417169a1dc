"""
Discovery and persistence of installed instances under the fleet root.
"""
import logging
import shutil
from pathlib import Path
from typing import Dict, List, Mapping

from ..MODELS.errors import ConfigurationError, ServiceNotFound
from ..MODELS.service_instance import ServiceInstance, resolve_service_type
from ..MODELS.settings import FleetSettings
from ..PARSERS.env_parser import EnvParser
from ..RUNNERS.dependency_resolver import natural_key

logger = logging.getLogger(__name__)


class InstanceStore:
    """
    Maps instance directories to ServiceInstance objects. An instance exists
    when <root>/<name>/.env exists and the name follows the naming convention.
    """
    def __init__(self, settings: FleetSettings):
        """
        :param settings: Provides the root directory instances live in.
        """
        self.settings = settings
        self.parser = EnvParser()

    def exists(self, name: str) -> bool:
        return (self.settings.instance_dir(name) / ".env").is_file()

    def discover(self) -> List[ServiceInstance]:
        """
        Returns every installed instance, in natural name order.
        Directories whose names match no service type are ignored.
        """
        root: Path = self.settings.root_dir
        if not root.is_dir():
            return []
        instances = []
        for entry in sorted(root.iterdir(), key=lambda p: natural_key(p.name)):
            if entry.name.startswith(".") or not (entry / ".env").is_file():
                continue
            try:
                resolve_service_type(entry.name)
            except ConfigurationError:
                continue
            instances.append(self.load(entry.name))
        return instances

    def load(self, name: str) -> ServiceInstance:
        """
        Reads an installed instance.

        :raises ServiceNotFound: If it is not installed.
        :raises ConfigurationError: If its name matches no service type.
        """
        service_type = resolve_service_type(name)
        if not self.exists(name):
            raise ServiceNotFound(name)
        directory = self.settings.instance_dir(name)
        return ServiceInstance(
            name=name,
            service_type=service_type,
            directory=directory,
            configuration=self.parser.parse(directory / ".env"),
        )

    def new(self, name: str, configuration: Mapping[str, str]) -> ServiceInstance:
        """Builds an instance that is not yet on disk."""
        return ServiceInstance(
            name=name,
            service_type=resolve_service_type(name),
            directory=self.settings.instance_dir(name),
            configuration=dict(configuration),
        )

    def save(self, instance: ServiceInstance) -> None:
        """Writes the whole configuration, creating the directory if needed."""
        instance.directory.mkdir(parents=True, exist_ok=True)
        self.parser.write(instance.env_file, instance.configuration)

    def update(self, instance: ServiceInstance, updates: Dict[str, str]) -> ServiceInstance:
        """
        Applies key updates in place and returns the refreshed instance.
        An empty value removes the key.
        """
        if not updates:
            return instance
        configuration = self.parser.update(instance.env_file, updates)
        logger.info("Updated %s: %s", instance.name, ", ".join(sorted(updates)))
        return instance.model_copy(update={"configuration": configuration})

    def delete(self, instance: ServiceInstance) -> bool:
        """Removes the instance directory. Returns False if it was already gone."""
        if not instance.directory.exists():
            return False
        shutil.rmtree(instance.directory)
        return True
