"""
Models for installed service instances and the naming convention that types them.
"""
import re
from enum import Enum
from pathlib import Path
from typing import Dict, List

from pydantic import BaseModel

from .errors import ConfigurationError


class ServiceType(str, Enum):
    """
    Kinds of service the fleet knows how to manage.
    """
    ETHNODE = "ethnode"
    VALIDATOR = "validator"
    SIGNER = "signer"
    MONITORING = "monitoring"
    PLUGIN = "plugin"


ETHNODE_NAME = re.compile(r"ethnode\d*")
# Names double as directory and container names
VALID_NAME = re.compile(r"[a-z0-9][a-z0-9_-]*")
PLUGIN_PREFIXES = ("ssv", "vero-monitor")
PORT_KEY = re.compile(r"_PORT(_\d+)?$")


def resolve_service_type(name: str) -> ServiceType:
    """
    Maps an instance name to its type using the fixed naming convention.

    :param name: Instance name, which is also its directory name.
    :return: The service type.
    :raises ConfigurationError: If the name matches no known type.
    """
    if not VALID_NAME.fullmatch(name):
        raise ConfigurationError(f"Invalid service name '{name}'")
    if ETHNODE_NAME.fullmatch(name):
        return ServiceType.ETHNODE
    if name == "monitoring":
        return ServiceType.MONITORING
    if name == "web3signer":
        return ServiceType.SIGNER
    # Plugins are checked before validators so that "vero-monitor" is not taken for "vero"
    if name.startswith(PLUGIN_PREFIXES):
        return ServiceType.PLUGIN
    if name == "vero" or name.endswith("validator"):
        return ServiceType.VALIDATOR
    raise ConfigurationError(f"Cannot determine service type for '{name}'")


class ServiceInstance(BaseModel):
    """
    One installed service: its directory and the persisted key=value configuration.
    Running state is never stored here; it is always read from the runtime.
    """
    name: str
    service_type: ServiceType
    directory: Path
    configuration: Dict[str, str] = {}

    @property
    def env_file(self) -> Path:
        return self.directory / ".env"

    @property
    def compose_file(self) -> Path:
        return self.directory / "compose.yml"

    @property
    def compose_fragments(self) -> List[str]:
        """
        Container-group definition fragments listed in COMPOSE_FILE.
        """
        value = self.configuration.get("COMPOSE_FILE", "")
        return [fragment for fragment in value.split(":") if fragment]

    def port_values(self) -> List[int]:
        """
        Numeric values of every *_PORT key, numbered variants such as
        EL_P2P_PORT_2 included. Non-numeric values are ignored.
        """
        ports = []
        for key, value in self.configuration.items():
            if PORT_KEY.search(key) and value.strip().isdigit():
                ports.append(int(value.strip()))
        return ports
