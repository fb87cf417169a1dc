"""
Runtime settings for the fleet, resolved from the environment and an optional dotenv file.
"""
import os
from pathlib import Path
from typing import Dict, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, Field

ENV_PREFIX = "NODEFLEET_"


class FleetSettings(BaseModel):
    """
    Where instances live and how the shared topology is named.
    """
    root_dir: Path = Field(default_factory=Path.home)

    # Shared networks
    monitoring_network: str = "monitoring-net"
    validator_network: str = "validator-net"
    signer_network: str = "web3signer-net"
    isolated_network_suffix: str = "-net"

    # Timings
    monitoring_attach_delay: float = 15.0
    stop_timeout: int = 30
    health_check_attempts: int = 5
    health_check_interval: float = 2.0

    docker_binary: str = "docker"
    lock_file_name: str = ".nodefleet.lock"
    registry_dir_name: str = ".nodefleet"

    @property
    def lock_path(self) -> Path:
        return self.root_dir / self.lock_file_name

    @property
    def registry_path(self) -> Path:
        return self.root_dir / self.registry_dir_name / "service-registry.json"

    def instance_dir(self, name: str) -> Path:
        return self.root_dir / name

    def isolated_network(self, ethnode_name: str) -> str:
        return f"{ethnode_name}{self.isolated_network_suffix}"

    @property
    def shared_networks(self) -> tuple:
        return (self.monitoring_network, self.validator_network, self.signer_network)

    @classmethod
    def from_env(cls, env_file: Optional[str] = None, **overrides) -> "FleetSettings":
        """
        Builds settings from NODEFLEET_* variables.

        :param env_file: Optional dotenv file; process variables take precedence over it.
        :param overrides: Explicit values (e.g. from CLI options), applied last.
        :return: The resolved settings.
        """
        env: Dict[str, Optional[str]] = {}
        if env_file:
            env.update(dotenv_values(env_file))
        env.update(os.environ)

        values = {}
        mapping = {
            "ROOT": "root_dir",
            "MONITORING_ATTACH_DELAY": "monitoring_attach_delay",
            "STOP_TIMEOUT": "stop_timeout",
            "DOCKER": "docker_binary",
        }
        for suffix, field_name in mapping.items():
            value = env.get(f"{ENV_PREFIX}{suffix}")
            if value:
                values[field_name] = value

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
