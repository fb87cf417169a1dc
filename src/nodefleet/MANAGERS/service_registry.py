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
JSON ledger of registered services.
The ledger is advisory; the instance directories remain the source of truth.
"""

import json
import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from ..MODELS.service_instance import ServiceInstance

logger = logging.getLogger(__name__)

REGISTRY_VERSION = "1.0"


@dataclass
class RegistryEntry:
    """One registered service."""
    type: str
    path: str
    registered: str
    last_updated: str


class ServiceRegistry:
    """
    Keeps {"services": {name: entry}, "metadata": {...}} in a JSON file.
    Both register and unregister are idempotent.
    """

    def __init__(self, registry_file: Path):
        """
        Args:
            registry_file: Location of the ledger; created on first write.
        """
        self.registry_file = Path(registry_file)

    def _load(self) -> Dict[str, Any]:
        """Load the ledger from disk, starting fresh if it is missing or unreadable."""
        if self.registry_file.exists():
            try:
                with open(self.registry_file, 'r') as f:
                    data = json.load(f)
                if isinstance(data, dict):
                    data.setdefault("services", {})
                    data.setdefault("metadata", {})
                    return data
            except (json.JSONDecodeError, IOError) as e:
                logger.warning("Ignoring unreadable registry %s: %s", self.registry_file, e)
        return {"services": {}, "metadata": {"version": REGISTRY_VERSION}}

    def _save(self, data: Dict[str, Any]) -> None:
        data["metadata"]["last_updated"] = _now()
        self.registry_file.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.registry_file.with_suffix(".tmp")
        with open(tmp, 'w') as f:
            json.dump(data, f, indent=2)
        tmp.replace(self.registry_file)

    def register(self, instance: ServiceInstance) -> bool:
        """
        Records an instance. Returns False if it was already registered.
        """
        data = self._load()
        existing = data["services"].get(instance.name)
        timestamp = _now()
        entry = RegistryEntry(
            type=instance.service_type.value,
            path=str(instance.directory),
            registered=existing.get("registered", timestamp) if existing else timestamp,
            last_updated=timestamp,
        )
        data["services"][instance.name] = asdict(entry)
        self._save(data)
        return existing is None

    def unregister(self, name: str) -> bool:
        """
        Drops an instance. Returns False if it was not registered.
        """
        data = self._load()
        if name not in data["services"]:
            return False
        del data["services"][name]
        self._save(data)
        return True

    def is_registered(self, name: str) -> bool:
        return name in self._load()["services"]

    def get(self, name: str) -> Optional[RegistryEntry]:
        raw = self._load()["services"].get(name)
        return RegistryEntry(**raw) if raw else None

    def names(self):
        return sorted(self._load()["services"])


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
