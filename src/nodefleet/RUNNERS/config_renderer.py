"""
Boundary to the dashboard/metrics configuration renderer.

The lifecycle engine only ever asks to add or remove an instance's dashboard and
to reload; results are advisory and never abort a lifecycle.
"""
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path

from jinja2 import Template

logger = logging.getLogger(__name__)

DASHBOARD_TEMPLATE = """{
  "title": {{ title | tojson }},
  "uid": {{ uid | tojson }},
  "tags": ["nodefleet", {{ name | tojson }}],
  "panels": [
    {
      "type": "timeseries",
      "title": "Targets up",
      "datasource": "Prometheus",
      "targets": [{"expr": {{ ('up{job=~"' ~ name ~ '.*"}') | tojson }}}]
    }
  ],
  "schemaVersion": 39
}
"""

PROVIDER_TEMPLATE = """apiVersion: 1
providers:
  - name: nodefleet
    folder: Fleet
    type: file
    allowUiUpdates: false
    updateIntervalSeconds: 30
    options:
      path: /var/lib/grafana/dashboards
# dashboards: {{ dashboards | join(', ') }}
"""


class ConfigRenderer(ABC):
    """
    Dashboard/metrics definitions renderer.
    """

    @abstractmethod
    def add_dashboard(self, name: str) -> bool:
        """Adds the dashboard for an instance. Returns whether anything changed."""

    @abstractmethod
    def remove_dashboard(self, name: str) -> bool:
        """Removes the dashboard for an instance. Returns whether anything changed."""

    @abstractmethod
    def reload(self) -> bool:
        """Makes the monitoring stack pick up changes."""


class NullConfigRenderer(ConfigRenderer):
    """Renderer used when no monitoring stack is installed."""

    def add_dashboard(self, name: str) -> bool:
        return False

    def remove_dashboard(self, name: str) -> bool:
        return False

    def reload(self) -> bool:
        return False


class GrafanaProvisioningRenderer(ConfigRenderer):
    """
    Writes one dashboard file per instance into the monitoring stack's grafana
    dashboards directory and keeps the file provider definition current.
    """

    def __init__(self, monitoring_dir: Path):
        """
        :param monitoring_dir: Directory of the installed monitoring instance.
        """
        self.monitoring_dir = Path(monitoring_dir)
        self.dashboards_dir = self.monitoring_dir / "grafana" / "dashboards"
        self.provider_file = self.monitoring_dir / "grafana" / "provisioning" / "dashboards" / "nodefleet.yml"
        self.dashboard_template = Template(DASHBOARD_TEMPLATE)
        self.provider_template = Template(PROVIDER_TEMPLATE)

    def _dashboard_path(self, name: str) -> Path:
        return self.dashboards_dir / f"{name}.json"

    def add_dashboard(self, name: str) -> bool:
        if not self.monitoring_dir.is_dir():
            return False
        path = self._dashboard_path(name)
        content = self.dashboard_template.render(name=name, title=f"{name} overview", uid=f"nodefleet-{name}")
        json.loads(content)
        if path.exists() and path.read_text() == content:
            return False
        self.dashboards_dir.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        logger.info("Dashboard for %s written to %s", name, path)
        return True

    def remove_dashboard(self, name: str) -> bool:
        path = self._dashboard_path(name)
        if not path.exists():
            return False
        path.unlink()
        logger.info("Dashboard for %s removed", name)
        return True

    def reload(self) -> bool:
        if not self.monitoring_dir.is_dir():
            return False
        dashboards = sorted(p.stem for p in self.dashboards_dir.glob("*.json")) if self.dashboards_dir.is_dir() else []
        self.provider_file.parent.mkdir(parents=True, exist_ok=True)
        self.provider_file.write_text(self.provider_template.render(dashboards=dashboards))
        return True
