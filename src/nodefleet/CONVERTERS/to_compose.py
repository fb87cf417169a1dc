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
Converters generating the compose.yml of an instance from per-type templates.

The network lists are always rendered wholesale from the required networks;
compose resolves ${...} references from the instance's .env at start time.
"""
import logging
from pathlib import Path
from typing import Dict, Iterable, List, Sequence, Tuple

from jinja2 import Environment, StrictUndefined

from ..MODELS.service_instance import ServiceInstance, ServiceType
from ..PARSERS.compose_parser import ComposeParser
from ..RUNNERS.dependency_resolver import natural_key

logger = logging.getLogger(__name__)

NETWORKS_BLOCK = """
{%- if networks %}

networks:
{%- for net in networks %}
  {{ net }}:
    name: {{ net }}
    external: true
{%- endfor %}
{%- endif %}
"""

SERVICE_NETWORKS = """{% if nets %}    networks:
{%- for net in nets %}
      - {{ net }}
{%- endfor %}{% endif %}"""

ETHNODE_TEMPLATE = """x-logging: &logging
  driver: json-file
  options:
    max-size: 100m
    max-file: "3"

services:
  execution:
    image: ${EL_IMAGE:-ethereum/client-go:stable}
    container_name: {{ name }}-execution
    restart: unless-stopped
    logging: *logging
    ports:
      - ${HOST_IP:-127.0.0.1}:${EL_RPC_PORT}:8545
      - ${HOST_IP:-127.0.0.1}:${EL_WS_PORT}:8546
      - ${EL_P2P_PORT}:${EL_P2P_PORT}/tcp
      - ${EL_P2P_PORT_2}:${EL_P2P_PORT_2}/udp
    volumes:
      - {{ name }}_execution-data:/data
      - ./jwt:/jwt:ro
{% with nets=networks %}""" + SERVICE_NETWORKS + """{% endwith %}

  consensus:
    image: ${CL_IMAGE:-sigp/lighthouse:latest}
    container_name: {{ name }}-consensus
    restart: unless-stopped
    logging: *logging
    depends_on:
      - execution
    ports:
      - ${HOST_IP:-127.0.0.1}:${CL_REST_PORT}:5052
      - ${CL_P2P_PORT}:${CL_P2P_PORT}/tcp
      - ${CL_QUIC_PORT}:${CL_QUIC_PORT}/udp
      - ${HOST_IP:-127.0.0.1}:${METRICS_PORT}:5054
    volumes:
      - {{ name }}_consensus-data:/data
      - ./jwt:/jwt:ro
{% with nets=networks %}""" + SERVICE_NETWORKS + """{% endwith %}
{%- if mevboost %}

  mevboost:
    image: ${MEVBOOST_IMAGE:-flashbots/mev-boost:latest}
    container_name: {{ name }}-mevboost
    restart: unless-stopped
    logging: *logging
    ports:
      - ${HOST_IP:-127.0.0.1}:${MEVBOOST_PORT}:18550
{% with nets=networks %}""" + SERVICE_NETWORKS + """{% endwith %}
{%- endif %}

volumes:
  {{ name }}_execution-data:
    name: {{ name }}_execution-data
  {{ name }}_consensus-data:
    name: {{ name }}_consensus-data
""" + NETWORKS_BLOCK

VALIDATOR_TEMPLATE = """services:
  validator:
    image: ${VALIDATOR_IMAGE:-ghcr.io/serenita-org/vero:latest}
    container_name: {{ name }}
    restart: unless-stopped
    environment:
      - BEACON_NODE_URLS=${BEACON_NODE_URLS:-}
      - REMOTE_SIGNER_URL=${REMOTE_SIGNER_URL:-http://web3signer:9000}
    ports:
      - ${HOST_IP:-127.0.0.1}:${VALIDATOR_API_PORT}:7500
      - ${HOST_IP:-127.0.0.1}:${VALIDATOR_METRICS_PORT}:8000
    volumes:
      - {{ name }}_data:/data
{% with nets=networks %}""" + SERVICE_NETWORKS + """{% endwith %}

volumes:
  {{ name }}_data:
    name: {{ name }}_data
""" + NETWORKS_BLOCK

SIGNER_TEMPLATE = """services:
  web3signer:
    image: ${WEB3SIGNER_IMAGE:-consensys/web3signer:latest}
    container_name: {{ name }}
    restart: unless-stopped
    depends_on:
      - postgres
    ports:
      - ${HOST_IP:-127.0.0.1}:${WEB3SIGNER_PORT}:9000
    volumes:
      - ./keystores:/keystores:ro
{% with nets=networks %}""" + SERVICE_NETWORKS + """{% endwith %}

  postgres:
    image: ${POSTGRES_IMAGE:-postgres:16-alpine}
    container_name: {{ name }}-postgres
    restart: unless-stopped
    environment:
      - POSTGRES_DB=web3signer
      - POSTGRES_PASSWORD=${POSTGRES_PASSWORD:-}
    volumes:
      - {{ name }}_postgres-data:/var/lib/postgresql/data
{% with nets=networks %}""" + SERVICE_NETWORKS + """{% endwith %}

volumes:
  {{ name }}_postgres-data:
    name: {{ name }}_postgres-data
""" + NETWORKS_BLOCK

MONITORING_TEMPLATE = """services:
  prometheus:
    image: ${PROMETHEUS_IMAGE:-prom/prometheus:latest}
    container_name: {{ name }}-prometheus
    restart: unless-stopped
    ports:
      - ${HOST_IP:-127.0.0.1}:${PROMETHEUS_PORT}:9090
    volumes:
      - ./prometheus.yml:/etc/prometheus/prometheus.yml:ro
      - {{ name }}_prometheus-data:/prometheus
{% with nets=networks %}""" + SERVICE_NETWORKS + """{% endwith %}

  grafana:
    image: ${GRAFANA_IMAGE:-grafana/grafana:latest}
    container_name: {{ name }}-grafana
    restart: unless-stopped
    ports:
      - ${HOST_IP:-127.0.0.1}:${GRAFANA_PORT}:3000
    volumes:
      - ./grafana/provisioning:/etc/grafana/provisioning:ro
      - ./grafana/dashboards:/var/lib/grafana/dashboards:ro
      - {{ name }}_grafana-data:/var/lib/grafana
{% with nets=local_networks %}""" + SERVICE_NETWORKS + """{% endwith %}

  node-exporter:
    image: ${NODE_EXPORTER_IMAGE:-prom/node-exporter:latest}
    container_name: {{ name }}-node-exporter
    restart: unless-stopped
    ports:
      - ${HOST_IP:-127.0.0.1}:${NODE_EXPORTER_PORT}:9100
{% with nets=local_networks %}""" + SERVICE_NETWORKS + """{% endwith %}

volumes:
  {{ name }}_prometheus-data:
    name: {{ name }}_prometheus-data
  {{ name }}_grafana-data:
    name: {{ name }}_grafana-data
""" + NETWORKS_BLOCK

PLUGIN_TEMPLATE = """services:
  node:
    image: ${PLUGIN_IMAGE:-ssvlabs/ssv-node:latest}
    container_name: {{ name }}
    restart: unless-stopped
    environment:
      - BEACON_NODE_ADDR=${BEACON_NODE_URL:-}
      - ETH_1_ADDR=${EXECUTION_NODE_URL:-}
    ports:
      - ${SSV_P2P_PORT}:${SSV_P2P_PORT}/tcp
      - ${SSV_P2P_UDP_PORT}:${SSV_P2P_UDP_PORT}/udp
      - ${HOST_IP:-127.0.0.1}:${SSV_METRICS_PORT}:15000
      - ${HOST_IP:-127.0.0.1}:${SSV_API_PORT}:16000
    volumes:
      - {{ name }}_data:/data
{% with nets=networks %}""" + SERVICE_NETWORKS + """{% endwith %}

volumes:
  {{ name }}_data:
    name: {{ name }}_data
""" + NETWORKS_BLOCK

PROMETHEUS_TEMPLATE = """global:
  scrape_interval: 15s

scrape_configs:
  - job_name: prometheus
    static_configs:
      - targets: ["localhost:9090"]
  - job_name: node-exporter
    static_configs:
      - targets: ["{{ name }}-node-exporter:9100"]
{%- for job in jobs %}
  - job_name: {{ job.name }}
    static_configs:
      - targets: ["{{ job.target }}"]
        labels:
          node: {{ job.node }}
          service_type: {{ job.kind }}
{%- endfor %}
"""

# Container-side metrics ports, scraped over the fleet networks
METRICS_TARGETS: Dict[ServiceType, Sequence[Tuple[str, int]]] = {
    ServiceType.ETHNODE: (("-execution", 6060), ("-consensus", 5054)),
    ServiceType.VALIDATOR: (("", 8000),),
    ServiceType.PLUGIN: (("", 15000),),
}

TEMPLATES: Dict[ServiceType, str] = {
    ServiceType.ETHNODE: ETHNODE_TEMPLATE,
    ServiceType.VALIDATOR: VALIDATOR_TEMPLATE,
    ServiceType.SIGNER: SIGNER_TEMPLATE,
    ServiceType.MONITORING: MONITORING_TEMPLATE,
    ServiceType.PLUGIN: PLUGIN_TEMPLATE,
}


class ComposeConverter:
    """
    Renders and writes the compose.yml of an instance.
    """

    def __init__(self, monitoring_network: str = "monitoring-net"):
        """
        :param monitoring_network: Network the dashboard-side monitoring containers stay on.
        """
        self.monitoring_network = monitoring_network
        self.parser = ComposeParser()
        self.env = Environment(undefined=StrictUndefined, keep_trailing_newline=True)
        self.templates = {t: self.env.from_string(src) for t, src in TEMPLATES.items()}

    def render(self, instance: ServiceInstance, networks: Sequence[str]) -> str:
        """
        Renders the compose definition of an instance.

        :param instance: The instance to render for.
        :param networks: Networks the instance must join, in order.
        :return: YAML text.
        """
        networks = list(networks)
        local_networks = [n for n in networks if n == self.monitoring_network] or networks[:1]
        return self.templates[instance.service_type].render(
            name=instance.name,
            networks=networks,
            local_networks=local_networks,
            mevboost=bool(instance.configuration.get("MEVBOOST_PORT")),
        )

    def declared_networks(self, instance: ServiceInstance):
        """
        Networks the instance's current compose.yml declares, or None when it has none.
        """
        return self.parser.networks(self.parser.parse(instance.compose_file))

    def write(self, instance: ServiceInstance, networks: Sequence[str]) -> bool:
        """
        Regenerates compose.yml wholesale.

        :return: True if the parsed definition materially changed.
        """
        content = self.render(instance, networks)
        path: Path = instance.compose_file
        previous = self.parser.parse(path)
        if previous is not None and previous == self.parser.parse_from_string(content):
            return False
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        logger.info("Wrote %s", path)
        return True

    def scrape_jobs(self, fleet: Iterable[ServiceInstance]) -> List[Dict[str, str]]:
        """
        One scrape job per metrics endpoint of the fleet, in natural name order.
        """
        jobs = []
        for instance in sorted(fleet, key=lambda i: natural_key(i.name)):
            for suffix, port in METRICS_TARGETS.get(instance.service_type, ()):
                container = f"{instance.name}{suffix}"
                jobs.append({
                    "name": container,
                    "target": f"{container}:{port}",
                    "node": instance.name,
                    "kind": instance.service_type.value,
                })
        return jobs

    def render_scrape_config(self, instance: ServiceInstance, fleet: Iterable[ServiceInstance]) -> str:
        """Renders the prometheus.yml of a monitoring instance for the given fleet."""
        return self.env.from_string(PROMETHEUS_TEMPLATE).render(name=instance.name, jobs=self.scrape_jobs(fleet))

    def write_scrape_config(self, instance: ServiceInstance, fleet: Iterable[ServiceInstance]) -> bool:
        """
        Regenerates prometheus.yml wholesale from the fleet. Other service types have none.

        :return: True if the parsed scrape configuration materially changed.
        """
        if instance.service_type != ServiceType.MONITORING:
            return False
        content = self.render_scrape_config(instance, fleet)
        path = instance.directory / "prometheus.yml"
        if path.exists() and self.parser.parse(path) == self.parser.parse_from_string(content):
            return False
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        logger.info("Wrote %s", path)
        return True
