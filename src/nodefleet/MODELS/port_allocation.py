"""
Port categories and per-service port requirements.
"""
from typing import Dict, Tuple

from pydantic import BaseModel, ConfigDict

from .service_instance import ServiceType


class PortCategory(BaseModel):
    """
    A named half-open port range [range_start, range_end).
    """
    model_config = ConfigDict(frozen=True)

    name: str
    range_start: int
    range_end: int

    def __contains__(self, port: int) -> bool:
        return self.range_start <= port < self.range_end


class ServicePortSpec(BaseModel):
    """
    What one sub-service needs: how many ports, whether they must be
    contiguous, the scan stride and the category to scan.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    port_count: int
    consecutive_required: bool = False
    scan_increment: int = 1
    category: str


PORT_CATEGORIES: Dict[str, PortCategory] = {
    c.name: c for c in (
        PortCategory(name="execution_rpc", range_start=8545, range_end=8600),
        PortCategory(name="consensus_api", range_start=5052, range_end=5100),
        PortCategory(name="p2p_execution", range_start=30303, range_end=30400),
        PortCategory(name="p2p_consensus", range_start=9000, range_end=9100),
        PortCategory(name="mevboost", range_start=18550, range_end=18650),
        PortCategory(name="metrics", range_start=6060, range_end=6200),
        PortCategory(name="monitoring", range_start=3000, range_end=3100),
        PortCategory(name="validator", range_start=7500, range_end=7600),
        PortCategory(name="plugins", range_start=19000, range_end=19200),
        PortCategory(name="general", range_start=20000, range_end=25000),
    )
}

SERVICE_PORT_SPECS: Dict[str, ServicePortSpec] = {
    s.name: s for s in (
        # RPC, WS, Auth
        ServicePortSpec(name="execution_client", port_count=3, consecutive_required=True,
                        scan_increment=1, category="execution_rpc"),
        # TCP, UDP
        ServicePortSpec(name="execution_p2p", port_count=2, consecutive_required=True,
                        scan_increment=1, category="p2p_execution"),
        ServicePortSpec(name="consensus_client", port_count=1, scan_increment=2,
                        category="consensus_api"),
        # TCP, QUIC
        ServicePortSpec(name="consensus_p2p", port_count=2, consecutive_required=True,
                        scan_increment=1, category="p2p_consensus"),
        ServicePortSpec(name="mevboost", port_count=1, scan_increment=2, category="mevboost"),
        ServicePortSpec(name="prometheus", port_count=1, scan_increment=10, category="metrics"),
        ServicePortSpec(name="grafana", port_count=1, scan_increment=10, category="monitoring"),
        ServicePortSpec(name="node_exporter", port_count=1, scan_increment=10, category="general"),
        ServicePortSpec(name="validator_api", port_count=2, scan_increment=2, category="validator"),
        ServicePortSpec(name="web3signer", port_count=1, scan_increment=10, category="validator"),
        ServicePortSpec(name="ssv_operator", port_count=4, scan_increment=5, category="plugins"),
    )
}

# Per type: (spec name, configuration keys receiving the allocated ports in order)
PortPlan = Tuple[Tuple[str, Tuple[str, ...]], ...]

PORT_PLANS: Dict[ServiceType, PortPlan] = {
    ServiceType.ETHNODE: (
        ("execution_client", ("EL_RPC_PORT", "EL_WS_PORT", "EE_PORT")),
        ("execution_p2p", ("EL_P2P_PORT", "EL_P2P_PORT_2")),
        ("consensus_client", ("CL_REST_PORT",)),
        ("consensus_p2p", ("CL_P2P_PORT", "CL_QUIC_PORT")),
        ("mevboost", ("MEVBOOST_PORT",)),
        ("prometheus", ("METRICS_PORT",)),
    ),
    ServiceType.MONITORING: (
        ("grafana", ("GRAFANA_PORT",)),
        ("prometheus", ("PROMETHEUS_PORT",)),
        ("node_exporter", ("NODE_EXPORTER_PORT",)),
    ),
    ServiceType.VALIDATOR: (
        ("validator_api", ("VALIDATOR_API_PORT", "VALIDATOR_METRICS_PORT")),
    ),
    ServiceType.SIGNER: (
        ("web3signer", ("WEB3SIGNER_PORT",)),
    ),
    ServiceType.PLUGIN: (
        ("ssv_operator", ("SSV_P2P_PORT", "SSV_P2P_UDP_PORT", "SSV_METRICS_PORT", "SSV_API_PORT")),
    ),
}

# Relay allocation that install may skip
OPTIONAL_SPECS = frozenset({"mevboost"})
