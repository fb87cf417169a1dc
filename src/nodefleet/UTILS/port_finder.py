"""
Utilities for finding and checking availability of network ports.
"""
import re
import socket
from typing import Set

import psutil

# Host side of a published mapping: optional bind address, port or port range, then "->"
HOST_PORT_MAPPING = re.compile(r"(?:[\d.]+:|\[[0-9a-fA-F:]*\]:|:::)?(\d+)(?:-(\d+))?->")


def listening_ports() -> Set[int]:
    """
    Returns every local port in LISTEN state, TCP and UDP, IPv4 and IPv6.
    """
    ports = set()
    try:
        connections = psutil.net_connections(kind="inet")
    except (psutil.AccessDenied, PermissionError):
        return ports
    for conn in connections:
        if not conn.laddr:
            continue
        # UDP sockets carry no state; an unconnected bound one is a listener
        if conn.status == psutil.CONN_LISTEN or (conn.status == psutil.CONN_NONE and not conn.raddr):
            ports.add(conn.laddr.port)
    return ports


def parse_host_ports(ports_field: str) -> Set[int]:
    """
    Extracts host-side ports from a container's published-ports description,
    expanding ranges.

    Example: "0.0.0.0:30303-30304->30303-30304/tcp, :::8545->8545/tcp" -> {30303, 30304, 8545}
    """
    ports = set()
    for match in HOST_PORT_MAPPING.finditer(ports_field or ""):
        start = int(match.group(1))
        end = int(match.group(2)) if match.group(2) else start
        ports.update(range(start, end + 1))
    return ports


def is_port_free(port: int) -> bool:
    """
    Checks if a port is free on this host: nothing accepts connections on
    loopback and the port can be bound on all interfaces.
    """
    if not 1 <= port <= 65535:
        return False
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.settimeout(0.2)
        if s.connect_ex(("127.0.0.1", port)) == 0:
            return False
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        try:
            s.bind(("", port))
            return True
        except socket.error:
            return False
