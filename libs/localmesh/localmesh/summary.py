"""
Connectivity summary printed once the mesh is up.
"""

from dataclasses import dataclass
from typing import List, Optional

from .types import Protocol


@dataclass
class ServiceSummary:
    """How to reach one service from the local machine."""
    host: str
    protocol: str
    backend: str
    listen_port: Optional[int] = None

    def effective_listen_port(self, default_port: int) -> int:
        return self.listen_port or default_port


def protocol_label(protocol: str) -> str:
    try:
        return Protocol(protocol).label
    except ValueError:
        return protocol.upper()


def generate_summary(services: List[ServiceSummary], listener_port: int) -> str:
    """
    Render the "Service Mesh is ready!" banner.

    HTTP-family services are listed before TCP services; either section is
    left out when it has no entries.
    """
    http_services = [s for s in services if s.protocol != Protocol.TCP.value]
    tcp_services = [s for s in services if s.protocol == Protocol.TCP.value]

    lines = ["", "Service Mesh is ready!", "", "Access your services:"]

    if http_services:
        lines.append("  HTTP/gRPC Services:")
        for svc in http_services:
            port = svc.effective_listen_port(listener_port)
            lines.append(
                f"  • http://{svc.host}:{port} ({protocol_label(svc.protocol)}) -> {svc.backend}"
            )
        lines.append("")

    if tcp_services:
        lines.append("  TCP Services:")
        for svc in tcp_services:
            port = svc.effective_listen_port(listener_port)
            lines.append(f"  • tcp://{svc.host}:{port} -> {svc.backend}")
        lines.append("")

    lines.append("Press Ctrl+C to stop and cleanup.")
    return "\n".join(lines) + "\n"
