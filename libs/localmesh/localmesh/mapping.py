"""
Port-forward mapping report.

Records which local port, loopback address and Envoy cluster every service
was given. Printed by `dump-envoy-config --output-mapping`.
"""

from dataclasses import dataclass, fields
from typing import Any, Dict, List, Optional

import yaml

from .dispatch import ServiceConfig
from .types import KubernetesService, ServiceKind, ServiceVisitor, TCPService


@dataclass
class PortForwardMapping:
    """One service's resolved and assigned ports."""
    kind: str
    host: str
    protocol: Optional[str] = None
    # Kubernetes services
    namespace: Optional[str] = None
    service: Optional[str] = None
    port_name: Optional[str] = None
    cluster: Optional[str] = None
    resolved_remote_port: Optional[int] = None
    # TCP services
    ssh_bastion: Optional[str] = None
    target_host: Optional[str] = None
    target_port: Optional[int] = None
    assigned_local_port: int = 0
    assigned_listen_addr: Optional[str] = None
    assigned_listener_port: Optional[int] = None
    envoy_cluster_name: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Field order is kept; empty optional fields are dropped."""
        always = ("kind", "host", "assigned_local_port", "envoy_cluster_name")
        result: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name in always or value:
                result[f.name] = value
        return result


class MappingVisitor(ServiceVisitor):
    """Turns one service plus its setup result into a mapping entry."""

    def __init__(self, config: ServiceConfig):
        self.config = config

    def visit_kubernetes(self, service: KubernetesService) -> PortForwardMapping:
        return PortForwardMapping(
            kind=ServiceKind.KUBERNETES.value,
            host=service.host,
            protocol=service.protocol,
            namespace=service.namespace,
            service=service.service,
            port_name=service.port_name,
            cluster=service.cluster,
            resolved_remote_port=self.config.remote_port,
            assigned_local_port=self.config.local_port,
            assigned_listener_port=(
                service.overwrite_listen_ports[0] if service.overwrite_listen_ports else None
            ),
            envoy_cluster_name=self.config.cluster_name,
        )

    def visit_tcp(self, service: TCPService) -> PortForwardMapping:
        return PortForwardMapping(
            kind=ServiceKind.TCP.value,
            host=service.host,
            ssh_bastion=service.ssh_bastion,
            target_host=service.target_host,
            target_port=service.target_port,
            assigned_local_port=self.config.local_port,
            assigned_listen_addr=self.config.listen_address,
            assigned_listener_port=service.effective_listen_port,
            envoy_cluster_name=self.config.cluster_name,
        )


def build_mapping(config: ServiceConfig) -> PortForwardMapping:
    """Build the mapping entry for one ServiceConfig."""
    return config.spec.accept(MappingVisitor(config))


def build_mappings(configs: List[ServiceConfig]) -> List[PortForwardMapping]:
    """Build mapping entries in service order."""
    return [build_mapping(c) for c in configs]


def mappings_to_dict(mappings: List[PortForwardMapping]) -> Dict[str, Any]:
    return {"services": [m.to_dict() for m in mappings]}


def dump_mappings(mappings: List[PortForwardMapping]) -> str:
    """Render the mapping report as YAML."""
    return yaml.dump(mappings_to_dict(mappings), default_flow_style=False, sort_keys=False)
