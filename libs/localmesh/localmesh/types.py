"""
Type definitions for localmesh configuration.

These dataclasses represent the services.yaml mesh configuration. Service
entries are a closed sum of KubernetesService and TCPService, selected by
their `kind` key; operations over services go through ServiceVisitor.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .errors import ConfigError, ResolutionError
from .ports import validate_port, validate_required_port

DEFAULT_LISTENER_PORT = 80


class ServiceKind(str, Enum):
    """Discriminator for service entries."""
    KUBERNETES = "kubernetes"
    TCP = "tcp"


class Protocol(str, Enum):
    """Upstream protocol spoken by a service."""
    HTTP = "http"
    HTTP2 = "http2"
    GRPC = "grpc"
    TCP = "tcp"

    @property
    def uses_http2(self) -> bool:
        return self in (Protocol.HTTP2, Protocol.GRPC)

    @property
    def label(self) -> str:
        """Human readable protocol name."""
        return {
            Protocol.HTTP: "HTTP",
            Protocol.HTTP2: "HTTP/2",
            Protocol.GRPC: "gRPC",
            Protocol.TCP: "TCP",
        }[self]


KUBERNETES_PROTOCOLS = (Protocol.HTTP, Protocol.HTTP2, Protocol.GRPC)


def _strip(value: Any) -> Any:
    return value.strip() if isinstance(value, str) else value


class ServiceVisitor(ABC):
    """Operation over every kind of service entry."""

    @abstractmethod
    def visit_kubernetes(self, service: "KubernetesService") -> Any:
        ...

    @abstractmethod
    def visit_tcp(self, service: "TCPService") -> Any:
        ...


@dataclass
class SSHBastion:
    """GCP Compute instance used as an IAP SSH bastion."""
    instance: str
    zone: str
    project: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict) -> "SSHBastion":
        return cls(
            instance=_strip(data.get("instance", "")),
            zone=_strip(data.get("zone", "")),
            project=_strip(data.get("project")) or None,
        )


@dataclass
class KubernetesService:
    """An HTTP, HTTP/2 or gRPC Kubernetes Service reached by port-forward."""
    host: str
    namespace: str
    service: str
    port_name: Optional[str] = None
    port: Optional[int] = None
    protocol: str = Protocol.HTTP.value
    overwrite_listen_ports: List[int] = field(default_factory=list)
    cluster: Optional[str] = None

    kind = ServiceKind.KUBERNETES

    @classmethod
    def from_dict(cls, data: Dict) -> "KubernetesService":
        return cls(
            host=_strip(data.get("host", "")),
            namespace=_strip(data.get("namespace", "")),
            service=_strip(data.get("service", "")),
            port_name=_strip(data.get("port_name")) or None,
            port=data.get("port") or None,
            protocol=_strip(data.get("protocol")) or Protocol.HTTP.value,
            overwrite_listen_ports=data.get("overwrite_listen_ports") or [],
            cluster=_strip(data.get("cluster")) or None,
        )

    @property
    def protocol_type(self) -> Protocol:
        return Protocol(self.protocol)

    def accept(self, visitor: ServiceVisitor) -> Any:
        return visitor.visit_kubernetes(self)

    def validate(self, config: "MeshConfig") -> None:
        """
        Check required fields and value ranges.

        Raises:
            ConfigError: Naming the offending service by host
        """
        if not self.host:
            raise ConfigError("host is required for kubernetes service")
        if not self.namespace:
            raise ConfigError(f"namespace is required for kubernetes service '{self.host}'")
        if not self.service:
            raise ConfigError(f"service is required for kubernetes service '{self.host}'")
        if self.protocol not in [p.value for p in KUBERNETES_PROTOCOLS]:
            raise ConfigError(
                f"protocol must be 'http', 'http2', or 'grpc' for kubernetes service "
                f"'{self.host}', got '{self.protocol}'"
            )
        if self.port is not None:
            validate_port(self.port, "port", self.host)
        if not isinstance(self.overwrite_listen_ports, list):
            raise ConfigError(
                f"overwrite_listen_ports must be a list of ports for service '{self.host}', "
                f"got {self.overwrite_listen_ports!r}"
            )
        for listen_port in self.overwrite_listen_ports:
            validate_port(listen_port, "overwrite_listen_ports", self.host)


@dataclass
class TCPService:
    """A raw TCP endpoint reached through an SSH bastion."""
    host: str
    ssh_bastion: str
    target_host: str
    target_port: int
    listen_port: Optional[int] = None

    kind = ServiceKind.TCP

    @classmethod
    def from_dict(cls, data: Dict) -> "TCPService":
        return cls(
            host=_strip(data.get("host", "")),
            ssh_bastion=_strip(data.get("ssh_bastion", "")),
            target_host=_strip(data.get("target_host", "")),
            target_port=data.get("target_port") or 0,
            listen_port=data.get("listen_port") or None,
        )

    @property
    def protocol(self) -> str:
        return Protocol.TCP.value

    @property
    def effective_listen_port(self) -> int:
        """Listener port, falling back to the target port."""
        return self.listen_port or self.target_port

    def accept(self, visitor: ServiceVisitor) -> Any:
        return visitor.visit_tcp(self)

    def validate(self, config: "MeshConfig") -> None:
        if not self.host:
            raise ConfigError("host is required for tcp service")
        if not self.ssh_bastion:
            raise ConfigError(f"ssh_bastion is required for tcp service '{self.host}'")
        if self.ssh_bastion not in config.ssh_bastions:
            raise ConfigError(
                f"ssh_bastion '{self.ssh_bastion}' not found for service '{self.host}'"
            )
        if not self.target_host:
            raise ConfigError(f"target_host is required for tcp service '{self.host}'")
        validate_required_port(self.target_port, "target_port", self.host)
        if self.listen_port is not None:
            validate_port(self.listen_port, "listen_port", self.host)


ServiceSpec = Union[KubernetesService, TCPService]

SERVICE_TYPES = {
    ServiceKind.KUBERNETES.value: KubernetesService,
    ServiceKind.TCP.value: TCPService,
}


def parse_service(data: Dict) -> ServiceSpec:
    """
    Build a service entry from its mapping, using `kind` to pick the type.

    Raises:
        ConfigError: If kind is missing or unknown
    """
    if not isinstance(data, dict):
        raise ConfigError("service entry must be a mapping")
    if "kind" not in data:
        raise ConfigError("service must have 'kind' field")
    kind = data["kind"]
    if not isinstance(kind, str):
        raise ConfigError("'kind' must be a string")
    service_type = SERVICE_TYPES.get(kind.strip())
    if service_type is None:
        raise ConfigError(f"unknown service kind: {kind} (must be 'kubernetes' or 'tcp')")
    return service_type.from_dict(data)


@dataclass
class MeshConfig:
    """Complete mesh configuration from services.yaml."""
    services: List[ServiceSpec] = field(default_factory=list)
    listener_port: int = DEFAULT_LISTENER_PORT
    ssh_bastions: Dict[str, SSHBastion] = field(default_factory=dict)
    cluster: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "MeshConfig":
        if not data:
            return cls()
        bastions = {
            name: SSHBastion.from_dict(b or {})
            for name, b in (data.get("ssh_bastions") or {}).items()
        }
        return cls(
            services=[parse_service(s) for s in data.get("services") or []],
            listener_port=data.get("listener_port") or DEFAULT_LISTENER_PORT,
            ssh_bastions=bastions,
            cluster=_strip(data.get("cluster")) or None,
        )

    def validate(self) -> None:
        """
        Validate every service entry.

        Raises:
            ConfigError: Prefixed with the index of the failing entry
        """
        if not self.services:
            raise ConfigError("no services configured")
        validate_port(self.listener_port, "listener_port", "config")
        for i, service in enumerate(self.services):
            try:
                service.validate(self)
            except ConfigError as e:
                raise ConfigError(f"invalid service entry at index {i}: {e}") from e

    def get_bastion(self, name: str) -> SSHBastion:
        bastion = self.ssh_bastions.get(name)
        if bastion is None:
            raise ConfigError(f"ssh_bastion '{name}' not found")
        return bastion

    @property
    def hosts(self) -> List[str]:
        return [s.host for s in self.services]


@dataclass
class MockService:
    """Pre-resolved remote port used by dry runs."""
    namespace: str
    service: str
    resolved_port: int
    port_name: str = ""

    @classmethod
    def from_dict(cls, data: Dict) -> "MockService":
        return cls(
            namespace=data.get("namespace", ""),
            service=data.get("service", ""),
            resolved_port=data.get("resolved_port", 0),
            port_name=data.get("port_name") or "",
        )


@dataclass
class MockConfig:
    """Table of namespace/service/port_name -> port for dry runs."""
    mocks: List[MockService] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "MockConfig":
        if not data:
            return cls()
        return cls(mocks=[MockService.from_dict(m) for m in data.get("mocks") or []])

    def find_port(self, namespace: str, service: str, port_name: Optional[str]) -> int:
        """
        Look up the mocked port for a service.

        Raises:
            ResolutionError: If no mock matches
        """
        port_name = port_name or ""
        for mock in self.mocks:
            if (mock.namespace, mock.service, mock.port_name) == (namespace, service, port_name):
                return mock.resolved_port
        raise ResolutionError(
            f"mock config not found for {namespace}/{service} (port_name={port_name})"
        )
