"""
localmesh - local service mesh for remote Kubernetes and TCP services

Opens kubectl port-forwards and GCP IAP SSH tunnels and fronts them with an
Envoy proxy generated from services.yaml.
"""

__version__ = "0.1.0"

from .errors import (
    LocalmeshError,
    ConfigError,
    ResolutionError,
    AllocationError,
    AddressRangeExhausted,
    TunnelConfigError,
)

from .types import (
    ServiceKind,
    Protocol,
    ServiceVisitor,
    SSHBastion,
    KubernetesService,
    TCPService,
    MeshConfig,
    MockService,
    MockConfig,
    parse_service,
)

from .schema import (
    load_config,
    load_mock_config,
    validate_config_schema,
)

from .generators import (
    HTTPComponents,
    TCPComponents,
    IndividualListenerComponents,
    build_kubernetes_components,
    build_tcp_components,
    build_config,
    sanitize,
)

from .tunnels import (
    TunnelState,
    PortForwardSupervisor,
    GcpSshTunnelSupervisor,
)

from .dispatch import (
    ServiceConfig,
    RunVisitor,
    DumpVisitor,
)

from .runner import (
    run_mesh,
    dump_config,
)

__all__ = [
    # Errors
    "LocalmeshError",
    "ConfigError",
    "ResolutionError",
    "AllocationError",
    "AddressRangeExhausted",
    "TunnelConfigError",
    # Types
    "ServiceKind",
    "Protocol",
    "ServiceVisitor",
    "SSHBastion",
    "KubernetesService",
    "TCPService",
    "MeshConfig",
    "MockService",
    "MockConfig",
    "parse_service",
    # Schema
    "load_config",
    "load_mock_config",
    "validate_config_schema",
    # Generators
    "HTTPComponents",
    "TCPComponents",
    "IndividualListenerComponents",
    "build_kubernetes_components",
    "build_tcp_components",
    "build_config",
    "sanitize",
    # Tunnels
    "TunnelState",
    "PortForwardSupervisor",
    "GcpSshTunnelSupervisor",
    # Dispatch
    "ServiceConfig",
    "RunVisitor",
    "DumpVisitor",
    # Runner
    "run_mesh",
    "dump_config",
]
