"""
Per-service setup pass.

A visitor walks the configured services in order and, for each one,
resolves the remote port, assigns local resources and builds the Envoy
fragment. RunVisitor also prepares the tunnel supervisors for a live run;
DumpVisitor fills in placeholder ports for a dry run.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set

from .generators import (
    Fragment,
    build_kubernetes_components,
    build_tcp_components,
    kubernetes_cluster_name,
    tcp_cluster_name,
)
from .errors import AddressRangeExhausted, AllocationError
from .kube import KubectlRunner, resolve_service_port
from .loopback import IPChecker, LoopbackAllocator, never_in_use
from .ports import PortConflictChecker, allocate_local_port, warn_privileged_port
from .summary import ServiceSummary
from .tunnels import GcpSshTunnelSupervisor, PortForwardSupervisor, TunnelSupervisor
from .types import (
    KubernetesService,
    MeshConfig,
    MockConfig,
    ServiceSpec,
    ServiceVisitor,
    TCPService,
)

logger = logging.getLogger(__name__)

DRY_RUN_BASE_PORT = 10000


@dataclass
class ServiceConfig:
    """Everything decided for one service during setup."""
    spec: ServiceSpec
    cluster_name: str
    local_port: int
    fragment: Fragment
    remote_port: Optional[int] = None
    listen_address: Optional[str] = None


class ClusterNamer:
    """Hands out unique cluster names, suffixing repeats with _2, _3, ..."""

    def __init__(self):
        self._taken: Set[str] = set()

    def unique(self, name: str) -> str:
        candidate = name
        suffix = 2
        while candidate in self._taken:
            candidate = f"{name}_{suffix}"
            suffix += 1
        self._taken.add(candidate)
        return candidate


class SetupVisitor(ServiceVisitor):
    """State shared by the live and dry-run passes."""

    def __init__(self, config: MeshConfig, is_in_use: Optional[IPChecker] = None):
        self.config = config
        self.loopback = LoopbackAllocator(is_in_use)
        self.namer = ClusterNamer()
        self.service_configs: List[ServiceConfig] = []
        self.index = 0

    def visit_all(self) -> List[ServiceConfig]:
        """Visit every service in list order; the first error aborts the pass."""
        for index, service in enumerate(self.config.services):
            self.index = index
            service.accept(self)
        return self.service_configs

    def cluster_for(self, service: KubernetesService) -> Optional[str]:
        return service.cluster or self.config.cluster

    def allocate_address(self, service: TCPService) -> str:
        """Assign the next loopback alias, naming the service when none is left."""
        try:
            return self.loopback.allocate()
        except AddressRangeExhausted as e:
            raise AllocationError(
                f"failed to allocate loopback IP for service '{service.host}': {e}"
            ) from e

    @property
    def fragments(self) -> List[Fragment]:
        return [c.fragment for c in self.service_configs]


class RunVisitor(SetupVisitor):
    """
    Live setup: real port lookups, real local ports and tunnel supervisors.

    Supervisors are created here but not started; runner.run_mesh() owns
    their tasks.
    """

    def __init__(
        self,
        config: MeshConfig,
        is_in_use: Optional[IPChecker] = None,
        kubectl_runner: Optional[KubectlRunner] = None,
        port_allocator: Optional[Callable[[], int]] = None,
        sink: Optional[logging.Logger] = None,
        supervisor_options: Optional[Dict] = None,
    ):
        super().__init__(config, is_in_use)
        self.kubectl_runner = kubectl_runner
        self.port_allocator = port_allocator or allocate_local_port
        self.sink = sink or logger
        self.conflicts = PortConflictChecker(self.sink)
        self.supervisor_options = supervisor_options or {}
        self.supervisors: List[TunnelSupervisor] = []
        self.summaries: List[ServiceSummary] = []

        warn_privileged_port(config.listener_port, "listener_port", "config", self.sink)
        self.conflicts.register(config.listener_port, "listener_http")

    def allocate_port(self, service: ServiceSpec) -> int:
        try:
            return self.port_allocator()
        except OSError as e:
            raise AllocationError(
                f"failed to allocate local port for service '{service.host}': {e}"
            ) from e

    def visit_kubernetes(self, service: KubernetesService) -> ServiceConfig:
        cluster = self.cluster_for(service)
        remote_port = resolve_service_port(
            service.namespace,
            service.service,
            port_name=service.port_name,
            port=service.port,
            cluster=cluster,
            runner=self.kubectl_runner,
        )
        local_port = self.allocate_port(service)
        cluster_name = self.namer.unique(kubernetes_cluster_name(service, remote_port))

        for listen_port in service.overwrite_listen_ports:
            warn_privileged_port(listen_port, "overwrite_listen_ports", service.host, self.sink)
            self.conflicts.register(listen_port, service.host)

        fragment = build_kubernetes_components(
            service, cluster_name, local_port, self.config.listener_port
        )

        logger.debug(
            f"pf: {service.host:<30} -> {service.namespace}/{service.service}:{remote_port} "
            f"via 127.0.0.1:{local_port}"
        )

        backend = f"{service.namespace}/{service.service}:{remote_port}"
        for listen_port in service.overwrite_listen_ports or [None]:
            self.summaries.append(ServiceSummary(
                host=service.host,
                protocol=service.protocol,
                backend=backend,
                listen_port=listen_port,
            ))

        self.supervisors.append(PortForwardSupervisor(
            service.namespace,
            service.service,
            local_port,
            remote_port,
            cluster=cluster,
            **self.supervisor_options,
        ))

        result = ServiceConfig(
            spec=service,
            cluster_name=cluster_name,
            local_port=local_port,
            fragment=fragment,
            remote_port=remote_port,
        )
        self.service_configs.append(result)
        return result

    def visit_tcp(self, service: TCPService) -> ServiceConfig:
        bastion = self.config.get_bastion(service.ssh_bastion)
        local_port = self.allocate_port(service)
        cluster_name = self.namer.unique(tcp_cluster_name(service))
        listen_address = self.allocate_address(service)
        listen_port = service.effective_listen_port

        warn_privileged_port(listen_port, "listen_port", service.host, self.sink)
        self.conflicts.register_with_addr(listen_address, listen_port, service.host)

        supervisor = GcpSshTunnelSupervisor(
            bastion,
            local_port,
            service.target_host,
            service.target_port,
            **self.supervisor_options,
        )
        fragment = build_tcp_components(service, cluster_name, local_port, listen_address)

        logger.debug(
            f"gcp-ssh: {service.host:<30} -> {service.ssh_bastion} "
            f"(instance={bastion.instance}, zone={bastion.zone}) -> "
            f"{service.target_host}:{service.target_port} via {listen_address}:{local_port}"
        )

        self.summaries.append(ServiceSummary(
            host=service.host,
            protocol=service.protocol,
            backend=f"{service.ssh_bastion} @ {service.target_host}:{service.target_port}",
            listen_port=listen_port,
        ))
        self.supervisors.append(supervisor)

        result = ServiceConfig(
            spec=service,
            cluster_name=cluster_name,
            local_port=local_port,
            fragment=fragment,
            listen_address=listen_address,
        )
        self.service_configs.append(result)
        return result


class DumpVisitor(SetupVisitor):
    """
    Dry-run setup.

    Remote ports come from the mock table when one is given, otherwise from
    kubectl. Local ports are placeholders (10000 + service index). Loopback
    addresses are still assigned, without probing the interface, so TCP
    listeners stay distinct in the generated document.
    """

    def __init__(
        self,
        config: MeshConfig,
        mock_config: Optional[MockConfig] = None,
        kubectl_runner: Optional[KubectlRunner] = None,
    ):
        super().__init__(config, is_in_use=never_in_use)
        self.mock_config = mock_config
        self.kubectl_runner = kubectl_runner

    def _remote_port(self, service: KubernetesService) -> int:
        if service.port:
            return int(service.port)
        if self.mock_config is not None:
            return self.mock_config.find_port(service.namespace, service.service, service.port_name)
        return resolve_service_port(
            service.namespace,
            service.service,
            port_name=service.port_name,
            port=service.port,
            cluster=self.cluster_for(service),
            runner=self.kubectl_runner,
        )

    def visit_kubernetes(self, service: KubernetesService) -> ServiceConfig:
        remote_port = self._remote_port(service)
        local_port = DRY_RUN_BASE_PORT + self.index
        cluster_name = self.namer.unique(kubernetes_cluster_name(service, remote_port))

        result = ServiceConfig(
            spec=service,
            cluster_name=cluster_name,
            local_port=local_port,
            fragment=build_kubernetes_components(
                service, cluster_name, local_port, self.config.listener_port
            ),
            remote_port=remote_port,
        )
        self.service_configs.append(result)
        return result

    def visit_tcp(self, service: TCPService) -> ServiceConfig:
        local_port = DRY_RUN_BASE_PORT + self.index
        cluster_name = self.namer.unique(tcp_cluster_name(service))
        listen_address = self.allocate_address(service)

        result = ServiceConfig(
            spec=service,
            cluster_name=cluster_name,
            local_port=local_port,
            fragment=build_tcp_components(service, cluster_name, local_port, listen_address),
            listen_address=listen_address,
        )
        self.service_configs.append(result)
        return result
