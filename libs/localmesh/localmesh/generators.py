"""
Envoy bootstrap generators for localmesh.

Each service is translated into a fragment holding the Envoy clusters,
listeners and routes it needs. Fragments are plain dicts wrapped in small
frozen dataclasses; build_config() merges them into one bootstrap document.

    http / http2 / grpc   -> route on the shared HTTP listener
    ... with overwrite ports -> one dedicated HTTP listener per port
    tcp                   -> tcp_proxy listener on a loopback alias
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

import yaml

from .types import KubernetesService, Protocol, TCPService

LOCALHOST = "127.0.0.1"
WILDCARD_ADDRESS = "0.0.0.0"
CONNECT_TIMEOUT = "1s"
MAX_DOWNSTREAM_CONNECTIONS = 50000

SHARED_LISTENER_NAME = "listener_http"
LOCAL_ROUTE_NAME = "local_route"

HTTP_PROTOCOL_OPTIONS = "envoy.extensions.upstreams.http.v3.HttpProtocolOptions"
HTTP_CONNECTION_MANAGER = "envoy.filters.network.http_connection_manager"
HTTP_CONNECTION_MANAGER_TYPE = (
    "type.googleapis.com/envoy.extensions.filters.network."
    "http_connection_manager.v3.HttpConnectionManager"
)
ROUTER_FILTER = "envoy.filters.http.router"
ROUTER_TYPE = "type.googleapis.com/envoy.extensions.filters.http.router.v3.Router"
TCP_PROXY_FILTER = "envoy.filters.network.tcp_proxy"
TCP_PROXY_TYPE = "type.googleapis.com/envoy.extensions.filters.network.tcp_proxy.v3.TcpProxy"
DOWNSTREAM_CONNECTIONS_MONITOR = "envoy.resource_monitors.global_downstream_max_connections"

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9_]")


def sanitize(name: str) -> str:
    """Replace every character Envoy stat names dislike with an underscore."""
    return _UNSAFE_NAME_CHARS.sub("_", name)


def kubernetes_cluster_name(service: KubernetesService, remote_port: int) -> str:
    return sanitize(f"{service.namespace}_{service.service}_{remote_port}")


def tcp_cluster_name(service: TCPService) -> str:
    return sanitize(f"tcp_{service.ssh_bastion}_{service.target_host}_{service.target_port}")


@dataclass(frozen=True)
class HTTPComponents:
    """Cluster plus a virtual host on the shared HTTP listener."""
    cluster: Dict[str, Any]
    route: Dict[str, Any]


@dataclass(frozen=True)
class TCPComponents:
    """Cluster plus its own tcp_proxy listener."""
    cluster: Dict[str, Any]
    listener: Dict[str, Any]


@dataclass(frozen=True)
class IndividualListenerComponents:
    """Cluster plus one dedicated HTTP listener per overwrite port."""
    cluster: Dict[str, Any]
    listeners: List[Dict[str, Any]]


Fragment = Union[HTTPComponents, TCPComponents, IndividualListenerComponents]


def _socket_address(address: str, port: int) -> Dict[str, Any]:
    return {"socket_address": {"address": address, "port_value": port}}


def build_cluster(name: str, local_port: int, protocol: Optional[Protocol] = None) -> Dict[str, Any]:
    """
    Generate a STATIC cluster pointing at a local tunnel endpoint.

    Args:
        name: Cluster name
        local_port: Port the tunnel listens on at 127.0.0.1
        protocol: Upstream protocol; None for raw TCP clusters

    Returns:
        Envoy cluster as dict
    """
    cluster: Dict[str, Any] = {
        "name": name,
        "connect_timeout": CONNECT_TIMEOUT,
        "type": "STATIC",
        "load_assignment": {
            "cluster_name": name,
            "endpoints": [
                {
                    "lb_endpoints": [
                        {"endpoint": {"address": _socket_address(LOCALHOST, local_port)}},
                    ],
                },
            ],
        },
    }

    if protocol is not None:
        if protocol.uses_http2:
            http_config = {"http2_protocol_options": {}}
        else:
            http_config = {"http_protocol_options": {}}
        cluster["typed_extension_protocol_options"] = {
            HTTP_PROTOCOL_OPTIONS: {
                "@type": f"type.googleapis.com/{HTTP_PROTOCOL_OPTIONS}",
                "explicit_http_config": http_config,
            },
        }

    return cluster


def build_virtual_host(host: str, cluster_name: str, listener_port: Optional[int] = None) -> Dict[str, Any]:
    """
    Generate a virtual host routing every path of `host` to a cluster.

    When the listener port is known, host:port is matched too; gRPC clients
    put the port into :authority.
    """
    domains = [host]
    if listener_port:
        domains.append(f"{host}:{listener_port}")
    return {
        "name": cluster_name,
        "domains": domains,
        "routes": [
            {
                "match": {"prefix": "/"},
                # 0s disables the route timeout
                "route": {"cluster": cluster_name, "timeout": "0s"},
            },
        ],
    }


def _http_connection_manager(
    stat_prefix: str,
    virtual_hosts: List[Dict[str, Any]],
    codec_type: str = "AUTO",
    http2: bool = True,
) -> Dict[str, Any]:
    typed_config: Dict[str, Any] = {
        "@type": HTTP_CONNECTION_MANAGER_TYPE,
        "stat_prefix": stat_prefix,
        "codec_type": codec_type,
    }
    if http2:
        typed_config["http2_protocol_options"] = {}
    typed_config["route_config"] = {
        "name": LOCAL_ROUTE_NAME,
        "virtual_hosts": virtual_hosts,
    }
    typed_config["http_filters"] = [
        {"name": ROUTER_FILTER, "typed_config": {"@type": ROUTER_TYPE}},
    ]
    return {"name": HTTP_CONNECTION_MANAGER, "typed_config": typed_config}


def build_http_listener(
    name: str,
    port: int,
    virtual_hosts: List[Dict[str, Any]],
    codec_type: str = "AUTO",
    stat_prefix: str = "ingress_http",
    address: str = WILDCARD_ADDRESS,
) -> Dict[str, Any]:
    """Generate an HTTP listener with the given virtual hosts."""
    return {
        "name": name,
        "address": _socket_address(address, port),
        "filter_chains": [
            {
                "filters": [
                    _http_connection_manager(
                        stat_prefix,
                        virtual_hosts,
                        codec_type=codec_type,
                        http2=codec_type != "HTTP1",
                    ),
                ],
            },
        ],
    }


def build_tcp_listener(cluster_name: str, address: str, port: int) -> Dict[str, Any]:
    """Generate a tcp_proxy listener forwarding address:port to a cluster."""
    return {
        "name": f"listener_tcp_{cluster_name}",
        "address": _socket_address(address, port),
        "filter_chains": [
            {
                "filters": [
                    {
                        "name": TCP_PROXY_FILTER,
                        "typed_config": {
                            "@type": TCP_PROXY_TYPE,
                            "stat_prefix": f"tcp_{cluster_name}",
                            "cluster": cluster_name,
                        },
                    },
                ],
            },
        ],
    }


def build_kubernetes_components(
    service: KubernetesService,
    cluster_name: str,
    local_port: int,
    listener_port: Optional[int] = None,
) -> Union[HTTPComponents, IndividualListenerComponents]:
    """
    Generate the fragment for a Kubernetes service.

    Services without overwrite_listen_ports get a virtual host on the shared
    listener. Otherwise every port gets its own listener; HTTP/1.1 codec for
    http, HTTP/2 codec for http2 and grpc.

    Args:
        service: Kubernetes service entry
        cluster_name: Unique Envoy cluster name
        local_port: Local port of the port-forward tunnel
        listener_port: Port of the shared HTTP listener

    Returns:
        HTTPComponents or IndividualListenerComponents
    """
    protocol = service.protocol_type
    cluster = build_cluster(cluster_name, local_port, protocol)

    if not service.overwrite_listen_ports:
        return HTTPComponents(
            cluster=cluster,
            route=build_virtual_host(service.host, cluster_name, listener_port),
        )

    codec_type = "HTTP2" if protocol.uses_http2 else "HTTP1"
    listeners = []
    for port in service.overwrite_listen_ports:
        listeners.append(build_http_listener(
            f"listener_{cluster_name}_{port}",
            port,
            [build_virtual_host(service.host, cluster_name, port)],
            codec_type=codec_type,
            stat_prefix=f"ingress_{cluster_name}_{port}",
        ))
    return IndividualListenerComponents(cluster=cluster, listeners=listeners)


def build_tcp_components(
    service: TCPService,
    cluster_name: str,
    local_port: int,
    listen_address: str,
) -> TCPComponents:
    """Generate the fragment for a TCP service bound to its loopback alias."""
    return TCPComponents(
        cluster=build_cluster(cluster_name, local_port),
        listener=build_tcp_listener(cluster_name, listen_address, service.effective_listen_port),
    )


def build_config(listener_port: int, fragments: List[Fragment]) -> Dict[str, Any]:
    """
    Merge fragments into a complete Envoy bootstrap document.

    Clusters keep fragment order. The shared HTTP listener comes first and is
    only emitted when at least one route exists; dedicated and TCP listeners
    follow in fragment order.

    Args:
        listener_port: Port of the shared HTTP listener
        fragments: Per-service fragments in service order

    Returns:
        Bootstrap document as dict
    """
    clusters: List[Dict[str, Any]] = []
    virtual_hosts: List[Dict[str, Any]] = []
    extra_listeners: List[Dict[str, Any]] = []

    for fragment in fragments:
        if isinstance(fragment, HTTPComponents):
            virtual_hosts.append(fragment.route)
        elif isinstance(fragment, TCPComponents):
            extra_listeners.append(fragment.listener)
        elif isinstance(fragment, IndividualListenerComponents):
            extra_listeners.extend(fragment.listeners)
        else:
            raise TypeError(f"unknown fragment type: {type(fragment).__name__}")
        clusters.append(fragment.cluster)

    listeners: List[Dict[str, Any]] = []
    if virtual_hosts:
        listeners.append(build_http_listener(SHARED_LISTENER_NAME, listener_port, virtual_hosts))
    listeners.extend(extra_listeners)

    return {
        "static_resources": {
            "listeners": listeners,
            "clusters": clusters,
        },
        "overload_manager": {
            "resource_monitors": [
                {
                    "name": DOWNSTREAM_CONNECTIONS_MONITOR,
                    "typed_config": {
                        "@type": (
                            "type.googleapis.com/envoy.extensions.resource_monitors."
                            "downstream_connections.v3.DownstreamConnectionsConfig"
                        ),
                        "max_active_downstream_connections": MAX_DOWNSTREAM_CONNECTIONS,
                    },
                },
            ],
        },
    }


def dump_yaml(document: Dict[str, Any]) -> str:
    """Serialize a generated document to YAML."""
    return yaml.dump(document, default_flow_style=False, sort_keys=False)
