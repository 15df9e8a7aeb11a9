"""
Kubernetes helpers built on the kubectl binary.

Resolves Service ports with `kubectl get svc -o jsonpath=...` and builds the
`kubectl port-forward` command line used by PortForwardSupervisor.
"""

import logging
import subprocess
from typing import Callable, List, Optional

from .errors import ResolutionError

logger = logging.getLogger(__name__)

KUBECTL = "kubectl"

# Takes the kubectl arguments (without the binary) and returns stdout.
KubectlRunner = Callable[[List[str]], str]


def kubectl(args: List[str]) -> str:
    """
    Run kubectl and return its stdout.

    Raises:
        ResolutionError: If kubectl is missing or exits non-zero
    """
    try:
        result = subprocess.run(
            [KUBECTL, *args],
            capture_output=True,
            text=True,
        )
    except FileNotFoundError as e:
        raise ResolutionError(f"kubectl command not found: {e}") from e

    if result.returncode != 0:
        msg = result.stderr.strip() or f"exit status {result.returncode}"
        raise ResolutionError(f"kubectl {' '.join(args)} failed: {msg}")
    return result.stdout


def _cluster_args(cluster: Optional[str]) -> List[str]:
    return ["--cluster", cluster] if cluster else []


def _parse_port(output: str) -> int:
    fields = output.split()
    if not fields:
        raise ResolutionError(f"failed to parse port from {output!r}")
    try:
        return int(fields[0])
    except ValueError as e:
        raise ResolutionError(f"failed to parse port from {output!r}") from e


def resolve_service_port(
    namespace: str,
    service: str,
    port_name: Optional[str] = None,
    port: Optional[int] = None,
    cluster: Optional[str] = None,
    runner: Optional[KubectlRunner] = None,
) -> int:
    """
    Resolve the remote port of a Kubernetes Service.

    An explicit port wins; otherwise the named port is looked up on the
    Service; otherwise the Service's first declared port is used.

    Args:
        namespace: Service namespace
        service: Service name
        port_name: Name of a port declared on the Service
        port: Explicit port number
        cluster: kubeconfig cluster override
        runner: kubectl runner (defaults to the real binary)

    Returns:
        The resolved port number

    Raises:
        ResolutionError: If the Service or port cannot be found
    """
    if port:
        return int(port)

    run = runner or kubectl
    base = [*_cluster_args(cluster), "-n", namespace, "get", "svc", service, "-o"]

    if port_name and port_name.strip():
        jsonpath = f"{{.spec.ports[?(@.name=='{port_name}')].port}}"
        out = run([*base, f"jsonpath={jsonpath}"]).strip()
        if not out:
            raise ResolutionError(
                f"service {namespace}/{service} has no port named '{port_name}'"
            )
        return _parse_port(out)

    out = run([*base, "jsonpath={.spec.ports[0].port}"]).strip()
    if not out:
        raise ResolutionError(f"service {namespace}/{service} declares no ports")
    return _parse_port(out)


def build_port_forward_command(
    namespace: str,
    service: str,
    local_port: int,
    remote_port: int,
    cluster: Optional[str] = None,
) -> List[str]:
    """Build the kubectl port-forward command for one Service."""
    return [
        KUBECTL,
        *_cluster_args(cluster),
        "port-forward",
        "-n", namespace,
        f"svc/{service}",
        f"{local_port}:{remote_port}",
        "--address", "127.0.0.1",
    ]
