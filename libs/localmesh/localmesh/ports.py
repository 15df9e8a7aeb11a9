"""
Local port allocation and port conflict detection.

Kubernetes services share 127.0.0.1 and only need a unique ephemeral port.
TCP services additionally get a loopback alias (see loopback.py), so their
listeners are checked for collisions on the address:port pair.
"""

import logging
import socket
from typing import Dict, Optional, Tuple

from .errors import ConfigError

logger = logging.getLogger(__name__)

MIN_PORT = 1
MAX_PORT = 65535
PRIVILEGED_PORT_MAX = 1023

WILDCARD_ADDRESS = "0.0.0.0"


def is_valid_port(port: Optional[int]) -> bool:
    """Check that a port is an integer within 1-65535."""
    if not isinstance(port, int) or isinstance(port, bool):
        return False
    return MIN_PORT <= port <= MAX_PORT


def is_privileged_port(port: int) -> bool:
    """Check whether binding the port needs root."""
    return 0 < int(port) <= PRIVILEGED_PORT_MAX


def validate_port(port: int, field_name: str, service_name: str) -> None:
    """
    Validate a port number for a service field.

    Raises:
        ConfigError: If the port is outside 1-65535
    """
    if not is_valid_port(port):
        raise ConfigError(
            f"{field_name} must be between {MIN_PORT} and {MAX_PORT} "
            f"for service '{service_name}', got {port}"
        )


def validate_required_port(port: Optional[int], field_name: str, service_name: str) -> None:
    """Like validate_port, but a missing or zero port is reported as required."""
    if not port:
        raise ConfigError(f"{field_name} is required for service '{service_name}'")
    validate_port(port, field_name, service_name)


def warn_privileged_port(
    port: int,
    field_name: str,
    service_name: str,
    sink: Optional[logging.Logger] = None,
) -> bool:
    """
    Warn when a listener port needs root to bind.

    Returns:
        True if a warning was emitted
    """
    if not is_privileged_port(port):
        return False
    (sink or logger).warning(
        f"{field_name}={port} for service '{service_name}' is a privileged port "
        f"(requires root/sudo)"
    )
    return True


def allocate_local_port(host: str = "127.0.0.1") -> int:
    """
    Reserve an ephemeral TCP port from the OS.

    The socket is closed before returning, so the port is only a strong hint:
    the tunnel process binds it moments later.

    Raises:
        OSError: If the OS has no ephemeral ports left
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind((host, 0))
        return s.getsockname()[1]


class PortConflictChecker:
    """
    Registry of listener bindings that warns about overlapping ones.

    Bindings are keyed by (address, port). An empty address means "no
    explicit bind address" and clashes with anything on the same port;
    0.0.0.0 clashes with every binding on its port; a specific address only
    clashes with the same pair or a wildcard on that port.

    Conflicts never block registration: duplicate bindings fail at bind time
    downstream, so they are reported as warnings to the injected sink.
    """

    def __init__(self, sink: Optional[logging.Logger] = None):
        self.sink = sink or logger
        self._bindings: Dict[Tuple[str, int], str] = {}
        self._wildcards: Dict[int, str] = {}

    def register(self, port: int, service_name: str) -> bool:
        """Register a port with no explicit bind address."""
        return self.register_with_addr("", port, service_name)

    def register_with_addr(self, address: str, port: int, service_name: str) -> bool:
        """
        Register an address:port binding for a service.

        Returns:
            True if the binding conflicted with an earlier one
        """
        port = int(port)
        existing = self._find_conflict(address, port)
        if existing is not None:
            self._warn(address, port, existing, service_name)

        if address in ("", WILDCARD_ADDRESS):
            self._wildcards[port] = service_name
        else:
            self._bindings[(address, port)] = service_name
        return existing is not None

    def _find_conflict(self, address: str, port: int) -> Optional[str]:
        if port in self._wildcards:
            return self._wildcards[port]

        if address in ("", WILDCARD_ADDRESS):
            for (_, bound_port), owner in self._bindings.items():
                if bound_port == port:
                    return owner
            return None

        return self._bindings.get((address, port))

    def _warn(self, address: str, port: int, existing: str, service_name: str) -> None:
        where = f"{address}:{port}" if address else f"port {port}"
        self.sink.warning(f"{where} is used by both '{existing}' and '{service_name}'")
