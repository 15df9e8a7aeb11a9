"""
Loopback alias allocation for TCP services.

Every TCP service listens on its own 127.0.0.x address so that two services
exposing the same port (two PostgreSQL databases on 5432, say) can coexist.
127.0.0.1 is never handed out; allocation starts at 127.0.0.2.

On macOS only 127.0.0.1 is configured on lo0, so the extra addresses must be
added as aliases before Envoy can bind them. Linux routes all of 127/8 to
the loopback interface already.
"""

import logging
import socket
import subprocess
import sys
from typing import Callable, List, Optional

import psutil

from .errors import AddressRangeExhausted

logger = logging.getLogger(__name__)

FIRST_OCTET = 2
LAST_OCTET = 254
ADDRESS_PREFIX = "127.0.0."

IPChecker = Callable[[str], bool]
CommandExecutor = Callable[[List[str]], None]


def loopback_addresses() -> List[str]:
    """IPv4 addresses currently assigned to loopback interfaces."""
    addresses = []
    for name, addrs in psutil.net_if_addrs().items():
        for addr in addrs:
            if addr.family == socket.AF_INET and addr.address.startswith("127."):
                addresses.append(addr.address)
    return addresses


def default_ip_checker(ip: str) -> bool:
    """Report whether an address is already present on the loopback interface."""
    return ip in loopback_addresses()


def never_in_use(ip: str) -> bool:
    return False


class LoopbackAllocator:
    """
    Hands out 127.0.0.2 .. 127.0.0.254 in order.

    The counter only moves forward: an octet skipped because it was in use,
    or already handed out, is never returned again within a run.
    """

    def __init__(self, is_in_use: Optional[IPChecker] = None):
        self.is_in_use = is_in_use or default_ip_checker
        self._next_octet = FIRST_OCTET
        self._allocated: List[str] = []

    def allocate(self) -> str:
        """
        Return the next free loopback address.

        Raises:
            AddressRangeExhausted: Once every octet up to 254 is used
        """
        while self._next_octet <= LAST_OCTET:
            ip = f"{ADDRESS_PREFIX}{self._next_octet}"
            self._next_octet += 1
            if not self.is_in_use(ip):
                self._allocated.append(ip)
                return ip
        raise AddressRangeExhausted(
            f"{ADDRESS_PREFIX}{FIRST_OCTET}", f"{ADDRESS_PREFIX}{LAST_OCTET}"
        )

    @property
    def aliases(self) -> List[str]:
        """Every address handed out so far, in allocation order."""
        return list(self._allocated)


def needs_aliases(platform: str = sys.platform) -> bool:
    """Whether extra loopback addresses must be configured explicitly."""
    return platform == "darwin"


def _run_command(args: List[str]) -> None:
    subprocess.run(args, check=True, capture_output=True)


class AliasManager:
    """
    Adds loopback aliases on lo0 and removes the ones it added.

    Requires root: `ifconfig lo0 alias <ip> up`.
    """

    def __init__(self, executor: Optional[CommandExecutor] = None, interface: str = "lo0"):
        self.executor = executor or _run_command
        self.interface = interface
        self._added: List[str] = []

    def add_alias(self, ip: str) -> None:
        """
        Add one alias.

        Raises:
            subprocess.CalledProcessError: If ifconfig fails
        """
        self.executor(["ifconfig", self.interface, "alias", ip, "up"])
        self._added.append(ip)
        logger.debug(f"Added loopback alias {ip}")

    def add_aliases(self, ips: List[str]) -> None:
        for ip in ips:
            self.add_alias(ip)

    def remove_alias(self, ip: str) -> None:
        self.executor(["ifconfig", self.interface, "-alias", ip])

    @property
    def added(self) -> List[str]:
        return list(self._added)

    def remove_added(self) -> None:
        """Remove every alias this manager added; failures are logged."""
        for ip in self._added:
            try:
                self.remove_alias(ip)
            except (OSError, subprocess.CalledProcessError) as e:
                logger.warning(f"Failed to remove loopback alias {ip}: {e}")
        self._added = []
