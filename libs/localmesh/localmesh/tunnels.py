"""
Reconnecting tunnel supervisors.

A supervisor owns one tunnel subprocess (kubectl port-forward or a gcloud
IAP SSH tunnel) for the lifetime of the mesh. Whenever the process exits it
is restarted after a short fixed delay; the loop only ends when the shared
stop event is set, at which point the running process is terminated.
Runtime failures are logged at debug level and never raised.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional

from .errors import TunnelConfigError
from .kube import build_port_forward_command
from .ports import is_valid_port
from .types import SSHBastion

logger = logging.getLogger(__name__)

RETRY_DELAY = 0.3
TERMINATE_TIMEOUT = 5.0

ProcessRunner = Callable[..., Awaitable[Any]]


class TunnelState(str, Enum):
    """Lifecycle of a supervised tunnel."""
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    STOPPED = "stopped"


async def spawn_process(args: List[str], stdout: Optional[int] = None, stderr: Optional[int] = None):
    """Start a subprocess without a shell."""
    return await asyncio.create_subprocess_exec(*args, stdout=stdout, stderr=stderr)


async def terminate_process(process: Any, timeout: float = TERMINATE_TIMEOUT) -> None:
    """Terminate a subprocess, killing it if it ignores SIGTERM."""
    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()


async def wait_or_timeout(stop: asyncio.Event, delay: float) -> None:
    """Sleep for `delay` seconds unless `stop` is set first."""
    try:
        await asyncio.wait_for(stop.wait(), timeout=delay)
    except asyncio.TimeoutError:
        pass


class TunnelSupervisor:
    """
    Base reconnect loop shared by every tunnel kind.

    Subclasses provide build_command() and describe(). The process runner is
    injectable; it is called as runner(args, stdout=..., stderr=...) and must
    return an object with the asyncio Process interface (wait, terminate,
    kill, returncode).
    """

    binary = ""

    def __init__(
        self,
        runner: Optional[ProcessRunner] = None,
        retry_delay: float = RETRY_DELAY,
        verbose: Optional[bool] = None,
    ):
        self.runner = runner or spawn_process
        self.retry_delay = retry_delay
        self.verbose = verbose
        self.state = TunnelState.STOPPED
        self.attempts = 0
        self._warned_missing = False

    def build_command(self) -> List[str]:
        raise NotImplementedError

    def describe(self) -> str:
        raise NotImplementedError

    def _output_target(self) -> Optional[int]:
        verbose = self.verbose if self.verbose is not None else logger.isEnabledFor(logging.DEBUG)
        return None if verbose else asyncio.subprocess.DEVNULL

    async def supervise(self, stop: asyncio.Event) -> None:
        """
        Keep the tunnel up until `stop` is set.

        Returns normally on stop. Task cancellation terminates the running
        process and propagates.
        """
        try:
            while not stop.is_set():
                self.state = TunnelState.CONNECTING
                try:
                    returncode = await self._run_once(stop)
                except FileNotFoundError as e:
                    if not self._warned_missing:
                        logger.warning(f"{self.binary} command not found: {e}")
                        self._warned_missing = True
                    returncode = None
                except OSError as e:
                    logger.debug(f"{self.describe()} failed to start (reconnecting...): {e}")
                    returncode = None
                else:
                    if stop.is_set():
                        break
                    logger.debug(
                        f"{self.describe()} disconnected with exit code {returncode} "
                        f"(reconnecting...)"
                    )
                self.state = TunnelState.DISCONNECTED
                await wait_or_timeout(stop, self.retry_delay)
        finally:
            self.state = TunnelState.STOPPED

    async def _run_once(self, stop: asyncio.Event) -> Optional[int]:
        """Run one connection attempt until the process exits or stop is set."""
        self.attempts += 1
        output = self._output_target()
        process = await self.runner(self.build_command(), stdout=output, stderr=output)
        self.state = TunnelState.CONNECTED

        exit_task = asyncio.ensure_future(process.wait())
        stop_task = asyncio.ensure_future(stop.wait())
        try:
            await asyncio.wait({exit_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_task.cancel()
            if not exit_task.done():
                await terminate_process(process)
                exit_task.cancel()
        return process.returncode


class PortForwardSupervisor(TunnelSupervisor):
    """kubectl port-forward from 127.0.0.1:local_port to a Service port."""

    binary = "kubectl"

    def __init__(
        self,
        namespace: str,
        service: str,
        local_port: int,
        remote_port: int,
        cluster: Optional[str] = None,
        **kwargs: Any,
    ):
        super().__init__(**kwargs)
        self.namespace = namespace
        self.service = service
        self.local_port = local_port
        self.remote_port = remote_port
        self.cluster = cluster

    def build_command(self) -> List[str]:
        return build_port_forward_command(
            self.namespace, self.service, self.local_port, self.remote_port, self.cluster
        )

    def describe(self) -> str:
        return (
            f"port-forward {self.namespace}/{self.service}:{self.remote_port} "
            f"-> 127.0.0.1:{self.local_port}"
        )


def build_gcloud_ssh_command(
    bastion: SSHBastion,
    local_port: int,
    target_host: str,
    target_port: int,
) -> List[str]:
    """Build the gcloud compute ssh arguments for an IAP tunnel."""
    args = ["gcloud", "compute", "ssh", bastion.instance]
    if bastion.project:
        args.append(f"--project={bastion.project}")
    args += [
        f"--zone={bastion.zone}",
        "--tunnel-through-iap",
        "--",
        "-L", f"{local_port}:{target_host}:{target_port}",
        "-N",
        "-o", "ExitOnForwardFailure=yes",
        "-o", "ServerAliveInterval=30",
        "-o", "ServerAliveCountMax=3",
    ]
    return args


class GcpSshTunnelSupervisor(TunnelSupervisor):
    """SSH local forward through a GCP bastion reached over IAP."""

    binary = "gcloud"

    def __init__(
        self,
        bastion: Optional[SSHBastion],
        local_port: int,
        target_host: str,
        target_port: int,
        **kwargs: Any,
    ):
        if bastion is None:
            raise TunnelConfigError("bastion is nil")
        if not bastion.instance:
            raise TunnelConfigError("bastion instance name is empty")
        if not bastion.zone:
            raise TunnelConfigError("bastion zone is empty")
        if not is_valid_port(local_port):
            raise TunnelConfigError(f"invalid local port: {local_port}")
        if not target_host:
            raise TunnelConfigError("target host is empty")
        if not is_valid_port(target_port):
            raise TunnelConfigError(f"invalid target port: {target_port}")

        super().__init__(**kwargs)
        self.bastion = bastion
        self.local_port = local_port
        self.target_host = target_host
        self.target_port = target_port

    def build_command(self) -> List[str]:
        return build_gcloud_ssh_command(
            self.bastion, self.local_port, self.target_host, self.target_port
        )

    def describe(self) -> str:
        return (
            f"SSH tunnel {self.bastion.instance} -> {self.target_host}:{self.target_port} "
            f"via 127.0.0.1:{self.local_port}"
        )
