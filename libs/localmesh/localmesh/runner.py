"""
Mesh orchestration.

Live mode runs the synchronous setup pass, writes the Envoy bootstrap to a
temporary directory and then supervises every tunnel plus the Envoy process
inside one asyncio.TaskGroup. A single stop event is shared by all tasks;
SIGINT/SIGTERM set it, and so does Envoy exiting on its own.
"""

import asyncio
import logging
import signal
import subprocess
import tempfile
from pathlib import Path
from typing import List, Optional

from .dispatch import DumpVisitor, RunVisitor
from .errors import AllocationError
from .generators import build_config, dump_yaml
from .kube import KubectlRunner
from .loopback import AliasManager, IPChecker, needs_aliases
from .mapping import build_mappings, dump_mappings
from .summary import generate_summary
from .tunnels import ProcessRunner, spawn_process, terminate_process
from .types import MeshConfig, MockConfig

logger = logging.getLogger(__name__)

ENVOY = "envoy"
BOOTSTRAP_NAME = "envoy.yaml"

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
}


def configure_logging(level: str = "info") -> None:
    """Configure the root logger from the tool's log level name."""
    logging.basicConfig(
        level=LOG_LEVELS.get(level, logging.INFO),
        format="%(asctime)s - %(levelname)s - %(message)s",
    )


def envoy_log_level(level: str) -> str:
    """Envoy only gets verbose when the tool itself is at debug."""
    return "debug" if level == "debug" else "warn"


def build_envoy_command(config_path: str, log_level: str) -> List[str]:
    return [ENVOY, "-c", config_path, "-l", envoy_log_level(log_level)]


def dump_config(
    config: MeshConfig,
    mock_config: Optional[MockConfig] = None,
    output_mapping: bool = False,
    kubectl_runner: Optional[KubectlRunner] = None,
) -> str:
    """
    Dry run: build the bootstrap document without starting anything.

    Args:
        config: Validated mesh config
        mock_config: Remote-port table used instead of kubectl
        output_mapping: Render the port mapping report instead of the bootstrap
        kubectl_runner: kubectl runner override

    Returns:
        YAML text
    """
    visitor = DumpVisitor(config, mock_config=mock_config, kubectl_runner=kubectl_runner)
    service_configs = visitor.visit_all()
    if output_mapping:
        return dump_mappings(build_mappings(service_configs))
    return dump_yaml(build_config(config.listener_port, visitor.fragments))


async def run_envoy(args: List[str], stop: asyncio.Event, runner: ProcessRunner) -> int:
    """
    Run Envoy until it exits or `stop` is set.

    Envoy exiting on its own sets `stop` so the tunnels wind down too.
    """
    try:
        process = await runner(args, stdout=None, stderr=None)
    except OSError as e:
        logger.error(f"failed to start envoy: {e}")
        stop.set()
        return 1

    exit_task = asyncio.ensure_future(process.wait())
    stop_task = asyncio.ensure_future(stop.wait())
    try:
        await asyncio.wait({exit_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stop_task.cancel()
        if not exit_task.done():
            await terminate_process(process)
            exit_task.cancel()

    if not stop.is_set():
        logger.error(f"envoy exited with code {process.returncode}")
        stop.set()
        return process.returncode or 1
    return 0


def _install_signal_handlers(stop: asyncio.Event) -> List[int]:
    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            continue
        installed.append(sig)
    return installed


def _remove_signal_handlers(installed: List[int]) -> None:
    loop = asyncio.get_running_loop()
    for sig in installed:
        loop.remove_signal_handler(sig)


def _add_aliases(manager: AliasManager, aliases: List[str]) -> None:
    for ip in aliases:
        try:
            manager.add_alias(ip)
        except (OSError, subprocess.CalledProcessError) as e:
            raise AllocationError(
                f"failed to add loopback alias {ip} (requires sudo): {e}"
            ) from e


async def run_mesh(
    config: MeshConfig,
    log_level: str = "info",
    manage_aliases: bool = True,
    alias_manager: Optional[AliasManager] = None,
    process_runner: Optional[ProcessRunner] = None,
    kubectl_runner: Optional[KubectlRunner] = None,
    is_in_use: Optional[IPChecker] = None,
    stop: Optional[asyncio.Event] = None,
    handle_signals: bool = True,
) -> int:
    """
    Live mode: tunnels plus Envoy until interrupted.

    Setup errors (port resolution, allocation, alias creation) raise before
    any task starts. Returns Envoy's exit status when it dies on its own,
    0 on a requested stop.
    """
    runner = process_runner or spawn_process
    visitor = RunVisitor(
        config,
        is_in_use=is_in_use,
        kubectl_runner=kubectl_runner,
        supervisor_options={"runner": runner},
    )
    visitor.visit_all()
    document = build_config(config.listener_port, visitor.fragments)

    aliases = alias_manager or AliasManager()
    stop = stop or asyncio.Event()
    installed: List[int] = []

    with tempfile.TemporaryDirectory(prefix="localmesh-") as tmp_dir:
        envoy_path = Path(tmp_dir) / BOOTSTRAP_NAME
        envoy_path.write_text(dump_yaml(document))
        logger.debug(f"envoy config: {envoy_path}")
        logger.debug(f"listen: 0.0.0.0:{config.listener_port}")

        try:
            if manage_aliases and needs_aliases() and visitor.loopback.aliases:
                _add_aliases(aliases, visitor.loopback.aliases)

            logger.info(generate_summary(visitor.summaries, config.listener_port))

            if handle_signals:
                installed = _install_signal_handlers(stop)

            async with asyncio.TaskGroup() as tg:
                for supervisor in visitor.supervisors:
                    tg.create_task(supervisor.supervise(stop))
                envoy_task = tg.create_task(
                    run_envoy(build_envoy_command(str(envoy_path), log_level), stop, runner)
                )
        finally:
            _remove_signal_handlers(installed)
            aliases.remove_added()

    return envoy_task.result()
