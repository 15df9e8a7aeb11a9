"""Tests for mesh orchestration."""

import asyncio
import itertools
import subprocess
from pathlib import Path

import pytest
import yaml

from conftest import FakeProcess
from localmesh import runner as runner_module
from localmesh.errors import AllocationError
from localmesh.loopback import AliasManager, never_in_use
from localmesh.runner import (
    build_envoy_command,
    dump_config,
    envoy_log_level,
    run_mesh,
)
from localmesh.types import MeshConfig, MockConfig


@pytest.fixture
def mesh_config():
    return MeshConfig.from_dict({
        "listener_port": 8080,
        "ssh_bastions": {
            "primary": {"instance": "bastion-1", "zone": "asia-northeast1-a"},
        },
        "services": [
            {"kind": "kubernetes", "host": "web.localhost", "namespace": "default", "service": "web", "port": 80},
            {
                "kind": "tcp",
                "host": "db.localhost",
                "ssh_bastion": "primary",
                "target_host": "10.0.0.5",
                "target_port": 5432,
            },
        ],
    })


@pytest.fixture(autouse=True)
def fixed_local_ports(monkeypatch):
    ports = itertools.count(41000)
    monkeypatch.setattr("localmesh.dispatch.allocate_local_port", lambda: next(ports))


class ScriptedRunner:
    """Tunnels run until terminated; Envoy optionally exits by itself."""

    def __init__(self, envoy_exit_after=None, envoy_exit_code=0):
        self.envoy_exit_after = envoy_exit_after
        self.envoy_exit_code = envoy_exit_code
        self.calls = []
        self.processes = {}
        self.bootstrap = None

    async def __call__(self, args, stdout=None, stderr=None):
        self.calls.append(list(args))
        if args[0] == "envoy":
            self.bootstrap = yaml.safe_load(Path(args[2]).read_text())
            process = FakeProcess(exit_after=self.envoy_exit_after, exit_code=self.envoy_exit_code)
        else:
            process = FakeProcess()
        self.processes[args[0]] = process
        return process


class RecordingExecutor:
    def __init__(self, fail=False):
        self.calls = []
        self.fail = fail

    def __call__(self, args):
        self.calls.append(list(args))
        if self.fail:
            raise subprocess.CalledProcessError(1, args)


def run(coro):
    return asyncio.run(asyncio.wait_for(coro, timeout=5))


class TestEnvoyLevel:
    def test_mapping(self):
        assert envoy_log_level("debug") == "debug"
        assert envoy_log_level("info") == "warn"
        assert envoy_log_level("warn") == "warn"

    def test_command(self):
        assert build_envoy_command("/tmp/envoy.yaml", "info") == ["envoy", "-c", "/tmp/envoy.yaml", "-l", "warn"]


class TestDumpConfig:
    def test_bootstrap(self, mesh_config):
        document = yaml.safe_load(dump_config(mesh_config))
        clusters = document["static_resources"]["clusters"]
        assert [c["name"] for c in clusters] == ["default_web_80", "tcp_primary_10_0_0_5_5432"]

    def test_mapping(self, mesh_config):
        report = yaml.safe_load(dump_config(mesh_config, mock_config=MockConfig(), output_mapping=True))
        assert [s["assigned_local_port"] for s in report["services"]] == [10000, 10001]
        assert report["services"][1]["assigned_listen_addr"] == "127.0.0.2"


class TestRunMesh:
    def test_stop_event_shuts_everything_down(self, mesh_config):
        runner = ScriptedRunner()

        async def scenario():
            stop = asyncio.Event()
            asyncio.get_running_loop().call_later(0.05, stop.set)
            return await run_mesh(
                mesh_config,
                process_runner=runner,
                is_in_use=never_in_use,
                stop=stop,
                handle_signals=False,
                manage_aliases=False,
            )

        assert run(scenario()) == 0
        assert sorted(runner.processes) == ["envoy", "gcloud", "kubectl"]
        assert all(p.terminated for p in runner.processes.values())

        envoy_args = next(c for c in runner.calls if c[0] == "envoy")
        assert not Path(envoy_args[2]).exists()
        assert len(runner.bootstrap["static_resources"]["clusters"]) == 2

    def test_envoy_exit_stops_tunnels(self, mesh_config):
        runner = ScriptedRunner(envoy_exit_after=0.05, envoy_exit_code=3)

        async def scenario():
            return await run_mesh(
                mesh_config,
                process_runner=runner,
                is_in_use=never_in_use,
                handle_signals=False,
                manage_aliases=False,
            )

        assert run(scenario()) == 3
        assert runner.processes["kubectl"].terminated
        assert runner.processes["gcloud"].terminated
        assert not runner.processes["envoy"].terminated

    def test_summary_logged(self, mesh_config, caplog):
        runner = ScriptedRunner(envoy_exit_after=0, envoy_exit_code=0)

        async def scenario():
            return await run_mesh(
                mesh_config,
                process_runner=runner,
                is_in_use=never_in_use,
                handle_signals=False,
                manage_aliases=False,
            )

        with caplog.at_level("INFO", logger="localmesh.runner"):
            run(scenario())
        assert any("Service Mesh is ready!" in r.getMessage() for r in caplog.records)

    def test_aliases_added_and_removed(self, mesh_config, monkeypatch):
        monkeypatch.setattr(runner_module, "needs_aliases", lambda: True)
        executor = RecordingExecutor()
        runner = ScriptedRunner(envoy_exit_after=0)

        run(run_mesh(
            mesh_config,
            alias_manager=AliasManager(executor),
            process_runner=runner,
            is_in_use=never_in_use,
            handle_signals=False,
        ))
        assert executor.calls == [
            ["ifconfig", "lo0", "alias", "127.0.0.2", "up"],
            ["ifconfig", "lo0", "-alias", "127.0.0.2"],
        ]

    def test_alias_failure_is_setup_error(self, mesh_config, monkeypatch):
        monkeypatch.setattr(runner_module, "needs_aliases", lambda: True)
        runner = ScriptedRunner()

        with pytest.raises(AllocationError, match="127.0.0.2"):
            run(run_mesh(
                mesh_config,
                alias_manager=AliasManager(RecordingExecutor(fail=True)),
                process_runner=runner,
                is_in_use=never_in_use,
                handle_signals=False,
            ))
        assert runner.calls == []

    def test_missing_envoy_binary(self, mesh_config):
        async def runner(args, stdout=None, stderr=None):
            if args[0] == "envoy":
                raise FileNotFoundError("envoy")
            return FakeProcess()

        assert run(run_mesh(
            mesh_config,
            process_runner=runner,
            is_in_use=never_in_use,
            handle_signals=False,
            manage_aliases=False,
        )) == 1
