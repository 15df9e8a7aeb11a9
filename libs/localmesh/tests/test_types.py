"""Tests for localmesh config types."""

import pytest

from localmesh.errors import ConfigError, ResolutionError
from localmesh.types import (
    DEFAULT_LISTENER_PORT,
    KubernetesService,
    MeshConfig,
    MockConfig,
    Protocol,
    ServiceKind,
    ServiceVisitor,
    SSHBastion,
    TCPService,
    parse_service,
)


@pytest.fixture
def config_data():
    """Config with one service of each kind."""
    return {
        "listener_port": 8080,
        "ssh_bastions": {
            "primary": {"instance": "bastion-1", "zone": "asia-northeast1-a", "project": "proj"},
        },
        "services": [
            {
                "kind": "kubernetes",
                "host": " users-api.localhost ",
                "namespace": "users",
                "service": "users-api",
                "port_name": "grpc",
                "protocol": "grpc",
            },
            {
                "kind": "tcp",
                "host": "users-db.localhost",
                "ssh_bastion": "primary",
                "target_host": "10.0.0.5",
                "target_port": 5432,
            },
        ],
    }


class RecordingVisitor(ServiceVisitor):
    def visit_kubernetes(self, service):
        return ("kubernetes", service.host)

    def visit_tcp(self, service):
        return ("tcp", service.host)


class TestProtocol:
    def test_labels(self):
        assert Protocol.GRPC.label == "gRPC"
        assert Protocol.HTTP.label == "HTTP"
        assert Protocol.HTTP2.label == "HTTP/2"

    def test_uses_http2(self):
        assert Protocol.GRPC.uses_http2
        assert Protocol.HTTP2.uses_http2
        assert not Protocol.HTTP.uses_http2


class TestParseService:
    def test_kubernetes(self):
        service = parse_service({
            "kind": "kubernetes",
            "host": "a.localhost",
            "namespace": "ns",
            "service": "svc",
        })
        assert isinstance(service, KubernetesService)
        assert service.kind == ServiceKind.KUBERNETES
        assert service.protocol == "http"
        assert service.overwrite_listen_ports == []

    def test_tcp(self):
        service = parse_service({
            "kind": "tcp",
            "host": "db.localhost",
            "ssh_bastion": "b",
            "target_host": "10.0.0.1",
            "target_port": 5432,
        })
        assert isinstance(service, TCPService)
        assert service.protocol == "tcp"
        assert service.effective_listen_port == 5432

    def test_listen_port_overrides_target(self):
        service = parse_service({
            "kind": "tcp",
            "host": "db.localhost",
            "ssh_bastion": "b",
            "target_host": "10.0.0.1",
            "target_port": 5432,
            "listen_port": 15432,
        })
        assert service.effective_listen_port == 15432

    def test_missing_kind(self):
        with pytest.raises(ConfigError, match="service must have 'kind' field"):
            parse_service({"host": "a"})

    def test_unknown_kind(self):
        with pytest.raises(ConfigError, match="unknown service kind: udp"):
            parse_service({"kind": "udp", "host": "a"})

    def test_visitor_dispatch(self, config_data):
        config = MeshConfig.from_dict(config_data)
        visitor = RecordingVisitor()
        assert [s.accept(visitor) for s in config.services] == [
            ("kubernetes", "users-api.localhost"),
            ("tcp", "users-db.localhost"),
        ]


class TestMeshConfig:
    def test_from_dict(self, config_data):
        config = MeshConfig.from_dict(config_data)
        assert config.listener_port == 8080
        assert config.services[0].host == "users-api.localhost"
        assert config.get_bastion("primary") == SSHBastion("bastion-1", "asia-northeast1-a", "proj")
        config.validate()

    def test_defaults(self):
        config = MeshConfig.from_dict({"services": []})
        assert config.listener_port == DEFAULT_LISTENER_PORT
        assert config.ssh_bastions == {}

    def test_no_services(self):
        with pytest.raises(ConfigError, match="no services configured"):
            MeshConfig.from_dict({}).validate()

    def test_unknown_bastion(self, config_data):
        config_data["services"][1]["ssh_bastion"] = "missing"
        config = MeshConfig.from_dict(config_data)
        with pytest.raises(ConfigError) as exc_info:
            config.validate()
        message = str(exc_info.value)
        assert "index 1" in message
        assert "ssh_bastion 'missing' not found for service 'users-db.localhost'" in message

    def test_invalid_protocol(self, config_data):
        config_data["services"][0]["protocol"] = "websocket"
        with pytest.raises(ConfigError, match="protocol must be"):
            MeshConfig.from_dict(config_data).validate()

    def test_missing_namespace(self, config_data):
        del config_data["services"][0]["namespace"]
        with pytest.raises(ConfigError, match="namespace is required"):
            MeshConfig.from_dict(config_data).validate()

    def test_overwrite_listen_port_out_of_range(self, config_data):
        config_data["services"][0]["overwrite_listen_ports"] = [70000]
        with pytest.raises(ConfigError, match="overwrite_listen_ports must be between"):
            MeshConfig.from_dict(config_data).validate()

    def test_missing_target_port(self, config_data):
        del config_data["services"][1]["target_port"]
        with pytest.raises(ConfigError, match="target_port is required"):
            MeshConfig.from_dict(config_data).validate()

    def test_non_numeric_port(self, config_data):
        config_data["services"][0]["port"] = "http"
        with pytest.raises(ConfigError, match="port must be between 1 and 65535 for service 'users-api.localhost', got http"):
            MeshConfig.from_dict(config_data).validate()

    def test_non_numeric_target_port(self, config_data):
        config_data["services"][1]["target_port"] = "postgres"
        with pytest.raises(ConfigError, match="index 1: target_port must be between"):
            MeshConfig.from_dict(config_data).validate()

    def test_scalar_overwrite_listen_ports(self, config_data):
        config_data["services"][0]["overwrite_listen_ports"] = 8080
        with pytest.raises(ConfigError, match="overwrite_listen_ports must be a list of ports"):
            MeshConfig.from_dict(config_data).validate()


class TestMockConfig:
    def test_find_port(self):
        mocks = MockConfig.from_dict({
            "mocks": [
                {"namespace": "users", "service": "users-api", "port_name": "grpc", "resolved_port": 50051},
                {"namespace": "users", "service": "web", "resolved_port": 8080},
            ],
        })
        assert mocks.find_port("users", "users-api", "grpc") == 50051
        assert mocks.find_port("users", "web", None) == 8080

    def test_missing_mock(self):
        with pytest.raises(ResolutionError, match="mock config not found for users/api"):
            MockConfig().find_port("users", "api", "http")
