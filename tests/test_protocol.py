from __future__ import annotations

import pytest

from bftbench.client import RemoteNode
from bftbench.config import local_fleet
from bftbench.errors import ConfigurationError
from bftbench.protocol.mysticeti import MysticetiBenchmarkType, MysticetiProtocol
from conftest import make_parameters


class TestMysticetiBenchmarkType:
    def test_parse_and_display(self) -> None:
        benchmark_type = MysticetiBenchmarkType.parse("1024")
        assert benchmark_type.transaction_size == 1024
        assert str(benchmark_type) == "1024B transactions"

    @pytest.mark.parametrize("text", ["big", "0", "-1"])
    def test_parse_rejects_invalid(self, text: str) -> None:
        with pytest.raises(ConfigurationError):
            MysticetiBenchmarkType.parse(text)


class TestMysticetiProtocol:
    def test_node_environment(self) -> None:
        protocol = MysticetiProtocol()
        node = local_fleet(4)[1]
        env = protocol.node_environment(node, make_parameters(load=200, nodes=4))
        assert env == {"TPS": "50", "TRANSACTION_SIZE": "512", "AUTHORITY_INDEX": "1"}

    def test_node_command(self) -> None:
        protocol = MysticetiProtocol(working_dir="~/data/")
        node = RemoteNode.from_env(2, environ={"NODE2_HOST": "10.0.0.3"})
        [(target, command)] = protocol.node_command([node], make_parameters(load=400, nodes=4))

        assert target is node
        assert "docker pull scalarorg/mysticeti:latest" in command
        assert "--name mysticeti-node2" in command
        assert "-p 26657:26657 -p 26672:26672 -p 8002:8002" in command
        assert "-v ~/data:/app/data" in command
        assert "-e TPS=100" in command
        assert "--authority-index 2" in command
        assert "--abci-port 26672" in command

    def test_genesis_lists_every_ip(self) -> None:
        nodes = [RemoteNode.from_env(i, environ={f"NODE{i}_HOST": f"10.0.0.{i + 1}"}) for i in range(3)]
        command = MysticetiProtocol().genesis_command(nodes)
        assert "benchmark-genesis --ips 10.0.0.1 10.0.0.2 10.0.0.3" in command
        assert "--working-directory /app/data" in command

    def test_sidecar_only_with_adapter_image(self) -> None:
        nodes = local_fleet(2)
        parameters = make_parameters(nodes=2)
        assert MysticetiProtocol().client_command(nodes, parameters) == []
        assert MysticetiProtocol().sidecar_name(nodes[0]) is None

        protocol = MysticetiProtocol(adapter_image="scalarorg/mysticeti-abci:latest")
        commands = protocol.client_command(nodes, parameters)
        assert len(commands) == 2
        assert "--network container:mysticeti-node1" in commands[1][1]
        assert protocol.sidecar_name(nodes[1]) == "mysticeti-abci1"

    def test_cleanup_and_storage(self) -> None:
        protocol = MysticetiProtocol(working_dir="/srv/mysticeti")
        assert protocol.db_directories() == ["/srv/mysticeti/private/val-*/*"]
        assert any("killall mysticeti" in command for command in protocol.cleanup_commands())

    def test_metrics_paths(self) -> None:
        nodes = local_fleet(2)
        paths = MysticetiProtocol().nodes_metrics_path(nodes)
        assert [url for _, url in paths] == ["http://127.0.0.1:8000/metrics", "http://127.0.0.1:8001/metrics"]
