from __future__ import annotations

from pathlib import Path

import pytest

from bftbench.client import Instance, RemoteNode
from bftbench.errors import AuthenticationError, CommandTimeoutError, HostUnreachableError
from bftbench.ssh import SshConnectionManager, classify_ssh_failure, format_ssh_command, ssh_command_args


def _node(host: str = "10.0.0.1") -> RemoteNode:
    return RemoteNode(
        instance=Instance(id="node0", main_ip=host, region="remote"),
        authority_index=0,
        rpc_port=26657,
        abci_port=26670,
        metrics_port=8000,
        ssh_port=2222,
        ssh_user="bench",
        ssh_key_path="/keys/id",
    )


class TestSshCommand:
    def test_argv_contains_each_part_once(self) -> None:
        argv = ssh_command_args("u", "/k", "h", 22, "c")
        joined = " ".join(argv)
        for part in ("-i /k", "-p 22", "u@h"):
            assert joined.count(part) == 1
        assert argv.count("c") == 1
        assert argv[-1] == "c"
        assert "StrictHostKeyChecking=no" in argv
        assert "ConnectTimeout=30" in argv

    def test_command_stays_a_single_argument(self) -> None:
        argv = ssh_command_args("u", "/k", "h", 22, "docker ps && echo 'done'")
        assert argv[-1] == "docker ps && echo 'done'"

    def test_format_quotes_command(self) -> None:
        rendered = format_ssh_command("u", "/k", "h", 22, "docker ps -a")
        assert rendered.endswith("'docker ps -a'")

    def test_connect_timeout_from_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SSH_TIMEOUT", "7")
        manager = SshConnectionManager()
        assert "ConnectTimeout=7" in manager.command_args(_node(), "true")

    @pytest.mark.parametrize(
        ("stderr", "expected"),
        [
            ("bench@10.0.0.1: Permission denied (publickey).", AuthenticationError),
            ("Host key verification failed.", AuthenticationError),
            ("ssh: connect to host 10.0.0.1 port 22: Connection refused", HostUnreachableError),
            ("ssh: Could not resolve hostname nowhere: Name or service not known", HostUnreachableError),
            ("ssh: connect to host 10.0.0.1 port 22: No route to host", HostUnreachableError),
            ("", type(None)),
        ],
    )
    def test_classify(self, stderr: str, expected: type) -> None:
        assert isinstance(classify_ssh_failure("node0", stderr), expected)


class TestSshConnectionManager:
    async def test_returns_remote_exit_status(self, stub_executable, tmp_path: Path) -> None:
        ssh = stub_executable(
            "ssh",
            f'printf "%s\\n" "$@" > {tmp_path}/argv\necho out\necho err >&2\nexit 3\n',
        )
        manager = SshConnectionManager(connect_timeout=5, program=str(ssh))

        output = await manager.execute(_node(), "docker --version")

        assert output.exit_status == 3
        assert not output.ok
        assert output.stdout == "out\n"
        assert output.stderr == "err\n"
        argv = (tmp_path / "argv").read_text().splitlines()
        assert argv[:5] == ["-i", "/keys/id", "-p", "2222", "bench@10.0.0.1"]
        assert argv[-1] == "docker --version"

    async def test_authentication_failure_is_not_retried(self, stub_executable, tmp_path: Path) -> None:
        ssh = stub_executable(
            "ssh",
            f'echo call >> {tmp_path}/calls\necho "Permission denied (publickey)." >&2\nexit 255\n',
        )
        manager = SshConnectionManager(program=str(ssh), retries=3, backoff=0.01)

        with pytest.raises(AuthenticationError):
            await manager.execute(_node(), "true")
        assert len((tmp_path / "calls").read_text().splitlines()) == 1

    async def test_unreachable_host_is_retried(self, stub_executable, tmp_path: Path) -> None:
        ssh = stub_executable(
            "ssh",
            f'echo call >> {tmp_path}/calls\necho "connect to host: Connection refused" >&2\nexit 255\n',
        )
        manager = SshConnectionManager(program=str(ssh), retries=2, backoff=0.01)

        with pytest.raises(HostUnreachableError):
            await manager.execute(_node(), "true")
        assert len((tmp_path / "calls").read_text().splitlines()) == 3

    async def test_timeout_kills_command(self, stub_executable) -> None:
        ssh = stub_executable("ssh", "exec sleep 5\n")
        manager = SshConnectionManager(program=str(ssh))

        with pytest.raises(CommandTimeoutError) as info:
            await manager.execute(_node(), "sleep", timeout=0.2)
        assert info.value.node == "node0"
        assert isinstance(info.value, TimeoutError)

    async def test_execute_many_reports_per_node(self, stub_executable) -> None:
        ssh = stub_executable(
            "ssh",
            'case "$*" in *10.0.0.2*) echo "Permission denied" >&2; exit 255;; esac\necho ok\n',
        )
        manager = SshConnectionManager(program=str(ssh))
        first, second = _node("10.0.0.1"), _node("10.0.0.2")

        results = await manager.execute_many([(first, "true"), (second, "true")])

        assert results[0][0] is first
        assert results[0][1].ok
        assert isinstance(results[1][1], AuthenticationError)
