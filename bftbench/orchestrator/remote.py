from __future__ import annotations

import logging
from typing import Sequence

from ..benchmark import BenchmarkParameters, NetworkType
from ..client import RemoteNode
from ..config import OrchestratorSettings
from ..errors import ProtocolError
from ..ssh import CommandOutput, SshConnectionManager
from . import Orchestrator, T

LOGGER = logging.getLogger("bftbench.orchestrator.remote")

DOCKER_CHECK_COMMAND = "docker --version"
DOCKER_INSTALL_COMMANDS = [
    "sudo apt-get update",
    "sudo apt-get install -y apt-transport-https ca-certificates curl gnupg lsb-release",
    "curl -fsSL https://download.docker.com/linux/ubuntu/gpg | "
    "sudo gpg --batch --yes --dearmor -o /usr/share/keyrings/docker-archive-keyring.gpg",
    'echo "deb [arch=amd64 signed-by=/usr/share/keyrings/docker-archive-keyring.gpg] '
    'https://download.docker.com/linux/ubuntu $(lsb_release -cs) stable" | '
    "sudo tee /etc/apt/sources.list.d/docker.list > /dev/null",
    "sudo apt-get update",
    "sudo apt-get install -y docker-ce docker-ce-cli containerd.io",
    "sudo usermod -aG docker $USER",
]


class RemoteNetworkOrchestrator(Orchestrator[T, RemoteNode]):
    """Run one containerised node per remote host, driven over SSH."""

    network_type = NetworkType.REMOTE

    def __init__(
        self,
        nodes: Sequence[RemoteNode],
        protocol,
        ssh: SshConnectionManager | None = None,
        settings: OrchestratorSettings | None = None,
    ) -> None:
        super().__init__(nodes, protocol, settings)
        self.ssh = ssh or SshConnectionManager()
        self._provisioned: set[str] = set()

    async def _run(self, node: RemoteNode, command: str, check: bool = True) -> CommandOutput:
        output = await self.ssh.execute(node, command)
        if check and not output.ok:
            raise ProtocolError(node.name, command, output.exit_status, output.stderr)
        return output

    async def setup(self) -> None:
        pending = [node for node in self.nodes if node.name not in self._provisioned]
        if not pending:
            return
        LOGGER.info("Setting up %d remote node(s)", len(pending))
        report = await self._fan_out("setup", pending, self._setup_node)
        self._provisioned.update(report.succeeded)
        report.raise_for_failures()
        LOGGER.info("All nodes setup completed")

    async def _setup_node(self, node: RemoteNode) -> None:
        check = await self._run(node, DOCKER_CHECK_COMMAND, check=False)
        if check.ok:
            LOGGER.info("Docker already installed on %s: %s", node.name, check.stdout.strip())
        else:
            LOGGER.info("Installing docker on %s (%s)", node.name, node.host)
            for command in DOCKER_INSTALL_COMMANDS:
                await self._run(node, command)
        for command in self.protocol.protocol_dependencies():
            await self._run(node, command)

    async def _start_node(self, node: RemoteNode, parameters: BenchmarkParameters[T]) -> None:
        LOGGER.info("Starting %s on %s", self.protocol.container_name(node), node.host)
        await self._run(node, self.protocol.genesis_command(self.nodes))
        for _, command in self.protocol.node_command([node], parameters):
            await self._run(node, command)
        for _, command in self.protocol.client_command([node], parameters):
            await self._run(node, command)
        LOGGER.info("%s started on %s", node.name, node.host)

    def _containers(self, node: RemoteNode) -> str:
        names = [self.protocol.container_name(node)]
        sidecar = self.protocol.sidecar_name(node)
        if sidecar is not None:
            names.append(sidecar)
        return " ".join(names)

    async def _kill_node(self, node: RemoteNode) -> None:
        await self._run(node, f"docker stop {self._containers(node)}")

    async def _boot_node(self, node: RemoteNode) -> None:
        await self._run(node, f"docker start {self._containers(node)}")

    async def node_logs(self, node: RemoteNode) -> str:
        chunks = []
        for _, output in await self.ssh.execute_many(self.protocol.monitor_command([node])):
            if isinstance(output, BaseException):
                raise output
            chunks.append(output.stdout)
        return "\n".join(chunks)

    async def _stop_nodes(self, thorough: bool) -> None:
        report = await self._fan_out("cleanup", self.nodes, lambda node: self._cleanup_node(node, thorough))
        report.raise_for_failures()

    async def _cleanup_node(self, node: RemoteNode, thorough: bool) -> None:
        for command in self.protocol.cleanup_commands():
            await self._run(node, command)
        if thorough:
            directories = " ".join(self.protocol.db_directories())
            if directories:
                await self._run(node, f"rm -rf {directories}")
            await self._run(node, "docker volume prune -f")
        LOGGER.info("%s cleaned up%s", node.name, " (thorough)" if thorough else "")


__all__ = ["DOCKER_INSTALL_COMMANDS", "RemoteNetworkOrchestrator"]
