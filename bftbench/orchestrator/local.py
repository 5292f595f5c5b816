from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Sequence

import docker
from docker.errors import DockerException, NotFound

from ..benchmark import BenchmarkParameters, NetworkType
from ..client import Node
from ..config import OrchestratorSettings
from ..errors import ConfigurationError, ProtocolError
from ..ssh import CommandOutput
from . import Orchestrator, T

LOGGER = logging.getLogger("bftbench.orchestrator.local")

LOG_TAIL_LINES = 100


class LocalNetworkOrchestrator(Orchestrator[T, Node]):
    """Run the committee on this host through ``docker compose``."""

    network_type = NetworkType.LOCAL

    def __init__(
        self,
        compose_path: Path,
        nodes: Sequence[Node],
        protocol,
        settings: OrchestratorSettings | None = None,
        docker_client: docker.DockerClient | None = None,
        docker_binary: str = "docker",
    ) -> None:
        super().__init__(nodes, protocol, settings)
        self.compose_path = Path(compose_path)
        self._client = docker_client
        self._docker_binary = docker_binary

    @property
    def project_dir(self) -> Path:
        return self.compose_path.resolve().parent

    async def setup(self) -> None:
        if not self.compose_path.is_file():
            raise ConfigurationError(f"docker compose file not found at {self.compose_path}")
        LOGGER.info("Using docker compose file %s", self.compose_path)
        try:
            await asyncio.to_thread(self._docker().ping)
        except DockerException as exc:
            raise ConfigurationError(f"docker daemon is not reachable: {exc}") from exc

    def _docker(self) -> docker.DockerClient:
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    async def _run(self, *args: str, env: dict[str, str] | None = None) -> CommandOutput:
        proc = await asyncio.create_subprocess_exec(
            *args,
            cwd=self.project_dir,
            env={**os.environ, **(env or {})},
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()
        return CommandOutput(
            exit_status=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )

    async def _compose(self, node: str, *args: str, env: dict[str, str] | None = None) -> CommandOutput:
        command = [self._docker_binary, "compose", "-f", str(self.compose_path.resolve()), *args]
        LOGGER.debug("[%s] $ %s", node, " ".join(command))
        output = await self._run(*command, env=env)
        if not output.ok:
            raise ProtocolError(node, " ".join(command), output.exit_status, output.stderr)
        return output

    async def _prepare(self, parameters: BenchmarkParameters[T]) -> None:
        command = self.protocol.genesis_command(self.nodes)
        LOGGER.info("Generating committee configuration for %d node(s)", len(self.nodes))
        output = await self._run("sh", "-c", command)
        if not output.ok:
            raise ProtocolError("local", command, output.exit_status, output.stderr)

    def services(self, node: Node) -> list[str]:
        services = [self.protocol.container_name(node)]
        sidecar = self.protocol.sidecar_name(node)
        if sidecar is not None:
            services.append(sidecar)
        return services

    async def _start_node(self, node: Node, parameters: BenchmarkParameters[T]) -> None:
        env = self.protocol.node_environment(node, parameters)
        await self._compose(node.name, "up", "-d", *self.services(node), env=env)
        LOGGER.info("%s started (rpc port %d)", node.name, node.rpc_port)

    async def _kill_node(self, node: Node) -> None:
        await self._compose(node.name, "stop", *self.services(node))

    async def _boot_node(self, node: Node) -> None:
        await self._compose(node.name, "start", *self.services(node))

    async def node_logs(self, node: Node) -> str:
        name = self.protocol.container_name(node)

        def fetch() -> str:
            try:
                container = self._docker().containers.get(name)
            except NotFound:
                return f"container {name} not found"
            container.reload()
            status = container.attrs.get("State", {}).get("Status", "unknown")
            logs = container.logs(tail=LOG_TAIL_LINES).decode("utf-8", errors="replace")
            return f"[{name} status={status}]\n{logs}"

        return await asyncio.to_thread(fetch)

    async def _stop_nodes(self, thorough: bool) -> None:
        args = ["down", "-v"] if thorough else ["down"]
        await self._compose("local", *args)
        if not thorough:
            return

        client = self._docker()
        containers = await asyncio.to_thread(client.containers.prune)
        volumes = await asyncio.to_thread(client.volumes.prune)
        LOGGER.info(
            "Pruned %d container(s) and %d volume(s)",
            len(containers.get("ContainersDeleted") or []),
            len(volumes.get("VolumesDeleted") or []),
        )


__all__ = ["LocalNetworkOrchestrator"]
