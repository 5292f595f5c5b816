from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Generic, Sequence, TypeVar

from .errors import ConfigurationError

N = TypeVar("N")


@dataclass(frozen=True)
class FaultModel(ABC):
    """Declarative description of which nodes are unavailable during a run."""

    faults: int = 0

    def validate(self, nodes: int) -> None:
        if self.faults < 0:
            raise ConfigurationError(f"fault count must be >= 0, got {self.faults}")
        if self.faults >= nodes:
            raise ConfigurationError(
                f"cannot tolerate {self.faults} fault(s) in a committee of {nodes} node(s)"
            )

    @abstractmethod
    def to_dict(self) -> dict[str, Any]: ...

    @staticmethod
    def from_dict(data: dict[str, Any]) -> FaultModel:
        kind = data.get("type", "permanent")
        if kind == "permanent":
            return PermanentFaults(faults=int(data.get("faults", 0)))
        if kind == "crash-recovery":
            return CrashRecoveryFaults(
                faults=int(data.get("faults", 0)),
                interval=float(data.get("interval", 60.0)),
            )
        raise ConfigurationError(f"unknown fault model type {kind!r}")

    @staticmethod
    def parse(text: str) -> FaultModel:
        """Parse ``N``, ``permanent:N`` or ``crash-recovery:N:SECONDS``."""
        parts = [part.strip() for part in text.strip().split(":")]
        try:
            if len(parts) == 1:
                return PermanentFaults(faults=int(parts[0]))
            if parts[0] == "permanent" and len(parts) == 2:
                return PermanentFaults(faults=int(parts[1]))
            if parts[0] == "crash-recovery" and len(parts) == 3:
                return CrashRecoveryFaults(
                    faults=int(parts[1]),
                    interval=float(parts[2].rstrip("s")),
                )
        except ValueError as exc:
            raise ConfigurationError(f"malformed fault spec {text!r}") from exc
        raise ConfigurationError(f"malformed fault spec {text!r}")


@dataclass(frozen=True)
class PermanentFaults(FaultModel):
    """The last ``faults`` nodes of the committee are never booted."""

    def to_dict(self) -> dict[str, Any]:
        return {"type": "permanent", "faults": self.faults}

    def __str__(self) -> str:
        return f"{self.faults} crashed"


@dataclass(frozen=True)
class CrashRecoveryFaults(FaultModel):
    """Up to ``faults`` nodes crash and recover every ``interval`` seconds."""

    interval: float = 60.0

    def validate(self, nodes: int) -> None:
        super().validate(nodes)
        if self.interval <= 0:
            raise ConfigurationError(f"crash interval must be > 0, got {self.interval}")

    def to_dict(self) -> dict[str, Any]:
        return {"type": "crash-recovery", "faults": self.faults, "interval": self.interval}

    def __str__(self) -> str:
        return f"{self.faults} crash-recovery, {self.interval:g}s"


@dataclass(frozen=True)
class CrashRecoveryAction(Generic[N]):
    kill: tuple[N, ...] = ()
    boot: tuple[N, ...] = ()

    def is_noop(self) -> bool:
        return not self.kill and not self.boot

    def __str__(self) -> str:
        return f"kill {len(self.kill)} node(s), boot {len(self.boot)} node(s)"


@dataclass
class CrashRecoverySchedule(Generic[N]):
    """Alternately crash the faulty tail of the committee and bring it back.

    Nodes go down in steps of ``max(1, faults // 3)`` until ``faults`` of them are
    dead; the following update recovers all of them at once.
    """

    model: FaultModel
    nodes: Sequence[N]
    _dead: list[N] = field(default_factory=list, init=False)

    def faulty_nodes(self) -> list[N]:
        if self.model.faults == 0:
            return []
        return list(self.nodes[-self.model.faults :])

    def update(self) -> CrashRecoveryAction[N]:
        if not isinstance(self.model, CrashRecoveryFaults) or self.model.faults == 0:
            return CrashRecoveryAction()

        if len(self._dead) >= self.model.faults:
            boot = tuple(self._dead)
            self._dead.clear()
            return CrashRecoveryAction(boot=boot)

        step = max(1, self.model.faults // 3)
        alive = [node for node in self.faulty_nodes() if node not in self._dead]
        kill = tuple(alive[:step])
        self._dead.extend(kill)
        return CrashRecoveryAction(kill=kill)


__all__ = [
    "CrashRecoveryAction",
    "CrashRecoveryFaults",
    "CrashRecoverySchedule",
    "FaultModel",
    "PermanentFaults",
]
