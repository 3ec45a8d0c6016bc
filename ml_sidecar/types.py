from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Literal

WorkerKind = Literal["real", "fallback", "none"]
ProbeStatus = Literal["healthy", "unhealthy", "unreachable"]


class Phase(str, Enum):
    IDLE = "idle"
    PROBING_CAPABILITY = "probing_capability"
    LAUNCHING_REAL = "launching_real"
    AWAITING_REAL_HEALTH = "awaiting_real_health"
    REAL_HEALTHY = "real_healthy"
    REAL_UNHEALTHY = "real_unhealthy"
    STARTING_FALLBACK = "starting_fallback"
    FALLBACK_ACTIVE = "fallback_active"
    STOPPED = "stopped"


def _noop() -> None:
    return None


@dataclass
class WorkerHandle:
    """The supervisor's record of one backing implementation.

    ``terminate`` is the opaque stop capability handed out by whoever created
    the backing. It must be safe to call repeatedly and must not block.
    """

    kind: WorkerKind
    endpoint: str | None = None
    terminate: Callable[[], None] = field(default=_noop, repr=False, compare=False)
    pid: int | None = None
    id: str = field(default_factory=lambda: f"wh_{uuid.uuid4().hex[:12]}")
    created_at: float = field(default_factory=time.time)
    exit_code: int | None = None

    @property
    def alive(self) -> bool:
        return self.kind != "none"

    def invalidate(self) -> None:
        self.kind = "none"

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "endpoint": self.endpoint,
            "pid": self.pid,
            "created_at": self.created_at,
            "exit_code": self.exit_code,
        }


@dataclass
class ProbeResult:
    status: ProbeStatus
    endpoint: str
    payload: dict[str, Any] | None = None
    detail: str | None = None
    latency_ms: float | None = None
    timestamp: float = field(default_factory=time.time)

    @property
    def healthy(self) -> bool:
        return self.status == "healthy"

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "endpoint": self.endpoint,
            "detail": self.detail,
            "latency_ms": self.latency_ms,
            "timestamp": self.timestamp,
        }


@dataclass
class TransitionRecord:
    phase: Phase
    reason: str
    at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class SupervisorSnapshot:
    phase: Phase
    backing: WorkerKind
    endpoint: str | None
    last_probe: ProbeResult | None
    standby: bool
    fatal_error: str | None
    history: tuple[TransitionRecord, ...] = ()

    @property
    def health(self) -> str:
        if self.phase == Phase.REAL_HEALTHY:
            return "healthy"
        if self.phase == Phase.FALLBACK_ACTIVE:
            return "degraded"
        if self.phase == Phase.REAL_UNHEALTHY:
            return "unhealthy"
        if self.phase == Phase.STOPPED:
            return "failed" if self.fatal_error else "stopped"
        return "starting"

    def as_payload(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "backing": self.backing,
            "health": self.health,
            "endpoint": self.endpoint,
            "standby": self.standby,
            "last_probe": self.last_probe.as_dict() if self.last_probe else None,
            "fatal_error": self.fatal_error,
            "history": [{"phase": r.phase.value, "reason": r.reason, "at": r.at} for r in self.history],
        }
