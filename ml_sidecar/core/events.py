from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Union

from ml_sidecar.core.capability import CapabilityReport
from ml_sidecar.types import ProbeResult, WorkerHandle

ProbePurpose = Literal["startup", "steady", "monitor", "promotion"]


@dataclass
class Start:
    pass


@dataclass
class CapabilityChecked:
    report: CapabilityReport


@dataclass
class LaunchCompleted:
    handle: WorkerHandle


@dataclass
class LaunchErrored:
    error: str


@dataclass
class ProbeDue:
    handle_id: str
    purpose: ProbePurpose


@dataclass
class ProbeCompleted:
    handle_id: str
    purpose: ProbePurpose
    result: ProbeResult
    issued_at: float


@dataclass
class StartupDeadline:
    handle_id: str


@dataclass
class WorkerExited:
    handle_id: str
    exit_code: int | None


@dataclass
class FallbackStarted:
    handle: WorkerHandle


@dataclass
class FallbackErrored:
    error: str


@dataclass
class ShutdownRequested:
    reason: str = "shutdown"


Event = Union[
    Start,
    CapabilityChecked,
    LaunchCompleted,
    LaunchErrored,
    ProbeDue,
    ProbeCompleted,
    StartupDeadline,
    WorkerExited,
    FallbackStarted,
    FallbackErrored,
    ShutdownRequested,
]
