from __future__ import annotations

import logging

import pytest

from ml_sidecar.core.capability import CapabilityReport
from ml_sidecar.core.config import SupervisorConfig
from ml_sidecar.core.errors import FallbackBindFailed, LaunchFailed
from ml_sidecar.core.supervisor import Supervisor
from ml_sidecar.types import ProbeResult, WorkerHandle

FALLBACK_ENDPOINT = "http://127.0.0.1:59999"


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeProber:
    def __init__(self, available: bool = True, interpreter: str = "python3"):
        self.report = CapabilityReport(
            available=available,
            interpreter=interpreter if available else None,
            reason=None if available else "modules_missing",
            detail=None if available else "No module named 'tensorflow'",
        )
        self.calls = 0

    async def check(self) -> CapabilityReport:
        self.calls += 1
        return self.report


class FakeLauncher:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.launches: list[WorkerHandle] = []
        self.terminated: list[str] = []
        self._observers: dict[str, object] = {}
        self.closed = False

    async def launch(self, command, args, workdir, on_exit=None) -> WorkerHandle:
        if self.fail:
            raise LaunchFailed("FileNotFoundError: python3")
        live = [h for h in self.launches if h.alive]
        if live:
            raise LaunchFailed("a worker process is already running")
        handle = WorkerHandle(kind="real", pid=4242 + len(self.launches))
        handle.terminate = lambda: self.terminate(handle)
        self._observers[handle.id] = on_exit
        self.launches.append(handle)
        return handle

    def terminate(self, handle: WorkerHandle | None) -> None:
        if handle is None or not handle.alive:
            return
        self.terminated.append(handle.id)

    def exit(self, handle: WorkerHandle, code: int = 1) -> None:
        handle.exit_code = code
        handle.invalidate()
        observer = self._observers.get(handle.id)
        if observer is not None:
            observer(handle, code)

    async def close(self, timeout: float = 5.0) -> None:
        self.closed = True
        for handle in self.launches:
            handle.invalidate()


class FakeFallback:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.started: list[WorkerHandle] = []
        self.stopped: list[str] = []

    async def start(self, port: int) -> WorkerHandle:
        if self.fail:
            raise FallbackBindFailed(f"cannot bind 127.0.0.1:{port}: [Errno 98] Address already in use")
        handle = WorkerHandle(kind="fallback", endpoint=FALLBACK_ENDPOINT)
        self.started.append(handle)
        return handle

    async def stop(self, handle: WorkerHandle | None) -> None:
        if handle is None or handle.id in self.stopped:
            return
        handle.invalidate()
        self.stopped.append(handle.id)

    async def close(self) -> None:
        for handle in self.started:
            await self.stop(handle)

    @property
    def active_count(self) -> int:
        return sum(1 for handle in self.started if handle.alive)


class ScriptedProbeClient:
    """Returns queued statuses per endpoint; the last status repeats once the queue runs dry."""

    def __init__(self, scripts: dict[str, list[str]] | None = None, default: str = "unreachable"):
        self.scripts = {endpoint: list(statuses) for endpoint, statuses in (scripts or {}).items()}
        self.default = default
        self.calls: list[str] = []

    def set(self, endpoint: str, *statuses: str) -> None:
        self.scripts[endpoint] = list(statuses)

    async def probe(self, endpoint: str, timeout: float) -> ProbeResult:
        self.calls.append(endpoint)
        queue = self.scripts.get(endpoint)
        if queue:
            status = queue.pop(0) if len(queue) > 1 else queue[0]
        elif endpoint == FALLBACK_ENDPOINT:
            status = "healthy"
        else:
            status = self.default
        payload = {"status": "healthy", "services": {}} if status == "healthy" else None
        return ProbeResult(status=status, endpoint=endpoint, payload=payload)

    async def status(self, endpoint: str, timeout: float) -> ProbeResult:
        return await self.probe(endpoint, timeout)

    async def aclose(self) -> None:
        return None

    def count(self, endpoint: str) -> int:
        return sum(1 for call in self.calls if call == endpoint)


@pytest.fixture
def fast_config(tmp_path) -> SupervisorConfig:
    return SupervisorConfig(
        worker_script=str(tmp_path / "ml_service" / "app.py"),
        worker_port=59998,
        fallback_port=59999,
        startup_timeout=2.0,
        startup_poll_interval=0.01,
        startup_probe_timeout=0.05,
        health_interval=0.05,
        health_timeout=0.05,
        unhealthy_retry_interval=0.02,
        stop_timeout=1.0,
    )


@pytest.fixture
def make_supervisor(fast_config):
    def _make(
        *,
        available: bool = True,
        launch_fails: bool = False,
        fallback_fails: bool = False,
        probe_client=None,
        fallback=None,
        config: SupervisorConfig | None = None,
        clock=None,
        on_fatal=None,
    ) -> Supervisor:
        kwargs = {}
        if clock is not None:
            kwargs["clock"] = clock
        return Supervisor(
            config or fast_config,
            prober=FakeProber(available=available),
            launcher=FakeLauncher(fail=launch_fails),
            probe_client=probe_client or ScriptedProbeClient(),
            fallback=fallback or FakeFallback(fail=fallback_fails),
            on_fatal=on_fatal,
            logger=logging.getLogger("test-supervisor"),
            **kwargs,
        )

    return _make


@pytest.fixture
def probe_client() -> ScriptedProbeClient:
    return ScriptedProbeClient()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
