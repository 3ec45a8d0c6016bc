from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Any, Callable, Coroutine

from ml_sidecar.core import events as ev
from ml_sidecar.core.capability import CapabilityProber, CapabilityReport
from ml_sidecar.core.config import SupervisorConfig
from ml_sidecar.core.errors import FallbackBindFailed, LaunchFailed, ProcessExited
from ml_sidecar.core.fallback import FallbackResponder
from ml_sidecar.core.launcher import ProcessLauncher
from ml_sidecar.core.probe import ProbeClient
from ml_sidecar.types import Phase, ProbeResult, SupervisorSnapshot, TransitionRecord, WorkerHandle

_REAL_PHASES = {Phase.AWAITING_REAL_HEALTH, Phase.REAL_HEALTHY, Phase.REAL_UNHEALTHY}


class Supervisor:
    """Keeps exactly one backing (real worker or fallback) answering for the ML service.

    All state lives here and is mutated only by the control loop started in
    :meth:`start`. Capability checks, launches, probes, timers and fallback
    startup run as separate tasks and report back through :meth:`post`, so
    transitions are applied one at a time in the order they were observed.
    Probe results issued before the latest transition are discarded.
    """

    def __init__(
        self,
        config: SupervisorConfig,
        *,
        prober: CapabilityProber | None = None,
        launcher: ProcessLauncher | None = None,
        probe_client: ProbeClient | None = None,
        fallback: FallbackResponder | None = None,
        clock: Callable[[], float] = time.monotonic,
        on_fatal: Callable[[str], None] | None = None,
        logger: logging.Logger | None = None,
    ):
        self.config = config
        self.prober = prober or CapabilityProber(
            config.interpreters,
            config.required_modules,
            workdir=config.resolved_workdir(),
            timeout=config.capability_timeout,
        )
        self.launcher = launcher or ProcessLauncher()
        self._owns_probe_client = probe_client is None
        self.probe_client = probe_client or ProbeClient()
        self.fallback = fallback or FallbackResponder(host=config.worker_host)
        self.on_fatal = on_fatal
        self.logger = logger or logging.getLogger("ml-sidecar.supervisor")
        self._clock = clock

        self.phase = Phase.IDLE
        self.active: WorkerHandle | None = None
        self.standby: WorkerHandle | None = None
        self.last_probe: ProbeResult | None = None
        self.fatal_error: str | None = None
        self.history: deque[TransitionRecord] = deque([TransitionRecord(Phase.IDLE, "created")], maxlen=100)

        self._interpreter: str | None = None
        self._startup_attempts = 0
        self._unhealthy_attempts = 0
        self._last_transition_at = clock()
        self._changed = asyncio.Event()
        self._queue: asyncio.Queue[ev.Event] | None = None
        self._loop_task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        self._fallback_stops: set[asyncio.Task] = set()

    # -- public surface -----------------------------------------------------

    @property
    def transitions(self) -> list[Phase]:
        return [record.phase for record in self.history]

    def snapshot(self) -> SupervisorSnapshot:
        active = self.active
        return SupervisorSnapshot(
            phase=self.phase,
            backing=active.kind if active else "none",
            endpoint=active.endpoint if active and active.alive else None,
            last_probe=self.last_probe,
            standby=self.standby is not None,
            fatal_error=self.fatal_error,
            history=tuple(self.history),
        )

    async def start(self) -> None:
        if self._loop_task is not None:
            return
        self._queue = asyncio.Queue()
        self._loop_task = asyncio.create_task(self._run(), name="ml-sidecar-supervisor")
        self.post(ev.Start())

    def post(self, event: ev.Event) -> None:
        """Queue an event for the control loop. Dropped once the loop has stopped."""
        if self._queue is None or self._loop_task is None or self._loop_task.done():
            return
        self._queue.put_nowait(event)

    async def shutdown(self, reason: str = "shutdown") -> None:
        if self._loop_task is None:
            self._transition(Phase.STOPPED, reason)
            return
        if not self._loop_task.done():
            self.post(ev.ShutdownRequested(reason))
        await asyncio.gather(self._loop_task, return_exceptions=True)

    async def wait_for_phase(self, *phases: Phase, timeout: float | None = None) -> Phase:
        async def _wait() -> Phase:
            while True:
                changed = self._changed
                if self.phase in phases:
                    return self.phase
                if self.phase == Phase.STOPPED:
                    raise RuntimeError(f"supervisor stopped before reaching {[p.value for p in phases]}")
                await changed.wait()

        return await asyncio.wait_for(_wait(), timeout=timeout)

    # -- control loop -------------------------------------------------------

    async def _run(self) -> None:
        assert self._queue is not None
        while self.phase != Phase.STOPPED:
            event = await self._queue.get()
            try:
                await self._dispatch(event)
            except Exception:
                self.logger.exception(
                    "supervisor.event_error",
                    extra={"event": type(event).__name__, "phase": self.phase.value},
                )

    async def _dispatch(self, event: ev.Event) -> None:
        if isinstance(event, ev.Start):
            self._on_start()
        elif isinstance(event, ev.CapabilityChecked):
            self._on_capability(event.report)
        elif isinstance(event, ev.LaunchCompleted):
            self._on_launch_completed(event.handle)
        elif isinstance(event, ev.LaunchErrored):
            if self.phase == Phase.LAUNCHING_REAL:
                self._start_fallback(f"launch failed: {event.error}")
        elif isinstance(event, ev.ProbeDue):
            self._on_probe_due(event)
        elif isinstance(event, ev.ProbeCompleted):
            self._on_probe_completed(event)
        elif isinstance(event, ev.StartupDeadline):
            self._on_startup_deadline(event.handle_id)
        elif isinstance(event, ev.WorkerExited):
            self._on_worker_exited(event.handle_id, event.exit_code)
        elif isinstance(event, ev.FallbackStarted):
            self._on_fallback_started(event.handle)
        elif isinstance(event, ev.FallbackErrored):
            await self._on_fallback_errored(event.error)
        elif isinstance(event, ev.ShutdownRequested):
            await self._stop(event.reason)

    def _transition(self, phase: Phase, reason: str) -> None:
        previous = self.phase
        if previous == phase or previous == Phase.STOPPED:
            return
        self.phase = phase
        self._last_transition_at = self._clock()
        self.history.append(TransitionRecord(phase, reason))
        self.logger.info(
            "supervisor.transition",
            extra={"from_phase": previous.value, "to_phase": phase.value, "reason": reason},
        )
        changed, self._changed = self._changed, asyncio.Event()
        changed.set()

    def _spawn(self, coro: Coroutine[Any, Any, None], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _stop_fallback(self, handle: WorkerHandle) -> None:
        handle.terminate()
        task = self._spawn(self.fallback.stop(handle), "fallback:stop")
        self._fallback_stops.add(task)
        task.add_done_callback(self._fallback_stops.discard)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.logger.error(
                "supervisor.task_failed",
                extra={"task": task.get_name(), "error": f"{type(exc).__name__}: {exc}"},
            )

    def _schedule(self, delay: float, event: ev.Event) -> None:
        async def _timer() -> None:
            await asyncio.sleep(delay)
            self.post(event)

        self._spawn(_timer(), f"timer:{type(event).__name__}")

    # -- transitions ----------------------------------------------------------

    def _on_start(self) -> None:
        if self.phase != Phase.IDLE:
            return
        self._transition(Phase.PROBING_CAPABILITY, "start")
        self._spawn(self._check_capability(), "capability")

    async def _check_capability(self) -> None:
        try:
            report = await self.prober.check()
        except Exception as exc:
            report = CapabilityReport(available=False, reason="error", detail=f"{type(exc).__name__}: {exc}")
        self.post(ev.CapabilityChecked(report))

    def _on_capability(self, report: CapabilityReport) -> None:
        if self.phase != Phase.PROBING_CAPABILITY:
            return
        if not report.available or not report.interpreter:
            self.logger.warning(
                "supervisor.capability_unavailable",
                extra={
                    "phase": self.phase.value,
                    "reason": report.reason,
                    "detail": report.detail,
                    "hint": "cd ml_service && pip install -r requirements.txt, then restart",
                },
            )
            self._start_fallback(f"capability unavailable: {report.reason}")
            return
        self._interpreter = report.interpreter
        self._transition(Phase.LAUNCHING_REAL, f"capability ok ({report.interpreter})")
        self._spawn(self._launch(report.interpreter), "launch")

    async def _launch(self, interpreter: str) -> None:
        try:
            handle = await self.launcher.launch(
                interpreter,
                self.config.resolved_args(),
                self.config.resolved_workdir(),
                on_exit=self._on_exit_observed,
            )
        except LaunchFailed as exc:
            self.post(ev.LaunchErrored(str(exc)))
            return
        self.post(ev.LaunchCompleted(handle))

    def _on_exit_observed(self, handle: WorkerHandle, exit_code: int | None) -> None:
        self.post(ev.WorkerExited(handle.id, exit_code))

    def _on_launch_completed(self, handle: WorkerHandle) -> None:
        if self.phase != Phase.LAUNCHING_REAL:
            handle.terminate()
            return
        handle.endpoint = self.config.worker_endpoint
        if not handle.alive:
            self._start_fallback(str(ProcessExited(handle.exit_code, f"worker exited during launch (code {handle.exit_code})")))
            return
        self.active = handle
        self._startup_attempts = 0
        self._transition(Phase.AWAITING_REAL_HEALTH, f"worker spawned (pid {handle.pid})")
        self._schedule(self.config.startup_timeout, ev.StartupDeadline(handle.id))
        self._schedule(self.config.startup_poll_interval, ev.ProbeDue(handle.id, "startup"))

    def _probe_target(self, handle_id: str, purpose: ev.ProbePurpose) -> WorkerHandle | None:
        if purpose == "promotion":
            if self.phase == Phase.FALLBACK_ACTIVE and self.standby and self.standby.id == handle_id:
                return self.standby
            return None
        if self.active is None or self.active.id != handle_id or not self.active.alive:
            return None
        expected = {
            "startup": {Phase.AWAITING_REAL_HEALTH},
            "steady": {Phase.REAL_HEALTHY, Phase.REAL_UNHEALTHY},
            "monitor": {Phase.FALLBACK_ACTIVE},
        }[purpose]
        return self.active if self.phase in expected else None

    def _on_probe_due(self, event: ev.ProbeDue) -> None:
        target = self._probe_target(event.handle_id, event.purpose)
        if target is None or target.endpoint is None:
            return
        timeout = self.config.startup_probe_timeout if event.purpose == "startup" else self.config.health_timeout
        issued_at = self._clock()
        endpoint = target.endpoint

        async def _probe() -> None:
            try:
                result = await self.probe_client.probe(endpoint, timeout)
            except Exception as exc:
                self.logger.exception("supervisor.probe_error", extra={"purpose": event.purpose, "endpoint": endpoint})
                result = ProbeResult("unreachable", endpoint, detail=f"{type(exc).__name__}: {exc}")
            self.post(ev.ProbeCompleted(event.handle_id, event.purpose, result, issued_at))

        self._spawn(_probe(), f"probe:{event.purpose}")

    def _on_probe_completed(self, event: ev.ProbeCompleted) -> None:
        if event.issued_at < self._last_transition_at:
            self.logger.debug(
                "supervisor.probe_stale",
                extra={"purpose": event.purpose, "phase": self.phase.value, "status": event.result.status},
            )
            return
        target = self._probe_target(event.handle_id, event.purpose)
        if target is None:
            return
        result = event.result
        if event.purpose != "promotion":
            self.last_probe = result

        if event.purpose == "startup":
            if result.healthy:
                self._transition(Phase.REAL_HEALTHY, "worker reported healthy")
                self._unhealthy_attempts = 0
                self._schedule(self.config.health_interval, ev.ProbeDue(target.id, "steady"))
                return
            self._startup_attempts += 1
            self.logger.info(
                "supervisor.startup_probe",
                extra={"phase": self.phase.value, "attempt": self._startup_attempts, "status": result.status, "detail": result.detail},
            )
            self._schedule(self.config.startup_poll_interval, ev.ProbeDue(target.id, "startup"))
        elif event.purpose == "steady":
            if result.healthy:
                if self.phase == Phase.REAL_UNHEALTHY:
                    self._transition(Phase.REAL_HEALTHY, f"recovered after {self._unhealthy_attempts} failed probe(s)")
                self._unhealthy_attempts = 0
                self._schedule(self.config.health_interval, ev.ProbeDue(target.id, "steady"))
                return
            self._unhealthy_attempts += 1
            self.logger.warning(
                "supervisor.health_check_failed",
                extra={"phase": self.phase.value, "attempt": self._unhealthy_attempts, "status": result.status, "detail": result.detail},
            )
            self._transition(Phase.REAL_UNHEALTHY, f"probe {result.status}")
            self._schedule(self.config.unhealthy_retry_interval, ev.ProbeDue(target.id, "steady"))
        elif event.purpose == "monitor":
            if not result.healthy:
                self.logger.warning(
                    "supervisor.fallback_probe_failed",
                    extra={"phase": self.phase.value, "status": result.status, "detail": result.detail},
                )
            self._schedule(self.config.health_interval, ev.ProbeDue(target.id, "monitor"))
        elif event.purpose == "promotion":
            if result.healthy:
                self._promote_standby()
                return
            self._schedule(self.config.health_interval, ev.ProbeDue(target.id, "promotion"))

    def _promote_standby(self) -> None:
        standby, previous = self.standby, self.active
        if standby is None:
            return
        self.standby = None
        self.active = standby
        self._unhealthy_attempts = 0
        self._transition(Phase.REAL_HEALTHY, "standby worker became healthy")
        if previous is not None:
            self._stop_fallback(previous)
        self._schedule(self.config.health_interval, ev.ProbeDue(standby.id, "steady"))

    def _on_startup_deadline(self, handle_id: str) -> None:
        if self.phase != Phase.AWAITING_REAL_HEALTH or self.active is None or self.active.id != handle_id:
            return
        self.logger.warning(
            "supervisor.startup_deadline",
            extra={"phase": self.phase.value, "attempt": self._startup_attempts, "timeout": self.config.startup_timeout},
        )
        self.standby, self.active = self.active, None
        self._start_fallback(f"no healthy probe within {self.config.startup_timeout}s")

    def _on_worker_exited(self, handle_id: str, exit_code: int | None) -> None:
        if self.standby is not None and self.standby.id == handle_id:
            self.logger.info("supervisor.standby_exited", extra={"exit_code": exit_code})
            self.standby = None
            return
        if self.active is None or self.active.id != handle_id or self.phase not in _REAL_PHASES:
            return
        error = ProcessExited(exit_code)
        self.logger.warning("supervisor.worker_exited", extra={"phase": self.phase.value, "exit_code": exit_code})
        self.active.invalidate()
        self.active = None
        self._start_fallback(str(error))

    def _start_fallback(self, reason: str) -> None:
        self._transition(Phase.STARTING_FALLBACK, reason)
        self._spawn(self._run_fallback(), "fallback:start")

    async def _run_fallback(self) -> None:
        # a previous fallback may still hold the port until its server exits
        if self._fallback_stops:
            await asyncio.gather(*self._fallback_stops, return_exceptions=True)
        try:
            handle = await self.fallback.start(self.config.fallback_port)
        except FallbackBindFailed as exc:
            self.post(ev.FallbackErrored(str(exc)))
            return
        self.post(ev.FallbackStarted(handle))

    def _on_fallback_started(self, handle: WorkerHandle) -> None:
        if self.phase != Phase.STARTING_FALLBACK:
            self._stop_fallback(handle)
            return
        self.active = handle
        self._transition(Phase.FALLBACK_ACTIVE, f"fallback serving on {handle.endpoint}")
        self._schedule(self.config.startup_poll_interval, ev.ProbeDue(handle.id, "monitor"))
        if self.standby is not None:
            self._schedule(self.config.health_interval, ev.ProbeDue(self.standby.id, "promotion"))

    async def _on_fallback_errored(self, error: str) -> None:
        self.fatal_error = error
        self.logger.critical("supervisor.fallback_bind_failed", extra={"phase": self.phase.value, "error": error})
        await self._stop("fallback unavailable")
        if self.on_fatal is not None:
            self.on_fatal(error)

    async def _stop(self, reason: str) -> None:
        current = asyncio.current_task()
        pending = [task for task in self._tasks if task is not current]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        for handle in (self.active, self.standby):
            if handle is not None:
                handle.terminate()
        await self.fallback.close()
        await self.launcher.close(self.config.stop_timeout)
        if self.active is not None:
            self.active.invalidate()
        self.active = None
        self.standby = None
        if self._owns_probe_client:
            await self.probe_client.aclose()
        self._transition(Phase.STOPPED, reason)
