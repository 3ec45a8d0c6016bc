from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Sequence

from ml_sidecar.core.errors import LaunchFailed
from ml_sidecar.core.logging import WORKER_LOGGER
from ml_sidecar.types import WorkerHandle

log = logging.getLogger("ml-sidecar.launcher")
worker_log = logging.getLogger(WORKER_LOGGER)

ExitObserver = Callable[[WorkerHandle, int | None], None]
_STREAM_LIMIT = 64 * 1024


@dataclass
class _Child:
    handle: WorkerHandle
    process: asyncio.subprocess.Process
    watcher: asyncio.Task | None = None
    readers: list[asyncio.Task] = field(default_factory=list)


async def _drain(stream: asyncio.StreamReader | None, level: int, pid: int, stream_name: str) -> None:
    if stream is None:
        return
    while True:
        try:
            line = await stream.readline()
        except ValueError:
            # readline drops the overlong chunk from the buffer before raising
            worker_log.log(
                level,
                "[line exceeded %d bytes; dropped]",
                _STREAM_LIMIT,
                extra={"pid": pid, "stream": stream_name},
            )
            continue
        if not line:
            return
        text = line.decode("utf-8", errors="replace").rstrip()
        if text:
            worker_log.log(level, text, extra={"pid": pid, "stream": stream_name})


class ProcessLauncher:
    """Spawns the worker child process and observes its exit."""

    def __init__(self, env: dict[str, str] | None = None):
        self.env = env
        self._children: dict[str, _Child] = {}

    @property
    def live_count(self) -> int:
        return sum(1 for child in self._children.values() if child.process.returncode is None)

    async def launch(
        self,
        command: str,
        args: Sequence[str],
        workdir: str | None,
        on_exit: ExitObserver | None = None,
    ) -> WorkerHandle:
        if self.live_count:
            raise LaunchFailed("a worker process is already running")
        argv = [command, *args]
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=workdir,
                env=self.env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=_STREAM_LIMIT,
            )
        except (OSError, ValueError) as exc:
            log.warning("worker.spawn_failed", extra={"argv": argv, "workdir": workdir, "error": str(exc)})
            raise LaunchFailed(f"{type(exc).__name__}: {exc}") from exc

        handle = WorkerHandle(kind="real", pid=process.pid)
        handle.terminate = lambda: self.terminate(handle)
        child = _Child(handle=handle, process=process)
        child.readers = [
            asyncio.create_task(_drain(process.stdout, logging.INFO, process.pid, "stdout")),
            asyncio.create_task(_drain(process.stderr, logging.WARNING, process.pid, "stderr")),
        ]
        child.watcher = asyncio.create_task(self._watch(child, on_exit))
        self._children[handle.id] = child
        log.info("worker.spawned", extra={"argv": argv, "workdir": workdir, "pid": process.pid, "handle_id": handle.id})
        return handle

    async def _watch(self, child: _Child, on_exit: ExitObserver | None) -> None:
        exit_code = await child.process.wait()
        await asyncio.gather(*child.readers, return_exceptions=True)
        child.handle.exit_code = exit_code
        child.handle.invalidate()
        self._children.pop(child.handle.id, None)
        log.info("worker.exit", extra={"pid": child.process.pid, "exit_code": exit_code, "handle_id": child.handle.id})
        if on_exit is not None:
            on_exit(child.handle, exit_code)

    def terminate(self, handle: WorkerHandle | None) -> None:
        """Send SIGTERM to the handle's process. Never blocks, never raises."""
        if handle is None or not handle.alive:
            return
        child = self._children.get(handle.id)
        if child is None or child.process.returncode is not None:
            return
        try:
            child.process.terminate()
            log.info("worker.terminate", extra={"pid": child.process.pid, "handle_id": handle.id})
        except ProcessLookupError:
            pass

    async def wait_closed(self, handle: WorkerHandle, timeout: float) -> int | None:
        child = self._children.get(handle.id)
        if child is None:
            return handle.exit_code
        try:
            return await asyncio.wait_for(asyncio.shield(child.process.wait()), timeout=timeout)
        except asyncio.TimeoutError:
            log.warning("worker.kill", extra={"pid": child.process.pid, "timeout": timeout})
            try:
                child.process.kill()
            except ProcessLookupError:
                pass
            return await child.process.wait()

    async def close(self, timeout: float = 5.0) -> None:
        """Terminate every live child, then kill whatever outlives ``timeout``."""
        children = list(self._children.values())
        for child in children:
            self.terminate(child.handle)
        for child in children:
            await self.wait_closed(child.handle, timeout)
            if child.watcher is not None:
                await asyncio.gather(child.watcher, return_exceptions=True)
