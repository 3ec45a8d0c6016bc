from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Sequence

from ml_sidecar.core.errors import CapabilityUnavailable

log = logging.getLogger("ml-sidecar.capability")


@dataclass
class CapabilityReport:
    available: bool
    interpreter: str | None = None
    reason: str | None = None
    detail: str | None = None


@dataclass
class _Completed:
    returncode: int | None
    stdout: str
    stderr: str


class CapabilityProber:
    """Pre-flight check for the worker's interpreter and libraries.

    Runs ``<interp> --version`` for each candidate, then
    ``<interp> -c "import ..."`` for the first interpreter found. Every
    diagnostic child is reaped, including on timeout.
    """

    def __init__(
        self,
        interpreters: Sequence[str],
        required_modules: Sequence[str],
        workdir: str | None = None,
        timeout: float = 60.0,
    ):
        self.interpreters = list(interpreters)
        self.required_modules = list(required_modules)
        self.workdir = workdir
        self.timeout = timeout

    async def check_capability(self) -> bool:
        report = await self.check()
        return report.available

    async def check(self) -> CapabilityReport:
        try:
            interpreter = await self._resolve_interpreter()
        except CapabilityUnavailable as exc:
            log.warning("capability.interpreter_missing", extra={"candidates": self.interpreters, "error": str(exc)})
            return CapabilityReport(available=False, reason="interpreter_missing", detail=str(exc))
        try:
            await self._check_modules(interpreter)
        except CapabilityUnavailable as exc:
            log.warning(
                "capability.modules_missing",
                extra={"interpreter": interpreter, "modules": self.required_modules, "error": str(exc)},
            )
            return CapabilityReport(available=False, interpreter=interpreter, reason="modules_missing", detail=str(exc))
        log.info("capability.ok", extra={"interpreter": interpreter, "modules": self.required_modules})
        return CapabilityReport(available=True, interpreter=interpreter)

    async def _resolve_interpreter(self) -> str:
        errors: list[str] = []
        for candidate in self.interpreters:
            try:
                result = await self._run([candidate, "--version"], cwd=None)
            except CapabilityUnavailable as exc:
                errors.append(f"{candidate}: {exc}")
                continue
            if result.returncode == 0:
                return candidate
            errors.append(f"{candidate}: exit {result.returncode}")
        raise CapabilityUnavailable("; ".join(errors) or "no interpreter candidates configured")

    async def _check_modules(self, interpreter: str) -> None:
        if not self.required_modules:
            return
        statement = "import " + ", ".join(self.required_modules)
        result = await self._run([interpreter, "-c", statement], cwd=self.workdir)
        if result.returncode != 0:
            last_line = result.stderr.strip().splitlines()[-1:] or [f"exit {result.returncode}"]
            raise CapabilityUnavailable(last_line[0])

    async def _run(self, argv: list[str], cwd: str | None) -> _Completed:
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=cwd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise CapabilityUnavailable(f"{type(exc).__name__}: {exc}") from exc
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise CapabilityUnavailable(f"{argv[0]} timed out after {self.timeout}s") from exc
        finally:
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                await proc.wait()
        return _Completed(
            returncode=proc.returncode,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )
