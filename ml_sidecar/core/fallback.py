from __future__ import annotations

import asyncio
import contextlib
import hashlib
import logging
import socket
from dataclasses import dataclass
from typing import Any

import uvicorn
from fastapi import FastAPI, Request

from ml_sidecar.core.errors import FallbackBindFailed
from ml_sidecar.types import WorkerHandle

log = logging.getLogger("ml-sidecar.fallback")

FALLBACK_VERSION = "1.0.0"
SYNTHETIC_SERVICES = {
    "disease_detection": "synthetic",
    "nutrient_analysis": "synthetic",
    "plant_info": "synthetic",
}

# Fixed tables; a request picks one row by body digest so identical input
# always yields identical output.
_DISEASE_TABLE: list[dict[str, Any]] = [
    {
        "disease": "Tomato Early Blight",
        "confidence": 0.95,
        "treatment": "Remove infected leaves and apply a copper-based fungicide.",
    },
    {
        "disease": "Corn Common Rust",
        "confidence": 0.87,
        "treatment": "Plant resistant hybrids and apply a foliar fungicide if pustules spread.",
    },
    {
        "disease": "Potato Late Blight",
        "confidence": 0.91,
        "treatment": "Destroy affected plants and apply a protectant fungicide before rain.",
    },
    {
        "disease": "Healthy",
        "confidence": 0.9,
        "treatment": "No treatment needed.",
    },
]
_NUTRIENT_TABLE: list[dict[str, Any]] = [
    {"nitrogen": "low", "phosphorus": "adequate", "potassium": "adequate",
     "recommendation": "Apply a high-nitrogen fertilizer."},
    {"nitrogen": "adequate", "phosphorus": "low", "potassium": "adequate",
     "recommendation": "Apply bone meal or a phosphate fertilizer."},
    {"nitrogen": "adequate", "phosphorus": "adequate", "potassium": "low",
     "recommendation": "Apply potash or a potassium-rich fertilizer."},
    {"nitrogen": "adequate", "phosphorus": "adequate", "potassium": "adequate",
     "recommendation": "Nutrient levels look balanced."},
]


def _pick(table: list[dict[str, Any]], body: bytes) -> tuple[dict[str, Any], str]:
    digest = hashlib.sha256(body).hexdigest()
    return dict(table[int(digest[:8], 16) % len(table)]), digest


def create_fallback_app() -> FastAPI:
    app = FastAPI(title="ML Service (fallback)", version=FALLBACK_VERSION)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"status": "healthy", "mode": "fallback", "services": dict(SYNTHETIC_SERVICES)}

    @app.get("/status")
    async def status() -> dict[str, Any]:
        return {
            "service": "ML Service (fallback)",
            "version": FALLBACK_VERSION,
            "mode": "fallback",
            "synthetic": True,
            "endpoints": [
                "GET /health",
                "GET /status",
                "POST /predict_disease",
                "POST /predict_nutrients",
            ],
        }

    @app.post("/predict_disease")
    async def predict_disease(request: Request) -> dict[str, Any]:
        result, digest = _pick(_DISEASE_TABLE, await request.body())
        return {"success": True, "synthetic": True, "model": "fallback", "input_sha256": digest, **result}

    @app.post("/predict_nutrients")
    async def predict_nutrients(request: Request) -> dict[str, Any]:
        result, digest = _pick(_NUTRIENT_TABLE, await request.body())
        return {"success": True, "synthetic": True, "model": "fallback", "input_sha256": digest, **result}

    return app


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves process signal handling to the host."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


@dataclass
class _Running:
    server: _EmbeddedServer
    sock: socket.socket
    task: asyncio.Task


class FallbackResponder:
    def __init__(self, host: str = "127.0.0.1", startup_timeout: float = 5.0):
        self.host = host
        self.startup_timeout = startup_timeout
        self._running: dict[str, _Running] = {}

    def _bind(self, port: int) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.host, port))
        except OSError as exc:
            sock.close()
            raise FallbackBindFailed(f"cannot bind {self.host}:{port}: {exc}") from exc
        return sock

    async def start(self, port: int) -> WorkerHandle:
        sock = self._bind(port)
        bound_port = sock.getsockname()[1]
        config = uvicorn.Config(
            create_fallback_app(),
            log_config=None,
            log_level="warning",
            lifespan="off",
            access_log=False,
        )
        server = _EmbeddedServer(config)
        task = asyncio.create_task(server.serve(sockets=[sock]))
        try:
            await self._wait_started(server, task)
        except BaseException:
            server.should_exit = True
            await asyncio.gather(task, return_exceptions=True)
            sock.close()
            raise

        handle = WorkerHandle(kind="fallback", endpoint=f"http://{self.host}:{bound_port}")
        handle.terminate = lambda: self._request_exit(handle)
        self._running[handle.id] = _Running(server=server, sock=sock, task=task)
        log.info("fallback.started", extra={"port": bound_port, "handle_id": handle.id})
        return handle

    async def _wait_started(self, server: _EmbeddedServer, task: asyncio.Task) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.startup_timeout
        while not server.started:
            if task.done():
                raise FallbackBindFailed("fallback server exited during startup")
            if loop.time() >= deadline:
                raise FallbackBindFailed(f"fallback server not serving after {self.startup_timeout}s")
            await asyncio.sleep(0.01)

    def _request_exit(self, handle: WorkerHandle) -> None:
        running = self._running.get(handle.id)
        if running is not None:
            running.server.should_exit = True

    async def stop(self, handle: WorkerHandle | None) -> None:
        if handle is None:
            return
        running = self._running.get(handle.id)
        handle.invalidate()
        if running is None:
            return
        running.server.should_exit = True
        await asyncio.gather(running.task, return_exceptions=True)
        running.sock.close()
        if self._running.pop(handle.id, None) is not None:
            log.info("fallback.stopped", extra={"handle_id": handle.id})

    async def close(self) -> None:
        for handle_id in list(self._running):
            await self.stop(WorkerHandle(kind="fallback", id=handle_id))
