from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Callable

from fastapi import FastAPI, Request

from ml_sidecar.api.host import router as host_router
from ml_sidecar.core.config import SupervisorConfig
from ml_sidecar.core.logging import pop_log_context, push_log_context
from ml_sidecar.core.probe import ProbeClient
from ml_sidecar.core.supervisor import Supervisor

LOGGER = logging.getLogger("ml-sidecar")


def create_app(
    config: SupervisorConfig | None = None,
    supervisor_factory: Callable[[SupervisorConfig], Supervisor] | None = None,
    on_fatal: Callable[[str], None] | None = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        resolved = config or SupervisorConfig.load()
        app.state.config = resolved
        app.state.probe_client = ProbeClient()
        if supervisor_factory is not None:
            supervisor = supervisor_factory(resolved)
        else:
            supervisor = Supervisor(resolved, on_fatal=on_fatal)
        app.state.supervisor = supervisor
        LOGGER.info(
            "startup.supervisor",
            extra={"worker_endpoint": resolved.worker_endpoint, "fallback_port": resolved.fallback_port},
        )
        await supervisor.start()
        try:
            yield
        finally:
            await supervisor.shutdown("host shutdown")
            await app.state.probe_client.aclose()

    app = FastAPI(title="ML Sidecar Host", version="1.0.0", lifespan=lifespan)
    app.include_router(host_router)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next: Callable):
        request_id = request.headers.get("x-request-id") or f"req_{uuid.uuid4().hex}"
        token = push_log_context(request_id=request_id, endpoint=str(request.url.path))
        start = time.perf_counter()
        try:
            response = await call_next(request)
            duration_ms = round((time.perf_counter() - start) * 1000, 2)
            LOGGER.info(
                "request.complete",
                extra={"status": response.status_code, "duration_ms": duration_ms},
            )
            response.headers["x-request-id"] = request_id
            return response
        except Exception:
            duration_ms = round((time.perf_counter() - start) * 1000, 2)
            LOGGER.exception("request.error", extra={"duration_ms": duration_ms})
            raise
        finally:
            pop_log_context(token)

    return app


app = create_app()


def main() -> None:
    import argparse

    import uvicorn

    from ml_sidecar.core.logging import configure_logging, shutdown_logging

    parser = argparse.ArgumentParser(description="ML service supervisor host")
    parser.add_argument("--port", type=int, default=None)
    parser.add_argument("--config", type=str, default=None)
    parser.add_argument("--verbose", action="store_true")
    parser.add_argument("--quiet-worker", action="store_true", help="only relay worker stderr")
    args = parser.parse_args()

    configure_logging(
        logging.DEBUG if args.verbose else logging.INFO,
        worker_level=logging.WARNING if args.quiet_worker else logging.INFO,
    )
    config = SupervisorConfig.load(Path(args.config) if args.config else None)
    if args.port is not None:
        config.host_port = args.port

    server: uvicorn.Server | None = None

    def _fatal(error: str) -> None:
        LOGGER.critical("host.fatal", extra={"error": error})
        if server is not None:
            server.should_exit = True

    host_app = create_app(config, on_fatal=_fatal)
    server = uvicorn.Server(uvicorn.Config(host_app, host="0.0.0.0", port=config.host_port, log_config=None))
    try:
        server.run()
    finally:
        shutdown_logging()
    supervisor: Supervisor | None = getattr(host_app.state, "supervisor", None)
    if supervisor is not None and supervisor.fatal_error:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
