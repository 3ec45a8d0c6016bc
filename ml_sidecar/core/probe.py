from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import httpx

from ml_sidecar.core.errors import ProbeTimeout, ProbeUnreachable
from ml_sidecar.types import ProbeResult

log = logging.getLogger("ml-sidecar.probe")

HEALTHY_STATUSES = {"healthy", "ok", "running", "ready"}


class ProbeClient:
    """Bounded-time ``/health`` and ``/status`` checks against a worker endpoint.

    A probe never retries; the caller owns retry policy. Every outcome is
    returned as a :class:`ProbeResult`, never raised.
    """

    def __init__(self, http_client: httpx.AsyncClient | None = None):
        self._client = http_client
        self._owns_client = http_client is None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def probe(self, endpoint: str, timeout: float) -> ProbeResult:
        return await self._check(endpoint, "/health", timeout, require_status=True)

    async def status(self, endpoint: str, timeout: float) -> ProbeResult:
        return await self._check(endpoint, "/status", timeout, require_status=False)

    async def _fetch(self, url: str, timeout: float) -> httpx.Response:
        try:
            return await asyncio.wait_for(self._http().get(url, timeout=timeout), timeout=timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise ProbeTimeout(f"no response from {url} within {timeout}s") from exc
        except (httpx.TransportError, httpx.InvalidURL) as exc:
            raise ProbeUnreachable(f"{type(exc).__name__}: {exc}") from exc

    async def _check(self, endpoint: str, path: str, timeout: float, *, require_status: bool) -> ProbeResult:
        url = endpoint.rstrip("/") + path
        start = time.perf_counter()
        try:
            response = await self._fetch(url, timeout)
        except (ProbeTimeout, ProbeUnreachable) as exc:
            log.debug("probe.unreachable", extra={"url": url, "error": str(exc)})
            return ProbeResult(
                status="unreachable",
                endpoint=endpoint,
                detail=f"{type(exc).__name__}: {exc}",
                latency_ms=_elapsed_ms(start),
            )
        except httpx.HTTPError as exc:
            # reachable, but the exchange itself was broken (bad encoding, redirect loop)
            log.debug("probe.protocol_error", extra={"url": url, "error": str(exc)})
            return ProbeResult(
                status="unhealthy",
                endpoint=endpoint,
                detail=f"{type(exc).__name__}: {exc}",
                latency_ms=_elapsed_ms(start),
            )
        latency_ms = _elapsed_ms(start)

        payload: Any
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if not response.is_success:
            return ProbeResult(
                status="unhealthy",
                endpoint=endpoint,
                payload=payload if isinstance(payload, dict) else None,
                detail=f"http {response.status_code}",
                latency_ms=latency_ms,
            )
        if not isinstance(payload, dict):
            return ProbeResult(status="unhealthy", endpoint=endpoint, detail="malformed payload", latency_ms=latency_ms)
        if require_status:
            reported = str(payload.get("status", "")).strip().lower()
            if reported not in HEALTHY_STATUSES:
                return ProbeResult(
                    status="unhealthy",
                    endpoint=endpoint,
                    payload=payload,
                    detail=f"reported status {reported or 'missing'}",
                    latency_ms=latency_ms,
                )
        return ProbeResult(status="healthy", endpoint=endpoint, payload=payload, latency_ms=latency_ms)


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 2)
