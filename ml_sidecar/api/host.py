from __future__ import annotations

import os
import time
from typing import Any

from fastapi import APIRouter, Request

from ml_sidecar.core.config import SupervisorConfig
from ml_sidecar.core.probe import ProbeClient

router = APIRouter()

SERVICE_NAME = "Agriverse360 Backend"


def _plant_info_api_state() -> str:
    return "configured" if os.getenv("OPENAI_API_KEY") else "not configured"


@router.get("/")
async def index() -> dict[str, Any]:
    return {
        "message": "Welcome to Agriverse360 API",
        "version": "1.0.0",
        "services": [
            "Disease Detection (ML)",
            "Nutrient Analysis (ML)",
            "Plant Information (AI)",
        ],
        "endpoints": {
            "health": "GET /health",
            "status": "GET /status",
            "docs": "See /status for detailed API information",
        },
    }


@router.get("/health")
async def health(request: Request) -> dict[str, Any]:
    config: SupervisorConfig = request.app.state.config
    probe_client: ProbeClient = request.app.state.probe_client
    snapshot = request.app.state.supervisor.snapshot()

    services: dict[str, Any] = {
        "backend": "running",
        "ml_service": "not responding",
        "ml_backing": snapshot.backing,
        "disease_detection": "unknown",
        "nutrient_analysis": "unknown",
        "plant_info_ml": "unknown",
        "plant_info_api": _plant_info_api_state(),
    }
    if snapshot.endpoint:
        result = await probe_client.probe(snapshot.endpoint, config.status_timeout)
        if result.healthy:
            reported = (result.payload or {}).get("services") or {}
            services["ml_service"] = "running"
            services["disease_detection"] = reported.get("disease_detection", "unknown")
            services["nutrient_analysis"] = reported.get("nutrient_analysis", "unknown")
            services["plant_info_ml"] = reported.get("plant_info", "unknown")

    return {
        "service": SERVICE_NAME,
        "status": "healthy",
        "port": config.host_port,
        "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "services": services,
        "supervisor": {"phase": snapshot.phase.value, "health": snapshot.health},
    }


@router.get("/status")
async def status(request: Request) -> dict[str, Any]:
    config: SupervisorConfig = request.app.state.config
    probe_client: ProbeClient = request.app.state.probe_client
    snapshot = request.app.state.supervisor.snapshot()

    ml_service: dict[str, Any] = {
        "service": "ML Service (Python/Flask)",
        "port": config.worker_port,
        "backing": snapshot.backing,
        "endpoint": snapshot.endpoint,
        "status": "not responding",
    }
    if snapshot.endpoint:
        result = await probe_client.status(snapshot.endpoint, config.status_timeout)
        if result.healthy:
            ml_service.update(result.payload or {})
            ml_service["status"] = "running"
        else:
            ml_service["error"] = result.detail
    else:
        ml_service["error"] = f"no active backing ({snapshot.phase.value})"

    return {
        "backend": {
            "service": f"{SERVICE_NAME} API",
            "status": "running",
            "port": config.host_port,
            "endpoints": ["GET /", "GET /health", "GET /status"],
        },
        "ml_service": ml_service,
        "supervisor": snapshot.as_payload(),
        "plant_info_service": {
            "service": "Plant Info Service (OpenAI)",
            "status": _plant_info_api_state(),
        },
    }
