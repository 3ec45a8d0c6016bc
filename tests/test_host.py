from __future__ import annotations

import time

import pytest
from fastapi.testclient import TestClient

from ml_sidecar.core.config import SupervisorConfig
from ml_sidecar.core.fallback import FALLBACK_VERSION
from ml_sidecar.main import create_app
from ml_sidecar.types import Phase, SupervisorSnapshot


class IdleSupervisor:
    def __init__(self, config: SupervisorConfig):
        self.config = config
        self.started = False
        self.shutdown_reason: str | None = None

    async def start(self) -> None:
        self.started = True

    async def shutdown(self, reason: str = "shutdown") -> None:
        self.shutdown_reason = reason

    def snapshot(self) -> SupervisorSnapshot:
        return SupervisorSnapshot(
            phase=Phase.PROBING_CAPABILITY,
            backing="none",
            endpoint=None,
            last_probe=None,
            standby=False,
            fatal_error=None,
        )


@pytest.fixture
def host_config(tmp_path) -> SupervisorConfig:
    return SupervisorConfig(
        host_port=5003,
        worker_script=str(tmp_path / "app.py"),
        worker_port=59998,
        fallback_port=0,
        interpreters=["ml-sidecar-no-such-python"],
        status_timeout=2.0,
        startup_poll_interval=0.05,
    )


def _wait_for_backing(client: TestClient, backing: str, timeout: float = 5.0) -> dict:
    deadline = time.monotonic() + timeout
    body = client.get("/health").json()
    while body["services"]["ml_backing"] != backing and time.monotonic() < deadline:
        time.sleep(0.05)
        body = client.get("/health").json()
    return body


def test_health_and_status_follow_the_fallback(host_config, monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with TestClient(create_app(host_config)) as client:
        body = _wait_for_backing(client, "fallback")
        assert body["status"] == "healthy"
        assert body["port"] == 5003
        assert body["services"]["backend"] == "running"
        assert body["services"]["ml_service"] == "running"
        assert body["services"]["disease_detection"] == "synthetic"
        assert body["services"]["plant_info_ml"] == "synthetic"
        assert body["services"]["plant_info_api"] == "not configured"
        assert body["supervisor"] == {"phase": "fallback_active", "health": "degraded"}

        status = client.get("/status")
        assert status.headers["x-request-id"].startswith("req_")
        payload = status.json()
        assert payload["ml_service"]["status"] == "running"
        assert payload["ml_service"]["version"] == FALLBACK_VERSION
        assert payload["ml_service"]["backing"] == "fallback"
        assert payload["supervisor"]["phase"] == "fallback_active"
        assert [entry["phase"] for entry in payload["supervisor"]["history"]] == [
            "idle",
            "probing_capability",
            "starting_fallback",
            "fallback_active",
        ]
        supervisor = client.app.state.supervisor
    assert supervisor.phase == Phase.STOPPED


def test_health_without_backing_reports_not_responding(host_config, monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    stubs: list[IdleSupervisor] = []

    def factory(config: SupervisorConfig) -> IdleSupervisor:
        stubs.append(IdleSupervisor(config))
        return stubs[-1]

    with TestClient(create_app(host_config, supervisor_factory=factory)) as client:
        body = client.get("/health").json()
        assert body["services"]["ml_service"] == "not responding"
        assert body["services"]["ml_backing"] == "none"
        assert body["services"]["disease_detection"] == "unknown"
        assert body["services"]["plant_info_api"] == "configured"
        assert body["supervisor"]["health"] == "starting"

        status = client.get("/status").json()
        assert status["ml_service"]["status"] == "not responding"
        assert status["ml_service"]["error"] == "no active backing (probing_capability)"
        assert status["plant_info_service"]["status"] == "configured"

    assert stubs[0].started
    assert stubs[0].shutdown_reason == "host shutdown"


def test_request_id_is_propagated(host_config):
    with TestClient(create_app(host_config, supervisor_factory=IdleSupervisor)) as client:
        response = client.get("/", headers={"x-request-id": "req-from-caller"})
        assert response.status_code == 200
        assert response.headers["x-request-id"] == "req-from-caller"
        body = response.json()
        assert body["message"] == "Welcome to Agriverse360 API"
        assert body["endpoints"]["health"] == "GET /health"
