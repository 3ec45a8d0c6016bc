from __future__ import annotations

import json
from pathlib import Path

import pytest

from ml_sidecar.core.config import DEFAULT_REQUIRED_MODULES, SupervisorConfig


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("PORT", "ML_SERVICE_PORT", "ML_SIDECAR_CONFIG"):
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    config = SupervisorConfig.load()
    assert config.host_port == 5003
    assert config.worker_port == 5004
    assert config.fallback_port == 5005
    assert config.worker_endpoint == "http://127.0.0.1:5004"
    assert config.startup_timeout == 10.0
    assert config.startup_poll_interval == 1.0
    assert config.health_interval == 30.0
    assert config.required_modules == DEFAULT_REQUIRED_MODULES


def test_file_values_are_applied(tmp_path):
    path = tmp_path / "sidecar.json"
    path.write_text(json.dumps({"worker_port": 6004, "startup_timeout": 2.5, "required_modules": ["numpy"]}))
    config = SupervisorConfig.load(path)
    assert config.worker_port == 6004
    assert config.startup_timeout == 2.5
    assert config.required_modules == ["numpy"]
    assert config.host_port == 5003


def test_missing_file_uses_defaults(tmp_path):
    assert SupervisorConfig.load(tmp_path / "absent.json") == SupervisorConfig()


@pytest.mark.parametrize("content", ["{not json", "[1, 2, 3]", '{"worker_port": "not-a-port"}'])
def test_unusable_file_falls_back_to_defaults(tmp_path, content):
    path = tmp_path / "sidecar.json"
    path.write_text(content)
    assert SupervisorConfig.load(path) == SupervisorConfig()


def test_empty_file_uses_defaults(tmp_path):
    path = tmp_path / "sidecar.json"
    path.write_text("")
    assert SupervisorConfig.load(path) == SupervisorConfig()


def test_env_ports_override_file(tmp_path, monkeypatch):
    path = tmp_path / "sidecar.json"
    path.write_text(json.dumps({"host_port": 7000, "worker_port": 7001}))
    monkeypatch.setenv("PORT", "8000")
    monkeypatch.setenv("ML_SERVICE_PORT", "8001")
    config = SupervisorConfig.load(path)
    assert config.host_port == 8000
    assert config.worker_port == 8001


def test_non_integer_env_port_is_ignored(monkeypatch):
    monkeypatch.setenv("ML_SERVICE_PORT", "fifty")
    assert SupervisorConfig.load().worker_port == 5004


def test_env_overrides_survive_invalid_schema(tmp_path, monkeypatch):
    path = tmp_path / "sidecar.json"
    path.write_text(json.dumps({"startup_timeout": "soon"}))
    monkeypatch.setenv("PORT", "9000")
    config = SupervisorConfig.load(path)
    assert config.host_port == 9000
    assert config.startup_timeout == 10.0


def test_config_path_from_environment(tmp_path, monkeypatch):
    path = tmp_path / "from-env.json"
    path.write_text(json.dumps({"fallback_port": 6100}))
    monkeypatch.setenv("ML_SIDECAR_CONFIG", str(path))
    assert SupervisorConfig.load().fallback_port == 6100


def test_worker_command_resolution(tmp_path):
    script = tmp_path / "ml_service" / "app.py"
    config = SupervisorConfig(worker_script=str(script))
    assert config.resolved_workdir() == str(script.parent.resolve())
    assert config.resolved_args() == [str(script.resolve())]

    explicit = SupervisorConfig(worker_script=str(script), worker_args=["-m", "ml_service"], worker_workdir="/srv/ml")
    assert explicit.resolved_workdir() == "/srv/ml"
    assert explicit.resolved_args() == ["-m", "ml_service"]


def test_default_script_is_relative():
    assert Path(SupervisorConfig().worker_script) == Path("ml_service") / "app.py"
