from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

log = logging.getLogger("ml-sidecar.config")

DEFAULT_REQUIRED_MODULES = ["flask", "tensorflow", "PIL", "numpy", "cv2"]


class SupervisorConfig(BaseModel):
    host_port: int = 5003
    worker_host: str = "127.0.0.1"
    worker_port: int = 5004
    fallback_port: int = 5005
    worker_script: str = str(Path("ml_service") / "app.py")
    worker_args: list[str] | None = None
    worker_workdir: str | None = None
    interpreters: list[str] = Field(default_factory=lambda: ["python3", "python"])
    required_modules: list[str] = Field(default_factory=lambda: list(DEFAULT_REQUIRED_MODULES))
    capability_timeout: float = 60.0
    startup_timeout: float = 10.0
    startup_poll_interval: float = 1.0
    startup_probe_timeout: float = 1.0
    health_interval: float = 30.0
    health_timeout: float = 2.0
    unhealthy_retry_interval: float = 5.0
    status_timeout: float = 3.0
    stop_timeout: float = 5.0

    @property
    def worker_endpoint(self) -> str:
        return f"http://{self.worker_host}:{self.worker_port}"

    def resolved_workdir(self) -> str:
        if self.worker_workdir:
            return self.worker_workdir
        return str(Path(self.worker_script).expanduser().resolve().parent)

    def resolved_args(self) -> list[str]:
        if self.worker_args is not None:
            return list(self.worker_args)
        return [str(Path(self.worker_script).expanduser().resolve())]

    @classmethod
    def _resolve_path(cls, path: Path | None) -> Path | None:
        if path is not None:
            return Path(path).expanduser()
        raw = os.getenv("ML_SIDECAR_CONFIG", "")
        if raw.strip():
            return Path(raw.strip()).expanduser()
        return None

    @classmethod
    def _apply_env(cls, data: dict[str, Any]) -> dict[str, Any]:
        for env_name, key in (("PORT", "host_port"), ("ML_SERVICE_PORT", "worker_port")):
            raw = os.getenv(env_name)
            if raw is None or not raw.strip():
                continue
            try:
                data[key] = int(raw)
            except ValueError:
                log.warning("Ignoring non-integer %s=%r", env_name, raw)
        return data

    @classmethod
    def load(cls, path: Path | None = None) -> "SupervisorConfig":
        """
        Load the supervisor config.

        Never raises: a missing, unreadable, corrupt or invalid file yields the
        defaults, with environment overrides applied on top.
        """
        config_path = cls._resolve_path(path)
        data: dict[str, Any] = {}

        if config_path is not None:
            if not config_path.is_file():
                log.info("Config file %s not found; using defaults.", config_path)
            else:
                try:
                    raw_text = config_path.read_text(encoding="utf-8").strip()
                    loaded = json.loads(raw_text or "{}")
                    if isinstance(loaded, dict):
                        data = loaded
                    else:
                        log.warning("Config file %s is not a JSON object; using defaults.", config_path)
                except OSError as exc:
                    log.warning("Failed to read config file %s: %s", config_path, exc)
                except json.JSONDecodeError as exc:
                    log.warning("Corrupt config JSON in %s: %s", config_path, exc)

        data = cls._apply_env(data)
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            log.warning("Invalid config schema (%s); using defaults.", exc)
            return cls.model_validate(cls._apply_env({}))
