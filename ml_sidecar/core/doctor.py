from __future__ import annotations

import argparse
import asyncio
from pathlib import Path

from ml_sidecar.core.capability import CapabilityProber
from ml_sidecar.core.config import SupervisorConfig


def run_checks(config: SupervisorConfig) -> list[str]:
    prober = CapabilityProber(
        config.interpreters,
        config.required_modules,
        workdir=config.resolved_workdir(),
        timeout=config.capability_timeout,
    )
    report = asyncio.run(prober.check())
    fixes: list[str] = []
    if report.reason == "interpreter_missing":
        fixes.append(
            f"python: none of {', '.join(config.interpreters)} found "
            "(Fix: install Python 3.8+ and make sure it is on PATH)"
        )
    elif report.reason == "modules_missing":
        fixes.append(
            f"ml dependencies: {report.detail} "
            f"(Fix: cd {config.resolved_workdir()} && {report.interpreter} -m pip install -r requirements.txt)"
        )
    if not Path(config.resolved_args()[0]).exists() and config.worker_args is None:
        fixes.append(f"worker script: {config.worker_script} not found (Fix: set worker_script in the config file)")
    return fixes


def main() -> None:
    parser = argparse.ArgumentParser(description="Check whether the ML worker can be launched")
    parser.add_argument("--config", type=str, default=None)
    args = parser.parse_args()

    config = SupervisorConfig.load(Path(args.config) if args.config else None)
    fixes = run_checks(config)
    if not fixes:
        print("[doctor] all good")
        return
    for fix in fixes:
        print(f"[doctor] {fix}")
    raise SystemExit(1)


if __name__ == "__main__":
    main()
