from __future__ import annotations


class SidecarError(Exception):
    """Base class for supervisor errors."""


class CapabilityUnavailable(SidecarError):
    pass


class LaunchFailed(SidecarError):
    pass


class ProbeTimeout(SidecarError):
    pass


class ProbeUnreachable(SidecarError):
    pass


class ProcessExited(SidecarError):
    def __init__(self, exit_code: int | None, message: str | None = None):
        super().__init__(message or f"worker exited with code {exit_code}")
        self.exit_code = exit_code


class FallbackBindFailed(SidecarError):
    """The fallback responder could not bind its port; no backing is possible."""
