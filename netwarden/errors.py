"""Typed errors raised by the discovery, scanning, baseline and history layers."""

from __future__ import annotations

from datetime import datetime


class NetwardenError(Exception):
    """Base class for all netwarden errors."""


class InvalidConfiguration(NetwardenError, ValueError):
    """Raised before any work starts when a call is configured incorrectly."""


class CooldownActive(NetwardenError):
    """Discovery was started again before the cooldown elapsed."""

    def __init__(self, remaining_seconds: float) -> None:
        self.remaining_seconds = max(0.0, float(remaining_seconds))
        super().__init__(f"discovery cooldown active, retry in {self.remaining_seconds:.1f}s")


class RateLimitExceeded(NetwardenError):
    """Discovery or scan volume is over the configured per-window limit."""

    def __init__(self, current: int, limit: int, retry_after: float) -> None:
        self.current = int(current)
        self.limit = int(limit)
        self.retry_after = max(0.0, float(retry_after))
        super().__init__(
            f"rate limit exceeded ({self.current}/{self.limit}), retry in {self.retry_after:.1f}s"
        )


class InsufficientData(NetwardenError):
    """Not enough scan history to build a baseline."""

    def __init__(self, available: int, required: int) -> None:
        self.available = int(available)
        self.required = int(required)
        super().__init__(f"baseline needs {self.required} scans, only {self.available} available")


class ProbeError(NetwardenError):
    """A probe failed below the connection level (routing, socket errors)."""

    def __init__(self, host: str, port: int, reason: str) -> None:
        self.host = host
        self.port = int(port)
        self.reason = reason
        super().__init__(f"{host}:{port} probe failed: {reason}")


class ProbeTimeout(ProbeError):
    """A probe got no answer within its timeout."""

    def __init__(self, host: str, port: int, timeout: float) -> None:
        self.timeout = float(timeout)
        super().__init__(host, port, f"no response within {self.timeout:.2f}s")


class MalformedAdvertisement(NetwardenError):
    """An advertisement record failed sanitization and was dropped."""

    def __init__(self, reason: str, key: str | None = None) -> None:
        self.reason = reason
        self.key = key
        label = f" (key={key!r})" if key is not None else ""
        super().__init__(f"malformed advertisement record{label}: {reason}")


class OutOfOrderSnapshot(NetwardenError):
    """A snapshot older than the latest recorded one was submitted for a device."""

    def __init__(self, device_key: str, timestamp: datetime, latest: datetime) -> None:
        self.device_key = device_key
        self.timestamp = timestamp
        self.latest = latest
        super().__init__(
            f"snapshot for {device_key} at {timestamp.isoformat()} is older than {latest.isoformat()}"
        )
