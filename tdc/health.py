from __future__ import annotations

import time
from typing import Callable

import httpx


def check_health(url: str, timeout_s: float = 2.0) -> tuple[bool, str, float | None]:
    """Call a health endpoint.

    Expected JSON: {"status": "healthy"}.
    Returns (is_healthy, message, latency_ms).
    """
    start = time.time()
    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=False) as client:
            resp = client.get(url)
        latency_ms = round((time.time() - start) * 1000.0, 2)
        if resp.status_code != 200:
            return False, f"HTTP {resp.status_code}", latency_ms
        try:
            data = resp.json()
        except ValueError:
            return False, "Invalid JSON", latency_ms
        if isinstance(data, dict) and data.get("status") == "healthy":
            return True, "Healthy", latency_ms
        return False, f"Unhealthy payload: {data!r}", latency_ms
    except (httpx.ConnectError, httpx.TimeoutException):
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, "No response", latency_ms
    except httpx.HTTPError as e:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, f"Error: {type(e).__name__}: {e}", latency_ms


def http_probe(url: str, timeout_s: float = 2.0) -> Callable[[], tuple[bool, str]]:
    """Build a registry probe for a health URL."""

    def _probe() -> tuple[bool, str]:
        ok, msg, _ = check_health(url, timeout_s=timeout_s)
        return ok, msg

    return _probe


def fetch_replication_lag(url: str, timeout_s: float = 2.0) -> float | None:
    """Read ``replication_lag`` from a datastore node's health payload.

    Returns None when the node does not report it or cannot be reached.
    """
    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=False) as client:
            resp = client.get(url)
        if resp.status_code != 200:
            return None
        data = resp.json()
    except (httpx.HTTPError, ValueError):
        return None
    if not isinstance(data, dict):
        return None
    lag = data.get("replication_lag")
    try:
        return float(lag) if lag is not None else None
    except (TypeError, ValueError):
        return None
