from __future__ import annotations

import socket
import time

import httpx


def check_tcp(host: str, port: int, timeout_s: float = 5.0) -> tuple[bool, str, float | None]:
    """Open a TCP connection to host:port.

    Returns (is_healthy, message, latency_ms).
    """
    start = time.time()
    try:
        with socket.create_connection((host, int(port)), timeout=timeout_s):
            pass
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return True, "Healthy", latency_ms
    except socket.timeout:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, "No response", latency_ms
    except OSError as e:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, f"Connection failed: {e.strerror or type(e).__name__}", latency_ms


def check_health(url: str, timeout_s: float = 5.0) -> tuple[bool, str, float | None]:
    """Call an HTTP health endpoint.

    Any 200 response is healthy; a JSON body with a "status" other than
    "healthy" is not. Returns (is_healthy, message, latency_ms).
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
            return True, "Healthy", latency_ms
        if isinstance(data, dict) and data.get("status", "healthy") != "healthy":
            return False, f"Unhealthy payload: {data!r}", latency_ms
        return True, "Healthy", latency_ms
    except (httpx.ConnectError, httpx.TimeoutException):
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, "No response", latency_ms
    except httpx.HTTPError as e:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, f"Error: {type(e).__name__}: {e}", latency_ms
