import socket

import httpx

from sgr import health
from sgr.runtime import RuntimeState


def _client_with(handler):
    real_client = httpx.Client

    def factory(*args, **kwargs):
        kwargs["transport"] = httpx.MockTransport(handler)
        return real_client(*args, **kwargs)

    return factory


def test_check_tcp_open_and_closed_port():
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.bind(("127.0.0.1", 0))
    server.listen(1)
    port = server.getsockname()[1]
    try:
        ok, msg, latency = health.check_tcp("127.0.0.1", port, timeout_s=1)
        assert ok is True
        assert msg == "Healthy"
        assert latency is not None
    finally:
        server.close()

    ok, msg, _ = health.check_tcp("127.0.0.1", port, timeout_s=1)
    assert ok is False
    assert msg.startswith("Connection failed")


def test_check_health_statuses(monkeypatch):
    def handler(request):
        if request.url.path == "/ok":
            return httpx.Response(200, json={"status": "healthy"})
        if request.url.path == "/degraded":
            return httpx.Response(200, json={"status": "degraded"})
        if request.url.path == "/plain":
            return httpx.Response(200, text="fine")
        return httpx.Response(503)

    monkeypatch.setattr(health.httpx, "Client", _client_with(handler))

    assert health.check_health("http://10.0.0.2/ok")[:2] == (True, "Healthy")
    assert health.check_health("http://10.0.0.2/plain")[:2] == (True, "Healthy")
    ok, msg, _ = health.check_health("http://10.0.0.2/degraded")
    assert ok is False and "degraded" in msg
    assert health.check_health("http://10.0.0.2/down")[:2] == (False, "HTTP 503")


def test_check_health_connection_error(monkeypatch):
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    monkeypatch.setattr(health.httpx, "Client", _client_with(handler))
    assert health.check_health("http://10.0.0.2/health")[:2] == (False, "No response")


def test_probe_thresholds_and_grace():
    rt = RuntimeState()
    kw = {"healthy_threshold": 2, "unhealthy_threshold": 3}

    assert rt.mark_probe("i", True, 0, **kw) == (None, None)
    assert rt.mark_probe("i", True, 5, **kw) == (None, True)

    for t in (10, 15, 20, 25):
        rt.mark_probe("i", False, t, count_failures=False, **kw)
    assert rt.probe_state("i").healthy is True
    assert rt.probe_state("i").failures == 0

    rt.mark_probe("i", False, 30, **kw)
    rt.mark_probe("i", False, 35, **kw)
    assert rt.probe_state("i").healthy is True
    assert rt.mark_probe("i", False, 40, **kw) == (True, False)

    rt.mark_probe("i", True, 45, **kw)
    assert rt.mark_probe("i", True, 50, **kw) == (False, True)
