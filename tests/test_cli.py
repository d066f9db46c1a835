import json

import cli


class _Resp:
    def __init__(self, payload, ok=True):
        self._payload = payload
        self.ok = ok

    def json(self):
        return self._payload


def _record(calls, payload=None, ok=True):
    def fake(url, **kwargs):
        calls.append((url, kwargs))
        return _Resp(payload if payload is not None else {"ok": True}, ok=ok)

    return fake


def test_resize_puts_target_size(monkeypatch, capsys):
    calls = []
    monkeypatch.setattr(cli.requests, "put", _record(calls, {"target_size": 5}))

    rc = cli.main(["--api", "http://sgr:8000/", "--user", "ops", "--password", "pw", "resize", "web", "5"])

    assert rc == 0
    url, kwargs = calls[0]
    assert url == "http://sgr:8000/groups/web/size"
    assert kwargs["json"] == {"target_size": 5}
    assert kwargs["auth"] == ("ops", "pw")
    assert json.loads(capsys.readouterr().out) == {"target_size": 5}


def test_template_collects_tags(monkeypatch):
    calls = []
    monkeypatch.setattr(cli.requests, "post", _record(calls))

    cli.main(["template", "--base-name", "web", "--image", "img", "--tag", "a", "--tag", "b", "--apply-to", "web"])

    url, kwargs = calls[0]
    assert url.endswith("/templates")
    assert kwargs["json"]["tags"] == ["a", "b"]
    assert kwargs["json"]["apply_to"] == "web"


def test_recreate_and_failure_exit_code(monkeypatch):
    calls = []
    monkeypatch.setattr(cli.requests, "post", _record(calls, {"detail": "nope"}, ok=False))

    rc = cli.main(["recreate", "web", "web-1-aaaa", "web-2-bbbb"])

    assert rc == 1
    assert calls[0][1]["json"] == {"instances": ["web-1-aaaa", "web-2-bbbb"]}


def test_events_passes_limit(monkeypatch):
    calls = []
    monkeypatch.setattr(cli.requests, "get", _record(calls, []))

    assert cli.main(["events", "--limit", "5"]) == 0
    assert calls[0][1]["params"] == {"limit": 5}
