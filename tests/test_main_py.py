import base64
import importlib.util
import os

import pytest
from fastapi.testclient import TestClient

from sgr import db
from sgr.settings import Settings

GROUP = "stateful-group"


def _import_main_module(project_root):
    """Import main.py as a module without requiring it to be installed as a package."""
    main_path = os.path.join(project_root, "main.py")
    spec = importlib.util.spec_from_file_location("sgr_main", main_path)
    mod = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(mod)  # type: ignore[attr-defined]
    return mod


def _basic_auth(user: str, password: str) -> dict:
    token = base64.b64encode(f"{user}:{password}".encode()).decode()
    return {"Authorization": f"Basic {token}"}


AUTH = _basic_auth("admin", "s3cret")


@pytest.fixture
def api(tmp_path, monkeypatch):
    project_root = os.path.dirname(os.path.dirname(__file__))
    main = _import_main_module(project_root)

    cfg = Settings(db_path=str(tmp_path / "api.db"), instance_count=2, admin_user="admin", admin_password="s3cret")
    monkeypatch.setattr(db, "settings", cfg)
    monkeypatch.setattr(main, "settings", cfg)

    # Drive the reconciler by hand instead of the background thread
    main.START_LOOP = False

    with TestClient(main.app) as client:
        yield main, client


def _settle(main, ticks=6):
    for _ in range(ticks):
        main.reconciler.tick()


def test_health_is_public(api):
    _, client = api
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "healthy", "groups": 1}


def test_group_endpoints_require_basic_auth(api):
    _, client = api
    assert client.get(f"/groups/{GROUP}").status_code == 401
    assert client.get(f"/groups/{GROUP}", headers=_basic_auth("admin", "wrong")).status_code == 401
    assert client.get(f"/groups/{GROUP}", headers=AUTH).status_code == 200


def test_bootstrapped_group_converges(api):
    main, client = api
    body = client.get(f"/groups/{GROUP}", headers=AUTH).json()
    assert body["target_size"] == 2
    assert body["update_policy"] == {
        "type": "OPPORTUNISTIC",
        "minimal_action": "NONE",
        "max_surge": 3,
        "max_unavailable": 0,
        "replacement_method": "SUBSTITUTE",
    }
    assert body["auto_healing"]["initial_delay_sec"] == 300

    _settle(main)
    body = client.get(f"/groups/{GROUP}", headers=AUTH).json()
    assert body["stable"] is True
    names = {i["name"] for i in body["instances"]}
    assert len(names) == 2

    disks = client.get(f"/groups/{GROUP}/disks", headers=AUTH).json()
    assert [d["name"] for d in disks] == ["stateful-1-data-disk", "stateful-2-data-disk"]
    assert {d["attached_to"] for d in disks} == names


def test_resize(api):
    _, client = api
    assert client.put(f"/groups/{GROUP}/size", json={"target_size": -1}, headers=AUTH).status_code == 422
    assert client.put("/groups/missing/size", json={"target_size": 1}, headers=AUTH).status_code == 404

    r = client.put(f"/groups/{GROUP}/size", json={"target_size": 4}, headers=AUTH)
    assert r.status_code == 200
    assert r.json()["target_size"] == 4


def test_declare_template_and_apply(api):
    _, client = api
    payload = {"base_name": "stateful", "image": "projects/debian-cloud/global/images/family/debian-13", "apply_to": GROUP}
    r = client.post("/templates", json=payload, headers=AUTH)
    assert r.status_code == 200
    name = r.json()["name"]
    assert name.startswith("stateful-template-")

    assert client.get(f"/groups/{GROUP}", headers=AUTH).json()["template"] == name

    r = client.post("/templates", json={"base_name": "Bad_Name", "image": "img"}, headers=AUTH)
    assert r.status_code == 400

    r = client.put(f"/groups/{GROUP}/template", json={"template": "no-such-template"}, headers=AUTH)
    assert r.status_code == 404


def test_rolling_triggers_are_recorded(api):
    _, client = api
    assert client.post(f"/groups/{GROUP}/rolling-update", headers=AUTH).status_code == 200
    assert client.post(f"/groups/{GROUP}/rolling-restart", headers=AUTH).status_code == 200

    messages = [e["message"] for e in client.get("/events", params={"limit": 50}, headers=AUTH).json()]
    assert any(m.startswith("Rolling update") for m in messages)
    assert "Rolling restart requested" in messages


def test_recreate_validates_instances(api):
    main, client = api
    assert client.post(f"/groups/{GROUP}/recreate", json={"instances": []}, headers=AUTH).status_code == 422
    assert client.post(f"/groups/{GROUP}/recreate", json={"instances": ["ghost"]}, headers=AUTH).status_code == 404

    _settle(main)
    name = client.get(f"/groups/{GROUP}", headers=AUTH).json()["instances"][0]["name"]
    r = client.post(f"/groups/{GROUP}/recreate", json={"instances": [name]}, headers=AUTH)
    assert r.status_code == 200
    assert r.json() == {"group": GROUP, "recreating": [name]}


def test_backends_describe_static_routing(api):
    main, client = api
    assert client.get(f"/backends/{GROUP}/select", headers=AUTH).status_code == 503

    _settle(main)
    body = client.get(f"/backends/{GROUP}", headers=AUTH).json()
    assert body["backend_service"]["balancing_mode"] == "CONNECTION"
    assert body["forwarding_rule"]["ports"] == [80]
    assert body["forwarding_rule"]["load_balancing_scheme"] == "INTERNAL"
    assert body["dns_record"]["name"] == f"{GROUP}.internal.example."
    assert body["dns_record"]["ip_address"] == body["forwarding_rule"]["ip_address"]
    assert len(body["members"]) == 2

    assert client.get("/backends/missing", headers=AUTH).status_code == 404


def test_prune_keeps_referenced_templates(api):
    _, client = api
    current = client.get(f"/groups/{GROUP}", headers=AUTH).json()["template"]
    r = client.post("/templates/prune", headers=AUTH)
    assert r.status_code == 200
    assert current not in r.json()["removed"]
    assert current in [t["name"] for t in client.get("/templates", headers=AUTH).json()]
