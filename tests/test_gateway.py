import pytest

from sgr import gateway
from sgr.runtime import BackendMember, RuntimeState


def _runtime(*slots_healthy):
    rt = RuntimeState()
    for slot, healthy in enumerate(slots_healthy, start=1):
        name = f"web-{slot}-aaaa"
        rt.add_member(BackendMember(group="web", instance=name, slot=slot, address=f"10.0.0.{slot}"))
        if healthy is not None:
            for _ in range(2):
                rt.mark_probe(name, healthy, now=0.0, healthy_threshold=2, unhealthy_threshold=2)
    return rt


def test_select_backend_rotates_over_admitted_members():
    rt = _runtime(True, False, True)

    picked = [gateway.select_backend("web", rt).instance for _ in range(4)]

    assert picked == ["web-1-aaaa", "web-3-aaaa", "web-1-aaaa", "web-3-aaaa"]


def test_members_are_admitted_only_when_healthy():
    rt = _runtime(False, None, True)
    assert gateway.select_backend("web", rt).instance == "web-3-aaaa"

    rt.remove_member("web", "web-3-aaaa")
    with pytest.raises(gateway.NoHealthyBackends):
        gateway.select_backend("web", rt)


def test_empty_group_has_no_backends():
    with pytest.raises(gateway.NoHealthyBackends):
        gateway.select_backend("web", RuntimeState())


def test_load_balancer_targets_group_not_instances():
    lb = gateway.load_balancer("web", "tcp-22", "10.132.0.100", "internal.example.")
    assert lb["backend_service"].balancing_mode == "CONNECTION"
    assert lb["forwarding_rule"].ports == frozenset({80})
    assert lb["forwarding_rule"].backend_service == lb["backend_service"].name
    assert lb["dns_record"].name == "web.internal.example."
    assert lb["dns_record"].ip_address == "10.132.0.100"
    assert lb["dns_record"].record_type == "A"


def test_firewall_rules():
    rules = {r.name: r for r in gateway.firewall_rules(probe_port=22)}
    assert rules["allow-health-check"].ports == (22,)
    assert rules["allow-health-check"].source_ranges == ("35.191.0.0/16", "130.211.0.0/22")
    assert rules["allow-internal-lb"].ports == (80,)
    assert rules["allow-internal-lb"].target_tag == "allow-internal-lb"
    assert gateway.FIREWALL_RULES == gateway.firewall_rules()
