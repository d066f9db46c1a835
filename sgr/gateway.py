from __future__ import annotations

from dataclasses import asdict, dataclass, field

from .runtime import BackendMember, RuntimeState

BALANCING_MODE = "CONNECTION"
LB_PORTS = frozenset({80})

# Source ranges of the platform's health checkers.
HEALTH_CHECKER_RANGES = ("35.191.0.0/16", "130.211.0.0/22")
INTERNAL_CIDR = "10.0.0.0/8"


class NoHealthyBackends(Exception):
    pass


@dataclass(frozen=True)
class FirewallRule:
    name: str
    ports: tuple[int, ...]
    source_ranges: tuple[str, ...]
    target_tag: str
    protocol: str = "tcp"


@dataclass(frozen=True)
class BackendService:
    name: str
    group: str
    health_check: str | None
    balancing_mode: str = BALANCING_MODE


@dataclass(frozen=True)
class ForwardingRule:
    name: str
    backend_service: str
    ip_address: str
    ports: frozenset[int] = field(default_factory=lambda: LB_PORTS)
    load_balancing_scheme: str = "INTERNAL"


@dataclass(frozen=True)
class DnsRecord:
    name: str
    ip_address: str
    record_type: str = "A"
    ttl: int = 300


def firewall_rules(probe_port: int = 22) -> list[FirewallRule]:
    return [
        FirewallRule("allow-health-check", (probe_port,), HEALTH_CHECKER_RANGES, "allow-health-check"),
        FirewallRule("allow-internal-lb", tuple(sorted(LB_PORTS)), (INTERNAL_CIDR,), "allow-internal-lb"),
    ]


FIREWALL_RULES = firewall_rules()


def load_balancer(group: str, health_check: str | None, ip_address: str, dns_domain: str) -> dict:
    """Static routing declarations for one group.

    They target the group, so instance churn never changes them.
    """
    bs = BackendService(name=f"{group}-backend", group=group, health_check=health_check)
    fr = ForwardingRule(name=f"{group}-forwarding-rule", backend_service=bs.name, ip_address=ip_address)
    dns = DnsRecord(name=f"{group}.{dns_domain.rstrip('.')}.", ip_address=ip_address)
    return {"backend_service": bs, "forwarding_rule": fr, "dns_record": dns}


def select_backend(group: str, runtime: RuntimeState) -> BackendMember:
    """Pick a member for a new request.

    Every group instance is a member; only healthy ones are admitted.
    Admitted members are used round-robin in slot order. Connection-count
    balancing is declared on the backend service (BALANCING_MODE) and done
    by the load balancer itself.
    """
    members = runtime.get_members(group)
    if not members:
        raise NoHealthyBackends(f"Group '{group}' has no backend members.")
    admitted = [m for m in members if runtime.is_healthy(m.instance)]
    if not admitted:
        raise NoHealthyBackends(f"No healthy backends for group '{group}'.")
    return admitted[runtime.next_index(f"group:{group}", len(admitted))]


def describe_backends(group: str, runtime: RuntimeState, health_check: str | None, ip_address: str, dns_domain: str) -> dict:
    lb = load_balancer(group, health_check, ip_address, dns_domain)
    fr = asdict(lb["forwarding_rule"])
    fr["ports"] = sorted(fr["ports"])
    return {
        "backend_service": asdict(lb["backend_service"]),
        "forwarding_rule": fr,
        "dns_record": asdict(lb["dns_record"]),
        "members": [
            {
                "instance": m.instance,
                "slot": m.slot,
                "address": m.address,
                "admitted": runtime.is_healthy(m.instance),
            }
            for m in runtime.get_members(group)
        ],
    }
