"""Declared state: instance templates, health checks and groups.

Templates are content addressed and never mutated. Declaring the same
content twice returns the existing template; any change produces a new one
that the group version can then point at.
"""

from __future__ import annotations

import hashlib
import json
import re
import time

from . import db
from .db import GroupRow, HealthCheckRow, TemplateRow
from .errors import GroupNotFoundError

NAME_RE = re.compile(r"^[a-z]([-a-z0-9]{0,61}[a-z0-9])?$")

UPDATE_TYPES = ("PROACTIVE", "OPPORTUNISTIC")
MINIMAL_ACTIONS = ("NONE", "REFRESH", "REPLACE")
REPLACEMENT_METHODS = ("RECREATE", "SUBSTITUTE")
PROBE_PROTOCOLS = ("TCP", "HTTP")

# Template fields that can be applied to a running instance in place.
REFRESHABLE_FIELDS = frozenset({"startup_script", "tags"})

TEMPLATE_FIELDS = (
    "image",
    "machine_type",
    "boot_disk_size_gb",
    "boot_disk_type",
    "data_device_name",
    "data_disk_size_gb",
    "data_disk_type",
    "network",
    "subnetwork",
    "startup_script",
    "service_account",
    "tags",
)


def validate_name(name: str, what: str = "name") -> None:
    if not NAME_RE.match(name):
        raise ValueError(
            f"Invalid {what} '{name}'. Use lowercase letters, digits and hyphens, starting with a letter (max 63 chars)."
        )


def validate_policy(
    update_type: str,
    minimal_action: str,
    max_surge: int,
    max_unavailable: int,
    replacement_method: str,
) -> None:
    if update_type not in UPDATE_TYPES:
        raise ValueError(f"update_type must be one of {', '.join(UPDATE_TYPES)}")
    if minimal_action not in MINIMAL_ACTIONS:
        raise ValueError(f"minimal_action must be one of {', '.join(MINIMAL_ACTIONS)}")
    if replacement_method not in REPLACEMENT_METHODS:
        raise ValueError(f"replacement_method must be one of {', '.join(REPLACEMENT_METHODS)}")
    if max_surge < 0 or max_unavailable < 0:
        raise ValueError("max_surge and max_unavailable must be >= 0")
    if replacement_method == "SUBSTITUTE" and max_surge < 1:
        raise ValueError("SUBSTITUTE replacement needs max_surge >= 1")
    if replacement_method == "RECREATE" and max_unavailable < 1:
        raise ValueError("RECREATE replacement needs max_unavailable >= 1")


def fingerprint(fields: dict) -> str:
    payload = json.dumps(fields, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode()).hexdigest()


def declare_template(
    base_name: str,
    image: str,
    machine_type: str,
    service_account: str = "",
    network: str = "default",
    subnetwork: str | None = None,
    startup_script: str = "",
    tags: list[str] | None = None,
    boot_disk_size_gb: int = 20,
    boot_disk_type: str = "pd-balanced",
    data_device_name: str = "data-disk",
    data_disk_size_gb: int = 50,
    data_disk_type: str = "pd-ssd",
) -> TemplateRow:
    """Declare an instance template and return its immutable row."""
    validate_name(base_name, "template base name")
    validate_name(data_device_name, "device name")
    if boot_disk_size_gb < 10 or data_disk_size_gb < 1:
        raise ValueError("boot disk must be >= 10 GB and data disk >= 1 GB")

    fields = {
        "image": image,
        "machine_type": machine_type,
        "boot_disk_size_gb": int(boot_disk_size_gb),
        "boot_disk_type": boot_disk_type,
        "data_device_name": data_device_name,
        "data_disk_size_gb": int(data_disk_size_gb),
        "data_disk_type": data_disk_type,
        "network": network,
        "subnetwork": subnetwork,
        "startup_script": startup_script,
        "service_account": service_account,
        "tags": ",".join(sorted(set(tags or []))),
    }
    fp = fingerprint(fields)
    name = f"{base_name}-template-{fp[:8]}"
    existing = db.get_template(name)
    if existing:
        return existing
    row = db.insert_template(name, fp, fields)
    db.log_event("INFO", f"Declared instance template {row.name}")
    return row


def changed_fields(old: TemplateRow, new: TemplateRow) -> set[str]:
    return {f for f in TEMPLATE_FIELDS if getattr(old, f) != getattr(new, f)}


def required_action(old: TemplateRow | None, new: TemplateRow, minimal_action: str = "NONE") -> str:
    """Least disruptive action moving an instance from `old` to `new`.

    The result is never less disruptive than `minimal_action`.
    """
    if old is None:
        needed = "REPLACE"
    else:
        diff = changed_fields(old, new)
        if not diff:
            needed = "NONE"
        elif diff <= REFRESHABLE_FIELDS:
            needed = "REFRESH"
        else:
            needed = "REPLACE"
    return max(needed, minimal_action, key=MINIMAL_ACTIONS.index)


def declare_health_check(
    name: str,
    protocol: str = "TCP",
    port: int = 22,
    request_path: str = "/",
    check_interval_sec: int = 5,
    timeout_sec: int = 5,
    healthy_threshold: int = 2,
    unhealthy_threshold: int = 3,
) -> HealthCheckRow:
    validate_name(name, "health check name")
    protocol = protocol.upper()
    if protocol not in PROBE_PROTOCOLS:
        raise ValueError(f"protocol must be one of {', '.join(PROBE_PROTOCOLS)}")
    if not 1 <= int(port) <= 65535:
        raise ValueError("port must be within 1..65535")
    if not request_path.startswith("/") or "://" in request_path:
        raise ValueError("request_path must be an absolute path")
    if timeout_sec > check_interval_sec:
        raise ValueError("timeout_sec must not exceed check_interval_sec")
    if healthy_threshold < 1 or unhealthy_threshold < 1:
        raise ValueError("thresholds must be >= 1")
    return db.upsert_health_check(
        name=name,
        protocol=protocol,
        port=int(port),
        request_path=request_path,
        check_interval_sec=int(check_interval_sec),
        timeout_sec=int(timeout_sec),
        healthy_threshold=int(healthy_threshold),
        unhealthy_threshold=int(unhealthy_threshold),
    )


def declare_group(
    name: str,
    template: str,
    target_size: int,
    zone: str,
    base_instance_name: str | None = None,
    update_type: str = "OPPORTUNISTIC",
    minimal_action: str = "NONE",
    max_surge: int = 3,
    max_unavailable: int = 0,
    replacement_method: str = "SUBSTITUTE",
    stateful_device: str = "data-disk",
    health_check: str | None = None,
    initial_delay_sec: int = 300,
) -> GroupRow:
    """Declare (or re-declare) a managed instance group.

    The stateful device and base instance name are fixed at first
    declaration since existing disks are keyed by them.
    """
    validate_name(name, "group name")
    validate_policy(update_type, minimal_action, max_surge, max_unavailable, replacement_method)
    if target_size < 0:
        raise ValueError("target_size must be >= 0")
    if initial_delay_sec < 0:
        raise ValueError("initial_delay_sec must be >= 0")
    tmpl = db.get_template(template)
    if tmpl is None:
        raise KeyError(f"unknown template '{template}'")
    if tmpl.data_device_name != stateful_device:
        raise ValueError(f"template {template} has no device named '{stateful_device}'")
    if health_check and db.get_health_check(health_check) is None:
        raise KeyError(f"unknown health check '{health_check}'")

    previous = db.get_group(name)
    group = db.upsert_group(
        name=name,
        base_instance_name=base_instance_name or name,
        zone=zone,
        target_size=int(target_size),
        template_name=template,
        update_type=update_type,
        minimal_action=minimal_action,
        max_surge=int(max_surge),
        max_unavailable=int(max_unavailable),
        replacement_method=replacement_method,
        stateful_device=stateful_device,
        health_check=health_check,
        initial_delay_sec=int(initial_delay_sec),
    )
    if previous is None:
        db.log_event("INFO", f"Declared group with size {target_size} on {template}", group_name=name)
    elif previous.template_name != template:
        db.log_event("INFO", f"Group version now {template} (was {previous.template_name})", group_name=name)
    return group


def _require_group(name: str) -> GroupRow:
    group = db.get_group(name)
    if group is None:
        raise GroupNotFoundError(name)
    return group


def resize(name: str, target_size: int) -> GroupRow:
    if target_size < 0:
        raise ValueError("target_size must be >= 0")
    group = _require_group(name)
    db.set_group_size(group.id, int(target_size))
    db.log_event("INFO", f"Resized group {group.target_size} -> {target_size}", group_name=name)
    return _require_group(name)


def set_template(name: str, template: str) -> GroupRow:
    group = _require_group(name)
    tmpl = db.get_template(template)
    if tmpl is None:
        raise KeyError(f"unknown template '{template}'")
    if tmpl.data_device_name != group.stateful_device:
        raise ValueError(f"template {template} has no device named '{group.stateful_device}'")
    db.set_group_template(group.id, template)
    db.log_event("INFO", f"Group version now {template} (was {group.template_name})", group_name=name)
    return _require_group(name)


def trigger_rolling_update(name: str) -> GroupRow:
    """Let outdated instances be replaced now, even under OPPORTUNISTIC."""
    group = _require_group(name)
    db.set_update_target(group.id, group.template_name)
    db.log_event("INFO", f"Rolling update to {group.template_name} triggered", group_name=name)
    return _require_group(name)


def trigger_rolling_restart(name: str, now: float | None = None) -> GroupRow:
    """Replace every instance created before now, within the update budget."""
    group = _require_group(name)
    ts = time.time() if now is None else now
    db.set_restart_requested_at(group.id, ts)
    db.log_event("INFO", "Rolling restart requested", group_name=name)
    return _require_group(name)


def recreate_instances(name: str, instances: list[str]) -> list[str]:
    """Mark instances for delete-and-recreate in their slots."""
    group = _require_group(name)
    known = {i.name for i in db.list_instances(group.id)}
    missing = [i for i in instances if i not in known]
    if missing:
        raise KeyError(f"instances not in group '{name}': {', '.join(missing)}")
    for inst in instances:
        db.request_recreate(inst)
        db.log_event("INFO", "Recreation requested", group_name=name, instance=inst)
    return list(instances)


def prune_templates() -> list[str]:
    """Delete superseded templates that no group or instance references.

    A template is superseded when a newer template is in use; templates
    declared after the newest referenced one are kept for upcoming rollouts.
    """
    referenced = db.referenced_templates()
    templates = db.list_templates()
    newest_in_use = max((t.id for t in templates if t.name in referenced), default=0)
    removed: list[str] = []
    for t in templates:
        if t.name in referenced or t.id > newest_in_use:
            continue
        db.delete_template(t.name)
        removed.append(t.name)
    if removed:
        db.log_event("INFO", f"Pruned {len(removed)} unreferenced template(s): {', '.join(removed)}")
    return removed
