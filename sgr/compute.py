from __future__ import annotations

import itertools
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable

from .db import HealthCheckRow, TemplateRow
from .health import check_health, check_tcp


@dataclass
class Operation:
    """Handle of a long-running compute call."""

    name: str
    kind: str
    target: str
    status: str = "PENDING"  # PENDING|RUNNING|DONE
    error_code: str | None = None
    error: str | None = None

    @property
    def done(self) -> bool:
        return self.status == "DONE"

    @property
    def failed(self) -> bool:
        return self.done and (self.error_code is not None or self.error is not None)


class ComputeBackend(ABC):
    """Compute provisioning API consumed by the reconciler.

    Every mutating call returns an Operation that is polled with
    get_operation() until it is DONE.
    """

    @abstractmethod
    def create_instance(self, name: str, template: TemplateRow, zone: str, group: str) -> Operation: ...

    @abstractmethod
    def delete_instance(self, name: str, zone: str) -> Operation: ...

    @abstractmethod
    def refresh_instance(self, name: str, template: TemplateRow, zone: str) -> Operation:
        """Apply metadata and tags of `template` without restarting the instance."""

    @abstractmethod
    def create_disk(self, name: str, size_gb: int, disk_type: str, zone: str) -> Operation: ...

    @abstractmethod
    def attach_disk(self, instance: str, disk: str, device_name: str, zone: str) -> Operation: ...

    @abstractmethod
    def detach_disk(self, instance: str, device_name: str, zone: str) -> Operation: ...

    @abstractmethod
    def disk_users(self, name: str, zone: str) -> list[str] | None:
        """Instances the disk is attached to, or None when the disk does not exist."""

    @abstractmethod
    def get_operation(self, op: Operation) -> Operation: ...

    @abstractmethod
    def list_instances(self, group: str, zone: str) -> list[str]: ...

    @abstractmethod
    def instance_address(self, name: str, zone: str) -> str: ...

    def probe(self, name: str, zone: str, hc: HealthCheckRow) -> tuple[bool, str]:
        address = self.instance_address(name, zone)
        if hc.protocol == "HTTP":
            ok, msg, _ = check_health(f"http://{address}:{hc.port}{hc.request_path}", timeout_s=hc.timeout_sec)
        else:
            ok, msg, _ = check_tcp(address, hc.port, timeout_s=hc.timeout_sec)
        return ok, msg


@dataclass
class SimInstance:
    name: str
    group: str
    zone: str
    template: str
    address: str
    status: str = "PROVISIONING"  # PROVISIONING|RUNNING|STOPPING
    disks: dict[str, str] = field(default_factory=dict)  # device -> disk
    healthy: bool = True
    metadata_template: str = ""


@dataclass
class SimDisk:
    name: str
    size_gb: int
    disk_type: str
    users: list[str] = field(default_factory=list)


@dataclass
class _PendingOp:
    op: Operation
    complete_at: float
    on_done: Callable[[], None] | None


class InMemoryCompute(ComputeBackend):
    """A simulated zone.

    Operations finish `op_latency_s` after they are issued (measured with
    `clock`). Failures can be queued per call kind with fail_next(), a hard
    instance quota set with `instance_quota`, and instance health flipped with
    set_healthy(). Attachments take effect when issued and detachments when
    they complete, so `max_disk_users` records the worst overlap a disk saw.
    Like real zone operations, they finish whether or not anyone polls them.
    """

    def __init__(self, clock: Callable[[], float] = time.time, op_latency_s: float = 0.0, instance_quota: int | None = None):
        self.clock = clock
        self.op_latency_s = op_latency_s
        self.instance_quota = instance_quota
        self.instances: dict[str, SimInstance] = {}
        self.disks: dict[str, SimDisk] = {}
        self.max_live: dict[str, int] = {}  # group -> high-water instance count
        self.max_disk_users: dict[str, int] = {}
        self.calls: list[tuple[str, str]] = []
        self._ops: dict[str, _PendingOp] = {}
        self._failures: dict[str, list[str]] = {}
        self._seq = itertools.count(1)
        self._ip = itertools.count(2)

    # --- test / simulation hooks ---

    def fail_next(self, kind: str, code: str = "QUOTA_EXCEEDED", times: int = 1) -> None:
        self._failures.setdefault(kind, []).extend([code] * times)

    def set_healthy(self, name: str, healthy: bool) -> None:
        self.instances[name].healthy = healthy

    def delete_externally(self, name: str) -> None:
        """Remove an instance behind the reconciler's back (manual deletion)."""
        inst = self.instances.pop(name)
        for disk in inst.disks.values():
            if disk in self.disks and name in self.disks[disk].users:
                self.disks[disk].users.remove(name)

    def live(self, group: str) -> int:
        return sum(1 for i in self.instances.values() if i.group == group)

    def attached_to(self, disk: str) -> list[str]:
        return list(self.disks[disk].users)

    # --- internals ---

    def _new_op(self, kind: str, target: str, on_done: Callable[[], None] | None = None) -> Operation:
        op = Operation(name=f"operation-{next(self._seq)}", kind=kind, target=target, status="RUNNING")
        self.calls.append((kind, target))
        queued = self._failures.get(kind)
        if queued:
            code = queued.pop(0)
            return self._failed(op, code, f"{kind} on {target} failed with {code}")
        self._ops[op.name] = _PendingOp(op=op, complete_at=self.clock() + self.op_latency_s, on_done=on_done)
        return op

    def _rejected(self, kind: str, target: str, code: str, message: str) -> Operation:
        op = Operation(name=f"operation-{next(self._seq)}", kind=kind, target=target)
        self.calls.append((kind, target))
        return self._failed(op, code, message)

    def _failed(self, op: Operation, code: str, message: str) -> Operation:
        op.status = "DONE"
        op.error_code = code
        op.error = message
        return op

    def _settle(self) -> None:
        now = self.clock()
        for name, pending in list(self._ops.items()):
            if now >= pending.complete_at:
                del self._ops[name]
                if pending.on_done:
                    pending.on_done()
                pending.op.status = "DONE"

    def _note_live(self, group: str) -> None:
        self.max_live[group] = max(self.max_live.get(group, 0), self.live(group))

    def _note_users(self, disk: SimDisk) -> None:
        self.max_disk_users[disk.name] = max(self.max_disk_users.get(disk.name, 0), len(disk.users))

    # --- ComputeBackend ---

    def create_instance(self, name: str, template: TemplateRow, zone: str, group: str) -> Operation:
        if not template.image or not template.machine_type:
            return self._rejected("create_instance", name, "INVALID_TEMPLATE", f"template {template.name} has no image or machine type")
        if self.instance_quota is not None and len(self.instances) >= self.instance_quota:
            return self._rejected("create_instance", name, "QUOTA_EXCEEDED", "Quota 'INSTANCES' exceeded")

        def done() -> None:
            if name in self.instances and self.instances[name].status == "PROVISIONING":
                self.instances[name].status = "RUNNING"

        op = self._new_op("create_instance", name, done)
        if not op.failed:
            self.instances[name] = SimInstance(
                name=name,
                group=group,
                zone=zone,
                template=template.name,
                address=f"10.132.0.{next(self._ip)}",
                metadata_template=template.name,
            )
            self._note_live(group)
        return op

    def delete_instance(self, name: str, zone: str) -> Operation:
        if name not in self.instances:
            return self._rejected("delete_instance", name, "NOT_FOUND", f"instance {name} not found")

        def done() -> None:
            inst = self.instances.pop(name, None)
            if not inst:
                return
            for disk in inst.disks.values():
                if disk in self.disks and name in self.disks[disk].users:
                    self.disks[disk].users.remove(name)

        op = self._new_op("delete_instance", name, done)
        if not op.failed and name in self.instances:
            self.instances[name].status = "STOPPING"
        return op

    def refresh_instance(self, name: str, template: TemplateRow, zone: str) -> Operation:
        def done() -> None:
            if name in self.instances:
                self.instances[name].metadata_template = template.name
                self.instances[name].template = template.name

        return self._new_op("refresh_instance", name, done)

    def create_disk(self, name: str, size_gb: int, disk_type: str, zone: str) -> Operation:
        if name in self.disks:
            return self._rejected("create_disk", name, "ALREADY_EXISTS", f"disk {name} already exists")

        def done() -> None:
            self.disks[name] = SimDisk(name=name, size_gb=size_gb, disk_type=disk_type)

        return self._new_op("create_disk", name, done)

    def attach_disk(self, instance: str, disk: str, device_name: str, zone: str) -> Operation:
        d = self.disks.get(disk)
        if d is None or instance not in self.instances:
            return self._rejected("attach_disk", disk, "NOT_FOUND", f"disk {disk} or instance {instance} not found")
        if d.users and instance not in d.users:
            return self._rejected(
                "attach_disk",
                disk,
                "RESOURCE_IN_USE_BY_ANOTHER_RESOURCE",
                f"disk {disk} is already being used by {d.users[0]}",
            )
        op = self._new_op("attach_disk", disk)
        if not op.failed:
            d.users.append(instance)
            self.instances[instance].disks[device_name] = disk
            self._note_users(d)
        return op

    def detach_disk(self, instance: str, device_name: str, zone: str) -> Operation:
        if instance not in self.instances:
            return self._rejected("detach_disk", instance, "NOT_FOUND", f"instance {instance} not found")

        def done() -> None:
            inst = self.instances.get(instance)
            if not inst:
                return
            disk = inst.disks.pop(device_name, None)
            if disk in self.disks and instance in self.disks[disk].users:
                self.disks[disk].users.remove(instance)

        return self._new_op("detach_disk", instance, done)

    def disk_users(self, name: str, zone: str) -> list[str] | None:
        self._settle()
        disk = self.disks.get(name)
        return list(disk.users) if disk else None

    def get_operation(self, op: Operation) -> Operation:
        self._settle()
        pending = self._ops.get(op.name)
        return pending.op if pending else op

    def list_instances(self, group: str, zone: str) -> list[str]:
        self._settle()
        return sorted(n for n, i in self.instances.items() if i.group == group and i.zone == zone)

    def instance_address(self, name: str, zone: str) -> str:
        return self.instances[name].address

    def probe(self, name: str, zone: str, hc: HealthCheckRow) -> tuple[bool, str]:
        inst = self.instances.get(name)
        if inst is None:
            return False, "No such instance"
        if inst.status != "RUNNING":
            return False, f"Instance is {inst.status}"
        if not inst.healthy:
            return False, "No response"
        return True, "Healthy"
