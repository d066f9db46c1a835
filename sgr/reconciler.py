from __future__ import annotations

import logging
import re
import secrets
import time
from collections import Counter
from threading import Event, Thread
from typing import Any, Callable

from . import db
from .alerts import capacity_alert, health_alert
from .compute import ComputeBackend, Operation
from .db import GroupRow, TemplateRow
from .errors import DiskAttachConflictError, GroupNotFoundError, OperationFailedError, SgrError, error_from_code
from .runtime import BackendMember, RuntimeState, SlotAction
from .settings import settings
from .templates import required_action

logger = logging.getLogger(__name__)

CREATE_DISK = "create_disk"
CREATE_INSTANCE = "create_instance"
ATTACH_DISK = "attach_disk"
DETACH_DISK = "detach_disk"
AWAIT_GATE = "await_gate"
DELETE_INSTANCE = "delete_instance"
REFRESH = "refresh"

_RECREATE_PLAN = [DETACH_DISK, DELETE_INSTANCE, CREATE_DISK, CREATE_INSTANCE, ATTACH_DISK]

PLANS: dict[str, list[str]] = {
    "create": [CREATE_DISK, CREATE_INSTANCE, ATTACH_DISK],
    "delete": [DETACH_DISK, DELETE_INSTANCE],
    "heal": _RECREATE_PLAN,
    "manual": _RECREATE_PLAN,
    "recreate": _RECREATE_PLAN,
    # The new instance boots without the data disk; the disk moves over
    # before the old instance is retired.
    "substitute": [CREATE_DISK, CREATE_INSTANCE, DETACH_DISK, ATTACH_DISK, AWAIT_GATE, DELETE_INSTANCE],
    "refresh": [REFRESH],
    # A running instance whose disk attach never happened.
    "reattach": [CREATE_DISK, ATTACH_DISK],
}

# Failures that mean the step's work is already done.
_TOLERATED = {
    CREATE_DISK: "ALREADY_EXISTS",
    DETACH_DISK: "NOT_FOUND",
    DELETE_INSTANCE: "NOT_FOUND",
}

# Returned by _issue_step when the step cannot make progress yet.
_WAIT = object()


class Reconciler:
    """Continuously reconciles declared instance groups with the compute backend.

    Each tick is a level-triggered pass: poll outstanding operations, pick up
    drift, probe health, then plan creates, deletes, heals and updates. Every
    slot has at most one SlotAction, so work on one slot is strictly
    sequential while different slots progress side by side.
    """

    def __init__(self, runtime: RuntimeState, compute: ComputeBackend, clock: Callable[[], float] = time.time):
        self.runtime = runtime
        self.compute = compute
        self.clock = clock
        self._stop = Event()
        self._thr: Thread | None = None

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self._thr = Thread(target=self._loop, daemon=True)
        self._thr.start()

    def stop(self) -> None:
        self._stop.set()

    def _loop(self) -> None:
        db.log_event("INFO", "Reconciler started")
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception as e:
                logger.exception("Reconciler tick failed")
                db.log_event("ERROR", f"Reconciler tick failed: {type(e).__name__}: {e}")
            self._stop.wait(max(1, settings.poll_interval_s))

    def tick(self, now: float | None = None) -> None:
        now = self.clock() if now is None else now
        for group in db.list_groups():
            try:
                self.reconcile_group(group.name, now)
            except Exception as e:
                logger.exception(f"Reconciling {group.name} failed")
                db.log_event("ERROR", f"Reconcile failed: {type(e).__name__}: {e}", group_name=group.name)

    def reconcile_group(self, name: str, now: float) -> None:
        group = db.get_group(name)
        if group is None:
            raise GroupNotFoundError(name)
        for action in self.runtime.list_actions(group.name):
            self._advance_safely(group, action, now)
        self._sync_drift(group, now)
        self._probe(group, now)
        self._scale(group, now)
        self._autoheal(group, now)
        self._update(group, now)
        self._track_capacity(group, now)

    # --- planning ---

    def _instance_name(self, group: GroupRow, slot: int) -> str:
        return f"{group.base_instance_name}-{slot}-{secrets.token_hex(2)}"

    def _disk_name(self, group: GroupRow, slot: int) -> str:
        return f"{group.base_instance_name}-{slot}-{group.stateful_device}"

    def _declared_template(self, group: GroupRow) -> TemplateRow:
        tmpl = db.get_template(group.template_name)
        if tmpl is None:
            raise OperationFailedError("load template", f"template '{group.template_name}' does not exist")
        return tmpl

    def _slot_of(self, group: GroupRow, name: str) -> int | None:
        m = re.fullmatch(rf"{re.escape(group.base_instance_name)}-(\d+)-[0-9a-f]+", name)
        return int(m.group(1)) if m else None

    def _schedule(
        self,
        group: GroupRow,
        slot: int,
        kind: str,
        now: float,
        old_instance: str | None = None,
        new_instance: str | None = None,
    ) -> SlotAction:
        if new_instance is None and CREATE_INSTANCE in PLANS[kind]:
            new_instance = self._instance_name(group, slot)
        action = SlotAction(
            group=group.name,
            slot=slot,
            kind=kind,
            steps=list(PLANS[kind]),
            old_instance=old_instance,
            new_instance=new_instance,
            started_at=now,
        )
        self.runtime.put_action(action)
        db.log_event("INFO", f"Slot {slot}: {kind} scheduled", group_name=group.name, instance=old_instance or action.new_instance)
        self._advance_safely(group, action, now)
        return action

    def _sync_drift(self, group: GroupRow, now: float) -> None:
        """Bring sqlite in line with what the zone reports.

        Instances that vanished without the reconciler deleting them are
        forgotten. Disk attachments of idle slots are re-read from the zone.
        Instances the zone lists but nothing recorded (left behind when the
        process stopped mid-create) are deleted; their slot is refilled the
        usual way.
        """
        present = set(self.compute.list_instances(group.name, group.zone))
        known = {i.name: i for i in db.list_instances(group.id)}
        busy: set[str] = set()
        for a in self.runtime.list_actions(group.name):
            busy.update(n for n in (a.old_instance, a.new_instance) if n)

        for inst in known.values():
            if inst.name in present or inst.name in busy:
                continue
            db.delete_instance(inst.name)
            self.runtime.remove_member(group.name, inst.name)
            self.runtime.forget_instance(inst.name)
            disk = db.get_disk(group.id, inst.slot)
            if disk and disk.attached_to == inst.name:
                db.set_disk_attachment(disk.name, None)
            if inst.status == "deleting":
                db.log_event("INFO", f"Instance in slot {inst.slot} finished deleting", group_name=group.name, instance=inst.name)
                continue
            db.log_event(
                "WARN",
                f"Instance disappeared from slot {inst.slot}; the slot will be refilled",
                group_name=group.name,
                instance=inst.name,
            )

        busy_slots = {a.slot for a in self.runtime.list_actions(group.name)}
        for disk in db.list_disks(group.id):
            if disk.slot in busy_slots:
                continue
            users = self.compute.disk_users(disk.name, group.zone)
            holder = users[0] if users else None
            if holder != disk.attached_to:
                logger.info(f"{group.name}: disk {disk.name} is attached to {holder}, recorded {disk.attached_to}")
                db.set_disk_attachment(disk.name, holder)

        for name in sorted(present - set(known) - busy):
            slot = self._slot_of(group, name)
            if slot is None:
                logger.warning(f"{group.name}: ignoring instance {name}, its name carries no slot")
                continue
            if slot in busy_slots:
                continue
            db.insert_instance(group.id, name, slot, group.template_name, "deleting", now)
            db.log_event("WARN", f"Unrecorded instance found in slot {slot}; deleting it", group_name=group.name, instance=name)
            self._schedule(group, slot, "delete", now, old_instance=name)
            busy_slots.add(slot)

    def _probe(self, group: GroupRow, now: float) -> None:
        if not group.health_check:
            return
        hc = db.get_health_check(group.health_check)
        if hc is None:
            return
        for inst in db.list_instances(group.id):
            if inst.status != "running":
                continue
            st = self.runtime.probe_state(inst.name)
            if st.last_probe_at is not None and now - st.last_probe_at < hc.check_interval_sec:
                continue
            try:
                ok, msg = self.compute.probe(inst.name, group.zone, hc)
            except SgrError as e:
                ok, msg = False, f"Probe error: {e}"
            in_grace = now - inst.created_at < group.initial_delay_sec
            prev, cur = self.runtime.mark_probe(
                inst.name,
                ok,
                now,
                healthy_threshold=hc.healthy_threshold,
                unhealthy_threshold=hc.unhealthy_threshold,
                count_failures=not in_grace,
                message=msg,
            )
            if cur is False and prev is not False:
                db.log_event("WARN", f"Instance became unhealthy: {msg}", group_name=group.name, instance=inst.name)
                health_alert(group.name, inst.name, False, msg)
            elif cur is True and prev is False:
                db.log_event("INFO", "Instance recovered", group_name=group.name, instance=inst.name)
                health_alert(group.name, inst.name, True, "Recovered")

    def _scale(self, group: GroupRow, now: float) -> None:
        n = group.target_size
        instances = db.list_instances(group.id)
        actions = {a.slot: a for a in self.runtime.list_actions(group.name)}

        # A resize supersedes creates that have nothing in flight.
        for slot, a in list(actions.items()):
            if a.kind == "create" and slot > n and not a.in_flight:
                self.runtime.drop_action(a)
                del actions[slot]
                db.log_event("INFO", f"Slot {slot}: pending create dropped after resize to {n}", group_name=group.name)

        occupied = {i.slot for i in instances}
        for slot in range(1, n + 1):
            if slot not in occupied and slot not in actions:
                actions[slot] = self._schedule(group, slot, "create", now)

        # Deletions that lost their action when the process restarted.
        for inst in instances:
            if inst.status == "deleting" and inst.slot not in actions:
                actions[inst.slot] = self._schedule(group, inst.slot, "delete", now, old_instance=inst.name)

        # Highest slots go first; their disks stay behind, unattached.
        excess = sorted((i for i in instances if i.slot > n), key=lambda i: (i.slot, i.id), reverse=True)
        for inst in excess:
            if inst.slot not in actions:
                actions[inst.slot] = self._schedule(group, inst.slot, "delete", now, old_instance=inst.name)

        by_slot: dict[int, list[Any]] = {}
        for inst in instances:
            if inst.slot <= n and inst.status == "running":
                by_slot.setdefault(inst.slot, []).append(inst)

        # Two instances left in one slot (restart mid-substitution):
        # keep the disk holder, or the newest one.
        for slot, insts in by_slot.items():
            if len(insts) < 2 or slot in actions:
                continue
            disk = db.get_disk(group.id, slot)
            holder = disk.attached_to if disk else None
            keep = holder if holder in {i.name for i in insts} else max(insts, key=lambda i: i.id).name
            extra = next(i for i in insts if i.name != keep)
            actions[slot] = self._schedule(group, slot, "delete", now, old_instance=extra.name)

        # One instance, but the slot disk never reached it.
        for slot, insts in by_slot.items():
            if len(insts) != 1 or slot in actions:
                continue
            disk = db.get_disk(group.id, slot)
            if disk is None or disk.attached_to != insts[0].name:
                db.log_event("WARN", f"Slot {slot}: instance is running without its disk; reattaching", group_name=group.name, instance=insts[0].name)
                actions[slot] = self._schedule(group, slot, "reattach", now, new_instance=insts[0].name)

    def _autoheal(self, group: GroupRow, now: float) -> None:
        busy = {a.slot for a in self.runtime.list_actions(group.name)}
        for inst in db.list_instances(group.id):
            if inst.status != "running" or inst.slot in busy or inst.slot > group.target_size:
                continue
            if inst.recreate_requested:
                self._schedule(group, inst.slot, "manual", now, old_instance=inst.name)
                busy.add(inst.slot)
                continue
            if not group.health_check:
                continue
            if now - inst.created_at < group.initial_delay_sec:
                continue
            st = self.runtime.probe_state(inst.name)
            if st.healthy is False:
                db.log_event(
                    "WARN",
                    f"Auto-healing: recreating instance after {st.failures} failed probes ({st.last_message})",
                    group_name=group.name,
                    instance=inst.name,
                )
                self._schedule(group, inst.slot, "heal", now, old_instance=inst.name)
                busy.add(inst.slot)

    def _update(self, group: GroupRow, now: float) -> None:
        declared = self._declared_template(group)
        instances = db.list_instances(group.id)
        actions = self.runtime.list_actions(group.name)
        busy = {a.slot for a in actions}
        surge_used = sum(1 for a in actions if a.kind == "substitute")
        unavailable_used = sum(1 for a in actions if a.kind == "recreate")
        per_slot = Counter(i.slot for i in instances)
        deferred = 0

        for inst in instances:
            if inst.status != "running" or inst.slot in busy or inst.slot > group.target_size or per_slot[inst.slot] > 1:
                continue
            restart_due = group.restart_requested_at is not None and inst.created_at < group.restart_requested_at
            outdated = inst.template_name != declared.name
            update_due = outdated and (group.update_type == "PROACTIVE" or group.update_target == declared.name)
            if not (restart_due or update_due):
                continue

            if restart_due:
                action = "REPLACE"
            else:
                action = required_action(db.get_template(inst.template_name), declared, group.minimal_action)
            if action == "NONE":
                db.set_instance_template(inst.name, declared.name)
                continue
            if action == "REFRESH":
                self._schedule(group, inst.slot, "refresh", now, old_instance=inst.name)
                busy.add(inst.slot)
                continue

            if group.replacement_method == "SUBSTITUTE":
                if surge_used >= group.max_surge:
                    deferred += 1
                    continue
                surge_used += 1
                self._schedule(group, inst.slot, "substitute", now, old_instance=inst.name)
            else:
                if unavailable_used >= group.max_unavailable:
                    deferred += 1
                    continue
                unavailable_used += 1
                self._schedule(group, inst.slot, "recreate", now, old_instance=inst.name)
            busy.add(inst.slot)

        if deferred:
            logger.debug(f"{group.name}: {deferred} replacement(s) deferred by the update budget")

    def _track_capacity(self, group: GroupRow, now: float) -> None:
        filled = {i.slot for i in db.list_instances(group.id) if i.status == "running"}
        for slot in range(1, group.target_size + 1):
            if slot in filled:
                if self.runtime.note_filled(group.name, slot):
                    db.log_event("INFO", f"Capacity restored in slot {slot}", group_name=group.name)
                continue
            since = self.runtime.note_unfilled(group.name, slot, now)
            if now - since >= settings.degraded_after_s and self.runtime.mark_degraded(group.name, slot):
                action = self.runtime.get_action(group.name, slot)
                detail = action.last_error if action and action.last_error else ""
                db.log_event(
                    "WARN",
                    f"Degraded capacity: slot {slot} unfilled for {now - since:.0f}s {detail}".rstrip(),
                    group_name=group.name,
                )
                capacity_alert(group.name, slot, now - since, detail)
        for slot in self.runtime.tracked_slots(group.name):
            if slot > group.target_size:
                self.runtime.note_filled(group.name, slot)

    # --- execution ---

    def _advance_safely(self, group: GroupRow, action: SlotAction, now: float) -> None:
        """Advance one slot; a failure only delays that slot."""
        try:
            self._advance(group, action, now)
        except SgrError as e:
            self._step_failed(group, action, e, now)
        except Exception as e:
            logger.exception(f"Unexpected failure in slot {action.slot} of {group.name}")
            self._step_failed(group, action, e, now)

    def _advance(self, group: GroupRow, action: SlotAction, now: float) -> None:
        while action.steps:
            if action.op is not None:
                op = self.compute.get_operation(action.op)
                if not op.done:
                    action.op = op
                    return
                action.op = None
                if op.failed and _TOLERATED.get(action.step) == op.error_code:
                    logger.info(f"{group.name} slot {action.slot}: {action.step} on {op.target} already done ({op.error_code})")
                elif op.failed:
                    raise error_from_code(
                        op.error_code,
                        op.target,
                        op.error or op.error_code or "unknown error",
                        instance=action.new_instance or "",
                    )
                self._complete_step(group, action, now)
                continue

            if action.retry_at is not None and now < action.retry_at:
                return
            action.retry_at = None

            op = self._issue_step(group, action, now)
            if op is _WAIT:
                return
            if op is None:
                self._complete_step(group, action, now)
                continue
            action.op = op
            if not op.done:
                return

        self.runtime.drop_action(action)
        self._finish(group, action)

    def _issue_step(self, group: GroupRow, action: SlotAction, now: float) -> Operation | None | object:
        step = action.step
        disk = db.get_disk(group.id, action.slot)

        if step == CREATE_DISK:
            name = disk.name if disk else self._disk_name(group, action.slot)
            if self.compute.disk_users(name, group.zone) is not None:
                return None
            if disk is not None:
                # Keep the recorded identity; only the zone lost it.
                db.log_event("WARN", f"Disk {disk.name} of slot {action.slot} is missing from the zone; recreating it", group_name=group.name)
                return self.compute.create_disk(disk.name, disk.size_gb, disk.disk_type, group.zone)
            tmpl = self._declared_template(group)
            action.template = tmpl.name
            return self.compute.create_disk(name, tmpl.data_disk_size_gb, tmpl.data_disk_type, group.zone)

        if step == CREATE_INSTANCE:
            tmpl = self._declared_template(group)
            action.template = tmpl.name
            return self.compute.create_instance(action.new_instance, tmpl, group.zone, group.name)

        if step == DETACH_DISK:
            if disk is None or disk.attached_to is None or disk.attached_to != action.old_instance:
                return None
            return self.compute.detach_disk(disk.attached_to, disk.device_name, group.zone)

        if step == ATTACH_DISK:
            if disk is None:
                raise OperationFailedError("attach disk", f"slot {action.slot} has no disk")
            if disk.attached_to == action.new_instance:
                return None
            if disk.attached_to is not None:
                raise DiskAttachConflictError(disk.name, disk.attached_to, action.new_instance or "")
            return self.compute.attach_disk(action.new_instance, disk.name, disk.device_name, group.zone)

        if step == AWAIT_GATE:
            return None if self._gate_open(group, action, now) else _WAIT

        if step == DELETE_INSTANCE:
            inst = db.get_instance(action.old_instance) if action.old_instance else None
            if inst is None:
                return None
            db.set_instance_status(inst.name, "deleting")
            self.runtime.remove_member(group.name, inst.name)
            return self.compute.delete_instance(inst.name, group.zone)

        if step == REFRESH:
            tmpl = self._declared_template(group)
            action.template = tmpl.name
            return self.compute.refresh_instance(action.old_instance, tmpl, group.zone)

        raise OperationFailedError(action.kind, f"unknown step '{step}'")

    def _gate_open(self, group: GroupRow, action: SlotAction, now: float) -> bool:
        """New instance is healthy, or its initial delay is over."""
        inst = db.get_instance(action.new_instance) if action.new_instance else None
        if inst is None:
            return False
        if now - inst.created_at >= group.initial_delay_sec:
            return True
        return group.health_check is not None and self.runtime.is_healthy(inst.name)

    def _complete_step(self, group: GroupRow, action: SlotAction, now: float) -> None:
        step = action.steps.pop(0)
        action.done_steps.append(step)
        action.attempts = 0
        action.last_error = None

        if step == CREATE_DISK:
            if db.get_disk(group.id, action.slot) is None:
                tmpl = db.get_template(action.template or group.template_name) or self._declared_template(group)
                disk = db.insert_disk(
                    group.id,
                    action.slot,
                    self._disk_name(group, action.slot),
                    group.stateful_device,
                    tmpl.data_disk_size_gb,
                    tmpl.data_disk_type,
                )
                db.log_event("INFO", f"Created disk {disk.name} for slot {action.slot}", group_name=group.name)

        elif step == CREATE_INSTANCE:
            name = action.new_instance
            if db.get_instance(name) is None:
                db.insert_instance(group.id, name, action.slot, action.template, "running", now)
            self.runtime.add_member(
                BackendMember(
                    group=group.name,
                    instance=name,
                    slot=action.slot,
                    address=self.compute.instance_address(name, group.zone),
                )
            )
            db.log_event("INFO", f"Instance created in slot {action.slot} from {action.template}", group_name=group.name, instance=name)

        elif step == DETACH_DISK:
            disk = db.get_disk(group.id, action.slot)
            if disk and disk.attached_to and disk.attached_to == action.old_instance:
                db.set_disk_attachment(disk.name, None)

        elif step == ATTACH_DISK:
            disk = db.get_disk(group.id, action.slot)
            if disk:
                db.set_disk_attachment(disk.name, action.new_instance)

        elif step == DELETE_INSTANCE:
            if action.old_instance:
                db.delete_instance(action.old_instance)
                self.runtime.remove_member(group.name, action.old_instance)
                self.runtime.forget_instance(action.old_instance)

        elif step == REFRESH:
            db.set_instance_template(action.old_instance, action.template)

    def _step_failed(self, group: GroupRow, action: SlotAction, err: Exception, now: float) -> None:
        action.op = None
        action.attempts += 1
        delay = min(settings.retry_max_s, settings.retry_base_s * (2 ** (action.attempts - 1)))
        action.retry_at = now + delay
        action.last_error = str(err)
        db.log_event(
            "WARN",
            f"Slot {action.slot}: {action.kind} step {action.step} failed ({err}); attempt {action.attempts}, retrying in {delay:.0f}s",
            group_name=group.name,
            instance=action.new_instance or action.old_instance,
        )

    def _finish(self, group: GroupRow, action: SlotAction) -> None:
        if action.kind == "delete" and action.slot > group.target_size:
            disk = db.get_disk(group.id, action.slot)
            if disk:
                db.log_event(
                    "INFO",
                    f"Slot {action.slot} removed; disk {disk.name} retained unattached (delete rule NEVER)",
                    group_name=group.name,
                    instance=action.old_instance,
                )
                return
        db.log_event("INFO", f"Slot {action.slot}: {action.kind} complete", group_name=group.name, instance=action.new_instance or action.old_instance)

    # --- views ---

    def describe(self, name: str) -> dict[str, Any]:
        group = db.get_group(name)
        if group is None:
            raise GroupNotFoundError(name)
        instances = []
        for inst in db.list_instances(group.id):
            st = self.runtime.probe_state(inst.name)
            instances.append(
                {
                    "name": inst.name,
                    "slot": inst.slot,
                    "template": inst.template_name,
                    "status": inst.status,
                    "healthy": st.healthy,
                    "created_at": inst.created_at,
                }
            )
        actions = [
            {
                "slot": a.slot,
                "kind": a.kind,
                "step": a.step,
                "done_steps": list(a.done_steps),
                "started_at": a.started_at,
                "old_instance": a.old_instance,
                "new_instance": a.new_instance,
                "attempts": a.attempts,
                "retry_at": a.retry_at,
                "last_error": a.last_error,
            }
            for a in self.runtime.list_actions(group.name)
        ]
        running = sum(1 for i in instances if i["status"] == "running")
        return {
            "name": group.name,
            "zone": group.zone,
            "target_size": group.target_size,
            "template": group.template_name,
            "update_policy": {
                "type": group.update_type,
                "minimal_action": group.minimal_action,
                "max_surge": group.max_surge,
                "max_unavailable": group.max_unavailable,
                "replacement_method": group.replacement_method,
            },
            "stateful_device": group.stateful_device,
            "auto_healing": {"health_check": group.health_check, "initial_delay_sec": group.initial_delay_sec},
            "instances": instances,
            "actions": actions,
            "degraded_slots": self.runtime.degraded_slots(group.name),
            "stable": not actions and running == group.target_size,
        }
