from __future__ import annotations

from dataclasses import dataclass, field
from threading import Lock
from typing import Any


@dataclass
class ProbeState:
    """Consecutive probe results for one instance.

    `healthy` stays None until a threshold is first reached.
    """

    successes: int = 0
    failures: int = 0
    healthy: bool | None = None
    last_probe_at: float | None = None
    last_message: str = ""


@dataclass
class SlotAction:
    """An ordered plan of compute steps for one slot.

    Only one action exists per slot; `op` is the outstanding compute
    operation of the current step (None when the step has not been issued
    yet or is waiting for `retry_at`).
    """

    group: str
    slot: int
    kind: str  # create|delete|heal|manual|recreate|substitute|refresh|reattach
    steps: list[str]
    old_instance: str | None = None
    new_instance: str | None = None
    template: str | None = None
    op: Any = None
    attempts: int = 0
    retry_at: float | None = None
    last_error: str | None = None
    started_at: float = 0.0
    done_steps: list[str] = field(default_factory=list)

    @property
    def step(self) -> str | None:
        return self.steps[0] if self.steps else None

    @property
    def in_flight(self) -> bool:
        return self.op is not None


@dataclass(frozen=True)
class BackendMember:
    group: str
    instance: str
    slot: int
    address: str


class RuntimeState:
    """In-memory state for reconciliation and routing."""

    def __init__(self) -> None:
        self.lock = Lock()
        self.probes: dict[str, ProbeState] = {}  # instance -> probe streaks
        self.actions: dict[tuple[str, int], SlotAction] = {}  # (group, slot) -> action
        self.unfilled_since: dict[tuple[str, int], float] = {}  # (group, slot) -> first seen unfilled
        self.degraded: set[tuple[str, int]] = set()
        self.members: dict[str, dict[str, BackendMember]] = {}  # group -> instance -> member
        self.rr_index: dict[str, int] = {}  # key -> idx

    # --- health ---

    def mark_probe(
        self,
        instance: str,
        ok: bool,
        now: float,
        healthy_threshold: int,
        unhealthy_threshold: int,
        count_failures: bool = True,
        message: str = "",
    ) -> tuple[bool | None, bool | None]:
        """Record one probe result.

        Failures are ignored for the unhealthy streak while `count_failures`
        is False (grace period). Returns (previous_healthy, current_healthy).
        """
        with self.lock:
            st = self.probes.setdefault(instance, ProbeState())
            prev = st.healthy
            st.last_probe_at = now
            st.last_message = message
            if ok:
                st.successes += 1
                st.failures = 0
                if st.successes >= max(1, healthy_threshold):
                    st.healthy = True
            elif count_failures:
                st.failures += 1
                st.successes = 0
                if st.failures >= max(1, unhealthy_threshold):
                    st.healthy = False
            else:
                st.successes = 0
            return prev, st.healthy

    def probe_state(self, instance: str) -> ProbeState:
        with self.lock:
            return self.probes.setdefault(instance, ProbeState())

    def forget_instance(self, instance: str) -> None:
        with self.lock:
            self.probes.pop(instance, None)

    # --- slot actions ---

    def get_action(self, group: str, slot: int) -> SlotAction | None:
        with self.lock:
            return self.actions.get((group, slot))

    def put_action(self, action: SlotAction) -> None:
        with self.lock:
            key = (action.group, action.slot)
            if key in self.actions and self.actions[key] is not action:
                raise RuntimeError(f"slot {action.slot} of '{action.group}' already has an action in flight")
            self.actions[key] = action

    def drop_action(self, action: SlotAction) -> None:
        with self.lock:
            self.actions.pop((action.group, action.slot), None)

    def list_actions(self, group: str) -> list[SlotAction]:
        with self.lock:
            return sorted((a for (g, _), a in self.actions.items() if g == group), key=lambda a: a.slot)

    # --- capacity ---

    def note_unfilled(self, group: str, slot: int, now: float) -> float:
        """Return since when the slot has been unfilled."""
        with self.lock:
            return self.unfilled_since.setdefault((group, slot), now)

    def note_filled(self, group: str, slot: int) -> bool:
        """Forget the slot's unfilled time; True if it had been degraded."""
        with self.lock:
            self.unfilled_since.pop((group, slot), None)
            if (group, slot) in self.degraded:
                self.degraded.discard((group, slot))
                return True
            return False

    def mark_degraded(self, group: str, slot: int) -> bool:
        """True the first time a slot is marked degraded."""
        with self.lock:
            if (group, slot) in self.degraded:
                return False
            self.degraded.add((group, slot))
            return True

    def degraded_slots(self, group: str) -> list[int]:
        with self.lock:
            return sorted(s for g, s in self.degraded if g == group)

    def tracked_slots(self, group: str) -> list[int]:
        with self.lock:
            return sorted(s for g, s in self.unfilled_since if g == group)

    # --- backend service membership ---

    def add_member(self, member: BackendMember) -> None:
        with self.lock:
            self.members.setdefault(member.group, {})[member.instance] = member

    def remove_member(self, group: str, instance: str) -> None:
        with self.lock:
            self.members.get(group, {}).pop(instance, None)

    def get_members(self, group: str) -> list[BackendMember]:
        with self.lock:
            return sorted(self.members.get(group, {}).values(), key=lambda m: (m.slot, m.instance))

    def is_healthy(self, instance: str) -> bool:
        with self.lock:
            st = self.probes.get(instance)
            return bool(st and st.healthy)

    def next_index(self, key: str, n: int) -> int:
        with self.lock:
            if n <= 0:
                return 0
            i = self.rr_index.get(key, 0) % n
            self.rr_index[key] = (i + 1) % n
            return i
