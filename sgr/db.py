from __future__ import annotations

import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable

from .settings import settings


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (a bind mount created before the
    file existed), the DB file is placed inside it.
    """

    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "sgr.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def init_db() -> None:
    """Create tables if they do not exist."""
    with connect() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS templates (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              name TEXT NOT NULL UNIQUE,
              fingerprint TEXT NOT NULL UNIQUE,
              image TEXT NOT NULL,
              machine_type TEXT NOT NULL,
              boot_disk_size_gb INTEGER NOT NULL,
              boot_disk_type TEXT NOT NULL,
              data_device_name TEXT NOT NULL,
              data_disk_size_gb INTEGER NOT NULL,
              data_disk_type TEXT NOT NULL,
              network TEXT NOT NULL,
              subnetwork TEXT,
              startup_script TEXT NOT NULL,
              service_account TEXT NOT NULL,
              tags TEXT NOT NULL, -- comma separated
              created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS health_checks (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              name TEXT NOT NULL UNIQUE,
              protocol TEXT NOT NULL, -- TCP|HTTP
              port INTEGER NOT NULL,
              request_path TEXT NOT NULL,
              check_interval_sec INTEGER NOT NULL,
              timeout_sec INTEGER NOT NULL,
              healthy_threshold INTEGER NOT NULL,
              unhealthy_threshold INTEGER NOT NULL,
              created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS instance_groups (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              name TEXT NOT NULL UNIQUE,
              base_instance_name TEXT NOT NULL,
              zone TEXT NOT NULL,
              target_size INTEGER NOT NULL,
              template_name TEXT NOT NULL,
              update_type TEXT NOT NULL, -- PROACTIVE|OPPORTUNISTIC
              minimal_action TEXT NOT NULL, -- NONE|REFRESH|REPLACE
              max_surge INTEGER NOT NULL,
              max_unavailable INTEGER NOT NULL,
              replacement_method TEXT NOT NULL, -- RECREATE|SUBSTITUTE
              stateful_device TEXT NOT NULL,
              health_check TEXT,
              initial_delay_sec INTEGER NOT NULL,
              update_target TEXT, -- template a rolling update was triggered for
              restart_requested_at REAL,
              created_at TEXT NOT NULL,
              FOREIGN KEY(template_name) REFERENCES templates(name)
            );

            CREATE TABLE IF NOT EXISTS instances (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              group_id INTEGER NOT NULL,
              name TEXT NOT NULL UNIQUE,
              slot INTEGER NOT NULL,
              template_name TEXT NOT NULL,
              status TEXT NOT NULL, -- creating|running|deleting
              recreate_requested INTEGER NOT NULL DEFAULT 0,
              created_at REAL NOT NULL,
              FOREIGN KEY(group_id) REFERENCES instance_groups(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS disks (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              group_id INTEGER NOT NULL,
              slot INTEGER NOT NULL,
              name TEXT NOT NULL UNIQUE,
              device_name TEXT NOT NULL,
              size_gb INTEGER NOT NULL,
              disk_type TEXT NOT NULL,
              attached_to TEXT,
              created_at TEXT NOT NULL,
              UNIQUE(group_id, slot),
              FOREIGN KEY(group_id) REFERENCES instance_groups(id)
            );

            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              group_name TEXT,
              instance TEXT,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_instances_group_id ON instances(group_id);
            """
        )


def log_event(level: str, message: str, group_name: str | None = None, instance: str | None = None) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, group_name, instance, message) VALUES (?, ?, ?, ?, ?)",
            (utc_now(), level.upper(), group_name, instance, message),
        )


@dataclass(frozen=True)
class TemplateRow:
    id: int
    name: str
    fingerprint: str
    image: str
    machine_type: str
    boot_disk_size_gb: int
    boot_disk_type: str
    data_device_name: str
    data_disk_size_gb: int
    data_disk_type: str
    network: str
    subnetwork: str | None
    startup_script: str
    service_account: str
    tags: str
    created_at: str

    @property
    def tag_list(self) -> list[str]:
        return [t for t in self.tags.split(",") if t]


@dataclass(frozen=True)
class HealthCheckRow:
    id: int
    name: str
    protocol: str
    port: int
    request_path: str
    check_interval_sec: int
    timeout_sec: int
    healthy_threshold: int
    unhealthy_threshold: int
    created_at: str


@dataclass(frozen=True)
class GroupRow:
    id: int
    name: str
    base_instance_name: str
    zone: str
    target_size: int
    template_name: str
    update_type: str
    minimal_action: str
    max_surge: int
    max_unavailable: int
    replacement_method: str
    stateful_device: str
    health_check: str | None
    initial_delay_sec: int
    update_target: str | None
    restart_requested_at: float | None
    created_at: str


@dataclass(frozen=True)
class InstanceRow:
    id: int
    group_id: int
    name: str
    slot: int
    template_name: str
    status: str
    recreate_requested: int
    created_at: float


@dataclass(frozen=True)
class DiskRow:
    id: int
    group_id: int
    slot: int
    name: str
    device_name: str
    size_gb: int
    disk_type: str
    attached_to: str | None
    created_at: str


def _rows_to_dataclass(rows: Iterable[sqlite3.Row], cls: Any) -> list[Any]:
    out: list[Any] = []
    for r in rows:
        out.append(cls(**dict(r)))
    return out


# --- templates ---


def insert_template(name: str, fingerprint: str, fields: dict[str, Any]) -> TemplateRow:
    """Store a template. Existing rows are never updated."""
    cols = ["name", "fingerprint", *fields.keys(), "created_at"]
    values = [name, fingerprint, *fields.values(), utc_now()]
    with connect() as conn:
        conn.execute(
            f"INSERT OR IGNORE INTO templates ({', '.join(cols)}) VALUES ({', '.join('?' for _ in cols)})",
            values,
        )
        row = conn.execute("SELECT * FROM templates WHERE fingerprint=?", (fingerprint,)).fetchone()
        return TemplateRow(**dict(row))


def get_template(name: str) -> TemplateRow | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM templates WHERE name=?", (name,)).fetchone()
        return TemplateRow(**dict(row)) if row else None


def list_templates() -> list[TemplateRow]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM templates ORDER BY id").fetchall()
        return _rows_to_dataclass(rows, TemplateRow)


def referenced_templates() -> set[str]:
    with connect() as conn:
        rows = conn.execute(
            """
            SELECT template_name AS name FROM instance_groups
            UNION SELECT update_target FROM instance_groups WHERE update_target IS NOT NULL
            UNION SELECT template_name FROM instances
            """
        ).fetchall()
        return {r["name"] for r in rows}


def delete_template(name: str) -> None:
    if name in referenced_templates():
        raise ValueError(f"Template '{name}' is still referenced and cannot be deleted.")
    with connect() as conn:
        conn.execute("DELETE FROM templates WHERE name=?", (name,))


# --- health checks ---


def upsert_health_check(
    name: str,
    protocol: str,
    port: int,
    request_path: str,
    check_interval_sec: int,
    timeout_sec: int,
    healthy_threshold: int,
    unhealthy_threshold: int,
) -> HealthCheckRow:
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO health_checks (name, protocol, port, request_path, check_interval_sec, timeout_sec,
                                       healthy_threshold, unhealthy_threshold, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(name) DO UPDATE SET
              protocol=excluded.protocol,
              port=excluded.port,
              request_path=excluded.request_path,
              check_interval_sec=excluded.check_interval_sec,
              timeout_sec=excluded.timeout_sec,
              healthy_threshold=excluded.healthy_threshold,
              unhealthy_threshold=excluded.unhealthy_threshold
            """,
            (
                name,
                protocol,
                port,
                request_path,
                check_interval_sec,
                timeout_sec,
                healthy_threshold,
                unhealthy_threshold,
                utc_now(),
            ),
        )
        row = conn.execute("SELECT * FROM health_checks WHERE name=?", (name,)).fetchone()
        return HealthCheckRow(**dict(row))


def get_health_check(name: str) -> HealthCheckRow | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM health_checks WHERE name=?", (name,)).fetchone()
        return HealthCheckRow(**dict(row)) if row else None


# --- groups ---


def upsert_group(
    name: str,
    base_instance_name: str,
    zone: str,
    target_size: int,
    template_name: str,
    update_type: str,
    minimal_action: str,
    max_surge: int,
    max_unavailable: int,
    replacement_method: str,
    stateful_device: str,
    health_check: str | None,
    initial_delay_sec: int,
) -> GroupRow:
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO instance_groups (name, base_instance_name, zone, target_size, template_name, update_type,
                                minimal_action, max_surge, max_unavailable, replacement_method,
                                stateful_device, health_check, initial_delay_sec, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(name) DO UPDATE SET
              target_size=excluded.target_size,
              template_name=excluded.template_name,
              update_type=excluded.update_type,
              minimal_action=excluded.minimal_action,
              max_surge=excluded.max_surge,
              max_unavailable=excluded.max_unavailable,
              replacement_method=excluded.replacement_method,
              health_check=excluded.health_check,
              initial_delay_sec=excluded.initial_delay_sec
            """,
            (
                name,
                base_instance_name,
                zone,
                target_size,
                template_name,
                update_type,
                minimal_action,
                max_surge,
                max_unavailable,
                replacement_method,
                stateful_device,
                health_check,
                initial_delay_sec,
                utc_now(),
            ),
        )
        row = conn.execute("SELECT * FROM instance_groups WHERE name=?", (name,)).fetchone()
        return GroupRow(**dict(row))


def get_group(name: str) -> GroupRow | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM instance_groups WHERE name=?", (name,)).fetchone()
        return GroupRow(**dict(row)) if row else None


def list_groups() -> list[GroupRow]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM instance_groups ORDER BY name").fetchall()
        return _rows_to_dataclass(rows, GroupRow)


def set_group_size(group_id: int, target_size: int) -> None:
    with connect() as conn:
        conn.execute("UPDATE instance_groups SET target_size=? WHERE id=?", (target_size, group_id))


def set_group_template(group_id: int, template_name: str) -> None:
    with connect() as conn:
        conn.execute("UPDATE instance_groups SET template_name=? WHERE id=?", (template_name, group_id))


def set_update_target(group_id: int, template_name: str | None) -> None:
    with connect() as conn:
        conn.execute("UPDATE instance_groups SET update_target=? WHERE id=?", (template_name, group_id))


def set_restart_requested_at(group_id: int, ts: float | None) -> None:
    with connect() as conn:
        conn.execute("UPDATE instance_groups SET restart_requested_at=? WHERE id=?", (ts, group_id))


# --- instances ---


def list_instances(group_id: int) -> list[InstanceRow]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM instances WHERE group_id=? ORDER BY slot, id", (group_id,)).fetchall()
        return _rows_to_dataclass(rows, InstanceRow)


def get_instance(name: str) -> InstanceRow | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM instances WHERE name=?", (name,)).fetchone()
        return InstanceRow(**dict(row)) if row else None


def insert_instance(group_id: int, name: str, slot: int, template_name: str, status: str, created_at: float) -> InstanceRow:
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO instances (group_id, name, slot, template_name, status, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (group_id, name, slot, template_name, status, created_at),
        )
        row = conn.execute("SELECT * FROM instances WHERE name=?", (name,)).fetchone()
        return InstanceRow(**dict(row))


def set_instance_status(name: str, status: str) -> None:
    with connect() as conn:
        conn.execute("UPDATE instances SET status=? WHERE name=?", (status, name))


def set_instance_template(name: str, template_name: str) -> None:
    with connect() as conn:
        conn.execute("UPDATE instances SET template_name=? WHERE name=?", (template_name, name))


def request_recreate(name: str) -> None:
    with connect() as conn:
        conn.execute("UPDATE instances SET recreate_requested=1 WHERE name=?", (name,))


def delete_instance(name: str) -> None:
    with connect() as conn:
        conn.execute("DELETE FROM instances WHERE name=?", (name,))


# --- disks ---


def get_disk(group_id: int, slot: int) -> DiskRow | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM disks WHERE group_id=? AND slot=?", (group_id, slot)).fetchone()
        return DiskRow(**dict(row)) if row else None


def insert_disk(group_id: int, slot: int, name: str, device_name: str, size_gb: int, disk_type: str) -> DiskRow:
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO disks (group_id, slot, name, device_name, size_gb, disk_type, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (group_id, slot, name, device_name, size_gb, disk_type, utc_now()),
        )
        row = conn.execute("SELECT * FROM disks WHERE name=?", (name,)).fetchone()
        return DiskRow(**dict(row))


def list_disks(group_id: int) -> list[DiskRow]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM disks WHERE group_id=? ORDER BY slot", (group_id,)).fetchall()
        return _rows_to_dataclass(rows, DiskRow)


def set_disk_attachment(name: str, instance: str | None) -> None:
    with connect() as conn:
        conn.execute("UPDATE disks SET attached_to=? WHERE name=?", (instance, name))


def latest_events(limit: int = 100) -> list[dict[str, Any]]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]
