"""The single stateful deployment this service manages by default."""

from __future__ import annotations

import logging
import time
from typing import Callable

from . import templates
from .compute import ComputeBackend, InMemoryCompute
from .db import GroupRow
from .settings import Settings

logger = logging.getLogger(__name__)

HEALTH_CHECK_NAME = "tcp-health-check"
NETWORK_TAGS = ["allow-health-check", "allow-internal-lb"]


def make_compute(cfg: Settings, clock: Callable[[], float] = time.time) -> ComputeBackend:
    if cfg.backend == "gce":
        from .gce import GceCompute

        return GceCompute(project=cfg.project, zone=cfg.zone)
    if cfg.backend != "memory":
        raise ValueError(f"Unknown SGR_BACKEND '{cfg.backend}' (expected memory or gce)")
    return InMemoryCompute(clock=clock)


def bootstrap(cfg: Settings) -> GroupRow:
    """Declare the default template, health check and group.

    Safe to run on every start: an unchanged template resolves to the same
    content-hashed name and the group keeps its existing instances.
    """
    tmpl = templates.declare_template(
        base_name=cfg.base_instance_name,
        image=cfg.source_image,
        machine_type=cfg.machine_type,
        service_account=cfg.service_account,
        tags=NETWORK_TAGS,
        data_device_name="data-disk",
        data_disk_size_gb=cfg.data_disk_size_gb,
    )
    hc = templates.declare_health_check(HEALTH_CHECK_NAME, protocol="TCP", port=cfg.health_check_port)
    group = templates.declare_group(
        name=f"{cfg.base_instance_name}-group",
        template=tmpl.name,
        target_size=cfg.instance_count,
        zone=cfg.zone,
        base_instance_name=cfg.base_instance_name,
        update_type="OPPORTUNISTIC",
        minimal_action="NONE",
        max_surge=3,
        max_unavailable=0,
        replacement_method="SUBSTITUTE",
        stateful_device="data-disk",
        health_check=hc.name,
        initial_delay_sec=300,
    )
    logger.info(f"Bootstrapped {group.name}: {group.target_size} x {tmpl.name} in {group.zone}")
    return group
