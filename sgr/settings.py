from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("SGR_DB_PATH", "sgr.db")
    poll_interval_s: int = _env_int("SGR_POLL_INTERVAL_S", 5)
    backend: str = os.getenv("SGR_BACKEND", "memory")  # memory|gce

    # Deployment surface
    project: str = os.getenv("SGR_PROJECT", "")
    region: str = os.getenv("SGR_REGION", "europe-west1")
    zone: str = os.getenv("SGR_ZONE", "europe-west1-b")
    base_instance_name: str = os.getenv("SGR_BASE_INSTANCE_NAME", "stateful")
    machine_type: str = os.getenv("SGR_MACHINE_TYPE", "e2-medium")
    instance_count: int = _env_int("SGR_INSTANCE_COUNT", 3)
    service_account: str = os.getenv("SGR_SERVICE_ACCOUNT", "")
    dns_domain: str = os.getenv("SGR_DNS_DOMAIN", "internal.example.")
    source_image: str = os.getenv("SGR_SOURCE_IMAGE", "projects/debian-cloud/global/images/family/debian-12")
    data_disk_size_gb: int = _env_int("SGR_DATA_DISK_SIZE_GB", 50)
    lb_ip_address: str = os.getenv("SGR_LB_IP_ADDRESS", "10.132.0.100")
    health_check_port: int = _env_int("SGR_HEALTH_CHECK_PORT", 22)

    # Retry / capacity signalling
    retry_base_s: float = _env_float("SGR_RETRY_BASE_S", 5.0)
    retry_max_s: float = _env_float("SGR_RETRY_MAX_S", 300.0)
    degraded_after_s: float = _env_float("SGR_DEGRADED_AFTER_S", 600.0)

    # API
    admin_user: str = os.getenv("SGR_ADMIN_USER", "admin")
    admin_password: str = os.getenv("SGR_ADMIN_PASSWORD", "change-me")

    # Email alerting (optional)
    enable_email: bool = _env_bool("SGR_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("SGR_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("SGR_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("SGR_SMTP_USER")
    smtp_password: str | None = os.getenv("SGR_SMTP_PASSWORD")
    email_from: str | None = os.getenv("SGR_EMAIL_FROM")
    email_to: str | None = os.getenv("SGR_EMAIL_TO")


settings = Settings()
