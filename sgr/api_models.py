from __future__ import annotations

from pydantic import BaseModel, Field


class TemplateRequest(BaseModel):
    base_name: str = Field(..., description="Template base name (dns-safe); a content hash is appended")
    image: str = Field(..., description="Boot image, e.g. projects/debian-cloud/global/images/family/debian-12")
    machine_type: str = Field("e2-medium")
    service_account: str = ""
    network: str = "default"
    subnetwork: str | None = None
    startup_script: str = ""
    tags: list[str] = Field(default_factory=list)
    boot_disk_size_gb: int = Field(20, ge=10, le=65536)
    boot_disk_type: str = "pd-balanced"
    data_device_name: str = Field("data-disk", description="Device name of the durable disk")
    data_disk_size_gb: int = Field(50, ge=1, le=65536)
    data_disk_type: str = "pd-ssd"
    apply_to: str | None = Field(None, description="Make this the declared version of the named group")


class ResizeRequest(BaseModel):
    target_size: int = Field(..., ge=0, le=1000)


class SetTemplateRequest(BaseModel):
    template: str


class RecreateRequest(BaseModel):
    instances: list[str] = Field(..., min_length=1)
