"""Compute Engine backend.

Talks to the compute v1 API through googleapiclient with Application
Default Credentials. Mutating calls return the zone operation and never
block; the reconciler polls them with get_operation().
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable

import google.auth
from google.auth.exceptions import DefaultCredentialsError
from googleapiclient import discovery
from googleapiclient.errors import HttpError

from .compute import ComputeBackend, Operation
from .db import TemplateRow
from .errors import OperationFailedError, PermissionDeniedError

logger = logging.getLogger(__name__)

GROUP_LABEL = "sgr-group"
TEMPLATE_METADATA_KEY = "sgr-template"
SCOPES = ["https://www.googleapis.com/auth/cloud-platform"]

# googleapis error reasons -> error codes understood by errors.error_from_code
_REASONS = {
    "quotaExceeded": "QUOTA_EXCEEDED",
    "rateLimitExceeded": "QUOTA_EXCEEDED",
    "forbidden": "PERMISSION_DENIED",
    "insufficientPermissions": "PERMISSION_DENIED",
    "resourceInUseByAnotherResource": "RESOURCE_IN_USE_BY_ANOTHER_RESOURCE",
    "alreadyExists": "ALREADY_EXISTS",
    "notFound": "NOT_FOUND",
    "invalid": "INVALID_TEMPLATE",
}


def build_client(project: str = ""):
    """Return (compute client, project) using Application Default Credentials."""
    try:
        credentials, default_project = google.auth.default(scopes=SCOPES)
    except DefaultCredentialsError as e:
        raise PermissionDeniedError("credentials", "run 'gcloud auth application-default login'") from e
    compute = discovery.build("compute", "v1", credentials=credentials, cache_discovery=False)
    return compute, project or default_project


def _http_error_code(e: HttpError) -> tuple[str, str]:
    try:
        payload = json.loads(e.content.decode("utf-8"))
        err = payload.get("error", {})
        detail = (err.get("errors") or [{}])[0]
        reason = detail.get("reason", "")
        message = err.get("message") or detail.get("message") or str(e)
    except (ValueError, AttributeError):
        reason, message = "", str(e)
    code = _REASONS.get(reason)
    if code is None:
        code = {403: "PERMISSION_DENIED", 404: "NOT_FOUND", 409: "ALREADY_EXISTS"}.get(e.resp.status, f"HTTP_{e.resp.status}")
    return code, message


class GceCompute(ComputeBackend):
    def __init__(self, project: str = "", zone: str = "", compute: Any = None):
        if compute is None:
            compute, project = build_client(project)
        if not project:
            raise OperationFailedError("configure compute", "no project set (SGR_PROJECT)")
        self.compute = compute
        self.project = project
        self.zone = zone
        # Operation name -> follow-up call issued when that operation finishes.
        self._then: dict[str, Callable[[], dict]] = {}
        self._zones: dict[str, str] = {}  # operation name -> zone

    # --- helpers ---

    def _submit(self, kind: str, target: str, zone: str, call: Callable[[], dict]) -> Operation:
        try:
            raw = call()
        except HttpError as e:
            code, message = _http_error_code(e)
            logger.warning(f"{kind} {target} rejected: {code} {message}")
            return Operation(name=f"rejected-{kind}-{target}", kind=kind, target=target, status="DONE", error_code=code, error=message)
        op = self._to_operation(raw, kind, target)
        self._zones[op.name] = zone
        return op

    def _to_operation(self, raw: dict, kind: str, target: str) -> Operation:
        op = Operation(name=raw["name"], kind=kind, target=target, status=raw.get("status", "PENDING"))
        errors = (raw.get("error") or {}).get("errors") or []
        if errors:
            op.error_code = errors[0].get("code", "UNKNOWN")
            op.error = errors[0].get("message", "")
        return op

    def _zone_url(self, zone: str) -> str:
        return f"projects/{self.project}/zones/{zone}"

    def instance_body(self, name: str, template: TemplateRow, zone: str, group: str) -> dict:
        nic: dict[str, Any] = {"network": f"global/networks/{template.network}"}
        if template.subnetwork:
            nic["subnetwork"] = template.subnetwork
        body: dict[str, Any] = {
            "name": name,
            "machineType": f"zones/{zone}/machineTypes/{template.machine_type}",
            "labels": {GROUP_LABEL: group},
            "disks": [
                {
                    "boot": True,
                    "autoDelete": True,
                    "initializeParams": {
                        "sourceImage": template.image,
                        "diskSizeGb": str(template.boot_disk_size_gb),
                        "diskType": f"zones/{zone}/diskTypes/{template.boot_disk_type}",
                    },
                }
            ],
            "networkInterfaces": [nic],
            "metadata": {"items": self._metadata_items(template)},
            "tags": {"items": template.tag_list},
        }
        if template.service_account:
            body["serviceAccounts"] = [{"email": template.service_account, "scopes": SCOPES}]
        return body

    def _metadata_items(self, template: TemplateRow) -> list[dict]:
        items = [{"key": TEMPLATE_METADATA_KEY, "value": template.name}]
        if template.startup_script:
            items.append({"key": "startup-script", "value": template.startup_script})
        return items

    # --- ComputeBackend ---

    def create_instance(self, name: str, template: TemplateRow, zone: str, group: str) -> Operation:
        body = self.instance_body(name, template, zone, group)
        return self._submit(
            "create_instance",
            name,
            zone,
            lambda: self.compute.instances().insert(project=self.project, zone=zone, body=body).execute(),
        )

    def delete_instance(self, name: str, zone: str) -> Operation:
        return self._submit(
            "delete_instance",
            name,
            zone,
            lambda: self.compute.instances().delete(project=self.project, zone=zone, instance=name).execute(),
        )

    def refresh_instance(self, name: str, template: TemplateRow, zone: str) -> Operation:
        """setMetadata, then setTags once the metadata operation is done."""
        instances = self.compute.instances()

        def set_metadata() -> dict:
            current = instances.get(project=self.project, zone=zone, instance=name).execute()
            body = {"fingerprint": current["metadata"].get("fingerprint"), "items": self._metadata_items(template)}
            return instances.setMetadata(project=self.project, zone=zone, instance=name, body=body).execute()

        def set_tags() -> dict:
            current = instances.get(project=self.project, zone=zone, instance=name).execute()
            body = {"fingerprint": current["tags"].get("fingerprint"), "items": template.tag_list}
            return instances.setTags(project=self.project, zone=zone, instance=name, body=body).execute()

        op = self._submit("refresh_instance", name, zone, set_metadata)
        if not op.failed:
            self._then[op.name] = set_tags
        return op

    def create_disk(self, name: str, size_gb: int, disk_type: str, zone: str) -> Operation:
        body = {"name": name, "sizeGb": str(size_gb), "type": f"{self._zone_url(zone)}/diskTypes/{disk_type}"}
        return self._submit(
            "create_disk",
            name,
            zone,
            lambda: self.compute.disks().insert(project=self.project, zone=zone, body=body).execute(),
        )

    def attach_disk(self, instance: str, disk: str, device_name: str, zone: str) -> Operation:
        body = {
            "source": f"{self._zone_url(zone)}/disks/{disk}",
            "deviceName": device_name,
            "boot": False,
            "autoDelete": False,
            "mode": "READ_WRITE",
        }
        return self._submit(
            "attach_disk",
            disk,
            zone,
            lambda: self.compute.instances()
            .attachDisk(project=self.project, zone=zone, instance=instance, body=body)
            .execute(),
        )

    def detach_disk(self, instance: str, device_name: str, zone: str) -> Operation:
        return self._submit(
            "detach_disk",
            instance,
            zone,
            lambda: self.compute.instances()
            .detachDisk(project=self.project, zone=zone, instance=instance, deviceName=device_name)
            .execute(),
        )

    def disk_users(self, name: str, zone: str) -> list[str] | None:
        try:
            disk = self.compute.disks().get(project=self.project, zone=zone, disk=name).execute()
        except HttpError as e:
            code, message = _http_error_code(e)
            if code == "NOT_FOUND":
                return None
            raise OperationFailedError("get disk", message, code=code) from e
        # users are instance URLs
        return [url.rsplit("/", 1)[-1] for url in disk.get("users", [])]

    def get_operation(self, op: Operation) -> Operation:
        if op.done and op.failed:
            return op
        zone = self._zones.get(op.name, self.zone)
        try:
            raw = self.compute.zoneOperations().get(project=self.project, zone=zone, operation=op.name).execute()
        except HttpError as e:
            code, message = _http_error_code(e)
            return Operation(name=op.name, kind=op.kind, target=op.target, status="DONE", error_code=code, error=message)
        current = self._to_operation(raw, op.kind, op.target)
        follow_up = self._then.pop(op.name, None)
        if follow_up is not None:
            if not current.done:
                self._then[op.name] = follow_up
            elif not current.failed:
                # Hand back the follow-up operation under the same handle.
                return self._submit(op.kind, op.target, zone, follow_up)
        return current

    def list_instances(self, group: str, zone: str) -> list[str]:
        names: list[str] = []
        instances = self.compute.instances()
        req = instances.list(project=self.project, zone=zone, filter=f"labels.{GROUP_LABEL}={group}")
        while req is not None:
            try:
                resp = req.execute()
            except HttpError as e:
                code, message = _http_error_code(e)
                raise OperationFailedError("list instances", message, code=code) from e
            names.extend(item["name"] for item in resp.get("items", []) if item.get("status") != "TERMINATED")
            req = instances.list_next(previous_request=req, previous_response=resp)
        return sorted(names)

    def instance_address(self, name: str, zone: str) -> str:
        try:
            inst = self.compute.instances().get(project=self.project, zone=zone, instance=name).execute()
        except HttpError as e:
            code, message = _http_error_code(e)
            raise OperationFailedError("get instance", message, code=code) from e
        interfaces = inst.get("networkInterfaces") or []
        if not interfaces:
            raise OperationFailedError("get instance", f"{name} has no network interface")
        return interfaces[0].get("networkIP", "")
