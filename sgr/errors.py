"""
Exception classes raised by the reconciler and its compute backends.

Every error carries the resource it concerns so the reconciler can decide
whether the failure blocks a single slot or is a configuration problem.
"""

from __future__ import annotations


class SgrError(Exception):
    """Base exception for all reconciler errors."""


class GroupNotFoundError(SgrError):
    def __init__(self, group: str):
        self.group = group
        super().__init__(f"Instance group '{group}' is not declared")


class QuotaExceededError(SgrError):
    """
    Raised when the project or region has no capacity left for a resource.

    Retried with backoff; the slot stays unfilled meanwhile.
    """

    def __init__(self, resource: str, detail: str = ""):
        self.resource = resource
        self.detail = detail
        message = f"Quota exceeded for {resource}"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class PermissionDeniedError(SgrError):
    def __init__(self, resource: str, detail: str = ""):
        self.resource = resource
        self.detail = detail
        message = f"Permission denied on {resource}"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class InvalidTemplateError(SgrError):
    def __init__(self, template: str, reason: str):
        self.template = template
        self.reason = reason
        super().__init__(f"Instance template '{template}' is invalid: {reason}")


class DiskAttachConflictError(SgrError):
    """
    Raised when a durable disk is still attached to another instance.

    Blocks only the slot that wanted the disk.
    """

    def __init__(self, disk: str, holder: str | None, wanted_by: str):
        self.disk = disk
        self.holder = holder
        self.wanted_by = wanted_by
        held = f" (held by '{holder}')" if holder else ""
        super().__init__(f"Disk '{disk}' is already attached{held}; cannot attach to '{wanted_by}'")


class OperationFailedError(SgrError):
    def __init__(self, operation_name: str, reason: str, code: str | None = None):
        self.operation_name = operation_name
        self.reason = reason
        self.code = code
        super().__init__(f"Operation '{operation_name}' failed: {reason}")


# Compute Engine style error codes -> exception class.
_CODE_MAP: dict[str, type[SgrError]] = {
    "QUOTA_EXCEEDED": QuotaExceededError,
    "ZONE_RESOURCE_POOL_EXHAUSTED": QuotaExceededError,
    "PERMISSION_DENIED": PermissionDeniedError,
    "FORBIDDEN": PermissionDeniedError,
    "INVALID_TEMPLATE": InvalidTemplateError,
    "RESOURCE_IN_USE_BY_ANOTHER_RESOURCE": DiskAttachConflictError,
}


def error_from_code(code: str | None, target: str, message: str, instance: str = "") -> SgrError:
    """Build the exception matching a failed operation's error code."""
    cls = _CODE_MAP.get(code or "")
    if cls is QuotaExceededError:
        return QuotaExceededError(target, message)
    if cls is PermissionDeniedError:
        return PermissionDeniedError(target, message)
    if cls is InvalidTemplateError:
        return InvalidTemplateError(target, message)
    if cls is DiskAttachConflictError:
        return DiskAttachConflictError(target, None, instance)
    return OperationFailedError(target, message, code=code)
