import pytest

from sgr.errors import (
    DiskAttachConflictError,
    InvalidTemplateError,
    OperationFailedError,
    PermissionDeniedError,
    QuotaExceededError,
    SgrError,
    error_from_code,
)


@pytest.mark.parametrize(
    "code,cls",
    [
        ("QUOTA_EXCEEDED", QuotaExceededError),
        ("ZONE_RESOURCE_POOL_EXHAUSTED", QuotaExceededError),
        ("PERMISSION_DENIED", PermissionDeniedError),
        ("INVALID_TEMPLATE", InvalidTemplateError),
        ("RESOURCE_IN_USE_BY_ANOTHER_RESOURCE", DiskAttachConflictError),
        ("SOMETHING_ELSE", OperationFailedError),
        (None, OperationFailedError),
    ],
)
def test_error_from_code(code, cls):
    err = error_from_code(code, "web-1-data-disk", "boom", instance="web-1-abcd")
    assert isinstance(err, cls)
    assert isinstance(err, SgrError)


def test_errors_carry_their_resource():
    err = error_from_code("RESOURCE_IN_USE_BY_ANOTHER_RESOURCE", "web-1-data-disk", "in use", instance="web-1-abcd")
    assert err.disk == "web-1-data-disk"
    assert err.wanted_by == "web-1-abcd"

    quota = error_from_code("QUOTA_EXCEEDED", "web-3-beef", "Quota 'CPUS' exceeded")
    assert quota.resource == "web-3-beef"
    assert "Quota 'CPUS' exceeded" in str(quota)

    failed = error_from_code("TIMEOUT", "web-2-0000", "took too long")
    assert failed.code == "TIMEOUT"
