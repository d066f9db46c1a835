import json
from unittest.mock import MagicMock

import httplib2
import pytest
from googleapiclient.errors import HttpError

from sgr import templates
from sgr.errors import OperationFailedError
from sgr.gce import GceCompute

ZONE = "europe-west1-b"


def _http_error(status, reason, message="boom"):
    content = json.dumps({"error": {"code": status, "message": message, "errors": [{"reason": reason, "message": message}]}})
    return HttpError(httplib2.Response({"status": status}), content.encode("utf-8"))


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def gce(client):
    return GceCompute(project="my-project", zone=ZONE, compute=client)


@pytest.fixture
def tmpl(tmp_db):
    return templates.declare_template(
        "web",
        image="projects/debian-cloud/global/images/family/debian-12",
        machine_type="e2-medium",
        service_account="runner@my-project.iam.gserviceaccount.com",
        startup_script="echo hi",
        tags=["allow-internal-lb"],
    )


def test_requires_project(client):
    with pytest.raises(OperationFailedError):
        GceCompute(project="", zone=ZONE, compute=client)


def test_create_instance_builds_labelled_body(gce, client, tmpl):
    insert = client.instances.return_value.insert
    insert.return_value.execute.return_value = {"name": "operation-1", "status": "RUNNING"}

    op = gce.create_instance("web-1-abcd", tmpl, ZONE, "web")

    assert op.name == "operation-1"
    assert not op.done
    kwargs = insert.call_args.kwargs
    assert (kwargs["project"], kwargs["zone"]) == ("my-project", ZONE)
    body = kwargs["body"]
    assert body["name"] == "web-1-abcd"
    assert body["labels"] == {"sgr-group": "web"}
    assert body["machineType"] == f"zones/{ZONE}/machineTypes/e2-medium"
    assert body["tags"] == {"items": ["allow-internal-lb"]}
    assert {"key": "startup-script", "value": "echo hi"} in body["metadata"]["items"]
    assert {"key": "sgr-template", "value": tmpl.name} in body["metadata"]["items"]
    assert body["serviceAccounts"][0]["email"] == "runner@my-project.iam.gserviceaccount.com"
    # only the boot disk; the durable disk is attached separately
    assert len(body["disks"]) == 1 and body["disks"][0]["boot"] is True


def test_rejected_call_becomes_failed_operation(gce, client, tmpl):
    client.instances.return_value.insert.return_value.execute.side_effect = _http_error(403, "quotaExceeded", "Quota 'CPUS' exceeded")

    op = gce.create_instance("web-1-abcd", tmpl, ZONE, "web")

    assert op.failed
    assert op.error_code == "QUOTA_EXCEEDED"
    assert "CPUS" in op.error
    assert gce.get_operation(op) is op
    client.zoneOperations.assert_not_called()


def test_operation_errors_are_reported(gce, client):
    client.instances.return_value.attachDisk.return_value.execute.return_value = {"name": "operation-7", "status": "PENDING"}
    client.zoneOperations.return_value.get.return_value.execute.return_value = {
        "name": "operation-7",
        "status": "DONE",
        "error": {"errors": [{"code": "RESOURCE_IN_USE_BY_ANOTHER_RESOURCE", "message": "disk in use"}]},
    }

    op = gce.attach_disk("web-1-abcd", "web-1-data-disk", "data-disk", "europe-west1-c")
    body = client.instances.return_value.attachDisk.call_args.kwargs["body"]
    assert body["autoDelete"] is False
    assert body["deviceName"] == "data-disk"
    assert body["source"] == "projects/my-project/zones/europe-west1-c/disks/web-1-data-disk"

    done = gce.get_operation(op)
    assert done.failed
    assert done.error_code == "RESOURCE_IN_USE_BY_ANOTHER_RESOURCE"
    assert client.zoneOperations.return_value.get.call_args.kwargs["zone"] == "europe-west1-c"


def test_refresh_sets_metadata_then_tags(gce, client, tmpl):
    instances = client.instances.return_value
    instances.get.return_value.execute.return_value = {
        "metadata": {"fingerprint": "m-1"},
        "tags": {"fingerprint": "t-1"},
    }
    instances.setMetadata.return_value.execute.return_value = {"name": "operation-m", "status": "RUNNING"}
    instances.setTags.return_value.execute.return_value = {"name": "operation-t", "status": "RUNNING"}
    client.zoneOperations.return_value.get.return_value.execute.return_value = {"name": "operation-m", "status": "DONE"}

    op = gce.refresh_instance("web-1-abcd", tmpl, ZONE)
    assert op.name == "operation-m"
    assert instances.setMetadata.call_args.kwargs["body"]["fingerprint"] == "m-1"
    instances.setTags.assert_not_called()

    follow = gce.get_operation(op)
    assert follow.name == "operation-t"
    assert not follow.done
    assert instances.setTags.call_args.kwargs["body"] == {"fingerprint": "t-1", "items": ["allow-internal-lb"]}


def test_list_instances_follows_pages(gce, client):
    first, second = MagicMock(), MagicMock()
    instances = client.instances.return_value
    instances.list.return_value = first
    instances.list_next.side_effect = [second, None]
    first.execute.return_value = {"items": [{"name": "web-2-bbbb", "status": "RUNNING"}, {"name": "web-9-dead", "status": "TERMINATED"}]}
    second.execute.return_value = {"items": [{"name": "web-1-aaaa", "status": "STAGING"}]}

    assert gce.list_instances("web", ZONE) == ["web-1-aaaa", "web-2-bbbb"]
    assert instances.list.call_args.kwargs["filter"] == "labels.sgr-group=web"


def test_instance_address(gce, client):
    get = client.instances.return_value.get
    get.return_value.execute.return_value = {"networkInterfaces": [{"networkIP": "10.132.0.7"}]}
    assert gce.instance_address("web-1-aaaa", ZONE) == "10.132.0.7"

    get.return_value.execute.side_effect = _http_error(404, "notFound")
    with pytest.raises(OperationFailedError) as exc:
        gce.instance_address("web-1-aaaa", ZONE)
    assert exc.value.code == "NOT_FOUND"


def test_disk_users_reads_instance_names(gce, client):
    get = client.disks.return_value.get
    get.return_value.execute.return_value = {
        "name": "web-1-data-disk",
        "users": [f"https://www.googleapis.com/compute/v1/projects/my-project/zones/{ZONE}/instances/web-1-abcd"],
    }
    assert gce.disk_users("web-1-data-disk", ZONE) == ["web-1-abcd"]
    assert get.call_args.kwargs == {"project": "my-project", "zone": ZONE, "disk": "web-1-data-disk"}

    get.return_value.execute.return_value = {"name": "web-1-data-disk"}
    assert gce.disk_users("web-1-data-disk", ZONE) == []

    get.return_value.execute.side_effect = _http_error(404, "notFound")
    assert gce.disk_users("web-1-data-disk", ZONE) is None

    get.return_value.execute.side_effect = _http_error(403, "forbidden")
    with pytest.raises(OperationFailedError):
        gce.disk_users("web-1-data-disk", ZONE)


def test_detach_from_missing_instance_reports_not_found(gce, client):
    client.instances.return_value.detachDisk.return_value.execute.side_effect = _http_error(404, "notFound", "instance gone")

    op = gce.detach_disk("web-1-abcd", "data-disk", ZONE)

    assert op.failed
    assert op.error_code == "NOT_FOUND"
