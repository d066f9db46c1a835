from __future__ import annotations

import argparse
import json
import os
import sys

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Stateful Group Reconciler CLI")
    p.add_argument("--api", default=os.getenv("SGR_API", "http://localhost:8000"), help="API base URL")
    p.add_argument("--user", default=os.getenv("SGR_ADMIN_USER", "admin"))
    p.add_argument("--password", default=os.getenv("SGR_ADMIN_PASSWORD", "change-me"))
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("groups", help="List groups")

    s_show = sub.add_parser("show", help="Show one group")
    s_show.add_argument("group")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)

    s_resize = sub.add_parser("resize", help="Set the target size of a group")
    s_resize.add_argument("group")
    s_resize.add_argument("size", type=int)

    s_tmpl = sub.add_parser("template", help="Declare an instance template")
    s_tmpl.add_argument("--base-name", required=True)
    s_tmpl.add_argument("--image", required=True)
    s_tmpl.add_argument("--machine-type", default="e2-medium")
    s_tmpl.add_argument("--service-account", default="")
    s_tmpl.add_argument("--startup-script", default="")
    s_tmpl.add_argument("--tag", action="append", default=[], dest="tags")
    s_tmpl.add_argument("--data-device-name", default="data-disk")
    s_tmpl.add_argument("--data-disk-size-gb", type=int, default=50)
    s_tmpl.add_argument("--apply-to", help="Make it the declared version of this group")

    s_set = sub.add_parser("set-template", help="Point a group at another template")
    s_set.add_argument("group")
    s_set.add_argument("template")

    s_upd = sub.add_parser("rolling-update", help="Replace outdated instances now")
    s_upd.add_argument("group")

    s_rst = sub.add_parser("rolling-restart", help="Replace every instance within the update budget")
    s_rst.add_argument("group")

    s_rec = sub.add_parser("recreate", help="Recreate instances in their slots")
    s_rec.add_argument("group")
    s_rec.add_argument("instances", nargs="+")

    s_disks = sub.add_parser("disks", help="Show the durable disks of a group")
    s_disks.add_argument("group")

    s_be = sub.add_parser("backends", help="Show load balancer members of a group")
    s_be.add_argument("group")

    sub.add_parser("prune", help="Delete unreferenced superseded templates")

    args = p.parse_args(argv)

    base = args.api.rstrip("/")
    auth = (args.user, args.password)

    if args.cmd == "groups":
        r = requests.get(f"{base}/groups", auth=auth, timeout=10)
    elif args.cmd == "show":
        r = requests.get(f"{base}/groups/{args.group}", auth=auth, timeout=10)
    elif args.cmd == "events":
        r = requests.get(f"{base}/events", params={"limit": args.limit}, auth=auth, timeout=10)
    elif args.cmd == "resize":
        r = requests.put(f"{base}/groups/{args.group}/size", json={"target_size": args.size}, auth=auth, timeout=10)
    elif args.cmd == "template":
        payload = {
            "base_name": args.base_name,
            "image": args.image,
            "machine_type": args.machine_type,
            "service_account": args.service_account,
            "startup_script": args.startup_script,
            "tags": args.tags,
            "data_device_name": args.data_device_name,
            "data_disk_size_gb": args.data_disk_size_gb,
            "apply_to": args.apply_to,
        }
        r = requests.post(f"{base}/templates", json=payload, auth=auth, timeout=30)
    elif args.cmd == "set-template":
        r = requests.put(f"{base}/groups/{args.group}/template", json={"template": args.template}, auth=auth, timeout=10)
    elif args.cmd == "rolling-update":
        r = requests.post(f"{base}/groups/{args.group}/rolling-update", auth=auth, timeout=10)
    elif args.cmd == "rolling-restart":
        r = requests.post(f"{base}/groups/{args.group}/rolling-restart", auth=auth, timeout=10)
    elif args.cmd == "recreate":
        r = requests.post(f"{base}/groups/{args.group}/recreate", json={"instances": args.instances}, auth=auth, timeout=10)
    elif args.cmd == "disks":
        r = requests.get(f"{base}/groups/{args.group}/disks", auth=auth, timeout=10)
    elif args.cmd == "backends":
        r = requests.get(f"{base}/backends/{args.group}", auth=auth, timeout=10)
    elif args.cmd == "prune":
        r = requests.post(f"{base}/templates/prune", auth=auth, timeout=30)
    else:
        return 2

    _print(r.json())
    return 0 if r.ok else 1


if __name__ == "__main__":
    sys.exit(main())
