from __future__ import annotations

import logging
import secrets
from dataclasses import asdict

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from sgr import db, gateway, templates
from sgr.api_models import RecreateRequest, ResizeRequest, SetTemplateRequest, TemplateRequest
from sgr.deployment import bootstrap, make_compute
from sgr.errors import GroupNotFoundError
from sgr.log_utils import setup_logging
from sgr.reconciler import Reconciler
from sgr.runtime import RuntimeState
from sgr.settings import settings

logger = logging.getLogger("sgr.api")

app = FastAPI(title="Stateful Group Reconciler")
security = HTTPBasic()

runtime = RuntimeState()
reconciler: Reconciler | None = None

# Tests drive Reconciler.tick() themselves.
START_LOOP = True


def get_current_username(credentials: HTTPBasicCredentials = Depends(security)) -> str:
    if not (
        secrets.compare_digest(credentials.username, settings.admin_user)
        and secrets.compare_digest(credentials.password, settings.admin_password)
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Basic"},
        )
    return credentials.username


def _reconciler() -> Reconciler:
    if reconciler is None:
        raise HTTPException(status_code=503, detail="Reconciler is not running")
    return reconciler


@app.exception_handler(GroupNotFoundError)
def _group_not_found(request: Request, exc: GroupNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(KeyError)
def _not_found(request: Request, exc: KeyError) -> JSONResponse:
    detail = exc.args[0] if exc.args else "Not found"
    return JSONResponse(status_code=404, content={"detail": str(detail)})


@app.exception_handler(ValueError)
def _bad_request(request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.on_event("startup")
def startup() -> None:
    global reconciler
    setup_logging()
    db.init_db()
    bootstrap(settings)
    reconciler = Reconciler(runtime, make_compute(settings))
    if START_LOOP:
        reconciler.start()
    logger.info(f"API up, backend={settings.backend}")


@app.on_event("shutdown")
def shutdown() -> None:
    if reconciler is not None:
        reconciler.stop()


@app.get("/health")
def health() -> dict:
    return {"status": "healthy", "groups": len(db.list_groups())}


@app.get("/groups")
def list_groups(username: str = Depends(get_current_username)) -> list[dict]:
    rec = _reconciler()
    return [rec.describe(g.name) for g in db.list_groups()]


@app.get("/groups/{name}")
def get_group(name: str, username: str = Depends(get_current_username)) -> dict:
    return _reconciler().describe(name)


@app.put("/groups/{name}/size")
def resize_group(name: str, req: ResizeRequest, username: str = Depends(get_current_username)) -> dict:
    templates.resize(name, req.target_size)
    return _reconciler().describe(name)


@app.put("/groups/{name}/template")
def set_group_template(name: str, req: SetTemplateRequest, username: str = Depends(get_current_username)) -> dict:
    templates.set_template(name, req.template)
    return _reconciler().describe(name)


@app.post("/groups/{name}/rolling-update")
def rolling_update(name: str, username: str = Depends(get_current_username)) -> dict:
    templates.trigger_rolling_update(name)
    return _reconciler().describe(name)


@app.post("/groups/{name}/rolling-restart")
def rolling_restart(name: str, username: str = Depends(get_current_username)) -> dict:
    rec = _reconciler()
    templates.trigger_rolling_restart(name, now=rec.clock())
    return rec.describe(name)


@app.post("/groups/{name}/recreate")
def recreate(name: str, req: RecreateRequest, username: str = Depends(get_current_username)) -> dict:
    return {"group": name, "recreating": templates.recreate_instances(name, req.instances)}


@app.get("/groups/{name}/disks")
def group_disks(name: str, username: str = Depends(get_current_username)) -> list[dict]:
    group = db.get_group(name)
    if group is None:
        raise GroupNotFoundError(name)
    return [asdict(d) for d in db.list_disks(group.id)]


@app.get("/templates")
def list_templates(username: str = Depends(get_current_username)) -> list[dict]:
    return [asdict(t) for t in db.list_templates()]


@app.post("/templates")
def create_template(req: TemplateRequest, username: str = Depends(get_current_username)) -> dict:
    row = templates.declare_template(
        base_name=req.base_name,
        image=req.image,
        machine_type=req.machine_type,
        service_account=req.service_account,
        network=req.network,
        subnetwork=req.subnetwork,
        startup_script=req.startup_script,
        tags=req.tags,
        boot_disk_size_gb=req.boot_disk_size_gb,
        boot_disk_type=req.boot_disk_type,
        data_device_name=req.data_device_name,
        data_disk_size_gb=req.data_disk_size_gb,
        data_disk_type=req.data_disk_type,
    )
    if req.apply_to:
        templates.set_template(req.apply_to, row.name)
    return asdict(row)


@app.post("/templates/prune")
def prune_templates(username: str = Depends(get_current_username)) -> dict:
    return {"removed": templates.prune_templates()}


@app.get("/events")
def events(limit: int = 100, username: str = Depends(get_current_username)) -> list[dict]:
    return db.latest_events(limit=max(1, min(limit, 1000)))


@app.get("/backends/{name}")
def backends(name: str, username: str = Depends(get_current_username)) -> dict:
    group = db.get_group(name)
    if group is None:
        raise GroupNotFoundError(name)
    return gateway.describe_backends(group.name, runtime, group.health_check, settings.lb_ip_address, settings.dns_domain)


@app.get("/backends/{name}/select")
def select_backend(name: str, username: str = Depends(get_current_username)) -> dict:
    if db.get_group(name) is None:
        raise GroupNotFoundError(name)
    try:
        member = gateway.select_backend(name, runtime)
    except gateway.NoHealthyBackends as e:
        raise HTTPException(status_code=503, detail=str(e)) from e
    return {"instance": member.instance, "slot": member.slot, "address": member.address}
