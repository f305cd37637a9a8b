"""Lab and desktop routes."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query

from hacklab.api.deps import Services, get_current_user, get_services
from hacklab.api.schemas import (
    RestartOSRequest,
    StartLabRequest,
    StartOSRequest,
    StopLabRequest,
    StopOSRequest,
    ValidateFlagRequest,
    ok,
)
from hacklab.flags import FlagTarget
from hacklab.observability import LogContext


labs_router = APIRouter(prefix="/api/labs", tags=["labs"])
os_router = APIRouter(prefix="/api/os", tags=["os"])
scores_router = APIRouter(prefix="/api/lab-scores", tags=["scores"])


@labs_router.post("/start")
async def start_lab(
    body: StartLabRequest,
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    with LogContext(user_id=user_id, lab_type=body.lab_type):
        access = await services.lifecycle.start_lab(user_id, body.lab_type)
    return ok(access.to_dict())


@labs_router.post("/stop")
async def stop_lab(
    body: StopLabRequest,
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    with LogContext(user_id=user_id, pod_name=body.pod_name):
        await services.lifecycle.stop_lab(user_id, body.namespace, body.pod_name)
    return ok({"pod_name": body.pod_name, "stopped": True})


@labs_router.get("/status")
async def lab_status(
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    with LogContext(user_id=user_id):
        labs = await services.lifecycle.get_active_labs(user_id)
    return ok({"labs": [lab.to_dict() for lab in labs]})


@labs_router.post("/validate-flag")
async def validate_flag(
    body: ValidateFlagRequest,
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    with LogContext(user_id=user_id, lab_id=body.lab_id):
        result = await services.flags.submit_flag(
            user_id,
            body.lab_id,
            body.difficulty,
            body.flag,
            body.pod_name,
            body.namespace,
        )
    return ok(result.to_dict())


@labs_router.post("/validate-linux-flags")
async def validate_linux_flags(
    body: ValidateFlagRequest,
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    """Flags planted in the user's desktop for the Linux fundamentals track."""
    with LogContext(user_id=user_id, lab_id=body.lab_id):
        result = await services.flags.submit_flag(
            user_id,
            body.lab_id,
            body.difficulty,
            body.flag,
            body.pod_name,
            body.namespace,
            target=FlagTarget.DESKTOP,
        )
    return ok(result.to_dict())


@labs_router.get("/health")
async def health(services: Services = Depends(get_services)) -> dict[str, Any]:
    available = await services.orchestrator.ping()
    return ok(
        {
            "status": "ok" if available else "degraded",
            "orchestrator_available": available,
            "version": services.settings.version,
        }
    )


@os_router.post("/start")
async def start_os(
    body: StartOSRequest,
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    with LogContext(user_id=user_id, os_type=body.os_type):
        access = await services.lifecycle.start_os(user_id, body.os_type)
    return ok(access.to_dict())


@os_router.post("/stop")
async def stop_os(
    body: StopOSRequest,
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    with LogContext(user_id=user_id, pod_name=body.pod_name):
        stopped = await services.lifecycle.stop_os(user_id, body.pod_name)
    return ok({"stopped": stopped})


@os_router.post("/restart")
async def restart_os(
    body: RestartOSRequest,
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    with LogContext(user_id=user_id, pod_name=body.pod_name):
        access = await services.lifecycle.restart_os(user_id, body.pod_name, body.os_type)
    return ok(access.to_dict())


@os_router.get("/status")
async def os_status(
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    password = services.settings.lab.vnc_password.get_secret_value()
    with LogContext(user_id=user_id):
        containers = await services.lifecycle.get_active_os(user_id)
    return ok({"containers": [c.to_dict(password) for c in containers]})


@scores_router.get("/status")
async def score_status(
    lab_id: int = Query(...),
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    scores = await services.store.get_scores(user_id, lab_id)
    return ok([score.to_dict() for score in scores])
