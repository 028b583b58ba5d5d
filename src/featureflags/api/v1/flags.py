# Flags API
# - create / list / get flags
# - toggle: enable or disable, disable cascades to dependents
# - add dependencies to an existing flag
# - per-flag audit trail
# - reconcile: operator repair after a partial cascade
from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, status

from featureflags.api.deps import get_transitions
from featureflags.core.actor import get_actor
from featureflags.kernel.transitions import TransitionEngine
from featureflags.kernel.validation import (
    require_valid,
    validate_create_request,
    validate_dependencies_request,
    validate_toggle_request,
)

router = APIRouter(tags=["flags"])


@router.post("/flags", status_code=status.HTTP_201_CREATED)
async def create_flag(
    payload: Dict[str, Any] = Body(...),
    actor: str = Depends(get_actor),
    engine: TransitionEngine = Depends(get_transitions),
):
    require_valid(validate_create_request(payload))
    flag = await engine.create_flag(payload["name"], payload.get("dependencies") or [], actor)
    return flag.to_dict()


@router.get("/flags")
async def list_flags(engine: TransitionEngine = Depends(get_transitions)):
    flags = await engine.list_flags()
    return {"flags": [f.to_dict() for f in flags], "count": len(flags)}


@router.post("/flags/reconcile")
async def reconcile_flags(
    actor: str = Depends(get_actor),
    engine: TransitionEngine = Depends(get_transitions),
):
    result = await engine.reconcile(actor)
    return {"disabled": result.cascaded, "warnings": result.warnings}


@router.get("/flags/{flag_id}")
async def get_flag(flag_id: int, engine: TransitionEngine = Depends(get_transitions)):
    flag = await engine.get_flag(flag_id)
    return flag.to_dict()


@router.post("/flags/{flag_id}/toggle")
async def toggle_flag(
    flag_id: int,
    payload: Dict[str, Any] = Body(...),
    actor: str = Depends(get_actor),
    engine: TransitionEngine = Depends(get_transitions),
):
    require_valid(validate_toggle_request(payload))
    result = await engine.toggle_flag(flag_id, payload["enable"], actor, payload["reason"])
    word = "enabled" if payload["enable"] else "disabled"
    return {
        "message": f"Flag {word} successfully",
        "flag_id": flag_id,
        "status": result.flag.status.value,
        "changed": result.changed,
        "cascaded": result.cascaded,
        "warnings": result.warnings,
    }


@router.post("/flags/{flag_id}/dependencies")
async def add_dependencies(
    flag_id: int,
    payload: Dict[str, Any] = Body(...),
    actor: str = Depends(get_actor),
    engine: TransitionEngine = Depends(get_transitions),
):
    require_valid(validate_dependencies_request(payload))
    flag = await engine.add_dependencies(flag_id, payload["dependencies"], actor)
    return flag.to_dict()


@router.get("/flags/{flag_id}/audit")
async def get_flag_audit(flag_id: int, engine: TransitionEngine = Depends(get_transitions)):
    entries = await engine.get_audit_log(flag_id)
    return {"audit_logs": [e.to_dict() for e in entries], "count": len(entries)}
