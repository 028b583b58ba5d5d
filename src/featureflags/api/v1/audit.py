# Global audit trail, newest first. Page size is capped by AUDIT_PAGE_LIMIT.
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from featureflags.api.deps import get_transitions
from featureflags.kernel.transitions import TransitionEngine

router = APIRouter(tags=["audit"])


@router.get("/audit")
async def list_audit(
    limit: Optional[int] = Query(default=None),
    offset: int = Query(default=0),
    engine: TransitionEngine = Depends(get_transitions),
):
    entries = await engine.list_audit_log(limit, offset)
    return {"audit_logs": [e.to_dict() for e in entries], "count": len(entries)}
