# src/featureflags/core/ctx.py
from __future__ import annotations
import contextvars
from typing import Optional, Mapping

_request_id = contextvars.ContextVar("request_id", default=None)
_actor      = contextvars.ContextVar("actor",      default=None)
_flag_id    = contextvars.ContextVar("flag_id",    default=None)

def set_ctx(*, request_id: Optional[str]=None, actor: Optional[str]=None,
            flag_id: Optional[int]=None) -> None:
    if request_id is not None: _request_id.set(request_id)
    if actor is not None:      _actor.set(actor)
    if flag_id is not None:    _flag_id.set(flag_id)

def get_ctx() -> Mapping[str, Optional[object]]:
    return {
        "request_id": _request_id.get(),
        "actor":      _actor.get(),
        "flag_id":    _flag_id.get(),
    }
