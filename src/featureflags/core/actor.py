# featureflags/core/actor.py
from __future__ import annotations

from typing import Optional

from fastapi import Header, Query

from featureflags.core.config import settings
from featureflags.core.ctx import set_ctx


async def get_actor(
    x_actor: Optional[str] = Header(default=None, alias="X-Actor"),
    actor_query: Optional[str] = Query(default=None, alias="actor"),
) -> str:
    """
    Actor resolver used by FastAPI dependencies.

    The actor is an opaque identity string recorded on audit entries; it is
    not authenticated here. Resolution order:
      - X-Actor header, when non-empty
      - ?actor=... query parameter, when non-empty
      - settings.DEFAULT_ACTOR ("anonymous")

    Length is validated by the engine, not here, so an over-long actor
    surfaces as a regular field-level validation error.
    """
    if x_actor:
        actor = x_actor
    elif actor_query:
        actor = actor_query
    else:
        actor = settings.DEFAULT_ACTOR
    set_ctx(actor=actor)
    return actor
