# featureflags/api/deps.py
from __future__ import annotations

from fastapi import Request

from featureflags.kernel.transitions import TransitionEngine


def get_transitions(request: Request) -> TransitionEngine:
    """The process-wide engine built in the app lifespan (tests override this)."""
    return request.app.state.transitions
