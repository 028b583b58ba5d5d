# src/featureflags/main.py
from __future__ import annotations

import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from featureflags.core.config import settings
from featureflags.core.ctx import set_ctx
from featureflags.core.logging import get_logger
from featureflags.core.metrics import MetricsMiddleware, metrics_app
from featureflags.kernel.errors import ProblemDetails, ValidationError
from featureflags.kernel.transitions import TransitionEngine
from featureflags.services.db import build_storage

from featureflags.api.v1 import audit, flags

log = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    storage = build_storage()
    if settings.DB_AUTO_CREATE:
        await storage.init_schema()
    app.state.transitions = TransitionEngine(storage)
    log.info("featureflags started env=%s backend=%s", settings.ENV, settings.STORE_BACKEND)
    try:
        yield
    finally:
        await storage.close()


app = FastAPI(title="Feature Flags", version="1.0.0", lifespan=lifespan)

# ---- Middlewares (order matters) ----
app.add_middleware(MetricsMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or uuid.uuid4().hex
    set_ctx(request_id=request_id)
    resp = await call_next(request)
    resp.headers["X-Request-Id"] = request_id
    return resp


# ---- Errors ----
@app.exception_handler(ProblemDetails)
async def problem_details_handler(request: Request, exc: ProblemDetails):
    if exc.status >= 500:
        log.error("request failed path=%s err=%s", request.url.path, exc)
    return JSONResponse(exc.to_dict(), status_code=exc.status)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    # path/query/body shape errors rendered like engine validation errors
    errors = [
        {
            "field": ".".join(str(p) for p in err.get("loc", ())[1:]) or "(root)",
            "message": err.get("msg", "Invalid value"),
        }
        for err in exc.errors()
    ]
    problem = ValidationError(detail="Invalid request", errors=errors)
    return JSONResponse(problem.to_dict(), status_code=problem.status)


# Prometheus metrics
app.mount("/metrics", metrics_app)


@app.get("/health")
async def health():
    return {"status": "healthy", "service": settings.APP_NAME, "env": settings.ENV}


# ---- Routers ----
app.include_router(flags.router, prefix="/api/v1")
app.include_router(audit.router, prefix="/api/v1")
