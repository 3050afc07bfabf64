from __future__ import annotations

import os
import time
import uuid

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

OPEN_ENVS = frozenset({"dev", "local", "test"})


class HealthResponse(BaseModel):
    status: str
    service: str
    version: str
    commit: str
    timestamp: str
    scheduler: dict[str, object] | None = None


def is_open_env(env: str | None = None) -> bool:
    return (env or os.getenv("ENV", "dev")).strip().lower() in OPEN_ENVS


def cors_origins(*, raw: str | None = None, env: str | None = None) -> list[str]:
    """Explicit CORS_ALLOW_ORIGINS wins; open environments allow any origin."""
    raw_value = raw if raw is not None else os.getenv("CORS_ALLOW_ORIGINS", "")
    origins = [origin.strip() for origin in raw_value.split(",") if origin.strip()]
    if origins:
        return origins
    return ["*"] if is_open_env(env) else []


def apply_cors_middleware(
    app: FastAPI,
    *,
    raw_origins: str | None = None,
    env: str | None = None,
) -> list[str]:
    origins = cors_origins(raw=raw_origins, env=env)
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_methods=["GET", "POST", "PUT", "DELETE"],
            allow_headers=["content-type", "x-api-key", "x-correlation-id"],
            expose_headers=["x-correlation-id"],
        )
    return origins


def correlation_id(header_value: str | None) -> str:
    return header_value or str(uuid.uuid4())


def add_correlation_id_middleware(app: FastAPI) -> None:
    @app.middleware("http")
    async def _add_correlation_id(request: Request, call_next):
        corr = correlation_id(request.headers.get("x-correlation-id"))
        request.state.correlation_id = corr
        response = await call_next(request)
        response.headers["x-correlation-id"] = corr
        return response


def api_key_required(env: str | None = None) -> bool:
    return not is_open_env(env)


def build_health_response(
    service_name: str,
    *,
    scheduler: dict[str, object] | None = None,
) -> HealthResponse:
    return HealthResponse(
        status="ok",
        service=service_name,
        version=os.getenv("FLEETWARD_VERSION", "dev"),
        commit=os.getenv("GIT_COMMIT", "unknown"),
        timestamp=time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        scheduler=scheduler,
    )
