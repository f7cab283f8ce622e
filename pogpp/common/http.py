"""HTTP plumbing shared by the service apps."""

from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request

from pogpp.common.config import settings
from pogpp.common.errors import PogppError
from pogpp.common.logging import trace_id_ctx, user_id_ctx
from pogpp.common.metrics import http_request_duration_seconds, http_requests_total


def install_request_metrics(app: FastAPI) -> None:
    """Record request count and latency for every HTTP call."""

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        trace_id_ctx.set(request.headers.get("x-trace-id") or str(uuid4()))
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            return response
        finally:
            elapsed = max(0.0, perf_counter() - start)
            http_request_duration_seconds.labels(
                service=settings.service_name,
                route=route,
                method=method,
            ).observe(elapsed)
            http_requests_total.labels(
                service=settings.service_name,
                route=route,
                method=method,
                status_code=str(status_code),
            ).inc()


def enforce_api_key(x_api_key: str | None) -> None:
    """Reject requests that do not provide the configured API key."""

    if x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


def require_user(x_user_id: str | None) -> str:
    """Caller identity as forwarded by the edge."""

    if not x_user_id:
        raise HTTPException(status_code=401, detail="missing x-user-id")
    user_id_ctx.set(x_user_id)
    return x_user_id


def as_http_error(exc: PogppError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.to_dict())
