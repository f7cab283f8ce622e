"""HTTP surface for visit admission, integrity verification, and review."""

import asyncio
from contextlib import asynccontextmanager

import redis
from fastapi import FastAPI, Header, Query

from pogpp.common.config import settings
from pogpp.common.content_store import IpfsContentStore
from pogpp.common.db import SessionLocal
from pogpp.common.errors import PogppError
from pogpp.common.events import KafkaBus
from pogpp.common.http import as_http_error, enforce_api_key, install_request_metrics, require_user
from pogpp.common.logging import configure_logging
from pogpp.common.metrics import metrics_response
from pogpp.common.outbox import publish_outbox_forever
from pogpp.common.rate_limit import TokenBucketLimiter
from pogpp.common.startup import log_startup_config
from pogpp.common.tracing import instrument_app, setup_tracing
from pogpp.services.visits.models import VisitOutboxEvent
from pogpp.services.visits.schemas import (
    VisitAttempt,
    VisitPrecheckRequest,
    VisitPrecheckResponse,
    VisitRejectRequest,
    VisitResponse,
    TagCenter,
    TagVisitsResponse,
    VisitStatsResponse,
    VisitSubmitRequest,
)
from pogpp.services.visits.service import VisitAdmissionService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "POSTGRES_DSN",
        "REDIS_URL",
        "IPFS_API_URL",
        "KAFKA_BOOTSTRAP_SERVERS",
        "VISIT_DUPLICATE_WINDOW_MINUTES",
        "MAX_GPS_ACCURACY_METERS",
        "RATE_LIMIT_PER_MINUTE",
    ],
)
service = VisitAdmissionService(SessionLocal, IpfsContentStore(), service_name=settings.service_name)
limiter = TokenBucketLimiter(redis.Redis.from_url(settings.redis_url, decode_responses=True), scope="visits")
kafka = KafkaBus()


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the outbox publisher with app lifecycle."""

    publisher_task = asyncio.create_task(
        publish_outbox_forever(SessionLocal, VisitOutboxEvent, kafka, settings.service_name)
    )
    yield
    publisher_task.cancel()
    await kafka.close()


app = FastAPI(title="POGPP Visits", lifespan=lifespan)
instrument_app(app)
install_request_metrics(app)


@app.post("/visits", response_model=VisitResponse, status_code=201)
def submit_visit(
    req: VisitSubmitRequest,
    x_api_key: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    """Admit a visit capture; stored as `pending` until verified."""

    enforce_api_key(x_api_key)
    user_id = require_user(x_user_id)
    try:
        limiter.consume(user_id)
        visit = service.submit_visit(VisitAttempt(user_id=user_id, **req.model_dump()))
    except PogppError as exc:
        raise as_http_error(exc) from exc
    return VisitResponse.model_validate(visit)


@app.post("/visits/validate", response_model=VisitPrecheckResponse)
def validate_visit(req: VisitPrecheckRequest, x_api_key: str | None = Header(default=None)):
    enforce_api_key(x_api_key)
    return service.precheck_visit(req)


@app.get("/visits/stats", response_model=VisitStatsResponse)
def visit_stats(x_api_key: str | None = Header(default=None), x_user_id: str | None = Header(default=None)):
    enforce_api_key(x_api_key)
    return VisitStatsResponse(**service.user_visit_stats(require_user(x_user_id)))


@app.get("/visits", response_model=list[VisitResponse])
def list_visits(
    limit: int = Query(default=50, ge=1, le=200),
    x_api_key: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    enforce_api_key(x_api_key)
    visits = service.list_user_visits(require_user(x_user_id), limit=limit)
    return [VisitResponse.model_validate(visit) for visit in visits]


@app.get("/visits/location/{nfc_tag_id}", response_model=TagVisitsResponse)
def visits_at_tag(
    nfc_tag_id: str,
    limit: int = Query(default=20, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    x_api_key: str | None = Header(default=None),
):
    """Visits recorded at one tag, newest first, with the tag's estimated position."""

    enforce_api_key(x_api_key)
    visits, total = service.list_visits_for_tag(nfc_tag_id, limit=limit, offset=offset)
    center = service.tag_center(nfc_tag_id)
    return TagVisitsResponse(
        nfc_tag_id=nfc_tag_id,
        total_count=total,
        center=TagCenter(latitude=center.latitude, longitude=center.longitude) if center is not None else None,
        visits=[VisitResponse.model_validate(visit) for visit in visits],
    )


@app.get("/visits/{visit_id}", response_model=VisitResponse)
def get_visit(
    visit_id: str,
    x_api_key: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    enforce_api_key(x_api_key)
    try:
        return VisitResponse.model_validate(service.get_visit(visit_id, require_user(x_user_id)))
    except PogppError as exc:
        raise as_http_error(exc) from exc


@app.post("/visits/{visit_id}/verify", response_model=VisitResponse)
def verify_visit(
    visit_id: str,
    x_api_key: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    """Re-derive the fingerprint from the stored payload; flags on mismatch."""

    enforce_api_key(x_api_key)
    try:
        return VisitResponse.model_validate(service.verify_visit(visit_id, require_user(x_user_id)))
    except PogppError as exc:
        raise as_http_error(exc) from exc


@app.post("/visits/{visit_id}/reject", response_model=VisitResponse)
def reject_visit(visit_id: str, req: VisitRejectRequest, x_api_key: str | None = Header(default=None)):
    """Ops moderation of a pending visit."""

    enforce_api_key(x_api_key)
    try:
        return VisitResponse.model_validate(service.reject_visit(visit_id, req.reason))
    except PogppError as exc:
        raise as_http_error(exc) from exc


@app.get("/reviews/flagged", response_model=list[VisitResponse])
def flagged_visits(limit: int = Query(default=100, ge=1, le=500), x_api_key: str | None = Header(default=None)):
    """Visits that failed the integrity check, oldest first."""

    enforce_api_key(x_api_key)
    return [VisitResponse.model_validate(visit) for visit in service.list_flagged(limit=limit)]


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health check endpoint."""

    return {"ok": True}
