"""HTTP surface for badge claims and ledger reconciliation."""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Header, HTTPException, Query

from pogpp.common.config import settings
from pogpp.common.content_store import IpfsContentStore
from pogpp.common.db import SessionLocal
from pogpp.common.errors import AlreadyClaimedLocally, ClaimNotFound, PogppError
from pogpp.common.events import KafkaBus
from pogpp.common.http import as_http_error, enforce_api_key, install_request_metrics, require_user
from pogpp.common.ledger import Web3BadgeLedger
from pogpp.common.logging import configure_logging
from pogpp.common.metrics import metrics_response
from pogpp.common.outbox import publish_outbox_forever
from pogpp.common.startup import log_startup_config, require_settings
from pogpp.common.tracing import instrument_app, setup_tracing
from pogpp.services.badges.models import BadgeOutboxEvent
from pogpp.services.badges.schemas import (
    BadgeClaimRequest,
    BadgeClaimResponse,
    BadgeVerifyResponse,
    CollectionStatsResponse,
    LeaderboardEntry,
    ReconcileRequest,
    ReconcileResponse,
)
from pogpp.services.badges.service import BadgeClaimService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "POSTGRES_DSN",
        "IPFS_API_URL",
        "LEDGER_RPC_URL",
        "LEDGER_CONTRACT_ADDRESS",
        "LEDGER_PRIVATE_KEY",
        "LEDGER_CHAIN_ID",
        "BADGE_CATEGORY_SPACE",
        "KAFKA_BOOTSTRAP_SERVERS",
    ],
)
require_settings(settings.service_name, ["ledger_rpc_url", "ledger_contract_address", "ledger_private_key"])
service = BadgeClaimService(
    SessionLocal, Web3BadgeLedger(), IpfsContentStore(), service_name=settings.service_name
)
kafka = KafkaBus()


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the outbox publisher with app lifecycle."""

    publisher_task = asyncio.create_task(
        publish_outbox_forever(SessionLocal, BadgeOutboxEvent, kafka, settings.service_name)
    )
    yield
    publisher_task.cancel()
    await kafka.close()


app = FastAPI(title="POGPP Badges", lifespan=lifespan)
instrument_app(app)
install_request_metrics(app)


@app.post("/badges/claim", response_model=BadgeClaimResponse, status_code=201)
def claim_badge(
    req: BadgeClaimRequest,
    x_api_key: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    """Mint the badge for a verified visit.

    A badge already minted for the visit answers 409 with the existing claim
    in `detail.claim`; an unconfirmed mint answers 202 and can be retried.
    """

    enforce_api_key(x_api_key)
    user_id = require_user(x_user_id)
    try:
        claim = service.claim_badge(user_id, req.visit_id)
    except AlreadyClaimedLocally as exc:
        detail = exc.to_dict()
        detail["claim"] = BadgeClaimResponse.model_validate(exc.claim).model_dump(mode="json")
        raise HTTPException(status_code=exc.status_code, detail=detail) from exc
    except PogppError as exc:
        raise as_http_error(exc) from exc
    return BadgeClaimResponse.model_validate(claim)


@app.get("/badges", response_model=list[BadgeClaimResponse])
def list_badges(
    limit: int = Query(default=50, ge=1, le=200),
    x_api_key: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    enforce_api_key(x_api_key)
    claims = service.list_user_claims(require_user(x_user_id), limit=limit)
    return [BadgeClaimResponse.model_validate(claim) for claim in claims]


@app.get("/badges/leaderboard", response_model=list[LeaderboardEntry])
def leaderboard(limit: int = Query(default=10, ge=1, le=100), x_api_key: str | None = Header(default=None)):
    enforce_api_key(x_api_key)
    return [LeaderboardEntry(**entry) for entry in service.leaderboard(limit=limit)]


@app.get("/badges/collection/stats", response_model=CollectionStatsResponse)
def collection_stats(x_api_key: str | None = Header(default=None)):
    enforce_api_key(x_api_key)
    return CollectionStatsResponse(**service.collection_stats())


@app.get("/badges/visit/{visit_id}", response_model=BadgeClaimResponse)
def badge_for_visit(
    visit_id: str,
    x_api_key: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    """Badge claim recorded for one of the caller's visits."""

    enforce_api_key(x_api_key)
    claim = service.claim_for_visit(visit_id, require_user(x_user_id))
    if claim is None:
        raise as_http_error(ClaimNotFound("no badge claim for this visit", visit_id=visit_id))
    return BadgeClaimResponse.model_validate(claim)


@app.get("/badges/{claim_id}", response_model=BadgeClaimResponse)
def get_badge(
    claim_id: str,
    x_api_key: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    enforce_api_key(x_api_key)
    try:
        return BadgeClaimResponse.model_validate(service.get_claim(claim_id, require_user(x_user_id)))
    except PogppError as exc:
        raise as_http_error(exc) from exc


@app.get("/badges/{claim_id}/verify", response_model=BadgeVerifyResponse)
def verify_badge(
    claim_id: str,
    x_api_key: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    """On-chain ownership check for a minted badge."""

    enforce_api_key(x_api_key)
    try:
        return BadgeVerifyResponse(**service.verify_badge(claim_id, require_user(x_user_id)))
    except PogppError as exc:
        raise as_http_error(exc) from exc


@app.post("/reconciliation", response_model=ReconcileResponse)
def reconcile(req: ReconcileRequest, x_api_key: str | None = Header(default=None)):
    """Settle stale pending claims against the ledger."""

    enforce_api_key(x_api_key)
    return ReconcileResponse(**service.reconcile_pending(limit=req.limit))


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health check endpoint."""

    return {"ok": True}
