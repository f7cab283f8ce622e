"""HTTP surface for wallet challenge sign-in."""

import redis
from fastapi import FastAPI, Header

from pogpp.common.config import settings
from pogpp.common.db import SessionLocal
from pogpp.common.errors import PogppError
from pogpp.common.http import as_http_error, enforce_api_key, install_request_metrics
from pogpp.common.logging import configure_logging
from pogpp.common.metrics import metrics_response
from pogpp.common.startup import log_startup_config
from pogpp.common.tracing import instrument_app, setup_tracing
from pogpp.services.auth.schemas import ChallengeRequest, ChallengeResponse, LoginRequest, LoginResponse
from pogpp.services.auth.service import ChallengeStore, WalletAuthService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    ["SERVICE_NAME", "POSTGRES_DSN", "REDIS_URL", "CHALLENGE_TTL_SECONDS"],
)
rdb = redis.Redis.from_url(settings.redis_url, decode_responses=True)
service = WalletAuthService(SessionLocal, ChallengeStore(rdb), service_name=settings.service_name)

app = FastAPI(title="POGPP Auth")
instrument_app(app)
install_request_metrics(app)


@app.post("/auth/challenge", response_model=ChallengeResponse)
def challenge(req: ChallengeRequest, x_api_key: str | None = Header(default=None)):
    """Issue a one-time message for the wallet to sign."""

    enforce_api_key(x_api_key)
    try:
        issued, expires_at = service.issue_challenge(req.wallet_address)
    except PogppError as exc:
        raise as_http_error(exc) from exc
    return ChallengeResponse(
        wallet_address=issued.address, nonce=issued.nonce, message=issued.message, expires_at=expires_at
    )


@app.post("/auth/login", response_model=LoginResponse)
def login(req: LoginRequest, x_api_key: str | None = Header(default=None)):
    enforce_api_key(x_api_key)
    try:
        user, created = service.login(req.wallet_address, req.nonce, req.signature)
    except PogppError as exc:
        raise as_http_error(exc) from exc
    return LoginResponse(user_id=user.user_id, wallet_address=user.wallet_address, created=created)


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health check endpoint."""

    return {"ok": True}
