"""Wallet sign-in: one-time challenges and signature-checked login.

A challenge is bound to the wallet address and a nonce, lives in Redis for
`challenge_ttl_seconds`, and is consumed by the first login attempt that
names it, whether or not the signature checks out.
"""

from datetime import datetime, timedelta, timezone

import redis
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from pogpp.common.config import settings
from pogpp.common.errors import ChallengeExpired, InvalidSignature, InvalidWalletAddress
from pogpp.common.logging import logger, user_id_ctx
from pogpp.common.metrics import wallet_logins_total
from pogpp.common.wallet import Challenge, generate_challenge, is_valid_address, verify_signature
from pogpp.services.auth.models import User


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChallengeStore:
    """Outstanding sign-in challenges keyed by address and nonce."""

    def __init__(self, rdb: redis.Redis, ttl_seconds: int | None = None) -> None:
        self.rdb = rdb
        self.ttl_seconds = ttl_seconds or settings.challenge_ttl_seconds

    def _key(self, address: str, nonce: str) -> str:
        return f"challenge:{address.lower()}:{nonce}"

    def save(self, challenge: Challenge) -> None:
        self.rdb.setex(self._key(challenge.address, challenge.nonce), self.ttl_seconds, challenge.message)

    def consume(self, address: str, nonce: str) -> str | None:
        """Return the challenge message once; later calls get None."""

        message = self.rdb.getdel(self._key(address, nonce))
        if isinstance(message, bytes):
            message = message.decode("utf-8")
        return message


class WalletAuthService:
    def __init__(self, session_factory, challenges: ChallengeStore, service_name: str = "auth", clock=_utcnow) -> None:
        self.session_factory = session_factory
        self.challenges = challenges
        self.service_name = service_name
        self.clock = clock

    def issue_challenge(self, address: str) -> tuple[Challenge, datetime]:
        """Create and remember a challenge; returns it with its expiry."""

        if not is_valid_address(address):
            raise InvalidWalletAddress("invalid wallet address", wallet_address=address)
        challenge = generate_challenge(address, now=self.clock())
        self.challenges.save(challenge)
        logger.info("wallet challenge issued address=%s", address)
        return challenge, challenge.issued_at + timedelta(seconds=self.challenges.ttl_seconds)

    def login(self, address: str, nonce: str, signature: str) -> tuple[User, bool]:
        """Verify a signed challenge and upsert the wallet's user.

        Returns the user and whether it was created by this login.
        """

        if not is_valid_address(address):
            raise InvalidWalletAddress("invalid wallet address", wallet_address=address)
        message = self.challenges.consume(address, nonce)
        if message is None:
            wallet_logins_total.labels(service=self.service_name, outcome="challenge_expired").inc()
            raise ChallengeExpired("challenge expired or already used")
        if not verify_signature(address, signature, message):
            wallet_logins_total.labels(service=self.service_name, outcome="invalid_signature").inc()
            logger.warning("wallet login rejected address=%s", address)
            raise InvalidSignature("signature does not match wallet address")

        wallet = address.lower()
        now = self.clock()
        created = False
        with self.session_factory() as db:
            user = db.execute(select(User).where(User.wallet_address == wallet)).scalar_one_or_none()
            if user is None:
                user = User(wallet_address=wallet, created_at=now)
                db.add(user)
                created = True
            user.last_login_at = now
            try:
                db.commit()
            except IntegrityError:
                # Concurrent first login for the same wallet.
                db.rollback()
                user = db.execute(select(User).where(User.wallet_address == wallet)).scalar_one()
                user.last_login_at = now
                db.commit()
                created = False

        user_id_ctx.set(user.user_id)
        wallet_logins_total.labels(service=self.service_name, outcome="success").inc()
        logger.info("wallet login user_id=%s created=%s", user.user_id, created)
        return user, created
