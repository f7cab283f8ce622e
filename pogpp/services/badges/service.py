"""Badge claims: at most one minted badge per (wallet, badge category).

The ledger decides. Local uniqueness on `(user_id, badge_category_id)` and on
`visit_id` stops duplicate reservations inside this system, but a claim made
elsewhere (another instance, a lost response, a direct contract call) only
shows up as `has_claimed` or an "already claimed" revert. Both are resolved by
reading the on-chain claim back into `badge_claims`.

A `pending` row is a reservation. It is released when the mint definitely
failed and kept when the outcome is unknown; `reconcile_pending` settles the
leftovers against the ledger.
"""

import json
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, distinct, func, or_, select
from sqlalchemy.exc import IntegrityError
from web3 import Web3

from pogpp.common.config import settings
from pogpp.common.content_store import token_uri
from pogpp.common.errors import (
    AlreadyClaimedLocally,
    AlreadyClaimedOnChain,
    ClaimInProgress,
    ClaimNotFound,
    LedgerUnavailable,
    MintFailed,
    MintIndeterminate,
    UserNotFound,
    VisitNotFound,
    VisitNotVerified,
)
from pogpp.common.fingerprint import normalize_timestamp
from pogpp.common.ledger import (
    TX_MINED,
    TX_PENDING,
    AlreadyClaimedError,
    LedgerError,
    LedgerTimeout,
    MintReceipt,
)
from pogpp.common.logging import logger, user_id_ctx, visit_id_ctx
from pogpp.common.metrics import badge_claims_total
from pogpp.common.outbox import enqueue_event
from pogpp.common.state_machine import CLAIM_TRANSITIONS, validate_transition
from pogpp.common.tracing import span
from pogpp.services.auth.models import User
from pogpp.services.badges.models import BadgeClaim, BadgeOutboxEvent
from pogpp.services.visits.models import Visit

BADGE_TYPE = "visit"
RECENT_BADGES_WINDOW = timedelta(days=7)


def derive_badge_category_id(nfc_tag_id: str, location_name: str | None, space: int | None = None) -> int:
    """Keccak-256 of tag + location name, first four bytes big-endian, mod `space`.

    Distinct locations can collide into one category.
    """

    space = space or settings.badge_category_space
    digest = Web3.keccak(text=f"{nfc_tag_id}{location_name or ''}")
    return int.from_bytes(bytes(digest[:4]), "big") % space


def build_badge_metadata(visit: dict, category_id: int) -> bytes:
    """ERC-721 metadata JSON for a visit badge."""

    location = visit["location_name"] or visit["nfc_tag_id"]
    timestamp = normalize_timestamp(visit["timestamp"])
    metadata = {
        "name": f"POGPP Badge - {location}",
        "description": f"Proof of presence at {location} on {timestamp}",
        "image": "",
        "attributes": [
            {"trait_type": "Location", "value": location},
            {"trait_type": "Coordinates", "value": f"{visit['latitude']}, {visit['longitude']}"},
            {"trait_type": "Visit Date", "value": timestamp[:10]},
            {"trait_type": "Badge Type", "value": BADGE_TYPE},
            {"trait_type": "NFC Tag ID", "value": visit["nfc_tag_id"]},
        ],
        "properties": {
            "visit_id": visit["visit_id"],
            "fingerprint": visit["fingerprint"],
            "content_ref": visit["content_ref"],
            "badge_category_id": category_id,
        },
    }
    return json.dumps(metadata, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BadgeClaimService:
    """Coordinates local claim records with the badge contract."""

    def __init__(
        self,
        session_factory,
        ledger,
        content_store,
        service_name: str = "badges",
        category_space: int | None = None,
        stale_after: timedelta | None = None,
        clock=_utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.ledger = ledger
        self.content_store = content_store
        self.service_name = service_name
        self.category_space = category_space or settings.badge_category_space
        self.stale_after = (
            stale_after if stale_after is not None else timedelta(seconds=settings.pending_claim_stale_seconds)
        )
        self.clock = clock

    def _outcome(self, outcome: str) -> None:
        badge_claims_total.labels(service=self.service_name, outcome=outcome).inc()

    def claim_badge(self, user_id: str, visit_id: str) -> BadgeClaim:
        """Mint the badge for a verified visit, or return/raise the existing claim."""

        with span("badges.claim", user_id=user_id, visit_id=visit_id):
            return self._claim(user_id, visit_id)

    def _claim(self, user_id: str, visit_id: str) -> BadgeClaim:
        user_id_ctx.set(user_id)
        visit_id_ctx.set(visit_id)
        with self.session_factory() as db:
            visit = db.get(Visit, visit_id)
            if visit is None or visit.user_id != user_id:
                raise VisitNotFound("visit not found", visit_id=visit_id)
            if visit.status != "verified":
                raise VisitNotVerified("visit must be verified before claiming a badge", status=visit.status)

            existing = db.execute(select(BadgeClaim).where(BadgeClaim.visit_id == visit_id)).scalar_one_or_none()
            if existing is not None and existing.status == "minted":
                self._outcome("already_claimed_locally")
                logger.info("badge already minted for visit claim_id=%s", existing.claim_id)
                raise AlreadyClaimedLocally(
                    "badge already minted for this visit",
                    claim=existing,
                    claim_id=existing.claim_id,
                    token_id=existing.token_id,
                )

            user = db.get(User, user_id)
            if user is None:
                raise UserNotFound("unknown user", user_id=user_id)
            wallet = user.wallet_address
            snapshot = {
                "visit_id": visit.visit_id,
                "nfc_tag_id": visit.nfc_tag_id,
                "location_name": visit.location_name,
                "latitude": visit.latitude,
                "longitude": visit.longitude,
                "timestamp": visit.timestamp,
                "fingerprint": visit.fingerprint,
                "content_ref": visit.content_ref,
            }
        category = derive_badge_category_id(snapshot["nfc_tag_id"], snapshot["location_name"], self.category_space)

        if self.ledger.has_claimed(wallet, category):
            return self._reconcile(user_id, visit_id, wallet, category)

        if existing is None:
            claim = self._reserve(user_id, visit_id, wallet, category)
            if claim.status == "minted":
                self._outcome("minted")
                return claim
            claim_id = claim.claim_id
        else:
            self._check_resumable(existing)
            claim_id = existing.claim_id
            logger.info("resuming stale badge claim claim_id=%s", claim_id)

        metadata_ref = self.content_store.put(build_badge_metadata(snapshot, category))

        # A concurrent claimer may have landed since the first read.
        if self.ledger.has_claimed(wallet, category):
            return self._reconcile(user_id, visit_id, wallet, category, metadata_ref=metadata_ref)

        try:
            with span("ledger.mint", badge_category_id=category, claim_id=claim_id):
                receipt = self.ledger.mint(wallet, category, token_uri(metadata_ref))
        except AlreadyClaimedError:
            logger.info("ledger reports pair already claimed category=%s", category)
            return self._reconcile(user_id, visit_id, wallet, category, metadata_ref=metadata_ref)
        except LedgerTimeout as exc:
            self._hold(claim_id, metadata_ref, exc.tx_ref)
            self._outcome("mint_indeterminate")
            logger.warning("badge mint outcome unknown claim_id=%s tx=%s: %s", claim_id, exc.tx_ref, exc)
            raise MintIndeterminate(
                "mint submitted but not confirmed; retry later", claim_id=claim_id, tx_ref=exc.tx_ref
            ) from exc
        except LedgerError as exc:
            self._release(claim_id)
            self._outcome("mint_failed")
            logger.exception("badge mint failed claim_id=%s", claim_id)
            raise MintFailed(f"badge mint failed: {exc}", claim_id=claim_id) from exc

        claim = self._record_minted(user_id, visit_id, wallet, category, receipt, metadata_ref, reconciled=False)
        self._outcome("minted")
        logger.info("badge minted claim_id=%s token_id=%s tx=%s", claim.claim_id, claim.token_id, claim.tx_ref)
        return claim

    def _is_stale(self, claim: BadgeClaim) -> bool:
        updated_at = claim.updated_at or claim.created_at
        if updated_at is None:
            return True
        if updated_at.tzinfo is None:
            updated_at = updated_at.replace(tzinfo=timezone.utc)
        return updated_at <= self.clock() - self.stale_after

    def _check_resumable(self, claim: BadgeClaim) -> None:
        """A pending reservation may be minted again only once its mint is known dead.

        Fresh reservations belong to a request that may still be minting. Stale
        ones holding a transaction are re-minted only when that transaction
        reverted or was dropped.
        """

        if not self._is_stale(claim):
            self._outcome("claim_in_progress")
            raise ClaimInProgress("a claim for this visit is already in progress", claim_id=claim.claim_id)
        if claim.tx_ref is None:
            return
        status = self.ledger.transaction_status(claim.tx_ref)
        if status in (TX_PENDING, TX_MINED):
            self._outcome("mint_indeterminate")
            logger.warning(
                "held mint transaction not settled claim_id=%s tx=%s status=%s", claim.claim_id, claim.tx_ref, status
            )
            raise MintIndeterminate(
                "previous mint transaction not settled; retry later", claim_id=claim.claim_id, tx_ref=claim.tx_ref
            )
        logger.info("held mint transaction %s claim_id=%s tx=%s", status, claim.claim_id, claim.tx_ref)

    def _reserve(self, user_id: str, visit_id: str, wallet: str, category: int) -> BadgeClaim:
        """Insert the pending reservation; on a lost race return or reject the winner."""

        now = self.clock()
        with self.session_factory() as db:
            claim = BadgeClaim(
                user_id=user_id,
                visit_id=visit_id,
                badge_category_id=category,
                wallet_address=wallet,
                status="pending",
                created_at=now,
                updated_at=now,
            )
            db.add(claim)
            try:
                db.commit()
                return claim
            except IntegrityError:
                db.rollback()
                winner = self._find_local(db, user_id, visit_id, category)
                if winner is None:
                    raise
        if winner.visit_id != visit_id:
            self._outcome("already_claimed_on_chain")
            raise AlreadyClaimedOnChain(
                "badge category already claimed with another visit", claim=winner, claim_id=winner.claim_id
            )
        if winner.status == "minted":
            return winner
        self._outcome("claim_in_progress")
        raise ClaimInProgress("a claim for this visit is already in progress", claim_id=winner.claim_id)

    def _find_local(self, db, user_id: str, visit_id: str, category: int) -> BadgeClaim | None:
        rows = (
            db.execute(
                select(BadgeClaim).where(
                    or_(
                        BadgeClaim.visit_id == visit_id,
                        (BadgeClaim.user_id == user_id) & (BadgeClaim.badge_category_id == category),
                    )
                )
            )
            .scalars()
            .all()
        )
        for row in rows:
            if row.visit_id == visit_id:
                return row
        return rows[0] if rows else None

    def _reconcile(
        self, user_id: str, visit_id: str, wallet: str, category: int, metadata_ref: str | None = None
    ) -> BadgeClaim:
        """The pair is claimed on chain: heal the local record for this visit."""

        with self.session_factory() as db:
            local = db.execute(
                select(BadgeClaim).where(BadgeClaim.user_id == user_id, BadgeClaim.badge_category_id == category)
            ).scalar_one_or_none()
        if local is not None and local.visit_id != visit_id:
            self._outcome("already_claimed_on_chain")
            logger.info("badge category already claimed with visit=%s", local.visit_id)
            raise AlreadyClaimedOnChain(
                "badge category already claimed with another visit", claim=local, claim_id=local.claim_id
            )

        receipt = self.ledger.find_claim(wallet, category)
        if receipt is None:
            logger.warning("claimed on chain but no claim event found wallet=%s category=%s", wallet, category)
            receipt = MintReceipt(token_id=None, tx_ref=None, contract_ref=None)
        claim = self._record_minted(user_id, visit_id, wallet, category, receipt, metadata_ref, reconciled=True)
        self._outcome("reconciled")
        logger.info("badge claim reconciled from ledger claim_id=%s token_id=%s", claim.claim_id, claim.token_id)
        return claim

    def _record_minted(
        self,
        user_id: str,
        visit_id: str,
        wallet: str,
        category: int,
        receipt: MintReceipt,
        metadata_ref: str | None,
        reconciled: bool,
    ) -> BadgeClaim:
        now = self.clock()
        with self.session_factory() as db:
            claim = db.execute(select(BadgeClaim).where(BadgeClaim.visit_id == visit_id)).scalar_one_or_none()
            if claim is None:
                claim = BadgeClaim(
                    user_id=user_id,
                    visit_id=visit_id,
                    badge_category_id=category,
                    wallet_address=wallet,
                    status="pending",
                    created_at=now,
                )
                db.add(claim)
            elif claim.status == "minted":
                return claim
            validate_transition(claim.status, "minted", CLAIM_TRANSITIONS)
            claim.status = "minted"
            claim.token_id = receipt.token_id
            claim.tx_ref = receipt.tx_ref or claim.tx_ref
            claim.contract_ref = receipt.contract_ref
            claim.metadata_ref = metadata_ref or claim.metadata_ref
            claim.minted_at = receipt.minted_at or now
            claim.updated_at = now
            try:
                db.flush()
            except IntegrityError:
                db.rollback()
                winner = self._find_local(db, user_id, visit_id, category)
                if winner is None:
                    raise
                if winner.visit_id == visit_id and winner.status == "minted":
                    return winner
                raise AlreadyClaimedOnChain(
                    "badge category already claimed with another visit", claim=winner, claim_id=winner.claim_id
                )
            enqueue_event(
                db,
                BadgeOutboxEvent,
                "badge_claim",
                claim.claim_id,
                "badges.minted",
                {
                    "user_id": user_id,
                    "visit_id": visit_id,
                    "badge_category_id": category,
                    "wallet_address": wallet,
                    "token_id": claim.token_id,
                    "tx_ref": claim.tx_ref,
                    "reconciled": reconciled,
                },
            )
            db.commit()
        return claim

    def _hold(self, claim_id: str, metadata_ref: str, tx_ref: str | None) -> None:
        with self.session_factory() as db:
            claim = db.get(BadgeClaim, claim_id)
            if claim is None or claim.status != "pending":
                return
            claim.metadata_ref = metadata_ref
            claim.tx_ref = tx_ref or claim.tx_ref
            claim.updated_at = self.clock()
            db.commit()

    def _release(self, claim_id: str) -> None:
        with self.session_factory() as db:
            db.execute(delete(BadgeClaim).where(BadgeClaim.claim_id == claim_id, BadgeClaim.status == "pending"))
            db.commit()

    def reconcile_pending(self, limit: int = 100) -> dict[str, int]:
        """Settle stale `pending` reservations against the ledger.

        Minted on chain: the local record is finalised. Not minted and no held
        transaction still in flight: the reservation is released so the user
        can claim again.
        """

        cutoff = self.clock() - self.stale_after
        with self.session_factory() as db:
            stale = (
                db.execute(
                    select(BadgeClaim)
                    .where(BadgeClaim.status == "pending", BadgeClaim.updated_at <= cutoff)
                    .order_by(BadgeClaim.created_at.asc())
                    .limit(limit)
                )
                .scalars()
                .all()
            )

        summary = {"examined": len(stale), "minted": 0, "released": 0, "skipped": 0}
        for claim in stale:
            try:
                claimed = self.ledger.has_claimed(claim.wallet_address, claim.badge_category_id)
                if claimed:
                    receipt = self.ledger.find_claim(claim.wallet_address, claim.badge_category_id)
                    self._record_minted(
                        claim.user_id,
                        claim.visit_id,
                        claim.wallet_address,
                        claim.badge_category_id,
                        receipt or MintReceipt(token_id=None, tx_ref=None, contract_ref=None),
                        None,
                        reconciled=True,
                    )
                    summary["minted"] += 1
                elif claim.tx_ref is not None and self.ledger.transaction_status(claim.tx_ref) in (
                    TX_PENDING,
                    TX_MINED,
                ):
                    logger.info("held mint transaction unsettled claim_id=%s tx=%s", claim.claim_id, claim.tx_ref)
                    summary["skipped"] += 1
                else:
                    self._release(claim.claim_id)
                    summary["released"] += 1
            except LedgerUnavailable:
                logger.exception("reconciliation skipped claim_id=%s", claim.claim_id)
                summary["skipped"] += 1
        logger.info("pending badge claims reconciled summary=%s", summary)
        return summary

    def get_claim(self, claim_id: str, user_id: str | None = None) -> BadgeClaim:
        with self.session_factory() as db:
            claim = db.get(BadgeClaim, claim_id)
        if claim is None or (user_id is not None and claim.user_id != user_id):
            raise ClaimNotFound("badge claim not found", claim_id=claim_id)
        return claim

    def claim_for_visit(self, visit_id: str, user_id: str | None = None) -> BadgeClaim | None:
        with self.session_factory() as db:
            claim = db.execute(select(BadgeClaim).where(BadgeClaim.visit_id == visit_id)).scalar_one_or_none()
        if claim is not None and user_id is not None and claim.user_id != user_id:
            return None
        return claim

    def leaderboard(self, limit: int = 10) -> list[dict]:
        """Users ranked by minted badge count; ties broken by user id."""

        badge_count = func.count(BadgeClaim.claim_id).label("badge_count")
        with self.session_factory() as db:
            rows = db.execute(
                select(BadgeClaim.user_id, User.wallet_address, badge_count)
                .join(User, User.user_id == BadgeClaim.user_id)
                .where(BadgeClaim.status == "minted")
                .group_by(BadgeClaim.user_id, User.wallet_address)
                .order_by(badge_count.desc(), BadgeClaim.user_id.asc())
                .limit(limit)
            ).all()
        return [
            {"rank": rank, "user_id": user_id, "wallet_address": wallet, "badge_count": int(count)}
            for rank, (user_id, wallet, count) in enumerate(rows, start=1)
        ]

    def collection_stats(self) -> dict[str, int]:
        """Totals over minted badges; `recent_badges` covers the last seven days."""

        since = self.clock() - RECENT_BADGES_WINDOW
        minted = BadgeClaim.status == "minted"
        with self.session_factory() as db:
            total, holders, categories = db.execute(
                select(
                    func.count(BadgeClaim.claim_id),
                    func.count(distinct(BadgeClaim.user_id)),
                    func.count(distinct(BadgeClaim.badge_category_id)),
                ).where(minted)
            ).one()
            recent = db.execute(
                select(func.count(BadgeClaim.claim_id)).where(minted, BadgeClaim.minted_at >= since)
            ).scalar_one()
        return {
            "total_badges": int(total or 0),
            "unique_holders": int(holders or 0),
            "badge_categories": int(categories or 0),
            "recent_badges": int(recent or 0),
        }

    def list_user_claims(self, user_id: str, limit: int = 50) -> list[BadgeClaim]:
        with self.session_factory() as db:
            return (
                db.execute(
                    select(BadgeClaim)
                    .where(BadgeClaim.user_id == user_id)
                    .order_by(BadgeClaim.created_at.desc())
                    .limit(limit)
                )
                .scalars()
                .all()
            )

    def verify_badge(self, claim_id: str, user_id: str | None = None) -> dict:
        """Check on chain that the claim's token is owned by the claim's wallet."""

        claim = self.get_claim(claim_id, user_id)
        owner = self.ledger.owner_of(claim.token_id) if claim.token_id is not None else None
        return {
            "claim_id": claim.claim_id,
            "token_id": claim.token_id,
            "owner": owner,
            "is_owner": owner is not None and owner.lower() == claim.wallet_address.lower(),
        }
