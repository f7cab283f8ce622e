"""Badge claims against a fake one-claim-per-pair ledger."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from pogpp.common.errors import (
    AlreadyClaimedLocally,
    AlreadyClaimedOnChain,
    ClaimInProgress,
    ClaimNotFound,
    MintFailed,
    MintIndeterminate,
    VisitNotFound,
    VisitNotVerified,
)
from pogpp.common.ledger import TX_PENDING, TX_REVERTED, LedgerError, LedgerTimeout
from pogpp.services.auth.models import User
from pogpp.services.badges.models import BadgeClaim, BadgeOutboxEvent
from pogpp.services.badges.service import BadgeClaimService, derive_badge_category_id
from pogpp.services.visits.schemas import VisitAttempt
from pogpp.services.visits.service import VisitAdmissionService

T0 = datetime(2024, 5, 24, 10, 0, 0, tzinfo=timezone.utc)


@pytest.fixture()
def visits(session_factory, content_store, clock, user):
    clock.advance(timedelta(minutes=1))
    return VisitAdmissionService(session_factory, content_store, clock=clock)


@pytest.fixture()
def badges(session_factory, ledger, content_store, clock):
    return BadgeClaimService(session_factory, ledger, content_store, clock=clock)


def _verified_visit(visits, tag="TAG-42", name="Duomo", minutes=0):
    visit = visits.submit_visit(
        VisitAttempt(
            user_id="u1",
            nfc_tag_id=tag,
            latitude=45.4642,
            longitude=9.19,
            claimed_timestamp=T0 + timedelta(minutes=minutes),
            location_name=name,
        )
    )
    return visits.verify_visit(visit.visit_id)


def _claims(session_factory):
    with session_factory() as db:
        return db.execute(select(BadgeClaim)).scalars().all()


def test_category_derivation_is_deterministic_and_bounded():
    first = derive_badge_category_id("TAG-42", "Duomo")
    assert first == derive_badge_category_id("TAG-42", "Duomo")
    assert 0 <= first < 10_000
    assert derive_badge_category_id("TAG-42", None) == derive_badge_category_id("TAG-42", "")
    assert 0 <= derive_badge_category_id("TAG-42", "Duomo", space=7) < 7


def test_claim_mints_once(badges, visits, ledger, wallet, session_factory, content_store):
    visit = _verified_visit(visits)

    claim = badges.claim_badge("u1", visit.visit_id)

    assert claim.status == "minted"
    assert claim.token_id == "1"
    assert claim.wallet_address == wallet.address.lower()
    assert claim.badge_category_id == derive_badge_category_id("TAG-42", "Duomo")
    assert claim.metadata_ref in content_store.objects
    assert ledger.last_token_uri == f"ipfs://{claim.metadata_ref}"
    assert ledger.mint_calls == 1
    with session_factory() as db:
        topics = db.execute(select(BadgeOutboxEvent.topic)).scalars().all()
    assert topics == ["badges.minted"]


def test_second_claim_for_same_visit_returns_existing(badges, visits, ledger):
    visit = _verified_visit(visits)
    first = badges.claim_badge("u1", visit.visit_id)

    with pytest.raises(AlreadyClaimedLocally) as exc_info:
        badges.claim_badge("u1", visit.visit_id)

    assert exc_info.value.claim.claim_id == first.claim_id
    assert exc_info.value.details["token_id"] == first.token_id
    assert ledger.mint_calls == 1


def test_same_category_from_another_visit_is_rejected(badges, visits, clock, ledger, session_factory):
    first = _verified_visit(visits)
    badges.claim_badge("u1", first.visit_id)
    clock.advance(timedelta(hours=1))
    second = _verified_visit(visits, minutes=60)

    with pytest.raises(AlreadyClaimedOnChain):
        badges.claim_badge("u1", second.visit_id)

    assert ledger.mint_calls == 1
    assert len(_claims(session_factory)) == 1


def test_unverified_or_foreign_visit(badges, visits):
    pending = visits.submit_visit(
        VisitAttempt(user_id="u1", nfc_tag_id="TAG-9", latitude=45.0, longitude=9.0, claimed_timestamp=T0)
    )
    with pytest.raises(VisitNotVerified):
        badges.claim_badge("u1", pending.visit_id)
    with pytest.raises(VisitNotFound):
        badges.claim_badge("u2", pending.visit_id)
    with pytest.raises(VisitNotFound):
        badges.claim_badge("u1", "missing")


def test_lost_race_on_ledger_is_success_equivalent(badges, visits, ledger, wallet):
    """Another instance minted the pair between our check and our mint."""

    visit = _verified_visit(visits)
    category = derive_badge_category_id("TAG-42", "Duomo")

    original_mint = ledger.mint

    def racing_mint(address, category_id, token_uri):
        ledger._record(address, category_id)
        return original_mint(address, category_id, token_uri)

    ledger.mint = racing_mint

    claim = badges.claim_badge("u1", visit.visit_id)

    assert claim.status == "minted"
    assert claim.token_id == ledger.find_claim(wallet.address, category).token_id


def test_already_claimed_on_chain_heals_local_record(badges, visits, ledger, wallet):
    """Claimed on chain with no local row: the record is rebuilt, nothing is minted."""

    visit = _verified_visit(visits)
    receipt = ledger._record(wallet.address, derive_badge_category_id("TAG-42", "Duomo"))

    claim = badges.claim_badge("u1", visit.visit_id)

    assert ledger.mint_calls == 0
    assert claim.status == "minted"
    assert claim.token_id == receipt.token_id
    assert claim.tx_ref == receipt.tx_ref


def test_lost_local_race_returns_winner(badges, visits, ledger, wallet, session_factory):
    """A concurrent claimer for the same visit commits first."""

    visit = _verified_visit(visits)
    category = derive_badge_category_id("TAG-42", "Duomo")

    def concurrent_winner():
        with session_factory() as db:
            db.add(
                BadgeClaim(
                    claim_id="winner",
                    user_id="u1",
                    visit_id=visit.visit_id,
                    badge_category_id=category,
                    wallet_address=wallet.address.lower(),
                    status="minted",
                    token_id="77",
                )
            )
            db.commit()

    ledger.on_has_claimed = concurrent_winner

    claim = badges.claim_badge("u1", visit.visit_id)

    assert claim.claim_id == "winner"
    assert claim.token_id == "77"
    assert ledger.mint_calls == 0


def test_definite_failure_releases_reservation(badges, visits, ledger, session_factory):
    visit = _verified_visit(visits)
    ledger.mint_error = LedgerError("execution reverted: paused")

    with pytest.raises(MintFailed):
        badges.claim_badge("u1", visit.visit_id)

    assert _claims(session_factory) == []
    # Released reservations can be claimed again.
    assert badges.claim_badge("u1", visit.visit_id).status == "minted"


def test_timeout_keeps_pending_then_resumes(badges, visits, ledger, session_factory):
    """The mint landed but the receipt never arrived; the retry heals from the ledger."""

    visit = _verified_visit(visits)
    ledger.mint_error = LedgerTimeout("receipt timeout", tx_ref="0xabc")
    ledger.land = True

    with pytest.raises(MintIndeterminate):
        badges.claim_badge("u1", visit.visit_id)

    (pending,) = _claims(session_factory)
    assert pending.status == "pending"
    assert pending.tx_ref == "0xabc"

    claim = badges.claim_badge("u1", visit.visit_id)

    assert claim.claim_id == pending.claim_id
    assert claim.status == "minted"
    assert claim.token_id == "1"
    assert ledger.mint_calls == 1



def test_concurrent_claim_waits_for_in_flight_mint(badges, visits, ledger):
    """A second request for the same visit while the first is minting does not mint again."""

    visit = _verified_visit(visits)
    original_mint = ledger.mint
    second = []

    def mint_with_concurrent_request(address, category_id, token_uri):
        with pytest.raises(ClaimInProgress) as exc_info:
            badges.claim_badge("u1", visit.visit_id)
        second.append(exc_info.value)
        return original_mint(address, category_id, token_uri)

    ledger.mint = mint_with_concurrent_request

    claim = badges.claim_badge("u1", visit.visit_id)

    assert claim.status == "minted"
    assert ledger.mint_calls == 1
    assert second[0].details["claim_id"] == claim.claim_id


def test_fresh_pending_after_timeout_is_not_reminted(badges, visits, ledger, session_factory):
    visit = _verified_visit(visits)
    ledger.mint_error = LedgerTimeout("receipt timeout", tx_ref="0xabc")

    with pytest.raises(MintIndeterminate):
        badges.claim_badge("u1", visit.visit_id)
    with pytest.raises(ClaimInProgress):
        badges.claim_badge("u1", visit.visit_id)

    assert ledger.mint_calls == 1
    assert [c.status for c in _claims(session_factory)] == ["pending"]


def test_stale_pending_with_unsettled_transaction_is_held(badges, visits, ledger, clock, session_factory):
    visit = _verified_visit(visits)
    ledger.mint_error = LedgerTimeout("receipt timeout", tx_ref="0xabc")
    with pytest.raises(MintIndeterminate):
        badges.claim_badge("u1", visit.visit_id)

    clock.advance(timedelta(minutes=10))
    ledger.tx_states["0xabc"] = TX_PENDING
    with pytest.raises(MintIndeterminate) as exc_info:
        badges.claim_badge("u1", visit.visit_id)

    assert exc_info.value.details["tx_ref"] == "0xabc"
    assert ledger.status_calls == ["0xabc"]
    assert ledger.mint_calls == 1
    assert badges.reconcile_pending() == {"examined": 1, "minted": 0, "released": 0, "skipped": 1}
    assert [c.status for c in _claims(session_factory)] == ["pending"]


def test_stale_pending_with_failed_transaction_is_reminted(badges, visits, ledger, clock):
    visit = _verified_visit(visits)
    ledger.mint_error = LedgerTimeout("receipt timeout", tx_ref="0xabc")
    with pytest.raises(MintIndeterminate) as exc_info:
        badges.claim_badge("u1", visit.visit_id)

    clock.advance(timedelta(minutes=10))
    ledger.tx_states["0xabc"] = TX_REVERTED
    claim = badges.claim_badge("u1", visit.visit_id)

    assert claim.claim_id == exc_info.value.details["claim_id"]
    assert claim.status == "minted"
    assert ledger.mint_calls == 2

def test_reconcile_pending(badges, visits, ledger, clock, session_factory):
    landed = _verified_visit(visits)
    lost = _verified_visit(visits, tag="TAG-7", name="Brera")

    ledger.mint_error = LedgerTimeout("receipt timeout")
    ledger.land = True
    with pytest.raises(MintIndeterminate):
        badges.claim_badge("u1", landed.visit_id)
    ledger.mint_error = LedgerTimeout("broadcast outcome unknown")
    ledger.land = False
    with pytest.raises(MintIndeterminate):
        badges.claim_badge("u1", lost.visit_id)

    assert badges.reconcile_pending() == {"examined": 0, "minted": 0, "released": 0, "skipped": 0}

    clock.advance(timedelta(minutes=10))
    summary = badges.reconcile_pending()

    assert summary == {"examined": 2, "minted": 1, "released": 1, "skipped": 0}
    assert badges.claim_for_visit(landed.visit_id).status == "minted"
    assert badges.claim_for_visit(lost.visit_id) is None


def test_lookup_and_ownership(badges, visits, wallet):
    visit = _verified_visit(visits)
    claim = badges.claim_badge("u1", visit.visit_id)

    assert badges.get_claim(claim.claim_id, "u1").token_id == claim.token_id
    assert [c.claim_id for c in badges.list_user_claims("u1")] == [claim.claim_id]
    with pytest.raises(ClaimNotFound):
        badges.get_claim(claim.claim_id, "u2")

    result = badges.verify_badge(claim.claim_id)
    assert result["is_owner"]
    assert result["owner"] == wallet.address.lower()


def test_claim_for_visit_is_scoped_to_owner(badges, visits):
    visit = _verified_visit(visits)
    claim = badges.claim_badge("u1", visit.visit_id)

    assert badges.claim_for_visit(visit.visit_id, "u1").claim_id == claim.claim_id
    assert badges.claim_for_visit(visit.visit_id, "u2") is None
    assert badges.claim_for_visit("missing") is None


def test_leaderboard_and_collection_stats(badges, visits, clock, session_factory):
    with session_factory() as db:
        db.add(User(user_id="u2", wallet_address="0x" + "22" * 20, created_at=T0))
        db.add(
            BadgeClaim(
                user_id="u2",
                visit_id="other-visit",
                badge_category_id=10_001,
                wallet_address="0x" + "22" * 20,
                status="minted",
                token_id="50",
                minted_at=T0 - timedelta(days=30),
            )
        )
        db.commit()
    first = _verified_visit(visits)
    badges.claim_badge("u1", first.visit_id)
    clock.advance(timedelta(hours=1))
    second = _verified_visit(visits, tag="TAG-7", name="Brera", minutes=60)
    badges.claim_badge("u1", second.visit_id)

    board = badges.leaderboard()

    assert [(row["rank"], row["user_id"], row["badge_count"]) for row in board] == [(1, "u1", 2), (2, "u2", 1)]
    assert badges.leaderboard(limit=1)[0]["user_id"] == "u1"
    assert badges.collection_stats() == {
        "total_badges": 3,
        "unique_holders": 2,
        "badge_categories": 3,
        "recent_badges": 2,
    }
