"""Visit admission and integrity verification.

Admission runs strictly in order: coordinate/accuracy/timestamp validation,
user lookup, recency duplicate check, fingerprint duplicate check, off-box
payload write, insert. Cheap rejections come before the content-store write;
the fingerprint is only computed for validated input.

The unique index on `visits.fingerprint` is the authoritative race guard. The
explicit checks are fast paths; an index violation on insert is reported as
the same typed `DuplicateFingerprint` outcome.
"""

from datetime import datetime, timedelta, timezone

from sqlalchemy import distinct, func, select, update
from sqlalchemy.exc import IntegrityError

from pogpp.common.config import settings
from pogpp.common.content_store import ContentMissing
from pogpp.common.errors import (
    DuplicateFingerprint,
    DuplicateVisit,
    InsufficientAccuracy,
    IntegrityMismatch,
    InvalidLocation,
    InvalidTimestamp,
    UserNotFound,
    VisitNotFound,
    VisitNotPending,
)
from pogpp.common.fingerprint import (
    build_visit_payload,
    compute_fingerprint,
    normalize_timestamp,
    parse_timestamp,
    verify_integrity,
)
from pogpp.common.geo import (
    CircleFence,
    Point,
    center_point,
    nearest_point,
    validate_accuracy,
    validate_coordinates,
    within_geofence,
)
from pogpp.common.logging import logger, user_id_ctx, visit_id_ctx
from pogpp.common.metrics import visit_admissions_total, visit_verifications_total
from pogpp.common.outbox import enqueue_event
from pogpp.common.state_machine import VISIT_TRANSITIONS, validate_transition
from pogpp.common.tracing import span
from pogpp.services.auth.models import User
from pogpp.services.visits.models import Visit, VisitOutboxEvent, VisitTimeline
from pogpp.services.visits.schemas import VisitAttempt, VisitPrecheckRequest, VisitPrecheckResponse

RECENT_VISITS_WINDOW = timedelta(days=7)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VisitAdmissionService:
    """Owns the visit state machine: admission, verification, moderation."""

    def __init__(
        self,
        session_factory,
        content_store,
        service_name: str = "visits",
        duplicate_window: timedelta | None = None,
        max_accuracy_meters: float | None = None,
        max_clock_skew: timedelta | None = None,
        clock=_utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.content_store = content_store
        self.service_name = service_name
        self.duplicate_window = (
            duplicate_window
            if duplicate_window is not None
            else timedelta(minutes=settings.visit_duplicate_window_minutes)
        )
        self.max_accuracy_meters = (
            max_accuracy_meters if max_accuracy_meters is not None else settings.max_gps_accuracy_meters
        )
        self.max_clock_skew = (
            max_clock_skew if max_clock_skew is not None else timedelta(seconds=settings.max_clock_skew_seconds)
        )
        self.clock = clock

    def _rejected(self, stage: str, outcome: str, detail: str) -> None:
        visit_admissions_total.labels(service=self.service_name, outcome=outcome).inc()
        logger.warning("visit admission rejected stage=%s outcome=%s detail=%s", stage, outcome, detail)

    def _validate(self, attempt: VisitAttempt, now: datetime) -> datetime:
        """Input checks; returns the visit timestamp (UTC, millisecond precision)."""

        location = validate_coordinates(attempt.latitude, attempt.longitude)
        if not location.ok:
            self._rejected("received", "invalid_location", location.reason)
            raise InvalidLocation(f"invalid GPS coordinates: {location.reason}", reason=location.reason)

        if attempt.accuracy_meters is not None and not validate_accuracy(
            attempt.accuracy_meters, self.max_accuracy_meters
        ):
            self._rejected("received", "insufficient_accuracy", str(attempt.accuracy_meters))
            raise InsufficientAccuracy(
                f"GPS accuracy {attempt.accuracy_meters}m exceeds {self.max_accuracy_meters}m",
                accuracy_meters=attempt.accuracy_meters,
                max_allowed=self.max_accuracy_meters,
            )

        timestamp = parse_timestamp(attempt.claimed_timestamp or now)
        if timestamp > now + self.max_clock_skew:
            self._rejected("received", "invalid_timestamp", timestamp.isoformat())
            raise InvalidTimestamp("visit timestamp is in the future", timestamp=timestamp.isoformat())
        # Store exactly what the fingerprint covers.
        return parse_timestamp(normalize_timestamp(timestamp))

    def submit_visit(self, attempt: VisitAttempt) -> Visit:
        """Admit a captured visit and store it as `pending`."""

        with span("visits.submit", user_id=attempt.user_id, nfc_tag_id=attempt.nfc_tag_id):
            return self._admit(attempt)

    def _admit(self, attempt: VisitAttempt) -> Visit:
        user_id_ctx.set(attempt.user_id)
        now = self.clock()
        timestamp = self._validate(attempt, now)

        with self.session_factory() as db:
            if db.get(User, attempt.user_id) is None:
                self._rejected("received", "unknown_user", attempt.user_id)
                raise UserNotFound("unknown user", user_id=attempt.user_id)
            if self.duplicate_window > timedelta(0):
                recent = db.execute(
                    select(Visit.visit_id)
                    .where(
                        Visit.user_id == attempt.user_id,
                        Visit.nfc_tag_id == attempt.nfc_tag_id,
                        Visit.created_at >= now - self.duplicate_window,
                    )
                    .limit(1)
                ).scalar_one_or_none()
                if recent is not None:
                    self._rejected("pending_duplicate_check", "duplicate_visit", recent)
                    raise DuplicateVisit(
                        "you already visited this location recently",
                        existing_visit_id=recent,
                        window_minutes=int(self.duplicate_window.total_seconds() // 60),
                    )

            fingerprint = compute_fingerprint(
                attempt.user_id, attempt.nfc_tag_id, attempt.latitude, attempt.longitude, timestamp
            )
            existing = db.execute(
                select(Visit.visit_id).where(Visit.fingerprint == fingerprint)
            ).scalar_one_or_none()
            if existing is not None:
                self._rejected("pending_duplicate_check", "duplicate_fingerprint", existing)
                raise DuplicateFingerprint("identical visit already recorded", existing_visit_id=existing)

        payload = build_visit_payload(
            attempt.user_id,
            attempt.nfc_tag_id,
            attempt.latitude,
            attempt.longitude,
            timestamp,
            location_name=attempt.location_name,
            description=attempt.description,
            accuracy_meters=attempt.accuracy_meters,
        )
        content_ref = self.content_store.put(payload)

        with self.session_factory() as db:
            visit = Visit(
                user_id=attempt.user_id,
                nfc_tag_id=attempt.nfc_tag_id,
                latitude=attempt.latitude,
                longitude=attempt.longitude,
                accuracy_meters=attempt.accuracy_meters,
                location_name=attempt.location_name,
                description=attempt.description,
                timestamp=timestamp,
                fingerprint=fingerprint,
                content_ref=content_ref,
                status="pending",
                state_version=0,
                is_verified=False,
                created_at=now,
            )
            db.add(visit)
            try:
                db.flush()
            except IntegrityError:
                db.rollback()
                # Lost the race to a concurrent identical submission.
                winner = db.execute(
                    select(Visit.visit_id).where(Visit.fingerprint == fingerprint)
                ).scalar_one_or_none()
                if winner is None:
                    raise
                self._rejected("admitted", "duplicate_fingerprint", winner)
                raise DuplicateFingerprint("identical visit already recorded", existing_visit_id=winner)
            db.add(
                VisitTimeline(
                    visit_id=visit.visit_id,
                    from_state=None,
                    to_state="pending",
                    reason="visit_submitted",
                )
            )
            enqueue_event(
                db,
                VisitOutboxEvent,
                "visit",
                visit.visit_id,
                "visits.submitted",
                {
                    "user_id": visit.user_id,
                    "nfc_tag_id": visit.nfc_tag_id,
                    "fingerprint": fingerprint,
                    "content_ref": content_ref,
                },
            )
            db.commit()

        visit_id_ctx.set(visit.visit_id)
        visit_admissions_total.labels(service=self.service_name, outcome="admitted").inc()
        logger.info("visit stored visit_id=%s fingerprint=%s content_ref=%s", visit.visit_id, fingerprint, content_ref)
        return visit

    def _transition(self, db, visit: Visit, new_status: str, reason: str) -> None:
        """Apply one validated transition guarded by `(status, state_version)`."""

        validate_transition(visit.status, new_status, VISIT_TRANSITIONS)
        from_status = visit.status
        current_version = visit.state_version
        now = self.clock()
        values = {"status": new_status, "state_version": current_version + 1, "updated_at": now}
        if new_status == "verified":
            values.update(is_verified=True, verified_at=now)

        result = db.execute(
            update(Visit)
            .where(
                Visit.visit_id == visit.visit_id,
                Visit.status == from_status,
                Visit.state_version == current_version,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise VisitNotPending(
                f"concurrent update on visit {visit.visit_id} (expected version {current_version})",
                visit_id=visit.visit_id,
            )
        for key, value in values.items():
            setattr(visit, key, value)
        db.add(
            VisitTimeline(
                visit_id=visit.visit_id,
                from_state=from_status,
                to_state=new_status,
                reason=reason,
            )
        )

    def _load(self, db, visit_id: str, user_id: str | None = None) -> Visit:
        visit = db.get(Visit, visit_id)
        if visit is None or (user_id is not None and visit.user_id != user_id):
            raise VisitNotFound("visit not found", visit_id=visit_id)
        return visit

    def verify_visit(self, visit_id: str, user_id: str | None = None) -> Visit:
        """Re-derive the fingerprint from the stored payload and settle the visit.

        Match: `pending -> verified`. Mismatch or missing payload: the visit is
        flagged and `IntegrityMismatch` is raised; it is never silently passed.
        """

        with span("visits.verify", visit_id=visit_id):
            return self._verify(visit_id, user_id)

    def _verify(self, visit_id: str, user_id: str | None) -> Visit:
        visit_id_ctx.set(visit_id)
        with self.session_factory() as db:
            visit = self._load(db, visit_id, user_id)
            if visit.status != "pending":
                raise VisitNotPending(f"visit already {visit.status}", visit_id=visit_id, status=visit.status)
            content_ref = visit.content_ref
            fingerprint = visit.fingerprint

        reason = "integrity_mismatch"
        if content_ref is None:
            intact = False
            reason = "payload_missing"
        else:
            try:
                raw = self.content_store.get(content_ref)
            except ContentMissing:
                raw = None
                reason = "payload_missing"
            intact = raw is not None and verify_integrity(raw, fingerprint)

        with self.session_factory() as db:
            visit = self._load(db, visit_id, user_id)
            if visit.status != "pending":
                raise VisitNotPending(f"visit already {visit.status}", visit_id=visit_id, status=visit.status)
            if intact:
                self._transition(db, visit, "verified", reason="integrity_verified")
                enqueue_event(
                    db,
                    VisitOutboxEvent,
                    "visit",
                    visit.visit_id,
                    "visits.verified",
                    {"user_id": visit.user_id, "nfc_tag_id": visit.nfc_tag_id, "fingerprint": fingerprint},
                )
                db.commit()
                visit_verifications_total.labels(service=self.service_name, outcome="verified").inc()
                logger.info("visit verified visit_id=%s", visit_id)
                return visit

            self._transition(db, visit, "flagged", reason=reason)
            enqueue_event(
                db,
                VisitOutboxEvent,
                "visit",
                visit.visit_id,
                "visits.flagged",
                {"user_id": visit.user_id, "fingerprint": fingerprint, "content_ref": content_ref, "reason": reason},
            )
            db.commit()
        visit_verifications_total.labels(service=self.service_name, outcome="flagged").inc()
        logger.error("visit integrity check failed visit_id=%s reason=%s", visit_id, reason)
        raise IntegrityMismatch("visit data integrity check failed", visit_id=visit_id, reason=reason)

    def reject_visit(self, visit_id: str, reason: str) -> Visit:
        """Moderation: move a pending visit to `rejected`."""

        with self.session_factory() as db:
            visit = self._load(db, visit_id)
            if visit.status != "pending":
                raise VisitNotPending(f"visit already {visit.status}", visit_id=visit_id, status=visit.status)
            self._transition(db, visit, "rejected", reason=f"manual_reject:{reason}")
            enqueue_event(
                db,
                VisitOutboxEvent,
                "visit",
                visit.visit_id,
                "visits.rejected",
                {"user_id": visit.user_id, "reason": reason},
            )
            db.commit()
        logger.info("visit rejected visit_id=%s reason=%s", visit_id, reason)
        return visit

    def precheck_visit(self, req: VisitPrecheckRequest) -> VisitPrecheckResponse:
        """Dry-run the input checks without touching storage.

        With several expected locations the nearest one is the fence checked.
        """

        location = validate_coordinates(req.latitude, req.longitude)
        accuracy_ok = req.accuracy_meters is None or validate_accuracy(req.accuracy_meters, self.max_accuracy_meters)
        candidates = ([req.expected_location] if req.expected_location is not None else []) + list(
            req.expected_locations
        )
        proximity = True
        distance = None
        matched = None
        if candidates and location.ok:
            point = Point(req.latitude, req.longitude)
            centers = [Point(c.latitude, c.longitude) for c in candidates]
            matched, distance = nearest_point(point, centers)
            proximity = within_geofence(point, CircleFence(centers[matched], candidates[matched].radius_meters))
        elif candidates:
            proximity = False
        nfc_ok = bool(req.nfc_tag_id and req.nfc_tag_id.strip())
        return VisitPrecheckResponse(
            is_valid=location.ok and accuracy_ok and proximity and nfc_ok,
            gps=location.ok,
            gps_reason=location.reason,
            accuracy=accuracy_ok,
            proximity=proximity,
            nfc=nfc_ok,
            distance_meters=distance,
            matched_location=matched,
        )

    def get_visit(self, visit_id: str, user_id: str | None = None) -> Visit:
        with self.session_factory() as db:
            return self._load(db, visit_id, user_id)

    def list_user_visits(self, user_id: str, limit: int = 50) -> list[Visit]:
        with self.session_factory() as db:
            return (
                db.execute(
                    select(Visit).where(Visit.user_id == user_id).order_by(Visit.timestamp.desc()).limit(limit)
                )
                .scalars()
                .all()
            )

    def list_visits_for_tag(self, nfc_tag_id: str, limit: int = 20, offset: int = 0) -> tuple[list[Visit], int]:
        """One page of visits at a tag, newest first, with the total count."""

        with self.session_factory() as db:
            total = db.execute(
                select(func.count(Visit.visit_id)).where(Visit.nfc_tag_id == nfc_tag_id)
            ).scalar_one()
            visits = (
                db.execute(
                    select(Visit)
                    .where(Visit.nfc_tag_id == nfc_tag_id)
                    .order_by(Visit.timestamp.desc())
                    .limit(limit)
                    .offset(offset)
                )
                .scalars()
                .all()
            )
        return visits, int(total or 0)

    def tag_center(self, nfc_tag_id: str) -> Point | None:
        """Spherical mean of the verified visits at a tag; None before any is verified."""

        with self.session_factory() as db:
            rows = db.execute(
                select(Visit.latitude, Visit.longitude).where(
                    Visit.nfc_tag_id == nfc_tag_id, Visit.status == "verified"
                )
            ).all()
        return center_point([Point(lat, lon) for lat, lon in rows])

    def list_flagged(self, limit: int = 100) -> list[Visit]:
        """Review queue of visits that failed the integrity check."""

        with self.session_factory() as db:
            return (
                db.execute(
                    select(Visit).where(Visit.status == "flagged").order_by(Visit.updated_at.asc()).limit(limit)
                )
                .scalars()
                .all()
            )

    def user_visit_stats(self, user_id: str) -> dict[str, int]:
        since = self.clock() - RECENT_VISITS_WINDOW
        with self.session_factory() as db:
            total, unique = db.execute(
                select(func.count(Visit.visit_id), func.count(distinct(Visit.nfc_tag_id))).where(
                    Visit.user_id == user_id
                )
            ).one()
            verified = db.execute(
                select(func.count(Visit.visit_id)).where(Visit.user_id == user_id, Visit.is_verified.is_(True))
            ).scalar_one()
            recent = db.execute(
                select(func.count(Visit.visit_id)).where(Visit.user_id == user_id, Visit.timestamp >= since)
            ).scalar_one()
        return {
            "total_visits": int(total or 0),
            "verified_visits": int(verified or 0),
            "unique_locations": int(unique or 0),
            "recent_visits": int(recent or 0),
        }
