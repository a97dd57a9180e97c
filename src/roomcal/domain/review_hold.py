"""Review hold - advisory, time-limited "someone is reviewing this" marker.

A hold is two columns on the reservation row (reviewing_by,
review_expires_at). It never blocks reads or the version-checked update
path; it only tells other approvers that someone else has the request open.

- acquire_hold(): one conditional UPDATE takes the hold when it is free,
  expired, or already ours (re-entry refreshes the expiry)
- release_hold(): best effort, never raises
- expiry is lazy: an expired hold is simply treated as free at acquisition
"""

from __future__ import annotations

import math
import os
from dataclasses import dataclass
from datetime import datetime, timedelta

import psycopg2
from psycopg2.extensions import cursor as PgCursor

from roomcal.domain.concurrency import ReservationNotFound
from roomcal.infra.db import txn
from roomcal.infra.repositories import reservations_repository as repo
from roomcal.infra.time import utc_now
from roomcal.observability.logging import get_logger
from roomcal.observability.redaction import safe_log_context

logger = get_logger(__name__)

DEFAULT_HOLD_MINUTES = 15


def hold_duration_minutes() -> int:
    """Configured hold duration (REVIEW_HOLD_MINUTES, default 15)."""
    raw = os.environ.get("REVIEW_HOLD_MINUTES", "")
    try:
        value = int(raw)
    except ValueError:
        return DEFAULT_HOLD_MINUTES
    return value if value > 0 else DEFAULT_HOLD_MINUTES


@dataclass(frozen=True)
class HoldGrant:
    """Hold acquired (or refreshed).

    change_key is the reservation version at acquisition; the reviewer
    submits edits against it. degraded is True when storage was unavailable
    and the caller proceeds without a hold (change_key is then None).
    """

    expires_at: datetime
    duration_minutes: int
    change_key: str | None = None
    degraded: bool = False

    def to_dict(self) -> dict:
        return {
            "expires_at": self.expires_at.isoformat(),
            "duration_minutes": self.duration_minutes,
            "change_key": self.change_key,
            "degraded": self.degraded,
        }


@dataclass(frozen=True)
class HoldConflict:
    """Another reviewer holds an unexpired hold."""

    reviewing_by: str
    expires_at: datetime
    minutes_remaining: int

    def to_detail(self) -> dict:
        return {
            "code": "HOLD_CONFLICT",
            "message": f"This reservation is being reviewed by {self.reviewing_by}. "
                       f"Try again in {self.minutes_remaining} minute(s).",
            "reviewing_by": self.reviewing_by,
            "expires_at": self.expires_at.isoformat(),
            "minutes_remaining": self.minutes_remaining,
        }


def minutes_remaining(expires_at: datetime, now: datetime) -> int:
    """Whole minutes left on a hold, rounded up, never negative."""
    seconds = (expires_at - now).total_seconds()
    return max(0, math.ceil(seconds / 60))


def acquire_hold(
    reservation_id: str,
    reviewer: str,
    *,
    duration_minutes: int | None = None,
    now: datetime | None = None,
    cur: PgCursor | None = None,
) -> HoldGrant | HoldConflict:
    """Acquire or refresh the review hold on a reservation.

    Args:
        reservation_id: Reservation UUID.
        reviewer: Identity of the acquiring reviewer.
        duration_minutes: Hold length (default: REVIEW_HOLD_MINUTES).
        now: Current time (default: utc_now()).
        cur: Optional cursor to run inside an existing transaction.

    Returns:
        HoldGrant on success (degraded=True if storage failed),
        HoldConflict if someone else holds an unexpired hold.

    Raises:
        ReservationNotFound: If the reservation does not exist.
    """
    if duration_minutes is None:
        duration_minutes = hold_duration_minutes()
    if now is None:
        now = utc_now()
    expires_at = now + timedelta(minutes=duration_minutes)

    def _do(c: PgCursor) -> HoldGrant | HoldConflict:
        stored = repo.acquire_review_hold(
            c,
            reservation_id=reservation_id,
            reviewer=reviewer,
            expires_at=expires_at,
            now=now,
        )
        if stored is not None:
            return HoldGrant(
                expires_at=stored[0], duration_minutes=duration_minutes, change_key=stored[1]
            )

        hold = repo.get_review_hold(c, reservation_id)
        if hold is None:
            raise ReservationNotFound(reservation_id)

        reviewing_by, held_until = hold
        if reviewing_by is None or held_until is None or held_until <= now:
            # Released or expired between the UPDATE and this read.
            stored = repo.acquire_review_hold(
                c,
                reservation_id=reservation_id,
                reviewer=reviewer,
                expires_at=expires_at,
                now=now,
            )
            if stored is not None:
                return HoldGrant(
                    expires_at=stored[0], duration_minutes=duration_minutes, change_key=stored[1]
                )
            hold = repo.get_review_hold(c, reservation_id)
            if hold is None:
                raise ReservationNotFound(reservation_id)
            reviewing_by, held_until = hold

        return HoldConflict(
            reviewing_by=reviewing_by,
            expires_at=held_until,
            minutes_remaining=minutes_remaining(held_until, now),
        )

    try:
        if cur is not None:
            result = _do(cur)
        else:
            with txn() as c:
                result = _do(c)
    except (psycopg2.Error, RuntimeError) as exc:
        logger.warning(
            "review hold acquisition failed, proceeding without hold",
            extra={
                "extra_fields": safe_log_context(
                    reservation_id=reservation_id,
                    error_type=type(exc).__name__,
                )
            },
        )
        return HoldGrant(expires_at=expires_at, duration_minutes=duration_minutes, degraded=True)

    if isinstance(result, HoldConflict):
        logger.info(
            "review hold conflict",
            extra={
                "extra_fields": safe_log_context(
                    reservation_id=reservation_id,
                    minutes_remaining=result.minutes_remaining,
                )
            },
        )
    return result


def release_hold(
    reservation_id: str,
    reviewer: str,
    *,
    now: datetime | None = None,
    cur: PgCursor | None = None,
) -> None:
    """Clear the review hold. Best effort: never raises.

    Only the holder's hold (or an expired one) is cleared; releasing a live
    hold you do not own is a no-op.
    """
    if now is None:
        now = utc_now()
    try:
        if cur is not None:
            repo.clear_review_hold(cur, reservation_id, reviewer, now)
        else:
            with txn() as c:
                repo.clear_review_hold(c, reservation_id, reviewer, now)
    except Exception as exc:
        logger.warning(
            "review hold release failed",
            extra={
                "extra_fields": safe_log_context(
                    reservation_id=reservation_id,
                    reviewer=reviewer,
                    error_type=type(exc).__name__,
                )
            },
        )
