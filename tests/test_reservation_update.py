"""Tests for the version-checked update path."""

from __future__ import annotations

import threading
from unittest.mock import MagicMock

import pytest

from roomcal.domain.concurrency import (
    ReservationNotFound,
    VersionConflict,
    build_version_conflict,
    new_change_key,
)
from roomcal.domain.reservation_update import (
    NotEditableError,
    UnknownFieldError,
    UpdateResult,
    update_reservation,
)
from roomcal.domain.review_hold import acquire_hold


class TestUpdateReservation:
    def test_success_rotates_change_key(self, store):
        r = store.seed(change_key="ck-1")

        result = update_reservation(r["id"], "ck-1", {"attendee_count": 75}, modified_by="approver-1")

        assert isinstance(result, UpdateResult)
        assert result.change_key != "ck-1"
        assert store.rows[r["id"]]["change_key"] == result.change_key
        assert store.rows[r["id"]]["attendee_count"] == 75
        assert store.rows[r["id"]]["last_modified_by"] == "approver-1"

    def test_success_reports_notifiable_changes(self, store):
        r = store.seed(change_key="ck-1", attendee_count=50)

        result = update_reservation(
            r["id"], "ck-1",
            {"attendee_count": 75, "event_title": "Board Meeting", "door_notes": "side door"},
            modified_by="approver-1",
        )

        assert [c.to_dict() for c in result.changes] == [
            {"field": "attendee_count", "display_name": "Expected Attendees",
             "old_value": 50, "new_value": 75}
        ]

    def test_success_releases_review_hold(self, store):
        r = store.seed(change_key="ck-1")
        acquire_hold(r["id"], "alice@example.org")

        result = update_reservation(r["id"], "ck-1", {"attendee_count": 75}, modified_by="a")

        assert isinstance(result, UpdateResult)
        assert store.rows[r["id"]]["reviewing_by"] is None
        assert store.rows[r["id"]]["review_expires_at"] is None

    def test_conflict_keeps_review_hold(self, store):
        r = store.seed(change_key="ck-2")
        acquire_hold(r["id"], "alice@example.org")

        result = update_reservation(r["id"], "ck-1", {"attendee_count": 75}, modified_by="b")

        assert isinstance(result, VersionConflict)
        assert store.rows[r["id"]]["reviewing_by"] == "alice@example.org"

    def test_explicit_clear_of_list_field_stores_empty_list(self, store):
        r = store.seed(change_key="ck-1", locations=["loc-1"])

        result = update_reservation(
            r["id"], "ck-1", {"locations": None, "is_offsite": None}, modified_by="a"
        )

        assert result.reservation["locations"] == []
        assert result.reservation["is_offsite"] is False
        assert [c.field for c in result.changes] == ["locations"]

    def test_revision_recorded_for_new_key(self, store):
        r = store.seed(change_key="ck-1")
        result = update_reservation(r["id"], "ck-1", {"attendee_count": 75}, modified_by="a")
        assert store.revisions[(r["id"], result.change_key)]["attendee_count"] == 75

    def test_stale_key_returns_conflict_and_writes_nothing(self, store):
        r = store.seed(change_key="ck-1")
        first = update_reservation(r["id"], "ck-1", {"attendee_count": 75}, modified_by="a")

        result = update_reservation(r["id"], "ck-1", {"event_title": "Other"}, modified_by="b")

        assert isinstance(result, VersionConflict)
        assert result.current_change_key == first.change_key
        assert result.last_modified_by == "a"
        assert store.rows[r["id"]]["event_title"] == "Board Meeting"

    def test_conflict_lists_changes_since_base(self, store):
        r = store.seed(change_key="ck-1", attendee_count=50)
        update_reservation(r["id"], "ck-1", {"attendee_count": 75}, modified_by="a")

        result = update_reservation(r["id"], "ck-1", {"setup_time": "08:00"}, modified_by="b")

        assert [(c.field, c.old_value, c.new_value) for c in result.changes] == [
            ("attendee_count", 50, 75)
        ]

    def test_conflict_with_unknown_base_diffs_submitted_values(self, store):
        r = store.seed(change_key="ck-2", attendee_count=75)

        result = update_reservation(r["id"], "never-issued", {"attendee_count": 50}, modified_by="b")

        assert isinstance(result, VersionConflict)
        assert [(c.field, c.old_value, c.new_value) for c in result.changes] == [
            ("attendee_count", 50, 75)
        ]

    def test_not_found(self, store):
        with pytest.raises(ReservationNotFound):
            update_reservation("missing", "ck", {"attendee_count": 1}, modified_by="a")

    def test_unknown_field_rejected(self, store):
        r = store.seed()
        with pytest.raises(UnknownFieldError) as exc:
            update_reservation(r["id"], "ck-1", {"change_key": "x"}, modified_by="a")
        assert exc.value.fields == ["change_key"]

    def test_status_not_editable(self, store):
        r = store.seed(change_key="ck-1", status="cancelled")
        with pytest.raises(NotEditableError):
            update_reservation(r["id"], "ck-1", {"attendee_count": 1}, modified_by="a")

    def test_equal_values_with_stale_token_still_conflict(self, store):
        r = store.seed(change_key="ck-1", attendee_count=50)
        update_reservation(r["id"], "ck-1", {"attendee_count": 50}, modified_by="a")

        result = update_reservation(r["id"], "ck-1", {"attendee_count": 50}, modified_by="b")

        assert isinstance(result, VersionConflict)
        assert result.changes == []


class TestSequentialWriters:
    def test_a_then_b_then_stale_a(self, store):
        r = store.seed(change_key="ck-1")

        a1 = update_reservation(r["id"], "ck-1", {"attendee_count": 60}, modified_by="A")
        b1 = update_reservation(r["id"], a1.change_key, {"attendee_count": 70}, modified_by="B")
        stale = update_reservation(r["id"], a1.change_key, {"attendee_count": 80}, modified_by="A")

        assert isinstance(b1, UpdateResult)
        assert isinstance(stale, VersionConflict)
        assert stale.current_change_key == b1.change_key
        assert store.rows[r["id"]]["attendee_count"] == 70

    def test_concurrent_writers_same_token_one_wins(self, store):
        r = store.seed(change_key="ck-1")
        writers = [f"approver-{i}" for i in range(6)]
        barrier = threading.Barrier(len(writers))
        results = {}

        def attempt(name):
            barrier.wait()
            results[name] = update_reservation(
                r["id"], "ck-1", {"assigned_to": name}, modified_by=name
            )

        threads = [threading.Thread(target=attempt, args=(w,)) for w in writers]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        winners = [n for n, res in results.items() if isinstance(res, UpdateResult)]
        assert len(winners) == 1
        assert store.rows[r["id"]]["assigned_to"] == winners[0]
        assert sum(isinstance(res, VersionConflict) for res in results.values()) == len(writers) - 1


class TestConflictDetail:
    def test_to_detail_shape(self, store):
        r = store.seed(change_key="ck-1", attendee_count=50)
        update_reservation(r["id"], "ck-1", {"attendee_count": 75}, modified_by="a")
        conflict = update_reservation(r["id"], "ck-1", {"attendee_count": 80}, modified_by="b")

        detail = conflict.to_detail()
        assert detail["code"] == "VERSION_CONFLICT"
        assert detail["current_change_key"] == store.rows[r["id"]]["change_key"]
        assert detail["current_status"] == "pending"
        assert detail["last_modified_by"] == "a"
        assert detail["changes"][0]["field"] == "attendee_count"

    def test_build_conflict_missing_reservation(self, store):
        with pytest.raises(ReservationNotFound):
            build_version_conflict(MagicMock(), reservation_id="gone", presented_change_key="ck")


class TestChangeKey:
    def test_keys_are_unique(self):
        keys = {new_change_key() for _ in range(200)}
        assert len(keys) == 200


class TestUpdateSql:
    """The write is a single UPDATE guarded on change_key."""

    def test_compare_and_swap_statement(self):
        from roomcal.infra.repositories.reservations_repository import update_if_current

        cur = MagicMock()
        cur.fetchone.return_value = None

        result = update_if_current(
            cur,
            reservation_id="res-1",
            expected_change_key="ck-1",
            new_change_key="ck-2",
            fields={"attendee_count": 75, "locations": ["loc-1"]},
            modified_by="a",
            expected_statuses=("pending", "approved"),
        )

        assert result is None
        sql, params = cur.execute.call_args[0]
        assert "WHERE id = %s AND change_key = %s AND status = ANY(%s)" in sql
        assert "locations = %s::jsonb" in sql
        assert params[-3:] == ["res-1", "ck-1", ["pending", "approved"]]

    def test_cleared_values_bound_for_not_null_columns(self):
        from roomcal.infra.repositories.reservations_repository import update_if_current

        cur = MagicMock()
        cur.fetchone.return_value = None

        update_if_current(
            cur,
            reservation_id="res-1",
            expected_change_key="ck-1",
            new_change_key="ck-2",
            fields={"locations": None, "categories": None, "services": None,
                    "is_offsite": None, "door_notes": None},
            modified_by="a",
            clear_hold=True,
        )

        sql, params = cur.execute.call_args[0]
        assert params[2:7] == ["[]", "[]", "[]", False, None]
        assert "reviewing_by = NULL" in sql

    def test_non_writable_field_rejected(self):
        from roomcal.infra.repositories.reservations_repository import update_if_current

        with pytest.raises(ValueError):
            update_if_current(
                MagicMock(),
                reservation_id="res-1",
                expected_change_key="ck-1",
                new_change_key="ck-2",
                fields={"created_by": "x"},
                modified_by="a",
            )
