"""Tests for payment status reconciliation."""

from __future__ import annotations

from unittest.mock import patch

import pytest

import rainbowpay.domain.reconciliation as reconciliation_module
from rainbowpay.domain.errors import BookingNotFoundError, ReconciliationConflictError
from rainbowpay.domain.reconciliation import SWEEP_PAGE_SIZE, reconcile


@pytest.fixture
def drifted(store):
    """Booking 1 paid without a ledger row, booking 2 unpaid with one, booking 3 consistent."""
    store.add_booking(1, payment_status="paid")
    store.add_booking(2, payment_status="not_paid")
    store.add_transaction(2, status="succeeded", source_id="src_2")
    store.add_booking(3, payment_status="paid")
    store.add_transaction(3, status="succeeded", source_id="src_3")
    return store


class TestDryRun:
    def test_reports_without_writing(self, drifted):
        report = reconcile(dry_run=True)

        assert report.orphaned_paid == [1]
        assert report.orphaned_unpaid == [2]
        assert report.drift_count == 2
        assert report.actions_taken == []
        assert report.mutated_booking_ids == []
        assert drifted.bookings[1]["payment_status"] == "paid"
        assert drifted.bookings[2]["payment_status"] == "not_paid"

    def test_default_is_dry_run(self, drifted):
        assert reconcile().dry_run is True
        assert drifted.bookings[1]["payment_status"] == "paid"

    def test_single_booking(self, drifted):
        report = reconcile(2)
        assert report.orphaned_paid == []
        assert report.orphaned_unpaid == [2]

    def test_unknown_booking(self, store):
        with pytest.raises(BookingNotFoundError):
            reconcile(404)


class TestLargeSweep:
    @pytest.mark.parametrize("count", [SWEEP_PAGE_SIZE, SWEEP_PAGE_SIZE + 2])
    def test_every_drifted_booking_reported(self, store, count):
        for booking_id in range(1, count + 1):
            store.add_booking(booking_id, payment_status="paid")
        store.add_booking(count + 1, payment_status="not_paid")
        store.add_transaction(count + 1, status="succeeded")
        txns_before = store.txn_count

        report = reconcile(dry_run=True)

        assert report.orphaned_paid == list(range(1, count + 1))
        assert report.orphaned_unpaid == [count + 1]
        assert store.txn_count - txns_before == 1

    def test_pages_continue_after_last_id(self, store):
        for booking_id in range(1, SWEEP_PAGE_SIZE + 3):
            store.add_booking(booking_id, payment_status="paid")
        calls = []
        real = reconciliation_module.find_orphaned_paid

        def spy(cur, **kwargs):
            calls.append(kwargs["after_id"])
            return real(cur, **kwargs)

        with patch.object(reconciliation_module, "find_orphaned_paid", spy):
            reconcile(dry_run=True)

        assert calls == [None, SWEEP_PAGE_SIZE]

    def test_large_sweep_repairs_everything(self, store):
        for booking_id in range(1, SWEEP_PAGE_SIZE + 3):
            store.add_booking(booking_id, payment_status="paid")

        report = reconcile(dry_run=False)

        assert len(report.mutated_booking_ids) == SWEEP_PAGE_SIZE + 2
        assert reconcile(dry_run=True).drift_count == 0


class TestRepair:
    def test_repairs_both_directions(self, drifted):
        report = reconcile(dry_run=False)

        assert drifted.bookings[1]["payment_status"] == "not_paid"
        assert drifted.bookings[2]["payment_status"] == "paid"
        assert drifted.bookings[3]["payment_status"] == "paid"
        assert report.mutated_booking_ids == [1, 2]
        assert report.actions_taken == [
            {"booking_id": 1, "from": "paid", "to": "not_paid"},
            {"booking_id": 2, "from": "not_paid", "to": "paid"},
        ]

    def test_second_run_converges(self, drifted):
        reconcile(dry_run=False)
        again = reconcile(dry_run=False)
        assert again.drift_count == 0
        assert again.mutated_booking_ids == []

    def test_each_repair_in_its_own_transaction(self, drifted):
        before = drifted.txn_count
        reconcile(dry_run=False)
        # one detection read plus one per repaired booking
        assert drifted.txn_count - before == 3

    def test_refunded_bookings_untouched(self, store):
        store.add_booking(5, payment_status="refunded")
        report = reconcile(dry_run=False)
        assert report.drift_count == 0
        assert store.bookings[5]["payment_status"] == "refunded"


class TestConflicts:
    def test_change_between_detection_and_repair(self, drifted):
        real_find = drifted.find_orphaned_paid

        def find_then_settle(cur, **kwargs):
            rows = real_find(cur, **kwargs)
            # a webhook lands right after the diff was computed
            drifted.add_transaction(1, status="succeeded", source_id="src_late")
            return rows

        with patch("rainbowpay.domain.reconciliation.find_orphaned_paid", find_then_settle):
            report = reconcile(dry_run=False)

        assert report.conflicts == [{
            "booking_id": 1,
            "observed_status": "paid",
            "message": "Booking changed between detection and repair",
        }]
        assert drifted.bookings[1]["payment_status"] == "paid"
        assert report.mutated_booking_ids == [2]

    def test_repair_failure_recorded_and_sweep_continues(self, drifted):
        from rainbowpay.domain import reconciliation

        real_repair = reconciliation._repair

        def flaky_repair(booking_id, **kwargs):
            if booking_id == 1:
                raise RuntimeError("connection reset")
            return real_repair(booking_id, **kwargs)

        with patch.object(reconciliation, "_repair", flaky_repair):
            report = reconcile(dry_run=False)

        assert report.failed_booking_ids == [1]
        assert report.mutated_booking_ids == [2]
        assert drifted.bookings[1]["payment_status"] == "paid"

    def test_booking_deleted_before_repair(self, drifted):
        real_find = drifted.find_orphaned_unpaid

        def find_then_delete(cur, **kwargs):
            rows = real_find(cur, **kwargs)
            del drifted.bookings[2]
            return rows

        with patch("rainbowpay.domain.reconciliation.find_orphaned_unpaid", find_then_delete):
            report = reconcile(dry_run=False)

        assert report.conflicts[0]["booking_id"] == 2
        assert report.conflicts[0]["observed_status"] is None

    def test_conflict_error_attributes(self):
        err = ReconciliationConflictError("changed", booking_id=9, observed_status="paid")
        assert err.code == "RECONCILIATION_CONFLICT"
        assert (err.booking_id, err.observed_status) == (9, "paid")


def test_report_as_dict(drifted):
    body = reconcile(dry_run=True).as_dict()
    assert set(body) == {
        "dry_run",
        "orphaned_paid",
        "orphaned_unpaid",
        "actions_taken",
        "mutated_booking_ids",
        "conflicts",
        "failed_booking_ids",
    }
