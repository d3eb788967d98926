"""Unit tests for the overdue sweeper."""

from datetime import date
from decimal import Decimal

import pytest

from rentledger.models import BillingPeriod, PaymentRecord, PaymentStatus
from rentledger.services.overdue_service import OverdueSweeper, compute_late_fee, is_past_grace


def add_record(db, unit, period, paid="0", status=PaymentStatus.PENDING, late_fee="0"):
    expected = Decimal(unit.rent_amount)
    record = PaymentRecord(
        tenant_id=unit.occupant.id,
        unit_id=unit.id,
        period_month=period.month_str,
        period_year=period.year,
        due_date=period.due_date(),
        amount=Decimal(paid),
        expected_amount=expected,
        paid_amount=Decimal(paid),
        deficit=max(Decimal("0"), expected - Decimal(paid)),
        status=status,
        late_fee=Decimal(late_fee),
    )
    db.add(record)
    db.commit()
    return record


@pytest.mark.unit
class TestHelpers:
    def test_late_fee_is_percentage_of_expected(self):
        assert compute_late_fee(Decimal("1200"), Decimal("5")) == Decimal("60.00")
        assert compute_late_fee(Decimal("1600"), Decimal("2.5")) == Decimal("40.00")

    def test_grace_boundary(self):
        due = date(2024, 3, 1)

        assert not is_past_grace(due, 5, date(2024, 3, 6))
        assert is_past_grace(due, 5, date(2024, 3, 7))
        assert is_past_grace(due, 0, date(2024, 3, 2))


@pytest.mark.unit
class TestOverdueSweeper:
    def test_pending_past_grace_becomes_overdue(self, db_session, unit_101):
        record = add_record(db_session, unit_101, BillingPeriod(3, 2024))

        report = OverdueSweeper(db_session).sweep(5, Decimal("5"), today=date(2024, 3, 11))

        db_session.refresh(record)
        assert record.status == PaymentStatus.OVERDUE
        assert record.late_fee == Decimal("60.00")
        assert report.marked_overdue == 1
        assert report.fees_applied == 1
        assert report.payment_ids == [record.id]

    def test_partial_past_grace_becomes_overdue(self, db_session, unit_101):
        record = add_record(
            db_session, unit_101, BillingPeriod(3, 2024), paid="800", status=PaymentStatus.PARTIAL
        )

        OverdueSweeper(db_session).sweep(5, Decimal("5"), today=date(2024, 3, 11))

        db_session.refresh(record)
        assert record.status == PaymentStatus.OVERDUE
        assert record.deficit == Decimal("400.00")

    def test_within_grace_untouched(self, db_session, unit_101):
        record = add_record(db_session, unit_101, BillingPeriod(3, 2024))

        report = OverdueSweeper(db_session).sweep(5, Decimal("5"), today=date(2024, 3, 6))

        db_session.refresh(record)
        assert record.status == PaymentStatus.PENDING
        assert report.marked_overdue == 0
        assert report.examined == 1

    def test_paid_records_ignored(self, db_session, unit_101):
        record = add_record(
            db_session, unit_101, BillingPeriod(3, 2024), paid="1200", status=PaymentStatus.PAID
        )

        report = OverdueSweeper(db_session).sweep(5, Decimal("5"), today=date(2024, 4, 30))

        db_session.refresh(record)
        assert record.status == PaymentStatus.PAID
        assert report.examined == 0

    def test_existing_late_fee_kept(self, db_session, unit_101):
        record = add_record(db_session, unit_101, BillingPeriod(3, 2024), late_fee="25")

        report = OverdueSweeper(db_session).sweep(5, Decimal("5"), today=date(2024, 3, 11))

        db_session.refresh(record)
        assert record.status == PaymentStatus.OVERDUE
        assert record.late_fee == Decimal("25.00")
        assert report.fees_applied == 0

    def test_superseded_records_skipped(self, db_session, unit_101):
        period = BillingPeriod(3, 2024)
        older = add_record(
            db_session, unit_101, period, paid="600", status=PaymentStatus.PARTIAL
        )
        latest = add_record(db_session, unit_101, period, paid="1200", status=PaymentStatus.PAID)

        report = OverdueSweeper(db_session).sweep(5, Decimal("5"), today=date(2024, 4, 30))

        db_session.refresh(older)
        db_session.refresh(latest)
        assert older.status == PaymentStatus.PARTIAL
        assert latest.status == PaymentStatus.PAID
        assert report.superseded == 1
        assert report.marked_overdue == 0

    def test_open_record_in_a_paid_period_skipped(self, db_session, unit_101):
        period = BillingPeriod(3, 2024)
        add_record(db_session, unit_101, period, paid="1200", status=PaymentStatus.PAID)
        newer = add_record(db_session, unit_101, period)

        report = OverdueSweeper(db_session).sweep(5, Decimal("5"), today=date(2024, 4, 30))

        db_session.refresh(newer)
        assert newer.status == PaymentStatus.PENDING
        assert newer.late_fee == Decimal("0")
        assert report.superseded == 1
        assert report.marked_overdue == 0

    def test_second_sweep_is_a_no_op(self, db_session, unit_101):
        record = add_record(db_session, unit_101, BillingPeriod(3, 2024))
        sweeper = OverdueSweeper(db_session)
        sweeper.sweep(5, Decimal("5"), today=date(2024, 3, 11))

        report = sweeper.sweep(5, Decimal("10"), today=date(2024, 3, 20))

        db_session.refresh(record)
        assert record.late_fee == Decimal("60.00")
        assert report.marked_overdue == 0

    def test_report_dict(self, db_session, unit_101):
        record = add_record(db_session, unit_101, BillingPeriod(3, 2024))

        result = OverdueSweeper(db_session).sweep(5, 5, today=date(2024, 3, 11)).as_dict()

        assert result == {
            "examined": 1,
            "updated": 1,
            "feesApplied": 1,
            "superseded": 0,
            "paymentIds": [record.id],
        }
