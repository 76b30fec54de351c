from datetime import date, datetime, time, timedelta, timezone

import pytest

from conftest import TODAY, WEEK, add_rest
from fleet_compliance.config import config
from fleet_compliance.errors import (
    DuplicateRecordError,
    DuplicateRestRecordError,
    NotFoundError,
    ValidationError,
)
from fleet_compliance.models import ComplianceViolation, DailyRest, WeeklyRest
from fleet_compliance.rest import (
    auto_record_rest_days,
    classify_daily_rest,
    evaluate_weekly_rest,
    list_outstanding_compensation,
    record_compensation,
    record_daily_rest,
    record_rest_violations,
    record_time_entry,
    record_weekly_rest,
    week_start_for,
)


def codes(findings):
    return [f.code for f in findings]


def add_reduced_week(db, ctx, driver_id):
    """Six daily rests totalling 40 hours."""
    for offset, hours in enumerate([7, 7, 7, 7, 6, 6]):
        add_rest(db, ctx, driver_id, WEEK + timedelta(days=offset), hours)


class TestDailyRest:
    """Recording daily rest periods."""

    def test_classification(self):
        assert classify_daily_rest(11).value == "regular"
        assert classify_daily_rest(9.5).value == "reduced"
        assert classify_daily_rest(8).value == "insufficient"

    def test_record_computes_duration_and_type(self, db, ctx, driver):
        record = add_rest(db, ctx, driver.id, WEEK, 9.5)

        assert record.duration_hours == 9.5
        assert record.rest_type == "reduced"

    def test_inverted_interval_is_rejected(self, db, ctx, driver):
        start = datetime.combine(WEEK, time(20, 0))
        with pytest.raises(ValidationError):
            record_daily_rest(db, ctx, driver.id, WEEK, start, start - timedelta(hours=1))

    def test_rest_date_outside_interval_is_rejected(self, db, ctx, driver):
        start = datetime.combine(WEEK, time(20, 0))
        with pytest.raises(ValidationError):
            record_daily_rest(db, ctx, driver.id, WEEK + timedelta(days=3), start, start + timedelta(hours=11))

    def test_mixed_offset_awareness_is_rejected(self, db, ctx, driver):
        start = datetime.combine(WEEK, time(20, 0), tzinfo=timezone.utc)
        end = datetime.combine(WEEK + timedelta(days=1), time(7, 0))

        with pytest.raises(ValidationError):
            record_daily_rest(db, ctx, driver.id, WEEK, start, end)
        with pytest.raises(ValidationError):
            record_weekly_rest(db, ctx, driver.id, WEEK, start, end + timedelta(days=2))

        assert db.query(DailyRest).count() == 0

    def test_duplicate_is_rejected(self, db, ctx, driver):
        add_rest(db, ctx, driver.id, WEEK, 11)

        with pytest.raises(DuplicateRestRecordError):
            add_rest(db, ctx, driver.id, WEEK, 12)

        assert db.query(DailyRest).count() == 1

    def test_overwrite_replaces_record(self, db, ctx, driver):
        add_rest(db, ctx, driver.id, WEEK, 8)
        start = datetime.combine(WEEK, time(19, 0))

        record = record_daily_rest(db, ctx, driver.id, WEEK, start, start + timedelta(hours=12), overwrite=True)

        assert record.duration_hours == 12
        assert record.rest_type == "regular"
        assert db.query(DailyRest).count() == 1


class TestEvaluateWeeklyRest:
    """Weekly evaluation and compensation bookkeeping."""

    def test_week_must_start_on_monday(self, db, ctx, driver):
        with pytest.raises(ValidationError):
            evaluate_weekly_rest(db, ctx, driver.id, WEEK + timedelta(days=1))

    def test_forty_hour_week_is_reduced(self, db, ctx, driver):
        add_reduced_week(db, ctx, driver.id)

        result = evaluate_weekly_rest(db, ctx, driver.id, WEEK)

        assert result.total_rest_hours == 40
        assert result.rest_type == "reduced"
        assert result.compensation_required is True
        assert result.compensation_deadline == WEEK + timedelta(days=6) + timedelta(weeks=3)
        assert "WEEKLY_REST_INSUFFICIENT" not in codes(result.violations)
        assert "REDUCED_WEEKLY_REST" in codes(result.warnings)
        assert "COMPENSATION_NOT_SCHEDULED" in codes(result.warnings)

    def test_short_daily_rests_are_violations(self, db, ctx, driver):
        add_reduced_week(db, ctx, driver.id)

        result = evaluate_weekly_rest(db, ctx, driver.id, WEEK)

        assert "DAILY_REST_INSUFFICIENT" in codes(result.violations)

    def test_below_reduced_threshold_is_violation(self, db, ctx, driver):
        add_rest(db, ctx, driver.id, WEEK, 10)
        add_rest(db, ctx, driver.id, WEEK + timedelta(days=1), 10)

        result = evaluate_weekly_rest(db, ctx, driver.id, WEEK)

        assert result.total_rest_hours == 20
        assert result.rest_type == "insufficient"
        assert result.compensation_required is False
        assert "WEEKLY_REST_INSUFFICIENT" in codes(result.violations)
        assert not result.compliant

    def test_weekly_block_counts_towards_total(self, db, ctx, driver):
        start = datetime.combine(WEEK + timedelta(days=5), time(6, 0))
        record_weekly_rest(db, ctx, driver.id, WEEK, start, start + timedelta(hours=45))

        result = evaluate_weekly_rest(db, ctx, driver.id, WEEK)

        assert result.weekly_block_hours == 45
        assert result.rest_type == "regular"
        assert result.compensation_required is False
        assert result.compliant

    def test_duplicate_weekly_block_is_rejected(self, db, ctx, driver):
        start = datetime.combine(WEEK + timedelta(days=5), time(6, 0))
        record_weekly_rest(db, ctx, driver.id, WEEK, start, start + timedelta(hours=45))

        with pytest.raises(DuplicateRestRecordError):
            record_weekly_rest(db, ctx, driver.id, WEEK, start, start + timedelta(hours=30))

    def test_thresholds_follow_config(self, db, ctx, driver):
        add_reduced_week(db, ctx, driver.id)
        config.update_rest_thresholds(weekly_reduced_hours=42)

        result = evaluate_weekly_rest(db, ctx, driver.id, WEEK)

        assert result.rest_type == "insufficient"

    def test_evaluation_is_idempotent(self, db, ctx, driver):
        add_reduced_week(db, ctx, driver.id)

        first = evaluate_weekly_rest(db, ctx, driver.id, WEEK)
        row = db.query(WeeklyRest).one()
        version = row.version
        second = evaluate_weekly_rest(db, ctx, driver.id, WEEK)

        assert second == first
        assert db.query(WeeklyRest).count() == 1
        assert db.query(WeeklyRest).one().version == version

    def test_bookkeeping_is_persisted(self, db, ctx, driver):
        add_reduced_week(db, ctx, driver.id)

        evaluate_weekly_rest(db, ctx, driver.id, WEEK)

        row = db.query(WeeklyRest).one()
        assert row.week_end_date == WEEK + timedelta(days=6)
        assert row.total_rest_hours == 40
        assert row.rest_type == "reduced"
        assert row.compensation_required is True
        assert row.compensation_deadline == date(2025, 6, 22)

    def test_reevaluation_after_new_data_updates_row(self, db, ctx, driver):
        add_reduced_week(db, ctx, driver.id)
        evaluate_weekly_rest(db, ctx, driver.id, WEEK)
        add_rest(db, ctx, driver.id, WEEK + timedelta(days=6), 10)

        result = evaluate_weekly_rest(db, ctx, driver.id, WEEK)

        assert result.rest_type == "regular"
        row = db.query(WeeklyRest).one()
        assert row.compensation_required is False
        assert row.compensation_deadline is None

    def test_unknown_driver(self, db, ctx):
        with pytest.raises(NotFoundError):
            evaluate_weekly_rest(db, ctx, 404, WEEK)


class TestCompensation:
    """Tracking rest owed after a reduced week."""

    def test_compensation_before_deadline_clears_warning(self, db, ctx, driver):
        add_reduced_week(db, ctx, driver.id)
        evaluate_weekly_rest(db, ctx, driver.id, WEEK)

        record_compensation(db, ctx, driver.id, WEEK, date(2025, 6, 10))
        result = evaluate_weekly_rest(db, ctx, driver.id, WEEK)

        assert result.compensation_date == date(2025, 6, 10)
        assert "COMPENSATION_NOT_SCHEDULED" not in codes(result.warnings)
        assert "COMPENSATION_LATE" not in codes(result.violations)

    def test_late_compensation_is_violation(self, db, ctx, driver):
        add_reduced_week(db, ctx, driver.id)
        evaluate_weekly_rest(db, ctx, driver.id, WEEK)

        record_compensation(db, ctx, driver.id, WEEK, date(2025, 6, 30))
        result = evaluate_weekly_rest(db, ctx, driver.id, WEEK)

        assert "COMPENSATION_LATE" in codes(result.violations)

    def test_missing_compensation_after_deadline_is_violation(self, db, ctx, driver):
        add_reduced_week(db, ctx, driver.id)

        result = evaluate_weekly_rest(db, ctx, driver.id, WEEK, as_of_date=date(2025, 6, 23))

        assert "COMPENSATION_OVERDUE" in codes(result.violations)

    def test_week_without_compensation_requirement(self, db, ctx, driver):
        start = datetime.combine(WEEK + timedelta(days=5), time(6, 0))
        record_weekly_rest(db, ctx, driver.id, WEEK, start, start + timedelta(hours=45))
        evaluate_weekly_rest(db, ctx, driver.id, WEEK)

        with pytest.raises(ValidationError):
            record_compensation(db, ctx, driver.id, WEEK, date(2025, 6, 10))

    def test_compensation_inside_week_is_rejected(self, db, ctx, driver):
        add_reduced_week(db, ctx, driver.id)
        evaluate_weekly_rest(db, ctx, driver.id, WEEK)

        with pytest.raises(ValidationError):
            record_compensation(db, ctx, driver.id, WEEK, WEEK + timedelta(days=2))

    def test_compensation_recorded_once(self, db, ctx, driver):
        add_reduced_week(db, ctx, driver.id)
        evaluate_weekly_rest(db, ctx, driver.id, WEEK)
        record_compensation(db, ctx, driver.id, WEEK, date(2025, 6, 10))

        with pytest.raises(DuplicateRecordError):
            record_compensation(db, ctx, driver.id, WEEK, date(2025, 6, 12))

    def test_outstanding_compensation(self, db, ctx, driver):
        add_reduced_week(db, ctx, driver.id)
        evaluate_weekly_rest(db, ctx, driver.id, WEEK)

        pending = list_outstanding_compensation(db, ctx)
        overdue = list_outstanding_compensation(db, ctx, date(2025, 7, 1))

        assert pending == [{
            "driver_id": driver.id,
            "week_start_date": "2025-05-26",
            "compensation_deadline": "2025-06-22",
            "overdue": False,
        }]
        assert overdue[0]["overdue"] is True


class TestWorkingAndDrivingTime:
    """Working and driving time findings."""

    def test_working_time_over_limit(self, db, ctx, driver):
        for offset in range(5):
            record_time_entry(db, ctx, driver.id, WEEK + timedelta(days=offset), 12.5, 8)

        result = evaluate_weekly_rest(db, ctx, driver.id, WEEK)

        assert result.total_working_hours == 62.5
        assert "WEEKLY_WORKING_LIMIT" in codes(result.violations)

    def test_working_time_near_limit_is_warning(self, db, ctx, driver):
        for offset in range(5):
            record_time_entry(db, ctx, driver.id, WEEK + timedelta(days=offset), 11.5, 8)

        result = evaluate_weekly_rest(db, ctx, driver.id, WEEK)

        assert "WEEKLY_WORKING_HIGH" in codes(result.warnings)
        assert "WEEKLY_WORKING_LIMIT" not in codes(result.violations)

    def test_driving_over_extended_limit(self, db, ctx, driver):
        record_time_entry(db, ctx, driver.id, WEEK, 12, 10.5)

        result = evaluate_weekly_rest(db, ctx, driver.id, WEEK)

        assert "DAILY_DRIVING_LIMIT" in codes(result.violations)

    def test_too_many_extended_driving_days(self, db, ctx, driver):
        for offset in range(3):
            record_time_entry(db, ctx, driver.id, WEEK + timedelta(days=offset), 11, 9.5)

        result = evaluate_weekly_rest(db, ctx, driver.id, WEEK)

        assert "EXTENDED_DRIVING_DAYS" in codes(result.violations)
        assert "DAILY_DRIVING_LIMIT" not in codes(result.violations)

    def test_hours_out_of_range(self, db, ctx, driver):
        with pytest.raises(ValidationError):
            record_time_entry(db, ctx, driver.id, WEEK, 25, 0)

    def test_duplicate_time_entry(self, db, ctx, driver):
        record_time_entry(db, ctx, driver.id, WEEK, 8, 6)

        with pytest.raises(DuplicateRecordError):
            record_time_entry(db, ctx, driver.id, WEEK, 9, 6)

        entry = record_time_entry(db, ctx, driver.id, WEEK, 9, 6, overwrite=True)
        assert entry.working_hours == 9


class TestAutoRecordRestDays:
    """Full-day rest for days without any activity."""

    def test_fills_idle_days(self, db, ctx, driver):
        record_time_entry(db, ctx, driver.id, WEEK, 8, 6)
        record_time_entry(db, ctx, driver.id, WEEK + timedelta(days=1), 8, 6)
        add_rest(db, ctx, driver.id, WEEK + timedelta(days=2), 11)

        summary = auto_record_rest_days(db, ctx, driver.id, WEEK, WEEK + timedelta(days=6))

        assert summary == {
            "days_processed": 7,
            "rest_days_created": 4,
            "worked_days": 2,
            "existing_rest_days": 1,
        }
        auto = db.query(DailyRest).filter(DailyRest.duration_hours == 24).all()
        assert sorted(r.rest_date for r in auto) == [WEEK + timedelta(days=d) for d in range(3, 7)]

    def test_rerun_creates_nothing(self, db, ctx, driver):
        auto_record_rest_days(db, ctx, driver.id, WEEK, WEEK + timedelta(days=6))

        summary = auto_record_rest_days(db, ctx, driver.id, WEEK, WEEK + timedelta(days=6))

        assert summary["rest_days_created"] == 0
        assert db.query(DailyRest).count() == 7

    def test_inverted_range(self, db, ctx, driver):
        with pytest.raises(ValidationError):
            auto_record_rest_days(db, ctx, driver.id, WEEK, WEEK - timedelta(days=1))


class TestRestViolations:
    """Persisting violations as infringement candidates."""

    def test_records_each_violation_once(self, db, ctx, driver):
        add_rest(db, ctx, driver.id, WEEK, 10)
        result = evaluate_weekly_rest(db, ctx, driver.id, WEEK)

        created = record_rest_violations(db, ctx, result)
        again = record_rest_violations(db, ctx, result)

        assert [v.violation_code for v in created] == ["WEEKLY_REST_INSUFFICIENT"]
        assert created[0].severity == "serious"
        assert created[0].status == "open"
        assert again == []
        assert db.query(ComplianceViolation).count() == 1

    def test_compliant_week_records_nothing(self, db, ctx, driver):
        start = datetime.combine(WEEK + timedelta(days=5), time(6, 0))
        record_weekly_rest(db, ctx, driver.id, WEEK, start, start + timedelta(hours=45))
        result = evaluate_weekly_rest(db, ctx, driver.id, WEEK)

        assert record_rest_violations(db, ctx, result) == []


def test_week_start_for():
    assert week_start_for(TODAY) == TODAY
    assert week_start_for(date(2025, 6, 8)) == TODAY
