"""
Rest period tracker.

Records daily rest, the standalone weekly rest block and daily working/driving
time, and evaluates a driver's week against the configured thresholds.

``assess_week`` is the pure classification used everywhere; it never touches
the database. ``evaluate_weekly_rest`` wraps it and persists only the week's
bookkeeping fields (total, type, compensation required/deadline), and only
when one of them changed, so repeated evaluation of unchanged data writes
nothing.
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

from .config import config
from .errors import DuplicateRecordError, DuplicateRestRecordError, NotFoundError, ValidationError
from .models import ComplianceViolation, DailyRest, RestType, Severity, TimeEntry, ViolationStatus, WeeklyRest
from .persistence import OrgContext, get_active_driver, get_driver, transaction

logger = logging.getLogger(__name__)

# Severity recorded on a ComplianceViolation for each violation code
VIOLATION_SEVERITY = {
    "WEEKLY_REST_INSUFFICIENT": Severity.SERIOUS,
    "COMPENSATION_OVERDUE": Severity.MAJOR,
    "COMPENSATION_LATE": Severity.MINOR,
    "DAILY_REST_INSUFFICIENT": Severity.MAJOR,
    "REDUCED_DAILY_REST_LIMIT": Severity.MINOR,
    "WEEKLY_WORKING_LIMIT": Severity.MAJOR,
    "DAILY_DRIVING_LIMIT": Severity.SERIOUS,
    "EXTENDED_DRIVING_DAYS": Severity.MAJOR,
    "WEEKLY_DRIVING_LIMIT": Severity.SERIOUS,
}


@dataclass
class Finding:
    code: str
    message: str


@dataclass
class WeeklyRestResult:
    driver_id: int
    week_start_date: date
    week_end_date: date
    daily_rest_hours: float
    weekly_block_hours: float
    total_rest_hours: float
    rest_type: str
    compensation_required: bool
    compensation_deadline: Optional[date]
    compensation_date: Optional[date]
    total_working_hours: float
    total_driving_hours: float
    warnings: List[Finding] = field(default_factory=list)
    violations: List[Finding] = field(default_factory=list)

    @property
    def compliant(self) -> bool:
        return not self.violations

    def to_dict(self) -> Dict:
        data = asdict(self)
        for key in ("week_start_date", "week_end_date", "compensation_deadline", "compensation_date"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        data["compliant"] = self.compliant
        return data


def week_start_for(day: date) -> date:
    """Monday of the week containing ``day``."""
    return day - timedelta(days=day.weekday())


def _week_bounds(week_start_date: date):
    if week_start_date.weekday() != 0:
        raise ValidationError(f"week_start_date {week_start_date} is not a Monday")
    return week_start_date, week_start_date + timedelta(days=6)


def _hours_between(start_time: datetime, end_time: datetime) -> float:
    if start_time is None or end_time is None:
        raise ValidationError("start_time and end_time are required")
    if (start_time.tzinfo is None) != (end_time.tzinfo is None):
        raise ValidationError("start_time and end_time must both carry a UTC offset or neither may")
    if end_time <= start_time:
        raise ValidationError("end_time must be after start_time")
    return round((end_time - start_time).total_seconds() / 3600, 2)


def classify_daily_rest(hours: float) -> RestType:
    if hours >= config.daily_rest_regular_hours:
        return RestType.REGULAR
    if hours >= config.daily_rest_reduced_hours:
        return RestType.REDUCED
    return RestType.INSUFFICIENT


def classify_weekly_rest(hours: float) -> RestType:
    if hours >= config.weekly_rest_regular_hours:
        return RestType.REGULAR
    if hours >= config.weekly_rest_reduced_hours:
        return RestType.REDUCED
    return RestType.INSUFFICIENT


def _format_days(days: Sequence[date]) -> str:
    return ", ".join(d.isoformat() for d in sorted(days))


def assess_week(
    driver_id: int,
    week_start_date: date,
    daily_rests: Sequence[DailyRest],
    weekly_rest: Optional[WeeklyRest],
    time_entries: Sequence[TimeEntry],
    as_of_date: date,
) -> WeeklyRestResult:
    """Classify one week of rest, working and driving time."""
    week_start, week_end = _week_bounds(week_start_date)
    warnings: List[Finding] = []
    violations: List[Finding] = []

    daily_hours = round(sum(r.duration_hours for r in daily_rests), 2)
    block_hours = round(weekly_rest.block_hours, 2) if weekly_rest is not None else 0.0
    total_hours = round(daily_hours + block_hours, 2)
    rest_type = classify_weekly_rest(total_hours)

    compensation_required = False
    compensation_deadline = None
    compensation_date = weekly_rest.compensation_date if weekly_rest is not None else None

    if rest_type == RestType.INSUFFICIENT:
        violations.append(Finding(
            "WEEKLY_REST_INSUFFICIENT",
            f"Weekly rest of {total_hours}h is below the reduced minimum of {config.weekly_rest_reduced_hours}h"
        ))
    elif rest_type == RestType.REDUCED:
        compensation_required = True
        compensation_deadline = week_end + timedelta(weeks=config.compensation_weeks)
        warnings.append(Finding(
            "REDUCED_WEEKLY_REST",
            f"Weekly rest of {total_hours}h is reduced; compensation due by {compensation_deadline.isoformat()}"
        ))
        if compensation_date is None:
            if as_of_date > compensation_deadline:
                violations.append(Finding(
                    "COMPENSATION_OVERDUE",
                    f"Compensation for reduced weekly rest was due by {compensation_deadline.isoformat()}"
                ))
            else:
                warnings.append(Finding(
                    "COMPENSATION_NOT_SCHEDULED",
                    "Compensation for reduced weekly rest not scheduled"
                ))
        elif compensation_date > compensation_deadline:
            violations.append(Finding(
                "COMPENSATION_LATE",
                f"Compensation taken on {compensation_date.isoformat()}, after the deadline "
                f"of {compensation_deadline.isoformat()}"
            ))

    insufficient_days = [r.rest_date for r in daily_rests
                         if classify_daily_rest(r.duration_hours) == RestType.INSUFFICIENT]
    reduced_days = [r.rest_date for r in daily_rests
                    if classify_daily_rest(r.duration_hours) == RestType.REDUCED]
    if insufficient_days:
        violations.append(Finding(
            "DAILY_REST_INSUFFICIENT",
            f"Daily rest below {config.daily_rest_reduced_hours}h on {_format_days(insufficient_days)}"
        ))
    if len(reduced_days) > config.max_reduced_daily_rests:
        violations.append(Finding(
            "REDUCED_DAILY_REST_LIMIT",
            f"{len(reduced_days)} reduced daily rests exceed the limit of {config.max_reduced_daily_rests}"
        ))
    elif reduced_days:
        warnings.append(Finding(
            "REDUCED_DAILY_REST",
            f"Reduced daily rest on {_format_days(reduced_days)}"
        ))

    working_hours = round(sum(e.working_hours or 0.0 for e in time_entries), 2)
    driving_hours = round(sum(e.driving_hours or 0.0 for e in time_entries), 2)
    if working_hours > config.weekly_working_limit_hours:
        violations.append(Finding(
            "WEEKLY_WORKING_LIMIT",
            f"Weekly working time ({working_hours}h) exceeds the limit ({config.weekly_working_limit_hours}h)"
        ))
    elif working_hours > config.weekly_working_warning_hours:
        warnings.append(Finding(
            "WEEKLY_WORKING_HIGH",
            f"Weekly working time ({working_hours}h) approaching the limit ({config.weekly_working_limit_hours}h)"
        ))

    over_limit_days = [e.entry_date for e in time_entries
                       if (e.driving_hours or 0.0) > config.daily_driving_extended_hours]
    extended_days = [e.entry_date for e in time_entries
                     if config.daily_driving_limit_hours < (e.driving_hours or 0.0) <= config.daily_driving_extended_hours]
    if over_limit_days:
        violations.append(Finding(
            "DAILY_DRIVING_LIMIT",
            f"Daily driving above {config.daily_driving_extended_hours}h on {_format_days(over_limit_days)}"
        ))
    if len(extended_days) > config.max_extended_driving_days:
        violations.append(Finding(
            "EXTENDED_DRIVING_DAYS",
            f"{len(extended_days)} extended driving days exceed the limit of {config.max_extended_driving_days}"
        ))
    if driving_hours > config.weekly_driving_limit_hours:
        violations.append(Finding(
            "WEEKLY_DRIVING_LIMIT",
            f"Weekly driving time ({driving_hours}h) exceeds the limit ({config.weekly_driving_limit_hours}h)"
        ))

    return WeeklyRestResult(
        driver_id=driver_id,
        week_start_date=week_start,
        week_end_date=week_end,
        daily_rest_hours=daily_hours,
        weekly_block_hours=block_hours,
        total_rest_hours=total_hours,
        rest_type=rest_type.value,
        compensation_required=compensation_required,
        compensation_deadline=compensation_deadline,
        compensation_date=compensation_date,
        total_working_hours=working_hours,
        total_driving_hours=driving_hours,
        warnings=warnings,
        violations=violations
    )


def _get_weekly_row(db: Session, ctx: OrgContext, driver_id: int, week_start_date: date) -> Optional[WeeklyRest]:
    return db.query(WeeklyRest).filter(
        WeeklyRest.organization_id == ctx.organization_id,
        WeeklyRest.driver_id == driver_id,
        WeeklyRest.week_start_date == week_start_date
    ).first()


def load_week(db: Session, ctx: OrgContext, driver_id: int, start: date, end: date):
    """Daily rests, weekly rows and time entries of a driver between two dates."""
    daily_rests = db.query(DailyRest).filter(
        DailyRest.organization_id == ctx.organization_id,
        DailyRest.driver_id == driver_id,
        DailyRest.rest_date >= start,
        DailyRest.rest_date <= end
    ).order_by(DailyRest.rest_date).all()
    weekly_rows = db.query(WeeklyRest).filter(
        WeeklyRest.organization_id == ctx.organization_id,
        WeeklyRest.driver_id == driver_id,
        WeeklyRest.week_start_date >= start,
        WeeklyRest.week_start_date <= end
    ).order_by(WeeklyRest.week_start_date).all()
    time_entries = db.query(TimeEntry).filter(
        TimeEntry.organization_id == ctx.organization_id,
        TimeEntry.driver_id == driver_id,
        TimeEntry.entry_date >= start,
        TimeEntry.entry_date <= end
    ).order_by(TimeEntry.entry_date).all()
    return daily_rests, weekly_rows, time_entries


def record_daily_rest(
    db: Session,
    ctx: OrgContext,
    driver_id: int,
    rest_date: date,
    start_time: datetime,
    end_time: datetime,
    notes: Optional[str] = None,
    overwrite: bool = False,
) -> DailyRest:
    """Record the daily rest of a driver for one date.

    Only one record may exist per driver and date; an existing one is replaced
    only when ``overwrite`` is set, otherwise ``DuplicateRestRecordError``.
    """
    duration = _hours_between(start_time, end_time)
    if not (start_time.date() <= rest_date <= end_time.date()):
        raise ValidationError(f"rest_date {rest_date} is outside the rest interval")
    rest_type = classify_daily_rest(duration)

    with transaction(db, integrity_error=DuplicateRestRecordError,
                     integrity_message=f"Daily rest already recorded for driver {driver_id} on {rest_date}"):
        get_active_driver(db, ctx, driver_id)
        record = db.query(DailyRest).filter(
            DailyRest.organization_id == ctx.organization_id,
            DailyRest.driver_id == driver_id,
            DailyRest.rest_date == rest_date
        ).first()
        if record is not None and not overwrite:
            raise DuplicateRestRecordError(
                f"Daily rest already recorded for driver {driver_id} on {rest_date}",
                driver_id=driver_id, rest_date=rest_date.isoformat()
            )
        if record is None:
            record = DailyRest(organization_id=ctx.organization_id, driver_id=driver_id, rest_date=rest_date)
            db.add(record)
        record.start_time = start_time
        record.end_time = end_time
        record.duration_hours = duration
        record.rest_type = rest_type.value
        record.notes = notes

    logger.info("Recorded %s daily rest of %sh for driver %s on %s", rest_type.value, duration, driver_id, rest_date)
    return record


def record_weekly_rest(
    db: Session,
    ctx: OrgContext,
    driver_id: int,
    week_start_date: date,
    rest_start_time: datetime,
    rest_end_time: datetime,
    overwrite: bool = False,
) -> WeeklyRest:
    """Record the standalone weekly rest block of a week."""
    week_start, week_end = _week_bounds(week_start_date)
    block = _hours_between(rest_start_time, rest_end_time)

    with transaction(db, integrity_error=DuplicateRestRecordError,
                     integrity_message=f"Weekly rest already recorded for driver {driver_id} week {week_start}"):
        get_active_driver(db, ctx, driver_id)
        row = _get_weekly_row(db, ctx, driver_id, week_start)
        if row is not None and row.rest_start_time is not None and not overwrite:
            raise DuplicateRestRecordError(
                f"Weekly rest already recorded for driver {driver_id} week {week_start}",
                driver_id=driver_id, week_start_date=week_start.isoformat()
            )
        if row is None:
            row = WeeklyRest(
                organization_id=ctx.organization_id,
                driver_id=driver_id,
                week_start_date=week_start,
                week_end_date=week_end,
                compensation_required=False
            )
            db.add(row)
        row.rest_start_time = rest_start_time
        row.rest_end_time = rest_end_time

    logger.info("Recorded weekly rest block of %sh for driver %s week %s", block, driver_id, week_start)
    return row


def record_time_entry(
    db: Session,
    ctx: OrgContext,
    driver_id: int,
    entry_date: date,
    working_hours: float,
    driving_hours: float = 0.0,
    overwrite: bool = False,
) -> TimeEntry:
    """Record the working and driving time of a driver for one day."""
    for name, value in (("working_hours", working_hours), ("driving_hours", driving_hours)):
        if value is None or value < 0 or value > 24:
            raise ValidationError(f"{name} must be between 0 and 24", **{name: value})

    with transaction(db, integrity_error=DuplicateRecordError,
                     integrity_message=f"Time already recorded for driver {driver_id} on {entry_date}"):
        get_active_driver(db, ctx, driver_id)
        entry = db.query(TimeEntry).filter(
            TimeEntry.organization_id == ctx.organization_id,
            TimeEntry.driver_id == driver_id,
            TimeEntry.entry_date == entry_date
        ).first()
        if entry is not None and not overwrite:
            raise DuplicateRecordError(
                f"Time already recorded for driver {driver_id} on {entry_date}",
                driver_id=driver_id, entry_date=entry_date.isoformat()
            )
        if entry is None:
            entry = TimeEntry(organization_id=ctx.organization_id, driver_id=driver_id, entry_date=entry_date)
            db.add(entry)
        entry.working_hours = working_hours
        entry.driving_hours = driving_hours

    return entry


def auto_record_rest_days(db: Session, ctx: OrgContext, driver_id: int, start_date: date, end_date: date) -> Dict:
    """Record a full-day rest for every day in the range with no work and no rest record.

    Re-running over the same range creates nothing new.
    """
    if end_date < start_date:
        raise ValidationError("end_date must not be before start_date")
    if (end_date - start_date).days > 366:
        raise ValidationError("date range must not exceed one year")

    with transaction(db):
        get_active_driver(db, ctx, driver_id)
        daily_rests, _, time_entries = load_week(db, ctx, driver_id, start_date, end_date)
        worked_days = {e.entry_date for e in time_entries}
        rest_days = {r.rest_date for r in daily_rests}

        created = []
        day = start_date
        while day <= end_date:
            if day not in worked_days and day not in rest_days:
                start_time = datetime.combine(day, time.min)
                db.add(DailyRest(
                    organization_id=ctx.organization_id,
                    driver_id=driver_id,
                    rest_date=day,
                    start_time=start_time,
                    end_time=start_time + timedelta(hours=24),
                    duration_hours=24.0,
                    rest_type=RestType.REGULAR.value,
                    notes="Automatically recorded rest day - no work activity"
                ))
                created.append(day)
            day += timedelta(days=1)

    if created:
        logger.info("Auto-recorded %d rest days for driver %s", len(created), driver_id)
    return {
        "days_processed": (end_date - start_date).days + 1,
        "rest_days_created": len(created),
        "worked_days": len(worked_days),
        "existing_rest_days": len(rest_days),
    }


def evaluate_weekly_rest(
    db: Session,
    ctx: OrgContext,
    driver_id: int,
    week_start_date: date,
    as_of_date: Optional[date] = None,
) -> WeeklyRestResult:
    """Evaluate a driver's week and keep its compensation bookkeeping current."""
    week_start, week_end = _week_bounds(week_start_date)
    as_of_date = as_of_date or ctx.today()

    with transaction(db):
        get_driver(db, ctx, driver_id)
        daily_rests, weekly_rows, time_entries = load_week(db, ctx, driver_id, week_start, week_end)
        row = weekly_rows[0] if weekly_rows else None
        result = assess_week(driver_id, week_start, daily_rests, row, time_entries, as_of_date)

        bookkeeping = {
            "total_rest_hours": result.total_rest_hours,
            "rest_type": result.rest_type,
            "compensation_required": result.compensation_required,
            "compensation_deadline": result.compensation_deadline,
        }
        if row is None:
            db.add(WeeklyRest(
                organization_id=ctx.organization_id,
                driver_id=driver_id,
                week_start_date=week_start,
                week_end_date=week_end,
                **bookkeeping
            ))
        else:
            changed = {k: v for k, v in bookkeeping.items() if getattr(row, k) != v}
            for key, value in changed.items():
                setattr(row, key, value)

    logger.info(
        "Evaluated week %s for driver %s: %s rest %sh, %d warnings, %d violations",
        week_start, driver_id, result.rest_type, result.total_rest_hours,
        len(result.warnings), len(result.violations)
    )
    return result


def record_compensation(db: Session, ctx: OrgContext, driver_id: int, week_start_date: date,
                        compensation_date: date) -> WeeklyRest:
    """Record when the rest owed for a reduced week was taken."""
    week_start, week_end = _week_bounds(week_start_date)
    if compensation_date <= week_end:
        raise ValidationError("compensation_date must be after the reduced week")

    with transaction(db):
        row = _get_weekly_row(db, ctx, driver_id, week_start)
        if row is None:
            raise NotFoundError(f"No weekly rest evaluated for driver {driver_id} week {week_start}",
                                driver_id=driver_id)
        if not row.compensation_required:
            raise ValidationError(f"Week {week_start} of driver {driver_id} does not require compensation")
        if row.compensation_date is not None:
            raise DuplicateRecordError(
                f"Compensation already recorded for driver {driver_id} week {week_start}",
                compensation_date=row.compensation_date.isoformat()
            )
        row.compensation_date = compensation_date

    logger.info("Recorded compensation on %s for driver %s week %s", compensation_date, driver_id, week_start)
    return row


def list_outstanding_compensation(db: Session, ctx: OrgContext, as_of_date: Optional[date] = None) -> List[Dict]:
    """Reduced weeks still waiting for compensation, oldest deadline first."""
    as_of_date = as_of_date or ctx.today()
    rows = db.query(WeeklyRest).filter(
        WeeklyRest.organization_id == ctx.organization_id,
        WeeklyRest.compensation_required.is_(True),
        WeeklyRest.compensation_date.is_(None)
    ).order_by(WeeklyRest.compensation_deadline, WeeklyRest.driver_id).all()

    return [
        {
            "driver_id": row.driver_id,
            "week_start_date": row.week_start_date.isoformat(),
            "compensation_deadline": row.compensation_deadline.isoformat() if row.compensation_deadline else None,
            "overdue": row.compensation_deadline is not None and as_of_date > row.compensation_deadline,
        }
        for row in rows
    ]


def record_rest_violations(db: Session, ctx: OrgContext, result: WeeklyRestResult) -> List[ComplianceViolation]:
    """Persist a result's violations as infringement candidates, once per code and week."""
    if not result.violations:
        return []

    created = []
    with transaction(db):
        existing = {
            code for (code,) in db.query(ComplianceViolation.violation_code).filter(
                ComplianceViolation.organization_id == ctx.organization_id,
                ComplianceViolation.driver_id == result.driver_id,
                ComplianceViolation.week_start_date == result.week_start_date
            ).all()
        }
        for finding in result.violations:
            if finding.code in existing:
                continue
            violation = ComplianceViolation(
                organization_id=ctx.organization_id,
                driver_id=result.driver_id,
                week_start_date=result.week_start_date,
                violation_code=finding.code,
                description=finding.message,
                severity=VIOLATION_SEVERITY.get(finding.code, Severity.MINOR).value,
                status=ViolationStatus.OPEN.value
            )
            db.add(violation)
            created.append(violation)

    for violation in created:
        logger.info("Recorded %s violation for driver %s week %s",
                    violation.violation_code, violation.driver_id, violation.week_start_date)
    return created
