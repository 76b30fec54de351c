from datetime import date, datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from .. import aggregator, infringements, jobs, ledger, rest
from ..config import config
from ..db import get_db
from ..models import (
    Appeal, ComplianceViolation, DailyRest, Driver, Infringement, InfringementType,
    PointsLedgerEntry, TimeEntry, WeeklyRest
)
from ..persistence import OrgContext, create_driver, deactivate_driver, get_driver, list_drivers

router = APIRouter()


def get_org_context(
    x_organization_id: str = Header(..., description="Organization the call acts on"),
    x_user_id: Optional[str] = Header(None, description="Acting user"),
) -> OrgContext:
    return OrgContext(organization_id=x_organization_id, acting_user_id=x_user_id)


def _iso(value):
    return value.isoformat() if value is not None else None


def driver_to_dict(driver: Driver) -> Dict[str, Any]:
    return {
        "id": driver.id,
        "external_id": driver.external_id,
        "name": driver.name,
        "status": driver.status,
        "created_at": _iso(driver.created_at),
        "deactivated_at": _iso(driver.deactivated_at),
    }


def entry_to_dict(entry: PointsLedgerEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "driver_id": entry.driver_id,
        "sequence": entry.sequence,
        "points_added": entry.points_added,
        "points_removed": entry.points_removed,
        "balance_before": entry.balance_before,
        "balance_after": entry.balance_after,
        "reason": entry.reason,
        "reference_type": entry.reference_type,
        "effective_date": _iso(entry.effective_date),
        "expiry_date": _iso(entry.expiry_date),
        "infringement_id": entry.infringement_id,
        "reverses_entry_id": entry.reverses_entry_id,
        "status": entry.status,
    }


def daily_rest_to_dict(record: DailyRest) -> Dict[str, Any]:
    return {
        "id": record.id,
        "driver_id": record.driver_id,
        "rest_date": _iso(record.rest_date),
        "start_time": _iso(record.start_time),
        "end_time": _iso(record.end_time),
        "duration_hours": record.duration_hours,
        "rest_type": record.rest_type,
        "notes": record.notes,
    }


def weekly_rest_to_dict(row: WeeklyRest) -> Dict[str, Any]:
    return {
        "id": row.id,
        "driver_id": row.driver_id,
        "week_start_date": _iso(row.week_start_date),
        "week_end_date": _iso(row.week_end_date),
        "rest_start_time": _iso(row.rest_start_time),
        "rest_end_time": _iso(row.rest_end_time),
        "total_rest_hours": row.total_rest_hours,
        "rest_type": row.rest_type,
        "compensation_required": row.compensation_required,
        "compensation_deadline": _iso(row.compensation_deadline),
        "compensation_date": _iso(row.compensation_date),
    }


def time_entry_to_dict(entry: TimeEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "driver_id": entry.driver_id,
        "entry_date": _iso(entry.entry_date),
        "working_hours": entry.working_hours,
        "driving_hours": entry.driving_hours,
    }


def violation_to_dict(violation: ComplianceViolation) -> Dict[str, Any]:
    return {
        "id": violation.id,
        "driver_id": violation.driver_id,
        "week_start_date": _iso(violation.week_start_date),
        "violation_code": violation.violation_code,
        "description": violation.description,
        "severity": violation.severity,
        "status": violation.status,
        "infringement_id": violation.infringement_id,
    }


def infringement_type_to_dict(infringement_type: InfringementType) -> Dict[str, Any]:
    return {
        "id": infringement_type.id,
        "code": infringement_type.code,
        "name": infringement_type.name,
        "category": infringement_type.category,
        "severity": infringement_type.severity,
        "default_points": infringement_type.default_points,
        "default_fine_amount": infringement_type.default_fine_amount,
        "statutory_limit_days": infringement_type.statutory_limit_days,
        "is_active": infringement_type.is_active,
    }


def appeal_to_dict(appeal: Appeal) -> Dict[str, Any]:
    return {
        "id": appeal.id,
        "appeal_number": appeal.appeal_number,
        "infringement_id": appeal.infringement_id,
        "grounds": appeal.grounds,
        "submitted_date": _iso(appeal.submitted_date),
        "hearing_date": _iso(appeal.hearing_date),
        "status": appeal.status,
        "outcome": appeal.outcome,
        "outcome_date": _iso(appeal.outcome_date),
        "points_reduction": appeal.points_reduction,
        "fine_reduction_amount": appeal.fine_reduction_amount,
    }


def infringement_to_dict(infringement: Infringement) -> Dict[str, Any]:
    return {
        "id": infringement.id,
        "infringement_number": infringement.infringement_number,
        "driver_id": infringement.driver_id,
        "vehicle_id": infringement.vehicle_id,
        "infringement_type_id": infringement.infringement_type_id,
        "incident_date": _iso(infringement.incident_date),
        "issue_date": _iso(infringement.issue_date),
        "severity": infringement.severity,
        "penalty_points": infringement.penalty_points,
        "fine_amount": infringement.fine_amount,
        "status": infringement.status,
        "due_date": _iso(infringement.due_date),
        "payment_date": _iso(infringement.payment_date),
        "payment_amount": infringement.payment_amount,
        "points_posted": infringement.points_posted,
        "appeals": [appeal_to_dict(a) for a in infringement.appeals],
    }


# Request bodies

class DriverCreate(BaseModel):
    external_id: str
    name: Optional[str] = None


class LedgerPosting(BaseModel):
    points_delta: int
    reason: str
    effective_date: Optional[date] = None
    expiry_date: Optional[date] = None


class LedgerReversal(BaseModel):
    reason: str
    effective_date: Optional[date] = None


class DailyRestCreate(BaseModel):
    rest_date: date
    start_time: datetime
    end_time: datetime
    notes: Optional[str] = None
    overwrite: bool = False


class WeeklyRestCreate(BaseModel):
    week_start_date: date
    rest_start_time: datetime
    rest_end_time: datetime
    overwrite: bool = False


class TimeEntryCreate(BaseModel):
    entry_date: date
    working_hours: float
    driving_hours: float = 0.0
    overwrite: bool = False


class DateRange(BaseModel):
    start_date: date
    end_date: date


class CompensationCreate(BaseModel):
    compensation_date: date


class InfringementTypeCreate(BaseModel):
    code: str
    name: str
    severity: str
    statutory_limit_days: int
    default_points: int = 0
    default_fine_amount: float = 0.0
    category: str = "general"


class InfringementCreate(BaseModel):
    driver_id: int
    infringement_type_id: int
    incident_date: date
    issue_date: Optional[date] = None
    vehicle_id: Optional[str] = None
    penalty_points: Optional[int] = None
    fine_amount: Optional[float] = None
    confirm: bool = False


class ViolationConversion(BaseModel):
    infringement_type_id: int
    issue_date: Optional[date] = None


class InfringementConfirm(BaseModel):
    issue_date: Optional[date] = None


class InfringementResolve(BaseModel):
    payment_date: date
    payment_amount: Optional[float] = None


class AppealCreate(BaseModel):
    grounds: str
    submitted_date: Optional[date] = None
    hearing_date: Optional[date] = None


class AppealReview(BaseModel):
    hearing_date: Optional[date] = None


class AppealDecision(BaseModel):
    approved: bool
    outcome: str
    outcome_date: Optional[date] = None
    points_reduction: Optional[int] = None
    fine_reduction_amount: Optional[float] = None


# Drivers

@router.post("/drivers", status_code=201)
def create_driver_endpoint(body: DriverCreate, db: Session = Depends(get_db),
                           ctx: OrgContext = Depends(get_org_context)) -> Dict[str, Any]:
    """Onboard a driver."""
    return driver_to_dict(create_driver(db, ctx, body.external_id, body.name))


@router.get("/drivers")
def list_drivers_endpoint(
    db: Session = Depends(get_db),
    ctx: OrgContext = Depends(get_org_context),
    include_inactive: bool = Query(False, description="Include deactivated drivers")
) -> List[Dict[str, Any]]:
    return [driver_to_dict(d) for d in list_drivers(db, ctx, include_inactive)]


@router.get("/drivers/{driver_id}")
def get_driver_endpoint(driver_id: int, db: Session = Depends(get_db),
                        ctx: OrgContext = Depends(get_org_context)) -> Dict[str, Any]:
    return driver_to_dict(get_driver(db, ctx, driver_id))


@router.post("/drivers/{driver_id}/deactivate")
def deactivate_driver_endpoint(driver_id: int, db: Session = Depends(get_db),
                               ctx: OrgContext = Depends(get_org_context)) -> Dict[str, Any]:
    return driver_to_dict(deactivate_driver(db, ctx, driver_id))


# Points ledger

@router.get("/drivers/{driver_id}/ledger")
def get_ledger_endpoint(driver_id: int, db: Session = Depends(get_db),
                        ctx: OrgContext = Depends(get_org_context)) -> Dict[str, Any]:
    """Ledger entries in chain order with the effective balance."""
    entries = ledger.get_ledger(db, ctx, driver_id)
    return {
        "driver_id": driver_id,
        "effective_balance": ledger.compute_effective_balance(db, ctx, driver_id),
        "entries": [entry_to_dict(e) for e in entries],
        "chain_problems": ledger.verify_chain(entries),
    }


@router.post("/drivers/{driver_id}/ledger", status_code=201)
def post_ledger_entry_endpoint(driver_id: int, body: LedgerPosting, db: Session = Depends(get_db),
                               ctx: OrgContext = Depends(get_org_context)) -> Dict[str, Any]:
    """Post a manual points adjustment."""
    entry = ledger.post_entry(
        db, ctx, driver_id, body.points_delta, body.reason,
        effective_date=body.effective_date,
        expiry_date=body.expiry_date
    )
    return entry_to_dict(entry)


@router.get("/drivers/{driver_id}/balance")
def get_balance_endpoint(
    driver_id: int,
    db: Session = Depends(get_db),
    ctx: OrgContext = Depends(get_org_context),
    as_of_date: Optional[date] = Query(None, description="Balance as of this date")
) -> Dict[str, Any]:
    balance = ledger.compute_effective_balance(db, ctx, driver_id, as_of_date)
    return {"driver_id": driver_id, "as_of_date": _iso(as_of_date), "effective_balance": balance}


@router.post("/ledger/{entry_id}/reverse", status_code=201)
def reverse_ledger_entry_endpoint(entry_id: int, body: LedgerReversal, db: Session = Depends(get_db),
                                  ctx: OrgContext = Depends(get_org_context)) -> Dict[str, Any]:
    return entry_to_dict(ledger.reverse_entry(db, ctx, entry_id, body.reason, body.effective_date))


# Rest and working time

@router.post("/drivers/{driver_id}/daily-rest", status_code=201)
def record_daily_rest_endpoint(driver_id: int, body: DailyRestCreate, db: Session = Depends(get_db),
                               ctx: OrgContext = Depends(get_org_context)) -> Dict[str, Any]:
    record = rest.record_daily_rest(
        db, ctx, driver_id, body.rest_date, body.start_time, body.end_time,
        notes=body.notes, overwrite=body.overwrite
    )
    return daily_rest_to_dict(record)


@router.post("/drivers/{driver_id}/weekly-rest", status_code=201)
def record_weekly_rest_endpoint(driver_id: int, body: WeeklyRestCreate, db: Session = Depends(get_db),
                                ctx: OrgContext = Depends(get_org_context)) -> Dict[str, Any]:
    row = rest.record_weekly_rest(
        db, ctx, driver_id, body.week_start_date, body.rest_start_time, body.rest_end_time,
        overwrite=body.overwrite
    )
    return weekly_rest_to_dict(row)


@router.post("/drivers/{driver_id}/time-entries", status_code=201)
def record_time_entry_endpoint(driver_id: int, body: TimeEntryCreate, db: Session = Depends(get_db),
                               ctx: OrgContext = Depends(get_org_context)) -> Dict[str, Any]:
    entry = rest.record_time_entry(
        db, ctx, driver_id, body.entry_date, body.working_hours, body.driving_hours,
        overwrite=body.overwrite
    )
    return time_entry_to_dict(entry)


@router.post("/drivers/{driver_id}/rest-days/auto")
def auto_record_rest_days_endpoint(driver_id: int, body: DateRange, db: Session = Depends(get_db),
                                   ctx: OrgContext = Depends(get_org_context)) -> Dict[str, Any]:
    """Record full-day rest for days without any work."""
    return rest.auto_record_rest_days(db, ctx, driver_id, body.start_date, body.end_date)


@router.post("/drivers/{driver_id}/weeks/{week_start_date}/evaluate")
def evaluate_week_endpoint(
    driver_id: int,
    week_start_date: date,
    db: Session = Depends(get_db),
    ctx: OrgContext = Depends(get_org_context),
    as_of_date: Optional[date] = Query(None, description="Date used for compensation deadlines"),
    record_violations: bool = Query(False, description="Persist violations as infringement candidates")
) -> Dict[str, Any]:
    """Evaluate a week's rest, working and driving time."""
    result = rest.evaluate_weekly_rest(db, ctx, driver_id, week_start_date, as_of_date)
    data = result.to_dict()
    if record_violations:
        data["recorded_violations"] = [violation_to_dict(v) for v in rest.record_rest_violations(db, ctx, result)]
    return data


@router.post("/drivers/{driver_id}/weeks/{week_start_date}/compensation")
def record_compensation_endpoint(driver_id: int, week_start_date: date, body: CompensationCreate,
                                 db: Session = Depends(get_db),
                                 ctx: OrgContext = Depends(get_org_context)) -> Dict[str, Any]:
    row = rest.record_compensation(db, ctx, driver_id, week_start_date, body.compensation_date)
    return weekly_rest_to_dict(row)


@router.get("/compensation/outstanding")
def outstanding_compensation_endpoint(
    db: Session = Depends(get_db),
    ctx: OrgContext = Depends(get_org_context),
    as_of_date: Optional[date] = Query(None)
) -> List[Dict[str, Any]]:
    return rest.list_outstanding_compensation(db, ctx, as_of_date)


# Compliance violations

@router.get("/violations")
def list_violations_endpoint(
    db: Session = Depends(get_db),
    ctx: OrgContext = Depends(get_org_context),
    driver_id: Optional[int] = Query(None, description="Filter by driver ID"),
    status: Optional[str] = Query(None, description="Filter by status")
) -> List[Dict[str, Any]]:
    return [violation_to_dict(v) for v in infringements.list_violations(db, ctx, driver_id, status)]


@router.post("/violations/{violation_id}/infringement", status_code=201)
def convert_violation_endpoint(violation_id: int, body: ViolationConversion, db: Session = Depends(get_db),
                               ctx: OrgContext = Depends(get_org_context)) -> Dict[str, Any]:
    infringement = infringements.create_infringement_from_violation(
        db, ctx, violation_id, body.infringement_type_id, body.issue_date
    )
    return infringement_to_dict(infringement)


@router.post("/violations/{violation_id}/dismiss")
def dismiss_violation_endpoint(violation_id: int, db: Session = Depends(get_db),
                               ctx: OrgContext = Depends(get_org_context)) -> Dict[str, Any]:
    return violation_to_dict(infringements.dismiss_violation(db, ctx, violation_id))


# Infringements and appeals

@router.post("/infringement-types", status_code=201)
def create_infringement_type_endpoint(body: InfringementTypeCreate, db: Session = Depends(get_db),
                                      ctx: OrgContext = Depends(get_org_context)) -> Dict[str, Any]:
    infringement_type = infringements.create_infringement_type(
        db, ctx, body.code, body.name, body.severity, body.statutory_limit_days,
        default_points=body.default_points,
        default_fine_amount=body.default_fine_amount,
        category=body.category
    )
    return infringement_type_to_dict(infringement_type)


@router.get("/infringement-types")
def list_infringement_types_endpoint(db: Session = Depends(get_db),
                                     ctx: OrgContext = Depends(get_org_context)) -> List[Dict[str, Any]]:
    return [infringement_type_to_dict(t) for t in infringements.list_infringement_types(db, ctx)]


@router.post("/infringements", status_code=201)
def create_infringement_endpoint(body: InfringementCreate, db: Session = Depends(get_db),
                                 ctx: OrgContext = Depends(get_org_context)) -> Dict[str, Any]:
    infringement = infringements.create_infringement(
        db, ctx, body.driver_id, body.infringement_type_id, body.incident_date,
        issue_date=body.issue_date,
        vehicle_id=body.vehicle_id,
        penalty_points=body.penalty_points,
        fine_amount=body.fine_amount,
        confirm=body.confirm
    )
    return infringement_to_dict(infringement)


@router.get("/infringements")
def list_infringements_endpoint(
    db: Session = Depends(get_db),
    ctx: OrgContext = Depends(get_org_context),
    driver_id: Optional[int] = Query(None, description="Filter by driver ID"),
    status: Optional[str] = Query(None, description="Filter by status")
) -> List[Dict[str, Any]]:
    return [infringement_to_dict(i) for i in infringements.list_infringements(db, ctx, driver_id, status)]


@router.get("/infringements/stats")
def infringement_stats_endpoint(db: Session = Depends(get_db),
                                ctx: OrgContext = Depends(get_org_context)) -> Dict[str, Any]:
    """Infringement totals by status, severity and month."""
    return infringements.infringement_stats(db, ctx)


@router.get("/infringements/{infringement_id}")
def get_infringement_endpoint(infringement_id: int, db: Session = Depends(get_db),
                              ctx: OrgContext = Depends(get_org_context)) -> Dict[str, Any]:
    return infringement_to_dict(infringements.get_infringement(db, ctx, infringement_id))


@router.post("/infringements/{infringement_id}/confirm")
def confirm_infringement_endpoint(infringement_id: int, body: InfringementConfirm, db: Session = Depends(get_db),
                                  ctx: OrgContext = Depends(get_org_context)) -> Dict[str, Any]:
    return infringement_to_dict(infringements.confirm_infringement(db, ctx, infringement_id, body.issue_date))


@router.post("/infringements/{infringement_id}/resolve")
def resolve_infringement_endpoint(infringement_id: int, body: InfringementResolve, db: Session = Depends(get_db),
                                  ctx: OrgContext = Depends(get_org_context)) -> Dict[str, Any]:
    """Resolve by payment; posts the penalty points."""
    infringement = infringements.resolve_infringement(
        db, ctx, infringement_id, body.payment_date, body.payment_amount
    )
    return infringement_to_dict(infringement)


@router.post("/infringements/{infringement_id}/appeals", status_code=201)
def file_appeal_endpoint(infringement_id: int, body: AppealCreate, db: Session = Depends(get_db),
                         ctx: OrgContext = Depends(get_org_context)) -> Dict[str, Any]:
    appeal = infringements.file_appeal(
        db, ctx, infringement_id, body.grounds, body.submitted_date, body.hearing_date
    )
    return appeal_to_dict(appeal)


@router.post("/appeals/{appeal_id}/review")
def start_review_endpoint(appeal_id: int, body: AppealReview, db: Session = Depends(get_db),
                          ctx: OrgContext = Depends(get_org_context)) -> Dict[str, Any]:
    return appeal_to_dict(infringements.start_appeal_review(db, ctx, appeal_id, body.hearing_date))


@router.post("/appeals/{appeal_id}/decision")
def decide_appeal_endpoint(appeal_id: int, body: AppealDecision, db: Session = Depends(get_db),
                           ctx: OrgContext = Depends(get_org_context)) -> Dict[str, Any]:
    appeal = infringements.decide_appeal(
        db, ctx, appeal_id, body.approved, body.outcome,
        outcome_date=body.outcome_date,
        points_reduction=body.points_reduction,
        fine_reduction_amount=body.fine_reduction_amount
    )
    return appeal_to_dict(appeal)


@router.post("/appeals/{appeal_id}/withdraw")
def withdraw_appeal_endpoint(appeal_id: int, db: Session = Depends(get_db),
                             ctx: OrgContext = Depends(get_org_context)) -> Dict[str, Any]:
    return appeal_to_dict(infringements.withdraw_appeal(db, ctx, appeal_id))


# Scores

@router.get("/drivers/{driver_id}/score")
def get_score_endpoint(
    driver_id: int,
    db: Session = Depends(get_db),
    ctx: OrgContext = Depends(get_org_context),
    as_of_date: Optional[date] = Query(None, description="Score as of this date")
) -> Dict[str, Any]:
    """Compliance score and risk level for a driver."""
    return aggregator.compute_score(db, ctx, driver_id, as_of_date).to_dict()


@router.get("/config")
def get_config_endpoint() -> Dict[str, Any]:
    return {
        "rest": config.get_rest_config(),
        "ledger": config.get_ledger_config(),
        "scoring": config.get_scoring_config(),
    }


# Batch jobs, for an external scheduler

@router.post("/jobs/points-expiry")
def points_expiry_job(db: Session = Depends(get_db),
                      as_of_date: Optional[date] = Query(None)) -> Dict[str, Any]:
    return jobs.run_points_expiry(as_of_date, db=db)


@router.post("/jobs/infringement-expiry")
def infringement_expiry_job(db: Session = Depends(get_db),
                            current_date: Optional[date] = Query(None)) -> Dict[str, Any]:
    return jobs.run_infringement_expiry(current_date, db=db)


@router.post("/jobs/weekly-rest")
def weekly_rest_job(db: Session = Depends(get_db),
                    week_start_date: Optional[date] = Query(None),
                    as_of_date: Optional[date] = Query(None)) -> Dict[str, Any]:
    return jobs.run_weekly_rest_sweep(week_start_date, as_of_date, db=db)
