"""
Infringement and appeal lifecycle.

Infringements move ``pending -> active -> {resolved, disputed, expired}`` and
``disputed -> {active, resolved, expired}``. Penalty points reach the ledger
only when an infringement is resolved, either by payment or by an approved
appeal, and the status change and the ledger append commit together. The
``version`` column on the infringement makes a second, racing resolution lose
with ``ConcurrencyConflictError`` instead of posting twice.
"""

import logging
import uuid
from collections import Counter
from datetime import date, timedelta
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from .errors import (
    AlreadyResolvedError,
    ComplianceError,
    DuplicateAppealError,
    DuplicateRecordError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from .ledger import append_entry
from .models import (
    OPEN_APPEAL_STATUSES,
    Appeal,
    AppealStatus,
    ComplianceViolation,
    Infringement,
    InfringementStatus,
    InfringementType,
    LedgerReference,
    PointsLedgerEntry,
    Severity,
    ViolationStatus,
)
from .persistence import OrgContext, get_active_driver, transaction, utcnow

logger = logging.getLogger(__name__)

TRANSITIONS = {
    InfringementStatus.PENDING: {InfringementStatus.ACTIVE},
    InfringementStatus.ACTIVE: {InfringementStatus.RESOLVED, InfringementStatus.DISPUTED, InfringementStatus.EXPIRED},
    InfringementStatus.DISPUTED: {InfringementStatus.ACTIVE, InfringementStatus.RESOLVED, InfringementStatus.EXPIRED},
    InfringementStatus.RESOLVED: set(),
    InfringementStatus.EXPIRED: set(),
}


def _new_number(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:10].upper()}"


def _transition(infringement: Infringement, target: InfringementStatus):
    current = InfringementStatus(infringement.status)
    if target in TRANSITIONS[current]:
        infringement.status = target.value
        return
    if current == InfringementStatus.RESOLVED:
        raise AlreadyResolvedError(
            f"Infringement {infringement.infringement_number} is already resolved",
            infringement_id=infringement.id
        )
    logger.warning("Rejected transition %s -> %s for infringement %s", current.value, target.value, infringement.id)
    raise InvalidTransitionError(
        f"Infringement {infringement.infringement_number} cannot move from {current.value} to {target.value}",
        infringement_id=infringement.id, status=current.value
    )


def _check_amount(name: str, value, upper=None):
    if value is None:
        return
    if value < 0:
        raise ValidationError(f"{name} must not be negative", **{name: value})
    if upper is not None and value > upper:
        raise ValidationError(f"{name} must not exceed {upper}", **{name: value})


def _post_penalty(db: Session, ctx: OrgContext, infringement: Infringement) -> Optional[PointsLedgerEntry]:
    """Post the infringement's penalty points once."""
    if infringement.points_posted:
        raise AlreadyResolvedError(
            f"Points for infringement {infringement.infringement_number} were already posted",
            infringement_id=infringement.id
        )
    infringement.points_posted = True
    if not infringement.penalty_points:
        return None
    return append_entry(
        db, ctx, infringement.driver_id, infringement.penalty_points,
        f"Infringement {infringement.infringement_number}",
        infringement_id=infringement.id,
        reference_type=LedgerReference.INFRINGEMENT
    )


# Infringement types

def create_infringement_type(
    db: Session,
    ctx: OrgContext,
    code: str,
    name: str,
    severity: str,
    statutory_limit_days: int,
    default_points: int = 0,
    default_fine_amount: float = 0.0,
    category: str = "general",
) -> InfringementType:
    if not code or not name:
        raise ValidationError("code and name are required")
    try:
        severity = Severity(severity)
    except ValueError:
        raise ValidationError(f"Unknown severity '{severity}'", severity=severity)
    if statutory_limit_days is None or statutory_limit_days <= 0:
        raise ValidationError("statutory_limit_days must be positive", statutory_limit_days=statutory_limit_days)
    _check_amount("default_points", default_points)
    _check_amount("default_fine_amount", default_fine_amount)

    with transaction(db, integrity_error=DuplicateRecordError,
                     integrity_message=f"Infringement type '{code}' already exists"):
        existing = db.query(InfringementType).filter(
            InfringementType.organization_id == ctx.organization_id,
            InfringementType.code == code
        ).first()
        if existing:
            raise DuplicateRecordError(f"Infringement type '{code}' already exists", type_id=existing.id)
        infringement_type = InfringementType(
            organization_id=ctx.organization_id,
            code=code,
            name=name,
            category=category,
            severity=severity.value,
            default_points=default_points,
            default_fine_amount=default_fine_amount,
            statutory_limit_days=statutory_limit_days,
            is_active=True
        )
        db.add(infringement_type)

    logger.info("Created infringement type %s (%s)", code, severity.value)
    return infringement_type


def get_infringement_type(db: Session, ctx: OrgContext, type_id: int) -> InfringementType:
    infringement_type = db.query(InfringementType).filter(
        InfringementType.organization_id == ctx.organization_id,
        InfringementType.id == type_id
    ).first()
    if infringement_type is None:
        raise NotFoundError(f"Infringement type {type_id} not found", type_id=type_id)
    return infringement_type


def list_infringement_types(db: Session, ctx: OrgContext) -> List[InfringementType]:
    return db.query(InfringementType).filter(
        InfringementType.organization_id == ctx.organization_id,
        InfringementType.is_active.is_(True)
    ).order_by(InfringementType.code).all()


# Infringements

def get_infringement(db: Session, ctx: OrgContext, infringement_id: int) -> Infringement:
    infringement = db.query(Infringement).filter(
        Infringement.organization_id == ctx.organization_id,
        Infringement.id == infringement_id
    ).first()
    if infringement is None:
        raise NotFoundError(f"Infringement {infringement_id} not found", infringement_id=infringement_id)
    return infringement


def list_infringements(db: Session, ctx: OrgContext, driver_id: Optional[int] = None,
                       status: Optional[str] = None) -> List[Infringement]:
    query = db.query(Infringement).filter(Infringement.organization_id == ctx.organization_id)
    if driver_id is not None:
        query = query.filter(Infringement.driver_id == driver_id)
    if status is not None:
        try:
            status = InfringementStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown infringement status '{status}'", status=status)
        query = query.filter(Infringement.status == status.value)
    return query.order_by(Infringement.incident_date.desc(), Infringement.id.desc()).all()


def _activate(infringement: Infringement, infringement_type: InfringementType, issue_date: date):
    if issue_date < infringement.incident_date:
        raise ValidationError("issue_date must not be before incident_date", infringement_id=infringement.id)
    _transition(infringement, InfringementStatus.ACTIVE)
    infringement.issue_date = issue_date
    infringement.due_date = issue_date + timedelta(days=infringement_type.statutory_limit_days)


def create_infringement(
    db: Session,
    ctx: OrgContext,
    driver_id: int,
    infringement_type_id: int,
    incident_date: date,
    issue_date: Optional[date] = None,
    vehicle_id: Optional[str] = None,
    penalty_points: Optional[int] = None,
    fine_amount: Optional[float] = None,
    confirm: bool = False,
) -> Infringement:
    """Record an infringement; points and fine default to the type's.

    The record starts pending. With ``confirm`` it is confirmed immediately,
    which needs an issue date.
    """
    if incident_date is None:
        raise ValidationError("incident_date is required")
    if issue_date is not None and issue_date < incident_date:
        raise ValidationError("issue_date must not be before incident_date")
    if confirm and issue_date is None:
        raise ValidationError("issue_date is required to confirm an infringement")
    _check_amount("penalty_points", penalty_points)
    _check_amount("fine_amount", fine_amount)

    with transaction(db):
        get_active_driver(db, ctx, driver_id)
        infringement_type = get_infringement_type(db, ctx, infringement_type_id)
        if not infringement_type.is_active:
            raise ValidationError(f"Infringement type {infringement_type.code} is inactive")

        infringement = Infringement(
            organization_id=ctx.organization_id,
            infringement_number=_new_number("INF"),
            driver_id=driver_id,
            vehicle_id=vehicle_id,
            infringement_type_id=infringement_type.id,
            incident_date=incident_date,
            issue_date=issue_date,
            severity=infringement_type.severity,
            penalty_points=infringement_type.default_points if penalty_points is None else penalty_points,
            fine_amount=infringement_type.default_fine_amount if fine_amount is None else fine_amount,
            status=InfringementStatus.PENDING.value,
            points_posted=False
        )
        if confirm:
            _activate(infringement, infringement_type, issue_date)
        db.add(infringement)

    logger.info(
        "Created infringement %s (%s) for driver %s: %d points, status %s",
        infringement.infringement_number, infringement_type.code, driver_id,
        infringement.penalty_points, infringement.status
    )
    return infringement


def create_infringement_from_violation(
    db: Session,
    ctx: OrgContext,
    violation_id: int,
    infringement_type_id: int,
    issue_date: Optional[date] = None,
) -> Infringement:
    """Turn an open compliance violation into a pending (or confirmed) infringement."""
    with transaction(db):
        violation = db.query(ComplianceViolation).filter(
            ComplianceViolation.organization_id == ctx.organization_id,
            ComplianceViolation.id == violation_id
        ).first()
        if violation is None:
            raise NotFoundError(f"Compliance violation {violation_id} not found", violation_id=violation_id)
        if violation.status != ViolationStatus.OPEN:
            raise InvalidTransitionError(
                f"Compliance violation {violation_id} is {violation.status}", violation_id=violation_id
            )

        get_active_driver(db, ctx, violation.driver_id)
        infringement_type = get_infringement_type(db, ctx, infringement_type_id)
        infringement = Infringement(
            organization_id=ctx.organization_id,
            infringement_number=_new_number("INF"),
            driver_id=violation.driver_id,
            infringement_type_id=infringement_type.id,
            incident_date=violation.week_start_date + timedelta(days=6),
            severity=infringement_type.severity,
            penalty_points=infringement_type.default_points,
            fine_amount=infringement_type.default_fine_amount,
            status=InfringementStatus.PENDING.value,
            points_posted=False
        )
        if issue_date is not None:
            _activate(infringement, infringement_type, issue_date)
        db.add(infringement)
        db.flush()
        violation.status = ViolationStatus.CONVERTED.value
        violation.infringement_id = infringement.id

    logger.info("Converted violation %s (%s) into infringement %s",
                violation_id, violation.violation_code, infringement.infringement_number)
    return infringement


def dismiss_violation(db: Session, ctx: OrgContext, violation_id: int) -> ComplianceViolation:
    with transaction(db):
        violation = db.query(ComplianceViolation).filter(
            ComplianceViolation.organization_id == ctx.organization_id,
            ComplianceViolation.id == violation_id
        ).first()
        if violation is None:
            raise NotFoundError(f"Compliance violation {violation_id} not found", violation_id=violation_id)
        if violation.status != ViolationStatus.OPEN:
            raise InvalidTransitionError(
                f"Compliance violation {violation_id} is {violation.status}", violation_id=violation_id
            )
        violation.status = ViolationStatus.DISMISSED.value

    logger.info("Dismissed violation %s", violation_id)
    return violation


def list_violations(db: Session, ctx: OrgContext, driver_id: Optional[int] = None,
                    status: Optional[str] = None) -> List[ComplianceViolation]:
    query = db.query(ComplianceViolation).filter(ComplianceViolation.organization_id == ctx.organization_id)
    if driver_id is not None:
        query = query.filter(ComplianceViolation.driver_id == driver_id)
    if status is not None:
        try:
            status = ViolationStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown violation status '{status}'", status=status)
        query = query.filter(ComplianceViolation.status == status.value)
    return query.order_by(ComplianceViolation.week_start_date, ComplianceViolation.id).all()


def confirm_infringement(db: Session, ctx: OrgContext, infringement_id: int,
                         issue_date: Optional[date] = None) -> Infringement:
    """Move a pending infringement to active and start its statutory clock."""
    with transaction(db):
        infringement = get_infringement(db, ctx, infringement_id)
        issue_date = issue_date or infringement.issue_date
        if issue_date is None:
            raise ValidationError("issue_date is required to confirm an infringement",
                                  infringement_id=infringement_id)
        _activate(infringement, infringement.infringement_type, issue_date)

    logger.info("Confirmed infringement %s, due %s", infringement.infringement_number, infringement.due_date)
    return infringement


def resolve_infringement(
    db: Session,
    ctx: OrgContext,
    infringement_id: int,
    payment_date: date,
    payment_amount: Optional[float] = None,
) -> Infringement:
    """Resolve an active infringement by payment and post its penalty points.

    A second call fails with ``AlreadyResolvedError`` and leaves the ledger
    untouched.
    """
    if payment_date is None:
        raise ValidationError("payment_date is required")
    _check_amount("payment_amount", payment_amount)

    with transaction(db):
        infringement = get_infringement(db, ctx, infringement_id)
        if infringement.status == InfringementStatus.DISPUTED:
            raise InvalidTransitionError(
                f"Infringement {infringement.infringement_number} has an open appeal",
                infringement_id=infringement_id
            )
        _transition(infringement, InfringementStatus.RESOLVED)
        infringement.payment_date = payment_date
        infringement.payment_amount = infringement.fine_amount if payment_amount is None else payment_amount
        infringement.resolved_at = utcnow()
        entry = _post_penalty(db, ctx, infringement)

    logger.info(
        "Resolved infringement %s for driver %s, posted %d points",
        infringement.infringement_number, infringement.driver_id, entry.points_delta if entry else 0
    )
    return infringement


def expire_infringements(db: Session, ctx: OrgContext, current_date: Optional[date] = None) -> Dict:
    """Expire every active or disputed infringement whose due date has passed.

    Each record commits on its own; a failure is logged and the sweep moves
    on. Expired records are terminal, so re-running changes nothing.
    """
    current_date = current_date or ctx.today()
    due_ids = [
        infringement_id for (infringement_id,) in db.query(Infringement.id).filter(
            Infringement.organization_id == ctx.organization_id,
            Infringement.status.in_([InfringementStatus.ACTIVE.value, InfringementStatus.DISPUTED.value]),
            Infringement.due_date < current_date
        ).order_by(Infringement.id).all()
    ]

    summary = {"expired": [], "failed": []}
    for infringement_id in due_ids:
        try:
            with transaction(db):
                infringement = get_infringement(db, ctx, infringement_id)
                _transition(infringement, InfringementStatus.EXPIRED)
                infringement.expired_at = utcnow()
                for appeal in infringement.appeals:
                    if appeal.status in OPEN_APPEAL_STATUSES:
                        appeal.status = AppealStatus.WITHDRAWN.value
                        appeal.outcome = "Infringement expired before a decision"
                        appeal.outcome_date = current_date
            summary["expired"].append(infringement_id)
            logger.info("Expired infringement %s (due %s)", infringement.infringement_number, infringement.due_date)
        except ComplianceError as e:
            logger.error("Failed to expire infringement %s: %s", infringement_id, e)
            summary["failed"].append(infringement_id)

    return summary


def infringement_stats(db: Session, ctx: OrgContext) -> Dict:
    """Counts by status, severity and incident month, with fine and points totals."""
    infringements = db.query(Infringement).filter(Infringement.organization_id == ctx.organization_id).all()
    open_appeals = db.query(Appeal).filter(
        Appeal.organization_id == ctx.organization_id,
        Appeal.status.in_(OPEN_APPEAL_STATUSES)
    ).count()

    return {
        "total": len(infringements),
        "by_status": dict(Counter(i.status for i in infringements)),
        "by_severity": dict(Counter(i.severity for i in infringements)),
        "by_month": dict(sorted(Counter(i.incident_date.strftime("%Y-%m") for i in infringements).items())),
        "total_fines": round(sum(i.fine_amount for i in infringements), 2),
        "total_points": sum(i.penalty_points for i in infringements),
        "open_appeals": open_appeals,
    }


# Appeals

def get_appeal(db: Session, ctx: OrgContext, appeal_id: int) -> Appeal:
    appeal = db.query(Appeal).filter(
        Appeal.organization_id == ctx.organization_id,
        Appeal.id == appeal_id
    ).first()
    if appeal is None:
        raise NotFoundError(f"Appeal {appeal_id} not found", appeal_id=appeal_id)
    return appeal


def _open_appeal(appeal: Appeal):
    if appeal.status not in OPEN_APPEAL_STATUSES:
        raise InvalidTransitionError(f"Appeal {appeal.appeal_number} is already {appeal.status}",
                                     appeal_id=appeal.id)


def file_appeal(
    db: Session,
    ctx: OrgContext,
    infringement_id: int,
    grounds: str,
    submitted_date: Optional[date] = None,
    hearing_date: Optional[date] = None,
) -> Appeal:
    """Appeal an active infringement, which becomes disputed."""
    if not grounds:
        raise ValidationError("grounds are required")
    submitted_date = submitted_date or ctx.today()

    with transaction(db):
        infringement = get_infringement(db, ctx, infringement_id)
        if infringement.status == InfringementStatus.RESOLVED:
            raise AlreadyResolvedError(
                f"Infringement {infringement.infringement_number} is already resolved",
                infringement_id=infringement_id
            )
        if any(a.status in OPEN_APPEAL_STATUSES for a in infringement.appeals):
            logger.warning("Rejected second appeal for infringement %s", infringement_id)
            raise DuplicateAppealError(
                f"Infringement {infringement.infringement_number} already has an open appeal",
                infringement_id=infringement_id
            )
        if infringement.status != InfringementStatus.ACTIVE:
            raise InvalidTransitionError(
                f"Only active infringements can be appealed, {infringement.infringement_number} "
                f"is {infringement.status}",
                infringement_id=infringement_id
            )
        if hearing_date is not None and hearing_date < submitted_date:
            raise ValidationError("hearing_date must not be before submitted_date")

        _transition(infringement, InfringementStatus.DISPUTED)
        appeal = Appeal(
            organization_id=ctx.organization_id,
            appeal_number=_new_number("APL"),
            infringement=infringement,
            grounds=grounds,
            submitted_date=submitted_date,
            hearing_date=hearing_date,
            status=AppealStatus.PENDING.value
        )
        db.add(appeal)

    logger.info("Filed appeal %s against infringement %s", appeal.appeal_number, infringement.infringement_number)
    return appeal


def start_appeal_review(db: Session, ctx: OrgContext, appeal_id: int,
                        hearing_date: Optional[date] = None) -> Appeal:
    with transaction(db):
        appeal = get_appeal(db, ctx, appeal_id)
        if appeal.status != AppealStatus.PENDING:
            raise InvalidTransitionError(f"Appeal {appeal.appeal_number} is {appeal.status}, not pending",
                                         appeal_id=appeal_id)
        appeal.status = AppealStatus.UNDER_REVIEW.value
        if hearing_date is not None:
            appeal.hearing_date = hearing_date

    logger.info("Appeal %s under review", appeal.appeal_number)
    return appeal


def decide_appeal(
    db: Session,
    ctx: OrgContext,
    appeal_id: int,
    approved: bool,
    outcome: str,
    outcome_date: Optional[date] = None,
    points_reduction: Optional[int] = None,
    fine_reduction_amount: Optional[float] = None,
) -> Appeal:
    """Approve or reject an open appeal.

    Approval resolves the infringement: the original penalty is posted and any
    ``points_reduction`` is credited back as a separate offsetting entry, so
    the original entry is never altered. Rejection returns the infringement
    to active with no ledger change.
    """
    if not outcome:
        raise ValidationError("outcome is required")
    outcome_date = outcome_date or ctx.today()

    with transaction(db):
        appeal = get_appeal(db, ctx, appeal_id)
        _open_appeal(appeal)
        infringement = appeal.infringement
        if not approved and (points_reduction or fine_reduction_amount):
            raise ValidationError("A rejected appeal cannot carry reductions", appeal_id=appeal_id)
        _check_amount("points_reduction", points_reduction, infringement.penalty_points)
        _check_amount("fine_reduction_amount", fine_reduction_amount, infringement.fine_amount)

        appeal.outcome = outcome
        appeal.outcome_date = outcome_date
        if approved:
            _transition(infringement, InfringementStatus.RESOLVED)
            infringement.resolved_at = utcnow()
            appeal.status = AppealStatus.APPROVED.value
            appeal.points_reduction = points_reduction or 0
            appeal.fine_reduction_amount = fine_reduction_amount or 0.0
            original = _post_penalty(db, ctx, infringement)
            if original is not None and points_reduction:
                append_entry(
                    db, ctx, infringement.driver_id, -points_reduction,
                    f"Appeal {appeal.appeal_number} reduction",
                    infringement_id=infringement.id,
                    expiry_date=original.expiry_date,
                    reference_type=LedgerReference.APPEAL
                )
        else:
            _transition(infringement, InfringementStatus.ACTIVE)
            appeal.status = AppealStatus.REJECTED.value

    logger.info(
        "Appeal %s %s for infringement %s", appeal.appeal_number, appeal.status, infringement.infringement_number
    )
    return appeal


def withdraw_appeal(db: Session, ctx: OrgContext, appeal_id: int) -> Appeal:
    with transaction(db):
        appeal = get_appeal(db, ctx, appeal_id)
        _open_appeal(appeal)
        appeal.status = AppealStatus.WITHDRAWN.value
        appeal.outcome_date = ctx.today()
        _transition(appeal.infringement, InfringementStatus.ACTIVE)

    logger.info("Appeal %s withdrawn", appeal.appeal_number)
    return appeal
