"""
Driver penalty points ledger.

Entries are append-only and chain ``balance_after[n] == balance_before[n+1]``
in ``(effective_date, sequence)`` order; that chain is the audit trail.
Expiry and reversal remove contributions out of order, so the balance every
decision uses is the *effective* balance: the sum of entries that are still
active. The two agree until the first entry expires or is reversed.
"""

import logging
from collections import defaultdict
from datetime import date, timedelta
from typing import Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from .config import config
from .errors import ComplianceError, InvalidDeltaError, InvalidTransitionError, NotFoundError, ValidationError
from .models import LedgerReference, LedgerStatus, PointsLedgerEntry
from .persistence import OrgContext, get_active_driver, get_driver, transaction

logger = logging.getLogger(__name__)


def _latest_entry(db: Session, ctx: OrgContext, driver_id: int) -> Optional[PointsLedgerEntry]:
    return db.query(PointsLedgerEntry).filter(
        PointsLedgerEntry.organization_id == ctx.organization_id,
        PointsLedgerEntry.driver_id == driver_id
    ).order_by(
        PointsLedgerEntry.effective_date.desc(),
        PointsLedgerEntry.sequence.desc()
    ).first()


def _active_entries(db: Session, ctx: OrgContext, driver_id: int, as_of_date: Optional[date] = None):
    query = db.query(PointsLedgerEntry).filter(
        PointsLedgerEntry.organization_id == ctx.organization_id,
        PointsLedgerEntry.driver_id == driver_id,
        PointsLedgerEntry.status == LedgerStatus.ACTIVE.value
    )
    if as_of_date is not None:
        query = query.filter(
            PointsLedgerEntry.effective_date <= as_of_date,
            or_(PointsLedgerEntry.expiry_date.is_(None), PointsLedgerEntry.expiry_date > as_of_date)
        )
    return query


def _effective_balance(db: Session, ctx: OrgContext, driver_id: int, as_of_date: Optional[date] = None) -> int:
    return sum(entry.points_delta for entry in _active_entries(db, ctx, driver_id, as_of_date))


def _check_floor(current: int, delta: int, driver_id: int):
    if config.ledger_allow_negative:
        return
    if current + delta < config.ledger_floor:
        raise InvalidDeltaError(
            f"Posting {delta} points would take driver {driver_id} from {current} "
            f"below the floor of {config.ledger_floor}",
            driver_id=driver_id, balance=current, points_delta=delta, floor=config.ledger_floor
        )


def compute_effective_balance(db: Session, ctx: OrgContext, driver_id: int,
                              as_of_date: Optional[date] = None) -> int:
    """Sum of the driver's active entries.

    With ``as_of_date`` the sum also leaves out entries that take effect later
    or whose expiry date has passed, whether or not the expiry sweep has run.
    """
    get_driver(db, ctx, driver_id)
    return _effective_balance(db, ctx, driver_id, as_of_date)


def append_entry(
    db: Session,
    ctx: OrgContext,
    driver_id: int,
    points_delta: int,
    reason: str,
    effective_date: Optional[date] = None,
    infringement_id: Optional[int] = None,
    expiry_date: Optional[date] = None,
    reference_type: LedgerReference = LedgerReference.MANUAL_ADJUSTMENT,
    status: LedgerStatus = LedgerStatus.ACTIVE,
    reverses_entry_id: Optional[int] = None,
) -> PointsLedgerEntry:
    """Validate and stage one ledger entry in the caller's transaction.

    Callers that need the append to commit together with other writes (an
    infringement resolution, say) use this directly; ``post_entry`` wraps it in
    its own transaction.
    """
    if isinstance(points_delta, bool) or not isinstance(points_delta, int):
        raise ValidationError("points_delta must be an integer", points_delta=points_delta)
    if points_delta == 0:
        raise ValidationError("points_delta must not be zero")
    if not reason:
        raise ValidationError("reason is required")

    get_active_driver(db, ctx, driver_id)
    effective_date = effective_date or ctx.today()

    latest = _latest_entry(db, ctx, driver_id)
    if latest is not None and effective_date < latest.effective_date:
        raise ValidationError(
            f"effective_date {effective_date} is earlier than the latest entry ({latest.effective_date})",
            driver_id=driver_id
        )

    if status == LedgerStatus.ACTIVE:
        _check_floor(_effective_balance(db, ctx, driver_id, effective_date), points_delta, driver_id)
        if expiry_date is None:
            expiry_date = effective_date + timedelta(days=config.points_expiry_days)
        if expiry_date <= effective_date:
            raise ValidationError("expiry_date must be after effective_date", driver_id=driver_id)

    balance_before = latest.balance_after if latest else 0
    points_added = max(points_delta, 0)
    points_removed = max(-points_delta, 0)

    entry = PointsLedgerEntry(
        organization_id=ctx.organization_id,
        driver_id=driver_id,
        sequence=(latest.sequence + 1) if latest else 1,
        points_added=points_added,
        points_removed=points_removed,
        balance_before=balance_before,
        balance_after=balance_before + points_added - points_removed,
        reason=reason,
        reference_type=LedgerReference(reference_type).value,
        effective_date=effective_date,
        expiry_date=expiry_date,
        infringement_id=infringement_id,
        reverses_entry_id=reverses_entry_id,
        status=LedgerStatus(status).value
    )
    db.add(entry)
    db.flush()
    return entry


def post_entry(
    db: Session,
    ctx: OrgContext,
    driver_id: int,
    points_delta: int,
    reason: str,
    effective_date: Optional[date] = None,
    infringement_id: Optional[int] = None,
    expiry_date: Optional[date] = None,
    reference_type: LedgerReference = LedgerReference.MANUAL_ADJUSTMENT,
) -> PointsLedgerEntry:
    """Append one entry to the driver's ledger.

    Raises ``InvalidDeltaError`` without writing anything when the effective
    balance would drop below the configured floor; landing exactly on the
    floor is allowed. Two requests racing to append for the same driver
    collide on the per-driver sequence and the loser gets
    ``ConcurrencyConflictError``.
    """
    with transaction(db):
        entry = append_entry(
            db, ctx, driver_id, points_delta, reason,
            effective_date=effective_date,
            infringement_id=infringement_id,
            expiry_date=expiry_date,
            reference_type=reference_type
        )

    logger.info(
        "Posted %+d points for driver %s (%s): balance %d -> %d",
        points_delta, driver_id, reason, entry.balance_before, entry.balance_after
    )
    return entry


def reverse_entry(db: Session, ctx: OrgContext, entry_id: int, reason: str,
                  effective_date: Optional[date] = None) -> PointsLedgerEntry:
    """Administratively reverse an active entry.

    The target is marked reversed and a reversal entry, itself reversed,
    continues the audit chain. Neither counts towards the effective balance.
    """
    with transaction(db):
        target = db.query(PointsLedgerEntry).filter(
            PointsLedgerEntry.organization_id == ctx.organization_id,
            PointsLedgerEntry.id == entry_id
        ).first()
        if target is None:
            raise NotFoundError(f"Ledger entry {entry_id} not found", entry_id=entry_id)
        if target.status != LedgerStatus.ACTIVE:
            raise InvalidTransitionError(
                f"Ledger entry {entry_id} is {target.status} and cannot be reversed", entry_id=entry_id
            )

        effective_date = effective_date or ctx.today()
        _check_floor(
            _effective_balance(db, ctx, target.driver_id, effective_date),
            -target.points_delta,
            target.driver_id
        )
        target.status = LedgerStatus.REVERSED.value
        reversal = append_entry(
            db, ctx, target.driver_id, -target.points_delta, reason,
            effective_date=effective_date,
            infringement_id=target.infringement_id,
            reference_type=LedgerReference.REVERSAL,
            status=LedgerStatus.REVERSED,
            reverses_entry_id=target.id
        )

    logger.info("Reversed ledger entry %s for driver %s (%s)", entry_id, target.driver_id, reason)
    return reversal


def expire_entries(db: Session, ctx: OrgContext, as_of_date: date) -> Dict:
    """Mark every active entry with ``expiry_date <= as_of_date`` as expired.

    Works driver by driver so a failure on one driver does not stop the sweep.
    Safe to re-run: entries already expired are not touched again. Returns the
    number of expired entries and each touched driver's effective balance,
    recomputed from the entries that are still active.
    """
    due = db.query(PointsLedgerEntry.driver_id).filter(
        PointsLedgerEntry.organization_id == ctx.organization_id,
        PointsLedgerEntry.status == LedgerStatus.ACTIVE.value,
        PointsLedgerEntry.expiry_date <= as_of_date
    ).distinct().all()

    summary = {"expired": 0, "balances": {}, "failed_drivers": []}
    for (driver_id,) in due:
        try:
            with transaction(db):
                entries = db.query(PointsLedgerEntry).filter(
                    PointsLedgerEntry.organization_id == ctx.organization_id,
                    PointsLedgerEntry.driver_id == driver_id,
                    PointsLedgerEntry.status == LedgerStatus.ACTIVE.value,
                    PointsLedgerEntry.expiry_date <= as_of_date
                ).all()
                for entry in entries:
                    entry.status = LedgerStatus.EXPIRED.value
            summary["expired"] += len(entries)
            summary["balances"][driver_id] = _effective_balance(db, ctx, driver_id)
            logger.info("Expired %d ledger entries for driver %s", len(entries), driver_id)
        except ComplianceError as e:
            logger.error("Failed to expire ledger entries for driver %s: %s", driver_id, e)
            summary["failed_drivers"].append(driver_id)

    return summary


def get_ledger(db: Session, ctx: OrgContext, driver_id: int) -> List[PointsLedgerEntry]:
    """All entries of a driver in chain order."""
    get_driver(db, ctx, driver_id)
    return db.query(PointsLedgerEntry).filter(
        PointsLedgerEntry.organization_id == ctx.organization_id,
        PointsLedgerEntry.driver_id == driver_id
    ).order_by(
        PointsLedgerEntry.effective_date,
        PointsLedgerEntry.sequence
    ).all()


def verify_chain(entries: List[PointsLedgerEntry]) -> List[str]:
    """Check the arithmetic and chaining invariants; returns the problems found."""
    problems = []
    by_driver = defaultdict(list)
    for entry in entries:
        by_driver[entry.driver_id].append(entry)

    for driver_id, chain in by_driver.items():
        chain.sort(key=lambda e: (e.effective_date, e.sequence))
        for previous, entry in zip([None] + chain[:-1], chain):
            if entry.balance_after != entry.balance_before + entry.points_added - entry.points_removed:
                problems.append(f"driver {driver_id} entry {entry.sequence}: balance arithmetic mismatch")
            expected_before = previous.balance_after if previous else 0
            if entry.balance_before != expected_before:
                problems.append(
                    f"driver {driver_id} entry {entry.sequence}: balance_before {entry.balance_before} "
                    f"does not follow {expected_before}"
                )
    return problems
