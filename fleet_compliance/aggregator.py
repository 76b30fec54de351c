import logging
from collections import defaultdict
from dataclasses import asdict, dataclass
from datetime import date, timedelta
from typing import Dict, Optional

from sqlalchemy.orm import Session

from .config import config
from .ledger import compute_effective_balance
from .models import Infringement, InfringementStatus
from .persistence import OrgContext, get_driver
from .rest import assess_week, load_week, week_start_for

logger = logging.getLogger(__name__)


@dataclass
class ComplianceScore:
    driver_id: int
    overall_score: float
    risk_level: str
    violation_score: float
    license_score: float
    rest_score: float
    points_balance: int
    active_infringements: int
    rest_violations: int
    last_assessment_date: date

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["last_assessment_date"] = self.last_assessment_date.isoformat()
        return data


def _license_score(balance: int) -> float:
    """100 with a clean licence, falling linearly to 0 at the disqualification threshold."""
    threshold = config.disqualification_points
    if balance <= 0:
        return 100.0
    if threshold <= 0:
        return 0.0
    return round(max(0.0, 100.0 * (1 - balance / threshold)), 1)


def _violation_score(open_infringements) -> float:
    penalty = sum(config.severity_weights.get(i.severity, 0) for i in open_infringements)
    return float(max(0, 100 - penalty))


def _rest_violation_weeks(db: Session, ctx: OrgContext, driver_id: int, as_of_date: date) -> int:
    """Weeks with at least one rest or hours violation in the trailing window.

    Only weeks with some recorded activity are assessed; a week with nothing
    on file is treated as unknown rather than as missing rest.
    """
    window_end = week_start_for(as_of_date) - timedelta(days=1)
    window_start = week_start_for(as_of_date) - timedelta(weeks=config.score_window_weeks)
    daily_rests, weekly_rows, time_entries = load_week(db, ctx, driver_id, window_start, window_end)

    weeks = defaultdict(lambda: {"daily": [], "weekly": None, "time": []})
    for rest in daily_rests:
        weeks[week_start_for(rest.rest_date)]["daily"].append(rest)
    for entry in time_entries:
        weeks[week_start_for(entry.entry_date)]["time"].append(entry)
    for row in weekly_rows:
        # Rows left by an evaluation of an empty week carry no rest block
        if row.rest_start_time is not None or row.week_start_date in weeks:
            weeks[row.week_start_date]["weekly"] = row

    count = 0
    for week_start, data in weeks.items():
        result = assess_week(driver_id, week_start, data["daily"], data["weekly"], data["time"], as_of_date)
        if result.violations:
            count += 1
    return count


def _risk_level(overall: float, balance: int) -> str:
    if balance >= config.disqualification_points:
        return "high"
    if overall >= config.risk_low_min_score:
        return "low"
    if overall >= config.risk_medium_min_score:
        return "medium"
    return "high"


def compute_score(db: Session, ctx: OrgContext, driver_id: int, as_of_date: Optional[date] = None) -> ComplianceScore:
    """Score a driver from the ledger, open infringements and the trailing rest record.

    Reads only; the same data and date always produce the same score.
    """
    as_of_date = as_of_date or ctx.today()
    get_driver(db, ctx, driver_id)

    balance = compute_effective_balance(db, ctx, driver_id, as_of_date)
    open_infringements = db.query(Infringement).filter(
        Infringement.organization_id == ctx.organization_id,
        Infringement.driver_id == driver_id,
        Infringement.status.in_([InfringementStatus.ACTIVE.value, InfringementStatus.DISPUTED.value]),
        Infringement.incident_date <= as_of_date
    ).all()
    rest_violations = _rest_violation_weeks(db, ctx, driver_id, as_of_date)

    license_score = _license_score(balance)
    violation_score = _violation_score(open_infringements)
    rest_score = float(max(0, 100 - config.score_rest_violation_weight * rest_violations))
    overall = round(
        license_score * config.score_license_share
        + violation_score * config.score_violation_share
        + rest_score * config.score_rest_share,
        1
    )

    score = ComplianceScore(
        driver_id=driver_id,
        overall_score=overall,
        risk_level=_risk_level(overall, balance),
        violation_score=violation_score,
        license_score=license_score,
        rest_score=rest_score,
        points_balance=balance,
        active_infringements=len(open_infringements),
        rest_violations=rest_violations,
        last_assessment_date=as_of_date
    )
    logger.debug("Computed score for driver %s: %s (%s)", driver_id, overall, score.risk_level)
    return score
