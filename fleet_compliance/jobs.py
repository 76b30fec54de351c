"""
Scheduled sweeps.

Run from cron with ``python -m fleet_compliance.jobs`` or trigger through
``POST /api/jobs/...``. Every sweep walks all organizations, can be re-run
safely, and logs and skips a failing record instead of stopping.
"""

import logging
from contextlib import contextmanager
from datetime import date, timedelta
from typing import Dict, Optional

from sqlalchemy.orm import Session

from .config import setup_logging
from .db import SessionLocal, init_db
from .errors import ComplianceError
from .infringements import expire_infringements
from .ledger import expire_entries
from .persistence import OrgContext, list_drivers, list_organization_ids
from .rest import evaluate_weekly_rest, record_rest_violations, week_start_for

logger = logging.getLogger(__name__)


@contextmanager
def _session(db: Optional[Session]):
    if db is not None:
        yield db
        return
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def run_points_expiry(as_of_date: Optional[date] = None, db: Optional[Session] = None) -> Dict:
    """Expire ledger entries past their expiry date in every organization."""
    as_of_date = as_of_date or date.today()
    summary = {}
    with _session(db) as session:
        for organization_id in list_organization_ids(session):
            result = expire_entries(session, OrgContext(organization_id, as_of_date=as_of_date), as_of_date)
            summary[organization_id] = result
            logger.info("Points expiry for %s: %d entries expired", organization_id, result["expired"])
    return summary


def run_infringement_expiry(current_date: Optional[date] = None, db: Optional[Session] = None) -> Dict:
    """Expire infringements past their statutory due date in every organization."""
    current_date = current_date or date.today()
    summary = {}
    with _session(db) as session:
        for organization_id in list_organization_ids(session):
            result = expire_infringements(session, OrgContext(organization_id, as_of_date=current_date), current_date)
            summary[organization_id] = result
            logger.info("Infringement expiry for %s: %d expired, %d failed",
                        organization_id, len(result["expired"]), len(result["failed"]))
    return summary


def run_weekly_rest_sweep(week_start_date: Optional[date] = None, as_of_date: Optional[date] = None,
                          db: Optional[Session] = None) -> Dict:
    """Evaluate one week for every active driver and record its violations.

    Defaults to the last complete week before ``as_of_date``.
    """
    as_of_date = as_of_date or date.today()
    week_start_date = week_start_date or week_start_for(as_of_date) - timedelta(weeks=1)
    summary = {}
    with _session(db) as session:
        for organization_id in list_organization_ids(session):
            ctx = OrgContext(organization_id, as_of_date=as_of_date)
            counts = {"evaluated": 0, "violations_recorded": 0, "failed_drivers": []}
            for driver in list_drivers(session, ctx):
                try:
                    result = evaluate_weekly_rest(session, ctx, driver.id, week_start_date, as_of_date)
                    counts["violations_recorded"] += len(record_rest_violations(session, ctx, result))
                    counts["evaluated"] += 1
                except ComplianceError as e:
                    logger.error("Weekly rest sweep failed for driver %s in %s: %s", driver.id, organization_id, e)
                    counts["failed_drivers"].append(driver.id)
            summary[organization_id] = counts
            logger.info("Weekly rest sweep for %s week %s: %d drivers, %d violations",
                        organization_id, week_start_date, counts["evaluated"], counts["violations_recorded"])
    return summary


def run_all(as_of_date: Optional[date] = None, db: Optional[Session] = None) -> Dict:
    as_of_date = as_of_date or date.today()
    return {
        "points_expiry": run_points_expiry(as_of_date, db=db),
        "infringement_expiry": run_infringement_expiry(as_of_date, db=db),
        "weekly_rest": run_weekly_rest_sweep(as_of_date=as_of_date, db=db),
    }


if __name__ == "__main__":
    setup_logging()
    init_db()
    run_all()
