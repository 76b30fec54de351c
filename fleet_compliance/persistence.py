import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import List, Optional, Type

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from .errors import (
    ComplianceError,
    ConcurrencyConflictError,
    DuplicateRecordError,
    NotFoundError,
    StorageUnavailableError,
    ValidationError,
)
from .models import Driver, DriverStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrgContext:
    """Per-call context: the tenant, who is acting, and the business date."""
    organization_id: str
    acting_user_id: Optional[str] = None
    as_of_date: Optional[date] = None

    def __post_init__(self):
        if not self.organization_id:
            raise ValidationError("organization_id is required")

    def today(self) -> date:
        return self.as_of_date or date.today()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@contextmanager
def transaction(
    db: Session,
    integrity_error: Type[ComplianceError] = ConcurrencyConflictError,
    integrity_message: str = "Concurrent write detected, retry the request",
):
    """Run a unit of work and commit it, translating storage failures.

    A lost optimistic version check surfaces as ``ConcurrencyConflictError``,
    a unique-key violation as ``integrity_error`` and any driver-level
    operational failure (timeouts, lost connections) as
    ``StorageUnavailableError``. The session is rolled back on every failure.
    """
    try:
        yield db
        db.commit()
    except StaleDataError as e:
        db.rollback()
        logger.warning("Optimistic version check failed: %s", e)
        raise ConcurrencyConflictError("Record was modified by another request, retry the request") from e
    except IntegrityError as e:
        db.rollback()
        logger.warning("Integrity error: %s", e.orig)
        raise integrity_error(integrity_message) from e
    except OperationalError as e:
        db.rollback()
        logger.error("Storage unavailable: %s", e.orig)
        raise StorageUnavailableError("Storage is unavailable, retry with backoff") from e
    except Exception:
        db.rollback()
        raise


def create_driver(db: Session, ctx: OrgContext, external_id: str, name: Optional[str] = None) -> Driver:
    """Onboard a driver into the organization."""
    if not external_id:
        raise ValidationError("external_id is required")

    with transaction(db, integrity_message=f"Driver '{external_id}' already exists"):
        existing = db.query(Driver).filter(
            Driver.organization_id == ctx.organization_id,
            Driver.external_id == external_id
        ).first()
        if existing:
            raise DuplicateRecordError(f"Driver '{external_id}' already exists", driver_id=existing.id)

        driver = Driver(
            organization_id=ctx.organization_id,
            external_id=external_id,
            name=name,
            status=DriverStatus.ACTIVE.value
        )
        db.add(driver)

    logger.info("Onboarded driver %s (%s) in organization %s", driver.id, external_id, ctx.organization_id)
    return driver


def get_driver(db: Session, ctx: OrgContext, driver_id: int) -> Driver:
    """Get a driver of the organization or raise ``NotFoundError``."""
    driver = db.query(Driver).filter(
        Driver.organization_id == ctx.organization_id,
        Driver.id == driver_id
    ).first()
    if driver is None:
        raise NotFoundError(f"Driver {driver_id} not found", driver_id=driver_id)
    return driver


def get_active_driver(db: Session, ctx: OrgContext, driver_id: int) -> Driver:
    driver = get_driver(db, ctx, driver_id)
    if driver.status != DriverStatus.ACTIVE:
        raise ValidationError(f"Driver {driver_id} is deactivated", driver_id=driver_id)
    return driver


def deactivate_driver(db: Session, ctx: OrgContext, driver_id: int) -> Driver:
    """Soft-deactivate a driver; history stays in place."""
    with transaction(db):
        driver = get_driver(db, ctx, driver_id)
        if driver.status == DriverStatus.DEACTIVATED:
            return driver
        driver.status = DriverStatus.DEACTIVATED.value
        driver.deactivated_at = utcnow()

    logger.info("Deactivated driver %s in organization %s", driver_id, ctx.organization_id)
    return driver


def list_drivers(db: Session, ctx: OrgContext, include_inactive: bool = False) -> List[Driver]:
    query = db.query(Driver).filter(Driver.organization_id == ctx.organization_id)
    if not include_inactive:
        query = query.filter(Driver.status == DriverStatus.ACTIVE.value)
    return query.order_by(Driver.id).all()


def list_organization_ids(db: Session) -> List[str]:
    """All organizations that have at least one driver."""
    rows = db.query(Driver.organization_id).distinct().order_by(Driver.organization_id).all()
    return [organization_id for (organization_id,) in rows]
