from enum import Enum

from sqlalchemy import (
    Column, Integer, String, Float, Date, DateTime, Boolean, Text,
    ForeignKey, Index, UniqueConstraint
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()


class DriverStatus(str, Enum):
    ACTIVE = "active"
    DEACTIVATED = "deactivated"


class LedgerStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    REVERSED = "reversed"


class LedgerReference(str, Enum):
    INFRINGEMENT = "infringement"
    APPEAL = "appeal"
    MANUAL_ADJUSTMENT = "manual_adjustment"
    REVERSAL = "reversal"


class RestType(str, Enum):
    REGULAR = "regular"
    REDUCED = "reduced"
    INSUFFICIENT = "insufficient"


class Severity(str, Enum):
    MINOR = "minor"
    MAJOR = "major"
    SERIOUS = "serious"
    SEVERE = "severe"


class InfringementStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    RESOLVED = "resolved"
    DISPUTED = "disputed"
    EXPIRED = "expired"


class AppealStatus(str, Enum):
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"


OPEN_APPEAL_STATUSES = (AppealStatus.PENDING.value, AppealStatus.UNDER_REVIEW.value)


class ViolationStatus(str, Enum):
    OPEN = "open"
    CONVERTED = "converted"
    DISMISSED = "dismissed"


class Driver(Base):
    __tablename__ = "drivers"
    id = Column(Integer, primary_key=True)
    organization_id = Column(String(64), nullable=False, index=True)
    external_id = Column(String(128), nullable=False)
    name = Column(String(255))
    status = Column(String(32), nullable=False, default=DriverStatus.ACTIVE.value)
    deactivated_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("organization_id", "external_id", name="uq_driver_org_external"),
    )


class PointsLedgerEntry(Base):
    """One immutable change to a driver's penalty points.

    Only ``status`` ever changes after insert (expiry or reversal). ``sequence``
    is unique per driver so that two racing appends cannot both land.
    """
    __tablename__ = "points_ledger"
    id = Column(Integer, primary_key=True)
    organization_id = Column(String(64), nullable=False, index=True)
    driver_id = Column(Integer, ForeignKey("drivers.id"), nullable=False)
    sequence = Column(Integer, nullable=False)
    points_added = Column(Integer, nullable=False, default=0)
    points_removed = Column(Integer, nullable=False, default=0)
    balance_before = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    reason = Column(String(255), nullable=False)
    reference_type = Column(String(32), nullable=False, default=LedgerReference.MANUAL_ADJUSTMENT.value)
    effective_date = Column(Date, nullable=False)
    expiry_date = Column(Date)
    infringement_id = Column(Integer, ForeignKey("infringements.id"))
    reverses_entry_id = Column(Integer, ForeignKey("points_ledger.id"))
    status = Column(String(16), nullable=False, default=LedgerStatus.ACTIVE.value)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("driver_id", "sequence", name="uq_ledger_driver_sequence"),
        Index("idx_ledger_driver_effective", "driver_id", "effective_date"),
    )
    __mapper_args__ = {"version_id_col": version}

    @property
    def points_delta(self) -> int:
        return self.points_added - self.points_removed


class DailyRest(Base):
    __tablename__ = "daily_rest"
    id = Column(Integer, primary_key=True)
    organization_id = Column(String(64), nullable=False, index=True)
    driver_id = Column(Integer, ForeignKey("drivers.id"), nullable=False)
    rest_date = Column(Date, nullable=False)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    duration_hours = Column(Float, nullable=False)
    rest_type = Column(String(16), nullable=False)
    notes = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("driver_id", "rest_date", name="uq_daily_rest_driver_date"),
    )


class WeeklyRest(Base):
    """A driver's week: the optional standalone rest block plus evaluation bookkeeping."""
    __tablename__ = "weekly_rest"
    id = Column(Integer, primary_key=True)
    organization_id = Column(String(64), nullable=False, index=True)
    driver_id = Column(Integer, ForeignKey("drivers.id"), nullable=False)
    week_start_date = Column(Date, nullable=False)
    week_end_date = Column(Date, nullable=False)
    rest_start_time = Column(DateTime)
    rest_end_time = Column(DateTime)
    total_rest_hours = Column(Float)
    rest_type = Column(String(16))
    compensation_required = Column(Boolean, nullable=False, default=False)
    compensation_deadline = Column(Date)
    compensation_date = Column(Date)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("driver_id", "week_start_date", name="uq_weekly_rest_driver_week"),
    )
    __mapper_args__ = {"version_id_col": version}

    @property
    def block_hours(self) -> float:
        if self.rest_start_time is None or self.rest_end_time is None:
            return 0.0
        return (self.rest_end_time - self.rest_start_time).total_seconds() / 3600


class TimeEntry(Base):
    __tablename__ = "time_entries"
    id = Column(Integer, primary_key=True)
    organization_id = Column(String(64), nullable=False, index=True)
    driver_id = Column(Integer, ForeignKey("drivers.id"), nullable=False)
    entry_date = Column(Date, nullable=False)
    working_hours = Column(Float, nullable=False, default=0.0)
    driving_hours = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("driver_id", "entry_date", name="uq_time_entry_driver_date"),
    )


class ComplianceViolation(Base):
    """A detected rest or hours violation, kept as a candidate for an infringement."""
    __tablename__ = "compliance_violations"
    id = Column(Integer, primary_key=True)
    organization_id = Column(String(64), nullable=False, index=True)
    driver_id = Column(Integer, ForeignKey("drivers.id"), nullable=False)
    week_start_date = Column(Date, nullable=False)
    violation_code = Column(String(64), nullable=False)
    description = Column(Text, nullable=False)
    severity = Column(String(16), nullable=False, default=Severity.MINOR.value)
    status = Column(String(16), nullable=False, default=ViolationStatus.OPEN.value)
    infringement_id = Column(Integer, ForeignKey("infringements.id"))
    detected_at = Column(DateTime(timezone=True), server_default=func.now())
    version = Column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("driver_id", "week_start_date", "violation_code", name="uq_violation_driver_week_code"),
    )
    __mapper_args__ = {"version_id_col": version}


class InfringementType(Base):
    __tablename__ = "infringement_types"
    id = Column(Integer, primary_key=True)
    organization_id = Column(String(64), nullable=False, index=True)
    code = Column(String(64), nullable=False)
    name = Column(String(255), nullable=False)
    category = Column(String(64), nullable=False, default="general")
    severity = Column(String(16), nullable=False)
    default_points = Column(Integer, nullable=False, default=0)
    default_fine_amount = Column(Float, nullable=False, default=0.0)
    statutory_limit_days = Column(Integer, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("organization_id", "code", name="uq_infringement_type_org_code"),
    )


class Infringement(Base):
    __tablename__ = "infringements"
    id = Column(Integer, primary_key=True)
    organization_id = Column(String(64), nullable=False, index=True)
    infringement_number = Column(String(32), nullable=False, unique=True)
    driver_id = Column(Integer, ForeignKey("drivers.id"), nullable=False)
    vehicle_id = Column(String(64))
    infringement_type_id = Column(Integer, ForeignKey("infringement_types.id"), nullable=False)
    incident_date = Column(Date, nullable=False)
    issue_date = Column(Date)
    severity = Column(String(16), nullable=False)
    penalty_points = Column(Integer, nullable=False, default=0)
    fine_amount = Column(Float, nullable=False, default=0.0)
    status = Column(String(16), nullable=False, default=InfringementStatus.PENDING.value)
    due_date = Column(Date)
    payment_date = Column(Date)
    payment_amount = Column(Float)
    points_posted = Column(Boolean, nullable=False, default=False)
    resolved_at = Column(DateTime(timezone=True))
    expired_at = Column(DateTime(timezone=True))
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    infringement_type = relationship("InfringementType")
    appeals = relationship("Appeal", back_populates="infringement", order_by="Appeal.id")

    __table_args__ = (
        Index("idx_infringement_driver_status", "driver_id", "status"),
        Index("idx_infringement_due", "status", "due_date"),
    )
    __mapper_args__ = {"version_id_col": version}


class Appeal(Base):
    __tablename__ = "appeals"
    id = Column(Integer, primary_key=True)
    organization_id = Column(String(64), nullable=False, index=True)
    appeal_number = Column(String(32), nullable=False, unique=True)
    infringement_id = Column(Integer, ForeignKey("infringements.id"), nullable=False)
    grounds = Column(Text, nullable=False)
    submitted_date = Column(Date, nullable=False)
    hearing_date = Column(Date)
    status = Column(String(16), nullable=False, default=AppealStatus.PENDING.value)
    outcome = Column(Text)
    outcome_date = Column(Date)
    points_reduction = Column(Integer)
    fine_reduction_amount = Column(Float)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    infringement = relationship("Infringement", back_populates="appeals")

    __mapper_args__ = {"version_id_col": version}
