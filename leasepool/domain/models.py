from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


LEASE_STATUSES = (
    "PendingApproval",
    "ApprovalDenied",
    "Provisioning",
    "Active",
    "Frozen",
    "Expired",
)
MONITORED_LEASE_STATUSES = ("Active", "Frozen")

DEPLOYMENT_STATUSES = ("RUNNING", "SUCCEEDED", "FAILED")
REGION_CONCURRENCY_TYPES = ("SEQUENTIAL", "PARALLEL")
CONCURRENCY_MODES = ("STRICT_FAILURE_TOLERANCE", "SOFT_FAILURE_TOLERANCE")


class UtcDateTime(TypeDecorator):
    """Timezone-aware UTC timestamps on every backend.

    SQLite drops tzinfo on the way in and returns naive values, so binds are
    normalized to UTC and results are re-tagged as UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any) -> Any:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: Any, dialect: Any) -> Any:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# JSONB on Postgres, plain JSON elsewhere (SQLite test databases).
JsonType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class Lease(Base):
    __tablename__ = "leases"
    __table_args__ = (
        Index("ix_leases_status_id", "status", "id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_email: Mapped[str] = mapped_column(String, index=True)
    status: Mapped[str] = mapped_column(String)
    # Pending leases have not been matched to a pooled account yet.
    account_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    start_date: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    expiration_date: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    lease_duration_in_hours: Mapped[float | None] = mapped_column(Float, nullable=True)
    max_spend: Mapped[float | None] = mapped_column(Float, nullable=True)
    # Insertion-ordered [{amount, action}] and [{hours_remaining, action}] lists.
    budget_thresholds_json: Mapped[list[dict[str, Any]]] = mapped_column(JsonType, default=list)
    duration_thresholds_json: Mapped[list[dict[str, Any]]] = mapped_column(JsonType, default=list)
    total_cost_accrued: Mapped[float] = mapped_column(Float, default=0.0)
    last_checked_date: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    # Expired leases are archived in place rather than deleted.
    archived_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    schema_version: Mapped[int] = mapped_column(Integer)
    created_time: Mapped[datetime] = mapped_column(UtcDateTime)
    # Doubles as the optimistic-concurrency version token.
    last_edit_time: Mapped[datetime] = mapped_column(UtcDateTime)


class Blueprint(Base):
    __tablename__ = "blueprints"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, index=True)
    created_by: Mapped[str] = mapped_column(String)
    tags_json: Mapped[dict[str, str] | None] = mapped_column(JsonType, nullable=True)
    deployment_timeout_minutes: Mapped[int] = mapped_column(Integer, default=30)
    region_concurrency_type: Mapped[str] = mapped_column(String, default="SEQUENTIAL")
    # Aggregate health across every target of the blueprint.
    total_deployment_count: Mapped[int] = mapped_column(Integer, default=0)
    total_successful_count: Mapped[int] = mapped_column(Integer, default=0)
    last_deployment_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    schema_version: Mapped[int] = mapped_column(Integer)
    created_time: Mapped[datetime] = mapped_column(UtcDateTime)
    last_edit_time: Mapped[datetime] = mapped_column(UtcDateTime)


class DeploymentTarget(Base):
    __tablename__ = "deployment_targets"

    blueprint_id: Mapped[str] = mapped_column(String, ForeignKey("blueprints.id"), primary_key=True)
    target_id: Mapped[str] = mapped_column(String, primary_key=True)
    regions_json: Mapped[list[str]] = mapped_column(JsonType)
    deployment_order: Mapped[int] = mapped_column(Integer, default=1)
    max_concurrent_percentage: Mapped[int] = mapped_column(Integer, default=100)
    failure_tolerance_percentage: Mapped[int] = mapped_column(Integer, default=0)
    concurrency_mode: Mapped[str] = mapped_column(String, default="STRICT_FAILURE_TOLERANCE")
    deployment_count: Mapped[int] = mapped_column(Integer, default=0)
    successful_deployment_count: Mapped[int] = mapped_column(Integer, default=0)
    consecutive_failures: Mapped[int] = mapped_column(Integer, default=0)
    last_success_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    last_failure_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    schema_version: Mapped[int] = mapped_column(Integer)
    created_time: Mapped[datetime] = mapped_column(UtcDateTime)
    last_edit_time: Mapped[datetime] = mapped_column(UtcDateTime)


class DeploymentRecord(Base):
    __tablename__ = "deployment_records"
    __table_args__ = (
        Index("ix_deployment_records_expires_at", "expires_at"),
    )

    # No FK to blueprints: history outlives blueprint deletion until it expires.
    blueprint_id: Mapped[str] = mapped_column(String, primary_key=True)
    started_at: Mapped[datetime] = mapped_column(UtcDateTime, primary_key=True)
    operation_id: Mapped[str] = mapped_column(String, primary_key=True)
    target_id: Mapped[str] = mapped_column(String)
    lease_id: Mapped[str] = mapped_column(String, index=True)
    account_id: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String)
    completed_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    duration_minutes: Mapped[float | None] = mapped_column(Float, nullable=True)
    error_type: Mapped[str | None] = mapped_column(String, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(UtcDateTime)
    schema_version: Mapped[int] = mapped_column(Integer)
    created_time: Mapped[datetime] = mapped_column(UtcDateTime)
    last_edit_time: Mapped[datetime] = mapped_column(UtcDateTime)
