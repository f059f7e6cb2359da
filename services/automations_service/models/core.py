import uuid
from datetime import datetime
from typing import Optional

from libs.common.datetime_utils import utc_now
from libs.db.base import Base
from services.automations_service.models.enums import (
    AutomationActionType,
    AutomationLogStatus,
    AutomationType,
    enum_values,
)
from sqlalchemy import JSON, Boolean, DateTime
from sqlalchemy import Enum as SAEnum
from sqlalchemy import Integer, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

# jsonb on Postgres, plain JSON elsewhere (tests run on SQLite)
JSONDocument = JSON().with_variant(JSONB(), "postgresql")


def _automation_type_column():
    return SAEnum(
        AutomationType,
        name="automation_type_enum",
        values_callable=enum_values,
        validate_strings=True,
    )


class CoachAutomationSetting(Base):
    """One row per (coach, automation type): enabled flag plus typed config."""

    __tablename__ = "coach_automation_settings"
    __table_args__ = (
        UniqueConstraint(
            "coach_id", "automation_type", name="uq_coach_automation_type"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    coach_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True
    )
    automation_type: Mapped[AutomationType] = mapped_column(
        _automation_type_column(), nullable=False
    )
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    config: Mapped[dict] = mapped_column(JSONDocument, default=dict, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    def __repr__(self):
        return f"<CoachAutomationSetting {self.coach_id} {self.automation_type} enabled={self.is_enabled}>"


class ClientAutomationStatus(Base):
    """Escalation cursor for one client of one coach.

    ``last_stage_triggered`` is the highest stage already acted upon; it is
    cleared when the client re-engages. ``claimed_stage``/``claimed_at`` form
    a short lease taken before dispatch so overlapping runs cannot both act.
    """

    __tablename__ = "client_automation_status"
    __table_args__ = (
        UniqueConstraint(
            "coach_id",
            "client_id",
            "automation_type",
            name="uq_client_automation_status",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    coach_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True
    )
    client_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True
    )
    automation_type: Mapped[AutomationType] = mapped_column(
        _automation_type_column(),
        default=AutomationType.DROPOFF_RESCUE,
        nullable=False,
    )

    is_at_risk: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_stage_triggered: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    last_triggered_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    # Signal timestamp observed when the current stage fired
    last_signal_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    claimed_stage: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    muted_until: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_soft_checkin_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_coach_alert_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_recovery_attempt_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    def __repr__(self):
        return f"<ClientAutomationStatus client={self.client_id} stage={self.last_stage_triggered}>"


class AutomationLog(Base):
    """Audit trail of every automation action attempted for a client."""

    __tablename__ = "automation_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    coach_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True
    )
    client_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), nullable=True, index=True
    )
    automation_type: Mapped[AutomationType] = mapped_column(
        _automation_type_column(), nullable=False
    )
    action_type: Mapped[AutomationActionType] = mapped_column(
        SAEnum(
            AutomationActionType,
            name="automation_action_type_enum",
            values_callable=enum_values,
            validate_strings=True,
        ),
        nullable=False,
    )
    status: Mapped[AutomationLogStatus] = mapped_column(
        SAEnum(
            AutomationLogStatus,
            name="automation_log_status_enum",
            values_callable=enum_values,
            validate_strings=True,
        ),
        nullable=False,
    )
    message_sent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    details: Mapped[Optional[dict]] = mapped_column(
        "metadata", JSONDocument, nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, index=True
    )

    def __repr__(self):
        return f"<AutomationLog {self.action_type} {self.status} client={self.client_id}>"
