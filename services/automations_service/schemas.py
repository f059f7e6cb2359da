import re
import uuid
from datetime import datetime
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from services.automations_service.errors import ConfigValidationError
from services.automations_service.models import (
    AutomationActionType,
    AutomationLogStatus,
    AutomationType,
    MessageTone,
    SignalChannel,
    StageAction,
)

DROPOFF_STAGES = (1, 2, 3)

_HH_MM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


# ===== CONFIG UNION =====
class DropoffSignals(BaseModel):
    """Which activity channels count toward a client's last-active time."""

    model_config = ConfigDict(extra="forbid")

    training_logs: bool = True
    meal_logs: bool = True
    missed_sessions: bool = True
    message_replies: bool = True
    wearable_activity: bool = False
    engagement_score: bool = True

    def enabled_channels(self) -> list[SignalChannel]:
        return [channel for channel in SignalChannel if getattr(self, channel.value)]


class DropoffRescueConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    stage1_days: int = Field(3, ge=1)
    stage1_action: StageAction = StageAction.AUTO_MESSAGE
    stage1_tone: MessageTone = MessageTone.SUPPORTIVE
    stage1_template: Optional[str] = None
    stage2_days: int = Field(7, ge=1)
    stage2_action: StageAction = StageAction.ALERT_ONLY
    stage3_days: int = Field(14, ge=1)
    stage3_action: StageAction = StageAction.AI_ASSISTED
    signals: DropoffSignals = Field(default_factory=DropoffSignals)

    def stage_days(self, stage: int) -> int:
        return getattr(self, f"stage{stage}_days")

    def stage_action(self, stage: int) -> StageAction:
        return getattr(self, f"stage{stage}_action")


class MilestoneCelebrationConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    milestones: list[str] = Field(
        default_factory=lambda: ["streak", "program_complete", "challenge_complete"]
    )

    @field_validator("milestones")
    @classmethod
    def strip_milestones(cls, v: list[str]) -> list[str]:
        cleaned = []
        for key in v:
            key = key.strip()
            if not key:
                raise ValueError("milestone keys must be non-empty")
            if key not in cleaned:
                cleaned.append(key)
        return cleaned


class ReminderConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_reminders_per_day: int = Field(3, ge=0)
    quiet_hours_start: str = "22:00"
    quiet_hours_end: str = "08:00"
    respect_client_timezone: bool = True

    @field_validator("quiet_hours_start", "quiet_hours_end")
    @classmethod
    def check_hh_mm(cls, v: str) -> str:
        if not _HH_MM.match(v):
            raise ValueError("expected HH:MM (24h)")
        return v


AutomationConfig = Union[DropoffRescueConfig, MilestoneCelebrationConfig, ReminderConfig]

CONFIG_MODELS: dict[AutomationType, type[BaseModel]] = {
    AutomationType.DROPOFF_RESCUE: DropoffRescueConfig,
    AutomationType.MILESTONE_CELEBRATION: MilestoneCelebrationConfig,
    AutomationType.REMINDER: ReminderConfig,
}


def _first_error_field(exc: PydanticValidationError) -> Optional[str]:
    errors = exc.errors()
    if not errors:
        return None
    return ".".join(str(part) for part in errors[0]["loc"]) or None


def parse_config(automation_type: AutomationType, raw: Any) -> AutomationConfig:
    """Validate a config submitted for ``automation_type``.

    Missing keys take their defaults; unknown keys are rejected so that a
    blob meant for another automation type cannot slip through.
    """
    model = CONFIG_MODELS[automation_type]
    if isinstance(raw, model):
        return raw
    if isinstance(raw, BaseModel):
        raise ConfigValidationError(
            f"{type(raw).__name__} does not match automation type {automation_type.value}",
            field="config",
        )
    try:
        return model.model_validate(raw)
    except PydanticValidationError as exc:
        field = _first_error_field(exc)
        raise ConfigValidationError(
            f"Invalid {automation_type.value} config: {exc.errors()[0]['msg']}",
            field=field,
        ) from exc


def load_stored_config(automation_type: AutomationType, stored: Optional[dict]) -> AutomationConfig:
    """Read a persisted config, layered over the defaults.

    Keys this version does not know are dropped so older or newer rows stay
    readable.
    """
    model = CONFIG_MODELS[automation_type]
    stored = stored or {}
    data = {k: v for k, v in stored.items() if k in model.model_fields}
    if model is DropoffRescueConfig and isinstance(data.get("signals"), dict):
        data["signals"] = {
            k: v for k, v in data["signals"].items() if k in DropoffSignals.model_fields
        }
    return parse_config(automation_type, data)


# ===== SETTINGS API =====
class AutomationSettingResponse(BaseModel):
    id: uuid.UUID
    coach_id: uuid.UUID
    automation_type: AutomationType
    is_enabled: bool
    config: AutomationConfig
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class AutomationSettingUpsert(BaseModel):
    is_enabled: bool
    config: Optional[dict[str, Any]] = None


class AutomationToggle(BaseModel):
    enabled: bool


class AutomationConfigUpdate(BaseModel):
    config: dict[str, Any]


class DefaultConfigResponse(BaseModel):
    automation_type: AutomationType
    config: AutomationConfig


class MuteClientRequest(BaseModel):
    days: int = Field(7, ge=1, le=365)


class ClientMuteResponse(BaseModel):
    client_id: uuid.UUID
    muted_until: datetime


class AutomationLogResponse(BaseModel):
    id: uuid.UUID
    client_id: Optional[uuid.UUID] = None
    automation_type: AutomationType
    action_type: AutomationActionType
    status: AutomationLogStatus
    message_sent: Optional[str] = None
    details: Optional[dict] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class DropoffRunResponse(BaseModel):
    run_id: str
    evaluated: int
    processed: int
    alerts: int
    messages: int
    skipped: int
    errors: dict[str, int]
    cancelled: bool
    timed_out: bool
