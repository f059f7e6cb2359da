"""Enum definitions for automations service models."""

import enum


def enum_values(enum_cls):
    """Return persistent DB values for SAEnum mappings."""
    return [member.value for member in enum_cls]


class AutomationType(str, enum.Enum):
    DROPOFF_RESCUE = "dropoff_rescue"
    MILESTONE_CELEBRATION = "milestone_celebration"
    REMINDER = "reminder"


class StageAction(str, enum.Enum):
    AUTO_MESSAGE = "auto_message"
    ALERT_ONLY = "alert_only"
    AI_ASSISTED = "ai_assisted"


class MessageTone(str, enum.Enum):
    SUPPORTIVE = "supportive"
    MOTIVATIONAL = "motivational"
    DIRECT = "direct"


class SignalChannel(str, enum.Enum):
    TRAINING_LOGS = "training_logs"
    MEAL_LOGS = "meal_logs"
    MISSED_SESSIONS = "missed_sessions"
    MESSAGE_REPLIES = "message_replies"
    WEARABLE_ACTIVITY = "wearable_activity"
    ENGAGEMENT_SCORE = "engagement_score"


class AutomationActionType(str, enum.Enum):
    SOFT_CHECKIN = "soft_checkin"
    COACH_ALERT = "coach_alert"
    RECOVERY_ATTEMPT = "recovery_attempt"
    AI_MESSAGE = "ai_message"


class AutomationLogStatus(str, enum.Enum):
    SENT = "sent"
    DEGRADED = "degraded"
    FAILED = "failed"
