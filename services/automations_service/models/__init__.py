from services.automations_service.models.core import (
    AutomationLog,
    ClientAutomationStatus,
    CoachAutomationSetting,
)
from services.automations_service.models.enums import (
    AutomationActionType,
    AutomationLogStatus,
    AutomationType,
    MessageTone,
    SignalChannel,
    StageAction,
)

__all__ = [
    "AutomationActionType",
    "AutomationLog",
    "AutomationLogStatus",
    "AutomationType",
    "ClientAutomationStatus",
    "CoachAutomationSetting",
    "MessageTone",
    "SignalChannel",
    "StageAction",
]
