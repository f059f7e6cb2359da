"""Drop-off stage rules: threshold validation and stage resolution."""

from typing import Iterable, Optional

from services.automations_service.errors import ConfigValidationError
from services.automations_service.models import StageAction
from services.automations_service.schemas import DROPOFF_STAGES, DropoffRescueConfig

# Actions any stage may use; ai_assisted is gated separately by configuration.
_BASE_ACTIONS = {StageAction.AUTO_MESSAGE, StageAction.ALERT_ONLY}


def validate_dropoff_config(
    config: DropoffRescueConfig, ai_assisted_stages: Iterable[int]
) -> None:
    """Write-time rules for a drop-off config.

    Raises ConfigValidationError naming the offending field when thresholds
    are not strictly increasing or a stage uses an action it may not use.
    """
    for lower, upper in zip(DROPOFF_STAGES, DROPOFF_STAGES[1:]):
        if config.stage_days(upper) <= config.stage_days(lower):
            raise ConfigValidationError(
                f"stage{upper}_days ({config.stage_days(upper)}) must be greater "
                f"than stage{lower}_days ({config.stage_days(lower)})",
                field=f"stage{upper}_days",
            )

    allowed_ai = set(ai_assisted_stages)
    for stage in DROPOFF_STAGES:
        action = config.stage_action(stage)
        if action in _BASE_ACTIONS:
            continue
        if action == StageAction.AI_ASSISTED and stage in allowed_ai:
            continue
        raise ConfigValidationError(
            f"{action.value} is not available for stage {stage}",
            field=f"stage{stage}_action",
        )


def resolve_stage(days_since_signal: int, config: DropoffRescueConfig) -> Optional[int]:
    """Highest stage whose threshold has been reached, or None if active.

    Checked from stage 3 down so that rows saved before threshold validation
    existed still resolve deterministically.
    """
    for stage in reversed(DROPOFF_STAGES):
        if days_since_signal >= config.stage_days(stage):
            return stage
    return None
