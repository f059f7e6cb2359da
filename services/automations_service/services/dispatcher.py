"""Execute the action configured for a drop-off stage.

alert_only   -> coach notification, no client-facing message
auto_message -> templated check-in sent from coach to client
ai_assisted  -> AI-written check-in; on 429/402/gateway failure the stage
                degrades to alert_only for this cycle. After a 429 or 402 the
                dispatcher stops calling the gateway for the rest of the run.

Delivery failures raise NotificationError so the evaluator leaves the cursor
unadvanced and retries on the next cycle. Each attempt is recorded as an
AutomationLog row on the caller's session; the caller commits.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import httpx
from libs.common import service_client
from libs.common.logging import get_logger
from services.automations_service.errors import (
    ExternalServiceError,
    NotificationError,
    QuotaExhausted,
    RateLimited,
)
from services.automations_service.models import (
    AutomationActionType,
    AutomationLog,
    AutomationLogStatus,
    AutomationType,
    MessageTone,
    StageAction,
)
from services.automations_service.services import ai_composer
from services.automations_service.services.messages import (
    MessageContext,
    compose_checkin_message,
)
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

CALLING_SERVICE = "automations"

_ALERT_COPY = {
    1: ("client_at_risk", "Client needs attention", "{name} has been inactive for {days} days."),
    2: (
        "client_at_risk",
        "Client at risk - Stage 2",
        "{name} has been inactive for {days} days. Consider reaching out personally.",
    ),
    3: (
        "client_critical",
        "Client at high risk",
        "{name} has been inactive for {days} days. Urgent attention needed.",
    ),
}


@dataclass
class DispatchRequest:
    """One stage action for one client.

    ``template`` is the coach's stage 1 copy and is only set for stage 1;
    later stages fall back to the default copy for ``tone``.
    """

    coach: dict
    client: dict
    stage: int
    action: StageAction
    tone: MessageTone
    days_inactive: int
    last_signal_at: Optional[datetime] = None
    template: Optional[str] = None

    @property
    def client_name(self) -> str:
        parts = [self.client.get("first_name"), self.client.get("last_name")]
        return " ".join(p for p in parts if p) or "A client"

    def message_context(self) -> MessageContext:
        return MessageContext(
            client_first_name=self.client.get("first_name"),
            client_last_name=self.client.get("last_name"),
            coach_display_name=self.coach.get("display_name"),
            days_inactive=self.days_inactive,
            last_activity_at=self.last_signal_at,
        )


@dataclass
class DispatchOutcome:
    stage: int
    requested_action: StageAction
    performed_action: StageAction
    alerts: int = 0
    messages: int = 0
    message_text: Optional[str] = None
    degraded_kind: Optional[str] = None
    details: dict = field(default_factory=dict)

    @property
    def degraded(self) -> bool:
        return self.degraded_kind is not None


class ActionDispatcher:
    """Create one per run: a rate-limit or quota error pauses AI calls until the run ends."""

    def __init__(self, *, call_timeout: float):
        self.call_timeout = call_timeout
        self.ai_paused_by: Optional[ExternalServiceError] = None

    async def dispatch(self, db: AsyncSession, request: DispatchRequest) -> DispatchOutcome:
        if request.action == StageAction.ALERT_ONLY:
            return await self._alert(db, request)
        if request.action == StageAction.AUTO_MESSAGE:
            text = compose_checkin_message(
                request.tone, request.template, request.message_context()
            )
            return await self._message(
                db, request, text, AutomationActionType.SOFT_CHECKIN
            )
        if request.action == StageAction.AI_ASSISTED:
            return await self._ai_message(db, request)
        raise ValueError(f"Unsupported stage action {request.action!r}")

    # -- actions -------------------------------------------------------------

    async def _alert(
        self,
        db: AsyncSession,
        request: DispatchRequest,
        *,
        fallback_from: Optional[ExternalServiceError] = None,
    ) -> DispatchOutcome:
        notification_type, title, template = _ALERT_COPY[request.stage]
        body = template.format(name=request.client_name, days=request.days_inactive)
        data = {
            "client_id": str(request.client["client_id"]),
            "stage": request.stage,
            "days_inactive": request.days_inactive,
        }
        if fallback_from is not None:
            data["fallback_reason"] = fallback_from.kind

        action_type = (
            AutomationActionType.RECOVERY_ATTEMPT
            if request.stage == 3
            else AutomationActionType.COACH_ALERT
        )
        try:
            await service_client.send_notification(
                user_id=str(request.coach["user_id"]),
                notification_type=notification_type,
                title=title,
                message=body,
                data=data,
                calling_service=CALLING_SERVICE,
                timeout=self.call_timeout,
            )
        except (httpx.HTTPError, ValueError) as e:
            self._log(db, request, action_type, AutomationLogStatus.FAILED, details={"error": str(e)})
            raise NotificationError(f"Coach alert for client {request.client['client_id']} failed: {e}")

        degraded_kind = fallback_from.kind if fallback_from else None
        self._log(
            db,
            request,
            action_type,
            AutomationLogStatus.DEGRADED if degraded_kind else AutomationLogStatus.SENT,
            details={"requested_action": request.action.value, "error_kind": degraded_kind}
            if degraded_kind
            else None,
        )
        return DispatchOutcome(
            stage=request.stage,
            requested_action=request.action,
            performed_action=StageAction.ALERT_ONLY,
            alerts=1,
            degraded_kind=degraded_kind,
        )

    async def _message(
        self,
        db: AsyncSession,
        request: DispatchRequest,
        text: str,
        action_type: AutomationActionType,
    ) -> DispatchOutcome:
        try:
            await service_client.send_direct_message(
                sender_id=str(request.coach["user_id"]),
                receiver_id=str(request.client["user_id"]),
                content=text,
                calling_service=CALLING_SERVICE,
                timeout=self.call_timeout,
            )
        except (httpx.HTTPError, ValueError) as e:
            self._log(db, request, action_type, AutomationLogStatus.FAILED, details={"error": str(e)})
            raise NotificationError(f"Message to client {request.client['client_id']} failed: {e}")

        self._log(db, request, action_type, AutomationLogStatus.SENT, message=text)
        return DispatchOutcome(
            stage=request.stage,
            requested_action=request.action,
            performed_action=request.action,
            messages=1,
            message_text=text,
        )

    async def _ai_message(self, db: AsyncSession, request: DispatchRequest) -> DispatchOutcome:
        if self.ai_paused_by is not None:
            return await self._alert(db, request, fallback_from=self.ai_paused_by)
        try:
            text = await ai_composer.generate_checkin_message(
                request.tone, request.message_context(), timeout=self.call_timeout
            )
        except ExternalServiceError as e:
            logger.warning(
                "AI check-in unavailable for client %s (%s); falling back to coach alert",
                request.client["client_id"],
                e.kind,
                extra={"extra_fields": {"error_kind": e.kind, "stage": request.stage}},
            )
            if isinstance(e, (RateLimited, QuotaExhausted)):
                logger.warning("Pausing AI check-ins for the rest of this run (%s)", e.kind)
                self.ai_paused_by = e
            return await self._alert(db, request, fallback_from=e)
        return await self._message(db, request, text, AutomationActionType.AI_MESSAGE)

    # -- audit ---------------------------------------------------------------

    def _log(
        self,
        db: AsyncSession,
        request: DispatchRequest,
        action_type: AutomationActionType,
        status: AutomationLogStatus,
        *,
        message: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> None:
        db.add(
            AutomationLog(
                coach_id=uuid.UUID(str(request.coach["id"])),
                client_id=uuid.UUID(str(request.client["client_id"])),
                automation_type=AutomationType.DROPOFF_RESCUE,
                action_type=action_type,
                status=status,
                message_sent=message,
                details={
                    "stage": request.stage,
                    "days_inactive": request.days_inactive,
                    **(details or {}),
                },
            )
        )
