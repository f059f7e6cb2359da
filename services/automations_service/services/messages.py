"""Check-in message copy and template variable resolution.

Templates accept ``{var}`` and ``{{var}}``. Unknown variables are left as
written so a typo is visible to the coach instead of silently vanishing.

System variables:
- client_name, client_first_name, client_last_name
- coach_name, coach_first_name
- days_inactive, last_activity_date, current_date
"""

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from libs.common.datetime_utils import utc_now
from services.automations_service.models import MessageTone

TONE_MESSAGES: dict[MessageTone, str] = {
    MessageTone.SUPPORTIVE: (
        "Hi {client_first_name}, just checking in. It's been a few days since "
        "we last connected and I wanted to make sure you're doing okay. No "
        "pressure at all, I'm here whenever you need me. {coach_first_name}"
    ),
    MessageTone.MOTIVATIONAL: (
        "Hey {client_first_name}! Missing your energy around here. Remember "
        "why you started, you've already made real progress. Let's get back "
        "at it together this week!"
    ),
    MessageTone.DIRECT: (
        "Hi {client_first_name}, I noticed you haven't logged anything for "
        "{days_inactive} days. Let's talk about what's getting in the way and "
        "how we get you back on track."
    ),
}

_VARIABLE = re.compile(r"\{\{\s*(\w+)\s*\}\}|\{(\w+)\}")


@dataclass
class MessageContext:
    client_first_name: Optional[str] = None
    client_last_name: Optional[str] = None
    coach_display_name: Optional[str] = None
    days_inactive: Optional[int] = None
    last_activity_at: Optional[datetime] = None


def _safe(value: Optional[str], fallback: str) -> str:
    value = (value or "").strip()
    return value or fallback


def _full_name(ctx: MessageContext) -> str:
    return " ".join(part for part in (ctx.client_first_name, ctx.client_last_name) if part)


def _format_date(value: datetime) -> str:
    return f"{value.day} {value.strftime('%B %Y')}"


SYSTEM_VARIABLES: dict[str, Callable[[MessageContext], str]] = {
    "client_name": lambda ctx: _safe(_full_name(ctx), "there"),
    "client_first_name": lambda ctx: _safe(ctx.client_first_name, "there"),
    "client_last_name": lambda ctx: _safe(ctx.client_last_name, ""),
    "coach_name": lambda ctx: _safe(ctx.coach_display_name, "your coach"),
    "coach_first_name": lambda ctx: _safe(
        (ctx.coach_display_name or "").split(" ")[0], "your coach"
    ),
    "days_inactive": lambda ctx: (
        str(ctx.days_inactive) if ctx.days_inactive is not None else "a few"
    ),
    "last_activity_date": lambda ctx: (
        _format_date(ctx.last_activity_at) if ctx.last_activity_at else "a while ago"
    ),
    "current_date": lambda ctx: _format_date(utc_now()),
}


def resolve_message_variables(template: str, ctx: MessageContext) -> str:
    def replace(match: re.Match) -> str:
        name = match.group(1) or match.group(2)
        resolver = SYSTEM_VARIABLES.get(name)
        if resolver is None:
            return match.group(0)
        return resolver(ctx)

    return _VARIABLE.sub(replace, template).strip()


def compose_checkin_message(
    tone: MessageTone, template: Optional[str], ctx: MessageContext
) -> str:
    """Coach template if set, otherwise the tone's default copy."""
    text = template if template and template.strip() else TONE_MESSAGES[tone]
    return resolve_message_variables(text, ctx)
