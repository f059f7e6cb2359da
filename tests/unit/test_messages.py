"""Unit tests for check-in copy, template variables and AI gateway errors."""

from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
from services.automations_service.errors import (
    ExternalServiceError,
    QuotaExhausted,
    RateLimited,
)
from services.automations_service.models import MessageTone
from services.automations_service.services import ai_composer
from services.automations_service.services.messages import (
    MessageContext,
    compose_checkin_message,
    resolve_message_variables,
)

CTX = MessageContext(
    client_first_name="Alex",
    client_last_name="Morgan",
    coach_display_name="Sam Rivers",
    days_inactive=8,
    last_activity_at=datetime(2026, 3, 4, tzinfo=timezone.utc),
)


# ---------------------------------------------------------------------------
# Template variables
# ---------------------------------------------------------------------------


@pytest.mark.unit
def test_resolves_single_and_double_brace_variables():
    text = resolve_message_variables(
        "Hi {client_first_name}, {{ coach_first_name }} here.", CTX
    )
    assert text == "Hi Alex, Sam here."


@pytest.mark.unit
def test_unknown_variables_are_left_as_written():
    text = resolve_message_variables("Hey {nickname}, {client_name}!", CTX)
    assert text == "Hey {nickname}, Alex Morgan!"


@pytest.mark.unit
def test_missing_values_fall_back_to_neutral_copy():
    text = resolve_message_variables(
        "Hi {client_first_name}, last seen {last_activity_date}. {coach_name}",
        MessageContext(),
    )
    assert text == "Hi there, last seen a while ago. your coach"


@pytest.mark.unit
def test_date_variables_are_human_readable():
    text = resolve_message_variables("{last_activity_date}", CTX)
    assert text == "4 March 2026"


# ---------------------------------------------------------------------------
# compose_checkin_message
# ---------------------------------------------------------------------------


@pytest.mark.unit
def test_coach_template_wins_over_tone_copy():
    text = compose_checkin_message(
        MessageTone.SUPPORTIVE, "{client_first_name}, {days_inactive} days!", CTX
    )
    assert text == "Alex, 8 days!"


@pytest.mark.unit
@pytest.mark.parametrize("template", [None, "", "   "])
def test_blank_template_uses_tone_copy(template):
    text = compose_checkin_message(MessageTone.DIRECT, template, CTX)

    assert text.startswith("Hi Alex")
    assert "8 days" in text


# ---------------------------------------------------------------------------
# AI composer
# ---------------------------------------------------------------------------


class _GatewayError(Exception):
    def __init__(self, status_code):
        super().__init__(f"gateway answered {status_code}")
        self.status_code = status_code


@pytest.mark.unit
@pytest.mark.parametrize(
    "status_code, expected_kind",
    [
        (429, "rate_limited"),
        (402, "quota_exhausted"),
        (500, "external_service_error"),
        (None, "external_service_error"),
    ],
)
def test_classify_gateway_error(status_code, expected_kind):
    error = ai_composer.classify_gateway_error(_GatewayError(status_code))
    assert error.kind == expected_kind


@pytest.mark.asyncio
@pytest.mark.unit
async def test_generate_checkin_message_returns_gateway_text():
    response = SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content="  Hey Alex, how are you?  "))],
        usage=SimpleNamespace(prompt_tokens=40, completion_tokens=12),
    )

    with patch(
        "services.automations_service.services.ai_composer.litellm.acompletion",
        new_callable=AsyncMock,
        return_value=response,
    ) as mock_completion:
        text = await ai_composer.generate_checkin_message(
            MessageTone.MOTIVATIONAL, CTX, timeout=5
        )

    assert text == "Hey Alex, how are you?"
    prompt = mock_completion.await_args.kwargs["messages"][1]["content"]
    assert "Days since the client's last activity: 8" in prompt


@pytest.mark.asyncio
@pytest.mark.unit
async def test_generate_checkin_message_raises_rate_limited_on_429():
    with patch(
        "services.automations_service.services.ai_composer.litellm.acompletion",
        new_callable=AsyncMock,
        side_effect=_GatewayError(429),
    ):
        with pytest.raises(RateLimited):
            await ai_composer.generate_checkin_message(MessageTone.DIRECT, CTX, timeout=5)


@pytest.mark.asyncio
@pytest.mark.unit
async def test_generate_checkin_message_raises_quota_exhausted_on_402():
    with patch(
        "services.automations_service.services.ai_composer.litellm.acompletion",
        new_callable=AsyncMock,
        side_effect=_GatewayError(402),
    ):
        with pytest.raises(QuotaExhausted):
            await ai_composer.generate_checkin_message(MessageTone.DIRECT, CTX, timeout=5)


@pytest.mark.asyncio
@pytest.mark.unit
async def test_empty_gateway_reply_is_an_error():
    response = SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=""))], usage=None
    )

    with patch(
        "services.automations_service.services.ai_composer.litellm.acompletion",
        new_callable=AsyncMock,
        return_value=response,
    ):
        with pytest.raises(ExternalServiceError):
            await ai_composer.generate_checkin_message(MessageTone.DIRECT, CTX, timeout=5)
