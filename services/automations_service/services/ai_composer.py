"""AI-written re-engagement messages through the LLM gateway.

Calls go through LiteLLM against the configured OpenAI-compatible gateway.
Gateway failures are classified so callers can degrade precisely:
429 -> RateLimited, 402 -> QuotaExhausted, anything else -> ExternalServiceError.
"""

import asyncio
import time
from typing import Optional

import litellm
from libs.common.config import get_settings
from libs.common.logging import get_logger
from services.automations_service.errors import (
    ExternalServiceError,
    QuotaExhausted,
    RateLimited,
)
from services.automations_service.models import MessageTone
from services.automations_service.services.messages import MessageContext

logger = get_logger(__name__)

SYSTEM_PROMPT = (
    "You are a fitness coach writing a short, personal check-in message to a "
    "client who has gone quiet. Write in the first person as the coach. Keep "
    "it under 80 words, plain text, no hashtags, no emojis, no sign-off "
    "placeholders. Never mention that the message was automated."
)

TONE_GUIDANCE = {
    MessageTone.SUPPORTIVE: "Warm and low-pressure; make it easy to reply.",
    MessageTone.MOTIVATIONAL: "Upbeat and energising; remind them of their progress.",
    MessageTone.DIRECT: "Clear and honest; ask what is getting in the way.",
}


class AIProviderResponse:
    """Standardized response from the gateway."""

    def __init__(
        self,
        content: str,
        model: str,
        input_tokens: int = 0,
        output_tokens: int = 0,
        latency_ms: int = 0,
    ):
        self.content = content
        self.model = model
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens
        self.latency_ms = latency_ms


def classify_gateway_error(exc: Exception) -> ExternalServiceError:
    """Map a LiteLLM/gateway exception onto the service error taxonomy."""
    status_code = getattr(exc, "status_code", None)
    if status_code == 429:
        return RateLimited("AI gateway rate limit reached", status_code=429)
    if status_code == 402:
        return QuotaExhausted("AI gateway credits exhausted", status_code=402)
    return ExternalServiceError(f"AI gateway call failed: {exc}", status_code=status_code)


async def call_llm(
    system_prompt: str,
    user_prompt: str,
    model: Optional[str] = None,
    temperature: float = 0.7,
    max_tokens: int = 300,
    timeout: Optional[float] = None,
) -> AIProviderResponse:
    settings = get_settings()
    model = model or settings.AI_DEFAULT_MODEL
    timeout = timeout or settings.AI_TIMEOUT_SECONDS

    kwargs = {
        "model": model,
        "messages": [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ],
        "temperature": temperature,
        "max_tokens": max_tokens,
        "timeout": timeout,
    }
    if settings.AI_GATEWAY_URL:
        kwargs["api_base"] = settings.AI_GATEWAY_URL
    if settings.AI_GATEWAY_API_KEY:
        kwargs["api_key"] = settings.AI_GATEWAY_API_KEY

    start = time.monotonic()
    try:
        response = await asyncio.wait_for(litellm.acompletion(**kwargs), timeout=timeout)
    except asyncio.TimeoutError:
        raise ExternalServiceError(f"AI gateway timed out after {timeout}s")
    except Exception as e:
        error = classify_gateway_error(e)
        logger.warning(
            "LLM call failed (%s): %s",
            error.kind,
            e,
            extra={"extra_fields": {"model": model, "latency_ms": int((time.monotonic() - start) * 1000)}},
        )
        raise error from e

    usage = getattr(response, "usage", None)
    return AIProviderResponse(
        content=response.choices[0].message.content or "",
        model=model,
        input_tokens=usage.prompt_tokens if usage else 0,
        output_tokens=usage.completion_tokens if usage else 0,
        latency_ms=int((time.monotonic() - start) * 1000),
    )


def build_checkin_prompt(tone: MessageTone, ctx: MessageContext) -> str:
    lines = [
        f"Client first name: {ctx.client_first_name or 'unknown'}",
        f"Coach name: {ctx.coach_display_name or 'unknown'}",
        f"Days since the client's last activity: {ctx.days_inactive}",
        f"Tone: {tone.value}. {TONE_GUIDANCE[tone]}",
        "Write the message now.",
    ]
    return "\n".join(lines)


async def generate_checkin_message(
    tone: MessageTone, ctx: MessageContext, *, timeout: Optional[float] = None
) -> str:
    """Ask the gateway for a personalised check-in message.

    Raises RateLimited, QuotaExhausted or ExternalServiceError.
    """
    response = await call_llm(
        SYSTEM_PROMPT, build_checkin_prompt(tone, ctx), timeout=timeout
    )
    text = response.content.strip()
    if not text:
        raise ExternalServiceError("AI gateway returned an empty message")
    logger.info(
        "Generated check-in message",
        extra={"extra_fields": {
            "model": response.model,
            "input_tokens": response.input_tokens,
            "output_tokens": response.output_tokens,
            "latency_ms": response.latency_ms,
        }},
    )
    return text
