"""
OpenRouter completion client.

Sends conversations to an OpenRouter-compatible endpoint with a dynamic
output budget and returns normalized token and cost accounting.
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional, Sequence

import openai
from openai import OpenAI

from ..config.loader import ProviderSettings
from ..core.catalog import ModelCatalog
from ..core.messages import ChatValidationError, MessageLike, validate_conversation
from ..core.pricing import UsageResult, calculate_cost, split_cost
from ..core.token_counter import estimate_message_tokens

logger = logging.getLogger(__name__)

DEFAULT_MODEL_MAX_TOKENS = 128000
# Share of the remaining window offered to the reply
OUTPUT_BUDGET_RATIO = 0.8
MIN_OUTPUT_TOKENS = 100

PREVIEW_CHARS = 200


class CompletionFailed(Exception):
    """Raised when the completion provider call fails for any reason."""
    def __init__(self, message: str = "Failed to get response from AI"):
        super().__init__(message)


@dataclass(frozen=True)
class CompletionResult:
    """Reply text plus usage accounting."""
    text: str
    usage: UsageResult
    model: str
    request_id: Optional[str] = None


def compute_output_budget(model_max_tokens: int, estimated_input_tokens: int) -> int:
    """Compute max_tokens for the reply.

    Takes 80% of the window left after the estimated input, clamped to
    at least 100 and at most the model's window.
    """
    available = math.floor((model_max_tokens - estimated_input_tokens) * OUTPUT_BUDGET_RATIO)
    return max(MIN_OUTPUT_TOKENS, min(available, model_max_tokens))


def _read_cost(usage) -> float:
    """Read OpenRouter's non-standard ``usage.cost`` field."""
    raw = getattr(usage, "cost", None)
    if raw is None:
        extra = getattr(usage, "model_extra", None) or {}
        raw = extra.get("cost")
    try:
        cost = float(raw or 0)
    except (TypeError, ValueError):
        return 0.0
    return cost if cost > 0 else 0.0


class CompletionClient:
    """OpenRouter chat completion client.

    Args:
        settings: Provider settings (API key, base URL, headers, timeout)
        catalog: Optional catalog used to price usage when the provider
            reports no cost
        default_temperature: Temperature used when a call passes none
        client: Preconfigured OpenAI client, built from settings if omitted
    """

    def __init__(
        self,
        settings: ProviderSettings,
        catalog: Optional[ModelCatalog] = None,
        default_temperature: float = 0.7,
        client: Optional[OpenAI] = None,
    ):
        self.settings = settings
        self.catalog = catalog
        self.default_temperature = default_temperature
        self.client = client or OpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            timeout=settings.timeout_seconds,
            default_headers={
                "HTTP-Referer": settings.app_url,
                "X-Title": settings.app_title,
            },
        )

    def complete(
        self,
        messages: Sequence[MessageLike],
        model_id: str,
        model_max_tokens: int = DEFAULT_MODEL_MAX_TOKENS,
        temperature: Optional[float] = None,
        max_output_tokens: Optional[int] = None,
    ) -> CompletionResult:
        """Send a conversation to the provider.

        Args:
            messages: Conversation to send (required, non-empty)
            model_id: Provider model id
            model_max_tokens: Context window of the model
            temperature: Sampling temperature, defaults to the client's
            max_output_tokens: Explicit reply cap; computed from the
                window when omitted

        Returns:
            CompletionResult with reply text and usage

        Raises:
            ChatValidationError: If messages is empty or malformed
            CompletionFailed: If the provider call fails
        """
        conversation = validate_conversation(messages)
        if not conversation:
            raise ChatValidationError("messages is required and cannot be empty")

        if temperature is None:
            temperature = self.default_temperature

        estimated_input_tokens = estimate_message_tokens(conversation)
        if max_output_tokens is None:
            max_output_tokens = compute_output_budget(model_max_tokens, estimated_input_tokens)

        logger.debug(
            "Completion request: model=%s temperature=%s max_tokens=%d estimated_input=%d messages=%s",
            model_id, temperature, max_output_tokens, estimated_input_tokens,
            [(m.role, m.content[:PREVIEW_CHARS]) for m in conversation],
        )

        try:
            response = self.client.chat.completions.create(
                model=model_id,
                messages=[m.to_dict() for m in conversation],
                temperature=temperature,
                max_tokens=max_output_tokens,
            )
        except openai.OpenAIError as e:
            logger.exception(
                "OpenRouter API error: model=%s messages=%d: %s",
                model_id, len(conversation), e,
            )
            raise CompletionFailed() from e

        text = self._extract_text(response)
        usage = self._extract_usage(response, model_id)
        logger.debug(
            "Completion done: model=%s input=%d output=%d cost=%.6f",
            model_id, usage.input_tokens, usage.output_tokens, usage.total_cost,
        )
        return CompletionResult(
            text=text,
            usage=usage,
            model=model_id,
            request_id=getattr(response, "id", None),
        )

    @staticmethod
    def _extract_text(response) -> str:
        choices = getattr(response, "choices", None) or []
        if not choices:
            return ""
        message = getattr(choices[0], "message", None)
        return (getattr(message, "content", None) or "") if message else ""

    def _extract_usage(self, response, model_id: str) -> UsageResult:
        usage = getattr(response, "usage", None)
        if usage is None:
            return UsageResult.empty()

        input_tokens = usage.prompt_tokens or 0
        output_tokens = usage.completion_tokens or 0
        total_tokens = usage.total_tokens or (input_tokens + output_tokens)

        total_cost = _read_cost(usage)
        if total_cost > 0:
            input_cost, output_cost = split_cost(total_cost, input_tokens, output_tokens)
        else:
            input_cost, output_cost = self._price_from_catalog(model_id, input_tokens, output_tokens)
            total_cost = input_cost + output_cost

        return UsageResult(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=total_tokens,
            input_cost=input_cost,
            output_cost=output_cost,
            total_cost=total_cost,
        )

    def _price_from_catalog(self, model_id: str, input_tokens: int, output_tokens: int):
        model = self.catalog.get_by_id(model_id) if self.catalog else None
        if model is None:
            return 0.0, 0.0
        return calculate_cost(model, input_tokens, output_tokens)
