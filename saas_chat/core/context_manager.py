"""
Conversation context management.

Keeps a conversation inside the selected model's context window. Once a
conversation crosses 70% of the window, older turns are summarized by the
same model the user picked while the persona prompt and the most recent
turns are kept verbatim.

Decision order:
1. Under threshold - return the conversation unchanged
2. No old turns to compress - sliding window over the recent turns
3. Too little room for a summary call - deterministic digest
4. Otherwise - model-written summary, digest if the call fails
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence

from .messages import Message
from .token_counter import TokenCounter

logger = logging.getLogger(__name__)

RECENT_MESSAGES_TO_KEEP = 10  # ~5 user/assistant exchanges
TOKEN_THRESHOLD_PERCENTAGE = 0.7
SUMMARY_RESERVE_TOKENS = 500
MAX_SUMMARY_TOKENS = 1000
MIN_SUMMARY_TOKENS = 100
SUMMARY_TEMPERATURE = 0.3

SUMMARY_PREFIX = "[Previous conversation summary]: "
SUMMARIZER_INSTRUCTION = "You are a helpful assistant that summarizes conversations concisely."

# Characters kept per message in the deterministic digests
DIGEST_CHARS_NO_BUDGET = 50
DIGEST_CHARS_ON_FAILURE = 100

# complete(messages, model_id, model_max_tokens, temperature=..., max_output_tokens=...)
# returning an object with a ``text`` attribute
CompleteFn = Callable[..., Any]


@dataclass(frozen=True)
class ContextOptimizationResult:
    """Outcome of optimizing a conversation for one chat turn."""
    optimized_messages: List[Message]
    was_summarized: bool
    tokens_reduced: int


def build_digest(messages: Sequence[Message], chars: int, separator: str) -> str:
    """Build a truncated digest of messages without calling a model."""
    return separator.join(f"{m.role}: {m.content[:chars]}..." for m in messages)


def build_summary_prompt(messages: Sequence[Message]) -> str:
    conversation_text = "\n\n".join(f"{m.role.upper()}: {m.content}" for m in messages)
    return (
        "Please provide a concise summary of this conversation, capturing the key "
        "points, decisions, and context. Keep it under 200 words:\n\n"
        f"{conversation_text}\n\nSummary:"
    )


def apply_sliding_window(messages: Sequence[Message], max_messages: int = 20) -> List[Message]:
    """Keep the first system message and the last ``max_messages`` other messages."""
    system_message = next((m for m in messages if m.role == "system"), None)
    non_system = [m for m in messages if m.role != "system"]
    recent = non_system[-max_messages:] if max_messages > 0 else []
    return [system_message] + recent if system_message else recent


class ContextManager:
    """Fits conversations into a model's context window.

    Args:
        complete: Completion callable used for summarization. Receives the
            summarization request, the model id, the model's context window,
            ``temperature`` and ``max_output_tokens`` keyword arguments.
        counter: Token counter, defaults to the tiktoken based counter
    """

    def __init__(self, complete: CompleteFn, counter: Optional[TokenCounter] = None):
        self.complete = complete
        self.counter = counter or TokenCounter()

    def optimize(
        self,
        messages: Sequence[Message],
        model_max_tokens: int,
        model_id: str,
    ) -> ContextOptimizationResult:
        """Optimize a conversation for the given model.

        Args:
            messages: Full conversation, persona prompt first if present
            model_max_tokens: Context window of the selected model
            model_id: Selected model, also used for summarization

        Returns:
            ContextOptimizationResult; never raises on summarization errors
        """
        messages = list(messages)
        total_tokens = self.counter.count(messages)
        threshold = model_max_tokens * TOKEN_THRESHOLD_PERCENTAGE

        logger.debug(
            "Context check: %d tokens, threshold %.0f, model %s",
            total_tokens, threshold, model_id,
        )

        if total_tokens < threshold:
            return ContextOptimizationResult(
                optimized_messages=messages,
                was_summarized=False,
                tokens_reduced=0,
            )

        system_message, old_messages, recent_messages = self._partition(messages)
        head = [system_message] if system_message else []

        if not old_messages:
            logger.info("No old messages to summarize, applying sliding window")
            optimized = head + recent_messages
            return ContextOptimizationResult(
                optimized_messages=optimized,
                was_summarized=False,
                tokens_reduced=max(0, total_tokens - self.counter.count(optimized)),
            )

        system_tokens = self.counter.count(head) if head else 0
        recent_tokens = self.counter.count(recent_messages)
        available_tokens = model_max_tokens - system_tokens - recent_tokens

        logger.info("Summarizing %d old messages with %s", len(old_messages), model_id)
        summary = self._summarize(old_messages, model_id, model_max_tokens, available_tokens)

        optimized = head + [Message(role="system", content=SUMMARY_PREFIX + summary)] + recent_messages
        new_tokens = self.counter.count(optimized)
        tokens_reduced = max(0, total_tokens - new_tokens)

        logger.info(
            "Context optimized: %d -> %d tokens (%d reduced)",
            total_tokens, new_tokens, tokens_reduced,
        )
        return ContextOptimizationResult(
            optimized_messages=optimized,
            was_summarized=True,
            tokens_reduced=tokens_reduced,
        )

    def _partition(self, messages: List[Message]):
        """Split into (leading system message, old messages, recent messages)."""
        system_message = None
        body = messages
        if messages and messages[0].role == "system":
            system_message = messages[0]
            body = messages[1:]

        split = max(0, len(body) - RECENT_MESSAGES_TO_KEEP)
        return system_message, body[:split], body[split:]

    def _summarize(
        self,
        messages: List[Message],
        model_id: str,
        model_max_tokens: int,
        available_tokens: int,
    ) -> str:
        """Summarize messages with the user's model, falling back to a digest."""
        try:
            prompt = build_summary_prompt(messages)
            prompt_tokens = self.counter.count_text(prompt)
            max_summary_tokens = min(
                available_tokens - prompt_tokens - SUMMARY_RESERVE_TOKENS,
                MAX_SUMMARY_TOKENS,
            )

            if max_summary_tokens < MIN_SUMMARY_TOKENS:
                logger.warning("Not enough tokens for an AI summary, using digest")
                return build_digest(messages, DIGEST_CHARS_NO_BUDGET, " | ")

            logger.debug("Summarizing with %s (max %d tokens)", model_id, max_summary_tokens)
            response = self.complete(
                [
                    Message(role="system", content=SUMMARIZER_INSTRUCTION),
                    Message(role="user", content=prompt),
                ],
                model_id,
                model_max_tokens,
                temperature=SUMMARY_TEMPERATURE,
                max_output_tokens=max_summary_tokens,
            )
            summary = response.text
            if not summary or not summary.strip():
                raise ValueError("Summarization returned an empty response")
            return summary
        except Exception:
            logger.exception("Error summarizing messages, using digest")
            return build_digest(messages, DIGEST_CHARS_ON_FAILURE, " ")
