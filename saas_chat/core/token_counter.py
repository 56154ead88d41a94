"""
Token counting for chat conversations.

Counts tokens with the GPT sub-word tokenizer and falls back to a
character-based estimate whenever tokenization is unavailable.
"""

import logging
import math
from typing import Callable, Optional, Sequence

import tiktoken

from .messages import Message

logger = logging.getLogger(__name__)

# Framing tokens added for every message (role, content markers)
MESSAGE_OVERHEAD_TOKENS = 4
# Tokens priming the assistant reply, added once per conversation
REPLY_PRIMING_TOKENS = 2
# Conservative characters-per-token ratio, slightly overestimates
CHARS_PER_TOKEN = 3.5

DEFAULT_ENCODING = "cl100k_base"


def estimate_tokens(text: str) -> int:
    """Estimate tokens in a text from its character count."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_message_tokens(messages: Sequence[Message]) -> int:
    """Estimate tokens in a conversation without a tokenizer.

    Applies the same per-message and reply priming overhead as
    ``TokenCounter.count``.
    """
    total = 0
    for message in messages:
        total += MESSAGE_OVERHEAD_TOKENS
        total += estimate_tokens(message.role)
        total += estimate_tokens(message.content)
    return total + REPLY_PRIMING_TOKENS


class TokenCounter:
    """Model-aware token counter that never raises.

    Args:
        encode: Optional callable turning text into a token sequence.
            Defaults to the ``cl100k_base`` tiktoken encoding.
    """

    def __init__(
        self,
        encode: Optional[Callable[[str], Sequence]] = None,
        encoding_name: str = DEFAULT_ENCODING,
    ):
        self._encode = encode
        self.encoding_name = encoding_name

    def _get_encode(self) -> Callable[[str], Sequence]:
        if self._encode is None:
            # May download the encoding on first use
            self._encode = tiktoken.get_encoding(self.encoding_name).encode
        return self._encode

    def count(self, messages: Sequence[Message]) -> int:
        """Count tokens in a conversation, including framing overhead."""
        try:
            encode = self._get_encode()
            total = 0
            for message in messages:
                total += MESSAGE_OVERHEAD_TOKENS
                total += len(encode(message.role))
                total += len(encode(message.content))
            return total + REPLY_PRIMING_TOKENS
        except Exception as e:
            logger.warning("Token counting failed, using character estimate: %s", e)
            total_chars = sum(len(m.role) + len(m.content) for m in messages)
            return math.ceil(total_chars / CHARS_PER_TOKEN)

    def count_text(self, text: str) -> int:
        """Count tokens in a single text."""
        try:
            return len(self._get_encode()(text))
        except Exception as e:
            logger.warning("Text token counting failed, using character estimate: %s", e)
            return estimate_tokens(text)

