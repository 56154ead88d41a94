"""
Data models for storage layer.

Defines conversations and the records written after a chat turn completes.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class StoredMessage:
    """Chat message record, removed only with its conversation."""
    conversation_id: str
    role: str
    content: str
    created_at: datetime
    model: Optional[str] = None
    tokens_used: Optional[int] = None
    cost_in_dollars: Optional[float] = None


@dataclass(frozen=True)
class TokenUsageRecord:
    """Immutable record of tokens and cost for one completion."""
    timestamp: datetime
    user_id: str
    model: str
    input_tokens: int
    output_tokens: int
    total_tokens: int
    input_cost: float
    output_cost: float
    total_cost: float


@dataclass(frozen=True)
class Conversation:
    """Conversation header owned by one user."""
    id: str
    user_id: str
    title: Optional[str]
    created_at: datetime
