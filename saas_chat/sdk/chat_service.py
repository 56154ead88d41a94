"""
Chat turn orchestration.

Connects entitlement, context optimization, completion and settlement for
one user message. The conversation is checked against its owner before any
provider call, and the debit, messages and usage record are written in one
transaction after the completion succeeds.
"""

import logging
import threading
import weakref
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

from ..config.loader import Settings
from ..core.catalog import ModelCatalog
from ..core.context_manager import ContextManager
from ..core.entitlements import BudgetPolicy
from ..core.messages import Message, MessageLike, validate_conversation, validate_user_message
from ..core.pricing import UsageResult
from ..storage.models import TokenUsageRecord
from ..storage.repository import CONVERSATION_NOT_FOUND, ChatRepository
from .openrouter_client import DEFAULT_MODEL_MAX_TOKENS, CompletionClient

logger = logging.getLogger(__name__)

TITLE_WORDS = 6


class UserLocks:
    """Per-user locks serializing budget checks and debits.

    Locks are held weakly: an entry lives only while some caller still
    references the lock, so the registry is bounded by the number of users
    with a turn in flight.
    """

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()
        self._lock_creation_mutex = threading.Lock()

    def get_lock(self, user_id: str) -> threading.Lock:
        """Get or create the lock for a user."""
        with self._lock_creation_mutex:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[user_id] = lock
            return lock

    def __len__(self) -> int:
        return len(self._locks)


@dataclass(frozen=True)
class ChatTurnResult:
    """Outcome of a successful chat turn."""
    message: str
    usage: UsageResult
    model: str
    conversation_id: str
    credits_remaining: float
    free_tokens_remaining: int
    was_summarized: bool = False
    tokens_reduced: int = 0
    limit_exceeded: bool = False


def make_title(message: str) -> str:
    """Build a conversation title from the first words of a message."""
    words = message.strip().split()
    title = " ".join(words[:TITLE_WORDS])
    return f"{title}..." if len(title) < len(message.strip()) else title


class ChatService:
    """Runs chat turns for users.

    Args:
        settings: Application settings
        catalog: Model catalog
        repository: Account and message store
        client: Completion client
        context_manager: Context manager, built around ``client`` if omitted
        policy: Budget policy, built from ``catalog`` if omitted
        locks: Per-user lock registry
    """

    def __init__(
        self,
        settings: Settings,
        catalog: ModelCatalog,
        repository: ChatRepository,
        client: CompletionClient,
        context_manager: Optional[ContextManager] = None,
        policy: Optional[BudgetPolicy] = None,
        locks: Optional[UserLocks] = None,
    ):
        self.settings = settings
        self.catalog = catalog
        self.repository = repository
        self.client = client
        self.context_manager = context_manager or ContextManager(client.complete)
        self.policy = policy or BudgetPolicy(catalog)
        self.locks = locks or UserLocks()

    def send_message(
        self,
        user_id: str,
        message: str,
        conversation_id: Optional[str] = None,
        model_id: Optional[str] = None,
        history: Optional[Sequence[MessageLike]] = None,
    ) -> ChatTurnResult:
        """Run one chat turn.

        Args:
            user_id: Account sending the message
            message: New user message
            conversation_id: Existing conversation, a new one is created if omitted
            model_id: Selected model, the catalog default if omitted
            history: Prior user/assistant messages of the conversation

        Returns:
            ChatTurnResult with the reply and updated balances

        Raises:
            ChatValidationError: If the message or history is malformed
            LookupError: If the account doesn't exist, or the conversation
                doesn't exist or belongs to another user
            EntitlementDenied: If the user may not use the model
            CompletionFailed: If the provider call fails
        """
        message = validate_user_message(message)
        history_messages = validate_conversation(history or [])

        model_id = model_id or self.catalog.get_default().id
        model = self.catalog.get_by_id(model_id)
        model_max_tokens = model.max_tokens if model else DEFAULT_MODEL_MAX_TOKENS

        with self.locks.get_lock(user_id):
            state = self.repository.get_budget_state(user_id)
            if state is None:
                raise LookupError(f"Unknown user: {user_id}")
            if conversation_id and self.repository.get_conversation_owner(conversation_id) != user_id:
                raise LookupError(CONVERSATION_NOT_FOUND)

            self.policy.enforce(state, model_id)

            messages = [
                Message(role="system", content=self.settings.chat.system_prompt),
                *history_messages,
                Message(role="user", content=message),
            ]
            optimization = self.context_manager.optimize(messages, model_max_tokens, model_id)

            response = self.client.complete(
                optimization.optimized_messages,
                model_id,
                model_max_tokens,
            )

            debit = self.policy.settle(state, model_id, response.usage)
            if debit.shortfall > 0:
                logger.warning(
                    "Request cost exceeded credits for user %s by %.6f",
                    user_id, debit.shortfall,
                )

            usage = response.usage
            conversation_id = self.repository.record_chat_turn(
                debit,
                message,
                response.text,
                TokenUsageRecord(
                    timestamp=datetime.now(),
                    user_id=user_id,
                    model=model_id,
                    input_tokens=usage.input_tokens,
                    output_tokens=usage.output_tokens,
                    total_tokens=usage.total_tokens,
                    input_cost=usage.input_cost,
                    output_cost=usage.output_cost,
                    total_cost=usage.total_cost,
                ),
                conversation_id=conversation_id or None,
                title=None if conversation_id else make_title(message),
            )

        new_state = debit.new_state
        return ChatTurnResult(
            message=response.text,
            usage=response.usage,
            model=model_id,
            conversation_id=conversation_id,
            credits_remaining=new_state.credits_balance,
            free_tokens_remaining=new_state.free_tokens_remaining,
            was_summarized=optimization.was_summarized,
            tokens_reduced=optimization.tokens_reduced,
            limit_exceeded=debit.limit_exceeded,
        )

