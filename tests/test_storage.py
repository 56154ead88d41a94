"""
Unit tests for the storage layer.

Tests account budgets, message persistence and the usage ledger.
"""

import os
import shutil
import sqlite3
import tempfile
from datetime import datetime

import pytest

from saas_chat.core.entitlements import ProposedDebit, SubscriptionTier, UserBudgetState
from saas_chat.storage.db import get_connection, transaction
from saas_chat.storage.models import TokenUsageRecord
from saas_chat.storage.repository import ChatRepository, initialize_schema


def create_usage_record(user_id="user-1", model="openai/gpt-4o", total_cost=0.01):
    return TokenUsageRecord(
        timestamp=datetime.now(),
        user_id=user_id,
        model=model,
        input_tokens=100,
        output_tokens=50,
        total_tokens=150,
        input_cost=total_cost * 0.4,
        output_cost=total_cost * 0.6,
        total_cost=total_cost,
    )


class TestDatabaseConnection:
    """Test database connection functionality."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_foreign_keys_enabled(self):
        conn = get_connection(self.db_path)
        try:
            assert conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1
        finally:
            conn.close()

    def test_transaction_commits(self):
        initialize_schema(self.db_path)

        with transaction(self.db_path) as conn:
            conn.execute(
                "INSERT INTO user_account (id, updated_at) VALUES (?, ?)", ("user-1", "2024-01-01")
            )

        assert ChatRepository(self.db_path).get_budget_state("user-1") is not None

    def test_transaction_rolls_back_on_error(self):
        initialize_schema(self.db_path)

        with pytest.raises(sqlite3.IntegrityError):
            with transaction(self.db_path) as conn:
                conn.execute(
                    "INSERT INTO user_account (id, updated_at) VALUES (?, ?)", ("user-1", "2024-01-01")
                )
                conn.execute(
                    "INSERT INTO conversation (id, user_id, created_at) VALUES (?, ?, ?)",
                    ("conv-1", "nobody", "2024-01-01"),
                )

        assert ChatRepository(self.db_path).get_budget_state("user-1") is None

    def test_schema_creation_is_idempotent(self):
        initialize_schema(self.db_path)
        initialize_schema(self.db_path)

        conn = get_connection(self.db_path)
        try:
            tables = {row[0] for row in conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table'"
            )}
        finally:
            conn.close()
        assert {"user_account", "conversation", "message", "token_usage"} <= tables


class TestAccounts:
    """Test account budget persistence."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.repository = ChatRepository(self.db_path)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_missing_account(self):
        assert self.repository.get_budget_state("nobody") is None

    def test_upsert_and_read(self):
        self.repository.upsert_account(
            "user-1",
            subscription_status="active",
            credits_balance=8.5,
            credits_allocated=10.0,
            credits_used=1.5,
            free_tokens_used=42,
            free_tokens_limit=5000,
        )

        state = self.repository.get_budget_state("user-1")

        assert state == UserBudgetState(
            tier=SubscriptionTier.ACTIVE,
            credits_balance=8.5,
            credits_allocated=10.0,
            credits_used=1.5,
            free_tokens_used=42,
            free_tokens_limit=5000,
        )

    def test_upsert_overwrites(self):
        self.repository.upsert_account("user-1", subscription_status="trialing")
        self.repository.upsert_account("user-1", subscription_status="canceled")

        assert self.repository.get_budget_state("user-1").tier == SubscriptionTier.UNSUBSCRIBED
        assert self.repository.get_subscription_status("user-1") == "canceled"

    def test_apply_debit(self):
        self.repository.upsert_account("user-1", subscription_status="active",
                                       credits_balance=5.0, credits_allocated=5.0)
        state = self.repository.get_budget_state("user-1")
        new_state = UserBudgetState(
            tier=state.tier,
            credits_balance=4.0,
            credits_allocated=5.0,
            credits_used=1.0,
        )

        self.repository.apply_debit("user-1", ProposedDebit(1.0, 0, new_state))

        stored = self.repository.get_budget_state("user-1")
        assert stored.credits_balance == pytest.approx(4.0)
        assert stored.credits_used == pytest.approx(1.0)

    def test_noop_debit_skips_write(self):
        self.repository.upsert_account("user-1", credits_balance=5.0)
        other_state = UserBudgetState(SubscriptionTier.UNSUBSCRIBED, credits_balance=0.0)

        self.repository.apply_debit("user-1", ProposedDebit(0.0, 0, other_state))

        assert self.repository.get_budget_state("user-1").credits_balance == 5.0

    def test_set_credits(self):
        self.repository.upsert_account("user-1", subscription_status="active")

        self.repository.set_credits("user-1", 20.0)

        state = self.repository.get_budget_state("user-1")
        assert state.credits_balance == 20.0
        assert state.credits_allocated == 20.0

    def test_reset_credits_to_allocation(self):
        self.repository.upsert_account("user-1", subscription_status="active",
                                       credits_balance=1.0, credits_allocated=10.0, credits_used=9.0)

        assert self.repository.reset_credits("user-1") is True

        state = self.repository.get_budget_state("user-1")
        assert state.credits_balance == 10.0
        assert state.credits_used == 0.0

    def test_reset_credits_with_new_amount(self):
        self.repository.upsert_account("user-1", subscription_status="active", credits_allocated=10.0)

        self.repository.reset_credits("user-1", 25.0)

        state = self.repository.get_budget_state("user-1")
        assert state.credits_balance == 25.0
        assert state.credits_allocated == 25.0

    def test_reset_credits_unknown_user(self):
        assert self.repository.reset_credits("nobody") is False

    def test_set_subscription_status_keeps_usage(self):
        self.repository.upsert_account("user-1", credits_balance=3.0, free_tokens_used=42)

        assert self.repository.set_subscription_status("user-1", "active") is True

        state = self.repository.get_budget_state("user-1")
        assert state.tier == SubscriptionTier.ACTIVE
        assert state.credits_balance == 3.0
        assert state.free_tokens_used == 42

    def test_set_subscription_status_unknown_user(self):
        assert self.repository.set_subscription_status("nobody", "active") is False

    def test_reset_free_tokens_only_for_unsubscribed(self):
        self.repository.upsert_account("free-user", free_tokens_used=900)
        self.repository.upsert_account("canceled-user", subscription_status="canceled", free_tokens_used=500)
        self.repository.upsert_account("active-user", subscription_status="active", free_tokens_used=300)
        self.repository.upsert_account("trial-user", subscription_status="trialing", free_tokens_used=200)

        assert self.repository.reset_free_tokens() == 2

        assert self.repository.get_budget_state("free-user").free_tokens_used == 0
        assert self.repository.get_budget_state("canceled-user").free_tokens_used == 0
        assert self.repository.get_budget_state("active-user").free_tokens_used == 300
        assert self.repository.get_budget_state("trial-user").free_tokens_used == 200


class TestConversations:
    """Test conversation and message persistence."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.repository = ChatRepository(self.db_path)
        self.repository.upsert_account("user-1")

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_create_and_title(self):
        conversation_id = self.repository.create_conversation("user-1")
        assert self.repository.get_conversation_title(conversation_id) is None

        self.repository.update_conversation_title(conversation_id, "Hello there")

        assert self.repository.get_conversation_title(conversation_id) == "Hello there"

    def test_conversation_requires_account(self):
        with pytest.raises(sqlite3.IntegrityError):
            self.repository.create_conversation("nobody")

    def test_messages_in_order(self):
        conversation_id = self.repository.create_conversation("user-1")

        self.repository.save_message(conversation_id, "user", "Hi")
        self.repository.save_message(conversation_id, "assistant", "Hello!", model="openai/gpt-4o",
                                     tokens_used=12, cost_in_dollars=0.0001)

        messages = self.repository.list_messages(conversation_id)
        assert [m.role for m in messages] == ["user", "assistant"]
        assert messages[0].model is None
        assert messages[1].model == "openai/gpt-4o"
        assert messages[1].tokens_used == 12
        assert messages[1].cost_in_dollars == pytest.approx(0.0001)

    def test_conversation_owner(self):
        conversation_id = self.repository.create_conversation("user-1")

        assert self.repository.get_conversation_owner(conversation_id) == "user-1"
        assert self.repository.get_conversation_owner("missing") is None

    def test_list_conversations_newest_first_per_user(self):
        self.repository.upsert_account("user-2")
        first = self.repository.create_conversation("user-1", title="First")
        second = self.repository.create_conversation("user-1", title="Second")
        self.repository.create_conversation("user-2", title="Other")

        conversations = self.repository.list_conversations("user-1")

        assert [c.id for c in conversations] == [second, first]
        assert [c.title for c in conversations] == ["Second", "First"]
        assert all(c.user_id == "user-1" for c in conversations)

    def test_list_messages_scoped_to_owner(self):
        self.repository.upsert_account("user-2")
        conversation_id = self.repository.create_conversation("user-1")
        self.repository.save_message(conversation_id, "user", "secret")

        assert len(self.repository.list_messages(conversation_id, user_id="user-1")) == 1
        assert self.repository.list_messages(conversation_id, user_id="user-2") == []

    def test_delete_conversation_with_messages(self):
        conversation_id = self.repository.create_conversation("user-1")
        self.repository.save_message(conversation_id, "user", "Hi")

        self.repository.delete_conversation(conversation_id, "user-1")

        assert self.repository.get_conversation_owner(conversation_id) is None
        assert self.repository.list_messages(conversation_id) == []
        assert self.repository.list_conversations("user-1") == []

    def test_delete_conversation_of_other_user(self):
        self.repository.upsert_account("user-2")
        conversation_id = self.repository.create_conversation("user-1")
        self.repository.save_message(conversation_id, "user", "Hi")

        with pytest.raises(LookupError, match="Unauthorized or conversation not found"):
            self.repository.delete_conversation(conversation_id, "user-2")

        assert len(self.repository.list_messages(conversation_id)) == 1

    def test_delete_missing_conversation(self):
        with pytest.raises(LookupError):
            self.repository.delete_conversation("missing", "user-1")

    def test_message_requires_conversation(self):
        with pytest.raises(sqlite3.IntegrityError):
            self.repository.save_message("missing", "user", "Hi")


class TestTokenUsageLedger:
    """Test the append-only usage ledger."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.repository = ChatRepository(self.db_path)
        self.repository.upsert_account("user-1")
        self.repository.upsert_account("user-2")

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_log_and_fetch(self):
        record = create_usage_record()

        self.repository.log_token_usage(record)

        records = self.repository.fetch_token_usage()
        assert len(records) == 1
        assert records[0] == record

    def test_fetch_newest_first_with_filters(self):
        self.repository.log_token_usage(create_usage_record("user-1", "openai/gpt-4o", 0.01))
        self.repository.log_token_usage(create_usage_record("user-1", "openai/gpt-4o-mini", 0.02))
        self.repository.log_token_usage(create_usage_record("user-2", "openai/gpt-4o", 0.03))

        user_records = self.repository.fetch_token_usage(user_id="user-1")
        assert [r.total_cost for r in user_records] == [0.02, 0.01]

        model_records = self.repository.fetch_token_usage(model="openai/gpt-4o")
        assert [r.user_id for r in model_records] == ["user-2", "user-1"]

        assert len(self.repository.fetch_token_usage(limit=1)) == 1


class TestRecordChatTurn:
    """Test that a chat turn is written in one transaction."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.repository = ChatRepository(self.db_path)
        self.repository.upsert_account("user-1", subscription_status="active",
                                       credits_balance=5.0, credits_allocated=5.0)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _debit(self):
        new_state = UserBudgetState(
            tier=SubscriptionTier.ACTIVE,
            credits_balance=4.99,
            credits_allocated=5.0,
            credits_used=0.01,
        )
        return ProposedDebit(0.01, 0, new_state)

    def test_new_conversation(self):
        conversation_id = self.repository.record_chat_turn(
            self._debit(), "Hi", "Hello!", create_usage_record(), title="Hi",
        )

        assert self.repository.get_conversation_owner(conversation_id) == "user-1"
        assert self.repository.get_conversation_title(conversation_id) == "Hi"
        messages = self.repository.list_messages(conversation_id)
        assert [(m.role, m.content) for m in messages] == [("user", "Hi"), ("assistant", "Hello!")]
        assert messages[1].model == "openai/gpt-4o"
        assert messages[1].tokens_used == 150
        assert self.repository.get_budget_state("user-1").credits_balance == pytest.approx(4.99)
        assert len(self.repository.fetch_token_usage(user_id="user-1")) == 1

    def test_existing_conversation(self):
        conversation_id = self.repository.create_conversation("user-1", title="Kept")

        result = self.repository.record_chat_turn(
            self._debit(), "Hi", "Hello!", create_usage_record(), conversation_id=conversation_id,
        )

        assert result == conversation_id
        assert self.repository.get_conversation_title(conversation_id) == "Kept"
        assert len(self.repository.list_messages(conversation_id)) == 2

    def test_failed_write_rolls_back_debit(self):
        with pytest.raises(sqlite3.IntegrityError):
            self.repository.record_chat_turn(
                self._debit(), "Hi", "Hello!", create_usage_record(), conversation_id="missing",
            )

        state = self.repository.get_budget_state("user-1")
        assert state.credits_balance == 5.0
        assert state.credits_used == 0.0
        assert self.repository.fetch_token_usage() == []
