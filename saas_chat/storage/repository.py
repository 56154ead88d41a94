"""
Repository pattern for data access.

Account store, message store and token usage ledger for the chat backend.
Budget arithmetic lives in the entitlement policy; this module only reads
snapshots and persists the states it is handed.
"""

import sqlite3
import uuid
from datetime import datetime
from typing import List, Optional

from ..core.entitlements import ProposedDebit, SubscriptionTier, UserBudgetState
from .db import DEFAULT_DB_PATH, get_connection, transaction
from .models import Conversation, StoredMessage, TokenUsageRecord

CONVERSATION_NOT_FOUND = "Unauthorized or conversation not found"


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create all tables if they don't exist.

    Token usage is an append-only ledger; no UPDATE or DELETE operations
    should ever be performed on it. Messages are only deleted together with
    their conversation.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS user_account (
                id TEXT PRIMARY KEY,
                subscription_status TEXT,
                credits_balance REAL NOT NULL DEFAULT 0,
                credits_allocated REAL NOT NULL DEFAULT 0,
                credits_used REAL NOT NULL DEFAULT 0,
                free_tokens_used INTEGER NOT NULL DEFAULT 0,
                free_tokens_limit INTEGER NOT NULL DEFAULT 1000000,
                updated_at TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS conversation (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL REFERENCES user_account(id),
                title TEXT,
                created_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_conversation_user
                ON conversation (user_id, created_at);
            CREATE TABLE IF NOT EXISTS message (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                conversation_id TEXT NOT NULL REFERENCES conversation(id),
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                model TEXT,
                tokens_used INTEGER,
                cost_in_dollars REAL,
                created_at TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS token_usage (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                user_id TEXT NOT NULL REFERENCES user_account(id),
                model TEXT NOT NULL,
                input_tokens INTEGER NOT NULL,
                output_tokens INTEGER NOT NULL,
                total_tokens INTEGER NOT NULL,
                input_cost REAL NOT NULL,
                output_cost REAL NOT NULL,
                total_cost REAL NOT NULL
            );
        """)
        conn.commit()
    finally:
        conn.close()


def _update_budget(conn: sqlite3.Connection, user_id: str, state: UserBudgetState) -> None:
    conn.execute("""
        UPDATE user_account
        SET credits_balance = ?, credits_used = ?, free_tokens_used = ?,
            updated_at = ?
        WHERE id = ?
    """, (
        state.credits_balance,
        state.credits_used,
        state.free_tokens_used,
        datetime.now().isoformat(),
        user_id,
    ))


def _insert_conversation(
    conn: sqlite3.Connection, user_id: str, title: Optional[str]
) -> str:
    conversation_id = str(uuid.uuid4())
    conn.execute("""
        INSERT INTO conversation (id, user_id, title, created_at)
        VALUES (?, ?, ?, ?)
    """, (conversation_id, user_id, title, datetime.now().isoformat()))
    return conversation_id


def _insert_message(
    conn: sqlite3.Connection,
    conversation_id: str,
    role: str,
    content: str,
    model: Optional[str] = None,
    tokens_used: Optional[int] = None,
    cost_in_dollars: Optional[float] = None,
) -> None:
    conn.execute("""
        INSERT INTO message
        (conversation_id, role, content, model, tokens_used,
         cost_in_dollars, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
    """, (
        conversation_id,
        role,
        content,
        model,
        tokens_used,
        cost_in_dollars,
        datetime.now().isoformat(),
    ))


def _insert_usage(conn: sqlite3.Connection, record: TokenUsageRecord) -> None:
    conn.execute("""
        INSERT INTO token_usage
        (timestamp, user_id, model, input_tokens, output_tokens,
         total_tokens, input_cost, output_cost, total_cost)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
    """, (
        record.timestamp.isoformat(),
        record.user_id,
        record.model,
        record.input_tokens,
        record.output_tokens,
        record.total_tokens,
        record.input_cost,
        record.output_cost,
        record.total_cost,
    ))


class ChatRepository:
    """SQLite-backed account, conversation and usage store.

    Args:
        db_path: Path to SQLite database file
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    # Accounts

    def upsert_account(
        self,
        user_id: str,
        subscription_status: Optional[str] = None,
        credits_balance: float = 0.0,
        credits_allocated: float = 0.0,
        credits_used: float = 0.0,
        free_tokens_used: int = 0,
        free_tokens_limit: int = 1_000_000,
    ) -> None:
        """Create an account or overwrite its budget fields."""
        with transaction(self.db_path) as conn:
            conn.execute("""
                INSERT INTO user_account
                (id, subscription_status, credits_balance, credits_allocated,
                 credits_used, free_tokens_used, free_tokens_limit, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    subscription_status = excluded.subscription_status,
                    credits_balance = excluded.credits_balance,
                    credits_allocated = excluded.credits_allocated,
                    credits_used = excluded.credits_used,
                    free_tokens_used = excluded.free_tokens_used,
                    free_tokens_limit = excluded.free_tokens_limit,
                    updated_at = excluded.updated_at
            """, (
                user_id,
                subscription_status,
                credits_balance,
                credits_allocated,
                credits_used,
                free_tokens_used,
                free_tokens_limit,
                datetime.now().isoformat(),
            ))

    def get_budget_state(self, user_id: str) -> Optional[UserBudgetState]:
        """Read a budget snapshot, or None if the account doesn't exist."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("""
                SELECT subscription_status, credits_balance, credits_allocated,
                       credits_used, free_tokens_used, free_tokens_limit
                FROM user_account WHERE id = ?
            """, (user_id,)).fetchone()
        finally:
            conn.close()

        if row is None:
            return None
        return UserBudgetState(
            tier=SubscriptionTier.from_status(row[0]),
            credits_balance=row[1],
            credits_allocated=row[2],
            credits_used=row[3],
            free_tokens_used=row[4],
            free_tokens_limit=row[5],
        )

    def get_subscription_status(self, user_id: str) -> Optional[str]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT subscription_status FROM user_account WHERE id = ?", (user_id,)
            ).fetchone()
        finally:
            conn.close()
        return row[0] if row else None

    def set_subscription_status(self, user_id: str, subscription_status: Optional[str]) -> bool:
        """Change an account's subscription status, keeping its usage.

        Returns:
            False if the account doesn't exist
        """
        with transaction(self.db_path) as conn:
            cursor = conn.execute("""
                UPDATE user_account SET subscription_status = ?, updated_at = ?
                WHERE id = ?
            """, (subscription_status, datetime.now().isoformat(), user_id))
            return cursor.rowcount > 0

    def apply_debit(self, user_id: str, debit: ProposedDebit) -> None:
        """Persist the state proposed by the entitlement policy."""
        if debit.is_noop:
            return
        with transaction(self.db_path) as conn:
            _update_budget(conn, user_id, debit.new_state)

    def set_credits(self, user_id: str, credits_amount: float) -> None:
        """Set balance and allocation, on subscription activation or renewal."""
        with transaction(self.db_path) as conn:
            conn.execute("""
                UPDATE user_account
                SET credits_balance = ?, credits_allocated = ?, updated_at = ?
                WHERE id = ?
            """, (credits_amount, credits_amount, datetime.now().isoformat(), user_id))

    def reset_credits(self, user_id: str, credits_amount: Optional[float] = None) -> bool:
        """Start a new billing cycle: balance back to allocated, usage to zero.

        Args:
            user_id: Account to reset
            credits_amount: New allocation, keeps the current one if omitted

        Returns:
            False if the account doesn't exist
        """
        with transaction(self.db_path) as conn:
            row = conn.execute(
                "SELECT credits_allocated FROM user_account WHERE id = ?", (user_id,)
            ).fetchone()
            if row is None:
                return False
            allocated = credits_amount if credits_amount is not None else row[0]
            conn.execute("""
                UPDATE user_account
                SET credits_balance = ?, credits_allocated = ?, credits_used = 0,
                    updated_at = ?
                WHERE id = ?
            """, (allocated, allocated, datetime.now().isoformat(), user_id))
            return True

    def reset_free_tokens(self) -> int:
        """Reset free token usage for every account without an active or trialing subscription.

        Returns:
            Number of accounts reset
        """
        with transaction(self.db_path) as conn:
            cursor = conn.execute("""
                UPDATE user_account
                SET free_tokens_used = 0, updated_at = ?
                WHERE subscription_status IS NULL
                   OR subscription_status NOT IN ('active', 'trialing')
            """, (datetime.now().isoformat(),))
            return cursor.rowcount

    # Conversations and messages

    def create_conversation(self, user_id: str, title: Optional[str] = None) -> str:
        with transaction(self.db_path) as conn:
            return _insert_conversation(conn, user_id, title)

    def get_conversation_owner(self, conversation_id: str) -> Optional[str]:
        """Return the id of the user owning a conversation, or None if it doesn't exist."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT user_id FROM conversation WHERE id = ?", (conversation_id,)
            ).fetchone()
        finally:
            conn.close()
        return row[0] if row else None

    def get_conversation_title(self, conversation_id: str) -> Optional[str]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT title FROM conversation WHERE id = ?", (conversation_id,)
            ).fetchone()
        finally:
            conn.close()
        return row[0] if row else None

    def update_conversation_title(self, conversation_id: str, title: str) -> None:
        with transaction(self.db_path) as conn:
            conn.execute(
                "UPDATE conversation SET title = ? WHERE id = ?", (title, conversation_id)
            )

    def list_conversations(self, user_id: str, limit: int = 100) -> List[Conversation]:
        """List a user's conversations, newest first."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT id, user_id, title, created_at
                FROM conversation WHERE user_id = ?
                ORDER BY created_at DESC, rowid DESC LIMIT ?
            """, (user_id, limit))
            return [
                Conversation(
                    id=row[0],
                    user_id=row[1],
                    title=row[2],
                    created_at=datetime.fromisoformat(row[3]),
                )
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()

    def delete_conversation(self, conversation_id: str, user_id: str) -> None:
        """Delete a conversation and its messages.

        Raises:
            LookupError: If the conversation doesn't exist or belongs to
                another user
        """
        with transaction(self.db_path) as conn:
            row = conn.execute(
                "SELECT 1 FROM conversation WHERE id = ? AND user_id = ?",
                (conversation_id, user_id),
            ).fetchone()
            if row is None:
                raise LookupError(CONVERSATION_NOT_FOUND)
            conn.execute("DELETE FROM message WHERE conversation_id = ?", (conversation_id,))
            conn.execute("DELETE FROM conversation WHERE id = ?", (conversation_id,))

    def save_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        model: Optional[str] = None,
        tokens_used: Optional[int] = None,
        cost_in_dollars: Optional[float] = None,
    ) -> None:
        """Append a message to a conversation."""
        with transaction(self.db_path) as conn:
            _insert_message(
                conn, conversation_id, role, content, model, tokens_used, cost_in_dollars,
            )

    def list_messages(
        self, conversation_id: str, user_id: Optional[str] = None
    ) -> List[StoredMessage]:
        """List a conversation's messages in insertion order.

        Args:
            conversation_id: Conversation to read
            user_id: When given, only return messages if this user owns the
                conversation; another user's conversation reads as empty
        """
        query = """
            SELECT m.conversation_id, m.role, m.content, m.created_at, m.model,
                   m.tokens_used, m.cost_in_dollars
            FROM message m JOIN conversation c ON c.id = m.conversation_id
            WHERE m.conversation_id = ?
        """
        params = [conversation_id]
        if user_id is not None:
            query += " AND c.user_id = ?"
            params.append(user_id)
        query += " ORDER BY m.id"

        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(query, params)
            return [
                StoredMessage(
                    conversation_id=row[0],
                    role=row[1],
                    content=row[2],
                    created_at=datetime.fromisoformat(row[3]),
                    model=row[4],
                    tokens_used=row[5],
                    cost_in_dollars=row[6],
                )
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()

    def record_chat_turn(
        self,
        debit: ProposedDebit,
        user_message: str,
        reply: str,
        usage: TokenUsageRecord,
        conversation_id: Optional[str] = None,
        title: Optional[str] = None,
    ) -> str:
        """Persist a completed chat turn in one transaction.

        Applies the debit, creates the conversation when ``conversation_id``
        is None, appends the user and assistant messages and logs usage. If
        any write fails, none of them are kept.

        Args:
            debit: Settlement proposed by the entitlement policy
            user_message: Message the user sent
            reply: Assistant reply
            usage: Usage record of the completion, carrying user and model
            conversation_id: Existing conversation to append to
            title: Title for a newly created conversation

        Returns:
            Id of the conversation the turn was written to
        """
        with transaction(self.db_path) as conn:
            if not debit.is_noop:
                _update_budget(conn, usage.user_id, debit.new_state)
            if conversation_id is None:
                conversation_id = _insert_conversation(conn, usage.user_id, title)
            _insert_message(conn, conversation_id, "user", user_message)
            _insert_message(
                conn,
                conversation_id,
                "assistant",
                reply,
                model=usage.model,
                tokens_used=usage.total_tokens,
                cost_in_dollars=usage.total_cost,
            )
            _insert_usage(conn, usage)
        return conversation_id

    # Token usage ledger

    def log_token_usage(self, record: TokenUsageRecord) -> None:
        """Insert a usage record into the append-only ledger."""
        with transaction(self.db_path) as conn:
            _insert_usage(conn, record)

    def fetch_token_usage(
        self,
        user_id: Optional[str] = None,
        model: Optional[str] = None,
        limit: int = 100,
    ) -> List[TokenUsageRecord]:
        """Fetch usage records, newest first."""
        conn = get_connection(self.db_path)
        try:
            query = """
                SELECT timestamp, user_id, model, input_tokens, output_tokens,
                       total_tokens, input_cost, output_cost, total_cost
                FROM token_usage
            """
            params = []
            conditions = []

            if user_id:
                conditions.append("user_id = ?")
                params.append(user_id)
            if model:
                conditions.append("model = ?")
                params.append(model)

            if conditions:
                query += " WHERE " + " AND ".join(conditions)

            query += " ORDER BY id DESC LIMIT ?"
            params.append(limit)

            cursor = conn.execute(query, params)
            return [
                TokenUsageRecord(
                    timestamp=datetime.fromisoformat(row[0]),
                    user_id=row[1],
                    model=row[2],
                    input_tokens=row[3],
                    output_tokens=row[4],
                    total_tokens=row[5],
                    input_cost=row[6],
                    output_cost=row[7],
                    total_cost=row[8],
                )
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()
