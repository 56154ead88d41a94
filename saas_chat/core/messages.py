"""
Chat message types and input validation.

Defines the message shape shared by every component of the chat core.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Union

VALID_ROLES = ("system", "user", "assistant")

# Upper bound for a single message typed by a user
MAX_USER_MESSAGE_LENGTH = 2000


class ChatValidationError(ValueError):
    """Raised when chat input is malformed or oversized."""


@dataclass(frozen=True)
class Message:
    """A single chat message."""
    role: str
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Message":
        """Build a message from a ``{"role", "content"}`` mapping.

        Raises:
            ChatValidationError: If the mapping is not a valid message
        """
        if not isinstance(data, Mapping):
            raise ChatValidationError("Each message must be an object with role and content")
        role = data.get("role")
        content = data.get("content")
        if role not in VALID_ROLES:
            raise ChatValidationError(f"Invalid message role: {role!r}")
        if not isinstance(content, str):
            raise ChatValidationError("Message content must be a string")
        return cls(role=role, content=content)


MessageLike = Union[Message, Mapping[str, Any]]


def validate_conversation(messages: Iterable[MessageLike]) -> List[Message]:
    """Validate and normalize a conversation.

    Args:
        messages: Messages as ``Message`` objects or role/content mappings

    Returns:
        List of validated messages in their original order

    Raises:
        ChatValidationError: If any message is malformed
    """
    if messages is None:
        raise ChatValidationError("messages is required and cannot be empty")

    conversation = []
    for message in messages:
        if isinstance(message, Message):
            if message.role not in VALID_ROLES:
                raise ChatValidationError(f"Invalid message role: {message.role!r}")
            if not isinstance(message.content, str):
                raise ChatValidationError("Message content must be a string")
            conversation.append(message)
        else:
            conversation.append(Message.from_dict(message))
    return conversation


def validate_user_message(text: str) -> str:
    """Validate a new message typed by the user."""
    if not isinstance(text, str) or not text.strip():
        raise ChatValidationError("Message cannot be empty")
    if len(text) > MAX_USER_MESSAGE_LENGTH:
        raise ChatValidationError("Message too long")
    return text
