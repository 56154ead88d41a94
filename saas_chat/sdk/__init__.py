"""
SDK for the SaaS chat backend.

Provides the OpenRouter completion client and chat turn orchestration.
"""

from .chat_service import ChatService, ChatTurnResult
from .openrouter_client import CompletionClient, CompletionFailed, CompletionResult

__all__ = ["ChatService", "ChatTurnResult", "CompletionClient", "CompletionFailed", "CompletionResult"]
