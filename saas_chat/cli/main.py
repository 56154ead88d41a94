"""
CLI interface for the SaaS chat backend.

Provides command-line access to the model catalog, token counting,
account budgets, conversations and chat turns.
"""

import json
import logging
import sys
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from saas_chat.config.loader import load_model_catalog, load_settings
from saas_chat.core.context_manager import TOKEN_THRESHOLD_PERCENTAGE
from saas_chat.core.entitlements import EntitlementDenied
from saas_chat.core.messages import ChatValidationError, validate_conversation
from saas_chat.core.token_counter import TokenCounter
from saas_chat.sdk.chat_service import ChatService
from saas_chat.sdk.openrouter_client import DEFAULT_MODEL_MAX_TOKENS, CompletionClient, CompletionFailed
from saas_chat.storage.repository import CONVERSATION_NOT_FOUND, ChatRepository, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

_state = {"config": None}


def _settings():
    return load_settings(_state["config"])


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to settings YAML"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """SaaS chat backend CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _state["config"] = config
    if ctx.invoked_subcommand is None:
        console.print("SaaS Chat - Use --help to see available commands")


@app.command()
def init():
    """Initialize the chat database."""
    try:
        initialize_schema(_settings().db_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def models(
    free: bool = typer.Option(False, "--free", help="Only list free models"),
    paid: bool = typer.Option(False, "--paid", help="Only list paid models"),
):
    """List the models in the catalog."""
    catalog = load_model_catalog()
    if free and not paid:
        selected = catalog.list_free()
    elif paid and not free:
        selected = catalog.list_paid()
    else:
        selected = catalog.models

    default_id = catalog.get_default().id
    table = Table(title="AI Models")
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Category")
    table.add_column("Context", justify="right")
    table.add_column("Input $/M", justify="right")
    table.add_column("Output $/M", justify="right")

    for model in selected:
        name = f"{model.name} (default)" if model.id == default_id else model.name
        table.add_row(
            model.id,
            name,
            model.category,
            f"{model.max_tokens:,}",
            "free" if model.is_free else f"{model.input_price}",
            "free" if model.is_free else f"{model.output_price}",
        )
    console.print(table)


@app.command()
def count(
    path: str = typer.Argument(..., help="JSON file with a list of {role, content} messages"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model to check the context window against"),
):
    """Count tokens in a conversation and check it against a model's window."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            messages = validate_conversation(json.load(f))
    except (OSError, json.JSONDecodeError, ChatValidationError, TypeError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    tokens = TokenCounter().count(messages)
    console.print(f"Messages: {len(messages)}")
    console.print(f"Tokens: {tokens:,}")

    if model:
        catalog = load_model_catalog()
        entry = catalog.get_by_id(model)
        max_tokens = entry.max_tokens if entry else DEFAULT_MODEL_MAX_TOKENS
        threshold = max_tokens * TOKEN_THRESHOLD_PERCENTAGE
        console.print(f"Context window: {max_tokens:,} (threshold {threshold:,.0f})")
        if tokens >= threshold:
            console.print("[yellow]Conversation will be compressed[/]")
        else:
            console.print("[green]✓[/] Conversation fits without compression")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def account(user_id: str = typer.Argument(..., help="Account id")):
    """Show an account's budget."""
    repository = ChatRepository(_settings().db_path)
    state = repository.get_budget_state(user_id)
    if state is None:
        console.print(f"[red]Unknown user:[/] {user_id}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"\n[bold]Account:[/bold] {user_id}")
    status = repository.get_subscription_status(user_id)
    console.print(f"Tier: {state.tier.value} (status: {status or 'none'})")
    console.print(f"Credits balance: {_format_currency(state.credits_balance)}")
    console.print(f"Credits used: {_format_currency(state.credits_used)} of {_format_currency(state.credits_allocated)}")
    console.print(f"Free tokens: {state.free_tokens_used:,} / {state.free_tokens_limit:,}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def grant(
    user_id: str = typer.Argument(..., help="Account id"),
    status: Optional[str] = typer.Option(None, "--status", "-s", help="Subscription status (active, trialing, ...)"),
    credits: Optional[float] = typer.Option(None, "--credits", help="Credits allocated for the billing period"),
):
    """Create an account or change its subscription status and credits.

    Usage counters of an existing account are kept.
    """
    settings = _settings()
    repository = ChatRepository(settings.db_path)
    if repository.get_budget_state(user_id) is None:
        repository.upsert_account(
            user_id,
            subscription_status=status,
            free_tokens_limit=settings.chat.free_tokens_limit,
        )
    elif status is not None:
        repository.set_subscription_status(user_id, status)
    if credits is not None:
        repository.set_credits(user_id, credits)
    console.print(f"[green]✓[/] Account {user_id} saved")
    sys.exit(EXIT_CODE_PASS)


@app.command("reset-free-tokens")
def reset_free_tokens():
    """Reset free token usage for accounts without a subscription."""
    count_reset = ChatRepository(_settings().db_path).reset_free_tokens()
    console.print(f"[green]✓[/] Reset free tokens for {count_reset} free tier users")
    sys.exit(EXIT_CODE_PASS)


@app.command("reset-credits")
def reset_credits(
    user_id: str = typer.Argument(..., help="Account id"),
    amount: Optional[float] = typer.Option(None, "--amount", "-a", help="New credit allocation"),
):
    """Start a new billing cycle for an account's credits."""
    if not ChatRepository(_settings().db_path).reset_credits(user_id, amount):
        console.print(f"[red]Unknown user:[/] {user_id}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Credits reset for {user_id}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def conversations(user_id: str = typer.Argument(..., help="Account id")):
    """List a user's conversations, newest first."""
    items = ChatRepository(_settings().db_path).list_conversations(user_id)
    if not items:
        console.print(f"No conversations for {user_id}")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title=f"Conversations for {user_id}")
    table.add_column("ID")
    table.add_column("Title")
    table.add_column("Created")
    for item in items:
        table.add_row(item.id, item.title or "", item.created_at.strftime("%Y-%m-%d %H:%M"))
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command("delete-conversation")
def delete_conversation(
    user_id: str = typer.Argument(..., help="Account id"),
    conversation_id: str = typer.Argument(..., help="Conversation to delete"),
):
    """Delete one of a user's conversations with its messages."""
    try:
        ChatRepository(_settings().db_path).delete_conversation(conversation_id, user_id)
    except LookupError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Conversation {conversation_id} deleted")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def chat(
    user_id: str = typer.Argument(..., help="Account id"),
    message: str = typer.Argument(..., help="Message to send"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model id"),
    conversation: Optional[str] = typer.Option(None, "--conversation", help="Existing conversation id"),
):
    """Send a chat message as a user."""
    settings = _settings()
    catalog = load_model_catalog()
    repository = ChatRepository(settings.db_path)

    history = []
    if conversation:
        if repository.get_conversation_owner(conversation) != user_id:
            console.print(f"[red]Error:[/] {CONVERSATION_NOT_FOUND}")
            sys.exit(EXIT_CODE_FAIL)
        history = [
            {"role": m.role, "content": m.content}
            for m in repository.list_messages(conversation, user_id=user_id)
        ]

    try:
        client = CompletionClient(
            settings.provider,
            catalog=catalog,
            default_temperature=settings.chat.default_temperature,
        )
        service = ChatService(settings, catalog, repository, client)
        result = service.send_message(
            user_id,
            message,
            conversation_id=conversation,
            model_id=model,
            history=history,
        )
    except (ChatValidationError, LookupError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    except EntitlementDenied as e:
        console.print(f"[yellow]{e.reason}[/]")
        sys.exit(EXIT_CODE_FAIL)
    except CompletionFailed:
        console.print("[red]Failed to send message. Please try again.[/]")
        sys.exit(EXIT_CODE_FAIL)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(result.message)
    console.print(
        f"\n[dim]{result.model} | {result.usage.total_tokens} tokens | "
        f"{_format_currency(result.usage.total_cost)} | conversation {result.conversation_id}[/]"
    )
    if result.was_summarized:
        console.print(f"[dim]Earlier messages summarized ({result.tokens_reduced} tokens saved)[/]")
    sys.exit(EXIT_CODE_PASS)


def _format_currency(amount: float) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${amount:,.4f}" if 0 < abs(amount) < 0.01 else f"${amount:,.2f}"


if __name__ == "__main__":
    app()
