"""
Configuration management and loading.

Loads the model catalog and application settings from YAML files and
environment variables.
"""

import os
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ..core.catalog import AIModel, ModelCatalog, ModelTier

DEFAULT_MODELS_PATH = Path(__file__).with_name("models.yaml")

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."
DEFAULT_FREE_TOKENS_LIMIT = 1_000_000


@dataclass(frozen=True)
class ProviderSettings:
    """Completion provider connection settings."""
    api_key: Optional[str] = None
    base_url: str = DEFAULT_BASE_URL
    app_url: str = "http://localhost:3000"
    app_title: str = "SaaS Chat"
    timeout_seconds: float = 60.0

    def __post_init__(self):
        """Validate timeout is positive."""
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")


@dataclass(frozen=True)
class ChatSettings:
    """Chat behaviour settings."""
    default_temperature: float = 0.7
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    free_tokens_limit: int = DEFAULT_FREE_TOKENS_LIMIT

    def __post_init__(self):
        """Validate chat values."""
        if not 0 <= self.default_temperature <= 2:
            raise ValueError("default_temperature must be between 0 and 2")
        if not self.system_prompt or not self.system_prompt.strip():
            raise ValueError("system_prompt cannot be empty")
        if self.free_tokens_limit <= 0:
            raise ValueError("free_tokens_limit must be > 0")


@dataclass(frozen=True)
class Settings:
    """Complete application settings."""
    provider: ProviderSettings = field(default_factory=ProviderSettings)
    chat: ChatSettings = field(default_factory=ChatSettings)
    db_path: str = "saas_chat.db"


def load_model_catalog(path: Optional[str] = None) -> ModelCatalog:
    """Load and validate the model catalog from a YAML file.

    Args:
        path: Path to a models YAML file, defaults to the bundled catalog

    Returns:
        Validated ModelCatalog

    Raises:
        FileNotFoundError: If the file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If the catalog is invalid
    """
    raw = _read_yaml(Path(path) if path else DEFAULT_MODELS_PATH)
    if not raw:
        raise ValueError("Model catalog file is empty")
    if not isinstance(raw, dict):
        raise ValueError("Model catalog must be a dictionary")

    unknown_keys = set(raw.keys()) - {'models'}
    if unknown_keys:
        raise ValueError(f"Unknown catalog keys: {unknown_keys}")

    models_data = raw.get('models')
    if not isinstance(models_data, list) or not models_data:
        raise ValueError("'models' must be a non-empty list")

    models = []
    for index, model_data in enumerate(models_data):
        if not isinstance(model_data, dict):
            raise ValueError(f"models[{index}] must be a dictionary")
        models.append(_parse_model(model_data, f"models[{index}]"))

    return ModelCatalog(models)


def _parse_model(data: Dict[str, Any], path: str) -> AIModel:
    """Parse and validate a single catalog entry."""
    required_keys = {'id', 'name', 'max_tokens', 'type', 'category'}
    allowed_keys = required_keys | {'input_price', 'output_price'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    missing = required_keys - set(data.keys())
    if missing:
        raise ValueError(f"Missing required keys in {path}: {sorted(missing)}")

    max_tokens = data['max_tokens']
    if not isinstance(max_tokens, int) or isinstance(max_tokens, bool) or max_tokens <= 0:
        raise ValueError(f"'max_tokens' in {path} must be a positive integer")

    try:
        tier = ModelTier(str(data['type']).lower())
    except ValueError:
        valid = [t.value for t in ModelTier]
        raise ValueError(f"'type' in {path} must be one of: {valid}")

    return AIModel(
        id=str(data['id']),
        name=str(data['name']),
        max_tokens=max_tokens,
        tier=tier,
        category=str(data['category']),
        input_price=_parse_price(data.get('input_price'), f"{path}.input_price"),
        output_price=_parse_price(data.get('output_price'), f"{path}.output_price"),
    )


def _parse_price(value: Any, path: str) -> Optional[Decimal]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"'{path}' must be a number")
    try:
        price = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"'{path}' must be a number")
    if price < 0:
        raise ValueError(f"'{path}' must be >= 0")
    return price


def load_settings(path: Optional[str] = None) -> Settings:
    """Load settings from an optional YAML file and the environment.

    Environment variables take precedence over the file:
    OPENROUTER_API_KEY, AI_TEMPERATURE, SAAS_CHAT_APP_URL, SAAS_CHAT_DB_PATH.

    Raises:
        FileNotFoundError: If an explicit path doesn't exist
        ValueError: If configuration is invalid
    """
    raw: Dict[str, Any] = {}
    if path:
        raw = _read_yaml(Path(path)) or {}
    if not isinstance(raw, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {'provider', 'chat', 'storage'}
    unknown_keys = set(raw.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    provider_data = _section(raw, 'provider', {'base_url', 'app_url', 'app_title', 'timeout_seconds'})
    chat_data = _section(raw, 'chat', {'default_temperature', 'system_prompt', 'free_tokens_limit'})
    storage_data = _section(raw, 'storage', {'db_path'})

    provider = ProviderSettings(**provider_data)
    chat = ChatSettings(**chat_data)
    settings = Settings(provider=provider, chat=chat, **storage_data)

    return _apply_env(settings)


def _section(raw: Dict[str, Any], name: str, allowed_keys: set) -> Dict[str, Any]:
    data = raw.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown {name} keys: {unknown_keys}")
    return data


def _apply_env(settings: Settings) -> Settings:
    provider = settings.provider
    chat = settings.chat

    api_key = os.environ.get("OPENROUTER_API_KEY")
    if api_key:
        provider = replace(provider, api_key=api_key)
    app_url = os.environ.get("SAAS_CHAT_APP_URL")
    if app_url:
        provider = replace(provider, app_url=app_url)

    temperature = os.environ.get("AI_TEMPERATURE")
    if temperature:
        try:
            chat = replace(chat, default_temperature=float(temperature))
        except ValueError:
            raise ValueError(f"AI_TEMPERATURE must be a number, got {temperature!r}")

    db_path = os.environ.get("SAAS_CHAT_DB_PATH") or settings.db_path
    return Settings(provider=provider, chat=chat, db_path=db_path)


def _read_yaml(config_path: Path) -> Any:
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            return yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {config_path}: {e}")
