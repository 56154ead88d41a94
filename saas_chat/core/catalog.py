"""
Model catalog.

Read-only registry of the AI models offered to users, tagged free or paid.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Dict, Iterable, Mapping, Optional, Tuple


class ModelTier(Enum):
    """Billing tier of a model."""
    FREE = "free"
    PAID = "paid"


@dataclass(frozen=True)
class AIModel:
    """A model offered through the completion provider.

    Prices are per million tokens and only set for paid models.
    """
    id: str
    name: str
    max_tokens: int  # Context window
    tier: ModelTier
    category: str
    input_price: Optional[Decimal] = None
    output_price: Optional[Decimal] = None

    def __post_init__(self):
        """Validate window size and the price invariant."""
        if not self.id:
            raise ValueError("model id is required")
        if self.max_tokens <= 0:
            raise ValueError(f"max_tokens must be > 0 for model {self.id}")
        has_prices = self.input_price is not None and self.output_price is not None
        if self.tier == ModelTier.PAID and not has_prices:
            raise ValueError(f"Paid model {self.id} requires input_price and output_price")
        if self.tier == ModelTier.FREE and (
                self.input_price is not None or self.output_price is not None):
            raise ValueError(f"Free model {self.id} cannot have prices")

    @property
    def is_free(self) -> bool:
        return self.tier == ModelTier.FREE


class ModelCatalog:
    """Immutable, ordered collection of models."""

    def __init__(self, models: Iterable[AIModel]):
        self._models: Tuple[AIModel, ...] = tuple(models)
        by_id: Dict[str, AIModel] = {}
        for model in self._models:
            if model.id in by_id:
                raise ValueError(f"Duplicate model id: {model.id}")
            by_id[model.id] = model
        self._by_id = MappingProxyType(by_id)

    def __iter__(self):
        return iter(self._models)

    def __len__(self) -> int:
        return len(self._models)

    def __contains__(self, model_id: str) -> bool:
        return model_id in self._by_id

    @property
    def models(self) -> Tuple[AIModel, ...]:
        return self._models

    def get_by_id(self, model_id: str) -> Optional[AIModel]:
        """Get a model by id, or None if it is not in the catalog."""
        return self._by_id.get(model_id)

    def is_free(self, model_id: str) -> bool:
        """Check if a model is free. Unknown models are not free."""
        model = self.get_by_id(model_id)
        return model is not None and model.is_free

    def list_free(self) -> Tuple[AIModel, ...]:
        return tuple(m for m in self._models if m.tier == ModelTier.FREE)

    def list_paid(self) -> Tuple[AIModel, ...]:
        return tuple(m for m in self._models if m.tier == ModelTier.PAID)

    def get_default(self) -> AIModel:
        """Get the default model: the first free model, else the first model.

        Raises:
            ValueError: If the catalog is empty
        """
        if not self._models:
            raise ValueError("Model catalog is empty")
        free = self.list_free()
        return free[0] if free else self._models[0]

    def by_category(self) -> Mapping[str, Tuple[AIModel, ...]]:
        """Group models by category, keeping catalog order."""
        groups: Dict[str, list] = {}
        for model in self._models:
            groups.setdefault(model.category, []).append(model)
        return MappingProxyType({k: tuple(v) for k, v in groups.items()})
