"""Model price tables — turn token usage into money.

Prices are quoted per million tokens. ``input`` counts every prompt token,
cached ones included; cached tokens are billed at the cache-hit rate instead
of the base input rate.
"""

from __future__ import annotations

from typing import Protocol

from pydantic import BaseModel

from lyceum.logging_config import get_logger
from lyceum.models import TokenUsage

logger = get_logger(__name__)

_PER_MILLION = 1_000_000


class ModelPrice(BaseModel):
    input: float
    output: float
    cached: float | None = None

    @property
    def cached_rate(self) -> float:
        return self.cached if self.cached is not None else self.input * 0.1


class PriceTable(Protocol):
    def cost(self, model: str, usage: TokenUsage) -> float:
        ...


DEFAULT_PRICES: dict[str, ModelPrice] = {
    "claude-opus-4-6": ModelPrice(input=5, output=25),
    "claude-opus-4-5": ModelPrice(input=5, output=25),
    "claude-sonnet-4-5": ModelPrice(input=3, output=15),
    "claude-haiku-4-5": ModelPrice(input=1, output=5),
    "gpt-5": ModelPrice(input=1.25, output=10),
    "gpt-5-mini": ModelPrice(input=0.25, output=2),
    "gpt-5-nano": ModelPrice(input=0.05, output=0.4),
    "gpt-5-codex": ModelPrice(input=1.25, output=10),
    "gpt-4.1": ModelPrice(input=2, output=8, cached=0.5),
}


class StaticPriceTable:
    """Fixed per-model prices. Unknown models cost nothing and are logged once."""

    def __init__(self, prices: dict[str, ModelPrice] | None = None) -> None:
        self.prices = dict(DEFAULT_PRICES if prices is None else prices)
        self._warned: set[str] = set()

    def cost(self, model: str, usage: TokenUsage) -> float:
        price = self.prices.get(model)
        if price is None:
            if model not in self._warned:
                self._warned.add(model)
                logger.warning("unknown_model_price", model=model)
            return 0.0
        cached = min(usage.cached, usage.input)
        return (
            (usage.input - cached) * price.input
            + cached * price.cached_rate
            + usage.output * price.output
        ) / _PER_MILLION


default_price_table = StaticPriceTable()
