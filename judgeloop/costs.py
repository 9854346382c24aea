"""Usage accounting and cost estimation."""

import threading
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

import config

from .schemas import CostTotals


class PriceTable(BaseModel):
    """Versioned unit prices in USD."""

    model_config = ConfigDict(frozen=True)

    version: str = config.PRICE_TABLE_VERSION
    per_1k_llm_tokens: float = Field(default=config.PRICE_PER_1K_LLM_TOKENS, ge=0.0)
    per_image: float = Field(default=config.PRICE_PER_IMAGE, ge=0.0)
    per_1k_embedding_tokens: float = Field(
        default=config.PRICE_PER_1K_EMBEDDING_TOKENS, ge=0.0
    )

    @classmethod
    def from_config(cls) -> "PriceTable":
        return cls(
            version=config.PRICE_TABLE_VERSION,
            per_1k_llm_tokens=config.PRICE_PER_1K_LLM_TOKENS,
            per_image=config.PRICE_PER_IMAGE,
            per_1k_embedding_tokens=config.PRICE_PER_1K_EMBEDDING_TOKENS,
        )


def estimated_cost(totals: CostTotals, prices: PriceTable) -> float:
    """Estimated spend in USD for ``totals`` under ``prices``."""
    return (
        totals.llm_tokens / 1000 * prices.per_1k_llm_tokens
        + totals.image_generations * prices.per_image
        + totals.embedding_tokens / 1000 * prices.per_1k_embedding_tokens
    )


def estimate_tokens(text: str) -> int:
    """Rough token count (4 characters per token) for clients that report none."""
    return max(1, len(text) // 4) if text else 0


class CostAccumulator:
    """Strictly additive running totals for one request.

    Safe to update from the judge worker threads.
    """

    def __init__(
        self,
        prices: Optional[PriceTable] = None,
        totals: Optional[CostTotals] = None,
    ):
        self.prices = prices or PriceTable.from_config()
        self._totals = totals.model_copy() if totals else CostTotals()
        self._lock = threading.Lock()

    def add(
        self,
        llm_tokens: int = 0,
        image_generations: int = 0,
        embedding_tokens: int = 0,
    ) -> CostTotals:
        if min(llm_tokens, image_generations, embedding_tokens) < 0:
            raise ValueError("Usage increments must be non-negative")
        with self._lock:
            self._totals = CostTotals(
                llm_tokens=self._totals.llm_tokens + llm_tokens,
                image_generations=self._totals.image_generations + image_generations,
                embedding_tokens=self._totals.embedding_tokens + embedding_tokens,
            )
            return self._totals

    @property
    def totals(self) -> CostTotals:
        with self._lock:
            return self._totals.model_copy()

    @property
    def total_estimated_cost(self) -> float:
        return estimated_cost(self.totals, self.prices)

    def summary(self) -> dict:
        totals = self.totals
        return {
            **totals.model_dump(),
            "total_estimated_cost": round(estimated_cost(totals, self.prices), 6),
            "price_table_version": self.prices.version,
        }
