from dataclasses import dataclass
from typing import Dict, Tuple


@dataclass(frozen=True)
class ModelPrice:
    """USD per million tokens."""

    input: float
    output: float


def estimate_cost(input_tokens: int, output_tokens: int, price: ModelPrice) -> float:
    return (input_tokens / 1_000_000) * price.input + (output_tokens / 1_000_000) * price.output


class PriceTable:
    """Per-model prices with a default tier for models it does not know.

    Lookup tries the exact model name, then the longest known prefix (so dated
    snapshots such as ``gpt-4o-mini-2024-07-18`` price like ``gpt-4o-mini``),
    then the default model.
    """

    def __init__(self, prices: Dict[str, ModelPrice], default_model: str):
        if default_model not in prices:
            raise ValueError(f"default model {default_model!r} has no price")
        self.prices = dict(prices)
        self.default_model = default_model

    @classmethod
    def from_pairs(cls, prices: Dict[str, Tuple[float, float]], default_model: str) -> "PriceTable":
        return cls({model: ModelPrice(*pair) for model, pair in prices.items()}, default_model)

    def lookup(self, model: str) -> ModelPrice:
        if model in self.prices:
            return self.prices[model]
        prefixes = [known for known in self.prices if model.startswith(known)]
        if prefixes:
            return self.prices[max(prefixes, key=len)]
        return self.prices[self.default_model]


ANTHROPIC_PRICES = PriceTable.from_pairs(
    {
        "claude-3-5-sonnet-20240620": (3.0, 15.0),
        "claude-3-5-sonnet-20241022": (3.0, 15.0),
        "claude-3-5-haiku-20241022": (0.8, 4.0),
        "claude-3-haiku-20240307": (0.25, 1.25),
        "claude-3-opus-20240229": (15.0, 75.0),
    },
    default_model="claude-3-5-sonnet-20240620",
)

OPENAI_PRICES = PriceTable.from_pairs(
    {
        "gpt-3.5-turbo": (0.5, 1.5),
        "gpt-4o": (2.5, 10.0),
        "gpt-4o-mini": (0.15, 0.6),
        "gpt-4-turbo": (10.0, 30.0),
    },
    default_model="gpt-4o",
)
