# config.py
import math
import os
from dataclasses import dataclass
from typing import Optional

import pandas as pd

DATA_DIR = os.environ.get("MEALKIT_DATA_DIR", "data")
DB_PATH = os.environ.get("MEALKIT_DB_PATH", "db/mealkit_delivery.db")

# Price of a single meal in the dataset's currency unit
DEFAULT_PRICE_PER_MEAL = 6.0

# Weekly revenue per subscription: n_people * n_meals is the per-week box,
# n_orders * n_meals is the order-based variant.
REVENUE_MODELS = {
    "people_meals": ("n_people", "n_meals"),
    "orders_meals": ("n_orders", "n_meals"),
}
DEFAULT_REVENUE_MODEL = "people_meals"


class ConfigError(ValueError):
    pass


def _check_price(value):
    if value is None:
        raise ConfigError("price_per_meal is required")
    try:
        price = float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"price_per_meal must be a number, got {value!r}") from None
    if math.isnan(price) or price <= 0:
        raise ConfigError(f"price_per_meal must be positive, got {value!r}")
    return price


def _check_as_of(value):
    try:
        as_of = pd.Timestamp(value)
    except (TypeError, ValueError):
        raise ConfigError(f"as_of must be a date (YYYY-MM-DD), got {value!r}") from None
    if pd.isna(as_of):
        raise ConfigError(f"as_of must be a date (YYYY-MM-DD), got {value!r}")
    return as_of


@dataclass(frozen=True)
class KPIConfig:
    price_per_meal: float = DEFAULT_PRICE_PER_MEAL
    revenue_model: str = DEFAULT_REVENUE_MODEL
    as_of: Optional[pd.Timestamp] = None
    dedupe_attribution: bool = True
    strict: bool = False

    def __post_init__(self):
        object.__setattr__(self, "price_per_meal", _check_price(self.price_per_meal))
        if self.revenue_model not in REVENUE_MODELS:
            raise ConfigError(
                f"unknown revenue model {self.revenue_model!r}, expected one of {sorted(REVENUE_MODELS)}"
            )
        if self.as_of is not None:
            object.__setattr__(self, "as_of", _check_as_of(self.as_of))

    @property
    def revenue_columns(self):
        return REVENUE_MODELS[self.revenue_model]

    def resolve_as_of(self):
        """Return the as-of date, falling back to today's date."""
        if self.as_of is not None:
            return self.as_of
        return pd.Timestamp.today().normalize()

    @classmethod
    def from_env(cls, **overrides):
        params = {
            "price_per_meal": os.environ.get("MEALKIT_PRICE_PER_MEAL", DEFAULT_PRICE_PER_MEAL),
            "revenue_model": os.environ.get("MEALKIT_REVENUE_MODEL", DEFAULT_REVENUE_MODEL),
        }
        params.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**params)
