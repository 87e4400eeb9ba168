# schema.py
from dataclasses import dataclass, field

import pandas as pd

CAMPAIGNS = "campaigns"
EVENTS = "events"
SUBSCRIPTIONS = "subscriptions"

TABLES = {
    CAMPAIGNS: {
        "columns": ["campaign_id", "campaign_name", "description", "start_date", "end_date",
                    "budget", "target_audience", "channel", "total_cost"],
        "key": "campaign_id",
        "required": ["campaign_id", "campaign_name", "start_date", "end_date",
                     "budget", "target_audience", "channel"],
        "ids": ["campaign_id"],
        "dates": ["start_date", "end_date"],
        "numeric": ["budget", "total_cost"],
        "foreign_keys": {},
    },
    EVENTS: {
        "columns": ["event_id", "campaign_id", "subscription_id", "event_type", "event_date", "channel"],
        "key": "event_id",
        "required": ["event_id", "campaign_id", "event_type", "event_date", "channel"],
        "ids": ["event_id", "campaign_id", "subscription_id"],
        "dates": ["event_date"],
        "numeric": [],
        "foreign_keys": {"campaign_id": CAMPAIGNS, "subscription_id": SUBSCRIPTIONS},
    },
    SUBSCRIPTIONS: {
        "columns": ["subscription_id", "start_date", "end_date", "n_meals", "n_people",
                    "n_orders", "food_choice"],
        "key": "subscription_id",
        "required": ["subscription_id", "start_date", "n_meals", "n_people", "n_orders", "food_choice"],
        "ids": ["subscription_id"],
        "dates": ["start_date", "end_date"],
        "numeric": ["n_meals", "n_people", "n_orders"],
        "foreign_keys": {},
    },
}


def table_spec(table):
    try:
        return TABLES[table]
    except KeyError:
        raise KeyError(f"unknown table {table!r}") from None


def is_blank(series):
    """True where a text cell is an empty or whitespace-only string."""
    if pd.api.types.is_datetime64_any_dtype(series) or pd.api.types.is_numeric_dtype(series):
        return pd.Series(False, index=series.index)
    return series.astype("string").str.strip().eq("").fillna(False).astype(bool)


def is_missing(series):
    """True where a value is null or an empty-string sentinel."""
    return series.isna() | is_blank(series)


def sentinel_columns(table):
    """Columns where an empty string stands for an absent value (dates and foreign keys)."""
    spec = table_spec(table)
    return spec["dates"] + list(spec["foreign_keys"])


@dataclass
class Snapshot:
    """The three tables of one batch load."""
    campaigns: pd.DataFrame
    events: pd.DataFrame
    subscriptions: pd.DataFrame
    # Cells that failed type coercion at load time, as validator issues
    load_issues: list = field(default_factory=list)

    def tables(self):
        return {CAMPAIGNS: self.campaigns, EVENTS: self.events, SUBSCRIPTIONS: self.subscriptions}

    def replace(self, **frames):
        tables = self.tables()
        tables.update(frames)
        return Snapshot(**tables, load_issues=self.load_issues)
