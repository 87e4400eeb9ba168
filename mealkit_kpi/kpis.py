# kpis.py
"""Marketing KPIs over one loaded snapshot.

All functions are pure reads of the campaign / event / subscription frames.
Per-subscription KPIs count every row they are given; ``compute_all`` passes
them ``unique_subscriptions`` so a duplicated id counts once in every metric.
A metric whose denominator is zero is undefined: NaN inside result tables,
``None`` for the global scalar KPIs. It is never reported as 0.
"""
import dataclasses
import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
import pandas as pd

from mealkit_kpi import aggregator
from mealkit_kpi.config import KPIConfig
from mealkit_kpi.validator import ValidationReport, distinct_values, validate

logger = logging.getLogger(__name__)


def _rate(numerator, denominator):
    return 100.0 * numerator / denominator.replace(0, np.nan)


def _scalar(value):
    if value is None or pd.isna(value):
        return None
    return float(value)


def _divide(numerator, denominator):
    if numerator is None or denominator is None or denominator == 0:
        return None
    return _scalar(numerator / denominator)


def unique_subscriptions(subscriptions):
    """One row per subscription id, keeping the first occurrence."""
    ids = subscriptions["subscription_id"]
    dup = (ids.notna() & ids.duplicated()).astype(bool)
    if dup.any():
        logger.warning("%d duplicate subscription row(s) ignored, keeping the first occurrence", int(dup.sum()))
    return subscriptions[~dup]


def _is_churned(subscriptions):
    return subscriptions["end_date"].notna()


def churn_rate(subscriptions, categories=None):
    """Churned share of subscriptions per food choice.

    ``categories`` lists food choices that must appear even without any
    subscriptions; their rate is undefined.
    """
    df = subscriptions.assign(churned=_is_churned(subscriptions).astype(int))
    grouped = df.groupby("food_choice")
    out = pd.DataFrame({"total_subscriptions": grouped.size(), "churned": grouped["churned"].sum()})
    if categories is not None:
        out = out.reindex(sorted(set(out.index) | set(categories)), fill_value=0)
    out["churn_rate"] = _rate(out["churned"], out["total_subscriptions"])
    return out.rename_axis("food_choice").reset_index()


def retention_rate(subscriptions, years=None):
    df = subscriptions.dropna(subset=["start_date"])
    df = df.assign(start_year=df["start_date"].dt.year.astype(int), churned=_is_churned(df).astype(int))
    grouped = df.groupby("start_year")
    out = pd.DataFrame({"total_subscriptions": grouped.size(), "churned": grouped["churned"].sum()})
    if years is not None:
        out = out.reindex(sorted(set(out.index) | set(years)), fill_value=0)
    out["retained"] = out["total_subscriptions"] - out["churned"]
    out["retention_rate"] = _rate(out["retained"], out["total_subscriptions"])
    return out.rename_axis("start_year").reset_index()


def customer_acquisition_cost(campaigns, subscriptions):
    """Total campaign budget divided by the number of distinct subscriptions."""
    subscribers = subscriptions["subscription_id"].dropna().nunique()
    if subscribers == 0:
        return None
    return _scalar(campaigns["budget"].sum() / subscribers)


def weekly_revenue(subscriptions, config):
    first, second = config.revenue_columns
    return subscriptions[first] * subscriptions[second] * config.price_per_meal


def average_revenue_per_user(subscriptions, config):
    revenue = weekly_revenue(subscriptions, config).dropna()
    if revenue.empty:
        return None
    return _scalar(revenue.mean())


def lifespan_weeks(subscriptions, as_of):
    """Weeks from start to end date, or to ``as_of`` for active subscriptions.

    Active subscriptions count as alive until ``as_of``, so recent cohorts
    get a lifespan that is still growing and the average is biased upward
    for them. A subscription starting after ``as_of`` has lived 0 weeks.
    """
    end = subscriptions["end_date"].fillna(pd.Timestamp(as_of))
    return ((end - subscriptions["start_date"]).dt.days / 7.0).clip(lower=0)


def average_lifespan_weeks(subscriptions, as_of):
    weeks = lifespan_weeks(subscriptions, as_of).dropna()
    if weeks.empty:
        return None
    return _scalar(weeks.mean())


def customer_lifetime_value(subscriptions, config):
    # Product of the two means, not the mean of per-subscription products
    arpu = average_revenue_per_user(subscriptions, config)
    lifespan = average_lifespan_weeks(subscriptions, config.resolve_as_of())
    if arpu is None or lifespan is None:
        return None
    return arpu * lifespan


def clv_cac_ratio(snapshot, config):
    clv = customer_lifetime_value(snapshot.subscriptions, config)
    cac = customer_acquisition_cost(snapshot.campaigns, snapshot.subscriptions)
    return _divide(clv, cac)


def conversion_rate(events, campaigns=None, by=("channel",)):
    """Subscribes per click, as a percentage, grouped by ``by``.

    ``by`` may include ``target_audience``, which is looked up on the
    campaign of each event.
    """
    by = list(by)
    df = events.assign(event_type=events["event_type"].astype(str).str.strip().str.lower())
    if "target_audience" in by:
        if campaigns is None:
            raise ValueError("campaigns are required to group by target_audience")
        audience = campaigns.drop_duplicates("campaign_id").set_index("campaign_id")["target_audience"]
        df["target_audience"] = df["campaign_id"].map(audience)

    df["clicks"] = (df["event_type"] == "click").astype(int)
    df["subscribes"] = (df["event_type"] == "subscribe").astype(int)
    out = df.groupby(by)[["clicks", "subscribes"]].sum()
    out["conversion_rate"] = _rate(out["subscribes"], out["clicks"])
    return out.reset_index()


def subscriber_growth(subscriptions):
    """Year-over-year growth of new subscriptions by start year.

    A year whose previous calendar year has no subscriptions (including the
    first observed year) has undefined growth.
    """
    counts = subscriptions["start_date"].dropna().dt.year.astype(int).value_counts().sort_index()
    out = counts.rename("subscribers").rename_axis("start_year").reset_index()
    out["prior_subscribers"] = (out["start_year"] - 1).map(counts)
    out["growth_rate"] = _rate(out["subscribers"] - out["prior_subscribers"], out["prior_subscribers"])
    return out


def campaign_revenue(snapshot, config):
    """Lifetime revenue of the subscriptions each campaign's events reference.

    With ``config.dedupe_attribution`` a subscription counts once per
    campaign no matter how many of that campaign's events reference it.
    """
    as_of = config.resolve_as_of()
    subs = unique_subscriptions(snapshot.subscriptions).dropna(subset=["subscription_id"])
    subs = subs.set_index("subscription_id")
    value = weekly_revenue(subs, config) * lifespan_weeks(subs, as_of)

    refs = snapshot.events[["campaign_id", "subscription_id"]].dropna()
    if config.dedupe_attribution:
        refs = refs.drop_duplicates()
    refs = refs.assign(revenue=refs["subscription_id"].map(value))
    grouped = refs.groupby("campaign_id")

    out = snapshot.campaigns[["campaign_id", "campaign_name", "channel"]].drop_duplicates("campaign_id")
    out = out.assign(
        attributed_subscriptions=out["campaign_id"].map(grouped["subscription_id"].nunique()).fillna(0).astype(int),
        revenue=out["campaign_id"].map(grouped["revenue"].sum()).fillna(0.0).astype(float),
    )
    return out.sort_values("revenue", ascending=False, kind="stable", ignore_index=True)


def _one_row(record, columns=None):
    if record is None:
        return pd.DataFrame(columns=columns)
    row = {k: record.get(k) for k in columns} if columns else record
    return pd.DataFrame([row])


def categories(snapshot):
    """Observed category labels, one row per (column, value)."""
    rows = []
    for table, column in [("campaigns", "channel"), ("campaigns", "target_audience"),
                          ("events", "event_type"), ("subscriptions", "food_choice")]:
        frame = snapshot.tables()[table]
        rows += [{"column": column, "value": v} for v in distinct_values(frame, column)]
    return pd.DataFrame(rows, columns=["column", "value"])


@dataclass
class KPIReport:
    as_of: pd.Timestamp
    config: KPIConfig
    validation: ValidationReport
    summary: dict
    churn: pd.DataFrame
    retention: pd.DataFrame
    conversion_by_channel: pd.DataFrame
    conversion_by_channel_audience: pd.DataFrame
    growth: pd.DataFrame
    campaign_revenue: pd.DataFrame
    channel_summary: pd.DataFrame
    monthly_cost: pd.DataFrame
    duration_cost_correlation: Optional[float] = None
    # Exploratory views of the same snapshot
    duration_summary: pd.DataFrame = dataclasses.field(default_factory=pd.DataFrame)
    events_moving_average: pd.DataFrame = dataclasses.field(default_factory=pd.DataFrame)
    busiest_event_months: pd.DataFrame = dataclasses.field(default_factory=pd.DataFrame)
    event_type_breakdown: pd.DataFrame = dataclasses.field(default_factory=pd.DataFrame)
    top_campaign_by_subscribers: pd.DataFrame = dataclasses.field(default_factory=pd.DataFrame)
    first_campaign: pd.DataFrame = dataclasses.field(default_factory=pd.DataFrame)
    categories: pd.DataFrame = dataclasses.field(default_factory=pd.DataFrame)

    def tables(self):
        return {
            "churn": self.churn,
            "retention": self.retention,
            "conversion_by_channel": self.conversion_by_channel,
            "conversion_by_channel_audience": self.conversion_by_channel_audience,
            "growth": self.growth,
            "campaign_revenue": self.campaign_revenue,
            "channel_summary": self.channel_summary,
            "monthly_cost": self.monthly_cost,
        }

    def exploration(self):
        return {
            "duration_summary": self.duration_summary,
            "events_moving_average": self.events_moving_average,
            "busiest_event_months": self.busiest_event_months,
            "event_type_breakdown": self.event_type_breakdown,
            "top_campaign_by_subscribers": self.top_campaign_by_subscribers,
            "first_campaign": self.first_campaign,
            "categories": self.categories,
        }


def compute_all(snapshot, config=None):
    """Validate the snapshot and compute every KPI against one as-of date.

    Validation issues are reported alongside the KPIs; with
    ``config.strict`` any issue raises ``IntegrityError`` before computing.
    """
    config = config or KPIConfig()
    config = dataclasses.replace(config, as_of=config.resolve_as_of())
    as_of = config.as_of

    validation = validate(snapshot, as_of)
    if config.strict:
        validation.raise_for_violations()

    campaigns, events = snapshot.campaigns, snapshot.events
    subs = unique_subscriptions(snapshot.subscriptions)
    arpu = average_revenue_per_user(subs, config)
    lifespan = average_lifespan_weeks(subs, as_of)
    clv = arpu * lifespan if arpu is not None and lifespan is not None else None
    cac = customer_acquisition_cost(campaigns, subs)
    summary = {
        "subscriptions": int(subs["subscription_id"].dropna().nunique()),
        "cac": cac,
        "arpu": arpu,
        "average_lifespan_weeks": lifespan,
        "clv": clv,
        "clv_cac_ratio": _divide(clv, cac),
    }
    logger.info("computed KPIs as of %s: %s", as_of.date(), summary)

    return KPIReport(
        as_of=as_of,
        config=config,
        validation=validation,
        summary=summary,
        churn=churn_rate(subs),
        retention=retention_rate(subs),
        conversion_by_channel=conversion_rate(events),
        conversion_by_channel_audience=conversion_rate(events, campaigns, by=("channel", "target_audience")),
        growth=subscriber_growth(subs),
        campaign_revenue=campaign_revenue(snapshot, config),
        channel_summary=aggregator.channel_summary(campaigns, events),
        monthly_cost=aggregator.monthly_cost_trend(campaigns),
        duration_cost_correlation=_scalar(aggregator.duration_cost_correlation(campaigns)),
        duration_summary=_one_row(aggregator.duration_summary(campaigns)),
        events_moving_average=aggregator.events_moving_average(events),
        busiest_event_months=aggregator.busiest_event_months(events),
        event_type_breakdown=_one_row(aggregator.event_type_breakdown(events, campaigns)),
        top_campaign_by_subscribers=_one_row(aggregator.top_campaign_by_subscribers(events),
                                             ["campaign_id", "total_subscribers"]),
        first_campaign=_one_row(aggregator.first_campaign(campaigns),
                                ["campaign_id", "campaign_name", "start_date", "channel"]),
        categories=categories(snapshot),
    )
