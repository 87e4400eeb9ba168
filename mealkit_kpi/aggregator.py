# aggregator.py
import numpy as np
import pandas as pd

# Variance below this fraction of E[X^2] is floating-point noise and clamps to 0
VARIANCE_EPSILON = 1e-12


def _population_std(mean, mean_sq):
    variance = mean_sq - mean * mean
    noise = VARIANCE_EPSILON * np.abs(mean_sq)
    return np.sqrt(np.where(variance <= noise, 0.0, variance))


def population_std(values):
    """Population standard deviation computed as sqrt(E[X^2] - E[X]^2)."""
    values = pd.Series(values, dtype=float).dropna()
    if values.empty:
        return np.nan
    return float(_population_std(values.mean(), (values * values).mean()))


def campaign_durations(campaigns):
    return (campaigns["end_date"] - campaigns["start_date"]).dt.days.astype(float)


def events_per_campaign(events):
    return events.groupby("campaign_id").size().rename("event_count")


def _summarize(grouped, column, prefix):
    stats = grouped[column].agg(["mean", "min", "max"])
    mean_sq = grouped["_sq_" + column].mean()
    stats["std"] = pd.Series(_population_std(stats["mean"].to_numpy(), mean_sq.to_numpy()),
                             index=stats.index).round(2)
    return stats.rename(columns={s: f"{s}_{prefix}" for s in stats.columns})


def channel_summary(campaigns, events):
    df = campaigns.copy()
    df["event_count"] = df["campaign_id"].map(events_per_campaign(events)).astype(float)
    df["duration"] = campaign_durations(df)
    for col in ["total_cost", "event_count", "duration"]:
        df["_sq_" + col] = df[col] * df[col]
    df["_within"] = (df["total_cost"] <= df["budget"]).astype(int)
    df["_over"] = (df["total_cost"] > df["budget"]).astype(int)

    grouped = df.groupby("channel")
    summary = pd.concat([
        grouped.size().rename("total_campaigns"),
        _summarize(grouped, "total_cost", "cost"),
        _summarize(grouped, "event_count", "events"),
        _summarize(grouped, "duration", "duration"),
        grouped["_within"].sum().rename("n_within_budget"),
        grouped["_over"].sum().rename("n_over_budget"),
    ], axis=1)

    summary["avg_cost"] = summary["mean_cost"].round(0)
    summary["pct_within_budget"] = (100.0 * summary["n_within_budget"] / summary["total_campaigns"]).round(2)
    summary["pct_over_budget"] = (100.0 * summary["n_over_budget"] / summary["total_campaigns"]).round(2)
    summary = summary.rename(columns={
        "mean_events": "avg_events",
        "mean_duration": "avg_duration",
    })
    columns = [
        "total_campaigns",
        "avg_cost", "min_cost", "max_cost", "std_cost",
        "avg_events", "min_events", "max_events", "std_events",
        "avg_duration", "min_duration", "max_duration", "std_duration",
        "n_within_budget", "n_over_budget", "pct_within_budget", "pct_over_budget",
    ]
    return summary[columns].reset_index()


def duration_summary(campaigns):
    durations = campaign_durations(campaigns).dropna()
    return {
        "total_campaigns": len(campaigns),
        "avg_duration": durations.mean() if len(durations) else np.nan,
        "min_duration": durations.min() if len(durations) else np.nan,
        "max_duration": durations.max() if len(durations) else np.nan,
        "std_duration": round(population_std(durations), 2),
    }


def duration_cost_correlation(campaigns):
    """Pearson correlation of campaign duration and total cost over all campaigns."""
    df = pd.DataFrame({"duration": campaign_durations(campaigns), "cost": campaigns["total_cost"]}).dropna()
    if df.empty:
        return np.nan
    d = df["duration"] - df["duration"].mean()
    c = df["cost"] - df["cost"].mean()
    covariance = (d * c).sum()
    variance_duration = (d * d).sum()
    variance_cost = (c * c).sum()
    if variance_duration == 0 or variance_cost == 0:
        return np.nan
    return round(float(covariance / (np.sqrt(variance_duration) * np.sqrt(variance_cost))), 2)


def monthly_cost_trend(campaigns):
    df = campaigns.dropna(subset=["start_date"])
    trend = (df.groupby(df["start_date"].dt.strftime("%Y-%m"))["total_cost"].sum(min_count=1)
             .rename("total_cost").rename_axis("month").reset_index())
    return trend.sort_values("month", ignore_index=True)


def events_moving_average(events, window=3):
    counts = events_per_campaign(events).rename("total_events")
    counts = counts.sort_index(key=_id_sort_key).reset_index()
    counts["moving_avg"] = counts["total_events"].rolling(window, min_periods=1).mean().round(2)
    return counts


def _id_sort_key(ids):
    # Numeric ids sort numerically, anything else falls back to text order
    numeric = pd.to_numeric(ids, errors="coerce")
    if numeric.notna().all():
        return numeric
    return ids.astype(str)


def event_type_breakdown(events, campaigns, campaign_id=None):
    """Per-type event counts for one campaign, by default the one with the most events."""
    counts = events_per_campaign(events)
    if counts.empty:
        return None
    if campaign_id is None:
        campaign_id = counts.idxmax()
    subset = events[(events["campaign_id"] == campaign_id).fillna(False).astype(bool)]
    types = subset["event_type"].astype(str).str.strip().str.lower().value_counts()

    names = campaigns.drop_duplicates("campaign_id").set_index("campaign_id")["campaign_name"]
    row = {
        "campaign_id": campaign_id,
        "campaign_name": names.get(campaign_id),
        "total_events": int(counts.get(campaign_id, 0)),
    }
    row.update({f"n_{t}": int(n) for t, n in types.sort_index().items()})
    return row


def top_campaign_by_subscribers(events):
    refs = events.dropna(subset=["subscription_id"])
    if refs.empty:
        return None
    distinct = refs.groupby("campaign_id")["subscription_id"].nunique()
    if distinct.empty:
        return None
    return {"campaign_id": distinct.idxmax(), "total_subscribers": int(distinct.max())}


def busiest_event_months(events, n=3):
    months = events["event_date"].dropna().dt.strftime("%m")
    return (months.value_counts().rename("total_events").rename_axis("month")
            .reset_index().head(n))


def first_campaign(campaigns):
    ordered = campaigns.dropna(subset=["start_date"]).sort_values("start_date", kind="stable")
    if ordered.empty:
        return None
    return ordered.iloc[0].to_dict()
