# report.py
import argparse
import logging
import os

import pandas as pd

from mealkit_kpi.config import DB_PATH, ConfigError, KPIConfig, REVENUE_MODELS
from mealkit_kpi.etl import SnapshotNotLoaded, get_engine, load_snapshot, prepare, read_raw
from mealkit_kpi.kpis import compute_all
from mealkit_kpi.validator import IntegrityError

logger = logging.getLogger(__name__)

NOT_APPLICABLE = "N/A"

RATE_COLUMNS = ["churn_rate", "retention_rate", "conversion_rate", "growth_rate"]
MONEY_COLUMNS = ["revenue"]


def format_revenue(value):
    if value is None or pd.isna(value):
        return NOT_APPLICABLE
    if value >= 1000:
        return f"{value / 1000:.1f}k"
    return f"{value:.2f}"


def format_metric(value, suffix=""):
    if value is None or pd.isna(value):
        return NOT_APPLICABLE
    return f"{value:.2f}{suffix}"


def format_table(df):
    df = df.copy()
    for col in df.columns:
        if col in MONEY_COLUMNS:
            df[col] = df[col].map(format_revenue)
        elif col in RATE_COLUMNS:
            df[col] = df[col].map(lambda v: format_metric(v, "%"))
        elif pd.api.types.is_float_dtype(df[col]):
            df[col] = df[col].map(format_metric)
    return df


def _section(name, table):
    lines = ["", name.replace("_", " ").title(), "-" * len(name)]
    if table.empty:
        lines.append("(no rows)")
    else:
        lines.append(format_table(table).to_string(index=False))
    return lines


def render_report(report):
    s = report.summary
    lines = [
        f"KPI report as of {report.as_of.date()} "
        f"(price per meal {report.config.price_per_meal:g}, revenue model {report.config.revenue_model})",
        "",
        f"Subscriptions:        {s['subscriptions']}",
        f"CAC:                  {format_metric(s['cac'])}",
        f"ARPU (weekly):        {format_metric(s['arpu'])}",
        f"Avg lifespan (weeks): {format_metric(s['average_lifespan_weeks'])}",
        f"CLV:                  {format_revenue(s['clv'])}",
        f"CLV/CAC:              {format_metric(s['clv_cac_ratio'], 'x')}",
        f"Duration/cost corr.:  {format_metric(report.duration_cost_correlation)}",
    ]
    for name, table in report.tables().items():
        lines += _section(name, table)

    lines += ["", "Exploration", "==========="]
    for name, table in report.exploration().items():
        lines += _section(name, table)

    lines += ["", "Validation", "----------"]
    if report.validation.ok:
        lines.append("no integrity violations")
    else:
        lines.append(report.validation.to_frame().to_string(index=False))
    return "\n".join(lines)


def export_tables(report, out_dir):
    os.makedirs(out_dir, exist_ok=True)
    tables = {**report.tables(), **report.exploration()}
    for name, table in tables.items():
        table.to_csv(os.path.join(out_dir, f"{name}.csv"), index=False)
    pd.DataFrame([report.summary]).to_csv(os.path.join(out_dir, "summary.csv"), index=False)
    report.validation.to_frame().to_csv(os.path.join(out_dir, "validation.csv"), index=False)


def main(argv=None):
    ap = argparse.ArgumentParser(description="Marketing KPI report for the meal-kit dataset")
    source = ap.add_mutually_exclusive_group()
    source.add_argument("--db", default=DB_PATH, help="SQLite database written by the ETL step")
    source.add_argument("--data-dir", help="Read the CSVs directly instead of the database")
    ap.add_argument("--price-per-meal", type=float, help="Overrides MEALKIT_PRICE_PER_MEAL (default 6)")
    ap.add_argument("--revenue-model", choices=sorted(REVENUE_MODELS))
    ap.add_argument("--as-of", help="Reference date (YYYY-MM-DD) for churn and lifespan, default today")
    ap.add_argument("--keep-duplicates", action="store_true",
                    help="Count a subscription once per referencing event in campaign revenue")
    ap.add_argument("--strict", action="store_true", help="Abort on any integrity violation")
    ap.add_argument("--export", help="Directory to write the KPI tables to as CSV")
    ap.add_argument("-v", "--verbose", action="store_true")
    args = ap.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        config = KPIConfig.from_env(
            price_per_meal=args.price_per_meal,
            revenue_model=args.revenue_model,
            as_of=args.as_of,
            dedupe_attribution=not args.keep_duplicates,
            strict=args.strict,
        )
    except ConfigError as exc:
        logger.error("invalid configuration: %s", exc)
        return 2

    try:
        if args.data_dir:
            snapshot = prepare(read_raw(args.data_dir))
        else:
            snapshot = load_snapshot(get_engine(args.db))
    except (FileNotFoundError, SnapshotNotLoaded) as exc:
        logger.error("%s", exc)
        return 1

    try:
        report = compute_all(snapshot, config)
    except IntegrityError as exc:
        logger.error("%s", exc)
        print(exc.report.to_frame().to_string(index=False))
        return 3

    print(render_report(report))
    if args.export:
        export_tables(report, args.export)
        print("\nKPI tables written to", args.export)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
