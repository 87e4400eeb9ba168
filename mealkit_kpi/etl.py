# etl.py
import argparse
import logging
import os

import numpy as np
import pandas as pd
from sqlalchemy import create_engine, inspect

from mealkit_kpi.config import DATA_DIR, DB_PATH
from mealkit_kpi.schema import TABLES, Snapshot, is_blank, sentinel_columns, table_spec
from mealkit_kpi.validator import Issue, coercion_issues

logger = logging.getLogger(__name__)

# Coercion failures recorded by prepare(), stored beside the tables
LOAD_ISSUES = "load_issues"


class SnapshotNotLoaded(RuntimeError):
    pass


def get_engine(db_path=DB_PATH):
    if db_path != ":memory:":
        os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
    return create_engine(f"sqlite:///{db_path}", echo=False)


def load_csv(name, data_dir=DATA_DIR):
    # Keep every cell as text so empty-string sentinels survive until normalization
    return pd.read_csv(os.path.join(data_dir, name), dtype=str, keep_default_na=False)


def read_raw(data_dir=DATA_DIR):
    return Snapshot(**{table: load_csv(f"{table}.csv", data_dir) for table in TABLES})


def normalize_sentinels(frame, table):
    """Turn empty-string date and foreign-key cells into absent values."""
    frame = frame.copy()
    for col in sentinel_columns(table):
        if col not in frame.columns:
            continue
        blank = is_blank(frame[col])
        if blank.any():
            logger.info("%s.%s: %d empty-string values normalized to null", table, col, int(blank.sum()))
            frame[col] = frame[col].mask(blank)
    return frame


def coerce_types(frame, table):
    spec = table_spec(table)
    frame = frame.copy()

    # Optional columns dropped in later schema revisions (e.g. total_cost)
    for col in spec["columns"]:
        if col not in frame.columns:
            logger.debug("%s: column %s missing, filled with nulls", table, col)
            frame[col] = np.nan

    for col in spec["ids"]:
        frame[col] = frame[col].astype("string").str.strip()
    for col in spec["dates"]:
        frame[col] = pd.to_datetime(frame[col], format="ISO8601", errors="coerce")
    for col in spec["numeric"]:
        frame[col] = pd.to_numeric(frame[col], errors="coerce").astype(float)

    extra = [c for c in frame.columns if c not in spec["columns"]]
    return frame[spec["columns"] + extra]


def prepare(raw, normalize=True):
    """Normalize and type the raw frames.

    Text that cannot be read as a date or number becomes null here, so each
    such cell is recorded on the returned snapshot's ``load_issues``.
    """
    tables, issues = {}, list(raw.load_issues)
    for table, frame in raw.tables().items():
        if normalize:
            frame = normalize_sentinels(frame, table)
        lost = coercion_issues(frame, table)
        for issue in lost:
            logger.warning("%s.%s: %d value(s) could not be parsed (%s)", table, issue.detail, issue.count, issue.check)
        issues += lost
        tables[table] = coerce_types(frame, table)
    return Snapshot(**tables, load_issues=issues)


def write_snapshot(snapshot, engine):
    # One transaction for all three tables so readers never see a partial load
    with engine.begin() as conn:
        for table, frame in snapshot.tables().items():
            frame.to_sql(table, conn, if_exists="replace", index=False)
        issues = pd.DataFrame([vars(i) for i in snapshot.load_issues], columns=["table", "check", "count", "detail"])
        issues.to_sql(LOAD_ISSUES, conn, if_exists="replace", index=False)


def load_snapshot(engine):
    with engine.connect() as conn:
        names = set(inspect(conn).get_table_names())
        missing = sorted(set(TABLES) - names)
        if missing:
            raise SnapshotNotLoaded(f"tables not loaded: {', '.join(missing)}; run the ETL step first")
        tables = {table: pd.read_sql_table(table, conn) for table in TABLES}
        issues = []
        if LOAD_ISSUES in names:
            for row in pd.read_sql_table(LOAD_ISSUES, conn).to_dict("records"):
                issues.append(Issue(row["table"], row["check"], int(row["count"]), row["detail"] or ""))
    tables = {table: coerce_types(frame, table) for table, frame in tables.items()}
    return Snapshot(**tables, load_issues=issues)


def preprocess(data_dir=DATA_DIR, db_path=DB_PATH):
    # Load CSVs
    raw = read_raw(data_dir)
    for table, frame in raw.tables().items():
        logger.info("loaded %d rows from %s.csv", len(frame), table)

    # Normalize sentinels and types
    snapshot = prepare(raw)

    # Save to sqlite
    engine = get_engine(db_path)
    write_snapshot(snapshot, engine)
    return snapshot


def main(argv=None):
    ap = argparse.ArgumentParser(description="Load campaign, event and subscription CSVs into SQLite")
    ap.add_argument("--data-dir", default=DATA_DIR, help="Directory holding the three CSV files")
    ap.add_argument("--db", default=DB_PATH, help="SQLite database path")
    ap.add_argument("-v", "--verbose", action="store_true")
    args = ap.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        preprocess(args.data_dir, args.db)
    except FileNotFoundError as exc:
        logger.error("input file missing: %s", exc)
        return 1

    print("ETL complete — tables written to", args.db)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
