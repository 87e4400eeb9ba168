"""
Tests for loading the CSVs and round-tripping the snapshot through SQLite.
"""
import os

import pandas as pd
import pytest

from mealkit_kpi import etl
from mealkit_kpi.schema import TABLES
from tests.sample_data import CAMPAIGN_ROWS, EVENT_ROWS, SUBSCRIPTION_ROWS, write_csvs


class TestReadAndPrepare:
    def test_raw_frames_keep_empty_strings(self, data_dir):
        raw = etl.read_raw(data_dir)

        assert (raw.subscriptions["end_date"] == "").sum() == 1
        assert raw.events["subscription_id"].isna().sum() == 0

    def test_prepare_types_columns(self, data_dir):
        snap = etl.prepare(etl.read_raw(data_dir))

        assert pd.api.types.is_datetime64_any_dtype(snap.campaigns["start_date"])
        assert pd.api.types.is_datetime64_any_dtype(snap.subscriptions["end_date"])
        assert pd.api.types.is_float_dtype(snap.campaigns["budget"])
        assert snap.events["campaign_id"].dtype == "string"
        assert snap.subscriptions["end_date"].isna().sum() == 1
        assert snap.events["subscription_id"].isna().sum() == 8

    def test_missing_optional_column_is_added(self, tmp_path):
        campaigns = [{k: v for k, v in row.items() if k != "total_cost"} for row in CAMPAIGN_ROWS]
        data_dir = write_csvs(str(tmp_path), campaigns, EVENT_ROWS, SUBSCRIPTION_ROWS)
        snap = etl.prepare(etl.read_raw(data_dir))

        assert list(snap.campaigns.columns) == TABLES["campaigns"]["columns"]
        assert snap.campaigns["total_cost"].isna().all()

    def test_missing_csv_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            etl.read_raw(str(tmp_path))


class TestSQLiteSnapshot:
    def test_preprocess_writes_all_tables(self, data_dir, tmp_path):
        db_path = str(tmp_path / "db" / "mealkit.db")
        written = etl.preprocess(data_dir, db_path)

        assert os.path.exists(db_path)
        loaded = etl.load_snapshot(etl.get_engine(db_path))
        for table, frame in loaded.tables().items():
            assert len(frame) == len(written.tables()[table])
        assert loaded.subscriptions["end_date"].isna().sum() == 1
        assert pd.api.types.is_datetime64_any_dtype(loaded.events["event_date"])
        assert loaded.campaigns["campaign_id"].tolist() == ["1", "2", "3", "4", "5"]

    def test_reload_replaces_previous_load(self, data_dir, tmp_path):
        db_path = str(tmp_path / "mealkit.db")
        etl.preprocess(data_dir, db_path)
        smaller = write_csvs(str(tmp_path / "smaller"), CAMPAIGN_ROWS[:2], EVENT_ROWS[:3], SUBSCRIPTION_ROWS[:1])
        etl.preprocess(smaller, db_path)

        loaded = etl.load_snapshot(etl.get_engine(db_path))
        assert len(loaded.campaigns) == 2
        assert len(loaded.subscriptions) == 1

    def test_empty_database_is_rejected(self, tmp_path):
        engine = etl.get_engine(str(tmp_path / "empty.db"))

        with pytest.raises(etl.SnapshotNotLoaded):
            etl.load_snapshot(engine)

    def test_main_entry_point(self, data_dir, tmp_path, capsys):
        db_path = str(tmp_path / "cli.db")

        assert etl.main(["--data-dir", data_dir, "--db", db_path]) == 0
        assert "ETL complete" in capsys.readouterr().out

    def test_main_reports_missing_input(self, tmp_path):
        assert etl.main(["--data-dir", str(tmp_path / "nowhere"), "--db", str(tmp_path / "x.db")]) == 1


class TestCoercionFailures:
    def test_prepare_records_unreadable_date(self, tmp_path):
        subs = [dict(r) for r in SUBSCRIPTION_ROWS]
        subs[1]["end_date"] = "2024-13-45"
        data_dir = write_csvs(str(tmp_path), CAMPAIGN_ROWS, EVENT_ROWS, subs)
        snap = etl.prepare(etl.read_raw(data_dir))

        assert snap.subscriptions["end_date"].isna().sum() == 1
        assert [(i.table, i.check, i.count, i.detail) for i in snap.load_issues] == [
            ("subscriptions", "bad_date", 1, "end_date"),
        ]

    def test_empty_string_sentinels_are_not_failures(self, data_dir):
        assert etl.prepare(etl.read_raw(data_dir)).load_issues == []

    def test_load_issues_survive_the_database(self, tmp_path):
        subs = [dict(r) for r in SUBSCRIPTION_ROWS]
        subs[0]["n_meals"] = "three"
        data_dir = write_csvs(str(tmp_path / "data"), CAMPAIGN_ROWS, EVENT_ROWS, subs)
        db_path = str(tmp_path / "mealkit.db")
        etl.preprocess(data_dir, db_path)

        loaded = etl.load_snapshot(etl.get_engine(db_path))
        assert len(loaded.load_issues) == 1
        issue = loaded.load_issues[0]
        assert (issue.table, issue.check, issue.count, issue.detail) == ("subscriptions", "bad_number", 1, "n_meals")

    def test_clean_load_stores_no_issues(self, data_dir, tmp_path):
        db_path = str(tmp_path / "mealkit.db")
        etl.preprocess(data_dir, db_path)

        assert etl.load_snapshot(etl.get_engine(db_path)).load_issues == []
