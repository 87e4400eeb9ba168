"""
Shared fixtures for building snapshots and CSV inputs.
"""

import pytest

from mealkit_kpi.config import KPIConfig
from mealkit_kpi.etl import prepare
from tests.sample_data import AS_OF, CAMPAIGN_ROWS, EVENT_ROWS, SUBSCRIPTION_ROWS, raw_snapshot, write_csvs


@pytest.fixture
def as_of():
    return AS_OF


@pytest.fixture
def config():
    return KPIConfig(price_per_meal=6, as_of=AS_OF)


@pytest.fixture
def build_snapshot():
    """Factory: prepared snapshot from lists of row dicts (missing keys become null)."""

    def _build(campaigns=(), events=(), subscriptions=()):
        return prepare(raw_snapshot(campaigns, events, subscriptions))

    return _build


@pytest.fixture
def snapshot(build_snapshot):
    return build_snapshot(CAMPAIGN_ROWS, EVENT_ROWS, SUBSCRIPTION_ROWS)


@pytest.fixture
def data_dir(tmp_path):
    return write_csvs(str(tmp_path / "data"), CAMPAIGN_ROWS, EVENT_ROWS, SUBSCRIPTION_ROWS)
