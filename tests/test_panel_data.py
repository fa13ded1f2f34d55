"""
Tests for base panel assembly.
"""

import pytest
import pandas as pd
import numpy as np

from nutspanel.data.data_lineage import DataLineageTracker
from nutspanel.errors import SchemaError
from nutspanel.model.panel_data import PANEL_COLUMNS, PanelBuilder, per_capita, safe_log
from tests.fixtures.synthetic_panel import make_settings


def _table(field, rows):
    return pd.DataFrame(rows, columns=["region", "year", field])


@pytest.fixture
def sources():
    return {
        "population": _table("population", [
            ("AT11", 2000, 1000.0),
            ("AT11", 2001, 1000.0),
            ("DE11", 2000, 2000.0),
            ("DE11", 2001, 0.0),
            ("CH01", 2000, 500.0),
            ("FR10", 1990, 100.0),
            ("FR10", 2000, 100.0),
            ("EL30", 2000, 300.0),
        ]),
        "gdp": _table("gdp", [
            ("AT11", 2000, 1.0),
            ("AT11", 2001, np.nan),
            ("DE11", 2000, 4.0),
            ("CH01", 2000, 1.0),
            ("FR10", 2000, 0.5),
            ("ZZ99", 2000, 7.0),
        ]),
        "employment_rate": _table("employment_rate", [("AT11", 2000, 70.0)]),
        "unemployment_rate": _table("unemployment_rate", [("AT11", 2000, 5.0)]),
        "fund_payment": _table("fund_payment", [
            ("AT11", 2000, 0.0),
            ("AT11", 2001, 500.0),
            ("DE11", 2000, 1000.0),
            ("DE11", 2001, 100.0),
        ]),
    }


@pytest.fixture
def tracker():
    return DataLineageTracker()


@pytest.fixture
def panel(tmp_path, sources, tracker):
    return PanelBuilder(make_settings(tmp_path), tracker).build(sources)


def _row(panel, region, year):
    return panel.set_index(["region", "year"]).loc[(region, year)]


class TestHelpers:
    """Test per-capita and log helpers."""

    def test_per_capita(self):
        result = per_capita(pd.Series([10.0, 0.0, 5.0, np.nan]), pd.Series([5.0, 5.0, 0.0, 5.0]))
        assert result.iloc[0] == 2.0
        assert result.iloc[1] == 0.0
        assert result.iloc[2:].isna().all()

    def test_safe_log(self):
        result = safe_log(pd.Series([np.e, 0.0, -1.0]))
        assert result.iloc[0] == pytest.approx(1.0)
        assert result.iloc[1:].isna().all()


class TestPanelBuilder:
    """Test panel construction."""

    def test_unique_keys_and_column_order(self, panel):
        assert list(panel.columns) == PANEL_COLUMNS
        assert not panel.duplicated(["region", "year"]).any()

    def test_rows_sorted(self, panel):
        keys = list(zip(panel["region"], panel["year"]))
        assert keys == sorted(keys)

    def test_jurisdiction_filter(self, panel):
        """Non-member regions are dropped."""
        assert "CH01" not in set(panel["region"])

    def test_year_filter(self, panel):
        assert panel["year"].min() >= 2000
        assert ("FR10", 1990) not in set(zip(panel["region"], panel["year"]))

    def test_rows_without_signal_dropped(self, panel, tracker):
        assert "EL30" not in set(panel["region"])
        assert tracker.anomaly_count("rows_without_signal") == 1

    def test_secondary_rows_outside_base_discarded(self, panel, tracker):
        assert "ZZ99" not in set(panel["region"])
        assert tracker.anomaly_count("gdp_rows_outside_base") == 1

    def test_zero_payment_gives_zero_per_capita(self, panel):
        row = _row(panel, "AT11", 2000)
        assert row["fund_per_capita"] == 0.0
        assert row["log_fund_pc"] == 0.0

    def test_per_capita_values(self, panel):
        row = _row(panel, "AT11", 2001)
        assert row["fund_per_capita"] == pytest.approx(0.5)
        assert row["log_fund_pc"] == pytest.approx(np.log1p(0.5))

        row = _row(panel, "DE11", 2000)
        assert row["gdp_pc"] == pytest.approx(2000.0)
        assert row["log_gdp_pc"] == pytest.approx(np.log(2000.0))

    def test_zero_population_gives_missing(self, panel):
        row = _row(panel, "DE11", 2001)
        assert np.isnan(row["fund_per_capita"])
        assert np.isnan(row["log_population"])

    def test_missing_gdp_gives_missing_log(self, panel):
        row = _row(panel, "AT11", 2001)
        assert np.isnan(row["log_gdp_pc"])
        assert not row["has_gdp"]

    def test_missing_payment_stays_missing(self, panel):
        row = _row(panel, "FR10", 2000)
        assert np.isnan(row["fund_per_capita"])
        assert not row["has_fund_payment"]

    def test_availability_flags(self, panel):
        row = _row(panel, "AT11", 2000)
        assert row["has_population"] and row["has_gdp"]
        assert row["has_employment_rate"] and row["has_unemployment_rate"]

    def test_country_keys(self, panel):
        row = _row(panel, "DE11", 2000)
        assert row["country"] == "DE"
        assert row["country_year"] == "DE_2000"

    def test_missing_source(self, tmp_path, sources):
        del sources["unemployment_rate"]
        with pytest.raises(SchemaError, match="unemployment_rate"):
            PanelBuilder(make_settings(tmp_path)).build(sources)

    def test_missing_column(self, tmp_path, sources):
        sources["gdp"] = sources["gdp"].rename(columns={"gdp": "value"})
        with pytest.raises(SchemaError, match="lacks columns"):
            PanelBuilder(make_settings(tmp_path)).build(sources)
