"""
Base panel construction.

Joins the cleaned sources onto the population table, which anchors the
row universe, then filters to member states and the configured year range
and derives per-capita quantities.
"""

import logging

import numpy as np
import pandas as pd

from config.settings import Settings, get_settings
from nutspanel.data.data_lineage import DataLineageTracker
from nutspanel.errors import SchemaError

logger = logging.getLogger(__name__)

KEY_COLUMNS = ["region", "year"]

BASE_SOURCE = "population"
# Joined in this order; each adds a has_<name> availability flag
SECONDARY_SOURCES = ["gdp", "employment_rate", "unemployment_rate", "fund_payment"]
SIGNAL_COLUMNS = ["gdp", "employment_rate", "unemployment_rate", "fund_payment"]

PANEL_COLUMNS = [
    "region",
    "year",
    "country",
    "country_year",
    "population",
    "gdp",
    "employment_rate",
    "unemployment_rate",
    "fund_payment",
    "fund_per_capita",
    "gdp_pc",
    "log_gdp_pc",
    "log_population",
    "log_fund_pc",
    "has_population",
    "has_gdp",
    "has_employment_rate",
    "has_unemployment_rate",
    "has_fund_payment",
]


def per_capita(numerator: pd.Series, population: pd.Series) -> pd.Series:
    """numerator / population, missing unless population > 0.

    A zero numerator with positive population is a real zero.
    """
    return numerator / population.where(population > 0)


def safe_log(series: pd.Series) -> pd.Series:
    """ln(x), missing for x <= 0."""
    return np.log(series.where(series > 0))


class PanelBuilder:
    """Builds the base region-year panel from cleaned sources."""

    def __init__(
        self,
        settings: Settings | None = None,
        tracker: DataLineageTracker | None = None,
    ):
        self.settings = settings or get_settings()
        self.tracker = tracker or DataLineageTracker()

    def build(self, sources: dict[str, pd.DataFrame]) -> pd.DataFrame:
        """
        Build the base panel.

        Args:
            sources: Cleaned tables keyed by field name; each holds
                region, year and a column named after the key

        Returns:
            Panel DataFrame unique by (region, year)
        """
        missing = [s for s in [BASE_SOURCE] + SECONDARY_SOURCES if s not in sources]
        if missing:
            raise SchemaError(
                f"CRITICAL: cleaned sources missing: {missing}. "
                "Run 'nutspanel clean-sources' first."
            )

        panel = self._base(sources[BASE_SOURCE])
        for name in SECONDARY_SOURCES:
            panel = self._join(panel, sources[name], name)

        panel = self._filter_years(panel)
        panel = self._filter_jurisdiction(panel)
        panel = self._filter_signal(panel)
        panel = self._derive(panel)

        duplicates = panel.duplicated(KEY_COLUMNS).sum()
        if duplicates:
            raise ValueError(f"Base panel has {duplicates} duplicated (region, year) rows.")

        panel = panel[PANEL_COLUMNS].sort_values(KEY_COLUMNS).reset_index(drop=True)
        logger.info(
            f"Base panel: {len(panel)} rows, {panel['region'].nunique()} regions, "
            f"{panel['year'].min()}-{panel['year'].max()}"
        )
        return panel

    def _check_columns(self, df: pd.DataFrame, name: str) -> None:
        required = KEY_COLUMNS + [name]
        absent = [c for c in required if c not in df.columns]
        if absent:
            raise SchemaError(
                f"CRITICAL: cleaned '{name}' table lacks columns {absent}. "
                f"Available columns: {list(df.columns)}. Re-run 'nutspanel clean-sources'."
            )

    def _base(self, population: pd.DataFrame) -> pd.DataFrame:
        self._check_columns(population, BASE_SOURCE)
        panel = population[KEY_COLUMNS + [BASE_SOURCE]].copy()
        panel["region"] = panel["region"].astype("string")
        panel["has_population"] = panel[BASE_SOURCE].notna()
        return panel

    def _join(self, panel: pd.DataFrame, other: pd.DataFrame, name: str) -> pd.DataFrame:
        """Left-join one source; rows absent from the base are discarded."""
        self._check_columns(other, name)
        other = other[KEY_COLUMNS + [name]].astype({"region": "string"})

        keys = pd.MultiIndex.from_frame(panel[KEY_COLUMNS])
        outside = ~pd.MultiIndex.from_frame(other[KEY_COLUMNS]).isin(keys)
        self.tracker.record_anomaly(
            "assemble", f"{name}_rows_outside_base", int(outside.sum()), "discarded",
            other.loc[outside, "region"].unique().tolist(),
        )

        merged = panel.merge(other, on=KEY_COLUMNS, how="left", validate="one_to_one")
        merged[f"has_{name}"] = merged[name].notna()
        return merged

    def _filter_years(self, panel: pd.DataFrame) -> pd.DataFrame:
        s = self.settings
        in_range = panel["year"].between(s.start_year, s.end_year)
        dropped = int((~in_range).sum())
        if dropped:
            logger.info(f"Dropped {dropped} rows outside {s.start_year}-{s.end_year}")
        return panel[in_range]

    def _filter_jurisdiction(self, panel: pd.DataFrame) -> pd.DataFrame:
        countries = panel["region"].str[:2]
        allowed = countries.isin(self.settings.member_states).astype(bool)
        outside = panel.loc[~allowed, "region"].unique().tolist()
        if outside:
            logger.info(f"Dropped {len(outside)} regions outside member states")
        return panel[allowed]

    def _filter_signal(self, panel: pd.DataFrame) -> pd.DataFrame:
        """Keep rows with at least one outcome or exposure value."""
        has_signal = panel[SIGNAL_COLUMNS].notna().any(axis=1)
        self.tracker.record_anomaly(
            "assemble", "rows_without_signal", int((~has_signal).sum()), "dropped",
            panel.loc[~has_signal, "region"].unique().tolist(),
        )
        return panel[has_signal]

    def _derive(self, panel: pd.DataFrame) -> pd.DataFrame:
        panel = panel.copy()
        panel["country"] = panel["region"].str[:2]
        panel["country_year"] = panel["country"] + "_" + panel["year"].astype(str)

        panel["fund_per_capita"] = per_capita(panel["fund_payment"], panel["population"])
        panel["gdp_pc"] = per_capita(panel["gdp"] * self.settings.gdp_scale, panel["population"])

        panel["log_gdp_pc"] = safe_log(panel["gdp_pc"])
        panel["log_population"] = safe_log(panel["population"])
        panel["log_fund_pc"] = np.log1p(panel["fund_per_capita"])
        return panel
