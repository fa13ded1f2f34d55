"""
Treatment construction for the event study.

A region's baseline is its mean exposure over the baseline window. The
event year is the first year exposure reaches (1 + delta) times that
baseline; relative years, a post indicator, event-time dummies and a
continuous intensity measure follow from it.

Implements:
- Baseline window resolution (configured or auto)
- Event year detection
- Event-time dummies with an omitted reference offset
- Exposure intensity
"""

import logging
from dataclasses import dataclass, field

import numpy as np
import pandas as pd

from config.settings import Settings, get_settings
from nutspanel.data.data_lineage import DataLineageTracker
from nutspanel.errors import SchemaError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EventWindow:
    """Event-time window: leads, lags and the omitted offset."""

    n_leads: int
    n_lags: int
    reference_offset: int = -1

    @property
    def offsets(self) -> list[int]:
        """Materialized offsets, reference excluded."""
        return [
            k for k in range(-self.n_leads, self.n_lags + 1)
            if k != self.reference_offset
        ]

    @property
    def columns(self) -> list[str]:
        return [event_column(k) for k in self.offsets]

    def contains(self, rel_year: pd.Series) -> pd.Series:
        return rel_year.between(-self.n_leads, self.n_lags)


def event_column(offset: int) -> str:
    """-2 -> 'evt_m2', 0 -> 'evt_0', 3 -> 'evt_p3'."""
    if offset < 0:
        return f"evt_m{-offset}"
    if offset == 0:
        return "evt_0"
    return f"evt_p{offset}"


@dataclass
class TreatmentResult:
    """Panel with treatment columns plus what was decided along the way."""

    panel: pd.DataFrame
    baseline_window: tuple[int, int]
    event_columns: list[str]
    dropped_regions: list[str] = field(default_factory=list)

    @property
    def n_treated(self) -> int:
        return int(self.panel.loc[self.panel["treated"], "region"].nunique())


def resolve_baseline_window(panel: pd.DataFrame, settings: Settings) -> tuple[int, int]:
    """Configured window, or the first ``baseline_auto_years`` observed years."""
    if settings.baseline_start_year is not None:
        return settings.baseline_start_year, settings.baseline_end_year

    years = sorted(panel["year"].dropna().unique())
    if not years:
        raise SchemaError("Cannot resolve a baseline window for an empty panel")
    first = int(years[0])
    return first, first + settings.baseline_auto_years - 1


def compute_baseline(
    panel: pd.DataFrame,
    exposure: str,
    window: tuple[int, int],
) -> pd.Series:
    """Mean exposure per region within the window; NaN where unobserved."""
    in_window = panel["year"].between(*window)
    baseline = panel.loc[in_window].groupby("region")[exposure].mean()
    return baseline.reindex(panel["region"].unique())


def detect_event_year(panel: pd.DataFrame, exposure: str, threshold: float) -> pd.Series:
    """
    First year with exposure >= (1 + threshold) * baseline, per region.

    Expects a ``baseline_exposure`` column. Regions that never jump are
    absent from the result.
    """
    jump = panel[exposure] >= (1.0 + threshold) * panel["baseline_exposure"]
    return panel.loc[jump, ["region", "year"]].groupby("region")["year"].min()


def event_time_dummies(panel: pd.DataFrame, window: EventWindow) -> pd.DataFrame:
    """
    One nullable boolean column per non-reference offset.

    Rows of treated regions get True in at most one column (exactly one when
    the relative year is inside the window and not the reference); rows
    outside the event-study sample are missing throughout.
    """
    rel_year = panel["rel_year"]
    in_sample = rel_year.notna().to_numpy(dtype=bool)

    dummies = pd.DataFrame(index=panel.index)
    for offset, name in zip(window.offsets, window.columns):
        hit = pd.Series(pd.NA, index=panel.index, dtype="boolean")
        hit[in_sample] = (rel_year[in_sample] == offset).to_numpy(dtype=bool)
        dummies[name] = hit
    return dummies


class TreatmentBuilder:
    """Adds baseline, event timing and event-time dummies to a base panel."""

    def __init__(
        self,
        settings: Settings | None = None,
        tracker: DataLineageTracker | None = None,
    ):
        self.settings = settings or get_settings()
        self.tracker = tracker or DataLineageTracker()
        self.window = EventWindow(
            n_leads=self.settings.n_leads,
            n_lags=self.settings.n_lags,
            reference_offset=self.settings.reference_offset,
        )

    def build(self, panel: pd.DataFrame) -> TreatmentResult:
        """
        Construct treatment columns.

        Args:
            panel: Base panel with region, year and the exposure column

        Returns:
            TreatmentResult; the panel drops regions without a baseline

        Raises:
            SchemaError: required columns are absent, or no region has a
                baseline observation
        """
        s = self.settings
        exposure = s.exposure_column
        missing = [c for c in ["region", "year", exposure] if c not in panel.columns]
        if missing:
            raise SchemaError(
                f"CRITICAL: panel lacks treatment inputs {missing}. "
                "Run 'nutspanel build-panel' first."
            )

        window = resolve_baseline_window(panel, s)
        baseline = compute_baseline(panel, exposure, window)

        no_baseline = sorted(baseline[baseline.isna()].index)
        if len(no_baseline) == len(baseline):
            raise SchemaError(
                f"No region has {exposure} observed in baseline window "
                f"{window[0]}-{window[1]}. Check baseline_start_year/baseline_end_year."
            )
        self.tracker.record_anomaly(
            "treatment", "no_baseline", len(no_baseline), "region dropped", no_baseline,
        )
        if no_baseline:
            logger.info(f"Dropped {len(no_baseline)} regions without baseline exposure")

        df = panel[~panel["region"].isin(no_baseline).astype(bool)].copy()
        df["baseline_exposure"] = df["region"].map(baseline).astype("float64")
        df["jump"] = (df[exposure] >= (1.0 + s.jump_threshold) * df["baseline_exposure"]).astype(bool)

        event_year = detect_event_year(df, exposure, s.jump_threshold)
        df["event_year"] = df["region"].map(event_year).astype("Int64")
        df["treated"] = df["event_year"].notna().astype(bool)
        df["rel_year"] = (df["year"].astype("Int64") - df["event_year"]).astype("Int64")
        df["post"] = (df["year"].astype("Int64") >= df["event_year"]).astype("Int64")

        outside = df["rel_year"].notna() & ~self.window.contains(df["rel_year"]).fillna(False)
        self.tracker.record_anomaly(
            "treatment", "rel_year_outside_window", int(outside.sum()),
            "all event dummies false",
            df.loc[outside.astype(bool), "region"].unique().tolist(),
        )

        dummies = event_time_dummies(df, self.window)
        for col in dummies.columns:
            df[col] = dummies[col]

        df["intensity"] = np.log1p(df[exposure]) * df["post"].astype("float64")

        result = TreatmentResult(
            panel=df.sort_values(["region", "year"]).reset_index(drop=True),
            baseline_window=window,
            event_columns=self.window.columns,
            dropped_regions=no_baseline,
        )
        logger.info(
            f"Treatment: baseline {window[0]}-{window[1]}, "
            f"{result.n_treated}/{df['region'].nunique()} regions treated"
        )
        return result
