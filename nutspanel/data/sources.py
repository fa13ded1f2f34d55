"""
Source cleaning for the statistical exports and the payments extract.

Each source is parsed from its declared layout into a long
(region, year, value) table, checked for unit and sign problems,
collapsed to one row per key, and reconciled with the target NUTS vintage.

Vintage reconciliation is a heuristic: if at least
``settings.vintage_match_threshold`` of a source's distinct codes are keys
of the new vintage, the source is treated as new-vintage and reprojected
through the reverse crosswalk; otherwise its codes are taken to be on the
target vintage already. Codes that exist unchanged in both vintages make
this fallible, so the match rate is logged and recorded for every source.
"""

from __future__ import annotations

import logging
from pathlib import Path

import numpy as np
import pandas as pd

from config.settings import Settings, get_settings
from nutspanel.data.base import DataSource
from nutspanel.data.crosswalk import Crosswalk, normalize_code_column, normalize_header
from nutspanel.data.data_lineage import DataLineageTracker, VintageDecision
from nutspanel.data.layouts import LongLayout, SourceSpec, WideLayout
from nutspanel.errors import LayoutMismatchError, SchemaError

logger = logging.getLogger(__name__)

KEY_COLUMNS = ["region", "year"]

# Eurostat special values and flags (low reliability, break in series,
# provisional, estimated, confidential, ...) that stand in for a number.
SENTINEL_TOKENS = {
    "", ":", ":c", ":u", ":z", ":b", ":e", ":p",
    "b", "c", "d", "e", "f", "n", "p", "r", "s", "u", "z",
    "bp", "be", "ep", "bu", "pu", "eu",
    "-", "--", "..", "...", "x", "na", "n/a", "nan", "none",
}
FLAG_SUFFIX = r"(?<=\d)\s*[a-zA-Z]{1,3}$"

VALID_CODE = r"^[A-Z]{2}[A-Z0-9]{0,3}$"
EXTRA_REGIO_SUFFIXES = ("ZZ", "XX")
# EU27_2020, EU28, EA19, EEA, EFTA and other area aggregates
AGGREGATE_CODE = r"^(?:EU|EA|EEA|EFTA)\d*$"

RATE_FRACTION_MAX = 1.5
ARTIFACT_NUMERIC_SHARE = 0.05


def coerce_numeric(series: pd.Series) -> pd.Series:
    """Parse numbers, mapping sentinel tokens to missing.

    A trailing flag on a real number ("1234.5 p") is dropped and the number
    kept; a bare flag becomes missing.
    """
    cleaned = series.astype("string").str.replace("\u00a0", " ", regex=False).str.strip()
    cleaned = cleaned.mask(cleaned.str.lower().isin(SENTINEL_TOKENS))
    cleaned = cleaned.str.replace(FLAG_SUFFIX, "", regex=True)
    cleaned = cleaned.str.replace(" ", "", regex=False).str.replace(",", "", regex=False)
    numbers = pd.to_numeric(cleaned, errors="coerce")
    return pd.Series(numbers.to_numpy(dtype="float64", na_value=np.nan), index=series.index)


def parse_year_series(series: pd.Series) -> pd.Series:
    extracted = series.astype("string").str.extract(r"(\d{4})", expand=False)
    years = pd.to_numeric(extracted, errors="coerce")
    years = years.where(years.between(1900, 2100))
    return years.astype("Int64")


def valid_code_mask(codes: pd.Series) -> pd.Series:
    """True for plausible region codes; aggregates and header remnants fail."""
    codes = pd.Series(codes).astype("string")
    valid = codes.str.fullmatch(VALID_CODE, na=False)
    aggregate = codes.str.fullmatch(AGGREGATE_CODE, na=False)
    extra_regio = codes.str.endswith(EXTRA_REGIO_SUFFIXES).fillna(False)
    return (valid & ~aggregate & ~extra_regio).astype(bool)


def _numeric_share(block: pd.DataFrame) -> float:
    values = pd.Series(block.to_numpy().ravel())
    non_blank = values[values.astype("string").str.strip().fillna("") != ""]
    if non_blank.empty:
        return 0.0
    return float(coerce_numeric(non_blank).notna().mean())


def detect_stride(body: pd.DataFrame, first_data_column: int) -> int:
    """Detect whether data columns alternate with blank artifact columns."""
    data = body.iloc[:, first_data_column:]
    if data.shape[1] < 2:
        return 1
    value_share = _numeric_share(data.iloc[:, 0::2])
    artifact_share = _numeric_share(data.iloc[:, 1::2])
    if value_share > 0 and artifact_share <= ARTIFACT_NUMERIC_SHARE:
        return 2
    return 1


def _is_blank_column(header: pd.Series, body: pd.Series) -> bool:
    return bool(pd.isna(header) or str(header).strip() == "") and body.isna().all()


def parse_wide(grid: pd.DataFrame, layout: WideLayout, source: str = "source") -> pd.DataFrame:
    """
    Parse a wide export with merged two-column year headers.

    Args:
        grid: Raw cell grid (no header interpretation)
        layout: Declared layout
        source: Source name for error messages

    Returns:
        Long table with region (raw vintage), year, value

    Raises:
        LayoutMismatchError: the layout does not fit the grid
    """
    n_rows, n_cols = grid.shape
    if layout.header_row >= n_rows:
        raise LayoutMismatchError(
            f"header_row {layout.header_row} beyond {n_rows} rows", source
        )
    if layout.code_column >= n_cols or layout.first_data_column >= n_cols:
        raise LayoutMismatchError(
            f"code_column {layout.code_column} / first_data_column "
            f"{layout.first_data_column} beyond {n_cols} columns",
            source,
        )
    if layout.first_data_column <= layout.code_column:
        raise LayoutMismatchError("first_data_column must follow code_column", source)

    header = grid.iloc[layout.header_row]
    body = grid.iloc[layout.header_row + 1:]

    stride = layout.stride or detect_stride(body, layout.first_data_column)
    if stride < 1:
        raise LayoutMismatchError(f"invalid stride {stride}", source)

    positions = list(range(layout.first_data_column, n_cols, stride))
    # Exports often carry empty trailing columns past the last year
    while positions and _is_blank_column(header.iloc[positions[-1]], body.iloc[:, positions[-1]]):
        positions.pop()

    if layout.n_years is not None:
        if len(positions) < layout.n_years:
            raise LayoutMismatchError(
                f"expected {layout.n_years} year columns, found {len(positions)} "
                f"(stride {stride}, {n_cols} columns)",
                source,
            )
        positions = positions[: layout.n_years]
    if not positions:
        raise LayoutMismatchError("no data columns after first_data_column", source)

    if stride > 1:
        artifact = [p + k for p in positions for k in range(1, stride) if p + k < n_cols]
        share = _numeric_share(body.iloc[:, artifact]) if artifact else 0.0
        if share > ARTIFACT_NUMERIC_SHARE:
            raise LayoutMismatchError(
                f"{share:.0%} of artifact-column cells are numeric; "
                "first_data_column or stride does not match the sheet",
                source,
            )

    years = [layout.first_year + i for i in range(len(positions))]
    labelled = parse_year_series(header.iloc[positions].reset_index(drop=True))
    for i, label in enumerate(labelled):
        if pd.notna(label) and int(label) != years[i]:
            raise LayoutMismatchError(
                f"column {positions[i]} is labelled {int(label)} but the layout "
                f"assigns {years[i]} (first_year {layout.first_year})",
                source,
            )

    codes = normalize_code_column(body.iloc[:, layout.code_column])
    keep = valid_code_mask(codes)
    n_meta = int((~keep & codes.notna()).sum())
    if n_meta:
        logger.debug(f"{source}: stripped {n_meta} metadata/aggregate rows")

    values = body.loc[keep].iloc[:, positions]
    values.columns = years
    values.insert(0, "region", codes[keep].to_numpy())

    long = values.melt(id_vars="region", var_name="year", value_name="raw")
    long["value"] = coerce_numeric(long["raw"])
    long["year"] = long["year"].astype("int64")
    return long[["region", "year", "value"]].reset_index(drop=True)


def parse_long(raw: pd.DataFrame, layout: LongLayout, source: str = "source") -> pd.DataFrame:
    """
    Parse a long delimited export, filtering funds and summing across them.

    Raises:
        SchemaError: a declared column is absent, or the fund filter empties the table
    """
    df = raw.copy()
    df.columns = [normalize_header(c) for c in df.columns]

    wanted = {
        "region": normalize_header(layout.region_column),
        "year": normalize_header(layout.year_column),
        "value": normalize_header(layout.value_column),
    }
    if layout.fund_column:
        wanted["fund"] = normalize_header(layout.fund_column)
    missing = [col for col in wanted.values() if col not in df.columns]
    if missing:
        raise SchemaError(
            f"{source}: missing required columns {missing}. "
            f"Available columns: {sorted(df.columns)}"
        )

    if layout.fund_column and layout.funds:
        funds = df[wanted["fund"]].astype("string").str.strip().str.upper()
        df = df[funds.isin([f.upper() for f in layout.funds]).fillna(False).astype(bool)]
        if df.empty:
            raise SchemaError(f"{source}: no rows for funds {list(layout.funds)}")

    out = pd.DataFrame({
        "region": normalize_code_column(df[wanted["region"]]),
        "year": parse_year_series(df[wanted["year"]]),
        "value": coerce_numeric(df[wanted["value"]]),
    })
    out = out[valid_code_mask(out["region"]) & out["year"].notna().astype(bool)].copy()
    out["year"] = out["year"].astype("int64")

    # Several funds per region-year sum to one payment
    out = (
        out.groupby(KEY_COLUMNS, as_index=False, sort=True)["value"]
        .sum(min_count=1)
    )
    return out


def validate_values(
    table: pd.DataFrame,
    spec: SourceSpec,
    tracker: DataLineageTracker,
) -> pd.DataFrame:
    """Rescale fractional rates, blank out impossible values."""
    table = table.copy()
    value = table["value"]

    if spec.kind == "rate":
        observed_max = value.max()
        if pd.notna(observed_max) and observed_max <= RATE_FRACTION_MAX:
            logger.info(f"{spec.name}: max {observed_max:.3f} <= {RATE_FRACTION_MAX}, rescaling fractions to percent")
            value = value * 100.0
        out_of_range = value.notna() & ~value.between(0, 100)
        tracker.record_anomaly(
            spec.name, "rate_out_of_range", int(out_of_range.sum()), "set missing",
            table.loc[out_of_range, "region"].tolist(),
        )
        value = value.mask(out_of_range)
    else:
        negative = value < 0
        tracker.record_anomaly(
            spec.name, "negative_values", int(negative.sum()), "set missing",
            table.loc[negative, "region"].tolist(),
        )
        value = value.mask(negative)

    table["value"] = value
    return table


def collapse(
    table: pd.DataFrame,
    spec: SourceSpec,
    tracker: DataLineageTracker | None = None,
) -> pd.DataFrame:
    """Enforce one row per (region, year).

    Repeated identical rows are dropped first; remaining conflicts are summed
    or averaged according to the source's aggregation mode.
    """
    table = table.drop_duplicates(subset=KEY_COLUMNS + ["value"])
    dup_keys = table.duplicated(KEY_COLUMNS, keep=False)
    if tracker is not None and dup_keys.any():
        tracker.record_anomaly(
            spec.name, "conflicting_duplicates",
            int(table.loc[dup_keys, KEY_COLUMNS].drop_duplicates().shape[0]),
            f"collapsed by {spec.aggregation}",
            table.loc[dup_keys, "region"].unique().tolist(),
        )

    grouped = table.groupby(KEY_COLUMNS, as_index=False, sort=True)["value"]
    if spec.aggregation == "sum":
        return grouped.sum(min_count=1)
    return grouped.mean()


def reconcile_vintage(
    table: pd.DataFrame,
    crosswalk: Crosswalk,
    spec: SourceSpec,
    settings: Settings,
    tracker: DataLineageTracker,
) -> tuple[pd.DataFrame, VintageDecision, float]:
    """
    Bring a raw-vintage table onto the target (old) vintage.

    Raises:
        SchemaError: no codes of the configured length exist in the source
    """
    at_level = table["region"].str.len() == settings.code_length
    table = table[at_level.fillna(False).astype(bool)]
    if table.empty:
        raise SchemaError(
            f"{spec.name}: no region codes of length {settings.code_length}. "
            "Check code_length or the source's code column."
        )

    codes = table["region"].unique()
    rate = crosswalk.match_rate(codes, vintage="new")
    logger.info(
        f"{spec.name}: {rate:.1%} of {len(codes)} codes match the new vintage "
        f"(threshold {settings.vintage_match_threshold:.0%})"
    )

    if rate >= settings.vintage_match_threshold:
        unmatched = crosswalk.unmatched_codes(codes, direction="reverse")
        tracker.record_anomaly(
            spec.name, "codes_without_edges", len(unmatched),
            "passed through with weight 1", unmatched,
        )
        reprojected = crosswalk.reproject(
            table, ["value"], how=spec.aggregation, direction="reverse"
        )
        return reprojected, VintageDecision.REPROJECTED, rate

    new_only = crosswalk.new_codes - crosswalk.old_codes
    matched_new = [c for c in codes if c in new_only]
    tracker.record_anomaly(
        spec.name, "new_vintage_codes_in_passthrough", len(matched_new),
        "kept unchanged (below match threshold)", matched_new,
    )
    return table.reset_index(drop=True), VintageDecision.PASSTHROUGH, rate


def clean_table(
    table: pd.DataFrame,
    spec: SourceSpec,
    crosswalk: Crosswalk,
    settings: Settings | None = None,
    tracker: DataLineageTracker | None = None,
) -> pd.DataFrame:
    """
    Clean a parsed (region, year, value) table into the source's field.

    Returns:
        Table with region (target vintage), year, <spec.field>; unique by key
    """
    settings = settings or get_settings()
    tracker = tracker or DataLineageTracker()

    table = validate_values(table, spec, tracker)
    table = collapse(table, spec, tracker)
    table, decision, rate = reconcile_vintage(table, crosswalk, spec, settings, tracker)
    table = collapse(table, spec)

    table["region"] = table["region"].astype("string")
    table["year"] = table["year"].astype("int64")
    table["value"] = table["value"].astype("float64")
    table = table.sort_values(KEY_COLUMNS).reset_index(drop=True)

    assert_unique_keys(table, spec.name)

    tracker.record_source(
        source_name=spec.name,
        vintage=decision,
        rows=len(table),
        regions=table["region"].nunique(),
        match_rate=rate,
        missing_pct=float(table["value"].isna().mean() * 100) if len(table) else 0.0,
        year_range=(int(table["year"].min()), int(table["year"].max())) if len(table) else None,
        notes=[f"aggregation: {spec.aggregation}", f"kind: {spec.kind}"],
    )
    return table.rename(columns={"value": spec.field})


def assert_unique_keys(df: pd.DataFrame, label: str) -> None:
    duplicates = df.duplicated(KEY_COLUMNS).sum()
    if duplicates:
        raise ValueError(f"Dataset {label} has {duplicates} duplicated (region, year) rows.")


class StatisticalSource(DataSource):
    """One external source read from its declared layout."""

    def __init__(
        self,
        spec: SourceSpec,
        settings: Settings | None = None,
        cache_dir: Path | None = None,
    ):
        self.spec = spec
        super().__init__(settings, cache_dir)

    @property
    def source_name(self) -> str:
        return self.spec.name

    @property
    def path(self) -> Path:
        return self.settings.resolve(self.settings.raw_data_dir) / self.spec.file

    def load(self) -> pd.DataFrame:
        """Parse the raw file into (region, year, value) on its own vintage."""
        layout = self.spec.layout
        raw = self.read_raw(self.path, **layout.cache_params())
        if isinstance(layout, WideLayout):
            return parse_wide(raw, layout, self.spec.name)
        return parse_long(raw, layout, self.spec.name)

    def clean(
        self,
        crosswalk: Crosswalk,
        tracker: DataLineageTracker | None = None,
    ) -> pd.DataFrame:
        return clean_table(self.load(), self.spec, crosswalk, self.settings, tracker)
