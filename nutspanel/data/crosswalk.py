"""
NUTS vintage crosswalk.

Builds a weighted bipartite mapping between two NUTS vintages from a raw
correspondence table, in both directions, and reprojects value tables
across it.

Reprojection joins values to edges on the source code, multiplies by the
edge weight and then either sums (extensive quantities such as population
or payments) or takes the weight-normalized average (intensive quantities
such as rates) over edges sharing a target code.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Literal, Sequence

import numpy as np
import pandas as pd

from nutspanel.data.base import DataSource
from nutspanel.errors import CrosswalkValidationError, SchemaError

logger = logging.getLogger(__name__)

WEIGHT_TOLERANCE = 1e-6
EDGE_COLUMNS = ["source", "target", "weight"]
HEADER_SEARCH_ROWS = 25

Direction = Literal["forward", "reverse"]


def normalize_header(column_name: str) -> str:
    """'Code 2016' -> 'code_2016'."""
    cleaned = str(column_name).replace("\ufeff", "").strip().lower()
    cleaned = re.sub(r"[^a-z0-9]+", "_", cleaned)
    return cleaned.strip("_")


def normalize_code_column(series: pd.Series) -> pd.Series:
    """Trim and upper-case region codes; blanks become missing."""
    codes = series.astype("string").str.strip().str.upper()
    return codes.mask(codes.isin(["", "NAN", "NONE", ":"]))


def parse_share(series: pd.Series) -> pd.Series:
    """Parse a share column into weights in [0, 1].

    Values in (1, 100] are percentages; values in [0, 1] are used as-is;
    anything else is invalid and becomes missing.
    """
    cleaned = series.astype("string").str.strip().str.rstrip("%").str.replace(",", ".", regex=False)
    values = pd.Series(
        pd.to_numeric(cleaned, errors="coerce").to_numpy(dtype="float64", na_value=np.nan),
        index=series.index,
    )
    pct = (values > 1) & (values <= 100)
    weights = values.where(~pct, values / 100.0)
    return weights.where(weights.between(0, 1))


def normalize_weights(edges: pd.DataFrame) -> pd.DataFrame:
    """Divide each edge weight by its source group's total."""
    edges = edges.copy()
    totals = edges.groupby("source")["weight"].transform("sum")
    edges["weight"] = edges["weight"] / totals.replace(0, np.nan)
    return edges


def validate_edges(edges: pd.DataFrame, direction: str = "forward") -> None:
    """Fail loudly if codes/weights are missing or any group does not sum to 1."""
    missing_codes = int(edges[["source", "target"]].isna().any(axis=1).sum())
    missing_weights = int(edges["weight"].isna().sum())

    sums = edges.groupby("source")["weight"].sum(min_count=1)
    bad = sums[sums.isna() | ((sums - 1.0).abs() > WEIGHT_TOLERANCE)]

    if missing_codes or missing_weights or not bad.empty:
        for code, total in bad.items():
            logger.error(f"Crosswalk ({direction}) group {code} sums to {total}")
        raise CrosswalkValidationError(
            groups={str(k): float(v) if pd.notna(v) else float("nan") for k, v in bad.items()},
            missing_codes=missing_codes,
            missing_weights=missing_weights,
            direction=direction,
        )


def reverse_edges(forward: pd.DataFrame) -> pd.DataFrame:
    """Swap roles and re-normalize per new-vintage code.

    Weights are conditional on the grouping direction, so this is not a
    plain transpose.
    """
    reverse = forward.rename(columns={"source": "target", "target": "source"})[EDGE_COLUMNS]
    reverse = normalize_weights(reverse)
    return reverse.sort_values(["source", "target"]).reset_index(drop=True)


@dataclass(frozen=True)
class Crosswalk:
    """Forward (old -> new vintage) and reverse (new -> old) edge tables."""

    forward: pd.DataFrame
    reverse: pd.DataFrame

    def edges(self, direction: Direction = "forward") -> pd.DataFrame:
        if direction == "forward":
            return self.forward
        if direction == "reverse":
            return self.reverse
        raise ValueError(f"Unknown crosswalk direction: {direction}")

    @property
    def old_codes(self) -> set[str]:
        return set(self.forward["source"])

    @property
    def new_codes(self) -> set[str]:
        return set(self.reverse["source"])

    def match_rate(self, codes: Sequence[str] | pd.Series, vintage: str = "new") -> float:
        """Share of distinct codes found among one vintage's keys."""
        distinct = pd.Series(codes).dropna().unique()
        if len(distinct) == 0:
            return 0.0
        keys = self.new_codes if vintage == "new" else self.old_codes
        return float(np.mean([c in keys for c in distinct]))

    def unmatched_codes(self, codes: Sequence[str] | pd.Series, direction: Direction = "forward") -> list[str]:
        keys = set(self.edges(direction)["source"])
        return sorted(c for c in pd.Series(codes).dropna().unique() if c not in keys)

    def reproject(
        self,
        values: pd.DataFrame,
        value_columns: Sequence[str],
        how: Literal["sum", "average"] = "sum",
        direction: Direction = "forward",
        region_col: str = "region",
        keep_unmatched: bool = True,
    ) -> pd.DataFrame:
        """
        Reproject a value table onto the other vintage.

        Args:
            values: Table keyed by region_col plus any other key columns (e.g. year)
            value_columns: Numeric columns to reproject
            how: "sum" for extensive quantities, "average" for intensive ones
            direction: Which edge table to use
            region_col: Column holding the source-vintage code
            keep_unmatched: Pass codes with no edges through with weight 1

        Returns:
            Table keyed by region_col (now target-vintage) and the other keys
        """
        if how not in ("sum", "average"):
            raise ValueError(f"Unknown aggregation: {how}")

        value_columns = list(value_columns)
        other_keys = [c for c in values.columns if c != region_col and c not in value_columns]

        values = values.assign(**{region_col: values[region_col].astype("string")})
        merged = values.merge(
            self.edges(direction), left_on=region_col, right_on="source", how="left"
        )
        unmatched = merged["target"].isna()
        if unmatched.any():
            n_codes = merged.loc[unmatched, region_col].nunique()
            if keep_unmatched:
                logger.info(f"Passing {n_codes} codes without crosswalk edges through unchanged")
                merged.loc[unmatched, "target"] = merged.loc[unmatched, region_col]
                merged.loc[unmatched, "weight"] = 1.0
            else:
                logger.info(f"Dropping {n_codes} codes without crosswalk edges")
                merged = merged[~unmatched]

        keys = ["target"] + other_keys
        weighted = merged[keys].copy()
        for col in value_columns:
            weighted[col] = merged[col] * merged["weight"]
            if how == "average":
                weighted[f"_w_{col}"] = merged["weight"].where(merged[col].notna())

        grouped = weighted.groupby(keys, sort=True, dropna=False).sum(min_count=1)
        if how == "average":
            for col in value_columns:
                denom = grouped.pop(f"_w_{col}").replace(0, np.nan)
                grouped[col] = grouped[col] / denom

        result = grouped.reset_index().rename(columns={"target": region_col})
        return result[[region_col] + other_keys + value_columns]


def build_crosswalk(
    raw: pd.DataFrame,
    code_length: int,
    old_column: str,
    new_column: str,
    share_column: str | None = None,
) -> Crosswalk:
    """
    Build the forward and reverse crosswalk from a raw correspondence table.

    Args:
        raw: Correspondence table with normalized headers
        code_length: GeoCode length of the target level (4 = NUTS 2)
        old_column: Old-vintage code column
        new_column: New-vintage code column
        share_column: Optional share/weight column

    Returns:
        Validated Crosswalk

    Raises:
        SchemaError: a code column is absent or no rows survive the level filter
        CrosswalkValidationError: weights fail validation in either direction
    """
    for col in (old_column, new_column):
        if col not in raw.columns:
            raise SchemaError(
                f"Correspondence table has no '{col}' column. "
                f"Available columns: {sorted(raw.columns)}"
            )

    edges = pd.DataFrame({
        "source": normalize_code_column(raw[old_column]),
        "target": normalize_code_column(raw[new_column]),
    })
    change_cols = [c for c in raw.columns if "change" in c]
    for col in change_cols:
        edges[col] = raw[col].astype("string").str.strip()

    has_share = (
        share_column is not None
        and share_column in raw.columns
        and raw[share_column].astype("string").str.strip().replace("", pd.NA).notna().any()
    )
    if has_share:
        edges["weight"] = parse_share(raw[share_column])

    edges = edges.dropna(subset=["source", "target"])
    at_level = (edges["source"].str.len() == code_length) & (edges["target"].str.len() == code_length)
    edges = edges[at_level]
    if edges.empty:
        raise SchemaError(
            f"No correspondence rows with {code_length}-character codes in both "
            f"'{old_column}' and '{new_column}'. Check code_length."
        )

    edges = edges.drop_duplicates(subset=["source", "target"], keep="first")

    if not has_share:
        fan_out = edges.groupby("source")["target"].transform("nunique")
        edges["weight"] = 1.0 / fan_out
        logger.info("No share column; assigning equal weights per source fan-out")

    missing = edges["weight"].isna()
    if missing.any():
        bad_sources = sorted(edges.loc[missing, "source"].unique())
        for code in bad_sources:
            logger.error(f"Crosswalk (forward) group {code} has a missing or invalid share")
        raise CrosswalkValidationError(
            groups={str(code): float("nan") for code in bad_sources},
            missing_weights=int(missing.sum()),
            direction="forward",
        )

    forward = normalize_weights(edges)
    forward = forward[EDGE_COLUMNS + change_cols].sort_values(["source", "target"]).reset_index(drop=True)
    validate_edges(forward, "forward")

    reverse = reverse_edges(forward)
    validate_edges(reverse, "reverse")

    logger.info(
        f"Built crosswalk: {forward['source'].nunique()} old codes -> "
        f"{reverse['source'].nunique()} new codes ({len(forward)} edges)"
    )
    return Crosswalk(forward=forward, reverse=reverse)


class CorrespondenceSource(DataSource):
    """Reads the raw vintage correspondence workbook."""

    @property
    def source_name(self) -> str:
        return "correspondence"

    def load(self) -> pd.DataFrame:
        """Read the correspondence sheet and promote its header row."""
        s = self.settings
        path = s.resolve(s.raw_data_dir) / s.crosswalk_file
        grid = self.read_raw(path, sheet_name=s.crosswalk_sheet, delimiter=None)
        return promote_header(grid, [s.crosswalk_old_column, s.crosswalk_new_column])

    def build(self) -> Crosswalk:
        s = self.settings
        return build_crosswalk(
            self.load(),
            code_length=s.code_length,
            old_column=s.crosswalk_old_column,
            new_column=s.crosswalk_new_column,
            share_column=s.crosswalk_share_column,
        )


def promote_header(grid: pd.DataFrame, required: Sequence[str]) -> pd.DataFrame:
    """Find the first row containing every required (normalized) header."""
    # Delimited files already arrive with a header
    named = [normalize_header(c) for c in grid.columns]
    if all(r in named for r in required):
        out = grid.copy()
        out.columns = _dedupe(named)
        return out

    for i in range(min(HEADER_SEARCH_ROWS, len(grid))):
        row = [normalize_header(v) if pd.notna(v) else "" for v in grid.iloc[i]]
        if all(r in row for r in required):
            out = grid.iloc[i + 1:].copy()
            out.columns = _dedupe(row)
            return out.reset_index(drop=True)

    raise SchemaError(
        f"Could not find header row with columns {list(required)} "
        f"in the first {HEADER_SEARCH_ROWS} rows"
    )


def _dedupe(names: list[str]) -> list[str]:
    used: dict[str, int] = {}
    out = []
    for name in names:
        name = name or "unnamed"
        if name in used:
            used[name] += 1
            out.append(f"{name}_{used[name]}")
        else:
            used[name] = 0
            out.append(name)
    return out
