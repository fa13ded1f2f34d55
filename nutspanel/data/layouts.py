"""
Declarative layout descriptors for the raw statistical exports.

Each source is described once in config/sources.yaml; the cleaner reads the
descriptor instead of guessing column positions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

import yaml

from nutspanel.errors import SchemaError

FieldKind = Literal["count", "monetary", "rate"]
Aggregation = Literal["sum", "average"]

VALID_KINDS = ("count", "monetary", "rate")
VALID_AGGREGATIONS = ("sum", "average")


@dataclass(frozen=True)
class WideLayout:
    """Spreadsheet export with one (value, flag/blank) column pair per year.

    Row and column indices are zero-based positions in the raw grid.
    ``stride=None`` asks the cleaner to detect the alternation itself.
    """

    header_row: int
    first_year: int
    code_column: int = 0
    first_data_column: int = 1
    stride: int | None = 2
    sheet_name: str | int = 0
    n_years: int | None = None

    format: str = field(default="wide", init=False)

    def cache_params(self) -> dict[str, Any]:
        return {
            "format": self.format,
            "sheet_name": self.sheet_name,
        }


@dataclass(frozen=True)
class LongLayout:
    """Delimited export already shaped as one row per (region, year)."""

    region_column: str
    year_column: str
    value_column: str
    delimiter: str = ","
    fund_column: str | None = None
    funds: tuple[str, ...] = ()

    format: str = field(default="long", init=False)

    def cache_params(self) -> dict[str, Any]:
        return {"format": self.format, "delimiter": self.delimiter}


@dataclass(frozen=True)
class SourceSpec:
    """One external source and how its values behave."""

    name: str
    file: str
    field: str
    kind: FieldKind
    aggregation: Aggregation
    layout: WideLayout | LongLayout

    @classmethod
    def from_dict(cls, name: str, d: dict) -> SourceSpec:
        try:
            layout_d = dict(d["layout"])
            fmt = layout_d.pop("format", "wide")
            if fmt == "wide":
                layout: WideLayout | LongLayout = WideLayout(**layout_d)
            elif fmt == "long":
                if "funds" in layout_d:
                    layout_d["funds"] = tuple(layout_d["funds"] or ())
                layout = LongLayout(**layout_d)
            else:
                raise SchemaError(f"Source '{name}': unknown layout format '{fmt}'")

            spec = cls(
                name=name,
                file=d["file"],
                field=d.get("field", name),
                kind=d["kind"],
                aggregation=d["aggregation"],
                layout=layout,
            )
        except (KeyError, TypeError) as e:
            raise SchemaError(
                f"Source '{name}' has an incomplete layout descriptor: {e}. "
                "Check config/sources.yaml."
            ) from e

        if spec.kind not in VALID_KINDS:
            raise SchemaError(f"Source '{name}': kind must be one of {VALID_KINDS}")
        if spec.aggregation not in VALID_AGGREGATIONS:
            raise SchemaError(f"Source '{name}': aggregation must be one of {VALID_AGGREGATIONS}")
        return spec


def load_source_specs(path: str | Path) -> dict[str, SourceSpec]:
    """Load source descriptors from YAML, preserving file order."""
    path = Path(path)
    if not path.exists():
        raise SchemaError(f"Source layout file not found: {path}")

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    sources = data.get("sources")
    if not isinstance(sources, dict) or not sources:
        raise SchemaError(f"{path} defines no 'sources' mapping")

    return {name: SourceSpec.from_dict(name, d) for name, d in sources.items()}
