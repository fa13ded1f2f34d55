"""
Source reading, vintage reconciliation and lineage tracking.

The stage orchestrator lives in nutspanel.data.data_pipeline and is not
re-exported here because it depends on nutspanel.model.
"""

from nutspanel.data.base import DataSource
from nutspanel.data.crosswalk import Crosswalk, CorrespondenceSource, build_crosswalk
from nutspanel.data.data_lineage import DataLineageTracker, VintageDecision
from nutspanel.data.layouts import LongLayout, SourceSpec, WideLayout, load_source_specs
from nutspanel.data.sources import StatisticalSource, clean_table, parse_long, parse_wide

__all__ = [
    "DataSource",
    "Crosswalk",
    "CorrespondenceSource",
    "build_crosswalk",
    "DataLineageTracker",
    "VintageDecision",
    "LongLayout",
    "SourceSpec",
    "WideLayout",
    "load_source_specs",
    "StatisticalSource",
    "clean_table",
    "parse_long",
    "parse_wide",
]
