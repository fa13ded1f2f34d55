"""
Data pipeline orchestration.

Runs the stages in order, persisting each stage's output so any stage can
be re-run on its own:

    build_crosswalk -> clean_sources -> assemble_panel
        -> build_treatment -> build_analysis_panel

A stage refuses to run if an upstream artifact is missing or older than
the artifacts it was built from.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import pandas as pd

from config.settings import Settings, get_settings
from nutspanel.data.crosswalk import Crosswalk, CorrespondenceSource
from nutspanel.data.data_lineage import DataLineageTracker
from nutspanel.data.layouts import SourceSpec, load_source_specs
from nutspanel.data.sources import KEY_COLUMNS, StatisticalSource
from nutspanel.errors import MissingArtifactError, StaleArtifactError
from nutspanel.model.panel_data import PanelBuilder
from nutspanel.model.sample import SampleBuilder
from nutspanel.model.treatment import EventWindow, TreatmentBuilder

logger = logging.getLogger(__name__)

CROSSWALK_FORWARD = "crosswalk_forward.parquet"
CROSSWALK_REVERSE = "crosswalk_reverse.parquet"
PANEL_BASE = "panel_base.parquet"
PANEL_TREATMENT = "panel_treatment.parquet"
PANEL_ANALYSIS = "panel_analysis.parquet"
LINEAGE_JSON = "lineage.json"
LINEAGE_TEXT = "lineage.txt"


@dataclass
class DataQualityReport:
    """Report on data quality issues."""

    source: str
    total_rows: int
    missing_values: dict[str, int]
    year_range: tuple[int, int] | None
    warnings: list[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=datetime.now)


def quality_report(df: pd.DataFrame, source: str) -> DataQualityReport:
    """Summarize missingness and coverage of a table."""
    warnings = []

    missing = {k: int(v) for k, v in df.isna().sum().items() if v > 0}
    year_range = None
    if "year" in df.columns and len(df):
        year_range = (int(df["year"].min()), int(df["year"].max()))

    if missing:
        warnings.append(f"Missing values in columns: {list(missing)}")

    pct_missing = df.isna().mean().mean() * 100 if len(df.columns) else 0.0
    if pct_missing > 5:
        warnings.append(f"High overall missing rate: {pct_missing:.1f}%")

    return DataQualityReport(
        source=source,
        total_rows=len(df),
        missing_values=missing,
        year_range=year_range,
        warnings=warnings,
    )


def write_table(df: pd.DataFrame, path: Path, sort_by: list[str]) -> Path:
    """Write a table sorted by key so reruns produce the same file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    df.sort_values(sort_by).reset_index(drop=True).to_parquet(path, index=False)
    logger.info(f"Saved {len(df)} rows to {path}")
    return path


class DataPipeline:
    """Orchestrates source cleaning and panel construction."""

    def __init__(
        self,
        settings: Settings | None = None,
        tracker: DataLineageTracker | None = None,
    ):
        self.settings = settings or get_settings()
        self.tracker = tracker or DataLineageTracker()
        self.processed_dir = self.settings.resolve(self.settings.processed_data_dir)
        self.crosswalks_dir = self.settings.resolve(self.settings.crosswalks_dir)
        self._specs: dict[str, SourceSpec] | None = None
        self._quality_reports: list[DataQualityReport] = []

    @property
    def specs(self) -> dict[str, SourceSpec]:
        if self._specs is None:
            self._specs = load_source_specs(self.settings.resolve(self.settings.sources_config))
        return self._specs

    @property
    def event_columns(self) -> list[str]:
        s = self.settings
        return EventWindow(s.n_leads, s.n_lags, s.reference_offset).columns

    # Artifact paths

    @property
    def crosswalk_paths(self) -> list[Path]:
        return [self.crosswalks_dir / CROSSWALK_FORWARD, self.crosswalks_dir / CROSSWALK_REVERSE]

    @property
    def correspondence_path(self) -> Path:
        return self.settings.resolve(self.settings.raw_data_dir) / self.settings.crosswalk_file

    def raw_path(self, name: str) -> Path:
        return self.settings.resolve(self.settings.raw_data_dir) / self.specs[name].file

    def clean_path(self, name: str) -> Path:
        return self.processed_dir / f"clean_{name}.parquet"

    @property
    def clean_paths(self) -> list[Path]:
        return [self.clean_path(name) for name in self.specs]

    def panel_path(self, filename: str = PANEL_ANALYSIS) -> Path:
        return self.processed_dir / filename

    def require(self, path: Path, stage: str, upstream: list[Path] | None = None) -> Path:
        """
        Check that an artifact exists and is not older than its inputs.

        Raises:
            MissingArtifactError: path does not exist
            StaleArtifactError: an upstream input was written after path
        """
        if not path.exists():
            raise MissingArtifactError(path, stage)
        mtime = path.stat().st_mtime_ns
        for up in upstream or []:
            if up.exists() and up.stat().st_mtime_ns > mtime:
                raise StaleArtifactError(path, up, stage)
        return path

    def discard(self, paths: list[Path]) -> None:
        """Remove a stage's previous outputs so a failed rerun leaves none behind."""
        for path in paths:
            if path.exists():
                path.unlink()
                logger.debug(f"Removed previous artifact {path}")

    def clear_caches(self) -> None:
        """Drop cached raw grids for the correspondence table and every source."""
        CorrespondenceSource(self.settings).clear_cache()
        for spec in self.specs.values():
            StatisticalSource(spec, self.settings).clear_cache()

    # Stages

    def build_crosswalk(self) -> Crosswalk:
        """Stage 1: build and persist both crosswalk directions."""
        self.discard(self.crosswalk_paths)
        crosswalk = CorrespondenceSource(self.settings).build()
        forward_path, reverse_path = self.crosswalk_paths
        write_table(crosswalk.forward, forward_path, ["source", "target"])
        write_table(crosswalk.reverse, reverse_path, ["source", "target"])
        return crosswalk

    def load_crosswalk(self) -> Crosswalk:
        forward_path, reverse_path = self.crosswalk_paths
        self.require(forward_path, "build-crosswalk", [self.correspondence_path])
        self.require(reverse_path, "build-crosswalk", [forward_path])
        return Crosswalk(
            forward=pd.read_parquet(forward_path),
            reverse=pd.read_parquet(reverse_path),
        )

    def clean_sources(self) -> dict[str, pd.DataFrame]:
        """Stage 2: clean every declared source onto the target vintage."""
        self.discard(self.clean_paths)
        crosswalk = self.load_crosswalk()
        tables = {}
        for name, spec in self.specs.items():
            logger.info(f"Cleaning {name}...")
            tables[name] = StatisticalSource(spec, self.settings).clean(crosswalk, self.tracker)

        # Written only once every source has cleaned
        cleaned = {}
        for name, table in tables.items():
            write_table(table, self.clean_path(name), KEY_COLUMNS)
            self._quality_reports.append(quality_report(table, name))
            cleaned[self.specs[name].field] = table
        return cleaned

    def load_clean_sources(self) -> dict[str, pd.DataFrame]:
        cleaned = {}
        for name, spec in self.specs.items():
            path = self.require(
                self.clean_path(name), "clean-sources", self.crosswalk_paths + [self.raw_path(name)]
            )
            cleaned[spec.field] = pd.read_parquet(path)
        return cleaned

    def assemble_panel(self) -> pd.DataFrame:
        """Stage 3: join cleaned sources into the base panel."""
        self.discard([self.panel_path(PANEL_BASE)])
        panel = PanelBuilder(self.settings, self.tracker).build(self.load_clean_sources())
        write_table(panel, self.panel_path(PANEL_BASE), KEY_COLUMNS)
        self._quality_reports.append(quality_report(panel, "panel_base"))
        return panel

    def build_treatment(self) -> pd.DataFrame:
        """Stage 4: add baseline, event timing and event-time dummies."""
        self.discard([self.panel_path(PANEL_TREATMENT)])
        path = self.require(self.panel_path(PANEL_BASE), "build-panel", self.clean_paths)
        result = TreatmentBuilder(self.settings, self.tracker).build(pd.read_parquet(path))
        write_table(result.panel, self.panel_path(PANEL_TREATMENT), KEY_COLUMNS)
        return result.panel

    def build_analysis_panel(self) -> pd.DataFrame:
        """Stage 5: add sample flags and persist the analysis panel."""
        self.discard([self.panel_path(PANEL_ANALYSIS)])
        path = self.require(
            self.panel_path(PANEL_TREATMENT), "build-treatment", [self.panel_path(PANEL_BASE)]
        )
        panel = SampleBuilder(self.settings).apply(pd.read_parquet(path))
        write_table(panel, self.panel_path(PANEL_ANALYSIS), KEY_COLUMNS)
        self._quality_reports.append(quality_report(panel, "panel_analysis"))
        return panel

    def load_analysis_panel(self) -> pd.DataFrame:
        path = self.require(
            self.panel_path(PANEL_ANALYSIS), "build-analysis", [self.panel_path(PANEL_TREATMENT)]
        )
        return pd.read_parquet(path)

    def run(self) -> pd.DataFrame:
        """Run every stage and save the lineage report."""
        self.build_crosswalk()
        self.clean_sources()
        self.assemble_panel()
        self.build_treatment()
        panel = self.build_analysis_panel()
        self.save_lineage()
        return panel

    def save_lineage(self) -> tuple[Path, Path]:
        json_path = self.processed_dir / LINEAGE_JSON
        text_path = self.processed_dir / LINEAGE_TEXT
        self.tracker.save(json_path)
        self.tracker.save_report(text_path)
        return json_path, text_path

    def get_quality_reports(self) -> list[DataQualityReport]:
        """Get all data quality reports."""
        return self._quality_reports
