"""
Integration tests for the staged data pipeline.

Runs every stage against the synthetic raw inputs written by
tests.fixtures.synthetic_panel.write_raw_inputs.
"""

import json
import os

import pytest
import pandas as pd

from nutspanel.data.data_lineage import DataLineageTracker
from nutspanel.data.data_pipeline import (
    CROSSWALK_FORWARD,
    PANEL_BASE,
    PANEL_TREATMENT,
    DataPipeline,
    quality_report,
)
from nutspanel.errors import (
    CrosswalkValidationError,
    MissingArtifactError,
    SchemaError,
    StaleArtifactError,
)
from nutspanel.model.panel_data import PANEL_COLUMNS
from nutspanel.model.sample import SAMPLE_COLUMNS
from tests.fixtures.synthetic_panel import (
    EVENT_YEAR,
    OLD_CODES,
    TREATED,
    YEARS,
    make_correspondence,
    make_settings,
    write_raw_inputs,
)


@pytest.fixture
def raw(tmp_path):
    return write_raw_inputs(tmp_path)


@pytest.fixture
def pipeline(tmp_path, raw):
    return DataPipeline(make_settings(tmp_path), DataLineageTracker())


@pytest.fixture
def panel(pipeline):
    return pipeline.run()


def _touch_after(path, reference):
    later = reference.stat().st_mtime + 60
    os.utime(path, (later, later))


def _cell(panel, region, year, column):
    row = panel[(panel["region"] == region) & (panel["year"] == year)]
    assert len(row) == 1
    return row[column].iloc[0]


class TestStages:
    """Test stage ordering and artifact checks."""

    def test_crosswalk_artifacts(self, pipeline):
        crosswalk = pipeline.build_crosswalk()
        for path in pipeline.crosswalk_paths:
            assert path.exists()
        assert path.parent.name == "crosswalks"
        assert crosswalk.old_codes == set(OLD_CODES)

    def test_crosswalk_reloads(self, pipeline):
        built = pipeline.build_crosswalk()
        loaded = pipeline.load_crosswalk()
        pd.testing.assert_frame_equal(
            built.forward.sort_values(["source", "target"]).reset_index(drop=True),
            loaded.forward,
        )

    def test_clean_before_crosswalk(self, pipeline):
        with pytest.raises(MissingArtifactError, match="build-crosswalk"):
            pipeline.clean_sources()

    def test_treatment_before_panel(self, pipeline):
        with pytest.raises(MissingArtifactError, match=PANEL_BASE):
            pipeline.build_treatment()

    def test_stale_clean_sources(self, pipeline):
        """Rebuilding the crosswalk invalidates the cleaned sources."""
        pipeline.build_crosswalk()
        pipeline.clean_sources()
        forward = pipeline.crosswalks_dir / CROSSWALK_FORWARD
        later = pipeline.clean_path("population").stat().st_mtime + 60
        os.utime(forward, (later, later))
        with pytest.raises(StaleArtifactError, match="clean-sources"):
            pipeline.assemble_panel()

    def test_failed_crosswalk_rebuild_blocks_cleaning(self, pipeline):
        """A correspondence edit that fails validation leaves no crosswalk to clean against."""
        pipeline.run()
        raw = make_correspondence()
        raw.loc[raw["Code 2021"] == "DE1B", "Share"] = "600"
        raw.to_csv(pipeline.correspondence_path, index=False)
        _touch_after(pipeline.correspondence_path, pipeline.crosswalk_paths[0])

        with pytest.raises(CrosswalkValidationError):
            pipeline.build_crosswalk()
        for path in pipeline.crosswalk_paths:
            assert not path.exists()
        with pytest.raises(MissingArtifactError, match="build-crosswalk"):
            pipeline.clean_sources()

    def test_failed_source_leaves_no_clean_tables(self, pipeline):
        """One failing source means no source is persisted, old or new."""
        pipeline.build_crosswalk()
        pipeline.clean_sources()
        pipeline.raw_path("unemployment_rate").unlink()

        with pytest.raises(SchemaError, match="not found"):
            pipeline.clean_sources()
        for path in pipeline.clean_paths:
            assert not path.exists()
        with pytest.raises(MissingArtifactError, match="clean-sources"):
            pipeline.assemble_panel()

    def test_raw_source_newer_than_clean_table(self, pipeline):
        pipeline.build_crosswalk()
        pipeline.clean_sources()
        _touch_after(pipeline.raw_path("population"), pipeline.clean_path("population"))
        with pytest.raises(StaleArtifactError, match="population"):
            pipeline.assemble_panel()

    def test_failed_stage_discards_previous_output(self, pipeline):
        pipeline.run()
        pipeline.panel_path(PANEL_BASE).unlink()
        with pytest.raises(MissingArtifactError):
            pipeline.build_treatment()
        assert not pipeline.panel_path(PANEL_TREATMENT).exists()

    def test_clear_caches_without_cache(self, pipeline):
        pipeline.clear_caches()
        pipeline.build_crosswalk()

    def test_clean_sources_keyed_by_field(self, pipeline):
        pipeline.build_crosswalk()
        cleaned = pipeline.clean_sources()
        assert set(cleaned) == {
            "population", "gdp", "employment_rate", "unemployment_rate", "fund_payment",
        }
        for name, table in cleaned.items():
            assert list(table.columns) == ["region", "year", name]
            assert not table.duplicated(["region", "year"]).any()


class TestRun:
    """Test the analysis panel produced by a full run."""

    def test_unique_keys(self, panel):
        assert not panel.duplicated(["region", "year"]).any()
        assert len(panel) == len(OLD_CODES) * len(YEARS)

    def test_regions_on_old_vintage(self, panel):
        """Non-member regions are dropped; new-vintage codes are mapped back."""
        assert set(panel["region"]) == set(OLD_CODES)

    def test_columns(self, panel, pipeline):
        for col in PANEL_COLUMNS + SAMPLE_COLUMNS + pipeline.event_columns:
            assert col in panel.columns

    def test_split_region_summed(self, panel, raw):
        gdp = raw["gdp"]
        expected = gdp.loc["DE1A", 2003] + gdp.loc["DE1B", 2003]
        assert _cell(panel, "DE11", 2003, "gdp") == pytest.approx(expected)

    def test_merged_region_shared(self, panel, raw):
        expected = 0.5 * raw["gdp"].loc["DE2X", 2003]
        assert _cell(panel, "DE21", 2003, "gdp") == pytest.approx(expected)
        assert _cell(panel, "DE22", 2003, "gdp") == pytest.approx(expected)

    def test_rate_rescaled(self, panel, raw):
        expected = raw["unemployment_rate"].loc["AT12", 2005] * 100
        assert _cell(panel, "AT12", 2005, "unemployment_rate") == pytest.approx(expected)

    def test_payments_selected_funds(self, panel, raw):
        expected = raw["fund_payment"].loc["AT12", 2004]
        assert _cell(panel, "AT12", 2004, "fund_payment") == pytest.approx(expected, abs=0.02)

    def test_per_capita(self, panel):
        row = panel[(panel["region"] == "FR10") & (panel["year"] == 2001)].iloc[0]
        assert row["fund_per_capita"] == pytest.approx(row["fund_payment"] / row["population"])

    def test_treated_regions(self, panel):
        treated = panel.loc[panel["treated"], "region"].unique()
        assert sorted(treated) == sorted(TREATED)
        events = panel.loc[panel["treated"]].groupby("region")["event_year"].first()
        assert (events == EVENT_YEAR).all()

    def test_lineage_files(self, pipeline, panel):
        json_path = pipeline.processed_dir / "lineage.json"
        assert json_path.exists()
        assert (pipeline.processed_dir / "lineage.txt").exists()

        lineage = json.loads(json_path.read_text())
        vintages = {name: rec["vintage"] for name, rec in lineage["sources"].items()}
        assert vintages == {
            "population": "passthrough",
            "gdp": "reprojected",
            "employment_rate": "reprojected",
            "unemployment_rate": "passthrough",
            "fund_payment": "passthrough",
        }

    def test_rerun_identical(self, tmp_path, panel):
        again = DataPipeline(make_settings(tmp_path), DataLineageTracker()).run()
        pd.testing.assert_frame_equal(panel, again)

    def test_rerun_byte_identical(self, tmp_path, pipeline, panel):
        """Every persisted artifact is rewritten with the same bytes."""
        paths = (
            pipeline.crosswalk_paths
            + pipeline.clean_paths
            + [pipeline.panel_path(PANEL_BASE), pipeline.panel_path(PANEL_TREATMENT), pipeline.panel_path()]
        )
        before = {path: path.read_bytes() for path in paths}
        DataPipeline(make_settings(tmp_path), DataLineageTracker()).run()
        for path in paths:
            assert path.read_bytes() == before[path], path.name

    def test_reload_analysis_panel(self, pipeline, panel):
        pd.testing.assert_frame_equal(pipeline.load_analysis_panel(), panel)


class TestQualityReport:
    """Test quality summaries."""

    def test_report_fields(self):
        df = pd.DataFrame({"region": ["AT11", "AT12"], "year": [2001, 2003], "value": [1.0, None]})
        report = quality_report(df, "demo")
        assert report.total_rows == 2
        assert report.missing_values == {"value": 1}
        assert report.year_range == (2001, 2003)
        assert any("High overall missing rate" in w for w in report.warnings)

    def test_reports_collected(self, pipeline, panel):
        sources = [r.source for r in pipeline.get_quality_reports()]
        assert "population" in sources
        assert sources[-1] == "panel_analysis"
