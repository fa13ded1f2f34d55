"""
Tests for the command-line interface.
"""

import pytest
from typer.testing import CliRunner

from config.settings import get_settings
from nutspanel.cli import app
from tests.fixtures.synthetic_panel import YEARS, write_raw_inputs

runner = CliRunner()


@pytest.fixture
def project(tmp_path, monkeypatch):
    """Synthetic project configured through environment variables."""
    write_raw_inputs(tmp_path)
    monkeypatch.chdir(tmp_path)
    env = {
        "NUTSPANEL_PROJECT_ROOT": str(tmp_path),
        "NUTSPANEL_SOURCES_CONFIG": "sources.yaml",
        "NUTSPANEL_CROSSWALK_FILE": "correspondence.csv",
        "NUTSPANEL_USE_CACHE": "false",
        "NUTSPANEL_START_YEAR": str(YEARS[0]),
        "NUTSPANEL_END_YEAR": str(YEARS[-1]),
        "NUTSPANEL_N_LEADS": "2",
        "NUTSPANEL_N_LAGS": "2",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    get_settings.cache_clear()
    yield tmp_path
    get_settings.cache_clear()


class TestCommands:
    """Test stage commands and their exit codes."""

    def test_build_crosswalk(self, project):
        result = runner.invoke(app, ["build-crosswalk"])
        assert result.exit_code == 0, result.output
        assert "6 old codes" in result.output
        assert (project / "data" / "crosswalks" / "crosswalk_reverse.parquet").exists()

    def test_stage_out_of_order(self, project):
        result = runner.invoke(app, ["clean-sources"])
        assert result.exit_code == 1
        assert "build-crosswalk" in result.output

    def test_run(self, project):
        result = runner.invoke(app, ["run"])
        assert result.exit_code == 0, result.output
        assert "DATA LINEAGE REPORT" in result.output
        assert (project / "data" / "processed" / "panel_analysis.parquet").exists()

    def test_run_clear_cache(self, project):
        result = runner.invoke(app, ["run", "--clear-cache"])
        assert result.exit_code == 0, result.output
        assert "Cleared cached raw files" in result.output

    def test_stages_in_sequence(self, project):
        for command in ["build-crosswalk", "clean-sources", "build-panel", "build-treatment", "build-analysis"]:
            result = runner.invoke(app, [command])
            assert result.exit_code == 0, f"{command}: {result.output}"
        assert (project / "data" / "processed" / "lineage.json").exists()

    def test_quality(self, project):
        runner.invoke(app, ["run"])
        result = runner.invoke(app, ["quality"])
        assert result.exit_code == 0, result.output
        assert "Regions: 6" in result.output
        assert "Treated regions: 2" in result.output

    def test_estimate_without_panel(self, project):
        result = runner.invoke(app, ["estimate"])
        assert result.exit_code == 1
        assert "build-analysis" in result.output
