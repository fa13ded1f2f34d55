"""
nutspanel settings.
"""

from pathlib import Path
from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

EU27_MEMBER_STATES = [
    "AT", "BE", "BG", "CY", "CZ", "DE", "DK", "EE", "EL", "ES", "FI", "FR", "HR", "HU",
    "IE", "IT", "LT", "LU", "LV", "MT", "NL", "PL", "PT", "RO", "SE", "SI", "SK",
]


class Settings(BaseSettings):
    """Pipeline settings loaded from environment variables.

    Constructed once per process and handed to every stage; instances are frozen.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="NUTSPANEL_",
        extra="ignore",
        frozen=True,
    )

    # Directories
    project_root: Path = Field(
        default_factory=lambda: Path(__file__).parent.parent,
        description="Project root directory",
    )
    cache_dir: Path = Field(default=Path(".cache"), description="Cache directory")
    data_dir: Path = Field(default=Path("data"), description="Data directory")
    output_dir: Path = Field(default=Path("outputs"), description="Output directory")
    sources_config: Path = Field(
        default=Path("config/sources.yaml"),
        description="Declarative layout descriptors for the raw statistical exports",
    )
    use_cache: bool = Field(default=True, description="Cache parsed raw files with diskcache")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")

    # Geography
    code_length: int = Field(default=4, ge=3, le=5, description="GeoCode length (4 = NUTS 2)")
    crosswalk_file: str = Field(
        default="nuts_2016_2021_correspondence.xlsx",
        description="Raw vintage correspondence workbook (under raw_data_dir)",
    )
    crosswalk_sheet: str | int = Field(default=0, description="Correspondence sheet name or index")
    crosswalk_old_column: str = Field(default="code_2016", description="Old-vintage code column")
    crosswalk_new_column: str = Field(default="code_2021", description="New-vintage code column")
    crosswalk_share_column: str = Field(default="share", description="Optional share/weight column")
    vintage_match_threshold: float = Field(
        default=0.6,
        ge=0.0,
        le=1.0,
        description="Share of raw codes matching the new vintage above which a source is reprojected",
    )
    member_states: list[str] = Field(
        default_factory=lambda: list(EU27_MEMBER_STATES),
        description="Country prefixes kept by the jurisdiction filter",
    )

    # Panel
    start_year: int = Field(default=2000, description="First panel year")
    end_year: int = Field(default=2023, description="Last panel year")
    gdp_scale: float = Field(
        default=1_000_000.0, gt=0, description="Multiplier turning raw GDP units into EUR"
    )

    # Treatment
    exposure_column: str = Field(default="fund_per_capita", description="Per-capita exposure")
    baseline_start_year: int | None = Field(
        default=None, description="Start year for baseline exposure (None = auto)"
    )
    baseline_end_year: int | None = Field(
        default=None, description="End year for baseline exposure (None = auto)"
    )
    baseline_auto_years: int = Field(default=5, ge=1, description="Length of the auto baseline window")
    jump_threshold: float = Field(default=0.25, ge=0.0, description="Relative jump threshold delta")
    n_leads: int = Field(default=4, ge=1, description="Lead count L")
    n_lags: int = Field(default=5, ge=0, description="Lag count K")
    reference_offset: int = Field(default=-1, description="Omitted event-time offset")

    # Sample
    outcome_columns: list[str] = Field(default_factory=lambda: ["log_gdp_pc"])
    control_columns: list[str] = Field(
        default_factory=lambda: ["employment_rate", "unemployment_rate", "log_population"]
    )

    @model_validator(mode="after")
    def _check_windows(self) -> "Settings":
        if self.start_year > self.end_year:
            raise ValueError(f"start_year {self.start_year} is after end_year {self.end_year}")
        if (self.baseline_start_year is None) != (self.baseline_end_year is None):
            raise ValueError("baseline_start_year and baseline_end_year must be set together")
        if (
            self.baseline_start_year is not None
            and self.baseline_start_year > self.baseline_end_year
        ):
            raise ValueError("baseline_start_year is after baseline_end_year")
        if not -self.n_leads <= self.reference_offset <= self.n_lags:
            raise ValueError(
                f"reference_offset {self.reference_offset} outside "
                f"[-{self.n_leads}, {self.n_lags}]"
            )
        return self

    @property
    def raw_data_dir(self) -> Path:
        return self.data_dir / "raw"

    @property
    def processed_data_dir(self) -> Path:
        return self.data_dir / "processed"

    @property
    def crosswalks_dir(self) -> Path:
        return self.data_dir / "crosswalks"

    def resolve(self, path: Path) -> Path:
        """Anchor a relative path at the project root."""
        return path if path.is_absolute() else self.project_root / path


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
