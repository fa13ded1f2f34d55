"""
Sample construction for the analysis panel.

Adds availability flags and the two estimation samples:
- sample_main: outcomes and controls all observed
- sample_did: sample_main plus an observed exposure and event year
"""

import logging

import pandas as pd

from config.settings import Settings, get_settings
from nutspanel.errors import SchemaError

logger = logging.getLogger(__name__)

SAMPLE_COLUMNS = ["has_outcomes", "has_controls", "has_treatment", "sample_main", "sample_did"]


class SampleBuilder:
    """Flags rows usable for estimation."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()

    def apply(self, panel: pd.DataFrame) -> pd.DataFrame:
        """
        Add sample flags.

        Args:
            panel: Panel with treatment columns

        Returns:
            Copy of the panel with boolean flag columns appended
        """
        s = self.settings
        required = list(s.outcome_columns) + list(s.control_columns) + [s.exposure_column, "event_year"]
        missing = [c for c in required if c not in panel.columns]
        if missing:
            raise SchemaError(
                f"CRITICAL: panel lacks sample inputs {missing}. "
                "Run 'nutspanel build-treatment' first."
            )

        df = panel.copy()
        df["has_outcomes"] = df[s.outcome_columns].notna().all(axis=1)
        df["has_controls"] = df[s.control_columns].notna().all(axis=1)
        df["has_treatment"] = (df[s.exposure_column].notna() & df["event_year"].notna()).astype(bool)
        df["sample_main"] = df["has_outcomes"] & df["has_controls"]
        df["sample_did"] = df["sample_main"] & df["has_treatment"]

        logger.info(
            f"Samples: main {int(df['sample_main'].sum())}/{len(df)} rows, "
            f"did {int(df['sample_did'].sum())} rows"
        )
        return df
