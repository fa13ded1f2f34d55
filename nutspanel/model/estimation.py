"""
Two-way fixed-effects estimation on the analysis panel.

Uses linearmodels.PanelOLS with region fixed effects, country-year
effects absorbed as an additional categorical effect, and standard
errors clustered by region.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import pandas as pd

from config.settings import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegressionSpec:
    """One regression on a sample of the analysis panel."""

    name: str
    sample_flag: str
    outcome: str
    regressors: list[str]
    controls: list[str] = field(default_factory=list)
    entity: str = "region"
    time: str = "year"
    other_effect: str | None = "country_year"
    fill_untreated: bool = True

    @property
    def exog(self) -> list[str]:
        return list(self.regressors) + list(self.controls)


@dataclass
class EstimationResult:
    """Coefficients for a fitted RegressionSpec."""

    spec_name: str
    params: pd.Series
    std_errors: pd.Series
    pvalues: pd.Series
    n_obs: int
    n_entities: int
    r2_within: float

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame({
            "spec": self.spec_name,
            "term": self.params.index,
            "coefficient": self.params.values,
            "std_error": self.std_errors.values,
            "pvalue": self.pvalues.values,
            "n_obs": self.n_obs,
            "n_entities": self.n_entities,
            "r2_within": self.r2_within,
        })


def default_specs(settings: Settings, event_columns: list[str]) -> list[RegressionSpec]:
    """Post, intensity and event-study regressions for each outcome."""
    specs = []
    for outcome in settings.outcome_columns:
        controls = [c for c in settings.control_columns if c != outcome]
        specs.extend([
            RegressionSpec(f"{outcome}_post", "sample_main", outcome, ["post"], controls),
            RegressionSpec(f"{outcome}_intensity", "sample_did", outcome, ["intensity"], controls),
            RegressionSpec(f"{outcome}_event_study", "sample_main", outcome, list(event_columns), controls),
        ])
    return specs


def estimation_frame(panel: pd.DataFrame, spec: RegressionSpec) -> pd.DataFrame:
    """Rows of the spec's sample with every regression input observed.

    Never-treated regions carry missing post and event-time values in the
    panel; with ``fill_untreated`` they enter as zeros so they serve as
    controls.
    """
    columns = [spec.entity, spec.time, spec.outcome] + spec.exog
    if spec.other_effect:
        columns.append(spec.other_effect)
    absent = [c for c in columns + [spec.sample_flag] if c not in panel.columns]
    if absent:
        raise ValueError(f"{spec.name}: panel lacks columns {absent}")

    if spec.fill_untreated and "treated" in panel.columns:
        columns.append("treated")

    in_sample = panel[spec.sample_flag].fillna(False).astype(bool)
    df = panel.loc[in_sample, columns].copy()
    for col in [spec.outcome] + spec.exog:
        df[col] = df[col].astype("float64")

    if "treated" in df.columns:
        never = ~df.pop("treated").astype(bool)
        df.loc[never, spec.regressors] = df.loc[never, spec.regressors].fillna(0.0)

    return df.dropna(subset=[spec.outcome] + spec.exog)


def fit_spec(panel: pd.DataFrame, spec: RegressionSpec) -> EstimationResult:
    """
    Fit one regression.

    Args:
        panel: Analysis panel
        spec: Regression to run

    Returns:
        EstimationResult with clustered standard errors
    """
    from linearmodels.panel import PanelOLS

    df = estimation_frame(panel, spec)
    if df.empty:
        raise ValueError(f"{spec.name}: no complete observations in {spec.sample_flag}")

    df = df.set_index([spec.entity, spec.time])
    y = df[spec.outcome]
    X = df[spec.exog]

    other_effects = None
    if spec.other_effect:
        other_effects = pd.DataFrame(
            {spec.other_effect: pd.Categorical(df[spec.other_effect]).codes},
            index=df.index,
        )

    model = PanelOLS(
        y, X,
        entity_effects=True,
        other_effects=other_effects,
        drop_absorbed=True,
        check_rank=False,
    )
    result = model.fit(cov_type="clustered", cluster_entity=True)

    logger.info(f"{spec.name}: {int(result.nobs)} obs, {int(result.entity_info['total'])} regions")
    return EstimationResult(
        spec_name=spec.name,
        params=result.params,
        std_errors=result.std_errors,
        pvalues=result.pvalues,
        n_obs=int(result.nobs),
        n_entities=int(result.entity_info["total"]),
        r2_within=float(result.rsquared_within),
    )


def fit_all(panel: pd.DataFrame, specs: list[RegressionSpec]) -> pd.DataFrame:
    """Fit every spec and stack the coefficient tables."""
    tables = [fit_spec(panel, spec).to_dataframe() for spec in specs]
    return pd.concat(tables, ignore_index=True)
