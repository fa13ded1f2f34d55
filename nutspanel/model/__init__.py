"""
Panel assembly, treatment construction and estimation.
"""

from nutspanel.model.panel_data import PanelBuilder, PANEL_COLUMNS
from nutspanel.model.treatment import EventWindow, TreatmentBuilder, TreatmentResult, event_column
from nutspanel.model.sample import SampleBuilder, SAMPLE_COLUMNS
from nutspanel.model.estimation import RegressionSpec, EstimationResult, default_specs, fit_spec, fit_all

__all__ = [
    "PanelBuilder",
    "PANEL_COLUMNS",
    "EventWindow",
    "TreatmentBuilder",
    "TreatmentResult",
    "event_column",
    "SampleBuilder",
    "SAMPLE_COLUMNS",
    "RegressionSpec",
    "EstimationResult",
    "default_specs",
    "fit_spec",
    "fit_all",
]
