"""
Fatal pipeline errors.

Data-quality anomalies are not raised; they are logged and recorded on the
run's DataLineageTracker instead.
"""

from __future__ import annotations

from pathlib import Path


class PipelineError(Exception):
    """Base class for errors that abort a pipeline stage."""


class SchemaError(PipelineError):
    """Raised when a required column or artifact is absent or malformed."""


class LayoutMismatchError(SchemaError):
    """Raised when a layout descriptor does not fit the spreadsheet it describes."""

    def __init__(self, message: str, source: str):
        self.source = source
        super().__init__(f"{source}: {message}")


class CrosswalkValidationError(PipelineError):
    """Raised when crosswalk weights do not sum to one per source code."""

    def __init__(
        self,
        groups: dict[str, float],
        missing_codes: int = 0,
        missing_weights: int = 0,
        direction: str = "forward",
    ):
        self.groups = groups
        self.missing_codes = missing_codes
        self.missing_weights = missing_weights
        self.direction = direction
        lines = [f"Crosswalk ({direction}) failed validation:"]
        if missing_codes:
            lines.append(f"  {missing_codes} edges with missing codes")
        if missing_weights:
            lines.append(f"  {missing_weights} edges with missing weights")
        for code, total in sorted(groups.items()):
            lines.append(f"  {code}: weights sum to {total!r}")
        super().__init__("\n".join(lines))


class MissingArtifactError(PipelineError):
    """Raised when a stage's input artifact has not been produced."""

    def __init__(self, path: Path, stage: str):
        self.path = path
        self.stage = stage
        super().__init__(f"Missing artifact {path}. Run '{stage}' first.")


class StaleArtifactError(PipelineError):
    """Raised when an input artifact is older than the inputs it was built from."""

    def __init__(self, path: Path, upstream: Path, stage: str):
        self.path = path
        self.upstream = upstream
        self.stage = stage
        super().__init__(
            f"Artifact {path} is older than {upstream}. Re-run '{stage}' first."
        )
