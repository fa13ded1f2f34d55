"""
Data lineage tracking for the regional panel pipeline.

Records how each source was read and reconciled (vintage decision, match
rate, row counts) and accumulates non-fatal data-quality anomalies so they
can be surfaced at the end of a run. One tracker is created per run and
passed to each stage.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any
import json

logger = logging.getLogger(__name__)

MAX_EXAMPLES = 5


class VintageDecision(Enum):
    """How a source's region codes were reconciled with the target vintage."""
    REPROJECTED = "reprojected"  # Codes matched the new vintage, mapped through the crosswalk
    PASSTHROUGH = "passthrough"  # Codes treated as already on the target vintage


@dataclass
class DataSourceRecord:
    """Record of a single cleaned source."""

    source_name: str
    vintage: VintageDecision
    rows: int = 0
    regions: int = 0
    match_rate: float | None = None
    missing_pct: float = 0.0
    year_range: tuple[int, int] | None = None
    notes: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "source_name": self.source_name,
            "vintage": self.vintage.value,
            "rows": self.rows,
            "regions": self.regions,
            "match_rate": self.match_rate,
            "missing_pct": self.missing_pct,
            "year_range": list(self.year_range) if self.year_range else None,
            "notes": self.notes,
        }


@dataclass
class Anomaly:
    """A counted data-quality condition handled by policy rather than abort."""

    stage: str
    kind: str
    count: int
    policy: str
    examples: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "stage": self.stage,
            "kind": self.kind,
            "count": self.count,
            "policy": self.policy,
            "examples": self.examples,
        }


class DataLineageTracker:
    """
    Tracks data lineage and anomalies throughout one pipeline run.

    Use this to:
    1. Record the vintage decision and match rate for every source
    2. Count anomalies (dropped regions, coerced values, unmatched codes)
    3. Generate an end-of-run report for human review
    """

    def __init__(self):
        self.records: dict[str, DataSourceRecord] = {}
        self.anomalies: list[Anomaly] = []

    def record_source(
        self,
        source_name: str,
        vintage: VintageDecision,
        rows: int = 0,
        regions: int = 0,
        match_rate: float | None = None,
        missing_pct: float = 0.0,
        year_range: tuple[int, int] | None = None,
        notes: list[str] | None = None,
    ) -> DataSourceRecord:
        """Record a cleaned source."""
        record = DataSourceRecord(
            source_name=source_name,
            vintage=vintage,
            rows=rows,
            regions=regions,
            match_rate=match_rate,
            missing_pct=missing_pct,
            year_range=year_range,
            notes=notes or [],
        )
        self.records[source_name] = record
        return record

    def record_anomaly(
        self,
        stage: str,
        kind: str,
        count: int,
        policy: str,
        examples: list[Any] | None = None,
    ) -> Anomaly | None:
        """
        Record a data-quality anomaly and log it.

        Args:
            stage: Pipeline stage that detected it
            kind: Short identifier, e.g. "no_baseline"
            count: Number of affected items (zero counts are ignored)
            policy: What was done about it (drop, flag, coerce, ...)
            examples: A few affected keys for the report

        Returns:
            The created Anomaly, or None when count is zero
        """
        if count <= 0:
            return None

        shown = [str(e) for e in (examples or [])][:MAX_EXAMPLES]
        anomaly = Anomaly(stage=stage, kind=kind, count=int(count), policy=policy, examples=shown)
        self.anomalies.append(anomaly)

        suffix = f" (e.g. {', '.join(shown)})" if shown else ""
        logger.warning(f"[{stage}] {kind}: {count} -> {policy}{suffix}")
        return anomaly

    def anomaly_count(self, kind: str, stage: str | None = None) -> int:
        """Total count recorded for an anomaly kind."""
        return sum(
            a.count
            for a in self.anomalies
            if a.kind == kind and (stage is None or a.stage == stage)
        )

    def generate_report(self) -> str:
        """Generate a human-readable lineage report."""
        lines = []
        lines.append("=" * 70)
        lines.append("DATA LINEAGE REPORT")
        lines.append("=" * 70)
        lines.append("")

        lines.append("SOURCES:")
        lines.append("-" * 70)
        lines.append(f"{'Source':<22} {'Vintage':<13} {'Match':>7} {'Rows':>8} {'Regions':>8}")
        lines.append("-" * 70)
        for name, record in sorted(self.records.items()):
            match = f"{record.match_rate:.1%}" if record.match_rate is not None else "-"
            lines.append(
                f"{name:<22} {record.vintage.value:<13} {match:>7} "
                f"{record.rows:>8} {record.regions:>8}"
            )
        lines.append("-" * 70)
        lines.append("")

        if self.anomalies:
            lines.append("ANOMALIES:")
            lines.append("-" * 70)
            for anomaly in self.anomalies:
                lines.append(
                    f"  ! [{anomaly.stage}] {anomaly.kind}: {anomaly.count} -> {anomaly.policy}"
                )
                if anomaly.examples:
                    lines.append(f"      e.g. {', '.join(anomaly.examples)}")
            lines.append("")

        for name, record in sorted(self.records.items()):
            if not record.notes:
                continue
            lines.append(f"{name}:")
            for note in record.notes:
                lines.append(f"    - {note}")

        lines.append("=" * 70)
        return "\n".join(lines)

    def to_dict(self) -> dict:
        """Convert lineage to dictionary for serialization."""
        return {
            "sources": {
                name: record.to_dict()
                for name, record in sorted(self.records.items())
            },
            "anomalies": [a.to_dict() for a in self.anomalies],
        }

    def save(self, filepath: str | Path) -> None:
        """Save lineage to JSON file."""
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)

        with open(filepath, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

        logger.info(f"Saved data lineage to {filepath}")

    def save_report(self, filepath: str | Path) -> None:
        """Save human-readable report to text file."""
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)

        with open(filepath, "w") as f:
            f.write(self.generate_report())

        logger.info(f"Saved lineage report to {filepath}")
