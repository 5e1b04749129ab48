"""Pipeline aggregation helpers.

The repository computes totals, per-stage breakdowns, and velocity in SQL;
these functions hold the same rules for in-process data (test doubles, the
weighted-value roll-up, and callers that want the full stage enumeration).
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timedelta

from src.outreach.pipeline.schemas import DealRead, DealStage, StageSummary

DEFAULT_VELOCITY_WINDOW_DAYS = 7


def total_value(deals: Iterable[DealRead]) -> float:
    """Sum of deal values; 0.0 for an empty pipeline."""
    return float(sum(d.value or 0.0 for d in deals))


def weighted_value(deals: Iterable[DealRead]) -> float:
    """Probability-weighted pipeline value: sum(value * probability / 100)."""
    return float(sum((d.value or 0.0) * (d.probability or 0) / 100 for d in deals))


def summarize_by_stage(deals: Iterable[DealRead]) -> list[StageSummary]:
    """Summed value and count per stage present, in first-seen order.

    Stages without deals are omitted.
    """
    summary: dict[str, StageSummary] = {}
    for deal in deals:
        entry = summary.setdefault(deal.current_stage, StageSummary(stage=deal.current_stage))
        entry.value += deal.value or 0.0
        entry.count += 1
    return list(summary.values())


def fill_stage_gaps(summary: Iterable[StageSummary]) -> list[StageSummary]:
    """Reconcile a breakdown against the fixed stage enumeration.

    Known stages come first in board order (zero-filled when empty),
    followed by any unknown stages present in the data.
    """
    by_stage = {s.stage: s for s in summary}
    filled = [
        by_stage.pop(stage.value, StageSummary(stage=stage.value))
        for stage in DealStage
    ]
    filled.extend(by_stage.values())
    return filled


def velocity_cutoff(now: datetime, days: int = DEFAULT_VELOCITY_WINDOW_DAYS) -> datetime:
    """Earliest timestamp still counted in the trailing velocity window."""
    return now - timedelta(days=days)
