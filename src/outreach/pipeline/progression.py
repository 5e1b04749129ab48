"""Stage transition rules for the pipeline board.

The board is a free-form label set: any stage may move to any other stage,
closed stages are not locked, and the handler performs no membership check
on the target stage. Unknown stages are only reported through
is_known_stage() so callers can log them.

Every move appends a {from, to, timestamp, userId} entry to the deal's
stage history. The one derived side effect of a move is the stagnation
alert. Elapsed time is measured from the deal's pre-move updated_at, floored
to whole days, and an alert fires when that count reaches the threshold
(30 days by default). The alert never blocks the move.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from pydantic import BaseModel, Field

from src.outreach.pipeline.schemas import DealStage, NotificationType

DEFAULT_STAGNANT_DAYS = 30

STAGNANT_ALERT_TITLE = "Stagnant Deal Alert"

_KNOWN_STAGES = frozenset(s.value for s in DealStage)


class StagnantAlert(BaseModel):
    """Notification payload for a deal that sat untouched too long."""

    title: str = STAGNANT_ALERT_TITLE
    message: str
    type: str = NotificationType.WARNING.value
    metadata: dict = Field(default_factory=dict)
    days_since_last_activity: int


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so aware/naive arithmetic never mixes."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_known_stage(stage: str) -> bool:
    return stage in _KNOWN_STAGES


def days_since_last_activity(previous: datetime, now: datetime) -> int:
    """Whole days elapsed between previous and now (floor, never negative)."""
    elapsed = as_utc(now) - as_utc(previous)
    if elapsed < timedelta(0):
        return 0
    return elapsed // timedelta(days=1)


def is_stagnant(days: int, threshold: int = DEFAULT_STAGNANT_DAYS) -> bool:
    return days >= threshold


def build_stagnant_alert(
    deal_id: int,
    company_name: str,
    previous_updated_at: datetime,
    now: datetime,
    threshold: int = DEFAULT_STAGNANT_DAYS,
) -> StagnantAlert | None:
    """Return the alert to raise for a move, or None if the deal is fresh.

    Args:
        deal_id: Deal being moved.
        company_name: Used in the human-readable message.
        previous_updated_at: The deal's updated_at BEFORE the move.
        now: Move time.
        threshold: Stagnation threshold in whole days.
    """
    days = days_since_last_activity(previous_updated_at, now)
    if not is_stagnant(days, threshold):
        return None
    return StagnantAlert(
        message=f"{company_name} has had no activity for {days} days",
        metadata={"dealId": deal_id},
        days_since_last_activity=days,
    )


def move_description(stage: str, company_name: str) -> str:
    return f"Deal moved to {stage}: {company_name}"


def build_history_entry(
    from_stage: str, to_stage: str, now: datetime, user_id: int | None = None
) -> dict:
    """One stage-transition record for a deal's history list."""
    return {
        "from": from_stage,
        "to": to_stage,
        "timestamp": as_utc(now).isoformat(),
        "userId": user_id,
    }
