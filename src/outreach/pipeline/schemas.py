"""Pydantic schemas for the deal pipeline -- deals, activities, notifications, analytics.

Defines all structured types for the pipeline subsystem:
- Enums: DealStage, DealStatus, SortKey, ActivityAction, NotificationType
- Stage catalogue: StageInfo, STAGE_CATALOGUE (display name + default probability)
- Deals: DealCreate, DealUpdate, DealRead, DealFilter
- Audit: ActivityRead, NotificationRead
- Analytics: StageSummary, PipelineAnalytics
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

# ── Enums ───────────────────────────────────────────────────────────────────


class DealStage(str, Enum):
    """Kanban column a deal currently sits in."""

    LEAD = "lead"
    CONTACT = "contact"
    PROPOSAL = "proposal"
    NEGOTIATION = "negotiation"
    CLOSED_WON = "closed_won"
    CLOSED_LOST = "closed_lost"


class DealStatus(str, Enum):
    """Housekeeping status, independent of stage."""

    ACTIVE = "active"
    STALLED = "stalled"
    ARCHIVED = "archived"


class SortKey(str, Enum):
    """Single descending ordering applied by list_deals."""

    VALUE = "value"
    DATE = "date"
    PROBABILITY = "probability"


class ActivityAction(str, Enum):
    """Audit actions written by the pipeline write path."""

    CREATE_DEAL = "create_deal"
    UPDATE_DEAL = "update_deal"
    MOVE_DEAL = "move_deal"
    DELETE_DEAL = "delete_deal"


class NotificationType(str, Enum):
    """Notification severity."""

    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


PIPELINE_ACTIVITY_TYPE = "pipeline"


# ── Stage Catalogue ─────────────────────────────────────────────────────────


class StageInfo(BaseModel):
    """Display metadata for one stage of the board."""

    id: DealStage
    name: str
    description: str
    probability: int = Field(ge=0, le=100)


STAGE_CATALOGUE: list[StageInfo] = [
    StageInfo(
        id=DealStage.LEAD,
        name="Lead In",
        description="Initial contact or prospect",
        probability=20,
    ),
    StageInfo(
        id=DealStage.CONTACT,
        name="Contacted",
        description="Initial communication established",
        probability=40,
    ),
    StageInfo(
        id=DealStage.PROPOSAL,
        name="Proposal Sent",
        description="Proposal or quote sent to prospect",
        probability=60,
    ),
    StageInfo(
        id=DealStage.NEGOTIATION,
        name="Negotiation",
        description="In active discussion/negotiation",
        probability=80,
    ),
    StageInfo(
        id=DealStage.CLOSED_WON,
        name="Won",
        description="Deal successfully closed",
        probability=100,
    ),
    StageInfo(
        id=DealStage.CLOSED_LOST,
        name="Lost",
        description="Deal lost or abandoned",
        probability=0,
    ),
]


# ── Deal Schemas ────────────────────────────────────────────────────────────

NON_NULLABLE_DEAL_FIELDS = (
    "company_name",
    "value",
    "currency",
    "probability",
    "current_stage",
    "status",
    "tags",
    "metadata",
)


class DealCreate(BaseModel):
    """Schema for creating a new deal (pipeline card)."""

    company_name: str = Field(min_length=1)
    contact_name: str | None = None
    contact_email: str | None = None
    description: str | None = None
    value: float = Field(default=0.0, ge=0.0)
    currency: str = "USD"
    probability: int = Field(default=0, ge=0, le=100)
    current_stage: str = DealStage.LEAD.value
    status: str = DealStatus.ACTIVE.value
    source: str | None = None
    product: str | None = None
    assigned_to: str | None = None
    expected_close_date: datetime | None = None
    next_step: str | None = None
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_by: int | None = None


class DealUpdate(BaseModel):
    """Schema for updating a deal (all fields optional).

    Only fields the caller actually sent are applied; changes() returns
    that change set.
    """

    company_name: str | None = Field(default=None, min_length=1)
    contact_name: str | None = None
    contact_email: str | None = None
    description: str | None = None
    value: float | None = Field(default=None, ge=0.0)
    currency: str | None = None
    probability: int | None = Field(default=None, ge=0, le=100)
    current_stage: str | None = None
    status: str | None = None
    source: str | None = None
    product: str | None = None
    assigned_to: str | None = None
    expected_close_date: datetime | None = None
    next_step: str | None = None
    tags: list[str] | None = None
    metadata: dict[str, Any] | None = None

    def changes(self, mode: str = "python") -> dict[str, Any]:
        """Fields explicitly supplied by the caller.

        Non-nullable columns (value, probability, ...) are dropped when sent
        as null so aggregation arithmetic stays total. Pass mode="json" for
        a JSON-safe copy suitable for activity metadata.
        """
        data = self.model_dump(exclude_unset=True, mode=mode)
        for key in NON_NULLABLE_DEAL_FIELDS:
            if key in data and data[key] is None:
                del data[key]
        return data


class DealRead(BaseModel):
    """Schema for reading a deal (includes all persisted fields)."""

    id: int
    company_name: str
    contact_name: str | None = None
    contact_email: str | None = None
    description: str | None = None
    value: float = 0.0
    currency: str = "USD"
    probability: int = 0
    current_stage: str = DealStage.LEAD.value
    status: str = DealStatus.ACTIVE.value
    source: str | None = None
    product: str | None = None
    assigned_to: str | None = None
    expected_close_date: datetime | None = None
    next_step: str | None = None
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    history: list[dict[str, Any]] = Field(default_factory=list)
    created_by: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class DealFilter(BaseModel):
    """Equality filters for listing deals.

    Each predicate narrows by exact match when present and non-empty.
    Absent or empty predicates impose no constraint.
    """

    assigned_to: str | None = None
    product: str | None = None
    source: str | None = None
    status: str | None = None

    def active_predicates(self) -> dict[str, str]:
        """Return only the predicates that constrain the result set."""
        return {
            key: value
            for key, value in self.model_dump().items()
            if value is not None and value != ""
        }


# ── Audit Schemas ───────────────────────────────────────────────────────────


class ActivityRead(BaseModel):
    """Append-only audit entry for a deal mutation."""

    id: int
    type: str = PIPELINE_ACTIVITY_TYPE
    action: str
    description: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime
    user_id: int | None = None


class NotificationRead(BaseModel):
    """Notification raised as a side effect of a stage move."""

    id: int
    title: str
    message: str
    type: str = NotificationType.INFO.value
    read: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime
    user_id: int | None = None


# ── Analytics Schemas ───────────────────────────────────────────────────────


class StageSummary(BaseModel):
    """Summed value and deal count for one stage present in the store."""

    stage: str
    value: float = 0.0
    count: int = 0


class PipelineAnalytics(BaseModel):
    """Aggregate pipeline summary."""

    total_value: float = 0.0
    weighted_value: float = 0.0
    value_by_stage: list[StageSummary] = Field(default_factory=list)
    weekly_velocity: int = 0
