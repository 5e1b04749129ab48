"""REST API endpoints for the deal pipeline board.

Provides deal CRUD, the stage-move endpoint, pipeline analytics, the stage
catalogue, and read-only activity/notification feeds. Field names are
camelCase on the wire and snake_case in Python.

Every endpoint catches failures at the route boundary, logs them, and
answers 500 with a flat {"error": "Failed to ..."} object. A missing deal
and a non-numeric {deal_id} segment are reported the same way.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from src.outreach.api.deps import get_actor_id, get_deal_repository
from src.outreach.pipeline.exceptions import parse_deal_id
from src.outreach.pipeline.schemas import (
    STAGE_CATALOGUE,
    DealCreate,
    DealFilter,
    DealStage,
    DealStatus,
    DealUpdate,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/pipeline", tags=["pipeline"])


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Response Schemas ─────────────────────────────────────────────────────────


class DealResponse(_CamelModel):
    """Response for a pipeline card, serializes datetimes to ISO strings."""

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
    expected_close_date: str | None = None
    next_step: str | None = None
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    history: list[dict[str, Any]] = Field(default_factory=list)
    created_by: int | None = None
    created_at: str | None = None
    updated_at: str | None = None


class StageSummaryResponse(_CamelModel):
    stage: str
    value: float = 0.0
    count: int = 0


class AnalyticsResponse(_CamelModel):
    """Aggregate pipeline summary."""

    total_value: float = 0.0
    weighted_value: float = 0.0
    value_by_stage: list[StageSummaryResponse] = Field(default_factory=list)
    weekly_velocity: int = 0


class StageResponse(_CamelModel):
    id: str
    name: str
    description: str
    probability: int


class ActivityResponse(_CamelModel):
    id: int
    type: str
    action: str
    description: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: str | None = None
    user_id: int | None = None


class NotificationResponse(_CamelModel):
    id: int
    title: str
    message: str
    type: str
    read: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: str | None = None
    user_id: int | None = None


class DeleteResponse(_CamelModel):
    success: bool = True


# ── Request Schemas ──────────────────────────────────────────────────────────


class CreateDealRequest(_CamelModel):
    """Request body for creating a deal."""

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
    expected_close_date: str | None = None
    next_step: str | None = None
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class UpdateDealRequest(_CamelModel):
    """Request body for updating a deal (all fields optional)."""

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
    expected_close_date: str | None = None
    next_step: str | None = None
    tags: list[str] | None = None
    metadata: dict[str, Any] | None = None


class MoveStageRequest(_CamelModel):
    """Request body for a stage move. Any string is accepted."""

    stage: str


# ── Conversion Helpers ───────────────────────────────────────────────────────


def _iso(value: Any) -> str | None:
    return value.isoformat() if value else None


def _deal_to_response(deal: Any) -> DealResponse:
    """Convert DealRead to DealResponse."""
    return DealResponse(
        id=deal.id,
        company_name=deal.company_name,
        contact_name=deal.contact_name,
        contact_email=deal.contact_email,
        description=deal.description,
        value=deal.value,
        currency=deal.currency,
        probability=deal.probability,
        current_stage=deal.current_stage,
        status=deal.status,
        source=deal.source,
        product=deal.product,
        assigned_to=deal.assigned_to,
        expected_close_date=_iso(deal.expected_close_date),
        next_step=deal.next_step,
        tags=deal.tags,
        metadata=deal.metadata,
        history=deal.history,
        created_by=deal.created_by,
        created_at=_iso(deal.created_at),
        updated_at=_iso(deal.updated_at),
    )


def _activity_to_response(activity: Any) -> ActivityResponse:
    return ActivityResponse(
        id=activity.id,
        type=activity.type,
        action=activity.action,
        description=activity.description,
        metadata=activity.metadata,
        timestamp=_iso(activity.timestamp),
        user_id=activity.user_id,
    )


def _notification_to_response(notification: Any) -> NotificationResponse:
    return NotificationResponse(
        id=notification.id,
        title=notification.title,
        message=notification.message,
        type=notification.type,
        read=notification.read,
        metadata=notification.metadata,
        timestamp=_iso(notification.timestamp),
        user_id=notification.user_id,
    )


def _error(action: str) -> JSONResponse:
    """Flat error object returned by every failing pipeline endpoint."""
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": f"Failed to {action}"},
    )


# ── Deal Endpoints ───────────────────────────────────────────────────────────


@router.get("/deals", response_model=list[DealResponse])
async def list_deals(
    assigned_to: str | None = Query(default=None, alias="assignedTo"),
    product: str | None = Query(default=None),
    source: str | None = Query(default=None),
    deal_status: str | None = Query(default=None, alias="status"),
    sort_by: str | None = Query(default=None, alias="sortBy"),
    repo: Any = Depends(get_deal_repository),
) -> Any:
    """List deals with optional exact-match filters and a descending sort."""
    filters = DealFilter(
        assigned_to=assigned_to,
        product=product,
        source=source,
        status=deal_status,
    )
    try:
        deals = await repo.list_deals(filters, sort_by)
    except Exception:
        logger.exception("pipeline.list_deals_failed")
        return _error("fetch deals")
    return [_deal_to_response(d) for d in deals]


@router.post("/deals", response_model=DealResponse)
async def create_deal(
    body: CreateDealRequest,
    actor_id: int | None = Depends(get_actor_id),
    repo: Any = Depends(get_deal_repository),
) -> Any:
    """Create a deal and record its create_deal activity."""
    try:
        data = DealCreate(**body.model_dump(), created_by=actor_id)
        deal = await repo.create_deal(data, user_id=actor_id)
    except Exception:
        logger.exception("pipeline.create_deal_failed")
        return _error("create deal")
    return _deal_to_response(deal)


@router.get("/deals/{deal_id}", response_model=DealResponse)
async def get_deal(
    deal_id: str,
    repo: Any = Depends(get_deal_repository),
) -> Any:
    """Get a single deal by ID."""
    try:
        deal = await repo.get_deal(parse_deal_id(deal_id))
    except Exception:
        logger.exception("pipeline.get_deal_failed", deal_id=deal_id)
        return _error("fetch deal")
    if deal is None:
        logger.warning("pipeline.deal_not_found", deal_id=deal_id)
        return _error("fetch deal")
    return _deal_to_response(deal)


@router.put("/deals/{deal_id}", response_model=DealResponse)
async def update_deal(
    deal_id: str,
    body: UpdateDealRequest,
    actor_id: int | None = Depends(get_actor_id),
    repo: Any = Depends(get_deal_repository),
) -> Any:
    """Merge the supplied fields into a deal."""
    try:
        data = DealUpdate(**body.model_dump(exclude_unset=True))
        deal = await repo.update_deal(parse_deal_id(deal_id), data, user_id=actor_id)
    except Exception:
        logger.exception("pipeline.update_deal_failed", deal_id=deal_id)
        return _error("update deal")
    return _deal_to_response(deal)


@router.patch("/deals/{deal_id}/stage", response_model=DealResponse)
async def move_deal(
    deal_id: str,
    body: MoveStageRequest,
    actor_id: int | None = Depends(get_actor_id),
    repo: Any = Depends(get_deal_repository),
) -> Any:
    """Move a deal to another stage; may raise a stagnant-deal notification."""
    try:
        deal = await repo.move_deal(parse_deal_id(deal_id), body.stage, user_id=actor_id)
    except Exception:
        logger.exception("pipeline.move_deal_failed", deal_id=deal_id, stage=body.stage)
        return _error("move deal")
    return _deal_to_response(deal)


@router.delete("/deals/{deal_id}", response_model=DeleteResponse)
async def delete_deal(
    deal_id: str,
    actor_id: int | None = Depends(get_actor_id),
    repo: Any = Depends(get_deal_repository),
) -> Any:
    """Hard-delete a deal."""
    try:
        await repo.delete_deal(parse_deal_id(deal_id), user_id=actor_id)
    except Exception:
        logger.exception("pipeline.delete_deal_failed", deal_id=deal_id)
        return _error("delete deal")
    return DeleteResponse(success=True)


# ── Board Endpoints ──────────────────────────────────────────────────────────


@router.get("/analytics", response_model=AnalyticsResponse)
async def get_analytics(repo: Any = Depends(get_deal_repository)) -> Any:
    """Total and weighted value, per-stage breakdown, and weekly velocity."""
    try:
        analytics = await repo.get_analytics()
    except Exception:
        logger.exception("pipeline.analytics_failed")
        return _error("fetch analytics")
    return AnalyticsResponse(
        total_value=analytics.total_value,
        weighted_value=analytics.weighted_value,
        value_by_stage=[
            StageSummaryResponse(stage=s.stage, value=s.value, count=s.count)
            for s in analytics.value_by_stage
        ],
        weekly_velocity=analytics.weekly_velocity,
    )


@router.get("/stages", response_model=list[StageResponse])
async def list_stages() -> list[StageResponse]:
    """The fixed stage catalogue in board order."""
    return [
        StageResponse(
            id=s.id.value,
            name=s.name,
            description=s.description,
            probability=s.probability,
        )
        for s in STAGE_CATALOGUE
    ]


@router.get("/activities", response_model=list[ActivityResponse])
async def list_activities(
    deal_id: int | None = Query(default=None, alias="dealId"),
    limit: int = Query(default=50, ge=1, le=500),
    repo: Any = Depends(get_deal_repository),
) -> Any:
    """Newest-first pipeline activity log."""
    try:
        activities = await repo.list_activities(deal_id=deal_id, limit=limit)
    except Exception:
        logger.exception("pipeline.list_activities_failed")
        return _error("fetch activities")
    return [_activity_to_response(a) for a in activities]


@router.get("/notifications", response_model=list[NotificationResponse])
async def list_notifications(
    unread_only: bool = Query(default=False, alias="unreadOnly"),
    limit: int = Query(default=50, ge=1, le=500),
    repo: Any = Depends(get_deal_repository),
) -> Any:
    """Newest-first notification feed."""
    try:
        notifications = await repo.list_notifications(
            unread_only=unread_only, limit=limit
        )
    except Exception:
        logger.exception("pipeline.list_notifications_failed")
        return _error("fetch notifications")
    return [_notification_to_response(n) for n in notifications]
