"""Deal pipeline repository -- async CRUD, stage moves, and analytics.

Provides DealRepository with the session_factory callable pattern: the
application hands in Database.session, so the repository never touches a
module-level engine. Handles serialization between SQLAlchemy models and
the Pydantic read schemas.

Every mutation writes the deal change, its activity row and (for stagnant
moves) the notification inside ONE transaction. Either all of them commit
or none do, so the audit trail can't drift from the deal table.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from datetime import datetime
from typing import Any

import structlog
from pydantic.alias_generators import to_camel
from sqlalchemy import Select, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.outreach.core.monitoring import record_deal_mutation, record_stagnant_alert
from src.outreach.pipeline.analytics import (
    DEFAULT_VELOCITY_WINDOW_DAYS,
    velocity_cutoff,
)
from src.outreach.pipeline.exceptions import DealNotFoundError
from src.outreach.pipeline.models import ActivityModel, DealModel, NotificationModel
from src.outreach.pipeline.progression import (
    DEFAULT_STAGNANT_DAYS,
    build_history_entry,
    build_stagnant_alert,
    is_known_stage,
    move_description,
    utcnow,
)
from src.outreach.pipeline.schemas import (
    PIPELINE_ACTIVITY_TYPE,
    ActivityAction,
    ActivityRead,
    DealCreate,
    DealFilter,
    DealRead,
    DealUpdate,
    NotificationRead,
    PipelineAnalytics,
    SortKey,
    StageSummary,
)

logger = structlog.get_logger(__name__)

# Filter attribute -> mapped column
_FILTER_COLUMNS = {
    "assigned_to": DealModel.assigned_to,
    "product": DealModel.product,
    "source": DealModel.source,
    "status": DealModel.status,
}

# Sort key -> column ordered descending
_SORT_COLUMNS = {
    SortKey.VALUE.value: DealModel.value,
    SortKey.DATE.value: DealModel.updated_at,
    SortKey.PROBABILITY.value: DealModel.probability,
}


# ── Query Builders ──────────────────────────────────────────────────────────


def build_list_query(
    filters: DealFilter | None = None, sort_by: str | None = None
) -> Select:
    """Compose the list_deals SELECT.

    Non-empty filter predicates become ANDed equality clauses. sort_by
    selects one descending ORDER BY; unknown or missing keys add none.
    """
    stmt = select(DealModel)
    if filters is not None:
        for field, value in filters.active_predicates().items():
            stmt = stmt.where(_FILTER_COLUMNS[field] == value)

    sort_column = _SORT_COLUMNS.get(sort_by or "")
    if sort_column is not None:
        stmt = stmt.order_by(sort_column.desc())
    return stmt


def build_velocity_query(cutoff: datetime) -> Select:
    """Count move_deal activities at or after cutoff."""
    return (
        select(func.count())
        .select_from(ActivityModel)
        .where(
            ActivityModel.type == PIPELINE_ACTIVITY_TYPE,
            ActivityModel.action == ActivityAction.MOVE_DEAL.value,
            ActivityModel.timestamp >= cutoff,
        )
    )


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_deal(model: DealModel) -> DealRead:
    """Convert DealModel to DealRead schema."""
    return DealRead(
        id=model.id,
        company_name=model.company_name,
        contact_name=model.contact_name,
        contact_email=model.contact_email,
        description=model.description,
        value=float(model.value or 0),
        currency=model.currency,
        probability=model.probability or 0,
        current_stage=model.current_stage,
        status=model.status,
        source=model.source,
        product=model.product,
        assigned_to=model.assigned_to,
        expected_close_date=model.expected_close_date,
        next_step=model.next_step,
        tags=model.tags or [],
        metadata=model.metadata_json or {},
        history=model.history or [],
        created_by=model.created_by,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_activity(model: ActivityModel) -> ActivityRead:
    return ActivityRead(
        id=model.id,
        type=model.type,
        action=model.action,
        description=model.description,
        metadata=model.metadata_json or {},
        timestamp=model.timestamp,
        user_id=model.user_id,
    )


def _model_to_notification(model: NotificationModel) -> NotificationRead:
    return NotificationRead(
        id=model.id,
        title=model.title,
        message=model.message,
        type=model.type,
        read=model.read,
        metadata=model.metadata_json or {},
        timestamp=model.timestamp,
        user_id=model.user_id,
    )


# ── Repository ──────────────────────────────────────────────────────────────


class DealRepository:
    """Async data access for deals, the activity log, and notifications.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
        clock: Returns the current timezone-aware time (injectable for tests).
        stagnant_days: Whole days without an update before a move raises
            a Stagnant Deal Alert.
        velocity_window_days: Trailing window for weekly velocity.
    """

    def __init__(
        self,
        session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
        clock: Callable[[], datetime] = utcnow,
        stagnant_days: int = DEFAULT_STAGNANT_DAYS,
        velocity_window_days: int = DEFAULT_VELOCITY_WINDOW_DAYS,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock
        self._stagnant_days = stagnant_days
        self._velocity_window_days = velocity_window_days

    # ── Reads ───────────────────────────────────────────────────────────────

    async def list_deals(
        self, filters: DealFilter | None = None, sort_by: str | None = None
    ) -> list[DealRead]:
        """List deals matching every non-empty filter, optionally sorted.

        Args:
            filters: Exact-match predicates on assigned_to/product/source/status.
            sort_by: "value", "date" or "probability" (descending); anything
                else keeps the store's natural order.

        Returns:
            List of DealRead objects.
        """
        async for session in self._session_factory():
            result = await session.execute(build_list_query(filters, sort_by))
            return [_model_to_deal(m) for m in result.scalars().all()]

    async def get_deal(self, deal_id: int) -> DealRead | None:
        """Get a deal by ID, or None if it does not exist."""
        async for session in self._session_factory():
            model = await session.get(DealModel, deal_id)
            if model is None:
                return None
            return _model_to_deal(model)

    async def list_activities(
        self, deal_id: int | None = None, limit: int = 50
    ) -> list[ActivityRead]:
        """Newest-first pipeline activities, optionally for a single deal."""
        async for session in self._session_factory():
            stmt = select(ActivityModel).where(
                ActivityModel.type == PIPELINE_ACTIVITY_TYPE
            )
            if deal_id is not None:
                stmt = stmt.where(
                    ActivityModel.metadata_json["dealId"].as_integer() == deal_id
                )
            stmt = stmt.order_by(
                ActivityModel.timestamp.desc(), ActivityModel.id.desc()
            ).limit(limit)
            result = await session.execute(stmt)
            return [_model_to_activity(m) for m in result.scalars().all()]

    async def list_notifications(
        self, unread_only: bool = False, limit: int = 50
    ) -> list[NotificationRead]:
        """Newest-first notifications."""
        async for session in self._session_factory():
            stmt = select(NotificationModel)
            if unread_only:
                stmt = stmt.where(NotificationModel.read.is_(False))
            stmt = stmt.order_by(
                NotificationModel.timestamp.desc(), NotificationModel.id.desc()
            ).limit(limit)
            result = await session.execute(stmt)
            return [_model_to_notification(m) for m in result.scalars().all()]

    # ── Mutations ───────────────────────────────────────────────────────────

    async def create_deal(
        self, data: DealCreate, user_id: int | None = None
    ) -> DealRead:
        """Create a deal and append its create_deal activity.

        Args:
            data: DealCreate schema with deal details.
            user_id: Acting user, recorded on the activity.

        Returns:
            DealRead with all persisted fields.
        """
        now = self._clock()
        async for session in self._session_factory():
            async with session.begin():
                model = DealModel(
                    company_name=data.company_name,
                    contact_name=data.contact_name,
                    contact_email=data.contact_email,
                    description=data.description,
                    value=data.value,
                    currency=data.currency,
                    probability=data.probability,
                    current_stage=data.current_stage,
                    status=data.status,
                    source=data.source,
                    product=data.product,
                    assigned_to=data.assigned_to,
                    expected_close_date=data.expected_close_date,
                    next_step=data.next_step,
                    tags=list(data.tags),
                    metadata_json=dict(data.metadata),
                    created_by=data.created_by if data.created_by is not None else user_id,
                    created_at=now,
                    updated_at=now,
                )
                session.add(model)
                await session.flush()

                self._append_activity(
                    session,
                    action=ActivityAction.CREATE_DEAL,
                    description=f"New deal created: {model.company_name}",
                    metadata={"dealId": model.id},
                    timestamp=now,
                    user_id=user_id,
                )
            deal = _model_to_deal(model)

        record_deal_mutation(ActivityAction.CREATE_DEAL.value)
        logger.info("pipeline.deal_created", deal_id=deal.id, stage=deal.current_stage)
        return deal

    async def update_deal(
        self, deal_id: int, data: DealUpdate, user_id: int | None = None
    ) -> DealRead:
        """Merge the supplied fields into a deal and append update_deal.

        The activity metadata carries every field the caller supplied under
        "changes".

        Raises:
            DealNotFoundError: If the deal does not exist.
        """
        now = self._clock()
        changes = data.changes()
        async for session in self._session_factory():
            async with session.begin():
                model = await session.get(DealModel, deal_id)
                if model is None:
                    raise DealNotFoundError(deal_id)

                for key, value in changes.items():
                    setattr(model, _column_attribute(key), value)
                model.updated_at = now

                self._append_activity(
                    session,
                    action=ActivityAction.UPDATE_DEAL,
                    description=f"Deal updated: {model.company_name}",
                    metadata={"dealId": model.id, "changes": _wire_changes(data)},
                    timestamp=now,
                    user_id=user_id,
                )
            deal = _model_to_deal(model)

        record_deal_mutation(ActivityAction.UPDATE_DEAL.value)
        logger.info("pipeline.deal_updated", deal_id=deal_id, fields=sorted(changes))
        return deal

    async def move_deal(
        self, deal_id: int, new_stage: str, user_id: int | None = None
    ) -> DealRead:
        """Move a deal to new_stage, record the transition, and append move_deal.

        Any string is accepted as the target stage. A {from, to, timestamp,
        userId} entry is appended to the deal's history. When the deal's pre-move
        updated_at is at least stagnant_days old, a warning notification is
        written in the same transaction; the move succeeds either way.

        Raises:
            DealNotFoundError: If the deal does not exist.
        """
        now = self._clock()
        if not is_known_stage(new_stage):
            logger.warning("pipeline.unknown_stage", deal_id=deal_id, stage=new_stage)

        alert = None
        async for session in self._session_factory():
            async with session.begin():
                model = await session.get(DealModel, deal_id)
                if model is None:
                    raise DealNotFoundError(deal_id)

                previous_updated_at = model.updated_at
                # Reassign so the JSONB change is flushed
                model.history = [
                    *(model.history or []),
                    build_history_entry(model.current_stage, new_stage, now, user_id),
                ]
                model.current_stage = new_stage
                model.updated_at = now

                self._append_activity(
                    session,
                    action=ActivityAction.MOVE_DEAL,
                    description=move_description(new_stage, model.company_name),
                    metadata={"dealId": model.id, "newStage": new_stage},
                    timestamp=now,
                    user_id=user_id,
                )

                alert = build_stagnant_alert(
                    deal_id=model.id,
                    company_name=model.company_name,
                    previous_updated_at=previous_updated_at,
                    now=now,
                    threshold=self._stagnant_days,
                )
                if alert is not None:
                    session.add(
                        NotificationModel(
                            title=alert.title,
                            message=alert.message,
                            type=alert.type,
                            read=False,
                            metadata_json=alert.metadata,
                            timestamp=now,
                            user_id=user_id,
                        )
                    )
            deal = _model_to_deal(model)

        record_deal_mutation(ActivityAction.MOVE_DEAL.value)
        logger.info("pipeline.deal_moved", deal_id=deal_id, stage=new_stage)
        if alert is not None:
            record_stagnant_alert()
            logger.warning(
                "pipeline.stagnant_alert",
                deal_id=deal_id,
                days=alert.days_since_last_activity,
            )
        return deal

    async def delete_deal(self, deal_id: int, user_id: int | None = None) -> None:
        """Hard-delete a deal and append delete_deal.

        Raises:
            DealNotFoundError: If the deal does not exist. Nothing is written.
        """
        now = self._clock()
        async for session in self._session_factory():
            async with session.begin():
                model = await session.get(DealModel, deal_id)
                if model is None:
                    raise DealNotFoundError(deal_id)

                company_name = model.company_name
                await session.execute(delete(DealModel).where(DealModel.id == deal_id))

                self._append_activity(
                    session,
                    action=ActivityAction.DELETE_DEAL,
                    description=f"Deal deleted: {company_name}",
                    metadata={"dealId": deal_id},
                    timestamp=now,
                    user_id=user_id,
                )

        record_deal_mutation(ActivityAction.DELETE_DEAL.value)
        logger.info("pipeline.deal_deleted", deal_id=deal_id)

    # ── Analytics ───────────────────────────────────────────────────────────

    async def get_analytics(self) -> PipelineAnalytics:
        """Total and weighted value, per-stage breakdown, and weekly velocity.

        Stages with no deals are absent from value_by_stage.
        """
        cutoff = velocity_cutoff(self._clock(), self._velocity_window_days)
        async for session in self._session_factory():
            total = await session.scalar(
                select(func.coalesce(func.sum(DealModel.value), 0))
            )
            weighted = await session.scalar(
                select(
                    func.coalesce(
                        func.sum(DealModel.value * DealModel.probability / 100.0), 0
                    )
                )
            )
            stage_rows = await session.execute(
                select(
                    DealModel.current_stage,
                    func.coalesce(func.sum(DealModel.value), 0),
                    func.count(),
                )
                .group_by(DealModel.current_stage)
                .order_by(DealModel.current_stage)
            )
            velocity = await session.scalar(build_velocity_query(cutoff))

            return PipelineAnalytics(
                total_value=float(total or 0),
                weighted_value=float(weighted or 0),
                value_by_stage=[
                    StageSummary(stage=stage, value=float(value or 0), count=count)
                    for stage, value, count in stage_rows.all()
                ],
                weekly_velocity=int(velocity or 0),
            )

    # ── Internal ────────────────────────────────────────────────────────────

    @staticmethod
    def _append_activity(
        session: AsyncSession,
        action: ActivityAction,
        description: str,
        metadata: dict[str, Any],
        timestamp: datetime,
        user_id: int | None,
    ) -> None:
        session.add(
            ActivityModel(
                type=PIPELINE_ACTIVITY_TYPE,
                action=action.value,
                description=description,
                metadata_json=metadata,
                timestamp=timestamp,
                user_id=user_id,
            )
        )


def _wire_changes(data: DealUpdate) -> dict[str, Any]:
    """Supplied fields keyed the way the API received them (camelCase)."""
    return {to_camel(key): value for key, value in data.changes(mode="json").items()}


def _column_attribute(field: str) -> str:
    """Map a schema field name to the mapped attribute name."""
    return "metadata_json" if field == "metadata" else field
