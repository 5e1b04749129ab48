"""Integration tests for pipeline API endpoints.

Uses InMemoryPipelineRepository test double and httpx AsyncClient with the
pipeline router mounted under /api. Tests deal CRUD, stage moves and the
stagnation alert, analytics, the read-only feeds, and the flat 500 error
contract.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from pydantic.alias_generators import to_camel

from src.outreach.pipeline.analytics import (
    summarize_by_stage,
    total_value,
    velocity_cutoff,
    weighted_value,
)
from src.outreach.pipeline.exceptions import DealNotFoundError
from src.outreach.pipeline.progression import (
    build_history_entry,
    build_stagnant_alert,
    move_description,
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
)


# ── In-Memory Test Double ────────────────────────────────────────────────────


class InMemoryPipelineRepository:
    """In-memory DealRepository for testing without database."""

    _SORT_FIELDS = {"value": "value", "date": "updated_at", "probability": "probability"}

    def __init__(self, clock: Callable[[], datetime]) -> None:
        self._clock = clock
        self._deals: dict[int, DealRead] = {}
        self.activities: list[ActivityRead] = []
        self.notifications: list[NotificationRead] = []
        self._next_id = 1

    def _new_id(self) -> int:
        new_id = self._next_id
        self._next_id += 1
        return new_id

    def _append_activity(
        self, action: ActivityAction, description: str, metadata: dict, user_id: int | None
    ) -> None:
        self.activities.append(
            ActivityRead(
                id=len(self.activities) + 1,
                type=PIPELINE_ACTIVITY_TYPE,
                action=action.value,
                description=description,
                metadata=metadata,
                timestamp=self._clock(),
                user_id=user_id,
            )
        )

    def backdate(self, deal_id: int, days: int) -> None:
        deal = self._deals[deal_id]
        self._deals[deal_id] = deal.model_copy(
            update={"updated_at": self._clock() - timedelta(days=days)}
        )

    async def list_deals(
        self, filters: DealFilter | None = None, sort_by: str | None = None
    ) -> list[DealRead]:
        result = list(self._deals.values())
        if filters:
            for field, value in filters.active_predicates().items():
                result = [d for d in result if getattr(d, field) == value]
        sort_field = self._SORT_FIELDS.get(sort_by or "")
        if sort_field:
            result.sort(key=lambda d: getattr(d, sort_field), reverse=True)
        return result

    async def get_deal(self, deal_id: int) -> DealRead | None:
        return self._deals.get(deal_id)

    async def create_deal(self, data: DealCreate, user_id: int | None = None) -> DealRead:
        now = self._clock()
        deal = DealRead(id=self._new_id(), created_at=now, updated_at=now, **data.model_dump())
        self._deals[deal.id] = deal
        self._append_activity(
            ActivityAction.CREATE_DEAL,
            f"New deal created: {deal.company_name}",
            {"dealId": deal.id},
            user_id,
        )
        return deal

    async def update_deal(
        self, deal_id: int, data: DealUpdate, user_id: int | None = None
    ) -> DealRead:
        deal = self._deals.get(deal_id)
        if deal is None:
            raise DealNotFoundError(deal_id)
        changes = data.changes()
        updated = deal.model_copy(update={**changes, "updated_at": self._clock()})
        self._deals[deal_id] = updated
        self._append_activity(
            ActivityAction.UPDATE_DEAL,
            f"Deal updated: {updated.company_name}",
            {
                "dealId": deal_id,
                "changes": {to_camel(k): v for k, v in data.changes(mode="json").items()},
            },
            user_id,
        )
        return updated

    async def move_deal(
        self, deal_id: int, new_stage: str, user_id: int | None = None
    ) -> DealRead:
        deal = self._deals.get(deal_id)
        if deal is None:
            raise DealNotFoundError(deal_id)
        now = self._clock()
        history = [
            *deal.history,
            build_history_entry(deal.current_stage, new_stage, now, user_id),
        ]
        moved = deal.model_copy(
            update={"current_stage": new_stage, "updated_at": now, "history": history}
        )
        self._deals[deal_id] = moved
        self._append_activity(
            ActivityAction.MOVE_DEAL,
            move_description(new_stage, deal.company_name),
            {"dealId": deal_id, "newStage": new_stage},
            user_id,
        )
        alert = build_stagnant_alert(deal_id, deal.company_name, deal.updated_at, now)
        if alert is not None:
            self.notifications.append(
                NotificationRead(
                    id=len(self.notifications) + 1,
                    title=alert.title,
                    message=alert.message,
                    type=alert.type,
                    metadata=alert.metadata,
                    timestamp=now,
                    user_id=user_id,
                )
            )
        return moved

    async def delete_deal(self, deal_id: int, user_id: int | None = None) -> None:
        deal = self._deals.pop(deal_id, None)
        if deal is None:
            raise DealNotFoundError(deal_id)
        self._append_activity(
            ActivityAction.DELETE_DEAL,
            f"Deal deleted: {deal.company_name}",
            {"dealId": deal_id},
            user_id,
        )

    async def list_activities(
        self, deal_id: int | None = None, limit: int = 50
    ) -> list[ActivityRead]:
        result = [
            a for a in self.activities if deal_id is None or a.metadata.get("dealId") == deal_id
        ]
        return list(reversed(result))[:limit]

    async def list_notifications(
        self, unread_only: bool = False, limit: int = 50
    ) -> list[NotificationRead]:
        result = [n for n in self.notifications if not (unread_only and n.read)]
        return list(reversed(result))[:limit]

    async def get_analytics(self) -> PipelineAnalytics:
        deals = list(self._deals.values())
        cutoff = velocity_cutoff(self._clock())
        return PipelineAnalytics(
            total_value=total_value(deals),
            weighted_value=weighted_value(deals),
            value_by_stage=summarize_by_stage(deals),
            weekly_velocity=sum(
                1
                for a in self.activities
                if a.action == ActivityAction.MOVE_DEAL.value and a.timestamp >= cutoff
            ),
        )


class FailingRepository:
    """Repository whose every call fails like a lost database connection."""

    def __getattr__(self, name: str) -> Any:
        async def _fail(*args: Any, **kwargs: Any) -> Any:
            raise ConnectionError("database unavailable")

        return _fail


# ── Fixtures ─────────────────────────────────────────────────────────────────


def _make_mock_app():
    """Create a minimal FastAPI app with the pipeline router under /api."""
    from fastapi import FastAPI

    from src.outreach.api.v1.pipeline import router

    app = FastAPI()
    app.include_router(router, prefix="/api")
    return app


@pytest_asyncio.fixture
async def client_and_repo(clock):
    """Create test client with InMemoryPipelineRepository."""
    app = _make_mock_app()
    repo = InMemoryPipelineRepository(clock)
    app.state.deal_repository = repo

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client, repo


async def _create(client: AsyncClient, **fields: Any) -> dict:
    body = {"companyName": "Acme Corp", **fields}
    response = await client.post("/api/pipeline/deals", json=body)
    assert response.status_code == 200, response.text
    return response.json()


# ── Create / Read ────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_create_deal(client_and_repo):
    """POST /api/pipeline/deals -> 200 with camelCase deal and one activity."""
    client, repo = client_and_repo

    response = await client.post(
        "/api/pipeline/deals",
        json={
            "companyName": "Acme Corp",
            "contactEmail": "buyer@acme.test",
            "value": 50000,
            "probability": 40,
            "currentStage": "contact",
            "assignedTo": "alice",
        },
        headers={"X-User-ID": "12"},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["companyName"] == "Acme Corp"
    assert data["value"] == 50000.0
    assert data["currentStage"] == "contact"
    assert data["assignedTo"] == "alice"
    assert data["createdBy"] == 12
    assert data["updatedAt"] is not None
    assert isinstance(data["id"], int)

    assert len(repo.activities) == 1
    activity = repo.activities[0]
    assert activity.action == "create_deal"
    assert activity.description == "New deal created: Acme Corp"
    assert activity.metadata == {"dealId": data["id"]}
    assert activity.user_id == 12


@pytest.mark.asyncio
async def test_create_deal_defaults(client_and_repo):
    client, _ = client_and_repo

    data = await _create(client)

    assert data["value"] == 0.0
    assert data["probability"] == 0
    assert data["currentStage"] == "lead"
    assert data["status"] == "active"
    assert data["currency"] == "USD"
    assert data["tags"] == []


@pytest.mark.asyncio
async def test_created_deal_appears_in_list_exactly_once(client_and_repo):
    client, _ = client_and_repo

    created = await _create(client, companyName="Unique Co")

    response = await client.get("/api/pipeline/deals")
    ids = [d["id"] for d in response.json()]
    assert ids.count(created["id"]) == 1


@pytest.mark.asyncio
async def test_create_deal_missing_company_name_rejected(client_and_repo):
    client, repo = client_and_repo

    response = await client.post("/api/pipeline/deals", json={"value": 10})

    assert response.status_code == 422
    assert repo.activities == []


@pytest.mark.asyncio
async def test_get_deal(client_and_repo):
    client, _ = client_and_repo
    created = await _create(client)

    response = await client.get(f"/api/pipeline/deals/{created['id']}")

    assert response.status_code == 200
    assert response.json()["companyName"] == "Acme Corp"


@pytest.mark.asyncio
async def test_get_deal_not_found(client_and_repo):
    """Unknown ids surface as the generic 500 error object."""
    client, _ = client_and_repo

    response = await client.get("/api/pipeline/deals/999")

    assert response.status_code == 500
    assert response.json() == {"error": "Failed to fetch deal"}


# ── List Filters / Sorting ───────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_list_deals_filters_are_conjunctive(client_and_repo):
    client, _ = client_and_repo
    await _create(client, companyName="A", assignedTo="alice", status="active")
    await _create(client, companyName="B", assignedTo="alice", status="stalled")
    await _create(client, companyName="C", assignedTo="bob", status="active")

    response = await client.get(
        "/api/pipeline/deals", params={"assignedTo": "alice", "status": "active"}
    )

    assert response.status_code == 200
    assert [d["companyName"] for d in response.json()] == ["A"]


@pytest.mark.asyncio
async def test_list_deals_empty_filter_imposes_no_constraint(client_and_repo):
    client, _ = client_and_repo
    await _create(client, companyName="A", product="Platform")
    await _create(client, companyName="B")

    response = await client.get("/api/pipeline/deals?product=&source=")

    assert len(response.json()) == 2


@pytest.mark.asyncio
async def test_list_deals_sort_by_value_and_probability(client_and_repo):
    client, _ = client_and_repo
    await _create(client, companyName="Small", value=100, probability=90)
    await _create(client, companyName="Large", value=9000, probability=10)
    await _create(client, companyName="Medium", value=500, probability=50)

    by_value = (await client.get("/api/pipeline/deals?sortBy=value")).json()
    values = [d["value"] for d in by_value]
    assert values == sorted(values, reverse=True)

    by_probability = (await client.get("/api/pipeline/deals?sortBy=probability")).json()
    probabilities = [d["probability"] for d in by_probability]
    assert probabilities == sorted(probabilities, reverse=True)


@pytest.mark.asyncio
async def test_list_deals_sort_by_date_newest_first(client_and_repo):
    client, repo = client_and_repo
    first = await _create(client, companyName="First")
    repo._clock.advance(hours=1)
    second = await _create(client, companyName="Second")

    response = await client.get("/api/pipeline/deals?sortBy=date")

    assert [d["id"] for d in response.json()] == [second["id"], first["id"]]


@pytest.mark.asyncio
async def test_list_deals_unknown_sort_key_keeps_natural_order(client_and_repo):
    client, _ = client_and_repo
    a = await _create(client, companyName="A", value=1)
    b = await _create(client, companyName="B", value=2)

    response = await client.get("/api/pipeline/deals?sortBy=companyName")

    assert response.status_code == 200
    assert [d["id"] for d in response.json()] == [a["id"], b["id"]]


# ── Update ───────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_update_deal_merges_supplied_fields(client_and_repo):
    client, repo = client_and_repo
    created = await _create(client, value=1000, probability=20, product="Platform")
    repo._clock.advance(minutes=5)

    response = await client.put(
        f"/api/pipeline/deals/{created['id']}",
        json={"value": 2500, "nextStep": "Send contract"},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["value"] == 2500.0
    assert data["nextStep"] == "Send contract"
    assert data["probability"] == 20
    assert data["product"] == "Platform"
    assert data["updatedAt"] > created["updatedAt"]

    activity = repo.activities[-1]
    assert activity.action == "update_deal"
    assert activity.description == "Deal updated: Acme Corp"
    assert activity.metadata == {
        "dealId": created["id"],
        "changes": {"value": 2500.0, "nextStep": "Send contract"},
    }


@pytest.mark.asyncio
async def test_update_deal_not_found(client_and_repo):
    client, repo = client_and_repo

    response = await client.put("/api/pipeline/deals/404", json={"value": 1})

    assert response.status_code == 500
    assert response.json() == {"error": "Failed to update deal"}
    assert repo.activities == []


# ── Stage Moves ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_move_stagnant_deal_raises_one_warning(client_and_repo):
    """A deal untouched for 31 days produces exactly one warning notification."""
    client, repo = client_and_repo
    created = await _create(client)
    repo.backdate(created["id"], days=31)

    response = await client.patch(
        f"/api/pipeline/deals/{created['id']}/stage", json={"stage": "negotiation"}
    )

    assert response.status_code == 200
    assert response.json()["currentStage"] == "negotiation"
    assert len(repo.notifications) == 1
    notification = repo.notifications[0]
    assert notification.type == "warning"
    assert notification.title == "Stagnant Deal Alert"
    assert notification.message == "Acme Corp has had no activity for 31 days"
    assert notification.metadata == {"dealId": created["id"]}


@pytest.mark.asyncio
async def test_move_fresh_deal_raises_no_notification(client_and_repo):
    client, repo = client_and_repo
    created = await _create(client)
    repo.backdate(created["id"], days=2)

    response = await client.patch(
        f"/api/pipeline/deals/{created['id']}/stage", json={"stage": "negotiation"}
    )

    assert response.status_code == 200
    assert response.json()["currentStage"] == "negotiation"
    assert repo.notifications == []


@pytest.mark.asyncio
async def test_move_deal_records_activity(client_and_repo):
    client, repo = client_and_repo
    created = await _create(client)

    await client.patch(
        f"/api/pipeline/deals/{created['id']}/stage",
        json={"stage": "proposal"},
        headers={"X-User-ID": "3"},
    )

    activity = repo.activities[-1]
    assert activity.action == "move_deal"
    assert activity.description == "Deal moved to proposal: Acme Corp"
    assert activity.metadata == {"dealId": created["id"], "newStage": "proposal"}
    assert activity.user_id == 3


@pytest.mark.asyncio
async def test_move_deal_accepts_unknown_stage(client_and_repo):
    client, _ = client_and_repo
    created = await _create(client)

    response = await client.patch(
        f"/api/pipeline/deals/{created['id']}/stage", json={"stage": "on_hold"}
    )

    assert response.status_code == 200
    assert response.json()["currentStage"] == "on_hold"


@pytest.mark.asyncio
async def test_move_closed_deal_back_to_lead(client_and_repo):
    client, _ = client_and_repo
    created = await _create(client, currentStage="closed_won")

    response = await client.patch(
        f"/api/pipeline/deals/{created['id']}/stage", json={"stage": "lead"}
    )

    assert response.status_code == 200
    assert response.json()["currentStage"] == "lead"


@pytest.mark.asyncio
async def test_move_deal_non_numeric_id_is_500(client_and_repo):
    client, repo = client_and_repo

    response = await client.patch(
        "/api/pipeline/deals/not-a-number/stage", json={"stage": "lead"}
    )

    assert response.status_code == 500
    assert response.json() == {"error": "Failed to move deal"}
    assert repo.activities == []


@pytest.mark.asyncio
async def test_move_deal_loose_numeric_id_is_500(client_and_repo):
    """Ids that int() would coerce ("1_000", " 1 ") are still malformed."""
    client, repo = client_and_repo
    await _create(client)
    before = len(repo.activities)

    for raw_id in ("1_000", "%201%20", "+1"):
        response = await client.patch(
            f"/api/pipeline/deals/{raw_id}/stage", json={"stage": "contact"}
        )
        assert response.status_code == 500, raw_id
        assert response.json() == {"error": "Failed to move deal"}

    assert len(repo.activities) == before


@pytest.mark.asyncio
async def test_move_deal_appends_stage_history(client_and_repo):
    """Two moves leave two ordered {from, to, timestamp, userId} entries."""
    client, repo = client_and_repo
    created = await _create(client)
    assert created["history"] == []
    path = f"/api/pipeline/deals/{created['id']}/stage"

    await client.patch(path, json={"stage": "contact"}, headers={"X-User-ID": "4"})
    repo._clock.advance(hours=2)
    response = await client.patch(path, json={"stage": "proposal"})

    history = response.json()["history"]
    assert [(h["from"], h["to"]) for h in history] == [
        ("lead", "contact"),
        ("contact", "proposal"),
    ]
    assert [h["userId"] for h in history] == [4, None]
    assert history[0]["timestamp"] < history[1]["timestamp"]


# ── Delete ───────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_delete_deal(client_and_repo):
    client, repo = client_and_repo
    created = await _create(client)

    response = await client.delete(f"/api/pipeline/deals/{created['id']}")

    assert response.status_code == 200
    assert response.json() == {"success": True}
    assert (await client.get("/api/pipeline/deals")).json() == []
    activity = repo.activities[-1]
    assert activity.action == "delete_deal"
    assert activity.description == "Deal deleted: Acme Corp"
    assert activity.metadata == {"dealId": created["id"]}


@pytest.mark.asyncio
async def test_delete_missing_deal_appends_no_activity(client_and_repo):
    client, repo = client_and_repo
    await _create(client)
    before = len(repo.activities)

    response = await client.delete("/api/pipeline/deals/9999")

    assert response.status_code == 500
    assert response.json() == {"error": "Failed to delete deal"}
    assert len(repo.activities) == before


# ── Analytics ────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_analytics_empty_pipeline(client_and_repo):
    client, _ = client_and_repo

    response = await client.get("/api/pipeline/analytics")

    assert response.status_code == 200
    assert response.json() == {
        "totalValue": 0.0,
        "weightedValue": 0.0,
        "valueByStage": [],
        "weeklyVelocity": 0,
    }


@pytest.mark.asyncio
async def test_analytics_totals_and_stage_breakdown(client_and_repo):
    client, _ = client_and_repo
    await _create(client, companyName="A", value=1000, probability=20, currentStage="lead")
    await _create(client, companyName="B", value=3000, probability=60, currentStage="proposal")
    await _create(client, companyName="C", value=500, probability=20, currentStage="lead")

    data = (await client.get("/api/pipeline/analytics")).json()

    assert data["totalValue"] == 4500.0
    assert data["weightedValue"] == pytest.approx(200.0 + 1800.0 + 100.0)
    by_stage = {s["stage"]: (s["value"], s["count"]) for s in data["valueByStage"]}
    assert by_stage == {"lead": (1500.0, 2), "proposal": (3000.0, 1)}


@pytest.mark.asyncio
async def test_analytics_total_drops_by_deleted_value(client_and_repo):
    client, _ = client_and_repo
    await _create(client, companyName="Keep", value=1200)
    doomed = await _create(client, companyName="Drop", value=800)

    before = (await client.get("/api/pipeline/analytics")).json()["totalValue"]
    await client.delete(f"/api/pipeline/deals/{doomed['id']}")
    after = (await client.get("/api/pipeline/analytics")).json()["totalValue"]

    assert before - after == 800.0


@pytest.mark.asyncio
async def test_weekly_velocity_window(client_and_repo):
    """Moves 6 days ago count, moves 8 days ago don't."""
    client, repo = client_and_repo
    deal = await _create(client)
    path = f"/api/pipeline/deals/{deal['id']}/stage"

    await client.patch(path, json={"stage": "contact"})  # t0
    repo._clock.advance(days=2)
    await client.patch(path, json={"stage": "proposal"})  # t0 + 2d
    repo._clock.advance(days=6)  # now = t0 + 8d

    data = (await client.get("/api/pipeline/analytics")).json()
    assert data["weeklyVelocity"] == 1


@pytest.mark.asyncio
async def test_weekly_velocity_counts_moves_not_deals(client_and_repo):
    client, _ = client_and_repo
    deal = await _create(client)
    path = f"/api/pipeline/deals/{deal['id']}/stage"

    for stage in ("contact", "proposal", "contact"):
        await client.patch(path, json={"stage": stage})

    data = (await client.get("/api/pipeline/analytics")).json()
    assert data["weeklyVelocity"] == 3


# ── Catalogue / Feeds ────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_list_stages(client_and_repo):
    client, _ = client_and_repo

    response = await client.get("/api/pipeline/stages")

    assert response.status_code == 200
    stages = response.json()
    assert [s["id"] for s in stages] == [
        "lead",
        "contact",
        "proposal",
        "negotiation",
        "closed_won",
        "closed_lost",
    ]
    assert [s["probability"] for s in stages] == [20, 40, 60, 80, 100, 0]


@pytest.mark.asyncio
async def test_list_activities_for_one_deal(client_and_repo):
    client, _ = client_and_repo
    a = await _create(client, companyName="A")
    await _create(client, companyName="B")
    await client.patch(f"/api/pipeline/deals/{a['id']}/stage", json={"stage": "contact"})

    response = await client.get("/api/pipeline/activities", params={"dealId": a["id"]})

    assert response.status_code == 200
    actions = [item["action"] for item in response.json()]
    assert actions == ["move_deal", "create_deal"]


@pytest.mark.asyncio
async def test_list_notifications(client_and_repo):
    client, repo = client_and_repo
    created = await _create(client)
    repo.backdate(created["id"], days=45)
    await client.patch(
        f"/api/pipeline/deals/{created['id']}/stage", json={"stage": "contact"}
    )

    response = await client.get("/api/pipeline/notifications?unreadOnly=true")

    assert response.status_code == 200
    data = response.json()
    assert len(data) == 1
    assert data[0]["title"] == "Stagnant Deal Alert"
    assert data[0]["read"] is False


# ── Failure Contract ─────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_database_failures_return_flat_error():
    app = _make_mock_app()
    app.state.deal_repository = FailingRepository()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        listed = await client.get("/api/pipeline/deals")
        created = await client.post("/api/pipeline/deals", json={"companyName": "X"})
        analytics = await client.get("/api/pipeline/analytics")

    assert (listed.status_code, listed.json()) == (500, {"error": "Failed to fetch deals"})
    assert (created.status_code, created.json()) == (500, {"error": "Failed to create deal"})
    assert (analytics.status_code, analytics.json()) == (
        500,
        {"error": "Failed to fetch analytics"},
    )


@pytest.mark.asyncio
async def test_pipeline_api_503_when_not_initialized():
    """app.state.deal_repository = None -> 503."""
    app = _make_mock_app()
    app.state.deal_repository = None

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/api/pipeline/deals")
        assert response.status_code == 503
        assert "not initialized" in response.json()["detail"]
