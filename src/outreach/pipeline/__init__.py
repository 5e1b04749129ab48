"""Deal pipeline module -- models, schemas, rules, and repository for the kanban board.

Provides SQLAlchemy models (DealModel, ActivityModel, NotificationModel),
Pydantic schemas (deal DTOs, filters, analytics), the stage-move and
stagnation rules, the aggregation helpers, and DealRepository for async CRUD.
"""
