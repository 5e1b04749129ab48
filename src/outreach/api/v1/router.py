"""V1 API router -- aggregates the pipeline endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.outreach.api.v1 import pipeline

router = APIRouter()

router.include_router(pipeline.router)
