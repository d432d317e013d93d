"""
Sales CRM Hub — Metrics Router
================================
Derived CRM metrics computed from leads, opportunities, activities and tasks.

Endpoints:
  GET /api/metrics/summary   - Conversion rate, avg deal size, pipeline value, totals
  GET /api/metrics/pipeline  - Deal count and value per status
  GET /api/metrics/tasks     - Task counts by status, including overdue
"""
from __future__ import annotations

from datetime import date
from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from models.crm_models import CRMMetrics, MetricsQuery, PipelineBreakdown, TaskMetrics
from scripts.crm.metrics import load_metrics, pipeline_breakdown, task_metrics
from scripts.lib.errors import HubError
from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import query_table

logger = setup_logger("metrics_router")

router = APIRouter(prefix="/api/metrics", tags=["metrics"])


@router.get("/summary", response_model=CRMMetrics)
async def metrics_summary(
    owner_id: Optional[str] = Query(None, description="Filter by assigned rep"),
    created_from: Optional[date] = Query(None, description="Created on or after"),
    created_to: Optional[date] = Query(None, description="Created on or before"),
):
    """Dashboard summary metrics."""
    try:
        return load_metrics(
            MetricsQuery(owner_id=owner_id, created_from=created_from, created_to=created_to)
        )
    except HubError as e:
        logger.error("Metrics summary failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to fetch metrics")


@router.get("/pipeline", response_model=PipelineBreakdown)
async def metrics_pipeline(
    owner_id: Optional[str] = Query(None, description="Filter by assigned rep"),
):
    """Deals grouped by pipeline status."""
    try:
        filters = {"assigned_rep": owner_id} if owner_id else None
        deals = query_table("opportunities", select="id, status, value", filters=filters)
        return pipeline_breakdown(deals)
    except HubError as e:
        logger.error("Pipeline breakdown failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to fetch pipeline metrics")


@router.get("/tasks", response_model=TaskMetrics)
async def metrics_tasks(
    assigned_to: Optional[str] = Query(None, description="Filter by assignee"),
):
    """Task counts by status."""
    try:
        filters = {"assigned_to": assigned_to} if assigned_to else None
        tasks = query_table("tasks", select="id, status, due_date", filters=filters)
        return task_metrics(tasks)
    except HubError as e:
        logger.error("Task metrics failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to fetch task metrics")
