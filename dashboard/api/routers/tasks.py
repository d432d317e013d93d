"""
Sales CRM Hub — Tasks Router
==============================
Task queries backing the follow-ups view.

Endpoints:
  GET /api/tasks          - List tasks with filters
  GET /api/tasks/overdue  - Tasks past due and not completed
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from scripts.crm.metrics import is_overdue
from scripts.lib.errors import HubError
from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import query_table

logger = setup_logger("tasks_router")

router = APIRouter(prefix="/api/tasks", tags=["tasks"])


@router.get("")
async def list_tasks(
    assigned_to: Optional[str] = Query(None, description="Filter by assignee"),
    status: Optional[str] = Query(None, description="to_do | in_progress | completed | cancelled"),
    priority: Optional[str] = Query(None, description="low | medium | high | urgent"),
    sort: str = Query("due_date", description="Sort field"),
    order: str = Query("asc", description="Sort order: asc or desc"),
    limit: int = Query(50, ge=1, le=500, description="Max results"),
    offset: int = Query(0, ge=0, description="Pagination offset"),
):
    """List tasks with filtering, sorting, and pagination."""
    filters = {}
    if assigned_to:
        filters["assigned_to"] = assigned_to
    if status:
        filters["status"] = status
    if priority:
        filters["priority"] = priority

    try:
        tasks = query_table(
            "tasks",
            filters=filters,
            order_by=sort,
            desc=order.lower() == "desc",
            limit=limit,
            offset=offset,
        )
    except HubError as e:
        logger.error("List tasks failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to fetch tasks")

    return {"results": tasks, "count": len(tasks), "offset": offset, "limit": limit}


@router.get("/overdue")
async def overdue_tasks(
    assigned_to: Optional[str] = Query(None, description="Filter by assignee"),
):
    """Tasks with a due date in the past that are not completed."""
    now = datetime.now(timezone.utc)
    filters = {"status__neq": "completed", "due_date__lt": now.isoformat()}
    if assigned_to:
        filters["assigned_to"] = assigned_to

    try:
        rows = query_table("tasks", filters=filters, order_by="due_date", desc=False)
    except HubError as e:
        logger.error("Overdue tasks query failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to fetch overdue tasks")

    tasks = [t for t in rows if is_overdue(t, now)]
    return {"results": tasks, "count": len(tasks)}
