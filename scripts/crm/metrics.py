"""
Sales CRM Hub — Metrics Aggregator
====================================

Derived dashboard metrics computed from already-fetched CRM rows.

Functions:
  compute_metrics()       - Conversion rate, average deal size, pipeline value, totals
  pipeline_breakdown()    - Deal count and value per status
  task_metrics()          - Task counts by status, including overdue
  is_overdue()            - Overdue predicate for a single task
  fetch_metrics_inputs()  - Load leads, deals and activities for a MetricsQuery
  load_metrics()          - fetch_metrics_inputs() + compute_metrics()

Rows may be plain dicts (as returned by Supabase) or the pydantic row models.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Tuple

from pydantic import TypeAdapter, ValidationError

from models.crm_models import (
    CRMMetrics,
    MetricsQuery,
    PipelineBreakdown,
    PipelineStage,
    TaskMetrics,
)
from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import query_table

logger = setup_logger("crm_metrics")

CLOSED_DEAL_STATUSES = frozenset({"won", "lost", "cancelled"})
PIPELINE_STATUSES = ("active", "proposal", "negotiation", "won", "lost", "on_hold")

_DATETIME = TypeAdapter(datetime)


def _get(row: Any, key: str, default: Any = None) -> Any:
    if isinstance(row, dict):
        return row.get(key, default)
    return getattr(row, key, default)


def _parse_datetime(value: Any) -> Optional[datetime]:
    """Parse a backend timestamp; unparseable values are logged and treated as missing."""
    if value is None or value == "":
        return None
    try:
        dt = _DATETIME.validate_python(value)
    except ValidationError as e:
        logger.warning("Ignoring unparseable timestamp %r: %s", value, e.errors()[0]["msg"])
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def compute_metrics(
    leads: Iterable[Any],
    deals: Iterable[Any],
    activities: Iterable[Any],
) -> CRMMetrics:
    """
    Compute the dashboard summary.

    conversion_rate is won deals over currently-qualified leads (percent),
    so it can exceed 100 when more deals close than leads remain qualified.
    """
    leads = list(leads)
    deals = list(deals)
    activities = list(activities)

    qualified = sum(1 for lead in leads if _get(lead, "status") == "qualified")
    won = [d for d in deals if _get(d, "status") == "won"]

    conversion_rate = (len(won) / qualified) * 100 if qualified > 0 else 0

    won_values = [_get(d, "value") for d in won if _get(d, "value") is not None]
    avg_deal_size = sum(won_values) / len(won_values) if won_values else 0

    pipeline_value = sum(
        _get(d, "value") or 0
        for d in deals
        if _get(d, "status") not in CLOSED_DEAL_STATUSES
    )

    return CRMMetrics(
        total_leads=len(leads),
        total_deals=len(deals),
        total_activities=len(activities),
        qualified_leads=qualified,
        won_deals=len(won),
        conversion_rate=conversion_rate,
        avg_deal_size=avg_deal_size,
        pipeline_value=pipeline_value,
    )


def pipeline_breakdown(deals: Iterable[Any]) -> PipelineBreakdown:
    """Count and sum deals per pipeline status."""
    deals = list(deals)
    by_status = {status: PipelineStage(status=status) for status in PIPELINE_STATUSES}

    for d in deals:
        stage = by_status.get(_get(d, "status"))
        if stage is None:
            continue
        stage.count += 1
        stage.value += _get(d, "value") or 0

    return PipelineBreakdown(
        stages=list(by_status.values()),
        total_value=sum(_get(d, "value") or 0 for d in deals),
    )


def is_overdue(task: Any, now: datetime = None) -> bool:
    """A task is overdue when it has a past due date and is not completed."""
    if _get(task, "status") == "completed":
        return False
    due = _parse_datetime(_get(task, "due_date"))
    if due is None:
        return False
    now = now or datetime.now(timezone.utc)
    return due < now


def task_metrics(tasks: Iterable[Any], now: datetime = None) -> TaskMetrics:
    """Task counts by status plus the overdue count."""
    tasks = list(tasks)
    now = now or datetime.now(timezone.utc)
    return TaskMetrics(
        total=len(tasks),
        to_do=sum(1 for t in tasks if _get(t, "status") == "to_do"),
        in_progress=sum(1 for t in tasks if _get(t, "status") == "in_progress"),
        completed=sum(1 for t in tasks if _get(t, "status") == "completed"),
        overdue=sum(1 for t in tasks if is_overdue(t, now)),
    )


def fetch_metrics_inputs(query: MetricsQuery = None) -> Tuple[list, list, list]:
    """
    Fetch the full lead, deal and activity populations for a query.

    Raises:
        DataFetchError: if any of the three queries fails.
    """
    query = query or MetricsQuery()
    leads = query_table("leads", select="id, status, source, score",
                        filters=query.filters("assigned_rep"))
    deals = query_table("opportunities", select="id, name, value, status, probability",
                        filters=query.filters("assigned_rep"))
    activities = query_table("activities", select="id, type, status",
                             filters=query.filters("created_by"))
    logger.debug(
        "Fetched metrics inputs: %d leads, %d deals, %d activities",
        len(leads), len(deals), len(activities),
    )
    return leads, deals, activities


def load_metrics(query: MetricsQuery = None) -> CRMMetrics:
    """Fetch inputs for ``query`` and compute the summary."""
    return compute_metrics(*fetch_metrics_inputs(query))
