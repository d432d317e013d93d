"""
Sales CRM Hub — Pydantic Models
=================================

Row models for leads, deals, activities, tasks and SPIN content, plus the
request/response models for metrics, SPIN scoring and alerts.
"""
from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field


# ─── Row Models ─────────────────────────────────────────────

class Lead(BaseModel):
    """Lead row."""
    id: Optional[str] = None
    status: str = "new"
    source: Optional[str] = None
    score: Optional[float] = None


class Deal(BaseModel):
    """Deal / opportunity row."""
    id: Optional[str] = None
    name: Optional[str] = None
    value: Optional[float] = None
    status: str = "active"
    probability: Optional[float] = None
    assigned_rep: Optional[str] = None
    proposal_sent: bool = False
    proposal_id: Optional[str] = None
    risk_score: Optional[float] = None
    spin_completion_score: Optional[int] = None


class Activity(BaseModel):
    """Activity row."""
    id: Optional[str] = None
    type: Optional[str] = None
    status: Optional[str] = None


class Task(BaseModel):
    """Task row."""
    id: Optional[str] = None
    title: Optional[str] = None
    assigned_to: Optional[str] = None
    due_date: Optional[datetime] = None
    status: Literal["to_do", "in_progress", "completed", "cancelled"] = "to_do"
    priority: Literal["low", "medium", "high", "urgent"] = "medium"


class SpinContent(BaseModel):
    """SPIN selling content for one opportunity."""
    id: Optional[str] = None
    opportunity_id: Optional[str] = None
    situation: Optional[str] = None
    problem: Optional[str] = None
    implication: Optional[str] = None
    need_payoff: Optional[str] = None


# ─── Metrics Models ─────────────────────────────────────────

class MetricsQuery(BaseModel):
    """Serializable filter set for fetching metrics inputs."""
    owner_id: Optional[str] = Field(None, description="Restrict to one rep")
    created_from: Optional[date] = Field(None, description="Inclusive lower bound on created_at")
    created_to: Optional[date] = Field(None, description="Inclusive upper bound on created_at")

    def filters(self, owner_column: str) -> Dict[str, Any]:
        """Translate into ``query_table`` filter keys."""
        filters: Dict[str, Any] = {}
        if self.owner_id:
            filters[owner_column] = self.owner_id
        if self.created_from:
            filters["created_at__gte"] = self.created_from.isoformat()
        if self.created_to:
            filters["created_at__lte"] = f"{self.created_to.isoformat()}T23:59:59.999999"
        return filters


class CRMMetrics(BaseModel):
    """Derived dashboard metrics."""
    total_leads: int = 0
    total_deals: int = 0
    total_activities: int = 0
    qualified_leads: int = 0
    won_deals: int = 0
    conversion_rate: float = 0
    avg_deal_size: float = 0
    pipeline_value: float = 0


class PipelineStage(BaseModel):
    status: str
    count: int = 0
    value: float = 0


class PipelineBreakdown(BaseModel):
    stages: list[PipelineStage] = Field(default_factory=list)
    total_value: float = 0


class TaskMetrics(BaseModel):
    total: int = 0
    to_do: int = 0
    in_progress: int = 0
    completed: int = 0
    overdue: int = 0


# ─── SPIN Models ────────────────────────────────────────────

class SpinContentUpdate(BaseModel):
    """Fields a rep can edit on the SPIN tab."""
    situation: Optional[str] = None
    problem: Optional[str] = None
    implication: Optional[str] = None
    need_payoff: Optional[str] = None


class SpinScoreResponse(BaseModel):
    opportunity_id: str
    content: SpinContent
    completion_score: int
    proposal_ready: bool = False


# ─── Notification Models ────────────────────────────────────

class Alert(BaseModel):
    """A user-facing toast."""
    title: str
    description: str = ""
    severity: Literal["info", "destructive"] = "info"


class NotificationEvent(BaseModel):
    """Transient record of a change that raised an alert."""
    category: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    observed_at: datetime
    alert: Alert
