"""
Sales CRM Hub — SPIN Router
=============================
SPIN selling content per opportunity, with completion scoring.

Endpoints:
  GET /api/spin/{opportunity_id}  - Content, completion score, proposal readiness
  PUT /api/spin/{opportunity_id}  - Save content and persist the score
"""
from __future__ import annotations

from fastapi import APIRouter, HTTPException

from models.crm_models import SpinContent, SpinContentUpdate, SpinScoreResponse
from scripts.crm.spin_scorer import (
    completion_score,
    get_spin_content,
    is_proposal_ready,
    save_spin_content,
)
from scripts.lib.errors import DataWriteError, HubError
from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import query_table

logger = setup_logger("spin_router")

router = APIRouter(prefix="/api/spin", tags=["spin"])


def _opportunity(opportunity_id: str) -> dict:
    rows = query_table(
        "opportunities",
        select="id, name, risk_score, proposal_id",
        filters={"id": opportunity_id},
        limit=1,
    )
    if not rows:
        raise HTTPException(status_code=404, detail="Opportunity not found")
    return rows[0]


@router.get("/{opportunity_id}", response_model=SpinScoreResponse)
async def get_spin(opportunity_id: str):
    """SPIN content with its completion score."""
    try:
        opportunity = _opportunity(opportunity_id)
        content = get_spin_content(opportunity_id) or SpinContent(opportunity_id=opportunity_id)
        return SpinScoreResponse(
            opportunity_id=opportunity_id,
            content=content,
            completion_score=completion_score(content),
            proposal_ready=is_proposal_ready(content, opportunity),
        )
    except HTTPException:
        raise
    except HubError as e:
        logger.error("Get SPIN failed for %s: %s", opportunity_id, e)
        raise HTTPException(status_code=500, detail="Failed to fetch SPIN data")


@router.put("/{opportunity_id}", response_model=SpinScoreResponse)
async def put_spin(opportunity_id: str, update: SpinContentUpdate):
    """Create or update SPIN content, then write the score onto the opportunity."""
    try:
        opportunity = _opportunity(opportunity_id)
        content, score = save_spin_content(
            opportunity_id, update.model_dump(exclude_unset=True),
        )
        return SpinScoreResponse(
            opportunity_id=opportunity_id,
            content=content,
            completion_score=score,
            proposal_ready=is_proposal_ready(content, opportunity),
        )
    except HTTPException:
        raise
    except DataWriteError as e:
        logger.error("Save SPIN failed for %s: %s", opportunity_id, e)
        raise HTTPException(status_code=500, detail="Failed to update SPIN data")
    except HubError as e:
        logger.error("Save SPIN lookup failed for %s: %s", opportunity_id, e)
        raise HTTPException(status_code=500, detail="Failed to fetch SPIN data")
