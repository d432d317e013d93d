"""
Sales CRM Hub — SPIN Scorer
=============================

SPIN selling completion scoring (Situation, Problem, Implication, Need-payoff).

Each of the four fields counts as complete when it holds non-blank text.
score = round(100 * completed / 4), so only 0, 25, 50, 75 and 100 occur.

Functions:
  completion_score()    - Score a SpinContent row (0-100)
  is_proposal_ready()   - SPIN complete + risk assessed + no proposal yet
  persist_score()       - Write the score onto the parent opportunity
  get_spin_content()    - Load the SPIN row for an opportunity
  save_spin_content()   - Upsert SPIN fields, then persist the fresh score
"""
from __future__ import annotations

from typing import Any, Dict, Optional, Tuple

from models.crm_models import SpinContent
from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import query_table, update_rows, upsert_row

logger = setup_logger("spin_scorer")

SPIN_FIELDS = ("situation", "problem", "implication", "need_payoff")
SPIN_TABLE = "spin_contents"
OPPORTUNITY_TABLE = "opportunities"


def _field(content: Any, name: str) -> Any:
    if isinstance(content, dict):
        return content.get(name)
    return getattr(content, name, None)


def is_field_complete(value: Any) -> bool:
    return isinstance(value, str) and len(value.strip()) > 0


def completion_score(content: Any) -> int:
    """Percentage of the four SPIN fields holding non-blank text."""
    if content is None:
        return 0
    completed = sum(1 for name in SPIN_FIELDS if is_field_complete(_field(content, name)))
    return round(100 * completed / len(SPIN_FIELDS))


def is_proposal_ready(content: Any, opportunity: Optional[Dict]) -> bool:
    """A proposal can be generated once SPIN is complete and risk is assessed."""
    if content is None or not opportunity:
        return False
    return (
        completion_score(content) == 100
        and bool(opportunity.get("risk_score"))
        and not opportunity.get("proposal_id")
    )


def persist_score(opportunity_id: str, content: Any) -> int:
    """
    Write the SPIN completion score onto the opportunity row.

    Raises:
        DataWriteError: if the update fails. Not retried.
    """
    score = completion_score(content)
    update_rows(OPPORTUNITY_TABLE, {"id": opportunity_id}, {"spin_completion_score": score})
    logger.info("SPIN score %d persisted for opportunity %s", score, opportunity_id)
    return score


def get_spin_content(opportunity_id: str) -> Optional[SpinContent]:
    rows = query_table(SPIN_TABLE, filters={"opportunity_id": opportunity_id}, limit=1)
    if not rows:
        return None
    return SpinContent(**rows[0])


def save_spin_content(opportunity_id: str, fields: Dict[str, Any]) -> Tuple[SpinContent, int]:
    """
    Create or update the SPIN row for an opportunity and persist its score.

    The score is computed from the row the backend returns for this write,
    not from a separate read.
    """
    row = {"opportunity_id": opportunity_id}
    row.update({k: v for k, v in fields.items() if k in SPIN_FIELDS})

    written = upsert_row(SPIN_TABLE, row, on_conflict="opportunity_id")
    content = SpinContent(**{**row, **written})
    score = persist_score(opportunity_id, content)
    return content, score
