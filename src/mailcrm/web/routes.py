"""JSON API routes for manual triage triggers.

Every state change (triage, feedback, last-chat backfill) happens because
one of these endpoints was called. The GET routes expose stored decisions,
feedback history and the LLM and action logs.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal
from zoneinfo import ZoneInfo

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from mailcrm import __version__
from mailcrm.config_schema import AppConfig
from mailcrm.core.errors import DatabaseError, GraphAPIError, RateLimitExceeded
from mailcrm.core.logging import get_logger
from mailcrm.db.store import DatabaseStore
from mailcrm.engine.orchestrator import DecisionOrchestrator
from mailcrm.engine.resolver import LastChatResolver
from mailcrm.enrichment.context import STRUCTURED_WINDOW_DAYS
from mailcrm.enrichment.slots import generate_slots, generate_structured_slots
from mailcrm.graph.mailbox import MailTransport
from mailcrm.web.dependencies import (
    get_config,
    get_mailbox,
    get_orchestrator,
    get_resolver,
    get_store,
)

logger = get_logger(__name__)

api_router = APIRouter(prefix="/api")


# ---------------------------------------------------------------------------
# Pydantic models for API input validation
# ---------------------------------------------------------------------------


class TriageRecentRequest(BaseModel):
    count: int | None = Field(default=None, ge=1, le=200)
    retriage: bool = False


class FeedbackRequest(BaseModel):
    verdict: Literal["good", "bad"]
    text: str | None = Field(default=None, max_length=2000)


def _mail_error(e: GraphAPIError | RateLimitExceeded) -> HTTPException:
    status = 429 if isinstance(e, RateLimitExceeded) else 502
    return HTTPException(status_code=status, detail=f"Mail provider error: {e}")


def _read_error(source: str, error: DatabaseError) -> HTTPException:
    logger.error("log_read_failed", source=source, error=str(error))
    return HTTPException(status_code=500, detail=f"Failed to read {source.replace('_', ' ')}")


# ---------------------------------------------------------------------------
# Health and reads
# ---------------------------------------------------------------------------


@api_router.get("/health")
async def health_check(request: Request):
    """Health check: which parts of the pipeline initialized."""
    state = request.app.state
    ready = getattr(state, "orchestrator", None) is not None
    return {
        "status": "healthy" if ready else "degraded",
        "database": getattr(state, "store", None) is not None,
        "mailbox": getattr(state, "mailbox", None) is not None,
        "triage_enabled": ready,
        "version": __version__,
    }


@api_router.get("/decisions/{email_id}")
async def get_decision(email_id: str, store: DatabaseStore = Depends(get_store)):
    """Stored decision for an email, including feedback and its snapshots."""
    record = await store.get_decision_record(email_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Decision not found")
    return record


# ---------------------------------------------------------------------------
# Triage
# ---------------------------------------------------------------------------


@api_router.post("/emails/{email_id}/triage")
async def triage_email(
    email_id: str,
    orchestrator: DecisionOrchestrator = Depends(get_orchestrator),
):
    """Triage (or re-triage) one email.

    A decision service failure is not an HTTP error: the outcome comes back
    with state 'error' so the caller can retry.
    """
    try:
        outcome = await orchestrator.triage_by_id(email_id)
    except GraphAPIError as e:
        if e.status_code == 404:
            raise HTTPException(status_code=404, detail="Email not found") from None
        raise _mail_error(e) from None
    except RateLimitExceeded as e:
        raise _mail_error(e) from None
    except DatabaseError as e:
        logger.error("triage_store_failed", email_id=email_id, error=str(e))
        raise HTTPException(status_code=500, detail="Failed to read stored email") from None
    return outcome.to_dict()


@api_router.post("/triage/recent")
async def triage_recent(
    body: TriageRecentRequest,
    orchestrator: DecisionOrchestrator = Depends(get_orchestrator),
):
    """Fetch recent emails and triage them one at a time."""
    try:
        result = await orchestrator.triage_recent(body.count, retriage=body.retriage)
    except (GraphAPIError, RateLimitExceeded) as e:
        raise _mail_error(e) from None
    return result.to_dict()


@api_router.post("/emails/{email_id}/feedback")
async def record_feedback(
    email_id: str,
    body: FeedbackRequest,
    orchestrator: DecisionOrchestrator = Depends(get_orchestrator),
):
    """Record a good/bad verdict on a stored decision."""
    try:
        outcome = await orchestrator.record_feedback(email_id, body.verdict, body.text)
    except DatabaseError as e:
        logger.error("feedback_store_failed", email_id=email_id, error=str(e))
        raise HTTPException(status_code=500, detail="Failed to store feedback") from None
    if outcome is None:
        raise HTTPException(status_code=404, detail="Decision not found")
    return outcome.to_dict()


# ---------------------------------------------------------------------------
# Resolver and calendar
# ---------------------------------------------------------------------------


@api_router.post("/resolver/run")
async def run_resolver(resolver: LastChatResolver = Depends(get_resolver)):
    """Backfill last_chat for contacts, then companies."""
    result = await resolver.run()
    return result.to_dict()


@api_router.get("/calendar/slots")
async def calendar_slots(
    mailbox: MailTransport = Depends(get_mailbox),
    config: AppConfig = Depends(get_config),
):
    """Free 30-minute slots and the three proposed meeting windows."""
    lookahead = config.calendar.lookahead_days
    try:
        busy = mailbox.get_busy_intervals(max(lookahead, STRUCTURED_WINDOW_DAYS))
    except (GraphAPIError, RateLimitExceeded) as e:
        raise _mail_error(e) from None

    now = datetime.now(ZoneInfo(config.timezone))
    return {
        "slots": [s.to_dict() for s in generate_slots(busy, now, lookahead_days=lookahead)],
        "windows": [w.to_dict() for w in generate_structured_slots(busy, now)],
    }


# ---------------------------------------------------------------------------
# Logs and feedback history
# ---------------------------------------------------------------------------


@api_router.get("/feedback")
async def list_feedback(
    verdict: Literal["good", "bad"] | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    store: DatabaseStore = Depends(get_store),
):
    """Judged decisions with their snapshots, most recent feedback first."""
    try:
        return {"feedback": await store.list_feedback(verdict=verdict, limit=limit)}
    except DatabaseError as e:
        raise _read_error("feedback", e) from None


@api_router.get("/llm-log")
async def llm_log(
    email_id: str | None = None,
    task_type: str | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    store: DatabaseStore = Depends(get_store),
):
    """Recent decision and research requests sent to Claude, newest first."""
    try:
        entries = await store.get_llm_logs(limit=limit, email_id=email_id, task_type=task_type)
    except DatabaseError as e:
        raise _read_error("llm_log", e) from None
    return {"entries": entries}


@api_router.get("/actions")
async def action_log(
    email_id: str | None = None,
    action_type: str | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    store: DatabaseStore = Depends(get_store),
):
    """Audit trail of automation and user actions."""
    try:
        entries = await store.get_action_logs(
            email_id=email_id, action_type=action_type, limit=limit
        )
    except DatabaseError as e:
        raise _read_error("action_log", e) from None
    return {"entries": entries}
