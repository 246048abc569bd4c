"""FastAPI dependency injection helpers.

Extracts shared dependencies from app.state for use in route handlers.
All dependencies are initialized during the FastAPI lifespan; any that
failed to initialize are None and the routes needing them return 503.

Usage:
    from mailcrm.web.dependencies import get_store

    @router.get("/decisions/{email_id}")
    async def get_decision(email_id: str, store: DatabaseStore = Depends(get_store)):
        ...
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import HTTPException, Request

if TYPE_CHECKING:
    from mailcrm.config_schema import AppConfig
    from mailcrm.db.store import DatabaseStore
    from mailcrm.engine.orchestrator import DecisionOrchestrator
    from mailcrm.engine.resolver import LastChatResolver
    from mailcrm.graph.mailbox import MailTransport


def _require(request: Request, name: str, label: str):
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(status_code=503, detail=f"{label} not available")
    return value


def get_store(request: Request) -> DatabaseStore:
    """Get the shared DatabaseStore from app state."""
    return _require(request, "store", "Database")


def get_config(request: Request) -> AppConfig:
    """Get the current AppConfig from app state."""
    return _require(request, "config", "Config")


def get_mailbox(request: Request) -> MailTransport:
    return _require(request, "mailbox", "Mailbox")


def get_orchestrator(request: Request) -> DecisionOrchestrator:
    return _require(request, "orchestrator", "Triage pipeline")


def get_resolver(request: Request) -> LastChatResolver:
    return _require(request, "resolver", "Last-chat resolver")
