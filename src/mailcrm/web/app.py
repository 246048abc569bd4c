"""FastAPI application for mailcrm's manual-trigger API.

Creates the FastAPI app with a lifespan that builds the store, mailbox,
decision orchestrator and last-chat resolver once and keeps them on
app.state. There is no background scheduler: every triage, feedback and
resolver run is started by an API call.

Usage:
    from mailcrm.web.app import create_app

    app = create_app()
    # Run with: uvicorn.run(app, host="127.0.0.1", port=8000)
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

from mailcrm import __version__
from mailcrm.core.logging import get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize dependencies on startup.

    1. Load config
    2. Initialize database
    3. Initialize mailbox (Graph auth)
    4. Initialize Anthropic client, orchestrator and resolver

    A failure in step 3 or 4 leaves the affected dependencies as None so the
    read-only routes keep working.
    """
    from mailcrm.config import get_config
    from mailcrm.core.errors import AuthenticationError, ConfigLoadError, ConfigValidationError
    from mailcrm.db.store import DatabaseStore
    from mailcrm.engine.factory import build_mailbox, build_orchestrator, build_resolver

    app.state.store = None
    app.state.config = None
    app.state.mailbox = None
    app.state.orchestrator = None
    app.state.resolver = None

    # 1. Load config
    try:
        config = get_config()
    except (ConfigLoadError, ConfigValidationError) as e:
        logger.error("config_load_failed", error=str(e))
        yield
        return

    app.state.config = config

    # 2. Initialize database
    db_path = Path(config.database.path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    store = DatabaseStore(db_path)
    await store.initialize()
    app.state.store = store

    # 3. Initialize mailbox
    try:
        mailbox = build_mailbox(config)
    except AuthenticationError as e:
        logger.error("auth_init_failed", error=str(e))
        yield
        return

    app.state.mailbox = mailbox
    app.state.resolver = build_resolver(config, store, mailbox)

    # 4. Initialize decision pipeline
    try:
        import anthropic

        anthropic_client = anthropic.Anthropic(max_retries=3)
        app.state.orchestrator = build_orchestrator(config, store, mailbox, anthropic_client)
    except anthropic.AnthropicError as e:
        logger.error("orchestrator_init_failed", error=str(e))

    logger.info("api_ready", triage_enabled=app.state.orchestrator is not None)
    yield


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI instance
    """
    from mailcrm.web.routes import api_router

    app = FastAPI(
        title="mailcrm",
        description="CRM-aware email triage API",
        version=__version__,
        lifespan=lifespan,
    )
    app.include_router(api_router)
    return app
