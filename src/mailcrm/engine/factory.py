"""Construction of the triage pipeline from config.

The CLI and the web lifespan both build the same object graph; these
helpers keep that wiring in one place.

Usage:
    from mailcrm.engine.factory import build_mailbox, build_orchestrator

    mailbox = build_mailbox(config)
    orchestrator = build_orchestrator(config, store, mailbox, anthropic_client)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from mailcrm.auth.msal_auth import GraphAuth
from mailcrm.decision.claude_decider import ClaudeDecisionService
from mailcrm.engine.orchestrator import DecisionOrchestrator
from mailcrm.engine.resolver import LastChatResolver
from mailcrm.enrichment.context import ContextEnricher
from mailcrm.enrichment.research import ClaudeCompanyResearcher
from mailcrm.graph.client import GraphClient
from mailcrm.graph.mailbox import GraphMailbox

if TYPE_CHECKING:
    import anthropic

    from mailcrm.config_schema import AppConfig
    from mailcrm.db.store import DatabaseStore
    from mailcrm.graph.mailbox import MailTransport


def build_mailbox(config: AppConfig) -> GraphMailbox:
    """Graph-backed mail transport for the configured account.

    Raises:
        AuthenticationError: If the auth section is unusable
    """
    auth = GraphAuth(
        client_id=config.auth.client_id,
        tenant_id=config.auth.tenant_id,
        scopes=config.auth.scopes,
        token_cache_path=config.auth.token_cache_path,
    )
    return GraphMailbox(
        GraphClient(auth),
        timezone=config.timezone,
        body_max_length=config.triage.body_max_length,
    )


def build_orchestrator(
    config: AppConfig,
    store: DatabaseStore,
    mailbox: MailTransport,
    anthropic_client: anthropic.Anthropic,
) -> DecisionOrchestrator:
    researcher = (
        ClaudeCompanyResearcher(anthropic_client, store, config)
        if config.research.enabled
        else None
    )
    return DecisionOrchestrator(
        store=store,
        mailbox=mailbox,
        enricher=ContextEnricher(store, mailbox, config, researcher=researcher),
        decider=ClaudeDecisionService(anthropic_client, store, config),
        config=config,
    )


def build_resolver(
    config: AppConfig,
    store: DatabaseStore,
    mailbox: MailTransport,
) -> LastChatResolver:
    return LastChatResolver(store, mailbox, config)
