"""Company research for inbound mail from business domains.

CompanyResearcher is the collaborator contract; ClaudeCompanyResearcher asks
Claude to summarize recent news about a sender's company using Anthropic's
server-side web search tool. Consumer mail providers are never researched.

Usage:
    from mailcrm.enrichment.research import ClaudeCompanyResearcher, is_consumer_domain

    researcher = ClaudeCompanyResearcher(anthropic_client, store, config)
    if not is_consumer_domain("acme.io"):
        summary = await researcher.research("acme.io")
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any, Protocol

import anthropic

from mailcrm.core.errors import EnrichmentError
from mailcrm.core.logging import get_logger

if TYPE_CHECKING:
    from mailcrm.config_schema import AppConfig
    from mailcrm.db.store import DatabaseStore

logger = get_logger(__name__)

# Matched against the first label of the sender domain ("gmail" in gmail.co.uk)
CONSUMER_DOMAINS = frozenset(
    {
        "gmail",
        "googlemail",
        "yahoo",
        "outlook",
        "hotmail",
        "live",
        "icloud",
        "me",
        "aol",
        "protonmail",
        "proton",
    }
)

RESEARCH_SYSTEM_PROMPT = (
    "You research companies for a sales team. Search the web for recent, "
    "factual information about the company behind the given email domain: "
    "what it does, recent news, funding, partnerships and product launches. "
    "Reply with at most 5 short bullet points. If nothing reliable is found, "
    "reply with exactly: NO_RESULTS"
)
NO_RESULTS = "NO_RESULTS"


def is_consumer_domain(domain: str) -> bool:
    """True for free mail providers (and for an empty domain)."""
    label = domain.strip().lower().split(".", 1)[0]
    return not label or label in CONSUMER_DOMAINS


class CompanyResearcher(Protocol):
    async def research(self, domain: str) -> str | None: ...


class ClaudeCompanyResearcher:
    """Company research through Claude with the web search server tool.

    Attributes:
        _client: Anthropic API client
        _store: Database store for LLM request logging
        _config: Application configuration
    """

    def __init__(
        self,
        anthropic_client: anthropic.Anthropic,
        store: DatabaseStore,
        config: AppConfig,
    ):
        self._client = anthropic_client
        self._store = store
        self._config = config

    async def research(self, domain: str) -> str | None:
        """Summarize what is publicly known about the company behind a domain.

        Args:
            domain: Sender email domain, e.g. "acme.io"

        Returns:
            Research text prefixed with the domain, or None when nothing was found

        Raises:
            EnrichmentError: If the API call fails
        """
        model = self._config.models.research
        messages = [{"role": "user", "content": f"Company email domain: {domain}"}]
        start_time = time.monotonic()

        try:
            response = self._client.messages.create(
                model=model,
                max_tokens=1024,
                system=RESEARCH_SYSTEM_PROMPT,
                messages=messages,
                tools=[
                    {
                        "type": "web_search_20250305",
                        "name": "web_search",
                        "max_uses": self._config.research.max_searches,
                    }
                ],
            )
        except anthropic.APIError as e:
            duration_ms = int((time.monotonic() - start_time) * 1000)
            await self._log(model, messages, None, duration_ms, error=str(e))
            raise EnrichmentError(f"Company research failed for {domain}: {e}", step="research") from e

        duration_ms = int((time.monotonic() - start_time) * 1000)
        text = _final_text(response)
        await self._log(model, messages, response, duration_ms)

        if not text or NO_RESULTS in text:
            logger.info("research_no_results", domain=domain)
            return None

        logger.info("research_complete", domain=domain, chars=len(text), duration_ms=duration_ms)
        return f"Recent information about {domain}:\n{text}"

    async def _log(
        self,
        model: str,
        messages: list[dict[str, Any]],
        response: anthropic.types.Message | None,
        duration_ms: int,
        error: str | None = None,
    ) -> None:
        if not self._config.llm_logging.enabled:
            return
        try:
            await self._store.log_llm_request(
                task_type="research",
                model=model,
                prompt={"system": RESEARCH_SYSTEM_PROMPT, "messages": messages},
                response=(
                    {"text": _final_text(response), "stop_reason": response.stop_reason}
                    if response is not None and self._config.llm_logging.log_responses
                    else None
                ),
                input_tokens=response.usage.input_tokens if response is not None else None,
                output_tokens=response.usage.output_tokens if response is not None else None,
                duration_ms=duration_ms,
                error=error,
            )
        except Exception as e:
            logger.warning("llm_log_failed", error=str(e), task_type="research")


def _final_text(response: anthropic.types.Message) -> str:
    """Join the text blocks of a response (search result blocks are skipped)."""
    parts = [block.text for block in response.content if block.type == "text"]
    return "".join(parts).strip()
