"""Context enrichment for the decision prompt.

Before an email goes to the decision service it is enriched with:
1. Direction: outbound if the sender matches a configured self address
2. Contact: the CRM contact the email is about (recipient for outbound,
   sender for inbound), with its company name
3. Calendar: free slots and proposal windows, only for scheduling emails
4. Company research: for the other party's domain (the sender for inbound
   mail, the contact or first external recipient for outbound), unless it
   is a consumer mail provider

Every step except direction can fail without failing the email: the
sub-context is left empty and a 'failed' event is recorded.

Usage:
    from mailcrm.enrichment.context import ContextEnricher

    enricher = ContextEnricher(store, mailbox, config, researcher=researcher)
    result = await enricher.enrich(email)
    result.context.direction  # Direction.INBOUND
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo

from mailcrm.core.errors import MailcrmError
from mailcrm.core.logging import get_logger
from mailcrm.enrichment.research import is_consumer_domain
from mailcrm.enrichment.slots import generate_slots, generate_structured_slots
from mailcrm.models import (
    CalendarContext,
    ContactContext,
    Direction,
    PipelineEvent,
    PromptContext,
)

if TYPE_CHECKING:
    from mailcrm.config_schema import AppConfig
    from mailcrm.db.store import Contact, DatabaseStore
    from mailcrm.enrichment.research import CompanyResearcher
    from mailcrm.graph.mailbox import MailTransport
    from mailcrm.models import Email

logger = get_logger(__name__)

# Busy intervals are fetched far enough ahead to cover the proposal windows,
# which start two business days out and span three business days.
STRUCTURED_WINDOW_DAYS = 14


def detect_direction(sender: str, self_addresses: list[str]) -> Direction:
    """Outbound if any configured self address appears in the sender (case-insensitive)."""
    sender = sender.lower()
    if any(addr and addr.lower() in sender for addr in self_addresses):
        return Direction.OUTBOUND
    return Direction.INBOUND


def has_scheduling_intent(email: Email, keywords: list[str]) -> bool:
    text = f"{email.subject}\n{email.body}".lower()
    return any(k in text for k in keywords)


@dataclass
class EnrichmentResult:
    """Output of ContextEnricher.enrich()."""

    context: PromptContext
    events: list[PipelineEvent] = field(default_factory=list)


class ContextEnricher:
    """Builds the PromptContext for an email.

    Attributes:
        _store: CRM store for contact and company lookups
        _mailbox: Mail transport for busy intervals
        _researcher: Company research collaborator (None disables research)
        _clock: Returns the current timezone-aware time
    """

    def __init__(
        self,
        store: DatabaseStore,
        mailbox: MailTransport,
        config: AppConfig,
        researcher: CompanyResearcher | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._store = store
        self._mailbox = mailbox
        self._config = config
        self._researcher = researcher
        tz = ZoneInfo(config.timezone)
        self._clock = clock or (lambda: datetime.now(tz))

    async def enrich(self, email: Email) -> EnrichmentResult:
        events: list[PipelineEvent] = []

        direction = detect_direction(email.sender, self._config.self_addresses)
        events.append(
            PipelineEvent("direction", "completed", f"Email is {direction.value}")
        )

        contact = await self._resolve_contact(email, direction, events)
        calendar = self._calendar_context(email, events)
        domain = self._counterparty_domain(email, direction, contact)
        research = await self._company_research(domain, events)

        return EnrichmentResult(
            context=PromptContext(
                direction=direction,
                contact=contact,
                calendar=calendar,
                company_research=research,
            ),
            events=events,
        )

    # -----------------------------------------------------------------------
    # Contact
    # -----------------------------------------------------------------------

    async def _resolve_contact(
        self,
        email: Email,
        direction: Direction,
        events: list[PipelineEvent],
    ) -> ContactContext | None:
        try:
            if direction == Direction.OUTBOUND:
                contact = await self._match_recent_contact(email)
            else:
                contact = await self._store.find_contact_by_email(email.sender_address)

            if contact is None:
                events.append(PipelineEvent("contact", "skipped", "No matching contact"))
                return None

            company_name = None
            if contact.company_id is not None:
                company = await self._store.get_company(contact.company_id)
                company_name = company.name if company else None
        except MailcrmError as e:
            logger.warning("contact_enrichment_failed", email_id=email.id, error=str(e))
            events.append(PipelineEvent("contact", "failed", str(e)))
            return None

        events.append(
            PipelineEvent(
                "contact",
                "completed",
                f"Matched contact {contact.name}",
                {"contact_id": contact.id},
            )
        )
        return ContactContext(
            contact_id=contact.id,
            name=contact.name,
            email=contact.email or "",
            direction=direction,
            company_id=contact.company_id,
            company_name=company_name,
        )

    async def _match_recent_contact(self, email: Email) -> Contact | None:
        """First recent contact whose name or email is mentioned in the email."""
        text = f"{email.subject}\n{email.body}".lower()
        for contact in await self._store.list_recent_contacts():
            name = (contact.name or "").strip().lower()
            address = (contact.email or "").strip().lower()
            if (name and name in text) or (address and address in text):
                return contact
        return None

    # -----------------------------------------------------------------------
    # Calendar
    # -----------------------------------------------------------------------

    def _calendar_context(
        self, email: Email, events: list[PipelineEvent]
    ) -> CalendarContext | None:
        if not has_scheduling_intent(email, self._config.triage.scheduling_keywords):
            events.append(PipelineEvent("calendar", "skipped", "No scheduling intent"))
            return None

        lookahead = self._config.calendar.lookahead_days
        try:
            busy = self._mailbox.get_busy_intervals(max(lookahead, STRUCTURED_WINDOW_DAYS))
        except MailcrmError as e:
            logger.warning("calendar_fetch_failed", email_id=email.id, error=str(e))
            events.append(PipelineEvent("calendar", "failed", str(e)))
            return None

        try:
            now = self._clock()
            slots = generate_slots(busy, now, lookahead_days=lookahead)
            windows = generate_structured_slots(busy, now)
        except ValueError as e:
            logger.warning("slot_generation_failed", email_id=email.id, error=str(e))
            events.append(PipelineEvent("calendar", "failed", str(e)))
            return CalendarContext(summary=f"{len(busy)} upcoming events")

        summary = (
            f"{len(slots)} open 30-minute slots in the next {lookahead} days; "
            f"{len(busy)} busy events"
        )
        events.append(
            PipelineEvent(
                "calendar",
                "completed",
                summary,
                {"slots": len(slots), "windows": len(windows)},
            )
        )
        return CalendarContext(
            summary=summary,
            slots=tuple(slots),
            structured_slots=tuple(windows),
        )

    # -----------------------------------------------------------------------
    # Company research
    # -----------------------------------------------------------------------

    def _counterparty_domain(
        self, email: Email, direction: Direction, contact: ContactContext | None
    ) -> str:
        """Domain of the company on the other side of the conversation."""
        if direction == Direction.INBOUND:
            return email.sender_domain

        self_addresses = {a.lower() for a in self._config.self_addresses}
        candidates = [contact.email] if contact and contact.email else []
        candidates += [a for a in email.to if a.strip().lower() not in self_addresses]
        for address in candidates:
            _, _, domain = address.strip().lower().rpartition("@")
            if domain:
                return domain
        return ""

    async def _company_research(self, domain: str, events: list[PipelineEvent]) -> str | None:
        if self._researcher is None or not self._config.research.enabled:
            events.append(PipelineEvent("research", "skipped", "Research disabled"))
            return None
        if not domain:
            events.append(PipelineEvent("research", "skipped", "No counterparty domain"))
            return None
        if is_consumer_domain(domain):
            events.append(
                PipelineEvent("research", "skipped", "Consumer mail domain", {"domain": domain})
            )
            return None

        try:
            research = await self._researcher.research(domain)
        except MailcrmError as e:
            logger.warning("company_research_failed", domain=domain, error=str(e))
            events.append(PipelineEvent("research", "failed", str(e), {"domain": domain}))
            return None

        events.append(
            PipelineEvent(
                "research",
                "completed" if research else "skipped",
                "Company research attached" if research else "No research found",
                {"domain": domain},
            )
        )
        return research
