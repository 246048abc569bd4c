"""Tests for context enrichment and company research.

Covers direction detection, contact resolution for inbound and outbound
mail, calendar enrichment on scheduling intent, company research gating,
and the non-fatal handling of every sub-step failure.
"""

from __future__ import annotations

from datetime import UTC, datetime
from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock, MagicMock
from zoneinfo import ZoneInfo

import pytest

from mailcrm.config_schema import AppConfig
from mailcrm.core.errors import DatabaseError, EnrichmentError, GraphAPIError
from mailcrm.db.store import DatabaseStore
from mailcrm.enrichment.context import (
    ContextEnricher,
    detect_direction,
    has_scheduling_intent,
)
from mailcrm.enrichment.research import (
    ClaudeCompanyResearcher,
    is_consumer_domain,
)
from mailcrm.models import BusyInterval, Direction, Email

TZ = ZoneInfo("America/New_York")
MONDAY_8AM = datetime(2024, 12, 16, 8, 0, tzinfo=TZ)


def _make_email(
    email_id: str = "msg-001",
    sender: str = "Jane Doe <jane@acme.io>",
    subject: str = "Quick question",
    body: str = "Hi, do you have the latest pricing?",
) -> Email:
    return Email(
        id=email_id,
        sender=sender,
        subject=subject,
        received_at=datetime(2024, 12, 16, 7, 0, tzinfo=UTC),
        body=body,
    )


def _make_enricher(
    store: DatabaseStore,
    mailbox: MagicMock,
    config: AppConfig,
    researcher: Any = None,
) -> ContextEnricher:
    return ContextEnricher(store, mailbox, config, researcher=researcher, clock=lambda: MONDAY_8AM)


def _stages(events) -> dict[str, str]:
    return {e.stage: e.status for e in events}


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


class TestDetectDirection:
    def test_self_address_is_outbound(self) -> None:
        assert detect_direction("Me <me@mycompany.com>", ["me@mycompany.com"]) == Direction.OUTBOUND

    def test_match_is_case_insensitive(self) -> None:
        assert detect_direction("ME@MyCompany.com", ["me@mycompany.com"]) == Direction.OUTBOUND

    def test_other_sender_is_inbound(self) -> None:
        assert detect_direction("jane@acme.io", ["me@mycompany.com"]) == Direction.INBOUND

    def test_no_self_addresses_is_inbound(self) -> None:
        assert detect_direction("me@mycompany.com", []) == Direction.INBOUND


class TestSchedulingIntent:
    def test_keyword_in_subject(self) -> None:
        email = _make_email(subject="Meeting next week?")
        assert has_scheduling_intent(email, ["meeting", "schedule"])

    def test_keyword_in_body(self) -> None:
        email = _make_email(body="Can we schedule a call?")
        assert has_scheduling_intent(email, ["meeting", "schedule"])

    def test_no_keyword(self) -> None:
        assert not has_scheduling_intent(_make_email(), ["meeting", "schedule"])


class TestConsumerDomains:
    @pytest.mark.parametrize("domain", ["gmail.com", "GMAIL.com", "yahoo.co.uk", "icloud.com", ""])
    def test_consumer(self, domain: str) -> None:
        assert is_consumer_domain(domain)

    @pytest.mark.parametrize("domain", ["acme.io", "mail.example.com", "gmailer.com"])
    def test_business(self, domain: str) -> None:
        assert not is_consumer_domain(domain)


# ---------------------------------------------------------------------------
# Contact enrichment
# ---------------------------------------------------------------------------


async def test_inbound_contact_matched_by_sender(
    store: DatabaseStore, mock_mailbox: MagicMock, sample_config: AppConfig
):
    company = await store.add_company("Acme", "acme.io")
    contact = await store.add_contact("Jane Doe", "Jane@Acme.io", company.id)

    result = await _make_enricher(store, mock_mailbox, sample_config).enrich(_make_email())

    ctx = result.context
    assert ctx.direction == Direction.INBOUND
    assert ctx.contact is not None
    assert ctx.contact.contact_id == contact.id
    assert ctx.contact.company_name == "Acme"
    assert ctx.contact.direction == Direction.INBOUND
    assert _stages(result.events)["contact"] == "completed"


async def test_inbound_unknown_sender_has_no_contact(
    store: DatabaseStore, mock_mailbox: MagicMock, sample_config: AppConfig
):
    await store.add_contact("Bob", "bob@other.io")

    result = await _make_enricher(store, mock_mailbox, sample_config).enrich(_make_email())

    assert result.context.contact is None
    assert _stages(result.events)["contact"] == "skipped"


async def test_outbound_contact_matched_by_mention(
    store: DatabaseStore, mock_mailbox: MagicMock, sample_config: AppConfig
):
    await store.add_contact("Bob Stone", "bob@other.io")
    jane = await store.add_contact("Jane Doe", "jane@acme.io")
    email = _make_email(
        sender="Me <me@mycompany.com>",
        subject="Following up",
        body="Hi Jane Doe, just checking in on the proposal.",
    )

    result = await _make_enricher(store, mock_mailbox, sample_config).enrich(email)

    ctx = result.context
    assert ctx.direction == Direction.OUTBOUND
    assert ctx.contact is not None
    assert ctx.contact.contact_id == jane.id
    assert ctx.contact.direction == Direction.OUTBOUND
    assert ctx.contact.company_name is None


async def test_outbound_contact_matched_by_address(
    store: DatabaseStore, mock_mailbox: MagicMock, sample_config: AppConfig
):
    bob = await store.add_contact("Robert", "bob@other.io")
    email = _make_email(sender="me@mycompany.com", body="cc bob@other.io on this")

    result = await _make_enricher(store, mock_mailbox, sample_config).enrich(email)

    assert result.context.contact is not None
    assert result.context.contact.contact_id == bob.id


async def test_outbound_researches_contact_domain(
    store: DatabaseStore, mock_mailbox: MagicMock, sample_config: AppConfig
):
    await store.add_contact("Robert", "bob@other.io")
    researcher = MagicMock()
    researcher.research = AsyncMock(return_value="Recent information about other.io:\n- hiring")
    email = _make_email(sender="me@mycompany.com", body="cc bob@other.io on this")

    result = await _make_enricher(store, mock_mailbox, sample_config, researcher).enrich(email)

    researcher.research.assert_awaited_once_with("other.io")
    assert result.context.company_research.startswith("Recent information about other.io")


async def test_outbound_without_contact_researches_external_recipient(
    store: DatabaseStore, mock_mailbox: MagicMock, sample_config: AppConfig
):
    researcher = MagicMock()
    researcher.research = AsyncMock(return_value="news")
    email = Email(
        id="msg-002",
        sender="me@mycompany.com",
        subject="Proposal",
        received_at=datetime(2024, 12, 16, 7, 0, tzinfo=UTC),
        to=("ME@mycompany.com", "cto@globex.com"),
    )

    await _make_enricher(store, mock_mailbox, sample_config, researcher).enrich(email)

    researcher.research.assert_awaited_once_with("globex.com")


async def test_outbound_without_counterparty_is_not_researched(
    store: DatabaseStore, mock_mailbox: MagicMock, sample_config: AppConfig
):
    researcher = MagicMock()
    researcher.research = AsyncMock(return_value="news")
    email = _make_email(sender="me@mycompany.com")

    result = await _make_enricher(store, mock_mailbox, sample_config, researcher).enrich(email)

    researcher.research.assert_not_called()
    assert result.context.company_research is None
    assert _stages(result.events)["research"] == "skipped"


async def test_contact_lookup_failure_is_not_fatal(
    mock_mailbox: MagicMock, sample_config: AppConfig
):
    store = MagicMock()
    store.find_contact_by_email = AsyncMock(side_effect=DatabaseError("locked"))

    result = await _make_enricher(store, mock_mailbox, sample_config).enrich(_make_email())

    assert result.context.contact is None
    assert _stages(result.events)["contact"] == "failed"


# ---------------------------------------------------------------------------
# Calendar enrichment
# ---------------------------------------------------------------------------


async def test_calendar_skipped_without_scheduling_intent(
    store: DatabaseStore, mock_mailbox: MagicMock, sample_config: AppConfig
):
    result = await _make_enricher(store, mock_mailbox, sample_config).enrich(_make_email())

    assert result.context.calendar is None
    mock_mailbox.get_busy_intervals.assert_not_called()
    assert _stages(result.events)["calendar"] == "skipped"


async def test_calendar_attached_for_scheduling_email(
    store: DatabaseStore, mock_mailbox: MagicMock, sample_config: AppConfig
):
    mock_mailbox.get_busy_intervals.return_value = [
        BusyInterval(
            start=datetime(2024, 12, 16, 9, 0, tzinfo=TZ),
            end=datetime(2024, 12, 16, 10, 0, tzinfo=TZ),
        )
    ]
    email = _make_email(subject="Can we schedule a meeting?")

    result = await _make_enricher(store, mock_mailbox, sample_config).enrich(email)

    calendar = result.context.calendar
    assert calendar is not None
    assert len(calendar.slots) == 10
    assert calendar.slots[0].start == datetime(2024, 12, 16, 10, 0, tzinfo=TZ)
    assert len(calendar.structured_slots) == 3
    assert calendar.summary == "10 open 30-minute slots in the next 7 days; 1 busy events"
    # Fetched far enough ahead to cover the proposal windows
    mock_mailbox.get_busy_intervals.assert_called_once_with(14)


async def test_calendar_fetch_failure_is_not_fatal(
    store: DatabaseStore, mock_mailbox: MagicMock, sample_config: AppConfig
):
    mock_mailbox.get_busy_intervals.side_effect = GraphAPIError("boom", status_code=500)
    email = _make_email(subject="meeting")

    result = await _make_enricher(store, mock_mailbox, sample_config).enrich(email)

    assert result.context.calendar is None
    assert _stages(result.events)["calendar"] == "failed"


async def test_slot_generation_failure_keeps_summary(
    store: DatabaseStore, mock_mailbox: MagicMock, sample_config: AppConfig
):
    enricher = ContextEnricher(
        store, mock_mailbox, sample_config, clock=lambda: datetime(2024, 12, 16, 8, 0)
    )

    result = await enricher.enrich(_make_email(subject="meeting"))

    assert result.context.calendar is not None
    assert result.context.calendar.summary == "0 upcoming events"
    assert result.context.calendar.slots == ()
    assert _stages(result.events)["calendar"] == "failed"


# ---------------------------------------------------------------------------
# Company research
# ---------------------------------------------------------------------------


async def test_research_attached_for_business_domain(
    store: DatabaseStore, mock_mailbox: MagicMock, sample_config: AppConfig
):
    researcher = MagicMock()
    researcher.research = AsyncMock(return_value="Recent information about acme.io:\n- raised")

    result = await _make_enricher(store, mock_mailbox, sample_config, researcher).enrich(
        _make_email()
    )

    researcher.research.assert_awaited_once_with("acme.io")
    assert result.context.company_research.startswith("Recent information about acme.io")
    assert _stages(result.events)["research"] == "completed"


async def test_consumer_domain_not_researched(
    store: DatabaseStore, mock_mailbox: MagicMock, sample_config: AppConfig
):
    researcher = MagicMock()
    researcher.research = AsyncMock(return_value="x")

    result = await _make_enricher(store, mock_mailbox, sample_config, researcher).enrich(
        _make_email(sender="someone@gmail.com")
    )

    researcher.research.assert_not_called()
    assert result.context.company_research is None
    assert _stages(result.events)["research"] == "skipped"


async def test_research_disabled_in_config(
    store: DatabaseStore, mock_mailbox: MagicMock, sample_config_dict: dict[str, Any]
):
    config = AppConfig(**{**sample_config_dict, "research": {"enabled": False}})
    researcher = MagicMock()
    researcher.research = AsyncMock(return_value="x")

    result = await _make_enricher(store, mock_mailbox, config, researcher).enrich(_make_email())

    researcher.research.assert_not_called()
    assert result.context.company_research is None


async def test_research_failure_is_not_fatal(
    store: DatabaseStore, mock_mailbox: MagicMock, sample_config: AppConfig
):
    researcher = MagicMock()
    researcher.research = AsyncMock(side_effect=EnrichmentError("down", step="research"))

    result = await _make_enricher(store, mock_mailbox, sample_config, researcher).enrich(
        _make_email()
    )

    assert result.context.company_research is None
    assert _stages(result.events)["research"] == "failed"


# ---------------------------------------------------------------------------
# ClaudeCompanyResearcher
# ---------------------------------------------------------------------------


def _text_response(*texts: str) -> SimpleNamespace:
    return SimpleNamespace(
        content=[SimpleNamespace(type="text", text=t) for t in texts],
        stop_reason="end_turn",
        usage=SimpleNamespace(input_tokens=120, output_tokens=40),
    )


async def test_claude_researcher_returns_prefixed_text(
    store: DatabaseStore, sample_config: AppConfig
):
    client = MagicMock()
    client.messages.create = MagicMock(
        return_value=_text_response("- Acme raised a Series B", "\n- Opened a Berlin office")
    )

    research = await ClaudeCompanyResearcher(client, store, sample_config).research("acme.io")

    assert research == (
        "Recent information about acme.io:\n- Acme raised a Series B\n- Opened a Berlin office"
    )
    kwargs = client.messages.create.call_args.kwargs
    assert kwargs["model"] == sample_config.models.research
    assert kwargs["tools"][0]["type"] == "web_search_20250305"
    assert kwargs["tools"][0]["max_uses"] == sample_config.research.max_searches


async def test_claude_researcher_skips_search_result_blocks(
    store: DatabaseStore, sample_config: AppConfig
):
    response = _text_response("Acme builds rockets.")
    response.content.insert(0, SimpleNamespace(type="web_search_tool_result", content=[]))
    client = MagicMock()
    client.messages.create = MagicMock(return_value=response)

    research = await ClaudeCompanyResearcher(client, store, sample_config).research("acme.io")

    assert research == "Recent information about acme.io:\nAcme builds rockets."


async def test_claude_researcher_no_results(store: DatabaseStore, sample_config: AppConfig):
    client = MagicMock()
    client.messages.create = MagicMock(return_value=_text_response("NO_RESULTS"))

    assert await ClaudeCompanyResearcher(client, store, sample_config).research("acme.io") is None


async def test_claude_researcher_api_error(store: DatabaseStore, sample_config: AppConfig):
    import anthropic

    client = MagicMock()
    client.messages.create = MagicMock(
        side_effect=anthropic.APIConnectionError(request=MagicMock())
    )

    with pytest.raises(EnrichmentError) as exc_info:
        await ClaudeCompanyResearcher(client, store, sample_config).research("acme.io")

    assert exc_info.value.step == "research"
