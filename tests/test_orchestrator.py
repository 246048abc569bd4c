"""Tests for the decision orchestrator.

Enrichment and the decision service are mocked; the store is real so the
persisted record, flag merging and feedback snapshots are checked end to end.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from mailcrm.config_schema import AppConfig
from mailcrm.core.errors import DatabaseError, DecisionServiceError
from mailcrm.core.logging import get_correlation_id
from mailcrm.core.rate_limiter import FixedIntervalPacer
from mailcrm.db.store import DatabaseStore
from mailcrm.engine.orchestrator import DecisionOrchestrator, TriageState
from mailcrm.enrichment.context import EnrichmentResult
from mailcrm.models import (
    Direction,
    Email,
    KeyPoint,
    PipelineEvent,
    PromptContext,
    TriageDecision,
)

NOW = datetime(2024, 12, 16, 15, 0, tzinfo=UTC)


def _make_email(email_id: str = "msg-001", age: timedelta = timedelta(hours=3)) -> Email:
    return Email(
        id=email_id,
        sender="Jane <jane@acme.io>",
        subject=f"Subject {email_id}",
        received_at=NOW - age,
        body="Hello",
    )


def _make_decision(email_id: str = "msg-001", **kwargs) -> TriageDecision:
    return TriageDecision(
        email_id=email_id,
        key_point=kwargs.pop("key_point", KeyPoint.RESPOND),
        confidence=kwargs.pop("confidence", 5),
        action_reason=kwargs.pop("action_reason", "Reply when possible"),
        **kwargs,
    )


def _make_enricher() -> MagicMock:
    enricher = MagicMock()
    enricher.enrich = AsyncMock(
        return_value=EnrichmentResult(
            context=PromptContext(direction=Direction.INBOUND),
            events=[PipelineEvent("direction", "completed", "Email is inbound")],
        )
    )
    return enricher


def _make_decider(*decisions) -> MagicMock:
    """Decider returning the given decisions (or raising given errors) in order."""
    decider = MagicMock()
    decider.decide = AsyncMock(side_effect=list(decisions))
    return decider


@pytest.fixture
def pacer() -> FixedIntervalPacer:
    return FixedIntervalPacer(1.0, sleep=AsyncMock())


def _make_orchestrator(
    store,
    mailbox: MagicMock,
    config: AppConfig,
    decider: MagicMock,
    pacer: FixedIntervalPacer | None = None,
    clock=lambda: NOW,
) -> DecisionOrchestrator:
    return DecisionOrchestrator(
        store=store,
        mailbox=mailbox,
        enricher=_make_enricher(),
        decider=decider,
        config=config,
        pacer=pacer or FixedIntervalPacer(0.0),
        clock=clock,
    )


# ---------------------------------------------------------------------------
# Single email
# ---------------------------------------------------------------------------


async def test_triage_email_reaches_automation_applied(
    store: DatabaseStore, mock_mailbox: MagicMock, sample_config: AppConfig
):
    decider = _make_decider(_make_decision(confidence=8))
    orchestrator = _make_orchestrator(store, mock_mailbox, sample_config, decider)

    outcome = await orchestrator.triage_email(_make_email())

    assert outcome.state == TriageState.AUTOMATION_APPLIED
    assert outcome.persisted is True
    assert outcome.error is None
    stored = await store.get_decision("msg-001")
    assert stored is not None
    assert stored.confidence == 8
    assert await store.get_email("msg-001") is not None
    stages = [e.stage for e in outcome.events]
    assert stages[0] == "direction"
    assert "decision" in stages
    assert stages.count("persist") == 2


async def test_archive_applied_and_flag_stored(
    store: DatabaseStore, mock_mailbox: MagicMock, sample_config: AppConfig
):
    decider = _make_decider(_make_decision(key_point=KeyPoint.ARCHIVE, confidence=10))
    orchestrator = _make_orchestrator(store, mock_mailbox, sample_config, decider)

    outcome = await orchestrator.triage_email(_make_email())

    mock_mailbox.archive.assert_called_once_with("msg-001")
    assert outcome.decision.auto_archived is True
    assert (await store.get_decision("msg-001")).auto_archived is True


async def test_decision_failure_is_error_state(
    store: DatabaseStore, mock_mailbox: MagicMock, sample_config: AppConfig
):
    decider = _make_decider(DecisionServiceError("no tool call", email_id="msg-001", attempts=3))
    orchestrator = _make_orchestrator(store, mock_mailbox, sample_config, decider)

    outcome = await orchestrator.triage_email(_make_email())

    assert outcome.state == TriageState.ERROR
    assert outcome.decision is None
    assert "no tool call" in outcome.error
    assert await store.get_decision("msg-001") is None
    mock_mailbox.archive.assert_not_called()


async def test_surfaced_drafts_on_outcome(
    store: DatabaseStore, mock_mailbox: MagicMock, sample_config: AppConfig
):
    decider = _make_decider(
        _make_decision(confidence=5, suggested_draft_pushy="p", suggested_draft_exploratory="e")
    )
    orchestrator = _make_orchestrator(store, mock_mailbox, sample_config, decider)

    outcome = await orchestrator.triage_email(_make_email())

    assert outcome.surfaced_drafts == {"pushy": "p", "exploratory": "e"}
    mock_mailbox.create_draft.assert_not_called()
    assert outcome.to_dict()["surfaced_drafts"] == {"pushy": "p", "exploratory": "e"}


async def test_persist_failure_still_returns_decision(
    mock_mailbox: MagicMock, sample_config: AppConfig
):
    store = MagicMock()
    store.save_email = AsyncMock()
    store.get_decision = AsyncMock(return_value=None)
    store.upsert_decision = AsyncMock(side_effect=DatabaseError("disk I/O error"))
    store.list_activities = AsyncMock(return_value=[])
    store.log_action = AsyncMock()
    decider = _make_decider(_make_decision(confidence=8))
    orchestrator = _make_orchestrator(store, mock_mailbox, sample_config, decider)

    outcome = await orchestrator.triage_email(_make_email())

    assert outcome.state == TriageState.AUTOMATION_APPLIED
    assert outcome.decision is not None
    assert outcome.persisted is False
    assert any(e.stage == "persist" and e.status == "failed" for e in outcome.events)


async def test_triage_by_id_falls_back_to_mailbox(
    store: DatabaseStore, mock_mailbox: MagicMock, sample_config: AppConfig
):
    mock_mailbox.get_message = MagicMock(return_value=_make_email("msg-remote"))
    decider = _make_decider(_make_decision("msg-remote"))
    orchestrator = _make_orchestrator(store, mock_mailbox, sample_config, decider)

    outcome = await orchestrator.triage_by_id("msg-remote")

    mock_mailbox.get_message.assert_called_once_with("msg-remote")
    assert outcome.email_id == "msg-remote"


async def test_correlation_id_cleared_after_run(
    store: DatabaseStore, mock_mailbox: MagicMock, sample_config: AppConfig
):
    orchestrator = _make_orchestrator(
        store, mock_mailbox, sample_config, _make_decider(_make_decision())
    )

    await orchestrator.triage_email(_make_email())

    assert get_correlation_id() is None


# ---------------------------------------------------------------------------
# Re-triage
# ---------------------------------------------------------------------------


async def test_retriage_keeps_flags_and_feedback(
    store: DatabaseStore, mock_mailbox: MagicMock, sample_config: AppConfig
):
    decider = _make_decider(
        _make_decision(key_point=KeyPoint.ARCHIVE, confidence=10),
        _make_decision(key_point=KeyPoint.REVIEW, confidence=3),
    )
    orchestrator = _make_orchestrator(store, mock_mailbox, sample_config, decider)
    email = _make_email()

    await orchestrator.triage_email(email)
    await orchestrator.record_feedback("msg-001", "good", "Right call")
    outcome = await orchestrator.triage_email(email)

    stored = await store.get_decision("msg-001")
    assert stored.key_point == KeyPoint.REVIEW
    assert stored.auto_archived is True
    assert stored.feedback == "good"
    assert stored.feedback_text == "Right call"
    assert outcome.decision.auto_archived is True
    mock_mailbox.archive.assert_called_once()


async def test_pending_archive_applied_on_later_retriage(
    store: DatabaseStore, mock_mailbox: MagicMock, sample_config: AppConfig
):
    times = iter([NOW, NOW + timedelta(hours=3)])
    decider = _make_decider(
        _make_decision(key_point=KeyPoint.ARCHIVE, confidence=9),
        _make_decision(key_point=KeyPoint.ARCHIVE, confidence=9),
    )
    orchestrator = _make_orchestrator(
        store, mock_mailbox, sample_config, decider, clock=lambda: next(times)
    )
    email = _make_email(age=timedelta(minutes=20))

    first = await orchestrator.triage_email(email)
    assert first.plan.archive_pending is True
    assert first.decision.auto_archived is False
    mock_mailbox.archive.assert_not_called()

    second = await orchestrator.triage_email(email)
    assert second.decision.auto_archived is True
    mock_mailbox.archive.assert_called_once_with("msg-001")


async def test_retriage_with_identical_decision_is_idempotent(
    store: DatabaseStore, mock_mailbox: MagicMock, sample_config: AppConfig
):
    decider = _make_decider(_make_decision(confidence=5), _make_decision(confidence=5))
    orchestrator = _make_orchestrator(store, mock_mailbox, sample_config, decider)
    email = _make_email()

    await orchestrator.triage_email(email)
    first = await store.get_decision_record("msg-001")
    await orchestrator.triage_email(email)
    second = await store.get_decision_record("msg-001")

    assert second == first


async def test_retriage_does_not_repeat_archive_or_draft(
    store: DatabaseStore, mock_mailbox: MagicMock, sample_config: AppConfig
):
    decision = _make_decision(
        key_point=KeyPoint.ARCHIVE,
        confidence=9,
        suggested_draft_pushy="Following up on this.",
    )
    decider = _make_decider(decision, decision)
    orchestrator = _make_orchestrator(store, mock_mailbox, sample_config, decider)
    email = _make_email()

    await orchestrator.triage_email(email)
    first = await store.get_decision_record("msg-001")
    outcome = await orchestrator.triage_email(email)
    second = await store.get_decision_record("msg-001")

    assert first["auto_archived"] is True
    assert first["draft_created"] is True
    assert second == first
    assert outcome.decision.auto_archived is True
    assert outcome.decision.draft_created is True
    mock_mailbox.archive.assert_called_once_with("msg-001")
    mock_mailbox.create_draft.assert_called_once()


# ---------------------------------------------------------------------------
# Batch
# ---------------------------------------------------------------------------


async def test_batch_is_sequential_with_pauses(
    store: DatabaseStore,
    mock_mailbox: MagicMock,
    sample_config: AppConfig,
    pacer: FixedIntervalPacer,
):
    emails = [_make_email(f"msg-{i}") for i in range(3)]
    decider = _make_decider(*[_make_decision(e.id) for e in emails])
    orchestrator = _make_orchestrator(store, mock_mailbox, sample_config, decider, pacer)

    result = await orchestrator.triage_batch(emails)

    assert [o.email_id for o in result.outcomes] == ["msg-0", "msg-1", "msg-2"]
    assert result.processed == 3
    assert result.failed == 0
    assert pacer.item_pauses == 2


async def test_batch_skips_already_decided(
    store: DatabaseStore,
    mock_mailbox: MagicMock,
    sample_config: AppConfig,
    pacer: FixedIntervalPacer,
):
    await store.upsert_decision(_make_decision("msg-0"))
    emails = [_make_email("msg-0"), _make_email("msg-1")]
    decider = _make_decider(_make_decision("msg-1"))
    orchestrator = _make_orchestrator(store, mock_mailbox, sample_config, decider, pacer)

    result = await orchestrator.triage_batch(emails)

    assert result.skipped_ids == ["msg-0"]
    assert [o.email_id for o in result.outcomes] == ["msg-1"]
    assert pacer.item_pauses == 0


async def test_batch_retriage_includes_decided(
    store: DatabaseStore, mock_mailbox: MagicMock, sample_config: AppConfig
):
    await store.upsert_decision(_make_decision("msg-0"))
    decider = _make_decider(_make_decision("msg-0"))
    orchestrator = _make_orchestrator(store, mock_mailbox, sample_config, decider)

    result = await orchestrator.triage_batch([_make_email("msg-0")], retriage=True)

    assert result.skipped_ids == []
    assert len(result.outcomes) == 1


async def test_batch_continues_after_failure(
    store: DatabaseStore, mock_mailbox: MagicMock, sample_config: AppConfig
):
    decider = _make_decider(
        DecisionServiceError("bad", email_id="msg-0", attempts=3),
        _make_decision("msg-1"),
    )
    orchestrator = _make_orchestrator(store, mock_mailbox, sample_config, decider)

    result = await orchestrator.triage_batch([_make_email("msg-0"), _make_email("msg-1")])

    assert result.failed == 1
    assert result.processed == 1
    assert result.to_dict()["failed"] == 1


async def test_batch_survives_unexpected_decider_errors(
    store: DatabaseStore, mock_mailbox: MagicMock, sample_config: AppConfig
):
    decider = _make_decider(DatabaseError("database is locked"), KeyError("key_point"))
    orchestrator = _make_orchestrator(store, mock_mailbox, sample_config, decider)

    result = await orchestrator.triage_batch([_make_email("msg-0"), _make_email("msg-1")])

    assert [o.state for o in result.outcomes] == [TriageState.ERROR, TriageState.ERROR]
    assert result.failed == 2
    assert "database is locked" in result.outcomes[0].error
    assert result.outcomes[1].error.startswith("KeyError")
    assert await store.get_decision("msg-0") is None


async def test_triage_recent_uses_configured_count(
    store: DatabaseStore, mock_mailbox: MagicMock, sample_config: AppConfig
):
    orchestrator = _make_orchestrator(store, mock_mailbox, sample_config, _make_decider())

    result = await orchestrator.triage_recent()

    mock_mailbox.fetch_recent.assert_called_once_with(sample_config.triage.fetch_count)
    assert result.outcomes == []


# ---------------------------------------------------------------------------
# Feedback
# ---------------------------------------------------------------------------


async def test_feedback_stores_snapshots(
    store: DatabaseStore, mock_mailbox: MagicMock, sample_config: AppConfig
):
    orchestrator = _make_orchestrator(
        store, mock_mailbox, sample_config, _make_decider(_make_decision(confidence=6))
    )
    await orchestrator.triage_email(_make_email())

    outcome = await orchestrator.record_feedback("msg-001", "bad", "  Should have archived ")

    assert outcome.state == TriageState.FEEDBACK_RECORDED
    assert outcome.decision.feedback == "bad"
    record = await store.get_decision_record("msg-001")
    assert record["feedback"] == "bad"
    assert record["feedback_text"] == "Should have archived"
    assert record["source_email"]["id"] == "msg-001"
    assert record["original_triage"]["confidence"] == 6
    logs = await store.get_action_logs("msg-001")
    assert logs[-1]["action_type"] == "feedback"
    assert logs[-1]["triggered_by"] == "user"


async def test_feedback_without_decision_returns_none(
    store: DatabaseStore, mock_mailbox: MagicMock, sample_config: AppConfig
):
    orchestrator = _make_orchestrator(store, mock_mailbox, sample_config, _make_decider())

    assert await orchestrator.record_feedback("missing", "good") is None


async def test_feedback_rejects_unknown_verdict(
    store: DatabaseStore, mock_mailbox: MagicMock, sample_config: AppConfig
):
    orchestrator = _make_orchestrator(store, mock_mailbox, sample_config, _make_decider())

    with pytest.raises(ValueError):
        await orchestrator.record_feedback("msg-001", "meh")
