"""Tests for the database layer.

Covers schema initialization, the generic upsert/query primitives, the
triage decision record (including feedback preservation), the CRM
helpers and the logging tables.
"""

from datetime import UTC, datetime
from pathlib import Path

import aiosqlite
import pytest

from mailcrm.core.errors import DatabaseError
from mailcrm.db import DatabaseStore, init_database, verify_schema
from mailcrm.db.store import Activity
from mailcrm.models import (
    ContactContext,
    DatabaseSuggestions,
    Direction,
    Email,
    KeyPoint,
    TriageDecision,
)


@pytest.fixture
async def db_path(data_dir: Path) -> Path:
    """Create a test database path."""
    return data_dir / "store.db"


def _make_email(email_id: str = "msg-001") -> Email:
    return Email(
        id=email_id,
        sender="Jane Doe <jane@acme.io>",
        subject="Renewal",
        received_at=datetime(2024, 12, 16, 9, 30, tzinfo=UTC),
        snippet="Renewal...",
        body="Renewal terms attached.",
        to=("me@mycompany.com",),
        thread_id="conv-1",
    )


def _make_decision(email_id: str = "msg-001", **kwargs) -> TriageDecision:
    return TriageDecision(
        email_id=email_id,
        key_point=kwargs.pop("key_point", KeyPoint.RESPOND),
        confidence=kwargs.pop("confidence", 7),
        action_reason=kwargs.pop("action_reason", "Confirm the renewal"),
        **kwargs,
    )


class TestDatabaseInitialization:
    """Tests for database initialization."""

    async def test_init_database_creates_file(self, db_path: Path) -> None:
        assert not db_path.exists()
        await init_database(db_path)
        assert db_path.exists()

    async def test_init_database_enables_wal_mode(self, db_path: Path) -> None:
        await init_database(db_path)

        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("PRAGMA journal_mode")
            row = await cursor.fetchone()
            assert row[0].lower() == "wal"

    async def test_verify_schema(self, db_path: Path) -> None:
        await init_database(db_path)
        assert await verify_schema(db_path) is True

    async def test_verify_schema_missing_tables(self, db_path: Path) -> None:
        async with aiosqlite.connect(db_path) as db:
            await db.execute("CREATE TABLE emails (id TEXT)")
            await db.commit()
        assert await verify_schema(db_path) is False

    async def test_init_is_idempotent(self, db_path: Path) -> None:
        await init_database(db_path)
        await init_database(db_path)
        assert await verify_schema(db_path) is True


class TestGenericPrimitives:
    """upsert/query on whitelisted tables and columns."""

    async def test_upsert_then_query(self, store: DatabaseStore) -> None:
        await store.upsert("prompts", {"name": "triage_logic", "content": "v1"})
        await store.upsert("prompts", {"name": "triage_logic", "content": "v2"})

        rows = await store.query("prompts", {"name": "triage_logic"})
        assert len(rows) == 1
        assert rows[0]["content"] == "v2"

    async def test_upsert_returns_new_autoincrement_key(self, store: DatabaseStore) -> None:
        first = await store.upsert("companies", {"name": "Acme"})
        second = await store.upsert("companies", {"name": "Globex"})
        assert second == first + 1

    async def test_unknown_table_rejected(self, store: DatabaseStore) -> None:
        with pytest.raises(DatabaseError):
            await store.upsert("secrets", {"name": "x"})

    async def test_unknown_column_rejected(self, store: DatabaseStore) -> None:
        with pytest.raises(DatabaseError):
            await store.upsert("companies", {"name": "Acme", "evil; DROP": 1})

    async def test_query_null_filter_and_order(self, store: DatabaseStore) -> None:
        await store.upsert("companies", {"name": "B", "domain": None})
        await store.upsert("companies", {"name": "A", "domain": "a.io"})
        await store.upsert("companies", {"name": "C", "domain": None})

        rows = await store.query("companies", {"domain": None}, order_by="name DESC")
        assert [r["name"] for r in rows] == ["C", "B"]

    async def test_invalid_order_by_rejected(self, store: DatabaseStore) -> None:
        with pytest.raises(DatabaseError):
            await store.query("companies", order_by="name; DROP TABLE companies")

    async def test_update_missing_row(self, store: DatabaseStore) -> None:
        assert await store.update("companies", 999, {"name": "Nope"}) is False


class TestEmailOperations:
    async def test_save_and_get_email(self, store: DatabaseStore) -> None:
        email = _make_email()
        await store.save_email(email)

        loaded = await store.get_email("msg-001")
        assert loaded == email

    async def test_get_missing_email(self, store: DatabaseStore) -> None:
        assert await store.get_email("nope") is None


class TestDecisionOperations:
    async def test_round_trip_with_context(self, store: DatabaseStore) -> None:
        decision = _make_decision(
            suggested_draft_pushy="Let's sign Friday",
            uncertainty_factors=("pricing unclear",),
            database_suggestions=DatabaseSuggestions(
                has_business_relevance=True,
                suggested_entries=({"type": "activity", "description": "Renewal"},),
            ),
            contact_context=ContactContext(
                contact_id=4, name="Jane", email="jane@acme.io", direction=Direction.INBOUND
            ),
        )
        await store.upsert_decision(decision)

        loaded = await store.get_decision("msg-001")
        assert loaded == decision

    async def test_upsert_replaces_decision(self, store: DatabaseStore) -> None:
        await store.upsert_decision(_make_decision(confidence=3))
        await store.upsert_decision(_make_decision(confidence=9, key_point=KeyPoint.ARCHIVE))

        loaded = await store.get_decision("msg-001")
        assert loaded.confidence == 9
        assert loaded.key_point == KeyPoint.ARCHIVE

    async def test_upsert_keeps_feedback(self, store: DatabaseStore) -> None:
        await store.upsert_decision(_make_decision())
        await store.record_feedback("msg-001", "good", "nice", None, {"confidence": 7})
        await store.upsert_decision(_make_decision(confidence=2))

        loaded = await store.get_decision("msg-001")
        assert loaded.confidence == 2
        assert loaded.feedback == "good"
        assert loaded.feedback_text == "nice"

    async def test_confidence_out_of_range_rejected(self, store: DatabaseStore) -> None:
        with pytest.raises(DatabaseError):
            await store.upsert_decision(_make_decision(confidence=11))

    async def test_decided_ids(self, store: DatabaseStore) -> None:
        await store.upsert_decision(_make_decision("a"))
        await store.upsert_decision(_make_decision("b"))

        assert await store.get_decided_ids(["a", "c", "b"]) == {"a", "b"}
        assert await store.get_decided_ids([]) == set()

    async def test_feedback_on_missing_decision(self, store: DatabaseStore) -> None:
        assert await store.record_feedback("none", "bad", None, None, {}) is False

    async def test_decision_record_includes_snapshots(self, store: DatabaseStore) -> None:
        email = _make_email()
        decision = _make_decision()
        await store.upsert_decision(decision)
        await store.record_feedback("msg-001", "bad", None, email.to_dict(), decision.to_dict())

        record = await store.get_decision_record("msg-001")
        assert record["feedback"] == "bad"
        assert record["feedback_at"] is not None
        assert record["source_email"]["subject"] == "Renewal"
        assert record["original_triage"]["action_reason"] == "Confirm the renewal"

    async def test_list_feedback(self, store: DatabaseStore) -> None:
        for email_id in ("a", "b", "c"):
            await store.upsert_decision(_make_decision(email_id))
        await store.record_feedback("a", "good", None, None, {"confidence": 5})
        await store.record_feedback("b", "bad", "Should archive", {"subject": "Promo"}, {})

        history = await store.list_feedback()
        assert [h["email_id"] for h in history] == ["b", "a"]
        assert history[0]["feedback_text"] == "Should archive"
        assert history[0]["source_email"] == {"subject": "Promo"}
        assert history[1]["original_triage"] == {"confidence": 5}

        bad_only = await store.list_feedback(verdict="bad")
        assert [h["email_id"] for h in bad_only] == ["b"]


class TestCrmOperations:
    async def test_find_contact_case_insensitive(self, store: DatabaseStore) -> None:
        contact = await store.add_contact("Jane", "Jane.Doe@Acme.io")

        found = await store.find_contact_by_email("jane.doe@acme.io")
        assert found is not None
        assert found.id == contact.id

    async def test_recent_contacts_newest_first(self, store: DatabaseStore) -> None:
        await store.add_contact("Old", "old@acme.io")
        await store.add_contact("New", "new@acme.io")

        names = [c.name for c in await store.list_recent_contacts()]
        assert names == ["New", "Old"]

    async def test_contacts_with_email_excludes_blank(self, store: DatabaseStore) -> None:
        await store.add_contact("A", "a@acme.io")
        await store.add_contact("B", None)
        await store.add_contact("C", "")

        assert [c.name for c in await store.list_contacts_with_email()] == ["A"]

    async def test_last_chat_round_trip_is_utc(self, store: DatabaseStore) -> None:
        contact = await store.add_contact("A", "a@acme.io")
        when = datetime(2024, 12, 1, 8, 0, tzinfo=UTC)

        assert await store.update_contact_last_chat(contact.id, when) is True
        loaded = await store.get_contact(contact.id)
        assert loaded.last_chat == when
        assert loaded.last_chat.tzinfo is not None

    async def test_contacts_for_company(self, store: DatabaseStore) -> None:
        acme = await store.add_company("Acme")
        await store.add_contact("A", "a@acme.io", acme.id)
        await store.add_contact("B", "b@other.io")

        assert [c.name for c in await store.list_contacts_for_company(acme.id)] == ["A"]

    async def test_create_and_list_activities(self, store: DatabaseStore) -> None:
        contact = await store.add_contact("A", "a@acme.io")
        activity_id = await store.create_activity(
            Activity(
                name="Respond: Renewal",
                priority=1,
                contact_id=contact.id,
                email_id="msg-001",
                next_step="Reply to A",
            )
        )

        activities = await store.list_activities("msg-001")
        assert [a.id for a in activities] == [activity_id]
        assert activities[0].status == "open"
        assert await store.list_activities("other") == []


class TestLoggingTables:
    async def test_action_log(self, store: DatabaseStore) -> None:
        await store.log_action("archive", "msg-001", {"auto_archived": True})
        await store.log_action("feedback", "msg-001", {"verdict": "good"}, triggered_by="user")

        logs = await store.get_action_logs("msg-001")
        assert [r["action_type"] for r in logs] == ["archive", "feedback"]
        assert logs[0]["details"] == {"auto_archived": True}
        assert logs[1]["triggered_by"] == "user"

    async def test_llm_request_log(self, store: DatabaseStore) -> None:
        log_id = await store.log_llm_request(
            task_type="triage",
            model="claude-test",
            prompt={"messages": []},
            tool_call={"key_point": "Archive"},
            input_tokens=10,
            output_tokens=5,
            duration_ms=120,
            email_id="msg-001",
        )
        assert log_id > 0

    async def test_action_log_filters_and_limit(self, store: DatabaseStore) -> None:
        for i in range(4):
            await store.log_action("archive", f"msg-{i}")
        await store.log_action("create_draft", "msg-0")

        latest = await store.get_action_logs(action_type="archive", limit=2)
        assert [r["email_id"] for r in latest] == ["msg-2", "msg-3"]

        per_email = await store.get_action_logs("msg-0")
        assert [r["action_type"] for r in per_email] == ["archive", "create_draft"]

    async def test_llm_logs_newest_first(self, store: DatabaseStore) -> None:
        await store.log_llm_request(
            task_type="triage",
            model="claude-test",
            prompt={"messages": []},
            tool_call={"key_point": "Archive"},
            email_id="msg-001",
        )
        await store.log_llm_request(
            task_type="research",
            model="claude-test",
            prompt={"messages": [{"role": "user", "content": "acme.io"}]},
            error="timeout",
        )

        entries = await store.get_llm_logs()
        assert [e["task_type"] for e in entries] == ["research", "triage"]
        assert entries[0]["error"] == "timeout"
        assert entries[1]["tool_call"] == {"key_point": "Archive"}
        assert entries[1]["response"] is None

        triage_only = await store.get_llm_logs(task_type="triage", email_id="msg-001")
        assert len(triage_only) == 1
        assert triage_only[0]["prompt"] == {"messages": []}

    async def test_prompts(self, store: DatabaseStore) -> None:
        assert await store.get_prompt("triage_logic") is None
        await store.save_prompt("triage_logic", "Be brief.")
        assert await store.get_prompt("triage_logic") == "Be brief."
