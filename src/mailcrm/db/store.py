"""Database store: generic upsert/query plus typed CRM and triage helpers.

The generic primitives (upsert, query) work on any whitelisted table and
column. The typed helpers below them are thin wrappers that convert rows to
dataclasses and keep per-table rules in one place, e.g. re-triaging an email
never overwrites the user's feedback on it.

Usage:
    from mailcrm.db.store import DatabaseStore

    store = DatabaseStore("data/mailcrm.db")
    await store.initialize()

    await store.upsert_decision(decision)
    contact = await store.find_contact_by_email("jane@acme.com")
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite

from mailcrm.core.errors import DatabaseError
from mailcrm.core.logging import get_correlation_id, get_logger
from mailcrm.db.models import init_database
from mailcrm.models import Email, FeedbackVerdict, TriageDecision, parse_timestamp

logger = get_logger(__name__)

# Primary key per table; the generic upsert conflicts on this column
TABLE_KEYS: dict[str, str] = {
    "emails": "id",
    "triage_decisions": "email_id",
    "companies": "id",
    "contacts": "id",
    "activities": "id",
    "prompts": "name",
}

# Decision columns written by triage. Feedback columns are deliberately absent.
_DECISION_JSON_FIELDS = (
    "alternative_options",
    "uncertainty_factors",
    "database_suggestions",
    "contact_context",
    "calendar_context",
)

RECENT_CONTACTS_LIMIT = 50


def to_db_timestamp(value: datetime | None) -> str | None:
    """Normalize a datetime to an ISO string in UTC (naive values are taken as UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def from_db_timestamp(value: str | None) -> datetime | None:
    parsed = parse_timestamp(value)
    if parsed is not None and parsed.tzinfo is None:
        # SQLite CURRENT_TIMESTAMP is UTC without an offset
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


@dataclass
class Company:
    """Company record from the CRM."""

    id: int
    name: str
    domain: str | None = None
    last_chat: datetime | None = None
    created_at: datetime | None = None


@dataclass
class Contact:
    """Contact record from the CRM."""

    id: int
    name: str
    email: str | None = None
    company_id: int | None = None
    last_chat: datetime | None = None
    created_at: datetime | None = None


@dataclass
class Activity:
    """CRM activity created from a triaged email."""

    name: str
    priority: int
    description: str | None = None
    status: str = "open"
    next_step: str | None = None
    contact_id: int | None = None
    company_id: int | None = None
    email_id: str | None = None
    last_contact_date: datetime | None = None
    id: int | None = None
    created_at: datetime | None = None


class DatabaseStore:
    """Async SQLite store for triage decisions and the CRM.

    Attributes:
        db_path: Path to the SQLite database file
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self._initialized = False
        self._columns: dict[str, frozenset[str]] = {}

    async def initialize(self) -> None:
        """Initialize the database, creating tables if needed.

        This must be called before any other operations.
        """
        await init_database(self.db_path)
        self._initialized = True

    @asynccontextmanager
    async def _db(self) -> AsyncIterator[aiosqlite.Connection]:
        """Get a configured database connection.

        Usage:
            async with self._db() as db:
                await db.execute(...)
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA busy_timeout = 10000")
            await db.execute("PRAGMA foreign_keys = ON")
            await db.execute("PRAGMA synchronous = NORMAL")
            await db.execute("PRAGMA temp_store = MEMORY")
            db.row_factory = aiosqlite.Row
            yield db

    # =========================================================================
    # Generic primitives
    # =========================================================================

    async def _table_columns(self, db: aiosqlite.Connection, table: str) -> frozenset[str]:
        if table not in TABLE_KEYS:
            raise DatabaseError(
                f"Unknown table '{table}'. Expected one of: {', '.join(sorted(TABLE_KEYS))}"
            )
        if table not in self._columns:
            cursor = await db.execute(f"PRAGMA table_info({table})")
            self._columns[table] = frozenset(row["name"] for row in await cursor.fetchall())
        return self._columns[table]

    async def upsert(self, table: str, record: dict[str, Any]) -> Any:
        """Insert a record or update the existing one with the same key.

        Only the columns present in ``record`` are written; on conflict the
        other columns keep their stored values. Records without a key value
        on an autoincrement table are inserted.

        Args:
            table: Table name (must be in TABLE_KEYS)
            record: Column -> value mapping

        Returns:
            The key of the written row

        Raises:
            DatabaseError: For unknown tables/columns or SQLite failures
        """
        key = TABLE_KEYS.get(table)
        try:
            async with self._db() as db:
                columns = await self._table_columns(db, table)
                unknown = [c for c in record if c not in columns]
                if unknown:
                    raise DatabaseError(f"Unknown columns for {table}: {', '.join(unknown)}")

                names = list(record)
                placeholders = ", ".join("?" for _ in names)
                sql = f"INSERT INTO {table} ({', '.join(names)}) VALUES ({placeholders})"
                updates = [c for c in names if c != key]
                if record.get(key) is not None and updates:
                    assignments = ", ".join(f"{c} = excluded.{c}" for c in updates)
                    sql += f" ON CONFLICT({key}) DO UPDATE SET {assignments}"
                elif record.get(key) is not None:
                    sql += f" ON CONFLICT({key}) DO NOTHING"

                cursor = await db.execute(sql, [record[c] for c in names])
                await db.commit()
                return record.get(key) if record.get(key) is not None else cursor.lastrowid

        except aiosqlite.Error as e:
            logger.error("Failed to upsert record", table=table, error=str(e))
            raise DatabaseError(f"Failed to upsert into {table}: {e}") from e

    async def update(self, table: str, key_value: Any, values: dict[str, Any]) -> bool:
        """Update columns of an existing row.

        Returns:
            False if no row has that key
        """
        key = TABLE_KEYS.get(table)
        try:
            async with self._db() as db:
                columns = await self._table_columns(db, table)
                unknown = [c for c in values if c not in columns or c == key]
                if unknown or not values:
                    raise DatabaseError(f"Invalid update columns for {table}: {unknown or 'none'}")
                assignments = ", ".join(f"{c} = ?" for c in values)
                cursor = await db.execute(
                    f"UPDATE {table} SET {assignments} WHERE {key} = ?",
                    [*values.values(), key_value],
                )
                await db.commit()
                return cursor.rowcount > 0

        except aiosqlite.Error as e:
            logger.error("Failed to update record", table=table, error=str(e))
            raise DatabaseError(f"Failed to update {table}: {e}") from e

    async def query(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Select rows matching all equality filters.

        Args:
            table: Table name (must be in TABLE_KEYS)
            filters: Column -> value; None matches NULL
            order_by: "column" or "column DESC"
            limit: Maximum rows to return

        Returns:
            Rows as plain dicts
        """
        filters = filters or {}
        try:
            async with self._db() as db:
                columns = await self._table_columns(db, table)
                clauses: list[str] = []
                params: list[Any] = []
                for column, value in filters.items():
                    if column not in columns:
                        raise DatabaseError(f"Unknown filter column for {table}: {column}")
                    if value is None:
                        clauses.append(f"{column} IS NULL")
                    else:
                        clauses.append(f"{column} = ?")
                        params.append(value)

                sql = f"SELECT * FROM {table}"
                if clauses:
                    sql += " WHERE " + " AND ".join(clauses)
                if order_by:
                    sql += " ORDER BY " + _validate_order_by(order_by, columns)
                if limit is not None:
                    sql += " LIMIT ?"
                    params.append(int(limit))

                cursor = await db.execute(sql, params)
                return [dict(row) for row in await cursor.fetchall()]

        except aiosqlite.Error as e:
            logger.error("Failed to query records", table=table, error=str(e))
            raise DatabaseError(f"Failed to query {table}: {e}") from e

    # =========================================================================
    # Emails
    # =========================================================================

    async def save_email(self, email: Email) -> None:
        await self.upsert(
            "emails",
            {
                "id": email.id,
                "sender": email.sender,
                "subject": email.subject,
                "received_at": to_db_timestamp(email.received_at),
                "snippet": email.snippet,
                "body": email.body,
                "to_json": json.dumps(list(email.to)),
                "thread_id": email.thread_id,
            },
        )

    async def get_email(self, email_id: str) -> Email | None:
        rows = await self.query("emails", {"id": email_id}, limit=1)
        if not rows:
            return None
        row = rows[0]
        return Email(
            id=row["id"],
            sender=row["sender"] or "",
            subject=row["subject"] or "",
            received_at=from_db_timestamp(row["received_at"]),
            snippet=row["snippet"] or "",
            body=row["body"] or "",
            to=tuple(json.loads(row["to_json"] or "[]")),
            thread_id=row["thread_id"],
        )

    # =========================================================================
    # Triage decisions
    # =========================================================================

    async def upsert_decision(self, decision: TriageDecision) -> None:
        """Write a decision and its automation flags, keyed by email id.

        Feedback columns are never touched here, so re-triaging an email
        keeps whatever feedback the user already recorded.
        """
        data = decision.to_dict()
        record: dict[str, Any] = {
            "email_id": decision.email_id,
            "key_point": data["key_point"],
            "confidence": data["confidence"],
            "action_reason": data["action_reason"],
            "suggested_draft": data["suggested_draft"],
            "suggested_draft_pushy": data["suggested_draft_pushy"],
            "suggested_draft_exploratory": data["suggested_draft_exploratory"],
            "auto_archived": int(decision.auto_archived),
            "draft_created": int(decision.draft_created),
        }
        for name in _DECISION_JSON_FIELDS:
            value = data[name]
            record[f"{name}_json"] = json.dumps(value) if value is not None else None
        await self.upsert("triage_decisions", record)

    async def get_decision(self, email_id: str) -> TriageDecision | None:
        rows = await self.query("triage_decisions", {"email_id": email_id}, limit=1)
        if not rows:
            return None
        return TriageDecision.from_dict(_decision_row_to_dict(rows[0]))

    async def get_decision_record(self, email_id: str) -> dict[str, Any] | None:
        """Get the stored decision as a JSON-ready dict, including feedback snapshots."""
        rows = await self.query("triage_decisions", {"email_id": email_id}, limit=1)
        if not rows:
            return None
        row = rows[0]
        record = _decision_row_to_dict(row)
        record["feedback_at"] = row["feedback_at"]
        record["source_email"] = _loads(row["source_email_json"])
        record["original_triage"] = _loads(row["original_triage_json"])
        record["created_at"] = row["created_at"]
        return record

    async def get_decided_ids(self, email_ids: list[str]) -> set[str]:
        """Return the subset of email_ids that already have a decision."""
        if not email_ids:
            return set()
        placeholders = ",".join("?" for _ in email_ids)
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    f"SELECT email_id FROM triage_decisions WHERE email_id IN ({placeholders})",
                    email_ids,
                )
                return {row["email_id"] for row in await cursor.fetchall()}
        except aiosqlite.Error as e:
            logger.error("Failed to check decided emails", error=str(e))
            raise DatabaseError(f"Failed to check decided emails: {e}") from e

    async def record_feedback(
        self,
        email_id: str,
        verdict: FeedbackVerdict,
        text: str | None,
        source_email: dict[str, Any] | None,
        original_triage: dict[str, Any],
    ) -> bool:
        """Store user feedback on a decision, with snapshots of what was judged.

        Returns:
            False if there is no decision for email_id
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    UPDATE triage_decisions SET
                        feedback = ?,
                        feedback_text = ?,
                        feedback_at = ?,
                        source_email_json = ?,
                        original_triage_json = ?
                    WHERE email_id = ?
                    """,
                    (
                        verdict,
                        text,
                        datetime.now(UTC).isoformat(),
                        json.dumps(source_email) if source_email else None,
                        json.dumps(original_triage),
                        email_id,
                    ),
                )
                await db.commit()
                return cursor.rowcount > 0

        except aiosqlite.Error as e:
            logger.error("Failed to record feedback", email_id=email_id, error=str(e))
            raise DatabaseError(f"Failed to record feedback: {e}") from e

    async def list_feedback(
        self, verdict: FeedbackVerdict | None = None, limit: int = 100
    ) -> list[dict[str, Any]]:
        """Decisions the user has judged, most recent feedback first.

        Each entry carries the verdict, comment, and the snapshots of the
        email and decision as they were when the feedback was given.
        """
        try:
            async with self._db() as db:
                query = "SELECT * FROM triage_decisions WHERE feedback IS NOT NULL"
                params: list[Any] = []
                if verdict:
                    query += " AND feedback = ?"
                    params.append(verdict)
                query += " ORDER BY feedback_at DESC, email_id LIMIT ?"
                params.append(limit)

                cursor = await db.execute(query, params)
                rows = [dict(r) for r in await cursor.fetchall()]

        except aiosqlite.Error as e:
            logger.error("Failed to list feedback", error=str(e))
            raise DatabaseError(f"Failed to list feedback: {e}") from e

        return [
            {
                "email_id": row["email_id"],
                "feedback": row["feedback"],
                "feedback_text": row["feedback_text"],
                "feedback_at": row["feedback_at"],
                "source_email": _loads(row["source_email_json"]),
                "original_triage": _loads(row["original_triage_json"]),
            }
            for row in rows
        ]

    # =========================================================================
    # CRM: companies and contacts
    # =========================================================================

    async def add_company(self, name: str, domain: str | None = None) -> Company:
        company_id = await self.upsert("companies", {"name": name, "domain": domain})
        return Company(id=company_id, name=name, domain=domain)

    async def add_contact(
        self,
        name: str,
        email: str | None,
        company_id: int | None = None,
        last_chat: datetime | None = None,
    ) -> Contact:
        contact_id = await self.upsert(
            "contacts",
            {
                "name": name,
                "email": email,
                "company_id": company_id,
                "last_chat": to_db_timestamp(last_chat),
            },
        )
        return Contact(
            id=contact_id, name=name, email=email, company_id=company_id, last_chat=last_chat
        )

    async def get_company(self, company_id: int) -> Company | None:
        rows = await self.query("companies", {"id": company_id}, limit=1)
        return _row_to_company(rows[0]) if rows else None

    async def get_contact(self, contact_id: int) -> Contact | None:
        rows = await self.query("contacts", {"id": contact_id}, limit=1)
        return _row_to_contact(rows[0]) if rows else None

    async def list_companies(self) -> list[Company]:
        return [_row_to_company(r) for r in await self.query("companies", order_by="id")]

    async def list_recent_contacts(self, limit: int = RECENT_CONTACTS_LIMIT) -> list[Contact]:
        """Most recently created contacts first."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM contacts ORDER BY created_at DESC, id DESC LIMIT ?",
                    (limit,),
                )
                return [_row_to_contact(dict(row)) for row in await cursor.fetchall()]
        except aiosqlite.Error as e:
            logger.error("Failed to list recent contacts", error=str(e))
            raise DatabaseError(f"Failed to list recent contacts: {e}") from e

    async def find_contact_by_email(self, address: str) -> Contact | None:
        """Exact, case-insensitive match on the contact email."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM contacts WHERE email = ? COLLATE NOCASE ORDER BY id LIMIT 1",
                    (address.strip(),),
                )
                row = await cursor.fetchone()
                return _row_to_contact(dict(row)) if row else None
        except aiosqlite.Error as e:
            logger.error("Failed to find contact", error=str(e))
            raise DatabaseError(f"Failed to find contact by email: {e}") from e

    async def list_contacts_with_email(self) -> list[Contact]:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM contacts "
                    "WHERE email IS NOT NULL AND TRIM(email) != '' ORDER BY id"
                )
                return [_row_to_contact(dict(row)) for row in await cursor.fetchall()]
        except aiosqlite.Error as e:
            logger.error("Failed to list contacts", error=str(e))
            raise DatabaseError(f"Failed to list contacts with email: {e}") from e

    async def list_contacts_for_company(self, company_id: int) -> list[Contact]:
        rows = await self.query("contacts", {"company_id": company_id}, order_by="id")
        return [_row_to_contact(r) for r in rows]

    async def update_contact_last_chat(self, contact_id: int, last_chat: datetime) -> bool:
        return await self.update("contacts", contact_id, {"last_chat": to_db_timestamp(last_chat)})

    async def update_company_last_chat(self, company_id: int, last_chat: datetime) -> bool:
        return await self.update(
            "companies", company_id, {"last_chat": to_db_timestamp(last_chat)}
        )

    # =========================================================================
    # CRM: activities
    # =========================================================================

    async def create_activity(self, activity: Activity) -> int:
        return await self.upsert(
            "activities",
            {
                "name": activity.name,
                "description": activity.description,
                "status": activity.status,
                "priority": activity.priority,
                "next_step": activity.next_step,
                "contact_id": activity.contact_id,
                "company_id": activity.company_id,
                "email_id": activity.email_id,
                "last_contact_date": to_db_timestamp(activity.last_contact_date),
            },
        )

    async def list_activities(self, email_id: str | None = None) -> list[Activity]:
        filters = {"email_id": email_id} if email_id is not None else None
        rows = await self.query("activities", filters, order_by="id")
        return [
            Activity(
                id=r["id"],
                name=r["name"],
                description=r["description"],
                status=r["status"],
                priority=r["priority"],
                next_step=r["next_step"],
                contact_id=r["contact_id"],
                company_id=r["company_id"],
                email_id=r["email_id"],
                last_contact_date=from_db_timestamp(r["last_contact_date"]),
                created_at=from_db_timestamp(r["created_at"]),
            )
            for r in rows
        ]

    # =========================================================================
    # Prompts
    # =========================================================================

    async def get_prompt(self, name: str) -> str | None:
        rows = await self.query("prompts", {"name": name}, limit=1)
        return rows[0]["content"] if rows else None

    async def save_prompt(self, name: str, content: str) -> None:
        await self.upsert(
            "prompts",
            {"name": name, "content": content, "updated_at": datetime.now(UTC).isoformat()},
        )

    # =========================================================================
    # Logging tables
    # =========================================================================

    async def log_llm_request(
        self,
        task_type: str,
        model: str,
        prompt: dict[str, Any] | list[dict[str, Any]],
        response: dict[str, Any] | None = None,
        tool_call: dict[str, Any] | None = None,
        input_tokens: int | None = None,
        output_tokens: int | None = None,
        duration_ms: int | None = None,
        email_id: str | None = None,
        error: str | None = None,
    ) -> int:
        """Log an LLM request for debugging.

        Args:
            task_type: Type of task ('triage', 'research')
            model: Model string used
            prompt: The prompt sent to Claude
            response: The response from Claude
            tool_call: Extracted tool call result
            input_tokens: Input token count
            output_tokens: Output token count
            duration_ms: Request duration in milliseconds
            email_id: Associated email ID (if applicable)
            error: Error message (if failed)

        Returns:
            The log entry ID
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO llm_request_log (
                        task_type, model, email_id, triage_run_id,
                        prompt_json, response_json, tool_call_json,
                        input_tokens, output_tokens, duration_ms, error
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        task_type,
                        model,
                        email_id,
                        get_correlation_id(),
                        json.dumps(prompt),
                        json.dumps(response) if response else None,
                        json.dumps(tool_call) if tool_call else None,
                        input_tokens,
                        output_tokens,
                        duration_ms,
                        error,
                    ),
                )
                await db.commit()
                return cursor.lastrowid

        except aiosqlite.Error as e:
            logger.error("Failed to log LLM request", task_type=task_type, error=str(e))
            raise DatabaseError(f"Failed to log LLM request: {e}") from e

    async def log_action(
        self,
        action_type: str,
        email_id: str | None = None,
        details: dict[str, Any] | None = None,
        triggered_by: str = "auto",
    ) -> int:
        """Log an automation or user action for the audit trail.

        Args:
            action_type: 'archive', 'create_draft', 'create_activity', 'feedback'
            email_id: Associated email ID (if applicable)
            details: Action details dictionary
            triggered_by: 'auto' or 'user'

        Returns:
            The log entry ID
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO action_log (action_type, email_id, details_json, triggered_by)
                    VALUES (?, ?, ?, ?)
                    """,
                    (
                        action_type,
                        email_id,
                        json.dumps(details) if details else None,
                        triggered_by,
                    ),
                )
                await db.commit()
                return cursor.lastrowid

        except aiosqlite.Error as e:
            logger.error("Failed to log action", action_type=action_type, error=str(e))
            raise DatabaseError(f"Failed to log action: {e}") from e

    async def get_llm_logs(
        self,
        limit: int = 100,
        email_id: str | None = None,
        task_type: str | None = None,
    ) -> list[dict[str, Any]]:
        """Get LLM request log entries, newest first.

        Args:
            limit: Maximum number of entries to return
            email_id: Filter by email ID
            task_type: Filter by task type ('triage', 'research')

        Returns:
            Log rows with prompt, response and tool call decoded from JSON
        """
        try:
            async with self._db() as db:
                query = "SELECT * FROM llm_request_log WHERE 1=1"
                params: list[Any] = []

                if email_id:
                    query += " AND email_id = ?"
                    params.append(email_id)

                if task_type:
                    query += " AND task_type = ?"
                    params.append(task_type)

                query += " ORDER BY id DESC LIMIT ?"
                params.append(limit)

                cursor = await db.execute(query, params)
                rows = [dict(r) for r in await cursor.fetchall()]

        except aiosqlite.Error as e:
            logger.error("Failed to get LLM logs", error=str(e))
            raise DatabaseError(f"Failed to get LLM logs: {e}") from e

        for row in rows:
            for name in ("prompt", "response", "tool_call"):
                row[name] = _loads(row.pop(f"{name}_json"))
        return rows

    async def get_action_logs(
        self,
        email_id: str | None = None,
        action_type: str | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        """Get the most recent action log entries, in the order they happened.

        Args:
            email_id: Filter by email ID
            action_type: Filter by action type
            limit: Maximum number of entries to return

        Returns:
            Log rows with details decoded from JSON
        """
        try:
            async with self._db() as db:
                query = "SELECT * FROM action_log WHERE 1=1"
                params: list[Any] = []

                if email_id:
                    query += " AND email_id = ?"
                    params.append(email_id)

                if action_type:
                    query += " AND action_type = ?"
                    params.append(action_type)

                query = f"SELECT * FROM ({query} ORDER BY id DESC LIMIT ?) ORDER BY id"
                params.append(limit)

                cursor = await db.execute(query, params)
                rows = [dict(r) for r in await cursor.fetchall()]

        except aiosqlite.Error as e:
            logger.error("Failed to get action logs", error=str(e))
            raise DatabaseError(f"Failed to get action logs: {e}") from e

        for row in rows:
            row["details"] = _loads(row.pop("details_json"))
        return rows


# ---------------------------------------------------------------------------
# Row conversion
# ---------------------------------------------------------------------------


def _loads(value: str | None) -> Any:
    return json.loads(value) if value else None


def _validate_order_by(order_by: str, columns: frozenset[str]) -> str:
    parts = order_by.split()
    if not parts or len(parts) > 2 or parts[0] not in columns:
        raise DatabaseError(f"Invalid order_by: '{order_by}'")
    if len(parts) == 2 and parts[1].upper() not in ("ASC", "DESC"):
        raise DatabaseError(f"Invalid order_by direction: '{parts[1]}'")
    return " ".join([parts[0]] + [p.upper() for p in parts[1:]])


def _decision_row_to_dict(row: dict[str, Any]) -> dict[str, Any]:
    record = {
        "email_id": row["email_id"],
        "key_point": row["key_point"],
        "confidence": row["confidence"],
        "action_reason": row["action_reason"],
        "suggested_draft": row["suggested_draft"],
        "suggested_draft_pushy": row["suggested_draft_pushy"],
        "suggested_draft_exploratory": row["suggested_draft_exploratory"],
        "auto_archived": bool(row["auto_archived"]),
        "draft_created": bool(row["draft_created"]),
        "feedback": row["feedback"],
        "feedback_text": row["feedback_text"],
    }
    for name in _DECISION_JSON_FIELDS:
        record[name] = _loads(row[f"{name}_json"])
    return record


def _row_to_company(row: dict[str, Any]) -> Company:
    return Company(
        id=row["id"],
        name=row["name"],
        domain=row["domain"],
        last_chat=from_db_timestamp(row["last_chat"]),
        created_at=from_db_timestamp(row["created_at"]),
    )


def _row_to_contact(row: dict[str, Any]) -> Contact:
    return Contact(
        id=row["id"],
        name=row["name"],
        email=row["email"],
        company_id=row["company_id"],
        last_chat=from_db_timestamp(row["last_chat"]),
        created_at=from_db_timestamp(row["created_at"]),
    )
