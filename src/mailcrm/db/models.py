"""SQLite database schema and initialization for mailcrm.

Tables:
- emails: Fetched email snapshots (what the decision was made on)
- triage_decisions: One live decision per email, automation flags, feedback
- companies / contacts / activities: The CRM
- prompts: User-editable prompt sections (e.g. triage_logic)
- llm_request_log: Claude API call logging for debugging
- action_log: Audit trail of automation side effects

Usage:
    from mailcrm.db.models import init_database

    await init_database("data/mailcrm.db")
"""

import stat
from pathlib import Path

import aiosqlite

from mailcrm.core.errors import DatabaseError
from mailcrm.core.logging import get_logger

logger = get_logger(__name__)

SCHEMA_VERSION = 1

SCHEMA_SQL = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS emails (
    id TEXT PRIMARY KEY,                    -- Provider message ID
    sender TEXT,
    subject TEXT,
    received_at DATETIME,
    snippet TEXT,
    body TEXT,                              -- Cleaned, truncated body
    to_json TEXT,
    thread_id TEXT,
    fetched_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS triage_decisions (
    email_id TEXT PRIMARY KEY,
    key_point TEXT NOT NULL,                -- Schedule | Respond | Update_Database | Archive | Review
    confidence INTEGER NOT NULL CHECK (confidence BETWEEN 0 AND 10),
    action_reason TEXT,
    suggested_draft TEXT,
    suggested_draft_pushy TEXT,
    suggested_draft_exploratory TEXT,
    alternative_options_json TEXT,
    uncertainty_factors_json TEXT,
    database_suggestions_json TEXT,
    contact_context_json TEXT,
    calendar_context_json TEXT,
    auto_archived INTEGER DEFAULT 0,        -- Monotonic: never reset to 0 by triage
    draft_created INTEGER DEFAULT 0,        -- Monotonic: never reset to 0 by triage
    feedback TEXT,                          -- NULL | 'good' | 'bad'
    feedback_text TEXT,
    feedback_at DATETIME,
    source_email_json TEXT,                 -- Snapshot taken when feedback was given
    original_triage_json TEXT,              -- Snapshot taken when feedback was given
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_triage_decisions_key_point ON triage_decisions(key_point);

CREATE TABLE IF NOT EXISTS companies (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    domain TEXT,
    last_chat DATETIME,                     -- Max over its contacts' last_chat
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS contacts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    email TEXT,
    company_id INTEGER REFERENCES companies(id) ON DELETE SET NULL,
    last_chat DATETIME,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_contacts_email ON contacts(email COLLATE NOCASE);
CREATE INDEX IF NOT EXISTS idx_contacts_company ON contacts(company_id);
CREATE INDEX IF NOT EXISTS idx_contacts_created ON contacts(created_at DESC);

CREATE TABLE IF NOT EXISTS activities (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    description TEXT,
    status TEXT DEFAULT 'open',
    priority INTEGER CHECK (priority IN (1, 2)),
    next_step TEXT,
    contact_id INTEGER REFERENCES contacts(id) ON DELETE SET NULL,
    company_id INTEGER REFERENCES companies(id) ON DELETE SET NULL,
    email_id TEXT,
    last_contact_date DATETIME,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_activities_email ON activities(email_id);

CREATE TABLE IF NOT EXISTS prompts (
    name TEXT PRIMARY KEY,
    content TEXT NOT NULL,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS llm_request_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
    task_type TEXT NOT NULL,                -- 'triage', 'research'
    model TEXT NOT NULL,
    email_id TEXT,
    triage_run_id TEXT,
    prompt_json TEXT,
    response_json TEXT,
    tool_call_json TEXT,
    input_tokens INTEGER,
    output_tokens INTEGER,
    duration_ms INTEGER,
    error TEXT
);

CREATE INDEX IF NOT EXISTS idx_llm_log_timestamp ON llm_request_log(timestamp);

CREATE TABLE IF NOT EXISTS action_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
    action_type TEXT NOT NULL,              -- 'archive', 'create_draft', 'create_activity', 'feedback'
    email_id TEXT,
    details_json TEXT,
    triggered_by TEXT DEFAULT 'auto'        -- 'auto', 'user'
);
"""

REQUIRED_TABLES = (
    "emails",
    "triage_decisions",
    "companies",
    "contacts",
    "activities",
    "prompts",
    "llm_request_log",
    "action_log",
)


async def init_database(db_path: str | Path) -> None:
    """Initialize the SQLite database with schema and WAL mode.

    Creates the database file if it doesn't exist and restricts its
    permissions to the owner (the CRM and mail snapshots are PII).

    Args:
        db_path: Path to the SQLite database file

    Raises:
        DatabaseError: If database initialization fails
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            journal_mode = await db.execute("PRAGMA journal_mode")
            mode = await journal_mode.fetchone()
            if mode and mode[0].lower() != "wal":
                logger.warning(
                    "WAL mode not enabled",
                    requested="wal",
                    actual=mode[0],
                    db_path=str(db_path),
                )

            await db.executescript(SCHEMA_SQL)
            await db.commit()

            cursor = await db.execute("SELECT COUNT(*) FROM sqlite_master WHERE type='table'")
            table_count = (await cursor.fetchone())[0]

        db_path.chmod(stat.S_IRUSR | stat.S_IWUSR)
        for suffix in ["-wal", "-shm"]:
            wal_file = db_path.with_suffix(db_path.suffix + suffix)
            if wal_file.exists():
                wal_file.chmod(stat.S_IRUSR | stat.S_IWUSR)

        logger.info(
            "Database initialized",
            db_path=str(db_path),
            schema_version=SCHEMA_VERSION,
            tables_created=table_count,
        )

    except aiosqlite.Error as e:
        logger.error("Database initialization failed", db_path=str(db_path), error=str(e))
        raise DatabaseError(
            f"Failed to initialize database at {db_path}: {e}. "
            "Check that the directory is writable and the database file is not corrupted."
        ) from e


async def verify_schema(db_path: str | Path) -> bool:
    """Check that all required tables exist.

    Returns:
        True if all tables exist, False otherwise
    """
    try:
        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("SELECT name FROM sqlite_master WHERE type='table'")
            existing = {row[0] for row in await cursor.fetchall()}
    except aiosqlite.Error as e:
        logger.error("Schema verification failed", db_path=str(db_path), error=str(e))
        return False

    missing = [t for t in REQUIRED_TABLES if t not in existing]
    if missing:
        logger.warning("Missing database tables", missing=missing)
        return False
    return True
