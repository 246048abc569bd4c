"""Database layer for mailcrm.

SQLite access with async operations: triage decisions plus a small CRM
(companies, contacts, activities).

Usage:
    from mailcrm.db import DatabaseStore

    store = DatabaseStore("data/mailcrm.db")
    await store.initialize()
"""

from mailcrm.db.models import SCHEMA_VERSION, init_database, verify_schema
from mailcrm.db.store import Activity, Company, Contact, DatabaseStore

__all__ = [
    "SCHEMA_VERSION",
    "init_database",
    "verify_schema",
    "DatabaseStore",
    "Activity",
    "Company",
    "Contact",
]
