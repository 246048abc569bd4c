"""Batch correspondence resolver: backfills last_chat for contacts and companies.

Two passes, always run in order:

1. Contacts. Every contact with an email address is looked up in mail
   history (most recent message involving the address). Contacts are
   processed in batches with a fixed stagger before each lookup and a
   longer pause between batches, so the mail provider sees a steady,
   bounded request rate. A contact is only written when the found message
   is strictly newer than its stored last_chat.
2. Companies. Each company's last_chat becomes the maximum last_chat over
   its contacts, written only when that is newer than the stored value.

last_chat never moves backwards. Every contact (or company) that is not
updated counts as skipped, whether it had nothing newer or its lookup
failed, so updated + skipped == total. No single failure stops a pass.

Usage:
    from mailcrm.engine.resolver import LastChatResolver

    resolver = LastChatResolver(store, mailbox, config)
    result = await resolver.run()
    result.contacts.updated, result.companies.updated
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from mailcrm.core.logging import get_logger, run_scope
from mailcrm.core.rate_limiter import FixedIntervalPacer

if TYPE_CHECKING:
    from mailcrm.config_schema import AppConfig
    from mailcrm.core.rate_limiter import Pacer
    from mailcrm.db.store import Company, Contact, DatabaseStore
    from mailcrm.graph.mailbox import MailTransport

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class ResolverPassResult:
    updated: int
    total: int
    skipped: int

    def to_dict(self) -> dict[str, int]:
        return {"updated": self.updated, "total": self.total, "skipped": self.skipped}


@dataclass(frozen=True, slots=True)
class ResolverRunResult:
    run_id: str
    contacts: ResolverPassResult
    companies: ResolverPassResult

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "contacts": self.contacts.to_dict(),
            "companies": self.companies.to_dict(),
        }


def _is_newer(candidate: datetime, current: datetime | None) -> bool:
    return current is None or candidate > current


class LastChatResolver:
    """Backfills last_chat timestamps from mail history.

    Attributes:
        _store: CRM store
        _mailbox: Mail transport used for history search
        _batch_size: Contacts per batch
        _pacer: Stagger (item) and inter-batch pauses
    """

    def __init__(
        self,
        store: DatabaseStore,
        mailbox: MailTransport,
        config: AppConfig,
        pacer: Pacer | None = None,
    ):
        self._store = store
        self._mailbox = mailbox
        self._batch_size = config.resolver.batch_size
        self._pacer = pacer or FixedIntervalPacer(
            item_delay=config.resolver.stagger_ms / 1000,
            batch_delay=config.resolver.batch_pause_ms / 1000,
        )

    async def run(self) -> ResolverRunResult:
        """Run the contact pass, then the company pass."""
        with run_scope() as run_id:
            contacts = await self.resolve_contacts()
            companies = await self.resolve_companies()
            return ResolverRunResult(run_id=run_id, contacts=contacts, companies=companies)

    async def resolve_contacts(self) -> ResolverPassResult:
        """Backfill last_chat for every contact with an email address.

        Contacts with no newer correspondence, and contacts whose lookup
        failed, are counted as skipped. A failing contact never stops the pass.
        """
        contacts = await self._store.list_contacts_with_email()
        batches = [
            contacts[i : i + self._batch_size] for i in range(0, len(contacts), self._batch_size)
        ]
        updated = skipped = 0

        logger.info("contact_pass_started", total=len(contacts), batches=len(batches))
        for batch_index, batch in enumerate(batches):
            if batch_index > 0:
                await self._pacer.batch_pause()
            for contact in batch:
                await self._pacer.item_pause()
                try:
                    if await self._resolve_contact(contact):
                        updated += 1
                    else:
                        skipped += 1
                except Exception as e:
                    skipped += 1
                    logger.warning(
                        "contact_last_chat_failed", contact_id=contact.id, error=str(e)
                    )

        result = ResolverPassResult(updated=updated, total=len(contacts), skipped=skipped)
        logger.info("contact_pass_complete", **result.to_dict())
        return result

    async def _resolve_contact(self, contact: Contact) -> bool:
        address = (contact.email or "").strip()
        messages = self._mailbox.search(f"participants:{address}", 1)
        if not messages:
            return False

        latest = messages[0].received_at
        if not _is_newer(latest, contact.last_chat):
            return False
        return await self._store.update_contact_last_chat(contact.id, latest)

    async def resolve_companies(self) -> ResolverPassResult:
        companies = await self._store.list_companies()
        updated = skipped = 0

        for company in companies:
            try:
                if await self._resolve_company(company):
                    updated += 1
                else:
                    skipped += 1
            except Exception as e:
                skipped += 1
                logger.warning("company_last_chat_failed", company_id=company.id, error=str(e))

        result = ResolverPassResult(updated=updated, total=len(companies), skipped=skipped)
        logger.info("company_pass_complete", **result.to_dict())
        return result

    async def _resolve_company(self, company: Company) -> bool:
        contacts = await self._store.list_contacts_for_company(company.id)
        chats = [c.last_chat for c in contacts if c.last_chat is not None]
        if not chats:
            return False
        latest = max(chats)
        if not _is_newer(latest, company.last_chat):
            return False
        return await self._store.update_company_last_chat(company.id, latest)
