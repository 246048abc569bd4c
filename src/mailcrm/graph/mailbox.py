"""Mail transport over Microsoft Graph.

MailTransport is the contract the orchestrator, policy executor and resolver
depend on; GraphMailbox implements it against the signed-in user's mailbox
and calendar. Messages come back as immutable Email objects with their body
already cleaned and truncated.

Usage:
    from mailcrm.graph.client import GraphClient
    from mailcrm.graph.mailbox import GraphMailbox

    mailbox = GraphMailbox(GraphClient(auth), timezone="Europe/London")
    emails = mailbox.fetch_recent(20)
    mailbox.archive(emails[0].id)
"""

from __future__ import annotations

from datetime import UTC, datetime, time, timedelta
from typing import TYPE_CHECKING, Any, Protocol
from zoneinfo import ZoneInfo

from mailcrm.core.logging import get_logger
from mailcrm.mail.body import prepare_body
from mailcrm.models import BusyInterval, Email, parse_timestamp

if TYPE_CHECKING:
    from mailcrm.graph.client import GraphClient

logger = get_logger(__name__)

MESSAGE_FIELDS = (
    "id,conversationId,subject,from,toRecipients,receivedDateTime,bodyPreview,body"
)
EVENT_FIELDS = "subject,start,end,isAllDay,showAs"
ARCHIVE_FOLDER = "archive"


class MailTransport(Protocol):
    """Mailbox and calendar operations used by the triage core."""

    def fetch_recent(self, n: int) -> list[Email]: ...

    def get_message(self, message_id: str) -> Email: ...

    def search(self, query: str, max_results: int) -> list[Email]: ...

    def archive(self, message_id: str) -> None: ...

    def create_draft(self, to: str, subject: str, body: str) -> str: ...

    def get_busy_intervals(self, window_days: int) -> list[BusyInterval]: ...


class GraphMailbox:
    """MailTransport backed by Microsoft Graph.

    Attributes:
        client: GraphClient used for all calls
        tz: Local timezone, used to anchor all-day events
        body_max_length: Cleaned body length limit
    """

    def __init__(
        self,
        client: GraphClient,
        timezone: str = "UTC",
        body_max_length: int = 4000,
    ):
        self.client = client
        self.tz = ZoneInfo(timezone)
        self.body_max_length = body_max_length

    def fetch_recent(self, n: int) -> list[Email]:
        """Most recent n inbox messages, newest first."""
        messages = self.client.paginate(
            "/me/mailFolders/inbox/messages",
            params={
                "$select": MESSAGE_FIELDS,
                "$orderby": "receivedDateTime desc",
                "$top": min(n, 50),
            },
            max_items=n,
        )
        logger.info("Messages fetched", count=len(messages), requested=n)
        return [self._to_email(m) for m in messages]

    def get_message(self, message_id: str) -> Email:
        message = self.client.get(
            f"/me/messages/{message_id}", params={"$select": MESSAGE_FIELDS}
        )
        return self._to_email(message)

    def search(self, query: str, max_results: int) -> list[Email]:
        """Search all folders with a KQL query, newest first.

        Example:
            mailbox.search("participants:jane@acme.com", 1)
        """
        escaped = query.replace('"', '\\"')
        messages = self.client.get(
            "/me/messages",
            params={
                "$search": f'"{escaped}"',
                "$select": MESSAGE_FIELDS,
                "$top": max_results,
            },
        ).get("value", [])
        emails = [self._to_email(m) for m in messages]
        emails.sort(key=lambda e: e.received_at, reverse=True)
        return emails[:max_results]

    def archive(self, message_id: str) -> None:
        self.client.post(
            f"/me/messages/{message_id}/move",
            json={"destinationId": ARCHIVE_FOLDER},
        )
        logger.info("Message archived", message_id=message_id[:20] + "...")

    def create_draft(self, to: str, subject: str, body: str) -> str:
        """Create a plain-text draft in Drafts and return its message ID."""
        draft = self.client.post(
            "/me/messages",
            json={
                "subject": subject,
                "body": {"contentType": "Text", "content": body},
                "toRecipients": [{"emailAddress": {"address": to}}],
            },
        )
        logger.info("Draft created", to_domain=to.rsplit("@", 1)[-1])
        return draft.get("id", "")

    def get_busy_intervals(self, window_days: int) -> list[BusyInterval]:
        """Busy calendar intervals from now until now + window_days."""
        start = datetime.now(UTC)
        end = start + timedelta(days=window_days)
        events = self.client.paginate(
            "/me/calendarView",
            params={
                "startDateTime": start.isoformat(),
                "endDateTime": end.isoformat(),
                "$select": EVENT_FIELDS,
                "$orderby": "start/dateTime",
                "$top": 50,
            },
            extra_headers={"Prefer": 'outlook.timezone="UTC"'},
        )
        intervals = [
            self._to_interval(e) for e in events if e.get("showAs", "busy") != "free"
        ]
        logger.debug("Busy intervals fetched", count=len(intervals), window_days=window_days)
        return intervals

    # -----------------------------------------------------------------------
    # Transforms
    # -----------------------------------------------------------------------

    def _to_email(self, message: dict[str, Any]) -> Email:
        sender_info = (message.get("from") or {}).get("emailAddress", {})
        address = sender_info.get("address", "")
        name = sender_info.get("name")
        sender = f"{name} <{address}>" if name and name != address else address

        body = message.get("body") or {}
        return Email(
            id=message["id"],
            sender=sender,
            subject=message.get("subject") or "",
            received_at=parse_timestamp(message.get("receivedDateTime")) or datetime.now(UTC),
            snippet=message.get("bodyPreview") or "",
            body=prepare_body(
                body.get("content"),
                is_html=body.get("contentType", "").lower() == "html",
                max_length=self.body_max_length,
            ),
            to=tuple(
                r.get("emailAddress", {}).get("address", "")
                for r in message.get("toRecipients") or []
            ),
            thread_id=message.get("conversationId"),
        )

    def _to_interval(self, event: dict[str, Any]) -> BusyInterval:
        if event.get("isAllDay"):
            # All-day events cover whole local days regardless of the UTC header.
            start_day = datetime.fromisoformat(event["start"]["dateTime"][:10]).date()
            end_day = datetime.fromisoformat(event["end"]["dateTime"][:10]).date()
            return BusyInterval(
                start=datetime.combine(start_day, time.min, tzinfo=self.tz),
                end=datetime.combine(end_day, time.min, tzinfo=self.tz),
                all_day=True,
            )
        return BusyInterval(
            start=_graph_utc(event["start"]["dateTime"]),
            end=_graph_utc(event["end"]["dateTime"]),
        )


def _graph_utc(value: str) -> datetime:
    """Parse a Graph dateTimeTimeZone value returned in UTC (7 fractional digits, no offset)."""
    head, _, frac = value.partition(".")
    parsed = datetime.fromisoformat(head + (f".{frac[:6]}" if frac else ""))
    return parsed.replace(tzinfo=UTC) if parsed.tzinfo is None else parsed
