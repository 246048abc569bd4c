"""Domain types shared across the triage pipeline.

Email and TriageDecision are frozen: an email never changes once fetched, and
a decision is only ever replaced (dataclasses.replace) when automation flags
or feedback are applied. TriageDecision.to_dict() uses the decision service's
JSON field names so the stored record and the wire contract stay identical.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from email.utils import parseaddr
from enum import StrEnum
from typing import Any, Literal

FeedbackVerdict = Literal["good", "bad"]


class KeyPoint(StrEnum):
    """Recommended action category for an email."""

    SCHEDULE = "Schedule"
    RESPOND = "Respond"
    UPDATE_DATABASE = "Update_Database"
    ARCHIVE = "Archive"
    REVIEW = "Review"

    @classmethod
    def parse(cls, value: Any) -> KeyPoint:
        """Map a raw value to a KeyPoint; anything unrecognised is Review."""
        if isinstance(value, str):
            for member in cls:
                if member.value.lower() == value.strip().lower():
                    return member
        return cls.REVIEW


class Direction(StrEnum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


def parse_timestamp(value: str | datetime | None) -> datetime | None:
    """Parse an ISO-8601 timestamp (Graph uses a trailing 'Z')."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


# ---------------------------------------------------------------------------
# Email
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Email:
    """A fetched email message.

    Attributes:
        id: Provider message ID
        sender: Raw sender, either "addr" or "Name <addr>"
        subject: Subject line
        received_at: When the message was received (timezone-aware)
        snippet: Short preview text
        body: Cleaned, truncated body text
        to: Recipient addresses
        thread_id: Provider conversation ID
    """

    id: str
    sender: str
    subject: str
    received_at: datetime
    snippet: str = ""
    body: str = ""
    to: tuple[str, ...] = ()
    thread_id: str | None = None

    @property
    def sender_address(self) -> str:
        """Bare lower-cased sender address."""
        _, addr = parseaddr(self.sender)
        return (addr or self.sender).strip().lower()

    @property
    def sender_domain(self) -> str:
        addr = self.sender_address
        return addr.rsplit("@", 1)[1] if "@" in addr else ""

    def to_dict(self) -> dict[str, Any]:
        """Serialize using the field names the decision prompt and store use."""
        return {
            "id": self.id,
            "from": self.sender,
            "subject": self.subject,
            "date": self.received_at.isoformat(),
            "snippet": self.snippet,
            "body": self.body,
            "to": list(self.to),
            "thread_id": self.thread_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Email:
        received = parse_timestamp(data.get("date"))
        if received is None:
            raise ValueError(f"Email {data.get('id')} has no date")
        return cls(
            id=data["id"],
            sender=data.get("from") or "",
            subject=data.get("subject") or "",
            received_at=received,
            snippet=data.get("snippet") or "",
            body=data.get("body") or "",
            to=tuple(data.get("to") or ()),
            thread_id=data.get("thread_id"),
        )


# ---------------------------------------------------------------------------
# Enrichment context
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class BusyInterval:
    start: datetime
    end: datetime
    all_day: bool = False


@dataclass(frozen=True, slots=True)
class CalendarSlot:
    start: datetime
    end: datetime
    label: str

    def to_dict(self) -> dict[str, Any]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat(), "label": self.label}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CalendarSlot:
        return cls(
            start=datetime.fromisoformat(data["start"]),
            end=datetime.fromisoformat(data["end"]),
            label=data.get("label", ""),
        )


@dataclass(frozen=True, slots=True)
class CalendarContext:
    """Calendar availability attached to scheduling emails.

    Attributes:
        summary: One-line availability summary for the prompt
        slots: Raw 30-minute free slots
        structured_slots: The three 2-3 hour proposal windows
    """

    summary: str
    slots: tuple[CalendarSlot, ...] = ()
    structured_slots: tuple[CalendarSlot, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary,
            "slots": [s.to_dict() for s in self.slots],
            "structured_slots": [s.to_dict() for s in self.structured_slots],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CalendarContext:
        return cls(
            summary=data.get("summary", ""),
            slots=tuple(CalendarSlot.from_dict(s) for s in data.get("slots", [])),
            structured_slots=tuple(
                CalendarSlot.from_dict(s) for s in data.get("structured_slots", [])
            ),
        )


@dataclass(frozen=True, slots=True)
class ContactContext:
    """The CRM contact an email was resolved to."""

    contact_id: int
    name: str
    email: str
    direction: Direction
    company_id: int | None = None
    company_name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "contact_id": self.contact_id,
            "name": self.name,
            "email": self.email,
            "direction": self.direction.value,
            "company_id": self.company_id,
            "company_name": self.company_name,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ContactContext:
        return cls(
            contact_id=data["contact_id"],
            name=data.get("name") or "",
            email=data.get("email") or "",
            direction=Direction(data.get("direction", Direction.INBOUND)),
            company_id=data.get("company_id"),
            company_name=data.get("company_name"),
        )


@dataclass(frozen=True, slots=True)
class PipelineEvent:
    """A structured progress record emitted by a pipeline stage.

    Attributes:
        stage: Stage name ('direction', 'contact', 'calendar', 'research',
            'decision', 'automation', 'persist', 'feedback')
        status: 'completed', 'skipped' or 'failed'
        message: Human-readable summary
        details: Extra key/value context
    """

    stage: str
    status: str
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage,
            "status": self.status,
            "message": self.message,
            "details": dict(self.details),
        }


@dataclass(frozen=True, slots=True)
class PromptContext:
    """Everything enrichment learned about an email, handed to the decision service."""

    direction: Direction
    contact: ContactContext | None = None
    calendar: CalendarContext | None = None
    company_research: str | None = None


# ---------------------------------------------------------------------------
# Triage decision
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class DatabaseSuggestions:
    has_business_relevance: bool = False
    suggested_entries: tuple[Any, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "has_business_relevance": self.has_business_relevance,
            "suggested_entries": list(self.suggested_entries),
        }


@dataclass(frozen=True, slots=True)
class TriageDecision:
    """The decision service's recommendation for one email, plus automation state.

    One live record exists per email_id. The automation flags only ever go
    from False to True; feedback is set by the user, never by triage.
    """

    email_id: str
    key_point: KeyPoint
    confidence: int
    action_reason: str
    suggested_draft: str | None = None
    suggested_draft_pushy: str | None = None
    suggested_draft_exploratory: str | None = None
    alternative_options: tuple[Any, ...] = ()
    uncertainty_factors: tuple[str, ...] = ()
    database_suggestions: DatabaseSuggestions = field(default_factory=DatabaseSuggestions)
    contact_context: ContactContext | None = None
    calendar_context: CalendarContext | None = None
    auto_archived: bool = False
    draft_created: bool = False
    feedback: FeedbackVerdict | None = None
    feedback_text: str | None = None

    @property
    def has_draft(self) -> bool:
        return any(
            (self.suggested_draft_pushy, self.suggested_draft_exploratory, self.suggested_draft)
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "email_id": self.email_id,
            "key_point": self.key_point.value,
            "confidence": self.confidence,
            "action_reason": self.action_reason,
            "suggested_draft": self.suggested_draft,
            "suggested_draft_pushy": self.suggested_draft_pushy,
            "suggested_draft_exploratory": self.suggested_draft_exploratory,
            "alternative_options": list(self.alternative_options),
            "uncertainty_factors": list(self.uncertainty_factors),
            "database_suggestions": self.database_suggestions.to_dict(),
            "contact_context": self.contact_context.to_dict() if self.contact_context else None,
            "calendar_context": self.calendar_context.to_dict() if self.calendar_context else None,
            "auto_archived": self.auto_archived,
            "draft_created": self.draft_created,
            "feedback": self.feedback,
            "feedback_text": self.feedback_text,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TriageDecision:
        suggestions = data.get("database_suggestions") or {}
        contact = data.get("contact_context")
        calendar = data.get("calendar_context")
        return cls(
            email_id=data["email_id"],
            key_point=KeyPoint.parse(data.get("key_point")),
            confidence=int(data.get("confidence", 0)),
            action_reason=data.get("action_reason") or "",
            suggested_draft=data.get("suggested_draft"),
            suggested_draft_pushy=data.get("suggested_draft_pushy"),
            suggested_draft_exploratory=data.get("suggested_draft_exploratory"),
            alternative_options=tuple(data.get("alternative_options") or ()),
            uncertainty_factors=tuple(data.get("uncertainty_factors") or ()),
            database_suggestions=DatabaseSuggestions(
                has_business_relevance=bool(suggestions.get("has_business_relevance", False)),
                suggested_entries=tuple(suggestions.get("suggested_entries") or ()),
            ),
            contact_context=ContactContext.from_dict(contact) if contact else None,
            calendar_context=CalendarContext.from_dict(calendar) if calendar else None,
            auto_archived=bool(data.get("auto_archived", False)),
            draft_created=bool(data.get("draft_created", False)),
            feedback=data.get("feedback"),
            feedback_text=data.get("feedback_text"),
        )
