"""Tool definition and prompt assembly for the triage decision.

The system prompt has two parts: an editable "triage logic" section (stored
in the prompts table under TRIAGE_LOGIC_PROMPT, falling back to
DEFAULT_TRIAGE_LOGIC) and the fixed output rules. The user message is built
per email, with optional sections for the resolved contact, calendar
availability and company research.

Usage:
    from mailcrm.decision.prompts import PromptAssembler, TRIAGE_DECISION_TOOL

    assembler = PromptAssembler()
    system = assembler.build_system_prompt(triage_logic=None)
    message = assembler.build_user_message(email, context)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from mailcrm.models import Direction, KeyPoint

if TYPE_CHECKING:
    from mailcrm.models import Email, PromptContext

TOOL_NAME = "record_triage_decision"
TRIAGE_LOGIC_PROMPT = "triage_logic"

# ---------------------------------------------------------------------------
# Tool definition
# ---------------------------------------------------------------------------

_OPTIONAL_TEXT = {"type": ["string", "null"]}

TRIAGE_DECISION_TOOL: dict[str, Any] = {
    "name": TOOL_NAME,
    "description": "Record the next action for an email, with drafts and CRM suggestions",
    "input_schema": {
        "type": "object",
        "properties": {
            "key_point": {
                "type": "string",
                "enum": [k.value for k in KeyPoint],
                "description": "The recommended next action",
            },
            "confidence": {
                "type": "integer",
                "minimum": 0,
                "maximum": 10,
                "description": "Confidence in the action decision",
            },
            "action_reason": {
                "type": "string",
                "description": (
                    "Concrete next step to take, or a short FYI summary for Archive emails"
                ),
            },
            "suggested_draft": {
                **_OPTIONAL_TEXT,
                "description": "Standard reply draft",
            },
            "suggested_draft_pushy": {
                **_OPTIONAL_TEXT,
                "description": "Direct, action-forcing reply draft",
            },
            "suggested_draft_exploratory": {
                **_OPTIONAL_TEXT,
                "description": "Consultative reply draft that explores options",
            },
            "alternative_options": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "action": {"type": "string"},
                        "reason": {"type": "string"},
                        "likelihood": {"type": "integer"},
                    },
                },
                "description": "Other plausible actions, for confidence below 7",
            },
            "uncertainty_factors": {
                "type": "array",
                "items": {"type": "string"},
                "description": "What makes the decision unclear",
            },
            "database_suggestions": {
                "type": "object",
                "properties": {
                    "has_business_relevance": {"type": "boolean"},
                    "suggested_entries": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {
                                "type": {
                                    "type": "string",
                                    "enum": ["contact", "company", "activity"],
                                },
                                "description": {"type": "string"},
                                "data": {"type": "object"},
                            },
                        },
                    },
                },
                "required": ["has_business_relevance", "suggested_entries"],
            },
        },
        "required": ["key_point", "confidence", "action_reason", "database_suggestions"],
    },
}

REQUIRED_FIELDS = tuple(TRIAGE_DECISION_TOOL["input_schema"]["required"])


# ---------------------------------------------------------------------------
# Prompt text
# ---------------------------------------------------------------------------

DEFAULT_TRIAGE_LOGIC = """\
DECIDE THE NEXT ACTION for this email. Be decisive and specific.

EMAIL DIRECTION RULES:
- OUTBOUND emails (you sent): focus on follow-up tracking and relationship progress
- INBOUND emails (sent to you): focus on response or processing needs

ACTION CATEGORIES:
- "Archive": notifications, confirmations, automated emails (confidence 9-10)
- "Schedule": meeting coordination, calendar requests (confidence 7-10)
- "Respond": needs a personal response (draft if confidence 7+)
- "Update_Database": contact updates, relationship progress tracking
- "Review": complex situations needing human judgment (confidence below 6)

DECISION LOGIC:
- Outbound emails with known contacts: usually "Update_Database" plus follow-up timing
- Meeting confirmations: "Schedule" the confirmed time
- Automated notifications: "Archive" with high confidence
- Client questions: "Respond" with a draft if confident

Say "Follow up in 3 days to confirm attendance", not "Client confirmed meeting".
Focus on WHAT TO DO NEXT, not what happened."""

OUTPUT_RULES = """\
Record your decision with the record_triage_decision tool.

CONFIDENCE SCORING:
- 9-10: very clear action, obvious next step
- 7-8: clear action with minor uncertainty
- 5-6: moderate uncertainty, multiple valid options
- 3-4: high uncertainty, requires human judgment
- 0-2: very unclear, insufficient information

DRAFTS:
- For Respond with confidence 4 or higher, write BOTH suggested_draft_pushy
  (direct, proposes a concrete next step) and suggested_draft_exploratory
  (consultative, asks questions and explores options).
- suggested_draft is a single standard reply when only one draft makes sense.
- No drafts for FYI emails. For those, use Archive and start action_reason
  with "FYI email - Quick summary:" followed by 2-3 sentences.

SCHEDULING:
- When PROPOSED MEETING WINDOWS are provided, offer exactly those three
  windows in the draft, in the format given.
- If no windows are provided, ask for the sender's availability.

DATABASE SUGGESTIONS:
- has_business_relevance is true for customers, investors, partners,
  prospects, vendors and business opportunities.
- Suggest only NEW contacts, companies or activities. If the contact is
  already known, suggest an activity instead of a duplicate contact.

UNCERTAIN CASES (confidence below 7):
- Give 2-3 alternative_options with likelihood percentages.
- List the specific uncertainty_factors."""


# ---------------------------------------------------------------------------
# Prompt assembler
# ---------------------------------------------------------------------------


class PromptAssembler:
    """Builds the decision system prompt and per-email user message."""

    def build_system_prompt(self, triage_logic: str | None = None) -> str:
        """Assemble the system prompt.

        Args:
            triage_logic: Stored override of the triage logic section, or
                None for the default

        Returns:
            Complete system prompt
        """
        logic = triage_logic.strip() if triage_logic and triage_logic.strip() else None
        return (
            "You are an email action decision engine for a small business CRM.\n\n"
            f"{logic or DEFAULT_TRIAGE_LOGIC}\n\n{OUTPUT_RULES}"
        )

    def build_user_message(self, email: Email, context: PromptContext) -> str:
        """Assemble the per-email message with optional context sections."""
        direction = (
            "OUTBOUND (sent by you)"
            if context.direction == Direction.OUTBOUND
            else "INBOUND (sent to you)"
        )
        sections = [
            "--- EMAIL ---",
            f"Direction: {direction}",
            f"From: {email.sender}",
        ]
        if email.to:
            sections.append(f"To: {', '.join(email.to)}")
        sections.extend(
            [
                f"Date: {email.received_at.isoformat()}",
                f"Subject: {email.subject}",
                "",
                email.body or email.snippet,
            ]
        )

        if context.contact:
            contact = context.contact
            label = "RECIPIENT CONTEXT" if contact.direction == Direction.OUTBOUND else "SENDER CONTEXT"
            line = f"Known contact: {contact.name} <{contact.email}>"
            if contact.company_name:
                line += f" at {contact.company_name}"
            sections.extend(["", f"--- {label} ---", line])

        if context.calendar:
            calendar = context.calendar
            sections.extend(["", "--- CALENDAR ---", calendar.summary])
            if calendar.structured_slots:
                sections.append("PROPOSED MEETING WINDOWS:")
                sections.extend(f"- {s.label}" for s in calendar.structured_slots)
            if calendar.slots:
                sections.append("AVAILABLE TIME SLOTS:")
                sections.extend(f"- {s.label}" for s in calendar.slots)

        if context.company_research:
            sections.extend(["", "--- COMPANY RESEARCH ---", context.company_research])

        return "\n".join(sections)
