"""Confidence-gated automation rules and their executor.

AutomationPolicy is pure: given a decision, the email, the current time and
the previously stored decision, it returns an AutomationPlan. The rules are
independent of each other:

- Archive: key point Archive, confidence >= 9 and the email is more than 2
  hours old. Younger emails get a pending archive, re-evaluated only when
  the email is triaged again.
- Draft: any draft present and confidence >= 7. Exactly one draft is
  created, preferring pushy, then exploratory, then standard.
- Surface: key point Respond with 4 <= confidence < 7 and pushy or
  exploratory drafts present. The drafts are returned, nothing is created.
- Activity: a resolved contact and (key point Update_Database or
  confidence >= 8). Priority 1 at confidence >= 8, else 2.

Archive and draft flags are monotonic: if the prior decision already
archived or drafted, the action is not repeated and the flag stays set.

AutomationExecutor performs a plan's side effects. A failed action is
logged and leaves its flag false; it never undoes anything already stored.

Usage:
    from mailcrm.engine.policy import AutomationExecutor, AutomationPolicy

    plan = AutomationPolicy().evaluate(decision, email, now, prior=stored)
    result = await AutomationExecutor(mailbox, store).execute(plan, decision, email)
    result.decision.auto_archived
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from mailcrm.core.errors import AutomationError, MailcrmError
from mailcrm.core.logging import get_logger
from mailcrm.db.store import Activity
from mailcrm.models import Direction, KeyPoint, PipelineEvent

if TYPE_CHECKING:
    from mailcrm.db.store import DatabaseStore
    from mailcrm.graph.mailbox import MailTransport
    from mailcrm.models import Email, TriageDecision

logger = get_logger(__name__)

ARCHIVE_MIN_CONFIDENCE = 9
ARCHIVE_MIN_AGE = timedelta(hours=2)
DRAFT_MIN_CONFIDENCE = 7
SURFACE_MIN_CONFIDENCE = 4
ACTIVITY_MIN_CONFIDENCE = 8

DRAFT_PREFERENCE = ("pushy", "exploratory", "standard")


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class DraftPlan:
    """The single draft to create."""

    variant: str  # 'pushy', 'exploratory' or 'standard'
    to: str
    subject: str
    body: str


@dataclass(frozen=True, slots=True)
class AutomationPlan:
    """What the policy decided to do for one email.

    Attributes:
        archive: Archive the email now
        archive_pending: Archive rule matched but the email is too recent
        draft: Draft to create, if any
        surfaced_drafts: Drafts offered to the user without creating them
        activity: CRM activity to create, if any
        already_archived: Prior decision already archived this email
        already_drafted: Prior decision already created a draft
    """

    archive: bool = False
    archive_pending: bool = False
    draft: DraftPlan | None = None
    surfaced_drafts: dict[str, str] = field(default_factory=dict)
    activity: Activity | None = None
    already_archived: bool = False
    already_drafted: bool = False

    @property
    def has_side_effects(self) -> bool:
        return self.archive or self.draft is not None or self.activity is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "archive": self.archive,
            "archive_pending": self.archive_pending,
            "draft_variant": self.draft.variant if self.draft else None,
            "surfaced_drafts": sorted(self.surfaced_drafts),
            "activity": self.activity.name if self.activity else None,
        }


class AutomationPolicy:
    """Deterministic rules mapping a decision to automation actions."""

    def evaluate(
        self,
        decision: TriageDecision,
        email: Email,
        now: datetime,
        prior: TriageDecision | None = None,
    ) -> AutomationPlan:
        """Evaluate all rules for one decision.

        Args:
            decision: Fresh decision from the decision service
            email: The email the decision is about
            now: Current time (timezone-aware)
            prior: Previously stored decision for the same email, if any

        Returns:
            AutomationPlan (no side effects performed)
        """
        already_archived = bool(prior and prior.auto_archived)
        already_drafted = bool(prior and prior.draft_created)

        archive = False
        archive_pending = False
        if (
            decision.key_point == KeyPoint.ARCHIVE
            and decision.confidence >= ARCHIVE_MIN_CONFIDENCE
            and not already_archived
        ):
            if now - email.received_at > ARCHIVE_MIN_AGE:
                archive = True
            else:
                archive_pending = True

        draft = None
        if (
            decision.has_draft
            and decision.confidence >= DRAFT_MIN_CONFIDENCE
            and not already_drafted
        ):
            draft = _pick_draft(decision, email)

        surfaced: dict[str, str] = {}
        if (
            decision.key_point == KeyPoint.RESPOND
            and SURFACE_MIN_CONFIDENCE <= decision.confidence < DRAFT_MIN_CONFIDENCE
        ):
            if decision.suggested_draft_pushy:
                surfaced["pushy"] = decision.suggested_draft_pushy
            if decision.suggested_draft_exploratory:
                surfaced["exploratory"] = decision.suggested_draft_exploratory

        activity = None
        if decision.contact_context is not None and (
            decision.key_point == KeyPoint.UPDATE_DATABASE
            or decision.confidence >= ACTIVITY_MIN_CONFIDENCE
        ):
            activity = _build_activity(decision, email)

        return AutomationPlan(
            archive=archive,
            archive_pending=archive_pending,
            draft=draft,
            surfaced_drafts=surfaced,
            activity=activity,
            already_archived=already_archived,
            already_drafted=already_drafted,
        )


def _reply_subject(subject: str) -> str:
    return subject if subject.lower().startswith("re:") else f"Re: {subject}"


def _reply_address(decision: TriageDecision, email: Email) -> str:
    """Inbound replies go to the sender; outbound follow-ups go to the contact."""
    contact = decision.contact_context
    if contact and contact.direction == Direction.OUTBOUND and contact.email:
        return contact.email
    return email.sender_address


def _pick_draft(decision: TriageDecision, email: Email) -> DraftPlan:
    bodies = {
        "pushy": decision.suggested_draft_pushy,
        "exploratory": decision.suggested_draft_exploratory,
        "standard": decision.suggested_draft,
    }
    variant = next(v for v in DRAFT_PREFERENCE if bodies[v])
    return DraftPlan(
        variant=variant,
        to=_reply_address(decision, email),
        subject=_reply_subject(email.subject),
        body=bodies[variant] or "",
    )


def _next_step(decision: TriageDecision) -> str:
    contact = decision.contact_context
    name = contact.name if contact else "contact"
    if contact and contact.direction == Direction.OUTBOUND:
        return f"Follow up with {name} if no reply in 3 days"
    return f"Reply to {name}: {decision.action_reason}"


def _build_activity(decision: TriageDecision, email: Email) -> Activity:
    contact = decision.contact_context
    return Activity(
        name=f"{decision.key_point.value}: {email.subject or '(no subject)'}"[:200],
        priority=1 if decision.confidence >= ACTIVITY_MIN_CONFIDENCE else 2,
        description=decision.action_reason,
        next_step=_next_step(decision),
        contact_id=contact.contact_id if contact else None,
        company_id=contact.company_id if contact else None,
        email_id=email.id,
        last_contact_date=email.received_at,
    )


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


@dataclass
class ExecutionResult:
    """Outcome of executing a plan.

    Attributes:
        decision: Decision with automation flags applied
        events: One event per attempted or skipped action
        failures: Errors for actions that failed
        activity_id: ID of the created activity, if any
    """

    decision: TriageDecision
    events: list[PipelineEvent] = field(default_factory=list)
    failures: list[AutomationError] = field(default_factory=list)
    activity_id: int | None = None


class AutomationExecutor:
    """Performs the side effects of an AutomationPlan."""

    def __init__(self, mailbox: MailTransport, store: DatabaseStore):
        self._mailbox = mailbox
        self._store = store

    async def execute(
        self,
        plan: AutomationPlan,
        decision: TriageDecision,
        email: Email,
    ) -> ExecutionResult:
        """Run archive, draft and activity actions independently.

        Args:
            plan: Plan from AutomationPolicy.evaluate()
            decision: The decision the plan was built from
            email: The email being acted on

        Returns:
            ExecutionResult with flags set only for actions that succeeded
            (or that a prior decision already performed)
        """
        result = ExecutionResult(
            decision=replace(
                decision,
                auto_archived=decision.auto_archived or plan.already_archived,
                draft_created=decision.draft_created or plan.already_drafted,
            )
        )

        if plan.archive:
            await self._run(
                result,
                "archive",
                email.id,
                lambda: self._mailbox.archive(email.id),
                {"auto_archived": True},
            )
        elif plan.archive_pending:
            result.events.append(
                PipelineEvent(
                    "automation",
                    "skipped",
                    "Archive pending: email received less than 2 hours ago",
                    {"action": "archive"},
                )
            )

        if plan.draft is not None:
            draft = plan.draft
            await self._run(
                result,
                "create_draft",
                email.id,
                lambda: self._mailbox.create_draft(draft.to, draft.subject, draft.body),
                {"draft_created": True},
                details={"variant": draft.variant},
            )

        if plan.surfaced_drafts:
            result.events.append(
                PipelineEvent(
                    "automation",
                    "completed",
                    "Drafts surfaced for review",
                    {"action": "surface_drafts", "variants": sorted(plan.surfaced_drafts)},
                )
            )

        if plan.activity is not None:
            await self._create_activity(result, plan.activity, email.id)

        return result

    async def _run(
        self,
        result: ExecutionResult,
        action: str,
        email_id: str,
        call: Callable[[], object],
        flags: dict[str, bool],
        details: dict[str, Any] | None = None,
    ) -> None:
        details = details or {}
        try:
            call()
        except MailcrmError as e:
            self._record_failure(result, action, email_id, e)
            return

        result.decision = replace(result.decision, **flags)
        result.events.append(
            PipelineEvent("automation", "completed", f"{action} done", {"action": action, **details})
        )
        await self._log_action(action, email_id, details)

    async def _create_activity(
        self, result: ExecutionResult, activity: Activity, email_id: str
    ) -> None:
        try:
            existing = await self._store.list_activities(email_id)
            if existing:
                result.activity_id = existing[0].id
                result.events.append(
                    PipelineEvent(
                        "automation",
                        "skipped",
                        "Activity already recorded for this email",
                        {"action": "create_activity", "activity_id": result.activity_id},
                    )
                )
                return
            result.activity_id = await self._store.create_activity(activity)
        except MailcrmError as e:
            self._record_failure(result, "create_activity", email_id, e)
            return

        details = {"activity_id": result.activity_id, "priority": activity.priority}
        result.events.append(
            PipelineEvent(
                "automation",
                "completed",
                "create_activity done",
                {"action": "create_activity", **details},
            )
        )
        await self._log_action("create_activity", email_id, details)

    def _record_failure(
        self, result: ExecutionResult, action: str, email_id: str, error: MailcrmError
    ) -> None:
        logger.warning("automation_action_failed", action=action, email_id=email_id, error=str(error))
        result.failures.append(
            AutomationError(f"{action} failed: {error}", action=action, email_id=email_id)
        )
        result.events.append(
            PipelineEvent("automation", "failed", str(error), {"action": action})
        )

    async def _log_action(self, action: str, email_id: str, details: dict[str, Any]) -> None:
        try:
            await self._store.log_action(
                action_type=action,
                email_id=email_id,
                details=details,
                triggered_by="auto",
            )
        except MailcrmError as e:
            logger.warning("action_log_failed", action=action, email_id=email_id, error=str(e))
