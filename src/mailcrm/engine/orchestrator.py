"""Decision orchestrator: the per-email triage pipeline.

Each email moves through:

    Fetched -> Enriching -> AwaitingDecision -> Decided -> AutomationApplied

with FeedbackRecorded reached later by an explicit user verdict, and Error
when the decision service fails (terminal until the email is triaged again).

The decision is stored twice: once as soon as it is decided, and again
after automation flags are applied, so a reader can briefly see a decision
without its flags. Storage is an upsert keyed by email ID, last write wins.
A storage failure is logged and reported on the outcome; the decision is
still returned.

Batches run strictly one email at a time with a fixed pause between
emails. Nothing here runs on a timer: a pending archive is only
re-evaluated when someone triages the email again.

Usage:
    from mailcrm.engine.orchestrator import DecisionOrchestrator

    orchestrator = DecisionOrchestrator(
        store=db_store,
        mailbox=mailbox,
        enricher=enricher,
        decider=decision_service,
        config=app_config,
    )
    batch = await orchestrator.triage_recent()
    outcome = await orchestrator.record_feedback(email_id, "good", "Spot on")
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from mailcrm.core.errors import DatabaseError, DecisionServiceError
from mailcrm.core.logging import get_logger, run_scope
from mailcrm.core.rate_limiter import FixedIntervalPacer
from mailcrm.engine.policy import AutomationExecutor, AutomationPolicy
from mailcrm.models import PipelineEvent

if TYPE_CHECKING:
    from mailcrm.config_schema import AppConfig
    from mailcrm.core.rate_limiter import Pacer
    from mailcrm.db.store import DatabaseStore
    from mailcrm.decision.claude_decider import DecisionService
    from mailcrm.engine.policy import AutomationPlan
    from mailcrm.enrichment.context import ContextEnricher
    from mailcrm.graph.mailbox import MailTransport
    from mailcrm.models import Email, FeedbackVerdict, TriageDecision

logger = get_logger(__name__)

FEEDBACK_VERDICTS = ("good", "bad")


class TriageState(StrEnum):
    FETCHED = "fetched"
    ENRICHING = "enriching"
    AWAITING_DECISION = "awaiting_decision"
    DECIDED = "decided"
    AUTOMATION_APPLIED = "automation_applied"
    FEEDBACK_RECORDED = "feedback_recorded"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------


@dataclass
class TriageOutcome:
    """Result of triaging (or recording feedback on) one email.

    Attributes:
        email_id: Email the outcome is for
        state: Final pipeline state reached
        decision: Decision with flags applied (None on Error)
        plan: Automation plan that was executed
        events: Structured events from every stage, in order
        persisted: False if any write of the decision failed
        error: Error message when state is ERROR
    """

    email_id: str
    state: TriageState
    decision: TriageDecision | None = None
    plan: AutomationPlan | None = None
    events: list[PipelineEvent] = field(default_factory=list)
    persisted: bool = True
    error: str | None = None

    @property
    def surfaced_drafts(self) -> dict[str, str]:
        return dict(self.plan.surfaced_drafts) if self.plan else {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "email_id": self.email_id,
            "state": self.state.value,
            "decision": self.decision.to_dict() if self.decision else None,
            "plan": self.plan.to_dict() if self.plan else None,
            "surfaced_drafts": self.surfaced_drafts,
            "events": [e.to_dict() for e in self.events],
            "persisted": self.persisted,
            "error": self.error,
        }


@dataclass
class BatchResult:
    """Result of a sequential triage batch."""

    run_id: str
    outcomes: list[TriageOutcome] = field(default_factory=list)
    skipped_ids: list[str] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if o.state == TriageState.ERROR)

    @property
    def processed(self) -> int:
        return len(self.outcomes) - self.failed

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "processed": self.processed,
            "failed": self.failed,
            "skipped": len(self.skipped_ids),
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


def _failed(outcome: TriageOutcome, error: str) -> TriageOutcome:
    outcome.state = TriageState.ERROR
    outcome.error = error
    outcome.events.append(PipelineEvent("decision", "failed", error))
    return outcome


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class DecisionOrchestrator:
    """Drives emails through enrichment, decision, automation and storage.

    Attributes:
        _store: Persistent store for emails, decisions and feedback
        _mailbox: Mail transport (fetching and automation side effects)
        _enricher: Context enrichment
        _decider: Decision service
        _policy: Automation rules
        _executor: Automation side effects
        _pacer: Pause between emails in a batch
        _clock: Returns the current timezone-aware time
    """

    def __init__(
        self,
        store: DatabaseStore,
        mailbox: MailTransport,
        enricher: ContextEnricher,
        decider: DecisionService,
        config: AppConfig,
        policy: AutomationPolicy | None = None,
        executor: AutomationExecutor | None = None,
        pacer: Pacer | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._store = store
        self._mailbox = mailbox
        self._enricher = enricher
        self._decider = decider
        self._config = config
        self._policy = policy or AutomationPolicy()
        self._executor = executor or AutomationExecutor(mailbox, store)
        self._pacer = pacer or FixedIntervalPacer(config.triage.pause_seconds)
        self._clock = clock or (lambda: datetime.now(UTC))

    # -----------------------------------------------------------------------
    # Triage
    # -----------------------------------------------------------------------

    async def triage_email(self, email: Email) -> TriageOutcome:
        """Triage a single email as its own run."""
        with run_scope():
            return await self._triage_one(email)

    async def triage_by_id(self, email_id: str) -> TriageOutcome:
        """Triage a stored email, fetching it from the mailbox if unknown."""
        email = await self._store.get_email(email_id)
        if email is None:
            email = self._mailbox.get_message(email_id)
        return await self.triage_email(email)

    async def triage_batch(self, emails: list[Email], retriage: bool = False) -> BatchResult:
        """Triage emails one at a time, pausing between them.

        Args:
            emails: Emails to triage, in order
            retriage: Also triage emails that already have a decision

        Returns:
            BatchResult with one outcome per triaged email
        """
        with run_scope() as run_id:
            result = BatchResult(run_id=run_id)

            decided: set[str] = set()
            if not retriage:
                try:
                    decided = await self._store.get_decided_ids([e.id for e in emails])
                except DatabaseError as e:
                    logger.warning("decided_lookup_failed", error=str(e))

            pending = [e for e in emails if e.id not in decided]
            result.skipped_ids = [e.id for e in emails if e.id in decided]
            logger.info(
                "triage_batch_started",
                total=len(emails),
                pending=len(pending),
                skipped=len(result.skipped_ids),
            )

            for index, email in enumerate(pending):
                if index > 0:
                    await self._pacer.item_pause()
                result.outcomes.append(await self._triage_one(email))

            logger.info(
                "triage_batch_complete",
                processed=result.processed,
                failed=result.failed,
                skipped=len(result.skipped_ids),
            )
            return result

    async def triage_recent(self, count: int | None = None, retriage: bool = False) -> BatchResult:
        """Fetch the most recent emails and triage them as a batch."""
        emails = self._mailbox.fetch_recent(count or self._config.triage.fetch_count)
        return await self.triage_batch(emails, retriage=retriage)

    async def _triage_one(self, email: Email) -> TriageOutcome:
        outcome = TriageOutcome(email_id=email.id, state=TriageState.FETCHED)

        try:
            await self._store.save_email(email)
        except DatabaseError as e:
            logger.warning("email_save_failed", email_id=email.id, error=str(e))
            outcome.events.append(PipelineEvent("persist", "failed", str(e), {"what": "email"}))

        outcome.state = TriageState.ENRICHING
        enrichment = await self._enricher.enrich(email)
        outcome.events.extend(enrichment.events)

        outcome.state = TriageState.AWAITING_DECISION
        try:
            decision = await self._decider.decide(email, enrichment.context)
        except DecisionServiceError as e:
            logger.error(
                "decision_failed",
                email_id=email.id,
                attempts=e.attempts,
                error=str(e),
            )
            return _failed(outcome, str(e))
        except Exception as e:
            logger.error(
                "decision_unexpected_error",
                email_id=email.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return _failed(outcome, f"{type(e).__name__}: {e}")

        prior = await self._load_prior(email.id)
        if prior is not None:
            # Flags never go back to false, and feedback belongs to the user
            decision = replace(
                decision,
                auto_archived=decision.auto_archived or prior.auto_archived,
                draft_created=decision.draft_created or prior.draft_created,
                feedback=prior.feedback,
                feedback_text=prior.feedback_text,
            )

        outcome.state = TriageState.DECIDED
        outcome.decision = decision
        outcome.events.append(
            PipelineEvent(
                "decision",
                "completed",
                f"{decision.key_point.value} ({decision.confidence}/10)",
                {"key_point": decision.key_point.value, "confidence": decision.confidence},
            )
        )
        outcome.persisted = await self._persist(decision, outcome.events)

        plan = self._policy.evaluate(decision, email, self._clock(), prior=prior)
        execution = await self._executor.execute(plan, decision, email)
        outcome.plan = plan
        outcome.decision = execution.decision
        outcome.events.extend(execution.events)

        outcome.state = TriageState.AUTOMATION_APPLIED
        outcome.persisted = await self._persist(execution.decision, outcome.events) and (
            outcome.persisted
        )

        logger.info(
            "email_triaged",
            email_id=email.id,
            key_point=decision.key_point.value,
            confidence=decision.confidence,
            auto_archived=execution.decision.auto_archived,
            draft_created=execution.decision.draft_created,
            archive_pending=plan.archive_pending,
            failures=len(execution.failures),
        )
        return outcome

    async def _load_prior(self, email_id: str) -> TriageDecision | None:
        try:
            return await self._store.get_decision(email_id)
        except DatabaseError as e:
            logger.warning("prior_decision_lookup_failed", email_id=email_id, error=str(e))
            return None

    async def _persist(self, decision: TriageDecision, events: list[PipelineEvent]) -> bool:
        try:
            await self._store.upsert_decision(decision)
        except DatabaseError as e:
            logger.warning("decision_persist_failed", email_id=decision.email_id, error=str(e))
            events.append(PipelineEvent("persist", "failed", str(e), {"what": "decision"}))
            return False
        events.append(PipelineEvent("persist", "completed", "Decision stored"))
        return True

    # -----------------------------------------------------------------------
    # Feedback
    # -----------------------------------------------------------------------

    async def record_feedback(
        self,
        email_id: str,
        verdict: FeedbackVerdict,
        text: str | None = None,
    ) -> TriageOutcome | None:
        """Record a user's verdict on a stored decision.

        The stored record keeps a snapshot of the source email and of the
        decision as it was judged.

        Args:
            email_id: Email whose decision is judged
            verdict: 'good' or 'bad'
            text: Optional free-text comment

        Returns:
            TriageOutcome in FEEDBACK_RECORDED state, or None if the email
            has no decision

        Raises:
            ValueError: If verdict is not 'good' or 'bad'
            DatabaseError: If the feedback cannot be stored
        """
        if verdict not in FEEDBACK_VERDICTS:
            raise ValueError(f"Invalid verdict '{verdict}'. Must be 'good' or 'bad'")

        decision = await self._store.get_decision(email_id)
        if decision is None:
            return None

        email = await self._store.get_email(email_id)
        text = text.strip() if text and text.strip() else None
        stored = await self._store.record_feedback(
            email_id,
            verdict,
            text,
            source_email=email.to_dict() if email else None,
            original_triage=decision.to_dict(),
        )
        if not stored:
            return None

        try:
            await self._store.log_action(
                action_type="feedback",
                email_id=email_id,
                details={"verdict": verdict},
                triggered_by="user",
            )
        except DatabaseError as e:
            logger.warning("action_log_failed", action="feedback", email_id=email_id, error=str(e))

        logger.info("feedback_recorded", email_id=email_id, verdict=verdict)
        return TriageOutcome(
            email_id=email_id,
            state=TriageState.FEEDBACK_RECORDED,
            decision=replace(decision, feedback=verdict, feedback_text=text),
            events=[PipelineEvent("feedback", "completed", f"Feedback: {verdict}")],
        )
