"""Triage pipeline: automation policy, decision orchestrator and last-chat resolver."""

from mailcrm.engine.orchestrator import BatchResult, DecisionOrchestrator, TriageOutcome, TriageState
from mailcrm.engine.policy import AutomationExecutor, AutomationPlan, AutomationPolicy
from mailcrm.engine.resolver import LastChatResolver, ResolverPassResult, ResolverRunResult

__all__ = [
    "AutomationExecutor",
    "AutomationPlan",
    "AutomationPolicy",
    "BatchResult",
    "DecisionOrchestrator",
    "LastChatResolver",
    "ResolverPassResult",
    "ResolverRunResult",
    "TriageOutcome",
    "TriageState",
]
