"""Decision service: email + context -> TriageDecision via Claude tool use."""

from mailcrm.decision.claude_decider import ClaudeDecisionService, DecisionService
from mailcrm.decision.prompts import TRIAGE_DECISION_TOOL, PromptAssembler

__all__ = [
    "ClaudeDecisionService",
    "DecisionService",
    "PromptAssembler",
    "TRIAGE_DECISION_TOOL",
]
