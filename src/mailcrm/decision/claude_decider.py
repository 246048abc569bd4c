"""Claude decision service using forced tool use.

Turns an email plus its enrichment context into a validated TriageDecision.
Forced tool_choice guarantees structured output; the tool input is then
validated and normalized at this boundary, so nothing downstream ever sees
an out-of-range confidence or an unknown key point.

Error handling strategy:
- Transient errors (429, 5xx, network): Handled by Anthropic SDK (max_retries=3)
- Logical errors (no tool call, missing fields, bad types): App-level retry
  up to 3 attempts
- After that: DecisionServiceError, and the orchestrator records an Error state

Usage:
    from mailcrm.decision.claude_decider import ClaudeDecisionService

    service = ClaudeDecisionService(
        anthropic_client=anthropic.Anthropic(max_retries=3),
        store=db_store,
        config=app_config,
    )
    decision = await service.decide(email, context)
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any, Protocol

import anthropic

from mailcrm.core.errors import DatabaseError, DecisionServiceError
from mailcrm.core.logging import get_logger
from mailcrm.decision.prompts import (
    REQUIRED_FIELDS,
    TOOL_NAME,
    TRIAGE_DECISION_TOOL,
    TRIAGE_LOGIC_PROMPT,
    PromptAssembler,
)
from mailcrm.models import DatabaseSuggestions, KeyPoint, TriageDecision

if TYPE_CHECKING:
    from mailcrm.config_schema import AppConfig
    from mailcrm.db.store import DatabaseStore
    from mailcrm.models import Email, PromptContext

logger = get_logger(__name__)

MAX_DECISION_ATTEMPTS = 3
MIN_CONFIDENCE = 0
MAX_CONFIDENCE = 10


class DecisionService(Protocol):
    """Anything that can turn an email and its context into a decision."""

    async def decide(self, email: Email, context: PromptContext) -> TriageDecision: ...


# ---------------------------------------------------------------------------
# Claude implementation
# ---------------------------------------------------------------------------


class ClaudeDecisionService:
    """Decision service backed by the Anthropic Messages API.

    Attributes:
        _client: Anthropic API client (configured with max_retries=3)
        _store: Database store for the editable prompt and LLM logging
        _config: Application configuration
    """

    def __init__(
        self,
        anthropic_client: anthropic.Anthropic,
        store: DatabaseStore,
        config: AppConfig,
    ):
        self._client = anthropic_client
        self._store = store
        self._config = config
        self._prompt_assembler = PromptAssembler()
        self._system_prompt: str | None = None

    async def refresh_system_prompt(self) -> str:
        """Rebuild the system prompt, picking up any stored triage logic edit.

        An unreadable prompt store falls back to the default triage logic.
        """
        try:
            triage_logic = await self._store.get_prompt(TRIAGE_LOGIC_PROMPT)
        except DatabaseError as e:
            logger.warning("triage_logic_load_failed", error=str(e))
            triage_logic = None
        self._system_prompt = self._prompt_assembler.build_system_prompt(triage_logic)
        return self._system_prompt

    async def decide(self, email: Email, context: PromptContext) -> TriageDecision:
        """Ask Claude for the next action on an email.

        Args:
            email: The email being triaged
            context: Enrichment context (direction, contact, calendar, research)

        Returns:
            Validated TriageDecision with contact and calendar context attached

        Raises:
            DecisionServiceError: After MAX_DECISION_ATTEMPTS logical failures,
                or on a non-retryable API error
        """
        system_prompt = await self.refresh_system_prompt()
        model_name = self._config.models.decision
        messages = [
            {
                "role": "user",
                "content": self._prompt_assembler.build_user_message(email, context),
            }
        ]

        last_error: str | None = None
        attempt = 0
        for attempt in range(1, MAX_DECISION_ATTEMPTS + 1):
            start_time = time.monotonic()

            try:
                # SDK handles transient retries (429, 5xx, connection errors)
                api_response = self._client.messages.create(
                    model=model_name,
                    max_tokens=2048,
                    system=system_prompt,
                    messages=messages,
                    tools=[TRIAGE_DECISION_TOOL],
                    tool_choice={"type": "tool", "name": TOOL_NAME},
                )
            except anthropic.APIError as e:
                duration_ms = int((time.monotonic() - start_time) * 1000)
                last_error = _describe_api_error(e)
                logger.error(
                    "decision_api_error",
                    email_id=email.id,
                    attempt=attempt,
                    error=last_error,
                )
                await self._log_request(
                    model=model_name,
                    messages=messages,
                    response=None,
                    tool_call=None,
                    duration_ms=duration_ms,
                    email_id=email.id,
                    error=last_error,
                )
                # SDK already retried what was retryable
                break

            duration_ms = int((time.monotonic() - start_time) * 1000)
            tool_call = _extract_tool_call(api_response)
            error = (
                "No tool call in response (unexpected with forced tool_choice)"
                if tool_call is None
                else _validate_tool_call(tool_call)
            )

            await self._log_request(
                model=model_name,
                messages=messages,
                response=api_response,
                tool_call=tool_call,
                duration_ms=duration_ms,
                email_id=email.id,
                error=error,
            )

            if error is None and tool_call is not None:
                decision = _build_decision(email.id, tool_call, context)
                logger.info(
                    "decision_received",
                    email_id=email.id,
                    key_point=decision.key_point.value,
                    confidence=decision.confidence,
                    attempt=attempt,
                    duration_ms=duration_ms,
                )
                return decision

            last_error = error
            logger.warning(
                "decision_invalid_response",
                email_id=email.id,
                attempt=attempt,
                error=error,
            )

        raise DecisionServiceError(
            f"Decision failed for email {email.id} after {attempt} attempt(s). "
            f"Last error: {last_error}",
            email_id=email.id,
            attempts=attempt,
        )

    async def _log_request(
        self,
        model: str,
        messages: list[dict[str, Any]],
        response: anthropic.types.Message | None,
        tool_call: dict[str, Any] | None,
        duration_ms: int,
        email_id: str | None = None,
        error: str | None = None,
    ) -> None:
        """Log a decision request to the llm_request_log table."""
        if not self._config.llm_logging.enabled:
            return

        try:
            prompt_data: dict[str, Any] = {"messages": messages}
            if self._config.llm_logging.log_prompts and self._system_prompt:
                prompt_data["system"] = self._system_prompt

            response_data: dict[str, Any] | None = None
            input_tokens: int | None = None
            output_tokens: int | None = None
            if response is not None:
                input_tokens = response.usage.input_tokens
                output_tokens = response.usage.output_tokens
                if self._config.llm_logging.log_responses:
                    response_data = {
                        "id": response.id,
                        "model": response.model,
                        "stop_reason": response.stop_reason,
                        "content": [_content_block_to_dict(b) for b in response.content],
                    }

            await self._store.log_llm_request(
                task_type="triage",
                model=model,
                prompt=prompt_data,
                response=response_data,
                tool_call=tool_call,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                duration_ms=duration_ms,
                email_id=email_id,
                error=error,
            )
        except Exception as e:
            # Logging failures should never block a decision
            logger.warning("llm_log_failed", error=str(e), email_id=email_id)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _describe_api_error(error: anthropic.APIError) -> str:
    if isinstance(error, anthropic.RateLimitError):
        return f"Rate limited after SDK retries: {error}"
    if isinstance(error, anthropic.APIConnectionError):
        return f"API connection error after SDK retries: {error}"
    if isinstance(error, anthropic.APIStatusError):
        return f"API status error {error.status_code}: {error.message}"
    return f"API error: {error}"


def _extract_tool_call(response: anthropic.types.Message) -> dict[str, Any] | None:
    for block in response.content:
        if block.type == "tool_use" and block.name == TOOL_NAME:
            return block.input
    return None


def _validate_tool_call(data: dict[str, Any]) -> str | None:
    """Check the fields a decision cannot be built without.

    An unknown key_point is not an error (it maps to Review), and an
    out-of-range confidence is clamped rather than rejected.

    Returns:
        Error message if invalid, None if valid
    """
    missing = [f for f in REQUIRED_FIELDS if f not in data]
    if missing:
        return f"Missing required fields: {', '.join(missing)}"

    confidence = data["confidence"]
    if isinstance(confidence, bool) or not isinstance(confidence, int | float):
        return f"Invalid confidence: {confidence!r}. Must be a number"

    reason = data["action_reason"]
    if not isinstance(reason, str) or not reason.strip():
        return "Empty action_reason"

    return None


def clamp_confidence(value: float) -> int:
    """Round and clamp a confidence score into [0, 10]."""
    return max(MIN_CONFIDENCE, min(MAX_CONFIDENCE, int(round(value))))


def _optional_text(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _build_decision(
    email_id: str,
    tool_call: dict[str, Any],
    context: PromptContext,
) -> TriageDecision:
    raw_confidence = tool_call["confidence"]
    confidence = clamp_confidence(raw_confidence)
    if confidence != raw_confidence:
        logger.warning(
            "decision_confidence_clamped",
            email_id=email_id,
            raw=raw_confidence,
            clamped=confidence,
        )

    key_point = KeyPoint.parse(tool_call["key_point"])
    if key_point.value != tool_call["key_point"]:
        logger.info(
            "decision_key_point_normalized",
            email_id=email_id,
            raw=tool_call["key_point"],
            key_point=key_point.value,
        )

    alternatives = tool_call.get("alternative_options")
    uncertainty = tool_call.get("uncertainty_factors")
    suggestions = tool_call.get("database_suggestions")
    if not isinstance(suggestions, dict):
        suggestions = {}
    entries = suggestions.get("suggested_entries")

    return TriageDecision(
        email_id=email_id,
        key_point=key_point,
        confidence=confidence,
        action_reason=tool_call["action_reason"].strip(),
        suggested_draft=_optional_text(tool_call.get("suggested_draft")),
        suggested_draft_pushy=_optional_text(tool_call.get("suggested_draft_pushy")),
        suggested_draft_exploratory=_optional_text(tool_call.get("suggested_draft_exploratory")),
        alternative_options=tuple(alternatives) if isinstance(alternatives, list) else (),
        uncertainty_factors=(
            tuple(str(u) for u in uncertainty) if isinstance(uncertainty, list) else ()
        ),
        database_suggestions=DatabaseSuggestions(
            has_business_relevance=bool(suggestions.get("has_business_relevance", False)),
            suggested_entries=tuple(entries) if isinstance(entries, list) else (),
        ),
        contact_context=context.contact,
        calendar_context=context.calendar,
    )


def _content_block_to_dict(block: Any) -> dict[str, Any]:
    if block.type == "text":
        return {"type": "text", "text": block.text}
    if block.type == "tool_use":
        return {"type": "tool_use", "id": block.id, "name": block.name, "input": block.input}
    return {"type": block.type}
