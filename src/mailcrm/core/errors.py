"""Custom exception types for mailcrm.

Error messages follow one convention throughout the package:
- What failed (specific operation or component)
- Why it failed (the specific condition)
- How to fix it (actionable guidance, where there is any)

Only DecisionServiceError is fatal for an email. Enrichment, automation and
persistence failures are logged by the orchestrator and the pipeline continues.
"""


class MailcrmError(Exception):
    """Base exception for all mailcrm errors."""

    pass


class ConfigValidationError(MailcrmError):
    """Raised when config.yaml fails Pydantic validation.

    Includes specific field errors with actionable messages.
    """

    pass


class ConfigLoadError(MailcrmError):
    """Raised when config.yaml cannot be loaded (file not found, YAML parse error)."""

    pass


class AuthenticationError(MailcrmError):
    """Raised when MSAL device code flow fails or tokens cannot be acquired."""

    pass


class GraphAPIError(MailcrmError):
    """Raised when Microsoft Graph API returns an error.

    Attributes:
        status_code: HTTP status code from the API
        error_code: Error code from Graph API response (if available)
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_code: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code


class RateLimitExceeded(MailcrmError):
    """Raised when API rate limits are exceeded and cannot be recovered.

    Attributes:
        retry_after: Provider-reported wait in seconds, if known
    """

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class DecisionServiceError(MailcrmError):
    """Raised when the decision service cannot produce a valid decision.

    Attributes:
        email_id: The message ID that failed triage
        attempts: Number of decision attempts made
    """

    def __init__(self, message: str, email_id: str | None = None, attempts: int = 0):
        super().__init__(message)
        self.email_id = email_id
        self.attempts = attempts


class EnrichmentError(MailcrmError):
    """Raised by an enrichment sub-step (contact, calendar, research).

    Non-fatal: the orchestrator logs it and continues with that part of
    the context left empty.

    Attributes:
        step: Which enrichment step failed
    """

    def __init__(self, message: str, step: str):
        super().__init__(message)
        self.step = step


class AutomationError(MailcrmError):
    """Raised when an automation side effect (archive, draft, activity) fails.

    Attributes:
        action: The automation action that failed
        email_id: The message the action was applied to
    """

    def __init__(self, message: str, action: str, email_id: str | None = None):
        super().__init__(message)
        self.action = action
        self.email_id = email_id


class DatabaseError(MailcrmError):
    """Raised when SQLite operations fail."""

    pass
