"""Pydantic configuration schema for mailcrm.

This module defines the configuration schema that mirrors config.yaml structure.
Every model is frozen: configuration is loaded once and passed explicitly
into constructors, never mutated at runtime.

Usage:
    from mailcrm.config_schema import AppConfig

    # Validate a config dict
    config = AppConfig(**yaml_data)
"""

from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Current schema version - increment when adding new required fields
CURRENT_SCHEMA_VERSION = 1

DEFAULT_SCHEDULING_KEYWORDS = ["meeting", "schedule", "calendar"]


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class AuthConfig(_Frozen):
    """Azure AD authentication configuration."""

    client_id: str = Field(description="Azure AD Application (client) ID")
    tenant_id: str = Field(
        default="common",
        description="Azure AD Directory (tenant) ID or 'common' for personal accounts",
    )
    scopes: list[str] = Field(
        default=[
            "Mail.ReadWrite",
            "Calendars.Read",
            "User.Read",
        ],
        description="Microsoft Graph API permission scopes",
    )
    token_cache_path: str = Field(
        default="data/token_cache.json",
        description="Path to MSAL token cache file",
    )

    @field_validator("token_cache_path")
    @classmethod
    def validate_token_cache_path(cls, v: str) -> str:
        """Ensure token cache path doesn't contain path traversal."""
        if not v or not v.strip():
            raise ValueError("Token cache path cannot be empty")
        if ".." in v:
            raise ValueError("Token cache path cannot contain '..' (path traversal)")
        return v


class ModelsConfig(_Frozen):
    """Claude model selection per task type."""

    decision: str = Field(
        default="claude-sonnet-4-5-20250929",
        description="Model for triage decisions",
    )
    research: str = Field(
        default="claude-haiku-4-5-20251001",
        description="Model for company research",
    )


class TriageConfig(_Frozen):
    """Decision orchestrator configuration."""

    fetch_count: int = Field(
        default=20,
        ge=1,
        le=100,
        description="How many recent emails a batch triage fetches",
    )
    pause_seconds: float = Field(
        default=1.0,
        ge=0.0,
        le=60.0,
        description="Fixed pause between emails in a batch run",
    )
    body_max_length: int = Field(
        default=4000,
        ge=200,
        le=50000,
        description="Maximum email body length sent to the decision service",
    )
    scheduling_keywords: list[str] = Field(
        default=DEFAULT_SCHEDULING_KEYWORDS,
        description="Words in subject/body that trigger calendar enrichment",
    )

    @field_validator("scheduling_keywords")
    @classmethod
    def normalize_keywords(cls, v: list[str]) -> list[str]:
        """Lower-case keywords and drop blanks."""
        keywords = [k.strip().lower() for k in v if k and k.strip()]
        if not keywords:
            raise ValueError("At least one scheduling keyword is required")
        return keywords


class CalendarConfig(_Frozen):
    """Calendar slot generation configuration."""

    lookahead_days: int = Field(
        default=7,
        ge=1,
        le=60,
        description="Days of busy intervals fetched for slot generation",
    )


class ResolverConfig(_Frozen):
    """Batch correspondence resolver pacing."""

    batch_size: int = Field(default=5, ge=1, le=100, description="Contacts per batch")
    stagger_ms: int = Field(
        default=200,
        ge=0,
        le=10000,
        description="Pause before each contact lookup within a batch",
    )
    batch_pause_ms: int = Field(
        default=2000,
        ge=0,
        le=60000,
        description="Pause between batches",
    )


class ResearchConfig(_Frozen):
    """Company research enrichment."""

    enabled: bool = Field(default=True, description="Research non-consumer sender domains")
    max_searches: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Web searches allowed per research request",
    )


class LLMLoggingConfig(_Frozen):
    """LLM request logging configuration."""

    enabled: bool = Field(default=True, description="Enable LLM request logging")
    log_prompts: bool = Field(default=True, description="Include system prompts in logs")
    log_responses: bool = Field(default=True, description="Include full responses in logs")


class DatabaseConfig(_Frozen):
    """SQLite store location."""

    path: str = Field(default="data/mailcrm.db", description="Path to the SQLite database")


class AppConfig(_Frozen):
    """Root configuration model for mailcrm.

    Mirrors the structure of config.yaml. All sections except auth have
    defaults so a minimal config only needs the auth section.
    """

    schema_version: int = Field(
        default=CURRENT_SCHEMA_VERSION,
        description="Config schema version for migration support",
    )
    auth: AuthConfig
    timezone: str = Field(
        default="UTC",
        description="IANA timezone for calendar slots and timestamps",
    )
    self_addresses: list[str] = Field(
        default_factory=list,
        description="Addresses (or fragments) that identify mail sent by the user",
    )
    models: ModelsConfig = Field(default_factory=ModelsConfig)
    triage: TriageConfig = Field(default_factory=TriageConfig)
    calendar: CalendarConfig = Field(default_factory=CalendarConfig)
    resolver: ResolverConfig = Field(default_factory=ResolverConfig)
    research: ResearchConfig = Field(default_factory=ResearchConfig)
    llm_logging: LLMLoggingConfig = Field(default_factory=LLMLoggingConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        """Ensure the timezone is a known IANA name."""
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone '{v}'. Use an IANA name like 'Europe/London'") from e
        return v

    @field_validator("self_addresses")
    @classmethod
    def normalize_self_addresses(cls, v: list[str]) -> list[str]:
        """Lower-case and de-duplicate self addresses."""
        seen: list[str] = []
        for addr in v:
            addr = addr.strip().lower()
            if addr and addr not in seen:
                seen.append(addr)
        return seen
