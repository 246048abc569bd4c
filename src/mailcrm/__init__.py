"""CRM-aware email triage: Claude decisions, confidence-gated automation, last-chat backfill."""

__version__ = "0.1.0"
