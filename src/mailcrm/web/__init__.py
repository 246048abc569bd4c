"""JSON API for manual triage triggers."""
