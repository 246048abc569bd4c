"""Errors, logging and rate limiting shared by every layer."""
