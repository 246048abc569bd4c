"""Mail content helpers."""

from mailcrm.mail.body import prepare_body

__all__ = ["prepare_body"]
