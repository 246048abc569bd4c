"""Authentication for Microsoft Graph API (MSAL device code flow)."""

from mailcrm.auth.msal_auth import GraphAuth

__all__ = ["GraphAuth"]
