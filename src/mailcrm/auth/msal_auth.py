"""MSAL device code flow authentication for Microsoft Graph API.

Tokens are cached on disk (mode 600) and refreshed silently; the device
code prompt is only shown when no cached account can be refreshed.

Usage:
    from mailcrm.auth.msal_auth import GraphAuth

    auth = GraphAuth(
        client_id=config.auth.client_id,
        tenant_id=config.auth.tenant_id,
        scopes=config.auth.scopes,
        token_cache_path=config.auth.token_cache_path,
    )
    token = auth.get_access_token()
"""

import os
import random
import stat
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import msal
import requests
from rich.console import Console
from rich.panel import Panel

from mailcrm.core.errors import AuthenticationError
from mailcrm.core.logging import get_logger

logger = get_logger(__name__)
console = Console()

MSAL_MAX_RETRIES = 3
MSAL_RETRY_DELAYS = [1.0, 2.0, 4.0]


class GraphAuth:
    """Microsoft Graph authentication via MSAL device code flow.

    Attributes:
        client_id: Azure AD Application (client) ID
        tenant_id: Azure AD Directory (tenant) ID or 'common'
        scopes: Microsoft Graph API permission scopes
        token_cache_path: Path to the token cache file
    """

    def __init__(
        self,
        client_id: str,
        tenant_id: str,
        scopes: list[str],
        token_cache_path: str,
    ):
        if not client_id or not client_id.strip():
            raise AuthenticationError(
                "client_id is required. Register an app in Azure Portal "
                "(Microsoft Entra ID -> App registrations) and set auth.client_id."
            )

        self.client_id = client_id
        self.tenant_id = tenant_id
        self.scopes = list(scopes)
        self.token_cache_path = Path(token_cache_path)
        self.cache = msal.SerializableTokenCache()
        self._load_cache()

        self.app = msal.PublicClientApplication(
            client_id=self.client_id,
            authority=f"https://login.microsoftonline.com/{tenant_id}",
            token_cache=self.cache,
        )

    def get_access_token(self) -> str:
        """Get a valid access token, refreshing or re-authenticating as needed.

        Raises:
            AuthenticationError: If authentication fails
        """
        accounts = self.app.get_accounts()
        if accounts:
            result = self._with_retry(
                "silent_token_acquisition",
                lambda: self.app.acquire_token_silent(scopes=self.scopes, account=accounts[0]),
                default=None,
            )
            if result and "access_token" in result:
                self._save_cache()
                return result["access_token"]
            logger.debug(
                "Silent acquisition failed",
                error=(result or {}).get("error"),
            )

        logger.info("Initiating device code flow authentication")
        return self._device_code_flow()

    def _device_code_flow(self) -> str:
        flow = self._with_retry(
            "device_flow_initiation",
            lambda: self.app.initiate_device_flow(scopes=self.scopes),
        )
        if "user_code" not in flow:
            raise AuthenticationError(
                f"Failed to initiate device code flow: {flow.get('error_description')}. "
                "Enable 'Allow public client flows' on the app registration."
            )

        console.print(
            Panel(
                f"Open [bold blue]{flow['verification_uri']}[/bold blue] and enter "
                f"[bold green]{flow['user_code']}[/bold green]\n\nWaiting for authentication...",
                title="Microsoft Authentication Required",
                border_style="bright_blue",
            )
        )

        result = self._with_retry(
            "device_flow_token",
            lambda: self.app.acquire_token_by_device_flow(flow),
        )
        if "access_token" not in result:
            error = result.get("error", "unknown_error")
            logger.error("Device code flow authentication failed", error=error)
            raise AuthenticationError(
                f"Authentication failed ({error}): {result.get('error_description', '')}"
            )

        self._save_cache()
        logger.info(
            "Authentication successful",
            username=result.get("id_token_claims", {}).get("preferred_username", "unknown"),
        )
        return result["access_token"]

    def _with_retry(
        self,
        operation: str,
        call: Callable[[], Any],
        default: Any = ...,
    ) -> Any:
        """Run an MSAL call, retrying transient network errors with jitter.

        If all attempts fail, returns ``default`` when given, otherwise
        raises AuthenticationError.
        """
        last_error: Exception | None = None
        for attempt in range(MSAL_MAX_RETRIES):
            try:
                return call()
            except requests.exceptions.RequestException as e:
                last_error = e
                if attempt < MSAL_MAX_RETRIES - 1:
                    delay = MSAL_RETRY_DELAYS[attempt]
                    delay += delay * 0.2 * (2 * random.random() - 1)
                    logger.warning(
                        "msal_request_retry",
                        operation=operation,
                        attempt=attempt + 1,
                        delay=delay,
                        error=str(e),
                    )
                    time.sleep(delay)

        if default is not ...:
            return default
        raise AuthenticationError(
            f"{operation} failed after {MSAL_MAX_RETRIES} attempts: {last_error}. "
            "Check your network connection and try again."
        ) from last_error

    def _load_cache(self) -> None:
        if not self.token_cache_path.exists():
            return
        try:
            self.cache.deserialize(self.token_cache_path.read_text())
        except (OSError, ValueError) as e:
            logger.warning(
                "Failed to load token cache, will re-authenticate",
                path=str(self.token_cache_path),
                error=str(e),
            )

    def _save_cache(self) -> None:
        """Persist the token cache with owner-only permissions."""
        if not self.cache.has_state_changed:
            return
        try:
            self.token_cache_path.parent.mkdir(parents=True, exist_ok=True)
            self.token_cache_path.write_text(self.cache.serialize())
            os.chmod(self.token_cache_path, stat.S_IRUSR | stat.S_IWUSR)
        except OSError as e:
            # The token is still valid for this process; it just won't survive a restart.
            logger.error(
                "Failed to save token cache",
                path=str(self.token_cache_path),
                error=str(e),
            )
