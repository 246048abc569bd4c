"""Microsoft Graph API HTTP client.

Wraps requests with:
- Bearer tokens from GraphAuth
- Proactive throttling through the shared "ms_graph" token bucket
- Fixed-delay retries for 5xx, timeouts and connection errors
- 429 handling that honours Retry-After by holding the token bucket

Usage:
    from mailcrm.auth.msal_auth import GraphAuth
    from mailcrm.graph.client import GraphClient

    client = GraphClient(GraphAuth(...))
    me = client.get("/me")
"""

import time
from typing import Any

import requests

from mailcrm.auth.msal_auth import GraphAuth
from mailcrm.core.errors import AuthenticationError, GraphAPIError, RateLimitExceeded
from mailcrm.core.logging import get_logger
from mailcrm.core.rate_limiter import TokenBucket, get_bucket

logger = get_logger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY = 2.0  # seconds, fixed between attempts
DEFAULT_RETRY_AFTER = 5.0  # used when a 429 carries no Retry-After header

# Graph allows 10,000 requests per 10 minutes per mailbox; 10 req/sec is safe
MS_GRAPH_RATE = 10.0
MS_GRAPH_CAPACITY = 10


class GraphClient:
    """Microsoft Graph API client with retry logic and error handling.

    Attributes:
        auth: GraphAuth instance for token management
        base_url: Microsoft Graph API base URL
        max_retries: Maximum number of retry attempts
        retry_delay: Fixed delay (seconds) between retries
    """

    def __init__(
        self,
        auth: GraphAuth,
        base_url: str = GRAPH_BASE_URL,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        session: requests.Session | None = None,
        rate_bucket: TokenBucket | None = None,
    ):
        self.auth = auth
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.session = session or requests.Session()
        self._rate_bucket = rate_bucket or get_bucket(
            name="ms_graph",
            rate=MS_GRAPH_RATE,
            capacity=MS_GRAPH_CAPACITY,
        )

    def _get_headers(self) -> dict[str, str]:
        try:
            token = self.auth.get_access_token()
        except AuthenticationError:
            raise
        except Exception as e:
            logger.error("Failed to get access token", error=str(e))
            raise AuthenticationError(
                f"Cannot authenticate with Microsoft Graph: {e}. "
                "Run 'mailcrm validate-config' to check your auth settings."
            ) from e

        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Prefer": 'IdType="ImmutableId"',
        }

    def _make_url(self, endpoint: str) -> str:
        if endpoint.startswith("http"):
            return endpoint  # @odata.nextLink
        if not endpoint.startswith("/"):
            endpoint = "/" + endpoint
        return self.base_url + endpoint

    def _raise_for_response(self, response: requests.Response, method: str, endpoint: str) -> None:
        """Translate an error response into GraphAPIError / RateLimitExceeded."""
        try:
            error_info = response.json().get("error", {})
            error_code = error_info.get("code", "unknown")
            error_message = error_info.get("message", response.text)
        except ValueError:
            error_code = "unknown"
            error_message = response.text or f"HTTP {response.status_code}"

        logger.error(
            "Graph API error",
            method=method,
            endpoint=endpoint,
            status_code=response.status_code,
            error_code=error_code,
            error_message=error_message[:200],
        )

        if response.status_code == 429:
            raise RateLimitExceeded(
                f"Rate limit exceeded (429) on {endpoint} after {self.max_retries} retries.",
                retry_after=_retry_after_seconds(response),
            )
        hints = {
            401: "Your access token may have expired. Clear the token cache and re-authenticate.",
            403: "Check that Mail.ReadWrite and Calendars.Read are granted in Azure Portal.",
            404: f"The endpoint '{endpoint}' may be incorrect or the resource doesn't exist.",
        }
        hint = hints.get(response.status_code, "")
        raise GraphAPIError(
            f"Graph API error ({response.status_code}): {error_message}. {hint}".strip(),
            status_code=response.status_code,
            error_code=error_code,
        )

    def request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        timeout: float = 30.0,
        extra_headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Make an HTTP request to the Graph API with retry logic.

        Returns:
            Parsed JSON response ({} for 204 No Content)

        Raises:
            GraphAPIError: For API errors (4xx, 5xx) or network failure
            RateLimitExceeded: When 429s persist through all retries
            AuthenticationError: When authentication fails
        """
        url = self._make_url(endpoint)
        last_response: requests.Response | None = None

        for attempt in range(self.max_retries + 1):
            self._rate_bucket.consume_sync()
            headers = self._get_headers()
            if extra_headers:
                headers.update(extra_headers)

            try:
                response = self.session.request(
                    method=method,
                    url=url,
                    headers=headers,
                    params=params,
                    json=json,
                    timeout=timeout,
                )
            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                if attempt < self.max_retries:
                    logger.warning(
                        "Graph API request failed, retrying",
                        method=method,
                        endpoint=endpoint,
                        attempt=attempt + 1,
                        error=type(e).__name__,
                        delay=self.retry_delay,
                    )
                    time.sleep(self.retry_delay)
                    continue
                raise GraphAPIError(
                    f"Request to {endpoint} failed after {self.max_retries} retries: {e}. "
                    "Check your internet connection and try again.",
                    status_code=None,
                ) from e

            last_response = response
            if response.status_code < 400:
                if response.status_code in (202, 204) or not response.content:
                    return {}
                return response.json()

            if attempt >= self.max_retries:
                break

            if response.status_code == 429:
                # The bucket blocks the next consume_sync() until the hold passes.
                wait = _retry_after_seconds(response) or DEFAULT_RETRY_AFTER
                self._rate_bucket.apply_retry_after(wait)
                logger.warning(
                    "Graph API throttled, holding requests",
                    endpoint=endpoint,
                    retry_after=wait,
                    attempt=attempt + 1,
                )
                continue

            if 500 <= response.status_code < 600:
                logger.warning(
                    "Retrying Graph API request",
                    method=method,
                    endpoint=endpoint,
                    status_code=response.status_code,
                    attempt=attempt + 1,
                    delay=self.retry_delay,
                )
                time.sleep(self.retry_delay)
                continue

            break

        if last_response is None:
            raise GraphAPIError(f"Request to {endpoint} failed", status_code=None)
        self._raise_for_response(last_response, method, endpoint)
        return {}

    def get(self, endpoint: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        return self.request("GET", endpoint, params=params)

    def post(
        self,
        endpoint: str,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        return self.request("POST", endpoint, params=params, json=json)

    def get_user_email(self) -> str:
        """Get the signed-in user's email address.

        Raises:
            GraphAPIError: If the request fails or no address is present
        """
        user_info = self.get("/me", params={"$select": "mail,userPrincipalName"})
        email = user_info.get("mail") or user_info.get("userPrincipalName")
        if not email:
            raise GraphAPIError(
                "Could not determine user email from /me. Check User.Read permission is granted.",
                status_code=None,
            )
        return email

    def paginate(
        self,
        endpoint: str,
        params: dict[str, Any] | None = None,
        max_items: int | None = None,
        extra_headers: dict[str, str] | None = None,
    ) -> list[dict[str, Any]]:
        """Follow @odata.nextLink until exhausted or max_items collected."""
        items: list[dict[str, Any]] = []
        next_url: str | None = endpoint
        next_params = params
        while next_url:
            page = self.request("GET", next_url, params=next_params, extra_headers=extra_headers)
            items.extend(page.get("value", []))
            if max_items is not None and len(items) >= max_items:
                return items[:max_items]
            next_url = page.get("@odata.nextLink")
            next_params = None  # nextLink already carries the query
        return items


def _retry_after_seconds(response: requests.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None
