"""Thin Microsoft Graph client for the mailbox actions inboxzero mirrors.

One GraphClient acts on one linked mailbox. Requests go through a per-mailbox
token bucket, then through a retry loop: 429 and 5xx responses, timeouts and
dropped connections are retried with jittered backoff (429 honours
Retry-After). Anything else becomes a typed error from core.errors.

Usage:
    client = GraphClient(auth, bucket_name="ms_graph:user-123")
    client.post(f"/me/messages/{message_id}/move", json={"destinationId": "inbox"})
"""

import random
import time
from typing import Any, Protocol

import requests

from inboxzero.core.errors import (
    AuthenticationError,
    GraphAPIError,
    InboxZeroError,
    RateLimitExceeded,
)
from inboxzero.core.logging import get_logger
from inboxzero.core.rate_limiter import get_bucket

logger = get_logger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
REQUEST_TIMEOUT = 30.0

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAYS = [1.0, 2.0, 4.0]

# Graph allows 10,000 requests per 10 minutes per app per mailbox
MS_GRAPH_RATE = 10.0
MS_GRAPH_CAPACITY = 10

_STATUS_HINTS = {
    401: "The mailbox token may have expired; run 'login' for this user again.",
    403: "Check that Mail.ReadWrite is granted to the app registration.",
    404: "The message or folder may have been deleted or moved.",
}


def _jitter(delay: float) -> float:
    return delay * (0.8 + 0.4 * random.random())


def _is_retryable(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


class TokenProvider(Protocol):
    """Hands out a bearer token for one mailbox (GraphAuth in production)."""

    def get_access_token(self) -> str: ...


class GraphClient:
    """Retrying Graph client bound to one mailbox's token provider."""

    def __init__(
        self,
        auth: TokenProvider,
        base_url: str = GRAPH_BASE_URL,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delays: list[float] | None = None,
        bucket_name: str = "ms_graph",
    ):
        self.auth = auth
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.retry_delays = retry_delays or DEFAULT_RETRY_DELAYS
        self.session = requests.Session()
        self._rate_bucket = get_bucket(bucket_name, rate=MS_GRAPH_RATE, capacity=MS_GRAPH_CAPACITY)

    # ------------------------------------------------------------------
    # Request plumbing
    # ------------------------------------------------------------------

    def _url(self, endpoint: str) -> str:
        if endpoint.startswith("https://"):
            return endpoint
        return f"{self.base_url}/{endpoint.lstrip('/')}"

    def _headers(self) -> dict[str, str]:
        try:
            token = self.auth.get_access_token()
        except InboxZeroError:
            raise
        except Exception as e:
            logger.error("graph_token_unavailable", error=str(e))
            raise AuthenticationError(f"Cannot authenticate with Microsoft Graph: {e}") from e

        return {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    def _backoff(self, attempt: int, response: requests.Response | None = None) -> float:
        if response is not None and response.status_code == 429:
            retry_after = response.headers.get("Retry-After", "")
            if retry_after.replace(".", "", 1).isdigit():
                return _jitter(float(retry_after))
        return _jitter(self.retry_delays[min(attempt, len(self.retry_delays) - 1)])

    @staticmethod
    def _error_from_response(response: requests.Response, endpoint: str) -> InboxZeroError:
        status = response.status_code
        if status == 429:
            return RateLimitExceeded(
                f"Graph kept throttling {endpoint} (429, Retry-After "
                f"{response.headers.get('Retry-After', 'unset')})"
            )
        try:
            error = response.json().get("error", {})
        except ValueError:
            error = {}
        code = error.get("code", "unknown")
        message = error.get("message") or response.text or f"HTTP {status}"
        hint = _STATUS_HINTS.get(status, "")
        return GraphAPIError(
            f"Graph API error ({status}) on {endpoint}: {message}. {hint}".rstrip(),
            status_code=status,
            error_code=code,
        )

    def request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Send one Graph request, retrying transient failures.

        Returns:
            Decoded JSON body, or {} when the response has no content

        Raises:
            RateLimitExceeded: When throttling outlasts the retries
            GraphAPIError: On any other error status, or transport failure
            AuthenticationError: When no access token is available
        """
        url = self._url(endpoint)
        transport_error: requests.exceptions.RequestException | None = None

        for attempt in range(self.max_retries + 1):
            last_attempt = attempt == self.max_retries
            self._rate_bucket.consume_sync()
            headers = self._headers()

            try:
                response = self.session.request(
                    method=method,
                    url=url,
                    headers=headers,
                    params=params,
                    json=json,
                    timeout=REQUEST_TIMEOUT,
                )
            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                transport_error = e
                if last_attempt:
                    break
                delay = self._backoff(attempt)
                logger.warning(
                    "graph_transport_retry",
                    method=method,
                    endpoint=endpoint,
                    attempt=attempt + 1,
                    error=type(e).__name__,
                    delay=round(delay, 2),
                )
                time.sleep(delay)
                continue

            status = response.status_code
            if status < 400:
                return response.json() if status != 204 and response.content else {}
            if _is_retryable(status) and not last_attempt:
                delay = self._backoff(attempt, response)
                logger.warning(
                    "graph_status_retry",
                    method=method,
                    endpoint=endpoint,
                    status_code=status,
                    attempt=attempt + 1,
                    delay=round(delay, 2),
                )
                time.sleep(delay)
                continue

            error = self._error_from_response(response, endpoint)
            logger.error(
                "graph_request_failed",
                method=method,
                endpoint=endpoint,
                status_code=status,
                error=str(error)[:200],
            )
            raise error

        if isinstance(transport_error, requests.exceptions.Timeout):
            raise GraphAPIError(
                f"Request to {endpoint} timed out after {self.max_retries} retries"
            ) from transport_error
        raise GraphAPIError(
            f"Could not reach Microsoft Graph for {endpoint}: {transport_error}"
        ) from transport_error

    # ------------------------------------------------------------------
    # Verbs
    # ------------------------------------------------------------------

    def get(self, endpoint: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        return self.request("GET", endpoint, params=params)

    def post(self, endpoint: str, json: dict[str, Any] | None = None) -> dict[str, Any]:
        return self.request("POST", endpoint, json=json)

    def patch(self, endpoint: str, json: dict[str, Any] | None = None) -> dict[str, Any]:
        return self.request("PATCH", endpoint, json=json)

    def get_user_email(self) -> str:
        """Address of the signed-in mailbox, used to confirm a login."""
        me = self.get("/me", params={"$select": "mail,userPrincipalName"})
        address = me.get("mail") or me.get("userPrincipalName")
        if not address:
            raise GraphAPIError("Graph /me returned neither 'mail' nor 'userPrincipalName'")
        return address
