"""Per-mailbox MSAL token provider.

Every linked account owns one serialized MSAL cache file. ``inboxzero login``
fills it through the device code flow; the API server and the sweep then only
ever refresh silently (``allow_interactive=False``), so a revoked or missing
cache surfaces as AuthenticationError instead of a prompt nobody can answer.
"""

import os
import random
import stat
import time
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import msal
import requests
from rich.console import Console
from rich.panel import Panel

from inboxzero.core.errors import AuthenticationError
from inboxzero.core.logging import get_logger

logger = get_logger(__name__)
console = Console()

T = TypeVar("T")

NETWORK_RETRY_DELAYS = [1.0, 2.0, 4.0]

_DEVICE_FLOW_ERRORS = {
    "authorization_pending": "Sign-in was not completed in time. Run login again.",
    "authorization_declined": "Sign-in was declined. Run login again and accept the permissions.",
    "expired_token": "The device code expired. Run login again.",
}


def _with_network_retry(call: Callable[[], T], what: str) -> T:
    """Run an MSAL call, retrying requests-level network failures.

    Raises:
        AuthenticationError: If every attempt failed on the network
    """
    for attempt, delay in enumerate(NETWORK_RETRY_DELAYS, start=1):
        try:
            return call()
        except requests.exceptions.RequestException as e:
            if attempt == len(NETWORK_RETRY_DELAYS):
                raise AuthenticationError(f"{what} failed after {attempt} attempts: {e}") from e
            wait = delay * (0.8 + 0.4 * random.random())
            logger.warning("msal_network_retry", step=what, attempt=attempt, delay=round(wait, 2))
            time.sleep(wait)


class GraphAuth:
    """Token provider for one mailbox, backed by one cache file.

    Attributes:
        scopes: Graph permission scopes requested for the mailbox
        token_cache_path: This account's cache file (kept at mode 600)
        allow_interactive: Whether a device code flow may be started
    """

    def __init__(
        self,
        client_id: str,
        tenant_id: str,
        scopes: list[str],
        token_cache_path: str | Path,
        allow_interactive: bool = True,
    ):
        if not client_id or not client_id.strip():
            raise ValueError(
                "client_id is required: set auth.client_id to the Application (client) ID "
                "of an Entra ID app registration with public client flows enabled"
            )

        self.scopes = scopes
        self.token_cache_path = Path(token_cache_path)
        self.allow_interactive = allow_interactive
        self.cache = msal.SerializableTokenCache()
        self._read_cache_file()
        self.app = msal.PublicClientApplication(
            client_id=client_id,
            authority=f"https://login.microsoftonline.com/{tenant_id}",
            token_cache=self.cache,
        )

    def has_cached_account(self) -> bool:
        return bool(self.app.get_accounts())

    def get_access_token(self) -> str:
        """Return a Graph access token for this mailbox.

        Raises:
            AuthenticationError: If silent refresh fails and prompting is not allowed,
                or the device code flow fails
        """
        token = self._silent_token()
        if token is not None:
            return token

        if not self.allow_interactive:
            raise AuthenticationError(
                f"Mailbox is not linked (no usable token in {self.token_cache_path}); "
                "run 'inboxzero login --user <user_id>'"
            )
        return self._device_code_token()

    def clear_cache(self) -> None:
        """Forget every account and remove the cache file."""
        for account in self.app.get_accounts():
            self.app.remove_account(account)
        try:
            self.token_cache_path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("token_cache_delete_failed", path=str(self.token_cache_path), error=str(e))

    def _silent_token(self) -> str | None:
        accounts = self.app.get_accounts()
        if not accounts:
            return None
        try:
            result = _with_network_retry(
                lambda: self.app.acquire_token_silent(scopes=self.scopes, account=accounts[0]),
                "silent token refresh",
            )
        except AuthenticationError as e:
            logger.error("silent_token_failed", error=str(e))
            return None

        if result and "access_token" in result:
            self._write_cache_file()
            return result["access_token"]
        if result:
            logger.info("silent_token_rejected", error=result.get("error"))
        return None

    def _device_code_token(self) -> str:
        flow = _with_network_retry(
            lambda: self.app.initiate_device_flow(scopes=self.scopes), "device flow start"
        )
        if "user_code" not in flow:
            raise AuthenticationError(
                f"Could not start device code flow: {flow.get('error_description', flow)}. "
                "Is 'Allow public client flows' enabled on the app registration?"
            )

        console.print(
            Panel(
                f"Open [bold blue]{flow['verification_uri']}[/bold blue] and enter "
                f"[bold green]{flow['user_code']}[/bold green] to link this mailbox.",
                title="Link mailbox",
                border_style="bright_blue",
            )
        )

        result = _with_network_retry(
            lambda: self.app.acquire_token_by_device_flow(flow), "device flow sign-in"
        )
        if "access_token" not in result:
            error = result.get("error", "unknown_error")
            raise AuthenticationError(
                _DEVICE_FLOW_ERRORS.get(error, f"Sign-in failed: {result.get('error_description', error)}")
            )

        self._write_cache_file()
        logger.info(
            "mailbox_linked",
            username=result.get("id_token_claims", {}).get("preferred_username", "unknown"),
        )
        return result["access_token"]

    def _read_cache_file(self) -> None:
        if not self.token_cache_path.exists():
            return
        try:
            self.cache.deserialize(self.token_cache_path.read_text())
        except (OSError, ValueError) as e:
            # Treated as unlinked; login rewrites it
            logger.warning("token_cache_unreadable", path=str(self.token_cache_path), error=str(e))

    def _write_cache_file(self) -> None:
        if not self.cache.has_state_changed:
            return
        try:
            self.token_cache_path.parent.mkdir(parents=True, exist_ok=True)
            self.token_cache_path.write_text(self.cache.serialize())
            os.chmod(self.token_cache_path, stat.S_IRUSR | stat.S_IWUSR)
        except OSError as e:
            logger.error("token_cache_write_failed", path=str(self.token_cache_path), error=str(e))
