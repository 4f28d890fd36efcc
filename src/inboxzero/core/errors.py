"""Custom exception types for the inbox-zero service.

Error messages follow one pattern:
- What failed (operation and the ids involved)
- Why it failed (the specific condition)
- How to fix it, where there is something the caller can do
"""


class InboxZeroError(Exception):
    """Base exception for all inbox-zero errors."""

    pass


class ConfigValidationError(InboxZeroError):
    """Raised when config.yaml fails Pydantic validation.

    Includes specific field errors with actionable messages.
    """

    pass


class ConfigLoadError(InboxZeroError):
    """Raised when config.yaml cannot be loaded (file not found, YAML parse error)."""

    pass


class AuthenticationError(InboxZeroError):
    """Raised when MSAL cannot produce an access token for a mailbox."""

    pass


class GraphAPIError(InboxZeroError):
    """Raised when Microsoft Graph API returns an error.

    Attributes:
        status_code: HTTP status code from the API
        error_code: Error code from Graph API response (if available)
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_code: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code


class RateLimitExceeded(InboxZeroError):
    """Raised when API rate limits are exceeded and cannot be recovered.

    The token bucket raises this instead of blocking for more than 20 seconds.
    """

    pass


class MailboxActionError(InboxZeroError):
    """Raised inside the mailbox adapter when a remote mailbox action fails.

    Never escapes the adapter: MailboxActions converts it into a failed
    MailboxActionResult so callers only ever log it.

    Attributes:
        action: Mailbox action name ('snooze', 'archive', ...)
        message_id: Remote Graph message ID the action targeted
    """

    def __init__(self, message: str, action: str, message_id: str | None = None):
        super().__init__(message)
        self.action = action
        self.message_id = message_id


class DatabaseError(InboxZeroError):
    """Raised when SQLite operations fail."""

    pass


class NotFoundError(InboxZeroError):
    """Raised when a thread or deferral does not exist or belongs to another user.

    Attributes:
        resource: Kind of record ('thread', 'deferral')
        resource_id: The id that was looked up
    """

    def __init__(self, message: str, resource: str, resource_id: str):
        super().__init__(message)
        self.resource = resource
        self.resource_id = resource_id


class InputValidationError(InboxZeroError):
    """Raised when required input is missing. Always raised before any I/O.

    Attributes:
        fields: Names of the missing or invalid fields
    """

    def __init__(self, message: str, fields: list[str] | None = None):
        super().__init__(message)
        self.fields = fields or []


class DeferralConflictError(InboxZeroError):
    """Raised when a deferral state change would break the one-outstanding rule.

    Covers deferring a thread that already has an unprocessed deferral, and
    cancelling a deferral that was already processed.

    Attributes:
        thread_id: The thread involved
        deferral_id: The existing deferral, if known
    """

    def __init__(
        self,
        message: str,
        thread_id: str | None = None,
        deferral_id: str | None = None,
    ):
        super().__init__(message)
        self.thread_id = thread_id
        self.deferral_id = deferral_id


class ReconciliationError(DatabaseError):
    """Raised when a reconcile sweep fails part-way.

    Partial completion is left in place: replaying the sweep re-applies the
    same unconditional updates.

    Attributes:
        user_id: Owner whose sweep failed (None when the multi-user lookup failed)
        stage: 'select', 'threads' or 'deferrals'
        deferral_ids: Deferrals selected before the failure
    """

    def __init__(
        self,
        message: str,
        user_id: str | None,
        stage: str,
        deferral_ids: list[str] | None = None,
    ):
        super().__init__(message)
        self.user_id = user_id
        self.stage = stage
        self.deferral_ids = deferral_ids or []
