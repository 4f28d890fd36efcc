"""Pydantic configuration schema for the inbox-zero service.

Mirrors the config.yaml structure. Validated on startup and on hot-reload.

Usage:
    from inboxzero.config_schema import AppConfig

    config = AppConfig(**yaml_data)
"""

from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

# Current schema version - increment when adding new required fields
CURRENT_SCHEMA_VERSION = 1


def _reject_traversal(value: str, label: str) -> str:
    if not value or not value.strip():
        raise ValueError(f"{label} cannot be empty")
    if ".." in value:
        raise ValueError(f"{label} cannot contain '..' (path traversal)")
    return value


class AuthConfig(BaseModel):
    """Azure AD application used for every mailbox account."""

    client_id: str = Field(description="Azure AD Application (client) ID")
    tenant_id: str = Field(
        default="common",
        description="Azure AD Directory (tenant) ID or 'common' for personal accounts",
    )
    scopes: list[str] = Field(
        default=["Mail.ReadWrite", "User.Read"],
        description="Microsoft Graph API permission scopes",
    )
    token_cache_dir: str = Field(
        default="data/tokens",
        description="Directory holding one MSAL token cache file per user",
    )

    @field_validator("token_cache_dir")
    @classmethod
    def validate_token_cache_dir(cls, v: str) -> str:
        return _reject_traversal(v, "Token cache directory")


class DatabaseConfig(BaseModel):
    """SQLite database location."""

    path: str = Field(default="data/inboxzero.db", description="Path to the SQLite file")

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        return _reject_traversal(v, "Database path")


class DeferralConfig(BaseModel):
    """Deferral sweep and mailbox mirroring settings."""

    sweep_enabled: bool = Field(
        default=True,
        description="Run the reconcile sweep in the background while serving",
    )
    sweep_interval_minutes: int = Field(
        default=5,
        ge=1,
        le=1440,
        description="How often the background sweep returns due threads to the inbox",
    )
    snoozed_folder: str = Field(
        default="Snoozed",
        description="Mailbox folder path deferred messages are moved to (e.g. 'Later/Snoozed')",
    )
    inbox_page_size: int = Field(
        default=50,
        ge=1,
        le=500,
        description="Maximum threads returned by the inbox listing",
    )

    @field_validator("snoozed_folder")
    @classmethod
    def validate_snoozed_folder(cls, v: str) -> str:
        v = v.strip().strip("/")
        if not v:
            raise ValueError("Snoozed folder cannot be empty")
        return v


class AccountConfig(BaseModel):
    """Mailbox account linked to an application user."""

    user_id: str = Field(description="Application user id (as forwarded by the auth proxy)")
    email: str | None = Field(default=None, description="Mailbox address, for display only")
    token_cache_path: str | None = Field(
        default=None,
        description="Override the per-user token cache file (default: <token_cache_dir>/<user_id>.json)",
    )

    @field_validator("user_id")
    @classmethod
    def validate_user_id(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("user_id cannot be empty")
        if "/" in v or "\\" in v or ".." in v:
            raise ValueError("user_id cannot contain path separators or '..'")
        return v

    @field_validator("token_cache_path")
    @classmethod
    def validate_token_cache_path(cls, v: str | None) -> str | None:
        if v is None:
            return v
        return _reject_traversal(v, "Token cache path")


class LoggingConfig(BaseModel):
    """Log output settings for the server."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    json_output: bool = Field(default=True, description="JSON lines (False: console renderer)")


class AppConfig(BaseModel):
    """Root configuration schema.

    If validation fails on startup, the application exits with a clear error.
    If validation fails on hot-reload, the previous valid config is kept.
    """

    schema_version: int = Field(
        default=CURRENT_SCHEMA_VERSION,
        ge=1,
        description="Config schema version for migration tracking",
    )

    auth: AuthConfig
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    deferral: DeferralConfig = Field(default_factory=DeferralConfig)
    accounts: list[AccountConfig] = Field(
        default_factory=list,
        description="Users with a linked Outlook mailbox; others are tracked database-only",
    )
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def validate_unique_accounts(self) -> "AppConfig":
        seen: set[str] = set()
        for account in self.accounts:
            if account.user_id in seen:
                raise ValueError(f"Duplicate account for user_id '{account.user_id}'")
            seen.add(account.user_id)
        return self

    def get_account(self, user_id: str) -> AccountConfig | None:
        """Return the mailbox account configured for ``user_id``, if any."""
        for account in self.accounts:
            if account.user_id == user_id:
                return account
        return None
