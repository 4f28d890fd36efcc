"""Per-user MSAL authentication for Microsoft Graph.

Usage:
    from inboxzero.auth import GraphAuth

    auth = GraphAuth(
        client_id="your-client-id",
        tenant_id="common",
        scopes=["Mail.ReadWrite", "User.Read"],
        token_cache_path="data/tokens/user-123.json",
        allow_interactive=False,
    )
    token = auth.get_access_token()
"""

from inboxzero.auth.msal_auth import GraphAuth

__all__ = ["GraphAuth"]
