from __future__ import annotations

import base64
import json
import os
import time
from typing import Any, Optional

import msal
from azure.core.credentials import AccessToken
from azure.identity import ClientSecretCredential, DeviceCodeCredential

from . import log
from .errors import AuthError


AZURE_PUBLIC_CLIENT_ID = "04b07795-8ddb-461a-bbee-02f9e1bf7b46"  # Azure CLI app id
MANAGEMENT_SCOPE = "https://management.azure.com/.default"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"
AUTH_METHODS = ("auto", "client-secret", "device-code", "az-cache")


class AzureCliTokenCacheCredential:
    """
    Reuse an `az login` session by reading the Azure CLI MSAL token cache
    (~/.azure/msal_token_cache.json) without shelling out to `az`.
    """

    def __init__(
        self,
        *,
        cache_path: Optional[str] = None,
        client_id: str = AZURE_PUBLIC_CLIENT_ID,
        authority: str = "https://login.microsoftonline.com/organizations",
    ) -> None:
        self._cache_path = cache_path or os.path.expanduser("~/.azure/msal_token_cache.json")
        self._client_id = client_id
        self._authority = authority
        self._cache = msal.SerializableTokenCache()
        self._app: Optional[msal.PublicClientApplication] = None
        if not os.path.exists(self._cache_path):
            raise AuthError(f"Azure CLI token cache not found at {self._cache_path}")

    def _load(self) -> msal.PublicClientApplication:
        if self._app is None:
            with open(self._cache_path, "r", encoding="utf-8") as f:
                self._cache.deserialize(f.read())
            self._app = msal.PublicClientApplication(
                client_id=self._client_id,
                authority=self._authority,
                token_cache=self._cache,
            )
        return self._app

    def get_token(self, *scopes: str, **kwargs: Any) -> AccessToken:
        app = self._load()
        accounts = app.get_accounts()
        if not accounts:
            raise AuthError("No accounts found in Azure CLI token cache. Run `az login` or use another auth method.")
        result = app.acquire_token_silent(list(scopes), account=accounts[0])
        if not result or "access_token" not in result:
            raise AuthError(f"Failed to acquire token silently from Azure CLI cache: {result}")
        return AccessToken(result["access_token"], int(time.time()) + int(result.get("expires_in") or 300))


def jwt_claims(token: str) -> dict[str, Any]:
    """
    Decode JWT claims WITHOUT verifying the signature. Only used to read the
    caller's oid/exp from tokens we were just handed.
    """
    try:
        parts = token.split(".")
        if len(parts) < 2:
            return {}
        payload = parts[1]
        payload += "=" * (-len(payload) % 4)
        obj = json.loads(base64.urlsafe_b64decode(payload).decode("utf-8", errors="ignore"))
        return obj if isinstance(obj, dict) else {}
    except (ValueError, UnicodeDecodeError):
        return {}


class StaticTokenCredential:
    def __init__(self, *, arm_token: str, graph_token: Optional[str] = None) -> None:
        self._arm_token = (arm_token or "").strip()
        self._graph_token = (graph_token or "").strip() or None

    def get_token(self, *scopes: str, **kwargs: Any) -> AccessToken:
        if any("graph.microsoft.com" in s for s in scopes):
            if not self._graph_token:
                raise AuthError("A Graph token is required for principal lookups. Provide --graph-token.")
            token = self._graph_token
        else:
            token = self._arm_token
        exp = jwt_claims(token).get("exp")
        return AccessToken(token, int(exp) if exp else int(time.time()) + 300)


def build_credential(args) -> Any:
    # Never shells out to the `az` CLI.
    auth_method = (getattr(args, "auth_method", None) or "auto").strip().lower()
    if auth_method not in AUTH_METHODS:
        raise AuthError(f"Invalid --auth-method. Use one of: {', '.join(AUTH_METHODS)}")

    if getattr(args, "arm_token", None):
        return StaticTokenCredential(arm_token=args.arm_token, graph_token=getattr(args, "graph_token", None))

    tenant_id = getattr(args, "tenant_id", None) or os.getenv("AZURE_TENANT_ID")
    client_id = getattr(args, "client_id", None) or os.getenv("AZURE_CLIENT_ID")
    client_secret = getattr(args, "client_secret", None) or os.getenv("AZURE_CLIENT_SECRET")
    if auth_method in ("auto", "client-secret") and tenant_id and client_id and client_secret:
        return ClientSecretCredential(tenant_id=tenant_id, client_id=client_id, client_secret=client_secret)
    if auth_method == "client-secret":
        raise AuthError("client-secret auth selected but missing --tenant-id/--client-id/--client-secret (or env vars).")

    if auth_method in ("auto", "az-cache") and not getattr(args, "no_az_token_cache", False):
        try:
            return AzureCliTokenCacheCredential()
        except AuthError as e:
            if auth_method == "az-cache":
                raise
            log.debug(f"az token cache unavailable: {e}")

    def prompt_callback(verification_uri: str, user_code: str, expires_on: Any) -> None:
        log.info(f"To sign in, open {verification_uri} and enter the code {user_code}")

    return DeviceCodeCredential(
        tenant_id=tenant_id or "organizations",
        client_id=AZURE_PUBLIC_CLIENT_ID,
        prompt_callback=prompt_callback,
    )
