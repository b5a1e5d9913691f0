from __future__ import annotations

import threading
import time
from typing import Any, Callable, Optional

import requests

from . import log
from .auth import GRAPH_SCOPE, MANAGEMENT_SCOPE, jwt_claims
from .errors import AuthError, error_for_status
from .models import Scope


ARM_BASE = "https://management.azure.com"
GRAPH_BASE = "https://graph.microsoft.com/v1.0"

# operation -> api-version
OPERATIONS = {
    "roleAssignments": "2022-04-01",
    "roleDefinitions": "2022-04-01",
    "roleAssignmentScheduleInstances": "2020-10-01",
    "roleAssignmentScheduleRequests": "2020-10-01",
    "roleEligibilityScheduleInstances": "2020-10-01",
    "roleEligibilityScheduleRequests": "2020-10-01",
    "eligibleChildResources": "2020-10-01",
}

Accept = Callable[[int, Any], bool]


class Backend:
    """
    Thin HTTP layer over ARM and Microsoft Graph.

    Does not retry: callers wrap remote calls in RetryingOperation. Non-2xx
    responses are raised as TransientRemoteError / PermanentRemoteError.
    """

    def __init__(self, credential: Any, *, session: Optional[requests.Session] = None, timeout: int = 60) -> None:
        self._credential = credential
        self._session = session or requests.Session()
        self._timeout = timeout
        self._lock = threading.Lock()
        self._tokens: dict[str, tuple[str, int]] = {}

    def token(self, scope: str) -> str:
        with self._lock:
            cached = self._tokens.get(scope)
            if cached and cached[1] - 60 > time.time():
                return cached[0]
            try:
                tok = self._credential.get_token(scope)
            except AuthError:
                raise
            except Exception as e:
                raise AuthError(f"unable to obtain access token for {scope}: {e}") from e
            self._tokens[scope] = (tok.token, int(tok.expires_on or 0))
            return tok.token

    def principal_id(self) -> str:
        claims = jwt_claims(self.token(MANAGEMENT_SCOPE))
        oid = claims.get("oid") or claims.get("http://schemas.microsoft.com/identity/claims/objectidentifier")
        if not oid:
            raise AuthError("unable to determine the current principal id from the access token")
        return str(oid)

    def send(
        self,
        method: str,
        url: str,
        *,
        token_scope: str = MANAGEMENT_SCOPE,
        params: Optional[dict[str, str]] = None,
        json_body: Any = None,
        headers: Optional[dict[str, str]] = None,
        accept: Optional[Accept] = None,
    ) -> Any:
        hdrs = {"Authorization": f"Bearer {self.token(token_scope)}"}
        if headers:
            hdrs.update(headers)
        log.trace(f"{method} {url} params={params}")
        r = self._session.request(method, url, headers=hdrs, params=params, json=json_body, timeout=self._timeout)
        log.debug(f"{method} {url.split('?')[0]} -> {r.status_code}")
        try:
            body = r.json() if r.content else {}
        except ValueError:
            body = r.text
        log.trace(f"response body: {body!r}"[:2000])

        if accept is not None and accept(r.status_code, body):
            return body
        if r.status_code >= 400:
            raise error_for_status(r.status_code, body, where=f"{method} {url.split('?')[0]}")
        return body

    def arm(
        self,
        method: str,
        operation: str,
        *,
        scope: Optional[Scope] = None,
        extra: str = "",
        query: Optional[dict[str, str]] = None,
        json_body: Any = None,
        accept: Optional[Accept] = None,
    ) -> Any:
        url = f"{ARM_BASE}{scope.value if scope else ''}/providers/Microsoft.Authorization/{operation}{extra}"
        params = {"api-version": OPERATIONS[operation]}
        if query:
            params.update(query)
        return self.send(
            method,
            url,
            params=params,
            json_body=json_body,
            headers={"X-Ms-Command-Name": "Microsoft_Azure_PIMCommon."},
            accept=accept,
        )

    def arm_list(self, operation: str, *, scope: Optional[Scope] = None, query: Optional[dict[str, str]] = None) -> dict[str, Any]:
        """
        GET a collection and follow nextLink, returning {"value": [...]}.
        """
        data = self.arm("GET", operation, scope=scope, query=query)
        out: list[Any] = list((data or {}).get("value") or []) if isinstance(data, dict) else []
        url = data.get("nextLink") if isinstance(data, dict) else None
        while url:
            page = self.send("GET", url, headers={"X-Ms-Command-Name": "Microsoft_Azure_PIMCommon."})
            if not isinstance(page, dict):
                break
            out.extend(page.get("value") or [])
            url = page.get("nextLink")
        return {"value": out}

    def graph(self, method: str, path: str, *, json_body: Any = None, params: Optional[dict[str, str]] = None) -> Any:
        return self.send(method, f"{GRAPH_BASE}{path}", token_scope=GRAPH_SCOPE, json_body=json_body, params=params)
