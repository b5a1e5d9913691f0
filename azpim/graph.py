from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Union

from . import log
from .backend import Backend
from .errors import DirectoryLookupError
from .models import Principal, object_type_from_odata
from .retry import RetryingOperation


CHUNK_SIZE = 50


@dataclass(frozen=True)
class Found:
    principal: Principal


@dataclass(frozen=True)
class NotFound:
    principal_id: str


Lookup = Union[Found, NotFound]


def _principal(d: dict[str, Any]) -> Optional[Principal]:
    pid = d.get("id")
    if not isinstance(pid, str) or not pid:
        return None
    return Principal(
        id=pid,
        display_name=d.get("displayName") or "",
        upn=d.get("userPrincipalName"),
        object_type=object_type_from_odata(d.get("@odata.type")),
    )


class GraphClient:
    """
    Identity directory backed by Microsoft Graph `directoryObjects/getByIds`.

    Ids missing from a successful response are reported as NotFound. A failed
    request is never read as "not found": every id of that chunk maps to a
    DirectoryLookupError instead.
    """

    def __init__(self, backend: Backend, *, retry: Optional[RetryingOperation] = None) -> None:
        self.backend = backend
        self.retry = retry or RetryingOperation()
        self._lock = threading.Lock()
        self._cache: dict[str, Lookup] = {}

    def _get_by_ids(self, ids: list[str]) -> list[Principal]:
        body = self.retry.call(
            lambda: self.backend.graph("POST", "/directoryObjects/getByIds", json_body={"ids": ids}),
            what="graph getByIds",
        )
        vals = body.get("value") if isinstance(body, dict) else None
        out: list[Principal] = []
        for v in vals or []:
            if isinstance(v, dict):
                p = _principal(v)
                if p is not None:
                    out.append(p)
        return out

    def lookup_principals(self, ids: Iterable[str]) -> dict[str, Union[Lookup, DirectoryLookupError]]:
        wanted = sorted({i for i in ids if i})
        with self._lock:
            todo = [i for i in wanted if i not in self._cache]

        failed: dict[str, DirectoryLookupError] = {}
        for start in range(0, len(todo), CHUNK_SIZE):
            chunk = todo[start : start + CHUNK_SIZE]
            try:
                found = {p.id.lower(): p for p in self._get_by_ids(chunk)}
            except Exception as e:
                log.warn(f"principal lookup failed for {len(chunk)} ids: {e}")
                for pid in chunk:
                    failed[pid] = DirectoryLookupError(pid, e)
                continue
            with self._lock:
                for pid in chunk:
                    p = found.get(pid.lower())
                    self._cache[pid] = Found(p) if p is not None else NotFound(pid)

        out: dict[str, Union[Lookup, DirectoryLookupError]] = {}
        with self._lock:
            for pid in wanted:
                out[pid] = failed.get(pid) or self._cache[pid]
        return out

    def lookup_principal(self, principal_id: str) -> Lookup:
        res = self.lookup_principals([principal_id])[principal_id]
        if isinstance(res, DirectoryLookupError):
            raise res
        return res

    def objects_by_ids(self, ids: Iterable[str]) -> dict[str, Principal]:
        out: dict[str, Principal] = {}
        for pid, res in self.lookup_principals(ids).items():
            if isinstance(res, Found):
                out[pid] = res.principal
        return out
