from __future__ import annotations

from collections import deque
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Protocol, Union

from . import log
from .errors import DirectoryLookupError
from .graph import Found, NotFound
from .models import ChildResource, ListFilter, RoleAssignment, Scope
from .orchestrator import DeleteAssignmentOperation, DeleteEligibleOperation


class ResourceDirectory(Protocol):
    def list_resources(self, scope: Scope) -> list[ChildResource]: ...

    def list_role_assignments(self, scope: Scope) -> list[RoleAssignment]: ...

    def list_eligible(self, scope: Optional[Scope] = None, filter: Optional[ListFilter] = None) -> list[RoleAssignment]: ...


class IdentityDirectory(Protocol):
    def lookup_principals(self, ids: Iterable[str]) -> dict[str, Union[Found, NotFound, DirectoryLookupError]]: ...


@dataclass(frozen=True)
class OrphanCandidate:
    assignment: RoleAssignment
    principal_id: str
    lookup: str = "graph"

    def to_dict(self) -> dict[str, Any]:
        out = self.assignment.to_dict()
        out["failed_lookup"] = self.lookup
        return out

    def to_operation(self, *, eligible: bool):
        if eligible:
            return DeleteEligibleOperation(self.assignment)
        return DeleteAssignmentOperation(self.assignment)


def walk_resources(directory: ResourceDirectory, scope: Scope, *, skip_nested: bool = False) -> list[ChildResource]:
    """
    Child resources of `scope`, breadth-first. With `skip_nested` only the
    direct children are returned.
    """
    seen = {scope.value.lower()}
    out: list[ChildResource] = []
    queue = deque([scope])
    while queue:
        current = queue.popleft()
        try:
            children = directory.list_resources(current)
        except Exception as e:
            if current == scope:
                raise
            log.warn(f"unable to list child resources of {current}: {e}")
            continue
        for child in children:
            key = child.id.value.lower()
            if key in seen or not scope.contains(child.id):
                continue
            seen.add(key)
            out.append(child)
            if not skip_nested:
                queue.append(child.id)
    return out


def walk_scopes(directory: ResourceDirectory, scope: Scope, *, skip_nested: bool = False) -> list[Scope]:
    """
    `scope` followed by every child resource reachable from it.
    """
    if skip_nested:
        return [scope]
    return [scope] + [r.id for r in walk_resources(directory, scope)]


class OrphanDetector:
    """
    Find role assignments whose principal no longer exists in the identity
    directory. Produces candidates only; deleting them is up to the caller.
    """

    def __init__(self, directory: ResourceDirectory, identity: IdentityDirectory, *, concurrency: int = 4) -> None:
        self.directory = directory
        self.identity = identity
        self.concurrency = max(1, int(concurrency))

    def _list(self, scope: Scope, eligible: bool) -> list[RoleAssignment]:
        if eligible:
            return self.directory.list_eligible(scope, ListFilter.AT_SCOPE)
        return self.directory.list_role_assignments(scope)

    def collect(self, scope: Scope, *, skip_nested: bool = False, eligible: bool = False) -> list[RoleAssignment]:
        scopes = walk_scopes(self.directory, scope, skip_nested=skip_nested)
        log.debug(f"checking {len(scopes)} scope(s) under {scope}")

        by_id: dict[str, RoleAssignment] = {}
        with ThreadPoolExecutor(max_workers=min(self.concurrency, len(scopes))) as ex:
            futs = {ex.submit(self._list, s, eligible): s for s in scopes}
            for fut in as_completed(futs):
                s = futs[fut]
                try:
                    items = fut.result()
                except Exception as e:
                    if s == scope:
                        raise
                    log.warn(f"unable to list assignments at {s}: {e}")
                    continue
                for a in items:
                    # atScope() also returns assignments inherited from above.
                    if not a.principal_id or not scope.contains(a.scope):
                        continue
                    key = (a.assignment_id or "|".join(str(x) for x in a.identity)).lower()
                    by_id.setdefault(key, a)
        return [by_id[k] for k in sorted(by_id)]

    def find(self, scope: Scope, skip_nested: bool = False, *, eligible: bool = False) -> list[OrphanCandidate]:
        assignments = self.collect(scope, skip_nested=skip_nested, eligible=eligible)
        lookups = self.identity.lookup_principals({a.principal_id for a in assignments if a.principal_id})

        out: list[OrphanCandidate] = []
        inconclusive = 0
        for a in assignments:
            pid = a.principal_id or ""
            res = lookups.get(pid)
            if isinstance(res, NotFound):
                out.append(OrphanCandidate(a, pid))
            elif isinstance(res, DirectoryLookupError) or res is None:
                inconclusive += 1
                log.warn(f"skipping {a.friendly()}: lookup of principal {pid} was inconclusive")
        if inconclusive:
            log.warn(f"{inconclusive} assignment(s) skipped because the principal lookup failed")
        return out
