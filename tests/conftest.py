"""Shared test doubles: in-memory assignment, resource and identity directories."""

from __future__ import annotations

import threading
from typing import Any, Iterable, Optional

from azpim.errors import DirectoryLookupError
from azpim.graph import Found, NotFound
from azpim.models import AssignmentState, ListFilter, Principal, RoleAssignment, Scope, find_assignment


SUB = "00000000-0000-0000-0000-000000000001"
SUB_SCOPE = f"/subscriptions/{SUB}"


def make_assignment(
    role: str,
    scope: str = SUB_SCOPE,
    *,
    scope_name: Optional[str] = None,
    principal_id: Optional[str] = None,
    assignment_id: Optional[str] = None,
    principal_type: Optional[str] = None,
) -> RoleAssignment:
    return RoleAssignment(
        role=role,
        scope=Scope(scope),
        scope_name=scope_name or scope.rsplit("/", 1)[-1],
        role_definition_id=f"{scope}/providers/Microsoft.Authorization/roleDefinitions/{role.lower()}",
        principal_id=principal_id,
        principal_type=principal_type,
        assignment_id=assignment_id,
    )


def assignment_id(scope: str, name: str) -> str:
    return f"{scope}/providers/Microsoft.Authorization/roleAssignments/{name}"


class FakeDirectory:
    """
    Stand-in for PimClient. `failures` maps a role name to a list of
    exceptions raised by successive mutation calls for that role.
    """

    def __init__(
        self,
        eligible: Iterable[RoleAssignment] = (),
        active: Iterable[RoleAssignment] = (),
        *,
        failures: Optional[dict[str, list[BaseException]]] = None,
        states: Optional[dict[str, AssignmentState]] = None,
        children: Optional[dict[str, list[Any]]] = None,
        role_assignments: Optional[dict[str, list[RoleAssignment]]] = None,
        eligible_at: Optional[dict[str, list[RoleAssignment]]] = None,
        listing_failures: Optional[dict[str, BaseException]] = None,
    ) -> None:
        self.eligible = list(eligible)
        self.active = list(active)
        self.failures = {k: list(v) for k, v in (failures or {}).items()}
        self.states = dict(states or {})
        self.children = dict(children or {})
        self.role_assignments = dict(role_assignments or {})
        self.eligible_at = dict(eligible_at or {})
        self.listing_failures = dict(listing_failures or {})
        self.calls: list[tuple] = []
        self.state_requests: list[tuple] = []
        self._lock = threading.Lock()

    def _maybe_fail(self, role: str) -> None:
        with self._lock:
            pending = self.failures.get(role)
            if pending:
                raise pending.pop(0)

    def _record(self, *call: Any) -> None:
        with self._lock:
            self.calls.append(call)

    # AssignmentDirectory

    def find_eligible(self, role: str, scope: Scope) -> Optional[RoleAssignment]:
        return find_assignment(self.eligible, role, scope.value)

    def find_active(self, role: str, scope: Scope) -> Optional[RoleAssignment]:
        return find_assignment(self.active, role, scope.value)

    def activate(self, assignment: RoleAssignment, justification: str, duration: int) -> Any:
        self._record("activate", assignment.role, assignment.scope.value, justification, duration)
        self._maybe_fail(assignment.role)
        with self._lock:
            self.active.append(assignment)
        return {}

    def deactivate(self, assignment: RoleAssignment) -> Any:
        self._record("deactivate", assignment.role, assignment.scope.value)
        self._maybe_fail(assignment.role)
        with self._lock:
            self.active = [a for a in self.active if a.identity != assignment.identity]
        return {}

    def delete_assignment(self, assignment_id: str, scope: Scope) -> Any:
        self._record("delete", assignment_id, scope.value)
        self._maybe_fail(assignment_id.rsplit("/", 1)[-1])
        return {}

    def delete_eligible(self, assignment: RoleAssignment) -> Any:
        self._record("delete-eligible", assignment.assignment_id, assignment.scope.value)
        self._maybe_fail(assignment.role)
        return {}

    def get_assignment_state(self, role: str, scope: Scope, request_type: Optional[str] = None) -> AssignmentState:
        with self._lock:
            self.state_requests.append((role, request_type))
        if role in self.states:
            return self.states[role]
        if self.find_active(role, scope) is not None:
            return AssignmentState.ACTIVE
        if self.find_eligible(role, scope) is not None:
            return AssignmentState.ELIGIBLE
        return AssignmentState.REMOVED

    # ResourceDirectory

    def _listing(self, scope: Scope) -> None:
        err = self.listing_failures.get(scope.value)
        if err is not None:
            raise err

    def list_resources(self, scope: Scope) -> list[Any]:
        self._listing(scope)
        return list(self.children.get(scope.value, []))

    def list_role_assignments(self, scope: Scope) -> list[RoleAssignment]:
        self._listing(scope)
        self._record("list_role_assignments", scope.value)
        return list(self.role_assignments.get(scope.value, []))

    def list_eligible(self, scope: Optional[Scope] = None, filter: Optional[ListFilter] = None) -> list[RoleAssignment]:
        if scope is None:
            return list(self.eligible)
        self._listing(scope)
        return list(self.eligible_at.get(scope.value, []))

    def list_active(self, scope: Optional[Scope] = None, filter: Optional[ListFilter] = None) -> list[RoleAssignment]:
        return list(self.active)

    # ScopeLookup

    def resolve_subscription(self, name: str) -> Optional[str]:
        return None

    def resolve_scope_name(self, name: str) -> Optional[Scope]:
        for a in self.eligible + self.active:
            if a.scope_name.lower() == name.lower():
                return a.scope
        return None


class FakeIdentity:
    """Identity directory: known ids are Found, `broken` ids fail, the rest are NotFound."""

    def __init__(self, known: Iterable[str] = (), broken: Iterable[str] = ()) -> None:
        self.known = set(known)
        self.broken = set(broken)
        self.requested: list[set] = []

    def lookup_principals(self, ids: Iterable[str]) -> dict[str, Any]:
        wanted = set(ids)
        self.requested.append(wanted)
        out: dict[str, Any] = {}
        for pid in wanted:
            if pid in self.broken:
                out[pid] = DirectoryLookupError(pid, RuntimeError("graph unavailable"))
            elif pid in self.known:
                out[pid] = Found(Principal(id=pid, display_name=f"user {pid}", object_type="user"))
            else:
                out[pid] = NotFound(pid)
        return out

    def objects_by_ids(self, ids: Iterable[str]) -> dict[str, Principal]:
        return {
            pid: res.principal for pid, res in self.lookup_principals(ids).items() if isinstance(res, Found)
        }

