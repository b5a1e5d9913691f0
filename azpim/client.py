from __future__ import annotations

import threading
import uuid
from typing import Any, Callable, Optional

from azure.mgmt.resource import SubscriptionClient

from . import log
from .backend import ARM_BASE, OPERATIONS, Backend
from .errors import PermanentRemoteError
from .models import (
    AssignmentState,
    ChildResource,
    ListFilter,
    RoleAssignment,
    RoleDefinition,
    Scope,
    find_assignment,
    parse_child_resources,
    parse_definitions,
    parse_role_assignments,
    parse_schedule_instances,
)
from .retry import RetryingOperation


EXISTS_CODES = ("RoleAssignmentExists", "RoleAssignmentRequestExists")
PENDING_STATUSES = {
    "accepted",
    "pendingapproval",
    "pendingapprovalprovisioning",
    "pendingprovisioning",
    "pendingscheduledcreation",
    "pendingevaluation",
    "granted",
}


def _already_exists(status: int, body: Any) -> bool:
    if status != 400 or not isinstance(body, dict):
        return False
    code = (body.get("error") or {}).get("code") if isinstance(body.get("error"), dict) else None
    if code in EXISTS_CODES:
        log.info("role already assigned" if code == "RoleAssignmentExists" else "role assignment request already exists")
        return True
    return False


def _subscriptions_from_credential(credential: Any) -> Callable[[], list[dict[str, str]]]:
    def lister() -> list[dict[str, str]]:
        out: list[dict[str, str]] = []
        for s in SubscriptionClient(credential).subscriptions.list():
            d = s.as_dict() if hasattr(s, "as_dict") else dict(s)
            sid = (d.get("subscription_id") or d.get("subscriptionId") or "").strip()
            name = (d.get("display_name") or d.get("displayName") or "").strip()
            if sid:
                out.append({"id": sid, "name": name})
        return out

    return lister


class PimClient:
    """
    Azure PIM assignment directory.

    Read calls are retried internally. Mutations (activate, deactivate,
    delete_*) make exactly one attempt so the batch orchestrator owns their
    retry policy.
    """

    def __init__(
        self,
        backend: Backend,
        *,
        retry: Optional[RetryingOperation] = None,
        subscriptions: Optional[Callable[[], list[dict[str, str]]]] = None,
    ) -> None:
        self.backend = backend
        self.retry = retry or RetryingOperation()
        self._subscriptions = subscriptions
        self._lock = threading.Lock()
        self._subscription_cache: Optional[list[dict[str, str]]] = None
        self._eligible_cache: Optional[list[RoleAssignment]] = None
        self._principal_id: Optional[str] = None

    @classmethod
    def from_credential(cls, credential: Any, **kwargs: Any) -> "PimClient":
        return cls(Backend(credential), subscriptions=_subscriptions_from_credential(credential), **kwargs)

    def current_principal_id(self) -> str:
        with self._lock:
            if self._principal_id is None:
                self._principal_id = self.backend.principal_id()
            return self._principal_id

    def _read(self, what: str, fn: Callable[[], Any], *, retry: bool = True) -> Any:
        if not retry:
            return fn()
        return self.retry.call(fn, what=what)

    # Listings

    def _list_instances(
        self, operation: str, scope: Optional[Scope], filter: Optional[ListFilter], *, retry: bool = True
    ) -> list[RoleAssignment]:
        if filter is None:
            filter = ListFilter.AS_TARGET if scope is None else ListFilter.AT_SCOPE
        body = self._read(
            f"list {operation}",
            lambda: self.backend.arm_list(operation, scope=scope, query={"$filter": filter.as_query()}),
            retry=retry,
        )
        return parse_schedule_instances(body, with_principal=filter is ListFilter.AT_SCOPE)

    def list_eligible(self, scope: Optional[Scope] = None, filter: Optional[ListFilter] = None) -> list[RoleAssignment]:
        log.debug(f"listing eligible assignments (scope={scope}, filter={filter})")
        return self._list_instances("roleEligibilityScheduleInstances", scope, filter)

    def list_active(self, scope: Optional[Scope] = None, filter: Optional[ListFilter] = None) -> list[RoleAssignment]:
        log.debug(f"listing active assignments (scope={scope}, filter={filter})")
        return self._list_instances("roleAssignmentScheduleInstances", scope, filter)

    def list_resources(self, scope: Scope) -> list[ChildResource]:
        body = self._read("list eligible child resources", lambda: self.backend.arm_list("eligibleChildResources", scope=scope))
        return [r for r in parse_child_resources(body) if r.id != scope]

    def list_definitions(self, scope: Scope) -> list[RoleDefinition]:
        body = self._read("list role definitions", lambda: self.backend.arm_list("roleDefinitions", scope=scope))
        return parse_definitions(body)

    def list_role_assignments(self, scope: Scope) -> list[RoleAssignment]:
        role_names = {d.id.lower(): d.role_name for d in self.list_definitions(scope) if d.id}
        body = self._read(
            "list role assignments",
            lambda: self.backend.arm_list("roleAssignments", scope=scope, query={"$filter": "atScope()"}),
        )
        return parse_role_assignments(body, role_names=role_names)

    # Lookups

    def eligible_for_caller(self, *, refresh: bool = False) -> list[RoleAssignment]:
        with self._lock:
            cached = self._eligible_cache
        if cached is None or refresh:
            cached = self.list_eligible(None, ListFilter.AS_TARGET)
            with self._lock:
                self._eligible_cache = cached
        return cached

    def find_eligible(self, role: str, scope: Scope) -> Optional[RoleAssignment]:
        return find_assignment(self.eligible_for_caller(), role, scope.value)

    def find_active(self, role: str, scope: Scope) -> Optional[RoleAssignment]:
        return find_assignment(self.list_active(None, ListFilter.AS_TARGET), role, scope.value)

    def _subscription_list(self) -> list[dict[str, str]]:
        if self._subscriptions is None:
            return []
        with self._lock:
            if self._subscription_cache is None:
                self._subscription_cache = self._read("list subscriptions", self._subscriptions)
            return self._subscription_cache

    def resolve_subscription(self, name: str) -> Optional[str]:
        wanted = (name or "").strip().lower()
        for s in self._subscription_list():
            if s["id"].lower() == wanted or (s.get("name") or "").lower() == wanted:
                return s["id"]
        return None

    def resolve_scope_name(self, name: str) -> Optional[Scope]:
        sub = self.resolve_subscription(name)
        if sub:
            return Scope.from_subscription(sub)
        wanted = (name or "").strip().lower()
        for a in self.eligible_for_caller():
            if a.scope_name.lower() == wanted:
                return a.scope
        for a in self.list_active(None, ListFilter.AS_TARGET):
            if a.scope_name.lower() == wanted:
                return a.scope
        return None

    def get_assignment_state(self, role: str, scope: Scope, request_type: Optional[str] = None) -> AssignmentState:
        """
        Current state of the caller's `role` at `scope`. Every read is a
        single attempt and errors propagate, so a poll never outlasts the
        caller's deadline. With `request_type` only pending requests of that
        type (SelfActivate, SelfDeactivate) count as PENDING.
        """
        active = self._list_instances("roleAssignmentScheduleInstances", None, ListFilter.AS_TARGET, retry=False)
        if find_assignment(active, role, scope.value) is not None:
            return AssignmentState.ACTIVE
        if self._has_pending_request(role, scope, request_type):
            return AssignmentState.PENDING
        eligible = self._list_instances("roleEligibilityScheduleInstances", None, ListFilter.AS_TARGET, retry=False)
        with self._lock:
            self._eligible_cache = eligible
        if find_assignment(eligible, role, scope.value) is not None:
            return AssignmentState.ELIGIBLE
        return AssignmentState.REMOVED

    def _has_pending_request(self, role: str, scope: Scope, request_type: Optional[str] = None) -> bool:
        body = self._read(
            "list role assignment requests",
            lambda: self.backend.arm_list("roleAssignmentScheduleRequests", query={"$filter": "asRequestor()"}),
            retry=False,
        )
        for entry in body.get("value") or []:
            if not isinstance(entry, dict):
                continue
            props = entry.get("properties") or {}
            status = str(props.get("status") or "").lower()
            if status not in PENDING_STATUSES:
                continue
            if request_type and str(props.get("requestType") or "").lower() != request_type.lower():
                continue
            expanded = props.get("expandedProperties") or {}
            r = ((expanded.get("roleDefinition") or {}).get("displayName") or "").lower()
            s = ((expanded.get("scope") or {}).get("id") or "").lower()
            if r == role.lower() and s == scope.value.lower():
                return True
        return False

    # Mutations: single attempt each.

    def activate(self, assignment: RoleAssignment, justification: str, duration: int) -> Any:
        request_id = uuid.uuid4()
        body = {
            "properties": {
                "principalId": self.current_principal_id(),
                "roleDefinitionId": assignment.role_definition_id,
                "requestType": "SelfActivate",
                "justification": justification,
                "scheduleInfo": {
                    "expiration": {
                        "duration": f"PT{int(duration)}M",
                        "type": "AfterDuration",
                    }
                },
            }
        }
        log.debug(f"activating {assignment.friendly()} (request {request_id})")
        return self.backend.arm(
            "PUT",
            "roleAssignmentScheduleRequests",
            scope=assignment.scope,
            extra=f"/{request_id}",
            json_body=body,
            accept=_already_exists,
        )

    def deactivate(self, assignment: RoleAssignment) -> Any:
        request_id = uuid.uuid4()
        body = {
            "properties": {
                "principalId": self.current_principal_id(),
                "roleDefinitionId": assignment.role_definition_id,
                "requestType": "SelfDeactivate",
                "justification": "Deactivation request",
            }
        }
        log.debug(f"deactivating {assignment.friendly()} (request {request_id})")
        return self.backend.arm(
            "PUT", "roleAssignmentScheduleRequests", scope=assignment.scope, extra=f"/{request_id}", json_body=body
        )

    def delete_assignment(self, assignment_id: str, scope: Scope) -> Any:
        if not assignment_id.startswith("/") or not scope.contains(Scope(assignment_id)):
            raise PermanentRemoteError(f"assignment {assignment_id} is not within {scope}")
        return self.backend.send(
            "DELETE",
            f"{ARM_BASE}{assignment_id}",
            params={"api-version": OPERATIONS["roleAssignments"]},
        )

    def delete_eligible(self, assignment: RoleAssignment) -> Any:
        if not assignment.principal_id:
            raise PermanentRemoteError(f"no principal id for {assignment.friendly()}")
        request_id = uuid.uuid4()
        body = {
            "properties": {
                "principalId": assignment.principal_id,
                "roleDefinitionId": assignment.role_definition_id,
                "requestType": "AdminRemove",
                "justification": "Removing orphaned eligible assignment",
            }
        }
        return self.backend.arm(
            "PUT", "roleEligibilityScheduleRequests", scope=assignment.scope, extra=f"/{request_id}", json_body=body
        )
