from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from .errors import PimError, ValidationError


class AssignmentState(str, enum.Enum):
    ACTIVE = "active"
    ELIGIBLE = "eligible"
    REMOVED = "removed"
    PENDING = "pending"


class ListFilter(str, enum.Enum):
    AT_SCOPE = "at-scope"
    AS_TARGET = "as-target"

    def as_query(self) -> str:
        return "atScope()" if self is ListFilter.AT_SCOPE else "asTarget()"


def is_guid(s: str) -> bool:
    try:
        uuid.UUID(str(s))
        return True
    except (TypeError, ValueError):
        return False


@dataclass(frozen=True, order=True)
class Scope:
    """
    Hierarchical ARM resource path, e.g.
    /subscriptions/<id>/resourceGroups/<rg>/providers/<provider>.
    """

    value: str

    def __post_init__(self) -> None:
        if not isinstance(self.value, str) or not self.value.startswith("/"):
            raise ValidationError(f"scope must start with a /: {self.value!r}")

    def __str__(self) -> str:
        return self.value

    @classmethod
    def from_subscription(cls, subscription_id: str) -> "Scope":
        return cls(f"/subscriptions/{subscription_id}")

    @classmethod
    def from_resource_group(cls, subscription_id: str, resource_group: str) -> "Scope":
        return cls(f"/subscriptions/{subscription_id}/resourceGroups/{resource_group}")

    @classmethod
    def from_provider(cls, subscription_id: str, resource_group: str, provider: str) -> "Scope":
        return cls(f"/subscriptions/{subscription_id}/resourceGroups/{resource_group}/providers/{provider}")

    def is_subscription(self) -> bool:
        return self.value.startswith("/subscriptions/") and "/resourceGroups/" not in self.value

    def subscription(self) -> Optional[str]:
        parts = self.value.split("/")
        if len(parts) < 3 or parts[1] != "subscriptions":
            return None
        return parts[2] if is_guid(parts[2]) else None

    def parts(self) -> list[str]:
        return [p for p in self.value.lower().split("/") if p]

    def contains(self, other: "Scope") -> bool:
        # "/" is the tenant root and contains every scope.
        first = self.parts()
        return other.parts()[: len(first)] == first

    def matches(self, other: str) -> bool:
        return self.value.lower() == (other or "").lower()


@dataclass(frozen=True, order=True)
class Principal:
    id: str
    display_name: str
    upn: Optional[str] = None
    object_type: str = "unknown"

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"id": self.id, "display_name": self.display_name, "object_type": self.object_type}
        if self.upn:
            out["upn"] = self.upn
        return out


@dataclass(frozen=True, order=True)
class RoleAssignment:
    role: str
    scope: Scope
    scope_name: str
    role_definition_id: str = field(default="", compare=False)
    principal_id: Optional[str] = None
    principal_type: Optional[str] = None
    assignment_id: Optional[str] = None
    object: Optional[Principal] = field(default=None, compare=False)

    @property
    def identity(self) -> tuple:
        """
        Stable identity used for selection and deduplication. Case of role and
        scope differs between ARM endpoints, so both are folded.
        """
        return (self.role.lower(), self.scope.value.lower(), self.principal_id, self.assignment_id)

    @property
    def key(self) -> tuple[str, str]:
        return (self.role, self.scope.value)

    def friendly(self) -> str:
        return f'"{self.role}" in "{self.scope_name}" ({self.scope})'

    def with_object(self, obj: Optional[Principal]) -> "RoleAssignment":
        return RoleAssignment(
            role=self.role,
            scope=self.scope,
            scope_name=self.scope_name,
            role_definition_id=self.role_definition_id,
            principal_id=self.principal_id,
            principal_type=self.principal_type,
            assignment_id=self.assignment_id,
            object=obj,
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"role": self.role, "scope": self.scope.value, "scope_name": self.scope_name}
        if self.principal_id:
            out["principal_id"] = self.principal_id
        if self.principal_type:
            out["principal_type"] = self.principal_type
        if self.assignment_id:
            out["assignment_id"] = self.assignment_id
        if self.object is not None:
            out["object"] = self.object.to_dict()
        return out


def assignment_sort_key(a: RoleAssignment) -> tuple:
    return (a.role.lower(), a.scope.value.lower(), a.principal_id or "", a.assignment_id or "")


def find_assignment(assignments: Iterable[RoleAssignment], role: str, scope: str) -> Optional[RoleAssignment]:
    """
    Match by role + scope path first, then by role + scope display name.
    """
    items = list(assignments)
    role_l = (role or "").lower()
    scope_l = (scope or "").lower()
    for a in items:
        if a.role.lower() == role_l and a.scope.value.lower() == scope_l:
            return a
    for a in items:
        if a.role.lower() == role_l and a.scope_name.lower() == scope_l:
            return a
    return None


@dataclass(frozen=True, order=True)
class ChildResource:
    id: Scope
    name: str
    type: str

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id.value, "name": self.name, "type": self.type}


@dataclass(frozen=True)
class RoleDefinition:
    id: str
    name: str
    role_name: str
    description: str = ""
    role_type: str = ""
    assignable_scopes: tuple = ()
    permissions: tuple = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "role_name": self.role_name,
            "description": self.description,
            "type": self.role_type,
            "assignable_scopes": list(self.assignable_scopes),
            "permissions": list(self.permissions),
        }


def _values(body: Any, where: str) -> list[dict[str, Any]]:
    vals = body.get("value") if isinstance(body, dict) else None
    if not isinstance(vals, list):
        raise PimError(f"unable to parse {where} response: missing value array")
    return [v for v in vals if isinstance(v, dict)]


def _get(obj: Any, *path: str) -> Any:
    for p in path:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(p)
    return obj


def parse_schedule_instances(body: Any, *, with_principal: bool) -> list[RoleAssignment]:
    """
    Parse roleEligibilityScheduleInstances / roleAssignmentScheduleInstances.
    """
    out: list[RoleAssignment] = []
    for entry in _values(body, "schedule instances"):
        role = _get(entry, "properties", "expandedProperties", "roleDefinition", "displayName")
        scope_id = _get(entry, "properties", "expandedProperties", "scope", "id")
        scope_name = _get(entry, "properties", "expandedProperties", "scope", "displayName")
        role_definition_id = _get(entry, "properties", "roleDefinitionId")
        for name, value in (
            ("role name", role),
            ("scope id", scope_id),
            ("scope name", scope_name),
            ("role definition id", role_definition_id),
        ):
            if not isinstance(value, str):
                raise PimError(f"no {name} in schedule instance {entry.get('id')}")
        out.append(
            RoleAssignment(
                role=role,
                scope=Scope(scope_id),
                scope_name=scope_name,
                role_definition_id=role_definition_id,
                principal_id=_get(entry, "properties", "principalId") if with_principal else None,
                principal_type=_get(entry, "properties", "principalType") if with_principal else None,
                assignment_id=entry.get("id") if with_principal else None,
            )
        )
    return sorted(set(out), key=assignment_sort_key)


def parse_role_assignments(body: Any, *, role_names: dict[str, str]) -> list[RoleAssignment]:
    """
    Parse roleAssignments. The endpoint does not expand role names, so they are
    looked up by lowercased role definition id.
    """
    out: list[RoleAssignment] = []
    for entry in _values(body, "role assignments"):
        props = entry.get("properties") or {}
        rd_id = props.get("roleDefinitionId") or ""
        scope_id = props.get("scope")
        if not isinstance(scope_id, str):
            raise PimError(f"no scope in role assignment {entry.get('id')}")
        role = role_names.get(rd_id.lower()) or rd_id.rsplit("/", 1)[-1]
        out.append(
            RoleAssignment(
                role=role,
                scope=Scope(scope_id),
                scope_name=scope_id,
                role_definition_id=rd_id,
                principal_id=props.get("principalId"),
                principal_type=props.get("principalType"),
                assignment_id=entry.get("id"),
            )
        )
    return sorted(set(out), key=assignment_sort_key)


def parse_child_resources(body: Any) -> list[ChildResource]:
    out: set[ChildResource] = set()
    for entry in _values(body, "child resources"):
        rid = entry.get("id")
        if not isinstance(rid, str):
            continue
        out.add(ChildResource(id=Scope(rid), name=entry.get("name") or "", type=entry.get("type") or ""))
    return sorted(out)


def parse_definitions(body: Any) -> list[RoleDefinition]:
    out: list[RoleDefinition] = []
    for entry in _values(body, "role definitions"):
        props = entry.get("properties") or {}
        out.append(
            RoleDefinition(
                id=entry.get("id") or "",
                name=entry.get("name") or "",
                role_name=props.get("roleName") or "",
                description=props.get("description") or "",
                role_type=props.get("type") or "",
                assignable_scopes=tuple(props.get("assignableScopes") or ()),
                permissions=tuple(p for p in (props.get("permissions") or ()) if isinstance(p, dict)),
            )
        )
    return out


def object_type_from_odata(odata_type: Optional[str]) -> str:
    # "#microsoft.graph.servicePrincipal" -> "servicePrincipal"
    if not odata_type:
        return "unknown"
    return odata_type.rsplit(".", 1)[-1]
