from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import Any, Iterable, Optional, TextIO

import yaml

from .errors import ConfigError
from .models import RoleAssignment, Scope
from .scope import ScopeLookup, resolve_config_scope


@dataclass(frozen=True)
class RoleEntry:
    role: str
    scope: str


def _entry(obj: Any, where: str) -> RoleEntry:
    if not isinstance(obj, dict):
        raise ConfigError(f"{where}: expected an object with 'role' and 'scope'")
    role = obj.get("role")
    scope = obj.get("scope") or obj.get("scope_name")
    if not isinstance(role, str) or not role.strip():
        raise ConfigError(f"{where}: missing 'role'")
    if not isinstance(scope, str) or not scope.strip():
        raise ConfigError(f"{where}: missing 'scope'")
    return RoleEntry(role.strip(), scope.strip())


def _load_list(text: str, source: str) -> list[Any]:
    # JSON is a subset of YAML, so one loader covers both.
    try:
        data = yaml.safe_load(text) if text.strip() else []
    except yaml.YAMLError as e:
        raise ConfigError(f"unable to parse {source}: {e}") from e
    if data is None:
        return []
    if not isinstance(data, list):
        raise ConfigError(f"{source}: expected a list of entries")
    return data


def _read(path: str, stdin: Optional[TextIO]) -> tuple[str, str]:
    if path == "-":
        return (stdin or sys.stdin).read(), "stdin"
    try:
        with open(path, "r", encoding="utf-8") as f:
            return f.read(), path
    except OSError as e:
        raise ConfigError(f"unable to read {path}: {e}") from e


def parse_entries(text: str, *, source: str = "config") -> list[RoleEntry]:
    """
    Parse a JSON or YAML list of {role, scope} objects. The output of the
    `list` command is accepted as-is.
    """
    return [_entry(obj, f"{source}[{i}]") for i, obj in enumerate(_load_list(text, source))]


def load_entries(path: str, *, stdin: Optional[TextIO] = None) -> list[RoleEntry]:
    text, source = _read(path, stdin)
    return parse_entries(text, source=source)


def parse_assignments(text: str, *, source: str = "config") -> list[RoleAssignment]:
    """
    Parse role assignments to delete, as printed by `role assignment list`.
    """
    out: list[RoleAssignment] = []
    for i, obj in enumerate(_load_list(text, source)):
        where = f"{source}[{i}]"
        if not isinstance(obj, dict):
            raise ConfigError(f"{where}: expected an object")
        assignment_id = obj.get("assignment_id") or obj.get("id")
        if not isinstance(assignment_id, str) or "/providers/Microsoft.Authorization/roleAssignments/" not in assignment_id:
            raise ConfigError(f"{where}: missing or invalid 'assignment_id'")
        scope = obj.get("scope") or assignment_id.split("/providers/Microsoft.Authorization/", 1)[0] or "/"
        out.append(
            RoleAssignment(
                role=str(obj.get("role") or assignment_id.rsplit("/", 1)[-1]),
                scope=Scope(scope),
                scope_name=str(obj.get("scope_name") or scope),
                principal_id=obj.get("principal_id"),
                principal_type=obj.get("principal_type"),
                assignment_id=assignment_id,
            )
        )
    return out


def load_assignments(path: str, *, stdin: Optional[TextIO] = None) -> list[RoleAssignment]:
    text, source = _read(path, stdin)
    return parse_assignments(text, source=source)


def parse_role_args(values: Iterable[str]) -> list[RoleEntry]:
    out: list[RoleEntry] = []
    for v in values or []:
        role, sep, scope = (v or "").partition("=")
        if not sep or not role.strip() or not scope.strip():
            raise ConfigError(f"invalid --role '{v}': expected NAME=SCOPE")
        out.append(RoleEntry(role.strip(), scope.strip()))
    return out


def resolve_entries(entries: Iterable[RoleEntry], lookup: Optional[ScopeLookup]) -> list[tuple[str, Scope]]:
    """
    Resolve every entry up front so a bad scope aborts before anything runs.
    Duplicates are kept.
    """
    return [(e.role, resolve_config_scope(e.scope, lookup)) for e in entries]
