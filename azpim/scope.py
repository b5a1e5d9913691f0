from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, Union

from .errors import MissingPrerequisite, UnknownScope
from .models import Scope, is_guid


class ScopeLookup(Protocol):
    def resolve_subscription(self, name: str) -> Optional[str]: ...

    def resolve_scope_name(self, name: str) -> Optional[Scope]: ...


@dataclass(frozen=True)
class ExplicitPath:
    path: str


@dataclass(frozen=True)
class FriendlyName:
    name: str


@dataclass(frozen=True)
class Hierarchical:
    subscription: str
    resource_group: Optional[str] = None
    provider: Optional[str] = None


ScopeSelector = Union[ExplicitPath, FriendlyName, Hierarchical]


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def build_selector(
    *,
    subscription: Optional[str] = None,
    resource_group: Optional[str] = None,
    provider: Optional[str] = None,
    explicit_scope: Optional[str] = None,
    friendly_name: Optional[str] = None,
) -> Optional[ScopeSelector]:
    """
    Turn the loose scope arguments into one selector variant.

    An explicit scope wins over everything else and skips the hierarchy
    checks. Returns None when nothing was given.
    """
    subscription = _clean(subscription)
    resource_group = _clean(resource_group)
    provider = _clean(provider)
    explicit_scope = _clean(explicit_scope)
    friendly_name = _clean(friendly_name)

    if explicit_scope:
        return ExplicitPath(explicit_scope)

    if provider and not resource_group:
        raise MissingPrerequisite("resource-group", required_by="provider")
    if resource_group and not subscription:
        raise MissingPrerequisite("subscription", required_by="resource-group")

    if subscription:
        return Hierarchical(subscription, resource_group, provider)
    if friendly_name:
        return FriendlyName(friendly_name)
    return None


def resolve_selector(selector: ScopeSelector, lookup: Optional[ScopeLookup] = None) -> Scope:
    if isinstance(selector, ExplicitPath):
        return Scope(selector.path)

    if isinstance(selector, FriendlyName):
        found = lookup.resolve_scope_name(selector.name) if lookup is not None else None
        if found is None:
            raise UnknownScope(selector.name)
        return found

    sub = selector.subscription
    if not is_guid(sub):
        # Subscription given by display name.
        sub_id = lookup.resolve_subscription(sub) if lookup is not None else None
        if not sub_id:
            raise UnknownScope(sub)
        sub = sub_id

    if selector.provider:
        return Scope.from_provider(sub, selector.resource_group or "", selector.provider)
    if selector.resource_group:
        return Scope.from_resource_group(sub, selector.resource_group)
    return Scope.from_subscription(sub)


def resolve(
    *,
    subscription: Optional[str] = None,
    resource_group: Optional[str] = None,
    provider: Optional[str] = None,
    explicit_scope: Optional[str] = None,
    friendly_name: Optional[str] = None,
    lookup: Optional[ScopeLookup] = None,
    required: bool = True,
) -> Optional[Scope]:
    selector = build_selector(
        subscription=subscription,
        resource_group=resource_group,
        provider=provider,
        explicit_scope=explicit_scope,
        friendly_name=friendly_name,
    )
    if selector is None:
        if required:
            raise MissingPrerequisite("scope")
        return None
    return resolve_selector(selector, lookup)


def resolve_config_scope(value: str, lookup: Optional[ScopeLookup] = None) -> Scope:
    """
    Config entries carry either a full path or a friendly name in one field.
    """
    value = (value or "").strip()
    if value.startswith("/"):
        return resolve_selector(ExplicitPath(value), lookup)
    return resolve_selector(FriendlyName(value), lookup)
