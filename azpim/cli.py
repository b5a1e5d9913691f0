from __future__ import annotations

import argparse
import re
import sys
from typing import Any, Callable, Optional

from termcolor import colored

from . import __version__, log
from .auth import AUTH_METHODS, build_credential
from .client import PimClient
from .completion import SHELLS, completion_script
from .config import load_assignments, load_entries, parse_role_args, resolve_entries
from .errors import ConfigError, MissingPrerequisite, PimError, ValidationError
from .graph import GraphClient
from .interactive import Mode, run_selector
from .models import ListFilter, RoleAssignment, Scope, is_guid
from .orchestrator import (
    DEFAULT_CONCURRENCY,
    DEFAULT_DURATION,
    ActivateOperation,
    BatchOrchestrator,
    DeactivateOperation,
    DeleteAssignmentOperation,
    Operation,
    OutcomeReport,
    ReportEntry,
)
from .orphans import OrphanCandidate, OrphanDetector, walk_resources
from .report import atomic_write_json, build_report, print_json, print_summary
from .scope import resolve


CLEANUP_ROLES = ("Owner", "Role Based Access Control Administrator")
CLEANUP_JUSTIFICATION = "cleaning up orphaned resources"
CLEANUP_WAIT = 300.0

Factory = Callable[[argparse.Namespace], Any]

_DURATION_RE = re.compile(r"^(?:(\d+)h)?(?:(\d+)m)?(?:(\d+)s)?$")


def parse_wait(value: str) -> float:
    """
    Seconds to wait for a state change: `300`, `5m`, `1h30m`, `45s`.
    """
    v = (value or "").strip().lower()
    if v.isdigit():
        return float(v)
    m = _DURATION_RE.match(v)
    if not v or not m or not any(m.groups()):
        raise argparse.ArgumentTypeError(f"invalid wait duration '{value}'")
    h, mi, s = (int(x or 0) for x in m.groups())
    return float(h * 3600 + mi * 60 + s)


def _positive_int(value: str) -> int:
    try:
        n = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid number '{value}'")
    if n < 1:
        raise argparse.ArgumentTypeError("must be >= 1")
    return n


def _duration(value: str) -> int:
    n = _positive_int(value)
    if n > 480:
        raise argparse.ArgumentTypeError("duration must be between 1 and 480 minutes")
    return n


class Context:
    """
    Lazily built remote clients for one invocation.
    """

    def __init__(
        self,
        args: argparse.Namespace,
        client_factory: Optional[Factory] = None,
        graph_factory: Optional[Factory] = None,
    ) -> None:
        self.args = args
        self._client_factory = client_factory
        self._graph_factory = graph_factory
        self._client: Any = None
        self._graph: Any = None

    @property
    def client(self) -> Any:
        if self._client is None:
            if self._client_factory is not None:
                self._client = self._client_factory(self.args)
            else:
                self._client = PimClient.from_credential(build_credential(self.args))
        return self._client

    @property
    def graph(self) -> Any:
        if self._graph is None:
            if self._graph_factory is not None:
                self._graph = self._graph_factory(self.args)
            else:
                self._graph = GraphClient(self.client.backend, retry=self.client.retry)
        return self._graph

    def scope(self, *, required: bool = True) -> Optional[Scope]:
        a = self.args
        needs_lookup = bool(getattr(a, "scope_name", None)) or bool(a.subscription and not is_guid(a.subscription))
        return resolve(
            subscription=a.subscription,
            resource_group=a.resource_group,
            provider=a.provider,
            explicit_scope=a.scope,
            friendly_name=getattr(a, "scope_name", None),
            lookup=self.client if needs_lookup else None,
            required=required,
        )

    def orchestrator(self, *, concurrency: int = DEFAULT_CONCURRENCY, wait: Optional[float] = None) -> BatchOrchestrator:
        return BatchOrchestrator(
            self.client,
            concurrency=concurrency,
            wait_timeout=wait,
            show_progress=sys.stderr.isatty() and log.enabled("info"),
        )


# Output helpers


def _finish_batch(ctx: Context, command: str, report: OutcomeReport) -> int:
    print_summary(report)
    if ctx.args.out_json:
        atomic_write_json(ctx.args.out_json, build_report(command=command, report=report))
        log.info(f"wrote report to {ctx.args.out_json}")
    return 1 if report.failed else 0


def _run_batch(ctx: Context, command: str, ops: list[Operation], *, concurrency: int = 1, wait: Optional[float] = None) -> int:
    if not ops:
        log.info("no operations to run")
    report = ctx.orchestrator(concurrency=concurrency, wait=wait).run(ops)
    return _finish_batch(ctx, command, report)


def confirm(prompt: str, *, assume_yes: bool, input_fn: Optional[Callable[[str], str]] = None) -> bool:
    if assume_yes:
        return True
    try:
        answer = (input_fn or input)(f"{colored('[?] ', 'magenta')}{prompt} [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


# list


def cmd_list(ctx: Context) -> int:
    a = ctx.args
    scope = ctx.scope(required=False)
    flt = ListFilter(a.filter) if a.filter else None
    if scope is None and flt is ListFilter.AT_SCOPE:
        raise MissingPrerequisite("scope", required_by="filter at-scope")
    if a.active:
        items = ctx.client.list_active(scope, flt)
    else:
        items = ctx.client.list_eligible(scope, flt)
    print_json([x.to_dict() for x in items])
    return 0


# activate / deactivate


def _set_entries(a: argparse.Namespace) -> list:
    entries = []
    if a.config:
        entries.extend(load_entries(a.config))
    entries.extend(parse_role_args(a.role))
    if not entries:
        raise ConfigError("no roles given. Use --config PATH (or - for stdin) and/or --role NAME=SCOPE")
    return entries


def cmd_activate_role(ctx: Context) -> int:
    a = ctx.args
    scope = ctx.scope()
    op = ActivateOperation(role=a.role_name, scope=scope, justification=a.justification, duration=a.duration)
    return _run_batch(ctx, "activate role", [op], wait=a.wait)


def cmd_activate_set(ctx: Context) -> int:
    a = ctx.args
    resolved = resolve_entries(_set_entries(a), ctx.client)
    ops: list[Operation] = [
        ActivateOperation(role=role, scope=scope, justification=a.justification, duration=a.duration)
        for role, scope in resolved
    ]
    return _run_batch(ctx, "activate set", ops, concurrency=a.concurrency, wait=a.wait)


def cmd_activate_interactive(ctx: Context) -> int:
    a = ctx.args
    items = ctx.client.list_eligible(None, ListFilter.AS_TARGET)
    if not items:
        log.warn("no eligible assignments found")
        return 0
    state = run_selector(
        items,
        title="Activate Azure PIM roles",
        justification=a.justification or "",
        duration=a.duration,
    )
    if state.mode is not Mode.SUBMITTED:
        log.info("cancelled")
        return 0
    return _run_batch(ctx, "activate interactive", state.operations("activate"), concurrency=a.concurrency, wait=a.wait)


def cmd_deactivate_role(ctx: Context) -> int:
    a = ctx.args
    op = DeactivateOperation(role=a.role_name, scope=ctx.scope())
    return _run_batch(ctx, "deactivate role", [op], wait=a.wait)


def cmd_deactivate_set(ctx: Context) -> int:
    a = ctx.args
    resolved = resolve_entries(_set_entries(a), ctx.client)
    ops: list[Operation] = [DeactivateOperation(role=role, scope=scope) for role, scope in resolved]
    return _run_batch(ctx, "deactivate set", ops, concurrency=a.concurrency, wait=a.wait)


def cmd_deactivate_interactive(ctx: Context) -> int:
    a = ctx.args
    items = ctx.client.list_active(None, ListFilter.AS_TARGET)
    if not items:
        log.warn("no active assignments found")
        return 0
    state = run_selector(items, title="Deactivate Azure PIM roles")
    if state.mode is not Mode.SUBMITTED:
        log.info("cancelled")
        return 0
    return _run_batch(ctx, "deactivate interactive", state.operations("deactivate"), concurrency=a.concurrency, wait=a.wait)


# role


def _with_principals(ctx: Context, items: list[RoleAssignment]) -> list[RoleAssignment]:
    objects = ctx.graph.objects_by_ids({x.principal_id for x in items if x.principal_id})
    return [x.with_object(objects.get(x.principal_id or "")) for x in items]


def cmd_role_assignment_list(ctx: Context) -> int:
    items = ctx.client.list_role_assignments(ctx.scope())
    if not ctx.args.no_resolve_principals:
        items = _with_principals(ctx, items)
    print_json([x.to_dict() for x in items])
    return 0


def _check_within(scope: Scope, items: list[RoleAssignment]) -> None:
    for x in items:
        if not scope.contains(x.scope):
            raise ValidationError(f"assignment {x.assignment_id} is outside of {scope}")


def cmd_role_assignment_delete(ctx: Context) -> int:
    a = ctx.args
    scope = ctx.scope()
    item = RoleAssignment(
        role="role assignment",
        scope=scope,
        scope_name=scope.value,
        assignment_id=a.assignment_id,
    )
    return _run_batch(ctx, "role assignment delete", [DeleteAssignmentOperation(item)])


def cmd_role_assignment_delete_set(ctx: Context) -> int:
    a = ctx.args
    scope = ctx.scope()
    items = load_assignments(a.config)
    _check_within(scope, items)
    if not items:
        log.info("no assignments to delete")
        return 0
    if not confirm(f"Delete {len(items)} role assignment(s)?", assume_yes=a.yes):
        log.info("aborted")
        return 0
    ops: list[Operation] = [DeleteAssignmentOperation(x) for x in items]
    return _run_batch(ctx, "role assignment delete-set", ops, concurrency=a.concurrency)


def cmd_role_definition_list(ctx: Context) -> int:
    print_json([d.to_dict() for d in ctx.client.list_definitions(ctx.scope())])
    return 0


def cmd_role_resources_list(ctx: Context) -> int:
    resources = walk_resources(ctx.client, ctx.scope(), skip_nested=ctx.args.skip_nested)
    print_json([r.to_dict() for r in resources])
    return 0


# cleanup


def _cleanup_scope(ctx: Context, scope: Scope, *, eligible: bool, reports: list[OutcomeReport]) -> None:
    a = ctx.args
    what = "eligible role assignments" if eligible else "role assignments"
    log.info(f"checking for orphaned {what} in {scope}")
    detector = OrphanDetector(ctx.client, ctx.graph, concurrency=a.concurrency)
    candidates: list[OrphanCandidate] = detector.find(scope, a.skip_nested, eligible=eligible)
    if not candidates:
        log.success(f"no orphaned {what} in {scope}")
        return
    for c in candidates:
        log.info(f"orphaned: {c.assignment.friendly()} principal={c.principal_id} ({c.assignment.principal_type or 'unknown'})")
    if not confirm(f"Delete {len(candidates)} orphaned {what}?", assume_yes=a.yes):
        log.info("skipped")
        return
    ops = [c.to_operation(eligible=eligible) for c in candidates]
    reports.append(ctx.orchestrator(concurrency=a.concurrency).run(ops))


def _merge(reports: list[OutcomeReport]) -> OutcomeReport:
    merged = OutcomeReport()
    i = 0
    for r in reports:
        for e in r.entries:
            merged.add(ReportEntry(i, e.operation, e.outcome, attempts=e.attempts, elapsed=e.elapsed))
            i += 1
    return merged


def cmd_cleanup(ctx: Context) -> int:
    a = ctx.args
    kind = a.cleanup_command
    reports: list[OutcomeReport] = []

    if kind == "auto":
        scopes, activation = _prepare_auto_cleanup(ctx)
        if activation is not None:
            reports.append(activation)
    else:
        scopes = [ctx.scope()]

    for scope in scopes:
        if kind in ("all", "auto", "orphaned-assignments"):
            _cleanup_scope(ctx, scope, eligible=False, reports=reports)
        if kind in ("all", "auto", "orphaned-eligible-assignments"):
            _cleanup_scope(ctx, scope, eligible=True, reports=reports)

    return _finish_batch(ctx, f"cleanup {kind}", _merge(reports))


def _prepare_auto_cleanup(ctx: Context) -> tuple[list[Scope], Optional[OutcomeReport]]:
    """
    Find every subscription where the caller holds an administrative role,
    activating the eligible ones that are not active yet.
    """
    within = ctx.scope(required=False)
    active = ctx.client.list_active(None, ListFilter.AS_TARGET)
    eligible = ctx.client.list_eligible(None, ListFilter.AS_TARGET)
    active_keys = {(x.role.lower(), x.scope.value.lower()) for x in active}

    to_activate: dict[tuple, RoleAssignment] = {}
    scopes: dict[str, Scope] = {}
    for x in list(eligible) + list(active):
        if not x.scope.is_subscription() or x.role not in CLEANUP_ROLES:
            continue
        if within is not None and not within.contains(x.scope) and not x.scope.contains(within):
            continue
        key = (x.role.lower(), x.scope.value.lower())
        if key not in active_keys:
            to_activate.setdefault(key, x)
        target = within if within is not None and x.scope.contains(within) else x.scope
        scopes.setdefault(target.value.lower(), target)

    report = None
    if to_activate:
        ops: list[Operation] = [
            ActivateOperation(role=x.role, scope=x.scope, justification=CLEANUP_JUSTIFICATION, assignment=x)
            for x in to_activate.values()
        ]
        report = ctx.orchestrator(concurrency=ctx.args.concurrency, wait=CLEANUP_WAIT).run(ops)
    return [scopes[k] for k in sorted(scopes)], report


# init


def cmd_init(ctx: Context) -> int:
    sys.stdout.write(completion_script(build_parser(), ctx.args.shell))
    return 0


# Parser


def _add_scope_args(p: argparse.ArgumentParser) -> None:
    g = p.add_argument_group("scope")
    g.add_argument("--subscription", help="Subscription ID or display name.")
    g.add_argument("--resource-group", help="Resource group (requires --subscription).")
    g.add_argument("--provider", help="Resource provider path (requires --subscription and --resource-group).")
    g.add_argument("--scope", help="Full scope path; other scope arguments are ignored.")
    g.add_argument("--scope-name", help="Scope display name, e.g. a subscription name.")


def _add_batch_args(p: argparse.ArgumentParser, *, wait: bool = True) -> None:
    p.add_argument(
        "--concurrency",
        type=_positive_int,
        default=DEFAULT_CONCURRENCY,
        help=f"Operations to run in parallel (default: {DEFAULT_CONCURRENCY}).",
    )
    if wait:
        p.add_argument("--wait", type=parse_wait, help="Wait up to this long for each change to take effect (e.g. 300, 5m).")


def _add_set_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--config", help="JSON or YAML list of {role, scope} objects; '-' reads stdin.")
    p.add_argument("--role", action="append", default=[], metavar="NAME=SCOPE", help="Role and scope (repeatable).")


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="az-pim",
        description="List, activate, deactivate and clean up Azure Privileged Identity Management (PIM) roles.",
    )
    ap.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    ap.add_argument("-v", "--verbose", action="count", default=0, help="Increase logging verbosity (repeatable).")
    ap.add_argument("--quiet", action="store_true", help="Only show errors.")
    ap.add_argument("--out-json", help="Write the operation report as JSON to this path.")

    auth = ap.add_argument_group("authentication")
    auth.add_argument("--auth-method", default="auto", help=f"One of: {', '.join(AUTH_METHODS)} (default: auto).")
    auth.add_argument("--tenant-id", help="Tenant ID (client-secret auth; optional for device-code).")
    auth.add_argument("--client-id", help="Service principal client ID for client-secret auth.")
    auth.add_argument("--client-secret", help="Service principal client secret for client-secret auth.")
    auth.add_argument("--arm-token", help="Azure Resource Manager access token; bypasses other auth methods.")
    auth.add_argument("--graph-token", help="Microsoft Graph access token, used with --arm-token.")
    auth.add_argument("--no-az-token-cache", action="store_true", help="Do not read ~/.azure/msal_token_cache.json.")

    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("list", help="List eligible (or active) role assignments.")
    p.add_argument("--active", action="store_true", help="List active assignments instead of eligible ones.")
    p.add_argument("--filter", choices=[f.value for f in ListFilter], help="Listing filter.")
    _add_scope_args(p)
    p.set_defaults(func=cmd_list)

    # activate
    act = sub.add_parser("activate", help="Activate eligible roles.").add_subparsers(dest="activate_command", required=True)

    p = act.add_parser("role", help="Activate one role.")
    p.add_argument("role_name", metavar="role")
    p.add_argument("justification")
    p.add_argument("--duration", type=_duration, default=DEFAULT_DURATION, help="Minutes (default: 480).")
    p.add_argument("--wait", type=parse_wait, help="Wait up to this long for the role to become active.")
    _add_scope_args(p)
    p.set_defaults(func=cmd_activate_role)

    p = act.add_parser("set", help="Activate a set of roles.")
    p.add_argument("justification")
    _add_set_args(p)
    p.add_argument("--duration", type=_duration, default=DEFAULT_DURATION, help="Minutes (default: 480).")
    _add_batch_args(p)
    p.set_defaults(func=cmd_activate_set)

    p = act.add_parser("interactive", help="Pick roles to activate in a terminal UI.")
    p.add_argument("--justification", help="Pre-filled justification.")
    p.add_argument("--duration", type=_duration, default=DEFAULT_DURATION, help="Minutes (default: 480).")
    _add_batch_args(p)
    p.set_defaults(func=cmd_activate_interactive)

    # deactivate
    deact = sub.add_parser("deactivate", help="Deactivate active roles.").add_subparsers(dest="deactivate_command", required=True)

    p = deact.add_parser("role", help="Deactivate one role.")
    p.add_argument("role_name", metavar="role")
    p.add_argument("--wait", type=parse_wait, help="Wait up to this long for the role to be removed.")
    _add_scope_args(p)
    p.set_defaults(func=cmd_deactivate_role)

    p = deact.add_parser("set", help="Deactivate a set of roles.")
    _add_set_args(p)
    _add_batch_args(p)
    p.set_defaults(func=cmd_deactivate_set)

    p = deact.add_parser("interactive", help="Pick roles to deactivate in a terminal UI.")
    _add_batch_args(p)
    p.set_defaults(func=cmd_deactivate_interactive)

    # role
    role = sub.add_parser("role", help="Role assignments, definitions and resources.").add_subparsers(dest="role_command", required=True)

    assignment = role.add_parser("assignment", help="Role assignments.").add_subparsers(dest="assignment_command", required=True)
    p = assignment.add_parser("list", help="List role assignments at a scope.")
    p.add_argument("--no-resolve-principals", action="store_true", help="Skip Microsoft Graph principal lookups.")
    _add_scope_args(p)
    p.set_defaults(func=cmd_role_assignment_list)

    p = assignment.add_parser("delete", help="Delete one role assignment.")
    p.add_argument("assignment_id", help="Full role assignment id.")
    _add_scope_args(p)
    p.set_defaults(func=cmd_role_assignment_delete)

    p = assignment.add_parser("delete-set", help="Delete role assignments listed in a config file.")
    p.add_argument("--config", required=True, help="JSON or YAML list from `role assignment list`; '-' reads stdin.")
    p.add_argument("--yes", action="store_true", help="Do not ask for confirmation.")
    _add_batch_args(p, wait=False)
    _add_scope_args(p)
    p.set_defaults(func=cmd_role_assignment_delete_set)

    definition = role.add_parser("definition", help="Role definitions.").add_subparsers(dest="definition_command", required=True)
    p = definition.add_parser("list", help="List role definitions at a scope.")
    _add_scope_args(p)
    p.set_defaults(func=cmd_role_definition_list)

    resources = role.add_parser("resources", help="Child resources.").add_subparsers(dest="resources_command", required=True)
    p = resources.add_parser("list", help="List child resources of a scope.")
    p.add_argument("--skip-nested", action="store_true", help="Only list direct children.")
    _add_scope_args(p)
    p.set_defaults(func=cmd_role_resources_list)

    # cleanup
    cleanup = sub.add_parser("cleanup", help="Delete orphaned role assignments.").add_subparsers(dest="cleanup_command", required=True)
    for name, text in (
        ("all", "Orphaned role assignments and orphaned eligible role assignments."),
        ("auto", "Activate admin roles where needed, then clean up every subscription they cover."),
        ("orphaned-assignments", "Role assignments whose principal no longer exists."),
        ("orphaned-eligible-assignments", "Eligible role assignments whose principal no longer exists."),
    ):
        p = cleanup.add_parser(name, help=text)
        p.add_argument("--yes", action="store_true", help="Do not ask for confirmation.")
        p.add_argument("--skip-nested", action="store_true", help="Do not descend into child resources.")
        _add_batch_args(p, wait=False)
        _add_scope_args(p)
        p.set_defaults(func=cmd_cleanup)

    p = sub.add_parser("init", help="Print a shell completion script.")
    p.add_argument("shell", choices=SHELLS)
    p.set_defaults(func=cmd_init)

    return ap


def main(
    argv: Optional[list[str]] = None,
    *,
    client_factory: Optional[Factory] = None,
    graph_factory: Optional[Factory] = None,
) -> int:
    args = build_parser().parse_args(argv)
    try:
        log.setup(verbose=args.verbose, quiet=args.quiet)
    except ValueError as e:
        print(f"{colored('[-] ', 'red')}Error: {e}", file=sys.stderr)
        return 2

    ctx = Context(args, client_factory, graph_factory)
    try:
        return args.func(ctx)
    except ValidationError as e:
        log.error(f"Error: {e}")
        return 2
    except PimError as e:
        log.error(f"Error: {e}")
        return 1
    except KeyboardInterrupt:
        log.error("interrupted")
        return 130


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
