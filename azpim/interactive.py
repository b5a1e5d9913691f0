from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from typing import Callable, Iterable, Optional

import readchar
from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .models import RoleAssignment
from .orchestrator import DEFAULT_DURATION, ActivateOperation, DeactivateOperation, Operation


MIN_DURATION = 1
MAX_DURATION = 480

ENABLED = " ✓ "
DISABLED = " ☐ "
BROWSE_HELP = "↑ or ↓ to move | Space to toggle | / to filter | Enter to review | Esc to quit"
FILTER_HELP = "Type to filter by role or scope | Enter to apply | Esc to quit"
CONFIRM_HELP = "y or Enter to submit | n to go back | Esc to quit"
JUSTIFICATION_HELP = "Type to enter justification | Tab to change sections"
DURATION_HELP = "↑ or ↓ to update duration | Tab to change sections"


class Mode(str, enum.Enum):
    BROWSING = "browsing"
    FILTERING = "filtering"
    CONFIRMING = "confirming"
    SUBMITTED = "submitted"
    CANCELLED = "cancelled"


class Focus(str, enum.Enum):
    SCOPES = "scopes"
    DURATION = "duration"
    JUSTIFICATION = "justification"


@dataclass(frozen=True)
class Key:
    name: str
    char: str = ""

    @classmethod
    def of(cls, char: str) -> "Key":
        return cls("char", char)


UP = Key("up")
DOWN = Key("down")
SPACE = Key("space")
ENTER = Key("enter")
ESC = Key("esc")
TAB = Key("tab")
BACKTAB = Key("backtab")
BACKSPACE = Key("backspace")
CLEAR = Key("clear")


@dataclass(frozen=True)
class SelectorState:
    """
    Everything the picker knows. Never mutated: `transition` returns a new
    value for every input event.

    `selected` holds assignment identities, not positions, so narrowing or
    clearing the filter cannot drop or duplicate a selection.
    """

    items: tuple = ()
    cursor: int = 0
    selected: frozenset = frozenset()
    filter: str = ""
    mode: Mode = Mode.BROWSING
    focus: Focus = Focus.SCOPES
    justification: Optional[str] = None
    duration: Optional[int] = None
    warnings: tuple = field(default=(), compare=False)

    @classmethod
    def initial(
        cls,
        items: Iterable[RoleAssignment],
        *,
        justification: Optional[str] = None,
        duration: Optional[int] = None,
    ) -> "SelectorState":
        state = cls(items=tuple(items), justification=justification, duration=duration)
        return replace(state, warnings=_warnings(state))

    @property
    def visible(self) -> tuple:
        needle = self.filter.strip().lower()
        if not needle:
            return self.items
        return tuple(a for a in self.items if needle in a.role.lower() or needle in a.scope_name.lower())

    @property
    def current(self) -> Optional[RoleAssignment]:
        vis = self.visible
        if not vis:
            return None
        return vis[min(self.cursor, len(vis) - 1)]

    @property
    def selected_items(self) -> list[RoleAssignment]:
        return [a for a in self.items if a.identity in self.selected]

    @property
    def terminal(self) -> bool:
        return self.mode in (Mode.SUBMITTED, Mode.CANCELLED)

    def is_selected(self, item: RoleAssignment) -> bool:
        return item.identity in self.selected

    def operations(self, kind: str, *, wait: bool = True) -> list[Operation]:
        """
        Operations for the selected assignments; empty unless submitted.
        """
        if self.mode is not Mode.SUBMITTED:
            return []
        ops: list[Operation] = []
        for a in self.selected_items:
            if kind == "activate":
                ops.append(
                    ActivateOperation(
                        role=a.role,
                        scope=a.scope,
                        justification=self.justification or "",
                        duration=self.duration or DEFAULT_DURATION,
                        wait=wait,
                        assignment=a,
                    )
                )
            elif kind == "deactivate":
                ops.append(DeactivateOperation(role=a.role, scope=a.scope, wait=wait, assignment=a))
            else:
                raise ValueError(f"unsupported operation kind: {kind}")
        return ops


def _warnings(state: SelectorState) -> tuple:
    out = []
    if state.justification is not None and not state.justification.strip():
        out.append("Justification is required")
    return tuple(out)


def _focus_order(state: SelectorState) -> list[Focus]:
    order = [Focus.SCOPES]
    if state.duration is not None:
        order.append(Focus.DURATION)
    if state.justification is not None:
        order.append(Focus.JUSTIFICATION)
    return order


def _cycle_focus(state: SelectorState, step: int) -> SelectorState:
    order = _focus_order(state)
    idx = order.index(state.focus) if state.focus in order else 0
    return replace(state, focus=order[(idx + step) % len(order)])


def _move(state: SelectorState, step: int) -> SelectorState:
    n = len(state.visible)
    if n == 0:
        return replace(state, cursor=0)
    return replace(state, cursor=(min(state.cursor, n - 1) + step) % n)


def _toggle(state: SelectorState) -> SelectorState:
    item = state.current
    if item is None:
        return state
    if item.identity in state.selected:
        return replace(state, selected=state.selected - {item.identity})
    return replace(state, selected=state.selected | {item.identity})


def _browse(state: SelectorState, key: Key) -> SelectorState:
    if key in (TAB, BACKTAB):
        return _cycle_focus(state, 1 if key == TAB else -1)

    if state.focus is Focus.JUSTIFICATION:
        if key.name == "char" or key == SPACE:
            return replace(state, justification=(state.justification or "") + (key.char or " "))
        if key == BACKSPACE:
            return replace(state, justification=(state.justification or "")[:-1])
    elif state.focus is Focus.DURATION:
        if key == UP:
            return replace(state, duration=min(MAX_DURATION, (state.duration or MIN_DURATION) + 1))
        if key == DOWN:
            return replace(state, duration=max(MIN_DURATION, (state.duration or MIN_DURATION) - 1))
    else:
        if key == UP:
            return _move(state, -1)
        if key == DOWN:
            return _move(state, 1)
        if key == SPACE:
            return _toggle(state)
        if key == Key.of("/"):
            return replace(state, mode=Mode.FILTERING)

    if key == ENTER and not state.warnings:
        return replace(state, mode=Mode.CONFIRMING)
    return state


def _filtering(state: SelectorState, key: Key) -> SelectorState:
    if key.name == "char" or key == SPACE:
        return replace(state, filter=state.filter + (key.char or " "), cursor=0)
    if key == BACKSPACE:
        return replace(state, filter=state.filter[:-1], cursor=0)
    if key == CLEAR:
        return replace(state, filter="", cursor=0)
    if key == ENTER:
        return replace(state, mode=Mode.BROWSING, cursor=0)
    return state


def _confirming(state: SelectorState, key: Key) -> SelectorState:
    if key == ENTER or key in (Key.of("y"), Key.of("Y")):
        return replace(state, mode=Mode.SUBMITTED)
    if key in (Key.of("n"), Key.of("N"), BACKSPACE):
        return replace(state, mode=Mode.BROWSING)
    return state


def transition(state: SelectorState, key: Key) -> SelectorState:
    if state.terminal:
        return state
    if key == ESC:
        return replace(state, mode=Mode.CANCELLED)

    if state.mode is Mode.FILTERING:
        new = _filtering(state, key)
    elif state.mode is Mode.CONFIRMING:
        new = _confirming(state, key)
    else:
        new = _browse(state, key)
    return replace(new, warnings=_warnings(new))


def run_events(state: SelectorState, keys: Iterable[Key]) -> SelectorState:
    for key in keys:
        state = transition(state, key)
        if state.terminal:
            break
    return state


_RAW_KEYS = {
    readchar.key.UP: UP,
    readchar.key.DOWN: DOWN,
    readchar.key.SPACE: SPACE,
    readchar.key.ENTER: ENTER,
    readchar.key.CR: ENTER,
    readchar.key.LF: ENTER,
    readchar.key.ESC: ESC,
    readchar.key.TAB: TAB,
    "\x1b[Z": BACKTAB,
    readchar.key.BACKSPACE: BACKSPACE,
    "\x08": BACKSPACE,
    "\x15": CLEAR,  # ctrl-u
    "\x03": ESC,  # ctrl-c
}


def key_from_raw(raw: str) -> Optional[Key]:
    if raw in _RAW_KEYS:
        return _RAW_KEYS[raw]
    if len(raw) == 1 and raw.isprintable():
        return Key.of(raw)
    return None


def render(state: SelectorState, *, title: str) -> Group:
    parts: list = [Text(title, style="bold", justify="center")]

    if state.justification is not None:
        style = "reverse" if state.focus is Focus.JUSTIFICATION else ""
        parts.append(Panel(Text(state.justification, style=style), title="Justification"))

    table = Table(expand=True, show_lines=False)
    table.add_column("Role", no_wrap=True)
    table.add_column("Scope")
    current = state.current
    for item in state.visible:
        mark = ENABLED if state.is_selected(item) else DISABLED
        style = "reverse" if item is current and state.focus is Focus.SCOPES else ""
        table.add_row(f"{mark} {item.role}", f"{item.scope_name}\n{item.scope}", style=style)
    scope_title = f"Scopes (filter: {state.filter})" if state.filter or state.mode is Mode.FILTERING else "Scopes"
    parts.append(Panel(table, title=scope_title))

    if state.duration is not None:
        style = "reverse" if state.focus is Focus.DURATION else ""
        parts.append(Panel(Text(f"{state.duration} minutes", style=style), title="Duration"))

    if state.mode is Mode.CONFIRMING:
        chosen = state.selected_items
        body = "\n".join(f"* {a.friendly()}" for a in chosen) or "(nothing selected)"
        parts.append(Panel(Text(body), title=f"Submit {len(chosen)} role(s)?"))
        help_text = CONFIRM_HELP
    elif state.mode is Mode.FILTERING:
        help_text = FILTER_HELP
    elif state.focus is Focus.JUSTIFICATION:
        help_text = JUSTIFICATION_HELP
    elif state.focus is Focus.DURATION:
        help_text = DURATION_HELP
    else:
        help_text = BROWSE_HELP
    parts.append(Panel(Text(help_text, justify="center"), title="Help"))

    if state.warnings:
        parts.append(Panel(Text("\n".join(state.warnings), style="bold reverse", justify="center"), title="Warnings!"))
    return Group(*parts)


def run_selector(
    items: Iterable[RoleAssignment],
    *,
    title: str,
    justification: Optional[str] = None,
    duration: Optional[int] = None,
    read_key: Callable[[], str] = readchar.readkey,
    console: Optional[Console] = None,
) -> SelectorState:
    """
    Drive the picker on a live terminal until it reaches Submitted or
    Cancelled.
    """
    state = SelectorState.initial(items, justification=justification, duration=duration)
    console = console or Console(stderr=True)
    with Live(render(state, title=title), console=console, screen=True, auto_refresh=False) as live:
        while not state.terminal:
            try:
                raw = read_key()
            except KeyboardInterrupt:
                raw = "\x03"
            key = key_from_raw(raw)
            if key is None:
                continue
            state = transition(state, key)
            live.update(render(state, title=title), refresh=True)
    return state
