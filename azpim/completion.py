from __future__ import annotations

import argparse
from typing import Iterator


SHELLS = ("bash", "zsh", "fish")


def _subparsers(parser: argparse.ArgumentParser) -> dict[str, argparse.ArgumentParser]:
    for action in parser._actions:
        if isinstance(action, argparse._SubParsersAction):
            return dict(action.choices)
    return {}


def _flags(parser: argparse.ArgumentParser) -> list[str]:
    out: list[str] = []
    for action in parser._actions:
        out.extend(s for s in action.option_strings if s.startswith("--"))
    return out


def walk(parser: argparse.ArgumentParser, path: tuple = ()) -> Iterator[tuple[tuple, list[str], list[str]]]:
    """
    Yield (command path, subcommand names, long flags) for every parser.
    """
    subs = _subparsers(parser)
    yield path, sorted(subs), _flags(parser)
    for name, sub in subs.items():
        yield from walk(sub, path + (name,))


def _bash(parser: argparse.ArgumentParser, prog: str) -> str:
    fn = "_" + prog.replace("-", "_")
    cases = []
    for path, subs, flags in walk(parser):
        words = " ".join(subs + flags)
        cases.append(f'        "{" ".join(path)}") opts="{words}" ;;')
    body = "\n".join(cases)
    return f"""{fn}() {{
    local cur path w opts
    cur="${{COMP_WORDS[COMP_CWORD]}}"
    path=""
    for w in "${{COMP_WORDS[@]:1:COMP_CWORD-1}}"; do
        [[ "$w" != -* ]] && path="$path $w"
    done
    opts=""
    case "${{path# }}" in
{body}
    esac
    COMPREPLY=( $(compgen -W "$opts" -- "$cur") )
}}
complete -F {fn} {prog}
"""


def _fish(parser: argparse.ArgumentParser, prog: str) -> str:
    lines = [f"complete -c {prog} -f"]
    for path, subs, flags in walk(parser):
        if not path:
            cond = "__fish_use_subcommand"
        else:
            cond = " ".join(f"; and __fish_seen_subcommand_from {p}" for p in path)[6:]
        for s in subs:
            lines.append(f'complete -c {prog} -n "{cond}" -a {s}')
        for f in flags:
            lines.append(f'complete -c {prog} -n "{cond}" -l {f[2:]}')
    return "\n".join(lines) + "\n"


def completion_script(parser: argparse.ArgumentParser, shell: str, *, prog: str = "az-pim") -> str:
    if shell == "bash":
        return _bash(parser, prog)
    if shell == "zsh":
        return "autoload -U +X bashcompinit && bashcompinit\n" + _bash(parser, prog)
    if shell == "fish":
        return _fish(parser, prog)
    raise ValueError(f"unsupported shell '{shell}'. Use one of: {', '.join(SHELLS)}")
