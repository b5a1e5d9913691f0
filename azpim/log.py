from __future__ import annotations

import os
import sys
import threading

from termcolor import colored
from tqdm import tqdm


LEVELS = {"error": 0, "warn": 1, "info": 2, "debug": 3, "trace": 4}

_lock = threading.Lock()
_level = LEVELS["info"]


def set_level(name: str) -> None:
    global _level
    key = (name or "").strip().lower()
    if key not in LEVELS:
        raise ValueError(f"Invalid log level '{name}'. Valid values: {', '.join(LEVELS)}")
    _level = LEVELS[key]


def setup(*, verbose: int = 0, quiet: bool = False) -> None:
    """
    AZ_PIM_LOG wins over the command line flags.
    """
    env = os.getenv("AZ_PIM_LOG")
    if env:
        set_level(env)
    elif quiet:
        set_level("error")
    elif verbose >= 2:
        set_level("trace")
    elif verbose == 1:
        set_level("debug")
    else:
        set_level("info")


def enabled(name: str) -> bool:
    return LEVELS[name] <= _level


def _emit(level: str, prefix: str, color: str, msg: str) -> None:
    if not enabled(level):
        return
    with _lock:
        # tqdm.write keeps active progress bars intact.
        tqdm.write(f"{colored(prefix, color)}{msg}", file=sys.stderr)


def error(msg: str) -> None:
    _emit("error", "[-] ", "red", msg)


def warn(msg: str) -> None:
    _emit("warn", "[!] ", "yellow", msg)


def info(msg: str) -> None:
    _emit("info", "[*] ", "cyan", msg)


def success(msg: str) -> None:
    _emit("info", "[+] ", "green", msg)


def debug(msg: str) -> None:
    _emit("debug", "[*] ", "grey", msg)


def trace(msg: str) -> None:
    _emit("trace", "[.] ", "grey", msg)
