from __future__ import annotations

import json
import os
import sys
from datetime import datetime, timezone
from typing import Any, Optional, TextIO

from termcolor import colored

from .orchestrator import OutcomeReport


SCHEMA_VERSION = 1
TOOL_NAME = "az-pim"

_STATUS_COLORS = {"success": "green", "failure": "red", "timed_out": "yellow"}


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def atomic_write_json(path: str, obj: Any) -> None:
    tmp_path = f"{path}.tmp"
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(obj, f, indent=2, sort_keys=False, default=str)
        f.write("\n")
    os.replace(tmp_path, path)


def print_json(obj: Any, *, out: Optional[TextIO] = None) -> None:
    out = out or sys.stdout
    json.dump(obj, out, indent=2, default=str)
    out.write("\n")


def build_report(*, command: str, report: OutcomeReport, extra_summary: Optional[dict] = None) -> dict:
    summary: dict[str, Any] = {"total_operations": len(report)}
    summary.update(report.counts())
    if extra_summary:
        summary.update(extra_summary)
    return {
        "tool": TOOL_NAME,
        "schema_version": SCHEMA_VERSION,
        "command": command,
        "generated_at": utc_now_iso(),
        "operations": report.to_dicts(),
        "summary": summary,
    }


def print_summary(report: OutcomeReport, *, out: Optional[TextIO] = None) -> None:
    out = out or sys.stderr
    if not len(report):
        out.write(f"{colored('[*] ', 'cyan')}Nothing to do.\n")
        return
    out.write(colored("Results", "yellow", attrs=["bold"]) + ":\n")
    for e in report.entries:
        status = e.outcome.status
        line = f"  - {colored(status, _STATUS_COLORS.get(status, 'white'))}: {e.operation.describe()}"
        reason = getattr(e.outcome, "reason", None)
        if reason:
            line += f" ({reason})"
        out.write(line + "\n")
    counts = report.counts()
    out.write(
        f"{counts['success']} succeeded, {counts['failure']} failed, {counts['timed_out']} timed out waiting\n"
    )
