from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional, Protocol, Union

from tqdm import tqdm

from . import log
from .errors import PermanentRemoteError
from .models import AssignmentState, RoleAssignment, Scope
from .progress import StageProgress
from .retry import RetryingOperation


DEFAULT_CONCURRENCY = 4
DEFAULT_DURATION = 480  # minutes
DEFAULT_POLL_INTERVAL = 5.0


class AssignmentDirectory(Protocol):
    def find_eligible(self, role: str, scope: Scope) -> Optional[RoleAssignment]: ...

    def find_active(self, role: str, scope: Scope) -> Optional[RoleAssignment]: ...

    def activate(self, assignment: RoleAssignment, justification: str, duration: int) -> Any: ...

    def deactivate(self, assignment: RoleAssignment) -> Any: ...

    def delete_assignment(self, assignment_id: str, scope: Scope) -> Any: ...

    def delete_eligible(self, assignment: RoleAssignment) -> Any: ...

    def get_assignment_state(
        self, role: str, scope: Scope, request_type: Optional[str] = None
    ) -> AssignmentState: ...


# Operations


@dataclass(frozen=True)
class ActivateOperation:
    role: str
    scope: Scope
    justification: str
    duration: int = DEFAULT_DURATION
    wait: bool = True
    assignment: Optional[RoleAssignment] = field(default=None, compare=False)

    kind = "activate"
    request_type = "SelfActivate"
    expected_state: Optional[AssignmentState] = field(default=AssignmentState.ACTIVE, init=False)

    @property
    def key(self) -> tuple[str, str]:
        return (self.role, self.scope.value)

    def describe(self) -> str:
        return f'activate "{self.role}" in {self.scope}'

    def execute(self, directory: AssignmentDirectory) -> Any:
        assignment = self.assignment or directory.find_eligible(self.role, self.scope)
        if assignment is None:
            raise PermanentRemoteError(f'no eligible assignment for "{self.role}" in {self.scope}')
        return directory.activate(assignment, self.justification, self.duration)

    def reached(self, state: AssignmentState) -> bool:
        return state is AssignmentState.ACTIVE


@dataclass(frozen=True)
class DeactivateOperation:
    role: str
    scope: Scope
    wait: bool = True
    assignment: Optional[RoleAssignment] = field(default=None, compare=False)

    kind = "deactivate"
    request_type = "SelfDeactivate"
    expected_state: Optional[AssignmentState] = field(default=AssignmentState.REMOVED, init=False)

    @property
    def key(self) -> tuple[str, str]:
        return (self.role, self.scope.value)

    def describe(self) -> str:
        return f'deactivate "{self.role}" in {self.scope}'

    def execute(self, directory: AssignmentDirectory) -> Any:
        assignment = self.assignment or directory.find_active(self.role, self.scope)
        if assignment is None:
            raise PermanentRemoteError(f'no active assignment for "{self.role}" in {self.scope}')
        return directory.deactivate(assignment)

    def reached(self, state: AssignmentState) -> bool:
        # Back to eligible counts as removed for the caller's own activation.
        return state in (AssignmentState.ELIGIBLE, AssignmentState.REMOVED)


@dataclass(frozen=True)
class DeleteAssignmentOperation:
    assignment: RoleAssignment
    wait: bool = False

    kind = "delete"
    request_type = None
    expected_state: Optional[AssignmentState] = field(default=None, init=False)

    @property
    def role(self) -> str:
        return self.assignment.role

    @property
    def scope(self) -> Scope:
        return self.assignment.scope

    @property
    def key(self) -> tuple[str, str]:
        return self.assignment.key

    def describe(self) -> str:
        who = f" for {self.assignment.principal_id}" if self.assignment.principal_id else ""
        return f'delete assignment "{self.role}"{who} in {self.scope}'

    def execute(self, directory: AssignmentDirectory) -> Any:
        if not self.assignment.assignment_id:
            raise PermanentRemoteError(f"no assignment id for {self.assignment.friendly()}")
        return directory.delete_assignment(self.assignment.assignment_id, self.scope)

    def reached(self, state: AssignmentState) -> bool:
        return True


@dataclass(frozen=True)
class DeleteEligibleOperation:
    assignment: RoleAssignment
    wait: bool = False

    kind = "delete-eligible"
    request_type = None
    expected_state: Optional[AssignmentState] = field(default=None, init=False)

    @property
    def role(self) -> str:
        return self.assignment.role

    @property
    def scope(self) -> Scope:
        return self.assignment.scope

    @property
    def key(self) -> tuple[str, str]:
        return self.assignment.key

    def describe(self) -> str:
        who = f" for {self.assignment.principal_id}" if self.assignment.principal_id else ""
        return f'delete eligible assignment "{self.role}"{who} in {self.scope}'

    def execute(self, directory: AssignmentDirectory) -> Any:
        return directory.delete_eligible(self.assignment)

    def reached(self, state: AssignmentState) -> bool:
        return True


Operation = Union[ActivateOperation, DeactivateOperation, DeleteAssignmentOperation, DeleteEligibleOperation]


# Outcomes


@dataclass(frozen=True)
class Success:
    detail: str = ""
    status = "success"


@dataclass(frozen=True)
class Failure:
    reason: str
    status = "failure"


@dataclass(frozen=True)
class TimedOutWaiting:
    reason: str
    status = "timed_out"


Outcome = Union[Success, Failure, TimedOutWaiting]


@dataclass(frozen=True)
class ReportEntry:
    index: int
    operation: Operation
    outcome: Outcome
    attempts: int = 0
    elapsed: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "operation": self.operation.kind,
            "role": self.operation.role,
            "scope": self.operation.scope.value,
            "status": self.outcome.status,
            "attempts": self.attempts,
            "elapsed_seconds": round(self.elapsed, 3),
        }
        reason = getattr(self.outcome, "reason", None) or getattr(self.outcome, "detail", None)
        if reason:
            out["reason"] = reason
        return out


class OutcomeReport:
    """
    One entry per submitted operation. Entries arrive in completion order;
    `entries` is sorted by submission index and `by_key` groups by (role, scope).
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[int, ReportEntry] = {}

    def add(self, entry: ReportEntry) -> None:
        with self._lock:
            if entry.index in self._entries:
                raise RuntimeError(f"duplicate outcome for operation #{entry.index}")
            self._entries[entry.index] = entry

    def has(self, index: int) -> bool:
        with self._lock:
            return index in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @property
    def entries(self) -> list[ReportEntry]:
        with self._lock:
            return [self._entries[i] for i in sorted(self._entries)]

    @property
    def outcomes(self) -> list[Outcome]:
        return [e.outcome for e in self.entries]

    def by_key(self) -> dict[tuple[str, str], list[Outcome]]:
        out: dict[tuple[str, str], list[Outcome]] = {}
        for e in self.entries:
            out.setdefault(e.operation.key, []).append(e.outcome)
        return out

    def counts(self) -> dict[str, int]:
        out = {"success": 0, "failure": 0, "timed_out": 0}
        for o in self.outcomes:
            out[o.status] += 1
        return out

    @property
    def failed(self) -> bool:
        return any(not isinstance(o, Success) for o in self.outcomes)

    def to_dicts(self) -> list[dict[str, Any]]:
        return [e.to_dict() for e in self.entries]


class BatchOrchestrator:
    """
    Run operations across a bounded worker pool.

    Every operation goes through RetryingOperation on its own; a failure never
    cancels the rest of the batch. With `wait_timeout` set (seconds, 0 allowed)
    each successful mutation is followed by polling the directory until the
    operation's expected state is observed or the deadline passes, which is
    reported as TimedOutWaiting rather than Failure.
    """

    def __init__(
        self,
        directory: AssignmentDirectory,
        *,
        concurrency: int = DEFAULT_CONCURRENCY,
        wait_timeout: Optional[float] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        retry: Optional[RetryingOperation] = None,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], None]] = None,
        show_progress: bool = False,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if wait_timeout is not None and wait_timeout < 0:
            raise ValueError("wait timeout must be >= 0")
        self.directory = directory
        self.concurrency = int(concurrency)
        self.wait_timeout = wait_timeout
        self.poll_interval = poll_interval
        self.retry = retry or RetryingOperation()
        self._clock = clock or time.monotonic
        self._sleep = sleep or time.sleep
        self._show_progress = show_progress

    def run(self, operations: Iterable[Operation]) -> OutcomeReport:
        ops = list(operations)
        report = OutcomeReport()
        if not ops:
            return report

        progress = StageProgress(
            total=len(ops),
            desc="Running operations",
            tqdm_factory=tqdm if self._show_progress else None,
        )
        try:
            with ThreadPoolExecutor(max_workers=min(self.concurrency, len(ops))) as ex:
                futs = {ex.submit(self._run_one, i, op, report, progress): i for i, op in enumerate(ops)}
                for fut in as_completed(futs):
                    i = futs[fut]
                    try:
                        fut.result()
                    except Exception as e:
                        if not report.has(i):
                            report.add(ReportEntry(i, ops[i], Failure(f"unexpected error: {e}")))
        finally:
            progress.close()

        for i, op in enumerate(ops):
            if not report.has(i):
                report.add(ReportEntry(i, op, Failure("operation did not report an outcome")))
        return report

    def _run_one(self, index: int, op: Operation, report: OutcomeReport, progress: StageProgress) -> None:
        start = self._clock()
        progress.stage(index, "submit")
        result = self.retry.execute(lambda: op.execute(self.directory), what=op.describe())

        outcome: Outcome
        if not result.ok:
            outcome = Failure(str(result.error))
            log.error(f"{op.describe()}: {result.error}")
        elif self.wait_timeout is not None and op.wait and op.expected_state is not None:
            progress.stage(index, "wait")
            outcome = self._wait(op)
            if isinstance(outcome, TimedOutWaiting):
                log.warn(f"{op.describe()}: {outcome.reason}")
            else:
                log.success(f"{op.describe()}: {outcome.detail}")
        else:
            outcome = Success("submitted")
            log.success(f"{op.describe()}: submitted")

        report.add(ReportEntry(index, op, outcome, attempts=result.attempts, elapsed=self._clock() - start))
        progress.finish(index, outcome.status)

    def _wait(self, op: Operation) -> Outcome:
        assert self.wait_timeout is not None
        deadline = self._clock() + self.wait_timeout
        last: Optional[AssignmentState] = None
        while True:
            try:
                last = self.directory.get_assignment_state(op.role, op.scope, op.request_type)
            except Exception as e:
                # The mutation went through; a failed poll only means "not yet".
                log.debug(f"{op.describe()}: state poll failed: {e}")
            if last is not None and op.reached(last):
                return Success(last.value)
            now = self._clock()
            if now >= deadline:
                state = last.value if last is not None else "unknown"
                expected = op.expected_state.value if op.expected_state is not None else "done"
                return TimedOutWaiting(f"not {expected} after {self.wait_timeout:g}s (last state: {state})")
            self._sleep(min(self.poll_interval, deadline - now))
