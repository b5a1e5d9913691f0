from __future__ import annotations

import threading
from typing import Callable, Optional, Sequence


class StageProgress:
    """
    Thread-safe progress for a batch of operations.

    One overall tqdm bar (when a factory is given). Each operation advances
    through `stages` and contributes one full unit once finished; the postfix
    shows how many operations sit in each stage and how they ended.
    """

    def __init__(
        self,
        *,
        total: int,
        desc: str,
        unit: str = "op",
        tqdm_factory: Optional[Callable] = None,
        stages: Sequence[str] = ("submit", "wait"),
    ) -> None:
        self._lock = threading.Lock()
        self._bar = tqdm_factory(total=total, desc=desc, unit=unit, leave=False) if tqdm_factory and total else None
        self._stages = list(stages)
        self._stage_index = {name: i for i, name in enumerate(self._stages)}
        self._weight = 1.0 / max(1, len(self._stages))
        self._current: dict[int, str] = {}
        self._reached: dict[int, int] = {}
        self._results: dict[str, int] = {}

    def stage(self, task_id: int, stage: str) -> None:
        with self._lock:
            idx = self._stage_index.get(stage)
            prev = self._reached.get(task_id, -1)
            if self._bar is not None and idx is not None and idx > prev:
                # Stages only move forward.
                self._reached[task_id] = idx
                self._bar.update((idx - prev) * self._weight)
            self._current[task_id] = stage
            self._render_locked()

    def finish(self, task_id: int, result: str) -> None:
        with self._lock:
            self._current.pop(task_id, None)
            self._results[result] = self._results.get(result, 0) + 1
            if self._bar is not None:
                done = (self._reached.get(task_id, -1) + 1) * self._weight
                remaining = max(0.0, 1.0 - done)
                if remaining:
                    self._bar.update(remaining)
            self._render_locked()

    def close(self) -> None:
        with self._lock:
            if self._bar is not None:
                self._bar.close()
                self._bar = None

    def _render_locked(self) -> None:
        if self._bar is None:
            return
        counts: dict[str, int] = {}
        for st in self._current.values():
            counts[st] = counts.get(st, 0) + 1
        parts = [f"{k}:{counts[k]}" for k in self._stages if counts.get(k)]
        parts.extend(f"{k}:{v}" for k, v in sorted(self._results.items()))
        self._bar.set_postfix_str(" ".join(parts[:8]), refresh=True)
