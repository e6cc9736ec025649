# concurrency.py
from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Dict, Optional

from .model import ConcurrencyKey
from .scheduler import Run
from .ui.console import get_console


@dataclass(frozen=True)
class Admission:
    run: Run
    superseded: Optional[Run] = None

    @property
    def proceed(self) -> bool:
        return not self.run.cancelled


class ConcurrencyGroupManager:
    """
    Process-wide "current run per concurrency key" registry.

    Admitting a run whose key already maps to a still-active run cancels the
    older one and makes the newcomer current. The decision, the cancellation
    signal and the registration happen under one lock, so two runs can never
    both believe they are current.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._current: Dict[ConcurrencyKey, Run] = {}

    def admit(self, run: Run) -> Admission:
        with self._lock:
            previous = self._current.get(run.key)
            self._current[run.key] = run
            if previous is None or previous is run:
                return Admission(run=run)
            if not previous.cancel(superseded_by=run.run_id):
                # already finished; nothing to supersede
                return Admission(run=run)

        run.supersedes = previous.run_id
        get_console().print_superseded(previous.run_id, run.run_id)
        return Admission(run=run, superseded=previous)

    def release(self, run: Run) -> None:
        """Forget `run` once it is terminal, unless a newer run already replaced it."""
        with self._lock:
            if self._current.get(run.key) is run:
                del self._current[run.key]

    def current(self, key: ConcurrencyKey) -> Optional[Run]:
        with self._lock:
            return self._current.get(key)

    def active_keys(self) -> list[ConcurrencyKey]:
        with self._lock:
            return list(self._current.keys())
