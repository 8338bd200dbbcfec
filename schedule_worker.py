from __future__ import annotations

from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Optional
import logging
import queue
import threading
import time as _time

from config import EngineConfig
from scheduling_core import (
    DayOptimization,
    MoveVerdict,
    RunStore,
    ScheduledRun,
    TickResult,
    commit_day_optimization,
    commit_move,
    optimize_day,
    tick,
)

logger = logging.getLogger(__name__)


@dataclass
class _Command:
    kind: str
    args: tuple = ()
    future: Future = field(default_factory=Future)


class ScheduleWorker:
    """
    Single writer for one store.

    Status-clock ticks, optimizer passes and committed moves all run on one
    thread, one at a time, each against a snapshot freshly read from the
    store. A tick is due every `tick_interval_seconds`; requests submitted in
    between are queued and run in order.
    """

    def __init__(
        self,
        store: RunStore,
        *,
        config: EngineConfig = EngineConfig(),
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.config = config
        self.clock = clock
        self._queue: "queue.Queue[_Command]" = queue.Queue()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._next_tick = _time.monotonic() + config.tick_interval_seconds

    # -- submission (any thread) --

    def submit_optimize(self, day: date) -> "Future[DayOptimization]":
        return self._submit("optimize", day)

    def submit_move(self, run_id: str, target_line_id: str, proposed_start: datetime) -> "Future[tuple]":
        return self._submit("move", run_id, target_line_id, proposed_start)

    def submit_tick(self) -> "Future[TickResult]":
        return self._submit("tick")

    def _submit(self, kind: str, *args: Any) -> Future:
        cmd = _Command(kind=kind, args=args)
        self._queue.put(cmd)
        return cmd.future

    # -- lifecycle --

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="schedule-worker", daemon=True)
        self._thread.start()
        logger.info("Schedule worker started (tick every %.0fs)", self.config.tick_interval_seconds)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
        logger.info("Schedule worker stopped")

    def _run(self) -> None:
        while not self._stop.is_set():
            self.process_next(timeout=max(0.0, min(self._next_tick - _time.monotonic(), 0.5)))

    def process_next(self, timeout: float = 0.0) -> bool:
        """
        Run the periodic tick if it is due, else one queued command.

        Returns True when something ran.
        """
        if _time.monotonic() >= self._next_tick:
            self._next_tick = _time.monotonic() + self.config.tick_interval_seconds
            try:
                self._tick()
            except Exception:
                # partial progress is kept; the next tick picks up the rest
                logger.exception("Status clock tick failed")
            return True

        try:
            cmd = self._queue.get(timeout=timeout) if timeout > 0 else self._queue.get_nowait()
        except queue.Empty:
            return False

        if not cmd.future.set_running_or_notify_cancel():
            return True
        try:
            cmd.future.set_result(self._execute(cmd))
        except Exception as e:
            logger.exception("Schedule worker command %r failed", cmd.kind)
            cmd.future.set_exception(e)
        return True

    # -- commands (worker thread only) --

    def _execute(self, cmd: _Command) -> Any:
        if cmd.kind == "optimize":
            return self._optimize(*cmd.args)
        if cmd.kind == "move":
            return self._move(*cmd.args)
        if cmd.kind == "tick":
            return self._tick()
        raise ValueError(f"Unknown command: {cmd.kind}")

    def _tick(self) -> TickResult:
        snapshot = self.store.load_snapshot()
        return tick(snapshot, self.store, now=self.clock())

    def _optimize(self, day: date) -> DayOptimization:
        snapshot = self.store.load_snapshot()
        result = optimize_day(snapshot, day, now=self.clock())
        commit_day_optimization(self.store, snapshot, result)
        return result

    def _move(
        self,
        run_id: str,
        target_line_id: str,
        proposed_start: datetime,
    ) -> tuple[MoveVerdict, Optional[ScheduledRun]]:
        snapshot = self.store.load_snapshot()
        run = snapshot.require_run(run_id)
        return commit_move(self.store, snapshot, run, target_line_id, proposed_start, now=self.clock())
