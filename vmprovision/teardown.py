"""Single, signal-triggered release of everything a run acquired.

Acquisitions push a release action onto the controller's stack; unwinding
pops them in reverse. The controller moves ARMED -> UNWINDING -> DONE exactly
once, and ignores the trigger signals while it is unwinding so a second
interrupt cannot re-enter it.
"""

from __future__ import annotations

import enum
import signal
import threading
from dataclasses import dataclass
from typing import Callable

from .errors import RunInterrupted
from .executil import trace, warn

TRIGGER_SIGNALS = (signal.SIGINT, signal.SIGHUP, signal.SIGTERM)


class State(enum.Enum):
    ARMED = "armed"
    UNWINDING = "unwinding"
    DONE = "done"


@dataclass
class Release:
    label: str
    action: Callable[[], None]
    remedy: str = ""


@dataclass
class StepFailure:
    label: str
    error: str
    remedy: str


class TeardownController:
    def __init__(self, signals: tuple = TRIGGER_SIGNALS) -> None:
        self.state = State.ARMED
        self.failures: list[StepFailure] = []
        self._stack: list[Release] = []
        self._signals = signals
        self._saved: dict = {}

    @property
    def pending(self) -> list[Release]:
        return list(self._stack)

    def _can_handle_signals(self) -> bool:
        return threading.current_thread() is threading.main_thread()

    def arm(self) -> None:
        """Install the interrupt handlers; call before acquiring anything."""

        if not self._can_handle_signals():
            return
        for signum in self._signals:
            self._saved[signum] = signal.signal(signum, self._on_signal)
        trace("teardown.armed", signals=[int(s) for s in self._signals])

    def _on_signal(self, signum, frame) -> None:  # noqa: ARG002
        self._ignore_signals()
        trace("teardown.signal", signum=signum)
        raise RunInterrupted(signum)

    def _ignore_signals(self) -> None:
        if not self._saved or not self._can_handle_signals():
            return
        for signum in self._signals:
            signal.signal(signum, signal.SIG_IGN)

    def disarm(self) -> None:
        """Stop the trigger signals from interrupting the caller.

        Call before deciding how to finish so a late signal cannot skip the
        release. The original handlers come back once unwinding is done.
        """

        if self.state is State.ARMED:
            self._ignore_signals()
            trace("teardown.disarmed")

    def _restore_signals(self) -> None:
        if not self._can_handle_signals():
            return
        for signum, handler in self._saved.items():
            signal.signal(signum, handler if handler is not None else signal.SIG_DFL)
        self._saved.clear()

    def register(self, label: str, action: Callable[[], None], remedy: str = "") -> None:
        self._stack.append(Release(label, action, remedy))
        trace("teardown.registered", label=label)

    def unwind(self) -> list[StepFailure]:
        """Release every registered resource, newest first.

        Each step is attempted regardless of earlier failures. Returns the
        failures of this call; a second call is a no-op.
        """

        if self.state is not State.ARMED:
            return []
        self.state = State.UNWINDING
        self._ignore_signals()
        trace("teardown.unwinding", pending=[r.label for r in self._stack])
        failures: list[StepFailure] = []
        while self._stack:
            release = self._stack.pop()
            try:
                release.action()
            except Exception as exc:  # noqa: BLE001 - every step is attempted
                failure = StepFailure(release.label, str(exc), release.remedy)
                failures.append(failure)
                warn(f"cleanup of {release.label} failed: {exc}")
                trace("teardown.step_failed", label=release.label, error=str(exc), remedy=release.remedy)
            else:
                trace("teardown.released", label=release.label)
        self.failures = failures
        self.state = State.DONE
        self._restore_signals()
        trace("teardown.done", failures=len(failures))
        return failures

    def abandon(self) -> list[Release]:
        """Finish without releasing anything; returns what was left behind."""

        if self.state is not State.ARMED:
            return []
        left = list(reversed(self._stack))
        self._stack.clear()
        self.state = State.DONE
        self._restore_signals()
        trace("teardown.abandoned", left=[r.label for r in left])
        return left
