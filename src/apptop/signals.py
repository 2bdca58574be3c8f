"""Send control signals to every process of an application."""

import signal
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

import psutil
import structlog

from apptop.models import Application

log = structlog.get_logger()


class ProcessAction(Enum):
    """Control actions that can be applied to an application."""

    END = signal.SIGTERM
    HALT = signal.SIGSTOP
    KILL = signal.SIGKILL
    CONTINUE = signal.SIGCONT

    @property
    def signum(self) -> signal.Signals:
        """Signal delivered for this action."""
        return signal.Signals(self.value)

    @property
    def requires_confirmation(self) -> bool:
        """Nothing bad can happen on continue, everything else asks first."""
        return self is not ProcessAction.CONTINUE

    @property
    def title(self) -> str:
        """Verb used in the confirmation question, e.g. "Kill"."""
        return _TEXTS[self][0]

    @property
    def warning(self) -> str:
        """Risk shown under the question; empty for CONTINUE."""
        return _TEXTS[self][1]

    @property
    def description(self) -> str:
        """Label of the button that confirms the action."""
        return _TEXTS[self][2]

    @property
    def success(self) -> str:
        """Message prefix when every process was signaled."""
        return _TEXTS[self][3]

    @property
    def failure(self) -> str:
        """Message when exactly one process could not be signaled."""
        return _TEXTS[self][4]

    @property
    def failure_multiple(self) -> str:
        """Message prefix when several processes could not be signaled."""
        return _TEXTS[self][5]


# title, warning, description, success, failure, failure (multiple)
_TEXTS: dict[ProcessAction, tuple[str, str, str, str, str, str]] = {
    ProcessAction.END: (
        "End",
        "Unsaved work might be lost.",
        "End application",
        "Successfully ended",
        "There was a problem ending a process",
        "There were problems ending",
    ),
    ProcessAction.HALT: (
        "Halt",
        "Halting an application can come with serious risks such as losing data "
        "and security implications. Use with caution.",
        "Halt application",
        "Successfully halted",
        "There was a problem halting a process",
        "There were problems halting",
    ),
    ProcessAction.KILL: (
        "Kill",
        "Killing an application can come with serious risks such as losing data "
        "and security implications. Use with caution.",
        "Kill application",
        "Successfully killed",
        "There was a problem killing a process",
        "There were problems killing",
    ),
    ProcessAction.CONTINUE: (
        "Continue",
        "",
        "Continue application",
        "Successfully continued",
        "There was a problem continuing a process",
        "There were problems continuing",
    ),
}


@dataclass(slots=True, frozen=True)
class SignalResult:
    """Outcome of signaling a single process."""

    pid: int
    ok: bool
    error: str | None = None


@dataclass(slots=True, frozen=True)
class DispatchOutcome:
    """Per-process outcomes of one dispatch, plus the message to show for them."""

    action: ProcessAction
    app_name: str
    results: tuple[SignalResult, ...]

    @property
    def failed(self) -> tuple[SignalResult, ...]:
        """Results of the processes that could not be signaled."""
        return tuple(result for result in self.results if not result.ok)

    @property
    def failed_count(self) -> int:
        """Number of processes that could not be signaled."""
        return len(self.failed)

    @property
    def succeeded(self) -> bool:
        """True when every process was signaled."""
        return self.failed_count == 0

    @property
    def message(self) -> str:
        """
        User-facing notice.

        A single failure is usually a process that exited in the meantime, so
        it gets a generic message; more than one reports the count.
        """
        failures = self.failed_count
        if failures == 0:
            return f"{self.action.success} {self.app_name}"
        if failures == 1:
            return self.action.failure
        return f"{self.action.failure_multiple} {failures} processes"


def _signal_process(pid: int, create_time: float, sig: signal.Signals) -> SignalResult:
    """Deliver ``sig`` to ``pid`` unless the pid now belongs to another process."""
    try:
        proc = psutil.Process(pid)
        if create_time and proc.create_time() != create_time:
            return SignalResult(pid=pid, ok=False, error="process no longer exists")
        proc.send_signal(sig)
    except psutil.NoSuchProcess:
        return SignalResult(pid=pid, ok=False, error="process no longer exists")
    except psutil.AccessDenied:
        return SignalResult(pid=pid, ok=False, error="permission denied")
    except (psutil.Error, OSError) as exc:
        return SignalResult(pid=pid, ok=False, error=str(exc))
    return SignalResult(pid=pid, ok=True)


def dispatch(application: Application, action: ProcessAction) -> DispatchOutcome:
    """
    Send ``action``'s signal to every process of ``application``.

    Each process is signaled independently; failures are collected, never raised.
    """
    results = tuple(
        _signal_process(proc.pid, proc.create_time, action.signum)
        for proc in application.processes
    )
    outcome = DispatchOutcome(action=action, app_name=application.display_name, results=results)

    if outcome.succeeded:
        log.info("signal_dispatched", app=application.key, action=action.name, count=len(results))
    else:
        log.warning(
            "signal_failed",
            app=application.key,
            action=action.name,
            failed=[(r.pid, r.error) for r in outcome.failed],
        )
    return outcome


def execute_action(
    application: Application,
    action: ProcessAction,
    confirm: Callable[[Application, ProcessAction], bool],
) -> DispatchOutcome | None:
    """
    Dispatch ``action`` after asking ``confirm`` where the action requires it.

    Returns None when the user declined.

    Raises:
        ValueError: for the system processes bucket.
    """
    if application.is_system:
        raise ValueError("refusing to signal the system processes bucket")

    if action.requires_confirmation and not confirm(application, action):
        log.debug("signal_declined", app=application.key, action=action.name)
        return None
    return dispatch(application, action)
