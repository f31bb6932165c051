"""
Errors raised while reconciling a PostgresCluster, and the per-pass context
that carries its deadline and cancellation signal.
"""

import threading
import time
from typing import Optional


class ReconcileError(Exception):
    """Base class for reconcile failures that should be retried next cycle"""


class ReconcileCancelled(ReconcileError):
    """The reconcile deadline passed or the pass was cancelled"""


class PodExecError(ReconcileError):
    """A command run inside a pod exited non-zero"""

    def __init__(self, pod: str, command, code: int, stderr: str = ""):
        self.pod = pod
        self.command = list(command)
        self.code = code
        self.stderr = stderr
        super().__init__(
            f"command {self.command[:1]} in pod {pod} exited with code {code}: {stderr.strip()}"
        )


class ReconcileContext:
    """
    Deadline and cancellation signal for one reconcile pass.

    Every blocking call checks the context first and bounds its own timeout
    by what remains, so nothing runs or retries past cancellation.
    """

    def __init__(self, timeout: Optional[float] = None, cancelled: Optional[threading.Event] = None):
        self.deadline = time.monotonic() + timeout if timeout is not None else None
        self.cancelled = cancelled or threading.Event()

    def cancel(self):
        self.cancelled.set()

    def done(self) -> bool:
        if self.cancelled.is_set():
            return True
        return self.deadline is not None and time.monotonic() >= self.deadline

    def check(self):
        """Raise ReconcileCancelled when the pass should stop"""
        if self.cancelled.is_set():
            raise ReconcileCancelled("reconcile cancelled")
        if self.deadline is not None and time.monotonic() >= self.deadline:
            raise ReconcileCancelled("reconcile deadline exceeded")

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, or None when unbounded"""
        if self.deadline is None:
            return None
        return max(self.deadline - time.monotonic(), 0.0)

    def sleep(self, seconds: float):
        """Sleep up to seconds, waking early and raising on cancellation"""
        remaining = self.remaining()
        if remaining is not None:
            seconds = min(seconds, remaining)
        self.cancelled.wait(seconds)
        self.check()
