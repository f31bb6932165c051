"""
Remote command execution and the idempotent-execution protocol

An operation is any callable ``operation(ctx, executor, log)`` that issues
commands through ``executor``. The same operation is run twice: once against
a HashingExecutor to compute its revision, and, only when that revision
differs from the one last recorded, against a PodExecutor for real.
"""

import hashlib
import json
from typing import Callable, List, Optional, Tuple

from errors import ReconcileContext
from logs import YELLOW, RESET, discard, with_values


class Executor:
    """Runs a command somewhere, feeding stdin and collecting output"""

    def run(self, ctx: ReconcileContext, command: List[str], stdin: Optional[str] = None,
            stdout=None, stderr=None):
        raise NotImplementedError


class PodExecutor(Executor):
    """Executes commands in a container of a live pod"""

    def __init__(self, kube, namespace: str, pod: str, container: str):
        self.kube = kube
        self.namespace = namespace
        self.pod = pod
        self.container = container

    def run(self, ctx, command, stdin=None, stdout=None, stderr=None):
        out, err = self.kube.pod_exec(ctx, self.namespace, self.pod, self.container,
                                      command, stdin=stdin)
        if stdout is not None:
            stdout.write(out)
        if stderr is not None:
            stderr.write(err)


class HashingExecutor(Executor):
    """
    Records every command and its stdin into a hash instead of running it
    """

    def __init__(self, hasher):
        self.hasher = hasher

    def run(self, ctx, command, stdin=None, stdout=None, stderr=None):
        self.hasher.update(json.dumps(list(command)).encode())
        if stdin is not None:
            self.hasher.update(stdin.encode())


Operation = Callable[[ReconcileContext, Executor, object], None]


def new_hasher():
    """32-bit stream hash; a change detector, not a security primitive"""
    return hashlib.blake2s(digest_size=4)


def fingerprint(ctx: ReconcileContext, operation: Operation) -> str:
    """
    Return the revision of the commands operation would execute

    Nothing is executed and log messages are discarded. Errors raised by
    operation propagate so that nothing is applied when the revision is not
    known.
    """
    hasher = new_hasher()
    operation(ctx, HashingExecutor(hasher), discard())
    return hasher.hexdigest()


def apply_once(ctx: ReconcileContext, operation: Operation, executor: Executor,
               previous: str, log, dry_run: bool = False) -> Tuple[str, bool]:
    """
    Execute operation unless its revision matches previous

    Returns the revision to record and whether anything was executed. The
    new revision is only returned after the operation succeeded.
    """
    revision = fingerprint(ctx, operation)
    if revision == previous:
        log.debug(f"Revision {revision} already applied, skipping")
        return previous, False

    log = with_values(log, revision=revision)
    if dry_run:
        log.info(f"{YELLOW}[DRY-RUN] Would apply revision {revision} (recorded: {previous or 'none'}){RESET}")
        return previous, False

    ctx.check()
    operation(ctx, executor, log)
    return revision, True
