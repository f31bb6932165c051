#!/usr/bin/env python3
"""
Tests for the idempotent-execution protocol
"""

import logging
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from errors import ReconcileCancelled, ReconcileContext
from executor import Executor, HashingExecutor, apply_once, fingerprint, new_hasher

log = logging.getLogger("postgres-operator.test")


class RecordingExecutor(Executor):
    def __init__(self, fail: bool = False):
        self.commands = []
        self.fail = fail

    def run(self, ctx, command, stdin=None, stdout=None, stderr=None):
        self.commands.append((list(command), stdin))
        if self.fail:
            raise RuntimeError("connection refused")


def operation(*commands, stdin=None):
    def op(ctx, executor, log):
        for command in commands:
            executor.run(ctx, command, stdin=stdin)
    return op


def test_fingerprint_is_stable_and_sensitive():
    print("🧪 Testing fingerprint...")

    ctx = ReconcileContext()
    a = fingerprint(ctx, operation(["psql", "-c", "select 1"], stdin="x"))
    b = fingerprint(ctx, operation(["psql", "-c", "select 1"], stdin="x"))
    assert a == b, "Same commands should hash the same"
    assert len(a) == 8, "Revision is 32 bits in hex"

    assert fingerprint(ctx, operation(["psql", "-c", "select 1"], stdin="y")) != a, "stdin is hashed"
    assert fingerprint(ctx, operation(["psql", "-c", "select 2"], stdin="x")) != a, "argv is hashed"
    # Argument boundaries matter
    assert (fingerprint(ctx, operation(["ab", "c"])) != fingerprint(ctx, operation(["a", "bc"])))

    print("✅ Fingerprint tests passed!")


def test_hashing_executor_runs_nothing():
    hasher = new_hasher()
    before = hasher.hexdigest()
    HashingExecutor(hasher).run(ReconcileContext(), ["rm", "-rf", "/pgdata"])
    assert hasher.hexdigest() != before


def test_apply_once_skips_matching_revision():
    print("\n🧪 Testing apply_once...")

    ctx = ReconcileContext()
    op = operation(["psql"], stdin="CREATE DATABASE a")
    executor = RecordingExecutor()

    revision, applied = apply_once(ctx, op, executor, "", log)
    assert applied and len(executor.commands) == 1
    assert revision == fingerprint(ctx, op)

    again, applied = apply_once(ctx, op, executor, revision, log)
    assert not applied, "Matching revision should not execute"
    assert again == revision
    assert len(executor.commands) == 1, "Nothing more should have run"

    print("✅ apply_once tests passed!")


def test_apply_once_failure_keeps_previous():
    ctx = ReconcileContext()
    executor = RecordingExecutor(fail=True)
    try:
        apply_once(ctx, operation(["psql"]), executor, "deadbeef", log)
    except RuntimeError:
        pass
    else:
        raise AssertionError("Execution errors should propagate")


def test_fingerprint_failure_aborts():
    """Nothing is applied when the revision cannot be computed"""
    def broken(ctx, executor, log):
        raise ValueError("cannot encode")

    executor = RecordingExecutor()
    try:
        apply_once(ReconcileContext(), broken, executor, "", log)
    except ValueError:
        pass
    else:
        raise AssertionError("Fingerprint errors should propagate")
    assert executor.commands == []


def test_dry_run_executes_nothing():
    ctx = ReconcileContext()
    executor = RecordingExecutor()
    revision, applied = apply_once(ctx, operation(["psql"]), executor, "old", log, dry_run=True)
    assert revision == "old" and not applied
    assert executor.commands == []


def test_cancelled_context_stops_execution():
    ctx = ReconcileContext()
    ctx.cancel()
    executor = RecordingExecutor()
    try:
        apply_once(ctx, operation(["psql"]), executor, "", log)
    except ReconcileCancelled:
        pass
    else:
        raise AssertionError("Cancelled context should stop execution")
    assert executor.commands == []


def main():
    test_fingerprint_is_stable_and_sensitive()
    test_hashing_executor_runs_nothing()
    test_apply_once_skips_matching_revision()
    test_apply_once_failure_keeps_previous()
    test_fingerprint_failure_aborts()
    test_dry_run_executes_nothing()
    test_cancelled_context_stops_execution()
    print("\n✅ All executor tests passed!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
