from __future__ import annotations

from dataclasses import replace

import pytest

from conftest import FakeClock, FakeCounter, FakeNotifier, FakeOps, FakeQueue
from x11_guard import (
    Action,
    DescriptorAccessDenied,
    Guard,
    IntervalTimer,
    ProcessGone,
    Trigger,
    TriggerKind,
    configure_logging,
)

FALLBACK = Trigger(TriggerKind.FALLBACK_TICK)
SCAN = Trigger(TriggerKind.SCAN_TICK)


class ProcTable:
    """Stands in for the OS process table: one current PID or None."""

    def __init__(self, pid=100):
        self.pid = pid
        self.lookups = 0

    def locate(self, name):
        self.lookups += 1
        return self.pid

    def alive(self, pid, name):
        return pid == self.pid


def make_guard(config, counts, table=None, clock=None, ops=None, dry_run=False):
    clock = clock or FakeClock(0.0)
    table = table or ProcTable()
    guard = Guard(
        replace(config, dry_run=dry_run),
        counter=FakeCounter(*counts),
        ops=ops or FakeOps(),
        notifier=FakeNotifier(),
        locate=table.locate,
        alive=table.alive,
        clock=clock,
        triggers=FakeQueue(clock),
    )
    return guard, table, clock


def test_leak_sequence_with_cooldown(config):
    guard, table, clock = make_guard(config, [5, 12, 12, 12])
    actions = []
    for t in (0, 1, 2, 121):
        clock.now = float(t)
        actions.append(guard.dispatch(FALLBACK))
        if actions[-1] is Action.RESTARTED:
            table.pid += 1  # the relaunched instance gets a new PID
    assert actions == [Action.NOOP, Action.RESTARTED, Action.SKIPPED_COOLDOWN, Action.RESTARTED]
    assert guard.state.last_restart == 121.0
    assert guard.counter.asked == [100, 100, 101, 101]
    assert guard.ops.names().count("launch") == 2


def test_restart_invalidates_target_and_notifier(config):
    guard, table, clock = make_guard(config, [30])
    guard.dispatch(FALLBACK)
    assert guard.target.pid is None
    assert guard.notifier.synced[-1] == (None, guard.target.generation)

    table.pid = 555
    guard.dispatch(SCAN)
    assert guard.target.pid == 555
    assert guard.notifier.synced[-1] == (555, guard.target.generation)


def test_process_not_found_skips_cycle(config):
    guard, table, _ = make_guard(config, [99], table=ProcTable(pid=None))
    assert guard.dispatch(FALLBACK) is None
    assert guard.counter.asked == []
    assert guard.ops.calls == []
    assert guard.state.last_restart is None


def test_process_gone_mid_measurement_skips_cycle(config):
    guard, table, _ = make_guard(config, [ProcessGone(100)])
    assert guard.dispatch(FALLBACK) is None
    assert guard.target.pid is None
    assert guard.ops.calls == []


def test_access_denied_skips_cycle(config):
    guard, _, _ = make_guard(config, [DescriptorAccessDenied(100)])
    assert guard.dispatch(FALLBACK) is None
    assert guard.target.pid == 100


def test_scan_tick_only_samples_when_identity_changes(config):
    guard, table, _ = make_guard(config, [3])
    assert guard.dispatch(SCAN) is Action.NOOP  # first resolution
    assert guard.dispatch(SCAN) is None
    assert guard.counter.asked == [100]

    table.pid = 300  # restarted behind our back
    assert guard.dispatch(SCAN) is Action.NOOP
    assert guard.counter.asked == [100, 300]


def test_dry_run_reports_without_touching(config):
    guard, _, _ = make_guard(config, [40], dry_run=True)
    assert guard.dispatch(FALLBACK) is Action.WOULD_RESTART
    assert guard.dispatch(FALLBACK) is Action.WOULD_RESTART
    assert guard.ops.calls == []
    assert guard.target.pid == 100


def test_dispatch_reaps_launched_commands(config):
    guard, _, _ = make_guard(config, [1])
    guard.dispatch(FALLBACK)
    guard.dispatch(SCAN)
    assert guard.ops.reaped == 2


def test_timers_fire_without_any_events(config):
    guard, _, clock = make_guard(config, [1])
    kinds = []
    while clock.now < 15:
        kinds.append(guard.next_trigger().kind)
    assert kinds.count(TriggerKind.SCAN_TICK) == 7
    assert kinds[-1] is TriggerKind.FALLBACK_TICK
    assert clock.now == 15


def test_leak_detected_within_fallback_poll_without_notifications(config):
    guard, _, clock = make_guard(config, [4, 4, 50], dry_run=True)
    guard.dispatch(SCAN)  # startup: resolved, count 4
    guard.dispatch(FALLBACK)  # still healthy
    leak_started = clock.now

    action = None
    while action is not Action.WOULD_RESTART:
        action = guard.dispatch(guard.next_trigger())
    assert clock.now - leak_started <= config.fallback_poll


def test_stale_descriptor_events_are_dropped(config):
    guard, _, clock = make_guard(config, [1])
    guard.dispatch(SCAN)
    guard.triggers.put(Trigger(TriggerKind.DESCRIPTOR_CHANGE, pid=99, generation=guard.target.generation - 1))
    assert guard.next_trigger().kind is TriggerKind.SCAN_TICK


def test_descriptor_burst_is_debounced(config):
    guard, _, clock = make_guard(replace(config, debounce=0.5), [1])
    guard.dispatch(SCAN)
    event = Trigger(TriggerKind.DESCRIPTOR_CHANGE, pid=100, generation=guard.target.generation)

    guard.triggers.put(event)
    first = guard.next_trigger()
    assert first.kind is TriggerKind.DESCRIPTOR_CHANGE
    guard.dispatch(first)

    for _ in range(5):
        guard.triggers.put(event)
    trailing = guard.next_trigger()
    assert trailing.kind is TriggerKind.DESCRIPTOR_CHANGE
    assert clock.now == pytest.approx(0.5)
    guard.dispatch(trailing)

    assert guard.next_trigger().kind is TriggerKind.SCAN_TICK


def test_shutdown_request_is_delivered(config):
    guard, _, _ = make_guard(config, [1])
    guard.request_shutdown(15, None)
    assert guard.next_trigger().kind is TriggerKind.SHUTDOWN


def test_run_exits_cleanly_on_shutdown(config):
    guard, _, _ = make_guard(config, [2])
    guard.request_shutdown()
    assert guard.run() == 0
    assert guard.notifier.started and guard.notifier.stopped
    assert guard.counter.asked == [100]


def test_interval_timer():
    clock = FakeClock(10.0)
    timer = IntervalTimer(5, clock)
    assert timer.remaining(12.0) == 3.0
    assert not timer.expired(14.9)
    assert timer.expired(15.0)
    timer.reset(15.0)
    assert timer.next_due == 20.0


def test_unchanged_descriptor_samples_are_throttled(config, capsys):
    configure_logging(verbose=False)
    guard, _, clock = make_guard(config, [3])
    guard.dispatch(SCAN)
    event = Trigger(TriggerKind.DESCRIPTOR_CHANGE, pid=100, generation=guard.target.generation)

    def logged():
        return [line for line in capsys.readouterr().out.splitlines() if "X11 connections" in line]

    assert len(logged()) == 1

    for t in (1.0, 2.0, 30.0):
        clock.now = t
        guard.dispatch(event)
    assert logged() == []

    clock.now = 31.0
    guard.dispatch(FALLBACK)
    assert len(logged()) == 1

    clock.now = 95.0
    guard.dispatch(event)
    assert len(logged()) == 1
