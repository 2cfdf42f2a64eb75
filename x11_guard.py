#!/usr/bin/env python3
"""
x11_guard.py
============

A Linux watchdog that keeps one X11 application from leaking display
connections until the X server (or the application itself) falls over.

1. **Locates the target** by process name and re-resolves its PID every
   `--scan-interval` seconds, so crashes and external restarts are noticed.
2. **Counts its X11 connections** by matching the socket inodes in
   `/proc/<pid>/fd` against the client-side peers of the display socket as
   reported by `ss`.
3. **Reacts to descriptor churn** through an inotify watch on the target's
   descriptor directory, with a `--fallback-poll` timer as a backstop so a
   leak is never missed for longer than that interval.
4. **Restarts the target** once the count exceeds `--threshold`: SIGTERM,
   wait up to `--grace-timeout`, SIGKILL for survivors, then relaunch
   `--restart-cmd` detached. Restarts are rate limited by `--cooldown`.
5. **Dry-run mode** (`--dry-run`) reports what it would do and never touches
   the target.

Supervision of the guard itself is left to the service manager; all output
goes to stdout so the journal picks it up.

────────────────────────────────────────────────────────────────────────────
USAGE EXAMPLES
────────────────────────────────────────────────────────────────────────────
# 1) Guard QQ with defaults (threshold 10, cooldown 120 s)
./x11_guard.py

# 2) Watch another application on display :1 and see what would happen
./x11_guard.py --app-name wechat --display :1 --dry-run

# 3) Stricter limit, custom relaunch command, chatty output
./x11_guard.py --threshold 6 --restart-cmd "flatpak run com.qq.QQ" --verbose
────────────────────────────────────────────────────────────────────────────
"""

from __future__ import annotations

import argparse
import enum
import os
import queue
import re
import signal
import subprocess
import sys
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

import psutil
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

__version__ = "0.1.0"

# ──────────────────────────────── Defaults ──────────────────────────────────
DEF_APP_NAME = "qq"
DEF_THRESHOLD = 10  # connections above which a restart is considered
DEF_COOLDOWN_SEC = 120  # minimum gap between restarts
DEF_FALLBACK_POLL_SEC = 15  # backstop evaluation interval
DEF_SCAN_INTERVAL_SEC = 2  # PID re-resolution cadence
DEF_GRACE_SEC = 8.0  # SIGTERM → SIGKILL escalation
DEF_KILL_WAIT_SEC = 3.0  # wait for exit after SIGKILL
DEF_DEBOUNCE_SEC = 0.5  # min gap between descriptor-triggered evaluations
DEF_DISPLAY = ":0"

SS_TIMEOUT_SEC = 3
SAMPLE_LOG_EVERY_SEC = 60  # info-level cap for repeated, unchanged samples
MIN_WAIT_SEC = 0.05  # floor for the trigger wait so the loop never spins
X11_UNIX_DIR = "/tmp/.X11-unix"
X11_TCP_BASE_PORT = 6000
LOG_PREFIX = "[x11-guard]"
LOG_ROTATE_BYTES = 50 * 1024 * 1024

_SOCKET_LINK = re.compile(r"^socket:\[(\d+)\]$")
_DISPLAY_RE = re.compile(r"^(?P<host>[^:]*):(?P<num>\d+)(?:\.\d+)?$")


# ─────────────────────────────── Logging ────────────────────────────────────
_LEVELS = {"debug": 10, "info": 20, "warning": 30, "error": 40}
_log_level = _LEVELS["info"]
_log_file: Path | None = None


def configure_logging(verbose: bool = False, log_file: str | Path | None = None) -> None:
    """Set the minimum level printed and the optional mirror file."""
    global _log_level, _log_file
    _log_level = _LEVELS["debug" if verbose else "info"]
    _log_file = Path(log_file).expanduser() if log_file else None


def _append_to_file(line: str) -> None:
    if _log_file is None:
        return
    try:
        _log_file.parent.mkdir(parents=True, exist_ok=True)
        if _log_file.exists() and _log_file.stat().st_size > LOG_ROTATE_BYTES:
            backup = _log_file.with_suffix(".old")
            if backup.exists():
                backup.unlink()
            _log_file.rename(backup)
    except OSError:
        pass  # rotation is best effort

    try:
        with _log_file.open("a") as fp:
            fp.write(line + "\n")
    except OSError:
        pass  # never let the mirror file stop monitoring


def log(msg: str, level: str = "info") -> None:
    """Print a timestamped line to stdout (and the mirror file, if any)."""
    if _LEVELS.get(level, _LEVELS["info"]) < _log_level:
        return
    line = f"[{datetime.now():%Y-%m-%d %H:%M:%S}] {LOG_PREFIX} {level.upper()} {msg}"
    print(line, flush=True)
    _append_to_file(line)


# ─────────────────────────────── Errors ─────────────────────────────────────
class GuardError(Exception):
    """Base class for everything this module raises on purpose."""


class ProcessGone(GuardError):
    """The target exited between being located and being measured."""

    def __init__(self, pid: int):
        super().__init__(f"process {pid} is gone")
        self.pid = pid


class DescriptorAccessDenied(GuardError):
    """The target's descriptor table exists but cannot be read."""

    def __init__(self, pid: int):
        super().__init__(f"cannot read descriptor table of PID {pid}")
        self.pid = pid


class LaunchError(GuardError):
    """The restart command could not be spawned."""


class StartupError(GuardError):
    """The environment cannot support the guard at all."""


# ──────────────────────────────  Data structures  ───────────────────────────
@dataclass(frozen=True)
class GuardConfig:
    """Immutable runtime configuration, read once at startup."""

    app_name: str = DEF_APP_NAME
    threshold: int = DEF_THRESHOLD
    restart_cmd: str = DEF_APP_NAME
    cooldown: float = DEF_COOLDOWN_SEC
    fallback_poll: float = DEF_FALLBACK_POLL_SEC
    scan_interval: float = DEF_SCAN_INTERVAL_SEC
    dry_run: bool = False
    display: str = DEF_DISPLAY
    grace_timeout: float = DEF_GRACE_SEC
    kill_timeout: float = DEF_KILL_WAIT_SEC
    debounce: float = DEF_DEBOUNCE_SEC
    include_children: bool = True

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> GuardConfig:
        """Build from parsed command line arguments."""
        return cls(
            app_name=args.app_name,
            threshold=args.threshold,
            restart_cmd=args.restart_cmd or args.app_name,
            cooldown=args.cooldown,
            fallback_poll=args.fallback_poll,
            scan_interval=args.scan_interval,
            dry_run=args.dry_run,
            display=args.display,
            grace_timeout=args.grace_timeout,
            kill_timeout=args.kill_timeout,
            debounce=args.debounce,
            include_children=not args.no_children,
        )


@dataclass
class TargetProcess:
    """
    Single-slot holder for the monitored application.

    `generation` increases every time the slot changes hands (new PID, PID
    lost, restart requested), so anything holding an older (pid, generation)
    pair knows its view is stale.
    """

    name: str
    command: str
    pid: int | None = None
    generation: int = 0

    def assign(self, pid: int | None) -> bool:
        """Store a freshly resolved PID; return True if it differs."""
        if pid == self.pid:
            return False
        self.pid = pid
        self.generation += 1
        return True

    def invalidate(self) -> None:
        """Forget the PID so the next cycle resolves it again."""
        self.pid = None
        self.generation += 1


@dataclass(frozen=True)
class ConnectionSample:
    pid: int
    count: int
    ts: float


@dataclass(frozen=True)
class RestartState:
    cooldown: float
    last_restart: float | None = None

    def cooling_down(self, now: float) -> bool:
        # The boundary is inclusive: exactly `cooldown` seconds later is allowed.
        return self.last_restart is not None and now - self.last_restart < self.cooldown

    def remaining(self, now: float) -> float:
        if self.last_restart is None:
            return 0.0
        return max(0.0, self.cooldown - (now - self.last_restart))


class Action(enum.Enum):
    NOOP = "noop"
    SKIPPED_COOLDOWN = "skipped-cooldown"
    WOULD_RESTART = "would-restart"
    RESTARTED = "restarted"
    RESTART_FAILED = "restart-failed"


class TriggerKind(enum.Enum):
    DESCRIPTOR_CHANGE = "descriptor"
    FALLBACK_TICK = "fallback"
    SCAN_TICK = "scan"
    SHUTDOWN = "shutdown"


@dataclass(frozen=True)
class Trigger:
    kind: TriggerKind
    pid: int | None = None
    generation: int | None = None


# ──────────────────────────── Process locator ───────────────────────────────
def _pick_root(matches: list[dict[str, Any]]) -> int | None:
    """Return the PID of the oldest match whose parent is not a match too."""
    if not matches:
        return None
    pids = {m["pid"] for m in matches}
    roots = [m for m in matches if m.get("ppid") not in pids] or matches
    roots.sort(key=lambda m: (m.get("create_time") or 0.0, m["pid"]))
    return roots[0]["pid"]


def find_process(process_name: str) -> int | None:
    """
    Resolve `process_name` to a PID, or None when it is not running.

    Exact name matches win. Failing any, processes whose executable basename
    equals the name are considered (the kernel truncates `comm`).
    """
    by_name: list[dict[str, Any]] = []
    by_exe: list[dict[str, Any]] = []
    for proc in psutil.process_iter(["pid", "ppid", "name", "exe", "create_time"]):
        try:
            info = proc.info
            if info.get("name") == process_name:
                by_name.append(info)
            elif info.get("exe") and os.path.basename(info["exe"]) == process_name:
                by_exe.append(info)
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue
    return _pick_root(by_name or by_exe)


def is_alive(pid: int, process_name: str) -> bool:
    """True if `pid` still exists and still carries the expected name."""
    try:
        proc = psutil.Process(pid)
        if proc.status() == psutil.STATUS_ZOMBIE:
            return False
        if proc.name() == process_name:
            return True
        return os.path.basename(proc.exe()) == process_name
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return False


# ─────────────────────────── Connection counter ─────────────────────────────
def parse_ss_peer_inodes(output: str, socket_path: str) -> set[int]:
    """
    Pull client-side peer inodes out of `ss -xnH` output.

    A server-side line looks like
    `u_str ESTAB 0 0 @/tmp/.X11-unix/X0 25183 * 26119`; the token after the
    `*` peer address is the inode held by the client.
    """
    targets = {socket_path, f"@{socket_path}"}
    inodes: set[int] = set()
    for line in output.splitlines():
        tokens = line.split()
        for idx, token in enumerate(tokens):
            if token not in targets:
                continue
            if idx + 3 < len(tokens) and tokens[idx + 2] == "*" and tokens[idx + 3].isdigit():
                peer = int(tokens[idx + 3])
                if peer:
                    inodes.add(peer)
            break
    return inodes


def run_ss(source: str) -> str | None:
    """Run `ss` for one UNIX socket source; None when it fails."""
    try:
        result = subprocess.run(
            ["ss", "-xnH", "src", source],
            capture_output=True,
            text=True,
            check=False,
            timeout=SS_TIMEOUT_SEC,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        log(f"ss query for {source} failed: {e}", "warning")
        return None
    if result.returncode != 0:
        log(f"ss query for {source} exited with {result.returncode}", "debug")
        return None
    return result.stdout


class DisplaySocket:
    """
    Identifies which sockets belong to one X display.

    `:N`, `:N.S` and `unix:N` are local UNIX-domain displays served on
    `/tmp/.X11-unix/XN` (filesystem and abstract namespace); `host:N` is a TCP
    display on port 6000 + N. Swap in another object with the same two methods
    for exotic setups.
    """

    def __init__(self, display: str, runner: Callable[[str], str | None] = run_ss):
        match = _DISPLAY_RE.match(display.strip())
        if not match:
            raise ValueError(f"invalid DISPLAY: {display!r}")
        self.display = display
        self._runner = runner
        host, number = match.group("host"), int(match.group("num"))
        if host in ("", "unix"):
            self.unix_path: str | None = f"{X11_UNIX_DIR}/X{number}"
            self.tcp_port: int | None = None
        else:
            self.unix_path = None
            self.tcp_port = X11_TCP_BASE_PORT + number

    def __repr__(self) -> str:
        where = self.unix_path or f"tcp:{self.tcp_port}"
        return f"DisplaySocket({self.display!r} -> {where})"

    def peer_inodes(self) -> set[int]:
        """Inodes of client sockets currently connected to the display."""
        if self.unix_path is None:
            return set()
        inodes: set[int] = set()
        for source in (f"@{self.unix_path}", self.unix_path):
            output = self._runner(source)
            if output:
                inodes |= parse_ss_peer_inodes(output, self.unix_path)
        return inodes

    def matches_inet(self, conn: Any) -> bool:
        """True for a psutil connection whose remote end is the display port."""
        return self.tcp_port is not None and bool(conn.raddr) and conn.raddr.port == self.tcp_port


class ConnectionCounter:
    """Counts the X11 connections held by a process (and by default its children)."""

    def __init__(self, display: DisplaySocket, include_children: bool = True, proc_root: str | Path = "/proc"):
        self.display = display
        self.include_children = include_children
        self.proc_root = Path(proc_root)

    def fd_dir(self, pid: int) -> Path:
        return self.proc_root / str(pid) / "fd"

    def socket_inodes(self, pid: int) -> set[int]:
        """Socket inodes open in `pid`; descriptors closing mid-scan are skipped."""
        try:
            entries = os.listdir(self.fd_dir(pid))
        except FileNotFoundError:
            raise ProcessGone(pid) from None
        except PermissionError:
            raise DescriptorAccessDenied(pid) from None

        inodes: set[int] = set()
        for entry in entries:
            try:
                link = os.readlink(self.fd_dir(pid) / entry)
            except OSError:
                continue  # fd closed since listdir
            match = _SOCKET_LINK.match(link)
            if match:
                inodes.add(int(match.group(1)))
        return inodes

    def process_tree(self, pid: int) -> list[int]:
        if not self.include_children:
            return [pid]
        try:
            children = psutil.Process(pid).children(recursive=True)
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            raise ProcessGone(pid) from None
        except psutil.AccessDenied:
            return [pid]
        return [pid] + [child.pid for child in children]

    def _inet_matches(self, pid: int) -> int:
        try:
            conns = psutil.Process(pid).net_connections(kind="tcp")
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            raise ProcessGone(pid) from None
        except psutil.AccessDenied:
            raise DescriptorAccessDenied(pid) from None
        return sum(1 for c in conns if self.display.matches_inet(c))

    def count(self, pid: int) -> int:
        """
        Number of live X11 connections attributed to `pid`.

        Raises ProcessGone if the root process disappears; children that exit
        mid-count, or whose descriptor table is unreadable (sandboxed helpers
        are often non-dumpable), are simply left out.
        """
        tree = self.process_tree(pid)
        app_inodes: set[int] = set()
        tcp_total = 0
        for member in tree:
            try:
                app_inodes |= self.socket_inodes(member)
                if self.display.tcp_port is not None:
                    tcp_total += self._inet_matches(member)
            except (ProcessGone, DescriptorAccessDenied) as e:
                if member == pid:
                    raise
                log(f"leaving child PID {member} out of the count: {e}", "debug")
        if not app_inodes or self.display.unix_path is None:
            return tcp_total
        return len(app_inodes & self.display.peer_inodes()) + tcp_total


# ───────────────────────────── Change notifier ──────────────────────────────
class _DescriptorHandler(FileSystemEventHandler):
    def __init__(self, pid: int, generation: int, emit: Callable[[Trigger], None]):
        super().__init__()
        self.pid = pid
        self.generation = generation
        self.emit = emit

    def on_any_event(self, event: FileSystemEvent) -> None:
        self.emit(Trigger(TriggerKind.DESCRIPTOR_CHANGE, pid=self.pid, generation=self.generation))


class ChangeNotifier:
    """
    Watches `/proc/<pid>/fd` with inotify and emits DESCRIPTOR_CHANGE triggers.

    The watch is keyed by (pid, generation); `sync()` drops it and subscribes
    again whenever the target slot moves on. A subscription that races with the
    process exiting is abandoned quietly; the scan and fallback ticks cover
    the gap.
    """

    def __init__(
        self,
        emit: Callable[[Trigger], None],
        proc_root: str | Path = "/proc",
        observer_factory: Callable[[], Any] = Observer,
    ):
        self.emit = emit
        self.proc_root = Path(proc_root)
        self._observer_factory = observer_factory
        self._observer: Any = None
        self._watch: Any = None
        self._key: tuple[int | None, int] | None = None

    @property
    def active(self) -> bool:
        return self._observer is not None

    @property
    def watching(self) -> int | None:
        """PID currently subscribed to, if any."""
        return self._key[0] if self._key and self._watch is not None else None

    def start(self) -> None:
        try:
            observer = self._observer_factory()
            observer.start()
        except (OSError, RuntimeError) as e:
            log(f"inotify unavailable, relying on polling only: {e}", "warning")
            return
        self._observer = observer

    def stop(self) -> None:
        if self._observer is None:
            return
        self._unsubscribe()
        self._observer.stop()
        self._observer.join(timeout=2)
        self._observer = None

    def sync(self, target: TargetProcess) -> None:
        key = (target.pid, target.generation)
        if key == self._key or self._observer is None:
            return
        self._unsubscribe()
        self._key = key
        if target.pid is None:
            return

        path = self.proc_root / str(target.pid) / "fd"
        handler = _DescriptorHandler(target.pid, target.generation, self.emit)
        try:
            self._watch = self._observer.schedule(handler, str(path), recursive=False)
        except OSError as e:
            log(f"could not watch {path} ({e}); waiting for next scan", "debug")
            self._watch = None
            return
        log(f"watching {path}", "debug")

    def _unsubscribe(self) -> None:
        if self._watch is None:
            return
        try:
            self._observer.unschedule(self._watch)
        except (KeyError, OSError) as e:
            log(f"stale watch removal ignored: {e}", "debug")
        self._watch = None


# ──────────────────────────── Fallback scheduler ────────────────────────────
class IntervalTimer:
    """Fires every `interval` seconds on the given monotonic clock."""

    def __init__(self, interval: float, clock: Callable[[], float] = time.monotonic):
        self.interval = interval
        self.next_due = clock() + interval

    def remaining(self, now: float) -> float:
        return max(0.0, self.next_due - now)

    def expired(self, now: float) -> bool:
        return now >= self.next_due

    def reset(self, now: float) -> None:
        self.next_due = now + self.interval


# ──────────────────────────── Restart controller ────────────────────────────
class ProcessOps(Protocol):
    """Side effects the restart sequence needs; swapped out in tests."""

    def terminate(self, pid: int) -> bool: ...

    def wait_exit(self, pid: int, timeout: float) -> bool: ...

    def kill(self, pid: int) -> None: ...

    def launch(self, command: str) -> int: ...

    def reap(self) -> None: ...


class PsutilOps:
    """
    Real process operations.

    `terminate` snapshots the target's process tree; `wait_exit` and `kill`
    then work on whatever is left of that snapshot. Launched commands are kept
    so `reap()` can collect them once they exit.
    """

    def __init__(self, include_children: bool = True):
        self.include_children = include_children
        self._pending: dict[int, list[psutil.Process]] = {}
        self._launched: list[subprocess.Popen] = []

    def terminate(self, pid: int) -> bool:
        try:
            root = psutil.Process(pid)
        except psutil.NoSuchProcess:
            return False
        tree = [root]
        if self.include_children:
            try:
                tree += root.children(recursive=True)
            except (psutil.NoSuchProcess, psutil.ZombieProcess):
                return False
            except psutil.AccessDenied:
                pass  # root alone still gets the signal

        for proc in tree:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                continue
            except psutil.AccessDenied as e:
                log(f"SIGTERM to PID {proc.pid} denied: {e}", "warning")
        self._pending[pid] = tree
        return True

    def wait_exit(self, pid: int, timeout: float) -> bool:
        procs = self._pending.get(pid, [])
        _gone, alive = psutil.wait_procs(procs, timeout=timeout)
        self._pending[pid] = alive
        if not alive:
            self._pending.pop(pid, None)
        return not alive

    def kill(self, pid: int) -> None:
        for proc in self._pending.get(pid, []):
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                continue
            except psutil.AccessDenied as e:
                log(f"SIGKILL to PID {proc.pid} denied: {e}", "error")

    def launch(self, command: str) -> int:
        try:
            child = subprocess.Popen(
                ["sh", "-lc", command],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
                close_fds=True,
            )
        except OSError as e:
            raise LaunchError(f"cannot run {command!r}: {e}") from e
        # a new instance is on its way; snapshots of the old tree are obsolete
        self._pending.clear()
        self._launched.append(child)
        return child.pid

    def reap(self) -> None:
        """Collect relaunched commands that have exited."""
        self._launched = [child for child in self._launched if child.poll() is None]


def restart_target(pid: int, config: GuardConfig, ops: ProcessOps) -> int:
    """
    Run the full terminate-then-relaunch sequence and return the launcher PID.

    Running → SIGTERM → exited or grace timeout → SIGKILL → relaunched.
    A target that is already gone goes straight to relaunch.
    """
    if ops.terminate(pid):
        if not ops.wait_exit(pid, config.grace_timeout):
            log(f"PID {pid} still alive after {config.grace_timeout:g}s, sending SIGKILL", "warning")
            ops.kill(pid)
            if not ops.wait_exit(pid, config.kill_timeout):
                log(f"PID {pid} survived SIGKILL for {config.kill_timeout:g}s; relaunching anyway", "error")
    else:
        log(f"PID {pid} already exited before SIGTERM", "info")
    return ops.launch(config.restart_cmd)


def evaluate(
    sample: ConnectionSample,
    state: RestartState,
    config: GuardConfig,
    ops: ProcessOps,
    clock: Callable[[], float] = time.monotonic,
) -> tuple[Action, RestartState]:
    """
    Decide what to do about one sample and return (action, new state).

    Only a successful relaunch produces a new state; every other branch hands
    back `state` untouched.
    """
    if sample.count <= config.threshold:
        return Action.NOOP, state

    now = clock()
    if state.cooling_down(now):
        log(
            f"{config.app_name} PID {sample.pid} has {sample.count} X11 connections (> {config.threshold}) "
            f"but cooling down for another {state.remaining(now):.0f}s",
            "warning",
        )
        return Action.SKIPPED_COOLDOWN, state

    if config.dry_run:
        log(
            f"[dry-run] would restart {config.app_name} PID {sample.pid}: "
            f"{sample.count} X11 connections > {config.threshold}",
            "warning",
        )
        return Action.WOULD_RESTART, state

    log(
        f"{config.app_name} PID {sample.pid} has {sample.count} X11 connections "
        f"(> {config.threshold}), restarting",
        "warning",
    )
    try:
        launched = restart_target(sample.pid, config, ops)
    except LaunchError as e:
        log(f"relaunch failed, will retry on next evaluation: {e}", "error")
        return Action.RESTART_FAILED, state

    new_state = replace(state, last_restart=clock())
    log(f"relaunched {config.restart_cmd!r} (launcher PID {launched})")
    return Action.RESTARTED, new_state


# ─────────────────────────────── Guard loop ─────────────────────────────────
class Guard:
    """
    Single-threaded coordinator.

    Inotify callbacks and signal handlers only push `Trigger`s into a
    `SimpleQueue`; timers are checked inline. Everything that reads or changes
    `target` and `state` happens in `run()` on the main thread.
    """

    def __init__(
        self,
        config: GuardConfig,
        counter: ConnectionCounter | None = None,
        ops: ProcessOps | None = None,
        notifier: ChangeNotifier | None = None,
        locate: Callable[[str], int | None] = find_process,
        alive: Callable[[int, str], bool] = is_alive,
        clock: Callable[[], float] = time.monotonic,
        triggers: Any = None,
    ):
        self.config = config
        self.clock = clock
        self.triggers = triggers if triggers is not None else queue.SimpleQueue()
        self.target = TargetProcess(config.app_name, config.restart_cmd)
        self.state = RestartState(cooldown=config.cooldown)
        self.counter = counter or ConnectionCounter(DisplaySocket(config.display), config.include_children)
        self.ops = ops or PsutilOps(config.include_children)
        self.notifier = notifier or ChangeNotifier(self.triggers.put)
        self.locate = locate
        self.alive = alive
        self.fallback = IntervalTimer(config.fallback_poll, clock)
        self.scan = IntervalTimer(config.scan_interval, clock)
        self.last_count: int | None = None
        self._last_descriptor_eval = float("-inf")
        self._descriptor_due: float | None = None
        self._last_sample_log = float("-inf")

    # -- trigger sources ----------------------------------------------------
    def request_shutdown(self, *_args: Any) -> None:
        # SimpleQueue.put is reentrant, so this is safe from a signal handler.
        self.triggers.put(Trigger(TriggerKind.SHUTDOWN))

    def next_trigger(self) -> Trigger:
        """Block until some source has something for the control cycle."""
        while True:
            now = self.clock()
            if self.fallback.expired(now):
                self.fallback.reset(now)
                return Trigger(TriggerKind.FALLBACK_TICK)
            if self.scan.expired(now):
                self.scan.reset(now)
                return Trigger(TriggerKind.SCAN_TICK)
            if self._descriptor_due is not None and now >= self._descriptor_due:
                self._descriptor_due = None
                return Trigger(TriggerKind.DESCRIPTOR_CHANGE, self.target.pid, self.target.generation)

            waits = [self.fallback.remaining(now), self.scan.remaining(now)]
            if self._descriptor_due is not None:
                waits.append(self._descriptor_due - now)
            try:
                trigger = self.triggers.get(timeout=max(min(waits), MIN_WAIT_SEC))
            except queue.Empty:
                continue

            if trigger.kind is not TriggerKind.DESCRIPTOR_CHANGE:
                return trigger
            if trigger.generation != self.target.generation:
                continue  # from a watch that predates the current PID
            now = self.clock()
            if now - self._last_descriptor_eval < self.config.debounce:
                if self._descriptor_due is None:
                    self._descriptor_due = self._last_descriptor_eval + self.config.debounce
                continue
            return trigger

    # -- control cycle ------------------------------------------------------
    def sync_target(self) -> bool:
        """Re-resolve the PID if unknown or stale; return True if it changed."""
        pid = self.target.pid
        if pid is not None and self.alive(pid, self.target.name):
            return False
        new_pid = self.locate(self.target.name)
        if new_pid == pid:
            return False
        self.target.assign(new_pid)
        self.last_count = None
        if new_pid is None:
            log(f"lost {self.target.name} (was PID {pid})" if pid is not None else f"{self.target.name} not running")
        else:
            log(f"resolved {self.target.name} to PID {new_pid}")
        self.notifier.sync(self.target)
        return True

    def sample(self, trigger: Trigger) -> ConnectionSample | None:
        pid = self.target.pid
        if pid is None:
            return None
        try:
            count = self.counter.count(pid)
        except ProcessGone:
            log(f"PID {pid} vanished while counting; skipping cycle", "debug")
            self.target.invalidate()
            self.notifier.sync(self.target)
            return None
        except DescriptorAccessDenied as e:
            log(f"{e}; run the guard as the same user as {self.target.name}", "error")
            return None

        sample = ConnectionSample(pid=pid, count=count, ts=self.clock())
        # unchanged descriptor-triggered samples surface at most once per SAMPLE_LOG_EVERY_SEC
        level = "debug"
        if (
            trigger.kind is TriggerKind.FALLBACK_TICK
            or count != self.last_count
            or sample.ts - self._last_sample_log >= SAMPLE_LOG_EVERY_SEC
        ):
            level = "info"
            self._last_sample_log = sample.ts
        log(f"{self.target.name} PID {pid}: {count} X11 connections (threshold {self.config.threshold}, {trigger.kind.value})", level)
        self.last_count = count
        return sample

    def dispatch(self, trigger: Trigger) -> Action | None:
        """Run one control cycle for `trigger`; None when nothing was sampled."""
        self.ops.reap()
        if trigger.kind is TriggerKind.DESCRIPTOR_CHANGE:
            self._last_descriptor_eval = self.clock()

        changed = self.sync_target()
        if trigger.kind is TriggerKind.SCAN_TICK and not changed:
            return None
        if self.target.pid is None:
            return None

        sample = self.sample(trigger)
        if sample is None:
            return None

        action, self.state = evaluate(sample, self.state, self.config, self.ops, self.clock)
        if action is Action.RESTARTED:
            self.target.invalidate()
            self.notifier.sync(self.target)
        return action

    def run(self) -> int:
        log(
            f"Guard v{__version__} watching {self.config.app_name!r} on {self.counter.display!r}: "
            f"threshold={self.config.threshold} cooldown={self.config.cooldown:g}s "
            f"fallback={self.config.fallback_poll:g}s scan={self.config.scan_interval:g}s"
            + (" [dry-run]" if self.config.dry_run else "")
        )
        self.notifier.start()
        try:
            self.dispatch(Trigger(TriggerKind.SCAN_TICK))
            if self.target.pid is None:
                log(f"{self.config.app_name} not running yet; waiting for it to appear")
            while True:
                trigger = self.next_trigger()
                if trigger.kind is TriggerKind.SHUTDOWN:
                    break
                self.dispatch(trigger)
        finally:
            self.notifier.stop()
        log("shutdown requested, exiting")
        return 0


# ───────────────────────────── Startup checks ───────────────────────────────
def check_environment(proc_root: str | Path = "/proc") -> None:
    """Raise StartupError if /proc or ss cannot be used at all."""
    fd_dir = Path(proc_root) / "self" / "fd"
    try:
        os.listdir(fd_dir)
        psutil.pids()
    except (OSError, psutil.Error) as e:
        raise StartupError(f"cannot read the process table under {proc_root}: {e}") from e

    try:
        result = subprocess.run(["ss", "--version"], capture_output=True, check=False, timeout=5)
    except FileNotFoundError:
        raise StartupError("`ss` (iproute2) not found in PATH") from None
    except subprocess.TimeoutExpired:
        raise StartupError("`ss --version` timed out") from None
    if result.returncode != 0:
        raise StartupError("`ss` is installed but not working")


# ────────────────────────────  CLI / argparse  ──────────────────────────────
def build_parser() -> argparse.ArgumentParser:
    epilog = """
HOW CONNECTIONS ARE COUNTED:
Socket inodes open in /proc/<pid>/fd (and, unless --no-children, in every
descendant) are intersected with the client-side peers of the display socket
as listed by `ss -xnH src /tmp/.X11-unix/XN`. For TCP displays (host:N) the
process's TCP connections to port 6000+N are counted instead.

WHEN IT RESTARTS:
count <= --threshold           nothing happens
within --cooldown of restart   logged, skipped
--dry-run                      logged, nothing touched
otherwise                      SIGTERM, SIGKILL after --grace-timeout, relaunch

TRIGGERS:
Changes in /proc/<pid>/fd (inotify, debounced by --debounce), a full check every
--fallback-poll seconds, and a PID rescan every --scan-interval seconds.

EXAMPLES:
  x11-guard --app-name qq --threshold 10
  x11-guard --app-name wechat --display :1 --dry-run --verbose
"""
    p = argparse.ArgumentParser(
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Restart an X11 application when it leaks display connections.",
        epilog=epilog,
    )
    p.add_argument("--version", action="version", version=f"x11-guard v{__version__}")

    p.add_argument("--app-name", default=DEF_APP_NAME, help=f"Process name to guard. (default: {DEF_APP_NAME})")
    p.add_argument(
        "--threshold",
        type=int,
        default=DEF_THRESHOLD,
        help=f"Restart when the X11 connection count goes above this. (default: {DEF_THRESHOLD})",
    )
    p.add_argument(
        "--restart-cmd",
        default=None,
        help="Shell command that relaunches the application. (default: the --app-name)",
    )
    p.add_argument(
        "--cooldown",
        type=float,
        default=DEF_COOLDOWN_SEC,
        help=f"Minimum seconds between two restarts. (default: {DEF_COOLDOWN_SEC})",
    )
    p.add_argument(
        "--fallback-poll",
        type=float,
        default=DEF_FALLBACK_POLL_SEC,
        help=f"Seconds between unconditional checks; bounds detection latency. (default: {DEF_FALLBACK_POLL_SEC})",
    )
    p.add_argument(
        "--scan-interval",
        type=float,
        default=DEF_SCAN_INTERVAL_SEC,
        help=f"Seconds between PID re-resolutions. (default: {DEF_SCAN_INTERVAL_SEC})",
    )
    p.add_argument("--dry-run", action="store_true", help="Only report what would be restarted.")

    p.add_argument(
        "--display",
        default=os.environ.get("DISPLAY") or DEF_DISPLAY,
        help="X display whose socket is inspected. (default: $DISPLAY or :0)",
    )
    p.add_argument(
        "--grace-timeout",
        type=float,
        default=DEF_GRACE_SEC,
        help=f"Seconds to wait after SIGTERM before SIGKILL. (default: {DEF_GRACE_SEC:g})",
    )
    p.add_argument(
        "--kill-timeout",
        type=float,
        default=DEF_KILL_WAIT_SEC,
        help=f"Seconds to wait for exit after SIGKILL. (default: {DEF_KILL_WAIT_SEC:g})",
    )
    p.add_argument(
        "--debounce",
        type=float,
        default=DEF_DEBOUNCE_SEC,
        help=f"Minimum seconds between descriptor-triggered checks. (default: {DEF_DEBOUNCE_SEC:g})",
    )
    p.add_argument(
        "--no-children",
        action="store_true",
        help="Count and terminate only the main process, not its descendants.",
    )
    p.add_argument("--log-file", default=None, help="Also append log lines to this file (rotated at 50 MB).")
    p.add_argument("--verbose", "-v", action="store_true", help="Log every sample and transient condition.")
    return p


def validate_args(args: argparse.Namespace) -> None:
    """Exit with a message on values the guard cannot work with."""
    if not args.app_name.strip():
        sys.exit("Error: --app-name must not be empty")
    if args.threshold < 1:
        sys.exit("Error: --threshold must be at least 1")
    if args.cooldown < 0:
        sys.exit("Error: --cooldown must be non-negative")
    if args.fallback_poll < 1:
        sys.exit("Error: --fallback-poll must be at least 1 second")
    if args.scan_interval < 1:
        sys.exit("Error: --scan-interval must be at least 1 second")
    if args.grace_timeout < 0 or args.kill_timeout < 0 or args.debounce < 0:
        sys.exit("Error: --grace-timeout, --kill-timeout and --debounce must be non-negative")
    if args.restart_cmd is not None and not args.restart_cmd.strip():
        sys.exit("Error: --restart-cmd must not be empty")
    if not _DISPLAY_RE.match(args.display.strip()):
        sys.exit(f"Error: invalid --display {args.display!r}")


# ───────────────────────────── entry-point ──────────────────────────────────
def main(argv: Iterable[str] | None = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)
    validate_args(args)
    configure_logging(args.verbose, args.log_file)
    config = GuardConfig.from_args(args)

    try:
        check_environment()
    except StartupError as e:
        log(str(e), "error")
        sys.exit(f"Error: {e}")

    guard = Guard(config)
    signal.signal(signal.SIGTERM, guard.request_shutdown)
    signal.signal(signal.SIGINT, guard.request_shutdown)
    try:
        return guard.run()
    except KeyboardInterrupt:
        log("interrupted, exiting")
        return 0


if __name__ == "__main__":
    sys.exit(main())
