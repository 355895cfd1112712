"""Backend child-process supervision.

The supervisor owns exactly one child at a time and walks it through
Starting -> Running -> Exited -> Backoff -> Starting until a shutdown request
moves it to Stopped. Child output is forwarded byte-for-byte to a sink while a
separate scanner turns interesting lines into ``LineMatch`` events.
"""

import contextlib
import logging
import re
import signal
import socket
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Callable, Dict, List, Optional, Sequence

from .errors import SpawnFailed, SupervisionError, UnexpectedExit

LOGGER = logging.getLogger("tunnel_router.supervisor")

READ_CHUNK = 64 * 1024
PROBE_INTERVAL = 0.2
KILL_GRACE = 10.0

DEFAULT_PATTERNS: Dict[str, str] = {
    "started": r"Xray ([\w.\-]+) started",
    "listening": r"listening TCP on ([\d.]+:\d+)",
}


# ──────────────────────────────────────────────────────────────
# Records and events
# ──────────────────────────────────────────────────────────────
@dataclass
class SupervisedProcess:
    pid: int
    started_at: float
    consecutive_failures: int = 0
    backoff_seconds: float = 0.0


@dataclass(frozen=True)
class ExitEvent:
    returncode: Optional[int]
    signal: Optional[str] = None
    reason: str = ""
    uptime: float = 0.0

    def describe(self) -> str:
        if self.reason:
            return self.reason
        return f"code={self.returncode} signal={self.signal or ''}"


@dataclass(frozen=True)
class LineMatch:
    name: str
    value: str
    line: str


class BackoffPolicy:
    """Doubling restart delay, capped, reset after a long healthy run."""

    def __init__(self, initial: float = 2.0, cap: float = 30.0, reset_after: float = 300.0):
        self.initial = initial
        self.cap = cap
        self.reset_after = reset_after
        self.current: Optional[float] = None
        self.failures = 0

    def next_delay(self, uptime: float = 0.0) -> float:
        if self.reset_after and uptime >= self.reset_after:
            self.reset()
        self.failures += 1
        if self.current is None:
            self.current = self.initial
        else:
            self.current = min(self.current * 2.0, self.cap)
        return self.current

    def reset(self) -> None:
        self.current = None
        self.failures = 0


class BackendReadiness:
    """Read-only view of the readiness flag; only the supervisor can set it."""

    def __init__(self, event: threading.Event):
        self._event = event

    def is_ready(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)


# ──────────────────────────────────────────────────────────────
# Output forwarding
# ──────────────────────────────────────────────────────────────
class OutputSink:
    """Writes child bytes unmodified to the matching console stream and the backend log."""

    def __init__(self, log_path: Optional[Path] = None, stdout: Optional[IO[bytes]] = None,
                 stderr: Optional[IO[bytes]] = None):
        self._lock = threading.Lock()
        self._stdout = stdout if stdout is not None else getattr(sys.stdout, "buffer", None)
        self._stderr = stderr if stderr is not None else getattr(sys.stderr, "buffer", None)
        self._log: Optional[IO[bytes]] = None
        if log_path is not None:
            Path(log_path).parent.mkdir(parents=True, exist_ok=True)
            self._log = open(log_path, "ab")

    def write(self, data: bytes, stderr: bool = False) -> None:
        console = self._stderr if stderr else self._stdout
        with self._lock:
            for stream in (console, self._log):
                if stream is None:
                    continue
                with contextlib.suppress(ValueError, OSError):
                    stream.write(data)
                    stream.flush()

    def close(self) -> None:
        with self._lock:
            if self._log is not None:
                with contextlib.suppress(Exception):
                    self._log.close()
                self._log = None


class LineScanner:
    """Reassembles lines from raw chunks and emits a LineMatch per hit."""

    def __init__(self, patterns: Dict[str, str], on_match: Optional[Callable[[LineMatch], None]]):
        self._patterns: List[tuple] = [(name, re.compile(rx)) for name, rx in patterns.items()]
        self._on_match = on_match
        self._partial = b""

    def feed(self, data: bytes) -> None:
        if not self._patterns or self._on_match is None:
            return
        buf = self._partial + data
        lines = buf.split(b"\n")
        self._partial = lines.pop()[-READ_CHUNK:]
        for raw in lines:
            self._scan(raw.decode("utf-8", "replace").rstrip("\r"))

    def flush(self) -> None:
        if self._partial:
            self._scan(self._partial.decode("utf-8", "replace"))
            self._partial = b""

    def _scan(self, line: str) -> None:
        for name, rx in self._patterns:
            m = rx.search(line)
            if m:
                value = m.group(1) if m.groups() else m.group(0)
                try:
                    self._on_match(LineMatch(name=name, value=value, line=line))
                except Exception:
                    LOGGER.exception("line match handler failed for %s", name)


# ──────────────────────────────────────────────────────────────
# Supervisor
# ──────────────────────────────────────────────────────────────
class ProcessSupervisor:
    def __init__(
        self,
        sink: OutputSink,
        probe_ports: Sequence[int] = (),
        backoff: Optional[BackoffPolicy] = None,
        args_template: Sequence[str] = ("run", "-c", "{config}"),
        patterns: Optional[Dict[str, str]] = None,
        on_line_match: Optional[Callable[[LineMatch], None]] = None,
        kill_grace: float = KILL_GRACE,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.sink = sink
        self.probe_ports = list(probe_ports)
        self.backoff = backoff or BackoffPolicy()
        self.args_template = list(args_template)
        self.patterns = DEFAULT_PATTERNS if patterns is None else patterns
        self.on_line_match = on_line_match or self._log_line_match
        self.kill_grace = kill_grace
        self._sleep = sleep or self._interruptible_sleep
        self._stopping = threading.Event()
        self._ready = threading.Event()
        self.readiness = BackendReadiness(self._ready)
        # reentrant: request_shutdown may run in a signal handler on the thread holding it
        self._lock = threading.RLock()
        self._proc: Optional[subprocess.Popen] = None
        self._kill_timer: Optional[threading.Timer] = None
        self.record: Optional[SupervisedProcess] = None
        self.exits: List[ExitEvent] = []

    # public -----------------------------------------------------------
    def run(self, executable: Path, config_path: Path) -> int:
        """Supervise the backend until ``request_shutdown``; returns 0."""
        while not self._stopping.is_set():
            try:
                event = self._run_once(executable, config_path)
            except SupervisionError as exc:
                event = exc.event or ExitEvent(returncode=None, reason=str(exc))
            self.exits.append(event)
            if self._stopping.is_set():
                LOGGER.info("backend stopped (%s)", event.describe())
                break
            delay = self.backoff.next_delay(event.uptime)
            if self.record is not None:
                self.record.consecutive_failures = self.backoff.failures
                self.record.backoff_seconds = delay
            LOGGER.warning("[run] backend exited (%s). backoff=%ss", event.describe(), _fmt_seconds(delay))
            self._sleep(delay)
        self._cancel_kill_timer()
        self.record = None
        return 0

    def request_shutdown(self) -> None:
        """Flag shutdown and SIGTERM a running child.

        Called from signal handlers on the main thread, which may be in the
        middle of ``_run_once``; nothing here may wait on a lock held there.
        """
        if self._stopping.is_set():
            return
        self._stopping.set()
        LOGGER.info("[signal] stopping...")
        proc = self._proc
        if proc is not None:
            self._terminate(proc)

    @property
    def stopping(self) -> bool:
        return self._stopping.is_set()

    # internal helpers -------------------------------------------------
    def _run_once(self, executable: Path, config_path: Path) -> ExitEvent:
        self._ready.clear()
        cmd = [str(executable)] + [a.format(config=str(config_path)) for a in self.args_template]
        if self._stopping.is_set():
            return ExitEvent(returncode=None, reason="shutdown before start")
        LOGGER.info("[run] starting backend: %s", " ".join(cmd))
        started = time.monotonic()
        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as exc:
            reason = f"spawn failed: {exc}"
            raise SpawnFailed(reason, ExitEvent(returncode=None, reason=reason)) from exc
        self._proc = proc
        # a shutdown requested while Popen ran had no child to signal
        if self._stopping.is_set():
            self._terminate(proc)

        prev = self.record
        self.record = SupervisedProcess(
            pid=proc.pid,
            started_at=time.time(),
            consecutive_failures=prev.consecutive_failures if prev else 0,
            backoff_seconds=prev.backoff_seconds if prev else 0.0,
        )
        pumps = [
            threading.Thread(target=self._pump, args=(proc.stdout, False), daemon=True, name="backend-stdout"),
            threading.Thread(target=self._pump, args=(proc.stderr, True), daemon=True, name="backend-stderr"),
            threading.Thread(target=self._probe_ready, args=(proc,), daemon=True, name="backend-ready"),
        ]
        for t in pumps:
            t.start()

        rc = proc.wait()
        uptime = time.monotonic() - started
        for t in pumps:
            t.join(timeout=2.0)
        self._proc = None
        self._ready.clear()
        self._cancel_kill_timer()

        sig = None
        if rc < 0:
            with contextlib.suppress(ValueError):
                sig = signal.Signals(-rc).name
        event = ExitEvent(returncode=rc, signal=sig, uptime=uptime)
        if self._stopping.is_set():
            return event
        raise UnexpectedExit(event.describe(), event)

    def _pump(self, stream: Optional[IO[bytes]], stderr: bool = False) -> None:
        if stream is None:
            return
        scanner = LineScanner(self.patterns, self.on_line_match)
        read = getattr(stream, "read1", stream.read)
        try:
            while True:
                chunk = read(READ_CHUNK)
                if not chunk:
                    break
                self.sink.write(chunk, stderr=stderr)
                scanner.feed(chunk)
        except (OSError, ValueError):
            pass
        finally:
            scanner.flush()
            with contextlib.suppress(Exception):
                stream.close()

    def _probe_ready(self, proc: subprocess.Popen) -> None:
        pending = list(self.probe_ports)
        while pending and proc.poll() is None and not self._stopping.is_set():
            pending = [p for p in pending if not _port_open(p)]
            if pending:
                time.sleep(PROBE_INTERVAL)
        if not pending and proc.poll() is None:
            self._ready.set()
            LOGGER.info("backend ready on %s", ", ".join(str(p) for p in self.probe_ports) or "(no ports)")

    def _kill(self, proc: subprocess.Popen) -> None:
        if proc.poll() is None:
            LOGGER.warning("backend ignored SIGTERM for %ss; killing", _fmt_seconds(self.kill_grace))
            with contextlib.suppress(OSError):
                proc.kill()

    def _terminate(self, proc: subprocess.Popen) -> None:
        with self._lock:
            if self._kill_timer is not None or proc.poll() is not None:
                return
            with contextlib.suppress(OSError):
                proc.terminate()
            timer = threading.Timer(self.kill_grace, self._kill, args=(proc,))
            timer.daemon = True
            self._kill_timer = timer
        timer.start()

    def _cancel_kill_timer(self) -> None:
        with self._lock:
            timer, self._kill_timer = self._kill_timer, None
        if timer is not None:
            timer.cancel()

    def _interruptible_sleep(self, seconds: float) -> None:
        self._stopping.wait(seconds)

    def _log_line_match(self, match: LineMatch) -> None:
        LOGGER.info("backend %s: %s", match.name, match.value)


def _port_open(port: int, host: str = "127.0.0.1") -> bool:
    with contextlib.closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as sock:
        sock.settimeout(0.2)
        try:
            return sock.connect_ex((host, port)) == 0
        except OSError:
            return False


def _fmt_seconds(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else f"{value:.1f}"
