#!/usr/bin/env python3
"""portexec: inspect local TCP listeners and kill the processes that own them."""

import argparse
import contextlib
import curses
import json
import os
import sys
import time
import warnings
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional, Sequence, Tuple

import psutil

warnings.filterwarnings("ignore", category=DeprecationWarning, module="psutil")

__version__ = "0.1.0"

TITLE = "Port Inspector & Executioner"
UNKNOWN_NAME = "Unknown"
TCP_KINDS = ("tcp", "tcp4", "tcp6")
DEFAULT_KIND = "tcp"
SIGNAL_CHOICES = ("kill", "term")
DEFAULT_SIGNAL = "kill"
PROCESS_CACHE_TTL = 5.0
ACTION_LOG_LIMIT = 200
ACTION_PANE_LINES = 3
PAGE_SIZE = 10
LOG_ENV_VAR = "PORTEXEC_LOG_FILE"
KEY_ESCAPE = 27
ENTER_KEYS = (10, 13, curses.KEY_ENTER)
BACKSPACE_KEYS = (8, 127, curses.KEY_BACKSPACE)


@dataclass(frozen=True)
class RawConnection:
    local_port: int
    pid: Optional[int]
    status: str


@dataclass(frozen=True)
class PortEntry:
    port: int
    pid: Optional[int]
    name: str

    @property
    def filter_value(self) -> str:
        return f"{self.port}{self.name}"


PortTable = Tuple[PortEntry, ...]


class KillOutcome(Enum):
    SUCCESS = "success"
    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    OTHER = "other"


@dataclass(frozen=True)
class KillResult:
    outcome: KillOutcome
    detail: str = ""

    @property
    def ok(self) -> bool:
        # an already-exited process means the goal is met
        return self.outcome in (KillOutcome.SUCCESS, KillOutcome.NOT_FOUND)


class Phase(Enum):
    IDLE = "idle"
    REFRESHING = "refreshing"
    ACTING = "acting"
    TERMINATED = "terminated"


class Command(Enum):
    REFRESH = "refresh"
    KILL = "kill"
    QUIT = "quit"


@dataclass
class SessionState:
    table: PortTable = ()
    selected_index: Optional[int] = None
    last_message: str = ""
    message_severity: str = "info"
    phase: Phase = Phase.IDLE


@dataclass
class ActionRecord:
    timestamp: float
    action: str
    severity: str
    summary: str
    details: Dict[str, Any]

    def as_dict(self) -> Dict[str, Any]:
        data = dict(self.details)
        ts_iso = datetime.fromtimestamp(self.timestamp, timezone.utc).isoformat().replace("+00:00", "Z")
        data.update(
            {
                "timestamp": self.timestamp,
                "ts_iso": ts_iso,
                "action": self.action,
                "severity": self.severity,
                "summary": self.summary,
            }
        )
        return data

    def to_json(self) -> str:
        return json.dumps(self.as_dict(), sort_keys=True)


class ActionLog:
    """Bounded in-memory history of actions, optionally mirrored to a JSON-lines file."""

    def __init__(self, limit: int = ACTION_LOG_LIMIT, path: Optional[Path] = None) -> None:
        self._records: Deque[ActionRecord] = deque(maxlen=limit)
        self._path = path

    def __len__(self) -> int:
        return len(self._records)

    def add(self, record: ActionRecord) -> None:
        self._records.append(record)
        self._append_to_disk(record)

    def recent(self, count: int) -> List[ActionRecord]:
        if count <= 0:
            return []
        return list(self._records)[-count:]

    def _append_to_disk(self, record: ActionRecord) -> None:
        if not self._path:
            return
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(record.to_json())
                handle.write("\n")
        except OSError:
            pass


class SocketSnapshotProvider:
    """Reads the kernel TCP connection table through psutil."""

    def __init__(self, kind: str = DEFAULT_KIND) -> None:
        if kind not in TCP_KINDS:
            raise ValueError(f"unsupported connection kind: {kind}")
        self.kind = kind

    def snapshot(self) -> List[RawConnection]:
        try:
            connections = psutil.net_connections(kind=self.kind)
        except psutil.AccessDenied:
            # macOS refuses the system-wide table to non-root users
            return self._scan_processes()
        except (psutil.Error, OSError):
            return []

        records: List[RawConnection] = []
        for conn in connections:
            record = self._to_raw(conn, conn.pid)
            if record is not None:
                records.append(record)
        return records

    def _scan_processes(self) -> List[RawConnection]:
        records: List[RawConnection] = []
        try:
            for proc in psutil.process_iter():
                conns = self._process_net_connections(proc)
                if not conns:
                    continue
                for conn in conns:
                    record = self._to_raw(conn, proc.pid)
                    if record is not None:
                        records.append(record)
        except (psutil.Error, OSError):
            return records
        return records

    def _process_net_connections(self, proc: psutil.Process) -> Optional[List[Any]]:
        getter = getattr(proc, "net_connections", None)
        try:
            if getter:
                return getter(kind=self.kind)
            return proc.connections(kind=self.kind)
        except (psutil.AccessDenied, psutil.NoSuchProcess):
            return None
        except psutil.Error:  # pragma: no cover - defensive
            return None

    @classmethod
    def _to_raw(cls, conn: Any, pid: Optional[int]) -> Optional[RawConnection]:
        port = cls._local_port(conn.laddr)
        if port is None:
            return None
        return RawConnection(local_port=port, pid=pid, status=conn.status)

    @staticmethod
    def _local_port(addr: Any) -> Optional[int]:
        if not addr:
            return None
        port = getattr(addr, "port", None)
        if port is None and isinstance(addr, tuple) and len(addr) >= 2:
            port = addr[1]
        try:
            return int(port) if port is not None else None
        except (TypeError, ValueError):
            return None


class ProcessResolver:
    """Names and signals processes by pid; never raises to the caller."""

    def __init__(self, signal_name: str = DEFAULT_SIGNAL, cache_ttl: float = PROCESS_CACHE_TTL) -> None:
        if signal_name not in SIGNAL_CHOICES:
            raise ValueError(f"unsupported signal: {signal_name}")
        self.signal_name = signal_name
        self.cache_ttl = cache_ttl
        self._name_cache: Dict[int, Tuple[str, float]] = {}

    def resolve_name(self, pid: Optional[int]) -> str:
        if not pid:
            return UNKNOWN_NAME
        now = time.monotonic()
        cached = self._name_cache.get(pid)
        if cached and cached[1] > now:
            return cached[0]
        try:
            name = psutil.Process(pid).name()
        except (psutil.Error, OSError):
            return UNKNOWN_NAME
        if not name:
            return UNKNOWN_NAME
        self._name_cache[pid] = (name, now + self.cache_ttl)
        return name

    def kill(self, pid: Optional[int]) -> KillResult:
        if not pid:
            return KillResult(KillOutcome.OTHER, "no owning process")
        try:
            proc = psutil.Process(pid)
            if self.signal_name == "term":
                proc.terminate()
            else:
                proc.kill()
        except psutil.NoSuchProcess:
            return KillResult(KillOutcome.NOT_FOUND, "process already exited")
        except psutil.AccessDenied:
            return KillResult(KillOutcome.PERMISSION_DENIED, "permission denied")
        except (psutil.Error, OSError) as exc:
            return KillResult(KillOutcome.OTHER, str(exc) or type(exc).__name__)
        finally:
            self._name_cache.pop(pid, None)
        return KillResult(KillOutcome.SUCCESS)


class PortTableBuilder:
    def __init__(self, provider: SocketSnapshotProvider, resolver: ProcessResolver) -> None:
        self.provider = provider
        self.resolver = resolver

    def build(self) -> PortTable:
        first_seen: Dict[int, RawConnection] = {}
        for conn in self.provider.snapshot():
            if conn.status != psutil.CONN_LISTEN:
                continue
            if conn.local_port in first_seen:
                continue
            first_seen[conn.local_port] = conn

        entries = [
            PortEntry(port=conn.local_port, pid=conn.pid, name=self._owner_name(conn.pid))
            for conn in first_seen.values()
        ]
        entries.sort(key=lambda entry: entry.port)
        return tuple(entries)

    def _owner_name(self, pid: Optional[int]) -> str:
        try:
            name = self.resolver.resolve_name(pid)
        except (psutil.Error, OSError):
            return UNKNOWN_NAME
        return name or UNKNOWN_NAME


class PortInspector:
    """Owns the session state and applies refresh, kill and quit commands to it.

    Commands run one at a time to completion. A command that arrives while the
    inspector is not idle is ignored, and nothing here raises on OS failures:
    they end up in ``state.last_message`` instead.
    """

    def __init__(
        self,
        builder: PortTableBuilder,
        resolver: ProcessResolver,
        log: Optional[ActionLog] = None,
    ) -> None:
        self.builder = builder
        self.resolver = resolver
        self.log = log if log is not None else ActionLog()
        self.state = SessionState()

    @property
    def running(self) -> bool:
        return self.state.phase is not Phase.TERMINATED

    def start(self) -> SessionState:
        self._rebuild()
        count = len(self.state.table)
        self._set_message(f"Found {count} listening port{'s' if count != 1 else ''}")
        self._record("scan", "info", self.state.last_message, {"ports": count})
        return self.state

    def dispatch(self, command: Command, entry: Optional[PortEntry] = None) -> SessionState:
        if command is Command.REFRESH:
            self.refresh()
        elif command is Command.KILL:
            self.kill(entry)
        elif command is Command.QUIT:
            self.quit()
        return self.state

    def refresh(self) -> None:
        if self.state.phase is not Phase.IDLE:
            return
        self._rebuild()
        self._set_message("List refreshed")
        self._record("refresh", "info", "List refreshed", {"ports": len(self.state.table)})

    def kill(self, entry: Optional[PortEntry] = None) -> None:
        if self.state.phase is not Phase.IDLE or not self.state.table:
            return
        target = entry if entry is not None else self.selected_entry()
        if target is None:
            return

        self.state.phase = Phase.ACTING
        try:
            result = self.resolver.kill(target.pid)
        finally:
            self.state.phase = Phase.IDLE

        details = {"port": target.port, "pid": target.pid, "name": target.name, "outcome": result.outcome.value}
        if result.ok:
            message = f"Successfully killed {target.name} (Port {target.port})"
            self._rebuild()
            self._set_message(message)
            self._record("kill", "info", message, details)
            return

        message = f"Failed to kill {target.pid if target.pid else '-'}"
        if result.detail:
            message = f"{message}: {result.detail}"
        self._set_message(message, severity="error")
        self._record("kill", "error", message, details)

    def quit(self) -> None:
        self.state.phase = Phase.TERMINATED

    def selected_entry(self) -> Optional[PortEntry]:
        index = self.state.selected_index
        if index is None or index < 0 or index >= len(self.state.table):
            return None
        return self.state.table[index]

    def select(self, index: int) -> None:
        if not self.state.table:
            self.state.selected_index = None
            return
        self.state.selected_index = max(0, min(len(self.state.table) - 1, index))

    def move_selection(self, delta: int) -> None:
        self.select((self.state.selected_index or 0) + delta)

    def _rebuild(self) -> None:
        self.state.phase = Phase.REFRESHING
        try:
            table = self.builder.build()
        finally:
            self.state.phase = Phase.IDLE
        self.state.table = table
        if not table:
            self.state.selected_index = None
        elif self.state.selected_index is None:
            self.state.selected_index = 0
        else:
            self.state.selected_index = min(self.state.selected_index, len(table) - 1)

    def _set_message(self, message: str, severity: str = "info") -> None:
        self.state.last_message = message
        self.state.message_severity = severity

    def _record(self, action: str, severity: str, summary: str, details: Dict[str, Any]) -> None:
        self.log.add(
            ActionRecord(
                timestamp=time.time(),
                action=action,
                severity=severity,
                summary=summary,
                details=details,
            )
        )


def filter_entries(table: Sequence[PortEntry], text: str) -> List[PortEntry]:
    needle = text.strip().lower()
    if not needle:
        return list(table)
    return [entry for entry in table if needle in entry.filter_value.lower()]


def truncate(text: str, width: int) -> str:
    if width <= 0:
        return ""
    if len(text) <= width:
        return text
    if width <= 3:
        return text[:width]
    return text[: width - 3] + "..."


class PortInspectorApp:
    """Curses front end: draws the inspector state and turns keys into commands."""

    def __init__(self, inspector: PortInspector) -> None:
        self.inspector = inspector
        self.filter_text = ""
        self.filter_editing = False
        self.filter_cursor = 0
        self.scroll_offset = 0
        self._stdscr: Optional["curses._CursesWindow"] = None

    def run(self) -> None:
        curses.wrapper(self._main)

    def visible_entries(self) -> List[PortEntry]:
        return filter_entries(self.inspector.state.table, self.filter_text)

    def selected_row(self) -> Optional[int]:
        if not self.filter_text:
            return self.inspector.state.selected_index
        visible = self.visible_entries()
        if not visible:
            return None
        self.filter_cursor = max(0, min(len(visible) - 1, self.filter_cursor))
        return self.filter_cursor

    def selected_entry(self) -> Optional[PortEntry]:
        if not self.filter_text:
            return self.inspector.selected_entry()
        row = self.selected_row()
        if row is None:
            return None
        return self.visible_entries()[row]

    def move(self, delta: int) -> None:
        if not self.filter_text:
            self.inspector.move_selection(delta)
            return
        self.filter_cursor = max(0, self.filter_cursor + delta)
        self.selected_row()

    def jump(self, last: bool) -> None:
        count = len(self.visible_entries())
        target = max(0, count - 1) if last else 0
        if self.filter_text:
            self.filter_cursor = target
        else:
            self.inspector.select(target)

    def handle_key(self, key: int) -> None:
        if self.filter_editing:
            self._handle_filter_key(key)
            return
        if key in (ord("q"), ord("Q")):
            self.inspector.dispatch(Command.QUIT)
        elif key in (ord("r"), ord("R")):
            self._show_busy("Refreshing listening sockets...")
            self.inspector.dispatch(Command.REFRESH)
        elif key in (ord("x"), ord("X"), curses.KEY_DC):
            entry = self.selected_entry()
            if entry is None:
                return
            self._show_busy(f"Killing PID {entry.pid or '-'} ({entry.name})...")
            self.inspector.dispatch(Command.KILL, entry)
        elif key in (curses.KEY_UP, ord("k")):
            self.move(-1)
        elif key in (curses.KEY_DOWN, ord("j")):
            self.move(1)
        elif key == curses.KEY_PPAGE:
            self.move(-PAGE_SIZE)
        elif key == curses.KEY_NPAGE:
            self.move(PAGE_SIZE)
        elif key in (ord("g"), curses.KEY_HOME):
            self.jump(last=False)
        elif key in (ord("G"), curses.KEY_END):
            self.jump(last=True)
        elif key == ord("/"):
            self.filter_editing = True
        elif key == KEY_ESCAPE:
            self._clear_filter()

    def _handle_filter_key(self, key: int) -> None:
        if key == KEY_ESCAPE:
            self._clear_filter()
        elif key in ENTER_KEYS:
            self.filter_editing = False
        elif key in BACKSPACE_KEYS:
            self.filter_text = self.filter_text[:-1]
            self.filter_cursor = 0
        elif 32 <= key < 127:
            self.filter_text += chr(key)
            self.filter_cursor = 0

    def _clear_filter(self) -> None:
        self.filter_text = ""
        self.filter_editing = False
        self.filter_cursor = 0

    def _main(self, stdscr: "curses._CursesWindow") -> None:
        self._stdscr = stdscr
        with contextlib.suppress(curses.error):
            curses.curs_set(0)
        stdscr.keypad(True)
        if curses.has_colors():
            curses.start_color()
            curses.use_default_colors()
            if curses.COLORS >= 256:
                curses.init_pair(1, 230, 62)
            else:
                curses.init_pair(1, curses.COLOR_WHITE, curses.COLOR_BLUE)
            curses.init_pair(2, curses.COLOR_YELLOW, -1)
            curses.init_pair(3, curses.COLOR_BLACK, curses.COLOR_CYAN)
            curses.init_pair(4, curses.COLOR_GREEN, -1)
            curses.init_pair(5, curses.COLOR_RED, -1)

        self._show_busy("Scanning listening sockets...")
        self.inspector.start()
        while self.inspector.running:
            self.render(stdscr)
            try:
                key = stdscr.getch()
            except KeyboardInterrupt:
                break
            if key == -1 or key == curses.KEY_RESIZE:
                continue
            self.handle_key(key)

    def _show_busy(self, text: str) -> None:
        stdscr = self._stdscr
        if stdscr is None:
            return
        height, width = stdscr.getmaxyx()
        attr = curses.color_pair(2) | curses.A_BOLD if curses.has_colors() else curses.A_BOLD
        self._safe_addstr(stdscr, height - 1, 0, text.ljust(width), attr)
        stdscr.refresh()

    def render(self, stdscr: "curses._CursesWindow") -> None:
        stdscr.erase()
        height, width = stdscr.getmaxyx()
        state = self.inspector.state

        title_attr = curses.color_pair(1) | curses.A_BOLD if curses.has_colors() else curses.A_REVERSE
        header_text = f" {TITLE} - {len(state.table)} listening - {time.strftime('%H:%M:%S')} "
        self._safe_addstr(stdscr, 0, 0, header_text[:width].ljust(width), title_attr)

        instruction = " arrows/j/k move  PgUp/PgDn jump  / filter  r refresh  x kill  q quit "
        instr_attr = curses.color_pair(2) if curses.has_colors() else curses.A_BOLD
        self._safe_addstr(stdscr, 1, 0, instruction[:width].ljust(width), instr_attr)

        table_start = 2
        if self.filter_text or self.filter_editing:
            cursor = "_" if self.filter_editing else ""
            self._safe_addstr(stdscr, 2, 0, f" Filter: {self.filter_text}{cursor}"[:width])
            table_start = 3

        status_line = height - 1
        action_start = status_line - ACTION_PANE_LINES
        table_height = action_start - table_start
        if table_height > 1:
            self._render_table(stdscr, table_start, table_height, width)
        else:
            self._safe_addstr(stdscr, table_start, 0, "Window too small for table", curses.A_DIM)
        self._render_actions(stdscr, action_start, ACTION_PANE_LINES, width)
        self._render_status(stdscr, status_line, width)
        stdscr.refresh()

    def _render_table(self, stdscr: "curses._CursesWindow", start_y: int, height: int, width: int) -> None:
        port_w = 7
        pid_w = 8
        name_w = max(width - (port_w + pid_w + 4), 10)
        header = f" {'Port':>{port_w}} {'PID':>{pid_w}}  Process"
        header_attr = curses.color_pair(2) | curses.A_BOLD if curses.has_colors() else curses.A_BOLD
        self._safe_addstr(stdscr, start_y, 0, header[:width], header_attr)

        visible = self.visible_entries()
        if not visible:
            empty = "No ports match the filter" if self.filter_text else "No listening TCP ports found"
            self._safe_addstr(stdscr, start_y + 1, 1, empty, curses.A_DIM)
            return

        selected = self.selected_row()
        visible_rows = max(height - 1, 0)
        self._ensure_visible(selected or 0, visible_rows, len(visible))
        rows = visible[self.scroll_offset : self.scroll_offset + visible_rows]
        for idx, entry in enumerate(rows):
            row_index = self.scroll_offset + idx
            if row_index == selected:
                attr = curses.color_pair(3) | curses.A_BOLD if curses.has_colors() else curses.A_REVERSE
            else:
                attr = curses.A_NORMAL
            pid = str(entry.pid) if entry.pid else "-"
            line = f" {entry.port:>{port_w}} {pid:>{pid_w}}  {truncate(entry.name, name_w):<{name_w}}"
            self._safe_addstr(stdscr, start_y + 1 + idx, 0, line[:width], attr)

    def _ensure_visible(self, selected: int, visible_rows: int, total: int) -> None:
        if visible_rows <= 0:
            self.scroll_offset = 0
            return
        max_offset = max(0, total - visible_rows)
        if selected < self.scroll_offset:
            self.scroll_offset = selected
        elif selected >= self.scroll_offset + visible_rows:
            self.scroll_offset = selected - visible_rows + 1
        self.scroll_offset = max(0, min(self.scroll_offset, max_offset))

    def _render_actions(self, stdscr: "curses._CursesWindow", start_y: int, lines: int, width: int) -> None:
        recent = self.inspector.log.recent(lines)
        if not recent:
            self._safe_addstr(stdscr, start_y, 0, " No actions yet", curses.A_DIM)
            return
        for idx, record in enumerate(recent):
            stamp = time.strftime("%H:%M:%S", time.localtime(record.timestamp))
            text = f" {stamp} [{record.action}] {record.summary}"
            attr = curses.A_BOLD if record.severity != "info" else curses.A_DIM
            self._safe_addstr(stdscr, start_y + idx, 0, truncate(text, width).ljust(width), attr)

    def _render_status(self, stdscr: "curses._CursesWindow", y: int, width: int) -> None:
        state = self.inspector.state
        message = state.last_message or "Press q to quit"
        if state.message_severity == "error":
            attr = curses.color_pair(5) | curses.A_BOLD if curses.has_colors() else curses.A_BOLD
        else:
            attr = curses.color_pair(4) if curses.has_colors() else curses.A_NORMAL
        self._safe_addstr(stdscr, y, 0, f" {message}".ljust(width), attr)

    def _safe_addstr(self, stdscr: "curses._CursesWindow", y: int, x: int, text: str, attr: int = curses.A_NORMAL) -> None:
        height, width = stdscr.getmaxyx()
        if y < 0 or y >= height or x >= width:
            return
        if x < 0:
            text = text[-x:]
            x = 0
        if not text:
            return
        trimmed = text[: max(0, width - x)]
        try:
            stdscr.addstr(y, x, trimmed, attr)
        except curses.error:
            pass


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="portexec",
        description="List local TCP listening ports and kill the processes that own them",
    )
    parser.add_argument(
        "--kind",
        default=DEFAULT_KIND,
        choices=TCP_KINDS,
        help="Connection kind (psutil net_connections kind, default: tcp)",
    )
    parser.add_argument(
        "--signal",
        default=DEFAULT_SIGNAL,
        choices=SIGNAL_CHOICES,
        help="How to stop a process: kill (SIGKILL) or term (SIGTERM), default: kill",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help=f"Append actions as JSON lines to this file (default: ${LOG_ENV_VAR}, unset keeps them in memory)",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    args = parser.parse_args(argv)
    if args.log_file is None:
        args.log_file = os.environ.get(LOG_ENV_VAR) or None
    return args


def build_inspector(args: argparse.Namespace) -> PortInspector:
    log_path = Path(args.log_file).expanduser() if args.log_file else None
    resolver = ProcessResolver(signal_name=args.signal)
    builder = PortTableBuilder(SocketSnapshotProvider(kind=args.kind), resolver)
    return PortInspector(builder, resolver, ActionLog(ACTION_LOG_LIMIT, log_path))


def main() -> None:
    args = parse_args()
    app = PortInspectorApp(build_inspector(args))
    try:
        app.run()
    except KeyboardInterrupt:
        pass
    except curses.error as exc:
        print(f"Error running program: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
