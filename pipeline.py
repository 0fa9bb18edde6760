"""Per-loop state, event buffers and health detection for every observed host.

The Pipeline is the only writer of loop state. LogSources call its `on_*`
methods from their own threads; every mutation happens under `self.lock` and
every resulting message is handed to the listeners while that lock is held,
so a reader holding the same lock always sees state consistent with the
message stream.
"""

import os
import re
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from event_parser import EventPairer, decode_line, now_ms, parse_line
from local_source import LocalSource
from log_source import STALE_THRESHOLD_SEC, PeriodicTask
from remote_source import RemoteSource

BUFFER_SIZE = 500
SNAPSHOT_EVENT_COUNT = 100
MAINTENANCE_INTERVAL_SEC = 30.0
STALE_TIMEOUT_MS = int(STALE_THRESHOLD_SEC * 1000)

SESSION_TIMESTAMP = re.compile(r'(\d{4})(\d{2})(\d{2})-(\d{2})(\d{2})(\d{2})')
LOOP_HEADER_MODE = re.compile(r'^Mode:\s+(\w+)')
LOOP_HEADER_BRANCH = re.compile(r'^Branch:\s+(.+)')
COMPLETED_PATTERN = re.compile(r'^Reached max iterations')
COMPLETED_STOP_REASONS = {'end_turn', 'stop_sequence'}
# Structured API error payloads only, not mentions inside content text.
ERROR_PATTERNS = [
    re.compile(r'"error":\s*\{\s*"type":\s*"overloaded'),
    re.compile(r'"error":\s*\{\s*"type":\s*"rate_limit'),
    re.compile(r'"error":\s*\{\s*"type":\s*"internal_error'),
    re.compile(r'"error":\s*\{\s*"type":\s*"api_error'),
]
TERMINAL_HEALTH = {'completed', 'errored'}


def make_loop_id(host_name, path):
    """Loop identity: host name plus the log file's basename."""
    return f'{host_name}:{os.path.basename(path) or path}'


def parse_session_timestamp(path, default=None):
    """Read a YYYYMMDD-HHMMSS stamp from a log file name as local time, in epoch ms."""
    match = SESSION_TIMESTAMP.search(os.path.basename(path))
    if match:
        try:
            stamp = datetime(*(int(part) for part in match.groups()))
            return int(stamp.timestamp() * 1000)
        except (ValueError, OverflowError, OSError):
            pass
    return now_ms() if default is None else default


@dataclass
class LoopState:
    loop_id: str
    host_name: str
    host_config: dict
    log_file: str
    status: str = 'connected'
    health: str = 'running'
    current_iteration: int = 0
    mode: Optional[str] = None
    branch: Optional[str] = None
    model: Optional[str] = None
    project: Optional[str] = None
    started_at: Optional[int] = None
    finished_at: Optional[int] = None
    last_activity: int = field(default_factory=now_ms)

    def to_dict(self):
        return {
            'loopId': self.loop_id,
            'hostName': self.host_name,
            'hostConfig': dict(self.host_config),
            'logFile': self.log_file,
            'status': self.status,
            'health': self.health,
            'currentIteration': self.current_iteration,
            'mode': self.mode,
            'branch': self.branch,
            'model': self.model,
            'project': self.project,
            'startedAt': self.started_at,
            'finishedAt': self.finished_at,
            'lastActivity': self.last_activity,
        }


def create_source(host, listener):
    """Pick the transport for a configured host."""
    if host.local:
        return LocalSource(host.name, listener, watch_dir=host.watch_dir)
    return RemoteSource(host, listener)


def looks_finished(event):
    """Best-effort guess that a silent loop ended naturally after this event."""
    if event is None:
        return False
    if event.get('type') == 'thinking':
        return True
    return event.get('type') == 'tool_paired' and bool(event.get('resultSummary'))


class Pipeline:
    """Orchestrates one LogSource per host and owns all loop state."""

    def __init__(self, config, source_factory=create_source, maintenance_interval=MAINTENANCE_INTERVAL_SEC):
        self.config = config
        self.source_factory = source_factory
        self.maintenance_interval = maintenance_interval
        self.lock = threading.RLock()
        self._listeners = []
        self._sources = {}
        self._loop_states = {}
        self._buffers = {}
        self._pairers = {}
        self._maintenance = None

    # ── Lifecycle ─────────────────────────────────────────────────

    def add_listener(self, listener):
        """Register a callable receiving every outgoing wire message (a dict)."""
        with self.lock:
            self._listeners.append(listener)

    def start(self):
        for host in self.config.hosts:
            if host.name in self._sources:
                continue
            source = self.source_factory(host, self)
            self._sources[host.name] = source
            source.start()
        if self._maintenance is None:
            self._maintenance = PeriodicTask(self.maintenance_interval, self.run_maintenance, 'pipeline-maintenance')
            self._maintenance.start()
        print(f'[PIPELINE] Monitoring {len(self._sources)} host(s): {", ".join(self._sources)}')

    def stop(self):
        if self._maintenance is not None:
            self._maintenance.stop()
            self._maintenance = None
        sources = list(self._sources.values())
        self._sources.clear()
        for source in sources:
            source.stop()

    # ── Reads ─────────────────────────────────────────────────────

    def get_loop_states(self):
        """Wire-shaped copies of every loop state, keyed by loop id."""
        with self.lock:
            return {loop_id: state.to_dict() for loop_id, state in self._loop_states.items()}

    def get_loop_state(self, loop_id):
        with self.lock:
            state = self._loop_states.get(loop_id)
            return state.to_dict() if state else None

    def get_recent_events(self, loop_id, count=SNAPSHOT_EVENT_COUNT):
        with self.lock:
            buffer = self._buffers.get(loop_id)
            if not buffer or count <= 0:
                return []
            return list(buffer)[-count:]

    def get_pending_calls(self, loop_id):
        with self.lock:
            pairer = self._pairers.get(loop_id)
            return pairer.get_pending() if pairer else []

    def snapshot(self):
        """Full state for a newly connected viewer; events only for running loops."""
        with self.lock:
            loops = {}
            recent_events = {}
            for loop_id, state in self._loop_states.items():
                loops[loop_id] = state.to_dict()
                if state.health == 'running':
                    recent_events[loop_id] = self.get_recent_events(loop_id, SNAPSHOT_EVENT_COUNT)
            return {'type': 'snapshot', 'loops': loops, 'recentEvents': recent_events}

    # ── Operator actions ──────────────────────────────────────────

    def remove_loop(self, loop_id):
        """Forget a loop now and delete its log file in the background."""
        with self.lock:
            state = self._loop_states.pop(loop_id, None)
            if state is None:
                return False
            self._buffers.pop(loop_id, None)
            self._pairers.pop(loop_id, None)
            self._emit({'type': 'loop_removed', 'loopId': loop_id})
            source = self._sources.get(state.host_name)

        if source is not None:
            threading.Thread(
                target=self._delete_file,
                args=(source, state.log_file),
                daemon=True,
                name=f'delete-{loop_id}',
            ).start()
        return True

    def _delete_file(self, source, path):
        try:
            if not source.delete_file(path):
                print(f'[PIPELINE] Could not delete {path}')
        except Exception as e:
            print(f'[PIPELINE] Delete of {path} failed: {e}')

    # ── LogSource listener ────────────────────────────────────────

    def on_line(self, host_name, path, text):
        loop_id = make_loop_id(host_name, path)
        with self.lock:
            state = self._ensure_loop(loop_id, host_name, path)
            if state is None:
                return
            self._handle_line(state, text)

    def on_status(self, host_name, path, status):
        loop_id = make_loop_id(host_name, path)
        with self.lock:
            state = self._ensure_loop(loop_id, host_name, path)
            if state is None:
                return
            new_status = 'inactive' if status == 'inactive' else 'connected'
            if state.status != new_status:
                self._update_connectivity(state, new_status)

    def on_connection(self, host_name, status):
        if status != 'disconnected':
            return
        with self.lock:
            for state in list(self._loop_states.values()):
                if state.host_name == host_name:
                    self._update_connectivity(state, 'disconnected')

    def on_error(self, host_name, err):
        print(f'[{host_name}] error: {err}')

    # ── Internals (call with self.lock held) ──────────────────────

    def _emit(self, message):
        for listener in list(self._listeners):
            try:
                listener(message)
            except Exception as e:
                print(f'[PIPELINE] Listener failed on {message.get("type")}: {e}')

    def _emit_status(self, state):
        self._emit({'type': 'loop_status', 'loopId': state.loop_id, 'state': state.to_dict()})

    def _ensure_loop(self, loop_id, host_name, path):
        state = self._loop_states.get(loop_id)
        if state is not None:
            return state
        host = self.config.host(host_name)
        if host is None:
            return None

        state = LoopState(
            loop_id=loop_id,
            host_name=host_name,
            host_config=host.public_dict(),
            log_file=path,
            started_at=parse_session_timestamp(path),
        )
        self._loop_states[loop_id] = state
        self._buffers[loop_id] = deque(maxlen=BUFFER_SIZE)
        self._pairers[loop_id] = EventPairer()
        self._emit_status(state)
        return state

    def _handle_line(self, state, text):
        state.last_activity = now_ms()
        if state.health == 'stale':
            state.health = 'running'
            state.finished_at = None
            self._emit_status(state)

        decoded = decode_line(text)
        parsed = decoded if isinstance(decoded, dict) else None

        self._extract_metadata(state, text, parsed)
        self._detect_health(state, text, parsed)

        pairer = self._pairers[state.loop_id]
        buffer = self._buffers[state.loop_id]
        for event in parse_line(text, state.loop_id, decoded):
            processed = pairer.process(event)

            if processed['type'] == 'iteration':
                state.current_iteration = processed['iterationNumber']
                self._emit_status(state)

            if processed['type'] == 'tool_paired':
                self._replace_call(buffer, processed)
            else:
                buffer.append(processed)

            self._emit({'type': 'event', 'loopId': state.loop_id, 'event': processed})

    @staticmethod
    def _replace_call(buffer, paired):
        for index, existing in enumerate(buffer):
            if existing['type'] == 'tool_call' and existing['id'] == paired['id']:
                buffer[index] = paired
                return
        buffer.append(paired)

    def _extract_metadata(self, state, text, parsed):
        line = text.strip()
        changed = False

        mode = LOOP_HEADER_MODE.match(line)
        if mode and mode.group(1) != state.mode:
            state.mode = mode.group(1)
            changed = True

        branch = LOOP_HEADER_BRANCH.match(line)
        if branch and branch.group(1).strip() != state.branch:
            state.branch = branch.group(1).strip()
            changed = True

        if parsed:
            message = parsed.get('message')
            model = message.get('model') if isinstance(message, dict) else None
            if model and model != state.model:
                state.model = model
                changed = True

            cwd = parsed.get('cwd')
            if (not state.project and parsed.get('type') == 'system'
                    and parsed.get('subtype') == 'init' and isinstance(cwd, str)):
                state.project = os.path.basename(cwd.rstrip('/')) or None
                changed = state.project is not None or changed

        if changed:
            self._emit_status(state)

    def _detect_health(self, state, text, parsed):
        # A result record is authoritative and overrides any prior health.
        if parsed and parsed.get('type') == 'result':
            duration = parsed.get('duration_ms')
            state.health = 'errored' if parsed.get('is_error') else 'completed'
            if isinstance(duration, (int, float)) and not isinstance(duration, bool) and state.started_at:
                state.finished_at = int(state.started_at + duration)
            else:
                state.finished_at = now_ms()
            self._emit_status(state)
            return

        if state.health in TERMINAL_HEALTH:
            return

        if COMPLETED_PATTERN.match(text.strip()):
            self._set_terminal_health(state, 'completed')
            return

        message = parsed.get('message') if parsed else None
        if isinstance(message, dict):
            stop_reason = message.get('stop_reason')
            if stop_reason in COMPLETED_STOP_REASONS:
                content = message.get('content') or []
                has_tool_use = any(isinstance(c, dict) and c.get('type') == 'tool_use' for c in content)
                if not has_tool_use:
                    self._set_terminal_health(state, 'completed')
                    return
            if stop_reason == 'error':
                self._set_terminal_health(state, 'errored')
                return

        for pattern in ERROR_PATTERNS:
            if pattern.search(text):
                self._set_terminal_health(state, 'errored')
                return

    def _set_terminal_health(self, state, health):
        state.health = health
        state.finished_at = state.last_activity or now_ms()
        self._emit_status(state)

    def _update_connectivity(self, state, status):
        state.status = status
        if status == 'disconnected':
            state.started_at = None
        self._emit_status(state)

    # ── Maintenance ───────────────────────────────────────────────

    def run_maintenance(self, now=None):
        """Prune stale pending calls and reclassify silent running loops."""
        now = now_ms() if now is None else now
        with self.lock:
            for pairer in self._pairers.values():
                pairer.prune_stale()
            for loop_id, state in self._loop_states.items():
                if state.health != 'running':
                    continue
                if not state.last_activity or now - state.last_activity <= STALE_TIMEOUT_MS:
                    continue
                buffer = self._buffers.get(loop_id)
                last = buffer[-1] if buffer else None
                state.health = 'completed' if looks_finished(last) else 'stale'
                state.finished_at = state.last_activity
                self._emit_status(state)
