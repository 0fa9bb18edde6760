"""Tail agent logs on a remote host over one multiplexed SSH channel.

Instead of one `tail -f` channel per file, a single long-lived remote shell
re-scans the watch directory, starts a background tail for each new file and
prefixes every tailed line with its file path. The local side splits that
one stream back into per-file lines.
"""

from __future__ import annotations

import os
import shlex
import threading
import time
from typing import Any, Iterable, Optional

import paramiko

from config import HostConfig
from log_source import (
    DISCOVERY_INTERVAL_SEC,
    LOG_SUFFIX,
    STALE_CHECK_INTERVAL_SEC,
    STALE_THRESHOLD_SEC,
    LogSource,
    PeriodicTask,
)

NEW_FILE_MARKER = '__LOOP_NEW__'
IDLE_MARKER = '__LOOP_IDLE__'
# Printed every scan so a vanished reader raises SIGPIPE and the trap reaps the group.
HEARTBEAT_MARKER = '__LOOP_TICK__'
FIELD_SEPARATOR = '\t'
INITIAL_RECONNECT_DELAY_SEC = 1.0
MAX_RECONNECT_DELAY_SEC = 30.0
CONNECT_TIMEOUT_SEC = 30
KEEPALIVE_INTERVAL_SEC = 10

_MULTIPLEX_SCRIPT = r"""
trap 'trap - EXIT HUP INT TERM PIPE; kill 0 2>/dev/null' EXIT HUP INT TERM PIPE
set -f
watch={watch_dir}
nl='
'
seen="$nl"
while :; do
  files=$(find "$watch" -type f -name '*{suffix}' 2>/dev/null)
  if [ -z "$files" ]; then
    echo '{idle}'
  fi
  IFS="$nl"
  for f in $files; do
    case "$seen" in
      *"$nl$f$nl"*) continue ;;
    esac
    seen="$seen$f$nl"
    printf '%s\t%s\n' '{new}' "$f"
    ( tail -n 0 -F "$f" 2>/dev/null | while IFS= read -r l; do printf '%s\t%s\n' "$f" "$l"; done ) &
  done
  unset IFS
  echo '{tick}'
  sleep {interval}
done
"""


def build_multiplex_command(watch_dir: str, interval: float = DISCOVERY_INTERVAL_SEC) -> str:
    """Shell command that discovers and tails every log file on one channel."""
    script = _MULTIPLEX_SCRIPT.format(
        watch_dir=shlex.quote(watch_dir),
        suffix=LOG_SUFFIX,
        idle=IDLE_MARKER,
        new=NEW_FILE_MARKER,
        tick=HEARTBEAT_MARKER,
        interval=int(interval) if float(interval).is_integer() else interval,
    )
    return f'sh -c {shlex.quote(script)}'


class RemoteSource(LogSource):
    """Owns one reconnecting SSH session per host."""

    def __init__(
        self,
        host: HostConfig,
        listener: Any,
        discovery_interval: float = DISCOVERY_INTERVAL_SEC,
        stale_interval: float = STALE_CHECK_INTERVAL_SEC,
        stale_threshold: float = STALE_THRESHOLD_SEC,
    ) -> None:
        super().__init__(host.name, listener)
        self.host = host
        self.discovery_interval = discovery_interval
        self.stale_interval = stale_interval
        self.stale_threshold = stale_threshold
        self._client: Optional[paramiko.SSHClient] = None
        self._tracked: dict[str, float] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._stop.set()
        self._connecting = False
        self._reconnect_timer: Optional[threading.Timer] = None
        self._reconnect_delay = INITIAL_RECONNECT_DELAY_SEC
        self._stale_checker: Optional[PeriodicTask] = None

    @property
    def reconnect_delay(self) -> float:
        return self._reconnect_delay

    @property
    def connected(self) -> bool:
        return self._client is not None

    def start(self) -> None:
        if not self._stop.is_set():
            return
        self._stop.clear()
        self._stale_checker = PeriodicTask(self.stale_interval, self.check_stale, f'stale-{self.host_name}')
        self._stale_checker.start()
        threading.Thread(target=self._connect, daemon=True, name=f'ssh-{self.host_name}').start()

    def stop(self) -> None:
        self._stop.set()
        with self._lock:
            timer, self._reconnect_timer = self._reconnect_timer, None
            client, self._client = self._client, None
            self._tracked.clear()
        if timer is not None:
            timer.cancel()
        if self._stale_checker is not None:
            self._stale_checker.stop()
            self._stale_checker = None
        if client is not None:
            client.close()

    def tracked_files(self) -> list[str]:
        with self._lock:
            return sorted(self._tracked)

    def delete_file(self, path: str) -> bool:
        with self._lock:
            self._tracked.pop(path, None)
            client = self._client
        if client is None:
            return True
        try:
            _stdin, stdout, _stderr = client.exec_command(f'rm -f {shlex.quote(path)}', timeout=30)
            stdout.channel.recv_exit_status()
        except (paramiko.SSHException, OSError) as e:
            print(f'[{self.host_name}] Delete of {path} failed: {e}')
        return True

    # ── Connection management ─────────────────────────────────────

    def open_client(self) -> paramiko.SSHClient:
        """Open an authenticated SSH client for this host."""
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        kwargs: dict = {
            'hostname': self.host.host,
            'port': self.host.port,
            'username': self.host.user,
            'timeout': CONNECT_TIMEOUT_SEC,
            'banner_timeout': CONNECT_TIMEOUT_SEC,
            'auth_timeout': CONNECT_TIMEOUT_SEC,
        }
        if self.host.key:
            kwargs['key_filename'] = os.path.expanduser(self.host.key)
        else:
            kwargs['password'] = self.host.password
            kwargs['allow_agent'] = False
            kwargs['look_for_keys'] = False
        try:
            client.connect(**kwargs)
        except Exception:
            client.close()
            raise
        transport = client.get_transport()
        if transport is not None:
            transport.set_keepalive(KEEPALIVE_INTERVAL_SEC)
        return client

    def _connect(self) -> None:
        with self._lock:
            self._reconnect_timer = None
            if self._stop.is_set() or self._connecting or self._client is not None:
                return
            self._connecting = True

        print(f'[{self.host_name}] Connecting to {self.host.user}@{self.host.host}:{self.host.port}...')
        try:
            client = self.open_client()
        except (paramiko.SSHException, OSError, EOFError) as e:
            with self._lock:
                self._connecting = False
            print(f'[{self.host_name}] SSH error: {e}')
            self.listener.on_error(self.host_name, e)
            self._schedule_reconnect()
            return

        with self._lock:
            self._connecting = False
            if self._stop.is_set():
                client.close()
                return
            self._client = client
            self._reconnect_delay = INITIAL_RECONNECT_DELAY_SEC

        print(f'[{self.host_name}] SSH connected')
        self.listener.on_connection(self.host_name, 'connected')
        self._stream(client)

    def _schedule_reconnect(self) -> None:
        with self._lock:
            if self._stop.is_set() or self._reconnect_timer is not None or self._connecting:
                return
            delay = self._reconnect_delay
            self._reconnect_delay = min(delay * 2, MAX_RECONNECT_DELAY_SEC)
            timer = threading.Timer(delay, self._connect)
            timer.daemon = True
            self._reconnect_timer = timer
        print(f'[{self.host_name}] Reconnecting in {delay:g}s...')
        timer.start()

    def _stream(self, client: paramiko.SSHClient) -> None:
        """Run the multiplexed discovery/tail command and consume its output."""
        try:
            transport = client.get_transport()
            if transport is None or not transport.is_active():
                raise paramiko.SSHException('transport closed before exec')
            channel = transport.open_session()
            channel.exec_command(build_multiplex_command(self.host.watch_dir, self.discovery_interval))
            self.consume(channel.makefile('rb'))
        except (paramiko.SSHException, OSError, EOFError) as e:
            if not self._stop.is_set():
                self.listener.on_error(self.host_name, e)
        finally:
            self._on_channel_closed(client)

    def _on_channel_closed(self, client: paramiko.SSHClient) -> None:
        with self._lock:
            if self._client is not client:
                return
            self._client = None
            self._tracked.clear()
        client.close()
        if self._stop.is_set():
            return
        print(f'[{self.host_name}] SSH channel closed')
        self.listener.on_connection(self.host_name, 'disconnected')
        self._schedule_reconnect()

    # ── Stream demultiplexing ─────────────────────────────────────

    def consume(self, stream: Iterable[bytes]) -> None:
        for raw in stream:
            if self._stop.is_set():
                break
            try:
                self.handle_stream_line(raw)
            except Exception as e:
                print(f'[{self.host_name}] Dropped stream line: {e!r}')

    def handle_stream_line(self, raw: bytes | str) -> None:
        """Route one line of the multiplexed stream."""
        if isinstance(raw, bytes):
            raw = raw.decode('utf-8', errors='replace')
        line = raw.rstrip('\r\n')
        if not line:
            return

        if line == HEARTBEAT_MARKER:
            return

        if line == IDLE_MARKER:
            self.listener.on_connection(self.host_name, 'idle')
            return

        path, sep, content = line.partition(FIELD_SEPARATOR)
        if not sep:
            return

        if path == NEW_FILE_MARKER:
            with self._lock:
                is_new = content not in self._tracked
                self._tracked[content] = time.time()
            if is_new:
                self.listener.on_status(self.host_name, content, 'new')
            return

        with self._lock:
            self._tracked[path] = time.time()
        if content.strip():
            self.listener.on_line(self.host_name, path, content)

    def check_stale(self) -> None:
        now = time.time()
        with self._lock:
            snapshot = list(self._tracked.items())
        for path, last_data in snapshot:
            self.listener.on_status(self.host_name, path, self.liveness(last_data, now, self.stale_threshold))
